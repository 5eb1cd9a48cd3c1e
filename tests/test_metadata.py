"""
Tests for capture metadata extraction and EXIF reattachment.
"""

from datetime import datetime
from io import BytesIO

import piexif
import pytest
from PIL import Image

from gallery_print_backend.errors import MetadataReattachFailed
from gallery_print_backend.metadata import (
    CaptureMetadata,
    extract_metadata,
    parse_exif_datetime,
    reattach_metadata,
    scratch_files,
)
from gallery_print_backend.retry import RetryPolicy

FAST_POLICY = RetryPolicy(max_attempts=2, delay_strategy="fixed", delay=0)


def _plain_jpeg(width=600, height=450):
    buffer = BytesIO()
    Image.new("RGB", (width, height), (90, 90, 90)).save(buffer, format="JPEG")
    return buffer.getvalue()


class TestExtractMetadata:
    """Reading capture attributes from originals."""

    def test_reads_camera_fields(self, sample_jpeg):
        metadata, has_exif = extract_metadata(sample_jpeg)

        assert has_exif
        assert metadata.make == "FUJIFILM"
        assert metadata.model == "X100V"
        assert metadata.taken_at == datetime(2024, 5, 1, 10, 20, 30)
        assert metadata.focal_length == pytest.approx(23.0)
        assert metadata.f_number == pytest.approx(2.8)
        assert metadata.exposure_time == pytest.approx(0.004)
        assert metadata.iso == 400

    def test_reads_gps(self, sample_jpeg):
        metadata, _ = extract_metadata(sample_jpeg)

        assert metadata.has_gps
        assert metadata.latitude == pytest.approx(35.6583, abs=1e-3)
        assert metadata.longitude == pytest.approx(139.7413, abs=1e-3)

    def test_png_has_no_exif(self, make_image):
        metadata, has_exif = extract_metadata(make_image(fmt="PNG"))

        assert not has_exif
        assert metadata == CaptureMetadata()

    def test_garbage_yields_empty_record(self):
        metadata, has_exif = extract_metadata(b"not an image")

        assert not has_exif
        assert metadata == CaptureMetadata()

    def test_parse_exif_datetime(self):
        assert parse_exif_datetime(b"2024:05:01 10:20:30\x00") == datetime(2024, 5, 1, 10, 20, 30)
        assert parse_exif_datetime("garbage") is None
        assert parse_exif_datetime(None) is None


class TestScratchFiles:
    def test_removed_on_exit(self, tmp_path):
        with scratch_files(2, directory=tmp_path) as paths:
            assert len(paths) == 2
            assert all(path.exists() for path in paths)

        assert list(tmp_path.iterdir()) == []

    def test_removed_on_error(self, tmp_path):
        with pytest.raises(RuntimeError):
            with scratch_files(2, directory=tmp_path):
                raise RuntimeError("boom")

        assert list(tmp_path.iterdir()) == []


class TestReattachMetadata:
    """Copying the original EXIF block onto the print."""

    def test_copies_exif(self, sample_jpeg, tmp_path):
        result = reattach_metadata(
            _plain_jpeg(), sample_jpeg, width=600, height=450, policy=FAST_POLICY, scratch_dir=tmp_path
        )

        exif = piexif.load(result)
        assert exif["0th"][piexif.ImageIFD.Model] == b"X100V"
        assert exif["Exif"][piexif.ExifIFD.PixelXDimension] == 600
        assert exif["Exif"][piexif.ExifIFD.PixelYDimension] == 450
        with Image.open(BytesIO(result)) as image:
            assert image.size == (600, 450)
        assert list(tmp_path.iterdir()) == []

    def test_original_without_exif(self, make_image, tmp_path):
        with pytest.raises(MetadataReattachFailed):
            reattach_metadata(
                _plain_jpeg(), make_image(exif=False), width=600, height=450, policy=FAST_POLICY, scratch_dir=tmp_path
            )

        assert list(tmp_path.iterdir()) == []

    def test_png_original(self, make_image, tmp_path):
        with pytest.raises(MetadataReattachFailed):
            reattach_metadata(
                _plain_jpeg(), make_image(fmt="PNG"), width=600, height=450, policy=FAST_POLICY, scratch_dir=tmp_path
            )

        assert list(tmp_path.iterdir()) == []

    def test_transient_failure_is_retried(self, sample_jpeg, tmp_path, monkeypatch):
        real_insert = piexif.insert
        calls = []

        def flaky_insert(exif_bytes, filename):
            calls.append(filename)
            if len(calls) == 1:
                raise OSError("disk hiccup")
            return real_insert(exif_bytes, filename)

        monkeypatch.setattr(piexif, "insert", flaky_insert)

        result = reattach_metadata(
            _plain_jpeg(), sample_jpeg, width=600, height=450, policy=FAST_POLICY, scratch_dir=tmp_path
        )

        assert len(calls) == 2
        assert piexif.load(result)["0th"][piexif.ImageIFD.Model] == b"X100V"
        assert list(tmp_path.iterdir()) == []

    def test_persistent_failure_gives_up(self, sample_jpeg, tmp_path, monkeypatch):
        calls = []

        def broken_insert(exif_bytes, filename):
            calls.append(filename)
            raise OSError("read-only filesystem")

        monkeypatch.setattr(piexif, "insert", broken_insert)

        with pytest.raises(MetadataReattachFailed):
            reattach_metadata(
                _plain_jpeg(), sample_jpeg, width=600, height=450, policy=FAST_POLICY, scratch_dir=tmp_path
            )

        assert len(calls) == FAST_POLICY.max_attempts
        assert list(tmp_path.iterdir()) == []
