"""
Tests for the end-to-end print pipeline.
"""

from io import BytesIO

import piexif
import pytest
from PIL import Image

from gallery_print_backend.errors import DimensionExtractionFailed, SourceNotFound, StorageWriteFailed
from gallery_print_backend.processor import PrintJobProcessor, print_key_for


def _open(data):
    image = Image.open(BytesIO(data))
    image.load()
    return image


class TestPrintKey:
    def test_uses_basename(self):
        assert print_key_for("photos/2024/IMG_0001.jpg") == "print/IMG_0001.jpg"
        assert print_key_for("IMG_0001.jpg") == "print/IMG_0001.jpg"


class TestProcess:
    """Generating print artifacts from stored originals."""

    def test_landscape_original(self, processor, storage, put_source, sample_jpeg):
        put_source("photos/IMG_0001.jpg", sample_jpeg)

        result = processor.process("photos/IMG_0001.jpg", "Kyoto")

        assert result.print_key == "print/IMG_0001.jpg"
        assert not result.rotated
        assert result.metadata_attached
        artifact = storage.get("print/IMG_0001.jpg")
        image = _open(artifact)
        assert image.format == "JPEG"
        assert image.size == (600, 450)
        assert piexif.load(artifact)["0th"][piexif.ImageIFD.Model] == b"X100V"

    def test_portrait_original_stays_portrait(self, processor, storage, put_source, make_image):
        put_source("photos/portrait.jpg", make_image(400, 600))

        result = processor.process("photos/portrait.jpg")

        assert result.rotated
        assert (result.width, result.height) == (450, 600)
        assert _open(storage.get("print/portrait.jpg")).size == (450, 600)

    def test_square_original_is_cropped(self, processor, storage, put_source, make_image):
        put_source("photos/square.jpg", make_image(300, 300))

        processor.process("photos/square.jpg")

        assert _open(storage.get("print/square.jpg")).size == (300, 225)

    def test_png_original_without_exif(self, processor, storage, put_source, make_image):
        put_source("photos/shot.png", make_image(600, 400, fmt="PNG"))

        result = processor.process("photos/shot.png")

        assert not result.metadata_attached
        assert _open(storage.get("print/shot.png")).format == "JPEG"

    def test_missing_original(self, processor, storage):
        with pytest.raises(SourceNotFound) as exc_info:
            processor.process("photos/missing.jpg")

        assert exc_info.value.stage == "fetch"
        assert not exc_info.value.retryable
        assert storage.get("print/missing.jpg") is None

    def test_undecodable_original(self, processor, storage, put_source):
        put_source("photos/broken.jpg", b"\xff\xd8 definitely not a jpeg")

        with pytest.raises(DimensionExtractionFailed) as exc_info:
            processor.process("photos/broken.jpg")

        assert exc_info.value.stage == "decode"
        assert storage.get("print/broken.jpg") is None

    def test_metadata_failure_still_stores_print(self, processor, storage, put_source, sample_jpeg, scratch_dir, monkeypatch):
        def broken_insert(exif_bytes, filename):
            raise OSError("no space left")

        monkeypatch.setattr(piexif, "insert", broken_insert)
        put_source("photos/IMG_0002.jpg", sample_jpeg)

        result = processor.process("photos/IMG_0002.jpg")

        assert not result.metadata_attached
        assert _open(storage.get("print/IMG_0002.jpg")).size == (600, 450)
        assert list(scratch_dir.iterdir()) == []

    def test_reprocessing_overwrites(self, processor, storage, put_source, sample_jpeg):
        put_source("photos/IMG_0003.jpg", sample_jpeg)

        first = processor.process("photos/IMG_0003.jpg")
        second = processor.process("photos/IMG_0003.jpg")

        assert first.print_key == second.print_key
        assert _open(storage.get("print/IMG_0003.jpg")).size == (600, 450)

    def test_storage_write_failure_is_retryable(self, storage, put_source, sample_jpeg, processor):
        class ReadOnlyStorage(type(storage)):
            def create(self, key, data, content_type):
                raise PermissionError("read-only")

        put_source("photos/IMG_0004.jpg", sample_jpeg)
        read_only = PrintJobProcessor(ReadOnlyStorage(storage.base_path), processor.settings)

        with pytest.raises(StorageWriteFailed) as exc_info:
            read_only.process("photos/IMG_0004.jpg")

        assert exc_info.value.retryable
        assert exc_info.value.stage == "store"
