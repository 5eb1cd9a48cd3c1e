"""
Pytest configuration and fixtures for Gallery Print Backend tests.
"""

from datetime import datetime, timedelta, timezone
from io import BytesIO

import piexif
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from gallery_print_backend.job_queue import PrintJobQueue
from gallery_print_backend.main import create_app
from gallery_print_backend.processor import PrintJobProcessor, PrintSettings
from gallery_print_backend.retry import RetryPolicy
from gallery_print_backend.storage import LocalStorageProvider
from gallery_print_backend.task_store import TaskDatabase


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def _make_image(width=600, height=400, color=(200, 120, 40), fmt="JPEG", exif=True, model="X100V"):
    image = Image.new("RGB", (width, height), color)
    options = {}
    if exif and fmt == "JPEG":
        exif_dict = {
            "0th": {
                piexif.ImageIFD.Make: b"FUJIFILM",
                piexif.ImageIFD.Model: model.encode(),
            },
            "Exif": {
                piexif.ExifIFD.DateTimeOriginal: b"2024:05:01 10:20:30",
                piexif.ExifIFD.FocalLength: (23, 1),
                piexif.ExifIFD.FNumber: (28, 10),
                piexif.ExifIFD.ExposureTime: (1, 250),
                piexif.ExifIFD.ISOSpeedRatings: 400,
            },
            "GPS": {
                piexif.GPSIFD.GPSLatitudeRef: b"N",
                piexif.GPSIFD.GPSLatitude: ((35, 1), (39, 1), (2988, 100)),
                piexif.GPSIFD.GPSLongitudeRef: b"E",
                piexif.GPSIFD.GPSLongitude: ((139, 1), (44, 1), (2880, 100)),
            },
        }
        options["exif"] = piexif.dump(exif_dict)
    buffer = BytesIO()
    image.save(buffer, format=fmt, **options)
    return buffer.getvalue()


@pytest.fixture
def make_image():
    """Factory for encoded test images (JPEG with EXIF by default)."""
    return _make_image


@pytest.fixture
def sample_jpeg():
    return _make_image()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage(tmp_path):
    return LocalStorageProvider(tmp_path / "storage")


@pytest.fixture
def put_source(storage):
    """Store bytes as an original and return its key."""

    def put(key, data):
        storage.prepare_destination(key)
        storage.create(key, data, "image/jpeg")
        return key

    return put


@pytest.fixture
def scratch_dir(tmp_path):
    path = tmp_path / "scratch"
    path.mkdir()
    return path


@pytest.fixture
def processor(storage, scratch_dir):
    settings = PrintSettings(
        site_url="https://gallery.example.com",
        photographer="TK",
        metadata_policy=RetryPolicy(max_attempts=2, delay_strategy="fixed", delay=0),
        scratch_dir=scratch_dir,
    )
    return PrintJobProcessor(storage, settings)


@pytest.fixture
def store(tmp_path):
    return TaskDatabase(tmp_path / "tasks.db")


@pytest.fixture
def make_queue(store, clock):
    """Build a queue over the shared store with the given handlers."""

    def build(handlers=None, **options):
        options.setdefault("backoff", RetryPolicy(delay_strategy="fixed", delay=10.0))
        options.setdefault("clock", clock)
        return PrintJobQueue(store, handlers or {}, **options)

    return build


@pytest.fixture
def app(tmp_path):
    return create_app(
        overrides={
            "site_url": "https://gallery.example.com",
            "storage": {"provider": "local", "base_path": str(tmp_path / "app-storage")},
            "queue": {"db_path": str(tmp_path / "app-tasks.db"), "autostart": False},
        }
    )


@pytest.fixture
def client(app):
    """Create a test client for the FastAPI app."""
    return TestClient(app)
