"""
Tests for the storage backends.
"""

from io import BytesIO
from pathlib import Path

import boto3
import pytest
from botocore.exceptions import ClientError
from botocore.response import StreamingBody
from botocore.stub import Stubber

from gallery_print_backend.storage import (
    LocalStorageProvider,
    S3StorageProvider,
    build_storage_provider,
)


@pytest.fixture
def s3_client():
    return boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


class TestLocalStorage:
    """Filesystem backend."""

    def test_missing_object(self, storage):
        assert storage.get("photos/none.jpg") is None
        assert not storage.exists("photos/none.jpg")

    def test_create_requires_prepared_destination(self, storage):
        with pytest.raises(FileNotFoundError):
            storage.create("print/a.jpg", b"data", "image/jpeg")

    def test_round_trip(self, storage):
        storage.prepare_destination("print/a.jpg")
        storage.create("print/a.jpg", b"first", "image/jpeg")
        storage.create("print/a.jpg", b"second", "image/jpeg")

        assert storage.get("print/a.jpg") == b"second"
        assert storage.exists("print/a.jpg")
        assert [p.name for p in (storage.base_path / "print").iterdir()] == ["a.jpg"]

    def test_staging_file_is_unique_per_write(self, storage):
        storage.prepare_destination("print/a.jpg")
        foreign = storage.base_path / "print" / ".a.jpg.partial"
        foreign.write_bytes(b"another writer")

        storage.create("print/a.jpg", b"mine", "image/jpeg")

        assert storage.get("print/a.jpg") == b"mine"
        assert foreign.read_bytes() == b"another writer"

    def test_failed_write_leaves_no_staging_file(self, storage, monkeypatch):
        def broken_replace(self, target):
            raise OSError("rename failed")

        storage.prepare_destination("print/a.jpg")
        monkeypatch.setattr(Path, "replace", broken_replace)

        with pytest.raises(OSError):
            storage.create("print/a.jpg", b"data", "image/jpeg")

        assert list((storage.base_path / "print").iterdir()) == []

    def test_rejects_escaping_keys(self, storage):
        with pytest.raises(ValueError):
            storage.get("../outside.jpg")


class TestS3Storage:
    """Bucket backend, exercised against a stubbed client."""

    def test_get_existing(self, s3_client):
        stubber = Stubber(s3_client)
        stubber.add_response(
            "get_object",
            {"Body": StreamingBody(BytesIO(b"jpeg"), 4)},
            {"Bucket": "gallery", "Key": "media/photos/a.jpg"},
        )
        provider = S3StorageProvider("gallery", prefix="/media/", client=s3_client)

        with stubber:
            assert provider.get("photos/a.jpg") == b"jpeg"
        stubber.assert_no_pending_responses()

    def test_get_missing(self, s3_client):
        stubber = Stubber(s3_client)
        stubber.add_client_error(
            "get_object",
            service_error_code="NoSuchKey",
            http_status_code=404,
            expected_params={"Bucket": "gallery", "Key": "photos/missing.jpg"},
        )
        provider = S3StorageProvider("gallery", client=s3_client)

        with stubber:
            assert provider.get("photos/missing.jpg") is None

    def test_get_other_errors_propagate(self, s3_client):
        stubber = Stubber(s3_client)
        stubber.add_client_error("get_object", service_error_code="AccessDenied", http_status_code=403)
        provider = S3StorageProvider("gallery", client=s3_client)

        with stubber:
            with pytest.raises(ClientError):
                provider.get("photos/secret.jpg")

    def test_exists_uses_head_object(self, s3_client):
        stubber = Stubber(s3_client)
        stubber.add_response("head_object", {}, {"Bucket": "gallery", "Key": "photos/a.jpg"})
        stubber.add_client_error(
            "head_object",
            service_error_code="404",
            http_status_code=404,
            expected_params={"Bucket": "gallery", "Key": "photos/missing.jpg"},
        )
        provider = S3StorageProvider("gallery", client=s3_client)

        with stubber:
            assert provider.exists("photos/a.jpg")
            assert not provider.exists("photos/missing.jpg")
        stubber.assert_no_pending_responses()

    def test_create(self, s3_client):
        stubber = Stubber(s3_client)
        stubber.add_response(
            "put_object",
            {},
            {"Bucket": "gallery", "Key": "print/a.jpg", "Body": b"jpeg", "ContentType": "image/jpeg"},
        )
        provider = S3StorageProvider("gallery", client=s3_client)

        with stubber:
            provider.prepare_destination("print/a.jpg")
            provider.create("print/a.jpg", b"jpeg", "image/jpeg")
        stubber.assert_no_pending_responses()

    def test_requires_bucket(self):
        with pytest.raises(ValueError):
            S3StorageProvider("")


class TestBuildStorageProvider:
    def test_local(self, tmp_path):
        provider = build_storage_provider({"provider": "local", "base_path": str(tmp_path)})

        assert isinstance(provider, LocalStorageProvider)
        assert provider.base_path == tmp_path.resolve()

    def test_s3(self, s3_client):
        provider = build_storage_provider({"provider": "S3", "bucket": "gallery", "prefix": "media"}, client=s3_client)

        assert isinstance(provider, S3StorageProvider)
        assert provider.object_key("print/a.jpg") == "media/print/a.jpg"

    def test_unknown(self):
        with pytest.raises(ValueError):
            build_storage_provider({"provider": "ftp"})
