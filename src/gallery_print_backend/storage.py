"""
Storage backends for originals and print artifacts.

Two variants share one interface:
- LocalStorageProvider keeps objects under a base directory on disk
- S3StorageProvider keeps objects in an S3 bucket, optionally under a prefix

The variant is chosen once from configuration by ``build_storage_provider``;
callers only ever see ``get``/``create``/``prepare_destination``.
"""

from __future__ import annotations

import logging
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Any, Mapping, Optional

import boto3
from botocore.exceptions import ClientError

from .utils import ensure_directory

logger = logging.getLogger(__name__)

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


class StorageProvider(ABC):
    """Minimal object storage interface used by the print pipeline."""

    name: str = "abstract"

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Return the object's bytes, or None when it does not exist."""

    @abstractmethod
    def create(self, key: str, data: bytes, content_type: str) -> None:
        """Write (or overwrite) an object."""

    def prepare_destination(self, key: str) -> None:
        """Make sure ``key`` can be written. Flat object stores need nothing."""

    def exists(self, key: str) -> bool:
        return self.get(key) is not None


class LocalStorageProvider(StorageProvider):
    """
    Filesystem-backed storage rooted at ``base_path``.

    Parent directories are not created implicitly on write; call
    ``prepare_destination`` first.
    """

    name = "local"

    def __init__(self, base_path: Path | str) -> None:
        self.base_path = Path(base_path).resolve()

    def path_for(self, key: str) -> Path:
        relative = PurePosixPath(key.lstrip("/"))
        path = (self.base_path / Path(*relative.parts)).resolve()
        if path != self.base_path and self.base_path not in path.parents:
            raise ValueError(f"Storage key escapes base path: {key}")
        return path

    def get(self, key: str) -> Optional[bytes]:
        path = self.path_for(key)
        if not path.is_file():
            return None
        return path.read_bytes()

    def create(self, key: str, data: bytes, content_type: str) -> None:
        path = self.path_for(key)
        # Write-then-rename keeps readers from ever seeing a partial file.
        handle = tempfile.NamedTemporaryFile(
            prefix=f".{path.name}.", suffix=".partial", dir=path.parent, delete=False
        )
        partial = Path(handle.name)
        try:
            with handle:
                handle.write(data)
            partial.replace(path)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        logger.info(f"Stored {key} ({len(data)} bytes, {content_type})")

    def prepare_destination(self, key: str) -> None:
        ensure_directory(self.path_for(key).parent)

    def exists(self, key: str) -> bool:
        return self.path_for(key).is_file()


class S3StorageProvider(StorageProvider):
    """S3 bucket storage; keys are joined onto ``prefix``."""

    name = "s3"

    def __init__(self, bucket: str, prefix: str = "", client: Any = None) -> None:
        if not bucket:
            raise ValueError("S3 storage requires a bucket name")
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self._client = client

    @property
    def client(self) -> Any:
        # Created lazily so configuration errors surface on first use.
        if self._client is None:
            self._client = boto3.client("s3")
        return self._client

    def object_key(self, key: str) -> str:
        key = key.lstrip("/")
        return f"{self.prefix}/{key}" if self.prefix else key

    def get(self, key: str) -> Optional[bytes]:
        object_key = self.object_key(key)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=object_key)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in _MISSING_CODES:
                return None
            logger.error(f"S3 get failed for s3://{self.bucket}/{object_key}: {e}")
            raise
        return response["Body"].read()

    def exists(self, key: str) -> bool:
        object_key = self.object_key(key)
        try:
            self.client.head_object(Bucket=self.bucket, Key=object_key)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in _MISSING_CODES:
                return False
            logger.error(f"S3 head failed for s3://{self.bucket}/{object_key}: {e}")
            raise
        return True

    def create(self, key: str, data: bytes, content_type: str) -> None:
        object_key = self.object_key(key)
        logger.info(f"Uploading {len(data)} bytes to s3://{self.bucket}/{object_key}")
        self.client.put_object(Bucket=self.bucket, Key=object_key, Body=data, ContentType=content_type)


def build_storage_provider(config: Mapping[str, Any], client: Any = None) -> StorageProvider:
    """
    Select the storage backend named by ``config["provider"]``.

    Args:
        config: The ``storage`` section of the runtime configuration
        client: Optional pre-built boto3 client for the S3 variant

    Raises:
        ValueError: If the provider name is not one of "local" or "s3"
    """
    provider = str(config.get("provider", "local")).lower()
    if provider == "local":
        return LocalStorageProvider(config.get("base_path") or "data/storage")
    if provider == "s3":
        return S3StorageProvider(
            bucket=str(config.get("bucket") or ""),
            prefix=str(config.get("prefix") or ""),
            client=client,
        )
    raise ValueError(f"Unknown storage provider: {provider!r}")
