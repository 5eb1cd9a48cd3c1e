"""
Capture metadata extraction and reattachment.

Metadata is read from the original upload before any re-encoding, because
Pillow drops or mangles EXIF when it writes a new JPEG. After the print has
been composited the original EXIF block is copied onto the new file with
piexif. piexif works on files, so the copy goes through two scratch files
that are always removed again, whatever happens in between.
"""

from __future__ import annotations

import logging
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from io import BytesIO
from pathlib import Path
from typing import Any, Iterator, List, Optional, Tuple

import piexif
from PIL import ExifTags, Image, UnidentifiedImageError

from .errors import ExternalToolFailed, MetadataReattachFailed
from .retry import DelayStrategy, RetryPolicy, with_retry

logger = logging.getLogger(__name__)

EXIF_DATETIME_FORMAT = "%Y:%m:%d %H:%M:%S"

DEFAULT_COPY_POLICY = RetryPolicy(
    max_attempts=2,
    delay_strategy=DelayStrategy.FIXED,
    delay=0.1,
    timeout=10.0,
)

_EXIF_IFDS = ("0th", "Exif", "GPS", "Interop")


@dataclass(frozen=True)
class CaptureMetadata:
    """
    Sparse record of capture attributes read from the original file.

    Every field is optional; consumers must render missing values as empty.
    """

    taken_at: Optional[datetime] = None
    make: Optional[str] = None
    model: Optional[str] = None
    focal_length: Optional[float] = None
    f_number: Optional[float] = None
    exposure_time: Optional[float] = None
    iso: Optional[int] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def has_gps(self) -> bool:
        return self.latitude is not None and self.longitude is not None


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="ignore")
    text = str(value).strip("\x00 ").strip()
    return text or None


def _to_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, tuple) and len(value) == 2:
        numerator, denominator = value
        return float(numerator) / float(denominator) if denominator else None
    try:
        result = float(value)
    except (TypeError, ValueError, ZeroDivisionError):
        return None
    return result if result == result else None  # NaN from 0/0 rationals


def _to_int(value: Any) -> Optional[int]:
    if isinstance(value, (tuple, list)):
        value = value[0] if value else None
    number = _to_float(value)
    return int(number) if number is not None else None


def parse_exif_datetime(value: Any) -> Optional[datetime]:
    """
    Parse an EXIF "YYYY:MM:DD HH:MM:SS" timestamp.

    Returns None for missing or malformed values instead of raising.
    """
    text = _clean_text(value)
    if not text:
        return None
    try:
        return datetime.strptime(text[:19], EXIF_DATETIME_FORMAT)
    except ValueError:
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            logger.debug(f"Unparseable EXIF datetime: {text!r}")
            return None


def _dms_to_decimal(dms: Any, ref: Any) -> Optional[float]:
    try:
        degrees, minutes, seconds = (_to_float(part) for part in dms)
    except (TypeError, ValueError):
        return None
    if degrees is None or minutes is None or seconds is None:
        return None
    decimal = degrees + minutes / 60 + seconds / 3600
    if _clean_text(ref) in {"S", "W"}:
        decimal = -decimal
    return round(decimal, 7)


def extract_metadata(data: bytes) -> Tuple[CaptureMetadata, bool]:
    """
    Read capture metadata from original image bytes.

    Args:
        data: Raw bytes of the original upload

    Returns:
        Tuple of (metadata record, whether the file carries any EXIF at all).
        Unreadable files yield an empty record rather than an error.
    """
    try:
        with Image.open(BytesIO(data)) as image:
            exif = image.getexif()
            base = dict(exif)
            details = dict(exif.get_ifd(ExifTags.IFD.Exif))
            gps = dict(exif.get_ifd(ExifTags.IFD.GPSInfo))
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as exc:
        logger.warning(f"Could not read EXIF from original image: {exc}")
        return CaptureMetadata(), False

    if not base and not details and not gps:
        return CaptureMetadata(), False

    taken_at = parse_exif_datetime(details.get(ExifTags.Base.DateTimeOriginal)) or parse_exif_datetime(
        base.get(ExifTags.Base.DateTime)
    )
    iso = details.get(ExifTags.Base.ISOSpeedRatings)

    metadata = CaptureMetadata(
        taken_at=taken_at,
        make=_clean_text(base.get(ExifTags.Base.Make)),
        model=_clean_text(base.get(ExifTags.Base.Model)),
        focal_length=_to_float(details.get(ExifTags.Base.FocalLength)),
        f_number=_to_float(details.get(ExifTags.Base.FNumber)),
        exposure_time=_to_float(details.get(ExifTags.Base.ExposureTime)),
        iso=_to_int(iso),
        latitude=_dms_to_decimal(gps.get(ExifTags.GPS.GPSLatitude), gps.get(ExifTags.GPS.GPSLatitudeRef))
        if gps.get(ExifTags.GPS.GPSLatitude)
        else None,
        longitude=_dms_to_decimal(gps.get(ExifTags.GPS.GPSLongitude), gps.get(ExifTags.GPS.GPSLongitudeRef))
        if gps.get(ExifTags.GPS.GPSLongitude)
        else None,
    )
    return metadata, True


@contextmanager
def scratch_files(count: int, suffix: str = ".jpg", directory: Optional[Path] = None) -> Iterator[List[Path]]:
    """
    Allocate ``count`` uniquely named temporary files, removed on exit.

    Cleanup runs on every exit path, including exceptions raised while the
    files are being allocated.
    """
    paths: List[Path] = []
    try:
        for _ in range(count):
            handle = tempfile.NamedTemporaryFile(prefix="print-meta-", suffix=suffix, dir=directory, delete=False)
            handle.close()
            paths.append(Path(handle.name))
        yield paths
    finally:
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning(f"Failed to remove scratch file {path}: {exc}")


def _load_original_exif(original_path: Path) -> dict:
    try:
        exif_dict = piexif.load(str(original_path))
    except piexif.InvalidImageDataError as exc:
        # Not a JPEG/TIFF/WebP container; retrying cannot help.
        raise MetadataReattachFailed(f"Original format has no EXIF container: {exc}", stage="metadata") from exc
    except Exception as exc:  # noqa: BLE001
        raise ExternalToolFailed(f"Reading EXIF from original failed: {exc}", stage="metadata") from exc

    if not any(exif_dict.get(ifd) for ifd in _EXIF_IFDS):
        raise MetadataReattachFailed("Original image carries no EXIF metadata", stage="metadata")
    return exif_dict


def _copy_exif(processed: bytes, processed_path: Path, original_path: Path, width: int, height: int) -> None:
    # Start from clean bytes so a half-written earlier attempt is never reused.
    processed_path.write_bytes(processed)
    exif_dict = _load_original_exif(original_path)

    exif_dict.setdefault("Exif", {})
    exif_dict["Exif"][piexif.ExifIFD.PixelXDimension] = width
    exif_dict["Exif"][piexif.ExifIFD.PixelYDimension] = height
    exif_dict["1st"] = {}
    exif_dict["thumbnail"] = None

    try:
        exif_bytes = piexif.dump(exif_dict)
        piexif.insert(exif_bytes, str(processed_path))
    except Exception as exc:  # noqa: BLE001
        raise ExternalToolFailed(f"Writing EXIF to print failed: {exc}", stage="metadata") from exc


def reattach_metadata(
    processed: bytes,
    original: bytes,
    *,
    width: int,
    height: int,
    policy: RetryPolicy = DEFAULT_COPY_POLICY,
    scratch_dir: Optional[Path] = None,
) -> bytes:
    """
    Copy the original EXIF block onto processed JPEG bytes.

    Args:
        processed: Encoded print JPEG (without metadata)
        original: Original upload bytes (source of the EXIF block)
        width: Pixel width of the processed image
        height: Pixel height of the processed image
        policy: Retry policy applied to the copy step
        scratch_dir: Directory for the two scratch files (system temp dir by default)

    Returns:
        The processed JPEG with the original EXIF embedded

    Raises:
        MetadataReattachFailed: The copy was impossible or kept failing.
            Callers are expected to fall back to the metadata-free bytes.
    """
    try:
        with scratch_files(2, directory=scratch_dir) as (processed_path, original_path):
            original_path.write_bytes(original)
            with_retry(
                lambda: _copy_exif(processed, processed_path, original_path, width, height),
                policy,
                retry_on=(ExternalToolFailed,),
                description="EXIF copy",
            )
            return processed_path.read_bytes()
    except ExternalToolFailed as exc:
        raise MetadataReattachFailed(str(exc), stage="metadata") from exc
    except OSError as exc:
        raise MetadataReattachFailed(f"Scratch file I/O failed: {exc}", stage="metadata") from exc
