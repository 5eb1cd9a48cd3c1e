"""
Print photo generation.

PrintJobProcessor turns one stored original into its print artifact:

1. Fetch the original from storage
2. Read capture metadata from the untouched original bytes
3. Decode, rotate portrait sources, crop to 3:2
4. Pick band colors, render the QR code, compose the sheet
5. Rotate back, encode JPEG, reattach the original EXIF
6. Write the artifact to ``print/<basename>``

Every stage logs its failure and re-raises; the job queue decides whether
the task is retried. Only metadata reattachment is allowed to fail softly.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from fractions import Fraction
from io import BytesIO
from pathlib import Path
from typing import Iterator, Optional

from PIL import Image, UnidentifiedImageError

from .color import analyze_colors
from .compositor import BandText, compose_print
from .errors import (
    DimensionExtractionFailed,
    MetadataReattachFailed,
    PrintPipelineError,
    SourceNotFound,
    StorageWriteFailed,
)
from .geometry import CONTENT_RATIO, MIN_BAND_HEIGHT, TOTAL_RATIO, plan_geometry
from .metadata import DEFAULT_COPY_POLICY, extract_metadata, reattach_metadata
from .qr import CODE_MARGIN, MIN_CODE_SIZE, build_code_url, code_size, generate_code
from .retry import RetryPolicy
from .storage import StorageProvider
from .utils import key_basename

logger = logging.getLogger(__name__)

PRINT_PREFIX = "print"
PRINT_CONTENT_TYPE = "image/jpeg"


def print_key_for(storage_key: str) -> str:
    """
    Storage key of the print artifact for an original.

    Example:
        >>> print_key_for("photos/2024/IMG_0001.jpg")
        'print/IMG_0001.jpg'
    """
    return f"{PRINT_PREFIX}/{key_basename(storage_key)}"


@dataclass(frozen=True)
class PrintSettings:
    """Tunable parameters of the print layout and encoding."""

    site_url: str = "https://gallery.example.com"
    photographer: str = ""
    content_ratio: Fraction = CONTENT_RATIO
    total_ratio: Fraction = TOTAL_RATIO
    min_band_height: int = MIN_BAND_HEIGHT
    sample_width: int = 100
    code_margin: int = CODE_MARGIN
    min_code_size: int = MIN_CODE_SIZE
    jpeg_quality: int = 85
    font_path: Optional[str] = None
    metadata_policy: RetryPolicy = DEFAULT_COPY_POLICY
    scratch_dir: Optional[Path] = None


@dataclass(frozen=True)
class PrintResult:
    storage_key: str
    print_key: str
    width: int
    height: int
    rotated: bool
    metadata_attached: bool


class PrintJobProcessor:
    """
    End-to-end conversion of one original into its print artifact.

    The processor holds no per-task state, so a single instance can be
    shared by every queue worker.

    Attributes:
        storage: Backend holding both originals and print artifacts
        settings: Layout, encoding and metadata-copy parameters
    """

    def __init__(self, storage: StorageProvider, settings: PrintSettings | None = None) -> None:
        self.storage = storage
        self.settings = settings or PrintSettings()

    @contextmanager
    def _stage(self, storage_key: str, stage: str) -> Iterator[None]:
        try:
            yield
        except PrintPipelineError as exc:
            if exc.stage is None:
                exc.stage = stage
            logger.error(f"Print {storage_key}: stage '{stage}' failed: {exc}")
            raise
        except Exception as exc:
            logger.error(f"Print {storage_key}: stage '{stage}' failed: {type(exc).__name__}: {exc}")
            raise

    def process(self, storage_key: str, location_name: str = "") -> PrintResult:
        """
        Generate and store the print artifact for ``storage_key``.

        Args:
            storage_key: Key of the original in storage
            location_name: Human-readable place shown in the band

        Returns:
            PrintResult describing the stored artifact

        Raises:
            SourceNotFound: The original does not exist
            DimensionExtractionFailed: The original cannot be decoded
            StorageWriteFailed: The artifact could not be written
        """
        settings = self.settings
        logger.info(f"Start processing print photo: {storage_key}")

        with self._stage(storage_key, "fetch"):
            original = self.storage.get(storage_key)
            if original is None:
                raise SourceNotFound(f"Original image not found: {storage_key}", stage="fetch")

        with self._stage(storage_key, "extract-metadata"):
            metadata, has_exif = extract_metadata(original)

        with self._stage(storage_key, "decode"):
            image = self._decode(original, storage_key)

        with self._stage(storage_key, "geometry"):
            plan = plan_geometry(
                image.width,
                image.height,
                content_ratio=settings.content_ratio,
                total_ratio=settings.total_ratio,
                min_band_height=settings.min_band_height,
            )
            if plan.rotated:
                logger.info("Rotating portrait image")
                image = image.transpose(Image.Transpose.ROTATE_90)
            content = image.crop(plan.crop_box)
            logger.info(
                f"Planned {plan.content_width}x{plan.content_height} content with {plan.band_height}px band "
                f"(crop at {plan.crop_left},{plan.crop_top})"
            )

        with self._stage(storage_key, "color"):
            colors = analyze_colors(content, settings.sample_width)
            logger.info(f"Band color rgb{colors.background}, {colors.foreground} text")

        with self._stage(storage_key, "code"):
            code = None
            if not plan.degenerate:
                url = build_code_url(settings.site_url, storage_key)
                code = generate_code(
                    url,
                    code_size(plan.band_height, settings.code_margin, settings.min_code_size),
                    colors.foreground_hex,
                )

        with self._stage(storage_key, "compose"):
            text = BandText.from_metadata(metadata, location_name, settings.photographer)
            sheet = compose_print(content, plan, colors, code, text, settings.font_path)
            if plan.rotated:
                logger.info("Rotating back to portrait orientation")
                sheet = sheet.transpose(Image.Transpose.ROTATE_270)
            encoded = self._encode(sheet)

        metadata_attached = False
        if has_exif:
            with self._stage(storage_key, "reattach-metadata"):
                try:
                    encoded = reattach_metadata(
                        encoded,
                        original,
                        width=sheet.width,
                        height=sheet.height,
                        policy=settings.metadata_policy,
                        scratch_dir=settings.scratch_dir,
                    )
                    metadata_attached = True
                except MetadataReattachFailed as exc:
                    logger.warning(f"Storing {storage_key} print without EXIF: {exc}")
        else:
            logger.info(f"Original {storage_key} has no EXIF to reattach")

        print_key = print_key_for(storage_key)
        with self._stage(storage_key, "store"):
            try:
                self.storage.prepare_destination(print_key)
                self.storage.create(print_key, encoded, PRINT_CONTENT_TYPE)
            except Exception as exc:
                raise StorageWriteFailed(f"Failed to store {print_key}: {exc}", stage="store") from exc

        logger.info(f"Print photo processed successfully: {print_key}")
        return PrintResult(
            storage_key=storage_key,
            print_key=print_key,
            width=sheet.width,
            height=sheet.height,
            rotated=plan.rotated,
            metadata_attached=metadata_attached,
        )

    def _decode(self, original: bytes, storage_key: str) -> Image.Image:
        try:
            with Image.open(BytesIO(original)) as source:
                source.load()
                image = source.convert("RGB")
        except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
            raise DimensionExtractionFailed(
                f"Could not decode image {storage_key}: {exc}", stage="decode"
            ) from exc

        if not image.width or not image.height:
            raise DimensionExtractionFailed(f"Could not get image dimensions: {storage_key}", stage="decode")
        return image

    def _encode(self, image: Image.Image) -> bytes:
        buffer = BytesIO()
        image.save(buffer, format="JPEG", quality=self.settings.jpeg_quality, optimize=True, progressive=True)
        return buffer.getvalue()
