"""
Crop and padding planning for print photos.

Print output always has a 3:2 photo area on top of an information band, and
the photo plus band together form a 4:3 sheet. Portrait sources are planned
as if rotated a quarter turn so the band always runs along the long edge.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from fractions import Fraction
from typing import Any, Union

from .errors import DimensionExtractionFailed
from .utils import round_half_up

CONTENT_RATIO = Fraction(3, 2)
TOTAL_RATIO = Fraction(4, 3)
MIN_BAND_HEIGHT = 50
RATIO_EPSILON = 0.001

Ratio = Union[Fraction, float, int]


@dataclass(frozen=True)
class GeometryPlan:
    """
    Crop and band dimensions for one source image.

    Coordinates are expressed in the rotated frame when ``rotated`` is set.

    Attributes:
        content_width: Width of the cropped photo area
        content_height: Height of the cropped photo area
        band_height: Height of the information band below the photo;
            non-positive only for degenerate (tiny) sources
        rotated: Source was portrait and is handled rotated by 90 degrees
        crop_left: Left edge of the crop window inside the source
        crop_top: Top edge of the crop window inside the source
    """

    content_width: int
    content_height: int
    band_height: int
    rotated: bool = False
    crop_left: int = 0
    crop_top: int = 0

    @property
    def total_height(self) -> int:
        return self.content_height + max(self.band_height, 0)

    @property
    def degenerate(self) -> bool:
        return self.band_height <= 0

    @property
    def crop_box(self) -> tuple[int, int, int, int]:
        """Pillow-style (left, upper, right, lower) box."""
        return (
            self.crop_left,
            self.crop_top,
            self.crop_left + self.content_width,
            self.crop_top + self.content_height,
        )


def parse_ratio(value: Any) -> Fraction:
    """
    Parse a configured aspect ratio.

    Example:
        >>> parse_ratio("4:3")
        Fraction(4, 3)
        >>> parse_ratio([3, 2])
        Fraction(3, 2)
    """
    if isinstance(value, str):
        if ":" in value:
            numerator, denominator = value.split(":", 1)
            return Fraction(int(numerator), int(denominator))
        return Fraction(value).limit_denominator(1000)
    if isinstance(value, (int, float, Fraction)):
        return Fraction(value).limit_denominator(1000)
    numerator, denominator = list(value)
    return Fraction(int(numerator), int(denominator))


def plan_geometry(
    width: int,
    height: int,
    *,
    content_ratio: Ratio = CONTENT_RATIO,
    total_ratio: Ratio = TOTAL_RATIO,
    min_band_height: int = MIN_BAND_HEIGHT,
    epsilon: float = RATIO_EPSILON,
) -> GeometryPlan:
    """
    Compute the crop window and band height for a source of the given size.

    Example:
        >>> plan_geometry(3000, 3000)
        GeometryPlan(content_width=3000, content_height=2000, band_height=250, rotated=False, crop_left=0, crop_top=500)
    """
    if width <= 0 or height <= 0:
        raise DimensionExtractionFailed(f"Invalid image dimensions {width}x{height}", stage="geometry")

    content_ratio = parse_ratio(content_ratio)
    total_ratio = parse_ratio(total_ratio)

    rotated = width < height
    if rotated:
        width, height = height, width

    left = 0
    top = 0
    current_ratio = Fraction(width, height)
    if abs(current_ratio - content_ratio) > epsilon:
        if current_ratio > content_ratio:
            target_width = round_half_up(height * content_ratio)
            left = round_half_up(Fraction(width - target_width, 2))
            width = target_width
        else:
            target_height = round_half_up(width / content_ratio)
            top = round_half_up(Fraction(height - target_height, 2))
            height = target_height

    total_height = round_half_up(width / total_ratio)
    band_height = total_height - height

    if band_height <= 0:
        max_content_height = math.floor(width / total_ratio) - min_band_height
        if 0 < max_content_height < height:
            top += round_half_up(Fraction(height - max_content_height, 2))
            height = max_content_height
            band_height = total_height - height

    return GeometryPlan(
        content_width=width,
        content_height=height,
        band_height=band_height,
        rotated=rotated,
        crop_left=left,
        crop_top=top,
    )


def font_size_for(band_height: int) -> int:
    """Font size for band text; never smaller than 8."""
    return max(8, round_half_up(Fraction(band_height, 4)))
