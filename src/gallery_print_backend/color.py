"""
Band color selection.

The band background is the average color of the photo, and the text and QR
code on it are either black or white depending on how bright that average
is. Text is outlined in the opposite color so it stays legible either way.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Tuple

from PIL import Image, ImageStat

from .utils import round_half_up

RGB = Tuple[int, int, int]
Foreground = Literal["black", "white"]

SAMPLE_WIDTH = 100
LUMINANCE_THRESHOLD = 0.5

_HEX = {"black": "#000000", "white": "#ffffff"}


@dataclass(frozen=True)
class ColorScheme:
    background: RGB
    foreground: Foreground

    @property
    def outline(self) -> Foreground:
        return "white" if self.foreground == "black" else "black"

    @property
    def foreground_hex(self) -> str:
        return _HEX[self.foreground]

    @property
    def outline_hex(self) -> str:
        return _HEX[self.outline]


def relative_luminance(rgb: RGB) -> float:
    r, g, b = (channel / 255 for channel in rgb)
    return 0.2126 * r + 0.7152 * g + 0.0722 * b


def pick_foreground(rgb: RGB) -> Foreground:
    """
    Black on bright backgrounds, white on dark ones.

    Example:
        >>> pick_foreground((128, 128, 128))
        'black'
    """
    return "black" if relative_luminance(rgb) > LUMINANCE_THRESHOLD else "white"


def mean_color(image: Image.Image, sample_width: int = SAMPLE_WIDTH) -> RGB:
    """Per-channel mean of a downsampled copy of the image."""
    sample = image.convert("RGB")
    if sample.width > sample_width:
        sample_height = max(1, round_half_up(sample.height * sample_width / sample.width))
        sample = sample.resize((sample_width, sample_height), Image.Resampling.BILINEAR)
    means = ImageStat.Stat(sample).mean
    return tuple(round_half_up(value) for value in means[:3])  # type: ignore[return-value]


def analyze_colors(image: Image.Image, sample_width: int = SAMPLE_WIDTH) -> ColorScheme:
    background = mean_color(image, sample_width)
    return ColorScheme(background=background, foreground=pick_foreground(background))
