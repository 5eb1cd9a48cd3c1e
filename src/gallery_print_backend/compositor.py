"""
Print sheet composition.

Lays out the cropped photo, the colored information band underneath it, the
QR code in the middle of the band and the four corner captions. All inputs
are already planned (geometry) and chosen (colors); this module only draws.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

from PIL import Image, ImageDraw, ImageFont

from .color import ColorScheme
from .geometry import GeometryPlan, font_size_for
from .metadata import CaptureMetadata
from .qr import code_position
from .utils import round_half_up

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
STROKE_WIDTH = 1

Font = Union[ImageFont.FreeTypeFont, ImageFont.ImageFont]


def format_focal_length(value: Optional[float]) -> str:
    return f"{value:g}mm" if value else ""


def format_aperture(value: Optional[float]) -> str:
    return f"f/{value:g}" if value else ""


def format_exposure(value: Optional[float]) -> str:
    """
    Shutter speed as photographers write it.

    Example:
        >>> format_exposure(0.004)
        '1/250s'
        >>> format_exposure(2.0)
        '2s'
    """
    if not value or value <= 0:
        return ""
    if value < 1:
        return f"1/{round_half_up(1 / value)}s"
    return f"{value:g}s"


@dataclass(frozen=True)
class BandText:
    """The four captions drawn in the band corners."""

    top_left: str = ""
    top_right: str = ""
    bottom_left: str = ""
    bottom_right: str = ""

    @classmethod
    def from_metadata(cls, metadata: CaptureMetadata, location_name: str, photographer: str) -> "BandText":
        timestamp = metadata.taken_at.strftime(TIMESTAMP_FORMAT) if metadata.taken_at else ""

        credit = f"Photo by {photographer}" if photographer else ""
        if credit and metadata.model:
            credit = f"{credit} with {metadata.model}"

        settings = [
            format_focal_length(metadata.focal_length),
            format_aperture(metadata.f_number),
            format_exposure(metadata.exposure_time),
            f"ISO{metadata.iso}" if metadata.iso else "",
        ]
        return cls(
            top_left=timestamp,
            top_right=location_name or "",
            bottom_left=credit,
            bottom_right=" ".join(part for part in settings if part),
        )


def load_font(size: int, font_path: Optional[str] = None) -> Font:
    if font_path:
        try:
            return ImageFont.truetype(font_path, size)
        except OSError as exc:
            logger.warning(f"Font {font_path} unavailable ({exc}); using default font")
    return ImageFont.load_default(size=size)


def _draw_caption(
    draw: ImageDraw.ImageDraw,
    text: str,
    font: Font,
    colors: ColorScheme,
    *,
    x: int,
    y: int,
    align_right: bool,
    align_bottom: bool,
) -> None:
    if not text:
        return
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font, stroke_width=STROKE_WIDTH)
    origin_x = x - right if align_right else x - left
    origin_y = y - bottom if align_bottom else y - top
    draw.text(
        (origin_x, origin_y),
        text,
        font=font,
        fill=colors.foreground_hex,
        stroke_width=STROKE_WIDTH,
        stroke_fill=colors.outline_hex,
    )


def compose_print(
    content: Image.Image,
    plan: GeometryPlan,
    colors: ColorScheme,
    code: Optional[Image.Image],
    text: BandText,
    font_path: Optional[str] = None,
) -> Image.Image:
    """
    Build the print sheet in the (possibly rotated) landscape frame.

    Args:
        content: Cropped photo, ``plan.content_width`` x ``plan.content_height``
        plan: Geometry plan the content was cropped with
        colors: Band background and caption colors
        code: RGBA QR code, or None to leave the band center empty
        text: Corner captions
        font_path: Optional TrueType font; Pillow's default font otherwise

    Returns:
        RGB image of ``plan.content_width`` x ``plan.total_height``. A
        degenerate plan has no band, so the content is returned unchanged.
    """
    if plan.degenerate:
        logger.warning(f"No room for an information band ({plan.band_height}px); printing photo only")
        return content.convert("RGB")

    width = plan.content_width
    canvas = Image.new("RGBA", (width, plan.total_height), (0, 0, 0, 0))
    canvas.paste(content.convert("RGBA"), (0, 0))

    band = Image.new("RGBA", (width, plan.band_height), (*colors.background, 255))
    canvas.alpha_composite(band, (0, plan.content_height))

    if code is not None:
        x, y = code_position(width, plan.content_height, plan.band_height, code.width)
        # The photo above the band is never drawn over.
        canvas.alpha_composite(code, (max(0, x), max(plan.content_height, y)))

    font_size = font_size_for(plan.band_height)
    margin = max(4, round_half_up(font_size / 2))
    font = load_font(font_size, font_path)
    draw = ImageDraw.Draw(canvas)

    band_top = plan.content_height + margin
    band_bottom = plan.total_height - margin
    right_edge = width - margin

    _draw_caption(draw, text.top_left, font, colors, x=margin, y=band_top, align_right=False, align_bottom=False)
    _draw_caption(draw, text.top_right, font, colors, x=right_edge, y=band_top, align_right=True, align_bottom=False)
    _draw_caption(draw, text.bottom_left, font, colors, x=margin, y=band_bottom, align_right=False, align_bottom=True)
    _draw_caption(draw, text.bottom_right, font, colors, x=right_edge, y=band_bottom, align_right=True, align_bottom=True)

    return canvas.convert("RGB")
