"""
QR code rendering for the print band.

The code links back to the photo's page on the gallery site and is drawn in
the band's foreground color on a transparent background so the band color
shows through.
"""

from __future__ import annotations

from fractions import Fraction

import qrcode
from PIL import Image

from .utils import round_half_up, split_extension

CODE_MARGIN = 20
MIN_CODE_SIZE = 21
QUIET_ZONE = 2


def build_code_url(site_url: str, storage_key: str) -> str:
    """
    Canonical page URL for a stored photo.

    Example:
        >>> build_code_url("https://gallery.example.com/", "photos/IMG_0001.jpg")
        'https://gallery.example.com/IMG_0001'
    """
    stem, _ = split_extension(storage_key)
    return f"{site_url.rstrip('/')}/{stem}"


def code_size(band_height: int, margin: int = CODE_MARGIN, minimum: int = MIN_CODE_SIZE) -> int:
    """Edge length of the code; never taller than the band it sits in."""
    return min(band_height, max(minimum, band_height - margin))


def code_position(content_width: int, content_height: int, band_height: int, size: int) -> tuple[int, int]:
    """Top-left corner that centers the code inside the band."""
    x = round_half_up(Fraction(content_width - size, 2))
    y = content_height + round_half_up(Fraction(band_height - size, 2))
    return x, y


def generate_code(url: str, size: int, foreground: str = "black") -> Image.Image:
    """
    Render ``url`` as a square RGBA QR code of exactly ``size`` pixels.

    Args:
        url: Content to encode
        size: Edge length of the output image in pixels
        foreground: Color of the dark modules (any Pillow color)

    Returns:
        RGBA image with transparent light modules
    """
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=1,
        border=QUIET_ZONE,
    )
    qr.add_data(url)
    qr.make(fit=True)

    # One pixel per module; scaled with nearest-neighbour to keep edges crisp.
    modules = qr.make_image(fill_color="black", back_color="white").convert("L")
    mask = modules.point(lambda value: 255 if value < 128 else 0)

    code = Image.new("RGBA", modules.size, (0, 0, 0, 0))
    code.paste(Image.new("RGBA", modules.size, foreground), (0, 0), mask)
    return code.resize((size, size), Image.Resampling.NEAREST)
