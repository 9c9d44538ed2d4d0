# Modules/raster_surface.py
"""Pixel-addressable drawing surfaces backed by Pillow.

Rendering code in this project never talks to Pillow directly; it goes
through the four operations below so that a different raster backend can be
dropped in without touching the codec.
"""

import io
from typing import Tuple

import numpy as np
from PIL import Image


def create_surface(width: int, height: int, fill: Tuple[int, int, int, int] = (0, 0, 0, 0)) -> Image.Image:
    """Create an RGBA surface, fully transparent unless ``fill`` is given."""
    if width <= 0 or height <= 0:
        raise ValueError(f"Surface dimensions must be positive, got {width}x{height}")
    return Image.new("RGBA", (width, height), fill)


def put_pixels(surface: Image.Image, rgba: np.ndarray) -> Image.Image:
    """Overwrite every pixel of ``surface`` with an RGBA buffer.

    ``rgba`` may be flat (``w*h*4``) or shaped ``(h, w, 4)``.
    """
    width, height = surface.size
    pixels = np.asarray(rgba, dtype=np.uint8)
    if pixels.size != width * height * 4:
        raise ValueError(
            f"Pixel buffer has {pixels.size} values, surface needs {width * height * 4}"
        )
    surface.paste(Image.fromarray(pixels.reshape(height, width, 4)), (0, 0))
    return surface


def draw_over(target: Image.Image, source: Image.Image) -> Image.Image:
    """Draw ``source`` onto ``target`` in place using source-over compositing."""
    if target.mode != "RGBA":
        raise ValueError("Target surface must be RGBA")
    target.alpha_composite(source.convert("RGBA"), (0, 0))
    return target


def to_encoded_bytes(surface: Image.Image, fmt: str = "PNG") -> bytes:
    """Encode a surface into image file bytes (PNG by default)."""
    fmt = fmt.upper()
    if fmt in ("JPEG", "JPG"):
        # No alpha channel in JPEG
        surface, fmt = surface.convert("RGB"), "JPEG"
    buffered = io.BytesIO()
    surface.save(buffered, format=fmt)
    return buffered.getvalue()
