# Modules/mask_visualizer.py
"""Helpers for mask colouring and overlay compositing"""

import io
import re
from typing import Any, Dict, Iterable, Optional, Tuple

import numpy as np
from PIL import Image

import config
from Modules import raster_surface

_HEX_COLOR = re.compile(r"^#[0-9a-fA-F]{6}$")


def parse_hex_color(color: str) -> Tuple[int, int, int]:
    """Parse ``#RRGGBB`` into an RGB tuple.

    Shorthand (``#F00``), alpha (``#RRGGBBAA``) and named colours are rejected.
    """
    if not isinstance(color, str) or not _HEX_COLOR.match(color):
        raise ValueError(f"Invalid colour {color!r}, expected #RRGGBB")
    return int(color[1:3], 16), int(color[3:5], 16), int(color[5:7], 16)


def opacity_to_alpha(opacity: float) -> int:
    """Map an opacity in [0, 1] to an 8-bit alpha, rounding half up (0.5 -> 128)."""
    opacity = min(max(float(opacity), 0.0), 1.0)
    return int(np.floor(opacity * 255 + 0.5))


def get_class_color(class_name: Optional[str]) -> str:
    return config.CLASS_COLORS.get(class_name, config.FALLBACK_CLASS_COLOR)


def build_overlay_rgba(
    mask: np.ndarray,
    width: int,
    height: int,
    color: str,
    alpha: int,
    background: Optional[Tuple[int, int, int, int]] = None,
) -> np.ndarray:
    """
    Build an (h, w, 4) RGBA buffer for a flat binary mask.
    Foreground cells get ``color`` at ``alpha``; every other cell is set to
    ``background`` (transparent black by default), never left untouched.
    """
    flat = np.asarray(mask).ravel()
    if flat.size != width * height:
        raise ValueError(f"Mask has {flat.size} cells, expected {width * height}")
    r, g, b = parse_hex_color(color)
    fg = flat == 1

    rgba = np.zeros((width * height, 4), dtype=np.uint8)
    if background is not None:
        rgba[:] = background
    rgba[fg] = (r, g, b, alpha)
    return rgba.reshape(height, width, 4)


def composite_onto_surface(
    surface: Image.Image,
    mask: np.ndarray,
    width: int,
    height: int,
    color: str,
    opacity: float = config.DEFAULT_OPACITY,
) -> Image.Image:
    """Draw a coloured mask over ``surface`` in place and return it."""
    rgba = build_overlay_rgba(mask, width, height, color, opacity_to_alpha(opacity))
    # Render into an offscreen surface first, then draw it over the target
    offscreen = raster_surface.create_surface(width, height)
    raster_surface.put_pixels(offscreen, rgba)
    return raster_surface.draw_over(surface, offscreen)


def render_slice_overlay(
    masks: Iterable[Dict[str, Any]],
    width: int,
    height: int,
    base_image: Optional[Image.Image] = None,
    opacity: float = config.DEFAULT_OPACITY,
    hidden_classes: Iterable[str] = (),
) -> Image.Image:
    """
    Composite every visible mask of a slice onto a base image.
    ``masks`` are dicts with ``class`` and a decoded ``mask`` array; the
    background is opaque black when no base image is supplied.
    """
    if base_image is not None:
        surface = base_image.convert("RGBA")
        if surface.size != (width, height):
            surface = surface.resize((width, height), Image.BILINEAR)
    else:
        surface = raster_surface.create_surface(width, height, (0, 0, 0, 255))

    hidden = set(hidden_classes)
    for entry in masks:
        class_name = entry.get("class")
        if class_name in hidden:
            continue
        color = entry.get("color") or get_class_color(class_name)
        composite_onto_surface(surface, entry["mask"], width, height, color, opacity)
    return surface


def surface_to_png_bytes(surface: Image.Image) -> bytes:
    return raster_surface.to_encoded_bytes(surface, "PNG")


def open_image_bytes(data: bytes) -> Image.Image:
    """Open encoded image bytes (JPEG/PNG) as a fully loaded Pillow image."""
    img = Image.open(io.BytesIO(data))
    img.load()
    return img

