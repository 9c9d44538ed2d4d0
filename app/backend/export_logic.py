"""Mask export helpers.

Functions here turn a decoded binary mask into the payloads the backend
stores: a coloured PNG, a dense or compressed JSON record, or a base64 data
URI. They do not touch the network; ``mask_uploader`` wraps the results in
multipart requests.
"""

# project_root/app/backend/export_logic.py
import base64
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import numpy as np

import config
from Modules import mask_visualizer, raster_surface

JSON_FORMAT_VERSION = "1.0"


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _coverage(pixel_count: int, width: int, height: int) -> float:
    total = width * height
    return round(pixel_count / total * 100, 2) if total else 0.0


def to_png(
    mask: np.ndarray,
    width: int,
    height: int,
    color: str = config.DEFAULT_MASK_COLOR,
    background_color: str = "transparent",
) -> bytes:
    """Encode a mask as PNG bytes.

    Foreground pixels are drawn in ``color`` at full opacity. Background is
    transparent unless an opaque ``background_color`` is given.
    """
    background = None
    if background_color != "transparent":
        background = (*mask_visualizer.parse_hex_color(background_color), 255)
    rgba = mask_visualizer.build_overlay_rgba(mask, width, height, color, 255, background)
    surface = raster_surface.create_surface(width, height)
    raster_surface.put_pixels(surface, rgba)
    return raster_surface.to_encoded_bytes(surface, "PNG")


def to_json(
    mask: np.ndarray, width: int, height: int, metadata: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    flat = np.asarray(mask, dtype=np.uint8).ravel()
    pixel_count = int(flat.sum())
    return {
        "width": width,
        "height": height,
        "pixel_count": pixel_count,
        "coverage": _coverage(pixel_count, width, height),
        "data": flat.tolist(),
        "format": "binary",
        "compressed": False,
        "timestamp": _utc_timestamp(),
        "version": JSON_FORMAT_VERSION,
        **(metadata or {}),
    }


def to_compressed_json(
    mask: np.ndarray, width: int, height: int, metadata: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Like :func:`to_json` but only stores the indices of foreground pixels."""
    flat = np.asarray(mask, dtype=np.uint8).ravel()
    foreground = np.flatnonzero(flat == 1).tolist()
    return {
        "width": width,
        "height": height,
        "pixel_count": len(foreground),
        "coverage": _coverage(len(foreground), width, height),
        "foreground_pixels": foreground,
        "format": "compressed",
        "compressed": True,
        "timestamp": _utc_timestamp(),
        "version": JSON_FORMAT_VERSION,
        **(metadata or {}),
    }


def to_base64(
    mask: np.ndarray,
    width: int,
    height: int,
    color: str = config.DEFAULT_MASK_COLOR,
    background_color: str = "transparent",
) -> str:
    png_bytes = to_png(mask, width, height, color, background_color)
    img_str = base64.b64encode(png_bytes).decode("utf-8")
    return f"data:image/png;base64,{img_str}"


def mask_from_json(record: Dict[str, Any]) -> np.ndarray:
    """Rebuild a flat mask from a record produced by either JSON exporter."""
    width, height = int(record["width"]), int(record["height"])
    if record.get("format") == "compressed":
        mask = np.zeros(width * height, dtype=np.uint8)
        indices = np.asarray(record.get("foreground_pixels", []), dtype=np.int64)
        mask[indices] = 1
        return mask
    mask = np.asarray(record["data"], dtype=np.uint8)
    if mask.size != width * height:
        raise ValueError(f"JSON mask has {mask.size} cells, expected {width * height}")
    return mask
