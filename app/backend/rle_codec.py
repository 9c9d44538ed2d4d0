"""Run-length encoding helpers for segmentation masks.

The segmentation backend returns one RLE string per mask. Runs alternate
between background and foreground, starting with background, and cover the
mask in row-major order. A handful of legacy producers emit other textual
forms, all of which are normalised by :func:`parse_rle`.

Decoding is lenient by default: an encoding whose runs do not add up to
``width * height`` is zero-padded or truncated rather than rejected. Pass
``strict=True`` (or set ``STRICT_RLE_VALIDATION``) to turn those cases into
:class:`RLEValidationError`.
"""

# project_root/app/backend/rle_codec.py
import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

import config

logger = logging.getLogger(__name__)

_DIGITS = re.compile(r"\d+")


class RLEValidationError(ValueError):
    """Raised in strict mode when RLE data does not describe the mask exactly."""


def _strict(strict: Optional[bool]) -> bool:
    return config.STRICT_RLE_VALIDATION if strict is None else strict


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def parse_rle(rle_data: Any) -> Tuple[List[int], bool]:
    """Normalise RLE input into a list of integers.

    Returns ``(runs, positional)``. ``positional`` is ``True`` when the input
    was separated by whitespace only, which marks ``start length`` pairs rather than
    alternating run lengths.
    """
    if rle_data is None:
        return [], False
    if isinstance(rle_data, np.ndarray):
        return [int(v) for v in rle_data.ravel()], False
    if isinstance(rle_data, (list, tuple)):
        runs = [_to_int(v) for v in rle_data]
        return [v for v in runs if v is not None], False
    if not isinstance(rle_data, str):
        raise TypeError(f"Unsupported RLE data type: {type(rle_data).__name__}")

    text = rle_data.strip()
    if not text:
        return [], False
    if text.startswith("["):
        values = json.loads(text)
        if not isinstance(values, list):
            raise ValueError("RLE JSON must be an array")
        runs = [_to_int(v) for v in values]
        return [v for v in runs if v is not None], False
    if "," in text:
        runs = [_to_int(v) for v in text.split(",")]
        return [v for v in runs if v is not None], False
    if any(c.isspace() for c in text):
        runs = [_to_int(v) for v in text.split()]
        return [v for v in runs if v is not None], True
    return [int(v) for v in _DIGITS.findall(text)], False


def decode_rle(
    run_lengths: Sequence[int],
    width: int,
    height: int,
    strict: Optional[bool] = None,
) -> np.ndarray:
    """Decode alternating background/foreground run lengths into a flat mask.

    The output has ``width * height`` cells. Runs past the end of the mask
    are dropped and cells never reached stay 0.
    """
    total_pixels = width * height
    mask = np.zeros(total_pixels, dtype=np.uint8)

    if _strict(strict):
        if any(r < 0 for r in run_lengths):
            raise RLEValidationError("RLE contains negative run lengths")
        run_total = int(sum(run_lengths))
        if run_total != total_pixels:
            raise RLEValidationError(
                f"RLE covers {run_total} pixels, expected {total_pixels} ({width}x{height})"
            )

    pos = 0
    is_background = True
    for run in run_lengths:
        if pos >= total_pixels:
            break
        end = min(pos + max(int(run), 0), total_pixels)
        if not is_background:
            mask[pos:end] = 1
        pos = end
        is_background = not is_background
    return mask


def decode_rle_positional(
    pairs: Sequence[int],
    width: int,
    height: int,
    strict: Optional[bool] = None,
) -> np.ndarray:
    """Decode ``start length start length ...`` pairs into a flat mask."""
    total_pixels = width * height
    mask = np.zeros(total_pixels, dtype=np.uint8)

    if _strict(strict) and len(pairs) % 2:
        raise RLEValidationError("Positional RLE has an unpaired start index")

    for i in range(0, len(pairs) - 1, 2):
        start, length = int(pairs[i]), int(pairs[i + 1])
        if start < 0 or start >= total_pixels:
            if _strict(strict):
                raise RLEValidationError(f"Run start {start} outside mask")
            continue
        end = min(start + max(length, 0), total_pixels)
        if _strict(strict) and start + length > total_pixels:
            raise RLEValidationError(f"Run at {start} overruns mask by {start + length - total_pixels}")
        mask[start:end] = 1
    return mask


def decode_rle_data(
    rle_data: Any,
    width: int = config.DEFAULT_MASK_WIDTH,
    height: int = config.DEFAULT_MASK_HEIGHT,
    strict: Optional[bool] = None,
) -> np.ndarray:
    """Decode RLE data in any supported form.

    In lenient mode unparseable input is logged and yields an empty mask.
    """
    if rle_data is None or (isinstance(rle_data, str) and not rle_data.strip()):
        if _strict(strict):
            raise RLEValidationError("No RLE data provided")
        logger.warning("No RLE data provided")
        return np.zeros(width * height, dtype=np.uint8)

    try:
        runs, positional = parse_rle(rle_data)
    except (TypeError, ValueError) as e:
        if _strict(strict):
            raise RLEValidationError(f"Could not parse RLE data: {e}") from e
        logger.error("Error decoding RLE: %s", e)
        return np.zeros(width * height, dtype=np.uint8)

    if positional:
        return decode_rle_positional(runs, width, height, strict=strict)
    return decode_rle(runs, width, height, strict=strict)


def encode_rle(mask: Any) -> List[int]:
    """Encode a binary mask (flat or 2D, row-major) into alternating run lengths.

    The first run always counts background pixels and may be 0.
    """
    flat = (np.asarray(mask).ravel() != 0).astype(np.int8)
    if flat.size == 0:
        return []
    # Indices where the value changes, bracketed by the mask boundaries
    changes = np.flatnonzero(np.diff(flat)) + 1
    bounds = np.concatenate(([0], changes, [flat.size]))
    counts = np.diff(bounds).tolist()
    if flat[0] == 1:
        counts.insert(0, 0)
    return [int(c) for c in counts]


def validate_rle_data(
    rle_data: Any,
    width: int = config.DEFAULT_MASK_WIDTH,
    height: int = config.DEFAULT_MASK_HEIGHT,
) -> Dict[str, Any]:
    """Summarise RLE data without raising."""
    total_pixels = width * height
    if isinstance(rle_data, (str, list, tuple)):
        data_length = len(rle_data)
    else:
        data_length = 0
    try:
        runs, positional = parse_rle(rle_data)
        mask = decode_rle_data(rle_data, width, height, strict=False)
    except (TypeError, ValueError) as e:
        return {
            "valid": False,
            "error": str(e),
            "pixel_count": 0,
            "coverage": 0.0,
            "is_empty": True,
            "data_length": data_length,
        }

    pixel_count = int(mask.sum())
    run_total = None if positional else int(sum(runs))
    return {
        "valid": True,
        "pixel_count": pixel_count,
        "coverage": round(pixel_count / total_pixels * 100, 2) if total_pixels else 0.0,
        "is_empty": pixel_count == 0,
        "data_length": data_length,
        "positional": positional,
        "run_total": run_total,
        "exact": run_total == total_pixels if run_total is not None else None,
    }
