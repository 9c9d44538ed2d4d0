"""Accessors for segmentation documents returned by the backend.

A document is plain JSON::

    {"frames": [{"frameindex": 0,
                 "slices": [{"sliceindex": 0,
                             "segmentationmasks": [{"class": "RV",
                                                    "segmentationmaskcontents": "...",
                                                    "confidence": 0.93}]}]}]}

Nothing here validates the document; missing keys simply read as empty.
"""

# project_root/app/backend/segmentation_document.py
import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)


def get_frames(document: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not document:
        return []
    return [f for f in document.get("frames") or [] if f]


def _index_of(entry: Dict[str, Any], key: str, position: int) -> Optional[int]:
    value = entry.get(key)
    if value is None:
        return position
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Skipping entry at position %d with invalid %s: %r", position, key, value)
        return None


def iter_slices(document: Optional[Dict[str, Any]]) -> Iterator[Tuple[int, int, Dict[str, Any]]]:
    """Yield ``(frame_index, slice_index, slice)`` for every slice present.

    Missing or ``None`` slices are skipped, as are entries whose index is not
    an integer. Entries without an explicit index fall back to their
    position in the list.
    """
    for f_pos, frame in enumerate(get_frames(document)):
        frame_index = _index_of(frame, "frameindex", f_pos)
        if frame_index is None:
            continue
        for s_pos, slice_data in enumerate(frame.get("slices") or []):
            if not slice_data:
                continue
            slice_index = _index_of(slice_data, "sliceindex", s_pos)
            if slice_index is not None:
                yield frame_index, slice_index, slice_data


def get_slice(
    document: Optional[Dict[str, Any]], frame_index: int, slice_index: int
) -> Optional[Dict[str, Any]]:
    for f_idx, s_idx, slice_data in iter_slices(document):
        if f_idx == frame_index and s_idx == slice_index:
            return slice_data
    return None


def get_slice_masks(slice_data: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not slice_data:
        return []
    return [m for m in slice_data.get("segmentationmasks") or [] if m]


def get_rle_content(mask_entry: Dict[str, Any]) -> Optional[Any]:
    """Return the mask's RLE payload, preferring ``segmentationmaskcontents``."""
    content = mask_entry.get("segmentationmaskcontents") or mask_entry.get("rle")
    return content or None


def count_masks(document: Optional[Dict[str, Any]]) -> int:
    return sum(len(get_slice_masks(s)) for _, _, s in iter_slices(document))
