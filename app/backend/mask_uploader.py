"""Mask upload orchestration.

Decodes the RLE masks of a segmentation document, converts them with
``export_logic`` and posts them to the backend through an injected HTTP
client (see ``api_client``).

Input/Output:
    * Inputs: decoded masks or whole segmentation documents plus upload
      options (project, indices, class, format).
    * Outputs: plain result dictionaries. Upload failures are reported in the
      result (``success: False`` plus ``error``) and never raised, so a batch
      always runs to completion.

Batch uploads are sequential by default. ``max_workers > 1`` runs the masks
of each slice on a bounded thread pool; results keep the order of the masks
in the document either way. A ``threading.Event`` passed as ``cancel_event``
stops work that has not started yet and returns what already finished.
"""

# project_root/app/backend/mask_uploader.py
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np
import requests

import config
from . import export_logic, rle_codec, segmentation_document

logger = logging.getLogger(__name__)

EMPTY_MASK_ERROR = "Empty mask (no foreground pixels)"


def build_mask_filename(class_name: str, frame_index: int, slice_index: int, fmt: str) -> str:
    stem = f"mask_{class_name}_f{frame_index}_s{slice_index}"
    if fmt == "png":
        return f"{stem}.png"
    if fmt == "json":
        return f"{stem}.json"
    if fmt == "compressed":
        return f"{stem}_compressed.json"
    if fmt == "base64":
        return f"{stem}.txt"
    raise ValueError(f"Unsupported format: {fmt}")


def _encode_payload(
    mask: np.ndarray,
    width: int,
    height: int,
    fmt: str,
    color: str,
    background_color: str,
    metadata: Dict[str, Any],
):
    """Return ``(payload_bytes, content_type)`` for the requested format."""
    if fmt == "png":
        return export_logic.to_png(mask, width, height, color, background_color), "image/png"
    if fmt == "json":
        record = export_logic.to_json(mask, width, height, metadata)
        return json.dumps(record, indent=2).encode("utf-8"), "application/json"
    if fmt == "compressed":
        record = export_logic.to_compressed_json(mask, width, height, metadata)
        return json.dumps(record, indent=2).encode("utf-8"), "application/json"
    if fmt == "base64":
        data_uri = export_logic.to_base64(mask, width, height, color, background_color)
        return data_uri.encode("utf-8"), "text/plain"
    raise ValueError(f"Unsupported format: {fmt}")


def _describe_error(exc: Exception):
    """Turn an exception into ``(message, details)`` for a failure result."""
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        try:
            details = exc.response.json()
        except ValueError:
            details = None
        message = details.get("message") if isinstance(details, dict) else None
        return message or f"Server error: {exc.response.status_code}", details
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return "Network error: Unable to reach server", None
    return str(exc) or exc.__class__.__name__, None


def _reported_s3_url(response: Any) -> Optional[str]:
    """Read ``s3Url`` from an accepted upload; a body without JSON reports none."""
    try:
        body = response.json()
    except ValueError:
        return None
    return body.get("s3Url") if isinstance(body, dict) else None


def upload_mask(
    mask: np.ndarray,
    width: int,
    height: int,
    *,
    project_id: Any,
    frame_index: int,
    slice_index: int,
    class_name: str,
    format: str = config.DEFAULT_UPLOAD_FORMAT,
    color: Optional[str] = None,
    background_color: str = "transparent",
    http_client: Any = None,
    upload_path: str = config.MASK_UPLOAD_PATH,
) -> Dict[str, Any]:
    """Encode one mask and upload it as a multipart form.

    Raises ``ValueError`` only for missing arguments. Everything that goes
    wrong while encoding or uploading is returned as a failure result.
    """
    if http_client is None:
        raise ValueError("An HTTP client is required for uploading masks")
    if project_id in (None, "") or frame_index is None or slice_index is None or not class_name:
        raise ValueError(
            "Missing required parameters: project_id, frame_index, slice_index, or class_name"
        )

    try:
        filename = build_mask_filename(class_name, frame_index, slice_index, format)
        metadata = {
            "project_id": project_id,
            "frame_index": frame_index,
            "slice_index": slice_index,
            "class_name": class_name,
        }
        payload, content_type = _encode_payload(
            mask,
            width,
            height,
            format,
            color or config.DEFAULT_MASK_COLOR,
            background_color,
            metadata,
        )
        form = {
            "projectId": str(project_id),
            "frameIndex": str(frame_index),
            "sliceIndex": str(slice_index),
            "className": class_name,
            "format": format,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        response = http_client.post(
            upload_path,
            files={"file": (filename, payload, content_type)},
            data=form,
        )
        return {
            "class_name": class_name,
            "success": True,
            "s3_url": _reported_s3_url(response),
            "filename": filename,
            "size": len(payload),
            "format": format,
            "uploaded_at": datetime.now(timezone.utc).isoformat(),
        }
    except Exception as e:
        message, details = _describe_error(e)
        logger.error(
            "Error uploading mask %s (frame %s, slice %s): %s",
            class_name,
            frame_index,
            slice_index,
            message,
        )
        result = {"class_name": class_name, "success": False, "error": message}
        if details is not None:
            result["details"] = details
        return result


def _run_in_order(
    func: Callable[[Any], Dict[str, Any]],
    items: Sequence[Any],
    max_workers: int,
    cancel_event: Optional[threading.Event],
) -> List[Dict[str, Any]]:
    """Apply ``func`` to ``items`` with at most ``max_workers`` in flight.

    Results come back in item order; items skipped after cancellation are
    left out.
    """

    def guarded(item):
        if cancel_event is not None and cancel_event.is_set():
            return None
        return func(item)

    if max_workers <= 1 or len(items) <= 1:
        results = []
        for item in items:
            result = guarded(item)
            if result is None:
                break
            results.append(result)
        return results

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = [executor.submit(guarded, item) for item in items]
        results = [f.result() for f in futures]
    return [r for r in results if r is not None]


def upload_masks_for_slice(
    document: Dict[str, Any],
    frame_index: int,
    slice_index: int,
    *,
    project_id: Any,
    http_client: Any,
    format: str = config.DEFAULT_UPLOAD_FORMAT,
    color: Optional[str] = None,
    width: int = config.DEFAULT_MASK_WIDTH,
    height: int = config.DEFAULT_MASK_HEIGHT,
    max_workers: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
    upload_path: str = config.MASK_UPLOAD_PATH,
) -> List[Dict[str, Any]]:
    """Decode and upload every mask of one slice.

    Masks without RLE content are omitted. A failure on one mask is recorded
    in its result and does not stop the others. Raises ``LookupError`` when
    the slice is not part of the document.
    """
    slice_data = segmentation_document.get_slice(document, frame_index, slice_index)
    if slice_data is None:
        raise LookupError(
            f"No segmentation data found for frame {frame_index}, slice {slice_index}"
        )
    return _upload_slice_masks(
        slice_data,
        frame_index,
        slice_index,
        project_id=project_id,
        http_client=http_client,
        format=format,
        color=color,
        width=width,
        height=height,
        max_workers=max_workers,
        cancel_event=cancel_event,
        upload_path=upload_path,
    )


def _upload_slice_masks(
    slice_data: Dict[str, Any],
    frame_index: int,
    slice_index: int,
    *,
    project_id: Any,
    http_client: Any,
    format: str,
    color: Optional[str],
    width: int,
    height: int,
    max_workers: Optional[int],
    cancel_event: Optional[threading.Event],
    upload_path: str,
) -> List[Dict[str, Any]]:
    masks = segmentation_document.get_slice_masks(slice_data)
    pending = [m for m in masks if segmentation_document.get_rle_content(m) is not None]
    if len(pending) < len(masks):
        logger.debug(
            "Frame %s slice %s: skipping %d mask(s) without RLE data",
            frame_index,
            slice_index,
            len(masks) - len(pending),
        )

    def process(mask_entry: Dict[str, Any]) -> Dict[str, Any]:
        class_name = mask_entry.get("class")
        try:
            binary_mask = rle_codec.decode_rle_data(
                segmentation_document.get_rle_content(mask_entry), width, height
            )
            pixel_count = int(binary_mask.sum())
            if pixel_count == 0:
                return {"class_name": class_name, "success": False, "error": EMPTY_MASK_ERROR}
            result = upload_mask(
                binary_mask,
                width,
                height,
                project_id=project_id,
                frame_index=frame_index,
                slice_index=slice_index,
                class_name=class_name,
                format=format,
                color=color,
                http_client=http_client,
                upload_path=upload_path,
            )
            return {"pixel_count": pixel_count, **result}
        except Exception as e:
            logger.error("Error processing mask for class %s: %s", class_name, e, exc_info=True)
            return {"class_name": class_name, "success": False, "error": str(e)}

    workers = config.MAX_CONCURRENT_UPLOADS if max_workers is None else max_workers
    return _run_in_order(process, pending, workers, cancel_event)


def upload_all_masks(
    document: Dict[str, Any],
    project_id: Any,
    http_client: Any,
    *,
    format: str = config.DEFAULT_UPLOAD_FORMAT,
    color: Optional[str] = None,
    width: int = config.DEFAULT_MASK_WIDTH,
    height: int = config.DEFAULT_MASK_HEIGHT,
    max_workers: Optional[int] = None,
    progress_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    cancel_event: Optional[threading.Event] = None,
    upload_path: str = config.MASK_UPLOAD_PATH,
) -> List[Dict[str, Any]]:
    """Upload the masks of every slice in the document.

    Returns one record per slice, in document order. A slice that fails as a
    whole gets ``success: False`` and an ``error`` string; the remaining
    slices are still processed.
    """
    total = segmentation_document.count_masks(document)
    processed = 0
    records: List[Dict[str, Any]] = []

    for frame_index, slice_index, slice_data in segmentation_document.iter_slices(document):
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Batch upload cancelled after %d slice(s)", len(records))
            break
        try:
            results = _upload_slice_masks(
                slice_data,
                frame_index,
                slice_index,
                project_id=project_id,
                http_client=http_client,
                format=format,
                color=color,
                width=width,
                height=height,
                max_workers=max_workers,
                cancel_event=cancel_event,
                upload_path=upload_path,
            )
            records.append(
                {
                    "frame_index": frame_index,
                    "slice_index": slice_index,
                    "results": results,
                    "success": True,
                }
            )
        except Exception as e:
            logger.error("Error processing frame %s, slice %s: %s", frame_index, slice_index, e)
            records.append(
                {
                    "frame_index": frame_index,
                    "slice_index": slice_index,
                    "error": str(e),
                    "success": False,
                }
            )

        processed += len(segmentation_document.get_slice_masks(slice_data))
        if progress_callback:
            progress_callback(
                {
                    "processed": processed,
                    "total": total,
                    "percentage": round(processed / total * 100) if total else 100,
                }
            )

    return records


def summarize_upload_records(records: List[Dict[str, Any]]) -> Dict[str, int]:
    """Count slice and mask outcomes of :func:`upload_all_masks`."""
    mask_results = [r for rec in records for r in rec.get("results", [])]
    return {
        "slices": len(records),
        "failed_slices": sum(1 for rec in records if not rec.get("success")),
        "masks_uploaded": sum(1 for r in mask_results if r.get("success")),
        "masks_failed": sum(1 for r in mask_results if not r.get("success")),
    }
