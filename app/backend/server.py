#!/usr/bin/env python3
"""FastAPI server for the SegMRI viewer.

Exposes the mask codec and the tar extractor over HTTP so a viewer can load
an image archive, page through frames and slices, and render or upload mask
overlays. Business logic lives in ``rle_codec``, ``export_logic``,
``mask_uploader`` and ``tar_extractor``.
"""

import logging
import os
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response

import config
from Modules import mask_visualizer
from . import export_logic, mask_uploader, rle_codec, segmentation_document, tar_extractor
from .api_client import ApiClient

logger = logging.getLogger(__name__)

app = FastAPI(title="SegMRI viewer")

# Archive currently loaded by the viewer (single user assumption)
ACTIVE_IMAGE_SET: Optional[tar_extractor.ExtractedImageSet] = None


def get_active_image_set() -> Optional[tar_extractor.ExtractedImageSet]:
    return ACTIVE_IMAGE_SET


def set_active_image_set(image_set: Optional[tar_extractor.ExtractedImageSet]):
    global ACTIVE_IMAGE_SET
    previous = ACTIVE_IMAGE_SET
    ACTIVE_IMAGE_SET = image_set
    if previous is not None and previous is not image_set:
        previous.release()


def _require_image_set() -> tar_extractor.ExtractedImageSet:
    image_set = get_active_image_set()
    if image_set is None or image_set.released:
        raise HTTPException(status_code=404, detail="No archive loaded")
    return image_set


def _archive_summary(image_set: tar_extractor.ExtractedImageSet) -> dict:
    frames, slices = image_set.frames_and_slices()
    return {"success": True, "count": len(image_set), "frames": frames, "slices": slices}


def _number_field(payload: dict, key: str, default, cast=int):
    value = payload.get(key)
    if value is None:
        value = default
    if value is None:
        return None
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"{key} must be a number, got {value!r}")


def _mask_geometry(payload: dict):
    width = _number_field(payload, "width", config.DEFAULT_MASK_WIDTH)
    height = _number_field(payload, "height", config.DEFAULT_MASK_HEIGHT)
    if width <= 0 or height <= 0:

        raise HTTPException(status_code=400, detail="width and height must be positive")
    return width, height


def _decode_payload_mask(payload: dict, width: int, height: int):
    try:
        return rle_codec.decode_rle_data(
            payload.get("rle"), width, height, strict=payload.get("strict")
        )
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))


# === Image archive ===
@app.post("/api/archive/load")
async def api_load_archive(payload: dict):
    url = payload.get("url")
    if not url:
        raise HTTPException(status_code=400, detail="url is required")
    try:
        image_set = await run_in_threadpool(
            tar_extractor.extract_images_from_url, url, strict=payload.get("strict")
        )
    except tar_extractor.TarFetchError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except tar_extractor.TarFormatError as e:
        raise HTTPException(status_code=400, detail=str(e))
    set_active_image_set(image_set)
    return _archive_summary(image_set)


@app.get("/api/archive")
async def api_get_archive():
    return _archive_summary(_require_image_set())


@app.delete("/api/archive")
async def api_release_archive():
    set_active_image_set(None)
    return {"success": True}


@app.get("/api/archive/image")
async def api_get_closest_image(frame: int, slice: int):
    image_set = _require_image_set()
    image = image_set.closest(frame, slice)
    if image is None:
        raise HTTPException(
            status_code=404, detail=f"No image available near frame {frame}, slice {slice}"
        )
    content = await run_in_threadpool(image.read_bytes)
    return Response(
        content=content,
        media_type=image.media_type,
        headers={
            "X-Image-Name": os.path.basename(image.name),
            "X-Frame-Index": str(image.frame),
            "X-Slice-Index": str(image.slice),
        },
    )


# === Masks ===
@app.post("/api/masks/validate")
async def api_validate_mask(payload: dict):
    width, height = _mask_geometry(payload)
    return rle_codec.validate_rle_data(payload.get("rle"), width, height)


@app.post("/api/masks/render")
async def api_render_mask(payload: dict):
    """Render one RLE mask as an overlay PNG, optionally over an archive image."""
    width, height = _mask_geometry(payload)
    mask = _decode_payload_mask(payload, width, height)
    color = payload.get("color") or mask_visualizer.get_class_color(payload.get("class"))
    opacity = _number_field(payload, "opacity", config.DEFAULT_OPACITY, float)

    base_image = None
    frame_index = _number_field(payload, "frame", None)
    slice_index = _number_field(payload, "slice", None)
    if frame_index is not None and slice_index is not None:
        image = _require_image_set().closest(frame_index, slice_index)
        if image is not None:
            base_image = mask_visualizer.open_image_bytes(image.read_bytes())

    def render():
        surface = mask_visualizer.render_slice_overlay(
            [{"class": payload.get("class"), "color": color, "mask": mask}],
            width,
            height,
            base_image=base_image,
            opacity=opacity,
        )
        return mask_visualizer.surface_to_png_bytes(surface)

    try:
        png_bytes = await run_in_threadpool(render)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return Response(content=png_bytes, media_type="image/png")


@app.post("/api/masks/convert")
async def api_convert_mask(payload: dict):
    width, height = _mask_geometry(payload)
    mask = _decode_payload_mask(payload, width, height)
    fmt = payload.get("format", "png")
    color = payload.get("color") or config.DEFAULT_MASK_COLOR
    background = payload.get("background_color", "transparent")
    try:
        if fmt == "png":
            png_bytes = await run_in_threadpool(
                export_logic.to_png, mask, width, height, color, background
            )
            return Response(content=png_bytes, media_type="image/png")
        if fmt == "json":
            return export_logic.to_json(mask, width, height, payload.get("metadata"))
        if fmt == "compressed":
            return export_logic.to_compressed_json(mask, width, height, payload.get("metadata"))
        if fmt == "base64":
            data_uri = await run_in_threadpool(
                export_logic.to_base64, mask, width, height, color, background
            )
            return {"data": data_uri}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    raise HTTPException(status_code=400, detail=f"Unsupported format: {fmt}")


@app.post("/api/slices/render")
async def api_render_slice(payload: dict):
    """Composite every mask of one document slice over the closest archive image."""
    document = payload.get("document") or {}
    frame_index = _number_field(payload, "frame", 0)
    slice_index = _number_field(payload, "slice", 0)
    width, height = _mask_geometry(payload)
    opacity = _number_field(payload, "opacity", config.DEFAULT_OPACITY, float)
    slice_data = segmentation_document.get_slice(document, frame_index, slice_index)
    if slice_data is None:
        raise HTTPException(status_code=404, detail="Slice not found in document")

    base_image = None
    image_set = get_active_image_set()
    if image_set is not None and not image_set.released:
        image = image_set.closest(frame_index, slice_index)
        if image is not None:
            base_image = mask_visualizer.open_image_bytes(image.read_bytes())

    masks = [
        {
            "class": entry.get("class"),
            "mask": rle_codec.decode_rle_data(
                segmentation_document.get_rle_content(entry), width, height
            ),
        }
        for entry in segmentation_document.get_slice_masks(slice_data)
        if segmentation_document.get_rle_content(entry) is not None
    ]

    def render():
        surface = mask_visualizer.render_slice_overlay(
            masks,
            width,
            height,
            base_image=base_image,
            opacity=opacity,
            hidden_classes=payload.get("hidden_classes") or (),
        )
        return mask_visualizer.surface_to_png_bytes(surface)

    png_bytes = await run_in_threadpool(render)
    return Response(content=png_bytes, media_type="image/png")


@app.post("/api/masks/upload_all")
async def api_upload_all_masks(payload: dict):
    document = payload.get("document")
    project_id = payload.get("project_id")
    if not document or project_id in (None, ""):
        raise HTTPException(status_code=400, detail="document and project_id are required")
    fmt = payload.get("format", config.DEFAULT_UPLOAD_FORMAT)
    if fmt not in config.SUPPORTED_UPLOAD_FORMATS:
        raise HTTPException(status_code=400, detail=f"Unsupported format: {fmt}")
    max_workers = _number_field(payload, "max_workers", None)
    if max_workers is not None and max_workers < 1:
        raise HTTPException(status_code=400, detail="max_workers must be at least 1")

    def run_batch():
        with ApiClient() as client:
            return mask_uploader.upload_all_masks(
                document,
                project_id,
                client,
                format=fmt,
                max_workers=max_workers,
            )

    records = await run_in_threadpool(run_batch)
    return {
        "success": True,
        "summary": mask_uploader.summarize_upload_records(records),
        "records": records,
    }


@app.on_event("shutdown")
def release_on_shutdown():
    set_active_image_set(None)


def run_server(host=config.SERVER_HOST, port=config.SERVER_PORT, debug=False):
    import uvicorn

    logger.info("Starting SegMRI viewer on %s:%s", host, port)
    uvicorn.run("app.backend.server:app", host=host, port=port, reload=debug)


if __name__ == "__main__":
    run_server(debug=True)
