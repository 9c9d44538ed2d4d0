"""Tar archive extraction for bulk image retrieval.

The backend ships the source images of a study as an uncompressed POSIX tar
archive whose members are named ``<anything>_<frame>_<slice>.jpg``. This
module parses the archive in memory, indexes the image members by
``(frame, slice)`` and writes each one to a file so that viewers can address
it by URL.

Input/Output:
    * Inputs: raw archive bytes or a (presigned) URL to download them from.
    * Outputs: :class:`TarFileRecord` entries and an :class:`ExtractedImageSet`
      of :class:`ProcessedImage` objects sorted by frame, then slice.

Ownership of the written files passes to the caller through the returned
:class:`ExtractedImageSet`. Call ``release()`` (or use it as a context
manager) once the images are no longer displayed.
"""

# project_root/app/backend/tar_extractor.py
import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import requests
from werkzeug.utils import secure_filename

import config

logger = logging.getLogger(__name__)

BLOCK_SIZE = config.TAR_BLOCK_SIZE
NAME_FIELD = slice(0, 100)
SIZE_FIELD = slice(124, 136)
TYPEFLAG_OFFSET = 156
REGULAR_FILE_FLAGS = (0, ord("0"))

_OCTAL = re.compile(r"[0-7]+")
_DECIMAL = re.compile(r"[0-9]+")


class TarFormatError(ValueError):
    """Raised in strict mode for truncated or malformed archives."""


class TarFetchError(RuntimeError):
    """Raised when an archive cannot be downloaded."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class TarFileRecord:
    name: str
    buffer: memoryview  # view into the archive, not a copy
    size: int

    def tobytes(self) -> bytes:
        return self.buffer.tobytes()


@dataclass
class ProcessedImage:
    name: str
    frame: int
    slice: int
    url: str
    size: int
    path: str
    media_type: str = "image/jpeg"

    def read_bytes(self) -> bytes:
        with open(self.path, "rb") as f:
            return f.read()


def _strict(strict: Optional[bool]) -> bool:
    return config.STRICT_TAR_VALIDATION if strict is None else strict


def _parse_octal_size(field: memoryview, strict: bool) -> int:
    text = bytes(field).decode("ascii", "replace").replace("\0", "").strip()
    if not text:
        return 0
    match = _OCTAL.match(text)
    if not match or (strict and match.group(0) != text):
        if strict:
            raise TarFormatError(f"Invalid size field {text!r}")
        return 0
    return int(match.group(0), 8)


def parse_tar_buffer(
    buffer: Union[bytes, bytearray, memoryview], strict: Optional[bool] = None
) -> List[TarFileRecord]:
    """Split a tar archive into regular-file records.

    Parsing stops at the first all-zero block. Directories and other special
    entries are skipped. In lenient mode a truncated header or payload ends
    parsing quietly; in strict mode it raises :class:`TarFormatError`.
    """
    strict = _strict(strict)
    view = memoryview(buffer)
    if view.ndim != 1 or view.itemsize != 1:
        view = view.cast("B")
    length = len(view)
    files: List[TarFileRecord] = []
    offset = 0

    while offset < length:
        header = view[offset : offset + BLOCK_SIZE]

        # End of archive
        if not any(header):
            break

        if len(header) < BLOCK_SIZE:
            if strict:
                raise TarFormatError(f"Truncated header at offset {offset}")
            logger.warning("Truncated tar header at offset %d, stopping", offset)
            break

        raw_name = bytes(header[NAME_FIELD])
        nul = raw_name.find(b"\0")
        if nul != -1:
            raw_name = raw_name[:nul]
        name = raw_name.decode("utf-8", "replace")
        size = _parse_octal_size(header[SIZE_FIELD], strict)
        is_regular_file = header[TYPEFLAG_OFFSET] in REGULAR_FILE_FLAGS

        data_start = offset + BLOCK_SIZE
        if is_regular_file and size > 0 and name:
            if data_start + size > length:
                if strict:
                    raise TarFormatError(f"Truncated payload for {name!r}")
                logger.warning("Truncated payload for %s, stopping", name)
                break
            files.append(TarFileRecord(name, view[data_start : data_start + size], size))

        # Payloads are padded to whole blocks
        offset = data_start + -(-size // BLOCK_SIZE) * BLOCK_SIZE

    return files


def is_image_name(name: str) -> bool:
    return bool(name) and name.lower().endswith(config.IMAGE_EXTENSIONS)


def parse_frame_slice(name: str) -> Optional[Tuple[int, int]]:
    """Read ``(frame, slice)`` from a ``..._<frame>_<slice>.<ext>`` name."""
    parts = name.split("_")
    if len(parts) < 3:
        return None
    frame_text = parts[-2]
    slice_text = parts[-1].split(".")[0]
    if not (_DECIMAL.fullmatch(frame_text) and _DECIMAL.fullmatch(slice_text)):
        return None
    return int(frame_text), int(slice_text)


def _media_type(name: str) -> str:
    return "image/png" if name.lower().endswith(".png") else "image/jpeg"


def cleanup_images(images: Iterable[ProcessedImage]) -> None:
    """Delete the files behind ``images``. Safe to call more than once."""
    for img in images:
        if img.path and os.path.exists(img.path):
            os.remove(img.path)


class ExtractedImageSet:
    """Images materialised from an archive, released together.

    When no ``directory`` is given a private one is created under
    ``config.EXTRACT_DIR`` and removed again by :meth:`release`.
    """

    def __init__(self, directory: Optional[str] = None):
        self._owns_directory = directory is None
        if directory is None:
            os.makedirs(config.EXTRACT_DIR, exist_ok=True)
            directory = tempfile.mkdtemp(prefix="images_", dir=config.EXTRACT_DIR)
        else:
            os.makedirs(directory, exist_ok=True)
        self.directory = directory
        self.images: List[ProcessedImage] = []
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def materialize(self, record: TarFileRecord, frame: int, slice_index: int) -> ProcessedImage:
        if self._released:
            raise RuntimeError("Image set has already been released")
        safe_name = secure_filename(os.path.basename(record.name)) or "image"
        path = os.path.join(self.directory, f"{len(self.images):05d}_{safe_name}")
        with open(path, "wb") as f:
            f.write(record.buffer)
        image = ProcessedImage(
            name=record.name,
            frame=frame,
            slice=slice_index,
            url=Path(path).resolve().as_uri(),
            size=record.size,
            path=path,
            media_type=_media_type(record.name),
        )
        self.images.append(image)
        return image

    def sort(self) -> None:
        self.images.sort(key=lambda img: (img.frame, img.slice))

    def frames_and_slices(self) -> Tuple[List[int], List[int]]:
        return get_available_frames_and_slices(self.images)

    def closest(self, frame: int, slice_index: int) -> Optional[ProcessedImage]:
        return find_closest_image(self.images, frame, slice_index)

    def release(self) -> None:
        """Dispose of every image handle. Idempotent."""
        if self._released:
            return
        cleanup_images(self.images)
        if self._owns_directory:
            shutil.rmtree(self.directory, ignore_errors=True)
        self._released = True
        logger.debug("Released %d extracted image(s)", len(self.images))

    def __enter__(self) -> "ExtractedImageSet":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def __iter__(self) -> Iterator[ProcessedImage]:
        return iter(self.images)

    def __len__(self) -> int:
        return len(self.images)

    def __getitem__(self, index: int) -> ProcessedImage:
        return self.images[index]


def process_extracted_images(
    records: Iterable[TarFileRecord],
    image_set: Optional[ExtractedImageSet] = None,
    min_segments: Optional[int] = None,
) -> ExtractedImageSet:
    """Index and materialise the image records of an archive.

    Names that do not follow the ``_<frame>_<slice>.<ext>`` convention are
    dropped with a warning; they never fail the extraction.
    """
    if image_set is None:
        image_set = ExtractedImageSet()
    if min_segments is None:
        min_segments = config.MIN_IMAGE_NAME_SEGMENTS

    for record in records:
        if not is_image_name(record.name):
            continue
        if len(record.name.split("_")) < min_segments:
            logger.warning("Unexpected filename format: %s", record.name)
            continue
        indices = parse_frame_slice(record.name)
        if indices is None:
            logger.warning("Could not parse indices from filename: %s", record.name)
            continue
        image_set.materialize(record, *indices)

    image_set.sort()
    frames, slices = image_set.frames_and_slices()
    logger.info(
        "Processed %d image(s): %d frame(s), %d slice(s)", len(image_set), len(frames), len(slices)
    )
    return image_set


def fetch_tar_bytes(
    url: str,
    session: Optional[requests.Session] = None,
    timeout: float = config.FETCH_TIMEOUT,
) -> bytes:
    http = session or requests
    try:
        response = http.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise TarFetchError(f"Failed to fetch tar file: {e}") from e
    if not response.ok:
        raise TarFetchError(
            f"Failed to fetch tar file: {response.status_code} {response.reason}",
            status_code=response.status_code,
        )
    return response.content


def extract_images_from_url(
    url: str,
    session: Optional[requests.Session] = None,
    directory: Optional[str] = None,
    strict: Optional[bool] = None,
    min_segments: Optional[int] = None,
    timeout: float = config.FETCH_TIMEOUT,
) -> ExtractedImageSet:
    """Download an archive and return its images indexed by frame and slice.

    Raises :class:`TarFetchError` when the download fails. The caller owns
    the returned set and must release it.
    """
    data = fetch_tar_bytes(url, session=session, timeout=timeout)
    logger.info("Tar file downloaded, size: %d bytes", len(data))

    records = parse_tar_buffer(data, strict=strict)
    image_records = [r for r in records if is_image_name(r.name)]
    logger.info("Files extracted: %d, image files: %d", len(records), len(image_records))

    image_set = ExtractedImageSet(directory)
    try:
        return process_extracted_images(image_records, image_set, min_segments=min_segments)
    except Exception:
        image_set.release()
        raise


def get_available_frames_and_slices(
    images: Sequence[ProcessedImage],
) -> Tuple[List[int], List[int]]:
    frames = sorted({img.frame for img in images})
    slices = sorted({img.slice for img in images})
    return frames, slices


def find_closest_image(
    images: Sequence[ProcessedImage], target_frame: int, target_slice: int
) -> Optional[ProcessedImage]:
    """Return the image at ``(target_frame, target_slice)`` or the nearest one.

    Without an exact match the nearest frame and the nearest slice are chosen
    independently (ties go to the value seen first). If no image sits at that
    pair, which can happen on a sparse grid, ``None`` is returned.
    """
    if not images:
        return None

    for img in images:
        if img.frame == target_frame and img.slice == target_slice:
            return img

    # dict.fromkeys keeps first-seen order so the stable sort breaks ties by it
    frames = list(dict.fromkeys(img.frame for img in images))
    slices = list(dict.fromkeys(img.slice for img in images))
    closest_frame = sorted(frames, key=lambda f: abs(f - target_frame))[0]
    closest_slice = sorted(slices, key=lambda s: abs(s - target_slice))[0]

    for img in images:
        if img.frame == closest_frame and img.slice == closest_slice:
            logger.debug(
                "Using closest available image %s (requested f%s, s%s)",
                img.name,
                target_frame,
                target_slice,
            )
            return img
    return None
