"""Shared fixtures: hand-built tar archives, fake HTTP clients, documents."""

from __future__ import annotations

import io
import threading

import pytest
from PIL import Image


def make_tar_header(name: str, size: int, typeflag: bytes = b"0") -> bytes:
    header = bytearray(512)
    encoded = name.encode("utf-8")
    header[0 : len(encoded)] = encoded
    header[124:136] = f"{size:011o}\0".encode("ascii")
    header[156:157] = typeflag
    return bytes(header)


def build_tar(entries, terminate: bool = True) -> bytes:
    """Build an archive from ``(name, payload[, typeflag])`` tuples."""
    out = bytearray()
    for entry in entries:
        name, payload = entry[0], entry[1]
        typeflag = entry[2] if len(entry) > 2 else b"0"
        out += make_tar_header(name, len(payload), typeflag)
        out += payload
        out += b"\0" * (-len(payload) % 512)
    if terminate:
        out += b"\0" * 1024
    return bytes(out)


def jpeg_bytes(color=(200, 30, 30), size=(4, 4)) -> bytes:
    buffered = io.BytesIO()
    Image.new("RGB", size, color).save(buffered, format="JPEG")
    return buffered.getvalue()


class FakeResponse:
    def __init__(self, data):
        self._data = data

    def json(self):
        return self._data


class FakeHttpClient:
    """Records multipart posts; ``fail_when(form)`` selects posts that raise."""

    def __init__(self, fail_when=None):
        self.fail_when = fail_when
        self.calls = []
        self._lock = threading.Lock()

    def post(self, path, files=None, data=None):
        with self._lock:
            self.calls.append({"path": path, "files": files, "data": data})
        if self.fail_when is not None and self.fail_when(data):
            raise RuntimeError("upload rejected")
        filename = files["file"][0]
        return FakeResponse({"s3Url": f"https://bucket.s3.amazonaws.com/{filename}"})


@pytest.fixture
def http_client() -> FakeHttpClient:
    return FakeHttpClient()


def mask_entry(class_name: str, rle, confidence: float = 0.9) -> dict:
    return {"class": class_name, "segmentationmaskcontents": rle, "confidence": confidence}


@pytest.fixture
def document() -> dict:
    """Two frames by two slices of 4x4 masks."""
    return {
        "frames": [
            {
                "frameindex": frame,
                "slices": [
                    {
                        "sliceindex": slice_index,
                        "segmentationmasks": [
                            mask_entry("RV", "[0, 4, 12]"),
                            mask_entry("MYO", "[12, 4]"),
                        ],
                    }
                    for slice_index in range(2)
                ],
            }
            for frame in range(2)
        ]
    }
