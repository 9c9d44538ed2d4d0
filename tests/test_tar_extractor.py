"""Tests for tar parsing, image indexing and handle release."""

from __future__ import annotations

import io
import os
import tarfile
from pathlib import Path

import pytest
import requests

from app.backend import tar_extractor
from app.backend.tar_extractor import (
    ExtractedImageSet,
    ProcessedImage,
    TarFetchError,
    TarFileRecord,
    TarFormatError,
)
from tests.conftest import build_tar, jpeg_bytes, make_tar_header


def _image(frame: int, slice_index: int, name: str = "") -> ProcessedImage:
    name = name or f"img_s_{frame}_{slice_index}.jpg"
    return ProcessedImage(name=name, frame=frame, slice=slice_index, url="", size=0, path="")


def test_single_entry_archive() -> None:
    payload = bytes(range(10))
    archive = build_tar([("a_0_3.jpg", payload)])

    records = tar_extractor.parse_tar_buffer(archive)

    assert len(records) == 1
    assert records[0].name == "a_0_3.jpg"
    assert records[0].size == 10
    assert records[0].tobytes() == payload
    assert tar_extractor.parse_frame_slice(records[0].name) == (0, 3)


def test_records_are_views_into_the_archive() -> None:
    archive = bytearray(build_tar([("x_1_2.png", b"abc")]))

    record = tar_extractor.parse_tar_buffer(archive)[0]
    archive[512] = ord("z")

    assert isinstance(record.buffer, memoryview)
    assert record.tobytes() == b"zbc"


def test_blocks_are_aligned_between_entries() -> None:
    first = b"x" * 513
    second = b"y" * 512
    archive = build_tar([("p_q_0_0.jpg", first), ("p_q_0_1.jpg", second)])

    records = tar_extractor.parse_tar_buffer(archive)

    assert [r.name for r in records] == ["p_q_0_0.jpg", "p_q_0_1.jpg"]
    assert records[0].tobytes() == first
    assert records[1].tobytes() == second


def test_directories_and_special_entries_are_skipped() -> None:
    archive = build_tar(
        [
            ("images/", b"", b"5"),
            ("link", b"", b"2"),
            ("pax", b"12 path=foo\n", b"x"),
            ("images/s_e_2_4.jpg", b"data"),
        ]
    )

    records = tar_extractor.parse_tar_buffer(archive)

    assert [r.name for r in records] == ["images/s_e_2_4.jpg"]


def test_nul_typeflag_counts_as_regular_file() -> None:
    archive = build_tar([("old_0_0.jpg", b"abc", b"\0")])

    assert [r.name for r in tar_extractor.parse_tar_buffer(archive)] == ["old_0_0.jpg"]


def test_empty_files_are_not_extracted() -> None:
    archive = build_tar([("empty_0_0.jpg", b""), ("full_0_1.jpg", b"1")])

    assert [r.name for r in tar_extractor.parse_tar_buffer(archive)] == ["full_0_1.jpg"]


def test_parsing_stops_at_first_zero_block() -> None:
    archive = build_tar([("a_0_0.jpg", b"1")]) + build_tar([("b_0_1.jpg", b"2")])

    assert [r.name for r in tar_extractor.parse_tar_buffer(archive)] == ["a_0_0.jpg"]


def test_unterminated_archive_is_read_to_the_end() -> None:
    archive = build_tar([("a_0_0.jpg", b"1"), ("b_0_1.jpg", b"2")], terminate=False)

    assert len(tar_extractor.parse_tar_buffer(archive)) == 2


def test_full_length_name_without_nul() -> None:
    name = "n" * 96 + "_1_2"
    archive = build_tar([(name, b"1")])

    assert tar_extractor.parse_tar_buffer(archive)[0].name == name


def test_garbage_size_reads_as_zero() -> None:
    header = bytearray(make_tar_header("bad_0_0.jpg", 0))
    header[124:136] = b"zzzzzzzzzzz\0"
    archive = bytes(header) + build_tar([("good_0_1.jpg", b"ok")])

    records = tar_extractor.parse_tar_buffer(archive)

    assert [r.name for r in records] == ["good_0_1.jpg"]
    with pytest.raises(TarFormatError):
        tar_extractor.parse_tar_buffer(archive, strict=True)


def test_truncated_payload_is_tolerated_unless_strict() -> None:
    archive = build_tar([("a_0_0.jpg", b"1"), ("b_0_1.jpg", b"x" * 100)], terminate=False)
    truncated = archive[: 512 * 3 + 40]

    records = tar_extractor.parse_tar_buffer(truncated)

    assert [r.name for r in records] == ["a_0_0.jpg"]
    with pytest.raises(TarFormatError):
        tar_extractor.parse_tar_buffer(truncated, strict=True)


def test_truncated_header_is_tolerated_unless_strict() -> None:
    archive = build_tar([("a_0_0.jpg", b"1")], terminate=False) + b"junk"

    assert len(tar_extractor.parse_tar_buffer(archive)) == 1
    with pytest.raises(TarFormatError):
        tar_extractor.parse_tar_buffer(archive, strict=True)


def test_reads_archives_written_by_tarfile() -> None:
    buffered = io.BytesIO()
    with tarfile.open(fileobj=buffered, mode="w", format=tarfile.USTAR_FORMAT) as tf:
        for name, data in [("study_se_0_1.jpg", b"one"), ("study_se_1_0.png", b"two!")]:
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))

    records = tar_extractor.parse_tar_buffer(buffered.getvalue())

    assert [(r.name, r.tobytes()) for r in records] == [
        ("study_se_0_1.jpg", b"one"),
        ("study_se_1_0.png", b"two!"),
    ]


@pytest.mark.parametrize(
    "name, expected",
    [
        ("a_0_3.jpg", (0, 3)),
        ("patient_cine_12_7.JPEG", (12, 7)),
        ("dir/x_y_2_10.png", (2, 10)),
        ("x_y_a_1.jpg", None),
        ("x_y_1_b.jpg", None),
        ("nounderscore.jpg", None),
    ],
)
def test_parse_frame_slice(name, expected) -> None:
    assert tar_extractor.parse_frame_slice(name) == expected


def test_is_image_name() -> None:
    assert tar_extractor.is_image_name("X.JPG")
    assert tar_extractor.is_image_name("x.jpeg")
    assert tar_extractor.is_image_name("x.Png")
    assert not tar_extractor.is_image_name("x.dcm")
    assert not tar_extractor.is_image_name("")


def test_process_filters_sorts_and_materializes(tmp_path: Path) -> None:
    records = [
        TarFileRecord("s_e_1_0.jpg", memoryview(b"10"), 2),
        TarFileRecord("s_e_0_1.PNG", memoryview(b"01"), 2),
        TarFileRecord("s_e_0_0.jpeg", memoryview(b"00"), 2),
        TarFileRecord("notes.txt", memoryview(b"tx"), 2),
        TarFileRecord("short_0_2.jpg", memoryview(b"sh"), 2),
        TarFileRecord("s_e_x_2.jpg", memoryview(b"xx"), 2),
    ]

    image_set = tar_extractor.process_extracted_images(records, ExtractedImageSet(str(tmp_path)))

    assert [(img.frame, img.slice) for img in image_set] == [(0, 0), (0, 1), (1, 0)]
    first = image_set[0]
    assert first.name == "s_e_0_0.jpeg"
    assert first.size == 2
    assert first.media_type == "image/jpeg"
    assert image_set[1].media_type == "image/png"
    assert first.read_bytes() == b"00"
    assert first.url.startswith("file://")
    assert os.path.dirname(first.path) == str(tmp_path)
    assert image_set.frames_and_slices() == ([0, 1], [0, 1])


def test_process_accepts_three_segment_names_when_configured(tmp_path: Path) -> None:
    records = [TarFileRecord("a_0_3.jpg", memoryview(b"abc"), 3)]

    default = tar_extractor.process_extracted_images(records, ExtractedImageSet(str(tmp_path / "d")))
    relaxed = tar_extractor.process_extracted_images(
        records, ExtractedImageSet(str(tmp_path / "r")), min_segments=3
    )

    assert len(default) == 0
    assert [(img.frame, img.slice) for img in relaxed] == [(0, 3)]


def test_release_is_idempotent(tmp_path: Path) -> None:
    records = [TarFileRecord("s_e_0_0.jpg", memoryview(b"00"), 2)]
    image_set = tar_extractor.process_extracted_images(records, ExtractedImageSet(str(tmp_path)))
    path = image_set[0].path
    assert os.path.exists(path)

    image_set.release()
    image_set.release()
    tar_extractor.cleanup_images(image_set.images)

    assert image_set.released
    assert not os.path.exists(path)
    with pytest.raises(RuntimeError):
        image_set.materialize(records[0], 0, 0)


def test_owned_directory_removed_on_exit(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(tar_extractor.config, "EXTRACT_DIR", str(tmp_path / "extract"))

    with ExtractedImageSet() as image_set:
        image_set.materialize(TarFileRecord("s_e_0_0.jpg", memoryview(b"00"), 2), 0, 0)
        directory = image_set.directory
        assert os.path.isdir(directory)

    assert not os.path.exists(directory)


class _FakeResponse:
    def __init__(self, content: bytes, status_code: int = 200, reason: str = "OK"):
        self.content = content
        self.status_code = status_code
        self.reason = reason
        self.ok = status_code < 400


class _FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requested = []

    def get(self, url, timeout=None):
        self.requested.append(url)
        if self.error is not None:
            raise self.error
        return self.response


def test_extract_images_from_url(tmp_path: Path) -> None:
    archive = build_tar(
        [
            ("cine_sax_1_0.jpg", jpeg_bytes()),
            ("cine_sax_0_0.jpg", jpeg_bytes()),
            ("cine_sax_0_1.jpg", jpeg_bytes()),
            ("readme.txt", b"ignored"),
            ("bad_name.jpg", b"dropped"),
        ]
    )
    session = _FakeSession(_FakeResponse(archive))

    with tar_extractor.extract_images_from_url(
        "https://bucket/archive.tar", session=session, directory=str(tmp_path)
    ) as image_set:
        assert session.requested == ["https://bucket/archive.tar"]
        assert [(img.frame, img.slice) for img in image_set] == [(0, 0), (0, 1), (1, 0)]
        paths = [img.path for img in image_set]
        assert all(os.path.exists(p) for p in paths)

    assert not any(os.path.exists(p) for p in paths)


def test_extract_with_no_matching_names_succeeds(tmp_path: Path) -> None:
    session = _FakeSession(_FakeResponse(build_tar([("x.jpg", b"1")])))

    image_set = tar_extractor.extract_images_from_url("u", session=session, directory=str(tmp_path))

    assert len(image_set) == 0


def test_failed_extraction_releases_written_images(tmp_path: Path, monkeypatch) -> None:
    extract_dir = tmp_path / "extract"
    monkeypatch.setattr(tar_extractor.config, "EXTRACT_DIR", str(extract_dir))
    real_materialize = ExtractedImageSet.materialize
    written = []

    def fill_disk(self, record, frame, slice_index):
        if written:
            raise OSError("No space left on device")
        image = real_materialize(self, record, frame, slice_index)
        written.append(image.path)
        return image

    monkeypatch.setattr(ExtractedImageSet, "materialize", fill_disk)
    archive = build_tar([("cine_sax_0_0.jpg", jpeg_bytes()), ("cine_sax_0_1.jpg", jpeg_bytes())])

    with pytest.raises(OSError):
        tar_extractor.extract_images_from_url("u", session=_FakeSession(_FakeResponse(archive)))

    assert len(written) == 1
    assert not os.path.exists(written[0])
    assert os.listdir(extract_dir) == []


def test_fetch_failure_raises() -> None:
    session = _FakeSession(_FakeResponse(b"", status_code=403, reason="Forbidden"))

    with pytest.raises(TarFetchError) as excinfo:
        tar_extractor.extract_images_from_url("u", session=session)

    assert excinfo.value.status_code == 403
    assert "Forbidden" in str(excinfo.value)


def test_transport_error_raises_fetch_error() -> None:
    session = _FakeSession(error=requests.ConnectionError("unreachable"))

    with pytest.raises(TarFetchError):
        tar_extractor.fetch_tar_bytes("u", session=session)


def test_closest_exact_match() -> None:
    images = [_image(0, 0), _image(1, 1), _image(2, 2)]

    assert tar_extractor.find_closest_image(images, 1, 1) is images[1]


def test_closest_equidistant_candidates_prefer_first_seen() -> None:
    images = [_image(0, 0), _image(2, 2)]

    assert tar_extractor.find_closest_image(images, 1, 1) is images[0]


def test_closest_sparse_grid_gap_returns_none() -> None:
    images = [_image(0, 1), _image(1, 0)]

    assert tar_extractor.find_closest_image(images, 0, 0) is None


def test_closest_on_dense_grid() -> None:
    images = [_image(f, s) for f in (0, 2, 4) for s in (0, 3)]

    found = tar_extractor.find_closest_image(images, 5, 2)

    assert (found.frame, found.slice) == (4, 3)


def test_closest_ties_go_to_first_seen_value() -> None:
    images = [_image(2, 0), _image(0, 0)]

    found = tar_extractor.find_closest_image(images, 1, 0)

    assert found is images[0]


def test_closest_on_empty_list() -> None:
    assert tar_extractor.find_closest_image([], 0, 0) is None
