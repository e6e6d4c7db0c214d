"""Unit tests for archive/builder.py: uncompressed archive layout."""

import io
import os
import struct
import zipfile
import zlib

import pytest

from blob_explorer.archive.builder import (
    FLAG_UTF8_NAMES,
    MAX_ENTRIES,
    METHOD_STORE,
    ArchiveEntry,
    build_archive,
    crc32,
)
from blob_explorer.exceptions import TooLargeError

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _extract(archive: bytes) -> dict[str, bytes]:
    with zipfile.ZipFile(io.BytesIO(archive)) as zf:
        assert zf.testzip() is None
        return {info.filename: zf.read(info) for info in zf.infolist()}


_ENTRIES = [
    ArchiveEntry("readme.txt", b"hello world"),
    ArchiveEntry("empty.bin", b""),
    ArchiveEntry("nested/dir/data.bin", bytes(range(256)) * 4),
    ArchiveEntry("résumé/naïve.txt", "unicode ✓".encode()),
]


# ---------------------------------------------------------------------------
# crc32 tests
# ---------------------------------------------------------------------------


class TestCrc32:
    @pytest.mark.parametrize("data", [b"", b"a", b"123456789", os.urandom(1000)])
    def test_matches_zlib(self, data: bytes) -> None:
        assert crc32(data) == zlib.crc32(data)

    def test_check_value(self) -> None:
        assert crc32(b"123456789") == 0xCBF43926


# ---------------------------------------------------------------------------
# build_archive tests
# ---------------------------------------------------------------------------


class TestBuildArchive:
    def test_standard_tool_extracts_every_entry(self) -> None:
        extracted = _extract(build_archive(_ENTRIES))

        assert extracted == {e.path: e.data for e in _ENTRIES}

    def test_entries_are_stored_uncompressed_with_utf8_flag(self) -> None:
        with zipfile.ZipFile(io.BytesIO(build_archive(_ENTRIES))) as zf:
            infos = zf.infolist()

        assert [i.filename for i in infos] == [e.path for e in _ENTRIES]
        assert all(i.compress_type == METHOD_STORE for i in infos)
        assert all(i.flag_bits & FLAG_UTF8_NAMES for i in infos)
        assert [i.file_size for i in infos] == [len(e.data) for e in _ENTRIES]

    def test_output_is_deterministic(self) -> None:
        assert build_archive(_ENTRIES) == build_archive(list(_ENTRIES))

    def test_empty_archive_is_just_the_end_record(self) -> None:
        archive = build_archive([])

        assert len(archive) == 22
        assert _extract(archive) == {}

    def test_end_record_counts_and_offsets(self) -> None:
        archive = build_archive(_ENTRIES[:2])
        signature, _, _, on_disk, total, size, offset, _ = struct.unpack("<IHHHHIIH", archive[-22:])

        assert signature == 0x06054B50
        assert on_disk == total == 2
        assert offset + size == len(archive) - 22

    def test_local_header_layout(self) -> None:
        archive = build_archive([ArchiveEntry("a.txt", b"abc")])
        fields = struct.unpack("<IHHHHHIIIHH", archive[:30])

        assert fields[0] == 0x04034B50
        assert fields[4:6] == (0, 0)
        assert fields[6] == zlib.crc32(b"abc")
        assert fields[7] == fields[8] == 3
        assert archive[30:35] == b"a.txt"
        assert archive[35:38] == b"abc"

    def test_rejects_more_than_max_entries(self) -> None:
        entries = [ArchiveEntry(f"{i}.txt", b"") for i in range(MAX_ENTRIES + 1)]

        with pytest.raises(TooLargeError) as exc_info:
            build_archive(entries)

        assert exc_info.value.count == MAX_ENTRIES + 1
