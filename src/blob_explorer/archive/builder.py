"""Uncompressed ZIP container builder.

Every entry uses the STORE method (no compression). Output depends only on
the entry list, so identical input always yields identical bytes.
"""

from __future__ import annotations

import struct
from collections.abc import Iterable
from dataclasses import dataclass

from blob_explorer.exceptions import TooLargeError

MAX_ENTRIES = 0xFFFF
MAX_UINT32 = 0xFFFFFFFF

LOCAL_HEADER_SIGNATURE = 0x04034B50
CENTRAL_HEADER_SIGNATURE = 0x02014B50
END_OF_CENTRAL_DIRECTORY_SIGNATURE = 0x06054B50

VERSION = 20
FLAG_UTF8_NAMES = 0x0800
METHOD_STORE = 0

_CRC32_POLYNOMIAL = 0xEDB88320

# signature, version needed, flags, method, time, date, crc, sizes, name length, extra length
_LOCAL_HEADER = struct.Struct("<IHHHHHIIIHH")
# signature, made by, needed, flags, method, time, date, crc, sizes, name/extra/comment
# lengths, disk start, internal attrs, external attrs, local header offset
_CENTRAL_HEADER = struct.Struct("<IHHHHHHIIIHHHHHII")
# signature, disk, directory disk, entries on disk, total entries, size, offset, comment
_END_RECORD = struct.Struct("<IHHHHIIH")


def _make_crc32_table() -> tuple[int, ...]:
    table = []
    for n in range(256):
        c = n
        for _ in range(8):
            c = (_CRC32_POLYNOMIAL ^ (c >> 1)) if c & 1 else c >> 1
        table.append(c)
    return tuple(table)


_CRC32_TABLE = _make_crc32_table()


def crc32(data: bytes) -> int:
    """Table-driven CRC-32 with full-ones pre and post complement."""
    crc = MAX_UINT32
    table = _CRC32_TABLE
    for byte in data:
        crc = table[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc ^ MAX_UINT32


@dataclass(frozen=True)
class ArchiveEntry:
    """One file inside the archive.

    Attributes:
        path: Relative path inside the archive, '/'-separated.
        data: Raw file content.
    """

    path: str
    data: bytes


def ensure_archivable(count: int) -> None:
    """Reject a file count the archive format cannot hold.

    Raises:
        TooLargeError: If ``count`` exceeds MAX_ENTRIES.
    """
    if count > MAX_ENTRIES:
        raise TooLargeError(
            f"Too many files for ZIP format ({count} entries, max {MAX_ENTRIES}). "
            "Download smaller folders individually.",
            count=count,
            limit=MAX_ENTRIES,
        )


def build_archive(entries: Iterable[ArchiveEntry]) -> bytes:
    """Serialise ``entries`` into a single uncompressed ZIP byte string.

    Args:
        entries: Files to include, in archive order. Zero-length data is fine.

    Returns:
        The complete archive.

    Raises:
        TooLargeError: If there are more than 65,535 entries, or a size or
            offset does not fit the 32-bit fields of the format.
    """
    entries = list(entries)
    ensure_archivable(len(entries))

    local_parts: list[bytes] = []
    central_parts: list[bytes] = []
    offset = 0

    for entry in entries:
        name = entry.path.encode("utf-8")
        data = bytes(entry.data)
        size = len(data)
        if size > MAX_UINT32 or offset > MAX_UINT32:
            raise TooLargeError(
                f"'{entry.path}' does not fit a ZIP archive without ZIP64 extensions",
                count=max(size, offset),
                limit=MAX_UINT32,
            )
        checksum = crc32(data)

        local_header = _LOCAL_HEADER.pack(
            LOCAL_HEADER_SIGNATURE,
            VERSION,
            FLAG_UTF8_NAMES,
            METHOD_STORE,
            0,
            0,
            checksum,
            size,
            size,
            len(name),
            0,
        )
        central_header = _CENTRAL_HEADER.pack(
            CENTRAL_HEADER_SIGNATURE,
            VERSION,
            VERSION,
            FLAG_UTF8_NAMES,
            METHOD_STORE,
            0,
            0,
            checksum,
            size,
            size,
            len(name),
            0,
            0,
            0,
            0,
            0,
            offset,
        )
        local_parts += [local_header, name, data]
        central_parts += [central_header, name]
        offset += len(local_header) + len(name) + size

    directory_size = sum(len(part) for part in central_parts)
    if offset > MAX_UINT32:
        raise TooLargeError(
            "Archive exceeds 4 GiB; ZIP64 is not supported",
            count=offset,
            limit=MAX_UINT32,
        )
    end_record = _END_RECORD.pack(
        END_OF_CENTRAL_DIRECTORY_SIGNATURE,
        0,
        0,
        len(entries),
        len(entries),
        directory_size,
        offset,
        0,
    )
    return b"".join([*local_parts, *central_parts, end_record])
