"""Data models for the virtual folder view over a flat blob namespace."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime

DELIMITER = "/"

# Zero-byte object that materialises an otherwise empty virtual folder
PLACEHOLDER_NAME = ".keep"

# Reserved administrative sub-tree, never surfaced as user content
ADMIN_PREFIX = ".audit/"

# Metadata keys stamped on uploaded blobs
META_UPLOADED_BY_UPN = "uploaded_by_upn"
META_UPLOADED_BY_OID = "uploaded_by_oid"
META_LAST_EDITED_BY_UPN = "last_edited_by_upn"
META_LAST_EDITED_BY_OID = "last_edited_by_oid"


@dataclass(frozen=True)
class FolderItem:
    """A virtual folder derived from a common prefix. Never stored."""

    prefix: str
    display_name: str


@dataclass
class FileItem:
    """A single blob as seen by a listing call."""

    key: str
    display_name: str
    size: int = 0
    last_modified: datetime | None = None
    created_on: datetime | None = None
    content_type: str = "application/octet-stream"
    etag: str = ""
    content_hash: str = ""
    custom_metadata: dict[str, str] = field(default_factory=dict)

    @property
    def is_placeholder(self) -> bool:
        return is_placeholder_key(self.key)


@dataclass
class ListingPage:
    """Immediate children of one prefix, possibly one page of a larger listing."""

    folders: list[FolderItem] = field(default_factory=list)
    files: list[FileItem] = field(default_factory=list)
    continuation_token: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.folders and not self.files


@dataclass(frozen=True)
class FolderStats:
    """Recursive counts below a folder prefix."""

    total_folders: int
    total_files: int
    total_size: int


class ConflictDecision(enum.Enum):
    """Operator answer to an occupied destination.

    Scoped to exactly one bulk operation invocation.
    """

    SKIP = "skip"
    OVERWRITE = "overwrite"
    OVERWRITE_ALL = "overwriteAll"


class ItemOutcome(enum.Enum):
    COPIED = "copied"
    MOVED = "moved"
    SKIPPED_ALREADY_THERE = "skipped_already_there"
    SKIPPED_CONFLICT = "skipped_conflict"
    SKIPPED_SOURCE_EMPTY = "skipped_source_empty"
    FAILED = "failed"


@dataclass(frozen=True)
class ConflictItem:
    """What a conflict resolver is asked about."""

    source: str
    destination: str
    is_folder: bool


@dataclass
class ItemResult:
    """Outcome of one item in a bulk copy/move."""

    source: str
    destination: str
    outcome: ItemOutcome
    error: str = ""


@dataclass
class FolderTransferResult:
    """Outcome of a folder rename, move or copy."""

    source_prefix: str
    destination_prefix: str
    copied: int = 0
    deleted: int = 0
    source_empty: bool = False

    @property
    def message(self) -> str:
        if self.source_empty:
            return "source already empty"
        return f"{self.copied} object(s) copied, {self.deleted} source object(s) deleted"


def is_placeholder_key(key: str) -> bool:
    return key == PLACEHOLDER_NAME or key.endswith(DELIMITER + PLACEHOLDER_NAME)


def is_admin_key(key: str) -> bool:
    return key == ADMIN_PREFIX.rstrip(DELIMITER) or key.startswith(ADMIN_PREFIX)


def normalize_prefix(path: str) -> str:
    """Return ``path`` as a folder prefix: no leading '/', exactly one trailing '/'.

    The container root is the empty string.
    """
    stripped = path.strip().strip(DELIMITER)
    while DELIMITER * 2 in stripped:
        stripped = stripped.replace(DELIMITER * 2, DELIMITER)
    return f"{stripped}{DELIMITER}" if stripped else ""


def parent_prefix(path: str) -> str:
    """Return the folder prefix that contains ``path`` (file key or folder prefix)."""
    trimmed = path.rstrip(DELIMITER)
    cut = trimmed.rfind(DELIMITER)
    return trimmed[: cut + 1] if cut != -1 else ""


def leaf_name(path: str) -> str:
    """Return the last segment of a key or prefix, without a trailing '/'."""
    return path.rstrip(DELIMITER).rsplit(DELIMITER, 1)[-1]
