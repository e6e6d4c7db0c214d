"""Virtual folder tree over a flat, prefix-listed blob namespace."""

from __future__ import annotations

import csv
import io
import logging
import mimetypes
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING
from urllib.parse import quote

from blob_explorer.exceptions import ConflictError, InvalidPathError, TooLargeError
from blob_explorer.storage.models import (
    ADMIN_PREFIX,
    DELIMITER,
    META_LAST_EDITED_BY_OID,
    META_LAST_EDITED_BY_UPN,
    META_UPLOADED_BY_OID,
    META_UPLOADED_BY_UPN,
    PLACEHOLDER_NAME,
    FileItem,
    FolderItem,
    FolderStats,
    ListingPage,
    is_admin_key,
    leaf_name,
    normalize_prefix,
)

if TYPE_CHECKING:
    from blob_explorer.storage.client import BlobStorageClient

logger = logging.getLogger(__name__)

REPORT_HEADER = [
    "Type",
    "Name",
    "Full Path",
    "Path Length",
    "Blob URL",
    "Size (MB)",
    "Size (bytes)",
    "Content Type",
    "Last Modified",
    "Created On",
    "ETag",
    "MD5",
]


@dataclass(frozen=True)
class UploaderIdentity:
    """Who is writing, as stamped into blob metadata."""

    upn: str = ""
    oid: str = ""


def validate_item_name(name: str) -> str:
    """Return ``name`` stripped, or raise if it cannot be a single path segment."""
    cleaned = name.strip()
    if not cleaned:
        raise InvalidPathError("Please enter a name.")
    if "/" in cleaned or "\\" in cleaned:
        raise InvalidPathError("Name cannot contain / or \\")
    return cleaned


def folders_below(prefix: str, keys: list[str]) -> list[str]:
    """Every distinct virtual folder prefix strictly below ``prefix`` implied by ``keys``."""
    found: set[str] = set()
    for key in keys:
        parts = key[len(prefix) :].split(DELIMITER)
        for depth in range(1, len(parts)):
            found.add(prefix + DELIMITER.join(parts[:depth]) + DELIMITER)
    return sorted(found)


class NamespaceAdapter:
    """Turns flat object keys into a folder/file view.

    A folder exists iff at least one key carries its prefix. Nothing is
    cached: every call lists the backend again.
    """

    def __init__(self, client: BlobStorageClient) -> None:
        self._client = client

    @property
    def client(self) -> BlobStorageClient:
        return self._client

    def list_children(self, prefix: str = "") -> ListingPage:
        """List the immediate folders and files under ``prefix``.

        Follows continuation tokens until the backend reports none left and
        returns the accumulated result. Placeholder objects and the reserved
        administrative sub-tree are hidden.

        Args:
            prefix: Folder prefix ending with '/' ("" for the container root).

        Returns:
            ListingPage with every child; ``continuation_token`` is always None.
        """
        prefix = normalize_prefix(prefix)
        result = ListingPage()
        token: str | None = None
        pages = 0
        while True:
            page = self._client.list_page(prefix, delimited=True, continuation_token=token)
            pages += 1
            result.folders.extend(f for f in page.folders if f.prefix != ADMIN_PREFIX)
            result.files.extend(
                f for f in page.files if not f.is_placeholder and not is_admin_key(f.key)
            )
            token = page.continuation_token
            if not token:
                break
        logger.info(
            "[list_children] listed prefix; prefix:%s;pages:%d;folders:%d;files:%d",
            prefix,
            pages,
            len(result.folders),
            len(result.files),
        )
        return result

    def _list_flat(self, prefix: str, max_items: int | None = None) -> list[FileItem]:
        items: list[FileItem] = []
        token: str | None = None
        while True:
            page = self._client.list_page(prefix, delimited=False, continuation_token=token)
            items.extend(f for f in page.files if not is_admin_key(f.key))
            if max_items is not None and len(items) > max_items:
                raise TooLargeError(
                    f"'{prefix or DELIMITER}' holds more than {max_items} objects; "
                    "split the operation into smaller folders",
                    count=len(items),
                    limit=max_items,
                )
            token = page.continuation_token
            if not token:
                return items

    def list_all_descendants(
        self,
        prefix: str = "",
        name_filter: str | None = None,
        *,
        include_placeholders: bool = False,
        max_items: int | None = None,
    ) -> list[FileItem]:
        """List every object below ``prefix`` at any depth.

        Sentinels are excluded: keys under the administrative sub-tree always,
        folder placeholders unless ``include_placeholders`` is set (tree
        operations must carry placeholders along).

        Args:
            prefix: Folder prefix ("" for the whole container).
            name_filter: Case-insensitive substring matched against the full key.
            include_placeholders: Keep ``.keep`` placeholder objects.
            max_items: Raise TooLargeError as soon as more objects than this are seen.

        Returns:
            Matching FileItems in listing order.
        """
        prefix = normalize_prefix(prefix)
        needle = (name_filter or "").lower()
        items = [
            f
            for f in self._list_flat(prefix, max_items)
            if (include_placeholders or not f.is_placeholder)
            and (not needle or needle in f.key.lower())
        ]
        logger.info(
            "[list_all_descendants] listed descendants; prefix:%s;filter:%s;count:%d",
            prefix,
            needle,
            len(items),
        )
        return items

    def search(self, term: str) -> ListingPage:
        """Whole-container search over files and derived folders.

        Args:
            term: Case-insensitive substring matched against full paths.

        Returns:
            ListingPage; files carry their full key as display name, folders their leaf name.
        """
        needle = term.strip().lower()
        everything = self._list_flat("")
        files = [
            replace(f, display_name=f.key)
            for f in everything
            if not f.is_placeholder and (not needle or needle in f.key.lower())
        ]
        folders = [
            FolderItem(prefix=p, display_name=leaf_name(p))
            for p in folders_below("", [f.key for f in everything])
            if not needle or needle in p.lower()
        ]
        logger.info(
            "[search] container search; term:%s;folders:%d;files:%d",
            needle,
            len(folders),
            len(files),
        )
        return ListingPage(folders=folders, files=files)

    def folder_exists(self, prefix: str) -> bool:
        prefix = normalize_prefix(prefix)
        if not prefix:
            return True
        return not self._client.list_page(prefix, delimited=True).is_empty

    def folder_stats(self, prefix: str) -> FolderStats:
        """Count every subfolder, file and byte below ``prefix``."""
        prefix = normalize_prefix(prefix)
        everything = self._list_flat(prefix)
        files = [f for f in everything if not f.is_placeholder]
        return FolderStats(
            total_folders=len(folders_below(prefix, [f.key for f in everything])),
            total_files=len(files),
            total_size=sum(f.size for f in files),
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_folder(
        self, parent_prefix: str, name: str, user: UploaderIdentity | None = None
    ) -> FolderItem:
        """Materialise an empty virtual folder with a zero-byte placeholder."""
        folder = normalize_prefix(parent_prefix) + validate_item_name(name) + DELIMITER
        self._client.upload(
            folder + PLACEHOLDER_NAME,
            b"",
            metadata=self.upload_metadata(user, existing=None),
        )
        logger.info("[create_folder] created folder; prefix:%s", folder)
        return FolderItem(prefix=folder, display_name=leaf_name(folder))

    def create_file(
        self,
        parent_prefix: str,
        name: str,
        data: bytes,
        user: UploaderIdentity | None = None,
    ) -> str:
        """Create a new file, refusing to replace an existing one.

        Raises:
            ConflictError: If the key is already taken.
        """
        key = normalize_prefix(parent_prefix) + validate_item_name(name)
        if self._client.exists(key):
            raise ConflictError(key)
        self._client.upload(
            key,
            data,
            content_type=guess_content_type(key),
            metadata=self.upload_metadata(user, existing=None),
        )
        return key

    def upload_file(
        self,
        key: str,
        data: bytes,
        *,
        overwrite: bool,
        user: UploaderIdentity | None = None,
        content_type: str | None = None,
    ) -> bool:
        """Upload ``data`` to ``key``, keeping the original uploader on overwrite.

        Returns:
            False when the key existed and ``overwrite`` was off (skipped).
        """
        existed = self._client.exists(key)
        if existed and not overwrite:
            logger.info("[upload_file] skipped existing blob; key:%s", key)
            return False
        existing = self._client.get_properties(key).custom_metadata if existed else None
        self._client.upload(
            key,
            data,
            content_type=content_type or guess_content_type(key),
            metadata=self.upload_metadata(user, existing=existing),
        )
        return True

    @staticmethod
    def upload_metadata(
        user: UploaderIdentity | None, existing: dict[str, str] | None
    ) -> dict[str, str]:
        """Metadata for a write: uploader on new blobs, last editor on overwrites."""
        if user is None:
            return dict(existing or {})
        if existing is None:
            meta: dict[str, str] = {}
            upn_key, oid_key = META_UPLOADED_BY_UPN, META_UPLOADED_BY_OID
        else:
            meta = dict(existing)
            upn_key, oid_key = META_LAST_EDITED_BY_UPN, META_LAST_EDITED_BY_OID
        if user.upn:
            meta[upn_key] = user.upn
        if user.oid:
            meta[oid_key] = user.oid
        return meta

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def export_report(self, prefix: str = "") -> str:
        """CSV inventory of every folder and file below ``prefix``.

        Fields are quoted per RFC 4180, rows end in CRLF and the text starts
        with a UTF-8 byte order mark so spreadsheet tools pick the encoding.
        """
        prefix = normalize_prefix(prefix)
        everything = self._list_flat(prefix)
        base = (
            f"https://{self._client.account_name}.blob.core.windows.net"
            f"/{self._client.container_name}/"
        )

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\r\n")
        writer.writerow(REPORT_HEADER)
        rows = 0
        for folder in folders_below(prefix, [f.key for f in everything]):
            writer.writerow(
                [
                    "folder",
                    leaf_name(folder),
                    folder,
                    str(len(folder)),
                    base + quote(folder),
                    "",
                    "",
                    "",
                    "",
                    "",
                    "",
                    "",
                ]
            )
            rows += 1
        for item in everything:
            if item.is_placeholder:
                continue
            writer.writerow(
                [
                    "file",
                    leaf_name(item.key),
                    item.key,
                    str(len(item.key)),
                    base + quote(item.key),
                    f"{item.size / (1024 * 1024):.6f}" if item.size > 0 else "0",
                    str(item.size),
                    item.content_type,
                    item.last_modified.isoformat() if item.last_modified else "",
                    item.created_on.isoformat() if item.created_on else "",
                    item.etag,
                    item.content_hash,
                ]
            )
            rows += 1
        logger.info("[export_report] built report; prefix:%s;rows:%d", prefix, rows)
        return "\ufeff" + buffer.getvalue()


def guess_content_type(key: str) -> str:
    guessed, _ = mimetypes.guess_type(key)
    return guessed or "application/octet-stream"
