"""Folder and selection downloads packaged as a single archive."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING

from blob_explorer.archive.builder import ArchiveEntry, build_archive, ensure_archivable
from blob_explorer.exceptions import NothingToArchiveError
from blob_explorer.storage.models import DELIMITER, leaf_name, normalize_prefix

if TYPE_CHECKING:
    from blob_explorer.storage.namespace import NamespaceAdapter

logger = logging.getLogger(__name__)

DEFAULT_FETCH_BATCH_SIZE = 6

ProgressCallback = Callable[[int, int], None]


def archive_name(prefix: str, fallback: str) -> str:
    """File name for an archive of ``prefix``, e.g. "reports.zip"."""
    return f"{leaf_name(prefix) or fallback or 'folder'}.zip"


class ArchiveDownloader:
    """Fetches blobs in small concurrent batches and packs them into one archive."""

    def __init__(
        self,
        namespace: NamespaceAdapter,
        *,
        fetch_batch_size: int = DEFAULT_FETCH_BATCH_SIZE,
        batch_pause_seconds: float = 0.0,
    ) -> None:
        self._namespace = namespace
        self._fetch_batch_size = max(1, fetch_batch_size)
        self._batch_pause_seconds = batch_pause_seconds

    def download_folder(
        self, prefix: str, on_progress: ProgressCallback | None = None
    ) -> bytes:
        """Archive every file below ``prefix``; entry paths are relative to it.

        Raises:
            NothingToArchiveError: If the folder holds no files.
            TooLargeError: If the folder holds more files than an archive can.
        """
        folder = normalize_prefix(prefix)
        keys = [f.key for f in self._namespace.list_all_descendants(folder)]
        if not keys:
            raise NothingToArchiveError("Folder is empty, nothing to download.")
        ensure_archivable(len(keys))
        return self._archive(keys, folder, on_progress)

    def download_selection(
        self,
        paths: Sequence[str],
        strip_prefix: str = "",
        on_progress: ProgressCallback | None = None,
    ) -> bytes:
        """Archive a selection of files and folders (folders end with '/').

        Entry paths have ``strip_prefix`` removed where it applies. A file
        selected both directly and through its folder is archived once.

        Raises:
            NothingToArchiveError: If the selection resolves to no files.
            TooLargeError: If the selection holds more files than an archive can.
        """
        keys: list[str] = []
        for path in paths:
            if path.endswith(DELIMITER):
                keys.extend(f.key for f in self._namespace.list_all_descendants(path))
            else:
                keys.append(path.lstrip(DELIMITER))
        keys = list(dict.fromkeys(keys))
        if not keys:
            raise NothingToArchiveError("Selection contains no downloadable files.")
        ensure_archivable(len(keys))
        return self._archive(keys, normalize_prefix(strip_prefix), on_progress)

    def _archive(
        self, keys: list[str], strip_prefix: str, on_progress: ProgressCallback | None
    ) -> bytes:
        client = self._namespace.client

        def fetch(key: str) -> ArchiveEntry:
            relative = key[len(strip_prefix) :] if key.startswith(strip_prefix) else key
            return ArchiveEntry(path=relative, data=client.download(key))

        entries: list[ArchiveEntry] = []
        with ThreadPoolExecutor(max_workers=min(self._fetch_batch_size, len(keys))) as pool:
            for start in range(0, len(keys), self._fetch_batch_size):
                if start:
                    time.sleep(self._batch_pause_seconds)
                entries.extend(pool.map(fetch, keys[start : start + self._fetch_batch_size]))
                if on_progress:
                    on_progress(len(entries), len(keys))

        archive = build_archive(entries)
        logger.info(
            "[download_archive] archive built; entries:%d;bytes:%d",
            len(entries),
            len(archive),
        )
        return archive
