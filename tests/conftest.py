"""Pytest configuration: adds src/ to sys.path and provides an in-memory blob store."""

import os
import sys
import threading

import pytest

# Add src/ to Python path so tests can import from blob_explorer
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from blob_explorer.exceptions import BackendError  # noqa: E402
from blob_explorer.storage.models import FileItem, FolderItem, ListingPage  # noqa: E402
from blob_explorer.storage.namespace import NamespaceAdapter  # noqa: E402
from blob_explorer.storage.tree import TreeOperationEngine  # noqa: E402


class InMemoryBlobClient:
    """Stand-in for BlobStorageClient backed by a dict.

    Listings are paged with a deliberately small page size so every caller
    has to follow continuation tokens. ``fail_copy`` and ``fail_delete`` map
    keys to the exception the matching primitive should raise.
    """

    account_name = "acct"
    container_name = "files"

    def __init__(self, blobs: dict[str, bytes] | None = None, *, page_size: int = 2) -> None:
        self.blobs: dict[str, bytes] = dict(blobs or {})
        self.metadata: dict[str, dict[str, str]] = {}
        self.page_size = page_size
        self.capability_session = False
        self.fail_copy: dict[str, Exception] = {}
        self.fail_delete: dict[str, Exception] = {}
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def _record(self, op: str, key: str) -> None:
        with self._lock:
            self.calls.append((op, key))

    def calls_for(self, op: str) -> list[str]:
        return [key for name, key in self.calls if name == op]

    def _file(self, key: str, prefix: str) -> FileItem:
        return FileItem(
            key=key,
            display_name=key[len(prefix) :],
            size=len(self.blobs[key]),
            custom_metadata=dict(self.metadata.get(key, {})),
        )

    def list_page(
        self, prefix: str, *, delimited: bool, continuation_token: str | None = None
    ) -> ListingPage:
        self._record("list", prefix)
        entries: list[FolderItem | FileItem] = []
        seen: set[str] = set()
        for key in sorted(self.blobs):
            if not key.startswith(prefix):
                continue
            rest = key[len(prefix) :]
            if delimited and "/" in rest:
                folder = prefix + rest.split("/", 1)[0] + "/"
                if folder not in seen:
                    seen.add(folder)
                    entries.append(FolderItem(prefix=folder, display_name=folder[len(prefix) : -1]))
            else:
                entries.append(self._file(key, prefix))

        start = int(continuation_token or 0)
        end = start + self.page_size
        page = ListingPage(continuation_token=str(end) if end < len(entries) else None)
        for entry in entries[start:end]:
            if isinstance(entry, FolderItem):
                page.folders.append(entry)
            else:
                page.files.append(entry)
        return page

    def exists(self, key: str) -> bool:
        self._record("exists", key)
        return key in self.blobs

    def get_properties(self, key: str) -> FileItem:
        return self._file(key, "")

    def download(self, key: str) -> bytes:
        self._record("download", key)
        if key not in self.blobs:
            raise BackendError(404, "The specified blob does not exist.")
        return self.blobs[key]

    def upload(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
        on_progress=None,
    ) -> None:
        self._record("upload", key)
        with self._lock:
            self.blobs[key] = bytes(data)
            self.metadata[key] = dict(metadata or {})

    def copy(self, source_key: str, destination_key: str) -> None:
        self._record("copy", source_key)
        if source_key in self.fail_copy:
            raise self.fail_copy[source_key]
        if source_key not in self.blobs:
            raise BackendError(404, "The specified blob does not exist.")
        with self._lock:
            self.blobs[destination_key] = self.blobs[source_key]
            self.metadata[destination_key] = dict(self.metadata.get(source_key, {}))

    def delete(self, key: str) -> bool:
        self._record("delete", key)
        if key in self.fail_delete:
            raise self.fail_delete[key]
        with self._lock:
            self.metadata.pop(key, None)
            return self.blobs.pop(key, None) is not None


@pytest.fixture
def store() -> InMemoryBlobClient:
    return InMemoryBlobClient()


@pytest.fixture
def namespace(store: InMemoryBlobClient) -> NamespaceAdapter:
    return NamespaceAdapter(store)  # type: ignore[arg-type]


@pytest.fixture
def engine(namespace: NamespaceAdapter) -> TreeOperationEngine:
    return TreeOperationEngine(namespace, batch_size=2, delete_batch_size=2, max_items=50)
