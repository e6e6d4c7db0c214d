"""Unit tests for storage/namespace.py: virtual folder view over flat keys."""

import csv
import io

import pytest

from blob_explorer.exceptions import ConflictError, InvalidPathError, TooLargeError
from blob_explorer.storage.models import DELIMITER
from blob_explorer.storage.namespace import (
    REPORT_HEADER,
    NamespaceAdapter,
    UploaderIdentity,
    folders_below,
    validate_item_name,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _seed(store, *keys: str) -> None:
    for key in keys:
        store.blobs[key] = f"content of {key}".encode()


def _children_from_descendants(namespace: NamespaceAdapter, prefix: str) -> tuple[set, set]:
    """Immediate folders and files derived from a flat descendant listing."""
    folders: set[str] = set()
    files: set[str] = set()
    for item in namespace.list_all_descendants(prefix):
        rest = item.key[len(prefix) :]
        if DELIMITER in rest:
            folders.add(prefix + rest.split(DELIMITER, 1)[0] + DELIMITER)
        else:
            files.add(item.key)
    return folders, files


# ---------------------------------------------------------------------------
# list_children tests
# ---------------------------------------------------------------------------


class TestListChildren:
    def test_uploaded_file_creates_virtual_folder(self, namespace, store) -> None:
        store.upload("photos/x.jpg", b"jpeg")

        root = namespace.list_children("")
        photos = namespace.list_children("photos/")

        assert [f.prefix for f in root.folders] == ["photos/"]
        assert root.files == []
        assert [(f.key, f.display_name) for f in photos.files] == [("photos/x.jpg", "x.jpg")]

    def test_deleting_last_file_removes_folder(self, namespace, store) -> None:
        store.upload("photos/x.jpg", b"jpeg")
        store.delete("photos/x.jpg")

        assert namespace.list_children("").folders == []

    def test_follows_continuation_tokens(self, namespace, store) -> None:
        _seed(store, *(f"docs/file{i:02d}.txt" for i in range(7)))

        page = namespace.list_children("docs/")

        assert len(page.files) == 7
        assert page.continuation_token is None
        assert store.calls_for("list").count("docs/") == 4

    def test_hides_placeholders_and_admin_tree(self, namespace, store) -> None:
        _seed(store, "empty/.keep", ".audit/2024.log", "readme.md")

        page = namespace.list_children("")

        assert [f.prefix for f in page.folders] == ["empty/"]
        assert [f.key for f in page.files] == ["readme.md"]
        assert namespace.list_children("empty/").is_empty

    def test_normalizes_prefix(self, namespace, store) -> None:
        _seed(store, "a/b/c.txt")

        page = namespace.list_children("/a//b")

        assert [f.key for f in page.files] == ["a/b/c.txt"]

    @pytest.mark.parametrize("prefix", ["", "a/", "a/b/", "z/"])
    def test_listing_modes_agree(self, namespace, store, prefix) -> None:
        _seed(store, "a/1.txt", "a/b/2.txt", "a/b/c/3.txt", "a/d/4.txt", "top.txt", "z/9.txt")

        page = namespace.list_children(prefix)
        folders, files = _children_from_descendants(namespace, prefix)

        assert {f.prefix for f in page.folders} == folders
        assert {f.key for f in page.files} == files


# ---------------------------------------------------------------------------
# list_all_descendants / search / stats tests
# ---------------------------------------------------------------------------


class TestDescendants:
    def test_excludes_sentinels_and_filters_case_insensitively(self, namespace, store) -> None:
        _seed(store, "a/.keep", "a/Report.PDF", "a/notes.txt", ".audit/report.log")

        keys = [f.key for f in namespace.list_all_descendants("", "report")]

        assert keys == ["a/Report.PDF"]

    def test_include_placeholders(self, namespace, store) -> None:
        _seed(store, "a/.keep", "a/x.txt")

        keys = [f.key for f in namespace.list_all_descendants("a/", include_placeholders=True)]

        assert keys == ["a/.keep", "a/x.txt"]

    def test_ceiling_raises_too_large(self, namespace, store) -> None:
        _seed(store, *(f"big/{i}.bin" for i in range(5)))

        with pytest.raises(TooLargeError) as exc_info:
            namespace.list_all_descendants("big/", max_items=3)

        assert exc_info.value.limit == 3

    def test_search_returns_full_paths_and_derived_folders(self, namespace, store) -> None:
        _seed(store, "2024/invoices/jan.pdf", "2024/receipts/feb.pdf", "other.txt")

        page = namespace.search("INVOICE")

        assert [f.prefix for f in page.folders] == ["2024/invoices/"]
        assert [(f.key, f.display_name) for f in page.files] == [
            ("2024/invoices/jan.pdf", "2024/invoices/jan.pdf")
        ]

    def test_folder_stats(self, namespace, store) -> None:
        store.blobs.update({"p/a.bin": b"12345", "p/q/b.bin": b"123", "p/r/.keep": b""})

        stats = namespace.folder_stats("p/")

        assert stats.total_files == 2
        assert stats.total_size == 8
        assert stats.total_folders == 2

    def test_folders_below(self) -> None:
        assert folders_below("x/", ["x/a/b/c.txt", "x/d.txt"]) == ["x/a/", "x/a/b/"]

    def test_folder_exists(self, namespace, store) -> None:
        _seed(store, "real/file.txt")

        assert namespace.folder_exists("real")
        assert not namespace.folder_exists("ghost/")
        assert namespace.folder_exists("")


# ---------------------------------------------------------------------------
# Creation tests
# ---------------------------------------------------------------------------


class TestCreation:
    def test_create_folder_writes_placeholder(self, namespace, store) -> None:
        folder = namespace.create_folder("docs/", "new", UploaderIdentity(upn="a@b.c", oid="42"))

        assert folder.prefix == "docs/new/"
        assert store.blobs["docs/new/.keep"] == b""
        assert store.metadata["docs/new/.keep"] == {
            "uploaded_by_upn": "a@b.c",
            "uploaded_by_oid": "42",
        }

    def test_create_file_refuses_existing_key(self, namespace, store) -> None:
        _seed(store, "docs/a.txt")

        with pytest.raises(ConflictError):
            namespace.create_file("docs/", "a.txt", b"new")

    def test_upload_skips_existing_without_overwrite(self, namespace, store) -> None:
        _seed(store, "a.txt")

        assert namespace.upload_file("a.txt", b"new", overwrite=False) is False
        assert store.blobs["a.txt"] == b"content of a.txt"

    def test_overwrite_keeps_uploader_and_stamps_editor(self, namespace, store) -> None:
        store.upload("a.txt", b"old", metadata={"uploaded_by_upn": "first@x.y"})

        namespace.upload_file("a.txt", b"new", overwrite=True, user=UploaderIdentity(upn="second@x.y"))

        assert store.metadata["a.txt"] == {
            "uploaded_by_upn": "first@x.y",
            "last_edited_by_upn": "second@x.y",
        }

    @pytest.mark.parametrize("name", ["", "   ", "a/b", "a\\b"])
    def test_validate_item_name_rejects(self, name) -> None:
        with pytest.raises(InvalidPathError):
            validate_item_name(name)


# ---------------------------------------------------------------------------
# Report tests
# ---------------------------------------------------------------------------


class TestExportReport:
    def test_report_lists_folders_then_files(self, namespace, store) -> None:
        _seed(store, "r/sub/a.txt", "r/.keep")

        report = namespace.export_report("r/")

        assert report.startswith("\ufeff")
        assert "\r\n" in report
        rows = list(csv.reader(io.StringIO(report.lstrip("\ufeff"))))
        assert rows[0] == REPORT_HEADER
        assert [(row[0], row[2]) for row in rows[1:]] == [("folder", "r/sub/"), ("file", "r/sub/a.txt")]
        assert rows[2][4] == "https://acct.blob.core.windows.net/files/r/sub/a.txt"
