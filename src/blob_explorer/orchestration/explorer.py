"""Explorer facade: wires the namespace, tree engine, archive and signer together."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from blob_explorer.archive.download import ArchiveDownloader, archive_name
from blob_explorer.auth.credentials import credential_from_config
from blob_explorer.exceptions import InvalidPathError
from blob_explorer.sharing.delegation import CapabilityUrlIssuer, capability_issuer_from_config
from blob_explorer.sharing.models import SasWindow
from blob_explorer.storage.client import blob_storage_client_from_config
from blob_explorer.storage.models import (
    DELIMITER,
    ConflictDecision,
    FolderTransferResult,
    ItemResult,
    normalize_prefix,
    parent_prefix,
)
from blob_explorer.storage.namespace import NamespaceAdapter, validate_item_name
from blob_explorer.storage.tree import (
    ConflictResolver,
    TreeOperationEngine,
    fixed_resolver,
    tree_engine_from_config,
)

if TYPE_CHECKING:
    from blob_explorer.config import AppConfig

logger = logging.getLogger(__name__)


class Explorer:
    """One entry point per user-facing operation."""

    def __init__(
        self,
        namespace: NamespaceAdapter,
        tree: TreeOperationEngine,
        downloader: ArchiveDownloader,
        issuer: CapabilityUrlIssuer,
        container_name: str = "",
    ) -> None:
        """Initialise the explorer.

        Args:
            namespace: Folder/file view over the container.
            tree: Batched folder operations.
            downloader: Archive builder for folder and selection downloads.
            issuer: Capability URL issuer.
            container_name: Used to name archives of the container root.
        """
        self.namespace = namespace
        self.tree = tree
        self._downloader = downloader
        self._issuer = issuer
        self._container_name = container_name

    def rename(self, path: str, new_name: str) -> FolderTransferResult | str:
        """Rename a file or folder in place (folders end with '/').

        Returns:
            FolderTransferResult for folders, the new key for files.
        """
        name = validate_item_name(new_name)
        if path.endswith(DELIMITER):
            source = normalize_prefix(path)
            if not source:
                raise InvalidPathError("The container root cannot be renamed")
            return self.tree.rename_or_move_folder(source, parent_prefix(source) + name)
        source_key = path.lstrip(DELIMITER)
        destination_key = parent_prefix(source_key) + name
        self.tree.rename_file(source_key, destination_key)
        return destination_key

    def transfer(
        self,
        items: list[str],
        destination_prefix: str,
        *,
        move: bool = False,
        on_conflict: ConflictDecision | ConflictResolver = ConflictDecision.SKIP,
    ) -> list[ItemResult]:
        """Copy or move a selection into ``destination_prefix``."""
        resolver = (
            fixed_resolver(on_conflict)
            if isinstance(on_conflict, ConflictDecision)
            else on_conflict
        )
        return self.tree.copy_or_move_with_conflict_resolution(
            items, destination_prefix, resolver, move=move
        )

    def delete(self, paths: list[str]) -> int:
        return self.tree.delete_items(paths)

    def archive(self, paths: list[str] | None = None, prefix: str = "") -> tuple[str, bytes]:
        """Build an archive of a folder, or of a selection relative to ``prefix``.

        Returns:
            Tuple of (file name, archive bytes).
        """
        if paths:
            data = self._downloader.download_selection(paths, strip_prefix=prefix)
            name = archive_name(prefix, self._container_name) if prefix else "download.zip"
        else:
            data = self._downloader.download_folder(prefix)
            name = archive_name(prefix, self._container_name)
        logger.info("[archive] archive ready; name:%s;bytes:%d", name, len(data))
        return name, data

    def share(
        self,
        path: str,
        permissions: str,
        expiry: datetime,
        *,
        start: datetime | None = None,
        ip: str | None = None,
    ) -> str:
        """Capability URL for one blob, or for the container when ``path`` is empty."""
        blob = path.strip().lstrip(DELIMITER)
        return self._issuer.issue(
            blob,
            permissions,
            SasWindow(expiry=expiry, start=start),
            is_container_level=not blob,
            ip=ip,
        )


def explorer_from_config(config: AppConfig) -> Explorer:
    """Construct an Explorer from application configuration.

    Creates the credential supplier and storage client from the config, then
    wires them into the namespace adapter, tree engine, downloader and issuer.

    Args:
        config: Application configuration instance.

    Returns:
        Configured Explorer instance.
    """
    credential = credential_from_config(config)
    client = blob_storage_client_from_config(config, credential)
    namespace = NamespaceAdapter(client)
    return Explorer(
        namespace=namespace,
        tree=tree_engine_from_config(namespace, config),
        downloader=ArchiveDownloader(
            namespace,
            fetch_batch_size=config.archive_fetch_batch_size,
            batch_pause_seconds=config.batch_pause_seconds,
        ),
        issuer=capability_issuer_from_config(config, credential),
        container_name=config.container_name,
    )
