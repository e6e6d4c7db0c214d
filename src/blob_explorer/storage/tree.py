"""Folder rename/move/copy/delete as batched flat copy and delete primitives."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from blob_explorer.exceptions import BlobExplorerError, InvalidPathError, TreeOperationError
from blob_explorer.storage.models import (
    DELIMITER,
    ConflictDecision,
    ConflictItem,
    FolderTransferResult,
    ItemOutcome,
    ItemResult,
    leaf_name,
    normalize_prefix,
    parent_prefix,
)

if TYPE_CHECKING:
    from blob_explorer.config import AppConfig
    from blob_explorer.storage.namespace import NamespaceAdapter

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_DELETE_BATCH_SIZE = 50
DEFAULT_MAX_TREE_ITEMS = 5000

T = TypeVar("T")

ConflictResolver = Callable[[ConflictItem], ConflictDecision]


@dataclass
class ConflictState:
    """Per-invocation accumulator for the operator's "overwrite all" answer.

    Created fresh for each bulk call and passed down explicitly; never shared
    between invocations.
    """

    overwrite_all: bool = False


def fixed_resolver(decision: ConflictDecision) -> ConflictResolver:
    """Resolver that answers every conflict the same way."""

    def resolve(conflict: ConflictItem) -> ConflictDecision:
        return decision

    return resolve


def ensure_not_self_contained(source_prefix: str, destination_prefix: str) -> None:
    """Reject placing a folder inside itself or one of its descendants.

    Pure string-prefix comparison on normalised paths; no network call.

    Raises:
        InvalidPathError: If the destination lies at or below the source.
    """
    source = normalize_prefix(source_prefix)
    destination = normalize_prefix(destination_prefix)
    if not source:
        raise InvalidPathError("The container root cannot be moved or copied")
    if destination.startswith(source):
        raise InvalidPathError(
            f"Cannot move or copy '{source}' into itself or one of its subfolders "
            f"('{destination}')"
        )


class TreeOperationEngine:
    """Implements folder operations the backing store lacks.

    Every folder operation enumerates all descendants up front, then runs
    fixed-size batches of concurrent primitives. Batch N+1 never starts
    before batch N has fully resolved.
    """

    def __init__(
        self,
        namespace: NamespaceAdapter,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        delete_batch_size: int = DEFAULT_DELETE_BATCH_SIZE,
        max_items: int = DEFAULT_MAX_TREE_ITEMS,
        batch_pause_seconds: float = 0.0,
    ) -> None:
        """Initialise the engine.

        Args:
            namespace: Namespace adapter used for enumeration and primitives.
            batch_size: Concurrent copies per batch.
            delete_batch_size: Concurrent deletes per batch.
            max_items: Ceiling on descendants for rename/move/copy.
            batch_pause_seconds: Pause between batches to let other work run.
        """
        self._namespace = namespace
        self._client = namespace.client
        self._batch_size = max(1, batch_size)
        self._delete_batch_size = max(1, delete_batch_size)
        self._max_items = max_items
        self._batch_pause_seconds = batch_pause_seconds

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def copy_one(self, source_key: str, destination_key: str) -> None:
        self._client.copy(source_key, destination_key)

    def delete_one(self, key: str) -> None:
        self._client.delete(key)

    def rename_file(self, source_key: str, destination_key: str) -> None:
        """Rename or move a single file: copy, then delete the source.

        Raises:
            InvalidPathError: If source and destination are the same key.
            TreeOperationError: Naming the phase that failed.
        """
        if source_key == destination_key:
            raise InvalidPathError(f"'{source_key}' is already at that location")
        for phase, action in (
            ("copy", lambda: self.copy_one(source_key, destination_key)),
            ("delete source", lambda: self.delete_one(source_key)),
        ):
            try:
                action()
            except BlobExplorerError as exc:
                raise TreeOperationError(
                    operation="rename",
                    phase=phase,
                    failed_key=source_key,
                    completed=[source_key] if phase != "copy" else [],
                    failure_count=1,
                    cause=exc,
                ) from exc
        logger.info("[rename_file] renamed; source:%s;destination:%s", source_key, destination_key)

    # ------------------------------------------------------------------
    # Folder operations
    # ------------------------------------------------------------------

    def rename_or_move_folder(
        self, source_prefix: str, destination_prefix: str
    ) -> FolderTransferResult:
        """Rename or move a virtual folder and everything below it.

        Copies every descendant in batches and only deletes the originals once
        all copy batches have succeeded. A source with no objects (purely
        virtual, or already moved by an earlier run) is a successful no-op.

        Args:
            source_prefix: Folder to move, e.g. "reports/".
            destination_prefix: Full new prefix, e.g. "archive/reports/".

        Returns:
            FolderTransferResult; ``source_empty`` marks the no-op case.

        Raises:
            InvalidPathError: If the destination lies inside the source.
            TooLargeError: If the folder holds more than the item ceiling.
            TreeOperationError: If a batch fails; names the first failing key.
        """
        return self._transfer_folder(
            source_prefix, destination_prefix, move=True, operation="rename_or_move_folder"
        )

    def copy_folder(self, source_prefix: str, destination_prefix: str) -> FolderTransferResult:
        return self._transfer_folder(
            source_prefix, destination_prefix, move=False, operation="copy_folder"
        )

    def _transfer_folder(
        self, source_prefix: str, destination_prefix: str, *, move: bool, operation: str
    ) -> FolderTransferResult:
        source = normalize_prefix(source_prefix)
        destination = normalize_prefix(destination_prefix)
        ensure_not_self_contained(source, destination)

        result = FolderTransferResult(source_prefix=source, destination_prefix=destination)
        items = self._namespace.list_all_descendants(
            source, include_placeholders=True, max_items=self._max_items
        )
        if not items:
            result.source_empty = True
            logger.info(
                "[%s] source already empty; source:%s;destination:%s",
                operation,
                source,
                destination,
            )
            return result

        pairs = [(item.key, destination + item.key[len(source) :]) for item in items]
        copied = self._run_batches(
            operation,
            "copy",
            pairs,
            lambda pair: self.copy_one(*pair),
            self._batch_size,
            label=lambda pair: pair[0],
        )
        result.copied = len(copied)

        if move:
            deleted = self._run_batches(
                operation,
                "delete",
                [source_key for source_key, _ in pairs],
                self.delete_one,
                self._delete_batch_size,
                label=str,
            )
            result.deleted = len(deleted)

        logger.info(
            "[%s] folder transferred; source:%s;destination:%s;copied:%d;deleted:%d",
            operation,
            source,
            destination,
            result.copied,
            result.deleted,
        )
        return result

    def delete_folder(self, prefix: str) -> int:
        """Delete every object below ``prefix``, placeholders included.

        Returns:
            Number of objects deleted.
        """
        folder = normalize_prefix(prefix)
        if not folder:
            raise InvalidPathError("Refusing to delete the container root")
        keys = [
            item.key
            for item in self._namespace.list_all_descendants(folder, include_placeholders=True)
        ]
        deleted = self._run_batches(
            "delete_folder", "delete", keys, self.delete_one, self._delete_batch_size, label=str
        )
        logger.info("[delete_folder] folder deleted; prefix:%s;count:%d", folder, len(deleted))
        return len(deleted)

    def delete_items(self, paths: Sequence[str]) -> int:
        """Delete a selection of files and folders; folders end with '/'."""
        total = 0
        for path in paths:
            if path.endswith(DELIMITER):
                total += self.delete_folder(path)
            else:
                self.delete_one(path.lstrip(DELIMITER))
                total += 1
        return total

    # ------------------------------------------------------------------
    # Bulk copy/move with conflict resolution
    # ------------------------------------------------------------------

    def copy_or_move_with_conflict_resolution(
        self,
        items: Sequence[str],
        destination_prefix: str,
        resolver: ConflictResolver,
        *,
        move: bool = False,
    ) -> list[ItemResult]:
        """Copy or move files and folders into ``destination_prefix``.

        Every folder is checked against the self-containment guard before any
        network call, then against the item ceiling before any copy, so an
        oversized folder rejects the whole call with nothing transferred. Items
        already inside the destination are skipped without touching the backend.
        An occupied destination asks ``resolver`` unless "overwrite all" was
        chosen earlier in this same call. A folder with no objects left (already
        moved by an earlier run) is reported as SKIPPED_SOURCE_EMPTY. Per-item
        failures are recorded and the remaining items still run.

        Args:
            items: File keys and folder prefixes (folders end with '/').
            destination_prefix: Folder to place the items in.
            resolver: Called once per conflict to obtain a ConflictDecision.
            move: Delete the sources after copying.

        Returns:
            One ItemResult per input item, in input order.

        Raises:
            InvalidPathError: If any folder would be placed inside itself.
            TooLargeError: If any folder holds more than the item ceiling.
        """
        destination = normalize_prefix(destination_prefix)
        folders = [path for path in items if path.endswith(DELIMITER)]
        for path in folders:
            ensure_not_self_contained(path, destination)
        for path in folders:
            self._namespace.list_all_descendants(
                path, include_placeholders=True, max_items=self._max_items
            )

        state = ConflictState()
        results = [self._transfer_item(path, destination, resolver, state, move) for path in items]
        logger.info(
            "[copy_or_move] bulk transfer finished; destination:%s;move:%s;items:%d;failed:%d",
            destination,
            move,
            len(results),
            sum(1 for r in results if r.outcome is ItemOutcome.FAILED),
        )
        return results

    def _transfer_item(
        self,
        path: str,
        destination: str,
        resolver: ConflictResolver,
        state: ConflictState,
        move: bool,
    ) -> ItemResult:
        is_folder = path.endswith(DELIMITER)
        source = normalize_prefix(path) if is_folder else path.lstrip(DELIMITER)
        target = destination + leaf_name(source) + (DELIMITER if is_folder else "")

        if parent_prefix(source) == destination:
            return ItemResult(source, target, ItemOutcome.SKIPPED_ALREADY_THERE)

        try:
            occupied = (
                self._namespace.folder_exists(target) if is_folder else self._client.exists(target)
            )
            if occupied:
                decision = self._resolve_conflict(
                    ConflictItem(source=source, destination=target, is_folder=is_folder),
                    resolver,
                    state,
                )
                if decision is ConflictDecision.SKIP:
                    return ItemResult(source, target, ItemOutcome.SKIPPED_CONFLICT)
            if is_folder:
                transferred = self._transfer_folder(
                    source, target, move=move, operation="copy_or_move"
                )
                if transferred.source_empty:
                    return ItemResult(source, target, ItemOutcome.SKIPPED_SOURCE_EMPTY)
            else:
                self.copy_one(source, target)
                if move:
                    self.delete_one(source)
        except BlobExplorerError as exc:
            logger.warning(
                "[copy_or_move] item failed; source:%s;destination:%s;error:%s",
                source,
                target,
                exc,
            )
            return ItemResult(source, target, ItemOutcome.FAILED, error=str(exc))
        return ItemResult(source, target, ItemOutcome.MOVED if move else ItemOutcome.COPIED)

    @staticmethod
    def _resolve_conflict(
        conflict: ConflictItem, resolver: ConflictResolver, state: ConflictState
    ) -> ConflictDecision:
        if state.overwrite_all:
            return ConflictDecision.OVERWRITE
        decision = resolver(conflict)
        if decision is ConflictDecision.OVERWRITE_ALL:
            state.overwrite_all = True
        logger.info(
            "[resolve_conflict] conflict resolved; destination:%s;decision:%s",
            conflict.destination,
            decision.value,
        )
        return decision

    # ------------------------------------------------------------------
    # Batching
    # ------------------------------------------------------------------

    def _run_batches(
        self,
        operation: str,
        phase: str,
        work: Sequence[T],
        action: Callable[[T], None],
        batch_size: int,
        *,
        label: Callable[[T], str],
    ) -> list[str]:
        """Run ``action`` over ``work`` in sequential batches of concurrent calls.

        A failing batch still runs to completion; then the operation stops and
        raises TreeOperationError naming the first failing item of that batch.

        Returns:
            Labels of the completed items, in enumeration order.
        """
        completed: list[str] = []
        if not work:
            return completed

        with ThreadPoolExecutor(max_workers=min(batch_size, len(work))) as pool:
            for start in range(0, len(work), batch_size):
                if start:
                    # Yield between batches.
                    time.sleep(self._batch_pause_seconds)
                batch = work[start : start + batch_size]
                futures = [pool.submit(action, item) for item in batch]
                failures: list[tuple[T, BaseException]] = []
                for item, future in zip(batch, futures):
                    error = future.exception()
                    if error is None:
                        completed.append(label(item))
                    else:
                        failures.append((item, error))
                if failures:
                    first_item, first_error = failures[0]
                    logger.error(
                        "[%s] batch failed; phase:%s;first_failed:%s;failed:%d;completed:%d",
                        operation,
                        phase,
                        label(first_item),
                        len(failures),
                        len(completed),
                    )
                    raise TreeOperationError(
                        operation=operation,
                        phase=phase,
                        failed_key=label(first_item),
                        completed=completed,
                        failure_count=len(failures),
                        cause=first_error,
                    ) from first_error
                logger.info(
                    "[%s] batch done; phase:%s;done:%d;total:%d",
                    operation,
                    phase,
                    len(completed),
                    len(work),
                )
        return completed


def tree_engine_from_config(namespace: NamespaceAdapter, config: AppConfig) -> TreeOperationEngine:
    """Construct a TreeOperationEngine from application configuration."""
    return TreeOperationEngine(
        namespace,
        batch_size=config.batch_size,
        delete_batch_size=config.delete_batch_size,
        max_items=config.max_tree_items,
        batch_pause_seconds=config.batch_pause_seconds,
    )
