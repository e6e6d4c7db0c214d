"""HTTP trigger blueprint: folder browsing, tree operations, archives and sharing."""

import json
import logging
from datetime import datetime
from typing import Any

import azure.functions as func

from blob_explorer import __version__
from blob_explorer.config import load_config
from blob_explorer.exceptions import (
    BackendError,
    BlobExplorerError,
    ConflictError,
    NothingToArchiveError,
    NotReachableError,
    PermissionDeniedError,
    SignatureOrConfigError,
    TooLargeError,
    TreeOperationError,
)
from blob_explorer.orchestration.explorer import explorer_from_config
from blob_explorer.storage.models import (
    ConflictDecision,
    FileItem,
    FolderItem,
    FolderTransferResult,
    ListingPage,
)

logger = logging.getLogger(__name__)

bp = func.Blueprint()

_STATUS_BY_ERROR: list[tuple[type[BlobExplorerError], int]] = [
    (PermissionDeniedError, 403),
    (NotReachableError, 503),
    (ConflictError, 409),
    (TooLargeError, 413),
    (BackendError, 502),
    (SignatureOrConfigError, 400),
    (NothingToArchiveError, 400),
]


def status_for_error(exc: BlobExplorerError) -> int:
    """HTTP status for a typed error; a partial tree failure takes its cause's status."""
    if isinstance(exc, TreeOperationError):
        cause = exc.__cause__
        return status_for_error(cause) if isinstance(cause, BlobExplorerError) else 502
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


def _json_response(payload: dict[str, Any], status_code: int = 200) -> func.HttpResponse:
    return func.HttpResponse(json.dumps(payload), status_code=status_code, mimetype="application/json")


def _error_response(exc: BlobExplorerError) -> func.HttpResponse:
    payload: dict[str, Any] = {"status": "error", "message": str(exc)}
    if isinstance(exc, TreeOperationError):
        payload.update(
            phase=exc.phase,
            failed_key=exc.failed_key,
            completed=len(exc.completed),
        )
    return _json_response(payload, status_for_error(exc))


def _internal_error() -> func.HttpResponse:
    return _json_response({"status": "error", "message": "Internal server error"}, 500)


def _disabled(feature: str) -> func.HttpResponse:
    return _json_response({"status": "error", "message": f"{feature} is disabled"}, 403)


def _body(req: func.HttpRequest) -> dict[str, Any]:
    try:
        body = req.get_json()
    except ValueError as exc:
        raise SignatureOrConfigError("Request body must be JSON") from exc
    if not isinstance(body, dict):
        raise SignatureOrConfigError("Request body must be a JSON object")
    return body


def _parse_time(value: str | None, field: str) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise SignatureOrConfigError(f"'{field}' is not an ISO 8601 date/time") from exc


def _folder_json(folder: FolderItem) -> dict[str, Any]:
    return {"prefix": folder.prefix, "name": folder.display_name}


def _file_json(item: FileItem) -> dict[str, Any]:
    return {
        "key": item.key,
        "name": item.display_name,
        "size": item.size,
        "content_type": item.content_type,
        "last_modified": item.last_modified.isoformat() if item.last_modified else None,
        "metadata": item.custom_metadata,
    }


def _listing_json(page: ListingPage) -> dict[str, Any]:
    return {
        "status": "ok",
        "folders": [_folder_json(f) for f in page.folders],
        "files": [_file_json(f) for f in page.files],
    }


def _transfer_json(result: FolderTransferResult) -> dict[str, Any]:
    return {
        "source": result.source_prefix,
        "destination": result.destination_prefix,
        "copied": result.copied,
        "deleted": result.deleted,
        "message": result.message,
    }


@bp.route(route="health", methods=["GET"], auth_level=func.AuthLevel.ANONYMOUS)
def health_check(req: func.HttpRequest) -> func.HttpResponse:
    """Health check endpoint. Returns service status and version."""
    logger.info("[health_check] health check requested")

    try:
        return _json_response({"status": "ok", "version": __version__})

    except Exception:
        logger.error("[health_check] health check failed", exc_info=True)
        return _internal_error()


@bp.route(route="list", methods=["GET"], auth_level=func.AuthLevel.FUNCTION)
def list_folder(req: func.HttpRequest) -> func.HttpResponse:
    """Immediate folders and files under ``?prefix=``."""
    prefix = req.params.get("prefix", "")
    logger.info("[list_folder] listing requested; prefix:%s", prefix)

    try:
        explorer = explorer_from_config(load_config())
        return _json_response(_listing_json(explorer.namespace.list_children(prefix)))

    except BlobExplorerError as exc:
        logger.warning("[list_folder] listing failed; prefix:%s;error:%s", prefix, exc)
        return _error_response(exc)
    except Exception:
        logger.error("[list_folder] listing failed", exc_info=True)
        return _internal_error()


@bp.route(route="search", methods=["GET"], auth_level=func.AuthLevel.FUNCTION)
def search(req: func.HttpRequest) -> func.HttpResponse:
    """Whole-container search on ``?q=``."""
    term = req.params.get("q", "")
    logger.info("[search] search requested; term:%s", term)

    try:
        explorer = explorer_from_config(load_config())
        return _json_response(_listing_json(explorer.namespace.search(term)))

    except BlobExplorerError as exc:
        logger.warning("[search] search failed; term:%s;error:%s", term, exc)
        return _error_response(exc)
    except Exception:
        logger.error("[search] search failed", exc_info=True)
        return _internal_error()


@bp.route(route="stats", methods=["GET"], auth_level=func.AuthLevel.FUNCTION)
def folder_stats(req: func.HttpRequest) -> func.HttpResponse:
    """Recursive folder, file and byte counts under ``?prefix=``."""
    prefix = req.params.get("prefix", "")

    try:
        explorer = explorer_from_config(load_config())
        stats = explorer.namespace.folder_stats(prefix)
        return _json_response(
            {
                "status": "ok",
                "total_folders": stats.total_folders,
                "total_files": stats.total_files,
                "total_size": stats.total_size,
            }
        )

    except BlobExplorerError as exc:
        logger.warning("[folder_stats] stats failed; prefix:%s;error:%s", prefix, exc)
        return _error_response(exc)
    except Exception:
        logger.error("[folder_stats] stats failed", exc_info=True)
        return _internal_error()


@bp.route(route="report", methods=["GET"], auth_level=func.AuthLevel.FUNCTION)
def export_report(req: func.HttpRequest) -> func.HttpResponse:
    """CSV inventory of everything under ``?prefix=``."""
    prefix = req.params.get("prefix", "")

    try:
        explorer = explorer_from_config(load_config())
        report = explorer.namespace.export_report(prefix)
        return func.HttpResponse(
            report.encode("utf-8"),
            status_code=200,
            mimetype="text/csv",
            headers={"Content-Disposition": 'attachment; filename="report.csv"'},
        )

    except BlobExplorerError as exc:
        logger.warning("[export_report] report failed; prefix:%s;error:%s", prefix, exc)
        return _error_response(exc)
    except Exception:
        logger.error("[export_report] report failed", exc_info=True)
        return _internal_error()


@bp.route(route="folders", methods=["POST"], auth_level=func.AuthLevel.FUNCTION)
def create_folder(req: func.HttpRequest) -> func.HttpResponse:
    """Create an empty folder: ``{"parent": "...", "name": "..."}``."""
    try:
        body = _body(req)
        explorer = explorer_from_config(load_config())
        folder = explorer.namespace.create_folder(body.get("parent", ""), body.get("name", ""))
        return _json_response({"status": "ok", "folder": _folder_json(folder)}, 201)

    except BlobExplorerError as exc:
        logger.warning("[create_folder] create failed; error:%s", exc)
        return _error_response(exc)
    except Exception:
        logger.error("[create_folder] create failed", exc_info=True)
        return _internal_error()


@bp.route(route="rename", methods=["POST"], auth_level=func.AuthLevel.FUNCTION)
def rename(req: func.HttpRequest) -> func.HttpResponse:
    """Rename a file or folder: ``{"path": "...", "new_name": "..."}``."""
    try:
        config = load_config()
        if not config.allow_rename:
            return _disabled("Renaming")
        body = _body(req)
        explorer = explorer_from_config(config)
        result = explorer.rename(body.get("path", ""), body.get("new_name", ""))
        if isinstance(result, FolderTransferResult):
            return _json_response({"status": "ok", "result": _transfer_json(result)})
        return _json_response({"status": "ok", "key": result})

    except BlobExplorerError as exc:
        logger.warning("[rename] rename failed; error:%s", exc)
        return _error_response(exc)
    except Exception:
        logger.error("[rename] rename failed", exc_info=True)
        return _internal_error()


@bp.route(route="transfer", methods=["POST"], auth_level=func.AuthLevel.FUNCTION)
def transfer(req: func.HttpRequest) -> func.HttpResponse:
    """Bulk copy or move.

    Body: ``{"items": [...], "destination": "...", "move": false,
    "on_conflict": "skip" | "overwrite" | "overwriteAll"}``.
    """
    try:
        config = load_config()
        body = _body(req)
        move = bool(body.get("move", False))
        if move and not config.allow_rename:
            return _disabled("Moving")
        try:
            decision = ConflictDecision(body.get("on_conflict", ConflictDecision.SKIP.value))
        except ValueError as exc:
            raise SignatureOrConfigError("'on_conflict' must be skip, overwrite or overwriteAll") from exc

        explorer = explorer_from_config(config)
        results = explorer.transfer(
            list(body.get("items", [])), body.get("destination", ""), move=move, on_conflict=decision
        )
        return _json_response(
            {
                "status": "ok",
                "results": [
                    {
                        "source": r.source,
                        "destination": r.destination,
                        "outcome": r.outcome.value,
                        "error": r.error,
                    }
                    for r in results
                ],
            }
        )

    except BlobExplorerError as exc:
        logger.warning("[transfer] transfer failed; error:%s", exc)
        return _error_response(exc)
    except Exception:
        logger.error("[transfer] transfer failed", exc_info=True)
        return _internal_error()


@bp.route(route="delete", methods=["POST"], auth_level=func.AuthLevel.FUNCTION)
def delete(req: func.HttpRequest) -> func.HttpResponse:
    """Delete files and folders: ``{"paths": [...]}``."""
    try:
        config = load_config()
        if not config.allow_delete:
            return _disabled("Deleting")
        body = _body(req)
        explorer = explorer_from_config(config)
        deleted = explorer.delete(list(body.get("paths", [])))
        logger.info("[delete] delete complete; deleted:%d", deleted)
        return _json_response({"status": "ok", "deleted": deleted})

    except BlobExplorerError as exc:
        logger.warning("[delete] delete failed; error:%s", exc)
        return _error_response(exc)
    except Exception:
        logger.error("[delete] delete failed", exc_info=True)
        return _internal_error()


@bp.route(route="archive", methods=["GET"], auth_level=func.AuthLevel.FUNCTION)
def download_archive(req: func.HttpRequest) -> func.HttpResponse:
    """ZIP archive of ``?prefix=``, or of ``?paths=a,b/`` relative to it."""
    prefix = req.params.get("prefix", "")
    paths = [p for p in req.params.get("paths", "").split(",") if p]

    try:
        config = load_config()
        if not config.allow_download:
            return _disabled("Downloading")
        explorer = explorer_from_config(config)
        name, data = explorer.archive(paths or None, prefix=prefix)
        return func.HttpResponse(
            data,
            status_code=200,
            mimetype="application/zip",
            headers={"Content-Disposition": f'attachment; filename="{name}"'},
        )

    except BlobExplorerError as exc:
        logger.warning("[download_archive] archive failed; prefix:%s;error:%s", prefix, exc)
        return _error_response(exc)
    except Exception:
        logger.error("[download_archive] archive failed", exc_info=True)
        return _internal_error()


@bp.route(route="sas", methods=["POST"], auth_level=func.AuthLevel.FUNCTION)
def create_capability_url(req: func.HttpRequest) -> func.HttpResponse:
    """Mint a capability URL.

    Body: ``{"path": "" | "<blob>", "permissions": "rl", "expiry": "<iso>",
    "start": "<iso>", "ip": "<ip or range>"}``. An empty path signs the container.
    """
    try:
        config = load_config()
        if not config.allow_sas:
            return _disabled("Sharing")
        body = _body(req)
        expiry = _parse_time(body.get("expiry"), "expiry")
        if expiry is None:
            raise SignatureOrConfigError("Please set an expiry date/time.")
        explorer = explorer_from_config(config)
        url = explorer.share(
            body.get("path", ""),
            body.get("permissions", ""),
            expiry,
            start=_parse_time(body.get("start"), "start"),
            ip=body.get("ip") or None,
        )
        return _json_response({"status": "ok", "url": url})

    except BlobExplorerError as exc:
        logger.warning("[create_capability_url] signing failed; error:%s", exc)
        return _error_response(exc)
    except Exception:
        logger.error("[create_capability_url] signing failed", exc_info=True)
        return _internal_error()
