"""Flat blob primitives over one container, with typed error translation."""

from __future__ import annotations

import base64
import contextlib
import logging
import math
import re
import time
import xml.etree.ElementTree as ET
from collections.abc import Callable, Iterator
from typing import TYPE_CHECKING, Any

from azure.core.exceptions import (
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.storage.blob import BlobBlock, BlobPrefix, ContainerClient, ContentSettings

from blob_explorer.auth.credentials import CapabilityCredential, MsalTokenCredential
from blob_explorer.exceptions import (
    BackendError,
    BlobExplorerError,
    NotReachableError,
    PermissionDeniedError,
    SignatureOrConfigError,
    TooLargeError,
)
from blob_explorer.storage.models import DELIMITER, FileItem, FolderItem, ListingPage

if TYPE_CHECKING:
    from azure.storage.blob import BlobProperties

    from blob_explorer.config import AppConfig

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 4 * 1024 * 1024
DEFAULT_LIST_PAGE_SIZE = 5000
DEFAULT_COPY_POLL_SECONDS = 0.5

# Block blobs hold at most this many committed blocks
MAX_BLOCK_COUNT = 50_000

DEFAULT_CONTENT_TYPE = "application/octet-stream"

_METADATA_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Operation kinds used to word permission errors
OP_LIST = "list"
OP_READ = "read"
OP_WRITE = "write"
OP_COPY = "copy"
OP_DELETE = "delete"
OP_DELEGATE = "delegate"

_CAPABILITY_DENIED = {
    OP_LIST: "Access denied (403). The SAS token does not include 'List' (l) permission. "
    "Regenerate the SAS URL with list permission enabled.",
    OP_READ: "Access denied (403). The SAS token does not include 'Read' (r) permission. "
    "Regenerate the SAS URL with read permission enabled.",
    OP_WRITE: "Upload denied (403). The SAS token does not include write permission (w/c/a). "
    "Regenerate the SAS URL with write permission enabled.",
    OP_COPY: "Copy denied (403). The SAS token needs read (r) and write (w/c) permission. "
    "Regenerate the SAS URL with both permissions enabled.",
    OP_DELETE: "Delete denied (403). The SAS token does not include 'Delete' (d) permission. "
    "Regenerate the SAS URL with delete permission enabled.",
    OP_DELEGATE: "Delegation denied (403). Capability URLs cannot mint new capability URLs; "
    "sign in with an identity that holds a data-plane role.",
}

_ROLE_DENIED = {
    OP_LIST: "Access denied (403). The signed-in identity does not have a Storage data-plane "
    "role on this container. Assign the 'Storage Blob Data Reader' role via Access control "
    "(IAM) on the storage account.",
    OP_READ: "Access denied (403). Assign the 'Storage Blob Data Reader' role via IAM on the "
    "storage account.",
    OP_WRITE: "Upload denied (403). Assign the 'Storage Blob Data Contributor' role via IAM on "
    "the storage account.",
    OP_COPY: "Copy denied (403). Assign the 'Storage Blob Data Contributor' role via IAM on "
    "the storage account.",
    OP_DELETE: "Delete denied (403). Assign the 'Storage Blob Data Contributor' role via IAM on "
    "the storage account.",
    OP_DELEGATE: "User delegation key denied (403). Assign the 'Storage Blob Delegator' or "
    "'Storage Blob Data Contributor' role via IAM on the storage account.",
}


def permission_denied_message(operation: str, capability_session: bool) -> str:
    table = _CAPABILITY_DENIED if capability_session else _ROLE_DENIED
    return table.get(operation, table[OP_READ])


def _storage_error_message(exc: HttpResponseError) -> str:
    """Service message for a failed storage call.

    The blob SDK already parses the error body onto ``exc.message`` (service
    message first, then RequestId/Time/ErrorCode lines) and sets
    ``exc.error_code``. Bodies it did not parse fall back to ``<Message>`` from
    the XML, then to the HTTP reason.
    """
    if isinstance(getattr(exc, "error_code", None), str) and exc.message:
        message = exc.message.strip().splitlines()[0].strip()
        if message:
            return message
    response = exc.response
    if response is not None:
        try:
            body = (response.text() or "").lstrip("\ufeff")
            message = ET.fromstring(body).findtext("Message") if body else None
            if message:
                return message.strip()
        except (ET.ParseError, ValueError):
            logger.debug("[_storage_error_message] error body is not XML; status:%s", exc.status_code)
    if exc.reason:
        return str(exc.reason)
    return f"request failed with status {exc.status_code}"


def translate_azure_error(
    exc: Exception, *, operation: str, key: str, capability_session: bool
) -> BlobExplorerError:
    """Map an Azure SDK exception onto this package's error taxonomy."""
    if isinstance(exc, (ServiceRequestError, ServiceResponseError)):
        return NotReachableError(
            f"Storage endpoint not reachable during {operation} of '{key}': {exc}. "
            "Check the account name, DNS and network configuration."
        )
    if isinstance(exc, HttpResponseError):
        if exc.status_code in (401, 403):
            return PermissionDeniedError(
                permission_denied_message(operation, capability_session),
                operation=operation,
                capability_session=capability_session,
            )
        return BackendError(exc.status_code, _storage_error_message(exc))
    return BackendError(None, str(exc))


@contextlib.contextmanager
def translate_errors(operation: str, key: str, capability_session: bool) -> Iterator[None]:
    try:
        yield
    except (ServiceRequestError, ServiceResponseError, HttpResponseError) as exc:
        logger.warning(
            "[translate_errors] storage call failed; operation:%s;key:%s;error:%s",
            operation,
            key,
            type(exc).__name__,
        )
        raise translate_azure_error(
            exc, operation=operation, key=key, capability_session=capability_session
        ) from exc


def clean_metadata(metadata: dict[str, str] | None) -> dict[str, str]:
    """Drop empty entries and reject keys that are not identifier-safe."""
    cleaned: dict[str, str] = {}
    for key, value in (metadata or {}).items():
        if not key or value is None or value == "":
            continue
        if not _METADATA_KEY.match(key):
            raise SignatureOrConfigError(f"Invalid metadata key '{key}'")
        cleaned[key] = str(value)
    return cleaned


class BlobStorageClient:
    """Flat read/write/copy/delete/list primitives on one blob container."""

    def __init__(
        self,
        container_client: ContainerClient,
        *,
        capability_session: bool = False,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        list_page_size: int = DEFAULT_LIST_PAGE_SIZE,
        copy_poll_seconds: float = DEFAULT_COPY_POLL_SECONDS,
    ) -> None:
        """Initialise the client.

        Args:
            container_client: Authenticated SDK container client.
            capability_session: True when requests are authorized by a SAS
                query string rather than a bearer token.
            chunk_size: Uploads above this size are sent as staged blocks.
            list_page_size: Results requested per listing call.
            copy_poll_seconds: Poll interval while a server-side copy is pending.
        """
        self._container = container_client
        self.capability_session = capability_session
        self._chunk_size = chunk_size
        self._list_page_size = list_page_size
        self._copy_poll_seconds = copy_poll_seconds

    @property
    def container_name(self) -> str:
        return str(self._container.container_name)

    @property
    def account_name(self) -> str:
        return str(self._container.account_name)

    def _translate(self, operation: str, key: str) -> contextlib.AbstractContextManager[None]:
        return translate_errors(operation, key, self.capability_session)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list_page(
        self,
        prefix: str,
        *,
        delimited: bool,
        continuation_token: str | None = None,
    ) -> ListingPage:
        """Fetch one page of a prefix listing.

        With ``delimited`` the page groups keys at the next '/' into folder
        markers; without it every key under ``prefix`` is a file. Display
        names are the keys with ``prefix`` stripped.

        Args:
            prefix: Key prefix ("" for the container root).
            delimited: Whether to group by the folder delimiter.
            continuation_token: Marker returned by the previous page.

        Returns:
            ListingPage whose ``continuation_token`` is None on the last page.
        """
        with self._translate(OP_LIST, prefix or DELIMITER):
            if delimited:
                paged = self._container.walk_blobs(
                    name_starts_with=prefix or None,
                    include=["metadata"],
                    delimiter=DELIMITER,
                    results_per_page=self._list_page_size,
                )
            else:
                paged = self._container.list_blobs(
                    name_starts_with=prefix or None,
                    include=["metadata"],
                    results_per_page=self._list_page_size,
                )
            pages = paged.by_page(continuation_token=continuation_token)
            items = list(next(pages, []))
            next_token = pages.continuation_token or None

        page = ListingPage(continuation_token=next_token)
        for item in items:
            if isinstance(item, BlobPrefix):
                page.folders.append(
                    FolderItem(
                        prefix=item.name,
                        display_name=item.name[len(prefix) :].rstrip(DELIMITER),
                    )
                )
            else:
                page.files.append(self._to_file_item(item, prefix))
        logger.debug(
            "[list_page] fetched page; prefix:%s;folders:%d;files:%d;more:%s",
            prefix,
            len(page.folders),
            len(page.files),
            next_token is not None,
        )
        return page

    @staticmethod
    def _to_file_item(props: BlobProperties, prefix: str) -> FileItem:
        settings = props.content_settings
        md5 = getattr(settings, "content_md5", None)
        return FileItem(
            key=props.name,
            display_name=props.name[len(prefix) :] if props.name.startswith(prefix) else props.name,
            size=int(props.size or 0),
            last_modified=props.last_modified,
            created_on=props.creation_time,
            content_type=getattr(settings, "content_type", None) or DEFAULT_CONTENT_TYPE,
            etag=str(props.etag or ""),
            content_hash=base64.b64encode(bytes(md5)).decode("ascii") if md5 else "",
            custom_metadata=dict(props.metadata or {}),
        )

    # ------------------------------------------------------------------
    # Single-object primitives
    # ------------------------------------------------------------------

    def exists(self, key: str) -> bool:
        with self._translate(OP_READ, key):
            return bool(self._container.get_blob_client(key).exists())

    def get_properties(self, key: str) -> FileItem:
        """Return the properties and custom metadata of one blob."""
        with self._translate(OP_READ, key):
            props = self._container.get_blob_client(key).get_blob_properties()
        return self._to_file_item(props, "")

    def download(self, key: str) -> bytes:
        with self._translate(OP_READ, key):
            return bytes(self._container.get_blob_client(key).download_blob().readall())

    def upload(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str = DEFAULT_CONTENT_TYPE,
        metadata: dict[str, str] | None = None,
        on_progress: Callable[[int], None] | None = None,
    ) -> None:
        """Write a blob, replacing any existing content.

        Payloads up to the chunk size go in a single PUT. Larger payloads are
        staged as fixed-size blocks and then committed as one block list;
        the last 5% of progress is reserved for the commit.

        Raises:
            TooLargeError: If the payload needs more blocks than a blob can hold.
        """
        meta = clean_metadata(metadata)
        settings = ContentSettings(content_type=content_type or DEFAULT_CONTENT_TYPE)
        blob = self._container.get_blob_client(key)
        if on_progress:
            on_progress(0)

        if len(data) <= self._chunk_size:
            with self._translate(OP_WRITE, key):
                blob.upload_blob(data, overwrite=True, content_settings=settings, metadata=meta)
            if on_progress:
                on_progress(100)
            logger.info("[upload] uploaded blob; key:%s;bytes:%d", key, len(data))
            return

        block_count = math.ceil(len(data) / self._chunk_size)
        if block_count > MAX_BLOCK_COUNT:
            raise TooLargeError(
                f"'{key}' needs {block_count} blocks; a blob holds at most {MAX_BLOCK_COUNT}",
                count=block_count,
                limit=MAX_BLOCK_COUNT,
            )

        blocks: list[BlobBlock] = []
        with self._translate(OP_WRITE, key):
            for index in range(block_count):
                start = index * self._chunk_size
                block_id = f"{index:010d}"
                blob.stage_block(block_id=block_id, data=data[start : start + self._chunk_size])
                blocks.append(BlobBlock(block_id=block_id))
                if on_progress:
                    on_progress(round((index + 1) / block_count * 95))
            blob.commit_block_list(blocks, content_settings=settings, metadata=meta)
        if on_progress:
            on_progress(100)
        logger.info(
            "[upload] committed block blob; key:%s;bytes:%d;blocks:%d",
            key,
            len(data),
            block_count,
        )

    def copy(self, source_key: str, destination_key: str) -> None:
        """Server-side copy, waiting until the copy is no longer pending.

        The copy source is the source blob's URL, which carries the SAS query
        when the container client was built from a capability URL.
        """
        source_url = self._container.get_blob_client(source_key).url
        destination = self._container.get_blob_client(destination_key)
        with self._translate(OP_COPY, destination_key):
            result: dict[str, Any] = destination.start_copy_from_url(source_url) or {}
            status = result.get("copy_status", "success")
            while status == "pending":
                time.sleep(self._copy_poll_seconds)
                status = destination.get_blob_properties().copy.status
        if status != "success":
            raise BackendError(
                None, f"copy of '{source_key}' to '{destination_key}' ended as {status}"
            )
        logger.debug("[copy] copied blob; source:%s;destination:%s", source_key, destination_key)

    def delete(self, key: str) -> bool:
        """Delete one blob.

        Returns:
            False when the blob was already gone, True otherwise.
        """
        with self._translate(OP_DELETE, key):
            try:
                self._container.get_blob_client(key).delete_blob()
            except ResourceNotFoundError:
                logger.info("[delete] blob already absent; key:%s", key)
                return False
        logger.debug("[delete] deleted blob; key:%s", key)
        return True


def blob_storage_client_from_config(
    config: AppConfig, credential: MsalTokenCredential | CapabilityCredential
) -> BlobStorageClient:
    """Construct a BlobStorageClient from application configuration.

    A capability credential addresses the account and container named in its
    URL; otherwise the configured account and container are used.

    Args:
        config: Application configuration instance.
        credential: Credential supplier from ``credential_from_config``.

    Returns:
        Configured BlobStorageClient instance.
    """
    if isinstance(credential, CapabilityCredential):
        container = ContainerClient.from_container_url(credential.session.container_url)
    else:
        container = ContainerClient(
            account_url=config.account_url,
            container_name=config.container_name,
            credential=credential,
        )
    return BlobStorageClient(
        container,
        capability_session=credential.is_capability_session,
        chunk_size=config.chunk_size,
        list_page_size=config.list_page_size,
        copy_poll_seconds=config.copy_poll_seconds,
    )
