"""Application configuration loaded from environment variables."""

import os
from dataclasses import dataclass

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


def _env_flag(name: str, default: bool = True) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUE_VALUES


@dataclass(frozen=True)
class AppConfig:
    """Centralized application configuration.

    Required fields have no defaults and will cause a KeyError at startup
    if the corresponding environment variable is missing. Batch sizes and
    pauses are tunables, not invariants; they can be overridden via
    environment variables.
    """

    # Required, no defaults; fail at startup if missing
    account_name: str
    container_name: str

    # Credentials: either client credentials or a capability URL
    client_id: str = ""
    client_secret: str = ""
    tenant_id: str = ""
    capability_url: str = ""

    # Tree operation tunables
    batch_size: int = 100
    delete_batch_size: int = 50
    archive_fetch_batch_size: int = 6
    max_tree_items: int = 5000
    batch_pause_seconds: float = 0.0
    copy_poll_seconds: float = 0.5

    # Transfer and listing
    chunk_size: int = 4 * 1024 * 1024
    list_page_size: int = 5000

    # Delegation key window
    max_delegation_days: int = 7
    clock_skew_minutes: int = 5

    # Feature switches
    allow_download: bool = True
    allow_rename: bool = True
    allow_delete: bool = True
    allow_sas: bool = True

    @property
    def account_url(self) -> str:
        """Blob service endpoint for the configured storage account."""
        return f"https://{self.account_name}.blob.core.windows.net"

    @property
    def uses_capability_url(self) -> bool:
        return bool(self.capability_url)


def load_config() -> AppConfig:
    """Construct an AppConfig from environment variables.

    Required environment variables:
        BE_ACCOUNT_NAME: Storage account name (without .blob.core.windows.net).
        BE_CONTAINER_NAME: Blob container to operate on.

    Credential environment variables (one set is needed at runtime):
        BE_CLIENT_ID, BE_CLIENT_SECRET, BE_TENANT_ID: Entra ID app registration
            used for the client credentials flow.
        BE_CAPABILITY_URL: A SAS URL; when set it takes precedence and every
            request is authorized by its query string.

    Optional environment variables (with defaults):
        BE_BATCH_SIZE: Concurrent copies per batch (default: 100).
        BE_DELETE_BATCH_SIZE: Concurrent deletes per batch (default: 50).
        BE_ARCHIVE_FETCH_BATCH_SIZE: Concurrent downloads per archive batch (default: 6).
        BE_MAX_TREE_ITEMS: Ceiling on objects in one folder operation (default: 5000).
        BE_BATCH_PAUSE_SECONDS: Pause between batches (default: 0.0).
        BE_COPY_POLL_SECONDS: Poll interval for pending server-side copies (default: 0.5).
        BE_CHUNK_SIZE: Single-PUT threshold and block size in bytes (default: 4 MiB).
        BE_LIST_PAGE_SIZE: Results requested per listing page (default: 5000).
        BE_MAX_DELEGATION_DAYS: Longest delegation key window (default: 7).
        BE_CLOCK_SKEW_MINUTES: Backdating of the key start time (default: 5).
        BE_ALLOW_DOWNLOAD, BE_ALLOW_RENAME, BE_ALLOW_DELETE, BE_ALLOW_SAS:
            Feature switches for the HTTP surface (default: true).

    Returns:
        Configured AppConfig instance.
    """
    return AppConfig(
        account_name=os.environ["BE_ACCOUNT_NAME"],
        container_name=os.environ["BE_CONTAINER_NAME"],
        client_id=os.environ.get("BE_CLIENT_ID", ""),
        client_secret=os.environ.get("BE_CLIENT_SECRET", ""),
        tenant_id=os.environ.get("BE_TENANT_ID", ""),
        capability_url=os.environ.get("BE_CAPABILITY_URL", ""),
        batch_size=int(os.environ.get("BE_BATCH_SIZE", "100")),
        delete_batch_size=int(os.environ.get("BE_DELETE_BATCH_SIZE", "50")),
        archive_fetch_batch_size=int(os.environ.get("BE_ARCHIVE_FETCH_BATCH_SIZE", "6")),
        max_tree_items=int(os.environ.get("BE_MAX_TREE_ITEMS", "5000")),
        batch_pause_seconds=float(os.environ.get("BE_BATCH_PAUSE_SECONDS", "0.0")),
        copy_poll_seconds=float(os.environ.get("BE_COPY_POLL_SECONDS", "0.5")),
        chunk_size=int(os.environ.get("BE_CHUNK_SIZE", str(4 * 1024 * 1024))),
        list_page_size=int(os.environ.get("BE_LIST_PAGE_SIZE", "5000")),
        max_delegation_days=int(os.environ.get("BE_MAX_DELEGATION_DAYS", "7")),
        clock_skew_minutes=int(os.environ.get("BE_CLOCK_SKEW_MINUTES", "5")),
        allow_download=_env_flag("BE_ALLOW_DOWNLOAD"),
        allow_rename=_env_flag("BE_ALLOW_RENAME"),
        allow_delete=_env_flag("BE_ALLOW_DELETE"),
        allow_sas=_env_flag("BE_ALLOW_SAS"),
    )
