"""Parsing of incoming capability (SAS) URLs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from urllib.parse import parse_qs, unquote, urlparse

from blob_explorer.exceptions import SignatureOrConfigError

logger = logging.getLogger(__name__)

# SAS permission letters that grant some form of write access
_WRITE_PERMISSIONS = frozenset("wca")


@dataclass(frozen=True)
class CapabilitySession:
    """Access scope granted by a capability URL.

    Attributes:
        account_name: Storage account from the URL host.
        container_name: First path segment.
        blob_prefix: Remaining path ("" when the URL targets the container).
        query: Full query string without the leading '?'.
        permissions: ``sp`` value, e.g. "rl".
        start: ``st`` value, if present.
        expiry: ``se`` value, if present.
        signed_resource: ``sr`` value: "c", "b" or "d".
    """

    account_name: str
    container_name: str
    blob_prefix: str
    query: str
    permissions: str
    start: datetime | None
    expiry: datetime | None
    signed_resource: str

    @property
    def can_write(self) -> bool:
        return any(p in _WRITE_PERMISSIONS for p in self.permissions)

    @property
    def can_list(self) -> bool:
        return "l" in self.permissions

    @property
    def container_url(self) -> str:
        return (
            f"https://{self.account_name}.blob.core.windows.net/{self.container_name}?{self.query}"
        )


def _parse_time(value: str) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise SignatureOrConfigError(f"Invalid SAS URL: unparseable time '{value}'") from exc


def parse_capability_url(url: str) -> CapabilitySession:
    """Parse a SAS URL without side effects.

    Supports container, folder and single-blob SAS URLs of the form
    ``https://<account>.blob.core.windows.net/<container>[/<path>]?...&sig=...``.

    Args:
        url: Full capability URL.

    Returns:
        The parsed CapabilitySession.

    Raises:
        SignatureOrConfigError: If the host, container or signature is missing.
    """
    parsed = urlparse(url.strip())
    host_parts = (parsed.hostname or "").split(".")
    if len(host_parts) < 4 or host_parts[1] != "blob":
        raise SignatureOrConfigError(
            "Invalid SAS URL: hostname must be <account>.blob.core.windows.net"
        )

    segments = [unquote(s) for s in parsed.path.split("/") if s]
    if not segments:
        raise SignatureOrConfigError("Invalid SAS URL: missing container name in the path.")

    params = {k: v[0] for k, v in parse_qs(parsed.query, keep_blank_values=True).items()}
    if not params.get("sig"):
        raise SignatureOrConfigError(
            'Invalid SAS URL: missing "sig" parameter. Please provide a complete SAS URL.'
        )

    session = CapabilitySession(
        account_name=host_parts[0],
        container_name=segments[0],
        blob_prefix="/".join(segments[1:]),
        query=parsed.query,
        permissions=params.get("sp", ""),
        start=_parse_time(params.get("st", "")),
        expiry=_parse_time(params.get("se", "")),
        signed_resource=params.get("sr", ""),
    )
    logger.info(
        "[parse_capability_url] parsed capability url; account:%s;container:%s;permissions:%s",
        session.account_name,
        session.container_name,
        session.permissions,
    )
    return session
