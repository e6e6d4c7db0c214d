"""Data models for user delegation keys and signing windows."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime


@dataclass(frozen=True)
class SasWindow:
    """Validity window of a capability URL. ``start`` is optional."""

    expiry: datetime
    start: datetime | None = None


@dataclass(frozen=True)
class DelegationKey:
    """Short-lived signing key issued by the blob service.

    Held in memory for one signing operation only. Time fields are kept
    exactly as the service returned them because they are signed verbatim.

    Attributes:
        signed_oid: Object id of the identity the key was issued to.
        signed_tid: Tenant id of that identity.
        signed_start: Key validity start.
        signed_expiry: Key validity end.
        signed_service: Issuing service, "b" for blob.
        signed_version: Key schema version.
        value: Base64-encoded secret.
    """

    signed_oid: str
    signed_tid: str
    signed_start: str
    signed_expiry: str
    signed_service: str
    signed_version: str
    value: str

    def __repr__(self) -> str:
        return (
            f"DelegationKey(signed_oid={self.signed_oid!r}, signed_tid={self.signed_tid!r}, "
            f"signed_start={self.signed_start!r}, signed_expiry={self.signed_expiry!r}, "
            f"signed_service={self.signed_service!r}, signed_version={self.signed_version!r}, "
            "value='***')"
        )


def format_sas_time(value: datetime) -> str:
    """ISO 8601 UTC without fractional seconds, e.g. "2024-01-01T00:00:00Z".

    Naive datetimes are taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
