"""User delegation key requests and capability URL issuance."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from azure.storage.blob import BlobServiceClient

from blob_explorer.exceptions import SignatureOrConfigError
from blob_explorer.sharing.models import DelegationKey, SasWindow, format_sas_time
from blob_explorer.sharing.signer import sign
from blob_explorer.storage.client import OP_DELEGATE, permission_denied_message, translate_errors

if TYPE_CHECKING:
    from blob_explorer.auth.credentials import CapabilityCredential, MsalTokenCredential
    from blob_explorer.config import AppConfig

logger = logging.getLogger(__name__)

DEFAULT_MAX_DELEGATION_DAYS = 7
DEFAULT_CLOCK_SKEW_MINUTES = 5


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


def delegation_key_window(
    window: SasWindow,
    now: datetime,
    *,
    skew_minutes: int = DEFAULT_CLOCK_SKEW_MINUTES,
    max_days: int = DEFAULT_MAX_DELEGATION_DAYS,
) -> tuple[datetime, datetime]:
    """Key validity needed to sign ``window``.

    The start is backdated by ``skew_minutes``; the end is the URL expiry,
    capped at ``max_days`` from now.
    """
    now = _as_utc(now)
    start = now - timedelta(minutes=skew_minutes)
    expiry = min(_as_utc(window.expiry), now + timedelta(days=max_days))
    return start, expiry


def request_delegation_key(
    service_client: BlobServiceClient,
    window: SasWindow,
    now: datetime | None = None,
    *,
    skew_minutes: int = DEFAULT_CLOCK_SKEW_MINUTES,
    max_days: int = DEFAULT_MAX_DELEGATION_DAYS,
    capability_session: bool = False,
) -> DelegationKey:
    """Ask the blob service for a user delegation key covering ``window``.

    Args:
        service_client: Service client authenticated with a token credential.
        window: Validity window of the URL about to be signed.
        now: Current time; defaults to the wall clock.
        skew_minutes: Backdating applied to the key start.
        max_days: Longest key lifetime the service accepts.
        capability_session: True when the caller is itself using a
            capability URL, which cannot request delegation keys.

    Returns:
        The issued key.

    Raises:
        SignatureOrConfigError: Under a capability session.
        PermissionDeniedError: If the identity lacks a delegator role.
    """
    if capability_session:
        raise SignatureOrConfigError(permission_denied_message(OP_DELEGATE, True))

    start, expiry = delegation_key_window(
        window, now or _utcnow(), skew_minutes=skew_minutes, max_days=max_days
    )
    with translate_errors(OP_DELEGATE, "", capability_session):
        key = service_client.get_user_delegation_key(
            key_start_time=start, key_expiry_time=expiry
        )

    logger.info(
        "[request_delegation_key] key issued; start:%s;expiry:%s",
        format_sas_time(start),
        format_sas_time(expiry),
    )
    return DelegationKey(
        signed_oid=str(key.signed_oid or ""),
        signed_tid=str(key.signed_tid or ""),
        signed_start=str(key.signed_start or ""),
        signed_expiry=str(key.signed_expiry or ""),
        signed_service=str(key.signed_service or ""),
        signed_version=str(key.signed_version or ""),
        value=str(key.value or ""),
    )


class CapabilityUrlIssuer:
    """Requests a fresh delegation key per URL and signs with it.

    Keys are never cached; each one is dropped as soon as its URL is built.
    """

    def __init__(
        self,
        service_client: BlobServiceClient | None,
        *,
        account_name: str,
        container_name: str,
        capability_session: bool = False,
        skew_minutes: int = DEFAULT_CLOCK_SKEW_MINUTES,
        max_days: int = DEFAULT_MAX_DELEGATION_DAYS,
    ) -> None:
        self._service_client = service_client
        self._account_name = account_name
        self._container_name = container_name
        self._capability_session = capability_session
        self._skew_minutes = skew_minutes
        self._max_days = max_days

    def issue(
        self,
        resource_path: str,
        permissions: str,
        window: SasWindow,
        *,
        is_container_level: bool = False,
        ip: str | None = None,
        now: datetime | None = None,
    ) -> str:
        """Mint a capability URL for one blob or the whole container.

        Raises:
            SignatureOrConfigError: If the expiry has passed, the session cannot
                delegate, or the signing input is malformed.
        """
        now = now or _utcnow()
        if _as_utc(window.expiry) <= _as_utc(now):
            raise SignatureOrConfigError("Expiry must be in the future.")
        if self._capability_session or self._service_client is None:
            raise SignatureOrConfigError(permission_denied_message(OP_DELEGATE, True))

        key = request_delegation_key(
            self._service_client,
            window,
            now,
            skew_minutes=self._skew_minutes,
            max_days=self._max_days,
        )
        return sign(
            key,
            account_name=self._account_name,
            container_name=self._container_name,
            resource_path=resource_path,
            is_container_level=is_container_level,
            permissions=permissions,
            window=window,
            ip=ip,
        )


def capability_issuer_from_config(
    config: AppConfig, credential: MsalTokenCredential | CapabilityCredential
) -> CapabilityUrlIssuer:
    """Construct a CapabilityUrlIssuer from application configuration.

    A capability credential yields an issuer that refuses every request.
    """
    service_client = None
    if not credential.is_capability_session:
        service_client = BlobServiceClient(account_url=config.account_url, credential=credential)
    return CapabilityUrlIssuer(
        service_client,
        account_name=config.account_name,
        container_name=config.container_name,
        capability_session=credential.is_capability_session,
        skew_minutes=config.clock_skew_minutes,
        max_days=config.max_delegation_days,
    )
