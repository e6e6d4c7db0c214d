"""Credential suppliers: MSAL client credentials or a capability URL."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

import msal
from azure.core.credentials import AccessToken

from blob_explorer.exceptions import AuthError
from blob_explorer.sharing.capability import CapabilitySession, parse_capability_url

if TYPE_CHECKING:
    from blob_explorer.config import AppConfig

logger = logging.getLogger(__name__)

STORAGE_SCOPES = ["https://storage.azure.com/.default"]
AUTHORITY_BASE_URL = "https://login.microsoftonline.com"


class MsalTokenCredential:
    """Bearer tokens for Azure Storage via the MSAL client credentials flow.

    Implements the ``azure.core`` TokenCredential protocol so it can be handed
    straight to the blob SDK clients.
    """

    is_capability_session = False

    def __init__(self, client_id: str, client_secret: str, tenant_id: str) -> None:
        """Initialise the MSAL confidential client application.

        Args:
            client_id: Entra ID application (client) ID.
            client_secret: Entra ID application client secret.
            tenant_id: Entra ID tenant ID.
        """
        authority = f"{AUTHORITY_BASE_URL}/{tenant_id}"
        self._app = msal.ConfidentialClientApplication(
            client_id=client_id,
            client_credential=client_secret,
            authority=authority,
        )

    def _acquire(self, scopes: list[str]) -> dict[str, Any]:
        result: dict[str, Any] = self._app.acquire_token_for_client(scopes=scopes) or {}
        if "access_token" not in result:
            error = result.get("error", "unknown_error")
            description = result.get("error_description", "No description provided")
            logger.error("[_acquire] MSAL token acquisition failed; error:%s", error)
            raise AuthError(f"Token acquisition failed: {error}: {description}")
        return result

    def bearer_token(self) -> str:
        """Acquire a Bearer token for the storage data plane.

        Raises:
            AuthError: If MSAL cannot acquire a token.
        """
        return str(self._acquire(STORAGE_SCOPES)["access_token"])

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        result = self._acquire(list(scopes) or STORAGE_SCOPES)
        expires_in = int(result.get("expires_in", 3600))
        return AccessToken(str(result["access_token"]), int(time.time()) + expires_in)


class CapabilityCredential:
    """Pre-signed query string taken from a capability URL."""

    is_capability_session = True

    def __init__(self, session: CapabilitySession) -> None:
        self.session = session

    def sas_query(self) -> str:
        return self.session.query


def credential_from_config(config: AppConfig) -> MsalTokenCredential | CapabilityCredential:
    """Pick the credential supplier described by the configuration.

    A capability URL takes precedence over client credentials.

    Raises:
        AuthError: If neither a capability URL nor a full set of client
            credentials is configured.
    """
    if config.capability_url:
        return CapabilityCredential(parse_capability_url(config.capability_url))
    if not (config.client_id and config.client_secret and config.tenant_id):
        raise AuthError(
            "No credentials configured: set BE_CAPABILITY_URL or "
            "BE_CLIENT_ID, BE_CLIENT_SECRET and BE_TENANT_ID"
        )
    return MsalTokenCredential(
        client_id=config.client_id,
        client_secret=config.client_secret,
        tenant_id=config.tenant_id,
    )
