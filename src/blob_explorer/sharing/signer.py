"""User delegation SAS signing.

The canonical string-to-sign and the query parameters of the resulting URL
are both derived from ``USER_DELEGATION_SAS_FIELDS``. The field order is fixed
by the signing scheme version; any field added to one side but not the other
invalidates every signature, so neither is ever built by hand elsewhere.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import ipaddress
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from urllib.parse import parse_qsl, quote, unquote, urlencode, urlparse

from blob_explorer.exceptions import SignatureOrConfigError
from blob_explorer.sharing.models import DelegationKey, SasWindow, format_sas_time

logger = logging.getLogger(__name__)

SIGNED_VERSION = "2020-12-06"
SIGNED_PROTOCOL = "https"
RESOURCE_CONTAINER = "c"
RESOURCE_BLOB = "b"

# Canonical permission order accepted by the service
PERMISSION_ORDER = "racwdxltfmeop"


@dataclass(frozen=True)
class SignedField:
    """One line of the string-to-sign.

    ``query_param`` is the URL parameter carrying the value, or None for
    lines that never appear in the URL.
    """

    name: str
    query_param: str | None


# String-to-sign layout for signed version 2020-12-06.
USER_DELEGATION_SAS_FIELDS: tuple[SignedField, ...] = (
    SignedField("permissions", "sp"),
    SignedField("start", "st"),
    SignedField("expiry", "se"),
    SignedField("canonicalized_resource", None),
    SignedField("key_object_id", "skoid"),
    SignedField("key_tenant_id", "sktid"),
    SignedField("key_start", "skt"),
    SignedField("key_expiry", "ske"),
    SignedField("key_service", "sks"),
    SignedField("key_version", "skv"),
    SignedField("authorized_user_object_id", "saoid"),
    SignedField("unauthorized_user_object_id", "suoid"),
    SignedField("correlation_id", "scid"),
    SignedField("ip", "sip"),
    SignedField("protocol", "spr"),
    SignedField("version", "sv"),
    SignedField("resource", "sr"),
    SignedField("snapshot_time", None),
    SignedField("encryption_scope", "ses"),
    SignedField("cache_control", "rscc"),
    SignedField("content_disposition", "rscd"),
    SignedField("content_encoding", "rsce"),
    SignedField("content_language", "rscl"),
    SignedField("content_type", "rsct"),
)

_FIELD_BY_PARAM = {f.query_param: f.name for f in USER_DELEGATION_SAS_FIELDS if f.query_param}


def build_string_to_sign(values: Mapping[str, str]) -> str:
    """Newline-join every signed field in table order; absent fields are empty lines."""
    unknown = set(values) - {f.name for f in USER_DELEGATION_SAS_FIELDS}
    if unknown:
        raise SignatureOrConfigError(f"Unknown signed fields: {sorted(unknown)}")
    return "\n".join(values.get(f.name, "") for f in USER_DELEGATION_SAS_FIELDS)


def build_query_params(values: Mapping[str, str], signature: str) -> list[tuple[str, str]]:
    """Every non-empty signed field that has a URL parameter, then ``sig``.

    Empty optional fields are omitted entirely rather than sent blank.
    """
    params = [
        (f.query_param, values[f.name])
        for f in USER_DELEGATION_SAS_FIELDS
        if f.query_param and values.get(f.name)
    ]
    params.append(("sig", signature))
    return params


def compute_signature(secret: str, string_to_sign: str) -> str:
    """Base64 HMAC-SHA256 of ``string_to_sign`` keyed with the decoded secret."""
    try:
        key_bytes = base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise SignatureOrConfigError("Delegation key value is not valid base64") from exc
    digest = hmac.new(key_bytes, string_to_sign.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def canonicalized_resource(account_name: str, container_name: str, blob_name: str = "") -> str:
    if blob_name:
        return f"/blob/{account_name}/{container_name}/{blob_name}"
    return f"/blob/{account_name}/{container_name}"


def resource_url(account_name: str, container_name: str, blob_name: str = "") -> str:
    base = f"https://{account_name}.blob.core.windows.net/{container_name}"
    if not blob_name:
        return base
    return base + "/" + "/".join(quote(segment, safe="") for segment in blob_name.split("/"))


def normalize_permissions(permissions: str) -> str:
    """Deduplicate and reorder permission letters into the service's canonical order."""
    letters = set(permissions.strip())
    unknown = letters - set(PERMISSION_ORDER)
    if unknown:
        raise SignatureOrConfigError(f"Unknown permission letter(s): {''.join(sorted(unknown))}")
    ordered = "".join(p for p in PERMISSION_ORDER if p in letters)
    if not ordered:
        raise SignatureOrConfigError("Select at least one permission.")
    return ordered


def validate_ip(ip: str) -> str:
    """Accept a single address or an inclusive "low-high" range."""
    parts = ip.strip().split("-")
    if len(parts) > 2:
        raise SignatureOrConfigError(f"Invalid IP constraint '{ip}'")
    try:
        addresses = [ipaddress.ip_address(p.strip()) for p in parts]
    except ValueError as exc:
        raise SignatureOrConfigError(f"Invalid IP constraint '{ip}'") from exc
    if len(addresses) == 2 and addresses[0] > addresses[1]:
        raise SignatureOrConfigError(f"IP range '{ip}' is reversed")
    return "-".join(str(a) for a in addresses)


def _check_key(key: DelegationKey) -> None:
    missing = [
        name
        for name in (
            "signed_oid",
            "signed_tid",
            "signed_start",
            "signed_expiry",
            "signed_service",
            "signed_version",
            "value",
        )
        if not getattr(key, name)
    ]
    if missing:
        raise SignatureOrConfigError(f"Delegation key is missing: {', '.join(missing)}")


def signing_values(
    key: DelegationKey,
    *,
    account_name: str,
    container_name: str,
    resource_path: str,
    is_container_level: bool,
    permissions: str,
    window: SasWindow,
    ip: str | None = None,
) -> dict[str, str]:
    """Validate the inputs and map them onto the signed field names."""
    if not account_name or not container_name:
        raise SignatureOrConfigError("Account and container names are required")
    blob_name = "" if is_container_level else resource_path.lstrip("/")
    if not is_container_level and not blob_name:
        raise SignatureOrConfigError("A blob-level capability URL needs a blob path")
    if window.expiry is None:
        raise SignatureOrConfigError("Please set an expiry date/time.")
    if window.start is not None and window.start >= window.expiry:
        raise SignatureOrConfigError("Expiry must be after the start time.")
    _check_key(key)

    return {
        "permissions": normalize_permissions(permissions),
        "start": format_sas_time(window.start) if window.start else "",
        "expiry": format_sas_time(window.expiry),
        "canonicalized_resource": canonicalized_resource(account_name, container_name, blob_name),
        "key_object_id": key.signed_oid,
        "key_tenant_id": key.signed_tid,
        "key_start": key.signed_start,
        "key_expiry": key.signed_expiry,
        "key_service": key.signed_service,
        "key_version": key.signed_version,
        "ip": validate_ip(ip) if ip and ip.strip() else "",
        "protocol": SIGNED_PROTOCOL,
        "version": SIGNED_VERSION,
        "resource": RESOURCE_CONTAINER if is_container_level else RESOURCE_BLOB,
    }


def sign(
    key: DelegationKey,
    *,
    account_name: str,
    container_name: str,
    resource_path: str,
    is_container_level: bool,
    permissions: str,
    window: SasWindow,
    ip: str | None = None,
) -> str:
    """Mint a capability URL for a blob or a whole container.

    Args:
        key: Delegation key from ``request_delegation_key``.
        account_name: Storage account name.
        container_name: Container name.
        resource_path: Blob path inside the container; ignored for container level.
        is_container_level: Sign the container (``sr=c``) instead of one blob.
        permissions: Permission letters, e.g. "rl"; reordered canonically.
        window: Validity window of the URL.
        ip: Optional single IP or "low-high" range.

    Returns:
        The complete capability URL.

    Raises:
        SignatureOrConfigError: On malformed input or an incomplete key.
    """
    values = signing_values(
        key,
        account_name=account_name,
        container_name=container_name,
        resource_path=resource_path,
        is_container_level=is_container_level,
        permissions=permissions,
        window=window,
        ip=ip,
    )
    signature = compute_signature(key.value, build_string_to_sign(values))
    blob_name = "" if is_container_level else resource_path.lstrip("/")
    query = urlencode(build_query_params(values, signature), quote_via=quote)
    logger.info(
        "[sign] capability url issued; resource:%s;permissions:%s;expiry:%s;ip_bound:%s",
        values["canonicalized_resource"],
        values["permissions"],
        values["expiry"],
        bool(values["ip"]),
    )
    return f"{resource_url(account_name, container_name, blob_name)}?{query}"


def verify(url: str, secret: str) -> bool:
    """Recompute the signature of a capability URL from its own parameters.

    Returns:
        True when ``sig`` matches the parameters and resource path in ``url``.
    """
    parsed = urlparse(url)
    params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    signature = params.pop("sig", "")
    account_name = (parsed.hostname or "").split(".")[0]
    segments = [unquote(s) for s in parsed.path.split("/") if s]
    if not signature or not segments:
        return False

    values = {_FIELD_BY_PARAM[p]: v for p, v in params.items() if p in _FIELD_BY_PARAM}
    blob_name = "/".join(segments[1:]) if params.get("sr") == RESOURCE_BLOB else ""
    values["canonicalized_resource"] = canonicalized_resource(account_name, segments[0], blob_name)
    expected = compute_signature(secret, build_string_to_sign(values))
    return hmac.compare_digest(expected, signature)
