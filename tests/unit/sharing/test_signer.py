"""Unit tests for sharing/signer.py: canonical string, signature and URL assembly."""

import base64
import hashlib
import hmac
from datetime import UTC, datetime
from urllib.parse import parse_qsl, urlparse

import pytest

from blob_explorer.exceptions import SignatureOrConfigError
from blob_explorer.sharing.models import DelegationKey, SasWindow, format_sas_time
from blob_explorer.sharing.signer import (
    SIGNED_VERSION,
    USER_DELEGATION_SAS_FIELDS,
    build_query_params,
    build_string_to_sign,
    compute_signature,
    normalize_permissions,
    sign,
    signing_values,
    validate_ip,
    verify,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_SECRET = base64.b64encode(b"0123456789abcdef0123456789abcdef").decode()

_KEY = DelegationKey(
    signed_oid="11111111-1111-1111-1111-111111111111",
    signed_tid="22222222-2222-2222-2222-222222222222",
    signed_start="2024-05-01T00:00:00Z",
    signed_expiry="2024-05-08T00:00:00Z",
    signed_service="b",
    signed_version="2020-12-06",
    value=_SECRET,
)

_WINDOW = SasWindow(
    start=datetime(2024, 5, 1, 12, 0, tzinfo=UTC),
    expiry=datetime(2024, 5, 2, 12, 0, tzinfo=UTC),
)


def _sign(**overrides) -> str:
    kwargs = {
        "account_name": "acct",
        "container_name": "files",
        "resource_path": "reports/q1 final.csv",
        "is_container_level": False,
        "permissions": "r",
        "window": _WINDOW,
        "ip": None,
    }
    kwargs.update(overrides)
    return sign(_KEY, **kwargs)


def _query(url: str) -> dict[str, str]:
    return dict(parse_qsl(urlparse(url).query, keep_blank_values=True))


# ---------------------------------------------------------------------------
# Field table tests
# ---------------------------------------------------------------------------


class TestFieldTable:
    def test_has_every_line_of_the_versioned_layout(self) -> None:
        assert len(USER_DELEGATION_SAS_FIELDS) == 24
        assert SIGNED_VERSION == "2020-12-06"

    def test_query_parameters_are_unique(self) -> None:
        params = [f.query_param for f in USER_DELEGATION_SAS_FIELDS if f.query_param]
        assert len(params) == len(set(params))

    def test_unknown_field_is_rejected(self) -> None:
        with pytest.raises(SignatureOrConfigError):
            build_string_to_sign({"not_a_field": "x"})


# ---------------------------------------------------------------------------
# Canonical string tests
# ---------------------------------------------------------------------------


class TestStringToSign:
    def test_exact_canonical_string_for_blob(self) -> None:
        values = signing_values(
            _KEY,
            account_name="acct",
            container_name="files",
            resource_path="/reports/q1.csv",
            is_container_level=False,
            permissions="rw",
            window=_WINDOW,
            ip="10.0.0.1",
        )

        expected = "\n".join(
            [
                "rw",
                "2024-05-01T12:00:00Z",
                "2024-05-02T12:00:00Z",
                "/blob/acct/files/reports/q1.csv",
                _KEY.signed_oid,
                _KEY.signed_tid,
                "2024-05-01T00:00:00Z",
                "2024-05-08T00:00:00Z",
                "b",
                "2020-12-06",
                "",
                "",
                "",
                "10.0.0.1",
                "https",
                "2020-12-06",
                "b",
                "",
                "",
                "",
                "",
                "",
                "",
                "",
            ]
        )
        assert build_string_to_sign(values) == expected

    def test_container_level_resource(self) -> None:
        values = signing_values(
            _KEY,
            account_name="acct",
            container_name="files",
            resource_path="ignored",
            is_container_level=True,
            permissions="rl",
            window=_WINDOW,
        )
        assert values["canonicalized_resource"] == "/blob/acct/files"
        assert values["resource"] == "c"

    def test_signature_is_hmac_sha256_of_decoded_secret(self) -> None:
        expected = base64.b64encode(
            hmac.new(
                b"0123456789abcdef0123456789abcdef", b"line1\nline2", hashlib.sha256
            ).digest()
        ).decode()

        assert compute_signature(_SECRET, "line1\nline2") == expected

    def test_non_base64_secret_is_rejected(self) -> None:
        with pytest.raises(SignatureOrConfigError):
            compute_signature("not base64!!", "x")


# ---------------------------------------------------------------------------
# URL assembly tests
# ---------------------------------------------------------------------------


class TestSign:
    def test_query_parameter_order(self) -> None:
        url = _sign(ip="10.0.0.1")

        keys = [k for k, _ in parse_qsl(urlparse(url).query)]
        assert keys == [
            "sp",
            "st",
            "se",
            "skoid",
            "sktid",
            "skt",
            "ske",
            "sks",
            "skv",
            "sip",
            "spr",
            "sv",
            "sr",
            "sig",
        ]

    def test_optional_fields_are_omitted_when_unused(self) -> None:
        url = _sign(window=SasWindow(expiry=_WINDOW.expiry))

        query = _query(url)
        assert "st" not in query
        assert "sip" not in query
        assert "" not in query.values()

    def test_path_is_percent_encoded_per_segment(self) -> None:
        url = _sign()

        assert urlparse(url).path == "/files/reports/q1%20final.csv"
        assert url.startswith("https://acct.blob.core.windows.net/")

    def test_same_input_same_signature(self) -> None:
        assert _query(_sign())["sig"] == _query(_sign())["sig"]

    @pytest.mark.parametrize(
        "change",
        [
            {"permissions": "rw"},
            {"ip": "10.0.0.2"},
            {"window": SasWindow(start=_WINDOW.start, expiry=datetime(2024, 5, 2, 12, 1, tzinfo=UTC))},
            {"resource_path": "reports/q2.csv"},
            {"is_container_level": True},
        ],
    )
    def test_any_signed_field_change_changes_signature(self, change) -> None:
        baseline = _query(_sign(ip="10.0.0.1"))["sig"]
        changed = {"ip": "10.0.0.1", **change}

        assert _query(_sign(**changed))["sig"] != baseline

    def test_url_verifies_against_its_own_parameters(self) -> None:
        assert verify(_sign(ip="10.0.0.1-10.0.0.9"), _SECRET)
        assert verify(_sign(is_container_level=True, permissions="rl"), _SECRET)

    def test_tampered_url_fails_verification(self) -> None:
        url = _sign(permissions="r").replace("sp=r", "sp=rw")

        assert not verify(url, _SECRET)

    def test_query_and_string_use_same_fields(self) -> None:
        values = signing_values(
            _KEY,
            account_name="acct",
            container_name="files",
            resource_path="a.txt",
            is_container_level=False,
            permissions="r",
            window=_WINDOW,
        )
        lines = build_string_to_sign(values).split("\n")
        params = dict(build_query_params(values, "sig"))
        for field, line in zip(USER_DELEGATION_SAS_FIELDS, lines):
            if field.query_param and line:
                assert params[field.query_param] == line


# ---------------------------------------------------------------------------
# Validation tests
# ---------------------------------------------------------------------------


class TestValidation:
    def test_permissions_are_canonically_ordered(self) -> None:
        assert normalize_permissions("lwrr") == "rwl"
        assert normalize_permissions("pox") == "xop"

    @pytest.mark.parametrize("permissions", ["", "   ", "rz"])
    def test_bad_permissions(self, permissions) -> None:
        with pytest.raises(SignatureOrConfigError):
            normalize_permissions(permissions)

    def test_expiry_must_follow_start(self) -> None:
        with pytest.raises(SignatureOrConfigError, match="after the start"):
            _sign(window=SasWindow(start=_WINDOW.expiry, expiry=_WINDOW.start))

    @pytest.mark.parametrize("ip", ["10.0.0", "10.0.0.9-10.0.0.1", "1.1.1.1-2.2.2.2-3.3.3.3"])
    def test_bad_ip(self, ip) -> None:
        with pytest.raises(SignatureOrConfigError):
            validate_ip(ip)

    def test_ip_range_is_accepted(self) -> None:
        assert validate_ip(" 10.0.0.1 - 10.0.0.9 ") == "10.0.0.1-10.0.0.9"

    def test_incomplete_key_is_rejected(self) -> None:
        key = DelegationKey("", "tid", "s", "e", "b", "2020-12-06", _SECRET)

        with pytest.raises(SignatureOrConfigError, match="signed_oid"):
            sign(
                key,
                account_name="acct",
                container_name="files",
                resource_path="a",
                is_container_level=False,
                permissions="r",
                window=_WINDOW,
            )

    def test_blob_level_requires_path(self) -> None:
        with pytest.raises(SignatureOrConfigError):
            _sign(resource_path="")

    def test_format_sas_time_treats_naive_as_utc(self) -> None:
        assert format_sas_time(datetime(2024, 1, 2, 3, 4, 5, 999)) == "2024-01-02T03:04:05Z"

    def test_key_repr_hides_secret(self) -> None:
        assert _SECRET not in repr(_KEY)
