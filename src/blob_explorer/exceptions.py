"""Typed failures raised by storage primitives, tree operations and signing."""

from __future__ import annotations

from collections.abc import Sequence


class BlobExplorerError(Exception):
    """Base class for every error raised by this package."""


class PermissionDeniedError(BlobExplorerError):
    """Raised when the backend rejects a request (HTTP 401/403).

    The message names the remedy, which differs between a capability URL
    (regenerate it with the missing permission letter) and an interactive
    credential (assign the data-plane role).
    """

    def __init__(self, message: str, *, operation: str, capability_session: bool) -> None:
        super().__init__(message)
        self.operation = operation
        self.capability_session = capability_session


class NotReachableError(BlobExplorerError):
    """Raised when a request never completed against the backend.

    Treated as environmental: check the endpoint, DNS and network path.
    """


class ConflictError(BlobExplorerError):
    """Raised when a destination key or folder is already occupied."""

    def __init__(self, key: str) -> None:
        super().__init__(f"'{key}' already exists")
        self.key = key


class TooLargeError(BlobExplorerError):
    """Raised when an input exceeds a structural ceiling."""

    def __init__(self, message: str, *, count: int, limit: int) -> None:
        super().__init__(message)
        self.count = count
        self.limit = limit


class BackendError(BlobExplorerError):
    """Raised for any other non-success response from the backend."""

    def __init__(self, status_code: int | None, message: str) -> None:
        prefix = f"Storage API error {status_code}" if status_code else "Storage API error"
        super().__init__(f"{prefix}: {message}")
        self.status_code = status_code
        self.message = message


class SignatureOrConfigError(BlobExplorerError):
    """Raised for malformed signing input or missing required configuration."""


class InvalidPathError(SignatureOrConfigError):
    """Raised when a source/destination pair is not a valid operation."""


class AuthError(SignatureOrConfigError):
    """Raised when a credential cannot be obtained."""


class NothingToArchiveError(BlobExplorerError):
    """Raised when an archive download resolves to zero files."""


class TreeOperationError(BlobExplorerError):
    """Raised when a batched folder operation fails partway through.

    The namespace is left partially updated. ``failed_key`` is the first
    failing item in enumeration order and ``completed`` lists the keys the
    failing phase had already finished, so the operator can decide how to
    resume. The underlying typed error is chained as ``__cause__``.
    """

    def __init__(
        self,
        *,
        operation: str,
        phase: str,
        failed_key: str,
        completed: Sequence[str],
        failure_count: int,
        cause: BaseException,
    ) -> None:
        super().__init__(
            f"{operation} failed during {phase} at '{failed_key}' "
            f"({failure_count} failed, {len(completed)} completed): {cause}"
        )
        self.operation = operation
        self.phase = phase
        self.failed_key = failed_key
        self.completed = list(completed)
        self.failure_count = failure_count
