"""Error taxonomy shared by the webhook, lifecycle and subscription layers.

Mapping to HTTP status codes::

    ValidationError     → 400
    AuthorizationError  → 403
    RemoteFailure       → 500 (only when it escapes a handler)
    RemoteConflict      → never surfaced, absorbed as success
    PersistenceFailure  → never surfaced, logged
"""

from __future__ import annotations

from typing import Optional


class BridgeError(Exception):
    """Base class for all errors raised by the bridge."""

    status_code = 500


class ValidationError(BridgeError):
    """A request body is malformed or missing required fields."""

    status_code = 400


class AuthorizationError(BridgeError):
    """The request's ``appId`` does not match the configured SmartApp id."""

    status_code = 403


class RemoteConflict(BridgeError):
    """The platform reports the subscription already exists (HTTP 409)."""

    status_code = 409


class RemoteFailure(BridgeError):
    """An outbound call failed with a non-2xx status, a network error or a timeout.

    Parameters
    ----------
    message:
        Human-readable description.
    status:
        HTTP status returned by the remote, ``None`` for transport failures.
    retryable:
        Whether repeating the call later may succeed.
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class PersistenceFailure(BridgeError):
    """Reading or writing durable state failed."""
