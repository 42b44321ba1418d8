from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for session-core exceptions.

    Each exception class carries a stable ``error_code`` so callers (and the UI
    layer reacting to them) can branch without string matching:
    - storage_integrity
    - token_expired
    - unauthorized
    - refresh_failed
    - authentication_required
    - device_mismatch
    - network_error
    - request_timeout
    """

    error_code: str = "session_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class StorageIntegrityError(ServiceError):
    """Persisted credentials were tampered with or corrupted; fail closed."""
    error_code = "storage_integrity"


class TokenExpiredError(ServiceError):
    """Access token expired; expected, triggers the refresh path."""
    error_code = "token_expired"


class AuthenticationError(ServiceError):
    """Authentication failed or missing."""
    error_code = "unauthorized"


class RefreshFailedError(AuthenticationError):
    """Refresh token itself is invalid or expired; terminal."""
    error_code = "refresh_failed"


class AuthenticationRequiredError(AuthenticationError):
    """The session was torn down and the user must log in again."""
    error_code = "authentication_required"


class DeviceMismatchError(ServiceError):
    """Device fingerprint changed; non-fatal, escalates risk only."""
    error_code = "device_mismatch"


class NetworkError(ServiceError):
    """Transient transport failure; the outer request may be retried."""
    error_code = "network_error"


class RequestTimeoutError(NetworkError):
    """The caller's deadline elapsed, possibly while queued behind a refresh."""
    error_code = "request_timeout"


__all__ = [
    "ServiceError",
    "StorageIntegrityError",
    "TokenExpiredError",
    "AuthenticationError",
    "RefreshFailedError",
    "AuthenticationRequiredError",
    "DeviceMismatchError",
    "NetworkError",
    "RequestTimeoutError",
]
