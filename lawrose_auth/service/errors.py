from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for caller-facing exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - unauthorized (401)
    - server_error (500)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Credential is invalid, expired or revoked (401).

    The message never says which check failed.
    """
    status_code = 401
    error_code = "unauthorized"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ServiceUnavailableError(ServiceError):
    """A dependency such as the token store is unavailable; safe to retry (503)."""
    status_code = 503
    error_code = "service_unavailable"


# Internal token errors. These carry diagnostic detail for logs and are
# collapsed into AuthenticationError before reaching a caller.


class TokenError(Exception):
    """Base class for token subsystem failures."""


class SigningError(TokenError):
    """Token could not be issued (empty secret, missing subject, bad TTL)."""


class MalformedTokenError(TokenError):
    """Token is not a decodable compact JWT."""


class ExpiredTokenError(TokenError):
    """Signed token is past its expiry."""


class InvalidSignatureError(TokenError):
    """Signature does not verify against the expected secret."""


class ClaimMismatchError(TokenError):
    """Issuer or audience does not match the expected values."""


class WrongTokenKindError(TokenError):
    """Token kind (access/refresh) differs from the one expected."""


class RevokedTokenError(TokenError):
    """Token was blacklisted before its natural expiry."""


class OneTimeTokenError(TokenError):
    """Base class for one-time token validation failures."""


class NotFoundOrExpiredError(OneTimeTokenError):
    """No live record exists for the presented one-time token."""


class OneTimeTokenExpiredError(NotFoundOrExpiredError):
    """Record was found but its embedded expiry has passed."""


class EmailMismatchError(OneTimeTokenError):
    """Record exists but was issued for a different email."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ServerError",
    "ServiceUnavailableError",
    "TokenError",
    "SigningError",
    "MalformedTokenError",
    "ExpiredTokenError",
    "InvalidSignatureError",
    "ClaimMismatchError",
    "WrongTokenKindError",
    "RevokedTokenError",
    "OneTimeTokenError",
    "NotFoundOrExpiredError",
    "OneTimeTokenExpiredError",
    "EmailMismatchError",
]
