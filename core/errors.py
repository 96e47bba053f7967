"""
core/errors.py -- Domain error taxonomy for the admin identity subsystem.

Every error the auth core raises on purpose is an AuthError. Each class
carries the HTTP status and the machine-readable code it maps to, so the API
boundary (api/main.py) can translate them 1:1 without a lookup table and
without leaking internals: the client only ever sees `code` and `message`.
Full context (the chained exception, ids, reasons) goes to the logs.

    AuthError
    +-- AuthenticationError (401)
    |   +-- InvalidCredentials
    |   +-- AccountLocked
    |   +-- SessionRevoked
    |   +-- TokenError            (reason: TokenErrorReason)
    +-- AuthorizationError (403)
    +-- NotFoundError (404)
    +-- ConflictError (409)
    |   +-- InvalidOrExpiredToken
    +-- ValidationError (400)
    +-- TransientError (503)
    |   +-- AuditWriteError
    +-- ConfigurationError         (fatal at startup)
    +-- HashingError / VerificationError (500)

Layer rule: core/ is the kernel. Nothing here imports from api/ or auth/.
"""

from __future__ import annotations

from enum import Enum


class AuthError(Exception):
    """Base class for all intentional auth-core failures."""

    status_code: int = 500
    code: str = "internal_error"
    default_message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# 401 -- who are you?
# ---------------------------------------------------------------------------


class AuthenticationError(AuthError):
    status_code = 401
    code = "unauthorized"
    default_message = "Authentication required."


class InvalidCredentials(AuthenticationError):
    """Unknown email, wrong password, disabled or pending account -- deliberately indistinguishable."""

    code = "invalid_credentials"
    default_message = "Invalid email or password."


class AccountLocked(AuthenticationError):
    code = "account_locked"
    default_message = "Account is temporarily locked after repeated failed logins."


class SessionRevoked(AuthenticationError):
    code = "session_revoked"
    default_message = "Session is no longer valid."


class TokenErrorReason(str, Enum):
    malformed = "malformed"
    signature_invalid = "signature_invalid"
    expired = "expired"
    issuer_mismatch = "issuer_mismatch"
    audience_mismatch = "audience_mismatch"


class TokenError(AuthenticationError):
    """A presented token failed verification. The reason is logged, not returned."""

    code = "invalid_token"
    default_message = "Invalid or expired token."

    def __init__(self, reason: TokenErrorReason, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message)
        if reason is TokenErrorReason.expired:
            self.code = "token_expired"


# ---------------------------------------------------------------------------
# 403 / 404 / 409 / 400
# ---------------------------------------------------------------------------


class AuthorizationError(AuthError):
    status_code = 403
    code = "forbidden"
    default_message = "You do not have permission to perform this action."


class NotFoundError(AuthError):
    status_code = 404
    code = "not_found"
    default_message = "The requested resource was not found."


class ConflictError(AuthError):
    status_code = 409
    code = "conflict"
    default_message = "The request conflicts with the current state."


class InvalidOrExpiredToken(ConflictError):
    """A single-use token was unknown, already consumed, revoked, or past its expiry."""

    code = "invalid_or_expired"
    default_message = "Token is invalid or has expired."


class ValidationError(AuthError):
    status_code = 400
    code = "validation_error"
    default_message = "Request validation failed."


# ---------------------------------------------------------------------------
# 503 -- try again
# ---------------------------------------------------------------------------


class TransientError(AuthError):
    status_code = 503
    code = "temporarily_unavailable"
    default_message = "Service temporarily unavailable. Please retry."


class AuditWriteError(TransientError):
    code = "audit_unavailable"


# ---------------------------------------------------------------------------
# Fatal / internal
# ---------------------------------------------------------------------------


class ConfigurationError(AuthError):
    """Raised during startup validation. The process must not serve requests."""

    code = "configuration_error"
    default_message = "Invalid configuration."


class HashingError(AuthError):
    code = "hashing_error"


class VerificationError(AuthError):
    """The stored password hash is malformed. A mismatch is never this error."""

    code = "verification_error"
