"""
auth/models.py -- Domain dataclasses for the admin identity subsystem.

Pattern: Data class. Dataclasses own domain shape; stores, services and
routes do the work. The one exception is account status: it is a finite
state with an explicit transition table, so the rule "disabled implies no
valid sessions" has exactly one place to hook into (see transition_status).

Layer rule: no imports from api/ or cache/. core/ is allowed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from core.errors import ConflictError

# ---------------------------------------------------------------------------
# Status enums
# ---------------------------------------------------------------------------


class AccountStatus(str, Enum):
    pending = "pending"
    active = "active"
    disabled = "disabled"


class InvitationStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"
    expired = "expired"
    revoked = "revoked"


class ResetTokenStatus(str, Enum):
    pending = "pending"
    used = "used"
    expired = "expired"


class Severity(str, Enum):
    debug = "debug"
    info = "info"
    warning = "warning"
    error = "error"
    critical = "critical"


# Allowed account status transitions. Anything not listed is a ConflictError.
_ACCOUNT_TRANSITIONS: dict[AccountStatus, frozenset[AccountStatus]] = {
    AccountStatus.pending: frozenset({AccountStatus.active}),
    AccountStatus.active: frozenset({AccountStatus.disabled}),
    AccountStatus.disabled: frozenset({AccountStatus.active}),
}


def can_transition(current: AccountStatus, target: AccountStatus) -> bool:
    return target in _ACCOUNT_TRANSITIONS.get(current, frozenset())


def transition_status(current: AccountStatus, target: AccountStatus) -> AccountStatus:
    """Validate a status change and return the new status.

    Raises ConflictError for a transition that is not in the table,
    including a no-op (active -> active).
    """
    if not can_transition(current, target):
        raise ConflictError(f"Cannot change account status from {current.value} to {target.value}.")
    return target


def invalidates_sessions(target: AccountStatus) -> bool:
    """True when entering this status must revoke every session of the account."""
    return target is not AccountStatus.active


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


@dataclass
class AdminPermission:
    """A named capability string, e.g. "content.publish". Immutable catalog entry."""

    name: str
    id: int | None = None
    description: str = ""


@dataclass
class AdminRole:
    name: str  # "super_admin", "moderator", "support", ...
    id: int | None = None
    description: str = ""
    permissions: frozenset[str] = field(default_factory=frozenset)


# ---------------------------------------------------------------------------
# Accounts and credentials
# ---------------------------------------------------------------------------


@dataclass
class AdminAccount:
    """An administrative identity.

    email is always stored lower-cased; lookups normalize their input the
    same way, which gives case-insensitive uniqueness.

    failed_login_count counts failures inside the current window, which
    started at failed_window_started_at. locked_until is set when the count
    reaches the lockout threshold; while it lies in the future, login is
    refused before the password is even checked.

    Accounts are never deleted. Disabling is a status transition.
    """

    email: str
    role: str
    password_hash: str
    status: AccountStatus = AccountStatus.active
    id: int | None = None
    failed_login_count: int = 0
    failed_window_started_at: datetime | None = None
    locked_until: datetime | None = None
    last_login_at: datetime | None = None
    login_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class AdminSession:
    """One successful login. The source of truth for revocation.

    token_hash / refresh_token_hash are SHA-256 hex digests of the signed
    tokens. The raw tokens are never persisted.
    """

    id: str
    account_id: int
    token_hash: str
    expires_at: datetime
    refresh_token_hash: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime | None = None
    last_used_at: datetime | None = None
    revoked_at: datetime | None = None
    revoked_reason: str | None = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass
class InvitationToken:
    """Single-use invitation. raw_token is populated only on the creating call."""

    id: int
    email: str
    role: str
    token_hash: str
    status: InvitationStatus
    expires_at: datetime
    invited_by: int | None = None
    accepted_account_id: int | None = None
    created_at: datetime | None = None
    consumed_at: datetime | None = None
    raw_token: str | None = field(default=None, repr=False)


@dataclass
class PasswordResetToken:
    """Single-use reset token scoped to one account. raw_token as above."""

    id: int
    account_id: int
    token_hash: str
    status: ResetTokenStatus
    expires_at: datetime
    created_at: datetime | None = None
    used_at: datetime | None = None
    raw_token: str | None = field(default=None, repr=False)


@dataclass
class AuditRecord:
    """Append-only audit entry. target_type/target_id name the affected entity."""

    action: str
    severity: Severity
    actor_id: int | None = None
    target_type: str | None = None
    target_id: str | None = None
    metadata: dict = field(default_factory=dict)
    source_ip: str | None = None
    id: int | None = None
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Tokens and principals
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenClaims:
    """Verified claim set. Only ever constructed from a token that passed every check."""

    iss: str
    aud: str
    sub: str
    role: str
    nonce: str
    iat: int
    exp: int
    typ: str = "access"
    sid: str | None = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    session_id: str


@dataclass(frozen=True)
class AdminPrincipal:
    """The authenticated admin attached to a request.

    Built by the admin middleware after the token, its session and the live
    account all check out. Handlers receive it as an explicit parameter.
    """

    account_id: int
    email: str
    role: str
    status: AccountStatus
    session_id: str
    source_ip: str | None = None


@dataclass(frozen=True)
class UserPrincipal:
    """End-user identity taken from a stateless user token."""

    user_id: str
    role: str


@dataclass(frozen=True)
class LoginResult:
    tokens: TokenPair
    account: AdminAccount
    permissions: frozenset[str]
