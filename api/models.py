"""
API request and response models for the nestguard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.

Raw tokens appear in responses exactly once (login, refresh, invitation
creation). Hashes never appear in any response.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from auth.models import AdminAccount, AuditRecord, InvitationToken

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class AccountStatusEnum(str, Enum):
    pending = "pending"
    active = "active"
    disabled = "disabled"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class _EmailBody(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr = Field(description="Admin email address; compared case-insensitively")

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()


class LoginRequest(_EmailBody):
    """Request body for POST /api/v1/admin/auth/login."""

    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=4096)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)


class PasswordResetRequest(_EmailBody):
    """Request body for POST /api/v1/admin/auth/password-reset."""


class PasswordResetConfirm(BaseModel):
    token: str = Field(min_length=1, max_length=512)
    new_password: str = Field(min_length=1, max_length=255)


class InvitationCreate(_EmailBody):
    """Request body for POST /api/v1/admin/invitations."""

    role: str = Field(min_length=1, max_length=64)


class InvitationAccept(BaseModel):
    token: str = Field(min_length=1, max_length=512)
    password: str = Field(min_length=1, max_length=255)


class AccountStatusUpdate(BaseModel):
    status: AccountStatusEnum


class AccountRoleUpdate(BaseModel):
    role: str = Field(min_length=1, max_length=64)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountSummary(BaseModel):
    """Minimal account info returned with tokens and by /me."""

    id: int
    email: str
    role: str
    status: AccountStatusEnum
    permissions: list[str] = Field(default_factory=list)
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: AdminAccount, permissions=()) -> "AccountSummary":
        return cls(
            id=account.id,
            email=account.email,
            role=account.role,
            status=AccountStatusEnum(account.status.value),
            permissions=sorted(permissions),
            last_login_at=account.last_login_at,
        )


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class LoginResponse(TokenResponse):
    """Response for POST /admin/auth/login."""

    account: AccountSummary


class AcceptInvitationResponse(BaseModel):
    account: AccountSummary
    tokens: Optional[TokenResponse] = None


class ChangePasswordResponse(BaseModel):
    sessions_revoked: int


class MessageResponse(BaseModel):
    message: str


class InvitationResponse(BaseModel):
    """Response for POST /admin/invitations. `token` is shown this one time only."""

    id: int
    email: str
    role: str
    status: str
    expires_at: datetime
    token: str


class InvitationSummary(BaseModel):
    """One pending invitation as listed in the console. Never carries the token."""

    id: int
    email: str
    role: str
    status: str
    invited_by: Optional[int] = None
    created_at: Optional[datetime] = None
    expires_at: datetime

    @classmethod
    def from_invitation(cls, invitation: InvitationToken) -> "InvitationSummary":
        return cls(
            id=invitation.id,
            email=invitation.email,
            role=invitation.role,
            status=invitation.status.value,
            invited_by=invitation.invited_by,
            created_at=invitation.created_at,
            expires_at=invitation.expires_at,
        )


class InvitationListResponse(BaseModel):
    """Response for GET /admin/invitations."""

    items: list[InvitationSummary]
    total: int
    limit: int
    offset: int


class AuditRecordResponse(BaseModel):
    id: int
    actor_id: Optional[int] = None
    action: str
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    severity: str
    metadata: dict = Field(default_factory=dict)
    source_ip: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_record(cls, record: AuditRecord) -> "AuditRecordResponse":
        return cls(
            id=record.id,
            actor_id=record.actor_id,
            action=record.action,
            target_type=record.target_type,
            target_id=record.target_id,
            severity=record.severity.value,
            metadata=record.metadata,
            source_ip=record.source_ip,
            created_at=record.created_at,
        )


class UserMeResponse(BaseModel):
    """Response for GET /api/v1/me (end-user token)."""

    user_id: str
    role: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
