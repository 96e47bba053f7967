"""
api/routes/v1/admin_accounts.py -- Invitation, account administration and audit endpoints.

Routes:
  POST   /api/v1/admin/invitations                -- admin.invite
  GET    /api/v1/admin/invitations                -- admin.invite (pending only)
  DELETE /api/v1/admin/invitations/{id}           -- admin.invite
  POST   /api/v1/admin/invitations/accept         -- public (token is the credential)
  PATCH  /api/v1/admin/accounts/{id}/status       -- admin.accounts.manage
  PATCH  /api/v1/admin/accounts/{id}/role         -- admin.accounts.manage
  GET    /api/v1/admin/audit-logs                 -- audit.read

Permissions are checked by require_permission() at the route and again inside
AdminAuthService, which the CLI calls directly.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from api.limiter import auth_rate_limit, limiter
from api.models import (
    AcceptInvitationResponse,
    AccountRoleUpdate,
    AccountStatusUpdate,
    AccountSummary,
    AuditRecordResponse,
    InvitationAccept,
    InvitationCreate,
    InvitationListResponse,
    InvitationResponse,
    InvitationSummary,
    TokenResponse,
)
from auth.dependencies import require_permission
from auth.models import AccountStatus, AdminPrincipal, Severity
from auth.service import PERM_AUDIT_READ, PERM_INVITE, PERM_MANAGE_ACCOUNTS, AdminAuthService

router = APIRouter()


def _service(request: Request) -> AdminAuthService:
    return request.app.state.admin_auth


# ---------------------------------------------------------------------------
# Invitations
# ---------------------------------------------------------------------------


@router.post("/admin/invitations", response_model=InvitationResponse, status_code=status.HTTP_201_CREATED)
def create_invitation(
    request: Request,
    body: InvitationCreate,
    principal: AdminPrincipal = Depends(require_permission(PERM_INVITE)),
) -> JSONResponse:
    """Invite an email to a role. A pending invitation for the same email is revoked."""
    invitation = _service(request).invite(principal, body.email, body.role)
    payload = InvitationResponse(
        id=invitation.id,
        email=invitation.email,
        role=invitation.role,
        status=invitation.status.value,
        expires_at=invitation.expires_at,
        token=invitation.raw_token,
    )
    resp = JSONResponse(status_code=201, content=payload.model_dump(mode="json"))
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/admin/invitations", response_model=InvitationListResponse)
def list_pending_invitations(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    principal: AdminPrincipal = Depends(require_permission(PERM_INVITE)),
) -> InvitationListResponse:
    """Pending, unexpired invitations, newest first. Tokens are never listed."""
    items, total = _service(request).list_pending_invitations(principal, limit=limit, offset=offset)
    return InvitationListResponse(
        items=[InvitationSummary.from_invitation(i) for i in items], total=total, limit=limit, offset=offset
    )


@router.delete("/admin/invitations/{invitation_id}", status_code=status.HTTP_204_NO_CONTENT)
def revoke_invitation(
    request: Request,
    invitation_id: int,
    principal: AdminPrincipal = Depends(require_permission(PERM_INVITE)),
) -> None:
    _service(request).revoke_invitation(principal, invitation_id)


@limiter.limit(auth_rate_limit)
@router.post("/admin/invitations/accept", response_model=AcceptInvitationResponse, status_code=201)
def accept_invitation(request: Request, body: InvitationAccept) -> JSONResponse:
    """Create the invited account and sign it in. A token works exactly once."""
    ip = request.client.host if request.client else None
    account, pair = _service(request).accept_invitation(
        body.token, body.password, ip=ip, user_agent=request.headers.get("User-Agent")
    )
    _, permissions = _service(request).get_profile(account.id)
    payload = AcceptInvitationResponse(
        account=AccountSummary.from_account(account, permissions),
        tokens=TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
        )
        if pair
        else None,
    )
    resp = JSONResponse(status_code=201, content=payload.model_dump(mode="json"))
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@router.patch("/admin/accounts/{account_id}/status", response_model=AccountSummary)
def update_account_status(
    request: Request,
    account_id: int,
    body: AccountStatusUpdate,
    principal: AdminPrincipal = Depends(require_permission(PERM_MANAGE_ACCOUNTS)),
) -> AccountSummary:
    """Enable or disable an account. Disabling revokes all of its sessions immediately."""
    account = _service(request).set_account_status(principal, account_id, AccountStatus(body.status.value))
    return AccountSummary.from_account(account)


@router.patch("/admin/accounts/{account_id}/role", response_model=AccountSummary)
def update_account_role(
    request: Request,
    account_id: int,
    body: AccountRoleUpdate,
    principal: AdminPrincipal = Depends(require_permission(PERM_MANAGE_ACCOUNTS)),
) -> AccountSummary:
    service = _service(request)
    account = service.change_role(principal, account_id, body.role)
    _, permissions = service.get_profile(account.id)
    return AccountSummary.from_account(account, permissions)


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


@router.get("/admin/audit-logs", response_model=list[AuditRecordResponse])
def list_audit_logs(
    request: Request,
    actor_id: Optional[int] = Query(default=None),
    action: Optional[str] = Query(default=None, max_length=64),
    target_type: Optional[str] = Query(default=None, max_length=32),
    severity: Optional[Severity] = Query(default=None),
    since: Optional[datetime] = Query(default=None, description="Inclusive lower bound; naive values are UTC"),
    until: Optional[datetime] = Query(default=None, description="Inclusive upper bound; naive values are UTC"),
    source_ip: Optional[str] = Query(default=None, max_length=64),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    principal: AdminPrincipal = Depends(require_permission(PERM_AUDIT_READ)),
) -> list[AuditRecordResponse]:
    """Newest first. Every filter given must match."""
    records = _service(request).list_audit_records(
        principal,
        actor_id=actor_id,
        action=action,
        limit=limit,
        offset=offset,
        target_type=target_type,
        severity=severity,
        since=since,
        until=until,
        source_ip=source_ip,
    )
    return [AuditRecordResponse.from_record(r) for r in records]
