"""
api/routes/v1/admin_auth.py -- Admin authentication REST endpoints.

Routes:
  POST /api/v1/admin/auth/login                   -- email + password -> token pair
  POST /api/v1/admin/auth/refresh                 -- rotate the token pair (single use)
  POST /api/v1/admin/auth/logout                  -- revoke the current session
  GET  /api/v1/admin/auth/me                      -- current account + permissions
  POST /api/v1/admin/auth/change-password         -- revokes every other session
  POST /api/v1/admin/auth/password-reset          -- always 202, same body
  POST /api/v1/admin/auth/password-reset/confirm  -- revokes every session

Security:
  login, refresh and password-reset are rate-limited per client IP
  (Settings.login_rate_limit).
  Cache-Control: no-store on every response that carries a token.
  Handlers never catch AuthError; api/main.py maps it to the error envelope.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from api.limiter import auth_rate_limit, limiter
from api.models import (
    AccountSummary,
    ChangePasswordRequest,
    ChangePasswordResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    RefreshRequest,
    TokenResponse,
)
from auth.dependencies import get_admin_principal
from auth.models import AdminPrincipal
from auth.service import AdminAuthService

# Auth policy:
# - POST /admin/auth/login, /refresh, /password-reset, /password-reset/confirm: public
# - POST /admin/auth/logout, /change-password, GET /admin/auth/me: admin session
router = APIRouter()

_RESET_ACK = "If an active account exists for that email, a reset link has been sent."


def _service(request: Request) -> AdminAuthService:
    return request.app.state.admin_auth


def _client(request: Request) -> tuple[str | None, str | None]:
    ip = request.client.host if request.client else None
    return ip, request.headers.get("User-Agent")


def _no_store(payload: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=payload)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(auth_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/admin/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Unknown email, wrong password and inactive account all answer 401
    invalid_credentials. A locked account answers 401 account_locked.
    """
    ip, user_agent = _client(request)
    result = _service(request).login(body.email, body.password, ip=ip, user_agent=user_agent)
    payload = LoginResponse(
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        expires_in=result.tokens.expires_in,
        account=AccountSummary.from_account(result.account, result.permissions),
    )
    return _no_store(payload.model_dump(mode="json"))


@limiter.limit(auth_rate_limit)
@router.post("/admin/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented refresh token stops working."""
    ip, _ = _client(request)
    pair = _service(request).refresh(body.refresh_token, ip=ip)
    payload = TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in,
    )
    return _no_store(payload.model_dump(mode="json"))


@limiter.limit(auth_rate_limit)
@router.post("/admin/auth/password-reset", response_model=MessageResponse, status_code=status.HTTP_202_ACCEPTED)
def request_password_reset(request: Request, body: PasswordResetRequest) -> MessageResponse:
    """Start a reset. The response is identical whether or not the email is known."""
    ip, _ = _client(request)
    _service(request).request_password_reset(body.email, ip=ip)
    return MessageResponse(message=_RESET_ACK)


@router.post("/admin/auth/password-reset/confirm", response_model=MessageResponse)
def confirm_password_reset(request: Request, body: PasswordResetConfirm) -> MessageResponse:
    """Set a new password with a reset token. Every session of the account is revoked."""
    ip, _ = _client(request)
    _service(request).confirm_password_reset(body.token, body.new_password, ip=ip)
    return MessageResponse(message="Password updated. Please sign in again.")


# ---------------------------------------------------------------------------
# Session endpoints
# ---------------------------------------------------------------------------


@router.post("/admin/auth/logout", response_model=MessageResponse)
def logout(request: Request, principal: AdminPrincipal = Depends(get_admin_principal)) -> MessageResponse:
    _service(request).logout(principal)
    return MessageResponse(message="Logged out.")


@router.get("/admin/auth/me", response_model=AccountSummary)
def me(request: Request, principal: AdminPrincipal = Depends(get_admin_principal)) -> AccountSummary:
    """Return the current account and its live permission set."""
    account, permissions = _service(request).get_profile(principal.account_id)
    return AccountSummary.from_account(account, permissions)


@router.post("/admin/auth/change-password", response_model=ChangePasswordResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    principal: AdminPrincipal = Depends(get_admin_principal),
) -> ChangePasswordResponse:
    """Change the caller's password. The calling session survives; all others are revoked."""
    revoked = _service(request).change_password(principal, body.current_password, body.new_password)
    return ChangePasswordResponse(sessions_revoked=revoked)
