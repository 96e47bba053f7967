"""
auth/dependencies.py -- FastAPI Depends() helpers: the admin and user middleware.

Admin requests (Authorization: Bearer <admin access token>) pass four gates,
in order, before a principal exists:
  1. Token signature, expiry, issuer, audience and claim shape (TokenService).
  2. A live session whose token_hash equals SHA-256(presented token).
     Revocation is decided here, by hash lookup, never from the claims.
  3. The token's sid claim must reference that session and its sub must be
     the session's owner.
  4. The owning account must exist and be `active` right now.

Any failure raises an AuthenticationError subclass (401). require_permission()
adds the authorization decision on top and raises AuthorizationError (403).
The exception handler in api/main.py turns both into the error envelope.

User requests carry a stateless user token: gate 1 only (see DESIGN.md for
why user sessions are expiry-only).

The principal is returned to the route as an explicit parameter:

    @router.post("/admin/invitations")
    def invite(principal: AdminPrincipal = Depends(require_permission("admin.invite"))): ...

Layer rule: auth/dependencies.py may import from fastapi because it is part
of the FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import Depends, Request

from auth.authorization import Decision
from auth.models import AccountStatus, AdminPrincipal, UserPrincipal
from auth.sessions import SessionStore
from auth.store import AdminStore
from auth.tokens import TokenService, hash_token, session_reference
from core.errors import AuthenticationError, AuthorizationError, SessionRevoked, TokenError

logger = logging.getLogger("nestguard.auth")


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError()
    return token.strip()


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def authenticate_admin_token(
    token: str,
    tokens: TokenService,
    sessions: SessionStore,
    store: AdminStore,
    source_ip: str | None = None,
) -> AdminPrincipal:
    """Resolve a raw admin access token to a principal or raise a 401-class error."""
    try:
        claims = tokens.verify(token)
    except TokenError as exc:
        logger.info("Admin token rejected: %s (ip=%s)", exc.reason.value, source_ip)
        raise

    session = sessions.find_active(hash_token(token))
    if session is None:
        raise SessionRevoked()
    if claims.sid != session_reference(session.id) or claims.sub != str(session.account_id):
        logger.warning("Admin token claims do not match session %s", session.id)
        raise SessionRevoked()

    account = store.get_account_by_id(session.account_id)
    if account is None or account.status is not AccountStatus.active:
        raise SessionRevoked()

    return AdminPrincipal(
        account_id=account.id,
        email=account.email,
        role=account.role,
        status=account.status,
        session_id=session.id,
        source_ip=source_ip,
    )


def get_admin_principal(request: Request) -> AdminPrincipal:
    """Require a valid admin session. Raises 401 otherwise."""
    state = request.app.state
    return authenticate_admin_token(
        _bearer_token(request),
        state.admin_tokens,
        state.sessions,
        state.admin_store,
        source_ip=_client_ip(request),
    )


def require_permission(permission: str) -> Callable[..., AdminPrincipal]:
    """Build a dependency that requires an admin principal holding `permission`.

    401 if unauthenticated, 403 if the principal's role lacks the permission
    or the account stopped being active.
    """

    def dependency(request: Request, principal: AdminPrincipal = Depends(get_admin_principal)) -> AdminPrincipal:
        if request.app.state.authz.authorize(principal, permission) is not Decision.ALLOWED:
            raise AuthorizationError()
        return principal

    return dependency


def get_user_principal(request: Request) -> UserPrincipal:
    """Require a valid end-user token. Stateless: signature and claims only."""
    token = _bearer_token(request)
    try:
        claims = request.app.state.user_tokens.verify(token)
    except TokenError as exc:
        logger.info("User token rejected: %s (ip=%s)", exc.reason.value, _client_ip(request))
        raise
    return UserPrincipal(user_id=claims.sub, role=claims.role)
