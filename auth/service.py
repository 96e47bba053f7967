"""
auth/service.py -- AdminAuthService: every admin identity workflow.

All business rules live here; routes parse input and call one method,
stores only persist. A workflow that changes access runs its writes and
its audit record inside one AdminStore.transaction(), so they commit
together or not at all. Single-use steps are conditional updates in the
stores, so the service itself holds no locks and no per-request state.

Workflows:
  login                    email + password -> token pair + account summary
  refresh                  refresh token -> rotated token pair, same session
  logout                   revoke the caller's session
  invite                   admin.invite -> pending invitation (supersedes older)
  list_pending_invitations admin.invite -> live pending invitations + total
  revoke_invitation        admin.invite -> pending invitation becomes revoked
  accept_invitation        raw token + password -> active account (+ session)
  change_password          current + new password -> other sessions revoked
  request_password_reset   email -> reset token delivered (identical response)
  confirm_password_reset   raw token + password -> all sessions revoked
  set_account_status       admin.accounts.manage -> disable revokes sessions
  change_role              admin.accounts.manage -> sessions revoked
  get_profile              account + live permission set
  list_audit_records       audit.read -> filtered audit trail

Audit policy: actions that grant, change, or remove access are
security-critical -- if their audit record cannot be written the
AuditWriteError propagates, the transaction rolls back, and the caller
gets a retryable 503 with nothing changed. Failed login attempts and reset
requests are informational: a failed write is logged and the workflow
continues, so audit availability never changes the observable answer to
"does this email exist".

Login failure semantics:
  unknown email / disabled / pending account / wrong password
      -> InvalidCredentials (indistinguishable; bcrypt always runs)
  locked active account (checked before the password)
      -> AccountLocked
  The attempt that reaches the lockout threshold still answers
  InvalidCredentials; only later attempts during the lock see AccountLocked.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from email_validator import EmailNotValidError, validate_email
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from auth import audit as actions
from auth.audit import AuditLogWriter
from auth.authorization import AuthorizationEngine, Decision
from auth.models import (
    AccountStatus,
    AdminAccount,
    AdminPrincipal,
    AuditRecord,
    InvitationToken,
    LoginResult,
    Severity,
    TokenPair,
    invalidates_sessions,
    transition_status,
)
from auth.notify import LoggingNotifier, Notifier
from auth.passwords import PasswordHasher, validate_password_strength
from auth.sessions import SessionStore
from auth.store import AdminStore
from auth.tokens import (
    REFRESH,
    TokenService,
    admin_token_service,
    hash_token,
    session_reference,
    user_token_service,
)
from cache.store import TTLCache
from core.clock import Clock, utcnow
from core.config import Settings
from core.errors import (
    AccountLocked,
    AuditWriteError,
    AuthorizationError,
    ConflictError,
    InvalidCredentials,
    NotFoundError,
    SessionRevoked,
    ValidationError,
)

logger = logging.getLogger("nestguard.auth")

PERM_INVITE = "admin.invite"
PERM_MANAGE_ACCOUNTS = "admin.accounts.manage"
PERM_AUDIT_READ = "audit.read"


def checked_email(email: str) -> str:
    """Validate an address for a new invitation and return it lower-cased.

    The HTTP models validate with EmailStr; this covers callers that skip
    them, such as the operator CLI. Deliverability (DNS) is not checked.
    """
    try:
        result = validate_email(email.strip(), check_deliverability=False)
    except EmailNotValidError as exc:
        raise ValidationError(f"A valid email address is required: {exc}") from exc
    return result.normalized.lower()


class AdminAuthService:
    def __init__(
        self,
        settings: Settings,
        store: AdminStore,
        sessions: SessionStore,
        tokens: TokenService,
        hasher: PasswordHasher,
        audit: AuditLogWriter,
        authz: AuthorizationEngine,
        notifier: Notifier | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.sessions = sessions
        self.tokens = tokens
        self.hasher = hasher
        self.audit = audit
        self.authz = authz
        self.notifier = notifier or LoggingNotifier()
        self._clock = clock

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _audit_info(
        self,
        actor_id: int | None,
        action: str,
        target: tuple[str, str | int] | None = None,
        severity: Severity = Severity.info,
        metadata: dict | None = None,
        source_ip: str | None = None,
    ) -> None:
        """Record an informational event; a failed write is logged, not raised."""
        try:
            self.audit.record(actor_id, action, target, severity, metadata, source_ip=source_ip)
        except AuditWriteError:
            logger.warning("Informational audit record dropped (action=%s)", action)

    def _require(self, actor: AdminPrincipal, permission: str) -> None:
        if self.authz.authorize(actor, permission) is not Decision.ALLOWED:
            raise AuthorizationError()

    def _check_no_escalation(self, actor: AdminPrincipal, role: str) -> None:
        """The target role may not hold any permission the actor's own role lacks."""
        actor_account = self.store.get_account_by_id(actor.account_id)
        actor_perms = self.authz.permissions_for_role(actor_account.role) if actor_account else frozenset()
        extra = self.authz.permissions_for_role(role) - actor_perms
        if extra:
            logger.warning("Account %s tried to grant role %s above its own permissions", actor.account_id, role)
            raise AuthorizationError("Cannot assign a role with permissions you do not hold.")

    def _issue_session(
        self, account: AdminAccount, ip: str | None, user_agent: str | None, conn: Connection
    ) -> TokenPair:
        session_id = str(uuid.uuid4())
        sid = session_reference(session_id)
        access = self.tokens.issue_access(account.id, account.role, sid)
        refresh = self.tokens.issue_refresh(account.id, account.role, sid)
        self.sessions.create_session(
            account.id,
            hash_token(access),
            timedelta(seconds=self.tokens.policy.refresh_ttl_seconds),
            ip,
            user_agent,
            refresh_token_hash=hash_token(refresh),
            session_id=session_id,
            conn=conn,
        )
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            expires_in=self.tokens.policy.access_ttl_seconds,
            session_id=session_id,
        )

    def _open_session(
        self, account: AdminAccount, ip: str | None, user_agent: str | None, metadata: dict
    ) -> TokenPair:
        """Stamp the login, create the session and audit it as one unit."""
        with self.store.transaction("login") as conn:
            self.store.record_successful_login(account.id, conn=conn)
            tokens = self._issue_session(account, ip, user_agent, conn)
            self.audit.record(
                account.id,
                actions.LOGIN,
                ("account", account.id),
                Severity.info,
                {"session_id": tokens.session_id, **metadata},
                source_ip=ip,
                conn=conn,
            )
        return tokens

    def _get_account(self, account_id: int) -> AdminAccount:
        account = self.store.get_account_by_id(account_id)
        if account is None:
            raise NotFoundError("Account not found.")
        return account

    # ------------------------------------------------------------------
    # Login / refresh / logout
    # ------------------------------------------------------------------

    def login(
        self, email: str, password: str, ip: str | None = None, user_agent: str | None = None
    ) -> LoginResult:
        account = self.store.get_account_by_email(email)
        if account is None:
            self.hasher.verify_dummy(password)
            self._audit_info(
                None,
                actions.LOGIN_FAILED,
                severity=Severity.warning,
                metadata={"reason": "unknown_email"},
                source_ip=ip,
            )
            raise InvalidCredentials()

        target = ("account", account.id)
        if account.status is not AccountStatus.active:
            self.hasher.verify_dummy(password)
            self._audit_info(
                account.id,
                actions.LOGIN_FAILED,
                target,
                severity=Severity.warning,
                metadata={"reason": "inactive"},
                source_ip=ip,
            )
            raise InvalidCredentials()

        if account.is_locked(self._clock()):
            self._audit_info(account.id, actions.LOGIN_LOCKED, target, severity=Severity.warning, source_ip=ip)
            raise AccountLocked()

        if not self.hasher.verify(password, account.password_hash):
            count, locked = self.store.record_failed_login(
                account.id,
                threshold=self.settings.lockout_threshold,
                window_seconds=self.settings.lockout_window_seconds,
                lock_seconds=self.settings.lockout_duration_seconds,
            )
            self._audit_info(
                account.id,
                actions.LOGIN_FAILED,
                target,
                severity=Severity.error if locked else Severity.warning,
                metadata={"reason": "bad_password", "failures": count, "locked": locked},
                source_ip=ip,
            )
            raise InvalidCredentials()

        tokens = self._open_session(account, ip, user_agent, {})
        logger.info("Admin login succeeded for account %s", account.id)
        refreshed = self.store.get_account_by_id(account.id) or account
        return LoginResult(tokens=tokens, account=refreshed, permissions=self.authz.permissions_for_role(account.role))

    def refresh(self, refresh_token: str, ip: str | None = None) -> TokenPair:
        """Exchange a refresh token for a new pair on the same session. Single use."""
        claims = self.tokens.verify(refresh_token, typ=REFRESH)
        old_hash = hash_token(refresh_token)
        session = self.sessions.find_active_by_refresh(old_hash)
        if session is None or claims.sid != session_reference(session.id):
            raise SessionRevoked()
        account = self.store.get_account_by_id(session.account_id)
        if account is None or account.status is not AccountStatus.active:
            self.sessions.revoke(session.id, reason="account_inactive")
            raise SessionRevoked()

        sid = session_reference(session.id)
        access = self.tokens.issue_access(account.id, account.role, sid)
        new_refresh = self.tokens.issue_refresh(account.id, account.role, sid)
        expires_at = self._clock() + timedelta(seconds=self.tokens.policy.refresh_ttl_seconds)
        with self.store.transaction("refresh") as conn:
            rotated = self.sessions.rotate_refresh(
                session.id, old_hash, hash_token(access), hash_token(new_refresh), expires_at, conn=conn
            )
            if not rotated:
                raise SessionRevoked()
            self.audit.record(
                account.id, actions.TOKEN_REFRESHED, ("session", session.id), Severity.info, {}, source_ip=ip, conn=conn
            )
        return TokenPair(
            access_token=access,
            refresh_token=new_refresh,
            expires_in=self.tokens.policy.access_ttl_seconds,
            session_id=session.id,
        )

    def logout(self, principal: AdminPrincipal) -> None:
        with self.store.transaction("logout") as conn:
            self.sessions.revoke(principal.session_id, reason="logout", conn=conn)
            self.audit.record(
                principal.account_id,
                actions.LOGOUT,
                ("session", principal.session_id),
                Severity.info,
                {},
                source_ip=principal.source_ip,
                conn=conn,
            )

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    def invite(self, actor: AdminPrincipal, email: str, role: str) -> InvitationToken:
        """Create (or supersede) the pending invitation for email. Returns it with raw_token set."""
        self._require(actor, PERM_INVITE)
        email = checked_email(email)
        if not self.store.role_exists(role):
            raise ValidationError(f"Unknown role: {role}")
        self._check_no_escalation(actor, role)
        if self.store.get_account_by_email(email) is not None:
            raise ConflictError("An account already exists for this email.")

        with self.store.transaction("invite") as conn:
            invitation = self.sessions.create_invitation(
                email, role, timedelta(days=self.settings.invitation_ttl_days), invited_by=actor.account_id, conn=conn
            )
            self.audit.record(
                actor.account_id,
                actions.INVITATION_SENT,
                ("invitation", invitation.id),
                Severity.info,
                {"email": invitation.email, "role": role},
                source_ip=actor.source_ip,
                conn=conn,
            )
        self.notifier.send_invitation(invitation.email, invitation.raw_token, role)
        return invitation

    def system_invite(self, email: str, role: str) -> InvitationToken:
        """Operator invitation with no acting account (bootstrap of the first admin).

        Only reachable from the CLI, which already runs with database access.
        """
        email = checked_email(email)
        if not self.store.role_exists(role):
            raise ValidationError(f"Unknown role: {role}")
        if self.store.get_account_by_email(email) is not None:
            raise ConflictError("An account already exists for this email.")
        with self.store.transaction("system_invite") as conn:
            invitation = self.sessions.create_invitation(
                email, role, timedelta(days=self.settings.invitation_ttl_days), conn=conn
            )
            self.audit.record(
                None,
                actions.INVITATION_SENT,
                ("invitation", invitation.id),
                Severity.warning,
                {"email": invitation.email, "role": role, "via": "cli"},
                conn=conn,
            )
        return invitation

    def list_pending_invitations(
        self, actor: AdminPrincipal, limit: int = 50, offset: int = 0
    ) -> tuple[list[InvitationToken], int]:
        self._require(actor, PERM_INVITE)
        return self.sessions.list_pending_invitations(limit=limit, offset=offset)

    def revoke_invitation(self, actor: AdminPrincipal, invitation_id: int) -> None:
        self._require(actor, PERM_INVITE)
        with self.store.transaction("revoke_invitation") as conn:
            revoked = self.sessions.revoke_invitation(invitation_id, conn=conn)
            if revoked:
                self.audit.record(
                    actor.account_id,
                    actions.INVITATION_REVOKED,
                    ("invitation", invitation_id),
                    Severity.info,
                    {},
                    source_ip=actor.source_ip,
                    conn=conn,
                )
        if not revoked:
            invitation = self.sessions.get_invitation(invitation_id)
            if invitation is None:
                raise NotFoundError("Invitation not found.")
            raise ConflictError(f"Invitation is already {invitation.status.value}.")

    def accept_invitation(
        self,
        raw_token: str,
        password: str,
        ip: str | None = None,
        user_agent: str | None = None,
        auto_login: bool = True,
    ) -> tuple[AdminAccount, TokenPair | None]:
        """Consume the invitation and create an active account with its role.

        The password is validated and hashed before the token is consumed, so
        a weak password never burns a valid invitation. Consumption, the new
        account and the audit record share one transaction.
        """
        validate_password_strength(password, self.settings.password_min_length)
        password_hash = self.hasher.hash(password)

        with self.store.transaction("accept_invitation") as conn:
            invitation = self.sessions.consume_invitation(raw_token, conn=conn)
            try:
                account_id = self.store.create_account(
                    AdminAccount(
                        email=invitation.email,
                        role=invitation.role,
                        password_hash=password_hash,
                        status=AccountStatus.active,
                    ),
                    conn=conn,
                )
            except IntegrityError as exc:
                raise ConflictError("An account already exists for this email.") from exc
            self.sessions.set_invitation_account(invitation.id, account_id, conn=conn)
            self.audit.record(
                account_id,
                actions.INVITATION_ACCEPTED,
                ("invitation", invitation.id),
                Severity.info,
                {"role": invitation.role, "invited_by": invitation.invited_by},
                source_ip=ip,
                conn=conn,
            )
        logger.info("Invitation %s accepted; account %s created", invitation.id, account_id)
        account = self._get_account(account_id)

        if not auto_login:
            return account, None
        return account, self._open_session(account, ip, user_agent, {"via": "invitation"})

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def change_password(self, principal: AdminPrincipal, current_password: str, new_password: str) -> int:
        """Replace the password and revoke every other session. Returns how many were revoked."""
        account = self._get_account(principal.account_id)
        if not self.hasher.verify(current_password, account.password_hash):
            raise InvalidCredentials("Current password is incorrect.")
        validate_password_strength(new_password, self.settings.password_min_length)
        if current_password == new_password:
            raise ValidationError("New password must differ from the current password.")

        password_hash = self.hasher.hash(new_password)
        with self.store.transaction("change_password") as conn:
            self.store.update_password(account.id, password_hash, conn=conn)
            revoked = self.sessions.revoke_all_for_account(
                account.id, except_session_id=principal.session_id, reason="password_changed", conn=conn
            )
            self.audit.record(
                account.id,
                actions.PASSWORD_CHANGED,
                ("account", account.id),
                Severity.warning,
                {"sessions_revoked": revoked},
                source_ip=principal.source_ip,
                conn=conn,
            )
        return revoked

    def request_password_reset(self, email: str, ip: str | None = None) -> None:
        """Create and deliver a reset token if the account exists and is active.

        Returns None in every case; the caller answers identically whether or
        not the email is known.
        """
        account = self.store.get_account_by_email(email)
        if account is None or account.status is not AccountStatus.active:
            self._audit_info(None, actions.PASSWORD_RESET_REQUESTED, metadata={"matched": False}, source_ip=ip)
            return
        reset = self.sessions.create_reset_token(
            account.id, timedelta(seconds=self.settings.password_reset_ttl_seconds)
        )
        self.notifier.send_password_reset(account.email, reset.raw_token)
        self._audit_info(
            account.id,
            actions.PASSWORD_RESET_REQUESTED,
            ("account", account.id),
            metadata={"matched": True},
            source_ip=ip,
        )

    def confirm_password_reset(self, raw_token: str, new_password: str, ip: str | None = None) -> None:
        """Set a new password from a reset token. The token stays pending if anything fails."""
        validate_password_strength(new_password, self.settings.password_min_length)
        password_hash = self.hasher.hash(new_password)

        with self.store.transaction("confirm_password_reset") as conn:
            reset = self.sessions.consume_reset_token(raw_token, conn=conn)
            if not self.store.update_password(reset.account_id, password_hash, conn=conn):
                raise NotFoundError("Account not found.")
            revoked = self.sessions.revoke_all_for_account(reset.account_id, reason="password_reset", conn=conn)
            self.audit.record(
                reset.account_id,
                actions.PASSWORD_RESET_COMPLETED,
                ("account", reset.account_id),
                Severity.warning,
                {"sessions_revoked": revoked},
                source_ip=ip,
                conn=conn,
            )

    # ------------------------------------------------------------------
    # Account administration
    # ------------------------------------------------------------------

    def set_account_status(self, actor: AdminPrincipal, account_id: int, status: AccountStatus) -> AdminAccount:
        """Apply a status transition. Leaving `active` revokes every session at once."""
        self._require(actor, PERM_MANAGE_ACCOUNTS)
        if account_id == actor.account_id:
            raise ConflictError("You cannot change the status of your own account.")
        account = self._get_account(account_id)
        new_status = transition_status(account.status, status)

        with self.store.transaction("set_account_status") as conn:
            if not self.store.update_status(account_id, expected=account.status, new=new_status, conn=conn):
                raise ConflictError("Account status changed concurrently; reload and retry.")
            revoked = 0
            if invalidates_sessions(new_status):
                revoked = self.sessions.revoke_all_for_account(
                    account_id, reason=f"account_{new_status.value}", conn=conn
                )
            self.audit.record(
                actor.account_id,
                actions.ACCOUNT_STATUS_CHANGED,
                ("account", account_id),
                Severity.warning,
                {"from": account.status.value, "to": new_status.value, "sessions_revoked": revoked},
                source_ip=actor.source_ip,
                conn=conn,
            )
        return self._get_account(account_id)

    def change_role(self, actor: AdminPrincipal, account_id: int, role: str) -> AdminAccount:
        self._require(actor, PERM_MANAGE_ACCOUNTS)
        if account_id == actor.account_id:
            raise ConflictError("You cannot change your own role.")
        account = self._get_account(account_id)
        if not self.store.role_exists(role):
            raise ValidationError(f"Unknown role: {role}")
        self._check_no_escalation(actor, role)
        if role == account.role:
            return account

        with self.store.transaction("change_role") as conn:
            self.store.update_role(account_id, role, conn=conn)
            revoked = self.sessions.revoke_all_for_account(account_id, reason="role_changed", conn=conn)
            self.audit.record(
                actor.account_id,
                actions.ACCOUNT_ROLE_CHANGED,
                ("account", account_id),
                Severity.warning,
                {"from": account.role, "to": role, "sessions_revoked": revoked},
                source_ip=actor.source_ip,
                conn=conn,
            )
        self.authz.invalidate(account.role)
        self.authz.invalidate(role)
        return self._get_account(account_id)

    def get_profile(self, account_id: int) -> tuple[AdminAccount, frozenset[str]]:
        account = self._get_account(account_id)
        return account, self.authz.permissions_for_role(account.role)

    def list_audit_records(
        self,
        actor: AdminPrincipal,
        actor_id: int | None = None,
        action: str | None = None,
        limit: int = 50,
        offset: int = 0,
        target_type: str | None = None,
        severity: Severity | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        source_ip: str | None = None,
    ) -> list[AuditRecord]:
        self._require(actor, PERM_AUDIT_READ)
        return self.audit.list_records(
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


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


@dataclass
class AuthComponents:
    """Every auth collaborator, built once from one Settings object."""

    settings: Settings
    admin_store: AdminStore
    sessions: SessionStore
    audit: AuditLogWriter
    authz: AuthorizationEngine
    hasher: PasswordHasher
    admin_tokens: TokenService
    user_tokens: TokenService
    admin_auth: AdminAuthService

    def close(self) -> None:
        self.admin_store.close()


def build_components(settings: Settings, clock: Clock = utcnow, notifier: Notifier | None = None) -> AuthComponents:
    """Wire the stores, token services and orchestrator for one deployment.

    Used by the API lifespan, the CLI, and the test fixtures (with a fake
    clock and a low work factor).
    """
    admin_store = AdminStore(settings.database_url, settings.store_timeout_seconds, clock=clock)
    sessions = SessionStore(admin_store.engine, clock)
    audit_writer = AuditLogWriter(admin_store.engine, clock)
    authz = AuthorizationEngine(admin_store, TTLCache(ttl=settings.permission_cache_ttl_seconds))
    hasher = PasswordHasher(settings.password_work_factor)
    admin_tokens = admin_token_service(settings, clock)
    user_tokens = user_token_service(settings, clock)
    service = AdminAuthService(
        settings, admin_store, sessions, admin_tokens, hasher, audit_writer, authz, notifier=notifier, clock=clock
    )
    return AuthComponents(
        settings=settings,
        admin_store=admin_store,
        sessions=sessions,
        audit=audit_writer,
        authz=authz,
        hasher=hasher,
        admin_tokens=admin_tokens,
        user_tokens=user_tokens,
        admin_auth=service,
    )
