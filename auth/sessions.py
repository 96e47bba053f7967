"""
auth/sessions.py -- Session, invitation and password-reset token store.

Pattern: Repository over the tables declared in auth/store.py, sharing the
AdminStore engine.

Single-use semantics:
  consume_invitation() and consume_reset_token() are one conditional UPDATE

      UPDATE ... SET status = <terminal>
      WHERE token_hash = :h AND status = 'pending' AND expires_at > :now

  and success is decided by the affected row count alone. There is no
  read-then-write window, so N concurrent consumers of the same token see
  exactly one success and N-1 InvalidOrExpiredToken. The UPDATE is the
  first statement of its transaction (callers passing ``conn`` keep it
  first); the row is read back afterwards in the same transaction.
  Consumption is never retried.

  Refresh rotation uses the same shape: the old refresh hash is part of the
  WHERE clause, so a refresh token can be exchanged once.

Expiry is always compared against the injected server clock.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import and_, func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.models import (
    AdminSession,
    InvitationStatus,
    InvitationToken,
    PasswordResetToken,
    ResetTokenStatus,
)
from auth.store import invitations, normalize_email, password_resets, sessions, translate_errors, use_connection
from auth.tokens import generate_opaque_token, hash_token
from core.clock import Clock, from_iso, to_iso, utcnow
from core.errors import ConflictError, InvalidOrExpiredToken
from core.retry import retry_once

logger = logging.getLogger("nestguard.sessions")


class SessionStore:
    """Repository for AdminSession, InvitationToken and PasswordResetToken.

    Usage:
        store = SessionStore(admin_store.engine, clock)
        session = store.create_session(account_id, hash_token(access), ttl, ip, ua)
        store.find_active(hash_token(access))   # AdminSession or None
        store.revoke(session.id)
    """

    def __init__(self, engine: Engine, clock: Clock = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(
        self,
        account_id: int,
        token_hash: str,
        ttl: timedelta,
        ip_address: str | None = None,
        user_agent: str | None = None,
        refresh_token_hash: str | None = None,
        session_id: str | None = None,
        conn: Connection | None = None,
    ) -> AdminSession:
        """Persist a new session.

        session_id may be chosen by the caller up front, because the admin
        token embeds a reference to it before the session row exists.
        """
        now = self._clock()
        session = AdminSession(
            id=session_id or str(uuid.uuid4()),
            account_id=account_id,
            token_hash=token_hash,
            refresh_token_hash=refresh_token_hash,
            ip_address=ip_address,
            user_agent=(user_agent or "")[:512] or None,
            created_at=now,
            expires_at=now + ttl,
        )
        with translate_errors("create_session"), use_connection(self.engine, conn) as conn:
            conn.execute(
                sessions.insert().values(
                    id=session.id,
                    account_id=account_id,
                    token_hash=token_hash,
                    refresh_token_hash=refresh_token_hash,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    created_at=to_iso(now),
                    expires_at=to_iso(session.expires_at),
                )
            )
        return session

    def _active_clause(self, now: datetime):
        return and_(sessions.c.revoked_at.is_(None), sessions.c.expires_at > to_iso(now))

    @retry_once()
    def find_active(self, token_hash: str) -> AdminSession | None:
        """Return the non-revoked, non-expired session for an access-token hash."""
        now = self._clock()
        with translate_errors("find_active"), self.engine.connect() as conn:
            row = conn.execute(
                sessions.select().where(and_(sessions.c.token_hash == token_hash, self._active_clause(now)))
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    @retry_once()
    def find_active_by_refresh(self, refresh_token_hash: str) -> AdminSession | None:
        now = self._clock()
        with translate_errors("find_active_by_refresh"), self.engine.connect() as conn:
            row = conn.execute(
                sessions.select().where(
                    and_(sessions.c.refresh_token_hash == refresh_token_hash, self._active_clause(now))
                )
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_session(self, session_id: str) -> AdminSession | None:
        with translate_errors("get_session"), self.engine.connect() as conn:
            row = conn.execute(sessions.select().where(sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def rotate_refresh(
        self,
        session_id: str,
        old_refresh_hash: str,
        new_token_hash: str,
        new_refresh_hash: str,
        expires_at: datetime,
        conn: Connection | None = None,
    ) -> bool:
        """Swap both token hashes on a live session if old_refresh_hash still matches.

        False means the refresh token was already used, or the session was
        revoked or expired in the meantime.
        """
        now = self._clock()
        with translate_errors("rotate_refresh"), use_connection(self.engine, conn) as conn:
            result = conn.execute(
                sessions.update()
                .where(
                    and_(
                        sessions.c.id == session_id,
                        sessions.c.refresh_token_hash == old_refresh_hash,
                        self._active_clause(now),
                    )
                )
                .values(
                    token_hash=new_token_hash,
                    refresh_token_hash=new_refresh_hash,
                    expires_at=to_iso(expires_at),
                    last_used_at=to_iso(now),
                )
            )
        return result.rowcount > 0

    def revoke(self, session_id: str, reason: str = "logout", conn: Connection | None = None) -> bool:
        """Revoke one session. False if it was already revoked or does not exist."""
        with translate_errors("revoke"), use_connection(self.engine, conn) as conn:
            result = conn.execute(
                sessions.update()
                .where(and_(sessions.c.id == session_id, sessions.c.revoked_at.is_(None)))
                .values(revoked_at=to_iso(self._clock()), revoked_reason=reason)
            )
        return result.rowcount > 0

    def revoke_all_for_account(
        self,
        account_id: int,
        except_session_id: str | None = None,
        reason: str = "revoked",
        conn: Connection | None = None,
    ) -> int:
        """Revoke every live session of an account, optionally sparing one. Returns the count."""
        conditions = [sessions.c.account_id == account_id, sessions.c.revoked_at.is_(None)]
        if except_session_id is not None:
            conditions.append(sessions.c.id != except_session_id)
        with translate_errors("revoke_all_for_account"), use_connection(self.engine, conn) as conn:
            result = conn.execute(
                sessions.update()
                .where(and_(*conditions))
                .values(revoked_at=to_iso(self._clock()), revoked_reason=reason)
            )
        if result.rowcount:
            logger.info("Revoked %d session(s) for account %s (%s)", result.rowcount, account_id, reason)
        return result.rowcount

    def count_active_for_account(self, account_id: int) -> int:
        now = self._clock()
        with translate_errors("count_active_for_account"), self.engine.connect() as conn:
            rows = conn.execute(
                select(sessions.c.id).where(and_(sessions.c.account_id == account_id, self._active_clause(now)))
            ).fetchall()
        return len(rows)

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    def create_invitation(
        self, email: str, role: str, ttl: timedelta, invited_by: int | None = None, conn: Connection | None = None
    ) -> InvitationToken:
        """Create a pending invitation, superseding any pending one for the same email.

        The raw token is only present on the returned object (raw_token).
        A partial unique index allows one pending row per email, so a
        concurrent re-invite that loses the race gets ConflictError.
        """
        now = self._clock()
        raw = generate_opaque_token()
        normalized = normalize_email(email)
        expires_at = now + ttl
        try:
            with translate_errors("create_invitation"), use_connection(self.engine, conn) as conn:
                superseded = conn.execute(
                    invitations.update()
                    .where(
                        and_(invitations.c.email == normalized, invitations.c.status == InvitationStatus.pending.value)
                    )
                    .values(status=InvitationStatus.revoked.value, consumed_at=to_iso(now))
                ).rowcount
                result = conn.execute(
                    invitations.insert().values(
                        email=normalized,
                        role=role,
                        token_hash=hash_token(raw),
                        status=InvitationStatus.pending.value,
                        invited_by=invited_by,
                        created_at=to_iso(now),
                        expires_at=to_iso(expires_at),
                    )
                )
                invitation_id = result.inserted_primary_key[0]
        except IntegrityError as exc:
            logger.warning("Concurrent invitation for the same email refused")
            raise ConflictError("Another invitation for this email was issued at the same time; retry.") from exc
        if superseded:
            logger.info("Superseded %d pending invitation(s) for a re-invited email", superseded)
        return InvitationToken(
            id=invitation_id,
            email=normalized,
            role=role,
            token_hash=hash_token(raw),
            status=InvitationStatus.pending,
            expires_at=expires_at,
            invited_by=invited_by,
            created_at=now,
            raw_token=raw,
        )

    def consume_invitation(self, raw_token: str, conn: Connection | None = None) -> InvitationToken:
        """Atomically move a pending, unexpired invitation to accepted.

        Raises InvalidOrExpiredToken if the token is unknown, already
        accepted, revoked, or past expiry.
        """
        now_iso = to_iso(self._clock())
        token_hash = hash_token(raw_token)
        with translate_errors("consume_invitation"), use_connection(self.engine, conn) as conn:
            result = conn.execute(
                invitations.update()
                .where(
                    and_(
                        invitations.c.token_hash == token_hash,
                        invitations.c.status == InvitationStatus.pending.value,
                        invitations.c.expires_at > now_iso,
                    )
                )
                .values(status=InvitationStatus.accepted.value, consumed_at=now_iso)
            )
            if result.rowcount == 0:
                raise InvalidOrExpiredToken()
            row = conn.execute(invitations.select().where(invitations.c.token_hash == token_hash)).fetchone()
        return _row_to_invitation(row)

    def set_invitation_account(self, invitation_id: int, account_id: int, conn: Connection | None = None) -> None:
        with translate_errors("set_invitation_account"), use_connection(self.engine, conn) as conn:
            conn.execute(
                invitations.update().where(invitations.c.id == invitation_id).values(accepted_account_id=account_id)
            )

    def revoke_invitation(self, invitation_id: int, conn: Connection | None = None) -> bool:
        """Revoke a still-pending invitation. False if it is gone or already terminal."""
        now_iso = to_iso(self._clock())
        with translate_errors("revoke_invitation"), use_connection(self.engine, conn) as conn:
            result = conn.execute(
                invitations.update()
                .where(
                    and_(invitations.c.id == invitation_id, invitations.c.status == InvitationStatus.pending.value)
                )
                .values(status=InvitationStatus.revoked.value, consumed_at=now_iso)
            )
        return result.rowcount > 0

    def revoke_pending_invitations(self, email: str) -> int:
        now_iso = to_iso(self._clock())
        with translate_errors("revoke_pending_invitations"), self.engine.connect() as conn:
            result = conn.execute(
                invitations.update()
                .where(
                    and_(
                        invitations.c.email == normalize_email(email),
                        invitations.c.status == InvitationStatus.pending.value,
                    )
                )
                .values(status=InvitationStatus.revoked.value, consumed_at=now_iso)
            )
            conn.commit()
        return result.rowcount

    def list_pending_invitations(self, limit: int = 50, offset: int = 0) -> tuple[list[InvitationToken], int]:
        """Pending, unexpired invitations, newest first, plus the total count."""
        live = and_(
            invitations.c.status == InvitationStatus.pending.value,
            invitations.c.expires_at > to_iso(self._clock()),
        )
        with translate_errors("list_pending_invitations"), self.engine.connect() as conn:
            rows = conn.execute(
                invitations.select()
                .where(live)
                .order_by(invitations.c.created_at.desc(), invitations.c.id.desc())
                .limit(limit)
                .offset(offset)
            ).fetchall()
            total = conn.execute(select(func.count()).select_from(invitations).where(live)).scalar() or 0
        return [_row_to_invitation(r) for r in rows], total

    def get_invitation(self, invitation_id: int) -> InvitationToken | None:
        with translate_errors("get_invitation"), self.engine.connect() as conn:
            row = conn.execute(invitations.select().where(invitations.c.id == invitation_id)).fetchone()
        return _row_to_invitation(row) if row is not None else None

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def create_reset_token(self, account_id: int, ttl: timedelta) -> PasswordResetToken:
        """Create a pending reset token. Earlier pending tokens for the account expire."""
        now = self._clock()
        raw = generate_opaque_token()
        expires_at = now + ttl
        with translate_errors("create_reset_token"), self.engine.begin() as conn:
            conn.execute(
                password_resets.update()
                .where(
                    and_(
                        password_resets.c.account_id == account_id,
                        password_resets.c.status == ResetTokenStatus.pending.value,
                    )
                )
                .values(status=ResetTokenStatus.expired.value)
            )
            result = conn.execute(
                password_resets.insert().values(
                    account_id=account_id,
                    token_hash=hash_token(raw),
                    status=ResetTokenStatus.pending.value,
                    created_at=to_iso(now),
                    expires_at=to_iso(expires_at),
                )
            )
            reset_id = result.inserted_primary_key[0]
        return PasswordResetToken(
            id=reset_id,
            account_id=account_id,
            token_hash=hash_token(raw),
            status=ResetTokenStatus.pending,
            expires_at=expires_at,
            created_at=now,
            raw_token=raw,
        )

    def consume_reset_token(self, raw_token: str, conn: Connection | None = None) -> PasswordResetToken:
        """Atomically move a pending, unexpired reset token to used. See consume_invitation()."""
        now_iso = to_iso(self._clock())
        token_hash = hash_token(raw_token)
        with translate_errors("consume_reset_token"), use_connection(self.engine, conn) as conn:
            result = conn.execute(
                password_resets.update()
                .where(
                    and_(
                        password_resets.c.token_hash == token_hash,
                        password_resets.c.status == ResetTokenStatus.pending.value,
                        password_resets.c.expires_at > now_iso,
                    )
                )
                .values(status=ResetTokenStatus.used.value, used_at=now_iso)
            )
            if result.rowcount == 0:
                raise InvalidOrExpiredToken()
            row = conn.execute(password_resets.select().where(password_resets.c.token_hash == token_hash)).fetchone()
        return _row_to_reset(row)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_expired(self) -> dict[str, int]:
        """Move past-expiry pending tokens to expired and revoke past-expiry sessions.

        Nothing is deleted. Consumption already refuses expired rows, so this
        only keeps stored status truthful for the console and the audit trail.
        """
        now_iso = to_iso(self._clock())
        with translate_errors("purge_expired"), self.engine.begin() as conn:
            inv = conn.execute(
                invitations.update()
                .where(
                    and_(
                        invitations.c.status == InvitationStatus.pending.value,
                        invitations.c.expires_at <= now_iso,
                    )
                )
                .values(status=InvitationStatus.expired.value)
            ).rowcount
            resets = conn.execute(
                password_resets.update()
                .where(
                    and_(
                        password_resets.c.status == ResetTokenStatus.pending.value,
                        password_resets.c.expires_at <= now_iso,
                    )
                )
                .values(status=ResetTokenStatus.expired.value)
            ).rowcount
            sess = conn.execute(
                sessions.update()
                .where(and_(sessions.c.revoked_at.is_(None), sessions.c.expires_at <= now_iso))
                .values(revoked_at=now_iso, revoked_reason="expired")
            ).rowcount
        counts = {"invitations": inv, "password_resets": resets, "sessions": sess}
        logger.info("Purged expired records: %s", counts)
        return counts


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_session(row) -> AdminSession:
    return AdminSession(
        id=row.id,
        account_id=row.account_id,
        token_hash=row.token_hash,
        refresh_token_hash=row.refresh_token_hash,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=from_iso(row.created_at),
        expires_at=from_iso(row.expires_at),
        last_used_at=from_iso(row.last_used_at),
        revoked_at=from_iso(row.revoked_at),
        revoked_reason=row.revoked_reason,
    )


def _row_to_invitation(row) -> InvitationToken:
    return InvitationToken(
        id=row.id,
        email=row.email,
        role=row.role,
        token_hash=row.token_hash,
        status=InvitationStatus(row.status),
        expires_at=from_iso(row.expires_at),
        invited_by=row.invited_by,
        accepted_account_id=row.accepted_account_id,
        created_at=from_iso(row.created_at),
        consumed_at=from_iso(row.consumed_at),
    )


def _row_to_reset(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        account_id=row.account_id,
        token_hash=row.token_hash,
        status=ResetTokenStatus(row.status),
        expires_at=from_iso(row.expires_at),
        created_at=from_iso(row.created_at),
        used_at=from_iso(row.used_at),
    )
