"""
tests/test_sessions.py -- Integration tests for auth/sessions.py against real SQLite.

Covers:
  - find_active: live session found by hash; revoked / expired sessions not found
  - revoke_all_for_account with and without a spared session
  - refresh rotation is single use
  - invitations: consume once, expired, revoked, superseded by re-invite
  - pending invitation listing and the one-pending-per-email index
  - writes passed a connection commit or roll back with the caller
  - reset tokens: consume once, expired, earlier tokens expire on re-request
  - purge_expired marks expired rows
  - N concurrent consumers of one token: exactly one wins (file-backed DB)
  - N concurrent re-invites of one email leave one pending invitation
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import AdminAccount, InvitationStatus, ResetTokenStatus
from auth.sessions import SessionStore
from auth.store import AdminStore, invitations
from auth.tokens import hash_token
from core.clock import to_iso
from core.errors import ConflictError, InvalidOrExpiredToken
from tests.conftest import create_admin


@pytest.fixture
def sessions(components) -> SessionStore:
    return components.sessions


@pytest.fixture
def account_id(components) -> int:
    return create_admin(components, "owner@example.com")


class TestSessions:
    def test_create_then_find_active(self, sessions, account_id) -> None:
        created = sessions.create_session(account_id, hash_token("tok-1"), timedelta(hours=1), "10.0.0.1", "pytest")
        found = sessions.find_active(hash_token("tok-1"))
        assert found is not None
        assert found.id == created.id
        assert found.account_id == account_id
        assert found.ip_address == "10.0.0.1"

    def test_unknown_hash_is_none(self, sessions) -> None:
        assert sessions.find_active(hash_token("never-issued")) is None

    def test_revoked_session_is_not_active(self, sessions, account_id) -> None:
        s = sessions.create_session(account_id, hash_token("tok-2"), timedelta(hours=1))
        assert sessions.revoke(s.id) is True
        assert sessions.find_active(hash_token("tok-2")) is None
        assert sessions.revoke(s.id) is False
        assert sessions.get_session(s.id).revoked_reason == "logout"

    def test_expired_session_is_not_active(self, sessions, account_id, clock) -> None:
        sessions.create_session(account_id, hash_token("tok-3"), timedelta(minutes=5))
        clock.advance(minutes=5)
        assert sessions.find_active(hash_token("tok-3")) is None

    def test_revoke_all_spares_the_current_session(self, sessions, account_id) -> None:
        keep = sessions.create_session(account_id, hash_token("keep"), timedelta(hours=1))
        sessions.create_session(account_id, hash_token("drop-1"), timedelta(hours=1))
        sessions.create_session(account_id, hash_token("drop-2"), timedelta(hours=1))
        assert sessions.revoke_all_for_account(account_id, except_session_id=keep.id) == 2
        assert sessions.find_active(hash_token("keep")) is not None
        assert sessions.find_active(hash_token("drop-1")) is None
        assert sessions.revoke_all_for_account(account_id) == 1
        assert sessions.count_active_for_account(account_id) == 0

    def test_refresh_rotation_is_single_use(self, sessions, account_id, clock) -> None:
        s = sessions.create_session(
            account_id, hash_token("a1"), timedelta(days=7), refresh_token_hash=hash_token("r1")
        )
        expires = clock() + timedelta(days=7)
        assert sessions.rotate_refresh(s.id, hash_token("r1"), hash_token("a2"), hash_token("r2"), expires) is True
        assert sessions.rotate_refresh(s.id, hash_token("r1"), hash_token("a3"), hash_token("r3"), expires) is False
        assert sessions.find_active(hash_token("a1")) is None
        assert sessions.find_active(hash_token("a2")).id == s.id
        assert sessions.find_active_by_refresh(hash_token("r2")).id == s.id


class TestInvitations:
    def test_consume_once(self, sessions) -> None:
        inv = sessions.create_invitation("New@Example.com", "support", timedelta(days=7), invited_by=1)
        assert inv.email == "new@example.com"
        assert inv.token_hash == hash_token(inv.raw_token)

        consumed = sessions.consume_invitation(inv.raw_token)
        assert consumed.id == inv.id
        assert consumed.status is InvitationStatus.accepted
        assert consumed.raw_token is None

        with pytest.raises(InvalidOrExpiredToken):
            sessions.consume_invitation(inv.raw_token)

    def test_unknown_token(self, sessions) -> None:
        with pytest.raises(InvalidOrExpiredToken):
            sessions.consume_invitation("no-such-token")

    def test_expired_invitation_cannot_be_consumed(self, sessions, clock) -> None:
        inv = sessions.create_invitation("late@example.com", "support", timedelta(days=7))
        clock.advance(days=7)
        with pytest.raises(InvalidOrExpiredToken):
            sessions.consume_invitation(inv.raw_token)

    def test_revoked_invitation_cannot_be_consumed(self, sessions) -> None:
        inv = sessions.create_invitation("gone@example.com", "support", timedelta(days=7))
        assert sessions.revoke_invitation(inv.id) is True
        assert sessions.revoke_invitation(inv.id) is False
        with pytest.raises(InvalidOrExpiredToken):
            sessions.consume_invitation(inv.raw_token)

    def test_reinvite_supersedes_pending(self, sessions) -> None:
        first = sessions.create_invitation("twice@example.com", "support", timedelta(days=7))
        second = sessions.create_invitation("TWICE@example.com", "moderator", timedelta(days=7))
        assert sessions.get_invitation(first.id).status is InvitationStatus.revoked
        assert sessions.get_invitation(second.id).status is InvitationStatus.pending
        with pytest.raises(InvalidOrExpiredToken):
            sessions.consume_invitation(first.raw_token)
        assert sessions.consume_invitation(second.raw_token).role == "moderator"

    def test_revoke_pending_invitations(self, sessions) -> None:
        sessions.create_invitation("bulk@example.com", "support", timedelta(days=7))
        assert sessions.revoke_pending_invitations("Bulk@Example.com") == 1
        assert sessions.revoke_pending_invitations("bulk@example.com") == 0

    def test_list_pending_skips_terminal_and_expired(self, sessions, clock) -> None:
        soon = sessions.create_invitation("soon@example.com", "support", timedelta(hours=1))
        keep = sessions.create_invitation("keep@example.com", "support", timedelta(days=7))
        gone = sessions.create_invitation("gone@example.com", "support", timedelta(days=7))
        sessions.revoke_invitation(gone.id)

        items, total = sessions.list_pending_invitations()
        assert total == 2
        assert {i.id for i in items} == {soon.id, keep.id}
        assert all(i.raw_token is None for i in items)

        clock.advance(hours=2)
        items, total = sessions.list_pending_invitations()
        assert total == 1
        assert [i.id for i in items] == [keep.id]

    def test_list_pending_pages_newest_first(self, sessions) -> None:
        created = [sessions.create_invitation(f"p{n}@example.com", "support", timedelta(days=7)) for n in range(3)]
        items, total = sessions.list_pending_invitations(limit=2, offset=1)
        assert total == 3
        assert [i.id for i in items] == [created[1].id, created[0].id]

    def test_schema_allows_one_pending_row_per_email(self, components, sessions, clock) -> None:
        sessions.create_invitation("dup@example.com", "support", timedelta(days=7))
        row = {
            "email": "dup@example.com",
            "role": "support",
            "token_hash": "f" * 64,
            "status": InvitationStatus.pending.value,
            "created_at": to_iso(clock()),
            "expires_at": to_iso(clock() + timedelta(days=7)),
        }
        with pytest.raises(IntegrityError):
            with components.admin_store.engine.begin() as conn:
                conn.execute(invitations.insert().values(**row))
        with components.admin_store.engine.begin() as conn:
            conn.execute(invitations.insert().values(**{**row, "status": InvitationStatus.revoked.value}))

    def test_insert_conflict_becomes_conflict_error(self, sessions, monkeypatch) -> None:
        monkeypatch.setattr("auth.sessions.generate_opaque_token", lambda: "same-token")
        sessions.create_invitation("one@example.com", "support", timedelta(days=7))
        with pytest.raises(ConflictError):
            sessions.create_invitation("two@example.com", "support", timedelta(days=7))
        items, total = sessions.list_pending_invitations()
        assert total == 1
        assert items[0].email == "one@example.com"


class TestResetTokens:
    def test_consume_once(self, sessions, account_id) -> None:
        reset = sessions.create_reset_token(account_id, timedelta(hours=1))
        used = sessions.consume_reset_token(reset.raw_token)
        assert used.account_id == account_id
        assert used.status is ResetTokenStatus.used
        with pytest.raises(InvalidOrExpiredToken):
            sessions.consume_reset_token(reset.raw_token)

    def test_expired(self, sessions, account_id, clock) -> None:
        reset = sessions.create_reset_token(account_id, timedelta(hours=1))
        clock.advance(hours=1, seconds=1)
        with pytest.raises(InvalidOrExpiredToken):
            sessions.consume_reset_token(reset.raw_token)

    def test_new_request_expires_older_token(self, sessions, account_id) -> None:
        old = sessions.create_reset_token(account_id, timedelta(hours=1))
        new = sessions.create_reset_token(account_id, timedelta(hours=1))
        with pytest.raises(InvalidOrExpiredToken):
            sessions.consume_reset_token(old.raw_token)
        assert sessions.consume_reset_token(new.raw_token).id == new.id


def test_purge_expired_marks_rows(sessions, account_id, clock) -> None:
    inv = sessions.create_invitation("stale@example.com", "support", timedelta(days=1))
    sessions.create_reset_token(account_id, timedelta(hours=1))
    s = sessions.create_session(account_id, hash_token("old"), timedelta(hours=1))
    clock.advance(days=2)

    counts = sessions.purge_expired()

    assert counts == {"invitations": 1, "password_resets": 1, "sessions": 1}
    assert sessions.get_invitation(inv.id).status is InvitationStatus.expired
    assert sessions.get_session(s.id).revoked_reason == "expired"
    assert sessions.purge_expired() == {"invitations": 0, "password_resets": 0, "sessions": 0}


# ---------------------------------------------------------------------------
# Concurrency
#
# A file-backed database is used here: shared-cache in-memory SQLite reports
# table-lock conflicts immediately instead of waiting on the busy timeout.
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("kind", ["invitation", "reset"])
def test_concurrent_consumption_has_exactly_one_winner(tmp_path, clock, kind: str) -> None:
    store = AdminStore(f"sqlite:///{tmp_path / 'race.db'}", timeout_seconds=10.0, clock=clock)
    sessions = SessionStore(store.engine, clock)
    if kind == "invitation":
        raw = sessions.create_invitation("race@example.com", "support", timedelta(days=7)).raw_token
        consume = sessions.consume_invitation
    else:
        store.ensure_role("support")
        account_id = store.create_account(AdminAccount(email="race@example.com", role="support", password_hash="x"))
        raw = sessions.create_reset_token(account_id, timedelta(hours=1)).raw_token
        consume = sessions.consume_reset_token

    attempts = 8
    barrier = threading.Barrier(attempts)

    def attempt() -> str:
        barrier.wait()
        try:
            consume(raw)
        except InvalidOrExpiredToken:
            return "rejected"
        return "accepted"

    with ThreadPoolExecutor(max_workers=attempts) as pool:
        outcomes = list(pool.map(lambda _: attempt(), range(attempts)))

    store.close()
    assert outcomes.count("accepted") == 1
    assert outcomes.count("rejected") == attempts - 1


def test_concurrent_reinvites_leave_one_pending(tmp_path, clock) -> None:
    store = AdminStore(f"sqlite:///{tmp_path / 'reinvite.db'}", timeout_seconds=10.0, clock=clock)
    sessions = SessionStore(store.engine, clock)
    attempts = 6
    barrier = threading.Barrier(attempts)

    def attempt() -> str:
        barrier.wait()
        try:
            sessions.create_invitation("race@example.com", "support", timedelta(days=7))
        except ConflictError:
            return "conflict"
        return "created"

    with ThreadPoolExecutor(max_workers=attempts) as pool:
        outcomes = list(pool.map(lambda _: attempt(), range(attempts)))

    _, total = sessions.list_pending_invitations()
    store.close()
    assert set(outcomes) <= {"created", "conflict"}
    assert "created" in outcomes
    assert total == 1


# ---------------------------------------------------------------------------
# Joined transactions
# ---------------------------------------------------------------------------


def test_writes_on_a_caller_connection_roll_back_with_it(components, sessions, account_id) -> None:
    reset = sessions.create_reset_token(account_id, timedelta(hours=1))
    live = sessions.create_session(account_id, hash_token("joined"), timedelta(hours=1))

    with pytest.raises(RuntimeError):
        with components.admin_store.transaction("joined") as conn:
            sessions.consume_reset_token(reset.raw_token, conn=conn)
            assert sessions.revoke(live.id, conn=conn) is True
            raise RuntimeError("abort")

    assert sessions.find_active(hash_token("joined")) is not None
    assert sessions.consume_reset_token(reset.raw_token).id == reset.id


def test_writes_on_a_caller_connection_commit_with_it(components, sessions, account_id) -> None:
    live = sessions.create_session(account_id, hash_token("joined"), timedelta(hours=1))
    with components.admin_store.transaction("joined") as conn:
        sessions.revoke_all_for_account(account_id, reason="joined", conn=conn)
        components.audit.record(account_id, "joined_test", ("session", live.id), conn=conn)
    assert sessions.get_session(live.id).revoked_reason == "joined"
    assert [r.action for r in components.audit.list_records(action="joined_test")] == ["joined_test"]
