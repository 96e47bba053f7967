"""
auth/store.py -- SQLAlchemy Core schema and the account/catalog repository.

Pattern: Repository + Data Mapper. AdminStore is the repository for
accounts and the role/permission catalog; _row_to_* are the mappers. The
session/token tables defined here are used by auth/sessions.py and the audit
table by auth/audit.py. All three share one Engine (AdminStore.engine), so
a deployment points one DATABASE_URL at one database.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Emails are lower-cased before every write and every lookup; the UNIQUE
  index on the normalized column gives case-insensitive uniqueness without
  relying on a database-specific collation.

  Failed-login bookkeeping is a single conditional UPDATE (window reset or
  increment decided in SQL, not in Python), so two concurrent wrong-password
  attempts can never both read the same count and lose an increment.

Timestamps are fixed-width ISO 8601 strings (core.clock.to_iso), so string
comparison in WHERE clauses is chronological comparison.

Failures:
  OperationalError / DBAPIError (locked database, timeout, dropped
  connection) become TransientError (503). IntegrityError is left alone:
  callers translate it into the domain error it means (usually ConflictError).
  Read-only lookups are retried once; writes are not.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    case,
    create_engine,
    event,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.models import AccountStatus, AdminAccount, AdminRole
from core.clock import Clock, from_iso, to_iso, utcnow
from core.errors import TransientError
from core.retry import retry_once

logger = logging.getLogger("nestguard.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'nestguard.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

roles = Table(
    "admin_roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(64), nullable=False, unique=True),
    Column("description", Text, nullable=False, server_default=""),
)

permissions = Table(
    "admin_permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(128), nullable=False, unique=True),
    Column("description", Text, nullable=False, server_default=""),
)

role_permissions = Table(
    "admin_role_permissions",
    metadata,
    Column("role_id", Integer, ForeignKey("admin_roles.id"), primary_key=True),
    Column("permission_id", Integer, ForeignKey("admin_permissions.id"), primary_key=True),
)

accounts = Table(
    "admin_accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),  # lower-cased
    Column("password_hash", Text, nullable=False),
    Column("role", String(64), nullable=False),
    Column("status", String(16), nullable=False, server_default=AccountStatus.pending.value),
    Column("failed_login_count", Integer, nullable=False, server_default="0"),
    Column("failed_window_started_at", String(32)),
    Column("locked_until", String(32)),
    Column("last_login_at", String(32)),
    Column("login_count", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

sessions = Table(
    "admin_sessions",
    metadata,
    Column("id", String(36), primary_key=True),  # uuid4
    Column("account_id", Integer, ForeignKey("admin_accounts.id"), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("refresh_token_hash", String(64), unique=True),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("last_used_at", String(32)),
    Column("revoked_at", String(32)),
    Column("revoked_reason", String(64)),
)
Index("ix_admin_sessions_account", sessions.c.account_id)

invitations = Table(
    "admin_invitations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False),  # lower-cased
    Column("role", String(64), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("status", String(16), nullable=False),
    Column("invited_by", Integer),
    Column("accepted_account_id", Integer),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("consumed_at", String(32)),
)
Index("ix_admin_invitations_email_status", invitations.c.email, invitations.c.status)
# At most one pending invitation per email.
Index(
    "ux_admin_invitations_pending_email",
    invitations.c.email,
    unique=True,
    sqlite_where=invitations.c.status == "pending",
    postgresql_where=invitations.c.status == "pending",
)

password_resets = Table(
    "admin_password_resets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, ForeignKey("admin_accounts.id"), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("status", String(16), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("used_at", String(32)),
)

audit_logs = Table(
    "admin_audit_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("actor_id", Integer),  # NULL for system actions
    Column("action", String(64), nullable=False),
    Column("target_type", String(32)),
    Column("target_id", String(64)),
    Column("severity", String(16), nullable=False),
    Column("metadata", Text, nullable=False, server_default="{}"),  # JSON
    Column("source_ip", String(64)),
    Column("created_at", String(32), nullable=False),
)
Index("ix_admin_audit_logs_actor", audit_logs.c.actor_id)
Index("ix_admin_audit_logs_created", audit_logs.c.created_at)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. In-memory databases ignore it.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str = _DEFAULT_DB_URL, timeout_seconds: float = 5.0) -> Engine:
    """Build the shared Engine with the store deadline applied.

    SQLite: the driver's busy timeout bounds how long a writer waits for the
    file lock. Other databases: pool_timeout bounds the wait for a pooled
    connection. Either way a stuck call ends in a TransientError, not a hang.
    """
    if db_url.startswith("sqlite"):
        engine = create_engine(db_url, connect_args={"check_same_thread": False, "timeout": timeout_seconds})
        event.listen(engine, "connect", _set_wal_mode)
    else:
        engine = create_engine(db_url, pool_timeout=timeout_seconds, pool_pre_ping=True)
    metadata.create_all(engine)
    return engine


@contextmanager
def translate_errors(operation: str) -> Iterator[None]:
    """Map driver-level failures to TransientError; let IntegrityError through."""
    try:
        yield
    except IntegrityError:
        raise
    except (OperationalError, DBAPIError, PoolTimeoutError) as exc:
        logger.warning("Store operation %s failed: %s", operation, exc.__class__.__name__)
        raise TransientError() from exc


@contextmanager
def use_connection(engine: Engine, conn: Connection | None = None) -> Iterator[Connection]:
    """Yield the caller's open connection, or begin (and commit) a new one.

    Writes that take a ``conn`` join the caller's transaction and leave the
    commit or rollback to it, so several writes and their audit record land
    together or not at all.
    """
    if conn is not None:
        yield conn
        return
    with engine.begin() as own:
        yield own


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AdminStore:
    """Repository for AdminAccount and the role/permission catalog.

    Usage:
        store = AdminStore(db_url, timeout_seconds=5.0)
        store.seed_catalog({"support": ["audit.read"]})
        account_id = store.create_account(AdminAccount(email=..., role="support", password_hash=...))
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, timeout_seconds: float = 5.0, clock: Clock = utcnow) -> None:
        self.engine: Engine = create_store_engine(db_url, timeout_seconds)
        self._clock = clock

    def ping(self) -> bool:
        """Liveness check for the health endpoint."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except (OperationalError, DBAPIError):
            logger.exception("Database ping failed")
            return False
        return True

    @contextmanager
    def transaction(self, operation: str) -> Iterator[Connection]:
        """One unit of work across accounts, sessions, tokens and audit.

        Commits when the block exits cleanly and rolls back on any exception,
        including an AuditWriteError raised by the audit insert.
        """
        with translate_errors(operation), self.engine.begin() as conn:
            yield conn

    # ------------------------------------------------------------------
    # Catalog (roles are administered out of band; the core mostly reads)
    # ------------------------------------------------------------------

    def ensure_role(self, name: str, description: str = "") -> int:
        """Return the id of role `name`, creating it if absent."""
        with translate_errors("ensure_role"), self.engine.begin() as conn:
            row = conn.execute(select(roles.c.id).where(roles.c.name == name)).fetchone()
            if row is not None:
                return row.id
            result = conn.execute(roles.insert().values(name=name, description=description))
            return result.inserted_primary_key[0]

    def ensure_permission(self, name: str, description: str = "") -> int:
        with translate_errors("ensure_permission"), self.engine.begin() as conn:
            row = conn.execute(select(permissions.c.id).where(permissions.c.name == name)).fetchone()
            if row is not None:
                return row.id
            result = conn.execute(permissions.insert().values(name=name, description=description))
            return result.inserted_primary_key[0]

    def grant_permission(self, role: str, permission: str) -> bool:
        """Attach permission to role (both created if missing). False if already granted."""
        role_id = self.ensure_role(role)
        permission_id = self.ensure_permission(permission)
        with translate_errors("grant_permission"), self.engine.begin() as conn:
            exists = conn.execute(
                select(role_permissions.c.role_id).where(
                    and_(role_permissions.c.role_id == role_id, role_permissions.c.permission_id == permission_id)
                )
            ).fetchone()
            if exists is not None:
                return False
            conn.execute(role_permissions.insert().values(role_id=role_id, permission_id=permission_id))
        logger.info("Granted %s to role %s", permission, role)
        return True

    def revoke_permission(self, role: str, permission: str) -> bool:
        role_ids = select(roles.c.id).where(roles.c.name == role).scalar_subquery()
        permission_ids = select(permissions.c.id).where(permissions.c.name == permission).scalar_subquery()
        with translate_errors("revoke_permission"), self.engine.begin() as conn:
            result = conn.execute(
                role_permissions.delete().where(
                    and_(role_permissions.c.role_id == role_ids, role_permissions.c.permission_id == permission_ids)
                )
            )
        return result.rowcount > 0

    def seed_catalog(self, catalog: Mapping[str, Iterable[str]]) -> int:
        """Idempotently create roles and grant their permissions. Returns new grants."""
        granted = 0
        for role, perms in catalog.items():
            self.ensure_role(role)
            for perm in perms:
                if self.grant_permission(role, perm):
                    granted += 1
        return granted

    @retry_once()
    def permissions_for_role(self, role: str) -> frozenset[str]:
        """Permission names held by role. Unknown role -> empty set, never an error."""
        stmt = (
            select(permissions.c.name)
            .select_from(
                roles.join(role_permissions, role_permissions.c.role_id == roles.c.id).join(
                    permissions, permissions.c.id == role_permissions.c.permission_id
                )
            )
            .where(roles.c.name == role)
        )
        with translate_errors("permissions_for_role"), self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return frozenset(r.name for r in rows)

    @retry_once()
    def role_exists(self, role: str) -> bool:
        with translate_errors("role_exists"), self.engine.connect() as conn:
            row = conn.execute(select(roles.c.id).where(roles.c.name == role)).fetchone()
        return row is not None

    def list_roles(self) -> list[AdminRole]:
        with translate_errors("list_roles"), self.engine.connect() as conn:
            rows = conn.execute(roles.select().order_by(roles.c.name)).fetchall()
        return [
            AdminRole(id=r.id, name=r.name, description=r.description, permissions=self.permissions_for_role(r.name))
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, account: AdminAccount, conn: Connection | None = None) -> int:
        """Insert an account and return its id.

        Raises sqlalchemy.exc.IntegrityError if the (normalized) email already
        exists. Callers translate that into ConflictError.
        """
        now = to_iso(self._clock())
        with translate_errors("create_account"), use_connection(self.engine, conn) as conn:
            result = conn.execute(
                accounts.insert().values(
                    email=normalize_email(account.email),
                    password_hash=account.password_hash,
                    role=account.role,
                    status=account.status.value,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    @retry_once()
    def get_account_by_email(self, email: str) -> AdminAccount | None:
        """Case-insensitive lookup. Returns None if not found."""
        with translate_errors("get_account_by_email"), self.engine.connect() as conn:
            row = conn.execute(accounts.select().where(accounts.c.email == normalize_email(email))).fetchone()
        return _row_to_account(row) if row is not None else None

    @retry_once()
    def get_account_by_id(self, account_id: int) -> AdminAccount | None:
        with translate_errors("get_account_by_id"), self.engine.connect() as conn:
            row = conn.execute(accounts.select().where(accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_accounts(self) -> list[AdminAccount]:
        with translate_errors("list_accounts"), self.engine.connect() as conn:
            rows = conn.execute(accounts.select().order_by(accounts.c.email)).fetchall()
        return [_row_to_account(r) for r in rows]

    def record_failed_login(
        self, account_id: int, threshold: int, window_seconds: int, lock_seconds: int
    ) -> tuple[int, bool]:
        """Count one failed login atomically. Returns (count_in_window, locked_now).

        The increment and the window reset happen in one UPDATE: if the
        current window started before now - window_seconds (or never), the
        count restarts at 1, otherwise it grows by 1. When the count reaches
        the threshold the account is locked for lock_seconds and the counter
        is cleared, so the next window after the lock starts fresh.
        """
        now = self._clock()
        now_iso = to_iso(now)
        cutoff = to_iso(now - timedelta(seconds=window_seconds))
        window_stale = or_(accounts.c.failed_window_started_at.is_(None), accounts.c.failed_window_started_at < cutoff)
        with translate_errors("record_failed_login"), self.engine.begin() as conn:
            conn.execute(
                accounts.update()
                .where(accounts.c.id == account_id)
                .values(
                    failed_login_count=case((window_stale, 1), else_=accounts.c.failed_login_count + 1),
                    failed_window_started_at=case((window_stale, now_iso), else_=accounts.c.failed_window_started_at),
                    updated_at=now_iso,
                )
            )
            count = conn.execute(select(accounts.c.failed_login_count).where(accounts.c.id == account_id)).scalar()
            count = count or 0
            if count < threshold:
                return count, False
            conn.execute(
                accounts.update()
                .where(accounts.c.id == account_id)
                .values(
                    locked_until=to_iso(now + timedelta(seconds=lock_seconds)),
                    failed_login_count=0,
                    failed_window_started_at=None,
                )
            )
        logger.warning("Account %s locked after %d failed logins", account_id, count)
        return count, True

    def record_successful_login(self, account_id: int, conn: Connection | None = None) -> None:
        """Reset lockout bookkeeping and stamp last_login_at."""
        now_iso = to_iso(self._clock())
        with translate_errors("record_successful_login"), use_connection(self.engine, conn) as conn:
            conn.execute(
                accounts.update()
                .where(accounts.c.id == account_id)
                .values(
                    failed_login_count=0,
                    failed_window_started_at=None,
                    locked_until=None,
                    last_login_at=now_iso,
                    login_count=accounts.c.login_count + 1,
                    updated_at=now_iso,
                )
            )

    def update_password(self, account_id: int, password_hash: str, conn: Connection | None = None) -> bool:
        """Store a new hash. Also clears any lockout: the owner just proved control."""
        now_iso = to_iso(self._clock())
        with translate_errors("update_password"), use_connection(self.engine, conn) as conn:
            result = conn.execute(
                accounts.update()
                .where(accounts.c.id == account_id)
                .values(
                    password_hash=password_hash,
                    failed_login_count=0,
                    failed_window_started_at=None,
                    locked_until=None,
                    updated_at=now_iso,
                )
            )
        return result.rowcount > 0

    def update_status(
        self, account_id: int, expected: AccountStatus, new: AccountStatus, conn: Connection | None = None
    ) -> bool:
        """Compare-and-set the status. False if the row is missing or was changed concurrently."""
        with translate_errors("update_status"), use_connection(self.engine, conn) as conn:
            result = conn.execute(
                accounts.update()
                .where(and_(accounts.c.id == account_id, accounts.c.status == expected.value))
                .values(status=new.value, updated_at=to_iso(self._clock()))
            )
        return result.rowcount > 0

    def update_role(self, account_id: int, role: str, conn: Connection | None = None) -> bool:
        with translate_errors("update_role"), use_connection(self.engine, conn) as conn:
            result = conn.execute(
                accounts.update()
                .where(accounts.c.id == account_id)
                .values(role=role, updated_at=to_iso(self._clock()))
            )
        return result.rowcount > 0

    def count_accounts(self) -> int:
        with translate_errors("count_accounts"), self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(accounts)).scalar() or 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> AdminAccount:
    return AdminAccount(
        id=row.id,
        email=row.email,
        role=row.role,
        password_hash=row.password_hash,
        status=AccountStatus(row.status),
        failed_login_count=row.failed_login_count,
        failed_window_started_at=from_iso(row.failed_window_started_at),
        locked_until=from_iso(row.locked_until),
        last_login_at=from_iso(row.last_login_at),
        login_count=row.login_count,
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )
