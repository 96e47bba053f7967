"""
auth/audit.py -- Append-only audit trail for security-relevant actions.

The writer exposes insert and read only. There is no update or delete path
anywhere in the codebase for admin_audit_logs.

A write either fully persists or raises AuditWriteError (a TransientError,
so HTTP 503). Whether that failure aborts the parent operation is the
orchestrator's decision: security-critical actions propagate it,
informational records log a warning and continue.

Every record is also mirrored to the "nestguard.audit" logger, so the log
sink has the trail even when the database write is what failed.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from sqlalchemy import and_, select
from sqlalchemy.engine import Connection, Engine

from auth.models import AuditRecord, Severity
from auth.store import audit_logs, translate_errors, use_connection
from core.clock import Clock, from_iso, to_iso, utcnow
from core.errors import AuditWriteError, TransientError

logger = logging.getLogger("nestguard.audit")

# Action names written by the orchestrator.
LOGIN = "admin_login"
LOGIN_FAILED = "admin_login_failed"
LOGIN_LOCKED = "admin_login_locked"
LOGOUT = "admin_logout"
TOKEN_REFRESHED = "admin_token_refreshed"
PASSWORD_CHANGED = "admin_password_changed"
PASSWORD_RESET_REQUESTED = "admin_password_reset_requested"
PASSWORD_RESET_COMPLETED = "admin_password_reset_completed"
INVITATION_SENT = "admin_invitation_sent"
INVITATION_ACCEPTED = "admin_invitation_accepted"
INVITATION_REVOKED = "admin_invitation_revoked"
ACCOUNT_STATUS_CHANGED = "admin_account_status_changed"
ACCOUNT_ROLE_CHANGED = "admin_account_role_changed"

_LOG_LEVELS = {
    Severity.debug: logging.DEBUG,
    Severity.info: logging.INFO,
    Severity.warning: logging.WARNING,
    Severity.error: logging.ERROR,
    Severity.critical: logging.CRITICAL,
}


class AuditLogWriter:
    def __init__(self, engine: Engine, clock: Clock = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    def record(
        self,
        actor_id: int | None,
        action: str,
        target: tuple[str, str | int] | None = None,
        severity: Severity = Severity.info,
        metadata: dict | None = None,
        source_ip: str | None = None,
        conn: Connection | None = None,
    ) -> AuditRecord:
        """Append one record. Raises AuditWriteError if it could not be persisted.

        target is an (entity_type, entity_id) pair, e.g. ("account", 42).
        metadata must be JSON-serializable and must never contain secrets.
        With ``conn`` the insert joins that transaction, so a failed write
        rolls back the change it describes.
        """
        target_type, target_id = (target[0], str(target[1])) if target else (None, None)
        record = AuditRecord(
            action=action,
            severity=severity,
            actor_id=actor_id,
            target_type=target_type,
            target_id=target_id,
            metadata=dict(metadata or {}),
            source_ip=source_ip,
            created_at=self._clock(),
        )
        logger.log(
            _LOG_LEVELS[severity],
            "audit action=%s actor=%s target=%s:%s ip=%s",
            action,
            actor_id,
            target_type,
            target_id,
            source_ip,
        )
        try:
            with translate_errors("audit_record"), use_connection(self.engine, conn) as conn:
                result = conn.execute(
                    audit_logs.insert().values(
                        actor_id=actor_id,
                        action=action,
                        target_type=target_type,
                        target_id=target_id,
                        severity=severity.value,
                        metadata=json.dumps(record.metadata, default=str, sort_keys=True),
                        source_ip=source_ip,
                        created_at=to_iso(record.created_at),
                    )
                )
                record.id = result.inserted_primary_key[0]
        except TransientError as exc:
            logger.error("Audit write failed for action=%s", action)
            raise AuditWriteError() from exc
        return record

    def list_records(
        self,
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
        """Newest first. Every given filter must match; since/until are inclusive."""
        conditions = []
        if actor_id is not None:
            conditions.append(audit_logs.c.actor_id == actor_id)
        if action is not None:
            conditions.append(audit_logs.c.action == action)
        if target_type is not None:
            conditions.append(audit_logs.c.target_type == target_type)
        if severity is not None:
            conditions.append(audit_logs.c.severity == Severity(severity).value)
        if since is not None:
            conditions.append(audit_logs.c.created_at >= to_iso(_as_utc(since)))
        if until is not None:
            conditions.append(audit_logs.c.created_at <= to_iso(_as_utc(until)))
        if source_ip is not None:
            conditions.append(audit_logs.c.source_ip == source_ip)
        stmt = select(audit_logs).order_by(audit_logs.c.id.desc()).limit(limit).offset(offset)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        with translate_errors("audit_list"), self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_record(r) for r in rows]


def _as_utc(value: datetime) -> datetime:
    """Query strings may carry naive datetimes; those are read as UTC."""
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _row_to_record(row) -> AuditRecord:
    return AuditRecord(
        id=row.id,
        actor_id=row.actor_id,
        action=row.action,
        target_type=row.target_type,
        target_id=row.target_id,
        severity=Severity(row.severity),
        metadata=json.loads(row.metadata or "{}"),
        source_ip=row.source_ip,
        created_at=from_iso(row.created_at),
    )
