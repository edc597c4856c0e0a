"""
Audit Trail: append-only ledger of credential-affecting events.

The credential store and access control write here on every state
transition and every access decision; ``log()`` is also public for
out-of-band actions. Entries are never updated, and only ``cleanup_old()``
removes them.

Security Note:
    Entries hold ids, actions and error messages. Never put credential
    values into ``metadata`` or ``error_message``.
"""
import sqlite3
import logging
from typing import Any, Optional, Union
from datetime import datetime, timedelta

import orjson

from ..models import (
    AuditAction,
    AuditEntry,
    AuditSummary,
    EntityType,
)
from .crypto import audit_id
from .storage import Connection, Database, to_timestamp, utcnow

logger = logging.getLogger("navigator.credentials")

DEFAULT_QUERY_LIMIT = 100

_INSERT_ENTRY = """
INSERT INTO credential_audit_log (
    id, credential_id, entity_id, entity_type, user_id,
    action, success, timestamp, ip_address, error_message, metadata
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_COLUMNS = """
SELECT id, credential_id, entity_id, entity_type, user_id,
       action, success, timestamp, ip_address, error_message, metadata
FROM credential_audit_log
"""

_DELETE_OLDER_THAN = """
DELETE FROM credential_audit_log WHERE timestamp < ?
"""


def _row_to_entry(row: Any) -> AuditEntry:
    data = dict(row)
    data["success"] = bool(data["success"])
    data["metadata"] = orjson.loads(data["metadata"]) if data["metadata"] else {}
    return AuditEntry(**data)


def _enum_value(value: Union[str, Any]) -> str:
    return getattr(value, "value", value)


class AuditTrail:
    """Writes and queries the credential audit log."""

    def __init__(self, db: Database, retention_days: int = 90):
        self._db = db
        self._retention_days = retention_days

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    async def log(
        self,
        credential_id: str,
        entity_id: str,
        entity_type: Union[EntityType, str],
        action: Union[AuditAction, str],
        success: bool,
        *,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        error_message: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        conn: Optional[Connection] = None,
    ) -> Optional[str]:
        """Append one entry to the trail.

        When ``conn`` is given the entry joins the caller's transaction.
        A failed write is logged and never raised, so it cannot mask the
        outcome of the operation being audited.

        Returns:
            The new entry id, or None if the write failed.
        """
        entry_id = audit_id()
        try:
            args = (
                entry_id,
                credential_id,
                entity_id,
                EntityType(entity_type).value,
                user_id,
                AuditAction(action).value,
                1 if success else 0,
                to_timestamp(utcnow()),
                ip_address,
                error_message,
                orjson.dumps(metadata).decode("utf-8") if metadata else None,
            )
            if conn is not None:
                await conn.execute(_INSERT_ENTRY, *args)
            else:
                async with self._db.acquire() as own:
                    await own.execute(_INSERT_ENTRY, *args)
        except (ValueError, TypeError, sqlite3.Error) as err:
            logger.error(
                "Failed to write audit entry action=%s credential=%s: %s",
                _enum_value(action), credential_id, err,
            )
            return None
        logger.debug(
            "Audit %s credential=%s entity=%s success=%s",
            _enum_value(action), credential_id, entity_id, success,
        )
        return entry_id

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _query(
        self,
        where: list[str],
        params: list[Any],
        *,
        limit: Optional[int] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        action: Optional[Union[AuditAction, str]] = None,
        entity_id: Optional[str] = None,
        user_id: Optional[str] = None,
        success_only: bool = False,
    ) -> list[AuditEntry]:
        where = list(where)
        params = list(params)
        if since is not None:
            where.append("timestamp >= ?")
            params.append(to_timestamp(since))
        if until is not None:
            where.append("timestamp <= ?")
            params.append(to_timestamp(until))
        if action is not None:
            where.append("action = ?")
            params.append(AuditAction(action).value)
        if entity_id is not None:
            where.append("entity_id = ?")
            params.append(entity_id)
        if user_id is not None:
            where.append("user_id = ?")
            params.append(user_id)
        if success_only:
            where.append("success = 1")
        sql = _COLUMNS
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY timestamp DESC, rowid DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        async with self._db.acquire() as conn:
            rows = await conn.fetch(sql, *params)
        return [_row_to_entry(row) for row in rows]

    async def get_trail(self, credential_id: str, **options) -> list[AuditEntry]:
        """Entries for one credential, most recent first.

        Options: limit, since, until, action, entity_id, user_id, success_only.
        Works for hard-deleted credentials too.
        """
        return await self._query(["credential_id = ?"], [credential_id], **options)

    async def get_trail_for_entity(
        self,
        entity_id: str,
        entity_type: Union[EntityType, str],
        **options
    ) -> list[AuditEntry]:
        return await self._query(
            ["entity_id = ?", "entity_type = ?"],
            [entity_id, EntityType(entity_type).value],
            **options
        )

    async def get_trail_for_user(self, user_id: str, **options) -> list[AuditEntry]:
        return await self._query(["user_id = ?"], [user_id], **options)

    async def get_recent(
        self,
        limit: int = DEFAULT_QUERY_LIMIT,
        **options
    ) -> list[AuditEntry]:
        return await self._query([], [], limit=limit, **options)

    async def get_failed_attempts(
        self,
        limit: int = DEFAULT_QUERY_LIMIT,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[AuditEntry]:
        """Denials and errors only: the main security-monitoring query."""
        return await self._query(
            ["success = 0"], [], limit=limit, since=since, until=until
        )

    async def get_summary(self) -> AuditSummary:
        """Aggregate counts over the whole trail."""
        async with self._db.acquire() as conn:
            total = await conn.fetchval(
                "SELECT COUNT(*) FROM credential_audit_log"
            )
            by_credential = await conn.fetch(
                "SELECT credential_id, COUNT(*) AS n FROM credential_audit_log "
                "GROUP BY credential_id ORDER BY n DESC"
            )
            by_entity = await conn.fetch(
                "SELECT entity_id, COUNT(*) AS n FROM credential_audit_log "
                "GROUP BY entity_id ORDER BY n DESC"
            )
            by_action = await conn.fetch(
                "SELECT action, COUNT(*) AS n FROM credential_audit_log "
                "GROUP BY action ORDER BY n DESC"
            )
            failed = await conn.fetchval(
                "SELECT COUNT(*) FROM credential_audit_log WHERE success = 0"
            )
            last = await conn.fetchval(
                "SELECT MAX(timestamp) FROM credential_audit_log"
            )
        return AuditSummary(
            total_accesses=total,
            by_credential={row[0]: row[1] for row in by_credential},
            by_entity={row[0]: row[1] for row in by_entity},
            by_action={row[0]: row[1] for row in by_action},
            failed_accesses=failed,
            last_access_at=last,
        )

    async def count_entries(
        self,
        *,
        credential_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        action: Optional[Union[AuditAction, str]] = None,
        success: Optional[bool] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        where: list[str] = []
        params: list[Any] = []
        if credential_id is not None:
            where.append("credential_id = ?")
            params.append(credential_id)
        if entity_id is not None:
            where.append("entity_id = ?")
            params.append(entity_id)
        if action is not None:
            where.append("action = ?")
            params.append(AuditAction(action).value)
        if success is not None:
            where.append("success = ?")
            params.append(1 if success else 0)
        if since is not None:
            where.append("timestamp >= ?")
            params.append(to_timestamp(since))
        if until is not None:
            where.append("timestamp <= ?")
            params.append(to_timestamp(until))
        sql = "SELECT COUNT(*) FROM credential_audit_log"
        if where:
            sql += " WHERE " + " AND ".join(where)
        async with self._db.acquire() as conn:
            return await conn.fetchval(sql, *params)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def cleanup_old(self, days_old: Optional[int] = None) -> int:
        """Delete entries older than ``days_old`` days (default: retention).

        Returns:
            Number of entries removed.
        """
        days = self._retention_days if days_old is None else days_old
        if days < 0:
            raise ValueError("days_old cannot be negative")
        cutoff = utcnow() - timedelta(days=days)
        async with self._db.acquire() as conn:
            async with conn.transaction():
                removed = await conn.execute(_DELETE_OLDER_THAN, to_timestamp(cutoff))
        logger.info(
            "Audit retention sweep removed %d entries older than %d days",
            removed, days,
        )
        return removed
