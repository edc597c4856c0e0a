"""
Vault Storage: local relational store for credentials, policies and audit.

The vault components talk to the database through a small pool interface:

    async with db.acquire() as conn:
        async with conn.transaction():
            await conn.execute(SQL, arg1, arg2)
        row = await conn.fetchrow(SQL, arg1)

Backed by SQLite; uniqueness, enumerations and cascades are enforced by the
schema, and write serialization is left to SQLite's own locking.
"""
import sqlite3
import logging
from typing import Any, Optional
from contextlib import asynccontextmanager
from datetime import datetime, timezone

logger = logging.getLogger("navigator.credentials")

SCHEMA = """
CREATE TABLE IF NOT EXISTS encryption_keys (
    id TEXT PRIMARY KEY,
    key_hash TEXT NOT NULL UNIQUE,
    algorithm TEXT NOT NULL DEFAULT 'aes-256-gcm',
    created_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    rotated_to TEXT REFERENCES encryption_keys(id),
    CHECK (status IN ('active', 'rotated', 'revoked')),
    CHECK (algorithm IN ('aes-256-gcm'))
);
CREATE INDEX IF NOT EXISTS idx_key_status ON encryption_keys(status);

CREATE TABLE IF NOT EXISTS credentials (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    service TEXT NOT NULL,
    environment TEXT NOT NULL DEFAULT 'production',
    encrypted_value TEXT NOT NULL,
    iv TEXT NOT NULL,
    auth_tag TEXT NOT NULL,
    salt TEXT NOT NULL,
    encryption_key_id TEXT REFERENCES encryption_keys(id),
    metadata TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_rotated_at TEXT,
    UNIQUE (name, environment),
    CHECK (type IN ('api_key', 'oauth_token', 'basic_auth',
                    'db_connection', 'ssh_key', 'custom')),
    CHECK (status IN ('active', 'rotated', 'revoked')),
    CHECK (environment IN ('dev', 'staging', 'production'))
);
CREATE INDEX IF NOT EXISTS idx_cred_service ON credentials(service);
CREATE INDEX IF NOT EXISTS idx_cred_type ON credentials(type);
CREATE INDEX IF NOT EXISTS idx_cred_status ON credentials(status);
CREATE INDEX IF NOT EXISTS idx_cred_env ON credentials(environment);

CREATE TABLE IF NOT EXISTS credential_access_policies (
    id TEXT PRIMARY KEY,
    credential_id TEXT NOT NULL
        REFERENCES credentials(id) ON DELETE CASCADE,
    entity_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    access_level TEXT NOT NULL DEFAULT 'read',
    granted_by TEXT,
    granted_at TEXT NOT NULL,
    expires_at TEXT,
    reason TEXT,
    UNIQUE (credential_id, entity_id, entity_type),
    CHECK (entity_type IN ('skill', 'tool')),
    CHECK (access_level IN ('read', 'write', 'admin'))
);
CREATE INDEX IF NOT EXISTS idx_policy_entity
    ON credential_access_policies(entity_id, entity_type);
CREATE INDEX IF NOT EXISTS idx_policy_expires
    ON credential_access_policies(expires_at);

-- No foreign key: the trail outlives hard-deleted credentials.
CREATE TABLE IF NOT EXISTS credential_audit_log (
    id TEXT PRIMARY KEY,
    credential_id TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    user_id TEXT,
    action TEXT NOT NULL,
    success INTEGER NOT NULL,
    timestamp TEXT NOT NULL,
    ip_address TEXT,
    error_message TEXT,
    metadata TEXT,
    CHECK (entity_type IN ('skill', 'tool')),
    CHECK (action IN ('create', 'retrieve', 'rotate', 'revoke', 'delete',
                      'update', 'grant_access', 'revoke_access')),
    CHECK (success IN (0, 1))
);
CREATE INDEX IF NOT EXISTS idx_audit_credential ON credential_audit_log(credential_id);
CREATE INDEX IF NOT EXISTS idx_audit_entity
    ON credential_audit_log(entity_id, entity_type);
CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON credential_audit_log(timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_audit_action ON credential_audit_log(action);
CREATE INDEX IF NOT EXISTS idx_audit_user ON credential_audit_log(user_id);
CREATE INDEX IF NOT EXISTS idx_audit_success ON credential_audit_log(success);
"""


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Render a datetime as a sortable UTC ISO-8601 string.

    Naive datetimes are taken to be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


# ---------------------------------------------------------------------------
# Pool interface
# ---------------------------------------------------------------------------

class Connection:
    """Async facade over one sqlite3 connection."""

    def __init__(self, raw: sqlite3.Connection):
        self._raw = raw

    async def execute(self, sql: str, *args: Any) -> int:
        """Run a statement and return the number of affected rows."""
        cursor = self._raw.execute(sql, args)
        return cursor.rowcount

    async def fetch(self, sql: str, *args: Any) -> list[sqlite3.Row]:
        return self._raw.execute(sql, args).fetchall()

    async def fetchrow(self, sql: str, *args: Any) -> Optional[sqlite3.Row]:
        return self._raw.execute(sql, args).fetchone()

    async def fetchval(self, sql: str, *args: Any) -> Any:
        row = self._raw.execute(sql, args).fetchone()
        return row[0] if row is not None else None

    @asynccontextmanager
    async def transaction(self):
        """Run the enclosed statements atomically.

        Nested use becomes a savepoint inside the outer transaction.
        """
        if self._raw.in_transaction:
            self._raw.execute("SAVEPOINT vault_tx")
            try:
                yield self
            except BaseException:
                self._raw.execute("ROLLBACK TO SAVEPOINT vault_tx")
                self._raw.execute("RELEASE SAVEPOINT vault_tx")
                raise
            self._raw.execute("RELEASE SAVEPOINT vault_tx")
            return
        self._raw.execute("BEGIN IMMEDIATE")
        try:
            yield self
        except BaseException:
            self._raw.execute("ROLLBACK")
            raise
        self._raw.execute("COMMIT")


class Database:
    """SQLite database holding the four vault tables.

    Args:
        path: Database file, or ``:memory:`` for a private in-memory store.
    """

    def __init__(self, path: str = ":memory:"):
        self._path = path
        self._raw: Optional[sqlite3.Connection] = None

    def __repr__(self) -> str:
        return f"<Database path={self._path!r} open={self._raw is not None}>"

    @property
    def path(self) -> str:
        return self._path

    async def open(self) -> "Database":
        """Connect and create the schema if needed."""
        if self._raw is not None:
            return self
        raw = sqlite3.connect(
            self._path,
            check_same_thread=False,
            isolation_level=None,  # explicit BEGIN/COMMIT in transaction()
        )
        raw.row_factory = sqlite3.Row
        raw.execute("PRAGMA foreign_keys = ON")
        if self._path != ":memory:":
            raw.execute("PRAGMA journal_mode = WAL")
            raw.execute("PRAGMA busy_timeout = 5000")
        raw.executescript(SCHEMA)
        self._raw = raw
        logger.debug("Vault database ready at %s", self._path)
        return self

    async def close(self) -> None:
        if self._raw is not None:
            self._raw.close()
            self._raw = None

    @asynccontextmanager
    async def acquire(self):
        if self._raw is None:
            raise RuntimeError("Vault database is not open")
        yield Connection(self._raw)
