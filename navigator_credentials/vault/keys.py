"""
Vault Key Registry: metadata about the master keys credentials use.

Only the SHA-256 hash of a master key is recorded, never the key itself.
Each credential row points at the registry entry of the key that encrypted
it, which is what a future master-key rotation job would select on.
"""
import logging
from typing import Any, Optional

from ..models import EncryptionKey, KeyStatus
from .crypto import EncryptionEngine, key_id, ALGORITHM
from .storage import Database, to_timestamp, utcnow

logger = logging.getLogger("navigator.credentials")

_SELECT_BY_HASH = """
SELECT id, key_hash, algorithm, created_at, status, rotated_to
FROM encryption_keys
WHERE key_hash = ?
"""

_INSERT_KEY = """
INSERT INTO encryption_keys (id, key_hash, algorithm, created_at, status)
VALUES (?, ?, ?, ?, 'active')
ON CONFLICT (key_hash) DO NOTHING
"""

_SELECT_ALL = """
SELECT id, key_hash, algorithm, created_at, status, rotated_to
FROM encryption_keys
ORDER BY created_at DESC
"""


def _row_to_key(row: Any) -> EncryptionKey:
    return EncryptionKey(**dict(row))


class KeyRegistry:
    """Registers the active master key and answers lookups about keys."""

    def __init__(self, db: Database, engine: EncryptionEngine):
        self._db = db
        self._engine = engine
        self._active_id: Optional[str] = None

    async def register(self) -> str:
        """Record the engine's master key if unseen and return its id.

        Idempotent: the same key always maps to the same registry id.
        """
        if self._active_id is not None:
            return self._active_id
        async with self._db.acquire() as conn:
            await conn.execute(
                _INSERT_KEY,
                key_id(), self._engine.key_hash, ALGORITHM, to_timestamp(utcnow()),
            )
            row = await conn.fetchrow(_SELECT_BY_HASH, self._engine.key_hash)
        key = _row_to_key(row)
        if key.status != KeyStatus.ACTIVE:
            logger.warning(
                "Master key %s is registered with status %s",
                key.id, key.status.value,
            )
        self._active_id = key.id
        logger.debug("Active master key registered as %s", key.id)
        return key.id

    async def get_active(self) -> EncryptionKey:
        """Return registry metadata for the engine's master key."""
        await self.register()
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(_SELECT_BY_HASH, self._engine.key_hash)
        return _row_to_key(row)

    async def list_keys(self) -> list[EncryptionKey]:
        async with self._db.acquire() as conn:
            rows = await conn.fetch(_SELECT_ALL)
        return [_row_to_key(row) for row in rows]
