"""
Access Control: policy records binding credentials to skills and tools.

A policy grants one entity (skill or tool) an access level on one
credential, optionally until an expiry. Levels are ordered
read < write < admin; a higher grant satisfies a lower check.

``has_access()`` is a query and never raises for "no access";
``assert_access()`` is the gate the credential store calls before it
decrypts anything.
"""
import logging
from typing import Any, Optional, Union
from datetime import datetime, timedelta

from ..exceptions import AccessDeniedError, CredentialNotFoundError
from ..models import (
    AccessLevel,
    AccessPolicy,
    AccessibleCredential,
    AuditAction,
    CredentialStatus,
    EntityType,
)
from .audit import AuditTrail
from .crypto import policy_id
from .storage import Database, to_timestamp, utcnow

logger = logging.getLogger("navigator.credentials")

# ---------------------------------------------------------------------------
# SQL statements
# ---------------------------------------------------------------------------

_POLICY_COLUMNS = """
SELECT id, credential_id, entity_id, entity_type, access_level,
       granted_by, granted_at, expires_at, reason
FROM credential_access_policies
"""

_CREDENTIAL_EXISTS = """
SELECT status FROM credentials WHERE id = ?
"""

_UPSERT_POLICY = """
INSERT INTO credential_access_policies (
    id, credential_id, entity_id, entity_type, access_level,
    granted_by, granted_at, expires_at, reason
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (credential_id, entity_id, entity_type)
DO UPDATE SET access_level = excluded.access_level,
              granted_by = excluded.granted_by,
              granted_at = excluded.granted_at,
              expires_at = excluded.expires_at,
              reason = excluded.reason
"""

_DELETE_POLICY = """
DELETE FROM credential_access_policies
WHERE credential_id = ? AND entity_id = ? AND entity_type = ?
"""

_CHECK_ACCESS = """
SELECT p.access_level, p.expires_at, c.status
FROM credential_access_policies p
JOIN credentials c ON p.credential_id = c.id
WHERE p.credential_id = ? AND p.entity_id = ? AND p.entity_type = ?
"""

_SELECT_ACCESSIBLE = """
SELECT c.id, c.name, c.service, p.access_level, p.expires_at
FROM credential_access_policies p
JOIN credentials c ON p.credential_id = c.id
WHERE p.entity_id = ? AND p.entity_type = ?
  AND (p.expires_at IS NULL OR p.expires_at > ?)
  AND c.status = 'active'
ORDER BY c.name
"""

_UPDATE_LEVEL = """
UPDATE credential_access_policies
SET access_level = ?
WHERE credential_id = ? AND entity_id = ? AND entity_type = ?
"""


def _row_to_policy(row: Any) -> AccessPolicy:
    return AccessPolicy(**dict(row))


class AccessControl:
    """Grants, revokes and checks credential access policies."""

    def __init__(self, db: Database, audit: AuditTrail):
        self._db = db
        self._audit = audit

    # ------------------------------------------------------------------
    # Policy changes
    # ------------------------------------------------------------------

    async def grant(
        self,
        credential_id: str,
        entity_id: str,
        entity_type: Union[EntityType, str],
        *,
        access_level: Union[AccessLevel, str] = AccessLevel.READ,
        expires_at: Optional[datetime] = None,
        granted_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> str:
        """Grant (or re-grant) an entity access to a credential.

        One policy exists per (credential, entity, entity type); granting
        again updates its level, expiry and reason in place.

        Returns:
            The policy id.

        Raises:
            CredentialNotFoundError: If the credential does not exist.
        """
        entity_type = EntityType(entity_type)
        access_level = AccessLevel(access_level)
        audit_meta = {
            "access_level": access_level.value,
            "granted_by": granted_by,
            "reason": reason,
            "expires_at": to_timestamp(expires_at),
        }
        async with self._db.acquire() as conn:
            async with conn.transaction():
                exists = await conn.fetchrow(_CREDENTIAL_EXISTS, credential_id)
                if exists is None:
                    await self._audit.log(
                        credential_id, entity_id, entity_type,
                        AuditAction.GRANT_ACCESS, False,
                        error_message="Credential not found",
                        metadata=audit_meta,
                        conn=conn,
                    )
                else:
                    await conn.execute(
                        _UPSERT_POLICY,
                        policy_id(), credential_id, entity_id, entity_type.value,
                        access_level.value, granted_by, to_timestamp(utcnow()),
                        to_timestamp(expires_at), reason,
                    )
                    new_id = await conn.fetchval(
                        "SELECT id FROM credential_access_policies "
                        "WHERE credential_id = ? AND entity_id = ? AND entity_type = ?",
                        credential_id, entity_id, entity_type.value,
                    )
                    await self._audit.log(
                        credential_id, entity_id, entity_type,
                        AuditAction.GRANT_ACCESS, True,
                        metadata=audit_meta,
                        conn=conn,
                    )
        if exists is None:
            raise CredentialNotFoundError(
                f"Cannot grant access to non-existent credential: {credential_id}",
                {"credential_id": credential_id}
            )
        logger.info(
            "Granted %s access on %s to %s '%s'",
            access_level.value, credential_id, entity_type.value, entity_id,
        )
        return new_id

    async def revoke(
        self,
        credential_id: str,
        entity_id: str,
        entity_type: Union[EntityType, str],
    ) -> bool:
        """Remove an entity's policy.

        Returns:
            True if a policy was removed, False if none existed.
        """
        entity_type = EntityType(entity_type)
        async with self._db.acquire() as conn:
            async with conn.transaction():
                removed = await conn.execute(
                    _DELETE_POLICY, credential_id, entity_id, entity_type.value
                )
                if removed:
                    await self._audit.log(
                        credential_id, entity_id, entity_type,
                        AuditAction.REVOKE_ACCESS, True,
                        conn=conn,
                    )
        if removed:
            logger.info(
                "Revoked access on %s from %s '%s'",
                credential_id, entity_type.value, entity_id,
            )
        return removed > 0

    async def update_access_level(
        self,
        credential_id: str,
        entity_id: str,
        entity_type: Union[EntityType, str],
        new_level: Union[AccessLevel, str],
    ) -> bool:
        """Change the level of an existing policy.

        Returns:
            True if a policy was updated, False if none existed.
        """
        entity_type = EntityType(entity_type)
        new_level = AccessLevel(new_level)
        async with self._db.acquire() as conn:
            async with conn.transaction():
                changed = await conn.execute(
                    _UPDATE_LEVEL,
                    new_level.value, credential_id, entity_id, entity_type.value,
                )
                if changed:
                    await self._audit.log(
                        credential_id, entity_id, entity_type,
                        AuditAction.GRANT_ACCESS, True,
                        metadata={"access_level": new_level.value, "updated": True},
                        conn=conn,
                    )
        return changed > 0

    async def _remove_policies(
        self, where: str, params: tuple, reason: str
    ) -> int:
        async with self._db.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(_POLICY_COLUMNS + " WHERE " + where, *params)
                for row in rows:
                    await conn.execute(
                        "DELETE FROM credential_access_policies WHERE id = ?", row["id"]
                    )
                    await self._audit.log(
                        row["credential_id"], row["entity_id"], row["entity_type"],
                        AuditAction.REVOKE_ACCESS, True,
                        metadata={"reason": reason},
                        conn=conn,
                    )
        return len(rows)

    async def revoke_all(self, credential_id: str) -> int:
        """Remove every policy on a credential.

        Returns:
            Number of policies revoked.
        """
        count = await self._remove_policies(
            "credential_id = ?", (credential_id,), "revoke_all"
        )
        logger.info("Revoked %d policies on %s", count, credential_id)
        return count

    async def cleanup_expired(self) -> int:
        """Delete policies whose expiry has passed.

        Returns:
            Number of policies removed.
        """
        count = await self._remove_policies(
            "expires_at IS NOT NULL AND expires_at <= ?",
            (to_timestamp(utcnow()),),
            "expired",
        )
        if count:
            logger.info("Removed %d expired access policies", count)
        return count

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def has_access(
        self,
        credential_id: str,
        entity_id: str,
        entity_type: Union[EntityType, str],
        required_level: Union[AccessLevel, str] = AccessLevel.READ,
    ) -> bool:
        """True iff an unexpired policy on an active credential grants at
        least ``required_level``."""
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(
                _CHECK_ACCESS, credential_id, entity_id, EntityType(entity_type).value
            )
        if row is None:
            return False
        if row["status"] != CredentialStatus.ACTIVE.value:
            return False
        if row["expires_at"] is not None and row["expires_at"] <= to_timestamp(utcnow()):
            return False
        return AccessLevel(row["access_level"]).satisfies(required_level)

    async def assert_access(
        self,
        credential_id: str,
        entity_id: str,
        entity_type: Union[EntityType, str],
        required_level: Union[AccessLevel, str] = AccessLevel.READ,
    ) -> None:
        """Raise AccessDeniedError unless ``has_access()`` holds."""
        if not await self.has_access(
            credential_id, entity_id, entity_type, required_level
        ):
            entity_type = EntityType(entity_type).value
            required_level = AccessLevel(required_level).value
            raise AccessDeniedError(
                f"Access denied: {entity_type} '{entity_id}' does not have "
                f"'{required_level}' access to credential '{credential_id}'",
                {
                    "credential_id": credential_id,
                    "entity_id": entity_id,
                    "entity_type": entity_type,
                    "required_level": required_level,
                }
            )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def get_policies(self, credential_id: str) -> list[AccessPolicy]:
        async with self._db.acquire() as conn:
            rows = await conn.fetch(
                _POLICY_COLUMNS + " WHERE credential_id = ? ORDER BY granted_at DESC",
                credential_id,
            )
        return [_row_to_policy(row) for row in rows]

    async def get_policy(
        self,
        credential_id: str,
        entity_id: str,
        entity_type: Union[EntityType, str],
    ) -> Optional[AccessPolicy]:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(
                _POLICY_COLUMNS
                + " WHERE credential_id = ? AND entity_id = ? AND entity_type = ?",
                credential_id, entity_id, EntityType(entity_type).value,
            )
        return _row_to_policy(row) if row is not None else None

    async def get_accessible_credentials(
        self,
        entity_id: str,
        entity_type: Union[EntityType, str],
    ) -> list[AccessibleCredential]:
        """Active credentials the entity currently holds an unexpired grant on."""
        async with self._db.acquire() as conn:
            rows = await conn.fetch(
                _SELECT_ACCESSIBLE,
                entity_id, EntityType(entity_type).value, to_timestamp(utcnow()),
            )
        return [
            AccessibleCredential(
                credential_id=row["id"],
                credential_name=row["name"],
                service=row["service"],
                access_level=row["access_level"],
                expires_at=row["expires_at"],
            )
            for row in rows
        ]

    async def get_expiring_soon(self, days_threshold: int = 7) -> list[AccessPolicy]:
        """Policies that are still valid but expire within ``days_threshold``."""
        now = utcnow()
        horizon = now + timedelta(days=days_threshold)
        async with self._db.acquire() as conn:
            rows = await conn.fetch(
                _POLICY_COLUMNS
                + " WHERE expires_at IS NOT NULL AND expires_at > ? AND expires_at <= ?"
                + " ORDER BY expires_at ASC",
                to_timestamp(now), to_timestamp(horizon),
            )
        return [_row_to_policy(row) for row in rows]

    async def count_policies(
        self,
        *,
        credential_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        entity_type: Optional[Union[EntityType, str]] = None,
    ) -> int:
        where: list[str] = []
        params: list[Any] = []
        if credential_id is not None:
            where.append("credential_id = ?")
            params.append(credential_id)
        if entity_id is not None:
            where.append("entity_id = ?")
            params.append(entity_id)
        if entity_type is not None:
            where.append("entity_type = ?")
            params.append(EntityType(entity_type).value)
        sql = "SELECT COUNT(*) FROM credential_access_policies"
        if where:
            sql += " WHERE " + " AND ".join(where)
        async with self._db.acquire() as conn:
            return await conn.fetchval(sql, *params)
