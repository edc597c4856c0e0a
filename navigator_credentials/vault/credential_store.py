"""
CredentialStore: encrypted credential storage with built-in access checks
and auditing.

Provides the lifecycle API of the Credential Vault:
- ``store(name, type, service, value)``: encrypt and persist a credential
- ``retrieve(id, entity_id, entity_type)``: access-check, decrypt, audit
- ``rotate(id, new_value)``: re-encrypt in place; policies stay untouched
- ``revoke(id)``: soft delete; the row and its history remain
- ``delete(id)``: hard delete; the audit history remains
- ``get_metadata()`` / ``get_by_name()`` / ``list()`` / ``count()``:
  inspection without ever touching plaintext

Security Note:
    Never log plaintext or ciphertext values. Only log credential ids,
    names and operations. Plaintext exists only for the duration of one
    ``retrieve()`` call; nothing decrypted is cached.
"""
import sqlite3
import logging
from typing import Any, Optional, Union

import orjson

from ..exceptions import (
    AccessDeniedError,
    CredentialNotFoundError,
    DecryptionError,
    DuplicateCredentialError,
    EncryptionError,
)
from ..models import (
    AccessContext,
    AccessLevel,
    AuditAction,
    CredentialMetadata,
    CredentialStatus,
    CredentialType,
    DecryptedCredential,
    EncryptedData,
    EntityType,
    Environment,
)
from .access_control import AccessControl
from .audit import AuditTrail
from .crypto import EncryptionEngine, credential_id
from .keys import KeyRegistry
from .storage import Database, to_timestamp, utcnow

logger = logging.getLogger("navigator.credentials")

# Audit identity for operations not performed by a skill or tool.
SYSTEM_ENTITY_ID = "system"
SYSTEM_ENTITY_TYPE = EntityType.TOOL

_MAX_NAME_LENGTH = 255

# ---------------------------------------------------------------------------
# SQL statements
# ---------------------------------------------------------------------------

_INSERT_CREDENTIAL = """
INSERT INTO credentials (
    id, name, type, service, environment,
    encrypted_value, iv, auth_tag, salt, encryption_key_id,
    metadata, status, created_at, updated_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?)
"""

_METADATA_COLUMNS = """
SELECT id, name, type, service, environment, encryption_key_id,
       metadata, status, created_at, updated_at, last_rotated_at
FROM credentials
"""

_SELECT_FOR_RETRIEVE = """
SELECT id, name, type, service, environment, metadata, status,
       encrypted_value, iv, auth_tag, salt
FROM credentials
WHERE id = ?
"""

_SELECT_BY_NAME_ID = """
SELECT id FROM credentials WHERE name = ? AND environment = ?
"""

_ROTATE_CREDENTIAL = """
UPDATE credentials
SET encrypted_value = ?, iv = ?, auth_tag = ?, salt = ?,
    encryption_key_id = ?, updated_at = ?, last_rotated_at = ?
WHERE id = ? AND status = 'active'
"""

_REVOKE_CREDENTIAL = """
UPDATE credentials
SET status = 'revoked', updated_at = ?, metadata = ?
WHERE id = ? AND status != 'revoked'
"""

_UPDATE_METADATA = """
UPDATE credentials SET metadata = ?, updated_at = ? WHERE id = ?
"""

_DELETE_CREDENTIAL = """
DELETE FROM credentials WHERE id = ?
"""


def _dump_json(value: Optional[dict]) -> Optional[str]:
    return orjson.dumps(value).decode("utf-8") if value else None


def _load_json(value: Optional[str]) -> dict:
    return orjson.loads(value) if value else {}


def _row_to_metadata(row: Any) -> CredentialMetadata:
    data = dict(row)
    data["metadata"] = _load_json(data["metadata"])
    return CredentialMetadata(**data)


def _as_context(context: Union[AccessContext, dict, None]) -> AccessContext:
    if context is None:
        return AccessContext()
    if isinstance(context, AccessContext):
        return context
    return AccessContext(**context)


class CredentialStore:
    """CRUD and lifecycle over credential rows.

    Encryption and auditing are side effects of every operation and cannot
    be skipped by callers. Retrieval on behalf of a skill or tool always
    passes through ``AccessControl.assert_access()`` first.
    """

    def __init__(
        self,
        db: Database,
        engine: EncryptionEngine,
        access: AccessControl,
        audit: AuditTrail,
        keys: KeyRegistry,
        default_environment: Union[Environment, str] = Environment.PRODUCTION,
    ):
        self._db = db
        self._engine = engine
        self._access = access
        self._audit = audit
        self._keys = keys
        self._default_environment = Environment(default_environment)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_name(self, name: str) -> None:
        """Validate a credential name.

        Raises:
            ValueError: If name is empty or too long.
        """
        if not name or not name.strip():
            raise ValueError("Credential name cannot be empty")
        if len(name) > _MAX_NAME_LENGTH:
            raise ValueError(
                f"Credential name cannot exceed {_MAX_NAME_LENGTH} characters"
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def store(
        self,
        name: str,
        type: Union[CredentialType, str],
        service: str,
        value: Any,
        *,
        environment: Optional[Union[Environment, str]] = None,
        metadata: Optional[dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> str:
        """Encrypt and persist a new credential.

        Args:
            name: Friendly name, unique per environment.
            type: Credential type.
            service: Free-text service label (e.g. "stripe").
            value: JSON-serializable secret value.
            environment: dev, staging or production (default from config).
            metadata: Free-form, non-secret metadata.
            user_id: Caller recorded in the audit trail.

        Returns:
            The new credential id.

        Raises:
            DuplicateCredentialError: If (name, environment) already exists.
            EncryptionError: If the value cannot be encrypted.
        """
        self._validate_name(name)
        cred_type = CredentialType(type)
        env = Environment(environment) if environment else self._default_environment

        encrypted = self._engine.encrypt(value)
        key_ref = await self._keys.register()
        new_id = credential_id()
        now = to_timestamp(utcnow())

        async with self._db.acquire() as conn:
            try:
                async with conn.transaction():
                    await conn.execute(
                        _INSERT_CREDENTIAL,
                        new_id, name, cred_type.value, service, env.value,
                        encrypted.encrypted_value, encrypted.iv,
                        encrypted.auth_tag, encrypted.salt, key_ref,
                        _dump_json(metadata), now, now,
                    )
                    await self._audit.log(
                        new_id, SYSTEM_ENTITY_ID, SYSTEM_ENTITY_TYPE,
                        AuditAction.CREATE, True,
                        user_id=user_id,
                        metadata={
                            "name": name,
                            "type": cred_type.value,
                            "service": service,
                            "environment": env.value,
                        },
                        conn=conn,
                    )
            except sqlite3.IntegrityError as err:
                existing = await conn.fetchval(_SELECT_BY_NAME_ID, name, env.value)
                if existing is None:
                    raise
                await self._audit.log(
                    existing, SYSTEM_ENTITY_ID, SYSTEM_ENTITY_TYPE,
                    AuditAction.CREATE, False,
                    user_id=user_id,
                    error_message=f"Duplicate credential name: {name} ({env.value})",
                    conn=conn,
                )
                raise DuplicateCredentialError(
                    f"Credential already exists: {name} ({env.value})",
                    {"name": name, "environment": env.value, "credential_id": existing}
                ) from err

        logger.info(
            "Stored credential %s name=%s service=%s env=%s",
            new_id, name, service, env.value,
        )
        return new_id

    async def retrieve(
        self,
        credential_id: str,
        requesting_entity_id: Optional[str] = None,
        requesting_entity_type: Optional[Union[EntityType, str]] = None,
        context: Union[AccessContext, dict, None] = None,
    ) -> DecryptedCredential:
        """Access-check, decrypt and return a credential.

        When an entity is given, its policy is checked before anything is
        decrypted. Every call writes exactly one ``retrieve`` audit entry,
        successful or not.

        Raises:
            CredentialNotFoundError: If absent or revoked.
            AccessDeniedError: If the entity lacks read access.
            DecryptionError: If the stored ciphertext fails authentication.
        """
        ctx = _as_context(context)
        if requesting_entity_id is not None:
            if requesting_entity_type is None:
                raise ValueError("requesting_entity_type is required with an entity id")
            entity_id = requesting_entity_id
            entity_type = EntityType(requesting_entity_type)
        else:
            entity_id, entity_type = SYSTEM_ENTITY_ID, SYSTEM_ENTITY_TYPE

        async def _fail(message: str) -> None:
            await self._audit.log(
                credential_id, entity_id, entity_type,
                AuditAction.RETRIEVE, False,
                user_id=ctx.user_id,
                ip_address=ctx.ip_address,
                error_message=message,
            )

        async with self._db.acquire() as conn:
            row = await conn.fetchrow(_SELECT_FOR_RETRIEVE, credential_id)

        if row is None or row["status"] != CredentialStatus.ACTIVE.value:
            await _fail("Credential not found or not active")
            raise CredentialNotFoundError(
                f"Credential not found or not active: {credential_id}",
                {"credential_id": credential_id}
            )

        if requesting_entity_id is not None:
            try:
                await self._access.assert_access(
                    credential_id, entity_id, entity_type, AccessLevel.READ
                )
            except AccessDeniedError as err:
                await _fail(err.message)
                logger.warning(
                    "Denied retrieval of %s by %s '%s'",
                    credential_id, entity_type.value, entity_id,
                )
                raise

        try:
            value = self._engine.decrypt(
                EncryptedData(
                    encrypted_value=row["encrypted_value"],
                    iv=row["iv"],
                    auth_tag=row["auth_tag"],
                    salt=row["salt"],
                )
            )
        except DecryptionError as err:
            await _fail(err.message)
            logger.error("Decryption failed for credential %s", credential_id)
            raise

        await self._audit.log(
            credential_id, entity_id, entity_type,
            AuditAction.RETRIEVE, True,
            user_id=ctx.user_id,
            ip_address=ctx.ip_address,
        )
        logger.debug(
            "Retrieved credential %s for %s '%s'",
            credential_id, entity_type.value, entity_id,
        )
        return DecryptedCredential(
            id=row["id"],
            name=row["name"],
            type=row["type"],
            service=row["service"],
            environment=row["environment"],
            value=value,
            metadata=_load_json(row["metadata"]),
        )

    async def rotate(
        self,
        credential_id: str,
        new_value: Any,
        *,
        user_id: Optional[str] = None,
    ) -> CredentialMetadata:
        """Replace a credential's value under a fresh salt and IV.

        Access policies are left untouched.

        Raises:
            CredentialNotFoundError: If absent or revoked.
            EncryptionError: If the new value cannot be encrypted.
        """
        try:
            encrypted = self._engine.encrypt(new_value)
        except EncryptionError as err:
            await self._audit.log(
                credential_id, SYSTEM_ENTITY_ID, SYSTEM_ENTITY_TYPE,
                AuditAction.ROTATE, False,
                user_id=user_id,
                error_message=err.message,
            )
            raise
        key_ref = await self._keys.register()
        now = to_timestamp(utcnow())
        async with self._db.acquire() as conn:
            async with conn.transaction():
                changed = await conn.execute(
                    _ROTATE_CREDENTIAL,
                    encrypted.encrypted_value, encrypted.iv, encrypted.auth_tag,
                    encrypted.salt, key_ref, now, now, credential_id,
                )
                await self._audit.log(
                    credential_id, SYSTEM_ENTITY_ID, SYSTEM_ENTITY_TYPE,
                    AuditAction.ROTATE, bool(changed),
                    user_id=user_id,
                    error_message=None if changed else "Credential not found or not active",
                    conn=conn,
                )
        if not changed:
            raise CredentialNotFoundError(
                f"Credential not found or not active: {credential_id}",
                {"credential_id": credential_id}
            )
        logger.info("Rotated credential %s", credential_id)
        return await self.get_metadata(credential_id)

    async def revoke(
        self,
        credential_id: str,
        reason: Optional[str] = None,
        *,
        user_id: Optional[str] = None,
    ) -> bool:
        """Soft-delete a credential.

        Idempotent: revoking a missing or already revoked credential returns
        False and writes nothing.

        Returns:
            True if the credential changed state.
        """
        reason = reason or "No reason provided"
        async with self._db.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT status, metadata FROM credentials WHERE id = ?",
                    credential_id,
                )
                if row is None or row["status"] == CredentialStatus.REVOKED.value:
                    return False
                metadata = _load_json(row["metadata"])
                metadata["revoked_reason"] = reason
                changed = await conn.execute(
                    _REVOKE_CREDENTIAL,
                    to_timestamp(utcnow()), _dump_json(metadata), credential_id,
                )
                if changed:
                    await self._audit.log(
                        credential_id, SYSTEM_ENTITY_ID, SYSTEM_ENTITY_TYPE,
                        AuditAction.REVOKE, True,
                        user_id=user_id,
                        metadata={"reason": reason},
                        conn=conn,
                    )
        if changed:
            logger.warning("Revoked credential %s: %s", credential_id, reason)
        return changed > 0

    async def delete(
        self,
        credential_id: str,
        *,
        user_id: Optional[str] = None,
    ) -> bool:
        """Permanently remove a credential and its policies.

        The audit history for the id stays queryable.

        Returns:
            True if a row was removed, False if none existed.
        """
        async with self._db.acquire() as conn:
            async with conn.transaction():
                removed = await conn.execute(_DELETE_CREDENTIAL, credential_id)
                if removed:
                    await self._audit.log(
                        credential_id, SYSTEM_ENTITY_ID, SYSTEM_ENTITY_TYPE,
                        AuditAction.DELETE, True,
                        user_id=user_id,
                        conn=conn,
                    )
        if removed:
            logger.warning("Deleted credential %s", credential_id)
        return removed > 0

    async def update_metadata(
        self,
        credential_id: str,
        metadata: dict[str, Any],
        *,
        user_id: Optional[str] = None,
    ) -> CredentialMetadata:
        """Merge ``metadata`` into the credential's free-form metadata.

        Raises:
            CredentialNotFoundError: If the credential does not exist.
        """
        async with self._db.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchrow(
                    "SELECT metadata FROM credentials WHERE id = ?", credential_id
                )
                if current is not None:
                    merged = _load_json(current["metadata"])
                    merged.update(metadata)
                    await conn.execute(
                        _UPDATE_METADATA,
                        _dump_json(merged), to_timestamp(utcnow()), credential_id,
                    )
                await self._audit.log(
                    credential_id, SYSTEM_ENTITY_ID, SYSTEM_ENTITY_TYPE,
                    AuditAction.UPDATE, current is not None,
                    user_id=user_id,
                    error_message=None if current is not None else "Credential not found",
                    metadata={"fields": sorted(metadata)},
                    conn=conn,
                )
        if current is None:
            raise CredentialNotFoundError(
                f"Credential not found: {credential_id}",
                {"credential_id": credential_id}
            )
        return await self.get_metadata(credential_id)

    # ------------------------------------------------------------------
    # Inspection (metadata only)
    # ------------------------------------------------------------------

    async def get_metadata(self, credential_id: str) -> CredentialMetadata:
        """Raises CredentialNotFoundError if absent."""
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(_METADATA_COLUMNS + " WHERE id = ?", credential_id)
        if row is None:
            raise CredentialNotFoundError(
                f"Credential not found: {credential_id}",
                {"credential_id": credential_id}
            )
        return _row_to_metadata(row)

    async def get_by_name(
        self,
        name: str,
        environment: Optional[Union[Environment, str]] = None,
    ) -> CredentialMetadata:
        env = Environment(environment) if environment else self._default_environment
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(
                _METADATA_COLUMNS + " WHERE name = ? AND environment = ?",
                name, env.value,
            )
        if row is None:
            raise CredentialNotFoundError(
                f"Credential not found: {name} ({env.value})",
                {"name": name, "environment": env.value}
            )
        return _row_to_metadata(row)

    async def is_valid(self, credential_id: str) -> bool:
        """True iff the credential exists and is active."""
        async with self._db.acquire() as conn:
            status = await conn.fetchval(
                "SELECT status FROM credentials WHERE id = ?", credential_id
            )
        return status == CredentialStatus.ACTIVE.value

    @staticmethod
    def _filters(
        service: Optional[str],
        type: Optional[Union[CredentialType, str]],
        environment: Optional[Union[Environment, str]],
        status: Optional[Union[CredentialStatus, str]],
    ) -> tuple[str, list]:
        where: list[str] = []
        params: list[Any] = []
        if service is not None:
            where.append("service = ?")
            params.append(service)
        if type is not None:
            where.append("type = ?")
            params.append(CredentialType(type).value)
        if environment is not None:
            where.append("environment = ?")
            params.append(Environment(environment).value)
        if status is not None:
            where.append("status = ?")
            params.append(CredentialStatus(status).value)
        clause = (" WHERE " + " AND ".join(where)) if where else ""
        return clause, params

    async def count(
        self,
        *,
        service: Optional[str] = None,
        type: Optional[Union[CredentialType, str]] = None,
        environment: Optional[Union[Environment, str]] = None,
        status: Optional[Union[CredentialStatus, str]] = None,
    ) -> int:
        clause, params = self._filters(service, type, environment, status)
        async with self._db.acquire() as conn:
            return await conn.fetchval(
                "SELECT COUNT(*) FROM credentials" + clause, *params
            )

    # Kept last: the method name shadows the builtin inside the class body.
    async def list(
        self,
        *,
        service: Optional[str] = None,
        type: Optional[Union[CredentialType, str]] = None,
        environment: Optional[Union[Environment, str]] = None,
        status: Optional[Union[CredentialStatus, str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[CredentialMetadata]:
        """Credential metadata, newest first, paged by limit/offset."""
        clause, params = self._filters(service, type, environment, status)
        sql = _METADATA_COLUMNS + clause + " ORDER BY created_at DESC, rowid DESC"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        elif offset:
            sql += " LIMIT -1 OFFSET ?"
            params.append(offset)
        async with self._db.acquire() as conn:
            rows = await conn.fetch(sql, *params)
        return [_row_to_metadata(row) for row in rows]
