"""
Credential Vault data model.

Pydantic models for the records the vault hands back to callers. None of
them carry plaintext except ``DecryptedCredential``, whose ``value`` is
excluded from ``repr`` so it never leaks into logs or tracebacks.
"""
from enum import Enum
from typing import Any, Optional
from datetime import datetime

from pydantic import BaseModel, Field


class CredentialType(str, Enum):
    API_KEY = "api_key"
    OAUTH_TOKEN = "oauth_token"
    BASIC_AUTH = "basic_auth"
    DB_CONNECTION = "db_connection"
    SSH_KEY = "ssh_key"
    CUSTOM = "custom"


class Environment(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    ROTATED = "rotated"
    REVOKED = "revoked"


class EntityType(str, Enum):
    SKILL = "skill"
    TOOL = "tool"


class AccessLevel(str, Enum):
    """Access levels, ordered read < write < admin."""

    READ = "read"
    WRITE = "write"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    def satisfies(self, required: "AccessLevel") -> bool:
        """True if this granted level dominates ``required``."""
        return self.rank >= AccessLevel(required).rank


_LEVEL_RANK = {
    AccessLevel.READ: 1,
    AccessLevel.WRITE: 2,
    AccessLevel.ADMIN: 3,
}


class AuditAction(str, Enum):
    CREATE = "create"
    RETRIEVE = "retrieve"
    ROTATE = "rotate"
    REVOKE = "revoke"
    DELETE = "delete"
    UPDATE = "update"
    GRANT_ACCESS = "grant_access"
    REVOKE_ACCESS = "revoke_access"


class KeyStatus(str, Enum):
    ACTIVE = "active"
    ROTATED = "rotated"
    REVOKED = "revoked"


class EncryptedData(BaseModel):
    """AES-256-GCM output; every field is base64 text."""

    encrypted_value: str
    iv: str
    auth_tag: str
    salt: str


class CredentialMetadata(BaseModel):
    """Everything about a credential except its ciphertext."""

    id: str
    name: str
    type: CredentialType
    service: str
    environment: Environment
    encryption_key_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    status: CredentialStatus
    created_at: datetime
    updated_at: datetime
    last_rotated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == CredentialStatus.ACTIVE


class DecryptedCredential(BaseModel):
    id: str
    name: str
    type: CredentialType
    service: str
    environment: Environment
    value: Any = Field(repr=False)
    metadata: dict[str, Any] = Field(default_factory=dict)


class AccessContext(BaseModel):
    """Caller context recorded in the audit trail on retrieval."""

    user_id: Optional[str] = None
    ip_address: Optional[str] = None


class AccessPolicy(BaseModel):
    id: str
    credential_id: str
    entity_id: str
    entity_type: EntityType
    access_level: AccessLevel
    granted_by: Optional[str] = None
    granted_at: datetime
    expires_at: Optional[datetime] = None
    reason: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class AccessibleCredential(BaseModel):
    credential_id: str
    credential_name: str
    service: str
    access_level: AccessLevel
    expires_at: Optional[datetime] = None


class AuditEntry(BaseModel):
    id: str
    credential_id: str
    entity_id: str
    entity_type: EntityType
    user_id: Optional[str] = None
    action: AuditAction
    success: bool
    timestamp: datetime
    ip_address: Optional[str] = None
    error_message: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class AuditSummary(BaseModel):
    total_accesses: int = 0
    by_credential: dict[str, int] = Field(default_factory=dict)
    by_entity: dict[str, int] = Field(default_factory=dict)
    by_action: dict[str, int] = Field(default_factory=dict)
    failed_accesses: int = 0
    last_access_at: Optional[datetime] = None


class EncryptionKey(BaseModel):
    """Master key metadata. The key itself is never stored."""

    id: str
    key_hash: str
    algorithm: str = "aes-256-gcm"
    created_at: datetime
    status: KeyStatus = KeyStatus.ACTIVE
    rotated_to: Optional[str] = None
