"""Navigator Credentials.

Encrypted, access-scoped and audited credential storage for skills and tools.
"""
from .version import __version__
from .exceptions import (
    CredentialError,
    CredentialNotFoundError,
    DuplicateCredentialError,
    AccessDeniedError,
    EncryptionError,
    DecryptionError,
)
from .models import (
    AccessLevel,
    AuditAction,
    CredentialStatus,
    CredentialType,
    EntityType,
    Environment,
)
from .context import CredentialContext
from .vault import CredentialVault, VaultConfig, generate_master_key

__all__ = [
    "__version__",
    "CredentialError",
    "CredentialNotFoundError",
    "DuplicateCredentialError",
    "AccessDeniedError",
    "EncryptionError",
    "DecryptionError",
    "AccessLevel",
    "AuditAction",
    "CredentialStatus",
    "CredentialType",
    "EntityType",
    "Environment",
    "CredentialContext",
    "CredentialVault",
    "VaultConfig",
    "generate_master_key",
]
