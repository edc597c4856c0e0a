"""Credential Vault: Encrypted, access-scoped and audited secret storage.

Security Note (Threat Model):
    The master key lives in process memory for the vault's lifetime and
    plaintext lives there for the duration of one ``retrieve()`` call.
    A memory dump of the process could expose either. Mitigation requires
    HSM/secure enclave integration, which is out of scope.
"""

from .credential_vault import CredentialVault
from .credential_store import CredentialStore
from .access_control import AccessControl
from .audit import AuditTrail
from .keys import KeyRegistry
from .storage import Database
from .crypto import EncryptionEngine, algorithm_info, hash_key
from .config import VaultConfig, load_master_key, generate_master_key

__all__ = [
    "CredentialVault",
    "CredentialStore",
    "AccessControl",
    "AuditTrail",
    "KeyRegistry",
    "Database",
    "EncryptionEngine",
    "algorithm_info",
    "hash_key",
    "VaultConfig",
    "load_master_key",
    "generate_master_key",
]
