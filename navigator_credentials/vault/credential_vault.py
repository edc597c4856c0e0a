"""
CredentialVault: wires the vault components over one database.

    vault = await CredentialVault.open()          # config from environment
    cred_id = await vault.credentials.store("stripe", "api_key", "stripe", "sk_...")
    await vault.access.grant(cred_id, "payments", "skill")
    cred = await vault.credentials.retrieve(cred_id, "payments", "skill")
    await vault.close()

Components depend only on the ones before them: engine, audit trail,
access control, credential store.
"""
import logging
from typing import Optional

from .access_control import AccessControl
from .audit import AuditTrail
from .config import VaultConfig
from .credential_store import CredentialStore
from .crypto import EncryptionEngine
from .keys import KeyRegistry
from .storage import Database

logger = logging.getLogger("navigator.credentials")


class CredentialVault:
    """Credential Vault facade.

    Prefer ``CredentialVault.open()``, which also opens the database and
    registers the master key. Usable as an async context manager.
    """

    def __init__(self, config: VaultConfig, db: Optional[Database] = None):
        self.config = config
        self.db = db or Database(config.database)
        self.engine = EncryptionEngine.from_config(config)
        self.audit = AuditTrail(self.db, retention_days=config.audit_retention_days)
        self.access = AccessControl(self.db, self.audit)
        self.keys = KeyRegistry(self.db, self.engine)
        self.credentials = CredentialStore(
            self.db,
            self.engine,
            self.access,
            self.audit,
            self.keys,
            default_environment=config.default_environment,
        )

    def __repr__(self) -> str:
        return f"<CredentialVault db={self.db.path!r} engine={self.engine!r}>"

    async def __aenter__(self) -> "CredentialVault":
        await self.db.open()
        await self.keys.register()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        await self.db.close()
        logger.debug("Credential vault closed")

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @classmethod
    async def open(
        cls,
        config: Optional[VaultConfig] = None,
        **overrides
    ) -> "CredentialVault":
        """Build a ready-to-use vault.

        This is the primary constructor used at process start.

        Args:
            config: Vault configuration; loaded with
                ``VaultConfig.from_env(**overrides)`` when omitted.

        Raises:
            EncryptionError: If the master key is absent or malformed.
        """
        if config is None:
            config = VaultConfig.from_env(**overrides)
        vault = cls(config)
        await vault.db.open()
        key_ref = await vault.keys.register()
        logger.info(
            "Credential vault opened at %s (master key %s)",
            config.database, key_ref,
        )
        return vault
