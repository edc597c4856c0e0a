"""
Vault Configuration: Master key loading and validated settings.

Reads the master key from the environment:
    MASTER_ENCRYPTION_KEY = <64 hex characters (32 bytes)>

Optional settings:
    VAULT_DATABASE = <sqlite path, default credentials.db>
    VAULT_PBKDF2_ITERATIONS = <int, default 100000>
    VAULT_DEFAULT_ENVIRONMENT = <dev|staging|production>
    VAULT_AUDIT_RETENTION_DAYS = <int, default 90>

Security Note:
    Never log key material. Only log key ids and key hashes.
"""
import os
import secrets
import logging
from typing import Optional

from pydantic import BaseModel, Field, SecretBytes, field_validator

from ..exceptions import EncryptionError
from ..models import Environment

logger = logging.getLogger("navigator.credentials")

MASTER_KEY_ENV = "MASTER_ENCRYPTION_KEY"
KEY_LENGTH = 32  # AES-256
DEFAULT_PBKDF2_ITERATIONS = 100_000
MIN_PBKDF2_ITERATIONS = 1_000


def parse_master_key(key_hex: Optional[str]) -> bytes:
    """Decode a hex master key and check its length.

    Args:
        key_hex: 64 hex characters, or None when the variable is unset.

    Returns:
        Raw 32-byte key.

    Raises:
        EncryptionError: If the key is absent, not hex, or not 32 bytes.
    """
    if not key_hex:
        raise EncryptionError(
            f"{MASTER_KEY_ENV} environment variable not set",
            {"hint": "Generate one with navigator_credentials.generate_master_key()"}
        )
    try:
        key = bytes.fromhex(key_hex.strip())
    except ValueError as err:
        raise EncryptionError(
            f"{MASTER_KEY_ENV} must be hex encoded"
        ) from err
    if len(key) != KEY_LENGTH:
        raise EncryptionError(
            f"{MASTER_KEY_ENV} must be {KEY_LENGTH} bytes "
            f"({KEY_LENGTH * 2} hex characters), got {len(key)} bytes",
            {"expected": KEY_LENGTH, "actual": len(key)}
        )
    return key


def load_master_key() -> bytes:
    """Load the master key from MASTER_ENCRYPTION_KEY.

    Raises:
        EncryptionError: If the variable is unset or malformed.
    """
    key = parse_master_key(os.environ.get(MASTER_KEY_ENV))
    logger.debug("Loaded vault master key from %s", MASTER_KEY_ENV)
    return key


def generate_master_key() -> str:
    """Generate a random 32-byte master key and return it as hex.

    This is a utility for operators to generate new keys.
    """
    return secrets.token_bytes(KEY_LENGTH).hex()


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    master_key: SecretBytes
    database: str = Field(default="credentials.db")
    pbkdf2_iterations: int = Field(
        default=DEFAULT_PBKDF2_ITERATIONS, ge=MIN_PBKDF2_ITERATIONS
    )
    default_environment: Environment = Environment.PRODUCTION
    audit_retention_days: int = Field(default=90, ge=1)

    @field_validator("master_key")
    @classmethod
    def validate_master_key(cls, v: SecretBytes) -> SecretBytes:
        """Refuse any master key that is not exactly 32 bytes."""
        size = len(v.get_secret_value())
        if size != KEY_LENGTH:
            raise EncryptionError(
                f"Master key must be {KEY_LENGTH} bytes, got {size} bytes",
                {"expected": KEY_LENGTH, "actual": size}
            )
        return v

    @classmethod
    def from_env(cls, **overrides) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Keyword overrides take precedence over environment variables.

        Raises:
            EncryptionError: If the master key is absent or malformed.
        """
        values = {
            "master_key": load_master_key(),
            "database": os.environ.get("VAULT_DATABASE", "credentials.db"),
            "pbkdf2_iterations": int(
                os.environ.get("VAULT_PBKDF2_ITERATIONS", DEFAULT_PBKDF2_ITERATIONS)
            ),
            "default_environment": os.environ.get(
                "VAULT_DEFAULT_ENVIRONMENT", Environment.PRODUCTION.value
            ),
            "audit_retention_days": int(
                os.environ.get("VAULT_AUDIT_RETENTION_DAYS", 90)
            ),
        }
        values.update(overrides)
        return cls(**values)
