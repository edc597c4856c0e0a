"""Credential Vault exceptions.

Every error carries a stable ``code`` and a ``details`` mapping with ids
and names only. Credential values never appear in error messages.
"""
from typing import Any, Optional


class CredentialError(Exception):
    """Base class for all vault errors."""

    code: str = "CREDENTIAL_ERROR"

    def __init__(
        self,
        message: str,
        details: Optional[dict[str, Any]] = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        return f"<{type(self).__name__} code={self.code} message={self.message!r}>"


class CredentialNotFoundError(CredentialError):
    """No active credential matches the request."""

    code = "CREDENTIAL_NOT_FOUND"


class DuplicateCredentialError(CredentialNotFoundError):
    """A credential with the same (name, environment) already exists."""

    code = "DUPLICATE_CREDENTIAL"


class AccessDeniedError(CredentialError):
    """Policy missing, expired, or access level insufficient."""

    code = "ACCESS_DENIED"


class EncryptionError(CredentialError):
    """Master key absent or malformed, or value cannot be encrypted."""

    code = "ENCRYPTION_ERROR"


class DecryptionError(CredentialError):
    """Authentication failed: wrong master key or tampered ciphertext."""

    code = "DECRYPTION_ERROR"
