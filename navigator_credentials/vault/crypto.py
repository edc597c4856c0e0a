"""
Vault Crypto Core: Key derivation, encryption/decryption, and serialization.

Every credential value is encrypted independently:
    salt (16B random) → PBKDF2-HMAC-SHA256(master_key, salt, 100k) → key
    iv (16B random)   → AES-256-GCM(key, iv, json(value)) → ciphertext + tag

The output is not self-describing: salt, iv and tag are stored beside the
ciphertext, and the master key is supplied out of band.

Security Note:
    Never log plaintext or ciphertext values.
    Salt and IV are fresh per call, so equal values never share ciphertext.
"""
import os
import time
import base64
import hashlib
import binascii
import logging
from typing import Any, Optional

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..exceptions import EncryptionError, DecryptionError
from ..models import EncryptedData
from .config import KEY_LENGTH, DEFAULT_PBKDF2_ITERATIONS, MIN_PBKDF2_ITERATIONS

logger = logging.getLogger("navigator.credentials")

ALGORITHM = "aes-256-gcm"
SALT_LENGTH = 16
IV_LENGTH = 16
AUTH_TAG_LENGTH = 16

_JSON_TAG = "json"
_BYTES_TAG = "bytes"


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------

def _generate_id(prefix: str) -> str:
    """Build ``<prefix>_<epoch ms>_<16 random hex>``."""
    return f"{prefix}_{int(time.time() * 1000)}_{os.urandom(8).hex()}"


def credential_id() -> str:
    return _generate_id("cred")


def policy_id() -> str:
    return _generate_id("policy")


def audit_id() -> str:
    return _generate_id("audit")


def key_id() -> str:
    return _generate_id("key")


def hash_key(key: bytes) -> str:
    """SHA-256 of a master key, hex encoded. Safe to persist."""
    return hashlib.sha256(key).hexdigest()


# ---------------------------------------------------------------------------
# Value serialization
# ---------------------------------------------------------------------------

def serialize_value(value: Any) -> bytes:
    """Serialize a Python value to UTF-8 JSON bytes for encryption.

    Supports: str, int, float, dict, list, bytes, bool, None.
    Every payload is wrapped in an envelope, ``{"t": "json", "v": value}`` or
    ``{"t": "bytes", "v": "<base64>"}``, so no user value can be mistaken
    for encoded bytes.

    Limits of the JSON encoding: integers must fit in 64 bits, and NaN or
    Infinity floats are written as null.

    Raises:
        EncryptionError: If the value is not JSON serializable.
    """
    if isinstance(value, bytes):
        envelope = {"t": _BYTES_TAG, "v": base64.b64encode(value).decode("ascii")}
    else:
        envelope = {"t": _JSON_TAG, "v": value}
    try:
        return orjson.dumps(envelope)
    except TypeError as err:
        raise EncryptionError(
            "Credential value is not JSON serializable",
            {"type": type(value).__name__}
        ) from err


def deserialize_value(data: bytes) -> Any:
    """Deserialize bytes produced by serialize_value.

    Raises:
        ValueError: If the payload is not valid JSON or not an envelope.
    """
    parsed = orjson.loads(data)
    if not isinstance(parsed, dict) or set(parsed) != {"t", "v"}:
        raise ValueError("Payload is not a vault value envelope")
    if parsed["t"] == _JSON_TAG:
        return parsed["v"]
    if parsed["t"] == _BYTES_TAG and isinstance(parsed["v"], str):
        return base64.b64decode(parsed["v"], validate=True)
    raise ValueError(f"Unknown vault value envelope type: {parsed['t']!r}")


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class EncryptionEngine:
    """Authenticated encryption of credential values under one master key.

    The engine refuses to exist without a valid 32-byte master key, so no
    credential can be touched while the key is missing or malformed.
    """

    def __init__(
        self,
        master_key: Optional[bytes],
        iterations: int = DEFAULT_PBKDF2_ITERATIONS,
    ):
        if not master_key:
            raise EncryptionError("Vault master key is not configured")
        if len(master_key) != KEY_LENGTH:
            raise EncryptionError(
                f"Vault master key must be {KEY_LENGTH} bytes, "
                f"got {len(master_key)} bytes",
                {"expected": KEY_LENGTH, "actual": len(master_key)}
            )
        if iterations < MIN_PBKDF2_ITERATIONS:
            raise EncryptionError(
                f"PBKDF2 iterations must be at least {MIN_PBKDF2_ITERATIONS}"
            )
        self._master_key = master_key
        self._iterations = iterations
        self.key_hash = hash_key(master_key)

    def __repr__(self) -> str:
        return f"<EncryptionEngine {ALGORITHM} key={self.key_hash[:12]}>"

    @classmethod
    def from_config(cls, config) -> "EncryptionEngine":
        """Build an engine from a VaultConfig."""
        return cls(
            config.master_key.get_secret_value(),
            iterations=config.pbkdf2_iterations,
        )

    def derive_key(self, salt: bytes) -> bytes:
        """Derive a 32-byte AES key from the master key and ``salt``."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self._iterations,
        )
        return kdf.derive(self._master_key)

    def encrypt(self, value: Any) -> EncryptedData:
        """Encrypt a JSON-serializable value.

        Returns:
            EncryptedData with base64 ciphertext, iv, auth tag and salt.

        Raises:
            EncryptionError: If the value cannot be serialized.
        """
        plaintext = serialize_value(value)
        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        cipher = AESGCM(self.derive_key(salt))
        sealed = cipher.encrypt(iv, plaintext, None)
        ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
        return EncryptedData(
            encrypted_value=base64.b64encode(ciphertext).decode("ascii"),
            iv=base64.b64encode(iv).decode("ascii"),
            auth_tag=base64.b64encode(tag).decode("ascii"),
            salt=base64.b64encode(salt).decode("ascii"),
        )

    def decrypt(self, data: EncryptedData) -> Any:
        """Verify and decrypt an EncryptedData record.

        Raises:
            DecryptionError: On any authentication failure (wrong key,
                tampered ciphertext or tag) or malformed parameters.
                Partial plaintext is never returned.
        """
        try:
            ciphertext = base64.b64decode(data.encrypted_value, validate=True)
            iv = base64.b64decode(data.iv, validate=True)
            tag = base64.b64decode(data.auth_tag, validate=True)
            salt = base64.b64decode(data.salt, validate=True)
        except (binascii.Error, ValueError) as err:
            raise DecryptionError(
                "Failed to decrypt credential: malformed encryption parameters"
            ) from err
        if len(tag) != AUTH_TAG_LENGTH or len(iv) != IV_LENGTH:
            raise DecryptionError(
                "Failed to decrypt credential: malformed encryption parameters",
                {"iv_length": len(iv), "tag_length": len(tag)}
            )
        cipher = AESGCM(self.derive_key(salt))
        try:
            plaintext = cipher.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as err:
            raise DecryptionError(
                "Failed to decrypt credential: data has been tampered with "
                "or the master key is incorrect"
            ) from err
        try:
            return deserialize_value(plaintext)
        except ValueError as err:
            # orjson.JSONDecodeError and binascii.Error are both ValueErrors
            raise DecryptionError(
                "Failed to decrypt credential: payload is malformed"
            ) from err

    def verify_master_key(self, key_hash: str) -> bool:
        """True if ``key_hash`` is the hash of this engine's master key."""
        return key_hash == self.key_hash


def algorithm_info(iterations: int = DEFAULT_PBKDF2_ITERATIONS) -> dict:
    """Describe the encryption parameters in use."""
    return {
        "algorithm": ALGORITHM,
        "key_length": KEY_LENGTH,
        "salt_length": SALT_LENGTH,
        "iv_length": IV_LENGTH,
        "auth_tag_length": AUTH_TAG_LENGTH,
        "kdf": "pbkdf2-hmac-sha256",
        "pbkdf2_iterations": iterations,
    }
