"""Shared fixtures for the credential vault tests."""
import pytest
import pytest_asyncio

from navigator_credentials.vault import CredentialVault, VaultConfig
from navigator_credentials.vault.config import MASTER_KEY_ENV, generate_master_key
from navigator_credentials.vault.crypto import EncryptionEngine

# Keep store-level tests fast; the crypto tests use the production default.
FAST_ITERATIONS = 1000


@pytest.fixture
def master_key_hex():
    """A fresh 64-hex-char master key."""
    return generate_master_key()


@pytest.fixture
def master_key(master_key_hex):
    return bytes.fromhex(master_key_hex)


@pytest.fixture
def master_key_env(monkeypatch, master_key_hex):
    """Set MASTER_ENCRYPTION_KEY for the duration of a test."""
    monkeypatch.setenv(MASTER_KEY_ENV, master_key_hex)
    return master_key_hex


@pytest.fixture
def engine(master_key):
    return EncryptionEngine(master_key)


@pytest.fixture
def config(master_key):
    return VaultConfig(
        master_key=master_key,
        database=":memory:",
        pbkdf2_iterations=FAST_ITERATIONS,
    )


@pytest_asyncio.fixture
async def vault(config):
    """An open vault over a private in-memory database."""
    vault = await CredentialVault.open(config)
    yield vault
    await vault.close()


@pytest_asyncio.fixture
async def stripe_id(vault):
    """A stored production API key."""
    return await vault.credentials.store(
        "stripe_api",
        "api_key",
        "stripe",
        {"api_key": "sk_test_123"},
        metadata={"owner": "payments"},
        user_id="admin",
    )
