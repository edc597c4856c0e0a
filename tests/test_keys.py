"""Tests for the master key registry."""
import pytest

from navigator_credentials.models import KeyStatus
from navigator_credentials.vault.crypto import ALGORITHM, hash_key


class TestKeyRegistry:
    """Tests for KeyRegistry."""

    @pytest.mark.asyncio
    async def test_active_key_metadata(self, vault, master_key):
        """Test the registry entry for the active key."""
        active = await vault.keys.get_active()
        assert active.id.startswith("key_")
        assert active.key_hash == hash_key(master_key)
        assert active.algorithm == ALGORITHM
        assert active.status == KeyStatus.ACTIVE
        assert active.rotated_to is None

    @pytest.mark.asyncio
    async def test_register_is_idempotent(self, vault):
        """Test that registering twice keeps one entry."""
        first = await vault.keys.register()
        second = await vault.keys.register()
        assert first == second
        assert len(await vault.keys.list_keys()) == 1

    @pytest.mark.asyncio
    async def test_key_material_not_stored(self, vault, master_key):
        """Test that the raw key is never persisted."""
        async with vault.db.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM encryption_keys")
        stored = " ".join(str(v) for row in rows for v in tuple(row))
        assert master_key.hex() not in stored
