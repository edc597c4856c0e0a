"""
Tests for the audit trail.

Tests cover:
- One entry per audited operation
- Filtered queries, most recent first
- Summary aggregation
- Retention cleanup
"""
from datetime import timedelta

import pytest

from navigator_credentials.exceptions import AccessDeniedError
from navigator_credentials.models import AuditAction, EntityType
from navigator_credentials.vault.crypto import audit_id
from navigator_credentials.vault.storage import to_timestamp, utcnow


async def _insert_old_entry(vault, days: int, credential_id: str = "cred_old") -> None:
    async with vault.db.acquire() as conn:
        await conn.execute(
            "INSERT INTO credential_audit_log (id, credential_id, entity_id, "
            "entity_type, action, success, timestamp) VALUES (?, ?, ?, ?, ?, ?, ?)",
            audit_id(), credential_id, "system", "tool", "retrieve", 1,
            to_timestamp(utcnow() - timedelta(days=days)),
        )


class TestCompleteness:
    """Every audited operation writes exactly one entry."""

    @pytest.mark.asyncio
    async def test_one_entry_per_operation(self, vault):
        """Test that each audited call adds exactly one entry."""
        audit = vault.audit

        cred = await vault.credentials.store("k", "api_key", "svc", "v1")
        assert await audit.count_entries(credential_id=cred) == 1

        await vault.access.grant(cred, "s1", "skill")
        assert await audit.count_entries(credential_id=cred) == 2

        await vault.credentials.retrieve(cred, "s1", "skill")
        assert await audit.count_entries(credential_id=cred, success=True) == 3

        with pytest.raises(AccessDeniedError):
            await vault.credentials.retrieve(cred, "s2", "skill")
        assert await audit.count_entries(credential_id=cred) == 4
        assert await audit.count_entries(credential_id=cred, success=False) == 1

        await vault.credentials.rotate(cred, "v2")
        assert await audit.count_entries(credential_id=cred) == 5

        await vault.access.revoke(cred, "s1", "skill")
        assert await audit.count_entries(credential_id=cred) == 6

        await vault.credentials.revoke(cred, "done")
        assert await audit.count_entries(credential_id=cred) == 7

        actions = [e.action for e in await audit.get_trail(cred)]
        assert actions == [
            AuditAction.REVOKE,
            AuditAction.REVOKE_ACCESS,
            AuditAction.ROTATE,
            AuditAction.RETRIEVE,
            AuditAction.RETRIEVE,
            AuditAction.GRANT_ACCESS,
            AuditAction.CREATE,
        ]

    @pytest.mark.asyncio
    async def test_manual_log(self, vault, stripe_id):
        """Test that log() records an out-of-band entry."""
        entry_id = await vault.audit.log(
            stripe_id, "ops-runbook", EntityType.TOOL, AuditAction.UPDATE, True,
            user_id="oncall", metadata={"ticket": "SEC-1"},
        )
        assert entry_id.startswith("audit_")
        entry = (await vault.audit.get_trail(stripe_id))[0]
        assert entry.id == entry_id
        assert entry.metadata == {"ticket": "SEC-1"}

    @pytest.mark.asyncio
    async def test_log_never_raises(self, vault, stripe_id):
        """Test that an invalid entry is dropped without an exception."""
        assert await vault.audit.log(
            stripe_id, "x", "robot", "retrieve", True
        ) is None
        assert await vault.audit.log(
            stripe_id, "x", "skill", "retrieve", True, metadata={"o": object()}
        ) is None


class TestQueries:
    """Tests for filtered reads."""

    @pytest.fixture
    def entities(self):
        return [("s1", "skill", "alice"), ("s2", "skill", "bob"), ("t1", "tool", "alice")]

    async def _populate(self, vault, stripe_id, entities):
        for entity_id, entity_type, _ in entities:
            await vault.access.grant(stripe_id, entity_id, entity_type)
        for entity_id, entity_type, user in entities:
            await vault.credentials.retrieve(
                stripe_id, entity_id, entity_type, {"user_id": user}
            )

    @pytest.mark.asyncio
    async def test_trail_filters(self, vault, stripe_id, entities):
        """Test action, limit and entity filters on a credential trail."""
        await self._populate(vault, stripe_id, entities)
        trail = await vault.audit.get_trail(stripe_id, action="retrieve")
        assert [e.entity_id for e in trail] == ["t1", "s2", "s1"]
        assert len(await vault.audit.get_trail(stripe_id, limit=2)) == 2
        only_s1 = await vault.audit.get_trail(stripe_id, entity_id="s1")
        assert {e.action for e in only_s1} == {
            AuditAction.GRANT_ACCESS, AuditAction.RETRIEVE
        }

    @pytest.mark.asyncio
    async def test_trail_for_entity(self, vault, stripe_id, entities):
        """Test that entity trails match on both id and type."""
        await self._populate(vault, stripe_id, entities)
        trail = await vault.audit.get_trail_for_entity("t1", "tool")
        assert len(trail) == 2
        assert await vault.audit.get_trail_for_entity("t1", "skill") == []

    @pytest.mark.asyncio
    async def test_trail_for_user(self, vault, stripe_id, entities):
        """Test that user trails return the user's entries only."""
        await self._populate(vault, stripe_id, entities)
        trail = await vault.audit.get_trail_for_user("alice")
        assert sorted(e.entity_id for e in trail) == ["s1", "t1"]
        created = await vault.audit.get_trail_for_user("admin")
        assert [e.action for e in created] == [AuditAction.CREATE]

    @pytest.mark.asyncio
    async def test_since_and_until(self, vault, stripe_id):
        """Test the time window filters."""
        await _insert_old_entry(vault, 10, stripe_id)
        recent = await vault.audit.get_trail(
            stripe_id, since=utcnow() - timedelta(days=1)
        )
        assert len(recent) == 1
        old = await vault.audit.get_trail(
            stripe_id, until=utcnow() - timedelta(days=1)
        )
        assert len(old) == 1
        assert old[0].action == AuditAction.RETRIEVE

    @pytest.mark.asyncio
    async def test_success_only(self, vault, stripe_id):
        """Test that success_only drops failed entries."""
        with pytest.raises(AccessDeniedError):
            await vault.credentials.retrieve(stripe_id, "nobody", "skill")
        entries = await vault.audit.get_trail(stripe_id, success_only=True)
        assert all(e.success for e in entries)
        assert len(entries) == 1

    @pytest.mark.asyncio
    async def test_recent(self, vault):
        """Test that get_recent returns the newest entries first."""
        for i in range(5):
            await vault.credentials.store(f"k{i}", "api_key", "svc", "v")
        recent = await vault.audit.get_recent(limit=3)
        assert len(recent) == 3
        assert recent[0].timestamp >= recent[1].timestamp >= recent[2].timestamp

    @pytest.mark.asyncio
    async def test_failed_attempts(self, vault, stripe_id):
        """Test that get_failed_attempts returns denials newest first."""
        for entity in ("x", "y"):
            with pytest.raises(AccessDeniedError):
                await vault.credentials.retrieve(stripe_id, entity, "skill")
        failed = await vault.audit.get_failed_attempts()
        assert [e.entity_id for e in failed] == ["y", "x"]
        assert all(e.error_message for e in failed)
        assert len(await vault.audit.get_failed_attempts(limit=1)) == 1


class TestSummary:
    """Tests for the aggregate view."""

    @pytest.mark.asyncio
    async def test_empty(self, vault):
        """Test the summary of an empty trail."""
        summary = await vault.audit.get_summary()
        assert summary.total_accesses == 0
        assert summary.last_access_at is None

    @pytest.mark.asyncio
    async def test_summary(self, vault, stripe_id):
        """Test the aggregate counts of the summary."""
        await vault.access.grant(stripe_id, "s1", "skill")
        await vault.credentials.retrieve(stripe_id, "s1", "skill")
        with pytest.raises(AccessDeniedError):
            await vault.credentials.retrieve(stripe_id, "s2", "skill")
        summary = await vault.audit.get_summary()
        assert summary.total_accesses == 4
        assert summary.failed_accesses == 1
        assert summary.by_credential == {stripe_id: 4}
        assert summary.by_action == {"retrieve": 2, "create": 1, "grant_access": 1}
        assert summary.by_entity["s1"] == 2
        assert summary.last_access_at is not None


class TestRetention:
    """Tests for cleanup_old."""

    @pytest.mark.asyncio
    async def test_cleanup_old(self, vault, stripe_id):
        """Test that cleanup_old removes only entries past the cutoff."""
        await _insert_old_entry(vault, 120)
        await _insert_old_entry(vault, 45)
        assert await vault.audit.cleanup_old(60) == 1
        assert await vault.audit.count_entries(credential_id="cred_old") == 1
        assert await vault.audit.count_entries(credential_id=stripe_id) == 1

    @pytest.mark.asyncio
    async def test_cleanup_uses_retention_default(self, vault):
        """Test that cleanup_old falls back to the configured retention."""
        await _insert_old_entry(vault, 120)
        await _insert_old_entry(vault, 10)
        assert await vault.audit.cleanup_old() == 1

    @pytest.mark.asyncio
    async def test_negative_days(self, vault):
        """Test that a negative retention is rejected."""
        with pytest.raises(ValueError):
            await vault.audit.cleanup_old(-1)
