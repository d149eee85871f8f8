"""Tests for the repository-backed snapshot provider."""

import asyncio
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from careernudge.engine.errors import SnapshotUnavailable
from careernudge.engine.snapshot import RepositorySnapshotProvider, SnapshotProvider, fetch_snapshot

NOW = datetime(2026, 3, 10, 15, 0, tzinfo=ZoneInfo("UTC"))


@pytest.mark.asyncio
async def test_snapshot_collects_career_activity(repo):
    """Every source table ends up in the snapshot."""
    user = await repo.create_user(
        plan="premium",
        current_position="Engineer",
        skills=["python"],
        target_skills=["python", "rust"],
        created_at=NOW,
    )
    await repo.add_application(user.id, "Acme", "Engineer", applied_at=NOW - timedelta(days=20))
    await repo.add_goal(user.id, "Get promoted", created_at=NOW - timedelta(days=40))
    await repo.add_contact(user.id, "Ada", last_interaction_at=NOW - timedelta(days=90))
    await repo.add_resume_analysis(user.id, 1, "Main", 58, analyzed_at=NOW)

    snapshot = await RepositorySnapshotProvider(repo).fetch(user.id, NOW, "UTC")

    assert snapshot.plan == "premium"
    assert snapshot.now == NOW
    assert [a.company for a in snapshot.applications] == ["Acme"]
    assert [g.title for g in snapshot.goals] == ["Get promoted"]
    assert [c.name for c in snapshot.contacts] == ["Ada"]
    assert snapshot.resume.score == 58
    assert snapshot.profile.current_position == "Engineer"
    assert snapshot.profile.skills == ("python",)
    assert snapshot.target_skills == ("python", "rust")


@pytest.mark.asyncio
async def test_snapshot_unknown_user(repo):
    """A missing user cannot be snapshotted."""
    with pytest.raises(SnapshotUnavailable):
        await RepositorySnapshotProvider(repo).fetch(999, NOW, "UTC")


@pytest.mark.asyncio
async def test_fetch_snapshot_timeout():
    """A provider that hangs is abandoned after the timeout."""

    class Hanging(SnapshotProvider):
        async def fetch(self, user_id, now, timezone):
            await asyncio.sleep(10)

    with pytest.raises(SnapshotUnavailable):
        await fetch_snapshot(Hanging(), 1, NOW, "UTC", timeout=0.01)


@pytest.mark.asyncio
async def test_fetch_snapshot_provider_error():
    """Any provider failure surfaces as SnapshotUnavailable with the cause chained."""

    class Broken(SnapshotProvider):
        async def fetch(self, user_id, now, timezone):
            raise ConnectionError("upstream down")

    with pytest.raises(SnapshotUnavailable, match="upstream down") as exc_info:
        await fetch_snapshot(Broken(), 1, NOW, "UTC", timeout=1)

    assert isinstance(exc_info.value.__cause__, ConnectionError)
