"""Shared fixtures: a migrated temporary database and an engine over it."""

from datetime import datetime
from zoneinfo import ZoneInfo

import pytest_asyncio

from careernudge.db.migrations import run_migrations
from careernudge.db.repository import Repository
from careernudge.engine.orchestrator import NudgeEngine
from careernudge.engine.snapshot import RepositorySnapshotProvider

# Tuesday afternoon, UTC
NOW = datetime(2026, 3, 10, 15, 0, tzinfo=ZoneInfo("UTC"))


@pytest_asyncio.fixture
async def repo(tmp_path):
    db_path = tmp_path / "careernudge.db"
    await run_migrations(db_path)

    repo = Repository(db_path)
    await repo.connect()
    yield repo
    await repo.close()


@pytest_asyncio.fixture
async def engine(repo):
    return NudgeEngine(repo, RepositorySnapshotProvider(repo), snapshot_timeout=5.0)


@pytest_asyncio.fixture
async def user_id(repo, engine):
    """A free user with an empty profile, UTC timezone and no quiet hours."""
    user = await repo.create_user(plan="free", created_at=NOW)
    await engine.set_user_preferences(
        user.id,
        timezone="UTC",
        quiet_hours_start=0,
        quiet_hours_end=0,
        daily_limit=3,
    )
    return user.id
