"""Tests for the batch sweep."""

from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from careernudge.engine.orchestrator import EvaluationState, NudgeEngine
from careernudge.engine.snapshot import RepositorySnapshotProvider
from careernudge.engine.sweep import DAILY_SWEEP, HOURLY_SWEEP, WEEKLY_SWEEP, run_sweep

NOW = datetime(2026, 3, 10, 15, 0, tzinfo=ZoneInfo("UTC"))


class FlakyProvider(RepositorySnapshotProvider):
    """Blows up for one user."""

    def __init__(self, repo, broken_user_id):
        super().__init__(repo)
        self.broken_user_id = broken_user_id

    async def fetch(self, user_id, now, timezone):
        if user_id == self.broken_user_id:
            raise RuntimeError("provider bug")
        return await super().fetch(user_id, now, timezone)


async def make_user(repo, engine, daily_limit=2) -> int:
    user = await repo.create_user(created_at=NOW)
    await engine.set_user_preferences(
        user.id, timezone="UTC", quiet_hours_start=0, quiet_hours_end=0, daily_limit=daily_limit
    )
    return user.id


@pytest.mark.asyncio
async def test_sweep_isolates_user_failures(repo, monkeypatch):
    """One user whose evaluation raises does not stop the others."""
    engine = NudgeEngine(repo, RepositorySnapshotProvider(repo))
    user_ids = [await make_user(repo, engine) for _ in range(3)]
    evaluate = engine.evaluate_nudges_for_user

    async def evaluate_or_explode(user_id, **kwargs):
        if user_id == user_ids[1]:
            raise RuntimeError("engine bug")
        return await evaluate(user_id, **kwargs)

    monkeypatch.setattr(engine, "evaluate_nudges_for_user", evaluate_or_explode)

    summary = await run_sweep(engine, user_ids, concurrency=2, now=NOW)

    assert summary.failed == {user_ids[1]: "engine bug"}
    assert set(summary.results) == {user_ids[0], user_ids[2]}
    assert summary.count(EvaluationState.DONE) == 2
    assert summary.nudges_created == 4


@pytest.mark.asyncio
async def test_sweep_provider_failure_is_not_evaluated(repo):
    """A broken snapshot source is reported as not evaluated, not as a crash."""
    engine = NudgeEngine(repo, RepositorySnapshotProvider(repo))
    user_ids = [await make_user(repo, engine) for _ in range(3)]
    engine.snapshot_provider = FlakyProvider(repo, broken_user_id=user_ids[1])

    summary = await run_sweep(engine, user_ids, concurrency=2, now=NOW)

    assert summary.failed == {}
    assert summary.results[user_ids[1]].state == EvaluationState.NOT_EVALUATED
    assert summary.count(EvaluationState.DONE) == 2
    assert summary.nudges_created == 4


@pytest.mark.asyncio
async def test_sweep_reports_states(repo):
    """Gated and capped users are reported, not failed."""
    engine = NudgeEngine(repo, RepositorySnapshotProvider(repo))
    active, paused = await make_user(repo, engine), await make_user(repo, engine)
    await engine.set_user_preferences(paused, agent_enabled=False)

    first = await run_sweep(engine, [active, paused], now=NOW)
    second = await run_sweep(engine, [active, paused], now=NOW)

    assert first.results[paused].state == EvaluationState.GATED
    assert first.results[active].state == EvaluationState.DONE
    assert second.results[active].state == EvaluationState.CAPPED
    assert not first.failed and not second.failed


@pytest.mark.asyncio
async def test_hourly_sweep_only_emits_urgent_and_engagement(repo):
    """The hourly tier leaves helpful and maintenance rules to the daily tier."""
    engine = NudgeEngine(repo, RepositorySnapshotProvider(repo))
    user_id = await make_user(repo, engine, daily_limit=5)

    hourly = await run_sweep(engine, [user_id], now=NOW, tier=HOURLY_SWEEP)
    assert {n.rule_type for n in hourly.results[user_id].nudges} == {"weeklyReview", "dailyCheck"}

    daily = await run_sweep(engine, [user_id], now=NOW, tier=DAILY_SWEEP)
    assert [n.rule_type for n in daily.results[user_id].nudges] == ["profileIncomplete"]


@pytest.mark.asyncio
async def test_weekly_sweep_only_emits_weekly_review(repo):
    """The weekly tier evaluates the weekly review and nothing else."""
    engine = NudgeEngine(repo, RepositorySnapshotProvider(repo))
    user_id = await make_user(repo, engine, daily_limit=5)

    summary = await run_sweep(engine, [user_id], now=NOW, tier=WEEKLY_SWEEP)

    result = summary.results[user_id]
    assert [n.rule_type for n in result.nudges] == ["weeklyReview"]
    assert result.evaluated == 1


@pytest.mark.asyncio
async def test_sweep_skips_users_in_quiet_hours(repo):
    """Quiet users are skipped by every tier and nothing is stored for them."""
    engine = NudgeEngine(repo, RepositorySnapshotProvider(repo))
    user_id = await make_user(repo, engine)
    await engine.set_user_preferences(user_id, quiet_hours_start=14, quiet_hours_end=16)

    summary = await run_sweep(engine, [user_id], now=NOW, tier=HOURLY_SWEEP)

    assert summary.results[user_id].state == EvaluationState.QUIET
    assert await repo.get_nudges_by_user(user_id) == []
