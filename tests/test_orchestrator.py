"""Tests for the evaluation orchestrator against a real SQLite database."""

import asyncio
import gc
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from careernudge.engine.errors import NudgeForbidden, NudgeNotFound, SnapshotUnavailable
from careernudge.engine.orchestrator import EvaluationState, NudgeEngine
from careernudge.engine.rules import RULE_REGISTRY, RuleType
from careernudge.engine.snapshot import RepositorySnapshotProvider, SnapshotProvider

NOW = datetime(2026, 3, 10, 15, 0, tzinfo=ZoneInfo("UTC"))


class SlowProvider(SnapshotProvider):
    async def fetch(self, user_id, now, timezone):
        await asyncio.sleep(1)
        raise AssertionError("should have timed out")


@pytest.mark.asyncio
async def test_not_enrolled_is_gated(engine, repo, user_id):
    """Users outside the rollout are gated before anything else runs."""
    result = await engine.evaluate_nudges_for_user(user_id, now=NOW, enrolled=False)

    assert result.state == EvaluationState.GATED
    assert result.nudges == []
    assert await repo.get_nudges_by_user(user_id) == []


@pytest.mark.asyncio
async def test_enrollment_capability_is_consulted(repo, user_id):
    """The injected is_enrolled callable decides when no override is given."""
    engine = NudgeEngine(repo, RepositorySnapshotProvider(repo), is_enrolled=lambda uid: False)

    result = await engine.evaluate_nudges_for_user(user_id, now=NOW)

    assert result.state == EvaluationState.GATED


@pytest.mark.asyncio
async def test_engine_uses_injected_registry(repo, user_id):
    """Only rules in the registry passed to the engine are evaluated."""
    registry = {RuleType.DAILY_CHECK: RULE_REGISTRY[RuleType.DAILY_CHECK]}
    engine = NudgeEngine(
        repo, RepositorySnapshotProvider(repo), registry=registry, snapshot_timeout=1.0
    )

    result = await engine.evaluate_nudges_for_user(user_id, now=NOW)

    assert engine.snapshot_timeout == 1.0
    assert result.evaluated == 1
    assert [n.rule_type for n in result.nudges] == ["dailyCheck"]


@pytest.mark.asyncio
async def test_proactive_disabled_is_gated(engine, user_id):
    """Turning proactive nudges off gates evaluation."""
    await engine.set_user_preferences(user_id, proactive_enabled=False)

    result = await engine.evaluate_nudges_for_user(user_id, now=NOW)

    assert result.state == EvaluationState.GATED


@pytest.mark.asyncio
async def test_quiet_hours_across_midnight(engine, repo, user_id):
    """22 -> 7 quiet hours hold at 23:00 and 06:00 but not at 08:00."""
    await engine.set_user_preferences(user_id, quiet_hours_start=22, quiet_hours_end=7)

    late = datetime(2026, 3, 10, 23, 0, tzinfo=ZoneInfo("UTC"))
    early = datetime(2026, 3, 11, 6, 0, tzinfo=ZoneInfo("UTC"))
    morning = datetime(2026, 3, 11, 8, 0, tzinfo=ZoneInfo("UTC"))

    assert (await engine.evaluate_nudges_for_user(user_id, now=late)).state == EvaluationState.QUIET
    assert (await engine.evaluate_nudges_for_user(user_id, now=early)).state == EvaluationState.QUIET
    assert await repo.get_nudges_by_user(user_id) == []

    result = await engine.evaluate_nudges_for_user(user_id, now=morning)
    assert result.state == EvaluationState.DONE
    assert result.nudges


@pytest.mark.asyncio
async def test_quiet_hours_use_user_timezone(engine, user_id):
    """16:00 UTC is 01:00 in Tokyo, inside a 22 -> 7 window."""
    await engine.set_user_preferences(
        user_id, timezone="Asia/Tokyo", quiet_hours_start=22, quiet_hours_end=7
    )
    now = datetime(2026, 3, 10, 16, 0, tzinfo=ZoneInfo("UTC"))

    result = await engine.evaluate_nudges_for_user(user_id, now=now)

    assert result.state == EvaluationState.QUIET


@pytest.mark.asyncio
async def test_emits_ranked_nudges(engine, repo, user_id):
    """An empty profile yields the profile, weekly and daily nudges, best first."""
    result = await engine.evaluate_nudges_for_user(user_id, now=NOW)

    assert result.state == EvaluationState.DONE
    assert [n.rule_type for n in result.nudges] == [
        RuleType.PROFILE_INCOMPLETE.value,
        RuleType.WEEKLY_REVIEW.value,
        RuleType.DAILY_CHECK.value,
    ]
    assert all(n.id is not None and n.status == "pending" for n in result.nudges)
    assert result.triggered == 3

    stored = await repo.get_nudges_by_user(user_id)
    assert {n.id for n in stored} == {n.id for n in result.nudges}


@pytest.mark.asyncio
async def test_interview_scenario(engine, repo, user_id):
    """An interview 20 hours out becomes the top nudge."""
    app_id = await repo.add_application(user_id, "Acme", "Engineer", applied_at=NOW - timedelta(days=3))
    await repo.add_interview(app_id, "Onsite", NOW + timedelta(hours=20))

    result = await engine.evaluate_nudges_for_user(user_id, now=NOW)

    top = result.nudges[0]
    assert top.rule_type == RuleType.INTERVIEW_SOON.value
    assert top.reason == "Interview with Acme in 20 hours"
    assert top.metadata["company"] == "Acme"


@pytest.mark.asyncio
async def test_cooldowns_recorded_only_for_emitted(engine, repo, user_id):
    """A rule that triggered but lost to the cap keeps no cooldown."""
    await engine.set_user_preferences(user_id, daily_limit=2)

    result = await engine.evaluate_nudges_for_user(user_id, now=NOW)

    assert len(result.nudges) == 2
    cooldowns = await repo.get_cooldowns(user_id)
    assert set(cooldowns) == {RuleType.PROFILE_INCOMPLETE.value, RuleType.WEEKLY_REVIEW.value}
    assert cooldowns[RuleType.PROFILE_INCOMPLETE.value].last_fired_at == NOW


@pytest.mark.asyncio
async def test_daily_cap_reached(engine, user_id):
    """Once the day's allowance is used the next pass is capped."""
    first = await engine.evaluate_nudges_for_user(user_id, now=NOW)
    second = await engine.evaluate_nudges_for_user(user_id, now=NOW + timedelta(minutes=5))

    assert len(first.nudges) == 3
    assert second.state == EvaluationState.CAPPED
    assert second.nudges == []


@pytest.mark.asyncio
async def test_zero_daily_limit_is_capped(engine, user_id):
    """A limit of zero never emits."""
    await engine.set_user_preferences(user_id, daily_limit=0)

    result = await engine.evaluate_nudges_for_user(user_id, now=NOW)

    assert result.state == EvaluationState.CAPPED


@pytest.mark.asyncio
async def test_cooldowns_block_repeat_rules(engine, user_id):
    """Rules do not fire again inside their cooldown window."""
    await engine.set_user_preferences(user_id, daily_limit=10)

    first = await engine.evaluate_nudges_for_user(user_id, now=NOW)
    again = await engine.evaluate_nudges_for_user(user_id, now=NOW + timedelta(hours=1))
    next_day = await engine.evaluate_nudges_for_user(user_id, now=NOW + timedelta(hours=25))

    assert len(first.nudges) == 3
    assert again.state == EvaluationState.DONE
    assert again.nudges == []
    # Only the 24h daily check is off cooldown a day later
    assert [n.rule_type for n in next_day.nudges] == [RuleType.DAILY_CHECK.value]


@pytest.mark.asyncio
async def test_concurrent_evaluations_respect_cap(repo, user_id):
    """Parallel passes, even from separate engines, never exceed the cap."""
    engines = [NudgeEngine(repo, RepositorySnapshotProvider(repo)) for _ in range(3)]
    await engines[0].set_user_preferences(user_id, daily_limit=2)

    results = await asyncio.gather(
        *(e.evaluate_nudges_for_user(user_id, now=NOW) for e in engines for _ in range(2))
    )

    created = [n for result in results for n in result.nudges]
    stored = await repo.get_nudges_by_user(user_id)

    assert len(created) == len(stored) == 2
    assert len({n.rule_type for n in stored}) == 2


@pytest.mark.asyncio
async def test_snapshot_timeout_is_not_evaluated(repo, user_id):
    """A slow snapshot aborts the pass without writing anything."""
    engine = NudgeEngine(repo, SlowProvider(), snapshot_timeout=0.05)

    result = await engine.evaluate_nudges_for_user(user_id, now=NOW)

    assert result.state == EvaluationState.NOT_EVALUATED
    assert not result.was_evaluated
    assert await repo.get_nudges_by_user(user_id) == []
    assert await repo.get_cooldowns(user_id) == {}


@pytest.mark.asyncio
async def test_provider_error_is_not_evaluated(repo, user_id):
    """A snapshot source that raises ends the pass as not evaluated."""

    class BrokenProvider(SnapshotProvider):
        async def fetch(self, user_id, now, timezone):
            raise ConnectionError("upstream down")

    engine = NudgeEngine(repo, BrokenProvider())

    result = await engine.evaluate_nudges_for_user(user_id, now=NOW)

    assert result.state == EvaluationState.NOT_EVALUATED
    assert "upstream down" in result.reason
    assert await repo.get_nudges_by_user(user_id) == []


@pytest.mark.asyncio
async def test_user_locks_are_released(engine, user_id):
    """Per-user locks do not outlive the evaluations that use them."""
    await asyncio.gather(
        engine.evaluate_nudges_for_user(user_id, now=NOW),
        engine.evaluate_nudges_for_user(user_id, now=NOW),
    )
    gc.collect()

    assert user_id not in engine._locks
    assert len(engine._locks) == 0


@pytest.mark.asyncio
async def test_unknown_user_is_not_evaluated(engine):
    """A user with no record cannot be evaluated."""
    result = await engine.evaluate_nudges_for_user(4242, now=NOW)

    assert result.state == EvaluationState.NOT_EVALUATED


@pytest.mark.asyncio
async def test_accept_and_dismiss_are_idempotent(engine, repo, user_id):
    """Repeating a terminal action changes nothing."""
    nudges = (await engine.evaluate_nudges_for_user(user_id, now=NOW)).nudges

    accepted = await engine.accept_nudge(user_id, nudges[0].id, now=NOW)
    again = await engine.accept_nudge(user_id, nudges[0].id, now=NOW)
    dismissed_after = await engine.dismiss_nudge(user_id, nudges[0].id, now=NOW)

    assert accepted.status == again.status == dismissed_after.status == "accepted"
    events = await repo.get_nudge_events(nudges[0].id)
    assert [e.action for e in events] == ["accepted"]

    dismissed = await engine.dismiss_nudge(user_id, nudges[1].id, now=NOW)
    assert dismissed.status == "dismissed"


@pytest.mark.asyncio
async def test_mutation_targets_are_checked(engine, repo, user_id):
    """Unknown nudges and other users' nudges are rejected."""
    nudge = (await engine.evaluate_nudges_for_user(user_id, now=NOW)).nudges[0]
    other = await repo.create_user(created_at=NOW)

    with pytest.raises(NudgeNotFound):
        await engine.accept_nudge(user_id, 999_999)

    with pytest.raises(NudgeForbidden):
        await engine.dismiss_nudge(other.id, nudge.id)

    with pytest.raises(NudgeForbidden):
        await engine.snooze_nudge(other.id, nudge.id, NOW + timedelta(hours=1), now=NOW)

    assert (await repo.get_nudge(nudge.id)).status == "pending"


@pytest.mark.asyncio
async def test_snooze_and_resurface(engine, repo, user_id):
    """A snoozed nudge comes back unchanged once its snooze expires."""
    nudge = (await engine.evaluate_nudges_for_user(user_id, now=NOW)).nudges[0]

    snoozed = await engine.snooze_nudge(user_id, nudge.id, NOW + timedelta(hours=1), now=NOW)
    assert snoozed.status == "snoozed"
    assert snoozed.snooze_until == NOW + timedelta(hours=1)

    active = await engine.get_active_nudges(user_id, now=NOW + timedelta(minutes=30))
    assert nudge.id not in {n.id for n in active}

    active = await engine.get_active_nudges(user_id, now=NOW + timedelta(hours=2))
    back = next(n for n in active if n.id == nudge.id)
    assert back.status == "pending"
    assert back.snooze_until is None
    assert back.created_at == nudge.created_at
    assert back.reason == nudge.reason

    events = await repo.get_nudge_events(nudge.id)
    assert [e.action for e in events] == ["snoozed", "resurfaced"]

    # Resurfacing is not a new emission
    assert len(await repo.get_nudges_by_user(user_id)) == 3


@pytest.mark.asyncio
async def test_snooze_into_past_rejected(engine, user_id):
    """Snoozing until a time that has passed is invalid."""
    nudge = (await engine.evaluate_nudges_for_user(user_id, now=NOW)).nudges[0]

    with pytest.raises(ValueError):
        await engine.snooze_nudge(user_id, nudge.id, NOW - timedelta(minutes=1), now=NOW)


@pytest.mark.asyncio
async def test_racing_accept_and_dismiss_resolve_once(engine, repo, user_id):
    """Of two overlapping terminal outcomes only the first one is applied."""
    nudge = (await engine.evaluate_nudges_for_user(user_id, now=NOW)).nudges[0]

    accepted, dismissed = await asyncio.gather(
        engine.accept_nudge(user_id, nudge.id, now=NOW),
        engine.dismiss_nudge(user_id, nudge.id, now=NOW),
    )

    final = await repo.get_nudge(nudge.id)
    events = await repo.get_nudge_events(nudge.id)

    assert final.status in ("accepted", "dismissed")
    assert accepted.status == dismissed.status == final.status
    assert [e.action for e in events] == [final.status]


@pytest.mark.asyncio
async def test_racing_accept_and_snooze_never_resurfaces(engine, repo, user_id):
    """A snooze racing an accept cannot bring the accepted nudge back."""
    nudge = (await engine.evaluate_nudges_for_user(user_id, now=NOW)).nudges[0]

    await asyncio.gather(
        engine.accept_nudge(user_id, nudge.id, now=NOW),
        engine.snooze_nudge(user_id, nudge.id, NOW + timedelta(hours=1), now=NOW),
    )
    active = await engine.get_active_nudges(user_id, now=NOW + timedelta(hours=2))

    assert nudge.id not in {n.id for n in active}
    assert (await repo.get_nudge(nudge.id)).status == "accepted"
    actions = [e.action for e in await repo.get_nudge_events(nudge.id)]
    assert "resurfaced" not in actions
    assert actions.count("accepted") == 1


@pytest.mark.asyncio
async def test_snooze_after_accept_is_ignored(engine, repo, user_id):
    """Snoozing a nudge that is already accepted changes nothing."""
    nudge = (await engine.evaluate_nudges_for_user(user_id, now=NOW)).nudges[0]
    await engine.accept_nudge(user_id, nudge.id, now=NOW)

    unchanged, changed = await repo.update_nudge_status(
        nudge.id, "snoozed", NOW, snooze_until=NOW + timedelta(hours=1)
    )

    assert not changed
    assert unchanged.status == "accepted"
    assert unchanged.snooze_until is None
    assert [e.action for e in await repo.get_nudge_events(nudge.id)] == ["accepted"]


@pytest.mark.asyncio
async def test_evaluate_single_rule(engine, user_id):
    """Diagnostics report the evaluation and cooldown without persisting."""
    before = await engine.evaluate_single_rule(user_id, "profileIncomplete", now=NOW)
    assert before.evaluation.should_trigger
    assert not before.on_cooldown
    assert before.cooldown_until is None

    await engine.evaluate_nudges_for_user(user_id, now=NOW)

    after = await engine.evaluate_single_rule(
        user_id, RuleType.PROFILE_INCOMPLETE, now=NOW + timedelta(hours=1)
    )
    assert after.on_cooldown
    assert after.cooldown_until == NOW + timedelta(days=7)

    with pytest.raises(ValueError):
        await engine.evaluate_single_rule(user_id, "notARule", now=NOW)


@pytest.mark.asyncio
async def test_evaluate_single_rule_snapshot_failure(repo, user_id):
    """Diagnostics surface snapshot failures to the caller."""
    engine = NudgeEngine(repo, SlowProvider(), snapshot_timeout=0.05)

    with pytest.raises(SnapshotUnavailable):
        await engine.evaluate_single_rule(user_id, "dailyCheck", now=NOW)


@pytest.mark.asyncio
async def test_nudge_stats(engine, user_id):
    """Stats reflect outcomes and today's allowance."""
    nudges = (await engine.evaluate_nudges_for_user(user_id, now=NOW)).nudges
    await engine.accept_nudge(user_id, nudges[0].id, now=NOW)
    await engine.accept_nudge(user_id, nudges[1].id, now=NOW)
    await engine.dismiss_nudge(user_id, nudges[2].id, now=NOW)

    stats = await engine.get_nudge_stats(user_id, now=NOW)

    assert stats["today"] == {"count": 3, "limit": 3, "remaining": 0}
    assert stats["week"]["accepted"] == 2
    assert stats["all"]["dismissed"] == 1
    assert stats["acceptance_rate"] == 66.7
