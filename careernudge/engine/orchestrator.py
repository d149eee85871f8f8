"""Evaluation orchestrator - the public face of the nudge engine.

One evaluation pass per call:

    GATED -> QUIET -> CAPPED -> snapshot -> EVALUATING -> RANKING
          -> PERSISTING -> DONE

Each early state is terminal and returns no nudges. A snapshot or store
failure ends the pass as NOT_EVALUATED, which callers can tell apart from
"nothing to suggest". Nothing is retried here; callers re-invoke on their
own schedule.
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Collection, List, Mapping

import aiosqlite

from careernudge.config import Config
from careernudge.db.models import Nudge, UserNudgePreferences
from careernudge.db.repository import Repository
from careernudge.engine.cooldown import CooldownTracker
from careernudge.engine.errors import SnapshotUnavailable
from careernudge.engine.gates import is_enabled, is_quiet_now
from careernudge.engine.outcomes import OutcomeTracker, StatsWindow
from careernudge.engine.rules import (
    RULE_REGISTRY,
    RuleCategory,
    RuleDefinition,
    RuleResult,
    RuleType,
    applicable_rules,
    get_rule,
    run_rules,
)
from careernudge.engine.scoring import rank, remaining_allowance
from careernudge.engine.snapshot import SnapshotProvider, fetch_snapshot
from careernudge.utils.constants import DEFAULT_CHANNELS, DEFAULT_PLAYBOOKS, MAX_DAILY_LIMIT
from careernudge.utils.time_utils import is_valid_timezone, start_of_local_day, utcnow

logger = logging.getLogger(__name__)

PREFERENCE_FIELDS = {
    "agent_enabled",
    "proactive_enabled",
    "quiet_hours_start",
    "quiet_hours_end",
    "timezone",
    "channels",
    "playbooks",
    "daily_limit",
}


class EvaluationState(str, Enum):
    GATED = "gated"
    QUIET = "quiet"
    CAPPED = "capped"
    NOT_EVALUATED = "not_evaluated"
    DONE = "done"


@dataclass
class EvaluationResult:
    """What one evaluation pass produced and why."""

    state: EvaluationState
    reason: str
    nudges: List[Nudge] = field(default_factory=list)
    evaluated: int = 0  # rules run
    triggered: int = 0  # rules that wanted to fire

    @property
    def was_evaluated(self) -> bool:
        return self.state != EvaluationState.NOT_EVALUATED


@dataclass
class SingleRuleEvaluation:
    """Diagnostic view of one rule for one user."""

    rule: RuleDefinition
    evaluation: RuleResult | None  # None when the rule itself failed
    on_cooldown: bool
    cooldown_until: datetime | None = None


def _always_enrolled(user_id: int) -> bool:
    return True


def default_preferences(user_id: int) -> UserNudgePreferences:
    """Documented defaults for a user who never saved preferences."""
    return UserNudgePreferences(
        user_id=user_id,
        timezone=Config.DEFAULT_TIMEZONE,
        daily_limit=Config.DEFAULT_DAILY_LIMIT,
        channels=dict(DEFAULT_CHANNELS),
        playbooks=dict(DEFAULT_PLAYBOOKS),
    )


def validate_preference_changes(changes: Mapping[str, object]) -> None:
    """Reject unknown fields and out-of-range values.

    Raises:
        ValueError: The change set is invalid
    """
    unknown = set(changes) - PREFERENCE_FIELDS
    if unknown:
        raise ValueError(f"Unknown preference fields: {', '.join(sorted(unknown))}")

    for name in ("quiet_hours_start", "quiet_hours_end"):
        if name in changes:
            hour = changes[name]
            if isinstance(hour, bool) or not isinstance(hour, int) or not 0 <= hour <= 23:
                raise ValueError(f"{name} must be an hour between 0 and 23")

    if "daily_limit" in changes:
        limit = changes["daily_limit"]
        if isinstance(limit, bool) or not isinstance(limit, int) or not 0 <= limit <= MAX_DAILY_LIMIT:
            raise ValueError(f"daily_limit must be between 0 and {MAX_DAILY_LIMIT}")

    if "timezone" in changes and not is_valid_timezone(str(changes["timezone"])):
        raise ValueError(f"Unknown timezone: {changes['timezone']}")

    for name in ("agent_enabled", "proactive_enabled"):
        if name in changes and not isinstance(changes[name], bool):
            raise ValueError(f"{name} must be true or false")

    for name, known in (("channels", DEFAULT_CHANNELS), ("playbooks", DEFAULT_PLAYBOOKS)):
        if name in changes:
            toggles = changes[name]
            if not isinstance(toggles, Mapping):
                raise ValueError(f"{name} must be a mapping of name to bool")
            bad = set(toggles) - set(known)
            if bad:
                raise ValueError(f"Unknown {name}: {', '.join(sorted(bad))}")
            if not all(isinstance(value, bool) for value in toggles.values()):
                raise ValueError(f"{name} values must be true or false")


class NudgeEngine:
    """Composes gates, rules, cooldowns, scoring and persistence.

    Args:
        repo: Connected repository
        snapshot_provider: Source of per-user facts
        is_enrolled: Feature-flag capability; evaluation only runs for
            enrolled users. Owned by an external flag service.
        registry: Rule table (defaults to the static registry)
        snapshot_timeout: Seconds before a snapshot fetch is abandoned
    """

    def __init__(
        self,
        repo: Repository,
        snapshot_provider: SnapshotProvider,
        is_enrolled: Callable[[int], bool] = _always_enrolled,
        registry: Mapping[RuleType, RuleDefinition] | None = None,
        snapshot_timeout: float | None = None,
    ):
        self.repo = repo
        self.snapshot_provider = snapshot_provider
        self.is_enrolled = is_enrolled
        self.registry = registry if registry is not None else RULE_REGISTRY
        self.snapshot_timeout = snapshot_timeout or Config.SNAPSHOT_TIMEOUT
        self.cooldowns = CooldownTracker(repo, self.registry)
        self.outcomes = OutcomeTracker(repo)
        # Entries vanish once no evaluation holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _user_lock(self, user_id: int) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    # Preferences

    async def get_user_preferences(self, user_id: int) -> UserNudgePreferences:
        """Get preferences, creating them with defaults on first access."""
        prefs = await self.repo.get_preferences(user_id)
        if prefs is None:
            prefs = default_preferences(user_id)
            await self.repo.save_preferences(prefs)
            logger.info(f"Created default nudge preferences for user {user_id}")
        return prefs

    async def set_user_preferences(self, user_id: int, **changes) -> UserNudgePreferences:
        """Apply a partial preference update.

        channels and playbooks are merged key by key, so a caller can flip one
        toggle without resending the rest.

        Raises:
            ValueError: Unknown field or invalid value
        """
        validate_preference_changes(changes)
        prefs = await self.get_user_preferences(user_id)

        for name, value in changes.items():
            if name in ("channels", "playbooks"):
                merged = dict(getattr(prefs, name))
                merged.update(value)
                setattr(prefs, name, merged)
            else:
                setattr(prefs, name, value)

        await self.repo.save_preferences(prefs)
        logger.info(f"Updated nudge preferences for user {user_id}: {sorted(changes)}")
        return prefs

    async def reset_user_preferences(self, user_id: int) -> UserNudgePreferences:
        """Restore the documented defaults."""
        prefs = default_preferences(user_id)
        await self.repo.save_preferences(prefs)
        return prefs

    # Evaluation

    async def evaluate_nudges_for_user(
        self,
        user_id: int,
        now: datetime | None = None,
        enrolled: bool | None = None,
        categories: Collection[RuleCategory] | None = None,
        rule_types: Collection[RuleType] | None = None,
    ) -> EvaluationResult:
        """Run one evaluation pass and persist the emitted nudges.

        Args:
            user_id: User to evaluate
            now: Evaluation time (UTC), defaults to the current time
            enrolled: Pre-computed enrollment; falls back to is_enrolled
            categories: Only evaluate rules in these categories
            rule_types: Only evaluate these rules

        Returns:
            EvaluationResult with the created nudges, best first
        """
        now = now or utcnow()

        if enrolled is None:
            enrolled = self.is_enrolled(user_id)
        if not enrolled:
            return EvaluationResult(EvaluationState.GATED, "User is not enrolled in proactive nudges")

        lock = self._user_lock(user_id)
        async with lock:
            try:
                return await self._evaluate(user_id, now, categories, rule_types)
            except SnapshotUnavailable as e:
                logger.warning(f"Nudge evaluation skipped for user {user_id}: {e}")
                return EvaluationResult(EvaluationState.NOT_EVALUATED, str(e))
            except aiosqlite.Error as e:
                logger.error(f"Nudge evaluation failed for user {user_id}: {e}")
                return EvaluationResult(EvaluationState.NOT_EVALUATED, f"Database error: {e}")

    async def _evaluate(
        self,
        user_id: int,
        now: datetime,
        categories: Collection[RuleCategory] | None = None,
        rule_types: Collection[RuleType] | None = None,
    ) -> EvaluationResult:
        prefs = await self.get_user_preferences(user_id)

        if not is_enabled(prefs):
            return EvaluationResult(EvaluationState.GATED, "Proactive nudges disabled by user")

        if is_quiet_now(prefs, now):
            return EvaluationResult(EvaluationState.QUIET, "Currently in quiet hours")

        day_start = start_of_local_day(now, prefs.timezone)
        fired_today = await self.repo.count_nudges_since(user_id, day_start)
        if remaining_allowance(fired_today, prefs.daily_limit) == 0:
            return EvaluationResult(
                EvaluationState.CAPPED, f"Daily nudge limit reached ({prefs.daily_limit})"
            )

        snapshot = await fetch_snapshot(
            self.snapshot_provider, user_id, now, prefs.timezone, self.snapshot_timeout
        )

        # EVALUATING
        rules = applicable_rules(
            self.registry, snapshot.plan, prefs.playbooks, categories, rule_types
        )
        eligible = await self.cooldowns.eligible_rules(user_id, rules, now)
        results = run_rules(eligible, snapshot)
        triggered = sum(1 for result in results if result.should_trigger)

        # RANKING
        ranked = rank(results, fired_today, prefs.daily_limit, self.registry)

        # PERSISTING
        created = await self.repo.persist_emission(
            user_id,
            [self._to_nudge(user_id, result, now) for result in ranked],
            day_start=day_start,
            daily_limit=prefs.daily_limit,
            cooldown_hours=self.cooldowns.cooldown_hours(),
        )

        if created:
            logger.info(
                f"User {user_id}: {len(created)} nudges created "
                f"({', '.join(n.rule_type for n in created)})"
            )

        return EvaluationResult(
            EvaluationState.DONE,
            f"{len(created)} of {triggered} triggered rules emitted",
            nudges=created,
            evaluated=len(eligible),
            triggered=triggered,
        )

    def _to_nudge(self, user_id: int, result: RuleResult, now: datetime) -> Nudge:
        return Nudge(
            user_id=user_id,
            rule_type=result.rule_type.value,
            score=float(result.score),
            reason=result.reason,
            suggested_action=result.suggested_action,
            action_url=result.action_url,
            metadata=dict(result.metadata),
            status="pending",
            created_at=now,
        )

    async def evaluate_single_rule(
        self, user_id: int, rule_type: RuleType | str, now: datetime | None = None
    ) -> SingleRuleEvaluation:
        """Evaluate one rule without gates, caps or persistence.

        Raises:
            ValueError: Unknown rule type
            SnapshotUnavailable: The snapshot could not be built
        """
        rule = get_rule(rule_type, self.registry)
        now = now or utcnow()
        prefs = await self.get_user_preferences(user_id)

        snapshot = await fetch_snapshot(
            self.snapshot_provider, user_id, now, prefs.timezone, self.snapshot_timeout
        )
        results = run_rules([rule], snapshot)

        cooldown_until = await self.cooldowns.cooldown_until(user_id, rule.rule_type)
        on_cooldown = cooldown_until is not None and cooldown_until > now

        return SingleRuleEvaluation(
            rule=rule,
            evaluation=results[0] if results else None,
            on_cooldown=on_cooldown,
            cooldown_until=cooldown_until if on_cooldown else None,
        )

    # Outcomes

    async def accept_nudge(self, user_id: int, nudge_id: int, now: datetime | None = None) -> Nudge:
        return await self.outcomes.accept(user_id, nudge_id, now)

    async def dismiss_nudge(self, user_id: int, nudge_id: int, now: datetime | None = None) -> Nudge:
        return await self.outcomes.dismiss(user_id, nudge_id, now)

    async def snooze_nudge(
        self, user_id: int, nudge_id: int, until: datetime, now: datetime | None = None
    ) -> Nudge:
        return await self.outcomes.snooze(user_id, nudge_id, until, now)

    async def get_active_nudges(self, user_id: int, now: datetime | None = None) -> List[Nudge]:
        """Pending nudges, after bringing back any whose snooze expired."""
        await self.outcomes.resurface_due(user_id, now)
        return await self.repo.get_nudges_by_user(user_id, status="pending")

    async def get_nudge_stats(
        self, user_id: int, now: datetime | None = None, window: StatsWindow = "all"
    ) -> dict:
        """Stats for dashboards; see OutcomeTracker.get_stats."""
        prefs = await self.get_user_preferences(user_id)
        return await self.outcomes.get_stats(user_id, prefs, now, window)
