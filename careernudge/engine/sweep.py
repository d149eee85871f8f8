"""Batch sweep - evaluate many users on a schedule.

Sweeps run in tiers. The hourly tier only emits time-sensitive rules
(urgent and engagement), the daily tier runs every rule and the weekly
tier only the weekly review. Users inside quiet hours are skipped by the
orchestrator's quiet gate in every tier.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, FrozenSet, Iterable

from careernudge.engine.orchestrator import EvaluationResult, EvaluationState, NudgeEngine
from careernudge.engine.rules import RuleCategory, RuleType
from careernudge.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepTier:
    """Which rules one scheduled sweep may emit. None means no restriction."""

    name: str
    categories: FrozenSet[RuleCategory] | None = None
    rule_types: FrozenSet[RuleType] | None = None


HOURLY_SWEEP = SweepTier(
    "hourly", categories=frozenset({RuleCategory.URGENT, RuleCategory.ENGAGEMENT})
)
DAILY_SWEEP = SweepTier("daily")
WEEKLY_SWEEP = SweepTier("weekly", rule_types=frozenset({RuleType.WEEKLY_REVIEW}))


@dataclass
class SweepSummary:
    """Outcome of one sweep, keyed by user."""

    results: Dict[int, EvaluationResult] = field(default_factory=dict)
    failed: Dict[int, str] = field(default_factory=dict)

    @property
    def nudges_created(self) -> int:
        return sum(len(result.nudges) for result in self.results.values())

    def count(self, state: EvaluationState) -> int:
        return sum(1 for result in self.results.values() if result.state == state)


async def run_sweep(
    engine: NudgeEngine,
    user_ids: Iterable[int],
    concurrency: int = 10,
    now: datetime | None = None,
    tier: SweepTier = DAILY_SWEEP,
) -> SweepSummary:
    """Evaluate every user, at most concurrency at a time.

    Only the rules the tier allows are evaluated. A failure for one user is
    logged and recorded in the summary; it never stops the rest of the
    sweep.
    """
    now = now or utcnow()
    semaphore = asyncio.Semaphore(max(1, concurrency))
    summary = SweepSummary()

    async def evaluate(user_id: int) -> None:
        async with semaphore:
            try:
                summary.results[user_id] = await engine.evaluate_nudges_for_user(
                    user_id,
                    now=now,
                    categories=tier.categories,
                    rule_types=tier.rule_types,
                )
            except Exception as e:
                logger.error(f"Sweep failed for user {user_id}: {e}", exc_info=True)
                summary.failed[user_id] = str(e)

    user_ids = list(user_ids)
    await asyncio.gather(*(evaluate(user_id) for user_id in user_ids))

    logger.info(
        f"{tier.name.capitalize()} sweep: {len(user_ids)} users, "
        f"{summary.nudges_created} nudges created, "
        f"{summary.count(EvaluationState.QUIET)} quiet, "
        f"{summary.count(EvaluationState.NOT_EVALUATED)} not evaluated, "
        f"{len(summary.failed)} failed"
    )
    return summary
