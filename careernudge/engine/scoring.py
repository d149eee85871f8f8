"""Scoring and ranking - the only place rules compete."""

from typing import List, Mapping, Sequence

from careernudge.engine.rules import RULE_REGISTRY, RuleDefinition, RuleResult, RuleType


def remaining_allowance(already_fired_today: int, daily_limit: int) -> int:
    """How many more nudges may be created today."""
    return max(0, daily_limit - already_fired_today)


def rank(
    candidates: Sequence[RuleResult],
    already_fired_today: int,
    daily_limit: int,
    registry: Mapping[RuleType, RuleDefinition] | None = None,
) -> List[RuleResult]:
    """Pick the triggered results to emit, best first.

    Order is score descending, then category priority (urgent before
    maintenance), then rule type name, so identical inputs always give the
    same list. The list is cut to the remaining daily allowance.
    """
    registry = registry if registry is not None else RULE_REGISTRY

    triggered = [result for result in candidates if result.should_trigger]

    ordered = sorted(
        triggered,
        key=lambda result: (
            -result.score,
            registry[result.rule_type].priority,
            result.rule_type.value,
        ),
    )

    return ordered[: remaining_allowance(already_fired_today, daily_limit)]
