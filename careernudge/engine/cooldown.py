"""Per-rule cooldown tracking."""

import logging
from datetime import datetime, timedelta
from typing import List, Mapping, Sequence

from careernudge.db.repository import Repository
from careernudge.engine.rules import RULE_REGISTRY, RuleDefinition, RuleType, get_rule

logger = logging.getLogger(__name__)


def cooldown_elapsed(last_fired_at: datetime | None, cooldown_hours: float, now: datetime) -> bool:
    """True when a rule may fire again.

    A rule with no prior record is always eligible; otherwise at least
    cooldown_hours must have passed since it last fired.
    """
    if last_fired_at is None:
        return True
    return now - last_fired_at >= timedelta(hours=cooldown_hours)


class CooldownTracker:
    """Reads and writes (user, rule) last-fired timestamps."""

    def __init__(
        self,
        repo: Repository,
        registry: Mapping[RuleType, RuleDefinition] | None = None,
    ):
        self.repo = repo
        self.registry = registry if registry is not None else RULE_REGISTRY

    async def is_eligible(self, user_id: int, rule_type: RuleType | str, now: datetime) -> bool:
        """Check whether a rule is off cooldown for a user."""
        rule = get_rule(rule_type, self.registry)
        cooldown = await self.repo.get_cooldown(user_id, rule.rule_type.value)
        return cooldown_elapsed(
            cooldown.last_fired_at if cooldown else None, rule.cooldown_hours, now
        )

    async def cooldown_until(self, user_id: int, rule_type: RuleType | str) -> datetime | None:
        """When the rule's current cooldown ends, or None if never fired."""
        rule = get_rule(rule_type, self.registry)
        cooldown = await self.repo.get_cooldown(user_id, rule.rule_type.value)
        if cooldown is None:
            return None
        return cooldown.last_fired_at + timedelta(hours=rule.cooldown_hours)

    async def record_fired(self, user_id: int, rule_type: RuleType | str, now: datetime) -> None:
        """Record that a rule was emitted to the user.

        Only call this for emitted nudges. The orchestrator writes cooldowns
        inside the same transaction as the nudge rows instead.
        """
        rule = get_rule(rule_type, self.registry)
        await self.repo.record_cooldown(user_id, rule.rule_type.value, now)
        logger.debug(f"Cooldown recorded for {rule.rule_type.value} (user {user_id})")

    async def eligible_rules(
        self, user_id: int, definitions: Sequence[RuleDefinition], now: datetime
    ) -> List[RuleDefinition]:
        """Filter definitions down to those off cooldown, in one read."""
        cooldowns = await self.repo.get_cooldowns(user_id)

        eligible = []
        for definition in definitions:
            cooldown = cooldowns.get(definition.rule_type.value)
            last_fired_at = cooldown.last_fired_at if cooldown else None
            if cooldown_elapsed(last_fired_at, definition.cooldown_hours, now):
                eligible.append(definition)

        return eligible

    def cooldown_hours(self) -> dict:
        """Cooldown per rule type name, for the persistence layer."""
        return {rule_type.value: rule.cooldown_hours for rule_type, rule in self.registry.items()}
