"""Outcome tracking - accept, snooze and dismiss, plus reporting stats."""

import logging
from datetime import datetime
from typing import Iterable, List, Literal

from careernudge.db.models import Nudge, UserNudgePreferences
from careernudge.db.repository import Repository
from careernudge.engine.errors import NudgeForbidden, NudgeNotFound
from careernudge.utils.time_utils import start_of_local_day, start_of_local_week, utcnow

logger = logging.getLogger(__name__)

StatsWindow = Literal["today", "week", "all"]


def acceptance_rate(nudges: Iterable[Nudge]) -> float:
    """Percentage of decided nudges that were accepted.

    Pending and snoozed nudges are not decided and are ignored. With no
    decided nudges the rate is 0.
    """
    accepted = 0
    dismissed = 0
    for nudge in nudges:
        if nudge.status == "accepted":
            accepted += 1
        elif nudge.status == "dismissed":
            dismissed += 1

    decided = accepted + dismissed
    if decided == 0:
        return 0.0
    return round(accepted / decided * 100, 1)


def summarize(
    nudges: List[Nudge],
    day_start: datetime,
    week_start: datetime,
    daily_limit: int,
    window: StatsWindow = "all",
) -> dict:
    """Build the stats payload from a user's nudges."""
    today = [n for n in nudges if n.created_at >= day_start]
    week = [n for n in nudges if n.created_at >= week_start]

    def count(items: List[Nudge], status: str) -> int:
        return sum(1 for n in items if n.status == status)

    rate_source = {"today": today, "week": week, "all": nudges}[window]

    return {
        "today": {
            "count": len(today),
            "limit": daily_limit,
            "remaining": max(0, daily_limit - len(today)),
        },
        "week": {
            "count": len(week),
            "accepted": count(week, "accepted"),
            "dismissed": count(week, "dismissed"),
        },
        "all": {
            "total": len(nudges),
            "pending": count(nudges, "pending"),
            "accepted": count(nudges, "accepted"),
            "snoozed": count(nudges, "snoozed"),
            "dismissed": count(nudges, "dismissed"),
        },
        "acceptance_rate": acceptance_rate(rate_source),
        "window": window,
    }


class OutcomeTracker:
    """Applies user outcomes to emitted nudges.

    Accept and dismiss are terminal. Repeating either on a resolved nudge is
    a no-op that returns the nudge as it is, so retried or double-clicked
    buttons are harmless.
    """

    def __init__(self, repo: Repository):
        self.repo = repo

    async def _load_owned(self, user_id: int, nudge_id: int) -> Nudge:
        nudge = await self.repo.get_nudge(nudge_id)
        if nudge is None:
            raise NudgeNotFound(nudge_id)
        if nudge.user_id != user_id:
            raise NudgeForbidden(nudge_id, user_id)
        return nudge

    async def _resolve(self, user_id: int, nudge_id: int, status: str, now: datetime | None) -> Nudge:
        nudge = await self._load_owned(user_id, nudge_id)

        if nudge.is_resolved:
            logger.debug(f"Nudge {nudge_id} already {nudge.status}; ignoring {status}")
            return nudge

        updated, changed = await self.repo.update_nudge_status(nudge_id, status, now or utcnow())
        if not changed:
            logger.debug(f"Nudge {nudge_id} resolved concurrently; ignoring {status}")
            return updated  # type: ignore

        logger.info(f"Nudge {nudge_id} ({nudge.rule_type}) {status} by user {user_id}")
        return updated  # type: ignore

    async def accept(self, user_id: int, nudge_id: int, now: datetime | None = None) -> Nudge:
        """Mark a nudge accepted."""
        return await self._resolve(user_id, nudge_id, "accepted", now)

    async def dismiss(self, user_id: int, nudge_id: int, now: datetime | None = None) -> Nudge:
        """Mark a nudge dismissed."""
        return await self._resolve(user_id, nudge_id, "dismissed", now)

    async def snooze(
        self, user_id: int, nudge_id: int, until: datetime, now: datetime | None = None
    ) -> Nudge:
        """Hide a nudge until a later time.

        The rule's cooldown is untouched; the nudge itself comes back
        unchanged once until has passed.

        Raises:
            ValueError: until is not in the future
        """
        now = now or utcnow()
        nudge = await self._load_owned(user_id, nudge_id)

        if nudge.is_resolved:
            logger.debug(f"Nudge {nudge_id} already {nudge.status}; ignoring snooze")
            return nudge

        if until <= now:
            raise ValueError("Snooze time must be in the future")

        updated, changed = await self.repo.update_nudge_status(
            nudge_id, "snoozed", now, snooze_until=until
        )
        if not changed:
            logger.debug(f"Nudge {nudge_id} resolved concurrently; ignoring snooze")
            return updated  # type: ignore

        logger.info(f"Nudge {nudge_id} snoozed until {until.isoformat()} by user {user_id}")
        return updated  # type: ignore

    async def resurface_due(self, user_id: int, now: datetime | None = None) -> List[Nudge]:
        """Bring back snoozed nudges whose snooze has expired."""
        resurfaced = await self.repo.resurface_snoozed(user_id, now or utcnow())
        if resurfaced:
            logger.info(f"Resurfaced {len(resurfaced)} snoozed nudges for user {user_id}")
        return resurfaced

    async def get_stats(
        self,
        user_id: int,
        prefs: UserNudgePreferences,
        now: datetime | None = None,
        window: StatsWindow = "all",
    ) -> dict:
        """Counts for today, this week and all time plus the acceptance rate.

        Day and week boundaries follow the user's timezone; weeks start on
        Monday.
        """
        now = now or utcnow()
        nudges = await self.repo.get_nudges_by_user(user_id)
        return summarize(
            nudges,
            day_start=start_of_local_day(now, prefs.timezone),
            week_start=start_of_local_week(now, prefs.timezone),
            daily_limit=prefs.daily_limit,
            window=window,
        )
