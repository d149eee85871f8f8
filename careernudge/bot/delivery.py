"""Delivery heartbeat - sweeps users and sends nudges over Telegram."""

import logging
from datetime import datetime
from typing import List

from telegram import Bot
from telegram.error import TelegramError

from careernudge.bot.formatters import format_nudge
from careernudge.bot.keyboards import nudge_actions_keyboard
from careernudge.config import Config
from careernudge.db.models import Nudge
from careernudge.db.repository import Repository
from careernudge.engine.gates import delivery_channels, is_enabled, is_quiet_now
from careernudge.engine.orchestrator import NudgeEngine
from careernudge.engine.sweep import DAILY_SWEEP, SweepTier, run_sweep
from careernudge.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


async def send_nudges(bot: Bot, chat_id: int, nudges: List[Nudge], resurfaced: bool = False) -> int:
    """Send nudge cards to a chat. Returns how many were delivered."""
    sent = 0
    for nudge in nudges:
        try:
            await bot.send_message(
                chat_id=chat_id,
                text=format_nudge(nudge, resurfaced=resurfaced),
                parse_mode="HTML",
                reply_markup=nudge_actions_keyboard(nudge.id),  # type: ignore
            )
            sent += 1
        except TelegramError as e:
            # Nudge stays pending and is still listed by /nudges
            logger.error(f"Failed to send nudge {nudge.id}: {e}")
    return sent


async def heartbeat(
    bot: Bot,
    repo: Repository,
    engine: NudgeEngine,
    now: datetime | None = None,
    tier: SweepTier = DAILY_SWEEP,
) -> None:
    """Sweep job that evaluates every Telegram user and delivers results.

    Each scheduled tier calls this and it:
    1. Runs a sweep of the tier over all linked users
    2. Sends newly created nudges to users with the telegram channel on
    3. Resurfaces expired snoozes outside quiet hours and sends them again
    """
    now = now or utcnow()

    try:
        users = await repo.get_telegram_users()
        if not users:
            return

        summary = await run_sweep(
            engine,
            [user.id for user in users],  # type: ignore
            Config.SWEEP_CONCURRENCY,
            now=now,
            tier=tier,
        )

        delivered = 0
        for user in users:
            try:
                prefs = await engine.get_user_preferences(user.id)  # type: ignore
                if "telegram" not in delivery_channels(prefs):
                    continue

                result = summary.results.get(user.id)  # type: ignore
                if result and result.nudges:
                    delivered += await send_nudges(bot, user.telegram_id, result.nudges)  # type: ignore

                if is_enabled(prefs) and not is_quiet_now(prefs, now):
                    resurfaced = await engine.outcomes.resurface_due(user.id, now)  # type: ignore
                    delivered += await send_nudges(
                        bot, user.telegram_id, resurfaced, resurfaced=True  # type: ignore
                    )

            except Exception as e:
                logger.error(f"Error delivering nudges to user {user.id}: {e}")
                continue

        if delivered:
            logger.info(f"{tier.name.capitalize()} sweep: delivered {delivered} nudges")

    except Exception as e:
        logger.error(f"{tier.name.capitalize()} sweep error: {e}")
