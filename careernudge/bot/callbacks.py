"""Callback query handlers for inline buttons."""

import logging
from datetime import timedelta

from telegram import Update
from telegram.ext import ContextTypes

from careernudge.bot.formatters import format_nudge
from careernudge.db.repository import Repository
from careernudge.engine.errors import InvalidMutationTarget
from careernudge.engine.orchestrator import NudgeEngine
from careernudge.utils.time_utils import format_duration, utcnow

logger = logging.getLogger(__name__)


async def handle_outcome_callback(
    update: Update, context: ContextTypes.DEFAULT_TYPE, action: str, nudge_id: int
) -> None:
    """Handle 'On it' and 'Dismiss' button presses."""
    if not update.effective_user or not update.callback_query:
        return

    query = update.callback_query
    repo: Repository = context.bot_data["repo"]
    engine: NudgeEngine = context.bot_data["engine"]
    user = await repo.get_user_by_telegram_id(update.effective_user.id)

    if not user:
        await query.answer("Please /start the bot first.")
        return

    try:
        if action == "accept":
            nudge = await engine.accept_nudge(user.id, nudge_id)  # type: ignore
        else:
            nudge = await engine.dismiss_nudge(user.id, nudge_id)  # type: ignore
    except InvalidMutationTarget:
        await query.answer("Nudge not found.")
        return

    if query.message:
        label = "✓ On it" if nudge.status == "accepted" else "✗ Dismissed"
        await query.message.edit_text(
            f"{format_nudge(nudge)}\n\n<b>{label}</b>",
            parse_mode="HTML",
        )

    await query.answer("Got it!" if nudge.status == "accepted" else "Dismissed")


async def handle_snooze_callback(
    update: Update, context: ContextTypes.DEFAULT_TYPE, nudge_id: int, minutes: int
) -> None:
    """Handle 'Snooze' button press."""
    if not update.effective_user or not update.callback_query:
        return

    query = update.callback_query
    repo: Repository = context.bot_data["repo"]
    engine: NudgeEngine = context.bot_data["engine"]
    user = await repo.get_user_by_telegram_id(update.effective_user.id)

    if not user:
        await query.answer("Please /start the bot first.")
        return

    now = utcnow()

    try:
        nudge = await engine.snooze_nudge(
            user.id, nudge_id, now + timedelta(minutes=minutes), now=now  # type: ignore
        )
    except InvalidMutationTarget:
        await query.answer("Nudge not found.")
        return
    except ValueError:
        await query.answer("Invalid snooze duration.")
        return

    if nudge.status != "snoozed":
        await query.answer(f"Already {nudge.status}.")
        return

    if query.message:
        await query.message.edit_text(
            f"⏸ <b>Snoozed:</b> {format_nudge(nudge)}\n\n"
            f"I'll bring this back in {format_duration(minutes)}.",
            parse_mode="HTML",
        )

    await query.answer(f"⏸ Snoozed for {format_duration(minutes)}")


async def callback_router(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Route callback queries to appropriate handlers."""
    if not update.callback_query:
        return

    query = update.callback_query
    data = query.data

    if not data:
        return

    # Parse callback data
    parts = data.split(":")

    try:
        numbers = [int(part) for part in parts[1:]]
    except ValueError:
        logger.warning(f"Malformed callback data: {data}")
        await query.answer("Unknown action")
        return

    if parts[0] in ("accept", "dismiss") and len(numbers) == 1:
        await handle_outcome_callback(update, context, parts[0], numbers[0])

    elif parts[0] == "snooze" and len(numbers) == 2:
        await handle_snooze_callback(update, context, numbers[0], numbers[1])

    else:
        await query.answer("Unknown action")
