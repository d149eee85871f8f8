"""Command handlers."""

import logging

from telegram import Update
from telegram.ext import ContextTypes

from careernudge.bot.formatters import (
    format_help_message,
    format_nudge,
    format_rule_diagnostic,
    format_settings,
    format_stats_message,
    format_welcome_message,
)
from careernudge.bot.keyboards import nudge_actions_keyboard
from careernudge.db.models import User
from careernudge.db.repository import Repository
from careernudge.engine.errors import SnapshotUnavailable
from careernudge.engine.orchestrator import NudgeEngine
from careernudge.utils.constants import MAX_DAILY_LIMIT

logger = logging.getLogger(__name__)

# Cards sent by /nudges; the rest are summarized
MAX_CARDS = 5


async def _get_user(update: Update, context: ContextTypes.DEFAULT_TYPE) -> User | None:
    """Look up the sender, telling them to /start if unknown."""
    repo: Repository = context.bot_data["repo"]
    user = await repo.get_user_by_telegram_id(update.effective_user.id)  # type: ignore

    if not user:
        await update.message.reply_text("Please /start the bot first.")  # type: ignore
    return user


async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start command."""
    if not update.effective_user or not update.message:
        return

    repo: Repository = context.bot_data["repo"]
    engine: NudgeEngine = context.bot_data["engine"]
    telegram_id = update.effective_user.id

    # Get or create user
    user = await repo.get_user_by_telegram_id(telegram_id)
    if user is None:
        user = await repo.create_user(telegram_id=telegram_id)
        logger.info(f"New user created: {telegram_id}")

    await engine.get_user_preferences(user.id)  # type: ignore
    await update.message.reply_html(format_welcome_message())


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help command."""
    if not update.message:
        return

    await update.message.reply_html(format_help_message())


async def nudges_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /nudges command - show pending nudges with action buttons."""
    if not update.effective_user or not update.message:
        return

    user = await _get_user(update, context)
    if not user:
        return

    engine: NudgeEngine = context.bot_data["engine"]
    nudges = await engine.get_active_nudges(user.id)  # type: ignore

    if not nudges:
        await update.message.reply_text("No pending nudges. Nice work! 🎉")
        return

    # Newest first
    nudges = sorted(nudges, key=lambda n: (n.created_at, n.id), reverse=True)

    for nudge in nudges[:MAX_CARDS]:
        await update.message.reply_html(
            format_nudge(nudge), reply_markup=nudge_actions_keyboard(nudge.id)  # type: ignore
        )

    if len(nudges) > MAX_CARDS:
        await update.message.reply_text(f"...and {len(nudges) - MAX_CARDS} older nudges.")


async def stats_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /stats command."""
    if not update.effective_user or not update.message:
        return

    user = await _get_user(update, context)
    if not user:
        return

    engine: NudgeEngine = context.bot_data["engine"]
    stats = await engine.get_nudge_stats(user.id)  # type: ignore

    await update.message.reply_html(format_stats_message(stats))


async def settings_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /settings command - show current settings."""
    if not update.effective_user or not update.message:
        return

    user = await _get_user(update, context)
    if not user:
        return

    engine: NudgeEngine = context.bot_data["engine"]
    prefs = await engine.get_user_preferences(user.id)  # type: ignore

    await update.message.reply_html(format_settings(prefs))


async def timezone_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /timezone <timezone> command."""
    if not update.effective_user or not update.message:
        return

    user = await _get_user(update, context)
    if not user:
        return

    engine: NudgeEngine = context.bot_data["engine"]

    # If no timezone provided, show current
    if not context.args:
        prefs = await engine.get_user_preferences(user.id)  # type: ignore
        await update.message.reply_html(
            f"<b>Current timezone:</b> {prefs.timezone}\n\n"
            "To change: <code>/timezone America/Toronto</code>\n\n"
            "See full list: https://en.wikipedia.org/wiki/List_of_tz_database_time_zones"
        )
        return

    new_timezone = context.args[0]

    try:
        await engine.set_user_preferences(user.id, timezone=new_timezone)  # type: ignore
    except ValueError:
        await update.message.reply_text(
            f"Invalid timezone: {new_timezone}\n\n"
            "Use format like: America/Toronto, Europe/London, etc."
        )
        return

    await update.message.reply_html(
        f"✓ Timezone updated to <b>{new_timezone}</b>\n\n"
        "Quiet hours and your daily limit now follow this timezone."
    )


async def quiet_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /quiet <start> <end> command."""
    if not update.effective_user or not update.message:
        return

    user = await _get_user(update, context)
    if not user:
        return

    engine: NudgeEngine = context.bot_data["engine"]

    # If no args, show current
    if not context.args or len(context.args) < 2:
        prefs = await engine.get_user_preferences(user.id)  # type: ignore
        await update.message.reply_html(
            f"<b>Current quiet hours:</b> {prefs.quiet_hours_start:02d}:00 - "
            f"{prefs.quiet_hours_end:02d}:00\n\n"
            "To change: <code>/quiet 22 8</code>"
        )
        return

    try:
        start = int(context.args[0].split(":")[0])
        end = int(context.args[1].split(":")[0])
        await engine.set_user_preferences(
            user.id, quiet_hours_start=start, quiet_hours_end=end  # type: ignore
        )
    except ValueError:
        await update.message.reply_text(
            "Invalid hours. Use whole hours from 0 to 23.\n\n"
            "Example: /quiet 22 8"
        )
        return

    await update.message.reply_html(
        f"✓ Quiet hours updated to <b>{start:02d}:00 - {end:02d}:00</b>\n\n"
        "I won't nudge you during these hours."
    )


async def limit_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /limit <n> command."""
    if not update.effective_user or not update.message:
        return

    user = await _get_user(update, context)
    if not user:
        return

    engine: NudgeEngine = context.bot_data["engine"]

    if not context.args:
        prefs = await engine.get_user_preferences(user.id)  # type: ignore
        await update.message.reply_html(
            f"<b>Daily limit:</b> {prefs.daily_limit}\n\n"
            "To change: <code>/limit 3</code>"
        )
        return

    try:
        limit = int(context.args[0])
        await engine.set_user_preferences(user.id, daily_limit=limit)  # type: ignore
    except ValueError:
        await update.message.reply_text(f"Limit must be a number from 0 to {MAX_DAILY_LIMIT}.")
        return

    await update.message.reply_html(f"✓ Daily limit set to <b>{limit}</b>")


async def pause_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /pause command."""
    if not update.effective_user or not update.message:
        return

    user = await _get_user(update, context)
    if not user:
        return

    engine: NudgeEngine = context.bot_data["engine"]
    await engine.set_user_preferences(user.id, proactive_enabled=False)  # type: ignore

    await update.message.reply_text("⏸ Nudges paused. Use /resume to turn them back on.")


async def resume_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /resume command."""
    if not update.effective_user or not update.message:
        return

    user = await _get_user(update, context)
    if not user:
        return

    engine: NudgeEngine = context.bot_data["engine"]
    await engine.set_user_preferences(
        user.id, agent_enabled=True, proactive_enabled=True  # type: ignore
    )

    await update.message.reply_text("▶️ Nudges resumed.")


async def why_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /why <rule> command - evaluate one rule without sending anything."""
    if not update.effective_user or not update.message:
        return

    if not context.args:
        await update.message.reply_text("Usage: /why <rule>\n\nSee /help for rule names.")
        return

    user = await _get_user(update, context)
    if not user:
        return

    engine: NudgeEngine = context.bot_data["engine"]

    try:
        diagnostic = await engine.evaluate_single_rule(user.id, context.args[0])  # type: ignore
    except ValueError:
        await update.message.reply_text(f"Unknown rule: {context.args[0]}")
        return
    except SnapshotUnavailable as e:
        logger.warning(f"/why failed for user {user.id}: {e}")
        await update.message.reply_text("Couldn't load your data right now. Try again shortly.")
        return

    prefs = await engine.get_user_preferences(user.id)  # type: ignore
    await update.message.reply_html(format_rule_diagnostic(diagnostic, prefs.timezone))
