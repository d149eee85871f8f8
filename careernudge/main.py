"""Main entry point for the CareerNudge bot."""

import logging
import sys
from datetime import time

from telegram.ext import Application, CallbackQueryHandler, CommandHandler, ContextTypes

from careernudge.bot.callbacks import callback_router
from careernudge.bot.delivery import heartbeat
from careernudge.bot.handlers import (
    help_command,
    limit_command,
    nudges_command,
    pause_command,
    quiet_command,
    resume_command,
    settings_command,
    start_command,
    stats_command,
    timezone_command,
    why_command,
)
from careernudge.config import Config
from careernudge.db.migrations import run_migrations
from careernudge.db.repository import Repository
from careernudge.engine.orchestrator import NudgeEngine
from careernudge.engine.snapshot import RepositorySnapshotProvider
from careernudge.engine.sweep import DAILY_SWEEP, HOURLY_SWEEP, WEEKLY_SWEEP
from careernudge.utils.error_handler import error_handler
from careernudge.utils.time_utils import UTC

# Configure logging
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
    stream=sys.stdout,
)

logger = logging.getLogger(__name__)


async def sweep_job(context: "ContextTypes.DEFAULT_TYPE") -> None:
    """Job callback for the hourly, daily and weekly sweeps."""
    repo: Repository = context.bot_data["repo"]
    engine: NudgeEngine = context.bot_data["engine"]
    await heartbeat(context.bot, repo, engine, tier=context.job.data)  # type: ignore


async def post_init(application: Application) -> None:
    """Initialize bot resources after application is created."""
    # Initialize database
    await run_migrations(Config.DATABASE_PATH)

    repo = Repository(Config.DATABASE_PATH)
    await repo.connect()
    application.bot_data["repo"] = repo

    application.bot_data["engine"] = NudgeEngine(
        repo,
        RepositorySnapshotProvider(repo),
        snapshot_timeout=Config.SNAPSHOT_TIMEOUT,
    )

    # Schedule the sweep tiers
    job_queue = application.job_queue
    if job_queue:
        job_queue.run_repeating(
            sweep_job,
            interval=Config.HEARTBEAT_INTERVAL,
            first=10,  # Start after 10 seconds
            name="hourly_sweep",
            data=HOURLY_SWEEP,
        )
        sweep_time = time(hour=Config.DAILY_SWEEP_HOUR, tzinfo=UTC)
        job_queue.run_daily(sweep_job, time=sweep_time, name="daily_sweep", data=DAILY_SWEEP)
        job_queue.run_daily(
            sweep_job,
            time=sweep_time,
            days=(1,),  # Monday
            name="weekly_sweep",
            data=WEEKLY_SWEEP,
        )
        logger.info(
            f"Sweeps scheduled (hourly every {Config.HEARTBEAT_INTERVAL}s, "
            f"daily and weekly at {Config.DAILY_SWEEP_HOUR:02d}:00 UTC)"
        )

    logger.info("CareerNudge initialized successfully")


async def post_shutdown(application: Application) -> None:
    """Cleanup resources on shutdown."""
    repo: Repository = application.bot_data.get("repo")
    if repo:
        await repo.close()

    logger.info("CareerNudge shut down")


def main() -> None:
    """Start the bot."""
    # Validate configuration
    try:
        Config.validate()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    application = (
        Application.builder()
        .token(Config.TELEGRAM_BOT_TOKEN)
        .post_init(post_init)
        .post_shutdown(post_shutdown)
        .build()
    )

    # Commands
    application.add_handler(CommandHandler("start", start_command))
    application.add_handler(CommandHandler("help", help_command))
    application.add_handler(CommandHandler("nudges", nudges_command))
    application.add_handler(CommandHandler("stats", stats_command))
    application.add_handler(CommandHandler("why", why_command))

    # Settings commands
    application.add_handler(CommandHandler("settings", settings_command))
    application.add_handler(CommandHandler("timezone", timezone_command))
    application.add_handler(CommandHandler("quiet", quiet_command))
    application.add_handler(CommandHandler("limit", limit_command))
    application.add_handler(CommandHandler("pause", pause_command))
    application.add_handler(CommandHandler("resume", resume_command))

    # Callback queries (buttons)
    application.add_handler(CallbackQueryHandler(callback_router))

    # Error handler
    application.add_error_handler(error_handler)

    logger.info("Starting CareerNudge bot...")
    application.run_polling(allowed_updates=["message", "callback_query"])


if __name__ == "__main__":
    main()
