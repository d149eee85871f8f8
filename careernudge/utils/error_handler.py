"""Global error handler for the bot."""

import logging
import traceback

from telegram import Update
from telegram.error import BadRequest, Forbidden, NetworkError, TimedOut
from telegram.ext import ContextTypes

from careernudge.engine.errors import InvalidMutationTarget, SnapshotUnavailable

logger = logging.getLogger(__name__)


def user_error_message(error: BaseException | None) -> str:
    """Pick the reply shown to the user for an unhandled error."""
    if isinstance(error, InvalidMutationTarget):
        return "Nudge not found."
    if isinstance(error, SnapshotUnavailable):
        return "⏱️ Couldn't load your career data right now.\n\nPlease try again in a moment."
    if isinstance(error, Forbidden):
        return "❌ I don't have permission to send you messages.\n\nPlease /start the bot first."
    if isinstance(error, BadRequest):
        return "❌ Invalid request.\n\nPlease check your command syntax and try again. Use /help for examples."
    if isinstance(error, TimedOut):
        return "⏱️ Request timed out.\n\nPlease try again in a moment."
    if isinstance(error, NetworkError):
        return "🌐 Network error.\n\nPlease check your connection and try again."
    return (
        "😅 Oops! Something went wrong.\n\n"
        "The error has been logged. Please try again or use /help for assistance."
    )


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle errors in the bot."""
    logger.error("Exception while handling an update:", exc_info=context.error)

    if context.error is not None:
        tb_string = "".join(
            traceback.format_exception(None, context.error, context.error.__traceback__)
        )
        logger.debug(f"Traceback:\n{tb_string}")

    # Try to notify the user
    if isinstance(update, Update) and update.effective_message:
        try:
            await update.effective_message.reply_text(user_error_message(context.error))
        except Exception as e:
            logger.error(f"Failed to send error message to user: {e}")
