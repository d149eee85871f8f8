"""Inline keyboard builders."""

from telegram import InlineKeyboardButton, InlineKeyboardMarkup

from careernudge.utils.constants import SNOOZE_PRESETS
from careernudge.utils.time_utils import format_duration


def nudge_actions_keyboard(nudge_id: int) -> InlineKeyboardMarkup:
    """Keyboard for a nudge card: Accept, Snooze presets, Dismiss."""
    snooze_buttons = [
        InlineKeyboardButton(
            f"Snooze {format_duration(minutes)}",
            callback_data=f"snooze:{nudge_id}:{minutes}",
        )
        for minutes in SNOOZE_PRESETS
    ]

    return InlineKeyboardMarkup(
        [
            [
                InlineKeyboardButton("✓ On it", callback_data=f"accept:{nudge_id}"),
                InlineKeyboardButton("✗ Dismiss", callback_data=f"dismiss:{nudge_id}"),
            ],
            snooze_buttons,
        ]
    )
