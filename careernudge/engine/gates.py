"""Preference and quiet-hours gates checked before any rule runs."""

from datetime import datetime
from typing import List

from careernudge.db.models import UserNudgePreferences
from careernudge.utils.time_utils import is_in_quiet_hours


def is_enabled(prefs: UserNudgePreferences) -> bool:
    """Proactive nudges are on only when both switches are on."""
    return prefs.agent_enabled and prefs.proactive_enabled


def is_quiet_now(prefs: UserNudgePreferences, now: datetime) -> bool:
    """Check if now (UTC) falls inside the user's local quiet hours."""
    return is_in_quiet_hours(now, prefs.quiet_hours_start, prefs.quiet_hours_end, prefs.timezone)


def delivery_channels(prefs: UserNudgePreferences) -> List[str]:
    """Channels a created nudge may be delivered on.

    Evaluation never looks at channels; this is read at delivery time.
    """
    return sorted(channel for channel, enabled in prefs.channels.items() if enabled)
