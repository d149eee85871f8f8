"""Tests for nudge preferences."""

import pytest

from careernudge.config import Config
from careernudge.engine.gates import delivery_channels, is_enabled
from careernudge.engine.orchestrator import validate_preference_changes


@pytest.mark.asyncio
async def test_defaults_created_on_first_access(engine, repo):
    """A user without stored preferences gets the documented defaults."""
    user = await repo.create_user()

    prefs = await engine.get_user_preferences(user.id)

    assert prefs.agent_enabled and prefs.proactive_enabled
    assert (prefs.quiet_hours_start, prefs.quiet_hours_end) == (22, 8)
    assert prefs.timezone == Config.DEFAULT_TIMEZONE
    assert prefs.daily_limit == Config.DEFAULT_DAILY_LIMIT
    assert delivery_channels(prefs) == ["in_app", "telegram"]
    assert await repo.get_preferences(user.id) is not None


@pytest.mark.asyncio
async def test_partial_update_merges_toggles(engine, user_id):
    """Changing one channel or playbook keeps the rest."""
    prefs = await engine.set_user_preferences(
        user_id, channels={"email": True}, playbooks={"networking": False}
    )

    assert prefs.channels == {"in_app": True, "email": True, "telegram": True}
    assert prefs.playbooks["networking"] is False
    assert prefs.playbooks["job_search"] is True

    stored = await engine.get_user_preferences(user_id)
    assert stored.channels == prefs.channels
    assert stored.timezone == "UTC"


@pytest.mark.asyncio
async def test_reset_preferences(engine, user_id):
    """Reset restores defaults."""
    await engine.set_user_preferences(user_id, proactive_enabled=False, daily_limit=7)

    prefs = await engine.reset_user_preferences(user_id)

    assert is_enabled(prefs)
    assert prefs.daily_limit == Config.DEFAULT_DAILY_LIMIT


@pytest.mark.parametrize(
    "changes",
    [
        {"quiet_hours_start": 24},
        {"quiet_hours_end": -1},
        {"quiet_hours_start": True},
        {"daily_limit": 21},
        {"daily_limit": "3"},
        {"timezone": "Not/AZone"},
        {"channels": {"pager": True}},
        {"playbooks": {"networking": "no"}},
        {"agent_enabled": 1},
        {"favorite_color": "blue"},
    ],
)
def test_invalid_changes_rejected(changes):
    """Out-of-range values and unknown fields raise ValueError."""
    with pytest.raises(ValueError):
        validate_preference_changes(changes)


def test_valid_changes_accepted():
    """Boundary values are allowed."""
    validate_preference_changes(
        {"quiet_hours_start": 0, "quiet_hours_end": 23, "daily_limit": 0, "timezone": "Asia/Tokyo"}
    )


@pytest.mark.asyncio
async def test_invalid_update_leaves_preferences_untouched(engine, user_id):
    """A rejected update writes nothing."""
    with pytest.raises(ValueError):
        await engine.set_user_preferences(user_id, daily_limit=5, quiet_hours_start=99)

    prefs = await engine.get_user_preferences(user_id)
    assert prefs.daily_limit == 3
