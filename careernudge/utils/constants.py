"""Constants and default values."""

# Nudge statuses a user can no longer change
TERMINAL_NUDGE_STATUSES = ("accepted", "dismissed")

# Application statuses that no longer need a follow-up
TERMINAL_APPLICATION_STATUSES = frozenset(
    {"rejected", "withdrawn", "accepted", "declined", "archived", "closed"}
)

# Goal statuses that count as still open
OPEN_GOAL_STATUSES = frozenset({"active", "in_progress"})

# Profile fields checked by the profile completeness rule
REQUIRED_PROFILE_FIELDS = (
    "current_position",
    "current_company",
    "location",
    "bio",
    "skills",
)

# Delivery channels
DEFAULT_CHANNELS = {
    "in_app": True,
    "email": False,
    "telegram": True,
}

# Playbooks group rules the user can switch off together
DEFAULT_PLAYBOOKS = {
    "job_search": True,
    "resume_help": True,
    "interview_prep": True,
    "networking": True,
    "career_path": True,
    "application_tracking": True,
}

# Default quiet hours (hour of day, user-local)
DEFAULT_QUIET_START = 22
DEFAULT_QUIET_END = 8

# Limits
MAX_DAILY_LIMIT = 20

# Snooze presets offered on nudge cards (minutes)
SNOOZE_PRESETS = (60, 1440)
