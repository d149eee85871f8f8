"""Data models."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Literal, Tuple

from careernudge.utils.constants import (
    DEFAULT_CHANNELS,
    DEFAULT_PLAYBOOKS,
    DEFAULT_QUIET_END,
    DEFAULT_QUIET_START,
    TERMINAL_NUDGE_STATUSES,
)

NudgeStatus = Literal["pending", "accepted", "snoozed", "dismissed"]
Plan = Literal["free", "premium", "university"]


@dataclass
class User:
    """A product user, optionally linked to a Telegram account."""

    plan: Plan
    created_at: datetime
    telegram_id: int | None = None
    current_position: str | None = None
    current_company: str | None = None
    location: str | None = None
    bio: str | None = None
    skills: Tuple[str, ...] = ()
    id: int | None = None


@dataclass
class UserNudgePreferences:
    """Per-user switches read by the preference and quiet-hours gates."""

    user_id: int
    timezone: str
    daily_limit: int
    agent_enabled: bool = True
    proactive_enabled: bool = True
    quiet_hours_start: int = DEFAULT_QUIET_START
    quiet_hours_end: int = DEFAULT_QUIET_END
    channels: Dict[str, bool] = field(default_factory=lambda: dict(DEFAULT_CHANNELS))
    playbooks: Dict[str, bool] = field(default_factory=lambda: dict(DEFAULT_PLAYBOOKS))
    updated_at: datetime | None = None


@dataclass
class Nudge:
    """An emitted suggestion. Only status and snooze_until ever change."""

    user_id: int
    rule_type: str
    score: float
    reason: str
    status: NudgeStatus
    created_at: datetime  # UTC
    suggested_action: str | None = None
    action_url: str | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    snooze_until: datetime | None = None  # UTC
    id: int | None = None

    @property
    def is_resolved(self) -> bool:
        return self.status in TERMINAL_NUDGE_STATUSES


@dataclass
class RuleCooldown:
    """Last time a rule was emitted to a user."""

    user_id: int
    rule_type: str
    last_fired_at: datetime  # UTC


@dataclass
class NudgeEvent:
    """Audit trail of outcome mutations."""

    nudge_id: int
    action: str
    occurred_at: datetime  # UTC
    snooze_until: datetime | None = None
    id: int | None = None


# Snapshot facts. These are read-only inputs to rule evaluation.


@dataclass(frozen=True)
class Application:
    id: int
    company: str
    job_title: str
    status: str
    created_at: datetime
    applied_at: datetime | None = None
    last_status_change: datetime | None = None
    has_follow_up: bool = False


@dataclass(frozen=True)
class Interview:
    id: int
    application_id: int
    company: str
    title: str
    scheduled_at: datetime | None
    outcome: str = "scheduled"


@dataclass(frozen=True)
class Goal:
    id: int
    title: str
    status: str
    progress: int
    created_at: datetime
    updated_at: datetime | None = None


@dataclass(frozen=True)
class ProfileFields:
    current_position: str | None = None
    current_company: str | None = None
    location: str | None = None
    bio: str | None = None
    skills: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ResumeSignal:
    """Latest resume analysis."""

    resume_id: int
    title: str
    score: int
    gaps: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Contact:
    id: int
    name: str
    last_interaction_at: datetime | None = None


@dataclass(frozen=True)
class UserStateSnapshot:
    """Everything the rules may read for one evaluation pass."""

    user_id: int
    now: datetime  # UTC
    timezone: str
    plan: Plan = "free"
    applications: Tuple[Application, ...] = ()
    interviews: Tuple[Interview, ...] = ()
    goals: Tuple[Goal, ...] = ()
    profile: ProfileFields = field(default_factory=ProfileFields)
    resume: ResumeSignal | None = None
    contacts: Tuple[Contact, ...] = ()
    target_skills: Tuple[str, ...] = ()
