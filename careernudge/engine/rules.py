"""Rule registry - independent nudge rules over a user state snapshot.

Every rule is a pure function of the snapshot. Rules know nothing about each
other, about cooldowns or about daily caps; cross-rule competition happens
only in scoring.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from functools import partial
from typing import Any, Callable, Collection, Dict, List, Mapping, Sequence

from careernudge.config import Config
from careernudge.db.models import UserStateSnapshot
from careernudge.engine.errors import RuleEvaluationError
from careernudge.utils.constants import (
    OPEN_GOAL_STATUSES,
    REQUIRED_PROFILE_FIELDS,
    TERMINAL_APPLICATION_STATUSES,
)
from careernudge.utils.time_utils import days_between, hours_between

logger = logging.getLogger(__name__)


class RuleType(str, Enum):
    INTERVIEW_SOON = "interviewSoon"
    APP_RESCUE = "appRescue"
    RESUME_WEAK = "resumeWeak"
    GOAL_STALLED = "goalStalled"
    NETWORKING_IDLE = "networkingIdle"
    JOB_SEARCH_STALE = "jobSearchStale"
    PROFILE_INCOMPLETE = "profileIncomplete"
    DAILY_CHECK = "dailyCheck"
    WEEKLY_REVIEW = "weeklyReview"
    SKILL_GAP = "skillGap"


class RuleCategory(str, Enum):
    URGENT = "urgent"
    HELPFUL = "helpful"
    MAINTENANCE = "maintenance"
    ENGAGEMENT = "engagement"


# Tie-break order when scores are equal (lower wins)
CATEGORY_PRIORITY = {
    RuleCategory.URGENT: 0,
    RuleCategory.HELPFUL: 1,
    RuleCategory.MAINTENANCE: 2,
    RuleCategory.ENGAGEMENT: 3,
}


@dataclass
class RuleResult:
    """Outcome of evaluating one rule against one snapshot."""

    rule_type: RuleType
    should_trigger: bool
    score: float
    reason: str
    suggested_action: str | None = None
    action_url: str | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RuleDefinition:
    """Static description of a rule plus its evaluator."""

    rule_type: RuleType
    name: str
    description: str
    category: RuleCategory
    base_score: float
    cooldown_hours: float
    evaluate: Callable[[UserStateSnapshot], RuleResult]
    required_plan: str | None = None
    playbook: str | None = None

    @property
    def priority(self) -> int:
        return CATEGORY_PRIORITY[self.category]


@dataclass(frozen=True)
class RuleSettings:
    """Tunable thresholds bound into the rule evaluators."""

    interview_lookahead_hours: float = 48.0
    interview_urgent_hours: float = 24.0
    app_stale_days: int = 14
    goal_stall_days: int = 30
    resume_score_threshold: int = 70
    networking_idle_days: int = 60
    job_search_stale_days: int = 14
    skill_gap_min_missing: int = 2

    @classmethod
    def from_config(cls) -> "RuleSettings":
        return cls(
            interview_lookahead_hours=Config.INTERVIEW_LOOKAHEAD_HOURS,
            app_stale_days=Config.APP_STALE_DAYS,
            goal_stall_days=Config.GOAL_STALL_DAYS,
            resume_score_threshold=Config.RESUME_SCORE_THRESHOLD,
        )


def _no_trigger(rule_type: RuleType, reason: str, **metadata: Any) -> RuleResult:
    return RuleResult(
        rule_type=rule_type,
        should_trigger=False,
        score=0,
        reason=reason,
        metadata=metadata,
    )


def _plural(count: int, singular: str, plural: str) -> str:
    return f"{count} {singular if count == 1 else plural}"


# Rule evaluators


def evaluate_interview_soon(
    snapshot: UserStateSnapshot,
    lookahead_hours: float = 48.0,
    urgent_hours: float = 24.0,
) -> RuleResult:
    """Upcoming interview that still needs preparation.

    Triggers when an interview with outcome "scheduled" falls between now and
    now + lookahead_hours. Interviews inside urgent_hours score higher.
    """
    now = snapshot.now
    window_end = now + timedelta(hours=lookahead_hours)

    upcoming = [
        interview
        for interview in snapshot.interviews
        if interview.outcome == "scheduled"
        and interview.scheduled_at is not None
        and now <= interview.scheduled_at <= window_end
    ]

    if not upcoming:
        return _no_trigger(
            RuleType.INTERVIEW_SOON, f"No interviews in next {lookahead_hours:g} hours"
        )

    earliest = min(upcoming, key=lambda i: (i.scheduled_at, i.id))
    hours_until = round(hours_between(now, earliest.scheduled_at))  # type: ignore
    is_urgent = earliest.scheduled_at <= now + timedelta(hours=urgent_hours)  # type: ignore

    return RuleResult(
        rule_type=RuleType.INTERVIEW_SOON,
        should_trigger=True,
        score=95 if is_urgent else 85,
        reason=f"Interview with {earliest.company} in {hours_until} hours",
        suggested_action=f"Review your prep materials for {earliest.company}",
        action_url=f"/applications/{earliest.application_id}",
        metadata={
            "company": earliest.company,
            "stage_title": earliest.title,
            "scheduled_at": earliest.scheduled_at.isoformat(),  # type: ignore
            "hours_until": hours_until,
            "upcoming_count": len(upcoming),
        },
    )


def evaluate_app_rescue(snapshot: UserStateSnapshot, stale_days: int = 14) -> RuleResult:
    """Applications stuck without a status change and without a follow-up."""
    cutoff = snapshot.now - timedelta(days=stale_days)

    def last_change(app):
        return app.last_status_change or app.applied_at or app.created_at

    stale = [
        app
        for app in snapshot.applications
        if app.status.lower() not in TERMINAL_APPLICATION_STATUSES
        and not app.has_follow_up
        and last_change(app) < cutoff
    ]

    if not stale:
        return _no_trigger(RuleType.APP_RESCUE, "No stale applications")

    oldest = min(stale, key=lambda app: (last_change(app), app.id))
    days_ago = round(days_between(last_change(oldest), snapshot.now))

    return RuleResult(
        rule_type=RuleType.APP_RESCUE,
        should_trigger=True,
        # Older silence means a more valuable follow-up
        score=min(70 + max(days_ago - stale_days, 0) * 2, 90),
        reason=f"{_plural(len(stale), 'application needs', 'applications need')} follow-up",
        suggested_action=f"Follow up on your application to {oldest.company}",
        action_url=f"/applications/{oldest.id}",
        metadata={
            "stale_count": len(stale),
            "oldest_company": oldest.company,
            "oldest_days_ago": days_ago,
        },
    )


def evaluate_resume_weak(snapshot: UserStateSnapshot, threshold: int = 70) -> RuleResult:
    """Latest resume analysis scored below the threshold."""
    resume = snapshot.resume
    if resume is None:
        return _no_trigger(RuleType.RESUME_WEAK, "No analyzed resume found")

    if resume.score >= threshold:
        return _no_trigger(
            RuleType.RESUME_WEAK, "Resume score is acceptable", current_score=resume.score
        )

    return RuleResult(
        rule_type=RuleType.RESUME_WEAK,
        should_trigger=True,
        score=65 + (threshold - resume.score) / 2,
        reason=f"Resume scored {resume.score}/100",
        suggested_action=f"Improve your resume (current score: {resume.score}/100)",
        action_url=f"/resumes/{resume.resume_id}",
        metadata={
            "resume_id": resume.resume_id,
            "resume_title": resume.title,
            "current_score": resume.score,
            "top_gaps": list(resume.gaps[:3]),
        },
    )


def evaluate_goal_stalled(snapshot: UserStateSnapshot, stall_days: int = 30) -> RuleResult:
    """Open goals with zero progress older than stall_days."""
    cutoff = snapshot.now - timedelta(days=stall_days)

    stalled = [
        goal
        for goal in snapshot.goals
        if goal.status in OPEN_GOAL_STATUSES
        and goal.progress == 0
        and goal.created_at < cutoff
    ]

    if not stalled:
        return _no_trigger(RuleType.GOAL_STALLED, "No stalled goals")

    oldest = min(stalled, key=lambda goal: (goal.created_at, goal.id))
    days_stalled = round(days_between(oldest.created_at, snapshot.now))

    return RuleResult(
        rule_type=RuleType.GOAL_STALLED,
        should_trigger=True,
        score=min(60 + days_stalled // 10, 80),
        reason=f"{_plural(len(stalled), 'goal hasn', 'goals haven')}'t been updated",
        suggested_action=f'Make progress on "{oldest.title}"',
        action_url="/goals",
        metadata={
            "stalled_count": len(stalled),
            "oldest_goal_title": oldest.title,
            "days_stalled": days_stalled,
        },
    )


def evaluate_networking_idle(snapshot: UserStateSnapshot, idle_days: int = 60) -> RuleResult:
    """Contacts exist but none has been touched in idle_days."""
    if not snapshot.contacts:
        return _no_trigger(RuleType.NETWORKING_IDLE, "No contacts to network with")

    cutoff = snapshot.now - timedelta(days=idle_days)
    recent = [
        contact
        for contact in snapshot.contacts
        if contact.last_interaction_at is not None and contact.last_interaction_at > cutoff
    ]

    if recent:
        return _no_trigger(
            RuleType.NETWORKING_IDLE, "Recent networking activity found", recent_count=len(recent)
        )

    return RuleResult(
        rule_type=RuleType.NETWORKING_IDLE,
        should_trigger=True,
        score=55,
        reason=f"{_plural(len(snapshot.contacts), 'contact needs', 'contacts need')} follow-up",
        suggested_action="Reach out to your professional network",
        action_url="/contacts",
        metadata={"total_contacts": len(snapshot.contacts)},
    )


def evaluate_job_search_stale(snapshot: UserStateSnapshot, stale_days: int = 14) -> RuleResult:
    """User has searched before but created no application recently."""
    if not snapshot.applications:
        return _no_trigger(RuleType.JOB_SEARCH_STALE, "User has never applied to a job")

    latest = max(app.created_at for app in snapshot.applications)
    if latest > snapshot.now - timedelta(days=stale_days):
        return _no_trigger(RuleType.JOB_SEARCH_STALE, "Recent job search activity found")

    days_since = round(days_between(latest, snapshot.now))

    return RuleResult(
        rule_type=RuleType.JOB_SEARCH_STALE,
        should_trigger=True,
        score=50,
        reason=f"No job search activity in {days_since} days",
        suggested_action="Continue your job search",
        action_url="/dashboard",
        metadata={"days_since_activity": days_since},
    )


def evaluate_profile_incomplete(snapshot: UserStateSnapshot) -> RuleResult:
    """Any required profile field is empty."""
    missing = [
        name for name in REQUIRED_PROFILE_FIELDS if not getattr(snapshot.profile, name, None)
    ]

    if not missing:
        return _no_trigger(RuleType.PROFILE_INCOMPLETE, "Profile is complete")

    return RuleResult(
        rule_type=RuleType.PROFILE_INCOMPLETE,
        should_trigger=True,
        score=45 + len(missing) * 5,
        reason=f"{_plural(len(missing), 'profile field is', 'profile fields are')} missing",
        suggested_action="Complete your profile to improve job matches",
        action_url="/account",
        metadata={"missing_fields": missing},
    )


def evaluate_daily_check(snapshot: UserStateSnapshot) -> RuleResult:
    """Catch-all check-in; outranked by anything more specific."""
    return RuleResult(
        rule_type=RuleType.DAILY_CHECK,
        should_trigger=True,
        score=30,
        reason="Daily check-in",
        suggested_action="Check your career dashboard",
        action_url="/dashboard",
    )


def evaluate_weekly_review(snapshot: UserStateSnapshot) -> RuleResult:
    week_ago = snapshot.now - timedelta(days=7)
    applications = [app for app in snapshot.applications if app.created_at > week_ago]
    goals = [
        goal for goal in snapshot.goals if goal.updated_at is not None and goal.updated_at > week_ago
    ]

    return RuleResult(
        rule_type=RuleType.WEEKLY_REVIEW,
        should_trigger=True,
        score=35,
        reason="Weekly progress summary available",
        suggested_action="Review your weekly progress",
        action_url="/dashboard",
        metadata={
            "applications_this_week": len(applications),
            "goals_updated": len(goals),
        },
    )


def evaluate_skill_gap(snapshot: UserStateSnapshot, min_missing: int = 2) -> RuleResult:
    """Skills required by target roles that the profile does not list."""
    if not snapshot.target_skills:
        return _no_trigger(RuleType.SKILL_GAP, "No target roles to compare against")

    have = {skill.strip().lower() for skill in snapshot.profile.skills}
    missing = sorted(
        {skill for skill in snapshot.target_skills if skill.strip().lower() not in have}
    )

    if len(missing) < min_missing:
        return _no_trigger(RuleType.SKILL_GAP, "Skills match target roles", missing_skills=missing)

    return RuleResult(
        rule_type=RuleType.SKILL_GAP,
        should_trigger=True,
        score=min(55 + len(missing) * 5, 75),
        reason=f"{_plural(len(missing), 'skill is', 'skills are')} missing for your target roles",
        suggested_action=f"Start learning {missing[0]}",
        action_url="/career-path",
        metadata={"missing_skills": missing[:5], "missing_count": len(missing)},
    )


# Registry


def build_registry(settings: RuleSettings | None = None) -> Dict[RuleType, RuleDefinition]:
    """Build the static rule table with thresholds bound from settings."""
    settings = settings or RuleSettings()

    definitions = [
        RuleDefinition(
            rule_type=RuleType.INTERVIEW_SOON,
            name="Interview Preparation Reminder",
            description="User has an interview in the next 24-48 hours",
            category=RuleCategory.URGENT,
            base_score=95,
            cooldown_hours=24,
            evaluate=partial(
                evaluate_interview_soon,
                lookahead_hours=settings.interview_lookahead_hours,
                urgent_hours=settings.interview_urgent_hours,
            ),
            playbook="interview_prep",
        ),
        RuleDefinition(
            rule_type=RuleType.APP_RESCUE,
            name="Application Follow-Up Reminder",
            description="User has stale applications that need follow-up",
            category=RuleCategory.HELPFUL,
            base_score=70,
            cooldown_hours=7 * 24,
            evaluate=partial(evaluate_app_rescue, stale_days=settings.app_stale_days),
            playbook="application_tracking",
        ),
        RuleDefinition(
            rule_type=RuleType.RESUME_WEAK,
            name="Resume Improvement Suggestion",
            description="User resume has low quality score",
            category=RuleCategory.HELPFUL,
            base_score=65,
            cooldown_hours=7 * 24,
            evaluate=partial(evaluate_resume_weak, threshold=settings.resume_score_threshold),
            playbook="resume_help",
        ),
        RuleDefinition(
            rule_type=RuleType.GOAL_STALLED,
            name="Goal Progress Reminder",
            description="User has stalled career goals",
            category=RuleCategory.ENGAGEMENT,
            base_score=60,
            cooldown_hours=7 * 24,
            evaluate=partial(evaluate_goal_stalled, stall_days=settings.goal_stall_days),
            playbook="career_path",
        ),
        RuleDefinition(
            rule_type=RuleType.NETWORKING_IDLE,
            name="Networking Activity Reminder",
            description="User networking activity has gone quiet",
            category=RuleCategory.ENGAGEMENT,
            base_score=55,
            cooldown_hours=14 * 24,
            evaluate=partial(evaluate_networking_idle, idle_days=settings.networking_idle_days),
            required_plan="premium",
            playbook="networking",
        ),
        RuleDefinition(
            rule_type=RuleType.JOB_SEARCH_STALE,
            name="Job Search Activity Reminder",
            description="User job search activity has slowed down",
            category=RuleCategory.ENGAGEMENT,
            base_score=50,
            cooldown_hours=7 * 24,
            evaluate=partial(evaluate_job_search_stale, stale_days=settings.job_search_stale_days),
            playbook="job_search",
        ),
        RuleDefinition(
            rule_type=RuleType.PROFILE_INCOMPLETE,
            name="Complete Your Profile",
            description="User profile has critical missing fields",
            category=RuleCategory.MAINTENANCE,
            base_score=45,
            cooldown_hours=7 * 24,
            evaluate=evaluate_profile_incomplete,
        ),
        RuleDefinition(
            rule_type=RuleType.DAILY_CHECK,
            name="Daily Career Check-In",
            description="Daily engagement reminder",
            category=RuleCategory.ENGAGEMENT,
            base_score=30,
            cooldown_hours=24,
            evaluate=evaluate_daily_check,
        ),
        RuleDefinition(
            rule_type=RuleType.WEEKLY_REVIEW,
            name="Weekly Progress Review",
            description="Weekly career progress summary",
            category=RuleCategory.ENGAGEMENT,
            base_score=35,
            cooldown_hours=7 * 24,
            evaluate=evaluate_weekly_review,
        ),
        RuleDefinition(
            rule_type=RuleType.SKILL_GAP,
            name="Skill Development Suggestion",
            description="User is missing skills for target jobs",
            category=RuleCategory.HELPFUL,
            base_score=55,
            cooldown_hours=14 * 24,
            evaluate=partial(evaluate_skill_gap, min_missing=settings.skill_gap_min_missing),
            required_plan="premium",
            playbook="career_path",
        ),
    ]

    registry = {definition.rule_type: definition for definition in definitions}

    missing = set(RuleType) - set(registry)
    if missing or len(registry) != len(definitions):
        raise RuntimeError(f"Rule registry is not exhaustive: missing {sorted(missing)}")

    return registry


RULE_REGISTRY = build_registry(RuleSettings.from_config())


def get_rule(rule_type: RuleType | str, registry: Mapping[RuleType, RuleDefinition] | None = None) -> RuleDefinition:
    """Look up a rule by enum member or wire name.

    Raises:
        ValueError: Unknown rule type
    """
    registry = registry if registry is not None else RULE_REGISTRY
    try:
        return registry[RuleType(rule_type)]
    except (ValueError, KeyError):
        raise ValueError(f"Unknown rule type: {rule_type}")


def applicable_rules(
    registry: Mapping[RuleType, RuleDefinition],
    plan: str,
    playbooks: Mapping[str, bool] | None = None,
    categories: Collection[RuleCategory] | None = None,
    rule_types: Collection[RuleType] | None = None,
) -> List[RuleDefinition]:
    """Rules available on the user's plan and not switched off by a playbook.

    categories and rule_types narrow the result further when given; None
    means no restriction.
    """
    rules = []
    for definition in registry.values():
        if definition.required_plan and definition.required_plan != plan:
            continue
        if playbooks and definition.playbook and not playbooks.get(definition.playbook, True):
            continue
        if categories is not None and definition.category not in categories:
            continue
        if rule_types is not None and definition.rule_type not in rule_types:
            continue
        rules.append(definition)
    return rules


def _check_result(definition: RuleDefinition, result: Any) -> RuleResult:
    rule = definition.rule_type.value
    if not isinstance(result, RuleResult):
        raise RuleEvaluationError(rule, f"returned {type(result).__name__}, not RuleResult")
    if result.rule_type != definition.rule_type:
        raise RuleEvaluationError(rule, f"result tagged as {result.rule_type}")
    if isinstance(result.score, bool) or not isinstance(result.score, (int, float)):
        raise RuleEvaluationError(rule, f"non-numeric score {result.score!r}")
    if not math.isfinite(result.score):
        raise RuleEvaluationError(rule, f"non-finite score {result.score!r}")
    if not isinstance(result.reason, str):
        raise RuleEvaluationError(rule, "reason is not a string")
    return result


def run_rules(
    definitions: Sequence[RuleDefinition], snapshot: UserStateSnapshot
) -> List[RuleResult]:
    """Evaluate each rule in isolation.

    A rule that raises or returns malformed data is logged and left out;
    the remaining rules still run.
    """
    results = []

    for definition in definitions:
        try:
            result = _check_result(definition, definition.evaluate(snapshot))
        except RuleEvaluationError as e:
            logger.error(f"{e} (user {snapshot.user_id})")
            continue
        except Exception as e:
            error = RuleEvaluationError(definition.rule_type.value, repr(e))
            logger.error(f"{error} (user {snapshot.user_id})", exc_info=True)
            continue

        results.append(result)

    return results
