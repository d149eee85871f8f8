"""Database repository - all SQL queries."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import AsyncIterator, Dict, List, Sequence, Tuple

import aiosqlite

from careernudge.db.models import (
    Application,
    Contact,
    Goal,
    Interview,
    Nudge,
    NudgeEvent,
    ResumeSignal,
    RuleCooldown,
    User,
    UserNudgePreferences,
)
from careernudge.utils.constants import TERMINAL_NUDGE_STATUSES
from careernudge.utils.time_utils import UTC, utcnow

logger = logging.getLogger(__name__)


def _ts(dt: datetime | None) -> str | None:
    """Serialize a datetime as sortable UTC text."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    """Parse stored UTC text back into an aware datetime."""
    if value is None:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


class Repository:
    """Database access layer.

    One connection is shared by every coroutine. Reads go straight to it;
    writes go through ``transaction()``, which serializes them behind a lock
    and wraps them in ``BEGIN IMMEDIATE`` so a multi-statement write is
    atomic against other processes using the same file.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Open database connection."""
        # isolation_level=None: transactions are opened explicitly below
        self._db = await aiosqlite.connect(self.db_path, isolation_level=None)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys = ON")
        await self._db.execute("PRAGMA busy_timeout = 5000")
        logger.info(f"Connected to database at {self.db_path}")

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("Database connection closed")

    @property
    def db(self) -> aiosqlite.Connection:
        """Get the database connection."""
        if self._db is None:
            raise RuntimeError("Database not connected")
        return self._db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialized write transaction; rolls back on any error."""
        async with self._write_lock:
            await self.db.execute("BEGIN IMMEDIATE")
            try:
                yield self.db
            except BaseException:
                await self.db.rollback()
                raise
            else:
                await self.db.commit()

    # User operations

    async def create_user(
        self,
        plan: str = "free",
        telegram_id: int | None = None,
        current_position: str | None = None,
        current_company: str | None = None,
        location: str | None = None,
        bio: str | None = None,
        skills: Sequence[str] = (),
        target_skills: Sequence[str] = (),
        created_at: datetime | None = None,
    ) -> User:
        """Create a new user."""
        async with self.transaction() as db:
            async with db.execute(
                """
                INSERT INTO users (
                    telegram_id, plan, current_position, current_company,
                    location, bio, skills, target_skills, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING *
                """,
                (
                    telegram_id,
                    plan,
                    current_position,
                    current_company,
                    location,
                    bio,
                    json.dumps(list(skills)),
                    json.dumps(list(target_skills)),
                    _ts(created_at or utcnow()),
                ),
            ) as cursor:
                row = await cursor.fetchone()

        user = self._row_to_user(row)
        logger.info(f"Created user {user.id}")
        return user

    async def get_user_by_id(self, user_id: int) -> User | None:
        """Get user by database ID."""
        async with self.db.execute(
            "SELECT * FROM users WHERE id = ?", (user_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_user(row) if row else None

    async def get_user_by_telegram_id(self, telegram_id: int) -> User | None:
        """Get user by Telegram ID."""
        async with self.db.execute(
            "SELECT * FROM users WHERE telegram_id = ?", (telegram_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_user(row) if row else None

    async def get_telegram_users(self) -> List[User]:
        """Get every user with a linked Telegram account."""
        async with self.db.execute(
            "SELECT * FROM users WHERE telegram_id IS NOT NULL ORDER BY id"
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_user(row) for row in rows]

    async def get_target_skills(self, user_id: int) -> List[str]:
        """Skills required by the user's target roles."""
        async with self.db.execute(
            "SELECT target_skills FROM users WHERE id = ?", (user_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return json.loads(row["target_skills"]) if row else []

    # Preference operations

    async def get_preferences(self, user_id: int) -> UserNudgePreferences | None:
        """Get stored nudge preferences, or None if never saved."""
        async with self.db.execute(
            "SELECT * FROM nudge_preferences WHERE user_id = ?", (user_id,)
        ) as cursor:
            row = await cursor.fetchone()
            if row:
                return UserNudgePreferences(
                    user_id=row["user_id"],
                    agent_enabled=bool(row["agent_enabled"]),
                    proactive_enabled=bool(row["proactive_enabled"]),
                    quiet_hours_start=row["quiet_hours_start"],
                    quiet_hours_end=row["quiet_hours_end"],
                    timezone=row["timezone"],
                    channels=json.loads(row["channels"]),
                    playbooks=json.loads(row["playbooks"]),
                    daily_limit=row["daily_limit"],
                    updated_at=_dt(row["updated_at"]),
                )
            return None

    async def save_preferences(self, prefs: UserNudgePreferences) -> None:
        """Insert or replace a user's preferences."""
        prefs.updated_at = utcnow()
        async with self.transaction() as db:
            await db.execute(
                """
                INSERT INTO nudge_preferences (
                    user_id, agent_enabled, proactive_enabled, quiet_hours_start,
                    quiet_hours_end, timezone, channels, playbooks, daily_limit,
                    updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (user_id) DO UPDATE SET
                    agent_enabled = excluded.agent_enabled,
                    proactive_enabled = excluded.proactive_enabled,
                    quiet_hours_start = excluded.quiet_hours_start,
                    quiet_hours_end = excluded.quiet_hours_end,
                    timezone = excluded.timezone,
                    channels = excluded.channels,
                    playbooks = excluded.playbooks,
                    daily_limit = excluded.daily_limit,
                    updated_at = excluded.updated_at
                """,
                (
                    prefs.user_id,
                    1 if prefs.agent_enabled else 0,
                    1 if prefs.proactive_enabled else 0,
                    prefs.quiet_hours_start,
                    prefs.quiet_hours_end,
                    prefs.timezone,
                    json.dumps(prefs.channels),
                    json.dumps(prefs.playbooks),
                    prefs.daily_limit,
                    _ts(prefs.updated_at),
                ),
            )

    # Nudge operations

    async def get_nudge(self, nudge_id: int) -> Nudge | None:
        """Get a nudge by ID."""
        async with self.db.execute(
            "SELECT * FROM nudges WHERE id = ?", (nudge_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_nudge(row) if row else None

    async def get_nudges_by_user(
        self,
        user_id: int,
        status: str | None = None,
        since: datetime | None = None,
    ) -> List[Nudge]:
        """Get a user's nudges, oldest first, optionally filtered."""
        query = "SELECT * FROM nudges WHERE user_id = ?"
        params: list = [user_id]

        if status:
            query += " AND status = ?"
            params.append(status)
        if since:
            query += " AND created_at >= ?"
            params.append(_ts(since))

        query += " ORDER BY created_at, id"

        async with self.db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_nudge(row) for row in rows]

    async def count_nudges_since(self, user_id: int, since: datetime) -> int:
        """Count nudges created for a user at or after since."""
        async with self.db.execute(
            "SELECT COUNT(*) FROM nudges WHERE user_id = ? AND created_at >= ?",
            (user_id, _ts(since)),
        ) as cursor:
            row = await cursor.fetchone()
            return row[0]

    async def persist_emission(
        self,
        user_id: int,
        nudges: Sequence[Nudge],
        day_start: datetime,
        daily_limit: int,
        cooldown_hours: Dict[str, float],
    ) -> List[Nudge]:
        """Create nudges and their cooldown rows in one transaction.

        The daily count and each rule's cooldown are re-read inside the
        transaction, so a concurrent evaluation that already used up the
        allowance or fired the same rule makes this one insert nothing.

        Args:
            user_id: Owner of the nudges
            nudges: Unsaved nudges, best first
            day_start: Start of the user's local calendar day (UTC)
            daily_limit: Maximum nudges created per local day
            cooldown_hours: Cooldown per rule type

        Returns:
            The nudges actually created, with IDs
        """
        created: List[Nudge] = []

        async with self.transaction() as db:
            async with db.execute(
                "SELECT COUNT(*) FROM nudges WHERE user_id = ? AND created_at >= ?",
                (user_id, _ts(day_start)),
            ) as cursor:
                row = await cursor.fetchone()
                remaining = max(0, daily_limit - row[0])

            for nudge in nudges:
                if len(created) >= remaining:
                    break

                async with db.execute(
                    "SELECT last_fired_at FROM rule_cooldowns WHERE user_id = ? AND rule_type = ?",
                    (user_id, nudge.rule_type),
                ) as cursor:
                    row = await cursor.fetchone()

                if row:
                    last_fired_at = _dt(row["last_fired_at"])
                    hours = cooldown_hours.get(nudge.rule_type, 0)
                    if nudge.created_at - last_fired_at < timedelta(hours=hours):  # type: ignore
                        logger.info(
                            f"Skipping {nudge.rule_type} for user {user_id}: fired concurrently"
                        )
                        continue

                async with db.execute(
                    """
                    INSERT INTO nudges (
                        user_id, rule_type, score, reason, suggested_action,
                        action_url, metadata, status, created_at, snooze_until
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    RETURNING *
                    """,
                    (
                        user_id,
                        nudge.rule_type,
                        nudge.score,
                        nudge.reason,
                        nudge.suggested_action,
                        nudge.action_url,
                        json.dumps(nudge.metadata, default=str),
                        nudge.status,
                        _ts(nudge.created_at),
                        _ts(nudge.snooze_until),
                    ),
                ) as cursor:
                    row = await cursor.fetchone()

                await self._upsert_cooldown(db, user_id, nudge.rule_type, nudge.created_at)
                created.append(self._row_to_nudge(row))

        return created

    async def update_nudge_status(
        self,
        nudge_id: int,
        status: str,
        occurred_at: datetime,
        snooze_until: datetime | None = None,
    ) -> Tuple[Nudge | None, bool]:
        """Transition an unresolved nudge and append the matching audit event.

        The status check and the write share one transaction, so when two
        outcomes race only the first one lands. A resolved nudge is left
        as it is and no event is written.

        Returns:
            The nudge as stored after the call (None if it does not
            exist) and whether this call changed it
        """
        terminal = ", ".join("?" for _ in TERMINAL_NUDGE_STATUSES)

        async with self.transaction() as db:
            async with db.execute(
                f"""
                UPDATE nudges SET status = ?, snooze_until = ?
                WHERE id = ? AND status NOT IN ({terminal})
                RETURNING *
                """,
                (status, _ts(snooze_until), nudge_id, *TERMINAL_NUDGE_STATUSES),
            ) as cursor:
                row = await cursor.fetchone()

            if row is None:
                async with db.execute(
                    "SELECT * FROM nudges WHERE id = ?", (nudge_id,)
                ) as cursor:
                    current = await cursor.fetchone()
                return (self._row_to_nudge(current) if current else None), False

            await db.execute(
                """
                INSERT INTO nudge_events (nudge_id, action, occurred_at, snooze_until)
                VALUES (?, ?, ?, ?)
                """,
                (nudge_id, status, _ts(occurred_at), _ts(snooze_until)),
            )

        return self._row_to_nudge(row), True

    async def resurface_snoozed(self, user_id: int, now: datetime) -> List[Nudge]:
        """Return due snoozed nudges to pending and log each as resurfaced."""
        async with self.transaction() as db:
            async with db.execute(
                """
                UPDATE nudges SET status = 'pending', snooze_until = NULL
                WHERE user_id = ? AND status = 'snoozed'
                AND snooze_until IS NOT NULL AND snooze_until <= ?
                RETURNING *
                """,
                (user_id, _ts(now)),
            ) as cursor:
                rows = await cursor.fetchall()

            for row in rows:
                await db.execute(
                    "INSERT INTO nudge_events (nudge_id, action, occurred_at) VALUES (?, ?, ?)",
                    (row["id"], "resurfaced", _ts(now)),
                )

        nudges = [self._row_to_nudge(row) for row in rows]
        return sorted(nudges, key=lambda n: (n.created_at, n.id))

    async def get_nudge_events(self, nudge_id: int) -> List[NudgeEvent]:
        """Get the audit trail for a nudge, oldest first."""
        async with self.db.execute(
            "SELECT * FROM nudge_events WHERE nudge_id = ? ORDER BY id",
            (nudge_id,),
        ) as cursor:
            rows = await cursor.fetchall()
            return [
                NudgeEvent(
                    id=row["id"],
                    nudge_id=row["nudge_id"],
                    action=row["action"],
                    occurred_at=_dt(row["occurred_at"]),  # type: ignore
                    snooze_until=_dt(row["snooze_until"]),
                )
                for row in rows
            ]

    # Cooldown operations

    async def get_cooldowns(self, user_id: int) -> Dict[str, RuleCooldown]:
        """Get every cooldown row for a user keyed by rule type."""
        async with self.db.execute(
            "SELECT * FROM rule_cooldowns WHERE user_id = ?", (user_id,)
        ) as cursor:
            rows = await cursor.fetchall()
            return {
                row["rule_type"]: RuleCooldown(
                    user_id=row["user_id"],
                    rule_type=row["rule_type"],
                    last_fired_at=_dt(row["last_fired_at"]),  # type: ignore
                )
                for row in rows
            }

    async def get_cooldown(self, user_id: int, rule_type: str) -> RuleCooldown | None:
        """Get the cooldown row for one rule."""
        cooldowns = await self.get_cooldowns(user_id)
        return cooldowns.get(rule_type)

    async def record_cooldown(self, user_id: int, rule_type: str, fired_at: datetime) -> None:
        """Record that a rule fired. Never moves last_fired_at backwards."""
        async with self.transaction() as db:
            await self._upsert_cooldown(db, user_id, rule_type, fired_at)

    async def _upsert_cooldown(
        self, db: aiosqlite.Connection, user_id: int, rule_type: str, fired_at: datetime
    ) -> None:
        await db.execute(
            """
            INSERT INTO rule_cooldowns (user_id, rule_type, last_fired_at)
            VALUES (?, ?, ?)
            ON CONFLICT (user_id, rule_type) DO UPDATE SET
                last_fired_at = MAX(last_fired_at, excluded.last_fired_at)
            """,
            (user_id, rule_type, _ts(fired_at)),
        )

    # Career activity operations (snapshot sources)

    async def add_application(
        self,
        user_id: int,
        company: str,
        job_title: str,
        status: str = "applied",
        applied_at: datetime | None = None,
        last_status_change: datetime | None = None,
        created_at: datetime | None = None,
    ) -> int:
        """Record a job application."""
        created_at = created_at or applied_at or utcnow()
        async with self.transaction() as db:
            async with db.execute(
                """
                INSERT INTO applications (
                    user_id, company, job_title, status, applied_at,
                    last_status_change, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                RETURNING id
                """,
                (
                    user_id,
                    company,
                    job_title,
                    status,
                    _ts(applied_at),
                    _ts(last_status_change or applied_at or created_at),
                    _ts(created_at),
                ),
            ) as cursor:
                row = await cursor.fetchone()
                return row["id"]

    async def add_followup(self, application_id: int, created_at: datetime | None = None) -> None:
        """Log a follow-up sent for an application."""
        async with self.transaction() as db:
            await db.execute(
                "INSERT INTO followups (application_id, created_at) VALUES (?, ?)",
                (application_id, _ts(created_at or utcnow())),
            )

    async def add_interview(
        self,
        application_id: int,
        title: str,
        scheduled_at: datetime | None,
        outcome: str = "scheduled",
    ) -> int:
        """Schedule an interview stage for an application."""
        async with self.transaction() as db:
            async with db.execute(
                """
                INSERT INTO interviews (application_id, title, scheduled_at, outcome)
                VALUES (?, ?, ?, ?)
                RETURNING id
                """,
                (application_id, title, _ts(scheduled_at), outcome),
            ) as cursor:
                row = await cursor.fetchone()
                return row["id"]

    async def add_goal(
        self,
        user_id: int,
        title: str,
        created_at: datetime,
        status: str = "active",
        progress: int = 0,
        updated_at: datetime | None = None,
    ) -> int:
        """Create a career goal."""
        async with self.transaction() as db:
            async with db.execute(
                """
                INSERT INTO goals (user_id, title, status, progress, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                RETURNING id
                """,
                (user_id, title, status, progress, _ts(created_at), _ts(updated_at)),
            ) as cursor:
                row = await cursor.fetchone()
                return row["id"]

    async def add_resume_analysis(
        self,
        user_id: int,
        resume_id: int,
        title: str,
        score: int,
        gaps: Sequence[str] = (),
        analyzed_at: datetime | None = None,
    ) -> None:
        """Store a resume analysis result."""
        async with self.transaction() as db:
            await db.execute(
                """
                INSERT INTO resume_analyses (user_id, resume_id, title, score, gaps, analyzed_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (user_id, resume_id, title, score, json.dumps(list(gaps)), _ts(analyzed_at or utcnow())),
            )

    async def add_contact(
        self, user_id: int, name: str, last_interaction_at: datetime | None = None
    ) -> int:
        """Add a networking contact."""
        async with self.transaction() as db:
            async with db.execute(
                "INSERT INTO contacts (user_id, name, last_interaction_at) VALUES (?, ?, ?) RETURNING id",
                (user_id, name, _ts(last_interaction_at)),
            ) as cursor:
                row = await cursor.fetchone()
                return row["id"]

    async def get_applications(self, user_id: int) -> List[Application]:
        """Get a user's applications with their follow-up flag."""
        async with self.db.execute(
            """
            SELECT a.*, EXISTS (
                SELECT 1 FROM followups f WHERE f.application_id = a.id
            ) AS has_follow_up
            FROM applications a
            WHERE a.user_id = ?
            ORDER BY a.created_at, a.id
            """,
            (user_id,),
        ) as cursor:
            rows = await cursor.fetchall()
            return [
                Application(
                    id=row["id"],
                    company=row["company"],
                    job_title=row["job_title"],
                    status=row["status"],
                    created_at=_dt(row["created_at"]),  # type: ignore
                    applied_at=_dt(row["applied_at"]),
                    last_status_change=_dt(row["last_status_change"]),
                    has_follow_up=bool(row["has_follow_up"]),
                )
                for row in rows
            ]

    async def get_interviews(self, user_id: int) -> List[Interview]:
        """Get interview stages across a user's applications."""
        async with self.db.execute(
            """
            SELECT i.*, a.company FROM interviews i
            JOIN applications a ON a.id = i.application_id
            WHERE a.user_id = ?
            ORDER BY i.scheduled_at, i.id
            """,
            (user_id,),
        ) as cursor:
            rows = await cursor.fetchall()
            return [
                Interview(
                    id=row["id"],
                    application_id=row["application_id"],
                    company=row["company"],
                    title=row["title"],
                    scheduled_at=_dt(row["scheduled_at"]),
                    outcome=row["outcome"],
                )
                for row in rows
            ]

    async def get_goals(self, user_id: int) -> List[Goal]:
        """Get a user's goals."""
        async with self.db.execute(
            "SELECT * FROM goals WHERE user_id = ? ORDER BY created_at, id", (user_id,)
        ) as cursor:
            rows = await cursor.fetchall()
            return [
                Goal(
                    id=row["id"],
                    title=row["title"],
                    status=row["status"],
                    progress=row["progress"],
                    created_at=_dt(row["created_at"]),  # type: ignore
                    updated_at=_dt(row["updated_at"]),
                )
                for row in rows
            ]

    async def get_latest_resume(self, user_id: int) -> ResumeSignal | None:
        """Get the most recent resume analysis."""
        async with self.db.execute(
            """
            SELECT * FROM resume_analyses WHERE user_id = ?
            ORDER BY analyzed_at DESC, id DESC LIMIT 1
            """,
            (user_id,),
        ) as cursor:
            row = await cursor.fetchone()
            if row:
                return ResumeSignal(
                    resume_id=row["resume_id"],
                    title=row["title"],
                    score=row["score"],
                    gaps=tuple(json.loads(row["gaps"])),
                )
            return None

    async def get_contacts(self, user_id: int) -> List[Contact]:
        """Get a user's networking contacts."""
        async with self.db.execute(
            "SELECT * FROM contacts WHERE user_id = ? ORDER BY id", (user_id,)
        ) as cursor:
            rows = await cursor.fetchall()
            return [
                Contact(
                    id=row["id"],
                    name=row["name"],
                    last_interaction_at=_dt(row["last_interaction_at"]),
                )
                for row in rows
            ]

    # Helper methods

    def _row_to_user(self, row: aiosqlite.Row) -> User:
        """Convert a database row to a User object."""
        return User(
            id=row["id"],
            telegram_id=row["telegram_id"],
            plan=row["plan"],
            current_position=row["current_position"],
            current_company=row["current_company"],
            location=row["location"],
            bio=row["bio"],
            skills=tuple(json.loads(row["skills"])),
            created_at=_dt(row["created_at"]),  # type: ignore
        )

    def _row_to_nudge(self, row: aiosqlite.Row) -> Nudge:
        """Convert a database row to a Nudge object."""
        return Nudge(
            id=row["id"],
            user_id=row["user_id"],
            rule_type=row["rule_type"],
            score=row["score"],
            reason=row["reason"],
            suggested_action=row["suggested_action"],
            action_url=row["action_url"],
            metadata=json.loads(row["metadata"]),
            status=row["status"],
            created_at=_dt(row["created_at"]),  # type: ignore
            snooze_until=_dt(row["snooze_until"]),
        )
