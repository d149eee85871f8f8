"""State snapshot providers - the data-store boundary of an evaluation."""

import asyncio
import logging
from datetime import datetime

import aiosqlite

from careernudge.db.models import ProfileFields, UserStateSnapshot
from careernudge.db.repository import Repository
from careernudge.engine.errors import SnapshotUnavailable

logger = logging.getLogger(__name__)


class SnapshotProvider:
    """Builds the immutable facts bundle for one evaluation pass."""

    async def fetch(self, user_id: int, now: datetime, timezone: str) -> UserStateSnapshot:
        raise NotImplementedError


class RepositorySnapshotProvider(SnapshotProvider):
    """Reads career activity from the application database."""

    def __init__(self, repo: Repository):
        self.repo = repo

    async def fetch(self, user_id: int, now: datetime, timezone: str) -> UserStateSnapshot:
        """Load everything the rules read.

        Raises:
            SnapshotUnavailable: The user is unknown or the store failed
        """
        try:
            user = await self.repo.get_user_by_id(user_id)
            if user is None:
                raise SnapshotUnavailable(f"User {user_id} not found")

            applications, interviews, goals, resume, contacts, target_skills = await asyncio.gather(
                self.repo.get_applications(user_id),
                self.repo.get_interviews(user_id),
                self.repo.get_goals(user_id),
                self.repo.get_latest_resume(user_id),
                self.repo.get_contacts(user_id),
                self.repo.get_target_skills(user_id),
            )
        except aiosqlite.Error as e:
            raise SnapshotUnavailable(f"Database error loading user {user_id}: {e}") from e

        return UserStateSnapshot(
            user_id=user_id,
            now=now,
            timezone=timezone,
            plan=user.plan,
            applications=tuple(applications),
            interviews=tuple(interviews),
            goals=tuple(goals),
            profile=ProfileFields(
                current_position=user.current_position,
                current_company=user.current_company,
                location=user.location,
                bio=user.bio,
                skills=user.skills,
            ),
            resume=resume,
            contacts=tuple(contacts),
            target_skills=tuple(target_skills),
        )


async def fetch_snapshot(
    provider: SnapshotProvider,
    user_id: int,
    now: datetime,
    timezone: str,
    timeout: float,
) -> UserStateSnapshot:
    """Fetch a snapshot, failing closed on timeout or provider error.

    Raises:
        SnapshotUnavailable: The provider failed or took longer than timeout
    """
    try:
        return await asyncio.wait_for(provider.fetch(user_id, now, timezone), timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.warning(f"Snapshot for user {user_id} timed out after {timeout}s")
        raise SnapshotUnavailable(f"Snapshot timed out after {timeout}s") from e
    except SnapshotUnavailable:
        raise
    except Exception as e:
        logger.error(f"Snapshot provider failed for user {user_id}: {e}")
        raise SnapshotUnavailable(f"Snapshot provider failed: {e}") from e
