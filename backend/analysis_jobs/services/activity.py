"""User activity tracking. Fire-and-forget: never breaks the calling flow."""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from analysis_jobs.models.user_activity import UserActivity

logger = logging.getLogger(__name__)


class ActivityTracker:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def track_activity(
        self,
        user_id: str,
        action: str,
        category: str,
        page: Optional[str] = None,
        metadata: Optional[dict] = None,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        try:
            async with self._session_factory() as db:
                db.add(UserActivity(
                    user_id=user_id,
                    action=action,
                    category=category,
                    page=page,
                    activity_metadata=metadata,
                    session_id=session_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                ))
                await db.commit()
        except Exception as e:
            logger.warning(f"Failed to track user activity '{action}' for {user_id}: {e}")
