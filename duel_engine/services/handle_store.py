"""
SQL-backed handle/rating store over the linked_users table.

Every call runs on the caller's session, so rating writes commit or roll
back together with the challenge transition that caused them.
"""
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from duel_engine.config import settings
from duel_engine.orm.linked_user import LinkedUser

logger = logging.getLogger(__name__)


class SqlHandleStore:

    async def _get(self, db: AsyncSession, scope_id: str, user_id: str) -> Optional[LinkedUser]:
        result = await db.execute(
            select(LinkedUser).where(
                LinkedUser.scope_id == scope_id,
                LinkedUser.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_rating(self, db: AsyncSession, scope_id: str, user_id: str) -> Optional[int]:
        linked = await self._get(db, scope_id, user_id)
        return linked.rating if linked else None

    async def update_rating(self, db: AsyncSession, scope_id: str, user_id: str, new_rating: int) -> None:
        linked = await self._get(db, scope_id, user_id)
        if linked is None:
            logger.warning(f"Rating update for unlinked user: scope={scope_id} user={user_id}")
            return
        linked.rating = new_rating
        await db.flush()

    async def get_linked_handle(self, db: AsyncSession, scope_id: str, user_id: str) -> Optional[str]:
        linked = await self._get(db, scope_id, user_id)
        return linked.handle if linked else None

    async def link(
        self,
        db: AsyncSession,
        scope_id: str,
        user_id: str,
        handle: str,
        rating: Optional[int] = None,
    ) -> LinkedUser:
        """Create or re-point a link. New links start at DEFAULT_RATING."""
        linked = await self._get(db, scope_id, user_id)
        if linked is None:
            linked = LinkedUser(
                scope_id=scope_id,
                user_id=user_id,
                handle=handle,
                rating=settings.DEFAULT_RATING if rating is None else rating,
            )
            db.add(linked)
        else:
            linked.handle = handle
            if rating is not None:
                linked.rating = rating
        await db.flush()
        logger.info(f"Handle linked: scope={scope_id} user={user_id} handle={handle}")
        return linked
