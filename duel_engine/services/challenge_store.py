"""
Challenge Store

Persistence for challenges and their participants.

Responsibilities:
- Insert a challenge with its participant rows
- Active/recent queries used by the command layer and the scheduler
- Guarded status and check_index updates (only while status is still ACTIVE)
- Solve-day streaks for summaries

No method commits; callers own the transaction.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from duel_engine.orm.challenge import Challenge, ChallengeParticipant, ChallengeStatus
from duel_engine.schemas.challenge import ChallengeSpec

logger = logging.getLogger(__name__)


class ChallengeStore:
    """Stateless data access for the challenges tables."""

    # =========================================================================
    # Writes
    # =========================================================================

    @staticmethod
    async def create(db: AsyncSession, spec: ChallengeSpec, started_at: int) -> Challenge:
        challenge = Challenge(
            scope_id=spec.scope_id,
            channel_id=spec.channel_id,
            host_user_id=spec.host_user_id,
            problem_contest_id=spec.problem.contest_id,
            problem_index=spec.problem.index,
            problem_name=spec.problem.name,
            problem_rating=spec.problem.rating,
            length_minutes=spec.length_minutes,
            status=ChallengeStatus.ACTIVE.value,
            started_at=started_at,
            ends_at=started_at + spec.length_minutes * 60,
            check_index=0,
            tournament_id=spec.tournament_id,
        )
        challenge.participants = [
            ChallengeParticipant(user_id=user_id, position=position)
            for position, user_id in enumerate(spec.participant_ids)
        ]
        db.add(challenge)
        await db.flush()
        return challenge

    @staticmethod
    async def claim_tick(db: AsyncSession, challenge: Challenge) -> bool:
        """
        Advance check_index by one, only if the challenge is still ACTIVE and
        nobody else advanced it since it was loaded.
        """
        expected = challenge.check_index
        result = await db.execute(
            update(Challenge)
            .where(
                Challenge.id == challenge.id,
                Challenge.status == ChallengeStatus.ACTIVE.value,
                Challenge.check_index == expected,
            )
            .values(check_index=expected + 1)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            return False
        set_committed_value(challenge, "check_index", expected + 1)
        return True

    @staticmethod
    async def transition_status(
        db: AsyncSession,
        challenge: Challenge,
        new_status: ChallengeStatus,
        completed_at: int,
    ) -> bool:
        """
        UPDATE ... WHERE status = 'active'.

        Returns False when the challenge already left ACTIVE, in which case
        nothing was written.
        """
        result = await db.execute(
            update(Challenge)
            .where(
                Challenge.id == challenge.id,
                Challenge.status == ChallengeStatus.ACTIVE.value,
            )
            .values(status=new_status.value, completed_at=completed_at)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            return False
        set_committed_value(challenge, "status", new_status.value)
        set_committed_value(challenge, "completed_at", completed_at)
        return True

    @staticmethod
    async def set_message_id(db: AsyncSession, challenge: Challenge, message_id: str) -> None:
        await db.execute(
            update(Challenge)
            .where(Challenge.id == challenge.id)
            .values(message_id=message_id)
            .execution_options(synchronize_session=False)
        )
        set_committed_value(challenge, "message_id", message_id)

    # =========================================================================
    # Reads
    # =========================================================================

    @staticmethod
    async def get(db: AsyncSession, challenge_id: str) -> Optional[Challenge]:
        result = await db.execute(select(Challenge).where(Challenge.id == challenge_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def list_active(db: AsyncSession, scope_id: Optional[str] = None) -> List[Challenge]:
        query = select(Challenge).where(Challenge.status == ChallengeStatus.ACTIVE.value)
        if scope_id is not None:
            query = query.where(Challenge.scope_id == scope_id)
        result = await db.execute(query.order_by(Challenge.started_at, Challenge.id))
        return list(result.scalars().all())

    @staticmethod
    async def count_active(db: AsyncSession, scope_id: Optional[str] = None) -> int:
        query = select(func.count(Challenge.id)).where(Challenge.status == ChallengeStatus.ACTIVE.value)
        if scope_id is not None:
            query = query.where(Challenge.scope_id == scope_id)
        result = await db.execute(query)
        return result.scalar() or 0

    @staticmethod
    async def get_active_challenges_for_users(
        db: AsyncSession,
        user_ids: Iterable[str],
    ) -> Dict[str, Challenge]:
        """Map each user with an ACTIVE challenge to that challenge."""
        user_ids = list(dict.fromkeys(user_ids))
        if not user_ids:
            return {}
        result = await db.execute(
            select(ChallengeParticipant.user_id, Challenge)
            .join(Challenge, Challenge.id == ChallengeParticipant.challenge_id)
            .where(
                ChallengeParticipant.user_id.in_(user_ids),
                Challenge.status == ChallengeStatus.ACTIVE.value,
            )
            .order_by(Challenge.started_at)
        )
        active: Dict[str, Challenge] = {}
        for user_id, challenge in result.all():
            active.setdefault(user_id, challenge)
        return active

    @staticmethod
    async def list_active_for_user(
        db: AsyncSession,
        user_id: str,
        scope_id: Optional[str] = None,
    ) -> List[Challenge]:
        query = (
            select(Challenge)
            .join(ChallengeParticipant, ChallengeParticipant.challenge_id == Challenge.id)
            .where(
                ChallengeParticipant.user_id == user_id,
                Challenge.status == ChallengeStatus.ACTIVE.value,
            )
        )
        if scope_id is not None:
            query = query.where(Challenge.scope_id == scope_id)
        result = await db.execute(query.order_by(Challenge.started_at))
        return list(result.scalars().all())

    @staticmethod
    async def list_recent_completed(
        db: AsyncSession,
        scope_id: Optional[str] = None,
        limit: int = 5,
    ) -> List[Challenge]:
        """Completed challenges, most recently completed first, participants loaded."""
        query = select(Challenge).where(Challenge.status == ChallengeStatus.COMPLETED.value)
        if scope_id is not None:
            query = query.where(Challenge.scope_id == scope_id)
        result = await db.execute(
            query.order_by(Challenge.completed_at.desc(), Challenge.id).limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def list_solve_times(db: AsyncSession, scope_id: str, user_id: str) -> List[int]:
        result = await db.execute(
            select(ChallengeParticipant.solved_at)
            .join(Challenge, Challenge.id == ChallengeParticipant.challenge_id)
            .where(
                Challenge.scope_id == scope_id,
                ChallengeParticipant.user_id == user_id,
                ChallengeParticipant.solved_at.isnot(None),
            )
        )
        return [row[0] for row in result.all()]


def compute_streak(solve_times: Iterable[int], now: int) -> Tuple[int, int]:
    """
    Consecutive UTC days with at least one solve.

    Returns (current, best). The current streak survives until the end of the
    day after the last solve.
    """
    days = sorted({
        datetime.fromtimestamp(ts, tz=timezone.utc).date() for ts in solve_times
    })
    if not days:
        return 0, 0

    best = run = 1
    for previous, day in zip(days, days[1:]):
        run = run + 1 if day - previous == timedelta(days=1) else 1
        best = max(best, run)

    today = datetime.fromtimestamp(now, tz=timezone.utc).date()
    current = run if today - days[-1] <= timedelta(days=1) else 0
    return current, best
