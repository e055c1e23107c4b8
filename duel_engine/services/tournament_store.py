"""
Tournament Store

Persistence for tournaments, participants, rounds, matches and the arena
tables. Like ChallengeStore it never commits; the engine owns transactions.
"""
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from duel_engine.orm.tournament import (
    Tournament, TournamentParticipant, TournamentRound, TournamentMatch,
    ArenaState, ArenaProblem, ArenaSolve,
    TournamentFormat, TournamentStatus, MatchStatus, OPEN_MATCH_STATUSES,
)

logger = logging.getLogger(__name__)


class TournamentStore:

    # =========================================================================
    # Tournaments and participants
    # =========================================================================

    @staticmethod
    async def create_tournament(
        db: AsyncSession,
        guild_id: str,
        host_user_id: str,
        format: TournamentFormat,
        length_minutes: int,
        round_count: int,
        participant_ids: Sequence[str],
        channel_id: Optional[str] = None,
    ) -> Tournament:
        tournament = Tournament(
            guild_id=guild_id,
            channel_id=channel_id,
            host_user_id=host_user_id,
            format=format.value,
            status=TournamentStatus.ACTIVE.value,
            length_minutes=length_minutes,
            round_count=round_count,
            current_round=0,
        )
        tournament.participants = [
            TournamentParticipant(
                user_id=user_id, seed=seed, score=0.0, wins=0, losses=0, draws=0, eliminated=False
            )
            for seed, user_id in enumerate(participant_ids, start=1)
        ]
        db.add(tournament)
        await db.flush()
        return tournament

    @staticmethod
    async def get_tournament(db: AsyncSession, tournament_id: str) -> Optional[Tournament]:
        result = await db.execute(select(Tournament).where(Tournament.id == tournament_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_active_tournament(db: AsyncSession, guild_id: str) -> Optional[Tournament]:
        result = await db.execute(
            select(Tournament)
            .where(
                Tournament.guild_id == guild_id,
                Tournament.status == TournamentStatus.ACTIVE.value,
            )
            .order_by(Tournament.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def list_active_arena_tournaments(db: AsyncSession) -> List[Tournament]:
        result = await db.execute(
            select(Tournament).where(
                Tournament.status == TournamentStatus.ACTIVE.value,
                Tournament.format == TournamentFormat.ARENA.value,
            )
        )
        return list(result.scalars().all())

    @staticmethod
    async def set_tournament_status(
        db: AsyncSession,
        tournament: Tournament,
        new_status: TournamentStatus,
    ) -> bool:
        """Guarded ACTIVE → terminal transition."""
        result = await db.execute(
            update(Tournament)
            .where(
                Tournament.id == tournament.id,
                Tournament.status == TournamentStatus.ACTIVE.value,
            )
            .values(status=new_status.value)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            return False
        set_committed_value(tournament, "status", new_status.value)
        return True

    @staticmethod
    async def list_participants(db: AsyncSession, tournament_id: str) -> List[TournamentParticipant]:
        result = await db.execute(
            select(TournamentParticipant)
            .where(TournamentParticipant.tournament_id == tournament_id)
            .order_by(TournamentParticipant.seed)
        )
        return list(result.scalars().all())

    @staticmethod
    async def get_participants_by_user(
        db: AsyncSession,
        tournament_id: str,
        user_ids: Sequence[str],
    ) -> Dict[str, TournamentParticipant]:
        result = await db.execute(
            select(TournamentParticipant).where(
                TournamentParticipant.tournament_id == tournament_id,
                TournamentParticipant.user_id.in_(list(user_ids)),
            )
        )
        return {p.user_id: p for p in result.scalars().all()}

    @staticmethod
    async def count_participants(db: AsyncSession, tournament_ids: Sequence[str]) -> Dict[str, int]:
        if not tournament_ids:
            return {}
        result = await db.execute(
            select(TournamentParticipant.tournament_id, func.count(TournamentParticipant.id))
            .where(TournamentParticipant.tournament_id.in_(list(tournament_ids)))
            .group_by(TournamentParticipant.tournament_id)
        )
        return {tournament_id: count for tournament_id, count in result.all()}

    @staticmethod
    async def list_finished_tournaments(
        db: AsyncSession,
        guild_id: str,
        limit: int,
        offset: int,
    ) -> Tuple[List[Tournament], int]:
        finished = (TournamentStatus.COMPLETED.value, TournamentStatus.CANCELLED.value)
        count_result = await db.execute(
            select(func.count(Tournament.id)).where(
                Tournament.guild_id == guild_id,
                Tournament.status.in_(finished),
            )
        )
        total = count_result.scalar() or 0

        result = await db.execute(
            select(Tournament)
            .where(Tournament.guild_id == guild_id, Tournament.status.in_(finished))
            .order_by(Tournament.updated_at.desc(), Tournament.id)
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total

    # =========================================================================
    # Rounds and matches
    # =========================================================================

    @staticmethod
    async def create_round(
        db: AsyncSession,
        tournament: Tournament,
        round_number: int,
        status: str,
        problem=None,
    ) -> TournamentRound:
        round_ = TournamentRound(
            tournament_id=tournament.id,
            round_number=round_number,
            status=status,
            problem_contest_id=problem.contest_id if problem else None,
            problem_index=problem.index if problem else None,
            problem_name=problem.name if problem else None,
            problem_rating=problem.rating if problem else None,
        )
        db.add(round_)
        await db.flush()
        return round_

    @staticmethod
    async def get_round(db: AsyncSession, tournament_id: str, round_number: int) -> Optional[TournamentRound]:
        result = await db.execute(
            select(TournamentRound).where(
                TournamentRound.tournament_id == tournament_id,
                TournamentRound.round_number == round_number,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_round_by_id(db: AsyncSession, round_id: str) -> Optional[TournamentRound]:
        result = await db.execute(select(TournamentRound).where(TournamentRound.id == round_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def list_rounds(
        db: AsyncSession,
        tournament_id: str,
        limit: Optional[int] = None,
    ) -> List[TournamentRound]:
        """Most recent round first."""
        query = (
            select(TournamentRound)
            .where(TournamentRound.tournament_id == tournament_id)
            .order_by(TournamentRound.round_number.desc())
        )
        if limit is not None:
            query = query.limit(limit)
        result = await db.execute(query)
        return list(result.scalars().all())

    @staticmethod
    async def add_match(
        db: AsyncSession,
        round_: TournamentRound,
        match_number: int,
        player1_id: str,
        player2_id: Optional[str],
        challenge_id: Optional[str] = None,
    ) -> TournamentMatch:
        if player2_id is None:
            match = TournamentMatch(
                tournament_id=round_.tournament_id,
                round_id=round_.id,
                match_number=match_number,
                player1_id=player1_id,
                player2_id=None,
                winner_id=player1_id,
                status=MatchStatus.BYE.value,
                is_draw=False,
            )
        else:
            match = TournamentMatch(
                tournament_id=round_.tournament_id,
                round_id=round_.id,
                match_number=match_number,
                player1_id=player1_id,
                player2_id=player2_id,
                challenge_id=challenge_id,
                status=MatchStatus.ACTIVE.value if challenge_id else MatchStatus.PENDING.value,
                is_draw=False,
            )
        db.add(match)
        await db.flush()
        return match

    @staticmethod
    async def get_match(db: AsyncSession, match_id: str) -> Optional[TournamentMatch]:
        result = await db.execute(select(TournamentMatch).where(TournamentMatch.id == match_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_match_by_challenge(db: AsyncSession, challenge_id: str) -> Optional[TournamentMatch]:
        result = await db.execute(
            select(TournamentMatch).where(TournamentMatch.challenge_id == challenge_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def list_round_matches(db: AsyncSession, round_id: str) -> List[TournamentMatch]:
        result = await db.execute(
            select(TournamentMatch)
            .where(TournamentMatch.round_id == round_id)
            .order_by(TournamentMatch.match_number)
        )
        return list(result.scalars().all())

    @staticmethod
    async def list_tournament_matches(db: AsyncSession, tournament_id: str) -> List[TournamentMatch]:
        result = await db.execute(
            select(TournamentMatch).where(TournamentMatch.tournament_id == tournament_id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def list_open_linked_matches(db: AsyncSession, tournament_id: Optional[str] = None) -> List[TournamentMatch]:
        query = select(TournamentMatch).where(
            TournamentMatch.status.in_(OPEN_MATCH_STATUSES),
            TournamentMatch.challenge_id.isnot(None),
        )
        if tournament_id is not None:
            query = query.where(TournamentMatch.tournament_id == tournament_id)
        result = await db.execute(query)
        return list(result.scalars().all())

    @staticmethod
    async def resolve_match(
        db: AsyncSession,
        match: TournamentMatch,
        winner_id: Optional[str],
        is_draw: bool,
    ) -> bool:
        """
        Guarded open → COMPLETED transition.

        Returns False if the match was already resolved, in which case the
        caller must not touch participant counters.
        """
        result = await db.execute(
            update(TournamentMatch)
            .where(
                TournamentMatch.id == match.id,
                TournamentMatch.status.in_(OPEN_MATCH_STATUSES),
            )
            .values(status=MatchStatus.COMPLETED.value, winner_id=winner_id, is_draw=is_draw)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            return False
        set_committed_value(match, "status", MatchStatus.COMPLETED.value)
        set_committed_value(match, "winner_id", winner_id)
        set_committed_value(match, "is_draw", is_draw)
        return True

    # =========================================================================
    # Arena
    # =========================================================================

    @staticmethod
    async def create_arena_state(
        db: AsyncSession,
        tournament: Tournament,
        starts_at: int,
        ends_at: int,
        problems: Sequence,
    ) -> ArenaState:
        state = ArenaState(
            tournament_id=tournament.id,
            starts_at=starts_at,
            ends_at=ends_at,
            problem_count=len(problems),
        )
        db.add(state)
        for problem in problems:
            db.add(ArenaProblem(
                tournament_id=tournament.id,
                problem_contest_id=problem.contest_id,
                problem_index=problem.index,
                problem_name=problem.name,
                problem_rating=problem.rating or 0,
                problem_tags=",".join(problem.tags) if problem.tags else None,
            ))
        await db.flush()
        return state

    @staticmethod
    async def get_arena_state(db: AsyncSession, tournament_id: str) -> Optional[ArenaState]:
        result = await db.execute(select(ArenaState).where(ArenaState.tournament_id == tournament_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def list_arena_problems(db: AsyncSession, tournament_id: str) -> List[ArenaProblem]:
        result = await db.execute(
            select(ArenaProblem)
            .where(ArenaProblem.tournament_id == tournament_id)
            .order_by(ArenaProblem.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def list_arena_solves(
        db: AsyncSession,
        tournament_id: str,
        user_id: Optional[str] = None,
    ) -> List[ArenaSolve]:
        query = select(ArenaSolve).where(ArenaSolve.tournament_id == tournament_id)
        if user_id is not None:
            query = query.where(ArenaSolve.user_id == user_id)
        result = await db.execute(query.order_by(ArenaSolve.solved_at, ArenaSolve.id))
        return list(result.scalars().all())

    @staticmethod
    async def add_arena_solve(
        db: AsyncSession,
        tournament_id: str,
        user_id: str,
        contest_id: int,
        index: str,
        submission_id: int,
        solved_at: int,
    ) -> ArenaSolve:
        solve = ArenaSolve(
            tournament_id=tournament_id,
            user_id=user_id,
            problem_contest_id=contest_id,
            problem_index=index,
            submission_id=submission_id,
            solved_at=solved_at,
        )
        db.add(solve)
        await db.flush()
        return solve
