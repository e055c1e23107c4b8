"""
Tournament Engine

Builds tournaments on top of challenges and keeps their scores.

Responsibilities:
- Creation, round start from caller-supplied pairings, advance, cancel
- Match resolution from completed challenges (idempotent)
- Standings: swiss/elimination with a Sonneborn-Berger tiebreak, arena by
  distinct solves
- Arena live-solve tick
- History, detail and recap projections

Pairing generation is not done here; callers pass (player1, player2 | None)
tuples, None meaning a bye.
"""
import asyncio
import logging
import math
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from duel_engine.config import settings
from duel_engine.exceptions import (
    ForbiddenError, InvalidSpecError, NotFoundError, TournamentStateError
)
from duel_engine.orm.challenge import ChallengeStatus
from duel_engine.orm.tournament import (
    Tournament, TournamentParticipant, TournamentRound, TournamentMatch,
    TournamentFormat, TournamentStatus, RoundStatus, MatchStatus,
)
from duel_engine.schemas.challenge import ChallengeSpec, ProblemRef
from duel_engine.schemas.tournament import (
    ArenaProblemSummary, ArenaStatus, ArenaTickReport, MatchSummary, RenderedTournament,
    RoundSummary, StandingEntry, TournamentHistoryDetail, TournamentHistoryEntry,
    TournamentHistoryPage, TournamentRecap,
)
from duel_engine.services.challenge_scheduler import epoch_now
from duel_engine.services.challenge_store import ChallengeStore
from duel_engine.services.collaborators import (
    AcceptedSubmission, HandleStore, LoggingMessageSink, MessageSink,
    ProblemCatalog, SubmissionSource, SummaryRef,
)
from duel_engine.services.tournament_store import TournamentStore

logger = logging.getLogger(__name__)

Pairing = Tuple[str, Optional[str]]
CancellationListener = Callable[[List[str]], Awaitable[None]]

DEFAULT_ROUND_SUMMARY_LIMIT = 5
DETAIL_ROUND_LIMIT = 3
DETAIL_STANDINGS_LIMIT = 5


# =============================================================================
# Pure scoring helpers
# =============================================================================

def match_result_weight(match: TournamentMatch, user_id: str) -> float:
    """1 for a win, 0.5 for a draw, 0 for a loss."""
    if match.is_draw:
        return 0.5
    return 1.0 if match.winner_id == user_id else 0.0


def compute_swiss_standings(
    participants: Sequence[TournamentParticipant],
    matches: Sequence[TournamentMatch],
) -> List[StandingEntry]:
    """
    Rank by score desc, Sonneborn-Berger desc, seed asc.

    The tiebreak uses opponents' current scores, so it is recomputed on
    every call. Byes add nothing to it.
    """
    score_by_user = {p.user_id: p.score for p in participants}
    tiebreak = {p.user_id: 0.0 for p in participants}
    played = {p.user_id: 0 for p in participants}

    for match in matches:
        if not match.is_resolved:
            continue
        for user_id in match.players():
            if user_id in played:
                played[user_id] += 1
        if match.is_bye:
            continue
        for user_id, opponent_id in (
            (match.player1_id, match.player2_id),
            (match.player2_id, match.player1_id),
        ):
            if user_id in tiebreak:
                tiebreak[user_id] += score_by_user.get(opponent_id, 0.0) * match_result_weight(match, user_id)

    ordered = sorted(
        participants,
        key=lambda p: (-p.score, -tiebreak[p.user_id], p.seed),
    )
    return [
        StandingEntry(
            rank=rank,
            user_id=p.user_id,
            seed=p.seed,
            score=p.score,
            wins=p.wins,
            losses=p.losses,
            draws=p.draws,
            eliminated=p.eliminated,
            tiebreak=tiebreak[p.user_id],
            matches_played=played[p.user_id],
        )
        for rank, p in enumerate(ordered, start=1)
    ]


def compute_arena_standings(participants: Sequence[TournamentParticipant], solves: Sequence) -> List[StandingEntry]:
    """Rank by distinct solves desc, latest solve time asc, seed asc."""
    solved: Dict[str, set] = {p.user_id: set() for p in participants}
    last_solve: Dict[str, Optional[int]] = {p.user_id: None for p in participants}

    for solve in solves:
        if solve.user_id not in solved:
            continue
        solved[solve.user_id].add(solve.problem_key)
        previous = last_solve[solve.user_id]
        last_solve[solve.user_id] = solve.solved_at if previous is None else max(previous, solve.solved_at)

    def sort_key(p):
        count = len(solved[p.user_id])
        latest = last_solve[p.user_id]
        return (-count, latest if latest is not None else math.inf, p.seed)

    ordered = sorted(participants, key=sort_key)
    return [
        StandingEntry(
            rank=rank,
            user_id=p.user_id,
            seed=p.seed,
            score=float(len(solved[p.user_id])),
            wins=p.wins,
            losses=p.losses,
            draws=p.draws,
            solved_count=len(solved[p.user_id]),
            last_solve_at=last_solve[p.user_id],
        )
        for rank, p in enumerate(ordered, start=1)
    ]


def decide_match(
    tournament_format: str,
    player1: TournamentParticipant,
    player2: TournamentParticipant,
    solved_at: Dict[str, Optional[int]],
) -> Tuple[Optional[str], bool]:
    """
    Returns (winner_id, is_draw) from the two players' solve times.

    Earliest solve wins. Swiss scores a tie (both unsolved, or identical
    times) as a draw; elimination needs a winner and gives it to the
    better seed.
    """
    first = solved_at.get(player1.user_id)
    second = solved_at.get(player2.user_id)

    if first is not None and (second is None or first < second):
        return player1.user_id, False
    if second is not None and (first is None or second < first):
        return player2.user_id, False

    if tournament_format == TournamentFormat.ELIMINATION.value:
        better = player1 if player1.seed <= player2.seed else player2
        return better.user_id, False
    return None, True


def first_new_solves(
    submissions: Sequence[AcceptedSubmission],
    problem_keys: set,
    already_solved: set,
    starts_at: int,
    ends_at: int,
) -> List[AcceptedSubmission]:
    """Earliest in-window accepted submission per arena problem not yet solved."""
    fresh: Dict[str, AcceptedSubmission] = {}
    for submission in sorted(submissions, key=lambda s: (s.creation_time, s.submission_id)):
        key = f"{submission.problem_contest_id}{submission.problem_index}"
        if key not in problem_keys or key in already_solved or key in fresh:
            continue
        if not (starts_at <= submission.creation_time <= ends_at):
            continue
        fresh[key] = submission
    return list(fresh.values())


class TournamentEngine:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        submission_source: SubmissionSource,
        handle_store: HandleStore,
        problem_catalog: Optional[ProblemCatalog] = None,
        message_sink: Optional[MessageSink] = None,
        clock=epoch_now,
        submission_timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.submission_source = submission_source
        self.handle_store = handle_store
        self.problem_catalog = problem_catalog
        self.message_sink = message_sink or LoggingMessageSink()
        self.clock = clock
        self.submission_timeout = submission_timeout or settings.SUBMISSION_TIMEOUT_SECONDS
        self.store = TournamentStore()
        self.challenges = ChallengeStore()
        self.cancellation_listener: Optional[CancellationListener] = None

        self.last_arena_tick_at: Optional[int] = None
        self.last_error: Optional[str] = None

    def set_cancellation_listener(self, listener: Optional[CancellationListener]) -> None:
        self.cancellation_listener = listener

    # =========================================================================
    # Creation
    # =========================================================================

    def _validate_roster(self, participant_ids: Sequence[str]) -> None:
        if len(set(participant_ids)) != len(participant_ids):
            raise InvalidSpecError("Participants must be distinct", code="DUPLICATE_PARTICIPANT")
        if len(participant_ids) < settings.TOURNAMENT_MIN_PARTICIPANTS:
            raise InvalidSpecError(
                f"A tournament needs at least {settings.TOURNAMENT_MIN_PARTICIPANTS} participants",
                code="INVALID_PARTICIPANT_COUNT",
            )

    async def _ensure_no_active_tournament(self, db: AsyncSession, guild_id: str) -> None:
        if await self.store.get_active_tournament(db, guild_id):
            raise TournamentStateError(
                "A tournament is already running in this server", code="TOURNAMENT_ACTIVE"
            )

    async def create_tournament(
        self,
        guild_id: str,
        host_user_id: str,
        format: TournamentFormat,
        participant_ids: Sequence[str],
        length_minutes: int,
        round_count: Optional[int] = None,
        channel_id: Optional[str] = None,
    ) -> Tournament:
        format = TournamentFormat(format)
        if format == TournamentFormat.ARENA:
            raise InvalidSpecError("Use create_arena_tournament for arena tournaments", code="INVALID_FORMAT")
        self._validate_roster(participant_ids)
        if length_minutes not in settings.CHALLENGE_VALID_LENGTHS:
            raise InvalidSpecError(f"Unsupported round length {length_minutes}", code="INVALID_LENGTH")
        if round_count is None:
            round_count = max(1, math.ceil(math.log2(len(participant_ids))))
        if round_count < 1:
            raise InvalidSpecError("round_count must be positive", code="INVALID_ROUND_COUNT")

        async with self.session_factory() as db:
            async with db.begin():
                await self._ensure_no_active_tournament(db, guild_id)
                tournament = await self.store.create_tournament(
                    db, guild_id, host_user_id, format, length_minutes, round_count,
                    participant_ids, channel_id,
                )

        logger.info(
            f"Tournament created: tournament={tournament.id} guild={guild_id} "
            f"format={format.value} participants={len(participant_ids)} rounds={round_count}"
        )
        return tournament

    async def create_arena_tournament(
        self,
        guild_id: str,
        host_user_id: str,
        participant_ids: Sequence[str],
        length_minutes: int,
        problems: Sequence[Tuple[int, str]],
        channel_id: Optional[str] = None,
        starts_at: Optional[int] = None,
    ) -> Tournament:
        self._validate_roster(participant_ids)
        if length_minutes <= 0:
            raise InvalidSpecError("Arena length must be positive", code="INVALID_LENGTH")
        if not problems:
            raise InvalidSpecError("Arena needs at least one problem", code="NO_PROBLEMS")
        if self.problem_catalog is None:
            raise InvalidSpecError("No problem catalog configured", code="NO_CATALOG")

        resolved = []
        seen = set()
        for contest_id, index in problems:
            info = await self.problem_catalog.resolve_problem(contest_id, index)
            if info is None:
                raise InvalidSpecError(f"Unknown problem {contest_id}{index}", code="UNKNOWN_PROBLEM")
            if info.key not in seen:
                seen.add(info.key)
                resolved.append(info)

        starts_at = self.clock() if starts_at is None else starts_at
        async with self.session_factory() as db:
            async with db.begin():
                await self._ensure_no_active_tournament(db, guild_id)
                tournament = await self.store.create_tournament(
                    db, guild_id, host_user_id, TournamentFormat.ARENA, length_minutes, 1,
                    participant_ids, channel_id,
                )
                tournament.current_round = 1
                await self.store.create_arena_state(
                    db, tournament, starts_at, starts_at + length_minutes * 60, resolved
                )

        logger.info(
            f"Arena created: tournament={tournament.id} guild={guild_id} "
            f"problems={len(resolved)} participants={len(participant_ids)}"
        )
        return tournament

    # =========================================================================
    # Rounds
    # =========================================================================

    async def _round_is_complete(self, db: AsyncSession, tournament: Tournament) -> bool:
        if tournament.current_round == 0:
            return True
        round_ = await self.store.get_round(db, tournament.id, tournament.current_round)
        if round_ is None or round_.status == RoundStatus.COMPLETED.value:
            return True

        # Concurrent resolutions of the last two matches can each miss the other
        matches = await self.store.list_round_matches(db, round_.id)
        if matches and all(m.is_resolved for m in matches):
            round_.status = RoundStatus.COMPLETED.value
            await db.flush()
            logger.info(f"Round closed on read: tournament={tournament.id} round={round_.round_number}")
            return True
        return False

    async def start_round(
        self,
        tournament_id: str,
        problem: ProblemRef,
        pairings: Sequence[Pairing],
    ) -> RoundSummary:
        now = self.clock()
        async with self.session_factory() as db:
            async with db.begin():
                tournament = await self.store.get_tournament(db, tournament_id)
                if tournament is None:
                    raise NotFoundError(f"Tournament {tournament_id} not found")
                summary = await self._start_round(db, tournament, problem, pairings, now)

        logger.info(
            f"Round started: tournament={tournament_id} round={summary.round_number} "
            f"matches={summary.match_count} byes={summary.bye_count}"
        )
        return summary

    async def _start_round(
        self,
        db: AsyncSession,
        tournament: Tournament,
        problem: ProblemRef,
        pairings: Sequence[Pairing],
        now: int,
    ) -> RoundSummary:
        if tournament.status != TournamentStatus.ACTIVE.value:
            raise TournamentStateError("Tournament is not active")
        if tournament.is_arena:
            raise TournamentStateError("Arena tournaments have no rounds")
        if tournament.current_round >= tournament.round_count:
            raise TournamentStateError("All rounds have already been played")
        if not await self._round_is_complete(db, tournament):
            raise TournamentStateError(
                f"Round {tournament.current_round} is still in progress", code="ROUND_IN_PROGRESS"
            )

        participants = {p.user_id: p for p in await self.store.list_participants(db, tournament.id)}
        self._validate_pairings(tournament, participants, pairings)

        real_players = [p for pairing in pairings if pairing[1] is not None for p in pairing]
        busy = await self.challenges.get_active_challenges_for_users(db, real_players)
        if busy:
            raise InvalidSpecError(
                f"Already in an active challenge: {', '.join(sorted(busy))}",
                code="ALREADY_IN_CHALLENGE",
            )

        round_number = tournament.current_round + 1
        round_ = await self.store.create_round(
            db, tournament, round_number, RoundStatus.ACTIVE.value, problem
        )

        byes = 0
        for match_number, (player1_id, player2_id) in enumerate(pairings, start=1):
            if player2_id is None:
                await self.store.add_match(db, round_, match_number, player1_id, None)
                bye_player = participants[player1_id]
                bye_player.score += 1
                bye_player.wins += 1
                byes += 1
                continue

            challenge = await self.challenges.create(
                db,
                ChallengeSpec(
                    scope_id=tournament.guild_id,
                    host_user_id=tournament.host_user_id,
                    problem=problem,
                    length_minutes=tournament.length_minutes,
                    participant_ids=[player1_id, player2_id],
                    channel_id=tournament.channel_id,
                    tournament_id=tournament.id,
                ),
                now,
            )
            await self.store.add_match(db, round_, match_number, player1_id, player2_id, challenge.id)

        if byes == len(pairings):
            round_.status = RoundStatus.COMPLETED.value
        tournament.current_round = round_number
        await db.flush()

        return RoundSummary(
            round_number=round_number,
            status=round_.status,
            problem_contest_id=problem.contest_id,
            problem_index=problem.index,
            problem_name=problem.name,
            problem_rating=problem.rating,
            match_count=len(pairings),
            completed_count=byes,
            bye_count=byes,
        )

    def _validate_pairings(
        self,
        tournament: Tournament,
        participants: Dict[str, TournamentParticipant],
        pairings: Sequence[Pairing],
    ) -> None:
        if not pairings:
            raise InvalidSpecError("A round needs at least one pairing", code="NO_PAIRINGS")
        seen = set()
        for player1_id, player2_id in pairings:
            for user_id in (player1_id, player2_id):
                if user_id is None:
                    continue
                if user_id not in participants:
                    raise InvalidSpecError(f"{user_id} is not in this tournament", code="UNKNOWN_PARTICIPANT")
                if user_id in seen:
                    raise InvalidSpecError(f"{user_id} is paired twice", code="DUPLICATE_PARTICIPANT")
                if tournament.format == TournamentFormat.ELIMINATION.value and participants[user_id].eliminated:
                    raise InvalidSpecError(f"{user_id} is already eliminated", code="PARTICIPANT_ELIMINATED")
                seen.add(user_id)

    async def advance_tournament(
        self,
        guild_id: str,
        problem: Optional[ProblemRef] = None,
        pairings: Optional[Sequence[Pairing]] = None,
    ) -> Optional[RoundSummary]:
        """
        Finish the tournament if it is over, otherwise start the next round.

        Returns None when the tournament was completed.
        """
        now = self.clock()
        async with self.session_factory() as db:
            async with db.begin():
                tournament = await self.store.get_active_tournament(db, guild_id)
                if tournament is None:
                    raise NotFoundError("No active tournament in this server")
                if tournament.is_arena:
                    raise TournamentStateError("Arena tournaments finish on their own")
                if not await self._round_is_complete(db, tournament):
                    raise TournamentStateError(
                        f"Round {tournament.current_round} is still in progress", code="ROUND_IN_PROGRESS"
                    )

                participants = await self.store.list_participants(db, tournament.id)
                survivors = [p for p in participants if not p.eliminated]
                finished = tournament.current_round >= tournament.round_count or (
                    tournament.format == TournamentFormat.ELIMINATION.value and len(survivors) <= 1
                )

                if finished:
                    await self.store.set_tournament_status(db, tournament, TournamentStatus.COMPLETED)
                    summary = None
                else:
                    if problem is None or not pairings:
                        raise InvalidSpecError(
                            "The next round needs a problem and pairings", code="ROUND_INPUT_MISSING"
                        )
                    summary = await self._start_round(db, tournament, problem, pairings, now)

        if summary is None:
            logger.info(f"Tournament completed: tournament={tournament.id} guild={guild_id}")
            await self._announce(tournament, "Tournament finished", [])
        else:
            logger.info(f"Round started: tournament={tournament.id} round={summary.round_number}")
        return summary

    async def cancel_tournament(self, guild_id: str, requester_id: str) -> Tournament:
        now = self.clock()
        cancelled_challenges = []
        async with self.session_factory() as db:
            async with db.begin():
                tournament = await self.store.get_active_tournament(db, guild_id)
                if tournament is None:
                    raise NotFoundError("No active tournament in this server")
                if tournament.host_user_id != requester_id:
                    raise ForbiddenError("Only the host can cancel this tournament")
                if not await self.store.set_tournament_status(db, tournament, TournamentStatus.CANCELLED):
                    raise NotFoundError("No active tournament in this server")

                for match in await self.store.list_open_linked_matches(db, tournament.id):
                    challenge = await self.challenges.get(db, match.challenge_id)
                    if challenge is not None and challenge.is_active:
                        if await self.challenges.transition_status(db, challenge, ChallengeStatus.CANCELLED, now):
                            cancelled_challenges.append(challenge.id)

        logger.info(
            f"Tournament cancelled: tournament={tournament.id} by={requester_id} "
            f"challenges_cancelled={len(cancelled_challenges)}"
        )
        await self._notify_cancelled(cancelled_challenges)
        await self._announce(tournament, "Tournament cancelled", [])
        return tournament

    # =========================================================================
    # Match resolution
    # =========================================================================

    async def on_challenge_completed(self, challenge_id: str) -> Optional[MatchSummary]:
        """
        Resolve the match backed by this challenge.

        No-op when no match references the challenge or the match is already
        resolved.
        """
        async with self.session_factory() as db:
            async with db.begin():
                match = await self.store.get_match_by_challenge(db, challenge_id)
                if match is None or match.is_resolved:
                    return None
                challenge = await self.challenges.get(db, challenge_id)
                if challenge is None or challenge.status != ChallengeStatus.COMPLETED.value:
                    return None
                tournament = await self.store.get_tournament(db, match.tournament_id)
                if tournament is None or tournament.status != TournamentStatus.ACTIVE.value:
                    return None

                players = await self.store.get_participants_by_user(db, tournament.id, match.players())
                solved_at = {p.user_id: p.solved_at for p in challenge.participants}
                winner_id, is_draw = decide_match(
                    tournament.format, players[match.player1_id], players[match.player2_id], solved_at
                )
                round_completed = await self._record_result(db, tournament, match, players, winner_id, is_draw)

        logger.info(
            f"Match resolved: tournament={match.tournament_id} match={match.id} "
            f"winner={winner_id} draw={is_draw}"
        )
        if round_completed:
            await self._announce_round(tournament)
        return MatchSummary.model_validate(match)

    async def resolve_match(
        self,
        match_id: str,
        winner_id: Optional[str] = None,
        is_draw: bool = False,
    ) -> Optional[MatchSummary]:
        """Decide a pairing without a live duel. Already-resolved matches are left alone."""
        if (winner_id is None) == (not is_draw):
            raise InvalidSpecError("Give exactly one of winner_id or is_draw", code="INVALID_RESULT")

        cancelled_challenges = []
        async with self.session_factory() as db:
            async with db.begin():
                match = await self.store.get_match(db, match_id)
                if match is None:
                    raise NotFoundError(f"Match {match_id} not found")
                if match.is_resolved:
                    return None
                tournament = await self.store.get_tournament(db, match.tournament_id)
                if tournament is None or tournament.status != TournamentStatus.ACTIVE.value:
                    raise TournamentStateError("Tournament is not active")
                if winner_id is not None and winner_id not in match.players():
                    raise InvalidSpecError(f"{winner_id} is not in this match", code="UNKNOWN_PARTICIPANT")
                if is_draw and tournament.format == TournamentFormat.ELIMINATION.value:
                    raise InvalidSpecError("Elimination matches cannot be drawn", code="INVALID_RESULT")

                if match.challenge_id:
                    challenge = await self.challenges.get(db, match.challenge_id)
                    if challenge is not None and challenge.is_active:
                        if await self.challenges.transition_status(
                            db, challenge, ChallengeStatus.CANCELLED, self.clock()
                        ):
                            cancelled_challenges.append(challenge.id)

                players = await self.store.get_participants_by_user(db, tournament.id, match.players())
                round_completed = await self._record_result(db, tournament, match, players, winner_id, is_draw)

        logger.info(f"Match resolved manually: match={match_id} winner={winner_id} draw={is_draw}")
        await self._notify_cancelled(cancelled_challenges)
        if round_completed:
            await self._announce_round(tournament)
        return MatchSummary.model_validate(match)

    async def _record_result(
        self,
        db: AsyncSession,
        tournament: Tournament,
        match: TournamentMatch,
        players: Dict[str, TournamentParticipant],
        winner_id: Optional[str],
        is_draw: bool,
    ) -> bool:
        """Apply one result. Returns True when it closed the round."""
        if not await self.store.resolve_match(db, match, winner_id, is_draw):
            return False

        if is_draw:
            for participant in players.values():
                participant.score += 0.5
                participant.draws += 1
        else:
            for user_id, participant in players.items():
                if user_id == winner_id:
                    participant.score += 1
                    participant.wins += 1
                else:
                    participant.losses += 1
                    if tournament.format == TournamentFormat.ELIMINATION.value:
                        participant.eliminated = True
        await db.flush()

        round_ = await self.store.get_round_by_id(db, match.round_id)
        matches = await self.store.list_round_matches(db, match.round_id)
        if round_ is not None and all(m.is_resolved for m in matches):
            round_.status = RoundStatus.COMPLETED.value
            await db.flush()
            return True
        return False

    async def sync_completed_matches(self) -> int:
        """Resolve open matches whose challenge already completed (missed notifications)."""
        async with self.session_factory() as db:
            matches = await self.store.list_open_linked_matches(db)
            pending = []
            for match in matches:
                challenge = await self.challenges.get(db, match.challenge_id)
                if challenge is not None and challenge.status == ChallengeStatus.COMPLETED.value:
                    pending.append(challenge.id)

        resolved = 0
        for challenge_id in pending:
            if await self.on_challenge_completed(challenge_id) is not None:
                resolved += 1
        return resolved

    # =========================================================================
    # Standings and projections
    # =========================================================================

    async def _standings(self, db: AsyncSession, tournament: Tournament, format: Optional[str] = None) -> List[StandingEntry]:
        format = format or tournament.format
        participants = await self.store.list_participants(db, tournament.id)
        if format == TournamentFormat.ARENA.value:
            solves = await self.store.list_arena_solves(db, tournament.id)
            return compute_arena_standings(participants, solves)
        matches = await self.store.list_tournament_matches(db, tournament.id)
        return compute_swiss_standings(participants, matches)

    async def get_standings(self, tournament_id: str, format: Optional[str] = None) -> List[StandingEntry]:
        async with self.session_factory() as db:
            tournament = await self._require_tournament(db, tournament_id)
            return await self._standings(db, tournament, format)

    async def _require_tournament(self, db: AsyncSession, tournament_id: str) -> Tournament:
        tournament = await self.store.get_tournament(db, tournament_id)
        if tournament is None:
            raise NotFoundError(f"Tournament {tournament_id} not found")
        return tournament

    async def _round_summary(self, db: AsyncSession, round_: TournamentRound) -> RoundSummary:
        matches = await self.store.list_round_matches(db, round_.id)
        return RoundSummary(
            round_number=round_.round_number,
            status=round_.status,
            problem_contest_id=round_.problem_contest_id,
            problem_index=round_.problem_index,
            problem_name=round_.problem_name,
            problem_rating=round_.problem_rating,
            match_count=len(matches),
            completed_count=sum(1 for m in matches if m.is_resolved),
            bye_count=sum(1 for m in matches if m.status == MatchStatus.BYE.value),
        )

    async def _round_summaries(self, db: AsyncSession, tournament_id: str, limit: Optional[int]) -> List[RoundSummary]:
        return [
            await self._round_summary(db, round_)
            for round_ in await self.store.list_rounds(db, tournament_id, limit)
        ]

    async def list_round_summaries(
        self,
        tournament_id: str,
        round_number: Optional[int] = None,
        limit: int = DEFAULT_ROUND_SUMMARY_LIMIT,
    ) -> List[RoundSummary]:
        """Latest rounds first; a single round when round_number is given."""
        async with self.session_factory() as db:
            if round_number is not None:
                round_ = await self.store.get_round(db, tournament_id, round_number)
                return [await self._round_summary(db, round_)] if round_ else []
            return await self._round_summaries(db, tournament_id, limit)

    async def list_round_matches(self, tournament_id: str, round_number: int) -> List[MatchSummary]:
        async with self.session_factory() as db:
            round_ = await self.store.get_round(db, tournament_id, round_number)
            if round_ is None:
                return []
            return [MatchSummary.model_validate(m) for m in await self.store.list_round_matches(db, round_.id)]

    # =========================================================================
    # Arena
    # =========================================================================

    async def run_arena_tick(self) -> ArenaTickReport:
        now = self.clock()
        report = ArenaTickReport(now=now)

        async with self.session_factory() as db:
            tournaments = await self.store.list_active_arena_tournaments(db)
            states = {t.id: await self.store.get_arena_state(db, t.id) for t in tournaments}

        for tournament in tournaments:
            state = states.get(tournament.id)
            if state is None or now < state.starts_at:
                continue
            report.tournaments_checked += 1
            try:
                await self._sync_arena(tournament, state, report)
                if now >= state.ends_at:
                    await self._complete_arena(tournament, report)
            except SQLAlchemyError as e:
                self.last_error = f"{type(e).__name__}: {e}"
                logger.error(f"Arena tick aborted at tournament={tournament.id}: {str(e)}")
                raise
            except Exception as e:
                self.last_error = f"{type(e).__name__}: {e}"
                report.errors[tournament.id] = str(e)
                logger.error(f"Arena sync failed: tournament={tournament.id} error={str(e)}")

        self.last_arena_tick_at = now
        return report

    async def _sync_arena(self, tournament: Tournament, state, report: ArenaTickReport) -> None:
        async with self.session_factory() as db:
            participants = await self.store.list_participants(db, tournament.id)
            problem_keys = {p.problem_key for p in await self.store.list_arena_problems(db, tournament.id)}
            handles = {}
            for participant in participants:
                try:
                    handle = await self.handle_store.get_linked_handle(db, tournament.guild_id, participant.user_id)
                except SQLAlchemyError:
                    raise
                except Exception as e:
                    report.failed_queries += 1
                    logger.warning(
                        f"Handle lookup failed: tournament={tournament.id} user={participant.user_id} "
                        f"error={type(e).__name__}: {e}"
                    )
                    continue
                if handle:
                    handles[participant.user_id] = handle
                else:
                    logger.warning(f"No linked handle: tournament={tournament.id} user={participant.user_id}")

        user_ids = list(handles)
        results = await asyncio.gather(
            *(
                asyncio.wait_for(
                    self.submission_source.fetch_accepted_submissions(handles[user_id], state.starts_at),
                    timeout=self.submission_timeout,
                )
                for user_id in user_ids
            ),
            return_exceptions=True,
        )

        for user_id, result in zip(user_ids, results):
            if isinstance(result, BaseException):
                report.failed_queries += 1
                logger.warning(
                    f"Arena submission query failed: tournament={tournament.id} user={user_id} "
                    f"error={type(result).__name__}: {result}"
                )
                continue
            report.solves_recorded += await self._record_arena_solves(
                tournament.id, user_id, result, problem_keys, state
            )

    async def _record_arena_solves(
        self,
        tournament_id: str,
        user_id: str,
        submissions: List[AcceptedSubmission],
        problem_keys: set,
        state,
    ) -> int:
        async with self.session_factory() as db:
            async with db.begin():
                existing = await self.store.list_arena_solves(db, tournament_id, user_id)
                already = {solve.problem_key for solve in existing}
                fresh = first_new_solves(submissions, problem_keys, already, state.starts_at, state.ends_at)
                for submission in fresh:
                    await self.store.add_arena_solve(
                        db, tournament_id, user_id,
                        submission.problem_contest_id, submission.problem_index,
                        submission.submission_id, submission.creation_time,
                    )
                    logger.info(
                        f"Arena solve: tournament={tournament_id} user={user_id} "
                        f"problem={submission.problem_contest_id}{submission.problem_index}"
                    )
                if fresh:
                    participant = (await self.store.get_participants_by_user(db, tournament_id, [user_id]))[user_id]
                    participant.score = float(len(already) + len(fresh))
                    participant.wins = len(already) + len(fresh)
        return len(fresh)

    async def _complete_arena(self, tournament: Tournament, report: ArenaTickReport) -> None:
        async with self.session_factory() as db:
            async with db.begin():
                fresh = await self.store.get_tournament(db, tournament.id)
                if fresh is None or not await self.store.set_tournament_status(db, fresh, TournamentStatus.COMPLETED):
                    return
        report.completed.append(tournament.id)
        logger.info(f"Arena completed: tournament={tournament.id}")
        await self._announce(tournament, "Arena finished", [])

    async def get_arena_status(self, tournament_id: str) -> ArenaStatus:
        now = self.clock()
        async with self.session_factory() as db:
            tournament = await self._require_tournament(db, tournament_id)
            state = await self.store.get_arena_state(db, tournament_id)
            if state is None:
                raise TournamentStateError("Not an arena tournament")
            problems = await self.store.list_arena_problems(db, tournament_id)
            standings = await self._standings(db, tournament, TournamentFormat.ARENA.value)

        return ArenaStatus(
            tournament_id=tournament_id,
            starts_at=state.starts_at,
            ends_at=state.ends_at,
            remaining_seconds=max(0, state.ends_at - now),
            problem_count=state.problem_count,
            problems=[_arena_problem_summary(p) for p in problems],
            standings=standings,
        )

    # =========================================================================
    # History
    # =========================================================================

    def _winner_id(self, tournament: Tournament, standings: List[StandingEntry]) -> Optional[str]:
        if tournament.status != TournamentStatus.COMPLETED.value or not standings:
            return None
        if tournament.format == TournamentFormat.ELIMINATION.value:
            survivors = [entry for entry in standings if not entry.eliminated]
            return survivors[0].user_id if survivors else standings[0].user_id
        return standings[0].user_id

    def _history_entry(
        self,
        tournament: Tournament,
        participant_count: int,
        standings: List[StandingEntry],
    ) -> TournamentHistoryEntry:
        return TournamentHistoryEntry(
            id=tournament.id,
            guild_id=tournament.guild_id,
            format=tournament.format,
            status=tournament.status,
            length_minutes=tournament.length_minutes,
            round_count=tournament.round_count,
            current_round=tournament.current_round,
            participant_count=participant_count,
            winner_id=self._winner_id(tournament, standings),
            created_at=tournament.created_at.isoformat() if tournament.created_at else None,
            updated_at=tournament.updated_at.isoformat() if tournament.updated_at else None,
        )

    async def _handles(self, db: AsyncSession, guild_id: str, user_ids: Sequence[str]) -> Dict[str, str]:
        handles = {}
        for user_id in user_ids:
            handle = await self.handle_store.get_linked_handle(db, guild_id, user_id)
            if handle:
                handles[user_id] = handle
        return handles

    async def get_history_page(
        self,
        guild_id: str,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> TournamentHistoryPage:
        page_size = page_size or settings.HISTORY_PAGE_SIZE
        page = max(1, page)
        async with self.session_factory() as db:
            tournaments, total = await self.store.list_finished_tournaments(
                db, guild_id, page_size, (page - 1) * page_size
            )
            counts = await self.store.count_participants(db, [t.id for t in tournaments])
            entries = []
            for tournament in tournaments:
                standings = await self._standings(db, tournament)
                entries.append(self._history_entry(tournament, counts.get(tournament.id, 0), standings))

        return TournamentHistoryPage(
            entries=entries,
            page=page,
            total_pages=math.ceil(total / page_size) if total else 0,
            total=total,
        )

    async def get_history_detail(
        self,
        tournament_id: str,
        round_limit: int = DETAIL_ROUND_LIMIT,
        standings_limit: int = DETAIL_STANDINGS_LIMIT,
    ) -> TournamentHistoryDetail:
        async with self.session_factory() as db:
            tournament = await self._require_tournament(db, tournament_id)
            standings = await self._standings(db, tournament)
            rounds = await self._round_summaries(db, tournament_id, round_limit)
            top = standings[:standings_limit]
            handles = await self._handles(db, tournament.guild_id, [entry.user_id for entry in top])

        return TournamentHistoryDetail(
            entry=self._history_entry(tournament, len(standings), standings),
            standings=top,
            rounds=rounds,
            participant_handles=handles,
        )

    async def get_recap(self, tournament_id: str) -> TournamentRecap:
        async with self.session_factory() as db:
            tournament = await self._require_tournament(db, tournament_id)
            standings = await self._standings(db, tournament)
            rounds = await self._round_summaries(db, tournament_id, None)
            problems = await self.store.list_arena_problems(db, tournament_id) if tournament.is_arena else []
            handles = await self._handles(db, tournament.guild_id, [entry.user_id for entry in standings])

        return TournamentRecap(
            entry=self._history_entry(tournament, len(standings), standings),
            standings=standings,
            rounds=rounds,
            arena_problems=[_arena_problem_summary(p) for p in problems],
            participant_handles=handles,
        )

    # =========================================================================
    # Notifications
    # =========================================================================

    async def _notify_cancelled(self, challenge_ids: List[str]) -> None:
        if not challenge_ids or self.cancellation_listener is None:
            return
        try:
            await self.cancellation_listener(challenge_ids)
        except Exception as e:
            logger.warning(f"Cancellation listener failed: challenges={challenge_ids} error={str(e)}")

    async def _announce_round(self, tournament: Tournament) -> None:
        await self._announce(tournament, f"Round {tournament.current_round} complete", [])

    async def _announce(self, tournament: Tournament, title: str, lines: List[str]) -> None:
        try:
            standings = await self.get_standings(tournament.id)
            lines = lines + [
                f"{entry.rank}. <@{entry.user_id}> {entry.score:g}" for entry in standings
            ]
            await self.message_sink.post_or_update_summary(
                SummaryRef(kind="tournament", entity_id=tournament.id, channel_id=tournament.channel_id),
                RenderedTournament(tournament_id=tournament.id, title=title, lines=lines),
            )
        except Exception as e:
            logger.warning(f"Tournament announcement failed: tournament={tournament.id} error={str(e)}")


def _arena_problem_summary(problem) -> ArenaProblemSummary:
    return ArenaProblemSummary(
        contest_id=problem.problem_contest_id,
        index=problem.problem_index,
        name=problem.problem_name,
        rating=problem.problem_rating or 0,
        tags=[tag for tag in (problem.problem_tags or "").split(",") if tag],
    )
