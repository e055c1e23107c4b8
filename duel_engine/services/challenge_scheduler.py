"""
Challenge Scheduler

Owns the evaluation pass over every ACTIVE challenge.

State machine:
- ACTIVE → COMPLETED (deadline reached, or every participant solved)
- ACTIVE → CANCELLED (host action only, never from tick())

Per challenge, one tick:
1. Reads linked handles, then queries the submission source for every
   unsolved participant concurrently, each query bounded by a timeout
2. In one transaction: advances check_index, records the earliest matching
   accepted submission as solved_at and applies the reward, and on completion
   applies the penalty to whoever is still unsolved
3. After commit: renders the summary (best-effort) and notifies the
   completion listener for challenges backing a tournament match

A failed query leaves that participant untouched until the next tick.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from duel_engine.config import settings
from duel_engine.exceptions import (
    ChallengeStateConflict, ForbiddenError, InvalidSpecError, NotFoundError
)
from duel_engine.orm.challenge import Challenge, ChallengeParticipant, ChallengeStatus
from duel_engine.schemas.challenge import ChallengeSpec, ChallengeSummary, ChallengeTickReport
from duel_engine.services.challenge_store import ChallengeStore, compute_streak
from duel_engine.services.challenge_summary import render_challenge, render_fingerprint, to_summary
from duel_engine.services.collaborators import (
    AcceptedSubmission, HandleStore, LoggingMessageSink, MessageSink, SubmissionSource, SummaryRef
)
from duel_engine.services.rating_delta_service import compute_delta, elapsed_fraction

logger = logging.getLogger(__name__)

CompletionListener = Callable[[str], Awaitable[None]]


def epoch_now() -> int:
    return int(time.time())


def validate_challenge_spec(
    spec: ChallengeSpec,
    valid_lengths=None,
    min_participants: Optional[int] = None,
    max_participants: Optional[int] = None,
) -> None:
    """Raise InvalidSpecError for a malformed request. Touches no state."""
    valid_lengths = tuple(valid_lengths or settings.CHALLENGE_VALID_LENGTHS)
    min_participants = settings.CHALLENGE_MIN_PARTICIPANTS if min_participants is None else min_participants
    max_participants = settings.CHALLENGE_MAX_PARTICIPANTS if max_participants is None else max_participants

    if spec.length_minutes not in valid_lengths:
        allowed = ", ".join(str(length) for length in valid_lengths)
        raise InvalidSpecError(
            f"Unsupported challenge length {spec.length_minutes}; choose one of {allowed}",
            code="INVALID_LENGTH",
        )
    count = len(spec.participant_ids)
    if count < min_participants or count > max_participants:
        raise InvalidSpecError(
            f"A challenge needs between {min_participants} and {max_participants} participants, got {count}",
            code="INVALID_PARTICIPANT_COUNT",
        )
    if len(set(spec.participant_ids)) != count:
        raise InvalidSpecError("Participants must be distinct", code="DUPLICATE_PARTICIPANT")


def earliest_matching_solve(
    submissions: List[AcceptedSubmission],
    challenge: Challenge,
) -> Optional[int]:
    """Earliest creation time of an accepted submission for this problem inside the window."""
    times = [
        submission.creation_time
        for submission in submissions
        if submission.matches(challenge.problem_contest_id, challenge.problem_index)
        and challenge.started_at <= submission.creation_time <= challenge.ends_at
    ]
    return min(times) if times else None


class ChallengeScheduler:
    """
    Tick loop plus create/cancel/read operations for challenges.

    The scheduler keeps only diagnostic state in memory (last tick time,
    last error, last rendered fingerprint per challenge); everything else
    is read back from the database on each call.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        submission_source: SubmissionSource,
        handle_store: HandleStore,
        message_sink: Optional[MessageSink] = None,
        completion_listener: Optional[CompletionListener] = None,
        clock: Callable[[], int] = epoch_now,
        submission_timeout: Optional[float] = None,
        summary_bucket_seconds: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.submission_source = submission_source
        self.handle_store = handle_store
        self.message_sink = message_sink or LoggingMessageSink()
        self.completion_listener = completion_listener
        self.clock = clock
        self.submission_timeout = submission_timeout or settings.SUBMISSION_TIMEOUT_SECONDS
        self.summary_bucket_seconds = summary_bucket_seconds or settings.CHALLENGE_SUMMARY_BUCKET_SECONDS
        self.store = ChallengeStore()

        self.last_tick_at: Optional[int] = None
        self.last_error: Optional[str] = None
        self._last_rendered: Dict[str, Tuple] = {}

    def set_completion_listener(self, listener: Optional[CompletionListener]) -> None:
        self.completion_listener = listener

    # =========================================================================
    # Create / cancel
    # =========================================================================

    async def create_challenge(self, spec: ChallengeSpec) -> ChallengeSummary:
        validate_challenge_spec(spec)
        started_at = spec.started_at if spec.started_at is not None else self.clock()

        async with self.session_factory() as db:
            async with db.begin():
                busy = await self.store.get_active_challenges_for_users(db, spec.participant_ids)
                if busy:
                    names = ", ".join(sorted(busy))
                    raise InvalidSpecError(
                        f"Already in an active challenge: {names}",
                        code="ALREADY_IN_CHALLENGE",
                    )
                challenge = await self.store.create(db, spec, started_at)

        logger.info(
            f"Challenge created: challenge={challenge.id} scope={challenge.scope_id} "
            f"problem={challenge.problem_key} participants={len(spec.participant_ids)}"
        )
        await self._render(challenge, started_at, force=True)
        return to_summary(challenge)

    async def cancel_challenge(self, challenge_id: str, requester_id: str) -> ChallengeSummary:
        now = self.clock()
        async with self.session_factory() as db:
            async with db.begin():
                challenge = await self.store.get(db, challenge_id)
                if challenge is None or not challenge.is_active:
                    raise NotFoundError(f"No active challenge {challenge_id}")
                if challenge.host_user_id != requester_id:
                    raise ForbiddenError("Only the host can cancel this challenge")
                if not await self.store.transition_status(db, challenge, ChallengeStatus.CANCELLED, now):
                    raise NotFoundError(f"No active challenge {challenge_id}")

        logger.info(f"Challenge cancelled: challenge={challenge_id} by={requester_id}")
        await self._render(challenge, now, force=True)
        return to_summary(challenge)

    # =========================================================================
    # Tick
    # =========================================================================

    async def tick(self) -> ChallengeTickReport:
        now = self.clock()
        report = ChallengeTickReport(now=now)

        async with self.session_factory() as db:
            active_ids = [challenge.id for challenge in await self.store.list_active(db)]

        for challenge_id in active_ids:
            report.challenges_checked += 1
            try:
                await self._evaluate(challenge_id, now, report)
            except ChallengeStateConflict as e:
                logger.info(f"Challenge tick skipped: {e.message}")
            except SQLAlchemyError as e:
                self.last_error = f"{type(e).__name__}: {e}"
                logger.error(f"Challenge tick aborted at challenge={challenge_id}: {str(e)}")
                raise
            except Exception as e:
                self.last_error = f"{type(e).__name__}: {e}"
                report.errors[challenge_id] = str(e)
                logger.error(f"Challenge evaluation failed: challenge={challenge_id} error={str(e)}")

        self.last_tick_at = now
        return report

    async def _evaluate(self, challenge_id: str, now: int, report: ChallengeTickReport) -> None:
        async with self.session_factory() as db:
            challenge = await self.store.get(db, challenge_id)
            if challenge is None or not challenge.is_active:
                return
            handles = await self._linked_handles(db, challenge)

        solves = await self._probe_unsolved(challenge, handles, report)

        completed = False
        async with self.session_factory() as db:
            async with db.begin():
                challenge = await self.store.get(db, challenge_id)
                if challenge is None or not challenge.is_active:
                    return
                if not await self.store.claim_tick(db, challenge):
                    raise ChallengeStateConflict(challenge_id)

                for participant in challenge.participants:
                    solved_at = solves.get(participant.user_id)
                    if participant.solved or solved_at is None:
                        continue
                    participant.solved_at = solved_at
                    report.solves_recorded += 1
                    await self._apply_rating(db, challenge, participant, solved=True)
                    logger.info(
                        f"Solve recorded: challenge={challenge_id} user={participant.user_id} at={solved_at}"
                    )

                everyone_solved = all(p.solved for p in challenge.participants)
                if now >= challenge.ends_at or everyone_solved:
                    for participant in challenge.participants:
                        if not participant.solved:
                            await self._apply_rating(db, challenge, participant, solved=False)
                    if not await self.store.transition_status(db, challenge, ChallengeStatus.COMPLETED, now):
                        raise ChallengeStateConflict(challenge_id)
                    completed = True

        if completed:
            report.completed.append(challenge_id)
            logger.info(
                f"Challenge completed: challenge={challenge_id} "
                f"solved={sum(1 for p in challenge.participants if p.solved)}/{len(challenge.participants)}"
            )
            await self._render(challenge, now, force=True)
            report.rendered += 1
            await self._notify_completion(challenge)
            return

        if await self._render(challenge, now):
            report.rendered += 1
        else:
            report.render_skipped += 1

    async def _linked_handles(self, db: AsyncSession, challenge: Challenge) -> Dict[str, str]:
        handles = {}
        for participant in challenge.participants:
            if participant.solved:
                continue
            handle = await self.handle_store.get_linked_handle(db, challenge.scope_id, participant.user_id)
            if handle:
                handles[participant.user_id] = handle
            else:
                logger.warning(
                    f"No linked handle: challenge={challenge.id} user={participant.user_id}"
                )
        return handles

    async def _probe_unsolved(
        self,
        challenge: Challenge,
        handles: Dict[str, str],
        report: ChallengeTickReport,
    ) -> Dict[str, int]:
        """Query every unsolved participant at once; failures only affect that participant."""
        user_ids = list(handles)
        results = await asyncio.gather(
            *(self._probe(challenge, user_id, handles[user_id]) for user_id in user_ids),
            return_exceptions=True,
        )

        solves = {}
        for user_id, result in zip(user_ids, results):
            if isinstance(result, BaseException):
                report.failed_queries += 1
                logger.warning(
                    f"Submission query failed: challenge={challenge.id} user={user_id} "
                    f"error={type(result).__name__}: {result}"
                )
                continue
            if result is not None:
                solves[user_id] = result
        return solves

    async def _probe(self, challenge: Challenge, user_id: str, handle: str) -> Optional[int]:
        submissions = await asyncio.wait_for(
            self.submission_source.fetch_accepted_submissions(handle, challenge.started_at),
            timeout=self.submission_timeout,
        )
        return earliest_matching_solve(submissions, challenge)

    async def _apply_rating(
        self,
        db: AsyncSession,
        challenge: Challenge,
        participant: ChallengeParticipant,
        solved: bool,
    ) -> None:
        rating = await self.handle_store.get_rating(db, challenge.scope_id, participant.user_id)
        if rating is None:
            logger.warning(
                f"No rating on record, skipping delta: challenge={challenge.id} user={participant.user_id}"
            )
            return

        fraction = (
            elapsed_fraction(challenge.started_at, challenge.ends_at, participant.solved_at)
            if solved else 1.0
        )
        delta = compute_delta(
            rating, challenge.problem_rating, challenge.length_minutes, solved, fraction
        )
        participant.rating_before = rating
        participant.rating_delta = delta.applied
        await self.handle_store.update_rating(
            db, challenge.scope_id, participant.user_id, rating + delta.applied
        )

    # =========================================================================
    # Notifications
    # =========================================================================

    async def _render(self, challenge: Challenge, now: int, force: bool = False) -> bool:
        """Send the summary to the sink. Returns False when nothing changed."""
        fingerprint = render_fingerprint(challenge, now, self.summary_bucket_seconds)
        if not force and self._last_rendered.get(challenge.id) == fingerprint:
            return False
        if challenge.is_active:
            self._last_rendered[challenge.id] = fingerprint
        else:
            self._last_rendered.pop(challenge.id, None)

        try:
            streaks = await self._streaks_for(challenge, now)
            state = render_challenge(challenge, now, streaks)
            ref = SummaryRef(
                kind="challenge",
                entity_id=challenge.id,
                channel_id=challenge.channel_id,
                message_id=challenge.message_id,
            )
            message_id = await self.message_sink.post_or_update_summary(ref, state)
        except Exception as e:
            logger.warning(f"Summary update failed: challenge={challenge.id} error={str(e)}")
            return True

        if message_id and message_id != challenge.message_id:
            async with self.session_factory() as db:
                async with db.begin():
                    await self.store.set_message_id(db, challenge, message_id)
        return True

    async def _streaks_for(self, challenge: Challenge, now: int) -> Dict[str, Tuple[int, int]]:
        solved_users = [p.user_id for p in challenge.participants if p.solved]
        if not solved_users:
            return {}
        async with self.session_factory() as db:
            return {
                user_id: compute_streak(
                    await self.store.list_solve_times(db, challenge.scope_id, user_id), now
                )
                for user_id in solved_users
            }

    async def _notify_completion(self, challenge: Challenge) -> None:
        if not challenge.tournament_id or self.completion_listener is None:
            return
        try:
            await self.completion_listener(challenge.id)
        except Exception as e:
            logger.error(
                f"Completion listener failed: challenge={challenge.id} "
                f"tournament={challenge.tournament_id} error={str(e)}"
            )

    async def render_cancelled(self, challenge_ids: List[str]) -> None:
        """Final render for challenges cancelled by a tournament action."""
        now = self.clock()
        for challenge_id in challenge_ids:
            async with self.session_factory() as db:
                challenge = await self.store.get(db, challenge_id)
            if challenge is not None:
                await self._render(challenge, now, force=True)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_active_challenges_for_users(self, user_ids: List[str]) -> Dict[str, ChallengeSummary]:
        async with self.session_factory() as db:
            active = await self.store.get_active_challenges_for_users(db, user_ids)
            return {user_id: to_summary(challenge) for user_id, challenge in active.items()}

    async def list_active_challenges_for_user(
        self,
        user_id: str,
        scope_id: Optional[str] = None,
    ) -> List[ChallengeSummary]:
        async with self.session_factory() as db:
            return [to_summary(c) for c in await self.store.list_active_for_user(db, user_id, scope_id)]

    async def list_recent_completed_challenges(
        self,
        scope_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ChallengeSummary]:
        async with self.session_factory() as db:
            challenges = await self.store.list_recent_completed(
                db, scope_id, limit or settings.RECENT_CHALLENGES_LIMIT
            )
            return [to_summary(c) for c in challenges]

    async def list_active_challenges(self, scope_id: Optional[str] = None) -> List[ChallengeSummary]:
        async with self.session_factory() as db:
            return [to_summary(c) for c in await self.store.list_active(db, scope_id)]

    async def get_active_count(self, scope_id: Optional[str] = None) -> int:
        async with self.session_factory() as db:
            return await self.store.count_active(db, scope_id)

    async def get_challenge_streak(self, scope_id: str, user_id: str) -> Tuple[int, int]:
        async with self.session_factory() as db:
            solve_times = await self.store.list_solve_times(db, scope_id, user_id)
        return compute_streak(solve_times, self.clock())
