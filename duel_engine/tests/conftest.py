"""
Shared fixtures: a throwaway SQLite database per test and in-memory fakes
for the external collaborators.
"""
import asyncio
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from duel_engine.database import build_engine, build_session_factory, init_db
from duel_engine.exceptions import SubmissionSourceError
from duel_engine.schemas.challenge import ChallengeSpec, ProblemRef
from duel_engine.services.challenge_scheduler import ChallengeScheduler
from duel_engine.services.collaborators import AcceptedSubmission, ProblemInfo
from duel_engine.services.handle_store import SqlHandleStore
from duel_engine.services.tournament_engine import TournamentEngine


class Clock:
    """Settable epoch-seconds clock."""

    def __init__(self, now: int = 1000):
        self.now = now

    def __call__(self) -> int:
        return self.now


class FakeSubmissionSource:
    def __init__(self):
        self.submissions: Dict[str, List[AcceptedSubmission]] = {}
        self.failing = set()
        self.delays: Dict[str, float] = {}
        self.calls: List[tuple] = []

    def accept(self, handle: str, contest_id: int, index: str, at: int, submission_id: Optional[int] = None):
        items = self.submissions.setdefault(handle, [])
        items.append(AcceptedSubmission(
            problem_contest_id=contest_id,
            problem_index=index,
            submission_id=submission_id or (len(items) + 1) * 1000 + at,
            creation_time=at,
        ))

    async def fetch_accepted_submissions(self, handle: str, since: int) -> List[AcceptedSubmission]:
        self.calls.append((handle, since))
        if handle in self.delays:
            await asyncio.sleep(self.delays[handle])
        if handle in self.failing:
            raise SubmissionSourceError(f"rate limited for {handle}")
        return [s for s in self.submissions.get(handle, []) if s.creation_time >= since]


class RecordingMessageSink:
    def __init__(self, fail: bool = False, message_id: Optional[str] = None):
        self.fail = fail
        self.message_id = message_id
        self.messages = []

    async def post_or_update_summary(self, ref, state):
        self.messages.append((ref, state))
        if self.fail:
            raise RuntimeError("sink unavailable")
        return self.message_id

    def for_entity(self, entity_id: str):
        return [state for ref, state in self.messages if ref.entity_id == entity_id]


class FakeProblemCatalog:
    def __init__(self, problems: List[ProblemInfo]):
        self.problems = {(p.contest_id, p.index): p for p in problems}

    async def resolve_problem(self, contest_id: int, index: str) -> Optional[ProblemInfo]:
        return self.problems.get((contest_id, index))


PROBLEM = ProblemRef(contest_id=1700, index="A", name="Two Arrays", rating=1200)


def make_spec(participants, length=40, started_at=1000, host=None, scope="guild-1", problem=PROBLEM):
    return ChallengeSpec(
        scope_id=scope,
        host_user_id=host or participants[0],
        problem=problem,
        length_minutes=length,
        participant_ids=list(participants),
        started_at=started_at,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'duel_engine_test.db'}")
    await init_db(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def clock():
    return Clock(1000)


@pytest.fixture
def source():
    return FakeSubmissionSource()


@pytest.fixture
def sink():
    return RecordingMessageSink()


@pytest.fixture
def handle_store():
    return SqlHandleStore()


@pytest.fixture
def catalog():
    return FakeProblemCatalog([
        ProblemInfo(contest_id=1700, index="A", name="Two Arrays", rating=1200, tags=["greedy"]),
        ProblemInfo(contest_id=1700, index="B", name="Minimal Coins", rating=1400, tags=["dp", "math"]),
        ProblemInfo(contest_id=1701, index="C", name="Tree Paths", rating=1900, tags=["trees"]),
    ])


@pytest_asyncio.fixture
async def link_users(session_factory, handle_store):
    """link_users({"alice": 1500}) links each user to handle "<user>_cf" in guild-1."""
    async def _link(ratings: Dict[str, Optional[int]], scope: str = "guild-1"):
        async with session_factory() as db:
            async with db.begin():
                for user_id, rating in ratings.items():
                    await handle_store.link(db, scope, user_id, f"{user_id}_cf", rating)
    return _link


@pytest_asyncio.fixture
async def get_rating(session_factory, handle_store):
    async def _get(user_id: str, scope: str = "guild-1"):
        async with session_factory() as db:
            return await handle_store.get_rating(db, scope, user_id)
    return _get


@pytest.fixture
def scheduler(session_factory, source, handle_store, sink, clock):
    return ChallengeScheduler(
        session_factory, source, handle_store, sink,
        clock=clock, submission_timeout=2.0, summary_bucket_seconds=60,
    )


@pytest.fixture
def engine(session_factory, source, handle_store, catalog, sink, clock, scheduler):
    engine = TournamentEngine(
        session_factory, source, handle_store, catalog, sink,
        clock=clock, submission_timeout=2.0,
    )
    scheduler.set_completion_listener(engine.on_challenge_completed)
    engine.set_cancellation_listener(scheduler.render_cancelled)
    return engine
