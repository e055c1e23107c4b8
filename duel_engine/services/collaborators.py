"""
External collaborator contracts.

The engine only talks to the outside world through these interfaces:
- SubmissionSource: accepted submissions of a handle (may fail transiently)
- HandleStore: linked handles and persisted ratings
- MessageSink: best-effort rendering of summaries
- ProblemCatalog: problem metadata lookup

Handle store calls receive the caller's AsyncSession so a SQL-backed store
joins the same transaction as the challenge write.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol, runtime_checkable

from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AcceptedSubmission:
    problem_contest_id: int
    problem_index: str
    submission_id: int
    creation_time: int

    def matches(self, contest_id: int, index: str) -> bool:
        return self.problem_contest_id == contest_id and self.problem_index == index


@dataclass(frozen=True)
class ProblemInfo:
    contest_id: int
    index: str
    name: str
    rating: Optional[int] = None
    tags: List[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.contest_id}{self.index}"


@dataclass(frozen=True)
class SummaryRef:
    """What a rendered summary is about: a challenge or a tournament."""
    kind: str
    entity_id: str
    channel_id: Optional[str] = None
    message_id: Optional[str] = None


@runtime_checkable
class SubmissionSource(Protocol):
    async def fetch_accepted_submissions(self, handle: str, since: int) -> List[AcceptedSubmission]:
        ...


@runtime_checkable
class HandleStore(Protocol):
    async def get_rating(self, db: AsyncSession, scope_id: str, user_id: str) -> Optional[int]:
        ...

    async def update_rating(self, db: AsyncSession, scope_id: str, user_id: str, new_rating: int) -> None:
        ...

    async def get_linked_handle(self, db: AsyncSession, scope_id: str, user_id: str) -> Optional[str]:
        ...


@runtime_checkable
class MessageSink(Protocol):
    async def post_or_update_summary(self, ref: SummaryRef, state: Any) -> Optional[str]:
        """Post a new summary or edit the one at ref.message_id. Returns the message id, if any."""
        ...


@runtime_checkable
class ProblemCatalog(Protocol):
    async def resolve_problem(self, contest_id: int, index: str) -> Optional[ProblemInfo]:
        ...


class LoggingMessageSink:
    """Default sink: writes the rendered summary to the log."""

    async def post_or_update_summary(self, ref: SummaryRef, state: Any) -> None:
        title = getattr(state, "title", None) or ref.entity_id
        lines = getattr(state, "lines", None) or []
        logger.info(f"[{ref.kind}:{ref.entity_id}] {title}")
        for line in lines:
            logger.info(f"[{ref.kind}:{ref.entity_id}]   {line}")
