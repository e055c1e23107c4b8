"""
Pydantic Schemas for Challenges

Request model for creating a challenge and read projections used by the
scheduler, the message sink and the status routes.
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# ============================================================================
# Input Schemas
# ============================================================================

class ProblemRef(BaseModel):
    """Reference to one problem of the external judge."""
    contest_id: int
    index: str
    name: str
    rating: int = Field(..., ge=0, description="Problem difficulty rating")

    @property
    def key(self) -> str:
        return f"{self.contest_id}{self.index}"


class ChallengeSpec(BaseModel):
    """Schema for creating a challenge."""
    scope_id: str = Field(..., description="Server the challenge belongs to")
    host_user_id: str
    problem: ProblemRef
    length_minutes: int = Field(..., description="Duration, one of the supported lengths")
    participant_ids: List[str] = Field(..., description="Entrants in seating order")
    channel_id: Optional[str] = None
    tournament_id: Optional[str] = Field(None, description="Set when the challenge backs a tournament match")
    started_at: Optional[int] = Field(None, description="Epoch seconds, defaults to now")


# ============================================================================
# Read Projections
# ============================================================================

class ParticipantSummary(BaseModel):
    user_id: str
    position: int
    solved_at: Optional[int] = None
    rating_before: Optional[int] = None
    rating_delta: Optional[int] = None

    class Config:
        from_attributes = True

    @property
    def solved(self) -> bool:
        return self.solved_at is not None


class ChallengeSummary(BaseModel):
    """Schema for challenge response."""
    id: str
    scope_id: str
    host_user_id: str
    channel_id: Optional[str] = None
    message_id: Optional[str] = None
    problem_contest_id: int
    problem_index: str
    problem_name: str
    problem_rating: int
    length_minutes: int
    status: str
    started_at: int
    ends_at: int
    completed_at: Optional[int] = None
    check_index: int
    tournament_id: Optional[str] = None
    participants: List[ParticipantSummary] = []

    class Config:
        from_attributes = True


class RenderedChallenge(BaseModel):
    """State handed to the message sink."""
    challenge_id: str
    status: str
    title: str
    lines: List[str] = []
    time_left_seconds: int = 0
    final: bool = False


# ============================================================================
# Tick Diagnostics
# ============================================================================

class ChallengeTickReport(BaseModel):
    """Outcome of one ChallengeScheduler.tick() pass."""
    now: int
    challenges_checked: int = 0
    solves_recorded: int = 0
    completed: List[str] = []
    rendered: int = 0
    render_skipped: int = 0
    failed_queries: int = 0
    errors: Dict[str, str] = {}
