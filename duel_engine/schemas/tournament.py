"""
Pydantic Schemas for Tournaments

Standings, round/match projections, history pages and arena views.
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class StandingEntry(BaseModel):
    """One row of computed standings (never persisted)."""
    rank: int
    user_id: str
    seed: int
    score: float
    wins: int = 0
    losses: int = 0
    draws: int = 0
    eliminated: bool = False
    tiebreak: float = Field(0.0, description="Sonneborn-Berger sum (swiss/elimination)")
    matches_played: int = 0
    solved_count: int = Field(0, description="Distinct arena problems solved")
    last_solve_at: Optional[int] = None


class RoundSummary(BaseModel):
    round_number: int
    status: str
    problem_contest_id: Optional[int] = None
    problem_index: Optional[str] = None
    problem_name: Optional[str] = None
    problem_rating: Optional[int] = None
    match_count: int = 0
    completed_count: int = 0
    bye_count: int = 0


class MatchSummary(BaseModel):
    id: str
    match_number: int
    player1_id: str
    player2_id: Optional[str] = None
    winner_id: Optional[str] = None
    status: str
    is_draw: bool = False
    challenge_id: Optional[str] = None

    class Config:
        from_attributes = True


class ArenaProblemSummary(BaseModel):
    contest_id: int
    index: str
    name: str
    rating: int = 0
    tags: List[str] = []


class TournamentHistoryEntry(BaseModel):
    id: str
    guild_id: str
    format: str
    status: str
    length_minutes: int
    round_count: int
    current_round: int
    participant_count: int
    winner_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class TournamentHistoryPage(BaseModel):
    entries: List[TournamentHistoryEntry] = []
    page: int = 1
    total_pages: int = 0
    total: int = 0


class TournamentHistoryDetail(BaseModel):
    entry: TournamentHistoryEntry
    standings: List[StandingEntry] = []
    rounds: List[RoundSummary] = []
    participant_handles: Dict[str, str] = {}


class TournamentRecap(BaseModel):
    entry: TournamentHistoryEntry
    standings: List[StandingEntry] = []
    rounds: List[RoundSummary] = []
    arena_problems: List[ArenaProblemSummary] = []
    participant_handles: Dict[str, str] = {}


class ArenaStatus(BaseModel):
    tournament_id: str
    starts_at: int
    ends_at: int
    remaining_seconds: int
    problem_count: int
    problems: List[ArenaProblemSummary] = []
    standings: List[StandingEntry] = []


class RenderedTournament(BaseModel):
    """State handed to the message sink for tournament announcements."""
    tournament_id: str
    title: str
    lines: List[str] = []


class ArenaTickReport(BaseModel):
    """Outcome of one TournamentEngine.run_arena_tick() pass."""
    now: int
    tournaments_checked: int = 0
    solves_recorded: int = 0
    completed: List[str] = []
    failed_queries: int = 0
    errors: Dict[str, str] = {}
