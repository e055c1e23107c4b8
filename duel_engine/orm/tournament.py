"""
Tournament ORM Models

Tables:
- tournaments: one competition scoped to a guild
- tournament_participants: fixed roster with running counters
- tournament_rounds / tournament_matches: swiss and elimination formats
- tournament_arena_state / _problems / _solves: arena format

Match invariant: status is COMPLETED or BYE iff winner_id is set or is_draw.
"""
import uuid
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, Integer, String, Float, Boolean, ForeignKey, Text,
    UniqueConstraint, Index, CheckConstraint
)
from sqlalchemy.orm import relationship

from duel_engine.orm.base import Base, TimestampMixin


# =============================================================================
# Enums
# =============================================================================

class TournamentFormat(str, PyEnum):
    SWISS = "swiss"
    ELIMINATION = "elimination"
    ARENA = "arena"


class TournamentStatus(str, PyEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RoundStatus(str, PyEnum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"


class MatchStatus(str, PyEnum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    BYE = "bye"


RESOLVED_MATCH_STATUSES = (MatchStatus.COMPLETED.value, MatchStatus.BYE.value)
OPEN_MATCH_STATUSES = (MatchStatus.PENDING.value, MatchStatus.ACTIVE.value)


def _new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# Table: tournaments
# =============================================================================

class Tournament(TimestampMixin, Base):
    __tablename__ = "tournaments"

    id = Column(String(36), primary_key=True, default=_new_id)
    guild_id = Column(String(32), nullable=False, index=True)
    channel_id = Column(String(32), nullable=True)
    host_user_id = Column(String(32), nullable=False)
    format = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=TournamentStatus.ACTIVE.value)
    length_minutes = Column(Integer, nullable=False)
    round_count = Column(Integer, nullable=False)
    current_round = Column(Integer, nullable=False, default=0)

    participants = relationship(
        "TournamentParticipant",
        back_populates="tournament",
        cascade="all, delete-orphan",
        order_by="TournamentParticipant.seed",
    )

    __table_args__ = (
        Index("idx_tournament_guild_status", "guild_id", "status"),
        CheckConstraint("format IN ('swiss', 'elimination', 'arena')", name="ck_tournament_format_valid"),
        CheckConstraint(
            "status IN ('active', 'completed', 'cancelled')",
            name="ck_tournament_status_valid"
        ),
        CheckConstraint("round_count > 0", name="ck_tournament_round_count_positive"),
    )

    @property
    def is_arena(self) -> bool:
        return self.format == TournamentFormat.ARENA.value

    def __repr__(self):
        return f"<Tournament(id={self.id}, format={self.format}, status={self.status})>"


# =============================================================================
# Table: tournament_participants
# =============================================================================

class TournamentParticipant(TimestampMixin, Base):
    __tablename__ = "tournament_participants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tournament_id = Column(
        String(36),
        ForeignKey("tournaments.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    user_id = Column(String(32), nullable=False)
    seed = Column(Integer, nullable=False)
    score = Column(Float, nullable=False, default=0.0)
    wins = Column(Integer, nullable=False, default=0)
    losses = Column(Integer, nullable=False, default=0)
    draws = Column(Integer, nullable=False, default=0)
    eliminated = Column(Boolean, nullable=False, default=False)

    tournament = relationship("Tournament", back_populates="participants")

    __table_args__ = (
        UniqueConstraint("tournament_id", "user_id", name="uq_tournament_participant"),
        CheckConstraint("seed > 0", name="ck_participant_seed_positive"),
    )


# =============================================================================
# Table: tournament_rounds
# =============================================================================

class TournamentRound(TimestampMixin, Base):
    __tablename__ = "tournament_rounds"

    id = Column(String(36), primary_key=True, default=_new_id)
    tournament_id = Column(
        String(36),
        ForeignKey("tournaments.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    round_number = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=RoundStatus.PENDING.value)

    problem_contest_id = Column(Integer, nullable=True)
    problem_index = Column(String(10), nullable=True)
    problem_name = Column(String(200), nullable=True)
    problem_rating = Column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("tournament_id", "round_number", name="uq_tournament_round_number"),
        CheckConstraint("round_number > 0", name="ck_round_number_positive"),
        CheckConstraint(
            "status IN ('pending', 'active', 'completed')",
            name="ck_round_status_valid"
        ),
    )


# =============================================================================
# Table: tournament_matches
# =============================================================================

class TournamentMatch(TimestampMixin, Base):
    __tablename__ = "tournament_matches"

    id = Column(String(36), primary_key=True, default=_new_id)
    tournament_id = Column(
        String(36),
        ForeignKey("tournaments.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    round_id = Column(
        String(36),
        ForeignKey("tournament_rounds.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    match_number = Column(Integer, nullable=False)
    challenge_id = Column(String(36), nullable=True, unique=True)
    player1_id = Column(String(32), nullable=False)
    player2_id = Column(String(32), nullable=True)
    winner_id = Column(String(32), nullable=True)
    status = Column(String(20), nullable=False, default=MatchStatus.PENDING.value)
    is_draw = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("round_id", "match_number", name="uq_round_match_number"),
        Index("idx_match_status", "status"),
        CheckConstraint(
            "status IN ('pending', 'active', 'completed', 'bye')",
            name="ck_match_status_valid"
        ),
        CheckConstraint(
            "(status IN ('completed', 'bye')) = (winner_id IS NOT NULL OR is_draw)",
            name="ck_match_resolution_consistent"
        ),
    )

    @property
    def is_bye(self) -> bool:
        return self.player2_id is None

    @property
    def is_resolved(self) -> bool:
        return self.status in RESOLVED_MATCH_STATUSES

    def players(self):
        return [p for p in (self.player1_id, self.player2_id) if p]


# =============================================================================
# Arena tables
# =============================================================================

class ArenaState(TimestampMixin, Base):
    """
    Single row per arena tournament.
    """
    __tablename__ = "tournament_arena_state"

    tournament_id = Column(
        String(36),
        ForeignKey("tournaments.id", ondelete="CASCADE"),
        primary_key=True
    )
    starts_at = Column(Integer, nullable=False)
    ends_at = Column(Integer, nullable=False)
    problem_count = Column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("ends_at > starts_at", name="ck_arena_window"),
        CheckConstraint("problem_count > 0", name="ck_arena_problem_count_positive"),
    )


class ArenaProblem(Base):
    __tablename__ = "tournament_arena_problems"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tournament_id = Column(
        String(36),
        ForeignKey("tournaments.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    problem_contest_id = Column(Integer, nullable=False)
    problem_index = Column(String(10), nullable=False)
    problem_name = Column(String(200), nullable=False)
    problem_rating = Column(Integer, nullable=False, default=0)
    problem_tags = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "tournament_id", "problem_contest_id", "problem_index",
            name="uq_arena_problem"
        ),
    )

    @property
    def problem_key(self) -> str:
        return f"{self.problem_contest_id}{self.problem_index}"


class ArenaSolve(Base):
    """
    Append-only. First accepted submission per (tournament, user, problem) wins.
    """
    __tablename__ = "tournament_arena_solves"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tournament_id = Column(
        String(36),
        ForeignKey("tournaments.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    user_id = Column(String(32), nullable=False)
    problem_contest_id = Column(Integer, nullable=False)
    problem_index = Column(String(10), nullable=False)
    submission_id = Column(Integer, nullable=False)
    solved_at = Column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "tournament_id", "user_id", "problem_contest_id", "problem_index",
            name="uq_arena_solve"
        ),
        Index("idx_arena_solve_user", "tournament_id", "user_id"),
    )

    @property
    def problem_key(self) -> str:
        return f"{self.problem_contest_id}{self.problem_index}"
