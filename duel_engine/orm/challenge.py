"""
Challenge ORM Models

A challenge is one timed attempt at a single problem by a small roster.

Lifecycle:
- Created ACTIVE with one participant row per entrant
- ACTIVE → COMPLETED (deadline reached or everyone solved)
- ACTIVE → CANCELLED (host action only)
- Terminal states are never left

All lifecycle times are epoch seconds.
"""
import uuid
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, Integer, String, ForeignKey, Index, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import relationship, validates

from duel_engine.orm.base import Base, TimestampMixin


class ChallengeStatus(str, PyEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


CHALLENGE_TRANSITIONS = {
    ChallengeStatus.ACTIVE.value: [ChallengeStatus.COMPLETED.value, ChallengeStatus.CANCELLED.value],
    ChallengeStatus.COMPLETED.value: [],
    ChallengeStatus.CANCELLED.value: [],
}


def _new_id() -> str:
    return str(uuid.uuid4())


class Challenge(TimestampMixin, Base):
    """
    One timed 1-problem duel or group attempt.
    """
    __tablename__ = "challenges"

    id = Column(String(36), primary_key=True, default=_new_id)
    scope_id = Column(String(32), nullable=False, index=True)
    channel_id = Column(String(32), nullable=True)
    message_id = Column(String(32), nullable=True)
    host_user_id = Column(String(32), nullable=False)

    # Problem reference
    problem_contest_id = Column(Integer, nullable=False)
    problem_index = Column(String(10), nullable=False)
    problem_name = Column(String(200), nullable=False)
    problem_rating = Column(Integer, nullable=False)

    length_minutes = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=ChallengeStatus.ACTIVE.value)
    started_at = Column(Integer, nullable=False)
    ends_at = Column(Integer, nullable=False)
    completed_at = Column(Integer, nullable=True)
    check_index = Column(Integer, nullable=False, default=0)

    # Set when the challenge backs a tournament match
    tournament_id = Column(String(36), nullable=True, index=True)

    participants = relationship(
        "ChallengeParticipant",
        back_populates="challenge",
        cascade="all, delete-orphan",
        order_by="ChallengeParticipant.position",
        lazy="selectin",
    )

    __table_args__ = (
        Index("idx_challenge_status", "status"),
        Index("idx_challenge_scope_status", "scope_id", "status"),
        CheckConstraint("length_minutes > 0", name="ck_challenge_length_positive"),
        CheckConstraint("ends_at >= started_at", name="ck_challenge_window"),
        CheckConstraint("check_index >= 0", name="ck_challenge_check_index"),
        CheckConstraint(
            "status IN ('active', 'completed', 'cancelled')",
            name="ck_challenge_status_valid"
        ),
    )

    @validates("status")
    def validate_status(self, key, value):
        if self.status and self.status != value and value not in CHALLENGE_TRANSITIONS.get(self.status, []):
            raise ValueError(f"Invalid challenge transition: {self.status} → {value}")
        return value

    @property
    def is_active(self) -> bool:
        return self.status == ChallengeStatus.ACTIVE.value

    @property
    def problem_key(self) -> str:
        return f"{self.problem_contest_id}{self.problem_index}"

    def __repr__(self):
        return f"<Challenge(id={self.id}, status={self.status}, problem={self.problem_key})>"


class ChallengeParticipant(TimestampMixin, Base):
    """
    One entrant of a challenge.

    rating_delta is written at most once: when the participant solves,
    or with the penalty when the challenge completes unsolved.
    """
    __tablename__ = "challenge_participants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    challenge_id = Column(
        String(36),
        ForeignKey("challenges.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    user_id = Column(String(32), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    solved_at = Column(Integer, nullable=True)
    rating_before = Column(Integer, nullable=True)
    rating_delta = Column(Integer, nullable=True)

    challenge = relationship("Challenge", back_populates="participants")

    __table_args__ = (
        UniqueConstraint("challenge_id", "user_id", name="uq_challenge_participant"),
        Index("idx_challenge_participant_user", "user_id"),
    )

    @validates("rating_delta")
    def validate_rating_delta(self, key, value):
        if self.rating_delta is not None and value != self.rating_delta:
            raise ValueError(
                f"Rating delta already recorded for {self.user_id} in challenge {self.challenge_id}"
            )
        return value

    @property
    def solved(self) -> bool:
        return self.solved_at is not None
