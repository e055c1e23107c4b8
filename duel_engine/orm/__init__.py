from .base import Base

# Challenges
from .challenge import Challenge, ChallengeParticipant, ChallengeStatus

# Tournaments
from .tournament import (
    Tournament, TournamentParticipant, TournamentRound, TournamentMatch,
    ArenaState, ArenaProblem, ArenaSolve,
    TournamentFormat, TournamentStatus, RoundStatus, MatchStatus,
)

# Handle / rating store
from .linked_user import LinkedUser
