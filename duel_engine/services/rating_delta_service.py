"""
Rating Delta Calculator

Pure rating math for timed challenges.

Guarantees:
- down <= 0, up >= 0 for every input
- up never increases as more of the challenge duration is consumed
- |down| grows as the problem gets easier relative to the participant
- No I/O, no clock access
"""
from __future__ import annotations

import math
from dataclasses import dataclass


# Length at which the problem rating is taken at face value
REFERENCE_LENGTH_MINUTES = 80
# Rating points granted per 20 minutes shorter than the reference length
LENGTH_ADJUSTMENT_PER_20_MIN = 50
LOGISTIC_SCALE = 500.0
BASE_K = 8
UP_DIVISOR = 1.15
MAX_DELTA = 160
# Share of the reward lost by solving at the very last second
SPEED_PENALTY = 0.5
# Keeps the expected score away from 0 and 1
EXPECTED_EPSILON = 1e-6


@dataclass(frozen=True)
class RatingDelta:
    """Penalty if unsolved at the deadline, reward if solved in time."""
    down: int
    up: int
    solved: bool = False

    @property
    def applied(self) -> int:
        return self.up if self.solved else self.down


def adjusted_problem_rating(problem_rating: int, length_minutes: int) -> float:
    """Shorter challenges make the same problem effectively harder."""
    return problem_rating + LENGTH_ADJUSTMENT_PER_20_MIN * (
        (REFERENCE_LENGTH_MINUTES - length_minutes) / 20.0
    )


def expected_solve_probability(current_rating: int, problem_rating: int, length_minutes: int) -> float:
    """E = 1 / (1 + 10 ** ((adjusted - current) / 500))."""
    adjusted = adjusted_problem_rating(problem_rating, length_minutes)
    expected = 1.0 / (1.0 + math.pow(10.0, (adjusted - current_rating) / LOGISTIC_SCALE))
    return min(max(expected, EXPECTED_EPSILON), 1.0 - EXPECTED_EPSILON)


def compute_delta(
    current_rating: int,
    problem_rating: int,
    length_minutes: int,
    solved: bool,
    elapsed_fraction: float,
) -> RatingDelta:
    """
    Compute the rating adjustment pair for one participant.

    elapsed_fraction is the share of the challenge duration consumed at solve
    time; it is clamped to [0, 1]. `solved` only selects `applied`, both
    values are always returned.
    """
    expected = expected_solve_probability(current_rating, problem_rating, length_minutes)

    down = -min(MAX_DELTA, math.floor(BASE_K / (1.0 - expected)))
    base_up = min(MAX_DELTA, math.floor(BASE_K / (UP_DIVISOR * expected)))

    fraction = min(max(float(elapsed_fraction), 0.0), 1.0)
    up = math.floor(base_up * (1.0 - SPEED_PENALTY * fraction))

    return RatingDelta(down=min(down, 0), up=max(up, 0), solved=solved)


def elapsed_fraction(started_at: int, ends_at: int, solved_at: int) -> float:
    """Fraction of [started_at, ends_at] consumed at solved_at, clamped to [0, 1]."""
    duration = ends_at - started_at
    if duration <= 0:
        return 1.0
    return min(max((solved_at - started_at) / duration, 0.0), 1.0)
