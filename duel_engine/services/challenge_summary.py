"""
Challenge summary rendering.

Turns a persisted challenge into the state handed to the message sink and
into the read projection returned by the status routes.
"""
from typing import Dict, Optional, Tuple

from duel_engine.orm.challenge import Challenge, ChallengeStatus
from duel_engine.schemas.challenge import ChallengeSummary, RenderedChallenge


def to_summary(challenge: Challenge) -> ChallengeSummary:
    return ChallengeSummary.model_validate(challenge)


def time_left(challenge: Challenge, now: int) -> int:
    return max(0, challenge.ends_at - now)


def render_fingerprint(challenge: Challenge, now: int, bucket_seconds: int) -> Tuple:
    """
    Everything the in-progress summary shows that can change between ticks.

    Two ticks with the same fingerprint would render the same message.
    """
    bucket = time_left(challenge, now) // max(1, bucket_seconds)
    solved = tuple(
        (p.user_id, p.solved_at, p.rating_delta) for p in challenge.participants
    )
    return challenge.status, bucket, solved


def _format_offset(seconds: int) -> str:
    minutes, secs = divmod(max(0, seconds), 60)
    return f"{minutes:02d}:{secs:02d}"


def _format_delta(delta: Optional[int]) -> str:
    if delta is None:
        return "unrated"
    return f"{delta:+d}"


def _streak_suffix(streak: Optional[Tuple[int, int]]) -> str:
    if not streak or streak[0] <= 0:
        return ""
    current, best = streak
    suffix = f", streak now {current} day{'s' if current != 1 else ''} 🔥"
    if current >= best and current > 1:
        suffix += " (new best!)"
    return suffix


def render_challenge(
    challenge: Challenge,
    now: int,
    streaks: Optional[Dict[str, Tuple[int, int]]] = None,
) -> RenderedChallenge:
    streaks = streaks or {}
    final = challenge.status != ChallengeStatus.ACTIVE.value

    if challenge.status == ChallengeStatus.CANCELLED.value:
        title = f"Challenge cancelled: {challenge.problem_key} {challenge.problem_name}"
    elif final:
        title = f"Challenge finished: {challenge.problem_key} {challenge.problem_name}"
    else:
        title = (
            f"Challenge {challenge.problem_key} {challenge.problem_name} "
            f"({challenge.problem_rating}), {_format_offset(time_left(challenge, now))} left"
        )

    lines = []
    for participant in challenge.participants:
        if participant.solved:
            offset = _format_offset(participant.solved_at - challenge.started_at)
            lines.append(
                f"<@{participant.user_id}> solved in {offset} "
                f"({_format_delta(participant.rating_delta)})"
                f"{_streak_suffix(streaks.get(participant.user_id))}"
            )
        elif challenge.status == ChallengeStatus.COMPLETED.value:
            lines.append(
                f"<@{participant.user_id}> did not solve ({_format_delta(participant.rating_delta)})"
            )
        elif challenge.status == ChallengeStatus.CANCELLED.value:
            lines.append(f"<@{participant.user_id}> no rating change")
        else:
            lines.append(f"<@{participant.user_id}> working...")

    return RenderedChallenge(
        challenge_id=challenge.id,
        status=challenge.status,
        title=title,
        lines=lines,
        time_left_seconds=time_left(challenge, now),
        final=final,
    )
