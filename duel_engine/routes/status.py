"""
Status Router

Read-only projections of challenges and tournaments, plus the host cancel
action. The scheduler and engine are taken from app.state, wired by the
application lifespan.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from duel_engine.services.challenge_scheduler import ChallengeScheduler
from duel_engine.services.tournament_engine import TournamentEngine

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["status"])


class CancelChallengeRequest(BaseModel):
    requester_id: str = Field(..., description="Must be the challenge host")


def get_scheduler(request: Request) -> ChallengeScheduler:
    return request.app.state.scheduler


def get_engine(request: Request) -> TournamentEngine:
    return request.app.state.engine


# =============================================================================
# Challenges
# =============================================================================

@router.get("/challenges/active")
async def list_active_challenges(
    scope_id: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None),
    scheduler: ChallengeScheduler = Depends(get_scheduler),
):
    if user_id:
        challenges = await scheduler.list_active_challenges_for_user(user_id, scope_id)
    else:
        challenges = await scheduler.list_active_challenges(scope_id)
    return {
        "success": True,
        "count": len(challenges),
        "challenges": [c.model_dump() for c in challenges],
    }


@router.get("/challenges/recent")
async def list_recent_challenges(
    scope_id: Optional[str] = Query(None),
    limit: int = Query(5, ge=1, le=50),
    scheduler: ChallengeScheduler = Depends(get_scheduler),
):
    challenges = await scheduler.list_recent_completed_challenges(scope_id, limit)
    return {
        "success": True,
        "challenges": [c.model_dump() for c in challenges],
    }


@router.post("/challenges/{challenge_id}/cancel")
async def cancel_challenge(
    challenge_id: str,
    body: CancelChallengeRequest,
    scheduler: ChallengeScheduler = Depends(get_scheduler),
):
    """
    Cancel an active challenge.

    Errors:
    - 404 if no active challenge has this id
    - 403 if requester is not the host
    """
    challenge = await scheduler.cancel_challenge(challenge_id, body.requester_id)
    return {"success": True, "challenge": challenge.model_dump()}


# =============================================================================
# Tournaments
# =============================================================================

@router.get("/tournaments/history")
async def tournament_history(
    guild_id: str = Query(...),
    page: int = Query(1, ge=1),
    engine: TournamentEngine = Depends(get_engine),
):
    history = await engine.get_history_page(guild_id, page)
    return {"success": True, **history.model_dump()}


@router.get("/tournaments/{tournament_id}/standings")
async def tournament_standings(
    tournament_id: str,
    engine: TournamentEngine = Depends(get_engine),
):
    standings = await engine.get_standings(tournament_id)
    return {"success": True, "standings": [entry.model_dump() for entry in standings]}


@router.get("/tournaments/{tournament_id}/rounds")
async def tournament_rounds(
    tournament_id: str,
    round_number: Optional[int] = Query(None, ge=1),
    engine: TournamentEngine = Depends(get_engine),
):
    rounds = await engine.list_round_summaries(tournament_id, round_number)
    response = {"success": True, "rounds": [r.model_dump() for r in rounds]}
    if round_number is not None:
        matches = await engine.list_round_matches(tournament_id, round_number)
        response["matches"] = [m.model_dump() for m in matches]
    return response


@router.get("/tournaments/{tournament_id}/recap")
async def tournament_recap(
    tournament_id: str,
    engine: TournamentEngine = Depends(get_engine),
):
    recap = await engine.get_recap(tournament_id)
    return {"success": True, **recap.model_dump()}
