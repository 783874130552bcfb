"""Cache invalidation entry points, called by the UI/store layer after a mutation."""

import logging

from fastapi import APIRouter, Query, Request

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cache")


@router.post("/invalidate/games")
async def invalidate_games(request: Request) -> dict:
    """After creating, editing, deleting, liking or favoriting a game."""
    cleared = request.app.state.games.invalidate_game_caches()
    return {"cleared": cleared}


@router.post("/invalidate/votes")
async def invalidate_votes(request: Request, user_id: str | None = Query(None)) -> dict:
    """After a vote is cast or changed. Pass user_id to keep other users' vote caches."""
    cleared = request.app.state.games.invalidate_vote_caches(user_id)
    return {"cleared": cleared, "user_id": user_id}


@router.post("/invalidate/all")
async def invalidate_all(request: Request) -> dict:
    request.app.state.games.invalidate_all()
    return {"cleared": "all"}


@router.post("/health-check")
async def health_check(request: Request) -> dict:
    """Drop per-user vote entries left over from earlier days."""
    cleaned = request.app.state.games.perform_health_check()
    return {"cleaned": cleaned}
