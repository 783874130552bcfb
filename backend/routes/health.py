"""Health and readiness check routes."""

import logging

from fastapi import APIRouter, Request

from config import settings
from services.records import GAME
from services.store import Query

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/ready")
async def ready() -> dict:
    """Lightweight readiness check — no external calls."""
    return {"status": "ok", "service": "playgroup-analytics", "commit": settings.git_sha}


@router.get("/health")
async def health(request: Request) -> dict:
    """Deep health check that verifies record store connectivity."""
    result = {
        "status": "ok",
        "service": "playgroup-analytics",
        "commit": settings.git_sha,
        "store": "not_tested",
        "cache_entries": len(request.app.state.cache),
    }

    try:
        result["game_count"] = await request.app.state.store.count(Query(GAME))
        result["store"] = "connected"
    except Exception as e:
        logger.exception("Record store health check failed")
        result["store"] = "error"
        result["store_error"] = str(e)

    return result
