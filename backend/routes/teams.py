"""Team membership routes — join/leave with derived status."""

import logging
from dataclasses import asdict

from fastapi import APIRouter, Query, Request

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/teams")


@router.post("/{team_id}/join")
async def join(request: Request, team_id: str, user_id: str = Query(...)) -> dict:
    team = await request.app.state.memberships.join(team_id, user_id)
    return {
        "_summary": f"Team {team_id} is {team.status} ({team.member_count}/{team.max_members})",
        "team": asdict(team),
    }


@router.post("/{team_id}/leave")
async def leave(request: Request, team_id: str, user_id: str = Query(...)) -> dict:
    team = await request.app.state.memberships.leave(team_id, user_id)
    if team is None:
        return {"_summary": f"Team {team_id} was dissolved", "team": None}
    return {
        "_summary": f"Team {team_id} is {team.status} ({team.member_count}/{team.max_members})",
        "team": asdict(team),
    }
