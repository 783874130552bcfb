"""Weekend team status transitions.

    open --(member count reaches max_members)--> full
    full --(a member leaves)--------------------> open
    open|full --(leader leaves)-----------------> destroyed (record removed)

Status is always recomputed from the member list; the stored value is never
trusted. These functions only compute the new record; persisting it (or
destroying it) is the caller's job, followed by a cache invalidation.
"""

import logging
from dataclasses import replace

from errors import NotTeamMemberError, TeamFullError
from services.records import WEEKEND_TEAM, TeamRecord
from services.store import RecordStore

logger = logging.getLogger(__name__)

OPEN = "open"
FULL = "full"
COMPLETED = "completed"
CLOSED = "closed"


def derive_status(member_count: int, max_members: int) -> str:
    return FULL if member_count >= max_members else OPEN


def join_team(team: TeamRecord, user_id: str) -> TeamRecord:
    if user_id in team.members:
        return team
    if team.member_count >= team.max_members:
        raise TeamFullError(team.id)

    members = [*team.members, user_id]
    updated = replace(team, members=members, status=derive_status(len(members), team.max_members))
    if updated.status != team.status:
        logger.info("Team %s: %s -> %s", team.id, team.status, updated.status)
    return updated


def leave_team(team: TeamRecord, user_id: str) -> TeamRecord | None:
    """Remove user_id from the team. Returns None when the team is destroyed."""
    if user_id not in team.members:
        raise NotTeamMemberError(team.id, user_id)
    if user_id == team.leader_id:
        logger.info("Team %s destroyed: leader %s left", team.id, user_id)
        return None

    members = [member for member in team.members if member != user_id]
    updated = replace(team, members=members, status=derive_status(len(members), team.max_members))
    if updated.status != team.status:
        logger.info("Team %s: %s -> %s", team.id, team.status, updated.status)
    return updated


class TeamMembershipService:
    """Applies join/leave transitions and writes the result back to the store."""

    def __init__(self, store: RecordStore):
        self.store = store

    async def _load(self, team_id: str) -> TeamRecord:
        return TeamRecord.from_store(await self.store.get(WEEKEND_TEAM, team_id))

    async def join(self, team_id: str, user_id: str) -> TeamRecord:
        team = await self._load(team_id)
        updated = join_team(team, user_id)
        if updated is not team:
            await self.store.save(
                WEEKEND_TEAM,
                {"members": updated.members, "status": updated.status},
                object_id=team_id,
            )
        return updated

    async def leave(self, team_id: str, user_id: str) -> TeamRecord | None:
        team = await self._load(team_id)
        updated = leave_team(team, user_id)
        if updated is None:
            await self.store.destroy(WEEKEND_TEAM, team_id)
            return None
        await self.store.save(
            WEEKEND_TEAM,
            {"members": updated.members, "status": updated.status},
            object_id=team_id,
        )
        return updated
