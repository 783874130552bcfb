"""Personalized weekend-team recommendations.

A user's recent votes give a per-game preference (how often the game was
picked and how strongly). Open teams for the user's top games are scored on
that preference plus how fresh the team is and how much room it has left.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from errors import CollectionNotFoundError
from services.records import (
    DAILY_VOTE,
    DEFAULT_TENDENCY,
    WEEKEND_TEAM,
    TeamRecord,
    VoteRecord,
    utc_now,
)
from services.store import Query, RecordStore
from services.teams import OPEN

logger = logging.getLogger(__name__)

RECENT_VOTES = 15
TOP_PREFERRED_GAMES = 8
CANDIDATE_TEAMS = 20
RECOMMENDATIONS = 5


@dataclass
class GamePreferenceStats:
    game_id: str
    count: int = 0
    total_tendency: int = 0

    @property
    def average_tendency(self) -> float:
        return self.total_tendency / self.count if self.count else 0.0

    @property
    def frequency_score(self) -> float:
        """Share of recent votes that named the game, on a 5-point scale."""
        return self.count / RECENT_VOTES * 5

    @property
    def preference_score(self) -> float:
        return 0.7 * self.average_tendency + 0.3 * self.frequency_score


@dataclass
class ScoreComponents:
    tendency: float = 0.0
    frequency: float = 0.0
    freshness: float = 0.0
    vacancy: float = 0.0


@dataclass
class RecommendationCandidate:
    team_id: str
    score: float
    components: ScoreComponents = field(default_factory=ScoreComponents)
    team: TeamRecord | None = None


def build_preferences(votes: list[VoteRecord]) -> dict[str, GamePreferenceStats]:
    """Accumulate (game, tendency) pairs; selected games without a tendency count as 3."""
    preferences: dict[str, GamePreferenceStats] = {}
    for vote in votes:
        explicit = {pref.game_id: pref.tendency for pref in vote.game_preferences}
        game_ids = list(dict.fromkeys([*vote.selected_game_ids, *explicit]))
        for game_id in game_ids:
            stats = preferences.setdefault(game_id, GamePreferenceStats(game_id=game_id))
            stats.count += 1
            stats.total_tendency += explicit.get(game_id, DEFAULT_TENDENCY)
    return preferences


def top_preferred_games(preferences: dict[str, GamePreferenceStats], limit: int = TOP_PREFERRED_GAMES) -> list[str]:
    ranked = sorted(preferences.values(), key=lambda stats: stats.preference_score, reverse=True)
    return [stats.game_id for stats in ranked[:limit]]


def score_team(
    team: TeamRecord,
    preference: GamePreferenceStats | None,
    now: datetime,
) -> RecommendationCandidate:
    tendency = preference.average_tendency if preference else 0.0
    frequency = preference.frequency_score if preference else 0.0

    hours_since_created = (now - team.created_at).total_seconds() / 3600
    freshness = min(5.0, max(0.0, 5 - hours_since_created / 24))

    if team.max_members > 0:
        vacancy = max(0.0, (team.max_members - team.member_count) / team.max_members)
    else:
        vacancy = 0.0

    score = tendency * 0.4 + frequency * 0.2 + freshness * 0.2 + vacancy * 5 * 0.2
    return RecommendationCandidate(
        team_id=team.id,
        score=score,
        components=ScoreComponents(
            tendency=tendency,
            frequency=frequency,
            freshness=freshness,
            vacancy=vacancy,
        ),
        team=team,
    )


class RecommendationService:
    def __init__(self, store: RecordStore, now: Callable[[], datetime] = utc_now):
        self.store = store
        self._now = now

    async def _find_or_empty(self, query: Query) -> list[dict]:
        try:
            return await self.store.find(query)
        except CollectionNotFoundError:
            logger.info("%s collection missing, no recommendations from it", query.class_name)
            return []

    async def recent_votes(self, user_id: str) -> list[VoteRecord]:
        query = Query(DAILY_VOTE).equal_to("userId", user_id).descending("createdAt").limit(RECENT_VOTES)
        return [VoteRecord.from_store(raw) for raw in await self._find_or_empty(query)]

    async def get_recommended_teams(self, user_id: str) -> list[RecommendationCandidate]:
        preferences = build_preferences(await self.recent_votes(user_id))

        if not preferences:
            logger.info("No vote history for %s, recommending newest open teams", user_id)
            query = Query(WEEKEND_TEAM).equal_to("status", OPEN).descending("createdAt").limit(RECOMMENDATIONS)
            teams = [TeamRecord.from_store(raw) for raw in await self._find_or_empty(query)]
            return [RecommendationCandidate(team_id=team.id, score=0.0, team=team) for team in teams]

        game_ids = top_preferred_games(preferences)
        query = (
            Query(WEEKEND_TEAM)
            .contained_in("game", game_ids)
            .equal_to("status", OPEN)
            .not_equal_to("leader", user_id)
            .descending("createdAt")
            .limit(CANDIDATE_TEAMS)
        )
        teams = [TeamRecord.from_store(raw) for raw in await self._find_or_empty(query)]

        now = self._now()
        candidates = [
            score_team(team, preferences.get(team.game_id), now)
            for team in teams
            if team.status == OPEN and team.leader_id != user_id
        ]
        candidates.sort(key=lambda candidate: candidate.score, reverse=True)

        logger.info("Scored %d candidate teams for %s", len(candidates), user_id)
        return candidates[:RECOMMENDATIONS]
