"""Shared fixtures: a controllable clock, a seeded in-memory store, services."""

from datetime import datetime, timedelta, timezone

import pytest

from services.cache import TTLCache
from services.enhancer import GameDataService
from services.recommendations import RecommendationService
from services.reports import ReportService
from services.store import MemoryStore

NOW = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Stands in for time.time() in the cache."""

    def __init__(self, start: float = 1_000_000.0):
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


def days_ago(days: float) -> datetime:
    return NOW - timedelta(days=days)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock) -> TTLCache:
    return TTLCache(default_ttl=300, clock=clock)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore(
        {
            "Game": [
                {"objectId": "g1", "name": "Overwatch", "likeCount": 10, "maxPlayers": 5, "createdAt": days_ago(1)},
                {"objectId": "g2", "name": "Valorant", "likeCount": 4, "maxPlayers": 5, "createdAt": days_ago(40)},
                {"objectId": "g3", "name": "Apex", "likeCount": 0, "maxPlayers": 3, "createdAt": days_ago(10)},
            ],
            "UserFavorite": [
                {"user": "u1", "game": "g1", "createdAt": days_ago(1)},
                {"user": "u2", "game": "g1", "createdAt": days_ago(2)},
                {"user": "u2", "game": "g2", "createdAt": days_ago(2)},
            ],
            "_User": [
                {"objectId": "u1", "nickname": "alice", "favoriteGames": ["g1"]},
                {"objectId": "u2", "nickname": "bob", "favoriteGames": ["g1", "g2"]},
            ],
            "DailyVote": [],
            "WeekendTeam": [],
        }
    )


@pytest.fixture
def games(store, cache) -> GameDataService:
    return GameDataService(store, cache, now=lambda: NOW)


@pytest.fixture
def reports(games) -> ReportService:
    return ReportService(games, now=lambda: NOW)


@pytest.fixture
def recommendations(store) -> RecommendationService:
    return RecommendationService(store, now=lambda: NOW)
