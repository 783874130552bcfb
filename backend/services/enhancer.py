"""Batched, cache-backed access to games and votes.

Every read goes through the TTL cache first; on a miss the store is queried
once per logical dataset (never once per record) and the result is cached.
Mutations elsewhere in the app must call invalidate_game_caches() or
invalidate_vote_caches() right after writing.
"""

import asyncio
import logging
import re
from collections import Counter, defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, time

import pandas as pd

from errors import CollectionNotFoundError
from services.cache import TTL, TTLCache
from services.records import (
    DAILY_VOTE,
    GAME,
    USER,
    USER_FAVORITE,
    EnhancedGame,
    GameRecord,
    UserRecord,
    VoteRecord,
    utc_now,
)
from services.store import Query, RecordStore

logger = logging.getLogger(__name__)

FETCH_LIMIT = 10000
UNKNOWN_GAME_NAME = "Unknown game"
TOP_GAMES_PER_DAY = 10

FAVORITE_COUNTS_KEY = "games_favorite_data"
ALL_GAMES_KEY = "all_games"
BATCH_GAMES_PREFIX = "batch_games_"
BATCH_VOTE_STATS_PREFIX = "batch_vote_stats_"
USER_VOTE_PREFIX = "user_vote_"
USER_VOTE_VERSION = "v2"

_USER_VOTE_KEY = re.compile(
    rf"^{USER_VOTE_PREFIX}{USER_VOTE_VERSION}_(?P<user>.+)_(?P<date>\d{{4}}-\d{{2}}-\d{{2}})$"
)

FavoriteStrategy = Callable[[], Awaitable[dict[str, int]]]


@dataclass
class TopGame:
    game_id: str
    game_name: str
    vote_count: int
    average_tendency: float | None = None


@dataclass
class TendencyStats:
    average_tendency: float
    tendency_count: int


@dataclass
class DayStats:
    date: str
    total_votes: int = 0
    want_to_play_count: int = 0
    game_vote_counts: dict[str, int] = field(default_factory=dict)
    top_games: list[TopGame] = field(default_factory=list)
    game_tendencies: dict[str, TendencyStats] = field(default_factory=dict)


def ranking_score(like_count: int, favorite_count: int, created_at: datetime, now: datetime) -> float:
    """Popularity with a linear recency bonus of up to 20% that decays to zero over 30 days."""
    days_since_created = (now - created_at).total_seconds() / 86400
    time_factor = max(0.0, 30 - days_since_created) / 30
    score = (like_count * 0.6 + favorite_count * 0.4) * (1 + time_factor * 0.2)
    return round(score, 2)


def date_window(today: str, days: int) -> list[str]:
    """The `days` consecutive YYYY-MM-DD dates ending at today, oldest first."""
    if days < 1:
        raise ValueError(f"days must be at least 1, got {days}")
    return pd.date_range(end=pd.Timestamp(today), periods=days, freq="D").strftime("%Y-%m-%d").tolist()


def build_day_stats(date: str, votes: list[VoteRecord], game_names: dict[str, str]) -> DayStats:
    """Tally one day's ballots. Each vote record counts as an independent ballot."""
    want_to_play = 0
    vote_counts: Counter[str] = Counter()
    tendency_totals: dict[str, list[int]] = defaultdict(lambda: [0, 0])

    for vote in votes:
        if vote.wants_to_play:
            want_to_play += 1
        vote_counts.update(vote.selected_game_ids)
        for pref in vote.game_preferences:
            totals = tendency_totals[pref.game_id]
            totals[0] += pref.tendency
            totals[1] += 1

    tendencies = {
        game_id: TendencyStats(average_tendency=total / count, tendency_count=count)
        for game_id, (total, count) in tendency_totals.items()
    }

    # sorted() is stable, ties keep first-seen order
    ranked = sorted(vote_counts.items(), key=lambda item: item[1], reverse=True)
    top_games = [
        TopGame(
            game_id=game_id,
            game_name=game_names.get(game_id, UNKNOWN_GAME_NAME),
            vote_count=count,
            average_tendency=tendencies[game_id].average_tendency if game_id in tendencies else None,
        )
        for game_id, count in ranked[:TOP_GAMES_PER_DAY]
    ]

    return DayStats(
        date=date,
        total_votes=len(votes),
        want_to_play_count=want_to_play,
        game_vote_counts=dict(vote_counts),
        top_games=top_games,
        game_tendencies=tendencies,
    )


def user_vote_key(user_id: str, date: str) -> str:
    return f"{USER_VOTE_PREFIX}{USER_VOTE_VERSION}_{user_id}_{date}"


def parse_user_vote_key(key: str) -> tuple[str, str] | None:
    """(user_id, date) for a current-version vote key, else None."""
    match = _USER_VOTE_KEY.match(key)
    if match is None:
        return None
    return match.group("user"), match.group("date")


class GameDataService:
    def __init__(
        self,
        store: RecordStore,
        cache: TTLCache,
        now: Callable[[], datetime] = utc_now,
        favorite_strategies: list[FavoriteStrategy] | None = None,
    ):
        self.store = store
        self.cache = cache
        self._now = now
        # Tried in order; only CollectionNotFoundError moves on to the next one
        self.favorite_strategies: list[FavoriteStrategy] = favorite_strategies or [
            self.count_from_favorites,
            self.count_from_user_lists,
            self.zero_counts,
        ]

    def today(self) -> str:
        return self._now().date().isoformat()

    # ------------------------------------------------------------------
    # Favorite counts
    # ------------------------------------------------------------------

    async def get_favorite_counts(self) -> dict[str, int]:
        return await self.cache.get_or_fetch(
            FAVORITE_COUNTS_KEY, self._resolve_favorite_counts, TTL["favorite_counts"]
        )

    async def _resolve_favorite_counts(self) -> dict[str, int]:
        for strategy in self.favorite_strategies:
            name = getattr(strategy, "__name__", repr(strategy))
            try:
                counts = await strategy()
            except CollectionNotFoundError as e:
                logger.info("Favorite source %s unavailable (%s), trying next", name, e.class_name)
                continue
            logger.info("Favorite counts for %d games via %s", len(counts), name)
            return counts
        logger.warning("No favorite source available, returning empty counts")
        return {}

    async def count_from_favorites(self) -> dict[str, int]:
        """Tier 1: group the UserFavorite join collection by game."""
        query = Query(USER_FAVORITE).select("game").limit(FETCH_LIMIT)
        rows = await self.store.find(query)
        counts: Counter[str] = Counter()
        for raw in rows:
            game = raw.get("game")
            game_id = game.get("objectId") if isinstance(game, dict) else game
            if isinstance(game_id, str) and game_id:
                counts[game_id] += 1
        return dict(counts)

    async def count_from_user_lists(self) -> dict[str, int]:
        """Tier 2: tally the favoriteGames list embedded on user records."""
        query = Query(USER).exists("favoriteGames").select("favoriteGames").limit(FETCH_LIMIT)
        rows = await self.store.find(query)
        counts: Counter[str] = Counter()
        for raw in rows:
            counts.update(UserRecord.from_store(raw).favorite_game_ids)
        return dict(counts)

    async def zero_counts(self) -> dict[str, int]:
        """Tier 3: every known game with a zero count."""
        query = Query(GAME).select("objectId").limit(FETCH_LIMIT)
        rows = await self.store.find(query)
        return {raw["objectId"]: 0 for raw in rows if raw.get("objectId")}

    # ------------------------------------------------------------------
    # Games
    # ------------------------------------------------------------------

    async def _fetch_games(self, query: Query) -> list[GameRecord]:
        try:
            rows = await self.store.find(query)
        except CollectionNotFoundError:
            logger.info("Game collection missing, treating as empty")
            return []
        return [GameRecord.from_store(raw) for raw in rows]

    async def get_all_games(self) -> list[GameRecord]:
        return await self.cache.get_or_fetch(
            ALL_GAMES_KEY,
            lambda: self._fetch_games(Query(GAME).limit(FETCH_LIMIT)),
            TTL["all_games"],
        )

    async def get_batch_games(self, ids: list[str]) -> list[GameRecord]:
        unique_ids = sorted(set(ids))
        if not unique_ids:
            return []
        key = BATCH_GAMES_PREFIX + ",".join(unique_ids)
        query = Query(GAME).contained_in("objectId", unique_ids).limit(len(unique_ids))
        return await self.cache.get_or_fetch(key, lambda: self._fetch_games(query), TTL["batch_games"])

    async def get_enhanced_games(self, ids: list[str] | None = None) -> list[EnhancedGame]:
        """Games joined with favorite counts and a recency-weighted ranking score."""
        if ids is not None and not ids:
            return []

        games, favorite_counts = await asyncio.gather(
            self.get_all_games() if ids is None else self.get_batch_games(ids),
            self.get_favorite_counts(),
        )

        now = self._now()
        enhanced = []
        for game in games:
            favorite_count = favorite_counts.get(game.id, 0)
            enhanced.append(
                EnhancedGame(
                    **vars(game),
                    favorite_count=favorite_count,
                    hot_score=ranking_score(game.like_count, favorite_count, game.created_at, now),
                )
            )
        return enhanced

    async def get_game_names(self, ids) -> dict[str, str]:
        """Resolve names for a set of game ids with one batched query."""
        unique_ids = sorted({game_id for game_id in ids if game_id})
        if not unique_ids:
            return {}
        query = Query(GAME).contained_in("objectId", unique_ids).select("name").limit(len(unique_ids))
        games = await self._fetch_games(query)
        return {game.id: game.name or UNKNOWN_GAME_NAME for game in games}

    # ------------------------------------------------------------------
    # Votes
    # ------------------------------------------------------------------

    async def get_batch_vote_stats(self, days: int = 7) -> dict[str, DayStats]:
        return await self.cache.get_or_fetch(
            f"{BATCH_VOTE_STATS_PREFIX}{days}",
            lambda: self._compute_batch_vote_stats(days),
            TTL["batch_vote_stats"],
        )

    async def _compute_batch_vote_stats(self, days: int) -> dict[str, DayStats]:
        dates = date_window(self.today(), days)

        query = Query(DAILY_VOTE).contained_in("date", dates).limit(FETCH_LIMIT)
        try:
            rows = await self.store.find(query)
        except CollectionNotFoundError:
            logger.info("DailyVote collection missing, treating as empty")
            rows = []
        votes = [VoteRecord.from_store(raw) for raw in rows]

        votes_by_date: dict[str, list[VoteRecord]] = {date: [] for date in dates}
        for vote in votes:
            if vote.date in votes_by_date:
                votes_by_date[vote.date].append(vote)

        game_names = await self.get_game_names(
            game_id for vote in votes for game_id in vote.selected_game_ids
        )

        logger.info("Computed vote stats for %d days from %d votes", days, len(votes))
        return {date: build_day_stats(date, day_votes, game_names) for date, day_votes in votes_by_date.items()}

    async def get_today_vote(self, user_id: str) -> VoteRecord | None:
        """The user's latest vote for today, cached at most until the end of the day."""
        today = self.today()
        self._purge_stale_user_votes(user_id, today)

        key = user_vote_key(user_id, today)
        cached = self.cache.get(key)
        if cached is not None and cached.date != today:
            self.cache.clear(key)
            logger.info("Dropped vote cache with mismatched date: %s", key)

        now = self._now()
        end_of_day = datetime.combine(now.date(), time.max, tzinfo=now.tzinfo)
        ttl = min(TTL["user_vote"], (end_of_day - now).total_seconds())
        return await self.cache.get_or_fetch(key, lambda: self._fetch_today_vote(user_id, today), ttl)

    async def _fetch_today_vote(self, user_id: str, today: str) -> VoteRecord | None:
        query = Query(DAILY_VOTE).equal_to("userId", user_id).equal_to("date", today).descending("createdAt")
        try:
            raw = await self.store.first(query)
        except CollectionNotFoundError:
            return None
        return VoteRecord.from_store(raw) if raw is not None else None

    def _purge_stale_user_votes(self, user_id: str, today: str) -> None:
        def is_stale(key: str) -> bool:
            parsed = parse_user_vote_key(key)
            return parsed is not None and parsed[0] == user_id and parsed[1] != today

        self.cache.clear_matching(is_stale, invalidate_inflight=False)

    # ------------------------------------------------------------------
    # Invalidation and maintenance
    # ------------------------------------------------------------------

    def invalidate_game_caches(self) -> int:
        cleared = self.cache.clear_matching(
            lambda key: key in (FAVORITE_COUNTS_KEY, ALL_GAMES_KEY) or key.startswith(BATCH_GAMES_PREFIX)
        )
        logger.info("Game caches cleared (%d entries)", cleared)
        return cleared

    def invalidate_vote_caches(self, user_id: str | None = None) -> int:
        """Clear batched vote stats and per-user vote caches (one user's when user_id is given)."""

        def should_clear(key: str) -> bool:
            if key.startswith(BATCH_VOTE_STATS_PREFIX):
                return True
            if key.startswith(USER_VOTE_PREFIX):
                if user_id is None:
                    return True
                parsed = parse_user_vote_key(key)
                return parsed is not None and parsed[0] == user_id
            return False

        cleared = self.cache.clear_matching(should_clear)
        logger.info("Vote caches cleared for %s (%d entries)", user_id or "all users", cleared)
        return cleared

    def invalidate_all(self) -> None:
        self.cache.clear()
        logger.info("All caches cleared")

    def perform_health_check(self) -> int:
        """Drop per-user vote entries from earlier days or older key versions."""
        today = self.today()

        def is_invalid(key: str) -> bool:
            if not key.startswith(USER_VOTE_PREFIX):
                return False
            parsed = parse_user_vote_key(key)
            return parsed is None or parsed[1] != today

        cleaned = self.cache.clear_matching(is_invalid, invalidate_inflight=False)
        logger.info("Cache health check removed %d entries", cleaned)
        return cleaned

    async def run_health_checks(self, interval_seconds: float) -> None:
        """perform_health_check() now and then every interval_seconds, until cancelled."""
        while True:
            self.perform_health_check()
            await asyncio.sleep(interval_seconds)

    async def warmup(self) -> None:
        """Prime the most-read caches. Failures are logged, never raised."""
        self.perform_health_check()
        results = await asyncio.gather(
            self.get_favorite_counts(),
            self.get_all_games(),
            self.get_batch_vote_stats(7),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.warning("Cache warmup step failed: %s", result)
        logger.info("Cache warmup finished")
