"""Report builders for favorites, daily votes and weekend teams.

Each report resolves a concrete date range, pulls the raw records for that
range in one query per collection, and buckets them by day, week or time
slot. A missing backing collection yields an empty report, never an error.

Rankings are sorted descending by their primary metric; ties keep the order
in which the entries were first seen.
"""

import asyncio
import io
import logging
from collections import Counter, defaultdict
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, fields
from datetime import date, datetime, time, timedelta, timezone

import pandas as pd

from errors import CollectionNotFoundError
from services.enhancer import FETCH_LIMIT, UNKNOWN_GAME_NAME, GameDataService, date_window
from services.records import (
    DAILY_VOTE,
    USER_FAVORITE,
    WEEKEND_TEAM,
    FavoriteRecord,
    TeamRecord,
    VoteRecord,
    utc_now,
)
from services.store import Query
from services.teams import COMPLETED

logger = logging.getLogger(__name__)

TIME_RANGES = {
    "week": pd.DateOffset(days=7),
    "month": pd.DateOffset(months=1),
    "quarter": pd.DateOffset(months=3),
    "year": pd.DateOffset(years=1),
}

TOP_N = 10
FAVORITE_TREND_DAYS = 30

# (label, lowest count, highest count); None means unbounded
FAVORITE_BUCKETS = [
    ("0", 0, 0),
    ("1-5", 1, 5),
    ("6-10", 6, 10),
    ("11-20", 11, 20),
    ("20+", 21, None),
]

TIME_SLOTS = ["09:00-12:00", "12:00-15:00", "15:00-18:00", "18:00-21:00", "21:00-24:00"]

# Games kept per period in the peak-vote breakdown
PEAK_WEEK_TOP = 3
PEAK_PERIOD_TOP = 5

EXPORT_FORMATS = {
    "csv": "text/csv; charset=utf-8",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}


def report_hot_score(favorite_count: int, like_count: int) -> int:
    """Favorite-report ranking. Not the same formula as enhancer.ranking_score."""
    return favorite_count * 2 + like_count


def time_slot_for(start_time: str) -> str | None:
    """Bucket an HH:mm start time; hours outside 09-21 land in the last slot."""
    try:
        hour = int(start_time.split(":")[0])
    except (AttributeError, ValueError):
        return None
    if 9 <= hour < 12:
        return TIME_SLOTS[0]
    if 12 <= hour < 15:
        return TIME_SLOTS[1]
    if 15 <= hour < 18:
        return TIME_SLOTS[2]
    if 18 <= hour < 21:
        return TIME_SLOTS[3]
    return TIME_SLOTS[4]


def week_start(moment: date) -> str:
    """Monday of the ISO week containing moment (a date or datetime), as YYYY-MM-DD."""
    day = moment.date() if isinstance(moment, datetime) else moment
    return (day - timedelta(days=day.weekday())).isoformat()


def _mean(total: float, count: int) -> float:
    return total / count if count > 0 else 0.0


# ---------------------------------------------------------------------------
# Date ranges
# ---------------------------------------------------------------------------


@dataclass
class ReportQuery:
    time_range: str = "week"
    start_date: str | None = None
    end_date: str | None = None


@dataclass
class DateRange:
    start: date
    end: date

    @property
    def start_datetime(self) -> datetime:
        return datetime.combine(self.start, time.min, tzinfo=timezone.utc)

    @property
    def end_datetime(self) -> datetime:
        return datetime.combine(self.end, time.max, tzinfo=timezone.utc)

    def dates(self) -> list[str]:
        return pd.date_range(self.start, self.end, freq="D").strftime("%Y-%m-%d").tolist()


def _parse_date(value: str) -> date:
    try:
        return pd.Timestamp(value).date()
    except ValueError as e:
        raise ValueError(f"Invalid date: {value!r}") from e


def resolve_date_range(query: ReportQuery, today: date) -> DateRange:
    """Concrete start/end dates. Explicit dates override the symbolic range.

    time_range is only looked up when no start_date is given.
    """
    end = _parse_date(query.end_date) if query.end_date else today
    if query.start_date:
        start = _parse_date(query.start_date)
    else:
        offset = TIME_RANGES.get(query.time_range)
        if offset is None:
            raise ValueError(f"Unknown time range: {query.time_range}. Supported: {list(TIME_RANGES)}")
        start = (pd.Timestamp(end) - offset).date()

    if start > end:
        raise ValueError(f"start_date {start} is after end_date {end}")
    return DateRange(start=start, end=end)


# ---------------------------------------------------------------------------
# Report value objects
# ---------------------------------------------------------------------------


@dataclass
class FavoriteGameRank:
    game_id: str
    game_name: str
    favorite_count: int
    like_count: int
    hot_score: int


@dataclass
class RangeBucket:
    range: str
    user_count: int = 0


@dataclass
class DailyCount:
    date: str
    count: int = 0


@dataclass
class FavoriteSummary:
    total_games: int
    total_favorites: int
    average_favorites_per_game: float
    most_favorited_game: str


@dataclass
class FavoriteReport:
    top_favorite_games: list[FavoriteGameRank]
    user_favorite_distribution: list[RangeBucket]
    favorite_trend: list[DailyCount]
    summary: FavoriteSummary


@dataclass
class ParticipationStat:
    date: str
    total_votes: int
    want_to_play_count: int
    participation_rate: float


@dataclass
class VotedGame:
    game_id: str
    game_name: str
    total_votes: int
    average_tendency: float
    unique_days: int


@dataclass
class UserActivity:
    user_id: str
    vote_days: int
    total_votes: int
    average_tendency: float


@dataclass
class VoteTrendPoint:
    date: str
    total_votes: int
    unique_users: int
    average_tendency: float


@dataclass
class PeakVote:
    period: str
    game_id: str
    game_name: str
    vote_count: int


@dataclass
class PeakVotes:
    """Most-voted games per calendar week, month and quarter, oldest period first."""

    week: list[PeakVote] = field(default_factory=list)
    month: list[PeakVote] = field(default_factory=list)
    quarter: list[PeakVote] = field(default_factory=list)


@dataclass
class VoteReport:
    participation_stats: list[ParticipationStat] = field(default_factory=list)
    top_voted_games: list[VotedGame] = field(default_factory=list)
    user_activity: list[UserActivity] = field(default_factory=list)
    vote_trend: list[VoteTrendPoint] = field(default_factory=list)
    peak_votes: PeakVotes = field(default_factory=PeakVotes)


@dataclass
class TeamStats:
    total_teams: int
    total_participants: int
    average_team_size: float
    completion_rate: float


@dataclass
class GamePopularity:
    game_id: str
    game_name: str
    team_count: int
    total_participants: int
    average_team_size: float


@dataclass
class UserParticipation:
    user_id: str
    teams_joined: int
    teams_created: int
    participation_rate: float


@dataclass
class TimeSlotStat:
    time_slot: str
    team_count: int = 0
    participant_count: int = 0


@dataclass
class WeeklyTeamTrend:
    week_start: str
    team_count: int
    participant_count: int
    average_team_size: float


@dataclass
class TeamReport:
    team_stats: TeamStats
    game_popularity: list[GamePopularity]
    user_participation: list[UserParticipation]
    time_distribution: list[TimeSlotStat]
    team_trend: list[WeeklyTeamTrend]


# ---------------------------------------------------------------------------
# Peak votes and export
# ---------------------------------------------------------------------------


def _peak_for(
    votes: list[VoteRecord],
    label: Callable[[date], str],
    top: int,
    game_names: dict[str, str],
) -> list[PeakVote]:
    per_period: dict[str, Counter[str]] = defaultdict(Counter)
    for vote in votes:
        try:
            day = date.fromisoformat(vote.date)
        except ValueError:
            continue
        per_period[label(day)].update(vote.selected_game_ids)

    peaks = []
    for period in sorted(per_period):
        ranked = sorted(per_period[period].items(), key=lambda item: item[1], reverse=True)
        peaks.extend(
            PeakVote(
                period=period,
                game_id=game_id,
                game_name=game_names.get(game_id, UNKNOWN_GAME_NAME),
                vote_count=count,
            )
            for game_id, count in ranked[:top]
        )
    return peaks


def peak_votes(votes: list[VoteRecord], game_names: dict[str, str]) -> PeakVotes:
    """Top games per week (Monday date), month (YYYY-MM) and quarter (YYYYQn)."""
    return PeakVotes(
        week=_peak_for(votes, week_start, PEAK_WEEK_TOP, game_names),
        month=_peak_for(votes, lambda day: str(pd.Period(day, freq="M")), PEAK_PERIOD_TOP, game_names),
        quarter=_peak_for(votes, lambda day: str(pd.Period(day, freq="Q")), PEAK_PERIOD_TOP, game_names),
    )


def _section_rows(value) -> list[dict]:
    if isinstance(value, PeakVotes):
        return [
            {"granularity": granularity, **asdict(peak)}
            for granularity in ("week", "month", "quarter")
            for peak in getattr(value, granularity)
        ]
    if isinstance(value, list):
        return [asdict(row) for row in value]
    return [asdict(value)]


def export_report(report, section: str, fmt: str = "csv") -> bytes:
    """Serialize one section of a report as CSV (UTF-8 with BOM) or an XLSX workbook."""
    sections = [item.name for item in fields(report)]
    if section not in sections:
        raise ValueError(f"Unknown report section: {section}. Available: {sections}")
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"Unknown export format: {fmt}. Supported: {list(EXPORT_FORMATS)}")

    frame = pd.DataFrame(_section_rows(getattr(report, section)))
    if fmt == "csv":
        # BOM so spreadsheet apps detect UTF-8 game names
        return ("\ufeff" + frame.to_csv(index=False)).encode("utf-8")

    buffer = io.BytesIO()
    frame.to_excel(buffer, index=False, sheet_name=section[:31])
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class ReportService:
    def __init__(self, games: GameDataService, now: Callable[[], datetime] = utc_now):
        self.games = games
        self.store = games.store
        self._now = now

    def resolve(self, query: ReportQuery) -> DateRange:
        return resolve_date_range(query, self._now().date())

    async def get_report(self, kind: str, query: ReportQuery):
        """Build a report by kind: favorites, votes or teams."""
        builders = {
            "favorites": self.get_favorite_report,
            "votes": self.get_vote_report,
            "teams": self.get_team_report,
        }
        if kind not in builders:
            raise ValueError(f"Unknown report kind: {kind}. Supported: {list(builders)}")
        return await builders[kind](query)

    async def _find_or_empty(self, query: Query) -> list[dict]:
        try:
            return await self.store.find(query)
        except CollectionNotFoundError:
            logger.info("%s collection missing, report section is empty", query.class_name)
            return []

    # -- favorites ---------------------------------------------------------

    async def get_favorite_report(self, query: ReportQuery) -> FavoriteReport:
        date_range = self.resolve(query)
        today = self._now().date()
        trend_dates = date_window(today.isoformat(), FAVORITE_TREND_DAYS)

        # One favorites query covering both the report range and the trend window
        fetch_range = DateRange(
            start=min(date_range.start, date.fromisoformat(trend_dates[0])),
            end=max(date_range.end, today),
        )
        favorites_query = (
            Query(USER_FAVORITE)
            .greater_than_or_equal_to("createdAt", fetch_range.start_datetime)
            .less_than_or_equal_to("createdAt", fetch_range.end_datetime)
            .limit(FETCH_LIMIT)
        )

        games, favorite_counts, rows = await asyncio.gather(
            self.games.get_all_games(),
            self.games.get_favorite_counts(),
            self._find_or_empty(favorites_query),
        )
        favorites = [FavoriteRecord.from_store(raw) for raw in rows]
        in_range = [
            fav for fav in favorites
            if date_range.start_datetime <= fav.created_at <= date_range.end_datetime
        ]

        ranked = sorted(
            (
                FavoriteGameRank(
                    game_id=game.id,
                    game_name=game.name or UNKNOWN_GAME_NAME,
                    favorite_count=favorite_counts.get(game.id, 0),
                    like_count=game.like_count,
                    hot_score=report_hot_score(favorite_counts.get(game.id, 0), game.like_count),
                )
                for game in games
            ),
            key=lambda rank: rank.hot_score,
            reverse=True,
        )

        per_user = Counter(fav.user_id for fav in in_range if fav.user_id)
        distribution = [RangeBucket(range=label) for label, _, _ in FAVORITE_BUCKETS]
        for count in per_user.values():
            for bucket, (_, low, high) in zip(distribution, FAVORITE_BUCKETS):
                if count >= low and (high is None or count <= high):
                    bucket.user_count += 1
                    break

        per_day = Counter(fav.created_at.date().isoformat() for fav in favorites)
        trend = [DailyCount(date=day, count=per_day.get(day, 0)) for day in trend_dates]

        summary = FavoriteSummary(
            total_games=len(games),
            total_favorites=len(in_range),
            average_favorites_per_game=_mean(len(in_range), len(games)),
            # leader of the hot-score ranking
            most_favorited_game=ranked[0].game_name if ranked else "None",
        )

        return FavoriteReport(
            top_favorite_games=ranked[:TOP_N],
            user_favorite_distribution=distribution,
            favorite_trend=trend,
            summary=summary,
        )

    # -- votes -------------------------------------------------------------

    async def get_vote_report(self, query: ReportQuery) -> VoteReport:
        date_range = self.resolve(query)
        votes_query = (
            Query(DAILY_VOTE)
            .greater_than_or_equal_to("date", date_range.start.isoformat())
            .less_than_or_equal_to("date", date_range.end.isoformat())
            .limit(FETCH_LIMIT)
        )
        votes = [VoteRecord.from_store(raw) for raw in await self._find_or_empty(votes_query)]
        game_names = await self.games.get_game_names(
            game_id for vote in votes for game_id in vote.selected_game_ids
        )

        by_date: dict[str, list[VoteRecord]] = defaultdict(list)
        game_votes: Counter[str] = Counter()
        game_days: dict[str, set[str]] = defaultdict(set)
        game_tendencies: dict[str, list[int]] = defaultdict(list)
        user_days: dict[str, set[str]] = defaultdict(set)
        user_votes: Counter[str] = Counter()
        user_tendencies: dict[str, list[int]] = defaultdict(list)

        for vote in votes:
            by_date[vote.date].append(vote)
            for game_id in vote.selected_game_ids:
                game_votes[game_id] += 1
                game_days[game_id].add(vote.date)
            for pref in vote.game_preferences:
                game_tendencies[pref.game_id].append(pref.tendency)
            if vote.user_id:
                user_days[vote.user_id].add(vote.date)
                user_votes[vote.user_id] += 1
                user_tendencies[vote.user_id].extend(pref.tendency for pref in vote.game_preferences)

        participation = []
        trend = []
        for day in date_range.dates():
            day_votes = by_date.get(day, [])
            total = len(day_votes)
            want_to_play = sum(1 for vote in day_votes if vote.wants_to_play)
            participation.append(
                ParticipationStat(
                    date=day,
                    total_votes=total,
                    want_to_play_count=want_to_play,
                    participation_rate=_mean(want_to_play, total),
                )
            )
            tendencies = [pref.tendency for vote in day_votes for pref in vote.game_preferences]
            trend.append(
                VoteTrendPoint(
                    date=day,
                    total_votes=total,
                    unique_users=len({vote.user_id for vote in day_votes if vote.user_id}),
                    average_tendency=_mean(sum(tendencies), len(tendencies)),
                )
            )

        top_games = sorted(
            (
                VotedGame(
                    game_id=game_id,
                    game_name=game_names.get(game_id, UNKNOWN_GAME_NAME),
                    total_votes=count,
                    average_tendency=_mean(sum(game_tendencies[game_id]), len(game_tendencies[game_id])),
                    unique_days=len(game_days[game_id]),
                )
                for game_id, count in game_votes.items()
            ),
            key=lambda game: game.total_votes,
            reverse=True,
        )[:TOP_N]

        activity = sorted(
            (
                UserActivity(
                    user_id=user_id,
                    vote_days=len(days),
                    total_votes=user_votes[user_id],
                    average_tendency=_mean(sum(user_tendencies[user_id]), len(user_tendencies[user_id])),
                )
                for user_id, days in user_days.items()
            ),
            key=lambda user: user.vote_days,
            reverse=True,
        )[:TOP_N]

        return VoteReport(
            participation_stats=participation,
            top_voted_games=top_games,
            user_activity=activity,
            vote_trend=trend,
            peak_votes=peak_votes(votes, game_names),
        )

    # -- teams -------------------------------------------------------------

    async def get_team_report(self, query: ReportQuery) -> TeamReport:
        date_range = self.resolve(query)
        teams_query = (
            Query(WEEKEND_TEAM)
            .greater_than_or_equal_to("createdAt", date_range.start_datetime)
            .less_than_or_equal_to("createdAt", date_range.end_datetime)
            .limit(FETCH_LIMIT)
        )
        teams = [TeamRecord.from_store(raw) for raw in await self._find_or_empty(teams_query)]
        game_names = await self.games.get_game_names(team.game_id for team in teams)

        total_teams = len(teams)
        total_participants = sum(team.member_count for team in teams)
        completed = sum(1 for team in teams if team.status == COMPLETED)

        popularity: dict[str, list[int]] = {}
        participation: dict[str, list[int]] = {}
        slots = {slot: TimeSlotStat(time_slot=slot) for slot in TIME_SLOTS}
        weekly: dict[str, list[int]] = defaultdict(lambda: [0, 0])

        for team in teams:
            if team.game_id:
                stats = popularity.setdefault(team.game_id, [0, 0])
                stats[0] += 1
                stats[1] += team.member_count

            if team.leader_id:
                participation.setdefault(team.leader_id, [0, 0])[1] += 1
            for member in team.members:
                participation.setdefault(member, [0, 0])[0] += 1

            slot = time_slot_for(team.start_time) if team.start_time else None
            if slot:
                slots[slot].team_count += 1
                slots[slot].participant_count += team.member_count

            week = weekly[week_start(team.created_at)]
            week[0] += 1
            week[1] += team.member_count

        game_popularity = sorted(
            (
                GamePopularity(
                    game_id=game_id,
                    game_name=game_names.get(game_id, UNKNOWN_GAME_NAME),
                    team_count=team_count,
                    total_participants=participants,
                    average_team_size=_mean(participants, team_count),
                )
                for game_id, (team_count, participants) in popularity.items()
            ),
            key=lambda game: game.team_count,
            reverse=True,
        )

        user_participation = sorted(
            (
                UserParticipation(
                    user_id=user_id,
                    teams_joined=joined,
                    teams_created=created,
                    participation_rate=_mean(joined + created, total_teams),
                )
                for user_id, (joined, created) in participation.items()
            ),
            key=lambda user: user.teams_joined + user.teams_created,
            reverse=True,
        )[:TOP_N]

        team_trend = [
            WeeklyTeamTrend(
                week_start=week,
                team_count=team_count,
                participant_count=participants,
                average_team_size=_mean(participants, team_count),
            )
            for week, (team_count, participants) in sorted(weekly.items())
        ]

        return TeamReport(
            team_stats=TeamStats(
                total_teams=total_teams,
                total_participants=total_participants,
                average_team_size=_mean(total_participants, total_teams),
                completion_rate=_mean(completed, total_teams),
            ),
            game_popularity=game_popularity,
            user_participation=user_participation,
            time_distribution=list(slots.values()),
            team_trend=team_trend,
        )
