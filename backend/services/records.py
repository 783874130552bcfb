"""Typed views of the records held by the remote store.

Records arrive as loosely-typed JSON objects. They are decoded once here and
every downstream module works with these dataclasses. Decoding never raises:
a missing or malformed field becomes 0, an empty string/list, or the current
time, so one bad record cannot abort an aggregation pass.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

# Collection (class) names in the record store
GAME = "Game"
USER = "_User"
USER_FAVORITE = "UserFavorite"
DAILY_VOTE = "DailyVote"
WEEKEND_TEAM = "WeekendTeam"

DEFAULT_TENDENCY = 3


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any, default: datetime | None = None) -> datetime:
    """Parse a store timestamp (ISO string, {"__type": "Date"} object or datetime)."""
    if isinstance(value, dict) and value.get("__type") == "Date":
        value = value.get("iso")
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Unparseable timestamp %r, using default", value)
            return default or utc_now()
    else:
        return default or utc_now()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _int(value: Any) -> int:
    if isinstance(value, float) and not math.isfinite(value):
        return 0
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return 0


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _ref_id(value: Any) -> str:
    """Object id from either a plain id string or a Pointer object."""
    if isinstance(value, dict):
        return _str(value.get("objectId"))
    return _str(value)


def _id_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [ref for ref in (_ref_id(item) for item in value) if ref]


@dataclass
class GameRecord:
    id: str
    name: str = ""
    like_count: int = 0
    min_players: int = 0
    max_players: int = 0
    platform: str = ""
    type: str = ""
    created_by: str = ""
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_store(cls, raw: dict) -> "GameRecord":
        return cls(
            id=_str(raw.get("objectId")),
            name=_str(raw.get("name")),
            like_count=max(0, _int(raw.get("likeCount"))),
            min_players=_int(raw.get("minPlayers")),
            max_players=_int(raw.get("maxPlayers")),
            platform=_str(raw.get("platform")),
            type=_str(raw.get("type")),
            created_by=_ref_id(raw.get("createdBy")),
            created_at=parse_datetime(raw.get("createdAt")),
        )


@dataclass
class EnhancedGame(GameRecord):
    favorite_count: int = 0
    hot_score: float = 0.0


@dataclass
class FavoriteRecord:
    id: str
    user_id: str
    game_id: str
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_store(cls, raw: dict) -> "FavoriteRecord":
        return cls(
            id=_str(raw.get("objectId")),
            user_id=_ref_id(raw.get("user")),
            game_id=_ref_id(raw.get("game")),
            created_at=parse_datetime(raw.get("createdAt")),
        )


@dataclass
class UserRecord:
    id: str
    nickname: str = ""
    favorite_game_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_store(cls, raw: dict) -> "UserRecord":
        return cls(
            id=_str(raw.get("objectId")),
            nickname=_str(raw.get("nickname")),
            favorite_game_ids=_id_list(raw.get("favoriteGames")),
        )


@dataclass
class GamePreference:
    game_id: str
    tendency: int


@dataclass
class VoteRecord:
    id: str
    date: str
    user_id: str = ""
    wants_to_play: bool = False
    selected_game_ids: list[str] = field(default_factory=list)
    game_preferences: list[GamePreference] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_store(cls, raw: dict) -> "VoteRecord":
        preferences = []
        raw_preferences = raw.get("gamePreferences")
        for pref in raw_preferences if isinstance(raw_preferences, list) else []:
            if not isinstance(pref, dict):
                continue
            game_id = _ref_id(pref.get("gameId"))
            tendency = _int(pref.get("tendency"))
            if game_id and tendency > 0:
                preferences.append(GamePreference(game_id=game_id, tendency=tendency))

        return cls(
            id=_str(raw.get("objectId")),
            date=_str(raw.get("date")),
            # Older votes only carry the "user" field
            user_id=_ref_id(raw.get("userId")) or _ref_id(raw.get("user")),
            wants_to_play=bool(raw.get("wantsToPlay")),
            selected_game_ids=_id_list(raw.get("selectedGames")),
            game_preferences=preferences,
            created_at=parse_datetime(raw.get("createdAt")),
        )

    def tendency_for(self, game_id: str) -> int | None:
        for pref in self.game_preferences:
            if pref.game_id == game_id:
                return pref.tendency
        return None


@dataclass
class TeamRecord:
    id: str
    game_id: str
    leader_id: str
    members: list[str] = field(default_factory=list)
    max_members: int = 0
    status: str = "open"
    event_date: str = ""
    start_time: str = ""
    end_time: str = ""
    created_at: datetime = field(default_factory=utc_now)

    @property
    def member_count(self) -> int:
        return len(self.members)

    @classmethod
    def from_store(cls, raw: dict) -> "TeamRecord":
        return cls(
            id=_str(raw.get("objectId")),
            game_id=_ref_id(raw.get("game")),
            leader_id=_ref_id(raw.get("leader")),
            members=_id_list(raw.get("members")),
            max_members=_int(raw.get("maxMembers")),
            status=_str(raw.get("status")) or "open",
            event_date=_str(raw.get("eventDate")),
            start_time=_str(raw.get("startTime")),
            end_time=_str(raw.get("endTime")),
            created_at=parse_datetime(raw.get("createdAt")),
        )

    def to_store(self) -> dict:
        return {
            "game": self.game_id,
            "leader": self.leader_id,
            "members": list(self.members),
            "maxMembers": self.max_members,
            "status": self.status,
            "eventDate": self.event_date,
            "startTime": self.start_time,
            "endTime": self.end_time,
        }
