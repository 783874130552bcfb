"""Read entry points: enhanced games, vote stats, reports, recommendations.

Every response carries a one-line `_summary` for clients that only show text.
Services live on app.state (created in the app lifespan).
"""

import logging
from dataclasses import asdict

from fastapi import APIRouter, Query, Request, Response

from services.enhancer import GameDataService
from services.recommendations import RecommendationService
from services.reports import EXPORT_FORMATS, ReportQuery, ReportService, export_report

logger = logging.getLogger(__name__)

router = APIRouter()


def _games(request: Request) -> GameDataService:
    return request.app.state.games


def _reports(request: Request) -> ReportService:
    return request.app.state.reports


def _recommendations(request: Request) -> RecommendationService:
    return request.app.state.recommendations


def _report_query(time_range: str, start_date: str | None, end_date: str | None) -> ReportQuery:
    return ReportQuery(time_range=time_range, start_date=start_date, end_date=end_date)


# ---------------------------------------------------------------------------
# Games and votes
# ---------------------------------------------------------------------------

@router.get("/games/enhanced")
async def enhanced_games(request: Request, ids: str | None = Query(None)) -> dict:
    """Games with favorite counts and ranking score. `ids` is comma-separated."""
    id_list = [part.strip() for part in ids.split(",") if part.strip()] if ids is not None else None
    games = await _games(request).get_enhanced_games(id_list)
    games.sort(key=lambda game: game.hot_score, reverse=True)

    top = games[0].name if games else "none"
    return {
        "_summary": f"{len(games)} games, hottest: {top}",
        "games": [asdict(game) for game in games],
    }


@router.get("/votes/stats")
async def vote_stats(request: Request, days: int = Query(7, ge=1, le=366)) -> dict:
    stats = await _games(request).get_batch_vote_stats(days)
    total = sum(day.total_votes for day in stats.values())
    return {
        "_summary": f"{total} votes over the last {days} days",
        "days": days,
        "stats": {day: asdict(day_stats) for day, day_stats in stats.items()},
    }


@router.get("/votes/today")
async def today_vote(request: Request, user_id: str = Query(...)) -> dict:
    vote = await _games(request).get_today_vote(user_id)
    return {
        "_summary": f"{user_id} has {'voted' if vote else 'not voted'} today",
        "vote": asdict(vote) if vote else None,
    }


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

@router.get("/reports/favorites")
async def favorite_report(
    request: Request,
    time_range: str = Query("week"),
    start_date: str | None = Query(None),
    end_date: str | None = Query(None),
) -> dict:
    report = await _reports(request).get_favorite_report(_report_query(time_range, start_date, end_date))
    summary = report.summary
    return {
        "_summary": (
            f"{summary.total_favorites} favorites across {summary.total_games} games, "
            f"most favorited: {summary.most_favorited_game}"
        ),
        **asdict(report),
    }


@router.get("/reports/votes")
async def vote_report(
    request: Request,
    time_range: str = Query("week"),
    start_date: str | None = Query(None),
    end_date: str | None = Query(None),
) -> dict:
    report = await _reports(request).get_vote_report(_report_query(time_range, start_date, end_date))
    total = sum(stat.total_votes for stat in report.participation_stats)
    top = report.top_voted_games[0].game_name if report.top_voted_games else "none"
    return {
        "_summary": f"{total} votes over {len(report.participation_stats)} days, top game: {top}",
        **asdict(report),
    }


@router.get("/reports/teams")
async def team_report(
    request: Request,
    time_range: str = Query("week"),
    start_date: str | None = Query(None),
    end_date: str | None = Query(None),
) -> dict:
    report = await _reports(request).get_team_report(_report_query(time_range, start_date, end_date))
    stats = report.team_stats
    return {
        "_summary": (
            f"{stats.total_teams} teams, {stats.total_participants} participants, "
            f"average size {stats.average_team_size:.1f}"
        ),
        **asdict(report),
    }


@router.get("/reports/{kind}/export")
async def export_report_section(
    request: Request,
    kind: str,
    section: str = Query(...),
    format: str = Query("csv"),
    time_range: str = Query("week"),
    start_date: str | None = Query(None),
    end_date: str | None = Query(None),
) -> Response:
    """One report section as a CSV or XLSX download."""
    if format not in EXPORT_FORMATS:
        raise ValueError(f"Unknown export format: {format}. Supported: {list(EXPORT_FORMATS)}")
    report = await _reports(request).get_report(kind, _report_query(time_range, start_date, end_date))
    content = export_report(report, section, format)
    logger.info("Exported %s/%s as %s (%d bytes)", kind, section, format, len(content))
    return Response(
        content=content,
        media_type=EXPORT_FORMATS[format],
        headers={"Content-Disposition": f'attachment; filename="{kind}_{section}.{format}"'},
    )


# ---------------------------------------------------------------------------
# Recommendations
# ---------------------------------------------------------------------------

@router.get("/teams/recommended")
async def recommended_teams(request: Request, user_id: str = Query(...)) -> dict:
    candidates = await _recommendations(request).get_recommended_teams(user_id)
    return {
        "_summary": f"{len(candidates)} recommended teams for {user_id}",
        "recommendations": [asdict(candidate) for candidate in candidates],
    }
