import pytest
from fastapi.testclient import TestClient

from app import create_app
from services.store import MemoryStore


@pytest.fixture
def client():
    store = MemoryStore(
        {
            "Game": [
                {"objectId": "g1", "name": "Overwatch", "likeCount": 10},
                {"objectId": "g2", "name": "Valorant", "likeCount": 1},
            ],
            "UserFavorite": [{"user": "u1", "game": "g1"}],
            "DailyVote": [],
            "WeekendTeam": [
                {"objectId": "t1", "game": "g1", "leader": "u1", "members": ["u1", "u2"], "maxMembers": 3,
                 "status": "open", "startTime": "19:00"},
            ],
        }
    )
    app = create_app(store=store, warmup=False)
    with TestClient(app) as test_client:
        yield test_client


def test_ready(client):
    body = client.get("/ready").json()
    assert body["status"] == "ok"
    assert body["service"] == "playgroup-analytics"


def test_health_reports_store_and_cache(client):
    body = client.get("/health").json()
    assert body["store"] == "connected"
    assert body["game_count"] == 2
    assert body["cache_entries"] == 0


def test_security_headers(client):
    response = client.get("/ready")
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"


def test_enhanced_games_sorted_by_score(client):
    body = client.get("/games/enhanced").json()
    assert [game["id"] for game in body["games"]] == ["g1", "g2"]
    assert body["games"][0]["favorite_count"] == 1
    assert body["_summary"].startswith("2 games")


def test_enhanced_games_for_ids(client):
    body = client.get("/games/enhanced", params={"ids": "g2"}).json()
    assert [game["id"] for game in body["games"]] == ["g2"]


def test_vote_stats_and_validation(client):
    body = client.get("/votes/stats", params={"days": 3}).json()
    assert len(body["stats"]) == 3
    assert client.get("/votes/stats", params={"days": 0}).status_code == 422


def test_today_vote_without_vote(client):
    body = client.get("/votes/today", params={"user_id": "u1"}).json()
    assert body["vote"] is None


def test_reports(client):
    favorites = client.get("/reports/favorites").json()
    assert favorites["summary"]["total_games"] == 2

    votes = client.get("/reports/votes", params={"start_date": "2024-01-01", "end_date": "2024-01-03"}).json()
    assert len(votes["participation_stats"]) == 3

    teams = client.get("/reports/teams").json()
    assert teams["team_stats"]["total_teams"] == 1
    assert len(teams["time_distribution"]) == 5


def test_invalid_report_range_is_bad_request(client):
    response = client.get("/reports/votes", params={"time_range": "decade"})
    assert response.status_code == 400
    assert "Unknown time range" in response.json()["error"]


def test_recommendations_fallback(client):
    body = client.get("/teams/recommended", params={"user_id": "u9"}).json()
    assert [item["team_id"] for item in body["recommendations"]] == ["t1"]


def test_join_then_full_then_leader_leaves(client):
    joined = client.post("/teams/t1/join", params={"user_id": "u3"}).json()
    assert joined["team"]["status"] == "full"

    rejected = client.post("/teams/t1/join", params={"user_id": "u4"})
    assert rejected.status_code == 409

    left = client.post("/teams/t1/leave", params={"user_id": "u1"}).json()
    assert left["team"] is None
    assert client.post("/teams/t1/join", params={"user_id": "u4"}).status_code == 404


def test_cache_invalidation_endpoints(client):
    client.get("/games/enhanced")
    assert client.post("/cache/invalidate/games").json()["cleared"] == 2

    client.get("/votes/stats")
    body = client.post("/cache/invalidate/votes", params={"user_id": "u1"}).json()
    assert body == {"cleared": 1, "user_id": "u1"}

    assert client.post("/cache/invalidate/all").json() == {"cleared": "all"}
    assert client.post("/cache/health-check").json() == {"cleaned": 0}


def test_explicit_dates_accept_any_time_range(client):
    body = client.get(
        "/reports/votes", params={"time_range": "custom", "start_date": "2024-01-01", "end_date": "2024-01-02"}
    ).json()
    assert [stat["date"] for stat in body["participation_stats"]] == ["2024-01-01", "2024-01-02"]
    assert body["peak_votes"] == {"week": [], "month": [], "quarter": []}


def test_export_report_csv(client):
    response = client.get("/reports/teams/export", params={"section": "game_popularity", "format": "csv"})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert response.headers["content-disposition"] == 'attachment; filename="teams_game_popularity.csv"'
    lines = response.content.decode("utf-8-sig").splitlines()
    assert lines[0] == "game_id,game_name,team_count,total_participants,average_team_size"
    assert lines[1] == "g1,Overwatch,1,2,2.0"


def test_export_report_xlsx(client):
    response = client.get("/reports/favorites/export", params={"section": "top_favorite_games", "format": "xlsx"})
    assert response.status_code == 200
    assert response.headers["content-disposition"].endswith('.xlsx"')
    assert response.content[:2] == b"PK"


def test_export_report_rejects_bad_input(client):
    assert client.get("/reports/weather/export", params={"section": "summary"}).status_code == 400
    assert client.get("/reports/teams/export", params={"section": "nope"}).status_code == 400
    bad_format = client.get("/reports/teams/export", params={"section": "team_stats", "format": "pdf"})
    assert bad_format.status_code == 400
    assert "Unknown export format" in bad_format.json()["error"]


def test_health_check_task_runs_for_the_app_lifetime():
    app = create_app(store=MemoryStore({"Game": []}), warmup=False)
    with TestClient(app):
        task = app.state.health_check_task
        assert task is not None
        assert not task.done()
    assert task.cancelled()
