"""Custom exceptions and centralized FastAPI error handlers."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AnalyticsError(Exception):
    """Base exception with HTTP status code."""

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


class RecordStoreError(AnalyticsError):
    """Any failure reported by the remote record store."""

    def __init__(self, message: str, status_code: int = 502, code: int | None = None):
        super().__init__(message, status_code=status_code)
        self.code = code


class CollectionNotFoundError(RecordStoreError):
    """The backing collection (class) does not exist yet."""

    def __init__(self, class_name: str, code: int | None = None):
        super().__init__(f"Collection not found: {class_name}", status_code=404, code=code)
        self.class_name = class_name


class PermissionDeniedError(RecordStoreError):
    def __init__(self, class_name: str, code: int | None = None):
        super().__init__(f"Permission denied on {class_name}", status_code=403, code=code)
        self.class_name = class_name


class RecordStoreNetworkError(RecordStoreError):
    def __init__(self, message: str):
        super().__init__(f"Record store unreachable: {message}", status_code=502)


class TeamStateError(AnalyticsError):
    def __init__(self, message: str):
        super().__init__(message, status_code=409)


class TeamFullError(TeamStateError):
    def __init__(self, team_id: str):
        super().__init__(f"Team {team_id} is full")
        self.team_id = team_id


class NotTeamMemberError(TeamStateError):
    def __init__(self, team_id: str, user_id: str):
        super().__init__(f"User {user_id} is not a member of team {team_id}")
        self.team_id = team_id
        self.user_id = user_id


def register_error_handlers(app: FastAPI) -> None:
    """Register centralized exception handlers on the FastAPI app."""

    @app.exception_handler(AnalyticsError)
    async def handle_analytics_error(_request: Request, exc: AnalyticsError):
        return JSONResponse({"error": str(exc)}, status_code=exc.status_code)

    @app.exception_handler(ValueError)
    async def handle_value_error(_request: Request, exc: ValueError):
        return JSONResponse({"error": str(exc)}, status_code=400)

    @app.exception_handler(Exception)
    async def handle_unexpected(_request: Request, exc: Exception):
        logger.exception("Unhandled error: %s", exc)
        return JSONResponse(
            {"error": "Internal server error"},
            status_code=500,
        )
