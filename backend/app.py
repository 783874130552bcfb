"""FastAPI application entry point for the play-group analytics API."""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from config import settings
from errors import register_error_handlers
from services.cache import TTLCache
from services.enhancer import GameDataService
from services.recommendations import RecommendationService
from services.reports import ReportService
from services.store import LeanCloudStore, MemoryStore, RecordStore
from services.teams import TeamMembershipService

# Structured logging: JSON for production, human-readable for local
if settings.is_production:
    logging.basicConfig(
        level=logging.INFO,
        format='{"time":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s","message":"%(message)s"}',
        stream=sys.stdout,
    )
else:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

logger = logging.getLogger(__name__)


def build_store() -> RecordStore:
    if settings.uses_memory_store:
        logger.info("Using in-memory record store")
        return MemoryStore()
    return LeanCloudStore(
        app_id=settings.leancloud_app_id or "",
        app_key=settings.leancloud_app_key or "",
        server_url=settings.leancloud_server_url or "",
        timeout=settings.store_timeout_seconds,
    )


def create_app(store: RecordStore | None = None, warmup: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        missing = settings.validate()
        if missing and store is None:
            logger.warning("Missing env vars (record store calls will fail): %s", ", ".join(missing))

        app.state.store = store or build_store()
        app.state.cache = TTLCache(default_ttl=settings.cache_default_ttl_seconds)
        app.state.games = GameDataService(app.state.store, app.state.cache)
        app.state.reports = ReportService(app.state.games)
        app.state.recommendations = RecommendationService(app.state.store)
        app.state.memberships = TeamMembershipService(app.state.store)

        if warmup:
            await app.state.games.warmup()

        interval = settings.cache_health_check_interval_seconds
        app.state.health_check_task = (
            asyncio.create_task(app.state.games.run_health_checks(interval)) if interval > 0 else None
        )
        yield

        task = app.state.health_check_task
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        app.state.cache.clear()
        await app.state.store.close()

    app = FastAPI(title="Play-group Analytics API", version="1.0.0", lifespan=lifespan)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Security headers
    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    # Centralized error handlers
    register_error_handlers(app)

    from routes.health import router as health_router
    from routes.analytics import router as analytics_router
    from routes.cache import router as cache_router
    from routes.teams import router as teams_router

    app.include_router(health_router)
    app.include_router(analytics_router)
    app.include_router(cache_router)
    app.include_router(teams_router)

    return app


app = create_app()
