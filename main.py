"""
Tribe calendar engine - application entry point
FastAPI app
"""

import sys
from pathlib import Path

project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Optional

from config.settings import fastapi_settings
from config.logging_config import get_module_logger, setup_logging_from_settings
from models.database import AsyncSessionLocal, init_db
from services.calendar_query_service import CalendarQueryService
from services.change_notifier import ChangeNotifier
from services.event_bus_service import EventBusService
from services.event_store import EventStore
from services.expansion_cache import ExpansionCache
from services.moon_service import MoonOverlayCache
from services.presence_service import PresenceService, PulseMonitor
from services.relationship_oracle import RelationshipOracle, SqlRelationshipOracle
from services.rsvp_service import RsvpService
from services.visibility_service import VisibilityResolver
from utils.exceptions import (
    AppError,
    BusinessError,
    DataError,
    EventNotFound,
    PermissionDenied,
    SessionNotFound,
    StoreUnavailable,
    ValidationError,
)

logger = get_module_logger(__name__)


# ============ Service wiring ============


def configure_services(
    app: FastAPI,
    session_factory=AsyncSessionLocal,
    oracle: Optional[RelationshipOracle] = None,
    bus: Optional[EventBusService] = None,
    moon_redis=None,
) -> ChangeNotifier:
    """Build the engine services and keep them on app.state"""
    bus = bus or EventBusService(channel=fastapi_settings.REDIS_CHANGE_CHANNEL)
    expansion_cache = ExpansionCache(maxsize=fastapi_settings.EXPANSION_CACHE_SIZE)
    store = EventStore(session_factory, bus=bus)
    resolver = VisibilityResolver(
        oracle or SqlRelationshipOracle(session_factory),
        oracle_timeout=fastapi_settings.ORACLE_TIMEOUT_SECONDS,
    )
    moon_cache = MoonOverlayCache(redis_cache=moon_redis)
    presence = PresenceService(session_factory, bus=bus)
    monitor = PulseMonitor(presence, interval_seconds=fastapi_settings.PULSE_POLL_SECONDS)

    app.state.bus = bus
    app.state.event_store = store
    app.state.expansion_cache = expansion_cache
    app.state.moon_cache = moon_cache
    app.state.query_service = CalendarQueryService(
        store, resolver, expansion_cache=expansion_cache, moon_cache=moon_cache
    )
    app.state.rsvp_service = RsvpService(session_factory, store, resolver)
    app.state.presence_service = presence
    app.state.pulse_monitor = monitor

    notifier = ChangeNotifier(bus, expansion_cache=expansion_cache, pulse_monitor=monitor)
    notifier.attach()
    app.state.notifier = notifier
    return notifier


# ============ Lifespan ============


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown"""
    setup_logging_from_settings(fastapi_settings)
    logger.info("Starting application...")
    await init_db()

    redis_client = None
    moon_redis = None
    if fastapi_settings.REDIS_ENABLED:
        from config.redis_config import RedisCache, get_redis_client

        try:
            redis_client = await get_redis_client()
            moon_redis = RedisCache(namespace="moon")
        except Exception as e:
            logger.warning("Redis unavailable (%s), change feed stays local", e)

    configure_services(app, moon_redis=moon_redis)
    if redis_client is not None:
        app.state.bus.attach_redis(redis_client)
        await app.state.bus.start_listener()
    await app.state.pulse_monitor.start()

    logger.info(
        "Application started: %s v%s", fastapi_settings.APP_NAME, fastapi_settings.APP_VERSION
    )
    logger.info("Listening on http://%s:%s", fastapi_settings.HOST, fastapi_settings.PORT)

    yield

    logger.info("Shutting down...")
    await app.state.pulse_monitor.stop()
    await app.state.bus.stop_listener()
    app.state.notifier.detach()
    if redis_client is not None:
        from config.redis_config import close_redis_connections

        await close_redis_connections()


# ============ FastAPI app ============

app = FastAPI(
    title="Tribe Calendar Engine API",
    version=fastapi_settings.APP_VERSION,
    description="""
    Temporal visibility and presence engine

    ## Modules
    - **Calendar**: recurring events, four-tier visibility, moon overlay, ICS export, RSVPs
    - **Presence**: session intervals and the rolling 24h tribe pulse
    """,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============ Error handlers ============


def _status_for(error: AppError) -> int:
    if isinstance(error, StoreUnavailable):
        return 503
    if isinstance(error, (EventNotFound, SessionNotFound)):
        return 404
    if isinstance(error, PermissionDenied):
        return 403
    if isinstance(error, ValidationError):
        return 422
    if isinstance(error, BusinessError):
        return 409
    if isinstance(error, DataError):
        return 503
    return 500


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content={"error_code": exc.error_code, "message": exc.message},
    )


# ============ Health ============


@app.get("/health")
async def health_check():
    """Health check (including database connectivity)"""
    from datetime import datetime, timezone
    from sqlalchemy import text

    health_status = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": fastapi_settings.APP_VERSION,
        "checks": {},
    }

    try:
        from models.database import engine

        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["checks"]["database"] = "ok"
    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    return health_status


# ============ Routers ============

from api.routes import calendar, presence

app.include_router(calendar.router, prefix="/api/calendar", tags=["Calendar"])
app.include_router(presence.router, prefix="/api/presence", tags=["Presence"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=fastapi_settings.HOST,
        port=fastapi_settings.PORT,
        reload=fastapi_settings.DEBUG,
    )
