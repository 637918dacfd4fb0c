"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. The lifespan builds every runtime collaborator once and hangs it
on app.state; routes and the WebSocket endpoint read them from there:

    app.state.settings     Settings the app was built with
    app.state.redis        redis.asyncio client (decode_responses=True)
    app.state.queue        JobQueue (producer side)
    app.state.assets       AssetRepository
    app.state.connections  ConnectionManager (owner rooms)
    app.state.relay        RedisEventRelay (worker events → rooms)

Tests pass their own `redis` and `assets` to avoid real servers.
"""

from contextlib import asynccontextmanager
from typing import Optional

import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from vaultsync import __version__
from vaultsync.api import api_router
from vaultsync.config import Settings, settings as default_settings
from vaultsync.db.engine import build_engine, build_session_factory
from vaultsync.errors import (
    InvalidTransitionError,
    NotFoundError,
    OwnershipError,
    QueueUnavailableError,
    ValidationError,
)
from vaultsync.middleware.request_id import RequestIdMiddleware
from vaultsync.queue.jobs import JobOptions
from vaultsync.queue.redis_queue import JobQueue
from vaultsync.realtime.pubsub import RedisEventRelay
from vaultsync.realtime.rooms import ConnectionManager
from vaultsync.realtime.websocket import router as ws_router
from vaultsync.repositories.base import AssetRepository
from vaultsync.repositories.sql import SqlAssetRepository

logger = structlog.get_logger()

# Domain error → HTTP status
ERROR_STATUS: dict[type[Exception], int] = {
    NotFoundError: 404,
    OwnershipError: 403,
    InvalidTransitionError: 409,
    ValidationError: 422,
    QueueUnavailableError: 503,
}


def _error_handler(status_code: int):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        logger.warning(
            "http.domain_error",
            error=exc.__class__.__name__,
            detail=str(exc),
            status=status_code,
        )
        return JSONResponse(status_code=status_code, content={"error": str(exc)})

    return handler


def create_app(
    settings: Optional[Settings] = None,
    *,
    redis: Optional[aioredis.Redis] = None,
    assets: Optional[AssetRepository] = None,
) -> FastAPI:
    """Build and return the FastAPI application."""
    cfg = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown lifecycle.

        Learn: Anything before `yield` runs at startup, after `yield`
        runs at shutdown.
        """
        logger.info(
            "vaultsync.starting",
            version=__version__,
            environment=cfg.environment,
            port=cfg.port,
        )

        owns_redis = redis is None
        app.state.redis = redis or aioredis.from_url(
            cfg.redis_url, encoding="utf-8", decode_responses=True
        )

        app.state.engine = None
        if assets is None:
            app.state.engine = build_engine(cfg.database_url, echo=cfg.debug)
            app.state.assets = SqlAssetRepository(build_session_factory(app.state.engine))
        else:
            app.state.assets = assets

        app.state.queue = JobQueue(
            app.state.redis, cfg.queue_name, JobOptions.from_settings(cfg)
        )
        app.state.connections = ConnectionManager(jwt_secret=cfg.jwt_secret)
        app.state.relay = RedisEventRelay(
            app.state.redis, app.state.connections, cfg.event_channel_prefix
        )
        app.state.relay.start()
        logger.info("vaultsync.relay_started", queue=cfg.queue_name)

        yield

        logger.info("vaultsync.shutdown")
        await app.state.relay.stop()
        if owns_redis:
            await app.state.redis.aclose()
        if app.state.engine is not None:
            await app.state.engine.dispose()

    app = FastAPI(
        title="VaultSync",
        description="Asset analysis pipeline — job queue, workers and real-time events",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = cfg

    # ── Middleware stack ──────────────────────────────────────
    # Note: Starlette middleware executes in reverse order of registration.
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for exc_class, status_code in ERROR_STATUS.items():
        app.add_exception_handler(exc_class, _error_handler(status_code))

    app.include_router(api_router)
    app.include_router(ws_router)

    return app


# Default app instance (used by uvicorn: vaultsync.main:app)
app = create_app()
