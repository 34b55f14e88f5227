"""FastAPI application factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from loretta.config import get_settings
from loretta.database import close_db, get_session_factory, init_db
from loretta.health.router import router as health_router
from loretta.middleware import setup_middleware
from loretta.missions.catalog import get_catalog
from loretta.progress.facade import ProgressFacade
from loretta.progress.locks import LocalLockRegistry, RedisLockRegistry
from loretta.progress.router import router as progress_router
from loretta.redis_client import close_redis, get_redis, init_redis

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url, create_schema=settings.environment == "development")

    locks: LocalLockRegistry
    if settings.redis_url:
        await init_redis(settings.redis_url)
        locks = RedisLockRegistry(get_redis(), settings.lock_timeout_seconds)
    else:
        locks = LocalLockRegistry(settings.lock_timeout_seconds)

    app.state.facade = ProgressFacade(
        get_session_factory(),
        settings=settings,
        catalog=get_catalog(),
        locks=locks,
    )
    logger.info("startup", environment=settings.environment, redis=bool(settings.redis_url))

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Loretta Progress API",
        description="Missions, medication adherence and gamification for the Loretta health app",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(progress_router)

    return app


app = create_app()
