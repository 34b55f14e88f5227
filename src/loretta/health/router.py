"""Liveness, readiness and version endpoints."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loretta.config import get_settings
from loretta.database import get_session
from loretta.db.models import UserProgress
from loretta.missions.catalog import get_catalog
from loretta.redis_client import get_redis

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy"}


async def _schema_check(db: AsyncSession) -> str:
    # Queries a progress table, so a missing schema reports as an error.
    try:
        await db.execute(select(UserProgress.user_id).limit(1))
    except Exception as exc:
        return f"error: {exc}"
    return "ok"


async def _lock_backend_check() -> str:
    redis = get_redis()
    if redis is None:
        return "local"
    try:
        await redis.ping()
    except Exception as exc:
        return f"error: {exc}"
    return "ok"


@router.get("/ready")
async def readiness(
    request: Request,
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> dict[str, object]:
    """Ready once the schema answers, the catalog is loaded and the lock backend responds."""
    facade = getattr(request.app.state, "facade", None)
    catalog = facade.catalog if facade is not None else get_catalog()

    checks: dict[str, object] = {
        "database": await _schema_check(db),
        "locks": await _lock_backend_check(),
        "catalog_missions": len(catalog.standard_missions()),
    }
    failed = [name for name, value in checks.items() if isinstance(value, str) and value.startswith("error")]
    return {"status": "degraded" if failed else "ready", "checks": checks}


@router.get("/version")
async def version() -> dict[str, str]:
    settings = get_settings()
    return {
        "service": "loretta-progress",
        "version": settings.app_version,
        "environment": settings.environment,
    }
