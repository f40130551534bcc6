"""
Health check endpoints.
/health always answers 200 so the platform healthcheck passes while the
database is still coming up; /health/ready reports real dependency state.
"""

from typing import Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from customs_intel.config import settings
from customs_intel.models.database import async_session_factory

router = APIRouter(tags=["health"])


async def _check_database() -> tuple[bool, Optional[str]]:
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            return result.scalar() == 1, None
    except (SQLAlchemyError, OSError) as e:
        return False, str(e)[:200]


def _check_redis() -> bool:
    try:
        return bool(Redis.from_url(settings.REDIS_URL, socket_connect_timeout=2).ping())
    except RedisError:
        return False


@router.get("/health")
async def health_check():
    db_ok, db_error = await _check_database()
    response = {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.APP_VERSION,
        "pipeline_version": settings.PIPELINE_VERSION,
        "database": "connected" if db_ok else "unreachable",
        "llm_engine": "stub" if settings.ENABLE_STUB_ENGINE else "anthropic",
    }
    if db_error:
        response["database_error"] = db_error
    return response


@router.get("/health/ready")
async def readiness_check():
    """200 only when the database and the job queue are reachable."""
    db_ok, _ = await _check_database()
    redis_ok = _check_redis()
    ready = db_ok and redis_ok
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"ready": ready, "database": db_ok, "redis": redis_ok},
    )
