"""Health check endpoints."""
from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import redis

from abtest.config import get_settings
from abtest.database import get_db

router = APIRouter()
settings = get_settings()

# Statuses that do not degrade the service
OK_STATUSES = ("healthy", "disabled")


def check_database(db: Session) -> str:
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        return f"unhealthy: {e}"
    return "healthy"


def check_redis(redis_url: str) -> str:
    """Ping the assignment cache; "disabled" when no URL is configured."""
    if not redis_url:
        return "disabled"
    try:
        redis.from_url(redis_url, socket_connect_timeout=2).ping()
    except redis.RedisError as e:
        return f"unhealthy: {e}"
    return "healthy"


@router.get("/health")
@router.head("/health")
async def health_check():
    """Liveness check."""
    return {"status": "healthy", "service": settings.app_name}


@router.get("/health/detailed")
def detailed_health_check(request: Request, db: Session = Depends(get_db)):
    """
    Readiness check covering the database and the assignment cache.

    The experiment store in use is reported alongside, since tests and
    local runs may swap the SQL store for the in-memory one.
    """
    checks = {
        "database": check_database(db),
        "redis": check_redis(settings.redis_url)
    }

    service = getattr(request.app.state, "experiment_service", None)
    return {
        "status": "healthy" if all(v in OK_STATUSES for v in checks.values()) else "degraded",
        "store": type(service.store).__name__ if service else None,
        "checks": checks
    }
