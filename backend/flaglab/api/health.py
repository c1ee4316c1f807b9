"""Health check endpoints."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from sqlalchemy import text
import redis

from flaglab.api.dependencies import get_evaluation_cache
from flaglab.database import get_db
from flaglab.config import get_settings
from flaglab.services.evaluation_cache import RedisEvaluationCache

router = APIRouter()
settings = get_settings()


@router.get("/health")
@router.head("/health")
async def health_check():
    """Basic health check."""
    return {"status": "healthy", "service": "flaglab"}


@router.get("/health/detailed")
def detailed_health_check(
    db: Session = Depends(get_db),
    cache=Depends(get_evaluation_cache)
):
    """
    Detailed health check including database and evaluation cache.

    The cache is only probed when it is Redis-backed; the in-process
    cache reports its entry count.
    """
    checks = {
        "api": "healthy",
        "database": "unknown",
        "evaluation_cache": "unknown"
    }

    # Check database
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        checks["database"] = f"unhealthy: {str(e)}"

    # Check evaluation cache
    if isinstance(cache, RedisEvaluationCache):
        try:
            cache.redis.ping()
            checks["evaluation_cache"] = "healthy"
        except redis.RedisError as e:
            checks["evaluation_cache"] = f"unhealthy: {str(e)}"
    else:
        checks["evaluation_cache"] = "healthy"

    # Overall status
    overall_status = "healthy" if all(
        v == "healthy" for v in checks.values()
    ) else "degraded"

    response = {
        "status": overall_status,
        "checks": checks,
        "cache_backend": settings.evaluation_cache_backend
    }
    if not isinstance(cache, RedisEvaluationCache):
        response["cached_evaluations"] = len(cache)
    return response
