"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
import redis.asyncio as redis

from config import settings
import database

router = APIRouter()


def _provider_status() -> dict:
    return {
        "stripe": "configured" if settings.STRIPE_SECRET_KEY and settings.STRIPE_WEBHOOK_SECRET else "missing",
        "razorpay": "configured" if settings.RAZORPAY_KEY_ID and settings.RAZORPAY_KEY_SECRET else "missing",
    }


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Reports store, Redis and payment provider configuration.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        **_provider_status(),
    }

    if database.engine is None:
        health_status["database"] = "not configured"
        health_status["status"] = "degraded"
    else:
        try:
            async with database.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            health_status["database"] = "up"
        except (SQLAlchemyError, OSError) as e:
            health_status["database"] = f"down: {str(e)}"
            health_status["status"] = "degraded"

    try:
        r = redis.from_url(settings.REDIS_URL)
        try:
            await r.ping()
        finally:
            await r.aclose()
        health_status["redis"] = "up"
    except (redis.RedisError, OSError) as e:
        # Rate limiting falls back to in-process counters without Redis.
        health_status["redis"] = f"down: {str(e)}"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    if database.engine is None:
        missing.append("DATABASE_URL")
    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing, **_provider_status()},
        )
    return {"ready": True, **_provider_status()}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
