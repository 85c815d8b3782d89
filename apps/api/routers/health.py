"""
Health check endpoints.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from config import settings
from database import get_db
from services.credential_pool import pool_summary

router = APIRouter()


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.
    Reports storage reachability, the house key pool by status and
    whether the premium upstream key is configured.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "premium_upstream": "configured" if settings.OPENROUTER_API_KEY else "missing",
        "free_pool": None,
    }

    try:
        health_status["free_pool"] = await pool_summary(db)
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"
    else:
        if not health_status["free_pool"]["active"]:
            health_status["status"] = "degraded"

    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        # Rate limiting falls back to in-process counters.
        health_status["redis_fallback"] = "local"

    return health_status


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """Readiness check: the database must answer."""
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "database": f"down: {exc}"},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Liveness check."""
    return {"alive": True}
