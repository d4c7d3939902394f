"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine

router = APIRouter()


async def _database_status() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        return f"down: {exc}"
    return "up"


async def _redis_status() -> str:
    client = redis.from_url(settings.REDIS_URL)
    try:
        await client.ping()
    except Exception as exc:
        return f"down: {exc}"
    finally:
        await client.aclose()
    return "up"


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Database backs the credit ledger; Redis backs rate limits and task events.
    """
    database = await _database_status()
    queue = await _redis_status()
    degraded = database != "up" or queue != "up"
    return {
        "status": "degraded" if degraded else "healthy",
        "api": "up",
        "database": database,
        "redis": queue,
        "mail_transport": "configured" if settings.SMTP_HOST else "missing",
    }


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe. Ready once the ledger database answers."""
    database = await _database_status()
    if database != "up":
        return JSONResponse(status_code=503, content={"ready": False, "database": database})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
