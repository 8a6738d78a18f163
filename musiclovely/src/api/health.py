"""
Liveness and readiness checks.

Redis only backs alert cooldowns, so a Redis outage makes the service
"degraded" rather than unready: Cakto deliveries are still reconciled.
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from src.database import get_db
from src.schemas.api_responses import ReadinessResponse

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

APP_VERSION = "1.0.0"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _database_ok(db: AsyncSession) -> bool:
    try:
        await db.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error("Readiness: database unreachable: %s", str(e))
        return False


async def _redis_ok() -> bool:
    try:
        from src.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.ping()
        return True
    except Exception as e:
        logger.warning("Readiness: redis unreachable: %s", str(e))
        return False


@router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": _now_iso(), "version": APP_VERSION}


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness_check(db: AsyncSession = Depends(get_db)):
    checks = {
        "database": await _database_ok(db),
        "redis": await _redis_ok(),
    }
    return ReadinessResponse(
        status="ready" if all(checks.values()) else "degraded",
        checks=checks,
        timestamp=_now_iso(),
    )
