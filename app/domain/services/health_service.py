"""
Health checks - database, Redis, payment gateway circuit and Celery broker.

Two levels:
- liveness: the process is up (no dependency checks)
- readiness: every external dependency is reachable
"""
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy import text

from app.core.circuit_breaker import get_gateway_circuit_breaker
from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.db.database import AsyncSessionLocal

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# Sanitised messages, no infrastructure details
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_GATEWAY_CIRCUIT_OPEN = "error: gateway_circuit_open"
_ERROR_CELERY = "error: celery_unavailable"


async def _check_db() -> str:
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("Database health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    try:
        client = await get_redis()
        await client.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("Redis health check failed", extra_data={"error": str(e)})
        return _ERROR_REDIS


def _check_gateway_circuit() -> str:
    """No network call: an open breaker means recent gateway failures."""
    breaker = get_gateway_circuit_breaker()
    if breaker.is_open:
        logger.warning(
            "Payment gateway circuit is open",
            extra_data={"retry_after_seconds": breaker.get_retry_after()},
        )
        return _ERROR_GATEWAY_CIRCUIT_OPEN
    return _CHECK_OK


async def _check_celery() -> str:
    """Ping the Celery broker (Redis)."""
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("Celery broker health check failed", extra_data={"error": str(e)})
        return _ERROR_CELERY


async def check_readiness() -> dict[str, Any]:
    """
    Readiness of every dependency.

    Returns ``status`` ("healthy" or "degraded") and one entry per
    dependency: "ok" or "error: ...".
    """
    checks = {
        "db": await _check_db(),
        "redis": await _check_redis(),
        "payment_gateway": _check_gateway_circuit(),
        "celery": await _check_celery(),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)

    return {"status": overall_status, **checks}
