"""
Redis caching service for availability lookups.

CACHING STRATEGY
================

What we cache:
  - Read-only availability answers (JSON-serialized AvailabilityResponse)
  - Cache key pattern: "availability:{resource_id}:{start}:{end}:{units}"

Why:
  - Drivers poll availability far more often than they book
  - The overlap query scans a lot's reservations for the interval

Invalidation strategy:
  - Any reservation change on a lot (create, cancel, check-out, extension,
    no-show) deletes all "availability:{resource_id}:*" keys
  - Request handlers commit before invalidating, so a read racing the
    delete cannot cache the pre-commit answer again
  - TTL-based expiry as safety net (REDIS_CACHE_TTL)

Why NOT use the cache for allocation:
  - allocate() must see committed reservations, a stale answer would overbook
  - The cache only ever serves the read-only checkAvailability path

All operations fail open: a Redis error is logged and the caller falls
back to the database.
"""

import json
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from parking_scheduler.core.config import get_settings
from parking_scheduler.core.logging import get_logger
from parking_scheduler.infrastructure.redis_client import get_redis

logger = get_logger(__name__)
settings = get_settings()


def _make_availability_key(
    resource_id: int, start: datetime, end: datetime, required_units: int
) -> str:
    return f"availability:{resource_id}:{start.isoformat()}:{end.isoformat()}:{required_units}"


async def get_cached_availability(
    resource_id: int, start: datetime, end: datetime, required_units: int
) -> Optional[dict]:
    """Retrieve a cached availability answer."""
    client = await get_redis()
    if not client:
        return None

    key = _make_availability_key(resource_id, start, end, required_units)
    try:
        data = await client.get(key)
        if data:
            logger.debug("cache_hit", key=key)
            return json.loads(data)
        logger.debug("cache_miss", key=key)
    except Exception as e:
        logger.error("cache_get_error", key=key, error=str(e))

    return None


async def set_cached_availability(
    resource_id: int,
    start: datetime,
    end: datetime,
    required_units: int,
    data: dict,
) -> None:
    """Cache an availability answer with TTL."""
    client = await get_redis()
    if not client:
        return

    key = _make_availability_key(resource_id, start, end, required_units)
    try:
        await client.setex(key, settings.REDIS_CACHE_TTL, json.dumps(data, default=str))
        logger.debug("cache_set", key=key, ttl=settings.REDIS_CACHE_TTL)
    except Exception as e:
        logger.error("cache_set_error", key=key, error=str(e))


async def invalidate_availability_cache(resource_id: Optional[int] = None) -> None:
    """
    Invalidate cached availability for one lot, or for all lots.
    Uses SCAN to find and delete all keys matching the prefix.
    """
    client = await get_redis()
    if not client:
        return

    pattern = f"availability:{resource_id}:*" if resource_id is not None else "availability:*"
    try:
        deleted = 0
        async for key in client.scan_iter(match=pattern, count=100):
            await client.delete(key)
            deleted += 1
        logger.info("cache_invalidated", resource_id=resource_id, keys_deleted=deleted)
    except Exception as e:
        logger.error("cache_invalidation_error", resource_id=resource_id, error=str(e))


async def commit_and_invalidate(db: AsyncSession, resource_id: int) -> None:
    """Commit the request's changes, then drop the lot's cached availability."""
    await db.commit()
    await invalidate_availability_cache(resource_id)


async def get_cache_stats() -> dict:
    """Get Redis cache statistics for monitoring."""
    client = await get_redis()
    if not client:
        return {"status": "disabled"}

    try:
        info = await client.info("stats")
        hits = info.get("keyspace_hits", 0)
        misses = info.get("keyspace_misses", 0)
        return {
            "status": "connected",
            "hits": hits,
            "misses": misses,
            "hit_rate": round(hits / max(hits + misses, 1) * 100, 2),
        }
    except Exception as e:
        return {"status": "error", "error": str(e)}
