import redis.asyncio as aioredis
from app.config import get_settings

settings = get_settings()

_redis_pool: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis:
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=100,
        )
    return _redis_pool


async def close_redis() -> None:
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None


# ---------------------------------------------------------------------------
# Key layout
# ---------------------------------------------------------------------------

def geo_key(category: str) -> str:
    return f"drivers:geo:{category}"


def heartbeat_key(driver_id: str) -> str:
    return f"driver:{driver_id}:loc"


# ---------------------------------------------------------------------------
# GEO helpers
# ---------------------------------------------------------------------------

async def geo_add_driver(
    redis: aioredis.Redis,
    category: str,
    driver_id: str,
    lat: float,
    lng: float,
    ttl: int | None = None,
) -> None:
    """Add / update driver position in the geospatial index and refresh its heartbeat."""
    await redis.geoadd(geo_key(category), [lng, lat, driver_id])
    await redis.setex(heartbeat_key(driver_id), ttl or settings.driver_heartbeat_ttl_seconds, f"{lat},{lng}")


async def geo_remove_driver(redis: aioredis.Redis, category: str, driver_id: str) -> None:
    """Drop a driver from the index, e.g. once assigned or gone offline."""
    await redis.zrem(geo_key(category), driver_id)
    await redis.delete(heartbeat_key(driver_id))


async def geo_nearby_drivers(
    redis: aioredis.Redis,
    category: str,
    lat: float,
    lng: float,
    radius_km: float,
    count: int | None = None,
) -> list[tuple[str, float, tuple[float, float]]]:
    """
    Return (driver_id, distance_km, (lng, lat)) entries within the radius,
    closest first. Without `count` every member in range is returned.
    """
    results = await redis.geosearch(
        geo_key(category),
        longitude=lng,
        latitude=lat,
        radius=radius_km,
        unit="km",
        sort="ASC",
        count=count,
        withdist=True,
        withcoord=True,
    )
    return [(member, float(dist), (float(coord[0]), float(coord[1]))) for member, dist, coord in results]


async def cache_set(redis: aioredis.Redis, key: str, value: str, ttl: int) -> None:
    await redis.setex(key, ttl, value)


async def cache_get(redis: aioredis.Redis, key: str) -> str | None:
    return await redis.get(key)
