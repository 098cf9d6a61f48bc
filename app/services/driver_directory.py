"""
Read-only view over the Redis GEO index of online drivers.
"""
import logging
from dataclasses import dataclass
from typing import Iterable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.config import get_settings
from app.redis_client import geo_nearby_drivers, heartbeat_key
from app.services.geo import Place
from app.services.notifier import ChannelRegistry

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass(frozen=True)
class DriverCandidate:
    driver_id: str
    category: str
    lat: float
    lng: float
    distance_km: float
    channel: str

    @property
    def place(self) -> Place:
        return Place(lat=self.lat, lng=self.lng)


class DriverDirectory:
    def __init__(self, redis: aioredis.Redis, channels: ChannelRegistry, limit: int | None = None):
        self.redis = redis
        self.channels = channels
        self.limit = limit if limit is not None else settings.dispatch_candidates_per_radius

    async def find_online(
        self,
        pickup: Place,
        radius_km: float,
        category: str,
        exclude: Iterable[str] = (),
    ) -> list[DriverCandidate]:
        """
        Online drivers of ``category`` within ``radius_km`` of the pickup,
        nearest first. A driver counts as online while its location heartbeat
        is alive and it has a bound notification channel. Stale index entries
        are skipped, so the whole radius is scanned until `limit` online
        drivers are found.
        """
        excluded = set(exclude)
        try:
            nearby = await geo_nearby_drivers(
                self.redis,
                category,
                pickup.lat,
                pickup.lng,
                radius_km,
            )
            candidates = []
            for driver_id, distance_km, (lng, lat) in nearby:
                if len(candidates) >= self.limit:
                    break
                if driver_id in excluded:
                    continue
                if not await self.redis.exists(heartbeat_key(driver_id)):
                    continue
                channel = await self.channels.channel_of(driver_id)
                if channel is None:
                    continue
                candidates.append(
                    DriverCandidate(
                        driver_id=driver_id,
                        category=category,
                        lat=lat,
                        lng=lng,
                        distance_km=round(distance_km, 1),
                        channel=channel,
                    )
                )
        except RedisError as exc:
            logger.warning("Driver lookup failed within %.1f km: %s", radius_km, exc)
            return []
        return candidates
