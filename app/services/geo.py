"""
Route distance / duration estimation.

Remote lookups go to the Google Distance Matrix and Geocoding APIs. When the
remote service is unavailable (no key configured, transport error, unusable
payload) the estimator falls back to great-circle distance with a duration
derived from ``fallback_speed_kmh``.
"""
import json
import logging
import math
from dataclasses import dataclass

import httpx
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.config import get_settings
from app.errors import UpstreamFailure
from app.redis_client import cache_get, cache_set

logger = logging.getLogger(__name__)
settings = get_settings()

EARTH_RADIUS_KM = 6371.0
MIN_DISTANCE_KM = 0.1


@dataclass(frozen=True)
class Place:
    address: str | None = None
    lat: float | None = None
    lng: float | None = None

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None

    def as_query(self) -> str:
        if self.has_coordinates:
            return f"{self.lat},{self.lng}"
        return self.address or ""


@dataclass(frozen=True)
class RouteEstimate:
    distance_km: float
    duration_min: float


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


class GeoEstimator:
    def __init__(
        self,
        redis: aioredis.Redis | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.redis = redis
        self.api_key = settings.google_maps_api_key if api_key is None else api_key
        self.base_url = (base_url or settings.google_maps_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.geo_timeout_seconds
        self._transport = transport

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def estimate(self, origin: Place, destination: Place) -> RouteEstimate:
        cache_key = f"geo:route:{origin.as_query()}|{destination.as_query()}"
        cached = await self._cache_read(cache_key)
        if cached:
            data = json.loads(cached)
            return RouteEstimate(data["distance_km"], data["duration_min"])

        estimate = None
        if self.api_key:
            try:
                estimate = await self._remote_estimate(origin, destination)
            except (httpx.HTTPError, KeyError, IndexError, ValueError) as exc:
                logger.warning("Distance lookup failed, using great-circle fallback: %s", exc)
        if estimate is None:
            estimate = self._fallback_estimate(origin, destination)

        await self._cache_write(
            cache_key,
            json.dumps({"distance_km": estimate.distance_km, "duration_min": estimate.duration_min}),
        )
        return estimate

    async def distance(self, origin: Place, destination: Place) -> float:
        return (await self.estimate(origin, destination)).distance_km

    async def duration(self, origin: Place, destination: Place) -> float:
        return (await self.estimate(origin, destination)).duration_min

    async def locate(self, place: Place) -> Place:
        """Return ``place`` with coordinates, geocoding its address when needed."""
        if place.has_coordinates:
            return place
        if not place.address or not self.api_key:
            raise UpstreamFailure(f"Cannot resolve coordinates for {place.address!r}")
        try:
            payload = await self._get("geocode/json", {"address": place.address})
            location = payload["results"][0]["geometry"]["location"]
        except (httpx.HTTPError, KeyError, IndexError, ValueError) as exc:
            logger.warning("Geocoding failed for %r: %s", place.address, exc)
            raise UpstreamFailure(f"Cannot resolve coordinates for {place.address!r}") from exc
        return Place(address=place.address, lat=float(location["lat"]), lng=float(location["lng"]))

    async def region_of(self, place: Place) -> str | None:
        """Administrative region (state) of a place, or None when unknown."""
        if not self.api_key or not place.has_coordinates:
            return None
        cache_key = f"geo:region:{place.lat:.3f},{place.lng:.3f}"
        cached = await self._cache_read(cache_key)
        if cached:
            return cached
        try:
            payload = await self._get("geocode/json", {"latlng": f"{place.lat},{place.lng}"})
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Reverse geocoding failed: %s", exc)
            return None
        for result in payload.get("results", []):
            for component in result.get("address_components", []):
                if "administrative_area_level_1" in component.get("types", []):
                    region = component["long_name"]
                    await self._cache_write(cache_key, region)
                    return region
        return None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _get(self, path: str, params: dict) -> dict:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.get(f"{self.base_url}/{path}", params={**params, "key": self.api_key})
            resp.raise_for_status()
            return resp.json()

    async def _remote_estimate(self, origin: Place, destination: Place) -> RouteEstimate | None:
        payload = await self._get(
            "distancematrix/json",
            {"origins": origin.as_query(), "destinations": destination.as_query(), "units": "metric"},
        )
        element = payload["rows"][0]["elements"][0]
        if element.get("status") != "OK":
            logger.warning("Distance matrix returned %s", element.get("status"))
            return None
        distance_km = max(element["distance"]["value"] / 1000, MIN_DISTANCE_KM)
        duration_min = element["duration"]["value"] / 60
        return RouteEstimate(round(distance_km, 1), round(duration_min, 1))

    def _fallback_estimate(self, origin: Place, destination: Place) -> RouteEstimate:
        if not (origin.has_coordinates and destination.has_coordinates):
            raise UpstreamFailure("Route lookup unavailable and coordinates are missing")
        distance_km = haversine_km(origin.lat, origin.lng, destination.lat, destination.lng)
        distance_km = max(distance_km, MIN_DISTANCE_KM)
        duration_min = distance_km / settings.fallback_speed_kmh * 60
        return RouteEstimate(round(distance_km, 1), round(duration_min, 1))

    async def _cache_read(self, key: str) -> str | None:
        if self.redis is None:
            return None
        try:
            return await cache_get(self.redis, key)
        except RedisError as exc:
            logger.warning("Geo cache read failed: %s", exc)
            return None

    async def _cache_write(self, key: str, value: str) -> None:
        if self.redis is None:
            return
        try:
            await cache_set(self.redis, key, value, settings.geo_cache_ttl_seconds)
        except RedisError as exc:
            logger.warning("Geo cache write failed: %s", exc)
