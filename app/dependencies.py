"""
FastAPI dependency providers wiring the ride services together.
"""
import redis.asyncio as aioredis
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import AsyncSessionLocal, get_db
from app.redis_client import get_redis
from app.services.dispatch import DispatchEngine
from app.services.driver_directory import DriverDirectory
from app.services.geo import GeoEstimator
from app.services.lifecycle import RideService
from app.services.notifier import ChannelRegistry, Notifier
from app.services.offer import OfferProtocol, OfferResponseBroker

# Offer waiters live in this process, so every request must share one broker
_offer_broker: OfferResponseBroker | None = None


def get_offer_broker_for(redis: aioredis.Redis | None) -> OfferResponseBroker:
    global _offer_broker
    if _offer_broker is None:
        _offer_broker = OfferResponseBroker(redis)
    return _offer_broker


async def get_offer_broker(redis: aioredis.Redis = Depends(get_redis)) -> OfferResponseBroker:
    return get_offer_broker_for(redis)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return AsyncSessionLocal


async def get_channels(redis: aioredis.Redis = Depends(get_redis)) -> ChannelRegistry:
    return ChannelRegistry(redis)


async def get_notifier(
    redis: aioredis.Redis = Depends(get_redis),
    channels: ChannelRegistry = Depends(get_channels),
) -> Notifier:
    return Notifier(redis, channels)


async def get_geo(redis: aioredis.Redis = Depends(get_redis)) -> GeoEstimator:
    return GeoEstimator(redis)


async def get_dispatch_engine(
    redis: aioredis.Redis = Depends(get_redis),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    channels: ChannelRegistry = Depends(get_channels),
    notifier: Notifier = Depends(get_notifier),
    broker: OfferResponseBroker = Depends(get_offer_broker),
    geo: GeoEstimator = Depends(get_geo),
) -> DispatchEngine:
    return DispatchEngine(
        session_factory,
        DriverDirectory(redis, channels),
        OfferProtocol(notifier, broker),
        geo,
        notifier,
        redis=redis,
    )


async def get_ride_service(
    db: AsyncSession = Depends(get_db),
    geo: GeoEstimator = Depends(get_geo),
    notifier: Notifier = Depends(get_notifier),
    engine: DispatchEngine = Depends(get_dispatch_engine),
) -> RideService:
    return RideService(db, geo, notifier, engine)
