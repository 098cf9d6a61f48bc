"""
Single-driver ride offers with a bounded response window.

An offer registers a correlation future, pushes ``ride_offer`` to the
driver's channel and suspends on the future until the driver answers or the
window closes. Driver answers arrive over HTTP, possibly on another worker,
so they are relayed through Redis pub/sub to whichever process holds the
waiter.
"""
import asyncio
import enum
import json
import logging
from dataclasses import dataclass

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.errors import UpstreamFailure
from app.models.ride import Ride
from app.schemas.events import RideOfferEvent
from app.services.driver_directory import DriverCandidate
from app.services.geo import RouteEstimate
from app.services.notifier import Notifier

logger = logging.getLogger(__name__)

RELAY_CHANNEL = "offers:responses"


class OfferOutcome(str, enum.Enum):
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    TIMED_OUT = "TIMED_OUT"
    FAILED = "FAILED"


@dataclass(frozen=True)
class Offer:
    ride_id: str
    driver_id: str
    outcome: OfferOutcome

    @property
    def accepted(self) -> bool:
        return self.outcome is OfferOutcome.ACCEPTED


def correlation_id(ride_id: str, driver_id: str) -> str:
    return f"{ride_id}:{driver_id}"


def outstanding_key(cid: str) -> str:
    return f"offer:{cid}"


class OfferResponseBroker:
    """
    Tracks open offers. Each open offer has a local future on the worker that
    made it and, with Redis, an ``offer:{cid}`` key that lives as long as the
    response window. The first answer to delete that key owns the offer, so
    late, repeated or unsolicited answers are reported as not delivered.
    """

    def __init__(self, redis: aioredis.Redis | None = None, relay_channel: str = RELAY_CHANNEL):
        self.redis = redis
        self.relay_channel = relay_channel
        self._waiters: dict[str, asyncio.Future] = {}

    async def expect(self, cid: str, timeout: float) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self._waiters[cid] = future
        if self.redis is not None:
            try:
                await self.redis.set(outstanding_key(cid), "1", px=max(1, int(timeout * 1000)))
            except RedisError as exc:
                logger.warning("Offer %s open locally only: %s", cid, exc)
        return future

    async def wait(self, cid: str, timeout: float) -> bool:
        """Raises ``asyncio.TimeoutError`` when nobody answers in time."""
        return await asyncio.wait_for(self._waiters[cid], timeout)

    async def discard(self, cid: str) -> None:
        future = self._waiters.pop(cid, None)
        if future is not None and not future.done():
            future.cancel()
        if self.redis is not None:
            try:
                await self.redis.delete(outstanding_key(cid))
            except RedisError as exc:
                logger.warning("Offer %s left to expire: %s", cid, exc)

    def resolve(self, cid: str, accepted: bool) -> bool:
        """Complete a local waiter. Late or repeated answers are ignored."""
        future = self._waiters.get(cid)
        if future is None or future.done():
            return False
        future.set_result(accepted)
        return True

    async def submit(self, ride_id: str, driver_id: str, accepted: bool) -> bool:
        """True only when the answer reached an open offer."""
        cid = correlation_id(ride_id, driver_id)
        if self.redis is None:
            return self.resolve(cid, accepted)
        try:
            claimed = await self.redis.delete(outstanding_key(cid))
        except RedisError as exc:
            if self.resolve(cid, accepted):
                return True
            raise UpstreamFailure(f"Offer relay failed: {exc}") from exc
        if not claimed:
            # offers opened while Redis was unreachable only exist locally
            return self.resolve(cid, accepted)
        if self.resolve(cid, accepted):
            return True
        try:
            await self.redis.publish(self.relay_channel, json.dumps({"cid": cid, "accepted": accepted}))
        except RedisError as exc:
            raise UpstreamFailure(f"Offer relay failed: {exc}") from exc
        return True

    async def run_relay(self) -> None:
        """Resolve local waiters from answers published by other workers."""
        if self.redis is None:
            return
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self.relay_channel)
        logger.info("Offer relay listening on %s", self.relay_channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    data = json.loads(message["data"])
                    self.resolve(data["cid"], bool(data["accepted"]))
                except (ValueError, KeyError, TypeError):
                    logger.warning("Ignoring malformed offer response: %r", message.get("data"))
        finally:
            await pubsub.unsubscribe(self.relay_channel)
            await pubsub.aclose()


class OfferProtocol:
    def __init__(self, notifier: Notifier, broker: OfferResponseBroker):
        self.notifier = notifier
        self.broker = broker

    async def offer(
        self,
        ride: Ride,
        candidate: DriverCandidate,
        metrics: RouteEstimate,
        timeout: float,
    ) -> Offer:
        cid = correlation_id(ride.id, candidate.driver_id)
        await self.broker.expect(cid, timeout)
        try:
            event = RideOfferEvent(
                ride_id=ride.id,
                rider_id=ride.rider_id,
                pickup_address=ride.pickup_address,
                drop_address=ride.drop_address,
                category=ride.category,
                fare=ride.fare,
                distance_km=ride.distance_km,
                duration_min=ride.duration_min,
                payment_mode=ride.payment_mode,
                pickup_distance_km=metrics.distance_km,
                pickup_duration_min=metrics.duration_min,
                respond_within_seconds=timeout,
            )
            try:
                await self.notifier.send(candidate.channel, event)
            except UpstreamFailure as exc:
                logger.warning("Offer ride=%s driver=%s not delivered: %s", ride.id, candidate.driver_id, exc)
                return Offer(ride.id, candidate.driver_id, OfferOutcome.FAILED)

            logger.info("Offer sent ride=%s driver=%s", ride.id, candidate.driver_id)
            try:
                accepted = await self.broker.wait(cid, timeout)
            except asyncio.TimeoutError:
                return Offer(ride.id, candidate.driver_id, OfferOutcome.TIMED_OUT)
            outcome = OfferOutcome.ACCEPTED if accepted else OfferOutcome.DECLINED
            return Offer(ride.id, candidate.driver_id, outcome)
        finally:
            await self.broker.discard(cid)
