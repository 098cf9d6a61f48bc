"""
Integration tests for the full ride lifecycle.
Uses pytest-asyncio + HTTPX ASGITransport against the FastAPI app, with a
SQLite database, a recording notifier and scripted driver answers.
"""
import json
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from fastapi import Depends
from httpx import ASGITransport, AsyncClient
from redis.exceptions import RedisError
from sqlalchemy import select

from app.database import get_db
from app.dependencies import get_offer_broker, get_ride_service
from app.main import app
from app.middleware.auth import create_access_token
from app.models.payment import Payment
from app.redis_client import get_redis
from app.services import ledger
from app.services.dispatch import DispatchEngine
from app.services.geo import GeoEstimator
from app.services.lifecycle import RideService
from app.services.offer import OfferOutcome, OfferResponseBroker
from app.services.pricing import CancellationPolicy

from conftest import CONNAUGHT_PLACE, CYBER_CITY, ScriptedOffers, StaticDirectory, candidate

RIDER_TOKEN = create_access_token("rider-1", role="rider")
OTHER_RIDER_TOKEN = create_access_token("rider-2", role="rider")
DRIVER_TOKEN = create_access_token("driver-1", role="driver")

RIDE_REQUEST = {
    "pickup": {"address": "Connaught Place", "lat": CONNAUGHT_PLACE[0], "lng": CONNAUGHT_PLACE[1]},
    "drop": {"address": "Cyber City", "lat": CYBER_CITY[0], "lng": CYBER_CITY[1]},
    "category": "sedan",
    "trip_kind": "outstation",
    "payment_mode": "cash",
}


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class Harness:
    """Everything the tests steer: who is nearby, how they answer, what was sent."""

    def __init__(self, session_factory, notifier):
        self.session_factory = session_factory
        self.notifier = notifier
        self.directory = StaticDirectory([candidate("driver-1", 1.0)])
        self.offers = ScriptedOffers({"driver-1": OfferOutcome.ACCEPTED})
        self.orders: list[tuple] = []
        self.redis = AsyncMock()
        self.redis.get.return_value = None
        self.broker = OfferResponseBroker()

    async def create_order(self, ride_id, rider_id, amount, payment_mode, idempotency_key):
        self.orders.append((ride_id, amount, idempotency_key))
        return {"order_ref": f"order_{len(self.orders)}", "status": "created"}

    def service(self, db) -> RideService:
        engine = DispatchEngine(
            self.session_factory,
            self.directory,
            self.offers,
            GeoEstimator(api_key=""),
            self.notifier,
            offer_timeout=1,
        )
        return RideService(
            db,
            GeoEstimator(api_key=""),
            self.notifier,
            engine,
            policy=CancellationPolicy(grace_minutes=3, rider_fee=Decimal("25"), driver_fee=Decimal("25")),
            dispatch_mode="inline",
            create_order=self.create_order,
        )


@pytest_asyncio.fixture
async def harness(session_factory, notifier, make_driver):
    await make_driver("driver-1", status="available")
    h = Harness(session_factory, notifier)

    async def _db():
        async with session_factory() as session:
            yield session

    async def _service(db=Depends(get_db)):
        return h.service(db)

    async def _redis():
        return h.redis

    async def _broker():
        return h.broker

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_ride_service] = _service
    app.dependency_overrides[get_redis] = _redis
    app.dependency_overrides[get_offer_broker] = _broker
    yield h
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(harness):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


async def book(client, **overrides) -> dict:
    resp = await client.post("/v1/rides", headers=auth(RIDER_TOKEN), json={**RIDE_REQUEST, **overrides})
    assert resp.status_code == 201, resp.text
    return resp.json()


async def drive_to_start(client, ride: dict) -> None:
    resp = await client.patch(
        f"/v1/rides/{ride['id']}/status", headers=auth(DRIVER_TOKEN), json={"status": "DRIVER_ARRIVED"}
    )
    assert resp.status_code == 200, resp.text
    resp = await client.patch(
        f"/v1/rides/{ride['id']}/status",
        headers=auth(DRIVER_TOKEN),
        json={"status": "RIDE_STARTED", "otp": ride["otp"]},
    )
    assert resp.status_code == 200, resp.text


@pytest.mark.asyncio
class TestRideAPI:
    async def test_health_check(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_create_ride_missing_auth(self, client):
        resp = await client.post("/v1/rides", json=RIDE_REQUEST)
        assert resp.status_code == 401

    async def test_create_ride_invalid_lat(self, client):
        bad = {**RIDE_REQUEST, "pickup": {"lat": 999, "lng": 77.2}}
        resp = await client.post("/v1/rides", headers=auth(RIDER_TOKEN), json=bad)
        assert resp.status_code == 422

    async def test_drivers_cannot_book(self, client):
        resp = await client.post("/v1/rides", headers=auth(DRIVER_TOKEN), json=RIDE_REQUEST)
        assert resp.status_code == 403

    async def test_get_nonexistent_ride(self, client):
        resp = await client.get("/v1/rides/nonexistent-uuid", headers=auth(RIDER_TOKEN))
        assert resp.status_code == 404
        assert resp.json()["code"] == "not_found"

    async def test_fare_estimate(self, client):
        resp = await client.post(
            "/v1/rides/estimate",
            headers=auth(RIDER_TOKEN),
            json={"pickup": RIDE_REQUEST["pickup"], "drop": RIDE_REQUEST["drop"], "trip_kind": "outstation"},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert [e["category"] for e in body["estimates"]] == ["mini", "sedan", "ertiga", "innova"]
        assert body["distance_km"] > 0

    async def test_van_rejected_for_local_trip(self, client):
        resp = await client.post(
            "/v1/rides", headers=auth(RIDER_TOKEN), json={**RIDE_REQUEST, "trip_kind": "local", "category": "tempo_12"}
        )
        assert resp.status_code == 409
        assert resp.json()["code"] == "invalid_state"


@pytest.mark.asyncio
class TestCashRide:
    async def test_full_lifecycle(self, client, harness):
        ride = await book(client)
        assert ride["status"] == "ACCEPTED"
        assert ride["driver_id"] == "driver-1"
        assert ride["pickup_distance_km"] == pytest.approx(1.0, abs=0.1)
        assert len(ride["otp"]) == 4
        assert ride["fare"] == ride["estimated_fare"]

        seen_by_driver = (await client.get(f"/v1/rides/{ride['id']}", headers=auth(DRIVER_TOKEN))).json()
        assert seen_by_driver["otp"] is None

        resp = await client.patch(
            f"/v1/rides/{ride['id']}/status", headers=auth(DRIVER_TOKEN), json={"status": "DRIVER_ARRIVED"}
        )
        assert resp.json()["waiting"]["free_waiting_minutes"] >= 0

        resp = await client.patch(
            f"/v1/rides/{ride['id']}/status",
            headers=auth(DRIVER_TOKEN),
            json={"status": "RIDE_STARTED", "otp": "0000"},
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid_otp"

        resp = await client.patch(
            f"/v1/rides/{ride['id']}/status",
            headers=auth(DRIVER_TOKEN),
            json={"status": "RIDE_STARTED", "otp": ride["otp"]},
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "RIDE_STARTED"

        resp = await client.post(f"/v1/rides/{ride['id']}/complete", headers=auth(DRIVER_TOKEN), json={})
        assert resp.status_code == 200
        done = resp.json()
        assert done["status"] == "RIDE_ENDED"
        assert done["payment_status"] == "COMPLETED"
        assert Decimal(done["total_amount"]) == Decimal(ride["fare"])

        events = [m.event for m in harness.notifier.events_for("rider-1")]
        assert events[0] == "ride_assigned"
        assert "ride_completed" in events
        async with harness.session_factory() as session:
            expected = -(Decimal(ride["fare"]) * Decimal("0.12")).quantize(Decimal("1"))
            assert await ledger.balance_of(session, "driver-1") == expected
        assert harness.orders == []

    async def test_dispatch_cannot_be_set_by_clients(self, client):
        ride = await book(client)
        resp = await client.patch(
            f"/v1/rides/{ride['id']}/status", headers=auth(RIDER_TOKEN), json={"status": "ACCEPTED"}
        )
        assert resp.status_code == 403

    async def test_other_riders_cannot_see_the_ride(self, client):
        ride = await book(client)
        resp = await client.get(f"/v1/rides/{ride['id']}", headers=auth(OTHER_RIDER_TOKEN))
        assert resp.status_code == 404

    async def test_rider_cancels_within_grace(self, client, harness):
        ride = await book(client)
        resp = await client.post(
            f"/v1/rides/{ride['id']}/cancel", headers=auth(RIDER_TOKEN), json={"reason": "changed plans"}
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "CANCELLED"
        assert body["driver_id"] is None
        assert body["cancelled_by"] == "rider"
        assert Decimal(body["cancellation_fee"]) == 0
        assert harness.notifier.events_for("driver-1", "ride_cancelled")

    async def test_rider_cannot_cancel_started_ride(self, client):
        ride = await book(client)
        await drive_to_start(client, ride)
        resp = await client.post(f"/v1/rides/{ride['id']}/cancel", headers=auth(RIDER_TOKEN), json={})
        assert resp.status_code == 409

    async def test_idempotent_booking(self, client):
        headers = {**auth(RIDER_TOKEN), "Idempotency-Key": "booking-1"}
        first = await client.post("/v1/rides", headers=headers, json=RIDE_REQUEST)
        second = await client.post("/v1/rides", headers=headers, json=RIDE_REQUEST)
        assert first.status_code == second.status_code == 201
        assert first.json()["id"] == second.json()["id"]

    async def test_riders_may_share_an_idempotency_key(self, client, harness, make_driver):
        first = await client.post(
            "/v1/rides", headers={**auth(RIDER_TOKEN), "Idempotency-Key": "booking-1"}, json=RIDE_REQUEST
        )
        await make_driver("driver-2", status="available")
        harness.directory.candidates = [candidate("driver-2", 0.5)]
        harness.offers.outcomes["driver-2"] = OfferOutcome.ACCEPTED
        second = await client.post(
            "/v1/rides", headers={**auth(OTHER_RIDER_TOKEN), "Idempotency-Key": "booking-1"}, json=RIDE_REQUEST
        )
        assert first.status_code == second.status_code == 201, second.text
        assert first.json()["id"] != second.json()["id"]
        assert second.json()["rider_id"] == "rider-2"

    async def test_concurrent_retry_replays_the_stored_ride(self, client, monkeypatch):
        headers = {**auth(RIDER_TOKEN), "Idempotency-Key": "booking-1"}
        first = await client.post("/v1/rides", headers=headers, json=RIDE_REQUEST)

        # the retry misses the lookup as if it raced the first insert
        lookup = RideService._ride_for_key
        calls = []

        async def racing_lookup(self, stored_key):
            calls.append(stored_key)
            if len(calls) == 1:
                return None
            return await lookup(self, stored_key)

        monkeypatch.setattr(RideService, "_ride_for_key", racing_lookup)
        second = await client.post("/v1/rides", headers=headers, json=RIDE_REQUEST)

        assert first.status_code == second.status_code == 201, second.text
        assert second.json()["id"] == first.json()["id"]
        assert calls == ["rider-1:booking-1", "rider-1:booking-1"]

    async def test_no_drivers_available(self, client, harness):
        harness.directory.candidates = []
        resp = await client.post("/v1/rides", headers=auth(RIDER_TOKEN), json=RIDE_REQUEST)
        assert resp.status_code == 409
        assert resp.json()["code"] == "no_drivers_available"
        assert len(harness.notifier.events_for("rider-1", "no_driver_found")) == 1


@pytest.mark.asyncio
class TestElectronicPayment:
    async def test_payment_confirmation(self, client, harness):
        ride = await book(client, payment_mode="upi")
        await drive_to_start(client, ride)

        resp = await client.post(f"/v1/rides/{ride['id']}/complete", headers=auth(DRIVER_TOKEN), json={})
        assert resp.json()["status"] == "PAYMENT_PENDING"
        assert [(r, key) for r, _, key in harness.orders] == [(ride["id"], f"ride:{ride['id']}:order")]

        resp = await client.post(
            f"/v1/payments/{ride['id']}/confirm", headers=auth(DRIVER_TOKEN), json={"psp_ref": "pay_1"}
        )
        assert resp.status_code == 403

        for _ in range(2):
            resp = await client.post(
                f"/v1/payments/{ride['id']}/confirm", headers=auth(RIDER_TOKEN), json={"psp_ref": "pay_1"}
            )
            assert resp.status_code == 200
            assert resp.json()["ride_status"] == "RIDE_ENDED"
            assert resp.json()["payment_status"] == "COMPLETED"

        async with harness.session_factory() as session:
            order = (await session.execute(select(Payment).where(Payment.ride_id == ride["id"]))).scalar_one()
            assert (order.status, order.psp_ref, order.order_ref) == ("SUCCESS", "pay_1", "order_1")
            fare = Decimal(ride["fare"])
            expected = fare - (fare * Decimal("0.12")).quantize(Decimal("1"))
            assert await ledger.balance_of(session, "driver-1") == expected

    async def test_failed_payment_keeps_ride_pending(self, client):
        ride = await book(client, payment_mode="card")
        await drive_to_start(client, ride)
        await client.post(f"/v1/rides/{ride['id']}/complete", headers=auth(DRIVER_TOKEN), json={})

        resp = await client.post(
            f"/v1/payments/{ride['id']}/confirm",
            headers=auth(RIDER_TOKEN),
            json={"psp_ref": "pay_2", "success": False},
        )
        assert resp.status_code == 200
        assert resp.json()["ride_status"] == "PAYMENT_PENDING"
        assert resp.json()["payment_status"] == "FAILED"


@pytest.mark.asyncio
class TestDriverAPI:
    async def test_register_and_go_online(self, client, harness):
        resp = await client.post(
            "/v1/drivers", json={"name": "Ravi Kumar", "phone": "9876500001", "category": "SUV"}
        )
        assert resp.status_code == 201
        driver = resp.json()
        assert (driver["status"], driver["category"]) == ("offline", "suv")

        duplicate = await client.post("/v1/drivers", json={"name": "Ravi K", "phone": "9876500001"})
        assert duplicate.status_code == 409

        token = create_access_token(driver["id"], role="driver")
        resp = await client.patch(
            f"/v1/drivers/{driver['id']}/status", params={"new_status": "available"}, headers=auth(token)
        )
        assert resp.status_code == 200
        harness.redis.set.assert_awaited_with(f"presence:{driver['id']}", f"driver:{driver['id']}")

        resp = await client.post(
            f"/v1/drivers/{driver['id']}/location", json={"lat": 28.63, "lng": 77.21}, headers=auth(token)
        )
        assert resp.status_code == 204
        assert harness.redis.geoadd.await_args.args[0] == "drivers:geo:suv"

    async def test_drivers_act_only_for_themselves(self, client):
        resp = await client.patch(
            "/v1/drivers/driver-2/status", params={"new_status": "available"}, headers=auth(DRIVER_TOKEN)
        )
        assert resp.status_code == 403

    async def test_late_offer_answer_is_not_delivered(self, client):
        resp = await client.post(
            "/v1/drivers/driver-1/offers/ride-x", json={"accepted": True}, headers=auth(DRIVER_TOKEN)
        )
        assert resp.status_code == 200
        assert resp.json() == {"ride_id": "ride-x", "driver_id": "driver-1", "delivered": False}


@pytest.mark.asyncio
class TestIdempotencyCache:
    async def test_cached_response_is_replayed(self, client, harness):
        cached = {"status_code": 200, "body": {"ride_id": "ride-x", "ride_status": "RIDE_ENDED"}}
        harness.redis.get.return_value = json.dumps(cached)
        resp = await client.post(
            "/v1/payments/ride-x/confirm",
            headers={**auth(RIDER_TOKEN), "Idempotency-Key": "pay-1"},
            json={"psp_ref": "pay_1"},
        )
        assert resp.status_code == 200
        assert resp.headers["X-Idempotency-Replay"] == "true"
        harness.redis.get.assert_awaited_with("idempotency:rider-1:pay-1")

    async def test_cache_outage_does_not_block_booking(self, client, harness):
        harness.redis.get.side_effect = RedisError("down")
        harness.redis.setex.side_effect = RedisError("down")
        resp = await client.post(
            "/v1/rides", headers={**auth(RIDER_TOKEN), "Idempotency-Key": "booking-2"}, json=RIDE_REQUEST
        )
        assert resp.status_code == 201
