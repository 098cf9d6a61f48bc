"""
Payments router — POST /v1/payments/{ride_id}/confirm
"""
import logging

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Header, Request

from app.dependencies import get_ride_service
from app.middleware.auth import get_current_actor
from app.middleware.idempotency import check_idempotency, store_idempotency_result
from app.redis_client import get_redis
from app.schemas.schemas import Actor, PaymentConfirmRequest, PaymentResponse
from app.services.lifecycle import RideService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/payments", tags=["Payments"])


@router.post("/{ride_id}/confirm", response_model=PaymentResponse)
async def confirm_payment(
    ride_id: str,
    payload: PaymentConfirmRequest,
    request: Request,
    service: RideService = Depends(get_ride_service),
    redis: aioredis.Redis = Depends(get_redis),
    actor: Actor = Depends(get_current_actor),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    """
    Record the gateway result for an electronically paid ride.
    - Idempotent: a settled ride is returned unchanged.
    - The amount is always the server-side total, never client supplied.
    """
    if idempotency_key:
        cached = await check_idempotency(request, redis, actor.id)
        if cached:
            return cached

    ride, order = await service.confirm_payment(ride_id, actor, payload.psp_ref, payload.success)
    resp = PaymentResponse(
        ride_id=ride.id,
        ride_status=ride.status,
        payment_status=ride.payment_status,
        psp_ref=order.psp_ref if order else payload.psp_ref,
        amount=float(ride.total_amount or 0),
        currency=order.currency if order else "INR",
    )

    if idempotency_key:
        await store_idempotency_result(redis, actor.id, idempotency_key, 200, resp.model_dump(mode="json"))
    return resp
