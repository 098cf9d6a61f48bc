"""
Payment gateway adapter.

Creates a gateway order for electronically paid rides; the rider completes
the payment client-side and the gateway result comes back through
``POST /v1/payments/{ride_id}/confirm``.
"""
import asyncio
import logging
from decimal import Decimal

import httpx

from app.config import get_settings
from app.errors import UpstreamFailure

logger = logging.getLogger(__name__)
settings = get_settings()


class PSPError(Exception):
    pass


async def create_order(
    ride_id: str,
    rider_id: str,
    amount: Decimal,
    payment_mode: str,
    idempotency_key: str,
    transport: httpx.AsyncBaseTransport | None = None,
    backoff: float = 1.0,
) -> dict:
    """
    Creates a PSP order with up to ``psp_max_attempts`` tries (exponential backoff).
    Returns: {"order_ref": str, "status": str}
    """
    attempts = settings.psp_max_attempts
    for attempt in range(1, attempts + 1):
        try:
            result = await _call_psp(ride_id, rider_id, amount, payment_mode, idempotency_key, transport)
            logger.info("PSP order created: ref=%s ride=%s amount=%s", result["order_ref"], ride_id, amount)
            return result
        except PSPError as e:
            if attempt == attempts:
                logger.error("PSP order failed after %d attempts: %s", attempts, e)
                raise UpstreamFailure(f"Payment gateway unavailable: {e}") from e
            logger.warning("PSP order attempt %d failed: %s", attempt, e)
            await asyncio.sleep(backoff * 2 ** (attempt - 1))

    raise UpstreamFailure("Payment gateway unavailable")


async def _call_psp(
    ride_id: str,
    rider_id: str,
    amount: Decimal,
    payment_mode: str,
    idempotency_key: str,
    transport: httpx.AsyncBaseTransport | None,
) -> dict:
    if amount <= 0:
        raise PSPError("Amount must be positive")

    try:
        async with httpx.AsyncClient(timeout=settings.psp_timeout_seconds, transport=transport) as client:
            resp = await client.post(
                f"{settings.psp_base_url}/orders",
                headers={
                    "Authorization": f"Bearer {settings.psp_api_key}",
                    "Idempotency-Key": idempotency_key,
                },
                json={
                    # minor units
                    "amount": int(amount * 100),
                    "currency": settings.currency,
                    "receipt": ride_id,
                    "notes": {"rider_id": rider_id, "payment_mode": payment_mode},
                },
            )
    except httpx.HTTPError as exc:
        raise PSPError(f"PSP transport error: {exc}") from exc
    if resp.status_code >= 400:
        raise PSPError(f"PSP error {resp.status_code}: {resp.text}")
    body = resp.json()
    return {"order_ref": body["id"], "status": body.get("status", "created")}
