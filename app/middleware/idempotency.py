"""
Idempotency-Key replay cache.

Responses are cached per caller, so two users sending the same key never see
each other's results. The cache is best effort: when Redis is unreachable the
request proceeds, and ride creation still deduplicates on the stored key.
"""
import json
import logging
from typing import Optional

import redis.asyncio as aioredis
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

IDEMPOTENCY_TTL = 86400  # 24 hours


def idempotency_cache_key(scope: str, key: str) -> str:
    return f"idempotency:{scope}:{key}"


async def check_idempotency(
    request: Request,
    redis: aioredis.Redis,
    scope: str,
) -> Optional[Response]:
    """
    Returns the cached Response if the caller already used this
    Idempotency-Key, otherwise None (proceed normally).
    """
    key = request.headers.get("Idempotency-Key")
    if not key:
        return None

    try:
        cached = await redis.get(idempotency_cache_key(scope, key))
    except RedisError as exc:
        logger.warning("Idempotency lookup skipped for %s: %s", request.url.path, exc)
        return None
    if not cached:
        return None

    data = json.loads(cached)
    return JSONResponse(
        content=data["body"],
        status_code=data["status_code"],
        headers={"X-Idempotency-Replay": "true"},
    )


async def store_idempotency_result(
    redis: aioredis.Redis,
    scope: str,
    key: str,
    status_code: int,
    body: dict,
) -> None:
    """Persist the response for the given idempotency key (24h TTL)."""
    try:
        await redis.setex(
            idempotency_cache_key(scope, key),
            IDEMPOTENCY_TTL,
            json.dumps({"status_code": status_code, "body": body}),
        )
    except RedisError as exc:
        logger.warning("Idempotency result for key %s not cached: %s", key, exc)
