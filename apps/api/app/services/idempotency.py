from __future__ import annotations

import logging

from redis import Redis
from redis.exceptions import RedisError

from ..settings import settings

logger = logging.getLogger("app.meta.idempotency")

WEBHOOK_KEY_PREFIX = "leadsync:webhook:lead:"


def webhook_key(page_id: str, leadgen_id: str) -> str:
    return f"{WEBHOOK_KEY_PREFIX}{page_id}:{leadgen_id}"


def claim_webhook_delivery(redis_client: Redis | None, page_id: str, leadgen_id: str) -> bool:
    if redis_client is None:
        return True
    key = webhook_key(page_id, leadgen_id)
    try:
        claimed = redis_client.set(key, "1", nx=True, ex=settings.webhook_idempotency_ttl_seconds)
    except RedisError as exc:
        logger.warning("meta.webhook.idempotency_unavailable", extra={"leadgen_id": leadgen_id, "error": str(exc)})
        return True
    return bool(claimed)


def release_webhook_delivery(redis_client: Redis | None, page_id: str, leadgen_id: str) -> None:
    if redis_client is None:
        return
    try:
        redis_client.delete(webhook_key(page_id, leadgen_id))
    except RedisError as exc:
        logger.warning("meta.webhook.idempotency_release_failed", extra={"leadgen_id": leadgen_id, "error": str(exc)})
