from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, status
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from ..db import check_db_health
from ..redis_client import get_redis_client
from ..settings import settings

router = APIRouter(tags=["health"])
logger = logging.getLogger("app.health")


def _dependency_checks() -> dict[str, str]:
    checks = {"db": "ok", "redis": "ok"}
    try:
        check_db_health()
    except SQLAlchemyError as exc:
        logger.warning("health.db_unavailable", extra={"error": str(exc)})
        checks["db"] = "down"
    try:
        get_redis_client().ping()
    except RedisError as exc:
        # Webhook idempotency degrades without redis, ingestion keeps working.
        logger.warning("health.redis_unavailable", extra={"error": str(exc)})
        checks["redis"] = "degraded"
    return checks


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/ready")
def ready() -> dict[str, object]:
    checks = _dependency_checks()
    body: dict[str, object] = {
        "env": settings.app_env,
        "connector_mode": settings.connector_mode,
        "checks": checks,
    }
    if checks["db"] != "ok":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail={"status": "not_ready", **body})
    return {"status": "ready" if checks["redis"] == "ok" else "degraded", **body}


@router.get("/healthz/db")
def healthz_db() -> dict[str, str]:
    try:
        check_db_health()
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="database unavailable") from exc
    return {"status": "ok"}
