import logging
import os
import uuid
from datetime import datetime, timezone

from celery import Celery

from app.db import SessionLocal
from app.logging import configure_logging
from app.services.call_requests import expire_stale
from app.services.sheet_sync import run_background_sync
from app.services.sheets_client import get_sheets_client

broker_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
app = Celery("leadsync-worker", broker=broker_url, backend=broker_url)
app.conf.beat_schedule = {
    "expire-call-requests": {
        "task": "worker.call_requests.expire_stale",
        "schedule": float(os.getenv("CALL_REQUEST_SWEEP_SECONDS", "60")),
    },
}

configure_logging()
logger = logging.getLogger("app.worker")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@app.task(name="worker.health.ping")
def ping() -> str:
    return "pong"


@app.task(name="worker.call_requests.expire_stale")
def expire_call_requests() -> int:
    with SessionLocal() as db:
        expired = expire_stale(db, now=_now())
    if expired:
        logger.info("worker.call_requests.expired", extra={"rows": expired})
    return expired


@app.task(name="worker.sheets.realtime_sync")
def sheets_realtime_sync(collection_id: str) -> str:
    try:
        target = uuid.UUID(collection_id)
    except ValueError:
        return "invalid_collection_id"
    with SessionLocal() as db:
        outcome = run_background_sync(db, target, get_sheets_client())
    logger.info("worker.sheets.realtime_sync", extra={"collection_id": collection_id, "outcome": outcome})
    return outcome
