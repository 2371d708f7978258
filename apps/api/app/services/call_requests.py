from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta

from fastapi import HTTPException, status
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..models import CallRequest, CallRequestStatus, Record
from ..settings import settings
from .call_logs import open_pending_log
from .push_channel import MobileChannelRegistry

logger = logging.getLogger("app.mobile.calls")

RESPONSE_ACTIONS = {"accept": CallRequestStatus.ACCEPTED, "reject": CallRequestStatus.REJECTED}


def _now() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def effective_status(request: CallRequest, now: datetime | None = None) -> CallRequestStatus:
    current = now or _now()
    if request.status == CallRequestStatus.PENDING and current >= _as_utc(request.expires_at):
        return CallRequestStatus.EXPIRED
    return request.status


def push_payload(request: CallRequest) -> dict[str, object]:
    return {
        "request_id": str(request.id),
        "record_id": str(request.record_id),
        "customer_name": request.display_name,
        "phone_number": request.phone_number,
        "requested_at": _as_utc(request.requested_at).isoformat(),
        "expires_at": _as_utc(request.expires_at).isoformat(),
    }


def create_request(
    db: Session,
    registry: MobileChannelRegistry,
    user_id: uuid.UUID,
    account_id: uuid.UUID,
    record_id: uuid.UUID,
    phone_number: str,
    display_name: str,
    now: datetime | None = None,
) -> tuple[CallRequest, bool]:
    phone_number = (phone_number or "").strip()
    display_name = (display_name or "").strip()
    if not phone_number or not display_name:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="phone_number and customer_name are required")

    record = db.get(Record, record_id)
    if record is None or record.deleted_at is not None or record.account_id != account_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="record not found")

    requested_at = now or _now()
    request = CallRequest(
        user_id=user_id,
        record_id=record_id,
        phone_number=phone_number,
        display_name=display_name,
        status=CallRequestStatus.PENDING,
        requested_at=requested_at,
        expires_at=requested_at + timedelta(seconds=settings.call_request_ttl_seconds),
    )
    db.add(request)
    db.commit()
    db.refresh(request)

    sent = registry.send(user_id, "call:request", push_payload(request))
    logger.info(
        "mobile.call_request.created",
        extra={"request_id_ref": str(request.id), "user_id": str(user_id), "status": "sent" if sent else "not_sent"},
    )
    return request, sent


def _owned_request(db: Session, user_id: uuid.UUID, request_id: uuid.UUID) -> CallRequest:
    request = db.get(CallRequest, request_id)
    if request is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="call request not found")
    if request.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="call request belongs to another user")
    return request


def get_request(db: Session, user_id: uuid.UUID, request_id: uuid.UUID) -> CallRequest:
    return _owned_request(db, user_id, request_id)


def _transition(
    db: Session,
    request: CallRequest,
    expected: CallRequestStatus,
    current: datetime,
    **values: object,
) -> None:
    stmt = update(CallRequest).where(
        CallRequest.id == request.id,
        CallRequest.user_id == request.user_id,
        CallRequest.status == expected,
    )
    if expected == CallRequestStatus.PENDING:
        stmt = stmt.where(CallRequest.expires_at > current)
    result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
    if result.rowcount:
        return
    db.rollback()
    db.refresh(request)
    state = effective_status(request, current)
    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"call request is {state.value}")


def respond(
    db: Session,
    user_id: uuid.UUID,
    request_id: uuid.UUID,
    action: str,
    now: datetime | None = None,
) -> CallRequest:
    target = RESPONSE_ACTIONS.get(action)
    if target is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="action must be 'accept' or 'reject'")

    request = _owned_request(db, user_id, request_id)
    current = now or _now()
    state = effective_status(request, current)
    if state != CallRequestStatus.PENDING:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"call request is {state.value}")

    accepted_at = current if target == CallRequestStatus.ACCEPTED else None
    _transition(db, request, CallRequestStatus.PENDING, current, status=target, accepted_at=accepted_at)
    if target == CallRequestStatus.ACCEPTED:
        record = db.get(Record, request.record_id)
        if record is not None:
            open_pending_log(db, user_id, record, request.phone_number)
    db.commit()
    db.refresh(request)
    logger.info("mobile.call_request.responded", extra={"request_id_ref": str(request.id), "status": target.value})
    return request


def complete(
    db: Session,
    user_id: uuid.UUID,
    request_id: uuid.UUID,
    now: datetime | None = None,
) -> CallRequest:
    request = _owned_request(db, user_id, request_id)
    current = now or _now()
    state = effective_status(request, current)
    if state != CallRequestStatus.ACCEPTED:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"call request is {state.value}")
    _transition(
        db, request, CallRequestStatus.ACCEPTED, current, status=CallRequestStatus.COMPLETED, completed_at=current
    )
    db.commit()
    db.refresh(request)
    return request


def expire_stale(db: Session, now: datetime | None = None) -> int:
    current = now or _now()
    result = db.execute(
        update(CallRequest)
        .where(CallRequest.status == CallRequestStatus.PENDING, CallRequest.expires_at <= current)
        .values(status=CallRequestStatus.EXPIRED)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return int(result.rowcount or 0)


def pending_for_user(db: Session, user_id: uuid.UUID, now: datetime | None = None) -> list[CallRequest]:
    current = now or _now()
    rows = db.scalars(
        select(CallRequest)
        .where(CallRequest.user_id == user_id, CallRequest.status == CallRequestStatus.PENDING)
        .order_by(CallRequest.requested_at.desc())
    ).all()
    return [row for row in rows if effective_status(row, current) == CallRequestStatus.PENDING]
