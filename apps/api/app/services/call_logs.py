from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from packages.security import mask_phone

from ..models import CallLog, CallLogStatus, CallType, Record
from ..tenancy import RequestContext

logger = logging.getLogger("app.mobile.call_logs")

MATCH_DIGITS = 10
CONNECTED_CALL_TYPES = {CallType.INCOMING, CallType.OUTGOING}


@dataclass
class CallLogEntry:
    phone_number: str
    call_type: CallType
    duration_seconds: int
    timestamp: datetime
    note: str = ""
    status: CallLogStatus = CallLogStatus.COMPLETED
    record_id: uuid.UUID | None = None


@dataclass
class SyncResult:
    received: int
    synced: int
    duplicates: int
    filtered: int
    touched_collection_ids: list[uuid.UUID] = field(default_factory=list)


def normalize_phone(value: str) -> str:
    digits = re.sub(r"\D", "", value or "")
    return digits[-MATCH_DIGITS:]


def match_records(db: Session, account_id: uuid.UUID, phone_number: str) -> list[Record]:
    normalized = normalize_phone(phone_number)
    if len(normalized) < 5:
        return []
    tail = normalized[-4:]
    candidates = db.scalars(
        select(Record)
        .where(
            Record.account_id == account_id,
            Record.deleted_at.is_(None),
            Record.phone_number.like(f"%{tail}"),
        )
        .order_by(Record.updated_at.desc())
    ).all()
    return [record for record in candidates if normalize_phone(record.phone_number) == normalized]


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _resolve_record(db: Session, context: RequestContext, entry: CallLogEntry) -> Record | None:
    if entry.record_id is not None:
        record = db.get(Record, entry.record_id)
        if record is not None and record.account_id == context.current_account_id and record.deleted_at is None:
            return record
    matches = match_records(db, context.current_account_id, entry.phone_number)
    return matches[0] if matches else None


def sync_call_logs(db: Session, context: RequestContext, entries: list[CallLogEntry]) -> SyncResult:
    if not entries:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="no logs provided")

    synced = 0
    duplicates = 0
    filtered = 0
    touched: list[uuid.UUID] = []
    for entry in entries:
        record = _resolve_record(db, context, entry)
        if record is None:
            filtered += 1
            continue

        timestamp = _as_utc(entry.timestamp)
        pending = None
        if entry.status == CallLogStatus.COMPLETED:
            pending = db.scalar(
                select(CallLog)
                .where(
                    CallLog.user_id == context.current_user_id,
                    CallLog.phone_number == entry.phone_number,
                    CallLog.status == CallLogStatus.PENDING,
                )
                .order_by(CallLog.timestamp.desc())
                .limit(1)
            )

        if pending is not None:
            pending.duration_seconds = entry.duration_seconds
            pending.status = CallLogStatus.COMPLETED
            pending.timestamp = timestamp
            pending.note = entry.note or "One-click call completed"
            pending.synced_from_mobile = True
            pending.record_id = pending.record_id or record.id
        else:
            existing = db.scalar(
                select(CallLog.id).where(
                    CallLog.user_id == context.current_user_id,
                    CallLog.phone_number == entry.phone_number,
                    CallLog.timestamp == timestamp,
                    CallLog.duration_seconds == entry.duration_seconds,
                    CallLog.status == CallLogStatus.COMPLETED,
                )
            )
            if existing is not None:
                duplicates += 1
                continue
            db.add(
                CallLog(
                    user_id=context.current_user_id,
                    record_id=record.id,
                    phone_number=entry.phone_number,
                    call_type=entry.call_type,
                    duration_seconds=entry.duration_seconds,
                    timestamp=timestamp,
                    note=entry.note,
                    synced_from_mobile=True,
                    status=entry.status,
                )
            )

        call_date = timestamp.date().isoformat()
        if entry.call_type in CONNECTED_CALL_TYPES and call_date >= (record.last_call_date or ""):
            if record.last_call_date != call_date and record.collection_id not in touched:
                touched.append(record.collection_id)
            record.last_call_date = call_date
        # Later entries of the same batch must see this one.
        db.flush()
        synced += 1

    db.commit()
    logger.info(
        "mobile.call_logs.synced",
        extra={
            "user_id": str(context.current_user_id),
            "rows": synced,
            "outcome": {"duplicates": duplicates, "filtered": filtered},
        },
    )
    return SyncResult(
        received=len(entries),
        synced=synced,
        duplicates=duplicates,
        filtered=filtered,
        touched_collection_ids=touched,
    )


def open_pending_log(db: Session, user_id: uuid.UUID, record: Record, phone_number: str) -> CallLog:
    log = CallLog(
        user_id=user_id,
        record_id=record.id,
        phone_number=phone_number,
        call_type=CallType.OUTGOING,
        duration_seconds=0,
        timestamp=datetime.now(UTC),
        note="One-click call requested",
        synced_from_mobile=False,
        status=CallLogStatus.PENDING,
    )
    db.add(log)
    return log


def leads_for_user(db: Session, context: RequestContext) -> list[Record]:
    return list(
        db.scalars(
            select(Record)
            .where(
                Record.account_id == context.current_account_id,
                Record.user_id == context.current_user_id,
                Record.deleted_at.is_(None),
                Record.phone_number != "",
            )
            .order_by(Record.updated_at.desc())
        ).all()
    )


def logs_for_record(db: Session, context: RequestContext, record_id: uuid.UUID) -> list[CallLog]:
    record = db.get(Record, record_id)
    if record is None or record.deleted_at is not None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="record not found")
    if record.account_id != context.current_account_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="record belongs to another account")
    return list(
        db.scalars(select(CallLog).where(CallLog.record_id == record_id).order_by(CallLog.timestamp.desc())).all()
    )


def match_number(db: Session, context: RequestContext, phone_number: str) -> list[Record]:
    matches = match_records(db, context.current_account_id, phone_number)
    logger.info(
        "mobile.match_number",
        extra={"user_id": str(context.current_user_id), "target": mask_phone(phone_number), "rows": len(matches)},
    )
    return matches
