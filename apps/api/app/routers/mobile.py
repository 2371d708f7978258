from __future__ import annotations

import asyncio
import logging
import uuid

from fastapi import APIRouter, BackgroundTasks, Depends, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db import get_db
from ..models import CallLog, CallRequest, Collection, Membership
from ..schemas import (
    CallLogResponse,
    CallLogSyncRequest,
    CallLogSyncResponse,
    CallRequestCompleteRequest,
    CallRequestCreateRequest,
    CallRequestRespondRequest,
    CallRequestResponse,
    MatchNumberResponse,
    RecordResponse,
)
from ..services import call_logs, call_requests
from ..services.audit import write_audit_log
from ..services.push_channel import MobileChannelRegistry, get_push_registry
from ..services.sheet_sync import trigger_realtime_sync, wants_realtime_sync
from ..settings import settings
from ..tenancy import RequestContext, get_request_context
from .collections import serialize_record

router = APIRouter(prefix="/mobile", tags=["mobile"])
logger = logging.getLogger("app.mobile")


def _serialize_request(row: CallRequest, notification_sent: bool | None = None) -> CallRequestResponse:
    return CallRequestResponse(
        id=row.id,
        user_id=row.user_id,
        record_id=row.record_id,
        phone_number=row.phone_number,
        customer_name=row.display_name,
        status=call_requests.effective_status(row),
        requested_at=row.requested_at,
        expires_at=row.expires_at,
        accepted_at=row.accepted_at,
        completed_at=row.completed_at,
        notification_sent=notification_sent,
    )


def _serialize_log(row: CallLog) -> CallLogResponse:
    return CallLogResponse(
        id=row.id,
        user_id=row.user_id,
        record_id=row.record_id,
        phone_number=row.phone_number,
        call_type=row.call_type,
        duration_seconds=row.duration_seconds,
        timestamp=row.timestamp,
        note=row.note,
        synced_from_mobile=row.synced_from_mobile,
        status=row.status,
    )


@router.post("/request-call", response_model=CallRequestResponse)
def request_call(
    payload: CallRequestCreateRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    registry: MobileChannelRegistry = Depends(get_push_registry),
) -> CallRequestResponse:
    request, sent = call_requests.create_request(
        db,
        registry,
        user_id=context.current_user_id,
        account_id=context.current_account_id,
        record_id=payload.record_id,
        phone_number=payload.phone_number,
        display_name=payload.customer_name,
    )
    write_audit_log(
        db, context, "call_requests.created", "call_request", str(request.id), {"notification_sent": sent}
    )
    db.commit()
    return _serialize_request(request, notification_sent=sent)


@router.post("/respond-call", response_model=CallRequestResponse)
def respond_call(
    payload: CallRequestRespondRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> CallRequestResponse:
    request = call_requests.respond(db, context.current_user_id, payload.request_id, payload.action.strip().lower())
    write_audit_log(
        db, context, "call_requests.responded", "call_request", str(request.id), {"status": request.status.value}
    )
    db.commit()
    return _serialize_request(request)


@router.post("/complete-call", response_model=CallRequestResponse)
def complete_call(
    payload: CallRequestCompleteRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> CallRequestResponse:
    request = call_requests.complete(db, context.current_user_id, payload.request_id)
    return _serialize_request(request)


@router.get("/call-requests/{request_id}", response_model=CallRequestResponse)
def get_call_request(
    request_id: uuid.UUID,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> CallRequestResponse:
    return _serialize_request(call_requests.get_request(db, context.current_user_id, request_id))


@router.get("/leads", response_model=list[RecordResponse])
def mobile_leads(
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> list[RecordResponse]:
    return [serialize_record(row) for row in call_logs.leads_for_user(db, context)]


@router.post("/sync-logs", response_model=CallLogSyncResponse)
def sync_logs(
    payload: CallLogSyncRequest,
    background_tasks: BackgroundTasks,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> CallLogSyncResponse:
    entries = [
        call_logs.CallLogEntry(
            phone_number=item.phone_number.strip(),
            call_type=item.call_type,
            duration_seconds=item.duration_seconds,
            timestamp=item.timestamp,
            note=item.note,
            status=item.status,
            record_id=item.record_id,
        )
        for item in payload.logs
    ]
    result = call_logs.sync_call_logs(db, context, entries)
    for collection_id in result.touched_collection_ids:
        collection = db.get(Collection, collection_id)
        if collection is not None and wants_realtime_sync(collection):
            background_tasks.add_task(trigger_realtime_sync, collection.id)
    return CallLogSyncResponse(
        received=result.received,
        synced=result.synced,
        duplicates=result.duplicates,
        filtered=result.filtered,
    )


@router.get("/match-number/{phone_number}", response_model=MatchNumberResponse)
def match_number(
    phone_number: str,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> MatchNumberResponse:
    matches = call_logs.match_number(db, context, phone_number)
    return MatchNumberResponse(
        phone_number=phone_number,
        matched=bool(matches),
        records=[serialize_record(row) for row in matches],
    )


@router.get("/call-logs/{record_id}", response_model=list[CallLogResponse])
def record_call_logs(
    record_id: uuid.UUID,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> list[CallLogResponse]:
    return [_serialize_log(row) for row in call_logs.logs_for_record(db, context, record_id)]


def _socket_user_id(websocket: WebSocket, db: Session) -> uuid.UUID | None:
    if settings.dev_auth_bypass:
        return uuid.UUID(settings.dev_user_id)
    raw_user = websocket.headers.get("x-leadsync-user-id") or websocket.query_params.get("user_id")
    raw_account = websocket.headers.get("x-leadsync-account-id") or websocket.query_params.get("account_id")
    if not raw_user:
        return None
    try:
        user_id = uuid.UUID(raw_user)
        account_id = uuid.UUID(raw_account) if raw_account else None
    except ValueError:
        return None
    stmt = select(Membership.id).where(Membership.user_id == user_id, Membership.deleted_at.is_(None))
    if account_id is not None:
        stmt = stmt.where(Membership.account_id == account_id)
    if db.scalar(stmt.limit(1)) is None:
        return None
    return user_id


@router.websocket("/ws")
async def mobile_socket(
    websocket: WebSocket,
    db: Session = Depends(get_db),
    registry: MobileChannelRegistry = Depends(get_push_registry),
) -> None:
    user_id = await run_in_threadpool(_socket_user_id, websocket, db)
    if user_id is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    pending = await run_in_threadpool(call_requests.pending_for_user, db, user_id)
    await run_in_threadpool(db.close)

    await websocket.accept()
    connection_id = registry.register(user_id, websocket, asyncio.get_running_loop())
    try:
        await websocket.send_json({"event": "mobile:authenticated", "data": {"user_id": str(user_id)}})
        for request in pending:
            await websocket.send_json({"event": "call:request", "data": call_requests.push_payload(request)})
        while True:
            message = await websocket.receive_json()
            if isinstance(message, dict) and message.get("event") == "ping":
                await websocket.send_json({"event": "pong", "data": {}})
    except WebSocketDisconnect:
        pass
    finally:
        registry.unregister(user_id, connection_id)
