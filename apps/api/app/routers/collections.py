from __future__ import annotations

import uuid
from datetime import UTC, datetime

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from ..db import get_db
from ..models import COPIED_MARKER_KEY, META_LEAD_ID_KEY, SOURCE_COLLECTION_KEY, CallLog, CallRequest, Collection, Record
from ..schemas import (
    CollectionCreateRequest,
    CollectionResponse,
    MergeRequest,
    MergeResponse,
    RecordCreateRequest,
    RecordPatchRequest,
    RecordResponse,
    ReorderRequest,
    ReorderResponse,
)
from ..services.audit import write_audit_log
from ..services.merge import merge_collections
from ..services.sheet_sync import active_records, max_position, trigger_realtime_sync, wants_realtime_sync
from ..tenancy import RequestContext, account_scoped, collection_for_context, get_request_context, require_admin

router = APIRouter(prefix="/collections", tags=["collections"])
records_router = APIRouter(prefix="/records", tags=["records"])

# Marker keys written by the system only.
RESERVED_EXTRA_KEYS = frozenset({META_LEAD_ID_KEY, COPIED_MARKER_KEY, SOURCE_COLLECTION_KEY})


def _serialize_collection(row: Collection, record_count: int = 0) -> CollectionResponse:
    return CollectionResponse(
        id=row.id,
        account_id=row.account_id,
        user_id=row.user_id,
        name=row.name,
        description=row.description,
        is_external_sourced=row.is_external_sourced,
        is_aggregate=row.is_aggregate,
        page_name=row.page_name,
        form_name=row.form_name,
        campaign_name=row.campaign_name,
        ad_set_name=row.ad_set_name,
        ad_name=row.ad_name,
        dynamic_field_names=list(row.dynamic_field_names or []),
        linked_sheet_url=row.linked_sheet_url,
        linked_sheet_name=row.linked_sheet_name,
        column_mapping=row.column_mapping,
        realtime_sync=row.realtime_sync,
        last_synced_at=row.last_synced_at,
        record_count=record_count,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def serialize_record(row: Record) -> RecordResponse:
    return RecordResponse(
        id=row.id,
        account_id=row.account_id,
        collection_id=row.collection_id,
        user_id=row.user_id,
        display_name=row.display_name,
        organization_name=row.organization_name,
        phone_number=row.phone_number,
        note=row.note,
        status=row.status,
        position=row.position,
        next_call_date=row.next_call_date,
        last_call_date=row.last_call_date,
        external_lead_id=row.external_lead_id,
        extra_fields=dict(row.extra_fields or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _record_count(db: Session, collection_id: uuid.UUID) -> int:
    return int(
        db.scalar(
            select(func.count(Record.id)).where(Record.collection_id == collection_id, Record.deleted_at.is_(None))
        )
        or 0
    )


def _user_extra_fields(values: dict[str, str]) -> dict[str, str]:
    return {key: value for key, value in values.items() if key not in RESERVED_EXTRA_KEYS}


def _record_for_context(db: Session, context: RequestContext, record_id: uuid.UUID) -> Record:
    record = db.get(Record, record_id)
    if record is None or record.deleted_at is not None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="record not found")
    if record.account_id != context.current_account_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="record belongs to another account")
    return record


def _schedule_sync(background_tasks: BackgroundTasks, collection: Collection) -> None:
    if wants_realtime_sync(collection):
        background_tasks.add_task(trigger_realtime_sync, collection.id)


@router.get("", response_model=list[CollectionResponse])
def list_collections(
    external: bool | None = Query(default=None),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> list[CollectionResponse]:
    counts = (
        select(Record.collection_id, func.count(Record.id).label("record_count"))
        .where(Record.deleted_at.is_(None))
        .group_by(Record.collection_id)
        .subquery()
    )
    stmt = account_scoped(
        select(Collection, func.coalesce(counts.c.record_count, 0)).outerjoin(
            counts, counts.c.collection_id == Collection.id
        ),
        context.current_account_id,
        Collection,
    )
    if external is not None:
        stmt = stmt.where(Collection.is_external_sourced.is_(external))
    rows = db.execute(stmt.order_by(Collection.created_at.desc())).all()
    return [_serialize_collection(row, int(count)) for row, count in rows]


@router.post("", response_model=CollectionResponse, status_code=status.HTTP_201_CREATED)
def create_collection(
    payload: CollectionCreateRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> CollectionResponse:
    collection = Collection(
        account_id=context.current_account_id,
        user_id=context.current_user_id,
        name=payload.name.strip(),
        description=payload.description,
        dynamic_field_names=[],
    )
    db.add(collection)
    db.flush()
    write_audit_log(db, context, "collections.created", "collection", str(collection.id), {"name": collection.name})
    db.commit()
    db.refresh(collection)
    return _serialize_collection(collection)


@router.post("/merge", response_model=MergeResponse, status_code=status.HTTP_201_CREATED)
def merge(
    payload: MergeRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> MergeResponse:
    merged, copied, skipped = merge_collections(db, context, payload.collection_ids, payload.name)
    return MergeResponse(collection=_serialize_collection(merged, copied), copied=copied, skipped=skipped)


@router.get("/{collection_id}", response_model=CollectionResponse)
def get_collection(
    collection_id: uuid.UUID,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> CollectionResponse:
    collection = collection_for_context(db, context, collection_id)
    return _serialize_collection(collection, _record_count(db, collection.id))


@router.delete("/{collection_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_collection(
    collection_id: uuid.UUID,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> None:
    require_admin(context)
    collection = collection_for_context(db, context, collection_id)
    record_ids = select(Record.id).where(Record.collection_id == collection.id)
    db.execute(delete(CallRequest).where(CallRequest.record_id.in_(record_ids)).execution_options(synchronize_session=False))
    db.execute(
        update(CallLog)
        .where(CallLog.record_id.in_(record_ids))
        .values(record_id=None)
        .execution_options(synchronize_session=False)
    )
    db.execute(delete(Record).where(Record.collection_id == collection.id).execution_options(synchronize_session=False))
    write_audit_log(db, context, "collections.deleted", "collection", str(collection.id), {"name": collection.name})
    db.delete(collection)
    db.commit()


@router.get("/{collection_id}/records", response_model=list[RecordResponse])
def list_records(
    collection_id: uuid.UUID,
    limit: int = Query(default=500, ge=1, le=5000),
    offset: int = Query(default=0, ge=0),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> list[RecordResponse]:
    collection = collection_for_context(db, context, collection_id)
    rows = db.scalars(
        select(Record)
        .where(Record.collection_id == collection.id, Record.deleted_at.is_(None))
        .order_by(Record.position, Record.created_at)
        .offset(offset)
        .limit(limit)
    ).all()
    return [serialize_record(row) for row in rows]


@router.post("/{collection_id}/records", response_model=RecordResponse, status_code=status.HTTP_201_CREATED)
def create_record(
    collection_id: uuid.UUID,
    payload: RecordCreateRequest,
    background_tasks: BackgroundTasks,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> RecordResponse:
    collection = collection_for_context(db, context, collection_id)
    record = Record(
        account_id=context.current_account_id,
        collection_id=collection.id,
        user_id=context.current_user_id,
        display_name=payload.display_name.strip(),
        organization_name=payload.organization_name.strip(),
        phone_number=payload.phone_number.strip(),
        note=payload.note,
        status=payload.status,
        position=max_position(db, collection.id) + 1,
        next_call_date=payload.next_call_date,
        last_call_date=payload.last_call_date,
        extra_fields=_user_extra_fields(payload.extra_fields),
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    _schedule_sync(background_tasks, collection)
    return serialize_record(record)


@router.post("/{collection_id}/reorder", response_model=ReorderResponse)
def reorder_records(
    collection_id: uuid.UUID,
    payload: ReorderRequest,
    background_tasks: BackgroundTasks,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> ReorderResponse:
    collection = collection_for_context(db, context, collection_id)
    current = active_records(db, collection.id)
    by_id = {record.id: record for record in current}
    requested = list(dict.fromkeys(payload.record_ids))
    unknown = [str(record_id) for record_id in requested if record_id not in by_id]
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"records not in collection: {', '.join(unknown)}",
        )

    listed = set(requested)
    ordered = [by_id[record_id] for record_id in requested] + [record for record in current if record.id not in listed]
    updated = 0
    for position, record in enumerate(ordered):
        if record.position != position:
            record.position = position
            updated += 1
    db.commit()
    _schedule_sync(background_tasks, collection)
    return ReorderResponse(collection_id=collection.id, updated=updated)


@records_router.patch("/{record_id}", response_model=RecordResponse)
def patch_record(
    record_id: uuid.UUID,
    payload: RecordPatchRequest,
    background_tasks: BackgroundTasks,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> RecordResponse:
    record = _record_for_context(db, context, record_id)
    changes = payload.model_dump(exclude_unset=True)
    extra_fields = changes.pop("extra_fields", None)
    for key, value in changes.items():
        if value is not None:
            setattr(record, key, value)
    if extra_fields is not None:
        record.extra_fields = {**(record.extra_fields or {}), **_user_extra_fields(extra_fields)}
    db.commit()
    db.refresh(record)
    collection = db.get(Collection, record.collection_id)
    if collection is not None:
        _schedule_sync(background_tasks, collection)
    return serialize_record(record)


@records_router.delete("/{record_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_record(
    record_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> None:
    record = _record_for_context(db, context, record_id)
    record.deleted_at = datetime.now(UTC)
    db.commit()
    collection = db.get(Collection, record.collection_id)
    if collection is not None:
        _schedule_sync(background_tasks, collection)
