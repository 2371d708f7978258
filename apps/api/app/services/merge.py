from __future__ import annotations

import logging
import uuid

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import Collection, Record
from ..tenancy import RequestContext
from .audit import write_audit_log

logger = logging.getLogger("app.collections.merge")


def _load_sources(db: Session, context: RequestContext, collection_ids: list[uuid.UUID]) -> list[Collection]:
    ordered_ids = list(dict.fromkeys(collection_ids))
    if len(ordered_ids) < 2:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="at least two distinct collections are required")

    rows = db.scalars(select(Collection).where(Collection.id.in_(ordered_ids))).all()
    by_id = {row.id: row for row in rows}
    missing = [str(item) for item in ordered_ids if item not in by_id]
    if missing:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"collections not found: {', '.join(missing)}")

    sources = [by_id[item] for item in ordered_ids]
    if any(source.account_id != context.current_account_id for source in sources):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="collections must belong to your account")

    signatures = {(source.is_external_sourced, source.page_name, source.form_name) for source in sources}
    if len(signatures) > 1:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="collections must share source type, page and form",
        )
    return sources


def merge_collections(
    db: Session,
    context: RequestContext,
    collection_ids: list[uuid.UUID],
    name: str | None = None,
) -> tuple[Collection, int, int]:
    sources = _load_sources(db, context, collection_ids)
    first = sources[0]

    merged = Collection(
        account_id=context.current_account_id,
        user_id=context.current_user_id,
        name=(name or "").strip() or f"Merged: {first.form_name} - {first.page_name}",
        description=f"Merged from {len(sources)} collections",
        is_external_sourced=first.is_external_sourced,
        is_aggregate=False,
        page_name=first.page_name,
        form_name=first.form_name,
        routing_key=None,
        dynamic_field_names=list(first.dynamic_field_names or []),
    )
    db.add(merged)
    db.flush()

    seen_leads: set[str] = set()
    copied = 0
    skipped = 0
    for source in sources:
        records = db.scalars(
            select(Record)
            .where(Record.collection_id == source.id, Record.deleted_at.is_(None))
            .order_by(Record.position, Record.created_at)
        ).all()
        for record in records:
            if record.external_lead_id:
                if record.external_lead_id in seen_leads:
                    skipped += 1
                    continue
                seen_leads.add(record.external_lead_id)
            db.add(
                Record(
                    account_id=context.current_account_id,
                    collection_id=merged.id,
                    user_id=record.user_id,
                    display_name=record.display_name,
                    organization_name=record.organization_name,
                    phone_number=record.phone_number,
                    note=record.note,
                    status=record.status,
                    position=copied,
                    next_call_date=record.next_call_date,
                    last_call_date=record.last_call_date,
                    external_lead_id=record.external_lead_id,
                    extra_fields=dict(record.extra_fields or {}),
                )
            )
            copied += 1

    write_audit_log(
        db,
        context,
        "collections.merged",
        "collection",
        str(merged.id),
        {"sources": [str(source.id) for source in sources], "copied": copied, "skipped": skipped},
    )
    db.commit()
    db.refresh(merged)
    logger.info(
        "collections.merged",
        extra={"collection_id": str(merged.id), "rows": copied, "account_id": str(context.current_account_id)},
    )
    return merged, copied, skipped
