from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import Record


def lead_exists(
    db: Session,
    collection_id: uuid.UUID,
    external_lead_id: str,
    secondary_key: str | None = None,
) -> bool:
    match = db.scalar(
        select(Record.id)
        .where(Record.collection_id == collection_id, Record.external_lead_id == str(external_lead_id))
        .limit(1)
    )
    if match is not None:
        return True

    email = (secondary_key or "").strip().lower()
    if not email:
        return False
    extras = db.scalars(
        select(Record.extra_fields).where(Record.collection_id == collection_id, Record.deleted_at.is_(None))
    )
    for fields in extras:
        if not isinstance(fields, dict):
            continue
        candidate = str(fields.get("email") or "").strip().lower()
        if candidate and candidate == email:
            return True
    return False
