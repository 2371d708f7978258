from __future__ import annotations

import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import META_LEAD_ID_KEY, Collection, Record

UNKNOWN = "Unknown"
HISTOGRAM_DAYS = 30
RECENT_LIMIT = 100


def _utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


@dataclass
class LeadAnalytics:
    total: int = 0
    today: int = 0
    this_week: int = 0
    by_page: Counter[str] = field(default_factory=Counter)
    by_form: Counter[str] = field(default_factory=Counter)
    by_campaign: Counter[str] = field(default_factory=Counter)
    by_ad_set: Counter[str] = field(default_factory=Counter)
    by_ad: Counter[str] = field(default_factory=Counter)
    by_status: Counter[str] = field(default_factory=Counter)
    by_date: dict[str, int] = field(default_factory=dict)
    recent: list[dict[str, Any]] = field(default_factory=list)


def unique_leads(records: list[Record]) -> list[Record]:
    seen: set[str] = set()
    unique: list[Record] = []
    for record in sorted(records, key=lambda item: _utc(item.created_at), reverse=True):
        key = record.external_lead_id or (record.extra_fields or {}).get(META_LEAD_ID_KEY) or str(record.id)
        if key in seen:
            continue
        seen.add(key)
        unique.append(record)
    return unique


def compute_lead_analytics(db: Session, account_id: uuid.UUID, now: datetime | None = None) -> LeadAnalytics:
    current = _utc(now or datetime.now(UTC))
    start_of_day = current.replace(hour=0, minute=0, second=0, microsecond=0)
    # Weeks start on Sunday.
    start_of_week = start_of_day - timedelta(days=(start_of_day.weekday() + 1) % 7)
    histogram_start = start_of_day - timedelta(days=HISTOGRAM_DAYS - 1)

    records = db.scalars(
        select(Record)
        .join(Collection, Collection.id == Record.collection_id)
        .where(
            Collection.account_id == account_id,
            Collection.is_external_sourced.is_(True),
            Record.deleted_at.is_(None),
        )
    ).all()

    stats = LeadAnalytics()
    histogram = {
        (histogram_start + timedelta(days=offset)).date().isoformat(): 0 for offset in range(HISTOGRAM_DAYS)
    }
    leads = unique_leads(list(records))
    for record in leads:
        extras = record.extra_fields or {}
        created_at = _utc(record.created_at)
        stats.total += 1
        if created_at >= start_of_day:
            stats.today += 1
        if created_at >= start_of_week:
            stats.this_week += 1
        stats.by_page[extras.get("meta_page") or UNKNOWN] += 1
        stats.by_form[extras.get("meta_form") or UNKNOWN] += 1
        stats.by_campaign[extras.get("meta_campaign") or UNKNOWN] += 1
        stats.by_ad_set[extras.get("meta_ad_set") or UNKNOWN] += 1
        stats.by_ad[extras.get("meta_ad") or UNKNOWN] += 1
        stats.by_status[record.status.value] += 1
        day = created_at.date().isoformat()
        if day in histogram:
            histogram[day] += 1

    stats.by_date = histogram
    stats.recent = [
        {
            "record_id": str(record.id),
            "collection_id": str(record.collection_id),
            "display_name": record.display_name,
            "status": record.status.value,
            "page": (record.extra_fields or {}).get("meta_page") or UNKNOWN,
            "form": (record.extra_fields or {}).get("meta_form") or UNKNOWN,
            "created_at": _utc(record.created_at).isoformat(),
        }
        for record in leads[:RECENT_LIMIT]
    ]
    return stats
