from __future__ import annotations

import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime

from fastapi import HTTPException, status
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from ..models import COPIED_MARKER_KEY, SOURCE_COLLECTION_KEY, Collection, Record, RecordStatus
from ..settings import settings
from ..tenancy import RequestContext
from .audit import write_audit_log
from .collection_resolver import find_master_for
from .connectors import ConnectorError
from .sheets_client import SheetsClient

logger = logging.getLogger("app.sheets.sync")

NO_IMPORT = "no-import"
NAME_PLACEHOLDER = "Unknown"
PHONE_PLACEHOLDER = "N/A"
ORGANIZATION_PLACEHOLDER = "N/A"

IMPORTABLE_FIELDS = (
    "display_name",
    "organization_name",
    "phone_number",
    "note",
    "next_call_date",
    "last_call_date",
)
FIELD_LABELS = {
    "display_name": "Customer Name",
    "organization_name": "Company Name",
    "phone_number": "Phone Number",
    "note": "Remark",
    "next_call_date": "Next Call Date",
    "last_call_date": "Last Call Date",
    "status": "Status",
}
STANDARD_EXPORT_FIELDS = ("display_name", "organization_name", "phone_number", "status", "note")
FALLBACK_EXPORT_COLUMNS = [("display_name", "Customer Name"), ("phone_number", "Phone Number")]

GENERIC_NAMES = {"Meta Lead"}
GENERIC_PHONES = {"N/A"}
GENERIC_ORGANIZATIONS = {"N/A", "Meta Ads"}
NAME_FALLBACK_KEYS = ("full_name", "name", "first_name", "Customer_Name", "customer_name", "customer name")
PHONE_FALLBACK_KEYS = ("phone_number", "phone", "mobile", "contact")
ORGANIZATION_FALLBACK_KEYS = ("company_name", "company")

RESCUE_NAME_HINTS = ("name", "customer")
RESCUE_PHONE_HINTS = ("phone", "mobile", "contact", "tel")


@dataclass
class ImportResult:
    received: int = 0
    imported: int = 0
    deleted: int = 0
    mirrored: int = 0
    rescued: int = 0
    skipped_reasons: Counter[str] = field(default_factory=Counter)

    @property
    def skipped(self) -> int:
        return sum(self.skipped_reasons.values())

    def as_dict(self) -> dict[str, object]:
        return {
            "received": self.received,
            "imported": self.imported,
            "skipped": self.skipped,
            "skipped_reasons": dict(self.skipped_reasons),
            "deleted": self.deleted,
            "mirrored": self.mirrored,
            "rescued": self.rescued,
        }


@dataclass
class ExportResult:
    collection_id: uuid.UUID
    rows: int
    columns: list[str]


def _is_skip(mapping_value: str | None) -> bool:
    return not mapping_value or mapping_value.strip() == "" or mapping_value.strip().lower() == NO_IMPORT


def header_index(headers: list[str], header: str) -> int | None:
    wanted = header.strip().lower()
    for index, candidate in enumerate(headers):
        if str(candidate).strip().lower() == wanted:
            return index
    return None


def cell_value(row: list[str], index: int | None) -> str:
    if index is None or index >= len(row):
        return ""
    value = row[index]
    return "" if value is None else str(value).strip()


def _lookup_ci(mapping: dict[str, str], key: str) -> tuple[bool, str | None]:
    lowered = key.lower()
    for candidate, value in mapping.items():
        if candidate.lower() == lowered:
            return True, value
    return False, None


def _dynamic_columns(
    headers: list[str],
    mapping: dict[str, str],
    dynamic_fields: list[str],
) -> list[tuple[str, int]]:
    consumed = {
        index
        for field_name in IMPORTABLE_FIELDS
        if not _is_skip(mapping.get(field_name))
        and (index := header_index(headers, str(mapping[field_name]))) is not None
    }
    columns: list[tuple[str, int]] = []
    for name in dynamic_fields:
        mapped, target = _lookup_ci(mapping, name)
        if mapped:
            if _is_skip(target):
                continue
            index = header_index(headers, str(target))
        else:
            index = header_index(headers, name)
            if index in consumed:
                index = None
        if index is not None:
            columns.append((name, index))
    return columns


def rescue_identity(extras: dict[str, str]) -> tuple[str, str]:
    name = ""
    phone = ""
    for key, value in extras.items():
        if not value:
            continue
        lowered = key.lower()
        is_phone_key = any(hint in lowered for hint in RESCUE_PHONE_HINTS)
        if not phone and is_phone_key:
            phone = value
        elif not name and not is_phone_key and any(hint in lowered for hint in RESCUE_NAME_HINTS):
            name = value
        if name and phone:
            break
    return name, phone


def build_row(
    row: list[str],
    headers: list[str],
    mapping: dict[str, str],
    dynamic_columns: list[tuple[str, int]],
) -> tuple[dict[str, str], dict[str, str], bool] | str:
    if not row or all(not str(cell or "").strip() for cell in row):
        return "empty_row"

    fields = {
        name: ("" if _is_skip(mapping.get(name)) else cell_value(row, header_index(headers, str(mapping[name]))))
        for name in IMPORTABLE_FIELDS
    }
    extras = {name: cell_value(row, index) for name, index in dynamic_columns}
    has_dynamic_data = any(extras.values())

    rescued = False
    if not fields["display_name"] and not fields["phone_number"]:
        if not has_dynamic_data:
            return "missing_name_and_phone"
        fields["display_name"], fields["phone_number"] = rescue_identity(extras)
        rescued = True

    fields["display_name"] = fields["display_name"] or NAME_PLACEHOLDER
    fields["phone_number"] = fields["phone_number"] or PHONE_PLACEHOLDER
    fields["organization_name"] = fields["organization_name"] or ORGANIZATION_PLACEHOLDER
    return fields, {key: value for key, value in extras.items() if value}, rescued


def max_position(db: Session, collection_id: uuid.UUID) -> int:
    value = db.scalar(
        select(func.max(Record.position)).where(Record.collection_id == collection_id, Record.deleted_at.is_(None))
    )
    return -1 if value is None else int(value)


def validate_import_mapping(collection: Collection, headers: list[str], mapping: dict[str, str]) -> None:
    if not headers:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="sheet has no header row")
    unknown = [key for key in mapping if key not in IMPORTABLE_FIELDS and key not in collection.dynamic_field_names]
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"unknown mapping fields: {', '.join(sorted(unknown))}",
        )
    identity_mapped = any(not _is_skip(mapping.get(name)) for name in ("display_name", "phone_number"))
    if not identity_mapped and not (collection.is_external_sourced and collection.dynamic_field_names):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="mapping must include display_name or phone_number",
        )


def import_rows(
    db: Session,
    context: RequestContext,
    collection: Collection,
    mapping: dict[str, str],
    headers: list[str],
    rows: list[list[str]],
    overwrite: bool = False,
) -> ImportResult:
    validate_import_mapping(collection, headers, mapping)
    result = ImportResult(received=len(rows))

    if overwrite:
        # Externally sourced leads survive an overwrite.
        deleted = db.execute(
            delete(Record)
            .where(Record.collection_id == collection.id, Record.external_lead_id.is_(None))
            .execution_options(synchronize_session=False)
        )
        result.deleted = int(deleted.rowcount or 0)

    dynamic_fields = list(collection.dynamic_field_names or []) if collection.is_external_sourced else []
    dynamic_columns = _dynamic_columns(headers, mapping, dynamic_fields)

    prepared: list[tuple[dict[str, str], dict[str, str]]] = []
    for row in rows:
        built = build_row(row, headers, mapping, dynamic_columns)
        if isinstance(built, str):
            result.skipped_reasons[built] += 1
            continue
        fields, extras, rescued = built
        result.rescued += int(rescued)
        prepared.append((fields, extras))

    next_position = max_position(db, collection.id) + 1
    _insert_batches(db, context, collection.id, prepared, next_position, extra_markers=None)
    result.imported = len(prepared)

    master = find_master_for(db, collection)
    if master is not None and prepared:
        _insert_batches(
            db,
            context,
            master.id,
            prepared,
            max_position(db, master.id) + 1,
            extra_markers={COPIED_MARKER_KEY: "true", SOURCE_COLLECTION_KEY: str(collection.id)},
        )
        result.mirrored = len(prepared)

    collection.updated_at = datetime.now(UTC)
    write_audit_log(db, context, "sheets.imported", "collection", str(collection.id), result.as_dict())
    db.commit()
    logger.info(
        "sheets.import.completed",
        extra={"collection_id": str(collection.id), "rows": result.imported, "outcome": result.as_dict()},
    )
    return result


def _insert_batches(
    db: Session,
    context: RequestContext,
    collection_id: uuid.UUID,
    prepared: list[tuple[dict[str, str], dict[str, str]]],
    start_position: int,
    extra_markers: dict[str, str] | None,
) -> None:
    batch_size = max(1, settings.import_batch_size)
    for offset in range(0, len(prepared), batch_size):
        chunk = prepared[offset : offset + batch_size]
        db.add_all(
            [
                Record(
                    account_id=context.current_account_id,
                    collection_id=collection_id,
                    user_id=context.current_user_id,
                    status=RecordStatus.NEW,
                    position=start_position + offset + index,
                    extra_fields={**extras, **(extra_markers or {})},
                    **fields,
                )
                for index, (fields, extras) in enumerate(chunk)
            ]
        )
        db.flush()


def _extra_ci(extras: dict[str, str], key: str) -> str:
    if key in extras:
        return str(extras[key] or "")
    _, value = _lookup_ci(extras, key)
    return str(value or "")


def _first_extra(extras: dict[str, str], keys: tuple[str, ...]) -> str:
    for key in keys:
        value = _extra_ci(extras, key)
        if value:
            return value
    return ""


def _any_name_extra(extras: dict[str, str]) -> str:
    for key, value in extras.items():
        lowered = key.lower()
        if "name" not in lowered or lowered.startswith("meta_") or "company" in lowered:
            continue
        if value:
            return str(value)
    return ""


def resolve_value(record: Record, field_name: str) -> str:
    extras = record.extra_fields if isinstance(record.extra_fields, dict) else {}

    if field_name == "display_name":
        value = record.display_name or ""
        if not value or value in GENERIC_NAMES:
            value = _first_extra(extras, NAME_FALLBACK_KEYS) or _any_name_extra(extras) or value
        return value

    if field_name == "phone_number":
        value = record.phone_number or ""
        if not value or value in GENERIC_PHONES or len(value) < 5:
            value = _first_extra(extras, PHONE_FALLBACK_KEYS) or value
        return value

    if field_name == "organization_name":
        value = record.organization_name or ""
        if not value or value in GENERIC_ORGANIZATIONS:
            value = _first_extra(extras, ORGANIZATION_FALLBACK_KEYS) or value
        return value

    if field_name == "status":
        return record.status.value if isinstance(record.status, RecordStatus) else str(record.status or "")

    if field_name in IMPORTABLE_FIELDS:
        return str(getattr(record, field_name) or "")

    return _extra_ci(extras, field_name)


def export_columns(collection: Collection, mapping: dict[str, str] | None) -> list[tuple[str, str]]:
    if mapping:
        columns = [(name, header or FIELD_LABELS.get(name, name)) for name, header in mapping.items() if header != NO_IMPORT]
        if columns:
            return columns
    if collection.dynamic_field_names:
        columns = [(name, FIELD_LABELS[name]) for name in STANDARD_EXPORT_FIELDS]
        taken = {header.lower() for _, header in columns} | set(STANDARD_EXPORT_FIELDS)
        columns.extend((name, name) for name in collection.dynamic_field_names if name.lower() not in taken)
        return columns
    return list(FALLBACK_EXPORT_COLUMNS)


def active_records(db: Session, collection_id: uuid.UUID) -> list[Record]:
    return list(
        db.scalars(
            select(Record)
            .where(Record.collection_id == collection_id, Record.deleted_at.is_(None))
            .order_by(Record.position, Record.created_at)
        ).all()
    )


def build_export_matrix(db: Session, collection: Collection, mapping: dict[str, str] | None) -> tuple[list[str], list[list[str]]]:
    columns = export_columns(collection, mapping)
    headers = [header for _, header in columns]
    rows = [[resolve_value(record, name) for name, _ in columns] for record in active_records(db, collection.id)]
    return headers, rows


def export_collection(
    db: Session,
    collection: Collection,
    sheets_client: SheetsClient,
    sheet_url: str,
    sheet_name: str | None,
    mapping: dict[str, str] | None,
    realtime_sync: bool,
) -> ExportResult:
    headers, rows = build_export_matrix(db, collection, mapping)
    sheets_client.write_range(sheet_url, [headers, *rows], sheet_name)

    collection.linked_sheet_url = sheet_url
    collection.linked_sheet_name = sheet_name or ""
    collection.column_mapping = dict(mapping) if mapping else None
    collection.realtime_sync = realtime_sync
    collection.last_synced_at = datetime.now(UTC)
    db.commit()
    logger.info("sheets.export.completed", extra={"collection_id": str(collection.id), "rows": len(rows)})
    return ExportResult(collection_id=collection.id, rows=len(rows), columns=headers)


def sync_now(
    db: Session,
    collection_id: uuid.UUID,
    sheets_client: SheetsClient,
    force: bool = True,
) -> ExportResult | None:
    collection = db.get(Collection, collection_id)
    if collection is None:
        if force:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="collection not found")
        return None
    if not collection.linked_sheet_url:
        if force:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="collection is not linked to a sheet")
        return None
    if not force and not collection.realtime_sync:
        return None
    return export_collection(
        db=db,
        collection=collection,
        sheets_client=sheets_client,
        sheet_url=collection.linked_sheet_url,
        sheet_name=collection.linked_sheet_name or None,
        mapping=collection.column_mapping,
        realtime_sync=collection.realtime_sync,
    )


def run_background_sync(db: Session, collection_id: uuid.UUID, sheets_client: SheetsClient) -> str:
    try:
        result = sync_now(db, collection_id, sheets_client, force=False)
    except ConnectorError as exc:
        db.rollback()
        logger.warning(
            "sheets.realtime_sync.failed",
            extra={"collection_id": str(collection_id), "error": str(exc), "status": exc.category},
        )
        return "failed"
    return "skipped" if result is None else "synced"


def trigger_realtime_sync(collection_id: uuid.UUID) -> None:
    try:
        from leadsync_worker.main import app as worker_app  # type: ignore

        worker_app.send_task("worker.sheets.realtime_sync", args=[str(collection_id)])
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "sheets.realtime_sync.enqueue_failed",
            extra={"collection_id": str(collection_id), "error": str(exc)},
        )


def wants_realtime_sync(collection: Collection) -> bool:
    return bool(collection.realtime_sync and collection.linked_sheet_url)
