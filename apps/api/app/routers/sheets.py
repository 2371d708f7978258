from __future__ import annotations

import uuid

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ..db import get_db
from ..schemas import (
    SheetExportRequest,
    SheetExportResponse,
    SheetFetchRequest,
    SheetFetchResponse,
    SheetImportRequest,
    SheetImportResponse,
    SheetTabResponse,
    SheetValidateRequest,
    SheetValidateResponse,
)
from ..services.audit import write_audit_log
from ..services.collection_resolver import find_master_for
from ..services.connectors import ConnectorError
from ..services.sheet_sync import export_collection, import_rows, sync_now, trigger_realtime_sync, wants_realtime_sync
from ..services.sheets_client import SheetsClient, get_sheets_client, normalize_cells, row_window_range
from ..tenancy import RequestContext, collection_for_context, get_request_context

router = APIRouter(prefix="/sheets", tags=["sheets"])

MAX_SHEET_ROW = 100000


def _upstream_error(exc: ConnectorError) -> HTTPException:
    if exc.category == "validation":
        return HTTPException(status_code=exc.status_code or status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={"category": exc.category, "message": str(exc)},
    )


@router.post("/validate", response_model=SheetValidateResponse)
def validate_sheet(
    payload: SheetValidateRequest,
    _: RequestContext = Depends(get_request_context),
    sheets_client: SheetsClient = Depends(get_sheets_client),
) -> SheetValidateResponse:
    result = sheets_client.validate_access(payload.sheet_url)
    return SheetValidateResponse(
        valid=result.valid,
        title=result.title,
        tabs=[SheetTabResponse(name=tab.name, row_count=tab.row_count) for tab in result.tabs],
        error=result.error,
    )


@router.post("/fetch", response_model=SheetFetchResponse)
def fetch_sheet(
    payload: SheetFetchRequest,
    _: RequestContext = Depends(get_request_context),
    sheets_client: SheetsClient = Depends(get_sheets_client),
) -> SheetFetchResponse:
    try:
        data = sheets_client.fetch_range(payload.sheet_url, payload.sheet_name, payload.cell_range)
    except ConnectorError as exc:
        raise _upstream_error(exc) from exc
    return SheetFetchResponse(
        spreadsheet_id=data.spreadsheet_id,
        sheet_name=data.sheet_name,
        headers=data.headers,
        rows=data.rows,
        total_rows=data.total_rows,
    )


def _fetch_import_source(sheets_client: SheetsClient, payload: SheetImportRequest) -> tuple[list[str], list[list[str]]]:
    sheet_url = payload.sheet_url or ""
    if payload.start_row is None and payload.end_row is None:
        data = sheets_client.fetch_range(sheet_url, payload.sheet_name, row_window_range(1, MAX_SHEET_ROW))
        return data.headers, data.rows
    header = sheets_client.fetch_range(sheet_url, payload.sheet_name, row_window_range(1, 1))
    window = sheets_client.fetch_range(
        sheet_url,
        payload.sheet_name,
        row_window_range(payload.start_row or 2, payload.end_row or MAX_SHEET_ROW),
    )
    return header.headers, window.rows


@router.post("/import", response_model=SheetImportResponse)
def import_sheet(
    payload: SheetImportRequest,
    background_tasks: BackgroundTasks,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    sheets_client: SheetsClient = Depends(get_sheets_client),
) -> SheetImportResponse:
    collection = collection_for_context(db, context, payload.collection_id)
    if payload.sheet_url is not None:
        try:
            headers, rows = _fetch_import_source(sheets_client, payload)
        except ConnectorError as exc:
            raise _upstream_error(exc) from exc
    else:
        headers = [str(header).strip() for header in payload.headers or []]
        rows = normalize_cells(payload.rows or [])

    master = find_master_for(db, collection)
    result = import_rows(db, context, collection, payload.column_mapping, headers, rows, overwrite=payload.overwrite)

    for target in (collection, master if result.mirrored else None):
        if target is not None and wants_realtime_sync(target):
            background_tasks.add_task(trigger_realtime_sync, target.id)

    return SheetImportResponse(collection_id=collection.id, **result.as_dict())


@router.post("/export", response_model=SheetExportResponse)
def export_sheet(
    payload: SheetExportRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    sheets_client: SheetsClient = Depends(get_sheets_client),
) -> SheetExportResponse:
    collection = collection_for_context(db, context, payload.collection_id)
    try:
        result = export_collection(
            db=db,
            collection=collection,
            sheets_client=sheets_client,
            sheet_url=payload.sheet_url,
            sheet_name=payload.sheet_name,
            mapping=payload.column_mapping,
            realtime_sync=payload.realtime_sync,
        )
    except ConnectorError as exc:
        db.rollback()
        raise _upstream_error(exc) from exc
    write_audit_log(
        db,
        context,
        "sheets.exported",
        "collection",
        str(collection.id),
        {"rows": result.rows, "realtime_sync": payload.realtime_sync},
    )
    db.commit()
    return SheetExportResponse(collection_id=result.collection_id, rows=result.rows, columns=result.columns)


@router.post("/{collection_id}/sync-now", response_model=SheetExportResponse)
def sync_collection_now(
    collection_id: uuid.UUID,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    sheets_client: SheetsClient = Depends(get_sheets_client),
) -> SheetExportResponse:
    collection = collection_for_context(db, context, collection_id)
    try:
        result = sync_now(db, collection.id, sheets_client, force=True)
    except ConnectorError as exc:
        db.rollback()
        raise _upstream_error(exc) from exc
    if result is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="collection is not linked to a sheet")
    return SheetExportResponse(collection_id=result.collection_id, rows=result.rows, columns=result.columns)
