from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, Field, field_validator, model_validator

from .models import CallLogStatus, CallRequestStatus, CallType, RecordStatus


class CollectionCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=512)
    description: str = Field(default="", max_length=5000)


class CollectionResponse(BaseModel):
    id: uuid.UUID
    account_id: uuid.UUID
    user_id: uuid.UUID | None
    name: str
    description: str
    is_external_sourced: bool
    is_aggregate: bool
    page_name: str
    form_name: str
    campaign_name: str
    ad_set_name: str
    ad_name: str
    dynamic_field_names: list[str]
    linked_sheet_url: str
    linked_sheet_name: str
    column_mapping: dict[str, str] | None
    realtime_sync: bool
    last_synced_at: datetime | None
    record_count: int = 0
    created_at: datetime
    updated_at: datetime


class RecordCreateRequest(BaseModel):
    display_name: str = Field(default="", max_length=255)
    organization_name: str = Field(default="", max_length=255)
    phone_number: str = Field(default="", max_length=64)
    note: str = Field(default="", max_length=5000)
    status: RecordStatus = RecordStatus.NEW
    next_call_date: str = Field(default="", max_length=10)
    last_call_date: str = Field(default="", max_length=10)
    extra_fields: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def require_identity(self) -> "RecordCreateRequest":
        if not self.display_name.strip() and not self.phone_number.strip():
            raise ValueError("display_name or phone_number is required")
        return self


class RecordPatchRequest(BaseModel):
    display_name: str | None = Field(default=None, max_length=255)
    organization_name: str | None = Field(default=None, max_length=255)
    phone_number: str | None = Field(default=None, max_length=64)
    note: str | None = Field(default=None, max_length=5000)
    status: RecordStatus | None = None
    next_call_date: str | None = Field(default=None, max_length=10)
    last_call_date: str | None = Field(default=None, max_length=10)
    extra_fields: dict[str, str] | None = None


class RecordResponse(BaseModel):
    id: uuid.UUID
    account_id: uuid.UUID
    collection_id: uuid.UUID
    user_id: uuid.UUID | None
    display_name: str
    organization_name: str
    phone_number: str
    note: str
    status: RecordStatus
    position: int
    next_call_date: str
    last_call_date: str
    external_lead_id: str | None
    extra_fields: dict[str, str]
    created_at: datetime
    updated_at: datetime


class ReorderRequest(BaseModel):
    record_ids: list[uuid.UUID] = Field(min_length=1)


class ReorderResponse(BaseModel):
    collection_id: uuid.UUID
    updated: int


class MergeRequest(BaseModel):
    collection_ids: list[uuid.UUID] = Field(min_length=2)
    name: str | None = Field(default=None, max_length=512)


class MergeResponse(BaseModel):
    collection: CollectionResponse
    copied: int
    skipped: int


class CallRequestCreateRequest(BaseModel):
    record_id: uuid.UUID
    phone_number: str = Field(max_length=64)
    customer_name: str = Field(max_length=255)


class CallRequestRespondRequest(BaseModel):
    request_id: uuid.UUID
    action: str


class CallRequestCompleteRequest(BaseModel):
    request_id: uuid.UUID


class CallRequestResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    record_id: uuid.UUID
    phone_number: str
    customer_name: str
    status: CallRequestStatus
    requested_at: datetime
    expires_at: datetime
    accepted_at: datetime | None
    completed_at: datetime | None
    notification_sent: bool | None = None


class CallLogItem(BaseModel):
    phone_number: str = Field(min_length=1, max_length=64)
    call_type: CallType = CallType.UNKNOWN
    duration_seconds: int = Field(default=0, ge=0)
    timestamp: datetime
    note: str = Field(default="", max_length=5000)
    status: CallLogStatus = CallLogStatus.COMPLETED
    record_id: uuid.UUID | None = None

    @field_validator("call_type", "status", mode="before")
    @classmethod
    def lowercase_enums(cls, value: object) -> object:
        return value.strip().lower() if isinstance(value, str) else value


class CallLogSyncRequest(BaseModel):
    logs: list[CallLogItem] = Field(default_factory=list, max_length=1000)


class CallLogSyncResponse(BaseModel):
    received: int
    synced: int
    duplicates: int
    filtered: int


class CallLogResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    record_id: uuid.UUID | None
    phone_number: str
    call_type: CallType
    duration_seconds: int
    timestamp: datetime
    note: str
    synced_from_mobile: bool
    status: CallLogStatus


class MatchNumberResponse(BaseModel):
    phone_number: str
    matched: bool
    records: list[RecordResponse]


class SheetValidateRequest(BaseModel):
    sheet_url: str = Field(min_length=1, max_length=1024)


class SheetTabResponse(BaseModel):
    name: str
    row_count: int


class SheetValidateResponse(BaseModel):
    valid: bool
    title: str = ""
    tabs: list[SheetTabResponse] = Field(default_factory=list)
    error: str | None = None


class SheetFetchRequest(BaseModel):
    sheet_url: str = Field(min_length=1, max_length=1024)
    sheet_name: str | None = Field(default=None, max_length=255)
    cell_range: str = Field(default="A1:Z100", max_length=32)


class SheetFetchResponse(BaseModel):
    spreadsheet_id: str
    sheet_name: str
    headers: list[str]
    rows: list[list[str]]
    total_rows: int


class SheetImportRequest(BaseModel):
    collection_id: uuid.UUID
    column_mapping: dict[str, str] = Field(default_factory=dict)
    overwrite: bool = False
    headers: list[str] | None = None
    rows: list[list[str | int | float | None]] | None = None
    sheet_url: str | None = Field(default=None, max_length=1024)
    sheet_name: str | None = Field(default=None, max_length=255)
    start_row: int | None = Field(default=None, ge=2)
    end_row: int | None = Field(default=None, ge=2)

    @model_validator(mode="after")
    def require_source(self) -> "SheetImportRequest":
        inline = self.headers is not None and self.rows is not None
        ranged = self.sheet_url is not None
        if inline == ranged:
            raise ValueError("provide either headers and rows, or sheet_url")
        if self.start_row is not None and self.end_row is not None and self.end_row < self.start_row:
            raise ValueError("end_row must not be before start_row")
        return self


class SheetImportResponse(BaseModel):
    collection_id: uuid.UUID
    received: int
    imported: int
    skipped: int
    skipped_reasons: dict[str, int]
    deleted: int
    mirrored: int
    rescued: int


class SheetExportRequest(BaseModel):
    collection_id: uuid.UUID
    sheet_url: str = Field(min_length=1, max_length=1024)
    sheet_name: str | None = Field(default=None, max_length=255)
    column_mapping: dict[str, str] | None = None
    realtime_sync: bool = False


class SheetExportResponse(BaseModel):
    collection_id: uuid.UUID
    rows: int
    columns: list[str]


class MetaAccountStatus(BaseModel):
    account_id: uuid.UUID
    name: str
    has_verify_token: bool
    has_legacy_page: bool
    has_legacy_token: bool
    page_ids: list[str]
    pages_with_token: int


class MetaDebugConfigResponse(BaseModel):
    global_verify_token_configured: bool
    graph_base_url: str
    connector_mode: str
    accounts: list[MetaAccountStatus]


class MetaPageConnectRequest(BaseModel):
    page_id: str = Field(min_length=1, max_length=64)
    access_token: str = Field(min_length=1, max_length=4096)
    page_name: str = Field(default="", max_length=255)


class MetaPageResponse(BaseModel):
    page_id: str
    page_name: str
    has_token: bool


class MetaAccountSettingsRequest(BaseModel):
    verify_token: str | None = Field(default=None, max_length=255)
    legacy_page_id: str | None = Field(default=None, max_length=64)
    legacy_access_token: str | None = Field(default=None, max_length=4096)

    @model_validator(mode="after")
    def require_complete_legacy_pair(self) -> "MetaAccountSettingsRequest":
        if bool(self.legacy_page_id) != bool(self.legacy_access_token):
            raise ValueError("legacy_page_id and legacy_access_token must be set together")
        return self


class MetaAnalyticsResponse(BaseModel):
    total: int
    today: int
    this_week: int
    by_page: dict[str, int]
    by_form: dict[str, int]
    by_campaign: dict[str, int]
    by_ad_set: dict[str, int]
    by_ad: dict[str, int]
    by_status: dict[str, int]
    by_date: dict[str, int]
    recent: list[dict[str, object]]


class WebhookChangeValue(BaseModel):
    leadgen_id: str | int | None = None
    page_id: str | int | None = None
    form_id: str | int | None = None
    ad_id: str | int | None = None
    created_time: int | str | None = None


class WebhookChange(BaseModel):
    field: str = ""
    value: WebhookChangeValue = Field(default_factory=WebhookChangeValue)


class WebhookEntry(BaseModel):
    id: str | int | None = None
    time: int | None = None
    changes: list[WebhookChange] = Field(default_factory=list)


class WebhookPayload(BaseModel):
    object: str = ""
    entry: list[WebhookEntry] = Field(default_factory=list)
