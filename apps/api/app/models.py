from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy import JSON as JsonType
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import Uuid

META_LEAD_ID_KEY = "meta_lead_id"
COPIED_MARKER_KEY = "is_copied"
SOURCE_COLLECTION_KEY = "source_collection_id"


class Base(DeclarativeBase):
    pass


class Role(str, enum.Enum):
    ADMIN = "admin"
    MEMBER = "member"


class RecordStatus(str, enum.Enum):
    NEW = "new"
    CALLED = "called"
    INTERESTED = "interested"
    NOT_INTERESTED = "not_interested"
    FOLLOW_UP = "follow_up"
    VOICEMAIL = "voicemail"


class CallRequestStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COMPLETED = "completed"
    EXPIRED = "expired"


class CallType(str, enum.Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"
    MISSED = "missed"
    REJECTED = "rejected"
    BLOCKED = "blocked"
    UNKNOWN = "unknown"


class CallLogStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class IdMixin:
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


class SoftDeleteMixin:
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Account(Base, IdMixin, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "accounts"
    __table_args__ = (
        Index("ix_accounts_meta_page_id", "meta_page_id"),
        Index("ix_accounts_meta_verify_token", "meta_verify_token"),
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    admin_user_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    meta_verify_token: Mapped[str | None] = mapped_column(String(255), nullable=True)
    meta_page_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    meta_page_access_token_enc: Mapped[str | None] = mapped_column(Text, nullable=True)


class User(Base, IdMixin, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("email", name="uq_users_email"),)

    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)


class Membership(Base, IdMixin, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "memberships"
    __table_args__ = (
        UniqueConstraint("account_id", "user_id", name="uq_memberships_account_user"),
        Index("ix_memberships_account_id", "account_id"),
    )

    account_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    role: Mapped[Role] = mapped_column(Enum(Role, name="role_enum"), nullable=False)


class MetaPage(Base, IdMixin, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "meta_pages"
    __table_args__ = (
        UniqueConstraint("account_id", "page_id", name="uq_meta_pages_account_page"),
        Index("ix_meta_pages_page_id", "page_id"),
    )

    account_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    page_id: Mapped[str] = mapped_column(String(64), nullable=False)
    page_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    page_access_token_enc: Mapped[str] = mapped_column(Text, nullable=False)


class Collection(Base, IdMixin, TimestampMixin):
    __tablename__ = "collections"
    __table_args__ = (
        UniqueConstraint("account_id", "routing_key", name="uq_collections_account_routing_key"),
        Index("ix_collections_account_id", "account_id"),
        Index("ix_collections_page_form", "account_id", "page_name", "form_name"),
    )

    account_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    user_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    is_external_sourced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_aggregate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    page_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    form_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    campaign_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    ad_set_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    ad_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    routing_key: Mapped[str | None] = mapped_column(String(1300), nullable=True)
    dynamic_field_names: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=list)
    linked_sheet_url: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    linked_sheet_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    column_mapping: Mapped[dict[str, str] | None] = mapped_column(JsonType, nullable=True)
    realtime_sync: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Record(Base, IdMixin, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "records"
    __table_args__ = (
        UniqueConstraint("collection_id", "external_lead_id", name="uq_records_collection_external_lead"),
        Index("ix_records_collection_position", "collection_id", "position"),
        Index("ix_records_account_external_lead", "account_id", "external_lead_id"),
        Index("ix_records_collection_phone", "collection_id", "phone_number"),
    )

    account_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    collection_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("collections.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    organization_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    phone_number: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[RecordStatus] = mapped_column(
        Enum(RecordStatus, name="record_status_enum"), nullable=False, default=RecordStatus.NEW
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_call_date: Mapped[str] = mapped_column(String(10), nullable=False, default="")
    last_call_date: Mapped[str] = mapped_column(String(10), nullable=False, default="")
    external_lead_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    extra_fields: Mapped[dict[str, str]] = mapped_column(JsonType, nullable=False, default=dict)


class CallRequest(Base, IdMixin, TimestampMixin):
    __tablename__ = "call_requests"
    __table_args__ = (
        Index("ix_call_requests_user_status", "user_id", "status", "requested_at"),
        Index("ix_call_requests_expires_at", "expires_at"),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    record_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("records.id", ondelete="CASCADE"), nullable=False)
    phone_number: Mapped[str] = mapped_column(String(64), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[CallRequestStatus] = mapped_column(
        Enum(CallRequestStatus, name="call_request_status_enum"),
        nullable=False,
        default=CallRequestStatus.PENDING,
    )
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CallLog(Base, IdMixin, TimestampMixin):
    __tablename__ = "call_logs"
    __table_args__ = (
        Index("ix_call_logs_record_ts", "record_id", "timestamp"),
        Index("ix_call_logs_user_phone", "user_id", "phone_number", "timestamp"),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    record_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("records.id", ondelete="SET NULL"), nullable=True
    )
    phone_number: Mapped[str] = mapped_column(String(64), nullable=False)
    call_type: Mapped[CallType] = mapped_column(Enum(CallType, name="call_type_enum"), nullable=False)
    duration_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")
    synced_from_mobile: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[CallLogStatus] = mapped_column(
        Enum(CallLogStatus, name="call_log_status_enum"), nullable=False, default=CallLogStatus.COMPLETED
    )


class AuditLog(Base, IdMixin, TimestampMixin):
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_account_id", "account_id"),
        Index("ix_audit_logs_created_at", "created_at"),
    )

    account_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    actor_user_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    target_type: Mapped[str] = mapped_column(String(100), nullable=False)
    target_id: Mapped[str] = mapped_column(String(255), nullable=False)
    metadata_json: Mapped[dict[str, object]] = mapped_column(JsonType, nullable=False, default=dict)
