"""leadsync core schema

Revision ID: 0001_leadsync_core
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "0001_leadsync_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

role_enum = sa.Enum("ADMIN", "MEMBER", name="role_enum")
record_status_enum = sa.Enum(
    "NEW", "CALLED", "INTERESTED", "NOT_INTERESTED", "FOLLOW_UP", "VOICEMAIL", name="record_status_enum"
)
call_request_status_enum = sa.Enum(
    "PENDING", "ACCEPTED", "REJECTED", "COMPLETED", "EXPIRED", name="call_request_status_enum"
)
call_type_enum = sa.Enum("INCOMING", "OUTGOING", "MISSED", "REJECTED", "BLOCKED", "UNKNOWN", name="call_type_enum")
call_log_status_enum = sa.Enum("PENDING", "COMPLETED", name="call_log_status_enum")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )

    op.create_table(
        "accounts",
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("admin_user_id", sa.Uuid(), nullable=True),
        sa.Column("meta_verify_token", sa.String(length=255), nullable=True),
        sa.Column("meta_page_id", sa.String(length=64), nullable=True),
        sa.Column("meta_page_access_token_enc", sa.Text(), nullable=True),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["admin_user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_accounts_meta_page_id", "accounts", ["meta_page_id"], unique=False)
    op.create_index("ix_accounts_meta_verify_token", "accounts", ["meta_verify_token"], unique=False)

    op.create_table(
        "memberships",
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("role", role_enum, nullable=False),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "user_id", name="uq_memberships_account_user"),
    )
    op.create_index("ix_memberships_account_id", "memberships", ["account_id"], unique=False)

    op.create_table(
        "meta_pages",
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("page_id", sa.String(length=64), nullable=False),
        sa.Column("page_name", sa.String(length=255), nullable=False),
        sa.Column("page_access_token_enc", sa.Text(), nullable=False),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "page_id", name="uq_meta_pages_account_page"),
    )
    op.create_index("ix_meta_pages_page_id", "meta_pages", ["page_id"], unique=False)

    op.create_table(
        "collections",
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("name", sa.String(length=512), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("is_external_sourced", sa.Boolean(), nullable=False),
        sa.Column("is_aggregate", sa.Boolean(), nullable=False),
        sa.Column("page_name", sa.String(length=255), nullable=False),
        sa.Column("form_name", sa.String(length=255), nullable=False),
        sa.Column("campaign_name", sa.String(length=255), nullable=False),
        sa.Column("ad_set_name", sa.String(length=255), nullable=False),
        sa.Column("ad_name", sa.String(length=255), nullable=False),
        sa.Column("routing_key", sa.String(length=1300), nullable=True),
        sa.Column("dynamic_field_names", sa.JSON(), nullable=False),
        sa.Column("linked_sheet_url", sa.String(length=1024), nullable=False),
        sa.Column("linked_sheet_name", sa.String(length=255), nullable=False),
        sa.Column("column_mapping", sa.JSON(), nullable=True),
        sa.Column("realtime_sync", sa.Boolean(), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "routing_key", name="uq_collections_account_routing_key"),
    )
    op.create_index("ix_collections_account_id", "collections", ["account_id"], unique=False)
    op.create_index("ix_collections_page_form", "collections", ["account_id", "page_name", "form_name"], unique=False)

    op.create_table(
        "records",
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("collection_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("organization_name", sa.String(length=255), nullable=False),
        sa.Column("phone_number", sa.String(length=64), nullable=False),
        sa.Column("note", sa.Text(), nullable=False),
        sa.Column("status", record_status_enum, nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("next_call_date", sa.String(length=10), nullable=False),
        sa.Column("last_call_date", sa.String(length=10), nullable=False),
        sa.Column("external_lead_id", sa.String(length=64), nullable=True),
        sa.Column("extra_fields", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["collection_id"], ["collections.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("collection_id", "external_lead_id", name="uq_records_collection_external_lead"),
    )
    op.create_index("ix_records_collection_position", "records", ["collection_id", "position"], unique=False)
    op.create_index("ix_records_account_external_lead", "records", ["account_id", "external_lead_id"], unique=False)
    op.create_index("ix_records_collection_phone", "records", ["collection_id", "phone_number"], unique=False)

    op.create_table(
        "call_requests",
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("record_id", sa.Uuid(), nullable=False),
        sa.Column("phone_number", sa.String(length=64), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("status", call_request_status_enum, nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["record_id"], ["records.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_call_requests_user_status", "call_requests", ["user_id", "status", "requested_at"], unique=False)
    op.create_index("ix_call_requests_expires_at", "call_requests", ["expires_at"], unique=False)

    op.create_table(
        "call_logs",
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("record_id", sa.Uuid(), nullable=True),
        sa.Column("phone_number", sa.String(length=64), nullable=False),
        sa.Column("call_type", call_type_enum, nullable=False),
        sa.Column("duration_seconds", sa.Integer(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("note", sa.Text(), nullable=False),
        sa.Column("synced_from_mobile", sa.Boolean(), nullable=False),
        sa.Column("status", call_log_status_enum, nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["record_id"], ["records.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_call_logs_record_ts", "call_logs", ["record_id", "timestamp"], unique=False)
    op.create_index("ix_call_logs_user_phone", "call_logs", ["user_id", "phone_number", "timestamp"], unique=False)

    op.create_table(
        "audit_logs",
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("actor_user_id", sa.Uuid(), nullable=True),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("target_type", sa.String(length=100), nullable=False),
        sa.Column("target_id", sa.String(length=255), nullable=False),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_account_id", "audit_logs", ["account_id"], unique=False)
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_created_at", table_name="audit_logs")
    op.drop_index("ix_audit_logs_account_id", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_call_logs_user_phone", table_name="call_logs")
    op.drop_index("ix_call_logs_record_ts", table_name="call_logs")
    op.drop_table("call_logs")
    op.drop_index("ix_call_requests_expires_at", table_name="call_requests")
    op.drop_index("ix_call_requests_user_status", table_name="call_requests")
    op.drop_table("call_requests")
    op.drop_index("ix_records_collection_phone", table_name="records")
    op.drop_index("ix_records_account_external_lead", table_name="records")
    op.drop_index("ix_records_collection_position", table_name="records")
    op.drop_table("records")
    op.drop_index("ix_collections_page_form", table_name="collections")
    op.drop_index("ix_collections_account_id", table_name="collections")
    op.drop_table("collections")
    op.drop_index("ix_meta_pages_page_id", table_name="meta_pages")
    op.drop_table("meta_pages")
    op.drop_index("ix_memberships_account_id", table_name="memberships")
    op.drop_table("memberships")
    op.drop_index("ix_accounts_meta_verify_token", table_name="accounts")
    op.drop_index("ix_accounts_meta_page_id", table_name="accounts")
    op.drop_table("accounts")
    op.drop_table("users")
    bind = op.get_bind()
    for enum in (call_log_status_enum, call_type_enum, call_request_status_enum, record_status_enum, role_enum):
        enum.drop(bind, checkfirst=True)
