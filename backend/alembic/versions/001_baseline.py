"""Baseline: connections, field mappings, outbound queue, ticket links, sync history.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON = sa.JSON().with_variant(JSONB(), "postgresql")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "itsm_connections",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(100), nullable=False),
        sa.Column("platform", sa.String(20), nullable=False),
        sa.Column("instance_url", sa.String(500), nullable=False),
        sa.Column("credential_ref", sa.Text(), nullable=True),
        sa.Column("sync_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("auto_assignment_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(20), nullable=False, server_default="disconnected"),
        sa.Column("group_sync", JSON, nullable=False),
        sa.Column("options", JSON, nullable=False),
        sa.Column("last_tested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("organization_id", "platform", name="uq_itsm_connection_org_platform"),
    )
    op.create_index("ix_itsm_connections_organization_id", "itsm_connections", ["organization_id"])
    op.create_index("ix_itsm_connections_created_at", "itsm_connections", ["created_at"])

    op.create_table(
        "itsm_field_mappings",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(100), nullable=False),
        sa.Column("platform", sa.String(20), nullable=False),
        sa.Column("internal_field", sa.String(200), nullable=False),
        sa.Column("external_field", sa.String(200), nullable=False),
        sa.Column("field_type", sa.String(20), nullable=False, server_default="string"),
        sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("transform_rule", JSON, nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "organization_id", "platform", "internal_field", name="uq_itsm_field_mapping"
        ),
    )
    op.create_index("ix_itsm_field_mappings_organization_id", "itsm_field_mappings", ["organization_id"])
    op.create_index("ix_itsm_field_mappings_created_at", "itsm_field_mappings", ["created_at"])

    op.create_table(
        "itsm_sync_queue",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(100), nullable=False),
        sa.Column("platform", sa.String(20), nullable=False),
        sa.Column("action", sa.String(20), nullable=False),
        sa.Column("ticket_id", sa.String(100), nullable=False),
        sa.Column("external_id", sa.String(100), nullable=True),
        sa.Column("payload", JSON, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_kind", sa.String(30), nullable=True),
        sa.Column("trace_id", sa.String(64), nullable=False),
        sa.Column("product_group", sa.String(50), nullable=True),
        sa.Column("requested_by", sa.String(320), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_itsm_sync_queue_organization_id", "itsm_sync_queue", ["organization_id"])
    op.create_index("ix_itsm_sync_queue_created_at", "itsm_sync_queue", ["created_at"])
    op.create_index("ix_itsm_sync_queue_status_retry", "itsm_sync_queue", ["status", "next_retry_at"])
    op.create_index("ix_itsm_sync_queue_key", "itsm_sync_queue", ["platform", "ticket_id", "status"])

    op.create_table(
        "itsm_ticket_links",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(100), nullable=False),
        sa.Column("platform", sa.String(20), nullable=False),
        sa.Column("ticket_id", sa.String(100), nullable=False),
        sa.Column("external_id", sa.String(100), nullable=True),
        sa.Column("status", sa.String(30), nullable=True),
        sa.Column("priority", sa.String(30), nullable=True),
        sa.Column("last_comment", sa.Text(), nullable=True),
        sa.Column("last_comment_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("category", sa.String(100), nullable=True),
        sa.Column("product_group", sa.String(50), nullable=True),
        sa.Column("assignee", sa.String(200), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "organization_id", "platform", "ticket_id", name="uq_itsm_ticket_link_ticket"
        ),
    )
    op.create_index("ix_itsm_ticket_links_organization_id", "itsm_ticket_links", ["organization_id"])
    op.create_index("ix_itsm_ticket_links_created_at", "itsm_ticket_links", ["created_at"])
    op.create_index(
        "ix_itsm_ticket_links_external",
        "itsm_ticket_links",
        ["organization_id", "platform", "external_id"],
    )

    op.create_table(
        "itsm_sync_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(100), nullable=False),
        sa.Column("platform", sa.String(20), nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("ticket_id", sa.String(100), nullable=True),
        sa.Column("external_id", sa.String(100), nullable=True),
        sa.Column("product_group", sa.String(50), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("queue_item_id", sa.Uuid(), nullable=True),
        sa.Column("trace_id", sa.String(64), nullable=True),
        sa.Column("details", JSON, nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_itsm_sync_events_organization_id", "itsm_sync_events", ["organization_id"])
    op.create_index("ix_itsm_sync_events_created_at", "itsm_sync_events", ["created_at"])
    op.create_index("ix_itsm_sync_events_queue_item_id", "itsm_sync_events", ["queue_item_id"])
    op.create_index(
        "ix_itsm_sync_events_lookup",
        "itsm_sync_events",
        ["organization_id", "platform", "external_id"],
    )

    op.create_table(
        "itsm_audit_logs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(100), nullable=False),
        sa.Column("platform", sa.String(20), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("trace_id", sa.String(64), nullable=False),
        sa.Column("external_id", sa.String(100), nullable=True),
        sa.Column("ticket_id", sa.String(100), nullable=True),
        sa.Column("user_email", sa.String(320), nullable=False),
        sa.Column("outcome", sa.String(20), nullable=False),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("product_group", sa.String(50), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_itsm_audit_logs_organization_id", "itsm_audit_logs", ["organization_id"])
    op.create_index("ix_itsm_audit_logs_created_at", "itsm_audit_logs", ["created_at"])
    op.create_index("ix_itsm_audit_logs_trace_id", "itsm_audit_logs", ["trace_id"])
    op.create_index(
        "ix_itsm_audit_logs_lookup",
        "itsm_audit_logs",
        ["organization_id", "platform", "external_id"],
    )

    op.create_table(
        "itsm_conflict_policies",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(100), nullable=False, unique=True),
        sa.Column("comments_last_writer_wins", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("status_forward_only", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("priority_max_policy", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_itsm_conflict_policies_created_at", "itsm_conflict_policies", ["created_at"])


def downgrade() -> None:
    op.drop_table("itsm_conflict_policies")
    op.drop_table("itsm_audit_logs")
    op.drop_table("itsm_sync_events")
    op.drop_table("itsm_ticket_links")
    op.drop_table("itsm_sync_queue")
    op.drop_table("itsm_field_mappings")
    op.drop_table("itsm_connections")
