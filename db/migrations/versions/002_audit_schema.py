"""Audit schema: partitioned audit_log, property_history, bulk_operation_log.

Revision ID: 002
Revises: 001
Create Date: 2026-10-17

"""
from datetime import datetime, timezone

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from db.repositories.audit import (
    create_default_partition_sql,
    create_partition_sql,
    months_to_ensure,
)

revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None

_ENTITY_TYPES = (
    "record", "association", "association_type", "association_label",
    "object_definition", "object_schema", "pipeline", "record_stage",
    "stage_automation", "list", "list_membership", "segment", "bulk_operation",
)
_ACTIONS = (
    "create", "update", "delete", "archive", "restore",
    "bulk_create", "bulk_update", "rollback",
)
_SOURCES = ("user", "api", "import", "sync", "automation", "system", "ai", "webhook")


def _in(column: str, values) -> str:
    return f"{column} IN (" + ", ".join(f"'{v}'" for v in values) + ")"


def upgrade() -> None:
    op.execute("CREATE SCHEMA IF NOT EXISTS audit")
    op.execute("CREATE SEQUENCE IF NOT EXISTS audit.audit_log_id_seq")

    # op.create_table cannot emit PARTITION BY, so the parent is plain DDL
    op.execute(
        f"""
        CREATE TABLE audit.audit_log (
            id BIGINT NOT NULL DEFAULT nextval('audit.audit_log_id_seq'),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            organization_id UUID NOT NULL,
            entity_type TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            object_type TEXT,
            action TEXT NOT NULL,
            changed_fields JSONB,
            previous_values JSONB,
            new_values JSONB,
            action_details JSONB,
            actor_id UUID,
            source TEXT NOT NULL DEFAULT 'api',
            request_id TEXT,
            PRIMARY KEY (id, created_at),
            CONSTRAINT ck_audit_entity_type CHECK ({_in("entity_type", _ENTITY_TYPES)}),
            CONSTRAINT ck_audit_action CHECK ({_in("action", _ACTIONS)}),
            CONSTRAINT ck_audit_source CHECK ({_in("source", _SOURCES)})
        ) PARTITION BY RANGE (created_at)
        """
    )
    op.execute(
        "ALTER SEQUENCE audit.audit_log_id_seq OWNED BY audit.audit_log.id"
    )
    # Indexes on the parent are inherited by every partition
    op.create_index(
        "ix_audit_log_org_created", "audit_log", ["organization_id", "created_at"], schema="audit"
    )
    op.create_index(
        "ix_audit_log_entity", "audit_log", ["entity_type", "entity_id"], schema="audit"
    )
    # Later months come from the ensure-partitions job; until it runs, rows
    # land in the default partition and are moved out when it does
    op.execute(create_default_partition_sql())
    for month in months_to_ensure(datetime.now(timezone.utc).date()):
        op.execute(create_partition_sql(month))

    op.create_table(
        "property_history",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("record_id", sa.BigInteger, nullable=False),
        sa.Column("object_type", sa.Text, nullable=False),
        sa.Column("property_name", sa.Text, nullable=False),
        sa.Column("previous_value", postgresql.JSONB, nullable=True),
        sa.Column("new_value", postgresql.JSONB, nullable=True),
        sa.Column("change_type", sa.Text, nullable=False, server_default="set"),
        sa.Column("changed_by_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("source", sa.Text, nullable=False, server_default="api"),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("change_type IN ('set', 'unset')", name="ck_property_history_change"),
        schema="audit",
    )
    op.create_index(
        "ix_property_history_record", "property_history",
        ["record_id", "property_name", "changed_at"], schema="audit",
    )

    op.create_table(
        "bulk_operation_log",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("operation_type", sa.Text, nullable=False),
        sa.Column("object_type", sa.Text, nullable=False),
        sa.Column("total_records", sa.Integer, nullable=False, server_default="0"),
        sa.Column("success_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failure_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("skipped_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("affected_ids", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("success_records", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("failure_records", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("rollback_data", postgresql.JSONB, nullable=True),
        sa.Column("is_reversible", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("was_rolled_back", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("rolled_back_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rolled_back_by_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("initiated_by_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("source", sa.Text, nullable=False, server_default="api"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer, nullable=True),
        sa.CheckConstraint(
            "operation_type IN ('bulk_create', 'bulk_update')", name="ck_bulk_operation_type"
        ),
        schema="audit",
    )
    op.create_index(
        "ix_bulk_operation_org_started", "bulk_operation_log",
        ["organization_id", "started_at"], schema="audit",
    )


def downgrade() -> None:
    op.drop_table("bulk_operation_log", schema="audit")
    op.drop_table("property_history", schema="audit")
    # Dropping the parent drops every partition
    op.execute("DROP TABLE IF EXISTS audit.audit_log")
    op.execute("DROP SEQUENCE IF EXISTS audit.audit_log_id_seq")
    op.execute("DROP SCHEMA IF EXISTS audit")
