"""Platform schema: object definitions, records, associations, pipelines, lists.

Revision ID: 001
Revises:
Create Date: 2026-10-17

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(updated: bool = True) -> list:
    cols = [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]
    if updated:
        cols.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))
        )
    return cols


def _jsonb(name: str, default: str = "'{}'::jsonb", nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        postgresql.JSONB,
        nullable=nullable,
        server_default=None if nullable else sa.text(default),
    )


def upgrade() -> None:
    op.execute("CREATE SCHEMA IF NOT EXISTS platform")

    # ─── Object model ────────────────────────────────────────────────────────

    op.create_table(
        "object_definitions",
        sa.Column("id", sa.Integer, sa.Identity(), primary_key=True),
        sa.Column("object_type", sa.Text, nullable=False),
        sa.Column("object_type_id", sa.Text, nullable=False),
        sa.Column("label", sa.Text, nullable=False),
        sa.Column("plural_label", sa.Text, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        _jsonb("properties"),
        sa.Column("primary_display_property", sa.Text, nullable=True),
        sa.Column("is_system_object", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("allow_custom_properties", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        *_timestamps(),
        sa.UniqueConstraint("object_type", name="uq_object_definitions_object_type"),
        sa.UniqueConstraint("object_type_id", name="uq_object_definitions_object_type_id"),
        schema="platform",
    )

    op.create_table(
        "organization_object_schemas",
        sa.Column("id", sa.Integer, sa.Identity(), primary_key=True),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("object_definition_id", sa.Integer, nullable=False),
        _jsonb("custom_properties"),
        _jsonb("hidden_properties", "'[]'::jsonb"),
        _jsonb("property_defaults"),
        sa.Column("schema_version", sa.Integer, nullable=False, server_default="1"),
        _jsonb("property_migrations", "'[]'::jsonb"),
        sa.Column("last_migration_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("organization_id", "object_definition_id", name="uq_org_object_schema"),
        sa.ForeignKeyConstraint(["object_definition_id"], ["platform.object_definitions.id"]),
        schema="platform",
    )

    op.create_table(
        "records",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        sa.Column("object_definition_id", sa.Integer, nullable=False),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        _jsonb("properties"),
        sa.Column("display_name", sa.Text, nullable=True),
        sa.Column("search_vector", sa.Text, nullable=True),
        sa.Column("external_id", sa.Text, nullable=True),
        sa.Column("is_archived", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("updated_by_id", postgresql.UUID(as_uuid=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["object_definition_id"], ["platform.object_definitions.id"]),
        schema="platform",
    )
    op.create_index(
        "ix_records_org_type_id", "records",
        ["organization_id", "object_definition_id", "id"], schema="platform",
    )
    op.create_index(
        "uq_records_external_id", "records",
        ["organization_id", "object_definition_id", "external_id"],
        unique=True, postgresql_where=sa.text("external_id IS NOT NULL"), schema="platform",
    )
    op.create_index(
        "ix_records_properties", "records", ["properties"],
        postgresql_using="gin", schema="platform",
    )

    # ─── Associations ────────────────────────────────────────────────────────

    op.create_table(
        "association_types",
        sa.Column("id", sa.Integer, sa.Identity(), primary_key=True),
        sa.Column("from_object_type_id", sa.Text, nullable=False),
        sa.Column("to_object_type_id", sa.Text, nullable=False),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("label", sa.Text, nullable=False),
        sa.Column("inverse_label", sa.Text, nullable=True),
        sa.Column("category", sa.Text, nullable=False, server_default="USER_DEFINED"),
        sa.Column("cardinality", sa.Text, nullable=False, server_default="many-to-many"),
        sa.Column("from_min", sa.Integer, nullable=False, server_default="0"),
        sa.Column("from_max", sa.Integer, nullable=True),
        sa.Column("to_min", sa.Integer, nullable=False, server_default="0"),
        sa.Column("to_max", sa.Integer, nullable=True),
        sa.Column("cascade_delete", sa.Text, nullable=False, server_default="none"),
        sa.Column("is_system_type", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default="true"),
        *_timestamps(updated=False),
        sa.UniqueConstraint(
            "from_object_type_id", "to_object_type_id", "name", name="uq_association_type_name"
        ),
        sa.CheckConstraint(
            "cardinality IN ('one-to-one', 'one-to-many', 'many-to-one', 'many-to-many')",
            name="ck_assoc_type_cardinality",
        ),
        sa.CheckConstraint(
            "cascade_delete IN ('none', 'from', 'to', 'both')", name="ck_assoc_type_cascade"
        ),
        sa.CheckConstraint("from_min >= 0 AND to_min >= 0", name="ck_assoc_type_min"),
        sa.CheckConstraint(
            "(from_max IS NULL OR from_max >= from_min) AND (to_max IS NULL OR to_max >= to_min)",
            name="ck_assoc_type_max",
        ),
        schema="platform",
    )

    op.create_table(
        "associations",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        sa.Column("association_type_id", sa.Integer, nullable=False),
        sa.Column("from_record_id", sa.BigInteger, nullable=False),
        sa.Column("to_record_id", sa.BigInteger, nullable=False),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        _jsonb("properties"),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by_id", postgresql.UUID(as_uuid=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "association_type_id", "from_record_id", "to_record_id", name="uq_association_edge"
        ),
        sa.ForeignKeyConstraint(["association_type_id"], ["platform.association_types.id"]),
        sa.ForeignKeyConstraint(["from_record_id"], ["platform.records.id"]),
        sa.ForeignKeyConstraint(["to_record_id"], ["platform.records.id"]),
        schema="platform",
    )
    op.create_index(
        "ix_associations_from", "associations",
        ["from_record_id", "association_type_id"], schema="platform",
    )
    op.create_index(
        "ix_associations_to", "associations",
        ["to_record_id", "association_type_id"], schema="platform",
    )

    op.create_table(
        "organization_association_labels",
        sa.Column("id", sa.Integer, sa.Identity(), primary_key=True),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("association_type_id", sa.Integer, nullable=False),
        sa.Column("custom_label", sa.Text, nullable=True),
        sa.Column("custom_inverse_label", sa.Text, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default="true"),
        *_timestamps(),
        sa.UniqueConstraint("organization_id", "association_type_id", name="uq_org_assoc_label"),
        sa.ForeignKeyConstraint(["association_type_id"], ["platform.association_types.id"]),
        schema="platform",
    )

    # ─── Pipelines ───────────────────────────────────────────────────────────

    op.create_table(
        "pipelines",
        sa.Column("id", sa.Integer, sa.Identity(), primary_key=True),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("object_definition_id", sa.Integer, nullable=False),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        _jsonb("stages", "'[]'::jsonb"),
        sa.Column("is_default", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("allow_skip_stages", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("record_count", sa.Integer, nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint(
            "organization_id", "object_definition_id", "name", name="uq_pipeline_name"
        ),
        sa.CheckConstraint("record_count >= 0", name="ck_pipeline_record_count"),
        sa.ForeignKeyConstraint(["object_definition_id"], ["platform.object_definitions.id"]),
        schema="platform",
    )

    op.create_table(
        "record_stages",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        sa.Column("record_id", sa.BigInteger, nullable=False),
        sa.Column("pipeline_id", sa.Integer, nullable=False),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("stage_id", sa.Text, nullable=False),
        sa.Column("stage_name", sa.Text, nullable=False),
        sa.Column("entered_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("time_in_stage", sa.Integer, nullable=False, server_default="0"),
        sa.Column("amount", sa.Numeric(15, 2), nullable=True),
        sa.Column("probability", sa.Numeric(5, 2), nullable=True),
        sa.Column("expected_close_date", sa.Date, nullable=True),
        sa.Column("stage_notes", sa.Text, nullable=True),
        sa.Column("updated_by_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("record_id", "pipeline_id", name="uq_record_stage"),
        sa.CheckConstraint(
            "probability IS NULL OR (probability >= 0 AND probability <= 100)",
            name="ck_record_stage_probability",
        ),
        sa.CheckConstraint("amount IS NULL OR amount >= 0", name="ck_record_stage_amount"),
        sa.ForeignKeyConstraint(["record_id"], ["platform.records.id"]),
        sa.ForeignKeyConstraint(["pipeline_id"], ["platform.pipelines.id"]),
        schema="platform",
    )
    op.create_index(
        "ix_record_stages_pipeline_stage", "record_stages",
        ["pipeline_id", "stage_id"], schema="platform",
    )

    op.create_table(
        "stage_history",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        sa.Column("record_id", sa.BigInteger, nullable=False),
        sa.Column("pipeline_id", sa.Integer, nullable=False),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("from_stage_id", sa.Text, nullable=True),
        sa.Column("from_stage_name", sa.Text, nullable=True),
        sa.Column("to_stage_id", sa.Text, nullable=False),
        sa.Column("to_stage_name", sa.Text, nullable=False),
        sa.Column("transitioned_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("time_in_previous_stage", sa.Integer, nullable=True),
        sa.Column("amount_at_transition", sa.Numeric(15, 2), nullable=True),
        sa.Column("probability_at_transition", sa.Numeric(5, 2), nullable=True),
        sa.Column("transition_notes", sa.Text, nullable=True),
        sa.Column("transitioned_by_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.ForeignKeyConstraint(["record_id"], ["platform.records.id"]),
        sa.ForeignKeyConstraint(["pipeline_id"], ["platform.pipelines.id"]),
        schema="platform",
    )
    op.create_index(
        "ix_stage_history_record_pipeline", "stage_history",
        ["record_id", "pipeline_id", "transitioned_at"], schema="platform",
    )

    op.create_table(
        "stage_automations",
        sa.Column("id", sa.Integer, sa.Identity(), primary_key=True),
        sa.Column("pipeline_id", sa.Integer, nullable=False),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("trigger_type", sa.Text, nullable=False),
        sa.Column("trigger_stage_id", sa.Text, nullable=False),
        _jsonb("trigger_conditions"),
        sa.Column("action_type", sa.Text, nullable=False),
        _jsonb("action_config"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("run_once", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("delay", sa.Integer, nullable=False, server_default="0"),
        sa.Column("execution_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_executed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=False),
        sa.CheckConstraint(
            "trigger_type IN ('enter_stage', 'exit_stage', 'time_in_stage')",
            name="ck_automation_trigger",
        ),
        sa.CheckConstraint(
            "action_type IN ('create_task', 'send_email', 'update_property', 'notify', 'webhook')",
            name="ck_automation_action",
        ),
        sa.ForeignKeyConstraint(["pipeline_id"], ["platform.pipelines.id"], ondelete="CASCADE"),
        schema="platform",
    )

    # ─── Lists & segments ────────────────────────────────────────────────────

    op.create_table(
        "lists",
        sa.Column("id", sa.Integer, sa.Identity(), primary_key=True),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("object_definition_id", sa.Integer, nullable=False),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("type", sa.Text, nullable=False, server_default="static"),
        _jsonb("filter_criteria", nullable=True),
        sa.Column("member_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_refreshed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("created_by_id", postgresql.UUID(as_uuid=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("type IN ('static', 'dynamic')", name="ck_list_type"),
        sa.CheckConstraint("member_count >= 0", name="ck_list_member_count"),
        sa.ForeignKeyConstraint(["object_definition_id"], ["platform.object_definitions.id"]),
        schema="platform",
    )

    op.create_table(
        "list_memberships",
        sa.Column("list_id", sa.Integer, primary_key=True),
        sa.Column("record_id", sa.BigInteger, primary_key=True),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("added_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("added_by_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("is_pinned", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("is_excluded", sa.Boolean, nullable=False, server_default="false"),
        sa.ForeignKeyConstraint(["list_id"], ["platform.lists.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["record_id"], ["platform.records.id"]),
        schema="platform",
    )
    op.create_index(
        "ix_list_memberships_record", "list_memberships", ["record_id"], schema="platform"
    )

    op.create_table(
        "segments",
        sa.Column("id", sa.Integer, sa.Identity(), primary_key=True),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("object_definition_id", sa.Integer, nullable=False),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        _jsonb("rules", "'[]'::jsonb"),
        sa.Column("total_members", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_calculated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default="true"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["object_definition_id"], ["platform.object_definitions.id"]),
        schema="platform",
    )


def downgrade() -> None:
    # Drop in reverse dependency order
    for table in (
        "segments",
        "list_memberships",
        "lists",
        "stage_automations",
        "stage_history",
        "record_stages",
        "pipelines",
        "organization_association_labels",
        "associations",
        "association_types",
        "records",
        "organization_object_schemas",
        "object_definitions",
    ):
        op.drop_table(table, schema="platform")
    op.execute("DROP SCHEMA IF EXISTS platform")
