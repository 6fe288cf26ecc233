"""SQLAlchemy 2.0 ORM models for the platform object model.

Covers 16 tables across 2 schemas:
  - platform: object_definitions, organization_object_schemas, records,
              association_types, associations, organization_association_labels,
              pipelines, record_stages, stage_history, stage_automations,
              lists, list_memberships, segments
  - audit: audit_log (range-partitioned by month), property_history,
           bulk_operation_log
"""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    UUID,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Identity,
    Index,
    Integer,
    Numeric,
    Sequence,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func


# ---------------------------------------------------------------------------
# Shared base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    # Fetch server-side defaults (created_at, onupdate updated_at) with
    # RETURNING so attributes are never expired after a flush under asyncio.
    __mapper_args__ = {"eager_defaults": True}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _in_check(column: str, values) -> str:
    return f"{column} IN (" + ", ".join(f"'{v}'" for v in values) + ")"


# ---------------------------------------------------------------------------
# Closed vocabularies used in CHECK constraints
# ---------------------------------------------------------------------------


class EntityKind(str, Enum):
    """Every kind of entity an audit entry may point at."""

    RECORD = "record"
    ASSOCIATION = "association"
    ASSOCIATION_TYPE = "association_type"
    ASSOCIATION_LABEL = "association_label"
    OBJECT_DEFINITION = "object_definition"
    OBJECT_SCHEMA = "object_schema"
    PIPELINE = "pipeline"
    RECORD_STAGE = "record_stage"
    STAGE_AUTOMATION = "stage_automation"
    LIST = "list"
    LIST_MEMBERSHIP = "list_membership"
    SEGMENT = "segment"
    BULK_OPERATION = "bulk_operation"


class AuditAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    ARCHIVE = "archive"
    RESTORE = "restore"
    BULK_CREATE = "bulk_create"
    BULK_UPDATE = "bulk_update"
    ROLLBACK = "rollback"


_CARDINALITIES = ("one-to-one", "one-to-many", "many-to-one", "many-to-many")
_CASCADES = ("none", "from", "to", "both")
_SOURCES = ("user", "api", "import", "sync", "automation", "system", "ai", "webhook")
_TRIGGERS = ("enter_stage", "exit_stage", "time_in_stage")
_ACTIONS = ("create_task", "send_email", "update_property", "notify", "webhook")


# ===========================================================================
# Schema: platform
# ===========================================================================


class ObjectDefinition(Base):
    """platform.object_definitions — a named object type and its base properties."""

    __tablename__ = "object_definitions"
    __table_args__ = {"schema": "platform"}

    id: Mapped[int] = mapped_column(Integer, Identity(), primary_key=True)
    object_type: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    object_type_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    label: Mapped[str] = mapped_column(Text, nullable=False)
    plural_label: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    properties: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, server_default=text("'{}'::jsonb")
    )
    primary_display_property: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_system_object: Mapped[bool] = mapped_column(Boolean, server_default="false", nullable=False)
    allow_custom_properties: Mapped[bool] = mapped_column(
        Boolean, server_default="true", nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, server_default="true", nullable=False)
    version: Mapped[int] = mapped_column(Integer, server_default="1", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class OrganizationObjectSchema(Base):
    """platform.organization_object_schemas — one overlay per (organization, type)."""

    __tablename__ = "organization_object_schemas"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "object_definition_id", name="uq_org_object_schema"
        ),
        {"schema": "platform"},
    )

    id: Mapped[int] = mapped_column(Integer, Identity(), primary_key=True)
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    object_definition_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("platform.object_definitions.id"), nullable=False
    )
    custom_properties: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, server_default=text("'{}'::jsonb")
    )
    hidden_properties: Mapped[list[str]] = mapped_column(
        JSONB, nullable=False, server_default=text("'[]'::jsonb")
    )
    property_defaults: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, server_default=text("'{}'::jsonb")
    )
    schema_version: Mapped[int] = mapped_column(Integer, server_default="1", nullable=False)
    property_migrations: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB, nullable=False, server_default=text("'[]'::jsonb")
    )
    last_migration_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    object_definition: Mapped["ObjectDefinition"] = relationship("ObjectDefinition")


class Record(Base):
    """platform.records — property-bag instance of an object type."""

    __tablename__ = "records"
    __table_args__ = (
        Index("ix_records_org_type_id", "organization_id", "object_definition_id", "id"),
        Index(
            "uq_records_external_id",
            "organization_id",
            "object_definition_id",
            "external_id",
            unique=True,
            postgresql_where=text("external_id IS NOT NULL"),
        ),
        Index("ix_records_properties", "properties", postgresql_using="gin"),
        {"schema": "platform"},
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    object_definition_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("platform.object_definitions.id"), nullable=False
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    properties: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, server_default=text("'{}'::jsonb")
    )
    display_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    search_vector: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    external_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_archived: Mapped[bool] = mapped_column(Boolean, server_default="false", nullable=False)
    archived_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    updated_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    object_definition: Mapped["ObjectDefinition"] = relationship("ObjectDefinition")


class AssociationType(Base):
    """platform.association_types — permitted relationship shape between two types."""

    __tablename__ = "association_types"
    __table_args__ = (
        UniqueConstraint(
            "from_object_type_id", "to_object_type_id", "name", name="uq_association_type_name"
        ),
        CheckConstraint(_in_check("cardinality", _CARDINALITIES), name="ck_assoc_type_cardinality"),
        CheckConstraint(_in_check("cascade_delete", _CASCADES), name="ck_assoc_type_cascade"),
        CheckConstraint("from_min >= 0 AND to_min >= 0", name="ck_assoc_type_min"),
        CheckConstraint(
            "(from_max IS NULL OR from_max >= from_min) AND (to_max IS NULL OR to_max >= to_min)",
            name="ck_assoc_type_max",
        ),
        {"schema": "platform"},
    )

    id: Mapped[int] = mapped_column(Integer, Identity(), primary_key=True)
    from_object_type_id: Mapped[str] = mapped_column(Text, nullable=False)
    to_object_type_id: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    label: Mapped[str] = mapped_column(Text, nullable=False)
    inverse_label: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(Text, server_default="USER_DEFINED", nullable=False)
    cardinality: Mapped[str] = mapped_column(
        Text, server_default="many-to-many", nullable=False
    )
    from_min: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)
    from_max: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    to_min: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)
    to_max: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    cascade_delete: Mapped[str] = mapped_column(Text, server_default="none", nullable=False)
    is_system_type: Mapped[bool] = mapped_column(Boolean, server_default="false", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, server_default="true", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class Association(Base):
    """platform.associations — directed edge between two records."""

    __tablename__ = "associations"
    __table_args__ = (
        UniqueConstraint(
            "association_type_id", "from_record_id", "to_record_id", name="uq_association_edge"
        ),
        Index("ix_associations_from", "from_record_id", "association_type_id"),
        Index("ix_associations_to", "to_record_id", "association_type_id"),
        {"schema": "platform"},
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    association_type_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("platform.association_types.id"), nullable=False
    )
    from_record_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("platform.records.id"), nullable=False
    )
    to_record_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("platform.records.id"), nullable=False
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    properties: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, server_default=text("'{}'::jsonb")
    )
    start_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    association_type: Mapped["AssociationType"] = relationship("AssociationType")

    @property
    def is_active(self) -> bool:
        return self.end_date is None


class OrganizationAssociationLabel(Base):
    """platform.organization_association_labels — per-org display label override."""

    __tablename__ = "organization_association_labels"
    __table_args__ = (
        UniqueConstraint("organization_id", "association_type_id", name="uq_org_assoc_label"),
        {"schema": "platform"},
    )

    id: Mapped[int] = mapped_column(Integer, Identity(), primary_key=True)
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    association_type_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("platform.association_types.id"), nullable=False
    )
    custom_label: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    custom_inverse_label: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, server_default="true", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class Pipeline(Base):
    """platform.pipelines — named workflow for one object type."""

    __tablename__ = "pipelines"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "object_definition_id", "name", name="uq_pipeline_name"
        ),
        CheckConstraint("record_count >= 0", name="ck_pipeline_record_count"),
        {"schema": "platform"},
    )

    id: Mapped[int] = mapped_column(Integer, Identity(), primary_key=True)
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    object_definition_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("platform.object_definitions.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    stages: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB, nullable=False, server_default=text("'[]'::jsonb")
    )
    is_default: Mapped[bool] = mapped_column(Boolean, server_default="false", nullable=False)
    allow_skip_stages: Mapped[bool] = mapped_column(Boolean, server_default="true", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, server_default="true", nullable=False)
    record_count: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class RecordStage(Base):
    """platform.record_stages — current stage of a record in a pipeline."""

    __tablename__ = "record_stages"
    __table_args__ = (
        UniqueConstraint("record_id", "pipeline_id", name="uq_record_stage"),
        CheckConstraint(
            "probability IS NULL OR (probability >= 0 AND probability <= 100)",
            name="ck_record_stage_probability",
        ),
        CheckConstraint("amount IS NULL OR amount >= 0", name="ck_record_stage_amount"),
        Index("ix_record_stages_pipeline_stage", "pipeline_id", "stage_id"),
        {"schema": "platform"},
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    record_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("platform.records.id"), nullable=False
    )
    pipeline_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("platform.pipelines.id"), nullable=False
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    stage_id: Mapped[str] = mapped_column(Text, nullable=False)
    stage_name: Mapped[str] = mapped_column(Text, nullable=False)
    entered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    time_in_stage: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)
    probability: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    expected_close_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    stage_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    pipeline: Mapped["Pipeline"] = relationship("Pipeline")

    def minutes_in_stage(self, now: Optional[datetime] = None) -> int:
        """Whole minutes since the record entered its current stage."""
        now = now or _utcnow()
        return max(0, int((now - self.entered_at).total_seconds() // 60))


class StageHistory(Base):
    """platform.stage_history — append-only log of stage transitions."""

    __tablename__ = "stage_history"
    __table_args__ = (
        Index("ix_stage_history_record_pipeline", "record_id", "pipeline_id", "transitioned_at"),
        {"schema": "platform"},
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    record_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("platform.records.id"), nullable=False
    )
    pipeline_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("platform.pipelines.id"), nullable=False
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    from_stage_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    from_stage_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    to_stage_id: Mapped[str] = mapped_column(Text, nullable=False)
    to_stage_name: Mapped[str] = mapped_column(Text, nullable=False)
    transitioned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    time_in_previous_stage: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    amount_at_transition: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)
    probability_at_transition: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(5, 2), nullable=True
    )
    transition_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    transitioned_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )


class StageAutomation(Base):
    """platform.stage_automations — declarative trigger/action rule."""

    __tablename__ = "stage_automations"
    __table_args__ = (
        CheckConstraint(_in_check("trigger_type", _TRIGGERS), name="ck_automation_trigger"),
        CheckConstraint(_in_check("action_type", _ACTIONS), name="ck_automation_action"),
        {"schema": "platform"},
    )

    id: Mapped[int] = mapped_column(Integer, Identity(), primary_key=True)
    pipeline_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("platform.pipelines.id", ondelete="CASCADE"), nullable=False
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    trigger_type: Mapped[str] = mapped_column(Text, nullable=False)
    trigger_stage_id: Mapped[str] = mapped_column(Text, nullable=False)
    trigger_conditions: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, server_default=text("'{}'::jsonb")
    )
    action_type: Mapped[str] = mapped_column(Text, nullable=False)
    action_config: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, server_default=text("'{}'::jsonb")
    )
    is_active: Mapped[bool] = mapped_column(Boolean, server_default="true", nullable=False)
    run_once: Mapped[bool] = mapped_column(Boolean, server_default="false", nullable=False)
    delay: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)
    execution_count: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)
    last_executed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class RecordList(Base):
    """platform.lists — static or filter-defined grouping of records."""

    __tablename__ = "lists"
    __table_args__ = (
        CheckConstraint("type IN ('static', 'dynamic')", name="ck_list_type"),
        CheckConstraint("member_count >= 0", name="ck_list_member_count"),
        {"schema": "platform"},
    )

    id: Mapped[int] = mapped_column(Integer, Identity(), primary_key=True)
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    object_definition_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("platform.object_definitions.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(Text, server_default="static", nullable=False)
    filter_criteria: Mapped[Optional[list[dict[str, Any]]]] = mapped_column(JSONB, nullable=True)
    member_count: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)
    last_refreshed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, server_default="true", nullable=False)
    created_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class ListMembership(Base):
    """platform.list_memberships — one row per (list, record)."""

    __tablename__ = "list_memberships"
    __table_args__ = (
        Index("ix_list_memberships_record", "record_id"),
        {"schema": "platform"},
    )

    list_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("platform.lists.id", ondelete="CASCADE"), primary_key=True
    )
    record_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("platform.records.id"), primary_key=True
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    added_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    added_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    is_pinned: Mapped[bool] = mapped_column(Boolean, server_default="false", nullable=False)
    is_excluded: Mapped[bool] = mapped_column(Boolean, server_default="false", nullable=False)


class Segment(Base):
    """platform.segments — saved filter whose size is recalculated on demand."""

    __tablename__ = "segments"
    __table_args__ = {"schema": "platform"}

    id: Mapped[int] = mapped_column(Integer, Identity(), primary_key=True)
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    object_definition_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("platform.object_definitions.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rules: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB, nullable=False, server_default=text("'[]'::jsonb")
    )
    total_members: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)
    last_calculated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, server_default="true", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ===========================================================================
# Schema: audit
# ===========================================================================


class AuditLog(Base):
    """audit.audit_log — immutable change log, range-partitioned by month.

    The primary key includes created_at because PostgreSQL requires the
    partition key in every unique constraint of a partitioned table.
    """

    __tablename__ = "audit_log"
    __table_args__ = (
        CheckConstraint(_in_check("entity_type", [k.value for k in EntityKind]), name="ck_audit_entity_type"),
        CheckConstraint(_in_check("action", [a.value for a in AuditAction]), name="ck_audit_action"),
        CheckConstraint(_in_check("source", _SOURCES), name="ck_audit_source"),
        Index("ix_audit_log_org_created", "organization_id", "created_at"),
        Index("ix_audit_log_entity", "entity_type", "entity_id"),
        {"schema": "audit", "postgresql_partition_by": "RANGE (created_at)"},
    )

    id: Mapped[int] = mapped_column(
        BigInteger,
        Sequence("audit_log_id_seq", schema="audit"),
        primary_key=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), primary_key=True, default=_utcnow
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    entity_type: Mapped[str] = mapped_column(Text, nullable=False)
    entity_id: Mapped[str] = mapped_column(Text, nullable=False)
    object_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    changed_fields: Mapped[Optional[list[str]]] = mapped_column(JSONB, nullable=True)
    previous_values: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    new_values: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    action_details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    source: Mapped[str] = mapped_column(Text, server_default="api", nullable=False)
    request_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class PropertyHistory(Base):
    """audit.property_history — one row per changed property value."""

    __tablename__ = "property_history"
    __table_args__ = (
        CheckConstraint("change_type IN ('set', 'unset')", name="ck_property_history_change"),
        Index("ix_property_history_record", "record_id", "property_name", "changed_at"),
        {"schema": "audit"},
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    record_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    object_type: Mapped[str] = mapped_column(Text, nullable=False)
    property_name: Mapped[str] = mapped_column(Text, nullable=False)
    previous_value: Mapped[Optional[Any]] = mapped_column(JSONB(none_as_null=True), nullable=True)
    new_value: Mapped[Optional[Any]] = mapped_column(JSONB(none_as_null=True), nullable=True)
    change_type: Mapped[str] = mapped_column(Text, server_default="set", nullable=False)
    changed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    source: Mapped[str] = mapped_column(Text, server_default="api", nullable=False)
    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class BulkOperationLog(Base):
    """audit.bulk_operation_log — outcome and rollback payload of a batch call."""

    __tablename__ = "bulk_operation_log"
    __table_args__ = (
        CheckConstraint(
            "operation_type IN ('bulk_create', 'bulk_update')", name="ck_bulk_operation_type"
        ),
        Index("ix_bulk_operation_org_started", "organization_id", "started_at"),
        {"schema": "audit"},
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    operation_type: Mapped[str] = mapped_column(Text, nullable=False)
    object_type: Mapped[str] = mapped_column(Text, nullable=False)
    total_records: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)
    success_count: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)
    failure_count: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)
    skipped_count: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)
    affected_ids: Mapped[list[int]] = mapped_column(
        JSONB, nullable=False, server_default=text("'[]'::jsonb")
    )
    success_records: Mapped[list[Any]] = mapped_column(
        JSONB, nullable=False, server_default=text("'[]'::jsonb")
    )
    failure_records: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB, nullable=False, server_default=text("'[]'::jsonb")
    )
    rollback_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    is_reversible: Mapped[bool] = mapped_column(Boolean, server_default="true", nullable=False)
    was_rolled_back: Mapped[bool] = mapped_column(Boolean, server_default="false", nullable=False)
    rolled_back_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    rolled_back_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    initiated_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    source: Mapped[str] = mapped_column(Text, server_default="api", nullable=False)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
