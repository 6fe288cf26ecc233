"""Object type registry — definitions, organization overlays, merged schemas."""
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from db import cache
from db.context import RequestContext, execute, flush
from db.errors import (
    DuplicateDefinition,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    SchemaViolation,
    from_validation_error,
)
from db.models import AuditAction, EntityKind, ObjectDefinition, OrganizationObjectSchema
from db.repositories import audit as audit_repo
from schemas.properties import (
    MergedSchema,
    ObjectTypeInfo,
    PropertyDefinition,
    PropertyOverride,
    merge_properties,
    parse_property_map,
)

logger = logging.getLogger(__name__)


def _info(definition: ObjectDefinition) -> ObjectTypeInfo:
    return ObjectTypeInfo(
        id=definition.id,
        object_type_id=definition.object_type_id,
        object_type=definition.object_type,
        label=definition.label,
        plural_label=definition.plural_label,
        primary_display_property=definition.primary_display_property,
        allow_custom_properties=definition.allow_custom_properties,
        properties=parse_property_map(definition.properties),
    )


# ---------------------------------------------------------------------------
# Object definitions
# ---------------------------------------------------------------------------


async def create_object_definition(
    session: AsyncSession,
    ctx: RequestContext,
    object_type: str,
    object_type_id: str,
    label: str,
    plural_label: str,
    properties: dict[str, Any],
    *,
    description: Optional[str] = None,
    primary_display_property: Optional[str] = None,
    is_system_object: bool = False,
    allow_custom_properties: bool = True,
) -> ObjectDefinition:
    """Register a new object type (platform bootstrap)."""
    ctx.require_write()
    parsed = parse_property_map(properties)

    existing = await execute(
        session,
        ctx,
        select(ObjectDefinition.id).where(
            (ObjectDefinition.object_type == object_type)
            | (ObjectDefinition.object_type_id == object_type_id)
        ),
    )
    if existing.first() is not None:
        raise DuplicateDefinition(f"Object type '{object_type}' already exists")

    definition = ObjectDefinition(
        object_type=object_type,
        object_type_id=object_type_id,
        label=label,
        plural_label=plural_label,
        description=description,
        properties={name: d.to_json() for name, d in parsed.items()},
        primary_display_property=primary_display_property,
        is_system_object=is_system_object,
        allow_custom_properties=allow_custom_properties,
    )
    session.add(definition)
    try:
        await flush(session, ctx)
    except IntegrityError:
        raise DuplicateDefinition(f"Object type '{object_type}' already exists") from None

    await audit_repo.record(
        session, ctx, EntityKind.OBJECT_DEFINITION, definition.id, AuditAction.CREATE,
        object_type=object_type,
        new_values={"objectTypeId": object_type_id, "properties": definition.properties},
    )
    cache.invalidate_on_commit(session, cache.invalidate_object_type, object_type)
    logger.info("Registered object type %s (%s)", object_type, object_type_id)
    return definition


async def deactivate_object_definition(
    session: AsyncSession, ctx: RequestContext, object_type: str
) -> ObjectDefinition:
    ctx.require_write()
    result = await execute(
        session,
        ctx,
        select(ObjectDefinition).where(ObjectDefinition.object_type == object_type),
    )
    definition = result.scalar_one_or_none()
    if definition is None:
        raise NotFound(f"Object type '{object_type}' not found")
    if definition.is_active:
        definition.is_active = False
        await flush(session, ctx)
        await audit_repo.record(
            session, ctx, EntityKind.OBJECT_DEFINITION, definition.id, AuditAction.ARCHIVE,
            object_type=object_type,
        )
    cache.invalidate_on_commit(session, cache.invalidate_object_type, object_type)
    return definition


async def list_object_definitions(
    session: AsyncSession, ctx: RequestContext, include_inactive: bool = False
) -> list[ObjectDefinition]:
    stmt = select(ObjectDefinition).order_by(ObjectDefinition.id)
    if not include_inactive:
        stmt = stmt.where(ObjectDefinition.is_active.is_(True))
    result = await execute(session, ctx, stmt)
    return list(result.scalars().all())


async def resolve_object_type(
    session: AsyncSession, ctx: Optional[RequestContext], object_type: str
) -> ObjectTypeInfo:
    """Return the active definition for ``object_type`` or raise NotFound.

    Cached process-wide; any definition write invalidates the entry.
    """
    cached = cache.lookup(session, cache.object_definitions, (object_type,))
    if cached is not None:
        return cached
    result = await execute(
        session,
        ctx,
        select(ObjectDefinition)
        .where(ObjectDefinition.object_type == object_type)
        .where(ObjectDefinition.is_active.is_(True)),
    )
    definition = result.scalar_one_or_none()
    if definition is None:
        raise NotFound(f"Object type '{object_type}' not found")
    info = _info(definition)
    cache.remember(session, cache.object_definitions, (object_type,), info)
    return info


async def resolve_object_type_id(
    session: AsyncSession, ctx: Optional[RequestContext], object_type_id: str
) -> ObjectTypeInfo:
    """Like resolve_object_type, keyed by the stable "0-1" style id."""
    result = await execute(
        session,
        ctx,
        select(ObjectDefinition.object_type)
        .where(ObjectDefinition.object_type_id == object_type_id)
        .where(ObjectDefinition.is_active.is_(True)),
    )
    object_type = result.scalar_one_or_none()
    if object_type is None:
        raise NotFound(f"Object type id '{object_type_id}' not found")
    return await resolve_object_type(session, ctx, object_type)


# ---------------------------------------------------------------------------
# Organization overlays
# ---------------------------------------------------------------------------


async def _get_or_create_overlay(
    session: AsyncSession,
    ctx: RequestContext,
    object_definition_id: int,
    *,
    for_update: bool = False,
) -> OrganizationObjectSchema:
    """Return the (organization, type) overlay, creating an empty one if missing."""
    stmt = (
        select(OrganizationObjectSchema)
        .where(OrganizationObjectSchema.organization_id == ctx.organization_id)
        .where(OrganizationObjectSchema.object_definition_id == object_definition_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    overlay = (await execute(session, ctx, stmt)).scalar_one_or_none()
    if overlay is not None:
        return overlay

    # Concurrent first accesses race here; the loser's insert is a no-op
    await execute(
        session,
        ctx,
        pg_insert(OrganizationObjectSchema)
        .values(organization_id=ctx.organization_id, object_definition_id=object_definition_id)
        .on_conflict_do_nothing(index_elements=["organization_id", "object_definition_id"]),
    )
    return (await execute(session, ctx, stmt)).scalar_one()


async def get_merged_schema(
    session: AsyncSession, ctx: RequestContext, object_type: str
) -> MergedSchema:
    """Base properties overlaid with the caller organization's customizations.

    Creates the overlay on first access, so repeated calls are idempotent.
    """
    key = (ctx.organization_id, object_type)
    cached = cache.lookup(session, cache.merged_schemas, key)
    if cached is not None:
        return cached

    info = await resolve_object_type(session, ctx, object_type)
    overlay = await _get_or_create_overlay(session, ctx, info.id)
    merged = MergedSchema(
        object_definition=info,
        properties=merge_properties(
            info.properties,
            overlay.property_defaults,
            overlay.custom_properties,
            overlay.hidden_properties,
        ),
        schema_version=overlay.schema_version,
    )
    cache.remember(session, cache.merged_schemas, key, merged)
    return merged


async def initialize_organization_schema(
    session: AsyncSession, ctx: RequestContext, object_types: Optional[list[str]] = None
) -> int:
    """Create empty overlays for every active type (or the named ones). Idempotent."""
    ctx.require_write()
    stmt = select(ObjectDefinition.id).where(ObjectDefinition.is_active.is_(True))
    if object_types:
        stmt = stmt.where(ObjectDefinition.object_type.in_(object_types))
    result = await execute(session, ctx, stmt)
    ids = [row[0] for row in result.all()]
    if not ids:
        return 0
    inserted = await execute(
        session,
        ctx,
        pg_insert(OrganizationObjectSchema)
        .values([
            {"organization_id": ctx.organization_id, "object_definition_id": i} for i in ids
        ])
        .on_conflict_do_nothing(index_elements=["organization_id", "object_definition_id"])
        .returning(OrganizationObjectSchema.id),
    )
    created = len(inserted.all())
    if created:
        logger.info("Initialized %d object schemas for organization %s", created, ctx.organization_id)
    return created


async def get_schema_version(session: AsyncSession, ctx: RequestContext, object_type: str) -> int:
    return (await get_merged_schema(session, ctx, object_type)).schema_version


async def _writable_overlay(
    session: AsyncSession, ctx: RequestContext, object_type: str
) -> tuple[ObjectTypeInfo, OrganizationObjectSchema]:
    ctx.require_write()
    info = await resolve_object_type(session, ctx, object_type)
    overlay = await _get_or_create_overlay(session, ctx, info.id, for_update=True)
    return info, overlay


async def _after_overlay_write(
    session: AsyncSession,
    ctx: RequestContext,
    overlay: OrganizationObjectSchema,
    object_type: str,
    previous: dict,
    new: dict,
) -> None:
    await flush(session, ctx)
    changed, prev, after = audit_repo.diff_values(previous, new)
    await audit_repo.record(
        session, ctx, EntityKind.OBJECT_SCHEMA, overlay.id, AuditAction.UPDATE,
        object_type=object_type,
        changed_fields=changed,
        previous_values=prev,
        new_values=after,
    )
    cache.invalidate_on_commit(session, cache.invalidate_merged_schema, ctx.organization_id, object_type)


def _overlay_state(overlay: OrganizationObjectSchema) -> dict:
    return {
        "customProperties": dict(overlay.custom_properties),
        "hiddenProperties": list(overlay.hidden_properties),
        "propertyDefaults": dict(overlay.property_defaults),
    }


async def add_custom_property(
    session: AsyncSession,
    ctx: RequestContext,
    object_type: str,
    name: str,
    definition: Union[PropertyDefinition, dict],
) -> MergedSchema:
    """Add an organization-specific property to an object type."""
    info, overlay = await _writable_overlay(session, ctx, object_type)
    if not info.allow_custom_properties:
        raise PermissionDenied(f"Object type '{object_type}' does not allow custom properties")
    if not name or not name.replace("_", "").isalnum():
        raise SchemaViolation(f"Invalid property name '{name}'")
    if name in info.properties or name in overlay.custom_properties:
        raise DuplicateDefinition(f"Property '{name}' already exists on '{object_type}'")
    try:
        parsed = (
            definition if isinstance(definition, PropertyDefinition)
            else PropertyDefinition.model_validate(definition)
        )
    except ValidationError as exc:
        raise from_validation_error(exc, "Invalid property definition") from None

    before = _overlay_state(overlay)
    overlay.custom_properties = {**overlay.custom_properties, name: parsed.to_json()}
    # A previously hidden custom property of the same name becomes visible again
    overlay.hidden_properties = [h for h in overlay.hidden_properties if h != name]
    await _after_overlay_write(session, ctx, overlay, object_type, before, _overlay_state(overlay))
    return await get_merged_schema(session, ctx, object_type)


async def override_property(
    session: AsyncSession,
    ctx: RequestContext,
    object_type: str,
    property_name: str,
    overrides: Union[PropertyOverride, dict],
) -> MergedSchema:
    """Patch a property for this organization; ``hidden`` toggles visibility.

    Base properties are patched through ``property_defaults``; custom
    properties are edited in place since they belong to the overlay anyway.
    """
    info, overlay = await _writable_overlay(session, ctx, object_type)
    try:
        parsed = (
            overrides if isinstance(overrides, PropertyOverride)
            else PropertyOverride.model_validate(overrides)
        )
    except ValidationError as exc:
        raise from_validation_error(exc, "Invalid property override") from None

    is_base = property_name in info.properties
    if not is_base and property_name not in overlay.custom_properties:
        raise NotFound(f"Property '{property_name}' not found on '{object_type}'")

    before = _overlay_state(overlay)
    patch = parsed.patch()
    if patch:
        if is_base:
            current = dict(overlay.property_defaults.get(property_name, {}))
            current.update(patch)
            candidate = {**info.properties[property_name].to_json(), **current}
            new_defaults = {**overlay.property_defaults, property_name: current}
        else:
            candidate = {**overlay.custom_properties[property_name], **patch}
        try:
            resolved = PropertyDefinition.model_validate(candidate).to_json()
        except ValidationError as exc:
            raise from_validation_error(exc, "Invalid property override") from None
        if is_base:
            overlay.property_defaults = new_defaults
        else:
            overlay.custom_properties = {**overlay.custom_properties, property_name: resolved}

    if parsed.hidden is True and property_name not in overlay.hidden_properties:
        overlay.hidden_properties = [*overlay.hidden_properties, property_name]
    elif parsed.hidden is False:
        overlay.hidden_properties = [h for h in overlay.hidden_properties if h != property_name]

    after = _overlay_state(overlay)
    if after != before:
        await _after_overlay_write(session, ctx, overlay, object_type, before, after)
    return await get_merged_schema(session, ctx, object_type)


async def migrate_schema(
    session: AsyncSession,
    ctx: RequestContext,
    object_type: str,
    new_version: int,
    description: str,
    changes: list[dict[str, Any]],
    rollback_data: Optional[dict[str, Any]] = None,
) -> OrganizationObjectSchema:
    """Append a migration record and bump the overlay's schema version.

    Versions only move forward; earlier migration records are never rewritten.
    """
    _, overlay = await _writable_overlay(session, ctx, object_type)
    if new_version <= overlay.schema_version:
        raise InvalidTransition(
            f"Schema version must increase (current {overlay.schema_version}, got {new_version})"
        )
    now = datetime.now(timezone.utc)
    entry = {
        "version": new_version,
        "timestamp": now.isoformat(),
        "description": description,
        "changes": audit_repo.jsonable(changes) or [],
        "rollbackData": audit_repo.jsonable(rollback_data),
    }
    previous_version = overlay.schema_version
    overlay.property_migrations = [*overlay.property_migrations, entry]
    overlay.schema_version = new_version
    overlay.last_migration_at = now
    await flush(session, ctx)
    await audit_repo.record(
        session, ctx, EntityKind.OBJECT_SCHEMA, overlay.id, AuditAction.UPDATE,
        object_type=object_type,
        changed_fields=["schemaVersion"],
        previous_values={"schemaVersion": previous_version},
        new_values={"schemaVersion": new_version},
        details={"migration": entry},
    )
    cache.invalidate_on_commit(session, cache.invalidate_merged_schema, ctx.organization_id, object_type)
    logger.info(
        "Migrated %s schema for organization %s to v%d: %s",
        object_type, ctx.organization_id, new_version, description,
    )
    return overlay
