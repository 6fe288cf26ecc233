"""Association graph — association types, edges, labels and cascade rules."""
import logging
from typing import Any, Optional, Union

from pydantic import ValidationError
from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from db import cache
from db.context import RequestContext, execute, flush
from db.errors import (
    CardinalityViolation,
    DuplicateDefinition,
    NotFound,
    SchemaViolation,
    from_validation_error,
)
from db.models import (
    Association,
    AssociationType,
    AuditAction,
    EntityKind,
    ObjectDefinition,
    OrganizationAssociationLabel,
    Record,
)
from db.repositories import audit as audit_repo
from db.repositories import object_types as object_types_repo
from schemas.associations import (
    AssociationCreate,
    AssociationTypeCreate,
    CascadeDelete,
    Direction,
    effective_limits,
)

logger = logging.getLogger(__name__)


def _edge_values(edge: Association) -> dict:
    return {
        "typeId": edge.association_type_id,
        "fromRecordId": edge.from_record_id,
        "toRecordId": edge.to_record_id,
        "properties": edge.properties,
        "startDate": edge.start_date,
        "endDate": edge.end_date,
    }


# ---------------------------------------------------------------------------
# Association types
# ---------------------------------------------------------------------------


async def define_association_type(
    session: AsyncSession,
    ctx: RequestContext,
    data: Union[AssociationTypeCreate, dict],
) -> AssociationType:
    """Declare a relationship shape between two object types."""
    ctx.require_write()
    try:
        payload = data if isinstance(data, AssociationTypeCreate) else AssociationTypeCreate.model_validate(data)
    except ValidationError as exc:
        raise from_validation_error(exc, "Invalid association type") from None

    await object_types_repo.resolve_object_type_id(session, ctx, payload.from_object_type_id)
    await object_types_repo.resolve_object_type_id(session, ctx, payload.to_object_type_id)

    existing = await execute(
        session,
        ctx,
        select(AssociationType.id)
        .where(AssociationType.from_object_type_id == payload.from_object_type_id)
        .where(AssociationType.to_object_type_id == payload.to_object_type_id)
        .where(AssociationType.name == payload.name),
    )
    if existing.first() is not None:
        raise DuplicateDefinition(
            f"Association type '{payload.name}' already exists between "
            f"{payload.from_object_type_id} and {payload.to_object_type_id}"
        )

    atype = AssociationType(
        from_object_type_id=payload.from_object_type_id,
        to_object_type_id=payload.to_object_type_id,
        name=payload.name,
        label=payload.label,
        inverse_label=payload.inverse_label,
        category=payload.category,
        cardinality=payload.cardinality.value,
        from_min=payload.from_min,
        from_max=payload.from_max,
        to_min=payload.to_min,
        to_max=payload.to_max,
        cascade_delete=payload.cascade_delete.value,
        is_system_type=payload.is_system_type,
    )
    session.add(atype)
    try:
        await flush(session, ctx)
    except IntegrityError:
        raise DuplicateDefinition(f"Association type '{payload.name}' already exists") from None

    await audit_repo.record(
        session, ctx, EntityKind.ASSOCIATION_TYPE, atype.id, AuditAction.CREATE,
        new_values=payload.model_dump(mode="json"),
    )
    return atype


async def get_association_type(
    session: AsyncSession, ctx: RequestContext, type_id: int
) -> AssociationType:
    result = await execute(
        session,
        ctx,
        select(AssociationType)
        .where(AssociationType.id == type_id)
        .where(AssociationType.is_active.is_(True)),
    )
    atype = result.scalar_one_or_none()
    if atype is None:
        raise NotFound(f"Association type {type_id} not found")
    return atype


async def list_association_types(
    session: AsyncSession,
    ctx: RequestContext,
    from_object_type_id: Optional[str] = None,
    to_object_type_id: Optional[str] = None,
) -> list[AssociationType]:
    stmt = select(AssociationType).where(AssociationType.is_active.is_(True))
    if from_object_type_id:
        stmt = stmt.where(AssociationType.from_object_type_id == from_object_type_id)
    if to_object_type_id:
        stmt = stmt.where(AssociationType.to_object_type_id == to_object_type_id)
    result = await execute(session, ctx, stmt.order_by(AssociationType.id))
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Edges
# ---------------------------------------------------------------------------


async def _endpoint_types(
    session: AsyncSession, ctx: RequestContext, record_ids: list[int], *, lock: bool
) -> dict[int, str]:
    """Map record id -> object_type_id for records of the caller's organization.

    With ``lock`` the rows are locked in id order, which serializes
    concurrent cardinality checks on the same endpoints without deadlocking.
    """
    stmt = (
        select(Record.id, ObjectDefinition.object_type_id)
        .join(ObjectDefinition, Record.object_definition_id == ObjectDefinition.id)
        .where(Record.id.in_(record_ids))
        .where(Record.organization_id == ctx.organization_id)
        .order_by(Record.id)
    )
    if lock:
        stmt = stmt.with_for_update(of=Record)
    result = await execute(session, ctx, stmt)
    return {row[0]: row[1] for row in result.all()}


async def _find_edge(
    session: AsyncSession, ctx: RequestContext, type_id: int, from_id: int, to_id: int
) -> Optional[Association]:
    result = await execute(
        session,
        ctx,
        select(Association)
        .where(Association.association_type_id == type_id)
        .where(Association.from_record_id == from_id)
        .where(Association.to_record_id == to_id)
        .where(Association.organization_id == ctx.organization_id),
    )
    return result.scalar_one_or_none()


async def _active_edge_count(
    session: AsyncSession, ctx: RequestContext, type_id: int, column, record_id: int
) -> int:
    result = await execute(
        session,
        ctx,
        select(func.count())
        .select_from(Association)
        .where(Association.association_type_id == type_id)
        .where(column == record_id)
        .where(Association.end_date.is_(None)),
    )
    return result.scalar_one()


async def associate(
    session: AsyncSession,
    ctx: RequestContext,
    type_id: int,
    from_record_id: int,
    to_record_id: int,
    properties: Optional[dict[str, Any]] = None,
    **options,
) -> Association:
    """Create an edge; an existing edge with the same endpoints is returned unchanged.

    ``options`` accepts ``start_date`` and ``end_date``.
    """
    ctx.require_write()
    try:
        payload = AssociationCreate.model_validate({"properties": properties or {}, **options})
    except ValidationError as exc:
        raise from_validation_error(exc, "Invalid association") from None

    atype = await get_association_type(session, ctx, type_id)
    outgoing_max, incoming_max = effective_limits(atype.cardinality, atype.from_max, atype.to_max)
    must_lock = outgoing_max is not None or incoming_max is not None

    types = await _endpoint_types(
        session, ctx, sorted({from_record_id, to_record_id}), lock=must_lock
    )
    for record_id in (from_record_id, to_record_id):
        if record_id not in types:
            raise NotFound(f"Record {record_id} not found")
    if types[from_record_id] != atype.from_object_type_id:
        raise SchemaViolation(
            f"Association type '{atype.name}' requires a {atype.from_object_type_id} "
            f"record on the from side"
        )
    if types[to_record_id] != atype.to_object_type_id:
        raise SchemaViolation(
            f"Association type '{atype.name}' requires a {atype.to_object_type_id} "
            f"record on the to side"
        )

    existing = await _find_edge(session, ctx, type_id, from_record_id, to_record_id)
    if existing is not None:
        return existing

    if outgoing_max is not None:
        n = await _active_edge_count(session, ctx, type_id, Association.from_record_id, from_record_id)
        if n >= outgoing_max:
            raise CardinalityViolation(
                f"Record {from_record_id} already has {n} '{atype.name}' association(s) "
                f"(max {outgoing_max})"
            )
    if incoming_max is not None:
        n = await _active_edge_count(session, ctx, type_id, Association.to_record_id, to_record_id)
        if n >= incoming_max:
            raise CardinalityViolation(
                f"Record {to_record_id} already has {n} incoming '{atype.name}' association(s) "
                f"(max {incoming_max})"
            )

    result = await execute(
        session,
        ctx,
        pg_insert(Association)
        .values(
            association_type_id=type_id,
            from_record_id=from_record_id,
            to_record_id=to_record_id,
            organization_id=ctx.organization_id,
            properties=payload.properties,
            start_date=payload.start_date,
            end_date=payload.end_date,
            created_by_id=ctx.user_id,
        )
        .on_conflict_do_nothing(
            index_elements=["association_type_id", "from_record_id", "to_record_id"]
        )
        .returning(Association),
        execution_options={"populate_existing": True},
    )
    edge = result.scalar_one_or_none()
    if edge is None:
        # Created concurrently by another request
        return await _find_edge(session, ctx, type_id, from_record_id, to_record_id)

    await audit_repo.record(
        session, ctx, EntityKind.ASSOCIATION, edge.id, AuditAction.CREATE,
        new_values=_edge_values(edge),
    )
    cache.invalidate_on_commit(session, cache.invalidate_record, ctx.organization_id, from_record_id)
    cache.invalidate_on_commit(session, cache.invalidate_record, ctx.organization_id, to_record_id)
    return edge


async def _delete_edges(session: AsyncSession, ctx: RequestContext, *conditions, details=None) -> int:
    result = await execute(
        session,
        ctx,
        delete(Association)
        .where(Association.organization_id == ctx.organization_id)
        .where(*conditions)
        .returning(Association),
        execution_options={"synchronize_session": False},
    )
    edges = list(result.scalars().all())
    for edge in edges:
        await audit_repo.record(
            session, ctx, EntityKind.ASSOCIATION, edge.id, AuditAction.DELETE,
            previous_values=_edge_values(edge),
            details=details,
        )
        cache.invalidate_on_commit(session, cache.invalidate_record, ctx.organization_id, edge.from_record_id)
        cache.invalidate_on_commit(session, cache.invalidate_record, ctx.organization_id, edge.to_record_id)
    return len(edges)


async def dissociate(
    session: AsyncSession,
    ctx: RequestContext,
    type_id: int,
    from_record_id: int,
    to_record_id: int,
) -> None:
    """Hard-delete an edge; the audit entry keeps its last values."""
    ctx.require_write()
    n = await _delete_edges(
        session,
        ctx,
        Association.association_type_id == type_id,
        Association.from_record_id == from_record_id,
        Association.to_record_id == to_record_id,
    )
    if n == 0:
        raise NotFound(
            f"No association of type {type_id} from {from_record_id} to {to_record_id}"
        )


async def apply_cascade(
    session: AsyncSession, ctx: RequestContext, record_id: int, object_type: str
) -> int:
    """Remove edges of an archived record according to each type's cascade rule.

    ``from`` removes the record's outgoing edges, ``to`` its incoming
    edges, ``both`` either; ``none`` leaves edges in place.
    """
    outgoing_types = select(AssociationType.id).where(
        AssociationType.cascade_delete.in_([CascadeDelete.FROM.value, CascadeDelete.BOTH.value])
    )
    incoming_types = select(AssociationType.id).where(
        AssociationType.cascade_delete.in_([CascadeDelete.TO.value, CascadeDelete.BOTH.value])
    )
    n = await _delete_edges(
        session,
        ctx,
        or_(
            and_(
                Association.from_record_id == record_id,
                Association.association_type_id.in_(outgoing_types),
            ),
            and_(
                Association.to_record_id == record_id,
                Association.association_type_id.in_(incoming_types),
            ),
        ),
        details={"cascadeFrom": record_id},
    )
    if n:
        logger.info("Archiving %s %s removed %d associations", object_type, record_id, n)
    return n


async def get_associations(
    session: AsyncSession,
    ctx: RequestContext,
    record_id: int,
    direction: Union[Direction, str] = Direction.FROM,
    type_id: Optional[int] = None,
    include_ended: bool = False,
) -> list[dict]:
    """List a record's edges in one direction with the counterpart record.

    Labels use the organization's custom label when one is set, falling back
    to the type's base label (or inverse label when looking at incoming edges).
    """
    direction = Direction(direction)
    endpoints = await _endpoint_types(session, ctx, [record_id], lock=False)
    if record_id not in endpoints:
        raise NotFound(f"Record {record_id} not found")

    counterpart = aliased(Record)
    if direction == Direction.FROM:
        own_col, other_col = Association.from_record_id, Association.to_record_id
    else:
        own_col, other_col = Association.to_record_id, Association.from_record_id

    stmt = (
        select(
            Association,
            AssociationType,
            OrganizationAssociationLabel,
            counterpart,
            ObjectDefinition.object_type,
        )
        .join(AssociationType, Association.association_type_id == AssociationType.id)
        .join(counterpart, other_col == counterpart.id)
        .join(ObjectDefinition, counterpart.object_definition_id == ObjectDefinition.id)
        .outerjoin(
            OrganizationAssociationLabel,
            and_(
                OrganizationAssociationLabel.association_type_id == AssociationType.id,
                OrganizationAssociationLabel.organization_id == ctx.organization_id,
                OrganizationAssociationLabel.is_active.is_(True),
            ),
        )
        .where(own_col == record_id)
        .where(Association.organization_id == ctx.organization_id)
    )
    if type_id is not None:
        stmt = stmt.where(Association.association_type_id == type_id)
    if not include_ended:
        stmt = stmt.where(Association.end_date.is_(None))
    result = await execute(session, ctx, stmt.order_by(Association.id))

    out = []
    for edge, atype, custom, other, other_type in result.all():
        out.append({
            "id": edge.id,
            "typeId": atype.id,
            "typeName": atype.name,
            "label": _label_for(atype, custom, direction),
            "direction": direction.value,
            "record": {
                "id": other.id,
                "objectType": other_type,
                "displayName": other.display_name,
                "archived": other.is_archived,
            },
            "properties": edge.properties,
            "startDate": edge.start_date.isoformat() if edge.start_date else None,
            "endDate": edge.end_date.isoformat() if edge.end_date else None,
        })
    return out


async def associations_by_object_type(
    session: AsyncSession, ctx: RequestContext, record_id: int, object_types: list[str]
) -> dict[str, list[dict]]:
    """Both directions of a record's active edges, grouped by counterpart object type."""
    wanted = set(object_types)
    grouped: dict[str, list[dict]] = {t: [] for t in object_types}
    for direction in (Direction.FROM, Direction.TO):
        for entry in await get_associations(session, ctx, record_id, direction):
            other_type = entry["record"]["objectType"]
            if other_type in wanted:
                grouped[other_type].append(entry)
    return grouped


# ---------------------------------------------------------------------------
# Organization labels
# ---------------------------------------------------------------------------


def _label_for(
    atype: AssociationType,
    custom: Optional[OrganizationAssociationLabel],
    direction: Direction,
) -> str:
    if direction == Direction.FROM:
        return (custom and custom.custom_label) or atype.label
    return (
        (custom and custom.custom_inverse_label)
        or atype.inverse_label
        or (custom and custom.custom_label)
        or atype.label
    )


async def set_association_label(
    session: AsyncSession,
    ctx: RequestContext,
    type_id: int,
    custom_label: Optional[str],
    custom_inverse_label: Optional[str] = None,
) -> OrganizationAssociationLabel:
    """Rename an association type for this organization. Idempotent upsert."""
    ctx.require_write()
    await get_association_type(session, ctx, type_id)
    values = {"custom_label": custom_label, "custom_inverse_label": custom_inverse_label, "is_active": True}
    result = await execute(
        session,
        ctx,
        pg_insert(OrganizationAssociationLabel)
        .values(organization_id=ctx.organization_id, association_type_id=type_id, **values)
        .on_conflict_do_update(
            index_elements=["organization_id", "association_type_id"],
            set_={**values, "updated_at": func.now()},
        )
        .returning(OrganizationAssociationLabel),
        execution_options={"populate_existing": True},
    )
    label = result.scalar_one()
    await audit_repo.record(
        session, ctx, EntityKind.ASSOCIATION_LABEL, label.id, AuditAction.UPDATE,
        changed_fields=["customLabel", "customInverseLabel"],
        new_values={"customLabel": custom_label, "customInverseLabel": custom_inverse_label},
    )
    return label


async def get_association_label(
    session: AsyncSession, ctx: RequestContext, type_id: int
) -> dict:
    """Effective labels for this organization, falling back to the base labels."""
    atype = await get_association_type(session, ctx, type_id)
    result = await execute(
        session,
        ctx,
        select(OrganizationAssociationLabel)
        .where(OrganizationAssociationLabel.organization_id == ctx.organization_id)
        .where(OrganizationAssociationLabel.association_type_id == type_id)
        .where(OrganizationAssociationLabel.is_active.is_(True)),
    )
    custom = result.scalar_one_or_none()
    return {
        "label": _label_for(atype, custom, Direction.FROM),
        "inverseLabel": _label_for(atype, custom, Direction.TO),
        "isCustom": custom is not None,
    }
