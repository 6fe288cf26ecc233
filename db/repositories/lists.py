"""Lists and segments — record groupings with consistent member counts."""
import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import delete, func, literal, select
from sqlalchemy.dialects.postgresql import UUID, insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from db import filters
from db.context import RequestContext, execute, flush, run_bounded
from db.errors import InvalidTransition, NotFound, SchemaViolation, from_validation_error
from db.models import (
    AuditAction,
    EntityKind,
    ListMembership,
    ObjectDefinition,
    Record,
    RecordList,
    Segment,
)
from db.repositories import audit as audit_repo
from db.repositories import counters
from db.repositories import object_types as object_types_repo
from schemas.search import FilterGroup

logger = logging.getLogger(__name__)

_filter_groups = TypeAdapter(list[FilterGroup])

LIST_TYPES = ("static", "dynamic")


def _parse_groups(raw) -> list[FilterGroup]:
    try:
        return _filter_groups.validate_python(raw or [])
    except ValidationError as exc:
        raise from_validation_error(exc, "Invalid filter criteria") from None


async def _matching_condition(
    session: AsyncSession, ctx: RequestContext, object_definition_id: int, raw_groups
):
    """WHERE clause selecting the live records a filter definition matches."""
    result = await execute(
        session,
        ctx,
        select(ObjectDefinition.object_type).where(ObjectDefinition.id == object_definition_id),
    )
    object_type = result.scalar_one()
    merged = await object_types_repo.get_merged_schema(session, ctx, object_type)
    conditions = [
        Record.organization_id == ctx.organization_id,
        Record.object_definition_id == object_definition_id,
        Record.is_archived.is_(False),
    ]
    clause = filters.build_filter_groups(_parse_groups(raw_groups), merged.properties)
    if clause is not None:
        conditions.append(clause)
    return conditions


# ---------------------------------------------------------------------------
# Lists
# ---------------------------------------------------------------------------


async def create_list(
    session: AsyncSession,
    ctx: RequestContext,
    object_type: str,
    name: str,
    list_type: str = "static",
    filter_criteria: Optional[list[dict]] = None,
    description: Optional[str] = None,
) -> RecordList:
    """Create a static list, or a dynamic one driven by filter groups."""
    ctx.require_write()
    if list_type not in LIST_TYPES:
        raise SchemaViolation(f"List type must be one of {LIST_TYPES}")
    if list_type == "dynamic" and not filter_criteria:
        raise SchemaViolation("Dynamic lists need filter criteria")

    merged = await object_types_repo.get_merged_schema(session, ctx, object_type)
    criteria = None
    if filter_criteria:
        groups = _parse_groups(filter_criteria)
        # Fail now on unknown properties rather than at refresh time
        filters.build_filter_groups(groups, merged.properties)
        criteria = [g.model_dump(mode="json") for g in groups]

    lst = RecordList(
        organization_id=ctx.organization_id,
        object_definition_id=merged.object_definition.id,
        name=name,
        description=description,
        type=list_type,
        filter_criteria=criteria,
        created_by_id=ctx.user_id,
    )
    session.add(lst)
    await flush(session, ctx)
    await audit_repo.record(
        session, ctx, EntityKind.LIST, lst.id, AuditAction.CREATE,
        object_type=object_type,
        new_values={"name": name, "type": list_type, "filterCriteria": criteria},
    )
    return lst


async def get_list(session: AsyncSession, ctx: RequestContext, list_id: int) -> RecordList:
    result = await execute(
        session,
        ctx,
        select(RecordList)
        .where(RecordList.id == list_id)
        .where(RecordList.organization_id == ctx.organization_id)
        .execution_options(populate_existing=True),
    )
    lst = result.scalar_one_or_none()
    if lst is None:
        raise NotFound(f"List {list_id} not found")
    return lst


async def _check_member(
    session: AsyncSession, ctx: RequestContext, lst: RecordList, record_id: int
) -> None:
    result = await execute(
        session,
        ctx,
        select(Record.object_definition_id)
        .where(Record.id == record_id)
        .where(Record.organization_id == ctx.organization_id),
    )
    object_definition_id = result.scalar_one_or_none()
    if object_definition_id is None:
        raise NotFound(f"Record {record_id} not found")
    if object_definition_id != lst.object_definition_id:
        raise SchemaViolation(f"Record {record_id} cannot be a member of list {lst.id}")


async def add_member(
    session: AsyncSession, ctx: RequestContext, list_id: int, record_id: int
) -> bool:
    """Add a record to a list. Idempotent; returns whether a row was added."""
    ctx.require_write()
    lst = await get_list(session, ctx, list_id)
    await _check_member(session, ctx, lst, record_id)
    result = await execute(
        session,
        ctx,
        pg_insert(ListMembership)
        .values(
            list_id=list_id,
            record_id=record_id,
            organization_id=ctx.organization_id,
            added_by_id=ctx.user_id,
        )
        .on_conflict_do_nothing(index_elements=["list_id", "record_id"])
        .returning(ListMembership.record_id),
    )
    added = result.scalar_one_or_none() is not None
    if added:
        await audit_repo.record(
            session, ctx, EntityKind.LIST_MEMBERSHIP, f"{list_id}:{record_id}", AuditAction.CREATE,
            new_values={"listId": list_id, "recordId": record_id},
        )
        counters.schedule_list_recount(session, list_id)
    return added


async def remove_member(
    session: AsyncSession, ctx: RequestContext, list_id: int, record_id: int
) -> None:
    """Remove a record from a list; NotFound if it was not a member."""
    ctx.require_write()
    await get_list(session, ctx, list_id)
    result = await execute(
        session,
        ctx,
        delete(ListMembership)
        .where(ListMembership.list_id == list_id)
        .where(ListMembership.record_id == record_id)
        .returning(ListMembership.record_id),
    )
    if result.scalar_one_or_none() is None:
        raise NotFound(f"Record {record_id} is not in list {list_id}")
    await audit_repo.record(
        session, ctx, EntityKind.LIST_MEMBERSHIP, f"{list_id}:{record_id}", AuditAction.DELETE,
        previous_values={"listId": list_id, "recordId": record_id},
    )
    counters.schedule_list_recount(session, list_id)


async def set_member_override(
    session: AsyncSession,
    ctx: RequestContext,
    list_id: int,
    record_id: int,
    *,
    pinned: Optional[bool] = None,
    excluded: Optional[bool] = None,
) -> ListMembership:
    """Pin a record into a dynamic list or exclude it from ever matching."""
    ctx.require_write()
    lst = await get_list(session, ctx, list_id)
    await _check_member(session, ctx, lst, record_id)
    flags = {}
    if pinned is not None:
        flags["is_pinned"] = pinned
    if excluded is not None:
        flags["is_excluded"] = excluded
    if not flags:
        raise SchemaViolation("Nothing to override: pass pinned and/or excluded")

    stmt = pg_insert(ListMembership).values(
        list_id=list_id,
        record_id=record_id,
        organization_id=ctx.organization_id,
        added_by_id=ctx.user_id,
        **flags,
    )
    result = await execute(
        session,
        ctx,
        stmt.on_conflict_do_update(index_elements=["list_id", "record_id"], set_=flags)
        .returning(ListMembership),
        execution_options={"populate_existing": True},
    )
    membership = result.scalar_one()
    await audit_repo.record(
        session, ctx, EntityKind.LIST_MEMBERSHIP, f"{list_id}:{record_id}", AuditAction.UPDATE,
        changed_fields=sorted(flags),
        new_values=flags,
    )
    counters.schedule_list_recount(session, list_id)
    return membership


def _add_matching_stmt(lst: RecordList, organization_id, conditions):
    """INSERT ... SELECT of every matching record not already a member.

    Excluded rows already exist, so the conflict clause keeps them out too.
    """
    matching = select(
        literal(lst.id),
        Record.id,
        literal(organization_id, UUID(as_uuid=True)),
    ).where(*conditions)
    return (
        pg_insert(ListMembership)
        .from_select(["list_id", "record_id", "organization_id"], matching)
        .on_conflict_do_nothing(index_elements=["list_id", "record_id"])
        .returning(ListMembership.record_id)
    )


def _remove_stale_stmt(lst: RecordList, conditions):
    """DELETE of unpinned, unexcluded members that no longer match."""
    still_matching = (
        select(Record.id)
        .where(Record.id == ListMembership.record_id, *conditions)
        .correlate(ListMembership)
    )
    return (
        delete(ListMembership)
        .where(ListMembership.list_id == lst.id)
        .where(ListMembership.is_pinned.is_(False))
        .where(ListMembership.is_excluded.is_(False))
        .where(~still_matching.exists())
        .returning(ListMembership.record_id)
    )


async def _refresh(session: AsyncSession, ctx: RequestContext, lst: RecordList) -> dict:
    conditions = await _matching_condition(
        session, ctx, lst.object_definition_id, lst.filter_criteria
    )
    # Both statements run set-based in the database, whatever the list size
    removed = len(
        (await execute(session, ctx, _remove_stale_stmt(lst, conditions), bulk=True)).all()
    )
    added = len(
        (await execute(
            session, ctx, _add_matching_stmt(lst, ctx.organization_id, conditions), bulk=True
        )).all()
    )
    lst.last_refreshed_at = datetime.now(timezone.utc)
    await flush(session, ctx)
    total = await execute(
        session,
        ctx,
        select(func.count())
        .select_from(ListMembership)
        .where(ListMembership.list_id == lst.id)
        .where(ListMembership.is_excluded.is_(False)),
        bulk=True,
    )
    member_count = total.scalar_one()
    if added or removed:
        counters.schedule_list_recount(session, lst.id)
    await audit_repo.record(
        session, ctx, EntityKind.LIST, lst.id, AuditAction.UPDATE,
        changed_fields=["members"],
        details={"added": added, "removed": removed},
    )
    logger.info("Refreshed list %s: +%d -%d", lst.id, added, removed)
    return {"added": added, "removed": removed, "memberCount": member_count}


async def refresh_dynamic_list(session: AsyncSession, ctx: RequestContext, list_id: int) -> dict:
    """Sync a dynamic list's membership with its filter.

    Pinned rows are kept even when they stop matching; excluded rows are
    never re-added.
    """
    ctx.require_write()
    lst = await get_list(session, ctx, list_id)
    if lst.type != "dynamic":
        raise InvalidTransition(f"List {list_id} is static and cannot be refreshed")
    return await run_bounded(ctx, _refresh(session, ctx, lst), bulk=True)


# ---------------------------------------------------------------------------
# Segments
# ---------------------------------------------------------------------------


async def create_segment(
    session: AsyncSession,
    ctx: RequestContext,
    object_type: str,
    name: str,
    rules: list[dict],
    description: Optional[str] = None,
) -> Segment:
    ctx.require_write()
    merged = await object_types_repo.get_merged_schema(session, ctx, object_type)
    groups = _parse_groups(rules)
    filters.build_filter_groups(groups, merged.properties)
    segment = Segment(
        organization_id=ctx.organization_id,
        object_definition_id=merged.object_definition.id,
        name=name,
        description=description,
        rules=[g.model_dump(mode="json") for g in groups],
    )
    session.add(segment)
    await flush(session, ctx)
    await audit_repo.record(
        session, ctx, EntityKind.SEGMENT, segment.id, AuditAction.CREATE,
        object_type=object_type,
        new_values={"name": name, "rules": segment.rules},
    )
    return segment


async def refresh_segment(session: AsyncSession, ctx: RequestContext, segment_id: int) -> Segment:
    """Recount the live records matching a segment's rules."""
    ctx.require_write()
    result = await execute(
        session,
        ctx,
        select(Segment)
        .where(Segment.id == segment_id)
        .where(Segment.organization_id == ctx.organization_id),
    )
    segment = result.scalar_one_or_none()
    if segment is None:
        raise NotFound(f"Segment {segment_id} not found")
    conditions = await _matching_condition(
        session, ctx, segment.object_definition_id, segment.rules
    )
    total = await execute(
        session, ctx, select(func.count()).select_from(Record).where(*conditions), bulk=True
    )
    previous = segment.total_members
    segment.total_members = total.scalar_one()
    segment.last_calculated_at = datetime.now(timezone.utc)
    await flush(session, ctx)
    if segment.total_members != previous:
        await audit_repo.record(
            session, ctx, EntityKind.SEGMENT, segment.id, AuditAction.UPDATE,
            changed_fields=["totalMembers"],
            previous_values={"totalMembers": previous},
            new_values={"totalMembers": segment.total_members},
        )
    return segment
