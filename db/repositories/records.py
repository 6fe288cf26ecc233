"""Record store — create, update, archive, fetch, search and batch operations.

Every write validates against the organization's merged schema before
touching the database, appends an audit entry plus per-property history,
and invalidates the cached views it could have changed.
"""
import copy
import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Union

from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from db import cache, filters
from db.context import RequestContext, execute, flush, run_bounded
from db.errors import (
    InvalidTransition,
    NotFound,
    PlatformError,
    RequestCancelled,
    SchemaViolation,
    StorageError,
    from_validation_error,
)
from db.models import AuditAction, EntityKind, ObjectDefinition, Record
from db.repositories import associations as associations_repo
from db.repositories import audit as audit_repo
from db.repositories import object_types as object_types_repo
from db.repositories import pipelines as pipelines_repo
from schemas.bulk import BulkError, BulkResult
from schemas.properties import (
    apply_defaults,
    compute_display_name,
    compute_search_vector,
    validate_properties,
)
from schemas.search import SearchPage, SearchRequest

logger = logging.getLogger(__name__)

# Per-row failures of these kinds abort the whole batch
_FATAL = (StorageError, RequestCancelled)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def to_dict(
    record: Record, object_type: str, properties: Optional[Iterable[str]] = None
) -> dict:
    """Serialize a record; ``properties`` limits the returned property keys."""
    props = record.properties or {}
    if properties is not None:
        wanted = set(properties)
        props = {k: v for k, v in props.items() if k in wanted}
    return {
        "id": record.id,
        "objectType": object_type,
        "properties": copy.deepcopy(props),
        "displayName": record.display_name,
        "externalId": record.external_id,
        "archived": record.is_archived,
        "createdAt": _iso(record.created_at),
        "updatedAt": _iso(record.updated_at),
    }


async def _load(
    session: AsyncSession,
    ctx: RequestContext,
    record_id: int,
    *,
    for_update: bool = False,
) -> tuple[Record, str]:
    """Return (record, object_type) scoped to the caller's organization."""
    stmt = (
        select(Record, ObjectDefinition.object_type)
        .join(ObjectDefinition, Record.object_definition_id == ObjectDefinition.id)
        .where(Record.id == record_id)
        .where(Record.organization_id == ctx.organization_id)
    )
    if for_update:
        stmt = stmt.with_for_update(of=Record).execution_options(populate_existing=True)
    row = (await execute(session, ctx, stmt)).first()
    if row is None:
        raise NotFound(f"Record {record_id} not found")
    return row[0], row[1]


async def get_record(session: AsyncSession, ctx: RequestContext, record_id: int) -> Record:
    """Return the ORM row for internal callers, or raise NotFound."""
    record, _ = await _load(session, ctx, record_id)
    return record


# ---------------------------------------------------------------------------
# Single-record writes
# ---------------------------------------------------------------------------


async def create(
    session: AsyncSession,
    ctx: RequestContext,
    object_type: str,
    properties: dict[str, Any],
    *,
    external_id: Optional[str] = None,
    enter_default_pipeline: bool = True,
) -> Record:
    """Validate and insert a record, then place it in the default pipeline."""
    ctx.require_write()
    merged = await object_types_repo.get_merged_schema(session, ctx, object_type)
    info = merged.object_definition

    candidate = apply_defaults(properties or {}, merged.properties)
    validate_properties(candidate, merged.properties)
    props = {k: v for k, v in candidate.items() if v is not None}

    record = Record(
        object_definition_id=info.id,
        organization_id=ctx.organization_id,
        properties=props,
        display_name=compute_display_name(props, "", info.primary_display_property) or None,
        search_vector=compute_search_vector(props),
        external_id=external_id,
        created_by_id=ctx.user_id,
        updated_by_id=ctx.user_id,
    )
    session.add(record)
    try:
        await flush(session, ctx)
    except IntegrityError:
        raise SchemaViolation(
            f"externalId '{external_id}' is already used by another {object_type}"
        ) from None
    if record.display_name is None:
        record.display_name = f"{object_type}_{record.id}"
        await flush(session, ctx)

    keys = sorted(props)
    await audit_repo.record(
        session, ctx, EntityKind.RECORD, record.id, AuditAction.CREATE,
        object_type=object_type,
        changed_fields=keys,
        new_values=props,
    )
    await audit_repo.record_property_changes(
        session, ctx, record.id, object_type, {}, props, keys
    )
    cache.invalidate_on_commit(session, cache.invalidate_record, ctx.organization_id, record.id)

    if enter_default_pipeline:
        await pipelines_repo.enter_default_pipeline(session, ctx, record.id, info.id)
    return record


async def _update(
    session: AsyncSession,
    ctx: RequestContext,
    record_id: int,
    properties: dict[str, Any],
) -> tuple[Record, dict]:
    """Merge ``properties`` into a record; returns (record, previous values of changed keys)."""
    ctx.require_write()
    record, object_type = await _load(session, ctx, record_id, for_update=True)
    merged = await object_types_repo.get_merged_schema(session, ctx, object_type)
    validate_properties(properties, merged.properties, partial=True)

    before = dict(record.properties or {})
    after = dict(before)
    for key, value in properties.items():
        if value is None:
            after.pop(key, None)
        else:
            after[key] = value
    changed, previous, new = audit_repo.diff_values(before, after)
    if not changed:
        return record, {}

    record.properties = after
    record.search_vector = compute_search_vector(after)
    record.display_name = compute_display_name(
        after, f"{object_type}_{record.id}", merged.object_definition.primary_display_property
    )
    record.updated_by_id = ctx.user_id
    await flush(session, ctx)

    await audit_repo.record(
        session, ctx, EntityKind.RECORD, record.id, AuditAction.UPDATE,
        object_type=object_type,
        changed_fields=changed,
        previous_values=previous,
        new_values=new,
    )
    await audit_repo.record_property_changes(
        session, ctx, record.id, object_type, before, after, changed
    )
    cache.invalidate_on_commit(session, cache.invalidate_record, ctx.organization_id, record.id)
    return record, previous


async def update(
    session: AsyncSession,
    ctx: RequestContext,
    record_id: int,
    properties: dict[str, Any],
) -> Record:
    """Partial update: supplied keys are merged in, ``None`` clears a key."""
    record, _ = await _update(session, ctx, record_id, properties)
    return record


async def _set_archived(
    session: AsyncSession, ctx: RequestContext, record_id: int, archived: bool
) -> Record:
    ctx.require_write()
    record, object_type = await _load(session, ctx, record_id, for_update=True)
    if record.is_archived == archived:
        return record

    record.is_archived = archived
    record.archived_at = datetime.now(timezone.utc) if archived else None
    record.updated_by_id = ctx.user_id
    await flush(session, ctx)
    details = None
    if archived:
        removed = await associations_repo.apply_cascade(session, ctx, record.id, object_type)
        details = {"cascadedAssociations": removed} if removed else None
    await audit_repo.record(
        session, ctx, EntityKind.RECORD, record.id,
        AuditAction.ARCHIVE if archived else AuditAction.RESTORE,
        object_type=object_type,
        changed_fields=["isArchived"],
        previous_values={"isArchived": not archived},
        new_values={"isArchived": archived},
        details=details,
    )
    cache.invalidate_on_commit(session, cache.invalidate_record, ctx.organization_id, record.id)
    return record


async def archive(session: AsyncSession, ctx: RequestContext, record_id: int) -> Record:
    """Soft-delete a record and apply association cascade rules."""
    return await _set_archived(session, ctx, record_id, True)


async def unarchive(session: AsyncSession, ctx: RequestContext, record_id: int) -> Record:
    return await _set_archived(session, ctx, record_id, False)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_by_id(
    session: AsyncSession,
    ctx: RequestContext,
    record_id: int,
    *,
    properties: Optional[list[str]] = None,
    associations: Optional[list[str]] = None,
) -> dict:
    """Fetch one record of the caller's organization.

    ``associations`` names counterpart object types whose associated
    records are included under ``"associations"``.
    """
    key = (ctx.organization_id, record_id)
    snapshot = cache.lookup(session, cache.records, key)
    if snapshot is None:
        record, object_type = await _load(session, ctx, record_id)
        snapshot = to_dict(record, object_type)
        cache.remember(session, cache.records, key, snapshot)

    out = copy.deepcopy(snapshot)
    if properties is not None:
        wanted = set(properties)
        out["properties"] = {k: v for k, v in out["properties"].items() if k in wanted}
    if associations:
        out["associations"] = await associations_repo.associations_by_object_type(
            session, ctx, record_id, associations
        )
    return out


def _parse_search(request: Union[SearchRequest, dict, None]) -> SearchRequest:
    if isinstance(request, SearchRequest):
        return request
    try:
        return SearchRequest.model_validate(request or {})
    except ValidationError as exc:
        raise from_validation_error(exc, "Invalid search request") from None


async def search(
    session: AsyncSession,
    ctx: RequestContext,
    object_type: str,
    request: Union[SearchRequest, dict, None] = None,
) -> SearchPage:
    """Filter, sort and keyset-paginate records of one object type."""
    req = _parse_search(request)
    merged = await object_types_repo.get_merged_schema(session, ctx, object_type)

    cache_key = None
    if req.is_simple:
        cache_key = (ctx.organization_id, object_type, req.query, req.limit, req.after, req.archived)
        cached = cache.lookup(session, cache.searches, cache_key)
        if cached is not None:
            return cached.model_copy(deep=True)

    conditions = [
        Record.organization_id == ctx.organization_id,
        Record.object_definition_id == merged.object_definition.id,
        Record.is_archived.is_(req.archived),
    ]
    filter_clause = filters.build_filter_groups(req.filter_groups, merged.properties)
    if filter_clause is not None:
        conditions.append(filter_clause)
    query_clause = filters.query_clause(req.query)
    if query_clause is not None:
        conditions.append(query_clause)
    ordering = filters.Ordering(req.sorts[0] if req.sorts else None, merged.properties)

    total = (
        await execute(session, ctx, select(func.count()).select_from(Record).where(*conditions))
    ).scalar_one()

    stmt = select(Record).where(*conditions)
    if req.after:
        stmt = stmt.where(ordering.after(filters.decode_cursor(req.after)))
    result = await execute(session, ctx, stmt.order_by(*ordering.order_by()).limit(req.limit + 1))
    rows = list(result.scalars().all())
    has_more = len(rows) > req.limit
    rows = rows[: req.limit]

    page = SearchPage(
        results=[to_dict(r, object_type, req.properties) for r in rows],
        total=total,
        next_after=ordering.cursor_for(rows[-1]) if has_more else None,
    )
    if cache_key is not None:
        cache.remember(session, cache.searches, cache_key, page.model_copy(deep=True))
    return page


async def list_records(
    session: AsyncSession,
    ctx: RequestContext,
    object_type: str,
    limit: int = 10,
    after: Optional[str] = None,
    archived: bool = False,
) -> SearchPage:
    """Newest-first listing; same paging contract as search."""
    return await search(
        session, ctx, object_type, {"limit": limit, "after": after, "archived": archived}
    )


# ---------------------------------------------------------------------------
# Batch operations
# ---------------------------------------------------------------------------


def _bulk_result(op_id: int, ids: list[int], failures: list[dict], skipped: int) -> BulkResult:
    return BulkResult(
        operation_id=op_id,
        success=len(ids),
        failed=len(failures),
        skipped=skipped,
        errors=[BulkError(**f) for f in failures],
        record_ids=ids,
    )


async def _batch_create(
    session: AsyncSession, ctx: RequestContext, object_type: str, items: list[dict]
) -> BulkResult:
    started_at = datetime.now(timezone.utc)
    created: list[int] = []
    failures: list[dict] = []
    skipped = 0
    for index, item in enumerate(items):
        props = item.get("properties") if isinstance(item, dict) else None
        if not props:
            skipped += 1
            continue
        try:
            async with session.begin_nested():
                record = await create(
                    session, ctx, object_type, props, external_id=item.get("externalId")
                )
        except _FATAL:
            raise
        except PlatformError as exc:
            failures.append({"recordId": index, "kind": exc.kind, "error": exc.message})
            continue
        created.append(record.id)

    op = await audit_repo.log_bulk_operation(
        session, ctx, AuditAction.BULK_CREATE, object_type,
        total=len(items),
        success_ids=created,
        failures=failures,
        skipped=skipped,
        rollback_data={"createdIds": created},
        started_at=started_at,
    )
    return _bulk_result(op.id, created, failures, skipped)


async def batch_create(
    session: AsyncSession, ctx: RequestContext, object_type: str, items: list[dict]
) -> BulkResult:
    """Create many records; each item is ``{"properties": {...}, "externalId"?: str}``.

    Failing items are reported by index and do not stop the batch. Items
    without properties are skipped.
    """
    ctx.require_write()
    await object_types_repo.get_merged_schema(session, ctx, object_type)
    return await run_bounded(ctx, _batch_create(session, ctx, object_type, items), bulk=True)


async def _batch_update(
    session: AsyncSession, ctx: RequestContext, object_type: str, items: list[dict]
) -> BulkResult:
    started_at = datetime.now(timezone.utc)
    updated: list[int] = []
    failures: list[dict] = []
    previous_values: dict[str, dict] = {}
    skipped = 0
    for index, item in enumerate(items):
        record_id = item.get("id") if isinstance(item, dict) else None
        props = item.get("properties") if isinstance(item, dict) else None
        # A non-integer id must fail here: at the driver it would abort the batch
        if isinstance(record_id, bool) or not isinstance(record_id, int) or not isinstance(props, dict):
            failures.append({
                "recordId": index,
                "kind": SchemaViolation.kind,
                "error": "Each item needs an id and a properties object",
            })
            continue
        try:
            async with session.begin_nested():
                record, object_type_of = await _load(session, ctx, record_id)
                if object_type_of != object_type:
                    raise NotFound(f"Record {record_id} not found")
                record, previous = await _update(session, ctx, record_id, props)
        except _FATAL:
            raise
        except PlatformError as exc:
            failures.append({"recordId": record_id, "kind": exc.kind, "error": exc.message})
            continue
        if not previous:
            skipped += 1
            continue
        updated.append(record.id)
        previous_values[str(record.id)] = previous

    op = await audit_repo.log_bulk_operation(
        session, ctx, AuditAction.BULK_UPDATE, object_type,
        total=len(items),
        success_ids=updated,
        failures=failures,
        skipped=skipped,
        rollback_data={"previousValues": previous_values},
        started_at=started_at,
    )
    return _bulk_result(op.id, updated, failures, skipped)


async def batch_update(
    session: AsyncSession, ctx: RequestContext, object_type: str, items: list[dict]
) -> BulkResult:
    """Update many records; each item is ``{"id": int, "properties": {...}}``.

    Items that change nothing count as skipped.
    """
    ctx.require_write()
    await object_types_repo.get_merged_schema(session, ctx, object_type)
    return await run_bounded(ctx, _batch_update(session, ctx, object_type, items), bulk=True)


async def _rollback(session: AsyncSession, ctx: RequestContext, op) -> BulkResult:
    reverted: list[int] = []
    failures: list[dict] = []
    data = op.rollback_data or {}

    for record_id in data.get("createdIds", []):
        try:
            async with session.begin_nested():
                await _set_archived(session, ctx, record_id, True)
        except _FATAL:
            raise
        except PlatformError as exc:
            failures.append({"recordId": record_id, "kind": exc.kind, "error": exc.message})
            continue
        reverted.append(record_id)

    for record_id, previous in (data.get("previousValues") or {}).items():
        try:
            async with session.begin_nested():
                await _update(session, ctx, int(record_id), previous)
        except _FATAL:
            raise
        except PlatformError as exc:
            failures.append({"recordId": int(record_id), "kind": exc.kind, "error": exc.message})
            continue
        reverted.append(int(record_id))

    op.was_rolled_back = True
    op.rolled_back_at = datetime.now(timezone.utc)
    op.rolled_back_by_id = ctx.user_id
    await flush(session, ctx)
    await audit_repo.record(
        session, ctx, EntityKind.BULK_OPERATION, op.id, AuditAction.ROLLBACK,
        object_type=op.object_type,
        details={"reverted": len(reverted), "failed": len(failures)},
    )
    logger.info("Rolled back bulk operation %s: %d reverted, %d failed", op.id, len(reverted), len(failures))
    return _bulk_result(op.id, reverted, failures, 0)


async def rollback_bulk_operation(
    session: AsyncSession, ctx: RequestContext, operation_id: int
) -> BulkResult:
    """Reverse a batch: archive the records it created, restore values it changed."""
    ctx.require_write()
    op = await audit_repo.get_bulk_operation(session, ctx, operation_id, for_update=True)
    if op.was_rolled_back:
        raise InvalidTransition(f"Bulk operation {operation_id} was already rolled back")
    if not op.is_reversible or not op.rollback_data:
        raise InvalidTransition(f"Bulk operation {operation_id} cannot be rolled back")
    return await run_bounded(ctx, _rollback(session, ctx, op), bulk=True)
