"""Audit repository — change log, property history, bulk operation log, partitions.

Audit writes are part of the caller's transaction: if the entry cannot be
written the whole mutation fails with it.
"""
import json
import logging
import os
import re
from datetime import date, datetime, timezone
from typing import Any, Iterable, Optional, Union

from dateutil.relativedelta import relativedelta
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from db.context import RequestContext, execute, flush
from db.errors import NotFound
from db.models import (
    AuditAction,
    AuditLog,
    BulkOperationLog,
    EntityKind,
    PropertyHistory,
)

logger = logging.getLogger(__name__)

RETENTION_MONTHS = int(os.environ.get("AUDIT_RETENTION_MONTHS", "12"))

_PARTITION_RE = re.compile(r"^audit_log_(\d{4})_(\d{2})$")
DEFAULT_PARTITION = "audit_log_default"


def jsonable(value: Any) -> Any:
    """Round-trip through JSON so Decimals, datetimes and UUIDs become plain values."""
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


def diff_values(before: dict, after: dict) -> tuple[list[str], dict, dict]:
    """Return (changed keys, previous values, new values) restricted to changes."""
    changed = sorted(k for k in set(before) | set(after) if before.get(k) != after.get(k))
    return (
        changed,
        {k: before.get(k) for k in changed},
        {k: after.get(k) for k in changed},
    )


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


async def record(
    session: AsyncSession,
    ctx: RequestContext,
    entity_type: EntityKind,
    entity_id: Union[int, str],
    action: AuditAction,
    *,
    object_type: Optional[str] = None,
    changed_fields: Optional[list[str]] = None,
    previous_values: Optional[dict] = None,
    new_values: Optional[dict] = None,
    details: Optional[dict] = None,
) -> AuditLog:
    """Append one audit entry for a mutation performed under ``ctx``."""
    entry = AuditLog(
        organization_id=ctx.organization_id,
        entity_type=EntityKind(entity_type).value,
        entity_id=str(entity_id),
        object_type=object_type,
        action=AuditAction(action).value,
        changed_fields=changed_fields,
        previous_values=jsonable(previous_values),
        new_values=jsonable(new_values),
        action_details=jsonable(details),
        actor_id=ctx.user_id,
        source=ctx.source,
        request_id=ctx.request_id,
    )
    session.add(entry)
    await flush(session, ctx)
    return entry


async def get_audit_trail(
    session: AsyncSession,
    ctx: RequestContext,
    entity_type: EntityKind,
    entity_id: Union[int, str],
    limit: int = 100,
) -> list[AuditLog]:
    """Return the newest audit entries for one entity, newest first."""
    result = await execute(
        session,
        ctx,
        select(AuditLog)
        .where(AuditLog.organization_id == ctx.organization_id)
        .where(AuditLog.entity_type == EntityKind(entity_type).value)
        .where(AuditLog.entity_id == str(entity_id))
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(limit),
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Property history
# ---------------------------------------------------------------------------


async def record_property_changes(
    session: AsyncSession,
    ctx: RequestContext,
    record_id: int,
    object_type: str,
    previous: dict,
    new: dict,
    keys: Iterable[str],
) -> int:
    """Write one PropertyHistory row per changed key."""
    n = 0
    for key in keys:
        value = new.get(key)
        session.add(
            PropertyHistory(
                organization_id=ctx.organization_id,
                record_id=record_id,
                object_type=object_type,
                property_name=key,
                previous_value=jsonable(previous.get(key)),
                new_value=jsonable(value),
                change_type="unset" if value is None else "set",
                changed_by_id=ctx.user_id,
                source=ctx.source,
            )
        )
        n += 1
    if n:
        await flush(session, ctx)
    return n


async def get_property_history(
    session: AsyncSession,
    ctx: RequestContext,
    record_id: int,
    property_name: Optional[str] = None,
    limit: int = 100,
) -> list[PropertyHistory]:
    stmt = (
        select(PropertyHistory)
        .where(PropertyHistory.organization_id == ctx.organization_id)
        .where(PropertyHistory.record_id == record_id)
    )
    if property_name:
        stmt = stmt.where(PropertyHistory.property_name == property_name)
    result = await execute(
        session,
        ctx,
        stmt.order_by(PropertyHistory.changed_at.desc(), PropertyHistory.id.desc()).limit(limit),
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Bulk operation log
# ---------------------------------------------------------------------------


async def log_bulk_operation(
    session: AsyncSession,
    ctx: RequestContext,
    operation_type: AuditAction,
    object_type: str,
    *,
    total: int,
    success_ids: list[int],
    failures: list[dict],
    skipped: int,
    rollback_data: Optional[dict],
    started_at: datetime,
) -> BulkOperationLog:
    """Persist the outcome of a batch call."""
    completed_at = datetime.now(timezone.utc)
    op = BulkOperationLog(
        organization_id=ctx.organization_id,
        operation_type=AuditAction(operation_type).value,
        object_type=object_type,
        total_records=total,
        success_count=len(success_ids),
        failure_count=len(failures),
        skipped_count=skipped,
        affected_ids=list(success_ids),
        success_records=list(success_ids),
        failure_records=jsonable(failures) or [],
        rollback_data=jsonable(rollback_data),
        is_reversible=bool(success_ids),
        initiated_by_id=ctx.user_id,
        source=ctx.source,
        started_at=started_at,
        completed_at=completed_at,
        duration_ms=int((completed_at - started_at).total_seconds() * 1000),
    )
    session.add(op)
    await flush(session, ctx)
    await record(
        session,
        ctx,
        EntityKind.BULK_OPERATION,
        op.id,
        operation_type,
        object_type=object_type,
        details={"success": op.success_count, "failed": op.failure_count, "skipped": skipped},
    )
    logger.info(
        "%s on %s: %d ok, %d failed, %d skipped",
        op.operation_type, object_type, op.success_count, op.failure_count, skipped,
    )
    return op


async def get_bulk_operation(
    session: AsyncSession,
    ctx: RequestContext,
    operation_id: int,
    *,
    for_update: bool = False,
) -> BulkOperationLog:
    stmt = (
        select(BulkOperationLog)
        .where(BulkOperationLog.id == operation_id)
        .where(BulkOperationLog.organization_id == ctx.organization_id)
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await execute(session, ctx, stmt)
    op = result.scalar_one_or_none()
    if op is None:
        raise NotFound(f"Bulk operation {operation_id} not found")
    return op


# ---------------------------------------------------------------------------
# Monthly partitions of audit.audit_log
# ---------------------------------------------------------------------------


def month_start(day: date) -> date:
    return day.replace(day=1)


def partition_name(month: date) -> str:
    return f"audit_log_{month.year:04d}_{month.month:02d}"


def parse_partition_name(name: str) -> Optional[date]:
    """Return the first day of the month a partition covers, or None."""
    m = _PARTITION_RE.match(name)
    if not m:
        return None
    year, month = int(m.group(1)), int(m.group(2))
    if not 1 <= month <= 12:
        return None
    return date(year, month, 1)


def partition_bounds(month: date) -> tuple[date, date]:
    start = month_start(month)
    return start, start + relativedelta(months=1)


def months_to_ensure(today: date) -> list[date]:
    """The current and the next month."""
    current = month_start(today)
    return [current, current + relativedelta(months=1)]


def expired_partitions(names: Iterable[str], retention_months: int, today: date) -> list[str]:
    """Partitions whose whole range ends on or before the retention cutoff.

    With retention_months=12 on 2026-10-17 the cutoff is 2025-10-01, so
    audit_log_2025_09 is expired and audit_log_2025_10 is kept.
    """
    if retention_months < 1:
        raise ValueError("retention_months must be at least 1")
    cutoff = month_start(today) - relativedelta(months=retention_months)
    out = []
    for name in names:
        month = parse_partition_name(name)
        if month is not None and partition_bounds(month)[1] <= cutoff:
            out.append(name)
    return sorted(out)


def _bound_literal(day: date) -> str:
    return f"'{day.isoformat()} 00:00:00+00'"


def create_partition_sql(month: date) -> str:
    start, end = partition_bounds(month)
    return (
        f"CREATE TABLE IF NOT EXISTS audit.{partition_name(month)} "
        f"PARTITION OF audit.audit_log "
        f"FOR VALUES FROM ({_bound_literal(start)}) "
        f"TO ({_bound_literal(end)})"
    )


def create_default_partition_sql() -> str:
    """Catch-all partition for rows no monthly partition covers yet."""
    return (
        f"CREATE TABLE IF NOT EXISTS audit.{DEFAULT_PARTITION} "
        f"PARTITION OF audit.audit_log DEFAULT"
    )


def carve_partition_sql(month: date) -> list[str]:
    """Statements moving a month's rows out of the default partition into their own.

    PostgreSQL refuses to create a range partition while the default
    partition holds rows in that range, so the month is built as a plain
    table and attached once it holds those rows.
    """
    name = partition_name(month)
    start, end = partition_bounds(month)
    in_range = f"created_at >= {_bound_literal(start)} AND created_at < {_bound_literal(end)}"
    return [
        f"CREATE TABLE audit.{name} "
        f"(LIKE audit.audit_log INCLUDING DEFAULTS INCLUDING CONSTRAINTS)",
        f"INSERT INTO audit.{name} SELECT * FROM audit.{DEFAULT_PARTITION} WHERE {in_range}",
        f"DELETE FROM audit.{DEFAULT_PARTITION} WHERE {in_range}",
        f"ALTER TABLE audit.audit_log ATTACH PARTITION audit.{name} "
        f"FOR VALUES FROM ({_bound_literal(start)}) TO ({_bound_literal(end)})",
    ]


async def list_audit_partitions(session: AsyncSession) -> list[str]:
    result = await execute(
        session,
        None,
        text(
            "SELECT c.relname FROM pg_inherits i "
            "JOIN pg_class c ON c.oid = i.inhrelid "
            "JOIN pg_class p ON p.oid = i.inhparent "
            "JOIN pg_namespace n ON n.oid = p.relnamespace "
            "WHERE n.nspname = 'audit' AND p.relname = 'audit_log'"
        ),
    )
    return sorted(row[0] for row in result.all())


async def _default_holds_rows(session: AsyncSession, month: date) -> bool:
    start, end = partition_bounds(month)
    result = await execute(
        session,
        None,
        text(
            f"SELECT EXISTS (SELECT 1 FROM audit.{DEFAULT_PARTITION} "
            f"WHERE created_at >= {_bound_literal(start)} AND created_at < {_bound_literal(end)})"
        ),
    )
    return bool(result.scalar_one())


async def ensure_audit_partitions(session: AsyncSession, today: Optional[date] = None) -> list[str]:
    """Create the default partition and the current and next monthly ones if missing.

    Indexes declared on audit.audit_log are attached to each new partition
    by PostgreSQL automatically. Rows that landed in the default partition
    because this job did not run in time are moved into their month.
    """
    today = today or datetime.now(timezone.utc).date()
    existing = set(await list_audit_partitions(session))
    created = []
    if DEFAULT_PARTITION not in existing:
        await execute(session, None, text(create_default_partition_sql()))
        created.append(DEFAULT_PARTITION)
        logger.info("Created audit partition audit.%s", DEFAULT_PARTITION)
    for month in months_to_ensure(today):
        name = partition_name(month)
        if name in existing:
            continue
        if DEFAULT_PARTITION in existing and await _default_holds_rows(session, month):
            for stmt in carve_partition_sql(month):
                await execute(session, None, text(stmt), bulk=True)
            logger.warning("Moved audit rows for %s out of the default partition", name)
        else:
            await execute(session, None, text(create_partition_sql(month)))
        created.append(name)
        logger.info("Created audit partition audit.%s", name)
    return created


async def drop_expired_audit_partitions(
    session: AsyncSession,
    retention_months: int = RETENTION_MONTHS,
    today: Optional[date] = None,
) -> list[str]:
    """Drop partitions that lie wholly outside the retention window."""
    today = today or datetime.now(timezone.utc).date()
    names = expired_partitions(await list_audit_partitions(session), retention_months, today)
    for name in names:
        await execute(session, None, text(f"DROP TABLE IF EXISTS audit.{name}"))
        logger.info("Dropped expired audit partition audit.%s", name)
    return names
