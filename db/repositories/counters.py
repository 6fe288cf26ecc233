"""Denormalized counters — list member counts and pipeline record counts.

Membership writes never touch the counters themselves. They schedule a
recount on the session, and once that session's transaction commits,
``run_committed_recounts`` recomputes each scheduled entity in its own
short transaction: take an advisory lock keyed by ``"<kind>_<id>"``, count
the committed membership rows, write the total back, commit. Only one lock
is ever held at a time, so request transactions touching several lists or
pipelines in any order cannot deadlock on counters. A failed recompute is
logged and left for the reconciliation sweep; the membership write that
scheduled it is already committed.
"""
import logging
from typing import Optional

from sqlalchemy import event, func, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import Session

from db.context import execute
from db.errors import StorageError
from db.models import ListMembership, Pipeline, RecordList, RecordStage

logger = logging.getLogger(__name__)

LIST_COUNTER = "list_count"
PIPELINE_COUNTER = "pipeline_count"

_PENDING = "counters_pending"
_COMMITTED = "counters_committed"


def lock_key(kind: str, entity_id: int) -> str:
    return f"{kind}_{entity_id}"


async def _advisory_xact_lock(conn, key: str) -> None:
    await execute(conn, None, text("SELECT pg_advisory_xact_lock(hashtext(:key))"), {"key": key})


def _list_count_subquery(list_id_expr):
    return (
        select(func.count())
        .select_from(ListMembership)
        .where(ListMembership.list_id == list_id_expr)
        .where(ListMembership.is_excluded.is_(False))
        .scalar_subquery()
    )


def _pipeline_count_subquery(pipeline_id_expr):
    return (
        select(func.count(RecordStage.record_id.distinct()))
        .where(RecordStage.pipeline_id == pipeline_id_expr)
        .scalar_subquery()
    )


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


def _sync(session) -> Session:
    return getattr(session, "sync_session", session)


def _schedule(session, kind: str, entity_id: int) -> None:
    _sync(session).info.setdefault(_PENDING, set()).add((kind, entity_id))


def schedule_list_recount(session, list_id: int) -> None:
    """Recount ``list_id`` once the session's current transaction commits."""
    _schedule(session, LIST_COUNTER, list_id)


def schedule_pipeline_recount(session, pipeline_id: int) -> None:
    """Recount ``pipeline_id`` once the session's current transaction commits."""
    _schedule(session, PIPELINE_COUNTER, pipeline_id)


@event.listens_for(Session, "after_commit")
def _promote_scheduled(session):
    pending = session.info.pop(_PENDING, None)
    if pending:
        session.info.setdefault(_COMMITTED, set()).update(pending)


@event.listens_for(Session, "after_transaction_end")
def _drop_uncommitted(session, transaction):
    # A rolled back transaction's membership writes never happened
    if transaction.parent is None:
        session.info.pop(_PENDING, None)


async def run_committed_recounts(session: AsyncSession) -> None:
    """Recompute every counter whose membership change has committed.

    Entities are processed one at a time in a fixed order, each in its own
    transaction on a fresh connection.
    """
    committed = _sync(session).info.pop(_COMMITTED, None)
    if not committed:
        return
    engine = session.bind
    for kind, entity_id in sorted(committed):
        if kind == LIST_COUNTER:
            await recompute_list_member_count(engine, entity_id)
        else:
            await recompute_pipeline_record_count(engine, entity_id)


# ---------------------------------------------------------------------------
# Recompute
# ---------------------------------------------------------------------------


async def _recompute(engine: AsyncEngine, key: str, stmt) -> Optional[int]:
    async with engine.begin() as conn:
        await _advisory_xact_lock(conn, key)
        result = await execute(conn, None, stmt)
        return result.scalar_one_or_none()


async def recompute_list_member_count(engine: AsyncEngine, list_id: int) -> Optional[int]:
    """Recount non-excluded members of a list. Returns None if the recompute failed."""
    try:
        return await _recompute(
            engine,
            lock_key(LIST_COUNTER, list_id),
            update(RecordList)
            .where(RecordList.id == list_id)
            .values(member_count=_list_count_subquery(list_id))
            .returning(RecordList.member_count),
        )
    except (StorageError, SQLAlchemyError):
        logger.exception("member_count recompute failed for list %s", list_id)
        return None


async def recompute_pipeline_record_count(
    engine: AsyncEngine, pipeline_id: int
) -> Optional[int]:
    """Recount records currently in a pipeline. Returns None if the recompute failed."""
    try:
        return await _recompute(
            engine,
            lock_key(PIPELINE_COUNTER, pipeline_id),
            update(Pipeline)
            .where(Pipeline.id == pipeline_id)
            .values(record_count=_pipeline_count_subquery(pipeline_id))
            .returning(Pipeline.record_count),
        )
    except (StorageError, SQLAlchemyError):
        logger.exception("record_count recompute failed for pipeline %s", pipeline_id)
        return None


async def reconcile_all_counters(session: AsyncSession) -> dict:
    """Sweep every list and pipeline, fixing counters that drifted.

    Drift is detected with one query per table; each drifted entity is then
    recomputed in its own committed transaction under its own advisory lock,
    so the sweep never holds more than one lock and never races a
    concurrent request-time recompute.
    """
    drifted_lists = await execute(
        session,
        None,
        select(RecordList.id)
        .where(RecordList.member_count != _list_count_subquery(RecordList.id))
        .order_by(RecordList.id),
        bulk=True,
    )
    drifted_pipelines = await execute(
        session,
        None,
        select(Pipeline.id)
        .where(Pipeline.record_count != _pipeline_count_subquery(Pipeline.id))
        .order_by(Pipeline.id),
        bulk=True,
    )
    list_ids = [row[0] for row in drifted_lists.all()]
    pipeline_ids = [row[0] for row in drifted_pipelines.all()]

    engine = session.bind
    fixed_lists = 0
    for list_id in list_ids:
        if await recompute_list_member_count(engine, list_id) is not None:
            fixed_lists += 1
    fixed_pipelines = 0
    for pipeline_id in pipeline_ids:
        if await recompute_pipeline_record_count(engine, pipeline_id) is not None:
            fixed_pipelines += 1

    summary = {
        "lists_drifted": len(list_ids),
        "lists_fixed": fixed_lists,
        "pipelines_drifted": len(pipeline_ids),
        "pipelines_fixed": fixed_pipelines,
    }
    logger.info("Counter reconciliation: %s", summary)
    return summary
