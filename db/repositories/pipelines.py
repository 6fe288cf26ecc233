"""Pipeline & stage engine — stage moves, transition history, automations."""
import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, Union

from pydantic import ValidationError
from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from db.context import RequestContext, execute, flush
from db.errors import (
    DuplicateDefinition,
    InvalidTransition,
    NotFound,
    SchemaViolation,
    from_validation_error,
)
from db.models import (
    AuditAction,
    EntityKind,
    Pipeline,
    Record,
    RecordStage,
    StageAutomation,
    StageHistory,
)
from db.repositories import audit as audit_repo
from db.repositories import counters
from db.repositories import object_types as object_types_repo
from schemas.pipelines import (
    AutomationCreate,
    PipelineCreate,
    StageMove,
    TriggerType,
    find_stage,
    is_adjacent,
    ordered_stages,
)

logger = logging.getLogger(__name__)


def _decimal(value: Optional[float]) -> Optional[Decimal]:
    return None if value is None else Decimal(str(value))


def _stage_values(rs: RecordStage) -> dict:
    return {
        "stageId": rs.stage_id,
        "stageName": rs.stage_name,
        "amount": rs.amount,
        "probability": rs.probability,
        "expectedCloseDate": rs.expected_close_date,
    }


# ---------------------------------------------------------------------------
# Pipelines
# ---------------------------------------------------------------------------


async def create_pipeline(
    session: AsyncSession, ctx: RequestContext, data: Union[PipelineCreate, dict]
) -> Pipeline:
    """Create a pipeline; a new default pipeline replaces the previous default."""
    ctx.require_write()
    try:
        payload = data if isinstance(data, PipelineCreate) else PipelineCreate.model_validate(data)
    except ValidationError as exc:
        raise from_validation_error(exc, "Invalid pipeline") from None
    info = await object_types_repo.resolve_object_type(session, ctx, payload.object_type)

    if payload.is_default:
        await execute(
            session,
            ctx,
            update(Pipeline)
            .where(Pipeline.organization_id == ctx.organization_id)
            .where(Pipeline.object_definition_id == info.id)
            .where(Pipeline.is_default.is_(True))
            .values(is_default=False),
            execution_options={"synchronize_session": "fetch"},
        )

    pipeline = Pipeline(
        organization_id=ctx.organization_id,
        object_definition_id=info.id,
        name=payload.name,
        description=payload.description,
        stages=[
            s.model_dump(mode="json", exclude_none=True)
            for s in sorted(payload.stages, key=lambda s: s.order)
        ],
        is_default=payload.is_default,
        allow_skip_stages=payload.allow_skip_stages,
    )
    session.add(pipeline)
    try:
        await flush(session, ctx)
    except IntegrityError:
        raise DuplicateDefinition(
            f"Pipeline '{payload.name}' already exists for {payload.object_type}"
        ) from None

    await audit_repo.record(
        session, ctx, EntityKind.PIPELINE, pipeline.id, AuditAction.CREATE,
        object_type=payload.object_type,
        new_values=payload.model_dump(mode="json"),
    )
    logger.info("Created pipeline %s (%s) for %s", pipeline.id, payload.name, payload.object_type)
    return pipeline


async def get_pipeline(
    session: AsyncSession,
    ctx: RequestContext,
    pipeline_id: int,
) -> Pipeline:
    result = await execute(
        session,
        ctx,
        select(Pipeline)
        .where(Pipeline.id == pipeline_id)
        .where(Pipeline.organization_id == ctx.organization_id),
    )
    pipeline = result.scalar_one_or_none()
    if pipeline is None:
        raise NotFound(f"Pipeline {pipeline_id} not found")
    return pipeline


async def get_default_pipeline(
    session: AsyncSession, ctx: RequestContext, object_type: str
) -> Optional[Pipeline]:
    info = await object_types_repo.resolve_object_type(session, ctx, object_type)
    return await _default_pipeline(session, ctx, info.id)


async def _default_pipeline(
    session: AsyncSession, ctx: RequestContext, object_definition_id: int
) -> Optional[Pipeline]:
    result = await execute(
        session,
        ctx,
        select(Pipeline)
        .where(Pipeline.organization_id == ctx.organization_id)
        .where(Pipeline.object_definition_id == object_definition_id)
        .where(Pipeline.is_default.is_(True))
        .where(Pipeline.is_active.is_(True))
        .limit(1),
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Stage moves
# ---------------------------------------------------------------------------


async def _current_stage(
    session: AsyncSession,
    ctx: RequestContext,
    record_id: int,
    pipeline_id: int,
    *,
    for_update: bool = False,
) -> Optional[RecordStage]:
    stmt = (
        select(RecordStage)
        .where(RecordStage.record_id == record_id)
        .where(RecordStage.pipeline_id == pipeline_id)
        .where(RecordStage.organization_id == ctx.organization_id)
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return (await execute(session, ctx, stmt)).scalar_one_or_none()


async def move_to_stage(
    session: AsyncSession,
    ctx: RequestContext,
    record_id: int,
    pipeline_id: int,
    stage_id: str,
    stage_name: Optional[str] = None,
    *,
    amount: Optional[float] = None,
    probability: Optional[float] = None,
    expected_close_date: Optional[date] = None,
    notes: Optional[str] = None,
) -> RecordStage:
    """Place a record in ``stage_id`` of a pipeline (upsert on record + pipeline).

    A change of stage appends a StageHistory row with the minutes spent in
    the previous stage and resets ``entered_at``. Moving to the current
    stage only updates the deal metadata. The first entry into a pipeline
    has no previous stage and writes no history.
    """
    ctx.require_write()
    try:
        move = StageMove(
            amount=amount,
            probability=probability,
            expected_close_date=expected_close_date,
            notes=notes,
        )
    except ValidationError as exc:
        raise from_validation_error(exc, "Invalid stage move") from None

    pipeline = await get_pipeline(session, ctx, pipeline_id)
    if not pipeline.is_active:
        raise NotFound(f"Pipeline {pipeline_id} not found")
    stage = find_stage(pipeline.stages, stage_id)
    if stage is None:
        raise NotFound(f"Stage '{stage_id}' is not part of pipeline {pipeline_id}")
    stage_name = stage.get("name") or stage_name or stage_id

    record_type = await execute(
        session,
        ctx,
        select(Record.object_definition_id)
        .where(Record.id == record_id)
        .where(Record.organization_id == ctx.organization_id),
    )
    object_definition_id = record_type.scalar_one_or_none()
    if object_definition_id is None:
        raise NotFound(f"Record {record_id} not found")
    if object_definition_id != pipeline.object_definition_id:
        raise SchemaViolation(f"Record {record_id} cannot enter pipeline {pipeline_id}")

    now = datetime.now(timezone.utc)
    current = await _current_stage(session, ctx, record_id, pipeline_id, for_update=True)
    if current is None:
        entered = await _enter(session, ctx, record_id, pipeline, stage_id, stage_name, move, now)
        if entered is not None:
            return entered
        # Lost an entry race; continue as a move from the winner's stage
        current = await _current_stage(session, ctx, record_id, pipeline_id, for_update=True)

    before = _stage_values(current)
    if current.stage_id != stage_id:
        if not pipeline.allow_skip_stages and not is_adjacent(pipeline.stages, current.stage_id, stage_id):
            raise InvalidTransition(
                f"Pipeline {pipeline_id} does not allow skipping from "
                f"'{current.stage_id}' to '{stage_id}'"
            )
        minutes = current.minutes_in_stage(now)
        new_amount = _decimal(move.amount) if move.amount is not None else current.amount
        new_probability = (
            _decimal(move.probability) if move.probability is not None else current.probability
        )
        session.add(
            StageHistory(
                record_id=record_id,
                pipeline_id=pipeline_id,
                organization_id=ctx.organization_id,
                from_stage_id=current.stage_id,
                from_stage_name=current.stage_name,
                to_stage_id=stage_id,
                to_stage_name=stage_name,
                transitioned_at=now,
                time_in_previous_stage=minutes,
                amount_at_transition=new_amount,
                probability_at_transition=new_probability,
                transition_notes=move.notes,
                transitioned_by_id=ctx.user_id,
            )
        )
        current.stage_id = stage_id
        current.stage_name = stage_name
        current.entered_at = now
        current.time_in_stage = 0
    else:
        current.time_in_stage = current.minutes_in_stage(now)

    if move.amount is not None:
        current.amount = _decimal(move.amount)
    if move.probability is not None:
        current.probability = _decimal(move.probability)
    if move.expected_close_date is not None:
        current.expected_close_date = move.expected_close_date
    if move.notes is not None:
        current.stage_notes = move.notes
    current.updated_by_id = ctx.user_id
    await flush(session, ctx)

    changed, previous, new = audit_repo.diff_values(before, _stage_values(current))
    if changed:
        await audit_repo.record(
            session, ctx, EntityKind.RECORD_STAGE, current.id, AuditAction.UPDATE,
            changed_fields=changed,
            previous_values=previous,
            new_values=new,
            details={"recordId": record_id, "pipelineId": pipeline_id},
        )
    return current


async def _enter(
    session: AsyncSession,
    ctx: RequestContext,
    record_id: int,
    pipeline: Pipeline,
    stage_id: str,
    stage_name: str,
    move: StageMove,
    now: datetime,
) -> Optional[RecordStage]:
    """First placement of a record in a pipeline; None if another request won the race."""
    result = await execute(
        session,
        ctx,
        pg_insert(RecordStage)
        .values(
            record_id=record_id,
            pipeline_id=pipeline.id,
            organization_id=ctx.organization_id,
            stage_id=stage_id,
            stage_name=stage_name,
            entered_at=now,
            amount=_decimal(move.amount),
            probability=_decimal(move.probability),
            expected_close_date=move.expected_close_date,
            stage_notes=move.notes,
            updated_by_id=ctx.user_id,
        )
        .on_conflict_do_nothing(index_elements=["record_id", "pipeline_id"])
        .returning(RecordStage),
        execution_options={"populate_existing": True},
    )
    rs = result.scalar_one_or_none()
    if rs is None:
        return None
    await audit_repo.record(
        session, ctx, EntityKind.RECORD_STAGE, rs.id, AuditAction.CREATE,
        new_values=_stage_values(rs),
        details={"recordId": record_id, "pipelineId": pipeline.id},
    )
    counters.schedule_pipeline_recount(session, pipeline.id)
    return rs


async def enter_default_pipeline(
    session: AsyncSession,
    ctx: RequestContext,
    record_id: int,
    object_definition_id: int,
) -> Optional[RecordStage]:
    """Put a new record in the first stage of its type's default pipeline, if any."""
    pipeline = await _default_pipeline(session, ctx, object_definition_id)
    if pipeline is None or not pipeline.stages:
        return None
    first = ordered_stages(pipeline.stages)[0]
    return await move_to_stage(session, ctx, record_id, pipeline.id, first["id"], first.get("name"))


async def remove_from_pipeline(
    session: AsyncSession, ctx: RequestContext, record_id: int, pipeline_id: int
) -> None:
    """Delete the current-stage row; StageHistory is kept."""
    ctx.require_write()
    current = await _current_stage(session, ctx, record_id, pipeline_id, for_update=True)
    if current is None:
        raise NotFound(f"Record {record_id} is not in pipeline {pipeline_id}")
    values = _stage_values(current)
    stage_row_id = current.id
    await session.delete(current)
    await flush(session, ctx)
    await audit_repo.record(
        session, ctx, EntityKind.RECORD_STAGE, stage_row_id, AuditAction.DELETE,
        previous_values=values,
        details={"recordId": record_id, "pipelineId": pipeline_id},
    )
    counters.schedule_pipeline_recount(session, pipeline_id)


async def get_record_stage(
    session: AsyncSession, ctx: RequestContext, record_id: int, pipeline_id: int
) -> Optional[RecordStage]:
    return await _current_stage(session, ctx, record_id, pipeline_id)


async def get_stage_history(
    session: AsyncSession,
    ctx: RequestContext,
    record_id: int,
    pipeline_id: Optional[int] = None,
) -> list[StageHistory]:
    """Transitions of a record, oldest first."""
    stmt = (
        select(StageHistory)
        .where(StageHistory.record_id == record_id)
        .where(StageHistory.organization_id == ctx.organization_id)
    )
    if pipeline_id is not None:
        stmt = stmt.where(StageHistory.pipeline_id == pipeline_id)
    result = await execute(
        session, ctx, stmt.order_by(StageHistory.transitioned_at, StageHistory.id)
    )
    return list(result.scalars().all())


async def get_pipeline_summary(
    session: AsyncSession, ctx: RequestContext, pipeline_id: int
) -> dict:
    """Record count and amount per stage, plus counts in terminal stages."""
    pipeline = await get_pipeline(session, ctx, pipeline_id)
    result = await execute(
        session,
        ctx,
        select(
            RecordStage.stage_id,
            func.count(RecordStage.id),
            func.coalesce(func.sum(RecordStage.amount), 0),
        )
        .where(RecordStage.pipeline_id == pipeline_id)
        .group_by(RecordStage.stage_id),
    )
    by_stage = {row[0]: (row[1], row[2]) for row in result.all()}

    stages = []
    outcomes: dict[str, int] = {}
    total = 0
    for stage in ordered_stages(pipeline.stages):
        count, amount = by_stage.get(stage["id"], (0, Decimal(0)))
        total += count
        if stage.get("outcome"):
            outcomes[stage["outcome"]] = outcomes.get(stage["outcome"], 0) + count
        stages.append({
            "stageId": stage["id"],
            "stageName": stage.get("name"),
            "records": count,
            "amount": float(amount),
            "outcome": stage.get("outcome"),
        })
    return {
        "pipelineId": pipeline.id,
        "name": pipeline.name,
        "recordCount": total,
        "stages": stages,
        "outcomes": outcomes,
    }


# ---------------------------------------------------------------------------
# Automations
# ---------------------------------------------------------------------------


async def create_automation(
    session: AsyncSession,
    ctx: RequestContext,
    pipeline_id: int,
    data: Union[AutomationCreate, dict],
) -> StageAutomation:
    """Record a trigger/action rule; the automation runner executes it."""
    ctx.require_write()
    try:
        payload = data if isinstance(data, AutomationCreate) else AutomationCreate.model_validate(data)
    except ValidationError as exc:
        raise from_validation_error(exc, "Invalid automation") from None
    pipeline = await get_pipeline(session, ctx, pipeline_id)
    if find_stage(pipeline.stages, payload.trigger_stage_id) is None:
        raise NotFound(f"Stage '{payload.trigger_stage_id}' is not part of pipeline {pipeline_id}")

    automation = StageAutomation(
        pipeline_id=pipeline_id,
        organization_id=ctx.organization_id,
        trigger_type=payload.trigger_type.value,
        trigger_stage_id=payload.trigger_stage_id,
        trigger_conditions=payload.trigger_conditions,
        action_type=payload.action_type.value,
        action_config=payload.action_config,
        run_once=payload.run_once,
        delay=payload.delay,
    )
    session.add(automation)
    await flush(session, ctx)
    await audit_repo.record(
        session, ctx, EntityKind.STAGE_AUTOMATION, automation.id, AuditAction.CREATE,
        new_values=payload.model_dump(mode="json"),
    )
    return automation


def _runnable(stmt):
    # run_once automations drop out after their first execution
    return stmt.where(StageAutomation.is_active.is_(True)).where(
        or_(StageAutomation.run_once.is_(False), StageAutomation.execution_count == 0)
    )


async def list_automations(
    session: AsyncSession, ctx: RequestContext, pipeline_id: int, active_only: bool = True
) -> list[StageAutomation]:
    stmt = (
        select(StageAutomation)
        .where(StageAutomation.pipeline_id == pipeline_id)
        .where(StageAutomation.organization_id == ctx.organization_id)
    )
    if active_only:
        stmt = stmt.where(StageAutomation.is_active.is_(True))
    result = await execute(session, ctx, stmt.order_by(StageAutomation.id))
    return list(result.scalars().all())


async def automations_for_transition(
    session: AsyncSession,
    ctx: RequestContext,
    pipeline_id: int,
    from_stage_id: Optional[str],
    to_stage_id: str,
) -> list[StageAutomation]:
    """Automations fired by leaving ``from_stage_id`` or entering ``to_stage_id``."""
    triggers = [
        (StageAutomation.trigger_type == TriggerType.ENTER_STAGE.value)
        & (StageAutomation.trigger_stage_id == to_stage_id)
    ]
    if from_stage_id:
        triggers.append(
            (StageAutomation.trigger_type == TriggerType.EXIT_STAGE.value)
            & (StageAutomation.trigger_stage_id == from_stage_id)
        )
    stmt = _runnable(
        select(StageAutomation)
        .where(StageAutomation.pipeline_id == pipeline_id)
        .where(StageAutomation.organization_id == ctx.organization_id)
        .where(or_(*triggers))
    )
    result = await execute(session, ctx, stmt.order_by(StageAutomation.id))
    return list(result.scalars().all())


async def due_time_in_stage(
    session: AsyncSession,
    ctx: RequestContext,
    automation_id: int,
    now: Optional[datetime] = None,
) -> list[RecordStage]:
    """Records that have sat in the trigger stage longer than the automation's delay."""
    result = await execute(
        session,
        ctx,
        _runnable(
            select(StageAutomation)
            .where(StageAutomation.id == automation_id)
            .where(StageAutomation.organization_id == ctx.organization_id)
            .where(StageAutomation.trigger_type == TriggerType.TIME_IN_STAGE.value)
        ),
    )
    automation = result.scalar_one_or_none()
    if automation is None:
        return []
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(minutes=automation.delay)
    result = await execute(
        session,
        ctx,
        select(RecordStage)
        .where(RecordStage.pipeline_id == automation.pipeline_id)
        .where(RecordStage.stage_id == automation.trigger_stage_id)
        .where(RecordStage.entered_at <= cutoff)
        .order_by(RecordStage.entered_at),
    )
    return list(result.scalars().all())


async def record_automation_execution(
    session: AsyncSession, ctx: RequestContext, automation_id: int
) -> StageAutomation:
    """Bump execution bookkeeping atomically (safe under concurrent runners)."""
    ctx.require_write()
    result = await execute(
        session,
        ctx,
        update(StageAutomation)
        .where(StageAutomation.id == automation_id)
        .where(StageAutomation.organization_id == ctx.organization_id)
        .values(
            execution_count=StageAutomation.execution_count + 1,
            last_executed_at=func.now(),
        )
        .returning(StageAutomation),
        execution_options={"populate_existing": True},
    )
    automation = result.scalar_one_or_none()
    if automation is None:
        raise NotFound(f"Automation {automation_id} not found")
    return automation
