"""Integration tests for lists, segments and denormalized counters."""
import asyncio
import os

import pytest
from sqlalchemy import text, update

from db import get_db
from db.errors import InvalidTransition, NotFound, SchemaViolation
from db.models import Pipeline, RecordList
from db.repositories import counters
from db.repositories import lists as lists_repo
from db.repositories import object_types as object_types_repo
from db.repositories import pipelines as pipelines_repo
from db.repositories import records as records_repo


pytestmark = pytest.mark.skipif(
    not os.environ.get("DATABASE_URL"), reason="DATABASE_URL is not set"
)

PROPERTIES = {
    "name": {"type": "string", "label": "Name", "required": True},
    "employees": {"type": "number", "label": "Employees"},
}


async def _companies(session, ctx, suffix, n=5):
    """Define a company type and create ``n`` companies with 10, 20, ... employees."""
    definition = await object_types_repo.create_object_definition(
        session, ctx, f"company_{suffix}", f"co-{suffix}", "Company", "Companies", PROPERTIES
    )
    ids = []
    for i in range(1, n + 1):
        record = await records_repo.create(
            session, ctx, definition.object_type, {"name": f"Co {i}", "employees": i * 10}
        )
        ids.append(record.id)
    return definition.object_type, ids


@pytest.mark.asyncio
async def test_static_list_membership(platform_db, ctx, suffix):
    async with get_db() as session:
        otype, ids = await _companies(session, ctx, suffix, n=3)
        lst = await lists_repo.create_list(session, ctx, otype, "Targets")

        assert await lists_repo.add_member(session, ctx, lst.id, ids[0]) is True
        assert await lists_repo.add_member(session, ctx, lst.id, ids[0]) is False
        assert await lists_repo.add_member(session, ctx, lst.id, ids[1]) is True
        await lists_repo.remove_member(session, ctx, lst.id, ids[0])
        with pytest.raises(NotFound):
            await lists_repo.remove_member(session, ctx, lst.id, ids[0])
        with pytest.raises(InvalidTransition):
            await lists_repo.refresh_dynamic_list(session, ctx, lst.id)
        list_id = lst.id

    # Counters are written once the membership changes have committed
    async with get_db() as session:
        assert (await lists_repo.get_list(session, ctx, list_id)).member_count == 1


@pytest.mark.asyncio
async def test_rolled_back_membership_does_not_touch_counter(platform_db, ctx, suffix):
    async with get_db() as session:
        otype, ids = await _companies(session, ctx, suffix, n=2)
        lst = await lists_repo.create_list(session, ctx, otype, "Targets")
        await lists_repo.add_member(session, ctx, lst.id, ids[0])
        list_id = lst.id

    with pytest.raises(RuntimeError):
        async with get_db() as session:
            await lists_repo.add_member(session, ctx, list_id, ids[1])
            raise RuntimeError("abort")

    async with get_db() as session:
        assert (await lists_repo.get_list(session, ctx, list_id)).member_count == 1


@pytest.mark.asyncio
async def test_list_rejects_records_of_another_type(platform_db, ctx, suffix):
    async with get_db() as session:
        otype, _ = await _companies(session, ctx, suffix, n=1)
        other = await object_types_repo.create_object_definition(
            session, ctx, f"deal_{suffix}", f"dl-{suffix}", "Deal", "Deals", PROPERTIES
        )
        deal = await records_repo.create(session, ctx, other.object_type, {"name": "Big deal"})
        lst = await lists_repo.create_list(session, ctx, otype, "Targets")
        with pytest.raises(SchemaViolation):
            await lists_repo.add_member(session, ctx, lst.id, deal.id)


@pytest.mark.asyncio
async def test_dynamic_list_refresh_respects_pins_and_exclusions(platform_db, ctx, suffix):
    async with get_db() as session:
        otype, ids = await _companies(session, ctx, suffix)
        lst = await lists_repo.create_list(
            session, ctx, otype, "Big companies", "dynamic",
            [{"filters": [{"field": "employees", "operator": "GTE", "value": 30}]}],
        )
        list_id = lst.id

        first = await lists_repo.refresh_dynamic_list(session, ctx, list_id)
        assert first == {"added": 3, "removed": 0, "memberCount": 3}

        # Excluded rows stop counting; pinned rows count even without matching
        await lists_repo.set_member_override(session, ctx, list_id, ids[4], excluded=True)
        await lists_repo.set_member_override(session, ctx, list_id, ids[0], pinned=True)

    async with get_db() as session:
        assert (await lists_repo.get_list(session, ctx, list_id)).member_count == 3

        again = await lists_repo.refresh_dynamic_list(session, ctx, list_id)
        assert again == {"added": 0, "removed": 0, "memberCount": 3}

        await records_repo.update(session, ctx, ids[2], {"employees": 5})
        shrunk = await lists_repo.refresh_dynamic_list(session, ctx, list_id)
        assert shrunk == {"added": 0, "removed": 1, "memberCount": 2}
        assert (await lists_repo.get_list(session, ctx, list_id)).last_refreshed_at is not None

        with pytest.raises(SchemaViolation):
            await lists_repo.set_member_override(session, ctx, list_id, ids[1])

    async with get_db() as session:
        assert (await lists_repo.get_list(session, ctx, list_id)).member_count == 2


@pytest.mark.asyncio
async def test_refresh_handles_lists_larger_than_a_statement_can_bind(platform_db, ctx, suffix):
    n = 11_500
    async with get_db() as session:
        definition = await object_types_repo.create_object_definition(
            session, ctx, f"company_{suffix}", f"co-{suffix}", "Company", "Companies", PROPERTIES
        )
        await session.execute(
            text(
                "INSERT INTO platform.records"
                " (object_definition_id, organization_id, properties, display_name)"
                " SELECT CAST(:od AS integer), CAST(:org AS uuid),"
                " jsonb_build_object('name', 'Co ' || g, 'employees', g), 'Co ' || g"
                " FROM generate_series(1, CAST(:n AS integer)) AS g"
            ),
            {"od": definition.id, "org": ctx.organization_id, "n": n},
        )
        lst = await lists_repo.create_list(
            session, ctx, definition.object_type, "Everyone", "dynamic",
            [{"filters": [{"field": "employees", "operator": "GTE", "value": 1}]}],
        )
        list_id = lst.id
        first = await lists_repo.refresh_dynamic_list(session, ctx, list_id)
        assert first == {"added": n, "removed": 0, "memberCount": n}

    async with get_db() as session:
        await session.execute(
            text(
                "UPDATE platform.records SET properties = properties || '{\"employees\": 0}'"
                " WHERE organization_id = CAST(:org AS uuid)"
                " AND (properties->>'employees')::int <= 11000"
            ),
            {"org": ctx.organization_id},
        )
        shrunk = await lists_repo.refresh_dynamic_list(session, ctx, list_id)
        assert shrunk == {"added": 0, "removed": 11_000, "memberCount": n - 11_000}

    async with get_db() as session:
        assert (await lists_repo.get_list(session, ctx, list_id)).member_count == n - 11_000


@pytest.mark.asyncio
async def test_dynamic_list_criteria_are_validated(platform_db, ctx, suffix):
    async with get_db() as session:
        otype, _ = await _companies(session, ctx, suffix, n=1)
        with pytest.raises(SchemaViolation):
            await lists_repo.create_list(
                session, ctx, otype, "Broken", "dynamic",
                [{"filters": [{"field": "revenue", "operator": "GT", "value": 1}]}],
            )


@pytest.mark.asyncio
async def test_segment_refresh_counts_live_matches(platform_db, ctx, suffix):
    async with get_db() as session:
        otype, ids = await _companies(session, ctx, suffix)
        segment = await lists_repo.create_segment(
            session, ctx, otype, "Small",
            [{"filters": [{"field": "employees", "operator": "LT", "value": 35}]}],
        )
        refreshed = await lists_repo.refresh_segment(session, ctx, segment.id)
        assert refreshed.total_members == 3
        assert refreshed.last_calculated_at is not None

        await records_repo.archive(session, ctx, ids[0])
        assert (await lists_repo.refresh_segment(session, ctx, segment.id)).total_members == 2
        with pytest.raises(NotFound):
            await lists_repo.refresh_segment(session, ctx, segment.id + 1_000_000)


# ---------------------------------------------------------------------------
# Counters under concurrency
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_concurrent_adds_and_removes_keep_member_count_exact(platform_db, ctx, suffix):
    """Each add/remove runs in its own transaction; the count must equal the rows."""
    async with get_db() as session:
        otype, ids = await _companies(session, ctx, suffix, n=8)
        lst = await lists_repo.create_list(session, ctx, otype, "Concurrent")
        list_id = lst.id

    async def add(record_id):
        async with get_db() as s:
            await lists_repo.add_member(s, ctx, list_id, record_id)

    async def remove(record_id):
        async with get_db() as s:
            await lists_repo.remove_member(s, ctx, list_id, record_id)

    await asyncio.gather(*(add(rid) for rid in ids))
    async with get_db() as session:
        assert (await lists_repo.get_list(session, ctx, list_id)).member_count == 8

    await asyncio.gather(*(remove(rid) for rid in ids[:3]))
    async with get_db() as session:
        assert (await lists_repo.get_list(session, ctx, list_id)).member_count == 5


@pytest.mark.asyncio
async def test_opposite_order_adds_to_two_lists_do_not_deadlock(platform_db, ctx, suffix):
    async with get_db() as session:
        otype, ids = await _companies(session, ctx, suffix, n=2)
        first = await lists_repo.create_list(session, ctx, otype, "L1")
        second = await lists_repo.create_list(session, ctx, otype, "L2")
        l1, l2 = first.id, second.id

    async def add_both(a, b, record_id):
        async with get_db() as s:
            await lists_repo.add_member(s, ctx, a, record_id)
            # Let the other transaction write its first list before this one moves on
            await asyncio.sleep(0.2)
            await lists_repo.add_member(s, ctx, b, record_id)

    await asyncio.wait_for(
        asyncio.gather(add_both(l1, l2, ids[0]), add_both(l2, l1, ids[1])), timeout=30
    )
    async with get_db() as session:
        assert (await lists_repo.get_list(session, ctx, l1)).member_count == 2
        assert (await lists_repo.get_list(session, ctx, l2)).member_count == 2


@pytest.mark.asyncio
async def test_reconcile_repairs_drifted_counters(platform_db, ctx, suffix):
    async with get_db() as session:
        otype, ids = await _companies(session, ctx, suffix, n=2)
        pipeline = await pipelines_repo.create_pipeline(session, ctx, {
            "object_type": otype,
            "name": "Sales",
            "stages": [{"id": "new", "name": "New", "order": 0}],
        })
        for rid in ids:
            await pipelines_repo.move_to_stage(session, ctx, rid, pipeline.id, "new")
        lst = await lists_repo.create_list(session, ctx, otype, "Drifted")
        await lists_repo.add_member(session, ctx, lst.id, ids[0])
        list_id, pipeline_id = lst.id, pipeline.id

    async with get_db() as session:
        await session.execute(
            update(RecordList).where(RecordList.id == list_id).values(member_count=40)
        )
        await session.execute(
            update(Pipeline).where(Pipeline.id == pipeline_id).values(record_count=0)
        )

    async with get_db() as session:
        report = await counters.reconcile_all_counters(session)
        assert report["lists_fixed"] >= 1
        assert report["pipelines_fixed"] >= 1

    async with get_db() as session:
        assert (await lists_repo.get_list(session, ctx, list_id)).member_count == 1
        assert (await pipelines_repo.get_pipeline(session, ctx, pipeline_id)).record_count == 2
