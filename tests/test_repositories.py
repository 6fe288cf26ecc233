"""Integration tests for the record, schema, association and pipeline repositories."""
import os
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, update

# DATABASE_URL must be set in the environment before running these tests.
# Example: export DATABASE_URL="postgresql+asyncpg://platform:<password>@localhost:5432/platform_test"
# See .env.example for configuration details.

from db import get_db
from db.context import RequestContext
from db.errors import (
    CardinalityViolation,
    DuplicateDefinition,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    RequiredPropertyMissing,
    SchemaViolation,
)
from db.models import AuditAction, EntityKind, OrganizationObjectSchema, RecordStage
from db.repositories import associations as associations_repo
from db.repositories import audit as audit_repo
from db.repositories import object_types as object_types_repo
from db.repositories import pipelines as pipelines_repo
from db.repositories import records as records_repo


pytestmark = pytest.mark.skipif(
    not os.environ.get("DATABASE_URL"), reason="DATABASE_URL is not set"
)

COMPANY_PROPERTIES = {
    "name": {"type": "string", "label": "Name", "required": True},
    "domain": {"type": "string", "label": "Domain"},
    "employees": {"type": "number", "label": "Employees"},
    "industry": {
        "type": "enumeration",
        "label": "Industry",
        "options": ["software", "retail"],
        "default": "software",
    },
}
CONTACT_PROPERTIES = {
    "email": {"type": "email", "label": "Email", "required": True},
    "firstname": {"type": "string", "label": "First name"},
}


async def _define_types(session, ctx, suffix, **options):
    company = await object_types_repo.create_object_definition(
        session, ctx, f"company_{suffix}", f"co-{suffix}", "Company", "Companies",
        COMPANY_PROPERTIES, **options,
    )
    contact = await object_types_repo.create_object_definition(
        session, ctx, f"contact_{suffix}", f"ct-{suffix}", "Contact", "Contacts",
        CONTACT_PROPERTIES,
    )
    return company, contact


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_applies_defaults_and_validates(platform_db, ctx, suffix):
    """Defaults are filled in, display name is derived, bad input is rejected."""
    async with get_db() as session:
        company, _ = await _define_types(session, ctx, suffix)
        record = await records_repo.create(session, ctx, company.object_type, {"name": "Acme"})
        assert record.properties == {"name": "Acme", "industry": "software"}
        assert record.display_name == "Acme"

        with pytest.raises(RequiredPropertyMissing):
            await records_repo.create(session, ctx, company.object_type, {"domain": "acme.com"})
        with pytest.raises(SchemaViolation):
            await records_repo.create(session, ctx, company.object_type, {"name": "A", "colour": "red"})
        with pytest.raises(NotFound):
            await records_repo.create(session, ctx, f"missing_{suffix}", {"name": "A"})


@pytest.mark.asyncio
async def test_update_merges_clears_and_audits(platform_db, ctx, suffix):
    """A partial update merges keys, None clears a key, and every change is logged."""
    async with get_db() as session:
        company, _ = await _define_types(session, ctx, suffix)
        record = await records_repo.create(session, ctx, company.object_type, {"name": "Acme"})
        await records_repo.update(session, ctx, record.id, {"domain": "acme.com"})
        await records_repo.update(session, ctx, record.id, {"domain": None})
        # No-op update writes nothing
        await records_repo.update(session, ctx, record.id, {"name": "Acme"})

        fetched = await records_repo.get_by_id(session, ctx, record.id)
        assert fetched["properties"] == {"name": "Acme", "industry": "software"}

        trail = await audit_repo.get_audit_trail(session, ctx, EntityKind.RECORD, record.id)
        assert [e.action for e in trail] == ["update", "update", "create"]
        assert trail[0].previous_values == {"domain": "acme.com"}
        assert trail[0].actor_id == ctx.user_id

        history = await audit_repo.get_property_history(session, ctx, record.id, "domain")
        assert [(h.change_type, h.new_value) for h in history] == [("unset", None), ("set", "acme.com")]

        with pytest.raises(RequiredPropertyMissing):
            await records_repo.update(session, ctx, record.id, {"name": None})


@pytest.mark.asyncio
async def test_records_are_scoped_to_the_organization(platform_db, ctx, suffix):
    other = RequestContext(organization_id=uuid.uuid4())
    async with get_db() as session:
        company, _ = await _define_types(session, ctx, suffix)
        record = await records_repo.create(session, ctx, company.object_type, {"name": "Acme"})
        with pytest.raises(NotFound):
            await records_repo.get_by_id(session, other, record.id)
        with pytest.raises(NotFound):
            await records_repo.update(session, other, record.id, {"domain": "x.com"})
        page = await records_repo.search(session, other, company.object_type)
        assert page.total == 0


@pytest.mark.asyncio
async def test_external_id_is_unique_per_type(platform_db, ctx, suffix):
    async with get_db() as session:
        company, _ = await _define_types(session, ctx, suffix)
        await records_repo.create(session, ctx, company.object_type, {"name": "A"}, external_id="ext-1")
        with pytest.raises(SchemaViolation):
            async with session.begin_nested():
                await records_repo.create(
                    session, ctx, company.object_type, {"name": "B"}, external_id="ext-1"
                )


@pytest.mark.asyncio
async def test_read_only_context_cannot_write(platform_db, ctx, suffix):
    async with get_db() as session:
        company, _ = await _define_types(session, ctx, suffix)
        reader = RequestContext(organization_id=ctx.organization_id, can_write=False)
        with pytest.raises(PermissionDenied):
            await records_repo.create(session, reader, company.object_type, {"name": "A"})


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_search_filters_sorts_and_pages(platform_db, ctx, suffix):
    """Keyset pages follow the sort and report the full total on every page."""
    async with get_db() as session:
        company, _ = await _define_types(session, ctx, suffix)
        otype = company.object_type
        for n in range(1, 6):
            await records_repo.create(session, ctx, otype, {"name": f"Acme {n}", "employees": n * 10})
        await records_repo.create(session, ctx, otype, {"name": "Zeta", "domain": "zeta.io"})

        request = {
            "filterGroups": [{"filters": [{"field": "employees", "operator": "GTE", "value": 20}]}],
            "sorts": [{"propertyName": "employees", "direction": "ASCENDING"}],
            "limit": 2,
        }
        first = await records_repo.search(session, ctx, otype, request)
        assert first.total == 4
        assert [r["properties"]["employees"] for r in first.results] == [20, 30]
        assert first.next_after is not None

        second = await records_repo.search(session, ctx, otype, {**request, "after": first.next_after})
        assert [r["properties"]["employees"] for r in second.results] == [40, 50]
        assert second.next_after is None

        by_text = await records_repo.search(session, ctx, otype, {"query": "ACME 3"})
        assert [r["displayName"] for r in by_text.results] == ["Acme 3"]

        # NEQ also matches records that lack the property
        neq = await records_repo.search(session, ctx, otype, {
            "filterGroups": [{"filters": [{"field": "domain", "operator": "NEQ", "value": "zeta.io"}]}],
        })
        assert neq.total == 5

        either = await records_repo.search(session, ctx, otype, {
            "filterGroups": [
                {"filters": [{"field": "employees", "operator": "LT", "value": 15}]},
                {"filters": [{"field": "name", "operator": "EQ", "value": "Zeta"}]},
            ],
            "properties": ["name"],
        })
        assert sorted(r["properties"]["name"] for r in either.results) == ["Acme 1", "Zeta"]
        assert all(set(r["properties"]) == {"name"} for r in either.results)

        with pytest.raises(SchemaViolation):
            await records_repo.search(session, ctx, otype, {
                "filterGroups": [{"filters": [{"field": "colour", "operator": "EQ", "value": "red"}]}],
            })


@pytest.mark.asyncio
async def test_list_records_is_newest_first(platform_db, ctx, suffix):
    async with get_db() as session:
        company, _ = await _define_types(session, ctx, suffix)
        ids = [
            (await records_repo.create(session, ctx, company.object_type, {"name": f"C{n}"})).id
            for n in range(3)
        ]
        page = await records_repo.list_records(session, ctx, company.object_type, limit=2)
        assert [r["id"] for r in page.results] == [ids[2], ids[1]]
        rest = await records_repo.list_records(
            session, ctx, company.object_type, limit=2, after=page.next_after
        )
        assert [r["id"] for r in rest.results] == [ids[0]]


@pytest.mark.asyncio
async def test_paging_is_stable_when_records_are_inserted_between_pages(platform_db, ctx, suffix):
    async with get_db() as session:
        company, _ = await _define_types(session, ctx, suffix)
        otype = company.object_type
        ids = [
            (await records_repo.create(session, ctx, otype, {"name": f"C{n}", "employees": n})).id
            for n in range(4)
        ]

    async with get_db() as session:
        page = await records_repo.list_records(session, ctx, otype, limit=2)
        assert [r["id"] for r in page.results] == [ids[3], ids[2]]
        by_size = {
            "sorts": [{"propertyName": "employees", "direction": "ASCENDING"}],
            "limit": 2,
        }
        sized = await records_repo.search(session, ctx, otype, by_size)
        assert [r["id"] for r in sized.results] == [ids[0], ids[1]]

    # Newer than every cursor and smaller than every employee count
    async with get_db() as session:
        await records_repo.create(session, ctx, otype, {"name": "Late", "employees": -1})

    async with get_db() as session:
        rest = await records_repo.list_records(session, ctx, otype, limit=2, after=page.next_after)
        assert [r["id"] for r in rest.results] == [ids[1], ids[0]]
        assert rest.next_after is None
        sized_rest = await records_repo.search(
            session, ctx, otype, {**by_size, "after": sized.next_after}
        )
        assert [r["id"] for r in sized_rest.results] == [ids[2], ids[3]]


# ---------------------------------------------------------------------------
# Schema customization
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_custom_properties_are_per_organization(platform_db, ctx, suffix):
    other = RequestContext(organization_id=uuid.uuid4())
    async with get_db() as session:
        company, _ = await _define_types(session, ctx, suffix)
        otype = company.object_type
        merged = await object_types_repo.add_custom_property(
            session, ctx, otype, "tier", {"type": "enumeration", "label": "Tier", "options": ["gold"]}
        )
        assert "tier" in merged.properties
        await records_repo.create(session, ctx, otype, {"name": "A", "tier": "gold"})

        assert "tier" not in (await object_types_repo.get_merged_schema(session, other, otype)).properties
        with pytest.raises(SchemaViolation):
            await records_repo.create(session, other, otype, {"name": "A", "tier": "gold"})

        with pytest.raises(DuplicateDefinition):
            await object_types_repo.add_custom_property(
                session, ctx, otype, "name", {"type": "string", "label": "Name"}
            )
        with pytest.raises(SchemaViolation):
            await object_types_repo.add_custom_property(
                session, ctx, otype, "bad name!", {"type": "string", "label": "Bad"}
            )


@pytest.mark.asyncio
async def test_override_and_hide_base_property(platform_db, ctx, suffix):
    async with get_db() as session:
        company, _ = await _define_types(session, ctx, suffix)
        otype = company.object_type
        merged = await object_types_repo.override_property(
            session, ctx, otype, "name", {"label": "Company name"}
        )
        assert merged.properties["name"].label == "Company name"
        assert merged.properties["name"].required is True

        merged = await object_types_repo.override_property(session, ctx, otype, "domain", {"hidden": True})
        assert "domain" not in merged.properties
        with pytest.raises(SchemaViolation):
            await records_repo.create(session, ctx, otype, {"name": "A", "domain": "a.com"})

        merged = await object_types_repo.override_property(session, ctx, otype, "domain", {"hidden": False})
        assert "domain" in merged.properties

        with pytest.raises(NotFound):
            await object_types_repo.override_property(session, ctx, otype, "ghost", {"label": "Ghost"})


@pytest.mark.asyncio
async def test_custom_properties_can_be_disallowed(platform_db, ctx, suffix):
    async with get_db() as session:
        company, _ = await _define_types(session, ctx, suffix, allow_custom_properties=False)
        with pytest.raises(PermissionDenied):
            await object_types_repo.add_custom_property(
                session, ctx, company.object_type, "tier", {"type": "string", "label": "Tier"}
            )


@pytest.mark.asyncio
async def test_schema_versions_only_move_forward(platform_db, ctx, suffix):
    async with get_db() as session:
        company, _ = await _define_types(session, ctx, suffix)
        otype = company.object_type
        assert await object_types_repo.get_schema_version(session, ctx, otype) == 1
        overlay = await object_types_repo.migrate_schema(
            session, ctx, otype, 2, "Add tier", [{"op": "add", "property": "tier"}]
        )
        assert overlay.property_migrations[-1]["version"] == 2
        assert await object_types_repo.get_schema_version(session, ctx, otype) == 2
        with pytest.raises(InvalidTransition):
            await object_types_repo.migrate_schema(session, ctx, otype, 2, "Again", [])


@pytest.mark.asyncio
async def test_duplicate_object_type_rejected(platform_db, ctx, suffix):
    async with get_db() as session:
        await _define_types(session, ctx, suffix)
        with pytest.raises(DuplicateDefinition):
            await object_types_repo.create_object_definition(
                session, ctx, f"company_{suffix}", f"other-{suffix}", "C", "Cs", {}
            )


@pytest.mark.asyncio
async def test_rolled_back_customization_is_not_visible_afterwards(platform_db, ctx, suffix):
    async with get_db() as session:
        company, _ = await _define_types(session, ctx, suffix)
        otype = company.object_type
        record = await records_repo.create(session, ctx, otype, {"name": "Acme"})
        await object_types_repo.get_merged_schema(session, ctx, otype)

    with pytest.raises(RuntimeError):
        async with get_db() as session:
            await object_types_repo.add_custom_property(
                session, ctx, otype, "tier", {"type": "string", "label": "Tier"}
            )
            # The writing transaction sees its own change
            assert "tier" in (await object_types_repo.get_merged_schema(session, ctx, otype)).properties
            await records_repo.update(session, ctx, record.id, {"name": "Renamed"})
            assert (await records_repo.get_by_id(session, ctx, record.id))["displayName"] == "Renamed"
            raise RuntimeError("abort")

    async with get_db() as session:
        assert "tier" not in (await object_types_repo.get_merged_schema(session, ctx, otype)).properties
        with pytest.raises(SchemaViolation):
            await records_repo.create(session, ctx, otype, {"name": "B", "tier": "gold"})
        assert (await records_repo.get_by_id(session, ctx, record.id))["displayName"] == "Acme"


@pytest.mark.asyncio
async def test_repeated_schema_reads_create_one_overlay(platform_db, ctx, suffix):
    async with get_db() as session:
        company, _ = await _define_types(session, ctx, suffix)
        otype = company.object_type
        first = await object_types_repo.get_merged_schema(session, ctx, otype)
    async with get_db() as session:
        second = await object_types_repo.get_merged_schema(session, ctx, otype)
        assert second.properties.keys() == first.properties.keys()
        total = await session.execute(
            select(func.count())
            .select_from(OrganizationObjectSchema)
            .where(OrganizationObjectSchema.organization_id == ctx.organization_id)
            .where(OrganizationObjectSchema.object_definition_id == company.id)
        )
        assert total.scalar_one() == 1


# ---------------------------------------------------------------------------
# Associations
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_association_cardinality_labels_and_cascade(platform_db, ctx, suffix):
    async with get_db() as session:
        company, contact = await _define_types(session, ctx, suffix)
        co1 = await records_repo.create(session, ctx, company.object_type, {"name": "Acme"})
        co2 = await records_repo.create(session, ctx, company.object_type, {"name": "Beta"})
        person = await records_repo.create(session, ctx, contact.object_type, {"email": "ann@acme.com"})

        atype = await associations_repo.define_association_type(session, ctx, {
            "from_object_type_id": contact.object_type_id,
            "to_object_type_id": company.object_type_id,
            "name": "works_at",
            "label": "Works at",
            "inverse_label": "Employees",
            "cardinality": "many-to-one",
            "cascade_delete": "from",
        })

        edge = await associations_repo.associate(session, ctx, atype.id, person.id, co1.id)
        again = await associations_repo.associate(session, ctx, atype.id, person.id, co1.id)
        assert again.id == edge.id

        # many-to-one: a contact works at one company
        with pytest.raises(CardinalityViolation):
            await associations_repo.associate(session, ctx, atype.id, person.id, co2.id)
        with pytest.raises(SchemaViolation):
            await associations_repo.associate(session, ctx, atype.id, co1.id, person.id)

        incoming = await associations_repo.get_associations(session, ctx, co1.id, "to")
        assert [(a["record"]["id"], a["label"]) for a in incoming] == [(person.id, "Employees")]

        await associations_repo.set_association_label(session, ctx, atype.id, "Employer")
        outgoing = await associations_repo.get_associations(session, ctx, person.id, "from")
        assert outgoing[0]["label"] == "Employer"
        assert await associations_repo.get_association_label(session, ctx, atype.id) == {
            "label": "Employer",
            "inverseLabel": "Employees",
            "isCustom": True,
        }

        fetched = await records_repo.get_by_id(
            session, ctx, person.id, associations=[company.object_type]
        )
        assert [a["record"]["id"] for a in fetched["associations"][company.object_type]] == [co1.id]

        archived = await records_repo.archive(session, ctx, person.id)
        assert archived.is_archived is True
        assert await associations_repo.get_associations(session, ctx, co1.id, "to") == []

        live = await records_repo.search(session, ctx, contact.object_type)
        assert live.total == 0
        gone = await records_repo.search(session, ctx, contact.object_type, {"archived": True})
        assert [r["id"] for r in gone.results] == [person.id]

        restored = await records_repo.unarchive(session, ctx, person.id)
        assert restored.is_archived is False


@pytest.mark.asyncio
async def test_dissociate(platform_db, ctx, suffix):
    async with get_db() as session:
        company, contact = await _define_types(session, ctx, suffix)
        co = await records_repo.create(session, ctx, company.object_type, {"name": "Acme"})
        person = await records_repo.create(session, ctx, contact.object_type, {"email": "bo@acme.com"})
        atype = await associations_repo.define_association_type(session, ctx, {
            "from_object_type_id": contact.object_type_id,
            "to_object_type_id": company.object_type_id,
            "name": "advises",
            "label": "Advises",
        })
        await associations_repo.associate(session, ctx, atype.id, person.id, co.id, {"role": "board"})
        await associations_repo.dissociate(session, ctx, atype.id, person.id, co.id)
        assert await associations_repo.get_associations(session, ctx, person.id) == []
        with pytest.raises(NotFound):
            await associations_repo.dissociate(session, ctx, atype.id, person.id, co.id)

        with pytest.raises(DuplicateDefinition):
            await associations_repo.define_association_type(session, ctx, {
                "from_object_type_id": contact.object_type_id,
                "to_object_type_id": company.object_type_id,
                "name": "advises",
                "label": "Advises",
            })


@pytest.mark.asyncio
async def test_one_to_one_limits_both_ends(platform_db, ctx, suffix):
    async with get_db() as session:
        company, contact = await _define_types(session, ctx, suffix)
        a = await records_repo.create(session, ctx, contact.object_type, {"email": "a@acme.com"})
        d = await records_repo.create(session, ctx, contact.object_type, {"email": "d@acme.com"})
        b = await records_repo.create(session, ctx, company.object_type, {"name": "B"})
        c = await records_repo.create(session, ctx, company.object_type, {"name": "C"})
        atype = await associations_repo.define_association_type(session, ctx, {
            "from_object_type_id": contact.object_type_id,
            "to_object_type_id": company.object_type_id,
            "name": "owns",
            "label": "Owns",
            "cardinality": "one-to-one",
        })

        await associations_repo.associate(session, ctx, atype.id, a.id, b.id)
        with pytest.raises(CardinalityViolation):
            await associations_repo.associate(session, ctx, atype.id, a.id, c.id)
        with pytest.raises(CardinalityViolation):
            await associations_repo.associate(session, ctx, atype.id, d.id, b.id)
        outgoing = await associations_repo.get_associations(session, ctx, a.id, "from")
        assert [x["record"]["id"] for x in outgoing] == [b.id]


# ---------------------------------------------------------------------------
# Pipelines
# ---------------------------------------------------------------------------

STAGES = [
    {"id": "new", "name": "New", "order": 0},
    {"id": "qualified", "name": "Qualified", "order": 1, "probability": 40},
    {"id": "won", "name": "Won", "order": 2, "outcome": "won"},
]


@pytest.mark.asyncio
async def test_pipeline_entry_moves_and_history(platform_db, ctx, suffix):
    async with get_db() as session:
        company, _ = await _define_types(session, ctx, suffix)
        pipeline = await pipelines_repo.create_pipeline(session, ctx, {
            "object_type": company.object_type,
            "name": "Sales",
            "stages": STAGES,
            "is_default": True,
            "allow_skip_stages": False,
        })
        record = await records_repo.create(session, ctx, company.object_type, {"name": "Acme"})

        stage = await pipelines_repo.get_record_stage(session, ctx, record.id, pipeline.id)
        assert (stage.stage_id, stage.stage_name) == ("new", "New")
        assert await pipelines_repo.get_stage_history(session, ctx, record.id) == []

        with pytest.raises(InvalidTransition):
            await pipelines_repo.move_to_stage(session, ctx, record.id, pipeline.id, "won")
        with pytest.raises(NotFound):
            await pipelines_repo.move_to_stage(session, ctx, record.id, pipeline.id, "lost")

        moved = await pipelines_repo.move_to_stage(
            session, ctx, record.id, pipeline.id, "qualified", amount=1000, probability=40
        )
        assert moved.stage_name == "Qualified"
        history = await pipelines_repo.get_stage_history(session, ctx, record.id, pipeline.id)
        assert [(h.from_stage_id, h.to_stage_id) for h in history] == [("new", "qualified")]
        assert history[0].time_in_previous_stage == 0
        assert float(history[0].amount_at_transition) == 1000.0

        # Same stage: metadata only, no new history row
        await pipelines_repo.move_to_stage(session, ctx, record.id, pipeline.id, "qualified", notes="call")
        assert len(await pipelines_repo.get_stage_history(session, ctx, record.id)) == 1

        summary = await pipelines_repo.get_pipeline_summary(session, ctx, pipeline.id)
        assert summary["recordCount"] == 1
        assert [(s["stageId"], s["records"], s["amount"]) for s in summary["stages"]] == [
            ("new", 0, 0.0),
            ("qualified", 1, 1000.0),
            ("won", 0, 0.0),
        ]

    async with get_db() as session:
        assert (await pipelines_repo.get_pipeline(session, ctx, pipeline.id)).record_count == 1
        await pipelines_repo.remove_from_pipeline(session, ctx, record.id, pipeline.id)
        with pytest.raises(NotFound):
            await pipelines_repo.remove_from_pipeline(session, ctx, record.id, pipeline.id)

    async with get_db() as session:
        assert (await pipelines_repo.get_pipeline(session, ctx, pipeline.id)).record_count == 0
        # History survives removal
        assert len(await pipelines_repo.get_stage_history(session, ctx, record.id)) == 1


@pytest.mark.asyncio
async def test_each_stage_change_writes_one_history_row(platform_db, ctx, suffix):
    async with get_db() as session:
        company, _ = await _define_types(session, ctx, suffix)
        pipeline = await pipelines_repo.create_pipeline(session, ctx, {
            "object_type": company.object_type, "name": "Sales", "stages": STAGES,
        })
        record = await records_repo.create(session, ctx, company.object_type, {"name": "Acme"})
        await pipelines_repo.move_to_stage(session, ctx, record.id, pipeline.id, "new")
        await pipelines_repo.move_to_stage(session, ctx, record.id, pipeline.id, "qualified")

    # Pretend the record has sat in "qualified" for a while
    async with get_db() as session:
        await session.execute(
            update(RecordStage)
            .where(RecordStage.record_id == record.id)
            .where(RecordStage.pipeline_id == pipeline.id)
            .values(entered_at=datetime.now(timezone.utc) - timedelta(minutes=5))
        )

    async with get_db() as session:
        await pipelines_repo.move_to_stage(session, ctx, record.id, pipeline.id, "won")
        history = await pipelines_repo.get_stage_history(session, ctx, record.id, pipeline.id)
        assert [(h.from_stage_id, h.to_stage_id) for h in history] == [
            ("new", "qualified"),
            ("qualified", "won"),
        ]
        assert history[1].time_in_previous_stage >= 5


@pytest.mark.asyncio
async def test_new_default_pipeline_replaces_previous(platform_db, ctx, suffix):
    async with get_db() as session:
        company, _ = await _define_types(session, ctx, suffix)
        first = await pipelines_repo.create_pipeline(session, ctx, {
            "object_type": company.object_type, "name": "One", "stages": STAGES, "is_default": True,
        })
        second = await pipelines_repo.create_pipeline(session, ctx, {
            "object_type": company.object_type, "name": "Two", "stages": STAGES, "is_default": True,
        })
        default = await pipelines_repo.get_default_pipeline(session, ctx, company.object_type)
        assert default.id == second.id
        assert (await pipelines_repo.get_pipeline(session, ctx, first.id)).is_default is False
        with pytest.raises(DuplicateDefinition):
            async with session.begin_nested():
                await pipelines_repo.create_pipeline(session, ctx, {
                    "object_type": company.object_type, "name": "Two", "stages": STAGES,
                })


@pytest.mark.asyncio
async def test_stage_automations(platform_db, ctx, suffix):
    async with get_db() as session:
        company, _ = await _define_types(session, ctx, suffix)
        pipeline = await pipelines_repo.create_pipeline(session, ctx, {
            "object_type": company.object_type, "name": "Sales", "stages": STAGES, "is_default": True,
        })
        record = await records_repo.create(session, ctx, company.object_type, {"name": "Acme"})

        on_enter = await pipelines_repo.create_automation(session, ctx, pipeline.id, {
            "trigger_type": "enter_stage",
            "trigger_stage_id": "qualified",
            "action_type": "create_task",
            "action_config": {"title": "Call them"},
            "run_once": True,
        })
        stale = await pipelines_repo.create_automation(session, ctx, pipeline.id, {
            "trigger_type": "time_in_stage",
            "trigger_stage_id": "new",
            "action_type": "notify",
            "delay": 60,
        })
        with pytest.raises(NotFound):
            await pipelines_repo.create_automation(session, ctx, pipeline.id, {
                "trigger_type": "exit_stage", "trigger_stage_id": "nope", "action_type": "notify",
            })

        fired = await pipelines_repo.automations_for_transition(session, ctx, pipeline.id, "new", "qualified")
        assert [a.id for a in fired] == [on_enter.id]

        later = datetime.now(timezone.utc) + timedelta(hours=2)
        due = await pipelines_repo.due_time_in_stage(session, ctx, stale.id, later)
        assert [rs.record_id for rs in due] == [record.id]
        assert await pipelines_repo.due_time_in_stage(session, ctx, stale.id) == []

        ran = await pipelines_repo.record_automation_execution(session, ctx, on_enter.id)
        assert ran.execution_count == 1
        assert await pipelines_repo.automations_for_transition(
            session, ctx, pipeline.id, "new", "qualified"
        ) == []


# ---------------------------------------------------------------------------
# Batch operations
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_batch_create_and_rollback(platform_db, ctx, suffix):
    async with get_db() as session:
        company, _ = await _define_types(session, ctx, suffix)
        otype = company.object_type
        result = await records_repo.batch_create(session, ctx, otype, [
            {"properties": {"name": "Good"}},
            {"properties": {"domain": "missing-name.com"}},
            {"properties": {}},
        ])
        assert (result.success, result.failed, result.skipped) == (1, 1, 1)
        assert result.errors[0].record_id == 1
        assert result.errors[0].kind == "RequiredPropertyMissing"

        op = await audit_repo.get_bulk_operation(session, ctx, result.operation_id)
        assert op.operation_type == AuditAction.BULK_CREATE.value
        assert op.rollback_data == {"createdIds": result.record_ids}

        reverted = await records_repo.rollback_bulk_operation(session, ctx, result.operation_id)
        assert reverted.record_ids == result.record_ids
        fetched = await records_repo.get_by_id(session, ctx, result.record_ids[0])
        assert fetched["archived"] is True

        with pytest.raises(InvalidTransition):
            await records_repo.rollback_bulk_operation(session, ctx, result.operation_id)


@pytest.mark.asyncio
async def test_batch_update_and_rollback(platform_db, ctx, suffix):
    async with get_db() as session:
        company, _ = await _define_types(session, ctx, suffix)
        otype = company.object_type
        a = await records_repo.create(session, ctx, otype, {"name": "A"})
        b = await records_repo.create(session, ctx, otype, {"name": "B", "domain": "b.com"})

        result = await records_repo.batch_update(session, ctx, otype, [
            {"id": a.id, "properties": {"domain": "a.com"}},
            {"id": b.id, "properties": {"domain": "b2.com"}},
            {"id": b.id + 1_000_000, "properties": {"name": "X"}},
            {"id": a.id, "properties": {"domain": "a.com"}},
        ])
        assert (result.success, result.failed, result.skipped) == (2, 1, 1)
        assert result.errors[0].kind == "NotFound"

        await records_repo.rollback_bulk_operation(session, ctx, result.operation_id)
        assert "domain" not in (await records_repo.get_by_id(session, ctx, a.id))["properties"]
        assert (await records_repo.get_by_id(session, ctx, b.id))["properties"]["domain"] == "b.com"


@pytest.mark.asyncio
async def test_batches_isolate_items_the_database_would_reject(platform_db, ctx, suffix):
    async with get_db() as session:
        company, _ = await _define_types(session, ctx, suffix)
        otype = company.object_type
        created = await records_repo.batch_create(session, ctx, otype, [
            {"properties": {"name": "NaN Co", "employees": float("nan")}},
            {"properties": {"name": "Good"}},
            {"properties": {"name": "Infinite", "employees": float("inf")}},
        ])
        assert (created.success, created.failed) == (1, 2)
        assert [e.record_id for e in created.errors] == [0, 2]
        assert {e.kind for e in created.errors} == {"SchemaViolation"}

        updated = await records_repo.batch_update(session, ctx, otype, [
            {"id": "not-a-number", "properties": {"domain": "x.com"}},
            {"id": created.record_ids[0], "properties": {"domain": "good.com"}},
        ])
        assert (updated.success, updated.failed) == (1, 1)
        assert updated.errors[0].record_id == 0
        fetched = await records_repo.get_by_id(session, ctx, created.record_ids[0])
        assert fetched["properties"]["domain"] == "good.com"
