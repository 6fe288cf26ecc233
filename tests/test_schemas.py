"""Unit tests for request/response schemas."""
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from schemas.associations import (
    AssociationCreate,
    AssociationTypeCreate,
    Cardinality,
    effective_limits,
)
from schemas.bulk import BulkError, BulkResult
from schemas.pipelines import AutomationCreate, PipelineCreate, StageMove, is_adjacent, ordered_stages
from schemas.search import Filter, SearchPage, SearchRequest


class TestEffectiveLimits:
    @pytest.mark.parametrize(
        "cardinality, expected",
        [
            (Cardinality.ONE_TO_ONE, (1, 1)),
            (Cardinality.ONE_TO_MANY, (None, 1)),
            (Cardinality.MANY_TO_ONE, (1, None)),
            (Cardinality.MANY_TO_MANY, (None, None)),
        ],
    )
    def test_implied_by_cardinality(self, cardinality, expected):
        assert effective_limits(cardinality) == expected

    def test_explicit_max_tightens(self):
        assert effective_limits("many-to-many", from_max=3, to_max=None) == (3, None)
        assert effective_limits("many-to-one", from_max=5) == (1, None)


class TestAssociationSchemas:
    def test_max_below_min_rejected(self):
        with pytest.raises(ValidationError):
            AssociationTypeCreate(
                from_object_type_id="0-1", to_object_type_id="0-2",
                name="x", label="X", from_min=2, from_max=1,
            )

    def test_end_before_start_rejected(self):
        with pytest.raises(ValidationError):
            AssociationCreate(
                start_date=datetime(2026, 5, 1, tzinfo=timezone.utc),
                end_date=datetime(2026, 4, 1, tzinfo=timezone.utc),
            )


class TestPipelineSchemas:
    STAGES = [
        {"id": "won", "name": "Won", "order": 2, "outcome": "won"},
        {"id": "new", "name": "New", "order": 0},
        {"id": "qual", "name": "Qualified", "order": 1},
    ]

    def test_duplicate_stage_ids_rejected(self):
        with pytest.raises(ValidationError):
            PipelineCreate(
                object_type="deal", name="Sales",
                stages=[{"id": "a", "name": "A", "order": 0}, {"id": "a", "name": "B", "order": 1}],
            )

    def test_needs_a_stage(self):
        with pytest.raises(ValidationError):
            PipelineCreate(object_type="deal", name="Sales", stages=[])

    def test_stage_order_and_adjacency(self):
        assert [s["id"] for s in ordered_stages(self.STAGES)] == ["new", "qual", "won"]
        assert is_adjacent(self.STAGES, "new", "qual")
        assert is_adjacent(self.STAGES, "won", "qual")
        assert not is_adjacent(self.STAGES, "new", "won")
        assert not is_adjacent(self.STAGES, "new", "missing")

    def test_stage_move_bounds(self):
        with pytest.raises(ValidationError):
            StageMove(probability=101)
        with pytest.raises(ValidationError):
            StageMove(amount=-1)

    def test_time_trigger_needs_delay(self):
        with pytest.raises(ValidationError):
            AutomationCreate(trigger_type="time_in_stage", trigger_stage_id="new", action_type="notify")
        ok = AutomationCreate(
            trigger_type="time_in_stage", trigger_stage_id="new", action_type="notify", delay=60
        )
        assert ok.delay == 60


class TestSearchSchemas:
    def test_list_operator_needs_list(self):
        with pytest.raises(ValidationError):
            Filter(field="name", operator="IN", value="Acme")
        with pytest.raises(ValidationError):
            Filter(field="name", operator="IN", value=[])

    def test_scalar_operator_rejects_list(self):
        with pytest.raises(ValidationError):
            Filter(field="name", operator="EQ", value=["Acme"])

    def test_limit_bounds(self):
        assert SearchRequest().limit == 10
        with pytest.raises(ValidationError):
            SearchRequest(limit=0)
        with pytest.raises(ValidationError):
            SearchRequest(limit=101)

    def test_wire_aliases_and_simple(self):
        req = SearchRequest.model_validate({
            "filterGroups": [{"filters": [{"field": "name", "operator": "EQ", "value": "A"}]}],
            "sorts": [{"propertyName": "name", "direction": "ASCENDING"}],
        })
        assert len(req.filter_groups) == 1
        assert not req.is_simple
        assert SearchRequest(query="acme").is_simple

    def test_page_response(self):
        assert SearchPage(results=[], total=0).to_response() == {"total": 0, "results": []}
        page = SearchPage(results=[{"id": 1}], total=3, next_after="abc")
        assert page.to_response()["paging"] == {"next": {"after": "abc"}}


def test_bulk_result_response_uses_record_id_alias():
    result = BulkResult(
        success=1, failed=1, skipped=2,
        errors=[BulkError(recordId=3, kind="SchemaViolation", error="bad")],
    )
    assert result.to_response() == {
        "success": 1,
        "failed": 1,
        "skipped": 2,
        "errors": [{"recordId": 3, "error": "bad"}],
    }
