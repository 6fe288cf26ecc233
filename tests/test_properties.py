"""Unit tests for property definitions, schema merging and validation."""
import pytest

from db.errors import RequiredPropertyMissing, SchemaViolation
from schemas.properties import (
    PropertyDefinition,
    PropertyOverride,
    apply_defaults,
    compute_display_name,
    compute_search_vector,
    merge_properties,
    parse_property_map,
    validate_properties,
)


BASE = parse_property_map({
    "name": {"type": "string", "label": "Name", "required": True},
    "domain": {"type": "string", "label": "Domain"},
    "employees": {"type": "number", "label": "Employees", "validation": {"min": 0}},
    "industry": {
        "type": "enumeration",
        "label": "Industry",
        "options": ["software", "retail"],
        "default": "software",
    },
    "tags": {"type": "multi_select", "label": "Tags", "options": ["a", "b"]},
    "email": {"type": "email", "label": "Email"},
    "founded": {"type": "date", "label": "Founded"},
    "active": {"type": "boolean", "label": "Active"},
    "score": {"type": "calculated", "label": "Score"},
    "code": {
        "type": "string",
        "label": "Code",
        "validation": {"pattern": "^[A-Z]{3}$", "maxLength": 3, "message": "three capitals"},
    },
})


class TestParsePropertyMap:
    def test_rejects_unknown_type(self):
        with pytest.raises(SchemaViolation):
            parse_property_map({"x": {"type": "color", "label": "X"}})

    def test_validation_aliases(self):
        parsed = parse_property_map({"x": {"type": "string", "label": "X", "minLength": 2}})
        assert parsed["x"].validation.min_length == 2
        assert parsed["x"].to_json()["validation"] == {"minLength": 2}


class TestMergeProperties:
    def test_override_patches_existing_property_only(self):
        merged = merge_properties(
            BASE,
            property_defaults={"domain": {"required": True}, "ghost": {"required": True}},
        )
        assert merged["domain"].required is True
        assert "ghost" not in merged
        assert BASE["domain"].required is False

    def test_custom_properties_added_and_hidden_removed(self):
        merged = merge_properties(
            BASE,
            custom_properties={"tier": {"type": "string", "label": "Tier"}},
            hidden_properties=["domain", "tier"],
        )
        assert "domain" not in merged
        # Hiding runs last, so a hidden custom property is gone too
        assert "tier" not in merged
        assert "name" in merged

    def test_override_label(self):
        patch = PropertyOverride(label="Company name").patch()
        merged = merge_properties(BASE, property_defaults={"name": patch})
        assert merged["name"].label == "Company name"
        assert merged["name"].required is True


class TestValidateProperties:
    def test_valid_full_create(self):
        validate_properties(
            {"name": "Acme", "employees": 10, "tags": ["a"], "founded": "2020-01-31"}, BASE
        )

    def test_unknown_property(self):
        with pytest.raises(SchemaViolation) as exc_info:
            validate_properties({"name": "Acme", "colour": "red"}, BASE)
        assert exc_info.value.details == {"properties": ["colour"]}

    def test_missing_required(self):
        with pytest.raises(RequiredPropertyMissing):
            validate_properties({"domain": "acme.com"}, BASE)

    def test_partial_skips_missing_required(self):
        validate_properties({"domain": "acme.com"}, BASE, partial=True)

    def test_clearing_required_rejected_even_when_partial(self):
        with pytest.raises(RequiredPropertyMissing):
            validate_properties({"name": None}, BASE, partial=True)

    def test_clearing_optional_allowed(self):
        validate_properties({"domain": None}, BASE, partial=True)

    @pytest.mark.parametrize(
        "props",
        [
            {"employees": "ten"},
            {"employees": True},
            {"employees": -1},
            {"employees": float("nan")},
            {"employees": float("inf")},
            {"industry": "mining"},
            {"tags": ["c"]},
            {"tags": "a"},
            {"email": "not-an-email"},
            {"founded": "31/01/2020"},
            {"active": "yes"},
            {"score": 5},
        ],
    )
    def test_invalid_values(self, props):
        with pytest.raises(SchemaViolation):
            validate_properties(props, BASE, partial=True)

    def test_custom_validation_message(self):
        with pytest.raises(SchemaViolation) as exc_info:
            validate_properties({"code": "ab"}, BASE, partial=True)
        assert "three capitals" in exc_info.value.message
        assert exc_info.value.details == {"property": "code"}

    def test_json_rejects_nested_nan(self):
        schema = parse_property_map({"meta": {"type": "json", "label": "Meta"}})
        validate_properties({"meta": {"nested": [1, 2.5, {"ok": "yes"}]}}, schema)
        with pytest.raises(SchemaViolation) as exc_info:
            validate_properties({"meta": {"nested": [1, float("nan")]}}, schema)
        assert exc_info.value.details == {"property": "meta"}


def test_apply_defaults_fills_absent_keys_only():
    out = apply_defaults({"name": "Acme"}, BASE)
    assert out["industry"] == "software"
    assert apply_defaults({"industry": "retail"}, BASE)["industry"] == "retail"


def test_apply_defaults_skips_calculated():
    schema = {"score": PropertyDefinition(type="calculated", label="Score", default=1)}
    assert apply_defaults({}, schema) == {}


def test_display_name_priority():
    assert compute_display_name({"title": "CTO", "name": "Ann"}, "x") == "Ann"
    assert compute_display_name({"email": "a@b.co"}, "x") == "a@b.co"
    assert compute_display_name({"name": "  "}, "contact_7") == "contact_7"
    assert compute_display_name({"name": "Ann", "nick": "Annie"}, "x", primary_property="nick") == "Annie"


def test_search_vector_joins_string_values_lowercased():
    assert compute_search_vector({"name": "Acme Corp", "employees": 5, "domain": "ACME.com"}) == (
        "acme corp acme.com"
    )
