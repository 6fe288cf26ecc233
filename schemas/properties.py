"""Property definitions, schema merging and property-bag validation.

An object type's base property map is overlaid with an organization's
customizations to produce the *merged schema*. Record writes are validated
against the merged schema before anything touches the database.
"""
import math
import re
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from db.errors import RequiredPropertyMissing, SchemaViolation, from_validation_error


class PropertyType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    DATETIME = "datetime"
    EMAIL = "email"
    PHONE = "phone"
    URL = "url"
    CURRENCY = "currency"
    PERCENTAGE = "percentage"
    DURATION = "duration"
    ENUMERATION = "enumeration"
    MULTI_SELECT = "multi_select"
    REFERENCE = "reference"
    FILE = "file"
    IMAGE = "image"
    JSON = "json"
    RICH_TEXT = "rich_text"
    CALCULATED = "calculated"


TEXT_TYPES = {
    PropertyType.STRING,
    PropertyType.EMAIL,
    PropertyType.PHONE,
    PropertyType.URL,
    PropertyType.FILE,
    PropertyType.IMAGE,
    PropertyType.RICH_TEXT,
}
NUMERIC_TYPES = {
    PropertyType.NUMBER,
    PropertyType.CURRENCY,
    PropertyType.PERCENTAGE,
    PropertyType.DURATION,
}

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class PropertyValidation(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    pattern: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None
    min_length: Optional[int] = Field(default=None, alias="minLength", ge=0)
    max_length: Optional[int] = Field(default=None, alias="maxLength", ge=0)
    message: Optional[str] = None


class PropertyDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    type: PropertyType
    label: str
    required: bool = False
    default: Any = None
    description: Optional[str] = None
    validation: Optional[PropertyValidation] = None
    options: Optional[List[str]] = None
    reference: Optional[str] = None

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PropertyOverride(BaseModel):
    """Per-organization patch over a base property."""

    model_config = ConfigDict(extra="forbid")

    label: Optional[str] = None
    required: Optional[bool] = None
    default: Any = None
    options: Optional[List[str]] = None
    validation: Optional[PropertyValidation] = None
    hidden: Optional[bool] = None

    def patch(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True, exclude={"hidden"})


class ObjectTypeInfo(BaseModel):
    """Snapshot of an active ObjectDefinition, safe to cache across sessions."""

    model_config = ConfigDict(frozen=True)

    id: int
    object_type_id: str
    object_type: str
    label: str
    plural_label: str
    primary_display_property: Optional[str] = None
    allow_custom_properties: bool = True
    properties: Dict[str, PropertyDefinition]


class MergedSchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    object_definition: ObjectTypeInfo
    properties: Dict[str, PropertyDefinition]
    schema_version: int = 1


def parse_property_map(raw: Optional[dict]) -> Dict[str, PropertyDefinition]:
    """Parse a stored {name: definition} JSON map."""
    try:
        return {name: PropertyDefinition.model_validate(d) for name, d in (raw or {}).items()}
    except ValidationError as exc:
        raise from_validation_error(exc, "Invalid property definition") from None


def merge_properties(
    base: Dict[str, PropertyDefinition],
    property_defaults: Optional[dict] = None,
    custom_properties: Optional[dict] = None,
    hidden_properties: Optional[list] = None,
) -> Dict[str, PropertyDefinition]:
    """Overlay organization customizations on a base property map.

    Order: base, then per-property overrides (only for properties that
    exist), then custom additions, then removal of hidden names.
    """
    merged = dict(base)
    for name, patch in (property_defaults or {}).items():
        if name in merged:
            data = merged[name].model_dump(by_alias=True)
            data.update(patch)
            merged[name] = PropertyDefinition.model_validate(data)
    merged.update(parse_property_map(custom_properties))
    for name in hidden_properties or []:
        merged.pop(name, None)
    return merged


# ---------------------------------------------------------------------------
# Value validation
# ---------------------------------------------------------------------------


def _has_non_finite(value: Any) -> bool:
    if isinstance(value, float):
        return not math.isfinite(value)
    if isinstance(value, dict):
        return any(_has_non_finite(v) for v in value.values())
    if isinstance(value, list):
        return any(_has_non_finite(v) for v in value)
    return False


def _check_value(name: str, definition: PropertyDefinition, value: Any) -> None:
    t = definition.type
    rules = definition.validation

    def fail(reason: str) -> None:
        msg = rules.message if rules and rules.message else reason
        raise SchemaViolation(f"Property '{name}': {msg}", {"property": name})

    if t == PropertyType.CALCULATED:
        fail("calculated properties are read-only")

    if t in TEXT_TYPES:
        if not isinstance(value, str):
            fail(f"expected a string for type {t.value}")
        if t == PropertyType.EMAIL and not _EMAIL_RE.match(value):
            fail("not a valid email address")
        if rules:
            if rules.min_length is not None and len(value) < rules.min_length:
                fail(f"must be at least {rules.min_length} characters")
            if rules.max_length is not None and len(value) > rules.max_length:
                fail(f"must be at most {rules.max_length} characters")
            if rules.pattern and not re.search(rules.pattern, value):
                fail("does not match the required pattern")
    elif t in NUMERIC_TYPES:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            fail(f"expected a number for type {t.value}")
        if not math.isfinite(value):
            fail("must be a finite number")
        if rules:
            if rules.min is not None and value < rules.min:
                fail(f"must be >= {rules.min:g}")
            if rules.max is not None and value > rules.max:
                fail(f"must be <= {rules.max:g}")
    elif t == PropertyType.BOOLEAN:
        if not isinstance(value, bool):
            fail("expected true or false")
    elif t == PropertyType.DATE:
        try:
            date.fromisoformat(value)
        except (TypeError, ValueError):
            fail("expected an ISO date (YYYY-MM-DD)")
    elif t == PropertyType.DATETIME:
        try:
            datetime.fromisoformat(value)
        except (TypeError, ValueError):
            fail("expected an ISO 8601 datetime")
    elif t == PropertyType.ENUMERATION:
        if not isinstance(value, str):
            fail("expected a string option")
        if definition.options is not None and value not in definition.options:
            fail(f"'{value}' is not one of {definition.options}")
    elif t == PropertyType.MULTI_SELECT:
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            fail("expected a list of string options")
        if definition.options is not None:
            unknown = [v for v in value if v not in definition.options]
            if unknown:
                fail(f"{unknown} are not among {definition.options}")
    elif t == PropertyType.REFERENCE:
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            fail("expected a record id")
    elif t == PropertyType.JSON:
        if _has_non_finite(value):
            fail("NaN and infinity cannot be stored")


def validate_properties(
    properties: Dict[str, Any],
    schema: Dict[str, PropertyDefinition],
    *,
    partial: bool = False,
) -> None:
    """Validate a property bag against a merged schema.

    With ``partial=True`` (updates) only the supplied keys are checked;
    otherwise every required property must be present and non-null.
    """
    unknown = sorted(k for k in properties if k not in schema)
    if unknown:
        raise SchemaViolation(
            f"Unknown properties: {', '.join(unknown)}", {"properties": unknown}
        )

    for name, value in properties.items():
        definition = schema[name]
        if value is None:
            if definition.required:
                raise RequiredPropertyMissing(
                    f"Required property '{name}' cannot be cleared", {"property": name}
                )
            continue
        _check_value(name, definition, value)

    if not partial:
        missing = sorted(
            name
            for name, d in schema.items()
            if d.required and properties.get(name) is None
        )
        if missing:
            raise RequiredPropertyMissing(
                f"Required properties missing: {', '.join(missing)}",
                {"properties": missing},
            )


def apply_defaults(
    properties: Dict[str, Any], schema: Dict[str, PropertyDefinition]
) -> Dict[str, Any]:
    """Return properties with declared defaults filled in for absent keys."""
    out = dict(properties)
    for name, definition in schema.items():
        if (
            name not in out
            and definition.default is not None
            and definition.type != PropertyType.CALCULATED
        ):
            out[name] = definition.default
    return out


# ---------------------------------------------------------------------------
# Derived fields
# ---------------------------------------------------------------------------

DISPLAY_NAME_PROPERTIES = ("name", "title", "email", "domain")


def compute_display_name(
    properties: Dict[str, Any],
    fallback: str,
    primary_property: Optional[str] = None,
) -> str:
    candidates = ((primary_property,) if primary_property else ()) + DISPLAY_NAME_PROPERTIES
    for key in candidates:
        value = properties.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return fallback


def compute_search_vector(properties: Dict[str, Any]) -> str:
    """Lower-cased concatenation of every string-valued property."""
    return " ".join(v for v in properties.values() if isinstance(v, str)).lower()
