"""Translate search filters, sorts and paging cursors into SQL.

Filters address either a property of the merged schema or one of the
special fields ``id``, ``createdAt`` and ``updatedAt``. Paging is keyset
based: the cursor carries the last row's id and, when a sort is applied,
its sort key, so rows inserted mid-pagination are never skipped or repeated.
"""
import base64
import binascii
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Numeric,
    Text,
    and_,
    cast,
    func,
    literal,
    literal_column,
    not_,
    or_,
    tuple_,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql.elements import ColumnElement

from db.errors import SchemaViolation
from db.models import Record
from schemas.properties import NUMERIC_TYPES, PropertyDefinition, PropertyType
from schemas.search import Filter, FilterGroup, FilterOperator, Sort, SortDirection

SPECIAL_FIELDS = {
    "id": Record.id,
    "createdAt": Record.created_at,
    "updatedAt": Record.updated_at,
}

_JSON_NULL = literal_column("'null'::jsonb", JSONB)


# ---------------------------------------------------------------------------
# Cursor codec
# ---------------------------------------------------------------------------


def encode_cursor(record_id: int, sort_value: Any = None) -> str:
    payload = {"id": record_id}
    if sort_value is not None:
        payload["v"] = sort_value.isoformat() if isinstance(sort_value, datetime) else sort_value
    raw = json.dumps(payload, separators=(",", ":"), default=str).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_cursor(cursor: str) -> dict:
    """Return {"id": int, "v": any}; raises SchemaViolation on a malformed cursor."""
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode()))
        record_id = payload["id"]
    except (binascii.Error, ValueError, KeyError, TypeError):
        raise SchemaViolation("Invalid paging cursor") from None
    if isinstance(record_id, bool) or not isinstance(record_id, int):
        raise SchemaViolation("Invalid paging cursor")
    return {"id": record_id, "v": payload.get("v")}


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _parse_datetime(field: str, value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        raise SchemaViolation(f"Filter on '{field}' expects an ISO 8601 datetime") from None


def _parse_number(field: str, value: Any):
    if isinstance(value, bool):
        raise SchemaViolation(f"Filter on '{field}' expects a number")
    try:
        return float(value) if not isinstance(value, int) else value
    except (TypeError, ValueError):
        raise SchemaViolation(f"Filter on '{field}' expects a number") from None


def _special_clause(f: Filter) -> ColumnElement:
    column = SPECIAL_FIELDS[f.field]
    op = f.operator
    if op in (FilterOperator.CONTAINS_TOKEN, FilterOperator.NOT_CONTAINS_TOKEN):
        raise SchemaViolation(f"{op.value} is not supported on '{f.field}'")

    if f.field == "id":
        convert = lambda v: int(_parse_number(f.field, v))  # noqa: E731
    else:
        convert = lambda v: _parse_datetime(f.field, v)  # noqa: E731

    if op == FilterOperator.IN:
        return column.in_([convert(v) for v in f.value])
    if op == FilterOperator.NOT_IN:
        return column.not_in([convert(v) for v in f.value])
    return _compare(column, op, convert(f.value))


def _compare(expr, op: FilterOperator, value) -> ColumnElement:
    if op == FilterOperator.EQ:
        return expr == value
    if op == FilterOperator.NEQ:
        return expr != value
    if op == FilterOperator.GT:
        return expr > value
    if op == FilterOperator.GTE:
        return expr >= value
    if op == FilterOperator.LT:
        return expr < value
    if op == FilterOperator.LTE:
        return expr <= value
    raise SchemaViolation(f"Unsupported operator {op.value}")


def _property_clause(f: Filter, definition: PropertyDefinition) -> ColumnElement:
    op = f.operator
    text_expr = Record.properties[f.field].astext

    if definition.type == PropertyType.MULTI_SELECT:
        json_expr = Record.properties[f.field]
        if op in (FilterOperator.EQ, FilterOperator.IN):
            values = f.value if op == FilterOperator.IN else [f.value]
            return or_(*[json_expr.contains([_as_text(v)]) for v in values])
        if op in (FilterOperator.NEQ, FilterOperator.NOT_IN):
            values = f.value if op == FilterOperator.NOT_IN else [f.value]
            return or_(
                json_expr.is_(None),
                not_(or_(*[json_expr.contains([_as_text(v)]) for v in values])),
            )

    if op == FilterOperator.CONTAINS_TOKEN:
        return text_expr.icontains(_as_text(f.value), autoescape=True)
    if op == FilterOperator.NOT_CONTAINS_TOKEN:
        return or_(
            text_expr.is_(None),
            not_(text_expr.icontains(_as_text(f.value), autoescape=True)),
        )

    if definition.type in NUMERIC_TYPES:
        expr = cast(text_expr, Numeric)
        convert = lambda v: _parse_number(f.field, v)  # noqa: E731
    else:
        expr = text_expr
        convert = _as_text

    # Absent properties count as "not equal" / "not in"
    if op == FilterOperator.IN:
        return expr.in_([convert(v) for v in f.value])
    if op == FilterOperator.NOT_IN:
        return or_(text_expr.is_(None), expr.not_in([convert(v) for v in f.value]))
    if op == FilterOperator.NEQ:
        return or_(text_expr.is_(None), expr != convert(f.value))
    return _compare(expr, op, convert(f.value))


def filter_clause(f: Filter, schema: Dict[str, PropertyDefinition]) -> ColumnElement:
    if f.field in SPECIAL_FIELDS:
        return _special_clause(f)
    definition = schema.get(f.field)
    if definition is None:
        raise SchemaViolation(f"Cannot filter on unknown property '{f.field}'", {"property": f.field})
    return _property_clause(f, definition)


def build_filter_groups(
    groups: List[FilterGroup], schema: Dict[str, PropertyDefinition]
) -> Optional[ColumnElement]:
    """OR of ANDs; None when there are no groups."""
    if not groups:
        return None
    ors = [and_(*[filter_clause(f, schema) for f in g.filters]) for g in groups]
    return or_(*ors) if len(ors) > 1 else ors[0]


def query_clause(query: Optional[str]) -> Optional[ColumnElement]:
    """Case-insensitive substring match on the search vector."""
    if not query or not query.strip():
        return None
    return Record.search_vector.contains(query.strip().lower(), autoescape=True)


# ---------------------------------------------------------------------------
# Sort + keyset paging
# ---------------------------------------------------------------------------


class Ordering:
    """Resolved sort: the SQL key, its direction and how to read it off a row."""

    def __init__(self, sort: Optional[Sort], schema: Dict[str, PropertyDefinition]):
        self.field = sort.property_name if sort else None
        self.ascending = bool(sort and sort.direction == SortDirection.ASCENDING)
        if self.field is None or self.field == "id":
            self.key = None
        elif self.field in ("createdAt", "updatedAt"):
            self.key = SPECIAL_FIELDS[self.field]
        elif self.field in schema:
            self.key = func.coalesce(Record.properties[self.field], _JSON_NULL)
        else:
            raise SchemaViolation(
                f"Cannot sort on unknown property '{self.field}'", {"property": self.field}
            )

    def order_by(self) -> list:
        cols = [Record.id] if self.key is None else [self.key, Record.id]
        return [c.asc() if self.ascending else c.desc() for c in cols]

    def value_of(self, record: Record) -> Any:
        if self.key is None:
            return None
        if self.field == "createdAt":
            return record.created_at
        if self.field == "updatedAt":
            return record.updated_at
        return record.properties.get(self.field)

    def cursor_for(self, record: Record) -> str:
        return encode_cursor(record.id, self.value_of(record))

    def after(self, cursor: dict) -> ColumnElement:
        """Rows strictly past the cursor in this ordering."""
        if self.key is None:
            return Record.id > cursor["id"] if self.ascending else Record.id < cursor["id"]
        if self.field in ("createdAt", "updatedAt"):
            if cursor.get("v") is None:
                raise SchemaViolation("Invalid paging cursor")
            bound = _parse_datetime(self.field, cursor["v"])
        else:
            bound = cast(literal(json.dumps(cursor.get("v")), Text), JSONB)
        row = tuple_(self.key, Record.id)
        edge = tuple_(bound, cursor["id"])
        return row > edge if self.ascending else row < edge
