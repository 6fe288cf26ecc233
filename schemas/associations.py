"""Association type and edge schemas."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, model_validator


class Cardinality(str, Enum):
    ONE_TO_ONE = "one-to-one"
    ONE_TO_MANY = "one-to-many"
    MANY_TO_ONE = "many-to-one"
    MANY_TO_MANY = "many-to-many"


class CascadeDelete(str, Enum):
    NONE = "none"
    FROM = "from"
    TO = "to"
    BOTH = "both"


class Direction(str, Enum):
    FROM = "from"
    TO = "to"


# Cardinality read as "<from side>-to-<to side>": a "one" on the from side
# means each to-record has at most one incoming edge, and vice versa.
_IMPLIED_MAX = {
    Cardinality.ONE_TO_ONE: (1, 1),
    Cardinality.ONE_TO_MANY: (None, 1),
    Cardinality.MANY_TO_ONE: (1, None),
    Cardinality.MANY_TO_MANY: (None, None),
}


def _tighter(a: Optional[int], b: Optional[int]) -> Optional[int]:
    if a is None:
        return b
    if b is None:
        return a
    return min(a, b)


def effective_limits(
    cardinality: Cardinality,
    from_max: Optional[int] = None,
    to_max: Optional[int] = None,
) -> tuple[Optional[int], Optional[int]]:
    """Combine cardinality-implied maxima with explicit ones.

    Returns ``(outgoing_max, incoming_max)``: how many edges of the type a
    from-record may have, and how many a to-record may have.
    """
    implied_from, implied_to = _IMPLIED_MAX[Cardinality(cardinality)]
    return _tighter(implied_from, from_max), _tighter(implied_to, to_max)


class AssociationTypeCreate(BaseModel):
    from_object_type_id: str = Field(min_length=1)
    to_object_type_id: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=100)
    label: str = Field(min_length=1)
    inverse_label: Optional[str] = None
    category: str = "USER_DEFINED"
    cardinality: Cardinality = Cardinality.MANY_TO_MANY
    from_min: int = Field(default=0, ge=0)
    from_max: Optional[int] = Field(default=None, ge=0)
    to_min: int = Field(default=0, ge=0)
    to_max: Optional[int] = Field(default=None, ge=0)
    cascade_delete: CascadeDelete = CascadeDelete.NONE
    is_system_type: bool = False

    @model_validator(mode="after")
    def _max_not_below_min(self):
        if self.from_max is not None and self.from_max < self.from_min:
            raise ValueError("from_max must be >= from_min")
        if self.to_max is not None and self.to_max < self.to_min:
            raise ValueError("to_max must be >= to_min")
        return self


class AssociationCreate(BaseModel):
    properties: Dict[str, Any] = Field(default_factory=dict)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @model_validator(mode="after")
    def _end_after_start(self):
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not precede start_date")
        return self
