"""Record search request schemas."""
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class FilterOperator(str, Enum):
    EQ = "EQ"
    NEQ = "NEQ"
    GT = "GT"
    GTE = "GTE"
    LT = "LT"
    LTE = "LTE"
    CONTAINS_TOKEN = "CONTAINS_TOKEN"
    NOT_CONTAINS_TOKEN = "NOT_CONTAINS_TOKEN"
    IN = "IN"
    NOT_IN = "NOT_IN"


LIST_OPERATORS = {FilterOperator.IN, FilterOperator.NOT_IN}


class Filter(BaseModel):
    field: str = Field(min_length=1)
    operator: FilterOperator
    value: Any = None

    @model_validator(mode="after")
    def _value_shape(self):
        if self.operator in LIST_OPERATORS:
            if not isinstance(self.value, list) or not self.value:
                raise ValueError(f"{self.operator.value} requires a non-empty list value")
        elif self.value is None or isinstance(self.value, (list, dict)):
            raise ValueError(f"{self.operator.value} requires a scalar value")
        return self


class FilterGroup(BaseModel):
    """Filters inside a group are ANDed; groups are ORed together."""

    filters: List[Filter] = Field(min_length=1)


class SortDirection(str, Enum):
    ASCENDING = "ASCENDING"
    DESCENDING = "DESCENDING"


class Sort(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    property_name: str = Field(alias="propertyName", min_length=1)
    direction: SortDirection = SortDirection.DESCENDING


class SearchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filter_groups: List[FilterGroup] = Field(default_factory=list, alias="filterGroups")
    sorts: List[Sort] = Field(default_factory=list, max_length=1)
    query: Optional[str] = None
    properties: Optional[List[str]] = None
    limit: int = Field(default=10, ge=1, le=100)
    after: Optional[str] = None
    archived: bool = False

    @property
    def is_simple(self) -> bool:
        """True when only a text query is used, which makes the result cacheable."""
        return not self.filter_groups and not self.sorts and self.properties is None


class SearchPage(BaseModel):
    results: List[dict]
    total: int
    next_after: Optional[str] = None

    def to_response(self) -> dict:
        paging = {"next": {"after": self.next_after}} if self.next_after else None
        out: dict = {"total": self.total, "results": self.results}
        if paging:
            out["paging"] = paging
        return out
