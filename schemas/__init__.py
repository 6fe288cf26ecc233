from .properties import (
    PropertyType,
    PropertyValidation,
    PropertyDefinition,
    PropertyOverride,
    ObjectTypeInfo,
    MergedSchema,
    merge_properties,
    validate_properties,
)
from .search import Filter, FilterGroup, FilterOperator, Sort, SortDirection, SearchRequest, SearchPage
from .associations import AssociationTypeCreate, AssociationCreate, Cardinality, CascadeDelete, Direction
from .pipelines import StageConfig, StageOutcome, PipelineCreate, StageMove, AutomationCreate
from .bulk import BulkError, BulkResult

__all__ = [
    "PropertyType", "PropertyValidation", "PropertyDefinition", "PropertyOverride",
    "ObjectTypeInfo", "MergedSchema", "merge_properties", "validate_properties",
    "Filter", "FilterGroup", "FilterOperator", "Sort", "SortDirection",
    "SearchRequest", "SearchPage",
    "AssociationTypeCreate", "AssociationCreate", "Cardinality", "CascadeDelete", "Direction",
    "StageConfig", "StageOutcome", "PipelineCreate", "StageMove", "AutomationCreate",
    "BulkError", "BulkResult",
]
