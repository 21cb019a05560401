"""
Index Optimization Models
=========================
Closed enumerations and dataclasses shared by schema introspection (which
produces ``MongoIndexAnalysis``) and index optimization (which turns the
analysis into ``PostgreSqlIndexStrategy`` objects and applies them).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class IndexType(str, Enum):
    """PostgreSQL index access methods."""
    BTREE = "btree"
    GIN = "gin"
    GIST = "gist"
    HASH = "hash"
    SPGIST = "spgist"
    BRIN = "brin"


class SortDirection(str, Enum):
    ASCENDING = "asc"
    DESCENDING = "desc"


class NullHandling(str, Enum):
    FIRST = "first"
    LAST = "last"


class PerformanceBenefit(int, Enum):
    """Estimated benefit; integer values give the ordering."""
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


class QueryOperationType(str, Enum):
    EQUALITY = "equality"
    RANGE = "range"
    SORT = "sort"
    TEXT_SEARCH = "text_search"
    ARRAY = "array"
    JSONB = "jsonb"


class QueryFrequency(str, Enum):
    RARE = "rare"
    OCCASIONAL = "occasional"
    FREQUENT = "frequent"
    VERY_FREQUENT = "very_frequent"


# Exhaustive mappings over the closed enums above
OPERATION_INDEX_TYPES: Dict[QueryOperationType, IndexType] = {
    QueryOperationType.EQUALITY: IndexType.BTREE,
    QueryOperationType.RANGE: IndexType.BTREE,
    QueryOperationType.SORT: IndexType.BTREE,
    QueryOperationType.TEXT_SEARCH: IndexType.GIN,
    QueryOperationType.ARRAY: IndexType.GIN,
    QueryOperationType.JSONB: IndexType.GIN,
}

FREQUENCY_PRIORITIES: Dict[QueryFrequency, int] = {
    QueryFrequency.RARE: 1,
    QueryFrequency.OCCASIONAL: 3,
    QueryFrequency.FREQUENT: 6,
    QueryFrequency.VERY_FREQUENT: 9,
}

FREQUENCY_BENEFITS: Dict[QueryFrequency, PerformanceBenefit] = {
    QueryFrequency.RARE: PerformanceBenefit.LOW,
    QueryFrequency.OCCASIONAL: PerformanceBenefit.MEDIUM,
    QueryFrequency.FREQUENT: PerformanceBenefit.HIGH,
    QueryFrequency.VERY_FREQUENT: PerformanceBenefit.CRITICAL,
}


def index_type_for(operation: QueryOperationType) -> IndexType:
    return OPERATION_INDEX_TYPES[operation]


@dataclass
class IndexColumn:
    """One key of an index: a column or an expression."""
    column_name: str
    direction: SortDirection = SortDirection.ASCENDING
    null_handling: NullHandling = NullHandling.LAST
    expression: Optional[str] = None
    operator_class: Optional[str] = None


@dataclass
class PostgreSqlIndexStrategy:
    """A fully specified target index."""
    index_name: str
    table_name: str
    columns: List[IndexColumn]
    index_type: IndexType = IndexType.BTREE
    is_unique: bool = False
    is_partial: bool = False
    partial_condition: Optional[str] = None
    create_concurrently: bool = True
    priority: int = 0
    estimated_benefit: PerformanceBenefit = PerformanceBenefit.MEDIUM
    source_collection: Optional[str] = None
    description: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)

    @property
    def column_key(self) -> Tuple[str, ...]:
        return tuple(c.expression or c.column_name for c in self.columns)

    @property
    def dedupe_key(self) -> Tuple[Any, ...]:
        return (self.table_name, self.column_key, self.index_type, self.partial_condition)

    @property
    def sort_key(self) -> Tuple[int, int]:
        return (self.priority, int(self.estimated_benefit))


@dataclass
class IndexCreationResult:
    index_name: str
    is_success: bool
    strategy: PostgreSqlIndexStrategy
    error_message: Optional[str] = None
    duration_seconds: float = 0.0
    sql_statement: Optional[str] = None


@dataclass
class IndexDropResult:
    index_name: str
    is_success: bool
    error_message: Optional[str] = None
    duration_seconds: float = 0.0


@dataclass
class MongoIndexInfo:
    """An index that exists on a source collection."""
    name: str
    keys: List[Tuple[str, Any]]
    is_unique: bool = False
    is_sparse: bool = False
    partial_filter_expression: Optional[Dict[str, Any]] = None

    @property
    def fields(self) -> List[str]:
        return [k for k, _ in self.keys]

    @property
    def is_text(self) -> bool:
        return any(v == "text" for _, v in self.keys)

    @classmethod
    def from_mongo(cls, index: Dict[str, Any]) -> "MongoIndexInfo":
        keys = index.get("key") or []
        if isinstance(keys, dict):
            keys = list(keys.items())
        return cls(
            name=index.get("name", ""),
            keys=[(str(k), v) for k, v in keys],
            is_unique=bool(index.get("unique", False)),
            is_sparse=bool(index.get("sparse", False)),
            partial_filter_expression=index.get("partialFilterExpression"),
        )


@dataclass
class QueryPattern:
    """An observed or inferred access pattern on a source collection."""
    fields: List[str]
    operation_type: QueryOperationType
    frequency: QueryFrequency = QueryFrequency.OCCASIONAL
    benefits_from_partial_index: bool = False
    partial_index_condition: Optional[str] = None


@dataclass
class MongoIndexAnalysis:
    """Contract between schema introspection and index optimization."""
    collection_name: str
    existing_indexes: List[MongoIndexInfo] = field(default_factory=list)
    query_patterns: List[QueryPattern] = field(default_factory=list)
    recommended_indexes: List[PostgreSqlIndexStrategy] = field(default_factory=list)
