"""
Schema Introspection
====================
Discovers source collections, samples documents to infer their shape, reads
existing source indexes and derives query patterns for index optimization.
Also discovers the target tables so validation can compare both sides.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from ..utils import to_snake_case
from .index_models import (
    MongoIndexAnalysis,
    MongoIndexInfo,
    QueryFrequency,
    QueryOperationType,
    QueryPattern,
)
from .stores import COLLECTION_DATE_FIELDS, DocumentSource, RelationalTarget, build_date_filter
from .transformers import bson_type_name, to_datetime

logger = logging.getLogger(__name__)

DATE_FIELDS = {"date", "mills", "created_at", "dateString", "startDate", "timestamp"}
_NUMERIC_TYPES = {"int", "double"}


@dataclass
class CollectionShape:
    """Field types and presence observed in a document sample."""
    collection: str
    sample_size: int = 0
    field_types: Dict[str, Set[str]] = field(default_factory=dict)
    presence: Dict[str, int] = field(default_factory=dict)

    @property
    def inconsistent_fields(self) -> Dict[str, Set[str]]:
        """Fields holding more than one kind of non-null value (int and double count as one)."""
        result = {}
        for name, types in self.field_types.items():
            kinds = {"number" if t in _NUMERIC_TYPES else t for t in types if t != "null"}
            if len(kinds) > 1:
                result[name] = set(types)
        return result

    def fields_of_type(self, type_name: str) -> List[str]:
        return sorted(n for n, types in self.field_types.items() if type_name in types)


@dataclass
class CollectionAnalysis:
    collection: str
    document_count: int
    earliest_date: Optional[datetime] = None
    latest_date: Optional[datetime] = None
    date_field: Optional[str] = None


@dataclass
class TableSchema:
    """Target table columns (name -> data type) and index names."""
    name: str
    columns: Dict[str, str] = field(default_factory=dict)
    indexes: List[str] = field(default_factory=list)


def infer_shape(collection: str, documents: List[Dict[str, Any]]) -> CollectionShape:
    """Record the type names seen for every top-level field."""
    shape = CollectionShape(collection=collection, sample_size=len(documents))
    for document in documents:
        for name, value in document.items():
            shape.field_types.setdefault(name, set()).add(bson_type_name(value))
            shape.presence[name] = shape.presence.get(name, 0) + 1
    return shape


def partial_filter_to_sql(expression: Optional[Dict[str, Any]]) -> Optional[str]:
    """Translate a simple Mongo partialFilterExpression into a SQL predicate."""
    if not expression:
        return None
    operators = {"$gt": ">", "$gte": ">=", "$lt": "<", "$lte": "<=", "$eq": "="}
    clauses = []
    for name, condition in expression.items():
        column = to_snake_case(name)
        if isinstance(condition, dict):
            for op, value in condition.items():
                if op == "$exists":
                    clauses.append(f"{column} IS {'NOT ' if value else ''}NULL")
                elif op in operators:
                    clauses.append(f"{column} {operators[op]} {_sql_literal(value)}")
        else:
            clauses.append(f"{column} = {_sql_literal(condition)}")
    return " AND ".join(clauses) or None


def _sql_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return "'" + str(value).replace("'", "''") + "'"


class SchemaIntrospectionService:
    """Reads collection metadata from a ``DocumentSource``."""

    def __init__(self, source: DocumentSource, sample_size: int = 100):
        self.source = source
        self.sample_size = sample_size

    async def list_collections(self) -> List[str]:
        return [c for c in await self.source.list_collections() if not c.startswith("system.")]

    async def sample_documents(self, collection: str, size: Optional[int] = None) -> List[Dict[str, Any]]:
        return await self.source.sample_documents(collection, size or self.sample_size)

    async def infer_collection_shape(self, collection: str) -> CollectionShape:
        return infer_shape(collection, await self.sample_documents(collection))

    async def list_source_indexes(self, collection: str) -> List[MongoIndexInfo]:
        """Existing indexes except the implicit ``_id_`` index."""
        raw = await self.source.list_indexes(collection)
        return [MongoIndexInfo.from_mongo(i) for i in raw if i.get("name") != "_id_"]

    async def analyze_collection(
        self,
        collection: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> CollectionAnalysis:
        """Document count and the earliest/latest value of the collection's date field."""
        count = await self.source.count_documents(collection, start_date, end_date)
        analysis = CollectionAnalysis(collection=collection, document_count=count)
        date_field = COLLECTION_DATE_FIELDS.get(collection)
        if date_field and count:
            analysis.date_field = date_field
            query = build_date_filter(start_date, end_date)
            query = {"$and": [query, {date_field: {"$exists": True}}]} if query else {date_field: {"$exists": True}}
            first = await self.source.find(collection, query, limit=1, sort=[(date_field, 1)])
            last = await self.source.find(collection, query, limit=1, sort=[(date_field, -1)])
            if first:
                analysis.earliest_date = to_datetime(first[0].get(date_field))
            if last:
                analysis.latest_date = to_datetime(last[0].get(date_field))
        return analysis

    async def analyze_all_collections(
        self, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None
    ) -> List[CollectionAnalysis]:
        results = []
        for collection in await self.list_collections():
            results.append(await self.analyze_collection(collection, start_date, end_date))
        return sorted(results, key=lambda a: a.document_count, reverse=True)

    async def build_index_analysis(self, collection: str) -> MongoIndexAnalysis:
        """Derive query patterns from existing indexes and the sampled shape."""
        existing = await self.list_source_indexes(collection)
        shape = await self.infer_collection_shape(collection)
        analysis = MongoIndexAnalysis(collection_name=collection, existing_indexes=existing)

        covered: Set[str] = set()
        for index in existing:
            pattern = self._pattern_from_index(index, shape)
            analysis.query_patterns.append(pattern)
            covered.update(pattern.fields)

        date_field = COLLECTION_DATE_FIELDS.get(collection)
        if date_field and date_field in shape.field_types and date_field not in covered:
            analysis.query_patterns.append(
                QueryPattern(
                    fields=[date_field],
                    operation_type=QueryOperationType.RANGE,
                    frequency=QueryFrequency.VERY_FREQUENT,
                )
            )

        for name in shape.fields_of_type("object"):
            if name not in covered and name != "_id":
                analysis.query_patterns.append(
                    QueryPattern(fields=[name], operation_type=QueryOperationType.JSONB,
                                 frequency=QueryFrequency.RARE)
                )
        for name in shape.fields_of_type("array"):
            if name not in covered:
                analysis.query_patterns.append(
                    QueryPattern(fields=[name], operation_type=QueryOperationType.ARRAY,
                                 frequency=QueryFrequency.RARE)
                )

        logger.debug(
            f"Index analysis for {collection}: {len(existing)} indexes, "
            f"{len(analysis.query_patterns)} patterns"
        )
        return analysis

    @staticmethod
    def _pattern_from_index(index: MongoIndexInfo, shape: CollectionShape) -> QueryPattern:
        fields = index.fields
        if index.is_text:
            operation = QueryOperationType.TEXT_SEARCH
            fields = [k for k, v in index.keys if v == "text"]
        elif any("array" in shape.field_types.get(f, set()) for f in fields):
            operation = QueryOperationType.ARRAY
        elif any("object" in shape.field_types.get(f, set()) for f in fields):
            operation = QueryOperationType.JSONB
        elif any(v == -1 for _, v in index.keys):
            operation = QueryOperationType.SORT
        elif any(f in DATE_FIELDS for f in fields):
            operation = QueryOperationType.RANGE
        else:
            operation = QueryOperationType.EQUALITY

        if any(f in DATE_FIELDS for f in fields):
            frequency = QueryFrequency.VERY_FREQUENT
        elif index.is_unique or len(fields) > 1:
            frequency = QueryFrequency.FREQUENT
        else:
            frequency = QueryFrequency.OCCASIONAL

        condition = partial_filter_to_sql(index.partial_filter_expression)
        return QueryPattern(
            fields=fields,
            operation_type=operation,
            frequency=frequency,
            benefits_from_partial_index=condition is not None,
            partial_index_condition=condition,
        )

    @staticmethod
    async def discover_target_tables(target: RelationalTarget) -> Dict[str, TableSchema]:
        """Columns and index names for every public table in the target."""
        schemas: Dict[str, TableSchema] = {}
        indexes = await target.list_indexes()
        for table in await target.list_tables():
            schemas[table] = TableSchema(
                name=table,
                columns=await target.get_table_columns(table),
                indexes=[i["name"] for i in indexes if i["table"] == table],
            )
        return schemas
