"""
Index Optimization Service
==========================
Turns ``MongoIndexAnalysis`` results into PostgreSQL index strategies and
applies them to the target.

Strategies come from three places:

1. Query patterns (operation type picks the access method, frequency picks
   priority and benefit).
2. Existing source indexes, converted at the lowest priority.
3. A per-collection catalogue of indexes known to serve the application's
   queries (time series on entries, event types on treatments, ...).

The skip/defer/drop toggles in ``IndexOptimizationOptions`` are applied by
the engine; this service only honours ``create_concurrently`` and the
concurrency ceiling.
"""

import asyncio
import dataclasses
import hashlib
import logging
import time
from typing import Callable, Dict, Iterable, List, Optional

from ..config.config import IndexOptimizationOptions
from ..errors import MigrationError
from ..utils import to_snake_case
from .index_models import (
    FREQUENCY_BENEFITS,
    FREQUENCY_PRIORITIES,
    IndexColumn,
    IndexCreationResult,
    IndexDropResult,
    IndexType,
    MongoIndexAnalysis,
    MongoIndexInfo,
    PerformanceBenefit,
    PostgreSqlIndexStrategy,
    QueryOperationType,
    QueryPattern,
    SortDirection,
    index_type_for,
)
from .introspection import partial_filter_to_sql
from .stores import TARGET_SCHEMA, RelationalTarget

logger = logging.getLogger(__name__)

MAX_IDENTIFIER_LENGTH = 63
CONVERTED_INDEX_PRIORITY = 1
OVERFLOW_COLUMN = "additional_properties"


def index_name(table: str, parts: Iterable[str], suffix: str = "") -> str:
    """``ix_<table>_<parts>[_suffix]`` shortened to PostgreSQL's identifier limit."""
    body = "_".join(p.replace(".", "_") for p in parts)
    name = f"ix_{table}_{body}" + (f"_{suffix}" if suffix else "")
    name = "".join(c if c.isalnum() or c == "_" else "_" for c in name).lower()
    if len(name) <= MAX_IDENTIFIER_LENGTH:
        return name
    digest = hashlib.md5(name.encode("utf-8")).hexdigest()[:8]
    return f"{name[:MAX_IDENTIFIER_LENGTH - 9]}_{digest}"


def _col(name: str, direction: SortDirection = SortDirection.ASCENDING, expression: Optional[str] = None) -> IndexColumn:
    return IndexColumn(column_name=name, direction=direction, expression=expression)


# ============================================================================
# Collection catalogue
# ============================================================================


def _entries_strategies(options: IndexOptimizationOptions) -> List[PostgreSqlIndexStrategy]:
    strategies = []
    if options.enable_time_series_optimizations:
        strategies.append(PostgreSqlIndexStrategy(
            index_name="ix_entries_date_mills_type",
            table_name="entries",
            columns=[_col("date"), _col("type")],
            priority=10,
            estimated_benefit=PerformanceBenefit.CRITICAL,
            description="Time-series optimization for entries by date and type",
        ))
        if options.create_covering_indexes:
            strategies.append(PostgreSqlIndexStrategy(
                index_name="ix_entries_date_sgv_type_covering",
                table_name="entries",
                columns=[_col("date"), _col("sgv"), _col("type"), _col("device")],
                priority=8,
                estimated_benefit=PerformanceBenefit.HIGH,
                description="Covering index for time-range queries with glucose values",
            ))
    if options.create_partial_indexes:
        strategies.append(PostgreSqlIndexStrategy(
            index_name="ix_entries_sgv_date_partial",
            table_name="entries",
            columns=[_col("date"), _col("sgv")],
            is_partial=True,
            partial_condition="type = 'sgv' AND sgv IS NOT NULL",
            priority=7,
            estimated_benefit=PerformanceBenefit.HIGH,
            description="Partial index for sensor glucose values",
        ))
    strategies.append(PostgreSqlIndexStrategy(
        index_name="ix_entries_device_date",
        table_name="entries",
        columns=[_col("device"), _col("date")],
        priority=5,
        description="Device-specific time-series queries",
    ))
    return strategies


def _treatments_strategies(options: IndexOptimizationOptions) -> List[PostgreSqlIndexStrategy]:
    strategies = [
        PostgreSqlIndexStrategy(
            index_name="ix_treatments_eventtype_date",
            table_name="treatments",
            columns=[_col("event_type"), _col("created_at", SortDirection.DESCENDING)],
            priority=9,
            estimated_benefit=PerformanceBenefit.HIGH,
            description="Treatment lookup by type and time",
        ),
        PostgreSqlIndexStrategy(
            index_name="ix_treatments_additional_properties_gin",
            table_name="treatments",
            columns=[_col(OVERFLOW_COLUMN)],
            index_type=IndexType.GIN,
            priority=6,
            description="GIN index for JSONB additional properties",
        ),
        PostgreSqlIndexStrategy(
            index_name="ix_treatments_boluscalc_gin",
            table_name="treatments",
            columns=[_col("boluscalc")],
            index_type=IndexType.GIN,
            priority=6,
            description="GIN index for JSONB bolus calculations",
        ),
    ]
    if options.create_partial_indexes:
        strategies.append(PostgreSqlIndexStrategy(
            index_name="ix_treatments_insulin_date_partial",
            table_name="treatments",
            columns=[_col("created_at", SortDirection.DESCENDING), _col("insulin")],
            is_partial=True,
            partial_condition="insulin IS NOT NULL AND insulin > 0",
            priority=5,
            description="Partial index for insulin treatments",
        ))
    return strategies


def _profiles_strategies(options: IndexOptimizationOptions) -> List[PostgreSqlIndexStrategy]:
    return [
        PostgreSqlIndexStrategy(
            index_name="ix_profiles_startdate_defaultprofile",
            table_name="profiles",
            columns=[_col("start_date", SortDirection.DESCENDING), _col("default_profile")],
            priority=8,
            estimated_benefit=PerformanceBenefit.HIGH,
            description="Profile lookup by time range",
        ),
        PostgreSqlIndexStrategy(
            index_name="ix_profiles_store_gin",
            table_name="profiles",
            columns=[_col("store")],
            index_type=IndexType.GIN,
            priority=6,
            description="GIN index for JSONB profile store",
        ),
    ]


def _devicestatus_strategies(options: IndexOptimizationOptions) -> List[PostgreSqlIndexStrategy]:
    return [
        PostgreSqlIndexStrategy(
            index_name="ix_devicestatus_device_created",
            table_name="devicestatus",
            columns=[_col("device"), _col("created_at", SortDirection.DESCENDING)],
            priority=8,
            estimated_benefit=PerformanceBenefit.HIGH,
            description="Device status lookup by device and time",
        ),
        PostgreSqlIndexStrategy(
            index_name="ix_devicestatus_additional_properties_gin",
            table_name="devicestatus",
            columns=[_col(OVERFLOW_COLUMN)],
            index_type=IndexType.GIN,
            priority=6,
            description="GIN index for JSONB additional properties",
        ),
    ]


def _food_strategies(options: IndexOptimizationOptions) -> List[PostgreSqlIndexStrategy]:
    return [
        PostgreSqlIndexStrategy(
            index_name="ix_food_name_category",
            table_name="food",
            columns=[_col("name"), _col("category")],
            priority=7,
            estimated_benefit=PerformanceBenefit.HIGH,
            description="Food search by name and category",
        ),
        PostgreSqlIndexStrategy(
            index_name="ix_food_name_gin",
            table_name="food",
            columns=[_col("name", expression="to_tsvector('english', COALESCE(name, ''))")],
            index_type=IndexType.GIN,
            priority=5,
            description="Full-text search index for food names",
        ),
    ]


def _activity_strategies(options: IndexOptimizationOptions) -> List[PostgreSqlIndexStrategy]:
    return [
        PostgreSqlIndexStrategy(
            index_name="ix_activity_created_type",
            table_name="activity",
            columns=[_col("created_at", SortDirection.DESCENDING), _col("activity_type")],
            priority=6,
            description="Activity audit log queries by time and type",
        ),
    ]


def _settings_strategies(options: IndexOptimizationOptions) -> List[PostgreSqlIndexStrategy]:
    return [
        PostgreSqlIndexStrategy(
            index_name="ix_settings_key_unique",
            table_name="settings",
            columns=[_col("key")],
            is_unique=True,
            priority=8,
            estimated_benefit=PerformanceBenefit.HIGH,
            description="Unique key-value lookup for settings",
        ),
    ]


def _auth_strategies(options: IndexOptimizationOptions) -> List[PostgreSqlIndexStrategy]:
    strategies = [
        PostgreSqlIndexStrategy(
            index_name="ix_auth_username_unique",
            table_name="auth",
            columns=[_col("username")],
            is_unique=True,
            priority=10,
            estimated_benefit=PerformanceBenefit.CRITICAL,
            description="Unique username lookup",
        ),
        PostgreSqlIndexStrategy(
            index_name="ix_auth_email_unique",
            table_name="auth",
            columns=[_col("email")],
            is_unique=True,
            priority=9,
            estimated_benefit=PerformanceBenefit.HIGH,
            description="Unique email lookup",
        ),
        PostgreSqlIndexStrategy(
            index_name="ix_auth_roles_gin",
            table_name="auth",
            columns=[_col("roles")],
            index_type=IndexType.GIN,
            priority=6,
            description="GIN index for JSONB roles",
        ),
        PostgreSqlIndexStrategy(
            index_name="ix_auth_permissions_gin",
            table_name="auth",
            columns=[_col("permissions")],
            index_type=IndexType.GIN,
            priority=6,
            description="GIN index for JSONB permissions",
        ),
    ]
    if options.create_partial_indexes:
        strategies.append(PostgreSqlIndexStrategy(
            index_name="ix_auth_active_users_partial",
            table_name="auth",
            columns=[_col("username"), _col("last_login", SortDirection.DESCENDING)],
            is_partial=True,
            partial_condition="is_active = true",
            priority=6,
            description="Partial index for active users",
        ))
    return strategies


COLLECTION_STRATEGIES: Dict[str, Callable[[IndexOptimizationOptions], List[PostgreSqlIndexStrategy]]] = {
    "entries": _entries_strategies,
    "treatments": _treatments_strategies,
    "profile": _profiles_strategies,
    "profiles": _profiles_strategies,
    "devicestatus": _devicestatus_strategies,
    "food": _food_strategies,
    "activity": _activity_strategies,
    "settings": _settings_strategies,
    "auth": _auth_strategies,
}


# ============================================================================
# Service
# ============================================================================


class IndexOptimizationService:
    """Recommends, creates and drops target indexes."""

    def __init__(self, options: Optional[IndexOptimizationOptions] = None):
        self.options = options or IndexOptimizationOptions()

    # ------------------------------------------------------------------
    # Recommendation
    # ------------------------------------------------------------------

    def analyze_and_recommend(
        self,
        analyses: Iterable[MongoIndexAnalysis],
        options: Optional[IndexOptimizationOptions] = None,
    ) -> List[PostgreSqlIndexStrategy]:
        """
        Build deduplicated strategies for every analysed collection.

        Each analysis's ``recommended_indexes`` is filled in as a side effect.

        Returns:
            Strategies in descending (priority, benefit) order
        """
        options = options or self.options
        combined: List[PostgreSqlIndexStrategy] = []
        for analysis in analyses:
            table = self._table_for(analysis.collection_name)
            strategies: List[PostgreSqlIndexStrategy] = []
            if options.analyze_query_patterns:
                for pattern in analysis.query_patterns:
                    strategies.extend(self.strategies_for_pattern(analysis.collection_name, table, pattern, options))
            for index in analysis.existing_indexes:
                converted = self.convert_mongo_index(analysis.collection_name, table, index, options)
                if converted is not None:
                    strategies.append(converted)
            strategies.extend(self.create_collection_specific_strategies(analysis.collection_name, options))

            analysis.recommended_indexes = self.deduplicate(strategies)
            combined.extend(analysis.recommended_indexes)
            logger.info(
                f"Created {len(analysis.recommended_indexes)} index strategies for "
                f"collection {analysis.collection_name}"
            )
        return self.deduplicate(combined)

    def strategies_for_pattern(
        self,
        collection: str,
        table: str,
        pattern: QueryPattern,
        options: Optional[IndexOptimizationOptions] = None,
    ) -> List[PostgreSqlIndexStrategy]:
        """One strategy for the pattern plus a partial variant when flagged."""
        options = options or self.options
        index_type = index_type_for(pattern.operation_type)
        columns = self._columns_for(table, pattern)
        if not columns:
            logger.debug(f"No target column for {collection}.{pattern.fields}; pattern ignored")
            return []

        parts = [c.column_name for c in columns]
        suffix = "gin" if index_type == IndexType.GIN else ""
        base = PostgreSqlIndexStrategy(
            index_name=index_name(table, parts, suffix),
            table_name=table,
            columns=columns,
            index_type=index_type,
            create_concurrently=options.create_concurrently,
            priority=FREQUENCY_PRIORITIES[pattern.frequency],
            estimated_benefit=FREQUENCY_BENEFITS[pattern.frequency],
            source_collection=collection,
            description=f"{pattern.operation_type.value} query on {', '.join(pattern.fields)}",
        )
        strategies = [base]
        if pattern.benefits_from_partial_index and pattern.partial_index_condition and options.create_partial_indexes:
            strategies.append(PostgreSqlIndexStrategy(
                index_name=index_name(table, parts, "partial"),
                table_name=table,
                columns=list(columns),
                index_type=index_type,
                is_partial=True,
                partial_condition=pattern.partial_index_condition,
                create_concurrently=options.create_concurrently,
                priority=base.priority,
                estimated_benefit=base.estimated_benefit,
                source_collection=collection,
                description=f"Partial {base.description}",
            ))
        return strategies

    def convert_mongo_index(
        self,
        collection: str,
        table: str,
        index: MongoIndexInfo,
        options: Optional[IndexOptimizationOptions] = None,
    ) -> Optional[PostgreSqlIndexStrategy]:
        """Existing source index as a low-priority strategy."""
        options = options or self.options
        known = TARGET_SCHEMA.get(table, {})
        columns = []
        for field_name, direction in index.keys:
            if direction == "text":
                continue
            column = self._column_name(field_name)
            if column not in known:
                return None
            columns.append(_col(
                column, SortDirection.DESCENDING if direction == -1 else SortDirection.ASCENDING
            ))
        if not columns:
            return None
        condition = partial_filter_to_sql(index.partial_filter_expression)
        return PostgreSqlIndexStrategy(
            index_name=index_name(table, [index.name]),
            table_name=table,
            columns=columns,
            is_unique=index.is_unique and condition is None,
            is_partial=condition is not None,
            partial_condition=condition,
            create_concurrently=options.create_concurrently,
            priority=CONVERTED_INDEX_PRIORITY,
            estimated_benefit=PerformanceBenefit.MEDIUM,
            source_collection=collection,
            description=f"Converted from MongoDB index: {index.name}",
        )

    def create_collection_specific_strategies(
        self, collection: str, options: Optional[IndexOptimizationOptions] = None
    ) -> List[PostgreSqlIndexStrategy]:
        options = options or self.options
        factory = COLLECTION_STRATEGIES.get(collection.lower())
        if factory is None:
            return []
        strategies = factory(options)
        for strategy in strategies:
            strategy.create_concurrently = options.create_concurrently
            strategy.source_collection = collection
        return strategies

    @staticmethod
    def deduplicate(strategies: Iterable[PostgreSqlIndexStrategy]) -> List[PostgreSqlIndexStrategy]:
        """Keep the best strategy per (table, columns, type, condition), best first."""
        best: Dict[tuple, PostgreSqlIndexStrategy] = {}
        for strategy in strategies:
            key = strategy.dedupe_key
            current = best.get(key)
            if current is None or strategy.sort_key > current.sort_key:
                best[key] = strategy
        return sorted(best.values(), key=lambda s: s.sort_key, reverse=True)

    # ------------------------------------------------------------------
    # SQL
    # ------------------------------------------------------------------

    @staticmethod
    def generate_index_sql(strategy: PostgreSqlIndexStrategy) -> str:
        sql = "CREATE "
        if strategy.is_unique:
            sql += "UNIQUE "
        sql += "INDEX "
        if strategy.create_concurrently:
            sql += "CONCURRENTLY "
        sql += f"IF NOT EXISTS {strategy.index_name} ON {strategy.table_name} "
        if strategy.index_type != IndexType.BTREE:
            sql += f"USING {strategy.index_type.value} "

        parts = []
        for column in strategy.columns:
            part = column.expression or f'"{column.column_name}"'
            if column.operator_class:
                part += f" {column.operator_class}"
            if strategy.index_type == IndexType.BTREE:
                if column.direction == SortDirection.DESCENDING:
                    part += " DESC"
                if column.null_handling.value == "first":
                    part += " NULLS FIRST"
            parts.append(part)
        sql += f"({', '.join(parts)})"

        if strategy.is_partial and strategy.partial_condition:
            sql += f" WHERE {strategy.partial_condition}"
        return sql

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def create_indexes(
        self,
        strategies: Iterable[PostgreSqlIndexStrategy],
        target: RelationalTarget,
        options: Optional[IndexOptimizationOptions] = None,
    ) -> List[IndexCreationResult]:
        """
        Create indexes in descending priority order.

        At most ``max_concurrent_index_creation`` statements run at once.
        Failures are reported per index and never raise.
        """
        options = options or self.options
        ordered = sorted(strategies, key=lambda s: s.sort_key, reverse=True)
        semaphore = asyncio.Semaphore(max(1, options.max_concurrent_index_creation))

        async def create_one(strategy: PostgreSqlIndexStrategy) -> IndexCreationResult:
            async with semaphore:
                return await self._create_single(strategy, target, options)

        results = list(await asyncio.gather(*(create_one(s) for s in ordered)))
        succeeded = sum(1 for r in results if r.is_success)
        logger.info(f"Index creation finished: {succeeded} created, {len(results) - succeeded} failed")
        return results

    async def _create_single(
        self,
        strategy: PostgreSqlIndexStrategy,
        target: RelationalTarget,
        options: IndexOptimizationOptions,
    ) -> IndexCreationResult:
        if not options.create_concurrently and strategy.create_concurrently:
            strategy = dataclasses.replace(strategy, create_concurrently=False)
        sql = self.generate_index_sql(strategy)
        start = time.monotonic()
        try:
            await target.execute(sql)
            duration = time.monotonic() - start
            logger.info(f"Created index {strategy.index_name} in {duration:.2f}s")
            return IndexCreationResult(
                index_name=strategy.index_name,
                is_success=True,
                strategy=strategy,
                duration_seconds=duration,
                sql_statement=sql,
            )
        except MigrationError as e:
            logger.error(f"Failed to create index {strategy.index_name}: {e}")
            return IndexCreationResult(
                index_name=strategy.index_name,
                is_success=False,
                strategy=strategy,
                error_message=str(e),
                duration_seconds=time.monotonic() - start,
                sql_statement=sql,
            )

    async def drop_indexes(
        self,
        names: Iterable[str],
        target: RelationalTarget,
        options: Optional[IndexOptimizationOptions] = None,
    ) -> List[IndexDropResult]:
        options = options or self.options
        concurrently = "CONCURRENTLY " if options.create_concurrently else ""
        results = []
        for name in names:
            start = time.monotonic()
            try:
                await target.execute(f"DROP INDEX {concurrently}IF EXISTS {name}")
                results.append(IndexDropResult(name, True, duration_seconds=time.monotonic() - start))
                logger.info(f"Dropped index {name}")
            except MigrationError as e:
                logger.error(f"Failed to drop index {name}: {e}")
                results.append(IndexDropResult(name, False, str(e), time.monotonic() - start))
        return results

    async def drop_existing_indexes(
        self,
        table: str,
        target: RelationalTarget,
        options: Optional[IndexOptimizationOptions] = None,
    ) -> List[IndexDropResult]:
        """Drop every index on ``table`` except its primary key."""
        indexes = await target.list_indexes(table)
        names = [i["name"] for i in indexes if not i["name"].endswith("_pkey")]
        return await self.drop_indexes(names, target, options)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _table_for(collection: str) -> str:
        return "profiles" if collection == "profile" else collection.lower()

    @staticmethod
    def _column_name(field_name: str) -> str:
        return "id" if field_name == "_id" else to_snake_case(field_name)

    def _columns_for(self, table: str, pattern: QueryPattern) -> List[IndexColumn]:
        """
        Map pattern fields onto target columns.

        Fields without their own column live in ``additional_properties``:
        B-tree patterns index the extracted text value, GIN patterns index the
        whole JSONB document.
        """
        known = TARGET_SCHEMA.get(table, {})
        index_type = index_type_for(pattern.operation_type)
        columns: List[IndexColumn] = []
        for field_name in pattern.fields:
            column = self._column_name(field_name)
            if column in known:
                if pattern.operation_type == QueryOperationType.TEXT_SEARCH and known[column] != "jsonb":
                    columns.append(_col(column, expression=f"to_tsvector('english', COALESCE({column}, ''))"))
                elif index_type == IndexType.GIN and known[column] != "jsonb":
                    columns.append(_col(column, expression=f"to_jsonb({column})"))
                else:
                    direction = (
                        SortDirection.DESCENDING
                        if pattern.operation_type == QueryOperationType.SORT
                        else SortDirection.ASCENDING
                    )
                    columns.append(_col(column, direction))
            elif OVERFLOW_COLUMN in known:
                if index_type == IndexType.GIN:
                    if all(c.column_name != OVERFLOW_COLUMN for c in columns):
                        columns.append(_col(OVERFLOW_COLUMN))
                else:
                    key = field_name.replace("'", "''")
                    columns.append(_col(column, expression=f"({OVERFLOW_COLUMN}->>'{key}')"))
            else:
                return []
        return columns
