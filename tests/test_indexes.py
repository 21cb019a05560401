"""
Index Optimization Tests
========================
Pattern -> access method mapping, the collection catalogue, SQL generation,
and creating/dropping indexes on the target.
"""

import pytest

from conftest import FakeRelationalTarget, run
from nocturne_migrate.config import IndexOptimizationOptions
from nocturne_migrate.errors import MigrationError
from nocturne_migrate.migration.index_models import (
    IndexColumn,
    IndexType,
    MongoIndexAnalysis,
    MongoIndexInfo,
    PerformanceBenefit,
    PostgreSqlIndexStrategy,
    QueryFrequency,
    QueryOperationType,
    QueryPattern,
)
from nocturne_migrate.migration.indexes import (
    MAX_IDENTIFIER_LENGTH,
    IndexOptimizationService,
    index_name,
)
from nocturne_migrate.migration.stores import TARGET_SCHEMA


@pytest.fixture
def service():
    return IndexOptimizationService()


# =============================================================================
# Access method selection
# =============================================================================

class TestAccessMethods:
    """Tests for operation type -> index type mapping"""

    @pytest.mark.parametrize("field_name", ["sgv", "device", "type", "mills", "customField", "_id"])
    def test_single_field_equality_is_never_gin(self, service, field_name):
        pattern = QueryPattern(fields=[field_name], operation_type=QueryOperationType.EQUALITY)

        strategies = service.strategies_for_pattern("entries", "entries", pattern)

        assert strategies
        assert all(s.index_type == IndexType.BTREE for s in strategies)

    @pytest.mark.parametrize("field_name", ["additional_properties", "sgv", "customField"])
    def test_jsonb_is_always_gin(self, service, field_name):
        pattern = QueryPattern(fields=[field_name], operation_type=QueryOperationType.JSONB)

        strategies = service.strategies_for_pattern("entries", "entries", pattern)

        assert strategies
        assert all(s.index_type == IndexType.GIN for s in strategies)
        assert strategies[0].index_name.endswith("_gin")

    def test_overflow_fields_use_expressions(self, service):
        pattern = QueryPattern(fields=["customField"], operation_type=QueryOperationType.EQUALITY)

        strategy = service.strategies_for_pattern("entries", "entries", pattern)[0]

        assert strategy.columns[0].expression == "(additional_properties->>'customField')"

    def test_unknown_table_yields_nothing(self, service):
        pattern = QueryPattern(fields=["anything"], operation_type=QueryOperationType.EQUALITY)
        assert service.strategies_for_pattern("mystery", "mystery", pattern) == []

    def test_frequency_sets_priority_and_benefit(self, service):
        pattern = QueryPattern(fields=["date"], operation_type=QueryOperationType.RANGE,
                               frequency=QueryFrequency.VERY_FREQUENT)

        strategy = service.strategies_for_pattern("entries", "entries", pattern)[0]

        assert strategy.priority == 9
        assert strategy.estimated_benefit == PerformanceBenefit.CRITICAL

    def test_sort_pattern_descends(self, service):
        pattern = QueryPattern(fields=["mills"], operation_type=QueryOperationType.SORT)
        sql = service.generate_index_sql(service.strategies_for_pattern("entries", "entries", pattern)[0])
        assert '"mills" DESC' in sql

    def test_partial_variant_added_when_flagged(self, service):
        pattern = QueryPattern(
            fields=["event_type"], operation_type=QueryOperationType.EQUALITY,
            benefits_from_partial_index=True, partial_index_condition="event_type IS NOT NULL",
        )

        strategies = service.strategies_for_pattern("treatments", "treatments", pattern)

        assert len(strategies) == 2
        assert strategies[1].is_partial
        assert strategies[1].partial_condition == "event_type IS NOT NULL"

        no_partials = IndexOptimizationOptions(create_partial_indexes=False)
        assert len(service.strategies_for_pattern("treatments", "treatments", pattern, no_partials)) == 1


# =============================================================================
# Recommendation
# =============================================================================

class TestRecommendation:
    """Tests for analyze_and_recommend"""

    def test_catalogue_and_patterns_are_deduplicated(self, service):
        analysis = MongoIndexAnalysis(
            collection_name="entries",
            query_patterns=[
                QueryPattern(fields=["date"], operation_type=QueryOperationType.RANGE,
                             frequency=QueryFrequency.VERY_FREQUENT),
                QueryPattern(fields=["date"], operation_type=QueryOperationType.RANGE,
                             frequency=QueryFrequency.RARE),
            ],
        )

        strategies = service.analyze_and_recommend([analysis])

        assert analysis.recommended_indexes == strategies
        keys = [s.dedupe_key for s in strategies]
        assert len(keys) == len(set(keys))
        date_only = [s for s in strategies if s.column_key == ("date",)]
        assert len(date_only) == 1
        assert date_only[0].priority == 9
        assert [s.sort_key for s in strategies] == sorted((s.sort_key for s in strategies), reverse=True)

    def test_converted_source_index(self, service):
        index = MongoIndexInfo(name="sgv_-1", keys=[("sgv", -1)], is_unique=True)

        strategy = service.convert_mongo_index("entries", "entries", index)

        assert strategy.priority == 1
        assert strategy.is_unique
        assert strategy.columns[0].column_name == "sgv"
        assert service.convert_mongo_index(
            "entries", "entries", MongoIndexInfo(name="x_1", keys=[("unknownField", 1)])
        ) is None

    def test_partial_source_index_is_not_unique(self, service):
        index = MongoIndexInfo(name="type_1", keys=[("type", 1)], is_unique=True,
                               partial_filter_expression={"type": "sgv"})

        strategy = service.convert_mongo_index("entries", "entries", index)

        assert strategy.is_partial
        assert not strategy.is_unique
        assert strategy.partial_condition == "type = 'sgv'"

    def test_catalogue_respects_options(self, service):
        lean = IndexOptimizationOptions(
            enable_time_series_optimizations=False, create_partial_indexes=False, create_concurrently=False,
        )

        strategies = service.create_collection_specific_strategies("entries", lean)

        assert [s.index_name for s in strategies] == ["ix_entries_device_date"]
        assert strategies[0].create_concurrently is False
        assert service.create_collection_specific_strategies("unknown") == []

    def test_catalogue_columns_exist_in_target_schema(self, service):
        for collection in ("entries", "treatments", "profile", "devicestatus", "food", "activity", "settings"):
            for strategy in service.create_collection_specific_strategies(collection):
                known = TARGET_SCHEMA[strategy.table_name]
                for column in strategy.columns:
                    if column.expression is None:
                        assert column.column_name in known, (strategy.index_name, column.column_name)


# =============================================================================
# SQL and application
# =============================================================================

def _strategy(**overrides) -> PostgreSqlIndexStrategy:
    values = dict(index_name="ix_entries_date", table_name="entries",
                  columns=[IndexColumn(column_name="date")], create_concurrently=True)
    values.update(overrides)
    return PostgreSqlIndexStrategy(**values)


class TestSqlAndApplication:
    """Tests for SQL generation and index creation"""

    def test_generate_basic_sql(self, service):
        sql = service.generate_index_sql(_strategy())
        assert sql == 'CREATE INDEX CONCURRENTLY IF NOT EXISTS ix_entries_date ON entries ("date")'

    def test_generate_unique_gin_partial_sql(self, service):
        sql = service.generate_index_sql(_strategy(
            index_name="ix_x", is_unique=True, index_type=IndexType.GIN, create_concurrently=False,
            is_partial=True, partial_condition="sgv IS NOT NULL",
        ))
        assert sql == 'CREATE UNIQUE INDEX IF NOT EXISTS ix_x ON entries USING gin ("date") WHERE sgv IS NOT NULL'

    def test_index_name_is_shortened(self):
        name = index_name("devicestatus", ["a_really_long_field_name"] * 4)

        assert len(name) <= MAX_IDENTIFIER_LENGTH
        assert name.startswith("ix_devicestatus_")
        assert name == index_name("devicestatus", ["a_really_long_field_name"] * 4)

    def test_create_indexes_in_priority_order(self, service):
        target = FakeRelationalTarget()
        low = _strategy(index_name="ix_low", priority=1)
        high = _strategy(index_name="ix_high", priority=9)

        results = run(service.create_indexes([low, high], target,
                                             IndexOptimizationOptions(max_concurrent_index_creation=1)))

        assert [r.index_name for r in results] == ["ix_high", "ix_low"]
        assert all(r.is_success for r in results)
        assert set(target.indexes) == {"ix_low", "ix_high"}

    def test_concurrently_disabled_by_options(self, service):
        target = FakeRelationalTarget()
        run(service.create_indexes([_strategy()], target, IndexOptimizationOptions(create_concurrently=False)))
        assert "CONCURRENTLY" not in target.executed[0]

    def test_failures_are_reported_not_raised(self, service):
        class BrokenTarget(FakeRelationalTarget):
            async def execute(self, sql, *args):
                raise MigrationError("relation does not exist")

        results = run(service.create_indexes([_strategy()], BrokenTarget()))

        assert not results[0].is_success
        assert "relation does not exist" in results[0].error_message
        assert results[0].sql_statement.startswith("CREATE INDEX")

    def test_drop_existing_keeps_primary_key(self, service):
        target = FakeRelationalTarget()
        target.indexes = {
            "entries_pkey": {"table": "entries", "definition": ""},
            "ix_entries_date": {"table": "entries", "definition": ""},
            "ix_treatments_mills": {"table": "treatments", "definition": ""},
        }

        results = run(service.drop_existing_indexes("entries", target))

        assert [r.index_name for r in results] == ["ix_entries_date"]
        assert set(target.indexes) == {"entries_pkey", "ix_treatments_mills"}
