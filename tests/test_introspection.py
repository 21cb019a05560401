"""
Schema Introspection Tests
==========================
Collection discovery, shape inference, date ranges, index analysis and
target table discovery.
"""

from datetime import datetime, timezone

from conftest import BASE_MILLS, FakeDocumentSource, FakeRelationalTarget, make_entries, run
from nocturne_migrate.migration.index_models import QueryFrequency, QueryOperationType
from nocturne_migrate.migration.introspection import (
    SchemaIntrospectionService,
    infer_shape,
    partial_filter_to_sql,
)


# =============================================================================
# Shapes
# =============================================================================

class TestShapes:
    """Tests for sampled shape inference"""

    def test_infer_shape_records_types_and_presence(self):
        shape = infer_shape("treatments", [
            {"_id": 1, "insulin": 1, "notes": "a"},
            {"_id": 2, "insulin": 1.5, "notes": None},
            {"_id": 3, "insulin": "2", "boluscalc": {"bg": 100}},
        ])

        assert shape.sample_size == 3
        assert shape.presence["notes"] == 2
        assert shape.field_types["insulin"] == {"int", "double", "string"}
        assert "insulin" in shape.inconsistent_fields
        assert "notes" not in shape.inconsistent_fields
        assert shape.fields_of_type("object") == ["boluscalc"]

    def test_int_and_double_are_consistent(self):
        shape = infer_shape("entries", [{"sgv": 100}, {"sgv": 100.5}])
        assert shape.inconsistent_fields == {}

    def test_partial_filter_translation(self):
        assert partial_filter_to_sql(None) is None
        assert partial_filter_to_sql({"type": "sgv"}) == "type = 'sgv'"
        assert partial_filter_to_sql({"sgv": {"$gt": 40, "$lte": 400}}) == "sgv > 40 AND sgv <= 400"
        assert partial_filter_to_sql({"eventType": {"$exists": True}}) == "event_type IS NOT NULL"
        assert partial_filter_to_sql({"notes": "it's"}) == "notes = 'it''s'"


# =============================================================================
# Service
# =============================================================================

class TestSchemaIntrospectionService:
    """Tests for SchemaIntrospectionService against the in-memory source"""

    def test_system_collections_hidden(self):
        source = FakeDocumentSource({"entries": [], "system.views": []})
        service = SchemaIntrospectionService(source)

        assert run(service.list_collections()) == ["entries"]

    def test_analyze_collection_date_range(self):
        source = FakeDocumentSource({"entries": make_entries(10)})
        service = SchemaIntrospectionService(source)

        analysis = run(service.analyze_collection("entries"))

        assert analysis.document_count == 10
        assert analysis.date_field == "date"
        assert analysis.earliest_date == datetime.fromtimestamp((BASE_MILLS + 60_000) / 1000, tz=timezone.utc)
        assert analysis.latest_date == datetime.fromtimestamp((BASE_MILLS + 600_000) / 1000, tz=timezone.utc)

    def test_analyze_all_sorted_by_size(self):
        source = FakeDocumentSource({"entries": make_entries(3), "food": [{"_id": 1, "name": "Apple"}]})
        service = SchemaIntrospectionService(source)

        analyses = run(service.analyze_all_collections())

        assert [a.collection for a in analyses] == ["entries", "food"]
        assert analyses[1].earliest_date is None

    def test_index_analysis_from_existing_indexes(self):
        source = FakeDocumentSource(
            {"treatments": [{"_id": 1, "eventType": "Meal Bolus", "created_at": "2024-01-01T00:00:00Z",
                             "boluscalc": {"bg": 120}, "tags": ["a"]}]},
            indexes={"treatments": [
                {"name": "_id_", "key": {"_id": 1}},
                {"name": "eventType_1", "key": {"eventType": 1}},
                {"name": "created_at_-1", "key": {"created_at": -1}},
                {"name": "boluscalc_1", "key": {"boluscalc": 1}},
            ]},
        )
        service = SchemaIntrospectionService(source)

        analysis = run(service.build_index_analysis("treatments"))
        patterns = {tuple(p.fields): p for p in analysis.query_patterns}

        assert [i.name for i in analysis.existing_indexes] == ["eventType_1", "created_at_-1", "boluscalc_1"]
        assert patterns[("eventType",)].operation_type == QueryOperationType.EQUALITY
        assert patterns[("eventType",)].frequency == QueryFrequency.OCCASIONAL
        assert patterns[("created_at",)].operation_type == QueryOperationType.SORT
        assert patterns[("created_at",)].frequency == QueryFrequency.VERY_FREQUENT
        assert patterns[("boluscalc",)].operation_type == QueryOperationType.JSONB
        assert patterns[("tags",)].operation_type == QueryOperationType.ARRAY

    def test_index_analysis_infers_date_range_pattern(self):
        source = FakeDocumentSource({"entries": make_entries(5)})
        service = SchemaIntrospectionService(source)

        analysis = run(service.build_index_analysis("entries"))

        assert analysis.existing_indexes == []
        assert analysis.query_patterns[0].fields == ["date"]
        assert analysis.query_patterns[0].operation_type == QueryOperationType.RANGE

    def test_text_and_partial_indexes(self):
        source = FakeDocumentSource(
            {"treatments": [{"_id": 1, "notes": "x", "eventType": "Note"}]},
            indexes={"treatments": [
                {"name": "notes_text", "key": [("notes", "text")]},
                {"name": "eventType_partial", "key": {"eventType": 1},
                 "partialFilterExpression": {"eventType": {"$exists": True}}},
            ]},
        )
        analysis = run(SchemaIntrospectionService(source).build_index_analysis("treatments"))

        text, partial = analysis.query_patterns[:2]
        assert text.operation_type == QueryOperationType.TEXT_SEARCH
        assert text.fields == ["notes"]
        assert partial.benefits_from_partial_index
        assert partial.partial_index_condition == "event_type IS NOT NULL"

    def test_discover_target_tables(self):
        target = FakeRelationalTarget()
        run(target.ensure_schema(["entries"]))
        run(target.execute("CREATE INDEX IF NOT EXISTS ix_entries_date ON entries (\"date\")"))

        schemas = run(SchemaIntrospectionService.discover_target_tables(target))

        assert list(schemas) == ["entries"]
        assert schemas["entries"].columns["mills"] == "bigint"
        assert schemas["entries"].indexes == ["ix_entries_date"]
