"""
Data Transformation Tests
=========================
Document -> record mapping for every supported collection, the shared
conversion helpers and cursor id encoding.
"""

import uuid
from datetime import datetime, timezone

import pytest
from bson import ObjectId

from nocturne_migrate.config import TransformationOptions
from nocturne_migrate.migration.stores import (
    TARGET_SCHEMA,
    build_date_filter,
    create_table_sql,
    decode_cursor_id,
    encode_cursor_id,
)
from nocturne_migrate.migration.transform import DataTransformationService
from nocturne_migrate.migration.transformers import (
    normalize_direction,
    object_id_to_uuid,
    to_datetime,
    to_float,
    to_int,
    to_iso,
    to_json_value,
    to_mills,
)

OID = ObjectId("5f1a2b3c4d5e6f7a8b9c0d1e")


@pytest.fixture
def service():
    return DataTransformationService()


# =============================================================================
# Conversion helpers
# =============================================================================

class TestConversions:
    """Tests for the shared conversion helpers"""

    def test_object_id_uuid_is_deterministic(self):
        """Test that an ObjectId maps to its 12 bytes plus four zero bytes"""
        converted = object_id_to_uuid(OID)

        assert converted == uuid.UUID("5f1a2b3c-4d5e-6f7a-8b9c-0d1e00000000")
        assert object_id_to_uuid(str(OID)) == converted
        assert object_id_to_uuid(42) == object_id_to_uuid(42)
        assert object_id_to_uuid(42) != object_id_to_uuid(43)

    @pytest.mark.parametrize("value,expected", [
        (1_700_000_000_000, 1_700_000_000_000),
        (1_700_000_000, 1_700_000_000_000),
        ("2023-11-14T22:13:20Z", 1_700_000_000_000),
        (datetime(2023, 11, 14, 22, 13, 20), 1_700_000_000_000),
        (None, None),
        (0, None),
        ("not a date", None),
        (True, None),
    ])
    def test_to_mills(self, value, expected):
        assert to_mills(value) == expected

    def test_to_iso_uses_milliseconds_and_z(self):
        assert to_iso(1_700_000_000_123) == "2023-11-14T22:13:20.123Z"

    def test_to_datetime_normalizes_offsets(self):
        converted = to_datetime("2024-01-01T02:00:00+02:00")
        assert converted == datetime(2024, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value,expected", [
        ("flat", "Flat"),
        (5, "Flat"),
        ("3", "SingleUp"),
        ("45UP", "FortyFiveUp"),
        ("double down", "DoubleDown"),
        (None, "NONE"),
        ("", "NONE"),
        ("Sideways", "Sideways"),
    ])
    def test_normalize_direction(self, value, expected):
        assert normalize_direction(value) == expected

    @pytest.mark.parametrize("value", [float("inf"), float("-inf"), float("nan"), "inf", "1e400"])
    def test_non_finite_numbers_become_null(self, value):
        assert to_float(value) is None
        assert to_int(value) is None

    def test_numeric_strings_convert(self):
        assert to_float(" 5.5 ") == 5.5
        assert to_int("-42.9") == -42
        assert to_int(True) is None

    def test_json_value_limits_depth(self):
        nested = {"a": {"b": {"c": {"d": 1}}}}
        converted = to_json_value(nested, max_depth=2)

        assert isinstance(converted["a"]["b"]["c"], str)
        assert to_json_value({"id": OID, "raw": b"\x01\x02"}) == {"id": str(OID), "raw": "0102"}


# =============================================================================
# Collection transformers
# =============================================================================

class TestCollectionTransformers:
    """Tests for per-collection document mapping"""

    def test_entry_mapping(self, service):
        document = {
            "_id": OID, "date": 1_700_000_000_000, "sgv": "123", "direction": 4,
            "device": "xDrip", "noise": 1, "customField": "kept",
        }
        result = service.transform("entries", document)

        assert result.is_success
        record = result.record
        assert record["id"] == object_id_to_uuid(OID)
        assert record["original_id"] == str(OID)
        assert record["mills"] == 1_700_000_000_000
        assert record["sgv"] == 123.0
        assert record["direction"] == "FortyFiveUp"
        assert record["date_string"] == "2023-11-14T22:13:20.000Z"
        assert record["additional_properties"] == {"customField": "kept"}
        assert set(record) <= set(TARGET_SCHEMA["entries"])

    def test_entry_mmol_is_converted(self, service):
        result = service.transform("entries", {"_id": 1, "mills": 1_700_000_000_000, "mmol": 5.5})
        assert result.record["sgv"] == pytest.approx(99.1, abs=0.01)

    def test_entry_without_timestamp_fails(self, service):
        result = service.transform("entries", {"_id": 1, "sgv": 100})

        assert not result.is_success
        assert "No valid timestamp" in result.errors[0]
        assert service.get_statistics("entries").failed == 1

    def test_entry_validation_skipped_still_fails_on_transform(self):
        service = DataTransformationService(TransformationOptions(validate_data=False))
        result = service.transform("entries", {"_id": 1, "sgv": 100})

        assert not result.is_success
        assert result.record is None

    def test_treatment_mapping(self, service):
        document = {
            "_id": "t1", "eventType": "Correction Bolus", "created_at": "2024-01-01T00:00:00Z",
            "insulin": 2, "enteredBy": "loop", "boluscalc": {"bg": 180},
        }
        record = service.transform("treatments", document).record

        assert record["event_type"] == "Correction Bolus"
        assert record["mills"] == 1_704_067_200_000
        assert record["created_at"] == "2024-01-01T00:00:00.000Z"
        assert record["insulin"] == 2.0
        assert record["entered_by"] == "loop"
        assert record["boluscalc"] == {"bg": 180}
        assert record["additional_properties"] is None

    def test_profile_store_is_normalized(self, service):
        document = {
            "_id": OID,
            "defaultProfile": "Day",
            "startDate": "2024-01-01T00:00:00Z",
            "store": {"Day": {"dia": "4", "basal": [{"time": "00:00", "value": "0.8", "timeAsSeconds": "0"}]}},
        }
        result = service.transform("profile", document)

        assert service.table_for("profile") == "profiles"
        store = result.record["store"]
        assert store["Day"]["dia"] == 4.0
        assert store["Day"]["basal"] == [{"time": "00:00", "value": 0.8, "timeAsSeconds": 0}]
        assert result.record["units"] == "mg/dL"

    def test_profile_without_store_is_invalid(self, service):
        validation = service.validate_document("profile", {"_id": 1, "defaultProfile": "Day"})

        assert not validation.is_valid
        assert validation.errors[0].code == "transformation_validation"
        assert validation.errors[0].document_id == "1"

    def test_null_properties_dropped_unless_preserved(self):
        document = {"_id": 1, "device": "loop", "created_at": "2024-01-01T00:00:00Z", "pump": None}

        dropped = DataTransformationService().transform("devicestatus", document).record
        kept = DataTransformationService(
            TransformationOptions(preserve_null_properties=True)
        ).transform("devicestatus", document).record

        assert dropped["additional_properties"] is None
        assert kept["additional_properties"] == {"pump": None}

    def test_food_defaults(self, service):
        record = service.transform("food", {"_id": 1, "name": "Apple", "carbs": "14"}).record

        assert record["carbs"] == 14.0
        assert record["protein"] == 0.0
        assert record["category"] == ""

    def test_unsupported_collection_raises(self, service):
        assert not service.is_supported("system.sessions")
        with pytest.raises(ValueError):
            service.transform("system.sessions", {"_id": 1})

    def test_statistics_track_fields(self, service):
        service.transform("entries", {"_id": 1, "date": 1_700_000_000_000, "sgv": 100})
        service.transform("entries", {"_id": 2, "date": 1_700_000_060_000, "sgv": None, "mgdl": 101})

        stats = service.get_statistics("entries")
        assert stats.successfully_transformed == 2
        assert stats.field_stats["sgv"].present == 1
        assert stats.field_stats["mgdl"].present == 1

        service.reset_statistics()
        assert service.get_statistics("entries").total_processed == 0


# =============================================================================
# Store helpers
# =============================================================================

class TestStoreHelpers:
    """Tests for cursor encoding, DDL and date filters"""

    @pytest.mark.parametrize("value,tag", [(OID, "objectid"), (4000, "int"), ("t00010", "str")])
    def test_cursor_id_round_trip(self, value, tag):
        text, id_type = encode_cursor_id(value)

        assert id_type == tag
        assert decode_cursor_id(text, id_type) == value

    def test_decode_empty_cursor(self):
        assert decode_cursor_id(None, "int") is None

    def test_create_table_sql(self):
        sql = create_table_sql("entries")

        assert sql.startswith("CREATE TABLE IF NOT EXISTS entries (")
        assert '"id" uuid PRIMARY KEY' in sql
        assert '"additional_properties" jsonb' in sql

    def test_date_filter_covers_all_timestamp_fields(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        query = build_date_filter(start, None)

        assert build_date_filter(None, None) == {}
        assert {"date": {"$gte": 1_704_067_200_000}} in query["$or"]
        assert {"mills": {"$gte": 1_704_067_200_000}} in query["$or"]
        assert {"created_at": {"$gte": "2024-01-01T00:00:00+00:00"}} in query["$or"]
