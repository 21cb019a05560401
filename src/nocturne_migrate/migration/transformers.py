"""
Document Transformers
=====================

One transformer per supported collection. Each maps a raw MongoDB document
onto a record for its target table (see ``stores.TARGET_SCHEMA``) and can
validate a document without transforming it.

Shared conversions:
    - ObjectId -> deterministic UUID (12 id bytes + 4 zero bytes)
    - timestamps: numbers > 1e12 are milliseconds, otherwise seconds;
      datetimes and ISO strings are accepted too
    - nested values -> depth-limited JSON-compatible structures
"""

import logging
import math
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from bson import ObjectId

from ..config.config import TransformationOptions
from ..errors import TransformationError

logger = logging.getLogger(__name__)

MILLISECOND_THRESHOLD = 1_000_000_000_000
MMOL_TO_MGDL = 18.0182
_OBJECT_ID_RE = re.compile(r"^[0-9a-fA-F]{24}$")

VALID_DIRECTIONS = [
    "NONE", "TripleUp", "DoubleUp", "SingleUp", "FortyFiveUp", "Flat",
    "FortyFiveDown", "SingleDown", "DoubleDown", "TripleDown",
    "NOT COMPUTABLE", "RATE OUT OF RANGE", "CGM ERROR",
]
_NUMERIC_DIRECTIONS = {
    1: "TripleUp", 2: "DoubleUp", 3: "SingleUp", 4: "FortyFiveUp", 5: "Flat",
    6: "FortyFiveDown", 7: "SingleDown", 8: "DoubleDown", 9: "TripleDown",
}
_DIRECTION_ALIASES = {
    "TRIPLE UP": "TripleUp", "DOUBLE UP": "DoubleUp", "SINGLE UP": "SingleUp",
    "FORTY FIVE UP": "FortyFiveUp", "45UP": "FortyFiveUp",
    "FORTY FIVE DOWN": "FortyFiveDown", "45DOWN": "FortyFiveDown",
    "SINGLE DOWN": "SingleDown", "DOUBLE DOWN": "DoubleDown", "TRIPLE DOWN": "TripleDown",
    "0": "NONE",
}
VALID_UNITS = ["mg/dl", "mmol/l", "mmol"]


# ============================================================================
# Conversion helpers
# ============================================================================


def object_id_to_uuid(value: Any) -> uuid.UUID:
    """Deterministic UUID for a source id.

    ObjectIds (or 24-char hex strings) keep their 12 bytes followed by four
    zero bytes; any other id hashes through ``uuid5``.
    """
    if isinstance(value, ObjectId):
        return uuid.UUID(bytes=value.binary + b"\x00" * 4)
    text = str(value)
    if _OBJECT_ID_RE.match(text):
        return uuid.UUID(bytes=bytes.fromhex(text) + b"\x00" * 4)
    return uuid.uuid5(uuid.NAMESPACE_OID, text)


def to_datetime(value: Any) -> Optional[datetime]:
    """Convert ms/s epoch numbers, datetimes and ISO strings to aware UTC datetimes."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)
    if isinstance(value, (int, float)):
        if value <= 0:
            return None
        seconds = value / 1000.0 if value > MILLISECOND_THRESHOLD else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return to_datetime(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def to_mills(value: Any) -> Optional[int]:
    dt = to_datetime(value)
    return int(dt.timestamp() * 1000) if dt else None


def to_iso(value: Any) -> Optional[str]:
    dt = to_datetime(value)
    if dt is None:
        return None
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            number = float(value)
        elif isinstance(value, str):
            number = float(value.strip())
        else:
            # Decimal128 and similar numeric wrappers
            number = float(str(value))
    except (TypeError, ValueError, OverflowError):
        return None
    # NaN and infinities have no integer or JSON form
    return number if math.isfinite(number) else None


def to_int(value: Any) -> Optional[int]:
    number = to_float(value)
    return None if number is None else int(number)


def to_str(value: Any, max_length: Optional[int] = None) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    if max_length is not None and len(text) > max_length:
        text = text[:max_length]
    return text


def to_json_value(value: Any, max_depth: int = 10, depth: int = 0) -> Any:
    """BSON value -> JSON-compatible value; anything nested deeper than ``max_depth`` is stringified."""
    if depth > max_depth:
        return str(value)
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, dict):
        return {str(k): to_json_value(v, max_depth, depth + 1) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_value(v, max_depth, depth + 1) for v in value]
    if isinstance(value, bytes):
        return value.hex()
    return str(value)


def bson_type_name(value: Any) -> str:
    """Short type label used in field statistics and shape inference."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int"
    if isinstance(value, float):
        return "double"
    if isinstance(value, str):
        return "string"
    if isinstance(value, ObjectId):
        return "objectId"
    if isinstance(value, datetime):
        return "date"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, (list, tuple)):
        return "array"
    return type(value).__name__


# ============================================================================
# Statistics and validation results
# ============================================================================


@dataclass
class FieldTransformationStats:
    field_name: str
    present: int = 0
    null: int = 0
    missing: int = 0
    transformation_failed: int = 0
    data_types: Dict[str, int] = field(default_factory=dict)


@dataclass
class TransformationStatistics:
    """Per-collection transformation counters."""
    collection_name: str
    total_processed: int = 0
    successfully_transformed: int = 0
    failed: int = 0
    with_warnings: int = 0
    common_errors: Dict[str, int] = field(default_factory=dict)
    field_stats: Dict[str, FieldTransformationStats] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collection_name": self.collection_name,
            "total_processed": self.total_processed,
            "successfully_transformed": self.successfully_transformed,
            "failed": self.failed,
            "with_warnings": self.with_warnings,
            "common_errors": dict(self.common_errors),
            "field_stats": {
                name: {
                    "present": s.present,
                    "null": s.null,
                    "missing": s.missing,
                    "transformation_failed": s.transformation_failed,
                    "data_types": dict(s.data_types),
                }
                for name, s in self.field_stats.items()
            },
        }


@dataclass
class TransformationValidation:
    """Result of validating one document against its transformer."""
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    suggested_fixes: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def _present(document: Dict[str, Any], name: str) -> bool:
    return document.get(name) is not None


# ============================================================================
# Transformers
# ============================================================================


class BaseDocumentTransformer:
    """Common conversion and bookkeeping for collection transformers."""

    collection_name: str = ""
    table_name: str = ""
    standard_fields: Set[str] = {"_id"}

    def __init__(self, options: Optional[TransformationOptions] = None):
        self.options = options or TransformationOptions()
        self.statistics = TransformationStatistics(collection_name=self.collection_name)

    def transform(self, document: Dict[str, Any]) -> Dict[str, Any]:
        """Map a document to a target record.

        Raises:
            TransformationError: If the document cannot be mapped
        """
        try:
            record = self._base_record(document)
            record.update(self._transform(document))
        except TransformationError as e:
            self.record_failure(e.message)
            raise
        except (TypeError, ValueError, KeyError, AttributeError, ArithmeticError) as e:
            self.record_failure(str(e))
            raise TransformationError(
                f"Failed to transform {self.collection_name} document: {e}",
                {"document_id": str(document.get("_id"))},
            ) from e
        self.statistics.total_processed += 1
        self.statistics.successfully_transformed += 1
        return record

    def validate(self, document: Dict[str, Any]) -> TransformationValidation:
        result = TransformationValidation()
        if "_id" not in document:
            result.errors.append("Document is missing required _id field")
            result.suggested_fixes.append(
                f"Ensure all {self.collection_name} documents have a valid ObjectId"
            )
        self._validate(document, result)
        return result

    def _transform(self, document: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def _validate(self, document: Dict[str, Any], result: TransformationValidation) -> None:
        return None

    def _base_record(self, document: Dict[str, Any]) -> Dict[str, Any]:
        if "_id" not in document:
            raise TransformationError(f"{self.collection_name} document has no _id")
        source_id = document["_id"]
        if self.options.preserve_original_ids:
            record_id = object_id_to_uuid(source_id)
        else:
            record_id = uuid.uuid4()
        now = datetime.now(timezone.utc)
        return {
            "id": record_id,
            "original_id": to_str(source_id, 64),
            "sys_created_at": now,
            "sys_updated_at": now,
        }

    def _json(self, value: Any) -> Any:
        if value is None:
            return None
        return to_json_value(value, self.options.max_nesting_depth)

    def _additional_properties(self, document: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Fields this transformer does not map, kept in the overflow column."""
        extra = {}
        for name, value in document.items():
            if name in self.standard_fields:
                continue
            if value is None and not self.options.preserve_null_properties:
                continue
            extra[name] = self._json(value)
        return extra or None

    def _track(self, name: str, document: Dict[str, Any], ok: bool = True) -> None:
        stats = self.statistics.field_stats.get(name)
        if stats is None:
            stats = FieldTransformationStats(field_name=name)
            self.statistics.field_stats[name] = stats
        if name not in document:
            stats.missing += 1
            return
        value = document[name]
        if value is None:
            stats.null += 1
        else:
            stats.present += 1
            type_name = bson_type_name(value)
            stats.data_types[type_name] = stats.data_types.get(type_name, 0) + 1
        if not ok:
            stats.transformation_failed += 1

    def record_failure(self, error: str) -> None:
        self.statistics.total_processed += 1
        self.statistics.failed += 1
        self.statistics.common_errors[error] = self.statistics.common_errors.get(error, 0) + 1

    def record_warning(self) -> None:
        self.statistics.with_warnings += 1

    def reset_statistics(self) -> None:
        self.statistics = TransformationStatistics(collection_name=self.collection_name)


def normalize_direction(value: Any) -> str:
    """Map numeric (1-9) or loosely spelled directions to the canonical names."""
    if value is None:
        return "NONE"
    text = str(value).strip()
    if not text:
        return "NONE"
    number = to_int(text) if re.match(r"^-?\d+(\.\d+)?$", text) else None
    if number is not None:
        return _NUMERIC_DIRECTIONS.get(number, "NONE")
    upper = text.upper()
    for name in VALID_DIRECTIONS:
        if upper == name.upper():
            return name
    return _DIRECTION_ALIASES.get(upper, text)


def is_valid_direction(value: Any) -> bool:
    if value is None:
        return False
    upper = str(value).upper()
    return any(upper == d.upper() for d in VALID_DIRECTIONS)


class EntryTransformer(BaseDocumentTransformer):
    """Glucose readings: several value formats, direction enums and timestamps."""

    collection_name = "entries"
    table_name = "entries"
    standard_fields = {
        "_id", "mills", "date", "dateString", "sgv", "mgdl", "mmol", "direction",
        "device", "type", "filtered", "unfiltered", "rssi", "noise", "utcOffset",
        "delta", "created_at",
    }

    def _transform(self, document):
        mills = None
        for name in ("mills", "date", "dateString"):
            if _present(document, name):
                mills = to_mills(document[name])
                self._track(name, document, mills is not None)
                if mills is not None:
                    break
        if mills is None:
            raise TransformationError(
                "No valid timestamp found (date, mills, or dateString)",
                {"document_id": str(document.get("_id"))},
            )

        sgv = None
        if _present(document, "sgv"):
            sgv = to_float(document["sgv"])
            self._track("sgv", document)
        elif _present(document, "mgdl"):
            sgv = to_float(document["mgdl"])
            self._track("mgdl", document)
        elif _present(document, "mmol"):
            mmol = to_float(document["mmol"])
            sgv = mmol * MMOL_TO_MGDL if mmol is not None else None
            self._track("mmol", document)
        else:
            self._track("glucose_values", document)

        self._track("direction", document)
        date_string = to_str(document.get("dateString"), 50) if isinstance(document.get("dateString"), str) else None

        return {
            "mills": mills,
            "date": datetime.fromtimestamp(mills / 1000.0, tz=timezone.utc),
            "date_string": date_string or to_iso(mills),
            "sgv": sgv,
            "direction": normalize_direction(document.get("direction")),
            "device": to_str(document.get("device"), 255),
            "type": to_str(document.get("type"), 50) or "sgv",
            "filtered": to_float(document.get("filtered")),
            "unfiltered": to_float(document.get("unfiltered")),
            "rssi": to_int(document.get("rssi")),
            "noise": to_int(document.get("noise")),
            "utc_offset": to_int(document.get("utcOffset")),
            "delta": to_float(document.get("delta")),
            "created_at": to_iso(document.get("created_at")),
            "additional_properties": self._additional_properties(document),
        }

    def _validate(self, document, result):
        if not any(_present(document, n) for n in ("sgv", "mgdl", "mmol")):
            result.warnings.append("No glucose value found (sgv, mgdl, or mmol)")
            result.suggested_fixes.append("Ensure entry documents contain at least one glucose reading")

        if not any(_present(document, n) for n in ("date", "mills", "dateString")):
            result.errors.append("No valid timestamp found (date, mills, or dateString)")
            result.suggested_fixes.append("Ensure entry documents contain valid timestamp information")

        if _present(document, "direction") and not is_valid_direction(normalize_direction(document["direction"])):
            result.warnings.append(f"Invalid direction value: {document['direction']}")
            result.suggested_fixes.append("Use standard direction values: Flat, SingleUp, DoubleUp, etc.")

        sgv = to_float(document.get("sgv"))
        if sgv is not None and (sgv < 0 or sgv > 1000):
            result.warnings.append(f"SGV value {sgv} is outside normal range (0-1000 mg/dL)")

        delta = to_float(document.get("delta"))
        if delta is not None and abs(delta) > 100:
            result.warnings.append(f"Delta value {delta} seems unusually large (>100 mg/dL change)")


class TreatmentTransformer(BaseDocumentTransformer):
    """Treatments: insulin, carbs and temp basal events with a bolus calculator payload."""

    collection_name = "treatments"
    table_name = "treatments"
    standard_fields = {
        "_id", "eventType", "mills", "created_at", "insulin", "carbs", "glucose",
        "glucoseType", "notes", "enteredBy", "duration", "percent", "absolute", "boluscalc",
    }

    def _transform(self, document):
        self._track("eventType", document)
        mills = to_mills(document.get("mills")) or to_mills(document.get("created_at"))
        return {
            "event_type": to_str(document.get("eventType"), 255),
            "mills": mills,
            "created_at": to_iso(document.get("created_at")) or (to_iso(mills) if mills else None),
            "insulin": to_float(document.get("insulin")),
            "carbs": to_float(document.get("carbs")),
            "glucose": to_float(document.get("glucose")),
            "glucose_type": to_str(document.get("glucoseType"), 50),
            "notes": to_str(document.get("notes")),
            "entered_by": to_str(document.get("enteredBy"), 255),
            "duration": to_float(document.get("duration")),
            "percent": to_float(document.get("percent")),
            "absolute": to_float(document.get("absolute")),
            "boluscalc": self._json(document.get("boluscalc")),
            "additional_properties": self._additional_properties(document),
        }

    def _validate(self, document, result):
        if not _present(document, "eventType"):
            result.warnings.append("Treatment is missing eventType field")
        if not _present(document, "created_at") and not _present(document, "mills"):
            result.warnings.append("No valid timestamp found (created_at or mills)")
        for name in ("insulin", "carbs"):
            value = to_float(document.get(name))
            if value is not None and value < 0:
                result.warnings.append(f"Negative {name} value: {value}")


class ProfileTransformer(BaseDocumentTransformer):
    """Therapy profiles with a named ``store`` of time-based settings."""

    collection_name = "profile"
    table_name = "profiles"
    standard_fields = {"_id", "defaultProfile", "units", "startDate", "mills", "created_at", "store"}
    TIME_ARRAYS = ("basal", "carbratio", "sens", "target_low", "target_high")

    def _transform(self, document):
        start = None
        for name in ("startDate", "created_at", "mills"):
            if _present(document, name):
                start = to_iso(document[name])
                self._track(name, document, start is not None)
                if start is not None:
                    break
        if start is None:
            start = to_iso(datetime.now(timezone.utc))
            self.record_warning()

        return {
            "default_profile": to_str(document.get("defaultProfile"), 255) or "Default",
            "units": to_str(document.get("units"), 10) or "mg/dL",
            "start_date": start,
            "mills": to_mills(document.get("mills")) or to_mills(start),
            "created_at": to_iso(document.get("created_at")),
            "store": self._normalize_store(document),
            "additional_properties": self._additional_properties(document),
        }

    def _normalize_store(self, document) -> Optional[Dict[str, Any]]:
        store = document.get("store")
        if not isinstance(store, dict):
            self._track("store", document, False)
            return None
        self._track("store", document)
        normalized = {}
        for name, profile in store.items():
            if not isinstance(profile, dict):
                normalized[name] = self._json(profile)
                continue
            data = {k: self._json(v) for k, v in profile.items() if k not in self.TIME_ARRAYS}
            if "dia" in profile:
                data["dia"] = to_float(profile["dia"]) or 3.0
            if "carbs_hr" in profile:
                data["carbs_hr"] = to_int(profile["carbs_hr"]) or 20
            if "delay" in profile:
                data["delay"] = to_int(profile["delay"]) or 20
            if "timezone" in profile:
                data["timezone"] = to_str(profile["timezone"]) or "UTC"
            for array_name in self.TIME_ARRAYS:
                if isinstance(profile.get(array_name), list):
                    data[array_name] = [self._time_value(v) for v in profile[array_name]]
            normalized[name] = data
        return normalized

    def _time_value(self, item: Any) -> Any:
        if not isinstance(item, dict):
            return self._json(item)
        entry = {k: self._json(v) for k, v in item.items()}
        if "value" in item:
            entry["value"] = to_float(item["value"])
        if "timeAsSeconds" in item:
            entry["timeAsSeconds"] = to_int(item["timeAsSeconds"])
        return entry

    def _validate(self, document, result):
        store = document.get("store")
        if store is None:
            result.errors.append("Profile is missing store field")
            result.suggested_fixes.append("Ensure profile contains a valid store object")
        elif not isinstance(store, dict):
            result.errors.append("Profile store must be an object")
        if not _present(document, "defaultProfile"):
            result.warnings.append("Profile is missing defaultProfile field")
        units = document.get("units")
        if units is not None and str(units).lower() not in VALID_UNITS:
            result.warnings.append(f"Invalid units value: {units}")
            result.suggested_fixes.append("Use 'mg/dL' or 'mmol/L' for units")
        if not any(_present(document, n) for n in ("startDate", "created_at", "mills")):
            result.warnings.append("No valid timestamp found")


class DeviceStatusTransformer(BaseDocumentTransformer):
    """Device status uploads; device-specific payloads go to additional_properties."""

    collection_name = "devicestatus"
    table_name = "devicestatus"
    standard_fields = {"_id", "device", "created_at", "mills"}

    def _transform(self, document):
        return {
            "device": to_str(document.get("device"), 255) or "",
            "mills": to_mills(document.get("mills")) or to_mills(document.get("created_at")),
            "created_at": to_iso(document.get("created_at")),
            "additional_properties": self._additional_properties(document),
        }

    def _validate(self, document, result):
        if not _present(document, "device"):
            result.warnings.append("DeviceStatus is missing device field")


class SettingsTransformer(BaseDocumentTransformer):
    collection_name = "settings"
    table_name = "settings"
    standard_fields = {"_id", "key", "value", "created_at"}

    def _transform(self, document):
        return {
            "key": to_str(document.get("key"), 255) or "",
            "value": self._json(document.get("value")),
            "created_at": to_iso(document.get("created_at")),
        }

    def _validate(self, document, result):
        if not _present(document, "key"):
            result.warnings.append("Settings document is missing key field")


class FoodTransformer(BaseDocumentTransformer):
    collection_name = "food"
    table_name = "food"
    standard_fields = {"_id", "name", "category", "subcategory", "carbs", "protein", "fat", "energy"}

    def _transform(self, document):
        record = {
            "name": to_str(document.get("name"), 255) or "",
            "category": to_str(document.get("category"), 255) or "",
            "subcategory": to_str(document.get("subcategory"), 255) or "",
        }
        for name in ("carbs", "protein", "fat", "energy"):
            record[name] = to_float(document.get(name)) or 0.0
        created = to_datetime(document.get("created_at"))
        if created is not None:
            record["sys_created_at"] = created
        return record

    def _validate(self, document, result):
        if not _present(document, "name"):
            result.warnings.append("Food document is missing name field")


class ActivityTransformer(BaseDocumentTransformer):
    collection_name = "activity"
    table_name = "activity"
    standard_fields = {"_id", "activityType", "name", "duration", "mills", "created_at"}

    def _transform(self, document):
        return {
            "activity_type": to_str(document.get("activityType"), 100),
            "description": to_str(document.get("name"), 500),
            "duration": to_float(document.get("duration")),
            "mills": to_mills(document.get("mills")) or to_mills(document.get("created_at")),
            "created_at": to_iso(document.get("created_at")),
            "additional_properties": self._additional_properties(document),
        }


TRANSFORMERS = {
    cls.collection_name: cls
    for cls in (
        EntryTransformer,
        TreatmentTransformer,
        ProfileTransformer,
        DeviceStatusTransformer,
        SettingsTransformer,
        FoodTransformer,
        ActivityTransformer,
    )
}
