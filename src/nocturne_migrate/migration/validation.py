"""
Validation Service
==================
Pre-flight checks run before a migration touches the target:

- connection string format and engine parameters
- target schema compatibility (tables, columns, column types)
- data compatibility over sampled source documents
- conflict detection (duplicate ids, inconsistent field types, reserved
  keywords, dangling profile references)

Errors block a migration; conflicts and warnings are reported to the
operator but never block on their own. After a migration,
``verify_migration`` compares source counts with target row counts.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..config.config import MigrationEngineConfig, ValidationOptions
from ..errors import MigrationError
from ..utils import to_snake_case
from .introspection import SchemaIntrospectionService, TableSchema, infer_shape
from .models import (
    ConflictType,
    ResolutionOption,
    ValidationConflict,
    ValidationResult,
    ValidationSeverity,
)
from .stores import TARGET_SCHEMA, DocumentSource, RelationalTarget, table_for_collection
from .transform import DataTransformationService
from .transformers import bson_type_name

logger = logging.getLogger(__name__)

# Common PostgreSQL reserved words; field names matching them need quoting
POSTGRES_RESERVED_KEYWORDS = frozenset({
    "select", "from", "where", "order", "group", "having", "insert", "update",
    "delete", "create", "drop", "alter", "table", "column", "index", "primary",
    "foreign", "key", "constraint", "unique", "not", "null", "default", "check",
    "references", "and", "or", "in", "like", "between", "exists", "case", "when",
    "then", "else", "end", "union", "join", "inner", "left", "right", "full",
    "outer", "on", "as", "distinct", "all", "user", "role", "grant", "revoke",
    "commit", "rollback", "limit", "offset", "with", "to", "is",
})

# information_schema spelling of the declared column types
_TYPE_ALIASES = {
    "timestamptz": "timestamp with time zone",
    "character varying": "text",
    "varchar": "text",
    "int": "integer",
    "int4": "integer",
    "int8": "bigint",
    "float8": "double precision",
}

# Source value types accepted by each target column type
_COMPATIBLE_VALUE_TYPES: Dict[str, set] = {
    "uuid": {"string", "objectId"},
    "text": {"string", "objectId", "date"},
    "integer": {"int"},
    "bigint": {"int", "date"},
    "double precision": {"int", "double"},
    "boolean": {"bool"},
    "timestamp with time zone": {"date", "int", "double", "string"},
}

MONGO_SCHEMES = ("mongodb://", "mongodb+srv://")
POSTGRES_SCHEMES = ("postgresql://", "postgres://")


def normalize_pg_type(data_type: str) -> str:
    value = data_type.lower().strip()
    return _TYPE_ALIASES.get(value, value)


def field_to_column(field_name: str) -> str:
    """Target column for a source field name."""
    if field_name == "_id":
        return "id"
    return to_snake_case(field_name)


@dataclass
class CollectionVerification:
    collection: str
    table: str
    source_count: int = 0
    target_count: int = 0
    accepted_skips: int = 0
    error_message: Optional[str] = None

    @property
    def difference(self) -> int:
        return self.source_count - self.accepted_skips - self.target_count

    @property
    def is_consistent(self) -> bool:
        return self.error_message is None and self.difference <= 0


@dataclass
class MigrationVerificationReport:
    """Source document counts compared with target row counts."""
    collections: List[CollectionVerification] = field(default_factory=list)
    verified_at: datetime = field(default_factory=datetime.now)

    @property
    def is_consistent(self) -> bool:
        return all(c.is_consistent for c in self.collections)

    @property
    def inconsistent_collections(self) -> List[str]:
        return [c.collection for c in self.collections if not c.is_consistent]


class ValidationService:
    """
    Runs the validation passes.

    Args:
        transformation: Service whose per-collection rules are applied to samples
        options: Toggles and sample size
    """

    def __init__(
        self,
        transformation: Optional[DataTransformationService] = None,
        options: Optional[ValidationOptions] = None,
    ):
        self.transformation = transformation or DataTransformationService()
        self.options = options or ValidationOptions()

    # ========================================================================
    # Connection strings and parameters
    # ========================================================================

    @staticmethod
    def validate_connection_string(value: Optional[str], kind: str) -> ValidationResult:
        """Format check only; ``kind`` is ``mongo`` or ``postgres``."""
        result = ValidationResult()
        label = "MongoDB" if kind == "mongo" else "PostgreSQL"
        if not value or not value.strip():
            result.add_error("connection_string_missing", f"{label} connection string is required")
            return result

        if kind == "mongo":
            if not value.startswith(MONGO_SCHEMES):
                result.add_error(
                    "connection_string_format",
                    "MongoDB connection string must start with mongodb:// or mongodb+srv://",
                )
        elif kind == "postgres":
            is_uri = value.startswith(POSTGRES_SCHEMES)
            is_dsn = "=" in value and ("host=" in value or "dbname=" in value)
            if not (is_uri or is_dsn):
                result.add_error(
                    "connection_string_format",
                    "PostgreSQL connection string must be a postgresql:// URI or a key=value DSN",
                )
        else:
            raise ValueError(f"Unknown connection string kind: {kind}")
        return result

    @staticmethod
    def validate_parameters(config: MigrationEngineConfig) -> ValidationResult:
        result = ValidationResult()
        if config.batch_size <= 0:
            result.add_error("invalid_batch_size", f"Batch size must be positive, got {config.batch_size}")
        if config.max_memory_mb <= 0:
            result.add_error("invalid_memory_limit", f"Max memory must be positive, got {config.max_memory_mb}")
        if config.max_degree_of_parallelism <= 0:
            result.add_error(
                "invalid_parallelism",
                f"Parallelism must be positive, got {config.max_degree_of_parallelism}",
            )
        if config.checkpoint_interval <= 0:
            result.add_error(
                "invalid_checkpoint_interval",
                f"Checkpoint interval must be positive, got {config.checkpoint_interval}",
            )
        if config.start_date and config.end_date and config.start_date >= config.end_date:
            result.add_error("invalid_date_range", "Start date must be before end date")
        if config.batch_size > 10000:
            result.warnings.append(f"Batch size {config.batch_size} is large; memory use may spike")
        return result

    # ========================================================================
    # Target schema
    # ========================================================================

    async def validate_schema(self, target: RelationalTarget, collections: Iterable[str]) -> ValidationResult:
        """
        Compare existing target tables against the declared schema.

        Missing tables are warnings (the engine creates them); missing
        columns and incompatible column types are errors.
        """
        result = ValidationResult()
        schemas = await SchemaIntrospectionService.discover_target_tables(target)
        for collection in collections:
            table = table_for_collection(collection)
            if table is None or table in self.options.ignored_tables:
                continue
            existing = schemas.get(table)
            if existing is None:
                result.warnings.append(f"Table '{table}' does not exist and will be created")
                continue
            actual = {name: normalize_pg_type(t) for name, t in existing.columns.items()}
            for column, declared in TARGET_SCHEMA[table].items():
                if column not in actual:
                    result.add_error(
                        "missing_column",
                        f"Table '{table}' is missing column '{column}'",
                        collection=collection,
                        field_name=column,
                    )
                elif actual[column] != normalize_pg_type(declared):
                    result.add_error(
                        "incompatible_column_type",
                        f"Column '{table}.{column}' has type {actual[column]}, expected {normalize_pg_type(declared)}",
                        collection=collection,
                        field_name=column,
                    )
        return result

    def validate_document(
        self,
        collection: str,
        document: Dict[str, Any],
        table_schema: Optional[TableSchema] = None,
    ) -> ValidationResult:
        """Check one document against the target table's columns."""
        result = ValidationResult()
        table = table_for_collection(collection)
        if table is None:
            result.add_error("unsupported_collection", f"Collection '{collection}' has no target table",
                             collection=collection)
            return result
        columns = table_schema.columns if table_schema else TARGET_SCHEMA[table]
        doc_id = str(document["_id"]) if "_id" in document else None

        if "_id" not in document:
            result.add_error("missing_required_field", "Document has no _id",
                             collection=collection, field_name="_id")

        for name, value in document.items():
            if name == "_id":
                continue
            column = field_to_column(name)
            if column.lower() in POSTGRES_RESERVED_KEYWORDS:
                result.conflicts.append(self._reserved_keyword_conflict(collection, name, 1))
            if column not in columns or value is None:
                continue
            pg_type = normalize_pg_type(columns[column])
            if pg_type == "jsonb":
                continue
            value_type = bson_type_name(value)
            allowed = _COMPATIBLE_VALUE_TYPES.get(pg_type)
            if allowed is None or value_type in allowed:
                continue
            if value_type == "string" and pg_type in ("integer", "bigint", "double precision"):
                try:
                    float(value)
                    result.warnings.append(f"Field '{name}' holds a numeric string; it will be converted")
                    continue
                except ValueError:
                    pass
            result.add_error(
                "type_mismatch",
                f"Type mismatch for field '{name}': {value_type} cannot be converted to {pg_type}",
                collection=collection,
                field_name=name,
                document_id=doc_id,
            )
        return result

    # ========================================================================
    # Source data
    # ========================================================================

    async def validate_data_compatibility(
        self,
        source: DocumentSource,
        collections: Iterable[str],
        sample_size: Optional[int] = None,
    ) -> ValidationResult:
        """
        Apply the transformers' validation to a sample of each collection.

        A collection whose every sampled document fails is an error; isolated
        failures are warnings since the engine counts them per document.
        """
        result = ValidationResult()
        size = sample_size or self.options.sample_size
        for collection in collections:
            if not self.transformation.is_supported(collection):
                result.warnings.append(f"Collection '{collection}' has no transformer and will be skipped")
                continue
            try:
                documents = await source.sample_documents(collection, size)
            except MigrationError as e:
                result.add_error("sample_failed", f"Could not sample '{collection}': {e}", collection=collection)
                continue
            failed = 0
            for document in documents:
                doc_result = self.transformation.validate_document(collection, document)
                if not doc_result.is_valid:
                    failed += 1
                    if failed <= 5:
                        result.warnings.append(
                            f"{collection}/{document.get('_id')}: {doc_result.error_message}"
                        )
            result.details[f"{collection}_sampled"] = len(documents)
            result.details[f"{collection}_invalid"] = failed
            if documents and failed == len(documents):
                result.add_error(
                    "incompatible_data",
                    f"All {failed} sampled documents in '{collection}' fail validation",
                    severity=ValidationSeverity.CRITICAL,
                    collection=collection,
                )
            elif failed:
                logger.warning(f"{failed}/{len(documents)} sampled documents in {collection} are invalid")
        return result

    async def detect_conflicts(self, source: DocumentSource, collections: Iterable[str]) -> ValidationResult:
        """Duplicate ids, inconsistent field types and reserved-keyword field names."""
        result = ValidationResult()
        for collection in collections:
            try:
                duplicates = await source.find_duplicate_ids(collection)
                documents = await source.sample_documents(collection, self.options.sample_size)
            except MigrationError as e:
                result.warnings.append(f"Conflict detection skipped for '{collection}': {e}")
                continue

            if duplicates:
                result.conflicts.append(
                    ValidationConflict(
                        conflict_type=ConflictType.DUPLICATE_ID,
                        collection=collection,
                        description=f"{len(duplicates)} _id values occur more than once",
                        field_name="_id",
                        document_ids=[str(doc_id) for doc_id, _ in duplicates],
                        occurrences=sum(count for _, count in duplicates),
                        resolution_options=[
                            ResolutionOption("skip_duplicates", "Keep the first copy and skip the rest", True),
                            ResolutionOption("fail", "Count later copies as failed documents"),
                        ],
                    )
                )

            shape = infer_shape(collection, documents)
            for name, types in sorted(shape.inconsistent_fields.items()):
                type_list = ", ".join(sorted(types))
                result.conflicts.append(
                    ValidationConflict(
                        conflict_type=ConflictType.INCONSISTENT_FIELD_TYPE,
                        collection=collection,
                        description=f"Field '{name}' has inconsistent types across documents: {type_list}",
                        field_name=name,
                        occurrences=shape.presence.get(name, 0),
                        resolution_options=[
                            ResolutionOption("convert", "Convert values to the column type", True),
                            ResolutionOption("convert_to_string", "Convert all values to string"),
                            ResolutionOption("skip", "Skip documents with conflicting types"),
                        ],
                    )
                )

            for name in sorted(shape.field_types):
                if name != "_id" and field_to_column(name) in POSTGRES_RESERVED_KEYWORDS:
                    result.conflicts.append(
                        self._reserved_keyword_conflict(collection, name, shape.presence.get(name, 0))
                    )
        return result

    async def validate_referential_integrity(self, source: DocumentSource) -> ValidationResult:
        """Every profile's ``defaultProfile`` must name an entry of its ``store``."""
        result = ValidationResult()
        if "profile" not in await source.list_collections():
            return result
        dangling = []
        for document in await source.find("profile"):
            default = document.get("defaultProfile")
            store = document.get("store")
            if default and isinstance(store, dict) and default not in store:
                dangling.append(str(document.get("_id")))
        if dangling:
            result.conflicts.append(
                ValidationConflict(
                    conflict_type=ConflictType.MISSING_REFERENCE,
                    collection="profile",
                    description="defaultProfile does not name an entry in store",
                    field_name="defaultProfile",
                    document_ids=dangling,
                    occurrences=len(dangling),
                    resolution_options=[
                        ResolutionOption("migrate_as_is", "Migrate and fix the reference afterwards", True),
                        ResolutionOption("skip", "Add the documents to skip_document_ids"),
                    ],
                )
            )
        return result

    # ========================================================================
    # Combined passes
    # ========================================================================

    async def validate_all(
        self,
        config: MigrationEngineConfig,
        source: DocumentSource,
        target: RelationalTarget,
        collections: List[str],
    ) -> ValidationResult:
        """Run every enabled pass and merge the findings."""
        result = ValidationResult()
        result.merge(self.validate_connection_string(config.mongo_connection_string, "mongo"))
        result.merge(self.validate_connection_string(config.postgres_connection_string, "postgres"))
        result.merge(self.validate_parameters(config))
        if not result.is_valid:
            return result

        if not self.options.skip_schema_validation:
            result.merge(await self.validate_schema(target, collections))
        if not self.options.skip_data_validation:
            result.merge(await self.validate_data_compatibility(source, collections))
        if not self.options.skip_conflict_detection:
            result.merge(await self.detect_conflicts(source, collections))
        if not self.options.skip_referential_integrity:
            result.merge(await self.validate_referential_integrity(source))

        logger.info(
            f"Validation finished: {len(result.errors)} errors, "
            f"{len(result.conflicts)} conflicts, {len(result.warnings)} warnings"
        )
        return result

    async def verify_migration(
        self,
        source: DocumentSource,
        target: RelationalTarget,
        collections: Iterable[str],
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        accepted_skips: Optional[Dict[str, int]] = None,
    ) -> MigrationVerificationReport:
        """Compare source document counts with target row counts."""
        report = MigrationVerificationReport()
        accepted_skips = accepted_skips or {}
        for collection in collections:
            table = table_for_collection(collection)
            if table is None:
                continue
            check = CollectionVerification(
                collection=collection, table=table, accepted_skips=accepted_skips.get(collection, 0)
            )
            try:
                check.source_count = await source.count_documents(collection, start_date, end_date)
                check.target_count = await target.count_rows(table)
            except MigrationError as e:
                check.error_message = str(e)
            if not check.is_consistent:
                logger.warning(
                    f"Verification mismatch for {collection}: source={check.source_count} "
                    f"target={check.target_count} skipped={check.accepted_skips}"
                )
            report.collections.append(check)
        return report

    @staticmethod
    def _reserved_keyword_conflict(collection: str, name: str, occurrences: int) -> ValidationConflict:
        return ValidationConflict(
            conflict_type=ConflictType.RESERVED_KEYWORD,
            collection=collection,
            description=f"Field name '{name}' conflicts with PostgreSQL reserved keyword",
            field_name=name,
            occurrences=occurrences,
            resolution_options=[
                ResolutionOption("quote", "Quote the identifier in generated SQL", True),
                ResolutionOption("rename", "Rename the column with a suffix"),
            ],
        )
