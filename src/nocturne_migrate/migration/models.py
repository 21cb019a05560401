"""
Migration State Models
======================

Persisted records (checkpoints, audit log entries, rollback points) and the
result/statistics objects returned by the migration engine and validation.
Everything serializes to plain JSON through ``to_dict``/``from_dict`` so the
file and PostgreSQL repositories can store the same shapes.
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


class MigrationState(str, Enum):
    """Lifecycle state of a migration run."""
    INITIALIZING = "initializing"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CheckpointStatus(str, Enum):
    """Status of one collection's checkpoint."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal_success(self) -> bool:
        return self == CheckpointStatus.COMPLETED


class LogLevel(str, Enum):
    """Severity of a migration log entry."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @classmethod
    def from_string(cls, value: str) -> "LogLevel":
        value_lower = value.lower().strip()
        for member in cls:
            if member.value == value_lower:
                return member
        raise ValueError(f"Invalid log level: {value}")


class RollbackPointState(str, Enum):
    """Migration phase a rollback point was taken in."""
    PRE_MIGRATION = "pre_migration"
    SCHEMA_CREATED = "schema_created"
    DATA_MIGRATION = "data_migration"
    INDEX_CREATION = "index_creation"
    POST_MIGRATION = "post_migration"


# ============================================================================
# Persisted records
# ============================================================================


@dataclass
class MigrationCheckpoint:
    """
    Resume position and counters for one collection within one migration.

    ``last_processed_id`` is the string form of the last source ``_id`` whose
    batch was committed; ``checkpoint_data["id_type"]`` records the BSON type
    so the cursor can be rebuilt exactly.
    """
    migration_id: str
    collection_name: str
    checkpoint_id: str = field(default_factory=new_id)
    last_processed_id: Optional[str] = None
    documents_processed: int = 0
    total_documents: int = 0
    start_time: str = field(default_factory=utc_now_iso)
    last_update: str = field(default_factory=utc_now_iso)
    status: CheckpointStatus = CheckpointStatus.RUNNING
    checkpoint_data: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if isinstance(self.status, str) and not isinstance(self.status, CheckpointStatus):
            self.status = CheckpointStatus(self.status)

    @property
    def is_finished(self) -> bool:
        return self.status == CheckpointStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MigrationCheckpoint':
        """Create from dictionary."""
        return cls(**data)


@dataclass
class MigrationLog:
    """One append-only audit entry."""
    migration_id: str
    level: LogLevel
    message: str
    exception: Optional[str] = None
    timestamp: str = field(default_factory=utc_now_iso)
    metadata: Dict[str, Any] = field(default_factory=dict)
    log_id: str = field(default_factory=new_id)

    def __post_init__(self) -> None:
        if isinstance(self.level, str) and not isinstance(self.level, LogLevel):
            self.level = LogLevel.from_string(self.level)

    @property
    def component(self) -> Optional[str]:
        return self.metadata.get("component")

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['level'] = self.level.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MigrationLog':
        return cls(**data)


@dataclass
class RollbackPoint:
    """Named marker of migration progress that a rollback can restore to."""
    migration_id: str
    sequence: int
    state: RollbackPointState = RollbackPointState.DATA_MIGRATION
    point_id: str = field(default_factory=new_id)
    description: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    migrated_collections: List[str] = field(default_factory=list)
    statistics: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    backup_file_path: Optional[str] = None

    def __post_init__(self) -> None:
        if isinstance(self.state, str) and not isinstance(self.state, RollbackPointState):
            self.state = RollbackPointState(self.state)

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['state'] = self.state.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RollbackPoint':
        return cls(**data)


# ============================================================================
# Statistics and results
# ============================================================================


@dataclass
class CollectionStatistics:
    """Counters for one collection in one run."""
    collection_name: str
    total_documents: int = 0
    documents_processed: int = 0
    documents_migrated: int = 0
    skipped_duplicates: int = 0
    accepted_skips: int = 0
    documents_failed: int = 0
    duration_seconds: float = 0.0
    completed: bool = False

    @property
    def is_fully_processed(self) -> bool:
        """Every source document was written, skipped as duplicate, or accepted as skipped."""
        accounted = self.documents_migrated + self.skipped_duplicates + self.accepted_skips
        return self.completed and self.documents_failed == 0 and accounted >= self.documents_processed

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MigrationStatistics:
    """Aggregate counters for a migration run."""
    start_time: datetime = field(default_factory=utc_now)
    end_time: Optional[datetime] = None
    collection_stats: Dict[str, CollectionStatistics] = field(default_factory=dict)
    peak_memory_mb: float = 0.0

    @property
    def duration_seconds(self) -> float:
        return ((self.end_time or utc_now()) - self.start_time).total_seconds()

    @property
    def total_documents(self) -> int:
        return sum(s.total_documents for s in self.collection_stats.values())

    @property
    def total_documents_processed(self) -> int:
        return sum(s.documents_processed for s in self.collection_stats.values())

    @property
    def total_documents_migrated(self) -> int:
        return sum(s.documents_migrated for s in self.collection_stats.values())

    @property
    def total_documents_failed(self) -> int:
        return sum(s.documents_failed for s in self.collection_stats.values())

    @property
    def total_skipped_duplicates(self) -> int:
        return sum(s.skipped_duplicates for s in self.collection_stats.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": self.duration_seconds,
            "total_documents": self.total_documents,
            "total_documents_processed": self.total_documents_processed,
            "total_documents_migrated": self.total_documents_migrated,
            "total_documents_failed": self.total_documents_failed,
            "total_skipped_duplicates": self.total_skipped_duplicates,
            "peak_memory_mb": self.peak_memory_mb,
            "collections": {k: v.to_dict() for k, v in self.collection_stats.items()},
        }


@dataclass
class MigrationResult:
    """Result of a migrate or resume call."""
    migration_id: str
    is_success: bool
    state: MigrationState
    statistics: MigrationStatistics = field(default_factory=MigrationStatistics)
    error_message: Optional[str] = None
    checkpoint_id: Optional[str] = None
    pre_migration_backup: Optional[Any] = None
    rollback_points: List[RollbackPoint] = field(default_factory=list)
    validation: Optional["ValidationResult"] = None
    verification: Optional[Any] = None
    index_results: List[Any] = field(default_factory=list)
    rollback_result: Optional[Any] = None

    @property
    def cancelled(self) -> bool:
        return self.state == MigrationState.CANCELLED


@dataclass
class MigrationStatus:
    """Point-in-time progress snapshot."""
    migration_id: str
    state: MigrationState
    progress_percentage: float = 0.0
    current_operation: Optional[str] = None
    statistics: MigrationStatistics = field(default_factory=MigrationStatistics)
    estimated_time_remaining_seconds: Optional[float] = None
    rollback_status: Optional[Any] = None
    recovery_status: Optional[Any] = None
    checkpoints: List[MigrationCheckpoint] = field(default_factory=list)


# ============================================================================
# Validation results
# ============================================================================


class ValidationSeverity(str, Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ConflictType(str, Enum):
    DUPLICATE_ID = "duplicate_id"
    INCONSISTENT_FIELD_TYPE = "inconsistent_field_type"
    RESERVED_KEYWORD = "reserved_keyword"
    MISSING_REFERENCE = "missing_reference"


@dataclass
class ValidationError:
    """A blocking problem found during validation."""
    code: str
    message: str
    severity: ValidationSeverity = ValidationSeverity.ERROR
    collection: Optional[str] = None
    field_name: Optional[str] = None
    document_id: Optional[str] = None


@dataclass
class ResolutionOption:
    """One way an operator can resolve a conflict."""
    name: str
    description: str
    is_recommended: bool = False


@dataclass
class ValidationConflict:
    """A non-blocking data conflict that must be shown before proceeding."""
    conflict_type: ConflictType
    collection: str
    description: str
    field_name: Optional[str] = None
    document_ids: List[str] = field(default_factory=list)
    occurrences: int = 0
    resolution_options: List[ResolutionOption] = field(default_factory=list)


@dataclass
class ValidationResult:
    """Outcome of a validation pass.

    ``is_valid`` is false only when there are errors; conflicts and warnings
    are reported but never block.
    """
    errors: List[ValidationError] = field(default_factory=list)
    conflicts: List[ValidationConflict] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def error_message(self) -> Optional[str]:
        if not self.errors:
            return None
        return "; ".join(e.message for e in self.errors)

    def add_error(self, code: str, message: str, **kwargs: Any) -> None:
        self.errors.append(ValidationError(code=code, message=message, **kwargs))

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        """Append another result's findings into this one and return self."""
        self.errors.extend(other.errors)
        self.conflicts.extend(other.conflicts)
        self.warnings.extend(other.warnings)
        self.details.update(other.details)
        return self
