"""Configuration for MongoDB to PostgreSQL migrations.

This module defines the configuration dataclasses consumed by the migration
engine and its collaborators (backup, rollback, recovery, index optimization).
Values can come from keyword arguments, a YAML/JSON file, environment
variables (loaded through python-dotenv), or CLI flags layered on top.
"""

import json
import os
import tempfile
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv

from ..utils import database_from_uri


DEFAULT_BACKUP_DIR = os.path.join(tempfile.gettempdir(), "nocturne_backups")
DEFAULT_STATE_DIR = ".migration_state"


class StateStoreType(str, Enum):
    """Where checkpoints and migration logs are persisted."""

    FILE = "file"
    POSTGRES = "postgres"

    @classmethod
    def default(cls) -> "StateStoreType":
        return cls.FILE

    @classmethod
    def from_string(cls, value: str) -> "StateStoreType":
        """Parse store type from string (case-insensitive)."""
        value_lower = value.lower().strip()
        for member in cls:
            if member.value == value_lower:
                return member
        raise ValueError(
            f"Invalid state store: {value}. "
            f"Valid types: {[m.value for m in cls]}"
        )


def parse_datetime(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO date/datetime string into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _filter_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop keys the dataclass does not declare."""
    known = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in known}


@dataclass
class RetryPolicy:
    """Capped exponential backoff for transient store errors."""

    max_retries: int = 3
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.initial_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("retry delays must be non-negative")
        if self.backoff_multiplier < 1.0:
            raise ValueError(
                f"backoff_multiplier must be >= 1.0, got {self.backoff_multiplier}"
            )

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        delay = self.initial_delay_seconds * (self.backoff_multiplier ** attempt)
        return min(delay, self.max_delay_seconds)


@dataclass
class ValidationOptions:
    """Which pre-migration checks to run."""

    skip_schema_validation: bool = False
    skip_data_validation: bool = False
    skip_conflict_detection: bool = False
    skip_referential_integrity: bool = False
    sample_size: int = 100
    ignored_tables: List[str] = field(default_factory=list)


@dataclass
class IndexOptimizationOptions:
    """Index creation toggles; skip/defer/drop are read by the engine."""

    create_concurrently: bool = True
    drop_existing_indexes: bool = False
    skip_index_creation: bool = False
    defer_index_creation: bool = False
    max_concurrent_index_creation: int = 2
    analyze_query_patterns: bool = True
    create_covering_indexes: bool = True
    create_partial_indexes: bool = True
    enable_time_series_optimizations: bool = True


@dataclass
class TransformationOptions:
    """Document to record mapping behaviour."""

    preserve_original_ids: bool = True
    generate_new_uuids: bool = True
    preserve_null_properties: bool = False
    validate_data: bool = True
    handle_missing_fields: bool = True
    max_nesting_depth: int = 10


@dataclass
class RetentionPolicy:
    """Limits applied when pruning a backup directory."""

    max_age_days: float = 7.0
    max_count: int = 10
    max_total_size_bytes: int = 10 * 1024 * 1024 * 1024


@dataclass
class BackupOptions:
    """Backups taken around a migration."""

    create_pre_migration_backup: bool = False
    backup_directory: str = DEFAULT_BACKUP_DIR
    compress: bool = True
    retention_policy: RetentionPolicy = field(default_factory=RetentionPolicy)
    verify_backup_integrity: bool = True

    def __post_init__(self) -> None:
        if isinstance(self.retention_policy, dict):
            self.retention_policy = RetentionPolicy(**self.retention_policy)


@dataclass
class RollbackOptions:
    """Automatic rollback and rollback point settings."""

    enable_auto_rollback: bool = False
    auto_rollback_triggers: List[str] = field(default_factory=lambda: ["data_corruption"])
    create_rollback_points: bool = True
    rollback_point_interval: int = 1


@dataclass
class RecoveryOptions:
    """Automatic recovery settings."""

    enable_auto_recovery: bool = True
    max_recovery_attempts: int = 3
    recovery_delay_seconds: float = 60.0
    create_pre_recovery_backup: bool = True
    allow_data_skipping: bool = False
    max_data_skip_percentage: float = 5.0


@dataclass
class ConnectionSettings:
    """Connection strings for the source and target stores."""

    mongo_connection_string: Optional[str] = None
    mongo_database_name: Optional[str] = None
    postgres_connection_string: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.mongo_database_name:
            self.mongo_database_name = database_from_uri(self.mongo_connection_string)

    @classmethod
    def from_env(cls, **overrides: Optional[str]) -> "ConnectionSettings":
        """Build settings from environment variables (.env loaded first).

        Args:
            **overrides: Non-None values take precedence over the environment

        Returns:
            ConnectionSettings instance
        """
        load_dotenv()
        values = {
            "mongo_connection_string": os.getenv("MONGO_CONNECTION_STRING"),
            "mongo_database_name": os.getenv("MONGO_DATABASE_NAME"),
            "postgres_connection_string": os.getenv("POSTGRES_CONNECTION_STRING"),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass
class MigrationEngineConfig:
    """Complete configuration for one migration run.

    Attributes:
        mongo_connection_string / mongo_database_name: Source store
        postgres_connection_string: Target store
        collections: Explicit collection list (empty = all supported)
        batch_size: Documents per batch (one transactional unit)
        max_memory_mb: Memory ceiling that triggers throttling
        max_degree_of_parallelism: Collections processed concurrently
        checkpoint_interval: Batches between persisted checkpoints
        memory_check_interval: Batches between memory samples
        start_date / end_date: Optional source date filter
        skip_document_ids: Source ids accepted as skipped (set by recovery)
    """

    mongo_connection_string: str = ""
    mongo_database_name: str = ""
    postgres_connection_string: str = ""
    migration_id: Optional[str] = None
    collections: List[str] = field(default_factory=list)

    batch_size: int = 1000
    max_memory_mb: int = 512
    max_degree_of_parallelism: int = field(default_factory=lambda: os.cpu_count() or 1)
    enable_checkpointing: bool = True
    checkpoint_interval: int = 100
    memory_check_interval: int = 1
    memory_throttle_delay_seconds: float = 0.5

    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    drop_existing_tables: bool = False
    skip_duplicates: bool = True
    continue_on_error: bool = True
    skip_connection_test: bool = False
    skip_validation: bool = False
    verify_after_migration: bool = True
    skip_document_ids: List[str] = field(default_factory=list)

    retry: RetryPolicy = field(default_factory=RetryPolicy)
    validation: ValidationOptions = field(default_factory=ValidationOptions)
    index_optimization: IndexOptimizationOptions = field(default_factory=IndexOptimizationOptions)
    transformation: TransformationOptions = field(default_factory=TransformationOptions)
    backup: BackupOptions = field(default_factory=BackupOptions)
    rollback: RollbackOptions = field(default_factory=RollbackOptions)
    recovery: RecoveryOptions = field(default_factory=RecoveryOptions)

    _NESTED = {
        "retry": RetryPolicy,
        "validation": ValidationOptions,
        "index_optimization": IndexOptimizationOptions,
        "transformation": TransformationOptions,
        "backup": BackupOptions,
        "rollback": RollbackOptions,
        "recovery": RecoveryOptions,
    }

    def __post_init__(self) -> None:
        """Coerce dates and nested dicts loaded from files."""
        self.start_date = parse_datetime(self.start_date)
        self.end_date = parse_datetime(self.end_date)
        if isinstance(self.collections, str):
            self.collections = [c.strip() for c in self.collections.split(",") if c.strip()]
        for name, nested_cls in self._NESTED.items():
            value = getattr(self, name)
            if isinstance(value, dict):
                setattr(self, name, nested_cls(**_filter_fields(nested_cls, value)))

    @property
    def connection(self) -> ConnectionSettings:
        return ConnectionSettings(
            mongo_connection_string=self.mongo_connection_string,
            mongo_database_name=self.mongo_database_name,
            postgres_connection_string=self.postgres_connection_string,
        )

    def copy(self, **changes: Any) -> "MigrationEngineConfig":
        """Return a deep copy with top-level fields replaced."""
        data = self.to_dict()
        data.update(changes)
        return MigrationEngineConfig.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationEngineConfig":
        """Create config from dictionary (unknown keys ignored).

        Args:
            data: Dictionary with configuration values

        Returns:
            MigrationEngineConfig instance
        """
        data = dict(data)
        for name, nested_cls in cls._NESTED.items():
            value = data.get(name)
            if isinstance(value, nested_cls):
                data[name] = nested_cls(**asdict(value))
        return cls(**_filter_fields(cls, data))

    def to_dict(self, include_secrets: bool = True) -> Dict[str, Any]:
        """Convert to dictionary for serialization.

        Args:
            include_secrets: When False, connection strings are omitted

        Returns:
            Dict with configuration values
        """
        result = asdict(self)
        result["start_date"] = self.start_date.isoformat() if self.start_date else None
        result["end_date"] = self.end_date.isoformat() if self.end_date else None
        if not include_secrets:
            result.pop("mongo_connection_string", None)
            result.pop("postgres_connection_string", None)
        return result


def load_config(config_path: Optional[str] = None, **overrides: Any) -> MigrationEngineConfig:
    """
    Load migration configuration from a YAML or JSON file, environment and overrides.

    Precedence (highest first): overrides with non-None values, file values,
    environment variables, dataclass defaults.

    Args:
        config_path: Optional path to a .yaml/.yml/.json file
        **overrides: Field values taken from CLI flags

    Returns:
        MigrationEngineConfig instance
    """
    env = ConnectionSettings.from_env()
    data: Dict[str, Any] = {
        "mongo_connection_string": env.mongo_connection_string or "",
        "mongo_database_name": env.mongo_database_name or "",
        "postgres_connection_string": env.postgres_connection_string or "",
    }

    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        with open(path, 'r') as f:
            if path.suffix.lower() in (".yaml", ".yml"):
                file_data = yaml.safe_load(f) or {}
            else:
                file_data = json.load(f)
        if not isinstance(file_data, dict):
            raise ValueError(f"Config file must contain a mapping: {config_path}")
        data.update({k: v for k, v in file_data.items() if v is not None})

    data.update({k: v for k, v in overrides.items() if v is not None})
    config = MigrationEngineConfig.from_dict(data)
    if not config.mongo_database_name:
        config.mongo_database_name = database_from_uri(config.mongo_connection_string) or ""
    return config
