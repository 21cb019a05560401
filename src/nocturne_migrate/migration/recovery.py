"""
Recovery Service
================
Classifies why a migration failed and runs a remediation strategy.

Strategies live in a ``StrategyRegistry``. Each one declares the failure
types it applies to (with a base success rate per type) and an async
handler. Candidates are ranked by an effective success rate (base rate
blended with the outcomes recorded in earlier recoveries) times a recency
bonus, so adding a strategy only means registering it.

Outcomes are written to the migration repository as ``recovery`` log
entries and read back when ranking, so the ranking survives restarts.
"""

import asyncio
import gc
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..config.config import DEFAULT_BACKUP_DIR, MigrationEngineConfig, parse_datetime
from ..utils import truncate_text
from .backup import BackupConfiguration, BackupService, BackupType, parse_postgres_dsn
from .connection import ConnectionTestService
from .models import (
    CheckpointStatus,
    LogLevel,
    MigrationCheckpoint,
    MigrationLog,
    ValidationResult,
    new_id,
    utc_now,
)
from .repository import MigrationRepository
from .resources import process_memory_mb
from .rollback import RollbackConfiguration, RollbackService, RollbackType

logger = logging.getLogger(__name__)

COMPONENT = "recovery"
ENGINE_COMPONENT = "engine"

# Weight of a strategy's base rate, counted as this many virtual attempts
PRIOR_WEIGHT = 5
RECENCY_BONUS = 0.25
RECENCY_HALF_LIFE_DAYS = 7.0


# ============================================================================
# Failure classification
# ============================================================================


class FailureCategory(str, Enum):
    CONNECTIVITY_LOSS = "connectivity_loss"
    DATA_CORRUPTION = "data_corruption"
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    TIMEOUT = "timeout"
    CONSTRAINT_VIOLATION = "constraint_violation"
    UNKNOWN = "unknown"


class FailureType(str, Enum):
    NETWORK = "network"
    DATABASE_CONNECTION = "database_connection"
    AUTHENTICATION = "authentication"
    OUT_OF_MEMORY = "out_of_memory"
    DISK_SPACE = "disk_space"
    DATA_CORRUPTION = "data_corruption"
    CONSTRAINT_VIOLATION = "constraint_violation"
    SCHEMA_VALIDATION = "schema_validation"
    DATA_TRANSFORMATION = "data_transformation"
    USER_CANCELLATION = "user_cancellation"
    SYSTEM_CRASH = "system_crash"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"

    @property
    def category(self) -> FailureCategory:
        return _FAILURE_CATEGORIES[self]

    @classmethod
    def from_string(cls, value: str) -> "FailureType":
        value_lower = value.lower().strip().replace("-", "_")
        for member in cls:
            if member.value == value_lower:
                return member
        raise ValueError(f"Invalid failure type: {value}. Valid types: {[m.value for m in cls]}")


_FAILURE_CATEGORIES: Dict[FailureType, FailureCategory] = {
    FailureType.NETWORK: FailureCategory.CONNECTIVITY_LOSS,
    FailureType.DATABASE_CONNECTION: FailureCategory.CONNECTIVITY_LOSS,
    FailureType.AUTHENTICATION: FailureCategory.CONNECTIVITY_LOSS,
    FailureType.OUT_OF_MEMORY: FailureCategory.RESOURCE_EXHAUSTION,
    FailureType.DISK_SPACE: FailureCategory.RESOURCE_EXHAUSTION,
    FailureType.DATA_CORRUPTION: FailureCategory.DATA_CORRUPTION,
    FailureType.DATA_TRANSFORMATION: FailureCategory.DATA_CORRUPTION,
    FailureType.CONSTRAINT_VIOLATION: FailureCategory.CONSTRAINT_VIOLATION,
    FailureType.SCHEMA_VALIDATION: FailureCategory.CONSTRAINT_VIOLATION,
    FailureType.TIMEOUT: FailureCategory.TIMEOUT,
    FailureType.USER_CANCELLATION: FailureCategory.UNKNOWN,
    FailureType.SYSTEM_CRASH: FailureCategory.UNKNOWN,
    FailureType.UNKNOWN: FailureCategory.UNKNOWN,
}

# ``errors.MigrationError.category`` -> failure type
_ERROR_CATEGORY_TYPES: Dict[str, FailureType] = {
    "connectivity": FailureType.DATABASE_CONNECTION,
    "authentication": FailureType.AUTHENTICATION,
    "transient": FailureType.NETWORK,
    "constraint_violation": FailureType.CONSTRAINT_VIOLATION,
    "schema_validation": FailureType.SCHEMA_VALIDATION,
    "data_transformation": FailureType.DATA_TRANSFORMATION,
    "data_corruption": FailureType.DATA_CORRUPTION,
    "resource_exhaustion": FailureType.OUT_OF_MEMORY,
    "cancelled": FailureType.USER_CANCELLATION,
    "timeout": FailureType.TIMEOUT,
}

# Checked in order; the first match wins
_MESSAGE_KEYWORDS = [
    (FailureType.TIMEOUT, ("timed out", "timeout")),
    (FailureType.AUTHENTICATION, ("authentication", "auth failed", "password", "permission denied")),
    (FailureType.CONSTRAINT_VIOLATION, ("duplicate key", "unique constraint", "constraint")),
    (FailureType.DATA_CORRUPTION, ("corrupt", "checksum")),
    (FailureType.DISK_SPACE, ("no space left", "disk full", "disk space")),
    (FailureType.OUT_OF_MEMORY, ("out of memory", "memory")),
    (FailureType.SCHEMA_VALIDATION, ("schema", "validation")),
    (FailureType.DATA_TRANSFORMATION, ("transform", "conversion")),
    (FailureType.DATABASE_CONNECTION, ("connection refused", "could not connect", "connection")),
    (FailureType.NETWORK, ("network", "socket", "unreachable")),
    (FailureType.USER_CANCELLATION, ("cancel",)),
]

_URGENT_TYPES = {FailureType.DATA_CORRUPTION, FailureType.SYSTEM_CRASH, FailureType.DISK_SPACE}


def classify_error(message: str, exception: Optional[str] = None, category: Optional[str] = None) -> FailureType:
    """Map a logged failure to a ``FailureType``; structured category first, then keywords."""
    if category and category in _ERROR_CATEGORY_TYPES:
        failure_type = _ERROR_CATEGORY_TYPES[category]
        text = f"{message} {exception or ''}".lower()
        if failure_type == FailureType.OUT_OF_MEMORY and ("disk" in text or "no space" in text):
            return FailureType.DISK_SPACE
        return failure_type
    text = f"{message} {exception or ''}".lower()
    for failure_type, keywords in _MESSAGE_KEYWORDS:
        if any(k in text for k in keywords):
            return failure_type
    return FailureType.UNKNOWN


# ============================================================================
# Strategies
# ============================================================================


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryState(str, Enum):
    INITIALIZING = "initializing"
    ANALYZING = "analyzing"
    PREPARING = "preparing"
    RUNNING = "running"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RecoveryOperationType(str, Enum):
    FAILURE_ANALYSIS = "failure_analysis"
    BACKUP = "backup"
    CONNECTION_RESTORE = "connection_restore"
    MEMORY_CLEANUP = "memory_cleanup"
    DISK_CLEANUP = "disk_cleanup"
    DATA_VALIDATION = "data_validation"
    CHECKPOINT_RESTORE = "checkpoint_restore"
    CONFIGURATION_ADJUSTMENT = "configuration_adjustment"
    RETRY = "retry"
    SKIP_DATA = "skip_data"
    RESOURCE_ALLOCATION = "resource_allocation"
    ROLLBACK = "rollback"
    RESUME = "resume"


@dataclass
class RecoveryOperation:
    operation_type: RecoveryOperationType
    description: str
    is_success: bool = True
    error_message: Optional[str] = None
    duration_seconds: float = 0.0
    timestamp: datetime = field(default_factory=utc_now)
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RecoveryStatistics:
    start_time: datetime = field(default_factory=utc_now)
    end_time: Optional[datetime] = None
    retry_attempts: int = 0
    documents_skipped: int = 0
    documents_recovered: int = 0
    connections_restored: int = 0
    resources_freed: int = 0

    @property
    def duration_seconds(self) -> float:
        return ((self.end_time or utc_now()) - self.start_time).total_seconds()


@dataclass
class RecoveryContext:
    """Mutable state handed to a strategy handler for one attempt."""
    config: "RecoveryConfiguration"
    analysis: "FailureAnalysis"
    engine_config: MigrationEngineConfig
    statistics: RecoveryStatistics
    operations: List[RecoveryOperation] = field(default_factory=list)
    resume_engine: bool = False
    fresh_run: bool = False


StrategyHandler = Callable[["RecoveryService", RecoveryContext], Awaitable[bool]]


@dataclass
class RecoveryStrategy:
    """
    A named remediation procedure.

    ``success_rates`` doubles as the applicability predicate: a strategy
    applies to exactly the failure types it has a base rate for.
    """
    strategy_id: str
    name: str
    description: str
    success_rates: Dict[FailureType, float]
    handler: StrategyHandler
    estimated_time_seconds: float = 600.0
    risk_level: RiskLevel = RiskLevel.LOW
    prerequisites: List[str] = field(default_factory=list)

    def applies_to(self, failure_type: FailureType) -> bool:
        return failure_type in self.success_rates

    def base_rate(self, failure_type: FailureType) -> float:
        return self.success_rates.get(failure_type, 0.0)


@dataclass
class StrategyHistory:
    """Recorded outcomes of one strategy for one failure type."""
    attempts: int = 0
    successes: int = 0
    last_success: Optional[datetime] = None


@dataclass
class RankedStrategy:
    strategy: RecoveryStrategy
    base_rate: float
    effective_rate: float
    score: float
    attempts: int = 0
    successes: int = 0

    @property
    def strategy_id(self) -> str:
        return self.strategy.strategy_id


def effective_success_rate(base_rate: float, history: StrategyHistory) -> float:
    """Base rate blended with observed outcomes (base counts as ``PRIOR_WEIGHT`` attempts)."""
    return (base_rate * PRIOR_WEIGHT + 100.0 * history.successes) / (PRIOR_WEIGHT + history.attempts)


def recency_factor(last_success: Optional[datetime], now: Optional[datetime] = None) -> float:
    """1.0 without a recorded success; otherwise a bonus that halves every week."""
    if last_success is None:
        return 1.0
    days = max(0.0, ((now or utc_now()) - last_success).total_seconds() / 86400)
    return 1.0 + RECENCY_BONUS * 0.5 ** (days / RECENCY_HALF_LIFE_DAYS)


class StrategyRegistry:
    """Registered recovery strategies and their ranking."""

    def __init__(self, strategies: Optional[List[RecoveryStrategy]] = None):
        self._strategies: Dict[str, RecoveryStrategy] = {}
        for strategy in strategies or []:
            self.register(strategy)

    def register(self, strategy: RecoveryStrategy) -> None:
        if strategy.strategy_id in self._strategies:
            logger.warning(f"Replacing registered recovery strategy: {strategy.strategy_id}")
        self._strategies[strategy.strategy_id] = strategy

    def get(self, strategy_id: str) -> Optional[RecoveryStrategy]:
        return self._strategies.get(strategy_id)

    def __contains__(self, strategy_id: str) -> bool:
        return strategy_id in self._strategies

    def all(self) -> List[RecoveryStrategy]:
        return list(self._strategies.values())

    def applicable(self, failure_type: FailureType) -> List[RecoveryStrategy]:
        return [s for s in self._strategies.values() if s.applies_to(failure_type)]

    def rank(
        self,
        failure_type: FailureType,
        history: Optional[Dict[str, StrategyHistory]] = None,
        now: Optional[datetime] = None,
    ) -> List[RankedStrategy]:
        """
        Rank applicable strategies, best first.

        Args:
            failure_type: Classified failure
            history: Outcomes keyed by strategy id, for this failure type
            now: Reference time for the recency bonus

        Returns:
            Strategies ordered by score, ties broken by shorter estimated time
        """
        history = history or {}
        ranked = []
        for strategy in self.applicable(failure_type):
            record = history.get(strategy.strategy_id, StrategyHistory())
            base = strategy.base_rate(failure_type)
            effective = effective_success_rate(base, record)
            ranked.append(RankedStrategy(
                strategy=strategy,
                base_rate=base,
                effective_rate=effective,
                score=effective * recency_factor(record.last_success, now),
                attempts=record.attempts,
                successes=record.successes,
            ))
        ranked.sort(key=lambda r: (-r.score, r.strategy.estimated_time_seconds, r.strategy_id))
        return ranked


# ============================================================================
# Built-in strategy handlers
# ============================================================================


async def _resume_from_checkpoint(service: "RecoveryService", context: RecoveryContext) -> bool:
    start = time.monotonic()
    checkpoint = await service.latest_unfinished_checkpoint(context.config.migration_id)
    if checkpoint is None:
        service.record(context.operations, RecoveryOperationType.CHECKPOINT_RESTORE,
                       "No checkpoints found for migration", start, error="No recovery checkpoints available")
        return False
    checkpoints = await service.repository.list_checkpoints(context.config.migration_id)
    context.statistics.documents_recovered = sum(c.documents_processed for c in checkpoints)
    context.resume_engine = True
    service.record(
        context.operations, RecoveryOperationType.CHECKPOINT_RESTORE,
        f"Found checkpoint from {checkpoint.last_update}", start,
        details={
            "checkpoint_id": checkpoint.checkpoint_id,
            "collection_name": checkpoint.collection_name,
            "documents_processed": checkpoint.documents_processed,
        },
    )
    return True


async def _retry_with_adjustment(service: "RecoveryService", context: RecoveryContext) -> bool:
    start = time.monotonic()
    engine_config = context.engine_config
    retry = replace(engine_config.retry, max_retries=engine_config.retry.max_retries * 2 or 1)
    changes: Dict[str, Any] = {"batch_size": max(1, engine_config.batch_size // 2), "retry": retry}
    if context.analysis.failure_type == FailureType.CONSTRAINT_VIOLATION:
        changes["skip_duplicates"] = True
    context.engine_config = engine_config.copy(**changes)
    context.resume_engine = True
    service.record(
        context.operations, RecoveryOperationType.CONFIGURATION_ADJUSTMENT,
        "Configuration adjusted for retry", start,
        details={
            "batch_size": context.engine_config.batch_size,
            "max_retries": retry.max_retries,
            "skip_duplicates": context.engine_config.skip_duplicates,
        },
    )
    return True


async def _skip_problematic_data(service: "RecoveryService", context: RecoveryContext) -> bool:
    start = time.monotonic()
    config = context.config
    if not config.allow_data_skipping:
        service.record(context.operations, RecoveryOperationType.SKIP_DATA,
                       "Skip problematic data", start, error="Data skipping is not allowed")
        return False

    failed_ids = await service.failed_document_ids(config.migration_id)
    known = set(context.engine_config.skip_document_ids)
    new_ids = [i for i in failed_ids if i not in known]
    if not new_ids:
        service.record(context.operations, RecoveryOperationType.SKIP_DATA,
                       "Skip problematic data", start, error="No failed documents recorded for migration")
        return False

    checkpoints = await service.repository.list_checkpoints(config.migration_id)
    remaining = sum(max(0, c.total_documents - c.documents_processed) for c in checkpoints if not c.is_finished)
    allowed = int(remaining * config.max_data_skip_percentage / 100.0)
    if len(new_ids) > allowed:
        service.record(
            context.operations, RecoveryOperationType.SKIP_DATA, "Skip problematic data", start,
            error=(
                f"{len(new_ids)} documents exceed the skip limit of {allowed} "
                f"({config.max_data_skip_percentage}% of {remaining} remaining)"
            ),
        )
        return False

    context.engine_config = context.engine_config.copy(skip_document_ids=sorted(known | set(new_ids)))
    context.statistics.documents_skipped += len(new_ids)
    context.resume_engine = True
    service.record(
        context.operations, RecoveryOperationType.SKIP_DATA,
        f"Marked {len(new_ids)} problematic documents to be skipped", start,
        details={"documents_skipped": len(new_ids), "remaining": remaining},
    )
    return True


async def _restore_connections(service: "RecoveryService", context: RecoveryContext) -> bool:
    start = time.monotonic()
    config = context.config
    report = await service.connection_tester.test_all(
        config.mongo_connection_string, config.mongo_database_name, config.postgres_connection_string
    )
    for result in report.results:
        service.record(
            context.operations, RecoveryOperationType.CONNECTION_RESTORE,
            f"{result.database_type} connection {'restored' if result.is_success else 'failed'}",
            start, error=None if result.is_success else result.error_message,
        )
        if result.is_success:
            context.statistics.connections_restored += 1
    context.resume_engine = report.all_successful
    return report.all_successful


async def _cleanup_resources(service: "RecoveryService", context: RecoveryContext) -> bool:
    start = time.monotonic()
    before = process_memory_mb()
    collected = gc.collect()
    after = process_memory_mb()
    freed = max(0, int((before - after) * 1024 * 1024))
    context.statistics.resources_freed += freed
    context.engine_config = context.engine_config.copy(batch_size=max(1, context.engine_config.batch_size // 2))
    context.resume_engine = True
    service.record(
        context.operations, RecoveryOperationType.MEMORY_CLEANUP, "Memory cleanup performed", start,
        details={"objects_collected": collected, "memory_after_mb": round(after, 1),
                 "batch_size": context.engine_config.batch_size},
    )
    return True


async def _increase_resources(service: "RecoveryService", context: RecoveryContext) -> bool:
    start = time.monotonic()
    engine_config = context.engine_config
    context.engine_config = engine_config.copy(
        max_degree_of_parallelism=1, max_memory_mb=engine_config.max_memory_mb * 2
    )
    context.resume_engine = True
    service.record(
        context.operations, RecoveryOperationType.RESOURCE_ALLOCATION, "Resource allocation increased", start,
        details={"max_memory_mb": context.engine_config.max_memory_mb, "max_degree_of_parallelism": 1},
    )
    return True


async def _cleanup_disk_space(service: "RecoveryService", context: RecoveryContext) -> bool:
    start = time.monotonic()
    directory = context.config.backup_directory
    result = await service.backup_service.cleanup_backups(directory, context.engine_config.backup.retention_policy)
    context.statistics.resources_freed += result.bytes_freed
    service.record(
        context.operations, RecoveryOperationType.DISK_CLEANUP,
        f"Backup retention applied to {directory}", start, error=result.error_message if not result.is_success else None,
        details={"files_deleted": result.files_deleted, "bytes_freed": result.bytes_freed},
    )
    context.resume_engine = result.is_success
    return result.is_success


async def _restore_from_backup_then_retry(service: "RecoveryService", context: RecoveryContext) -> bool:
    start = time.monotonic()
    config = context.config
    backup_file = config.backup_file
    if not backup_file:
        backups = await service.backup_service.list_backups(config.backup_directory, BackupType.MONGODB)
        backup_file = backups[0].file_path if backups else None
    if not backup_file:
        service.record(context.operations, RecoveryOperationType.ROLLBACK, "Restore from backup", start,
                       error=f"No MongoDB backup found in {config.backup_directory}")
        return False
    if service.rollback_service is None:
        service.record(context.operations, RecoveryOperationType.ROLLBACK, "Restore from backup", start,
                       error="No rollback service configured")
        return False

    rollback = await service.rollback_service.rollback(RollbackConfiguration(
        migration_id=config.migration_id,
        postgres_connection_string=config.postgres_connection_string,
        mongo_connection_string=config.mongo_connection_string,
        mongo_database_name=config.mongo_database_name,
        rollback_type=RollbackType.FULL,
        backup_file=backup_file,
        restore_mongo_data=True,
        require_confirmation=False,
    ))
    service.record(
        context.operations, RecoveryOperationType.ROLLBACK, f"Rolled back and restored from {backup_file}",
        start, error=rollback.error_message if not rollback.is_success else None,
        details={"rollback_id": rollback.rollback_id, "documents_restored": rollback.statistics.documents_restored},
    )
    if not rollback.is_success:
        return False
    context.engine_config = context.engine_config.copy(migration_id=None)
    context.fresh_run = True
    return True


def builtin_strategies() -> List[RecoveryStrategy]:
    minutes = 60.0
    return [
        RecoveryStrategy(
            strategy_id="resume_from_checkpoint",
            name="Resume from Checkpoint",
            description="Resume migration from the last saved checkpoint",
            success_rates={
                FailureType.NETWORK: 90, FailureType.USER_CANCELLATION: 95, FailureType.SYSTEM_CRASH: 85,
                FailureType.TIMEOUT: 70, FailureType.DATABASE_CONNECTION: 60, FailureType.UNKNOWN: 75,
            },
            handler=_resume_from_checkpoint,
            estimated_time_seconds=15 * minutes,
            prerequisites=["An unfinished checkpoint"],
        ),
        RecoveryStrategy(
            strategy_id="retry_with_adjustment",
            name="Retry with Adjusted Parameters",
            description="Resume with a halved batch size and more retries",
            success_rates={
                FailureType.NETWORK: 85, FailureType.TIMEOUT: 80,
                FailureType.CONSTRAINT_VIOLATION: 75, FailureType.DATABASE_CONNECTION: 65,
            },
            handler=_retry_with_adjustment,
            estimated_time_seconds=20 * minutes,
        ),
        RecoveryStrategy(
            strategy_id="skip_problematic_data",
            name="Skip Problematic Data",
            description="Skip documents that failed and continue the migration",
            success_rates={
                FailureType.DATA_CORRUPTION: 60, FailureType.SCHEMA_VALIDATION: 65,
                FailureType.DATA_TRANSFORMATION: 70, FailureType.CONSTRAINT_VIOLATION: 55,
            },
            handler=_skip_problematic_data,
            estimated_time_seconds=25 * minutes,
            risk_level=RiskLevel.HIGH,
            prerequisites=["allow_data_skipping", "Failed document ids in the migration log"],
        ),
        RecoveryStrategy(
            strategy_id="restore_connections",
            name="Restore Database Connections",
            description="Re-establish and validate both database connections",
            success_rates={
                FailureType.DATABASE_CONNECTION: 80, FailureType.AUTHENTICATION: 70, FailureType.NETWORK: 75,
            },
            handler=_restore_connections,
            estimated_time_seconds=5 * minutes,
        ),
        RecoveryStrategy(
            strategy_id="cleanup_resources",
            name="Cleanup and Restart",
            description="Free memory and resume with a smaller batch size",
            success_rates={FailureType.OUT_OF_MEMORY: 75},
            handler=_cleanup_resources,
            estimated_time_seconds=10 * minutes,
            risk_level=RiskLevel.MEDIUM,
        ),
        RecoveryStrategy(
            strategy_id="increase_resources",
            name="Increase Memory Allocation",
            description="Double the memory ceiling and process one collection at a time",
            success_rates={FailureType.OUT_OF_MEMORY: 70},
            handler=_increase_resources,
            estimated_time_seconds=5 * minutes,
        ),
        RecoveryStrategy(
            strategy_id="cleanup_disk_space",
            name="Cleanup Disk Space",
            description="Apply backup retention to free disk space",
            success_rates={FailureType.DISK_SPACE: 85},
            handler=_cleanup_disk_space,
            estimated_time_seconds=15 * minutes,
        ),
        RecoveryStrategy(
            strategy_id="restore_from_backup_then_retry",
            name="Restore from Backup then Retry",
            description="Roll back the target, restore MongoDB from a backup and run the migration again",
            success_rates={FailureType.DATA_CORRUPTION: 50, FailureType.SCHEMA_VALIDATION: 40},
            handler=_restore_from_backup_then_retry,
            estimated_time_seconds=60 * minutes,
            risk_level=RiskLevel.CRITICAL,
            prerequisites=["A verified MongoDB backup"],
        ),
    ]


# ============================================================================
# Configuration and results
# ============================================================================


@dataclass
class RecoveryConfiguration:
    migration_id: str
    mongo_connection_string: str = ""
    mongo_database_name: str = ""
    postgres_connection_string: str = ""
    strategy_id: Optional[str] = None
    engine_config: Optional[MigrationEngineConfig] = None
    create_backup_before_recovery: bool = True
    max_retry_attempts: int = 3
    retry_delay_seconds: float = 60.0
    allow_data_skipping: bool = False
    max_data_skip_percentage: float = 5.0
    resume_migration: bool = False
    backup_file: Optional[str] = None
    backup_directory: str = DEFAULT_BACKUP_DIR

    @classmethod
    def from_engine_config(cls, migration_id: str, config: MigrationEngineConfig, **overrides: Any) -> "RecoveryConfiguration":
        """Build a recovery configuration from the options of the failed run."""
        values: Dict[str, Any] = dict(
            migration_id=migration_id,
            mongo_connection_string=config.mongo_connection_string,
            mongo_database_name=config.mongo_database_name,
            postgres_connection_string=config.postgres_connection_string,
            engine_config=config,
            create_backup_before_recovery=config.recovery.create_pre_recovery_backup,
            max_retry_attempts=config.recovery.max_recovery_attempts,
            retry_delay_seconds=config.recovery.recovery_delay_seconds,
            allow_data_skipping=config.recovery.allow_data_skipping,
            max_data_skip_percentage=config.recovery.max_data_skip_percentage,
            backup_directory=config.backup.backup_directory,
        )
        values.update(overrides)
        return cls(**values)


@dataclass
class FailureAnalysis:
    migration_id: str
    failure_type: FailureType
    description: str
    root_cause: Optional[str] = None
    recommended_strategies: List[RankedStrategy] = field(default_factory=list)
    recovery_likelihood: float = 0.0
    requires_immediate_action: bool = False
    diagnostic_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def category(self) -> FailureCategory:
        return self.failure_type.category


@dataclass
class RecoveryResult:
    recovery_id: str
    is_success: bool
    strategy_id: Optional[str] = None
    error_message: Optional[str] = None
    failure_analysis: Optional[FailureAnalysis] = None
    statistics: RecoveryStatistics = field(default_factory=RecoveryStatistics)
    operations: List[RecoveryOperation] = field(default_factory=list)
    can_resume_migration: bool = False
    resume_checkpoint_id: Optional[str] = None
    adjusted_config: Optional[MigrationEngineConfig] = None
    migration_result: Optional[Any] = None


@dataclass
class RecoveryStatus:
    recovery_id: str
    state: RecoveryState
    migration_id: Optional[str] = None
    progress_percentage: float = 0.0
    current_operation: Optional[str] = None
    statistics: RecoveryStatistics = field(default_factory=RecoveryStatistics)


# ============================================================================
# Service
# ============================================================================


class RecoveryService:
    """
    Failure analysis and strategy execution for failed migrations.

    Args:
        repository: Migration state (checkpoints and logs)
        backup_service: Used for pre-recovery backups and disk cleanup
        rollback_service: Used by the restore-from-backup strategy
        engine: Optional ``MigrationEngine``; when present, recovery can
            resume or rerun the migration itself
        registry: Strategy registry (defaults to the built-in strategies)
        connection_tester: Connection checks for restore and verification
        sleep: Awaitable sleep between attempts, replaceable in tests
    """

    def __init__(
        self,
        repository: MigrationRepository,
        backup_service: Optional[BackupService] = None,
        rollback_service: Optional[RollbackService] = None,
        engine: Optional[Any] = None,
        registry: Optional[StrategyRegistry] = None,
        connection_tester: Optional[ConnectionTestService] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.repository = repository
        self.backup_service = backup_service or BackupService()
        self.rollback_service = rollback_service
        self.engine = engine
        self.registry = registry or StrategyRegistry(builtin_strategies())
        self.connection_tester = connection_tester or ConnectionTestService()
        self.sleep = sleep
        self._statuses: Dict[str, RecoveryStatus] = {}
        self._migrations: Dict[str, str] = {}

    # ========================================================================
    # Queries
    # ========================================================================

    def get_recovery_status(self, recovery_id: str) -> Optional[RecoveryStatus]:
        return self._statuses.get(recovery_id)

    async def get_recovery_strategies(self, failure_type: FailureType) -> List[RankedStrategy]:
        """Applicable strategies ranked with recorded outcomes."""
        return self.registry.rank(failure_type, await self.strategy_history(failure_type))

    async def strategy_history(self, failure_type: FailureType) -> Dict[str, StrategyHistory]:
        """Outcomes per strategy for ``failure_type`` across every recorded migration."""
        history: Dict[str, StrategyHistory] = {}
        for migration_id in await self.repository.list_migration_ids():
            for entry in await self.repository.list_logs(migration_id):
                metadata = entry.metadata
                if entry.component != COMPONENT or "strategy_id" not in metadata or "outcome" not in metadata:
                    continue
                if metadata.get("failure_type") != failure_type.value:
                    continue
                record = history.setdefault(metadata["strategy_id"], StrategyHistory())
                record.attempts += 1
                if metadata["outcome"] == "success":
                    record.successes += 1
                    timestamp = parse_datetime(entry.timestamp)
                    if record.last_success is None or timestamp > record.last_success:
                        record.last_success = timestamp
        return history

    async def latest_unfinished_checkpoint(self, migration_id: str) -> Optional[MigrationCheckpoint]:
        checkpoints = [c for c in await self.repository.list_checkpoints(migration_id) if not c.is_finished]
        if not checkpoints:
            return None
        return max(checkpoints, key=lambda c: c.last_update)

    async def failed_document_ids(self, migration_id: str) -> List[str]:
        """Source ids the engine logged as failed, in log order without repeats."""
        seen: Dict[str, None] = {}
        for entry in await self.repository.list_logs(migration_id):
            if entry.component != ENGINE_COMPONENT:
                continue
            for document_id in entry.metadata.get("failed_document_ids", []):
                seen.setdefault(str(document_id), None)
        return list(seen)

    # ========================================================================
    # Validation and analysis
    # ========================================================================

    async def validate_recovery(self, migration_id: str) -> ValidationResult:
        if not migration_id:
            raise ValueError("migration_id is required")

        result = ValidationResult()
        logs = await self.repository.list_logs(migration_id)
        checkpoints = await self.repository.list_checkpoints(migration_id)
        if not logs and not checkpoints:
            result.add_error("unknown_migration", f"No migration state found for {migration_id}")
            return result
        if not checkpoints:
            result.warnings.append("No checkpoints found; recovery options may be limited")
            logger.warning(f"No checkpoints found for migration {migration_id}, recovery options may be limited")
        elif all(c.is_finished for c in checkpoints) and not self._engine_errors(logs):
            result.add_error(
                "not_failed", "Migration does not appear to be in a failed state that requires recovery"
            )
        return result

    async def analyze_failure(self, migration_id: str) -> FailureAnalysis:
        """
        Classify the failure of ``migration_id`` and rank candidate strategies.

        The latest engine ERROR entry decides the failure type, using its
        structured ``error_category`` before its message. Without one, the
        checkpoint statuses decide (cancelled, or a crash mid-run).
        """
        logs = await self.repository.list_logs(migration_id)
        errors = self._engine_errors(logs)
        checkpoints = await self.repository.list_checkpoints(migration_id)
        diagnostics: Dict[str, Any] = {
            "migration_id": migration_id,
            "error_count": len(errors),
            "checkpoint_statuses": {c.collection_name: c.status.value for c in checkpoints},
        }

        root_cause = None
        if errors:
            latest = errors[-1]
            category = latest.metadata.get("error_category")
            failure_type = classify_error(latest.message, latest.exception, category)
            description = latest.message
            root_cause = self._root_cause(latest)
            diagnostics.update(
                last_error_time=latest.timestamp,
                exception=latest.exception or "",
                error_category=category or "",
            )
        elif any(c.status == CheckpointStatus.CANCELLED for c in checkpoints):
            failure_type = FailureType.USER_CANCELLATION
            description = "Migration was cancelled"
        elif any(c.status == CheckpointStatus.RUNNING for c in checkpoints):
            failure_type = FailureType.SYSTEM_CRASH
            description = "Migration stopped while running without recording an error"
        else:
            failure_type = FailureType.UNKNOWN
            description = "No error logs found for this migration"

        ranked = await self.get_recovery_strategies(failure_type)
        likelihood = sum(r.effective_rate for r in ranked) / len(ranked) if ranked else 0.0
        analysis = FailureAnalysis(
            migration_id=migration_id,
            failure_type=failure_type,
            description=description,
            root_cause=root_cause,
            recommended_strategies=ranked,
            recovery_likelihood=likelihood,
            requires_immediate_action=failure_type in _URGENT_TYPES,
            diagnostic_data=diagnostics,
        )
        logger.info(
            f"Failure analysis for {migration_id}: {failure_type.value} "
            f"({failure_type.category.value}), likelihood {likelihood:.1f}%"
        )
        return analysis

    # ========================================================================
    # Recovery
    # ========================================================================

    async def recover(self, config: RecoveryConfiguration) -> RecoveryResult:
        """
        Analyse the failure, run the selected strategy and report whether
        the migration can be resumed.

        Args:
            config: Recovery configuration

        Returns:
            RecoveryResult with every operation attempted
        """
        recovery_id = new_id()
        statistics = RecoveryStatistics()
        self._migrations[recovery_id] = config.migration_id
        operations: List[RecoveryOperation] = []
        result = RecoveryResult(recovery_id=recovery_id, is_success=False, statistics=statistics,
                                operations=operations)
        logger.info(f"Starting recovery {recovery_id} for migration {config.migration_id}")

        # 1. validate
        self._set_status(recovery_id, RecoveryState.ANALYZING, 10, "Validating recovery configuration", statistics)
        start = time.monotonic()
        validation = await self.validate_recovery(config.migration_id)
        self.record(operations, RecoveryOperationType.FAILURE_ANALYSIS, "Recovery validation", start,
                    error=validation.error_message)
        if not validation.is_valid:
            return await self._finish(config, result, None, f"Recovery validation failed: {validation.error_message}")

        # 2. analyse
        self._set_status(recovery_id, RecoveryState.ANALYZING, 20, "Analyzing failure", statistics)
        start = time.monotonic()
        analysis = await self.analyze_failure(config.migration_id)
        result.failure_analysis = analysis
        self.record(
            operations, RecoveryOperationType.FAILURE_ANALYSIS, f"Failure analysis: {analysis.description}", start,
            details={
                "failure_type": analysis.failure_type.value,
                "root_cause": analysis.root_cause or "unknown",
                "recovery_likelihood": analysis.recovery_likelihood,
            },
        )

        # 3. select
        strategy = self._select_strategy(config, analysis)
        result.strategy_id = strategy.strategy_id
        logger.info(f"Selected recovery strategy: {strategy.name}")

        # 4. pre-recovery backup
        if config.create_backup_before_recovery:
            self._set_status(recovery_id, RecoveryState.PREPARING, 40, "Creating pre-recovery backup", statistics)
            await self._pre_recovery_backup(config, operations)

        # 5. execute
        self._set_status(recovery_id, RecoveryState.RUNNING, 50, f"Executing {strategy.name}", statistics)
        engine_config = config.engine_config or MigrationEngineConfig(
            mongo_connection_string=config.mongo_connection_string,
            mongo_database_name=config.mongo_database_name,
            postgres_connection_string=config.postgres_connection_string,
        )
        context = RecoveryContext(
            config=config, analysis=analysis, engine_config=engine_config,
            statistics=statistics, operations=operations,
        )
        succeeded = False
        attempts = max(1, config.max_retry_attempts)
        for attempt in range(1, attempts + 1):
            statistics.retry_attempts = attempt
            succeeded = await self._attempt(strategy, context, result)
            if succeeded:
                break
            if attempt < attempts:
                logger.warning(
                    f"Recovery attempt {attempt}/{attempts} with {strategy.strategy_id} failed; "
                    f"retrying in {config.retry_delay_seconds}s"
                )
                await self.sleep(config.retry_delay_seconds)

        result.adjusted_config = context.engine_config

        # 6. verify
        self._set_status(recovery_id, RecoveryState.VERIFYING, 90, "Verifying recovery", statistics)
        start = time.monotonic()
        report = await self.connection_tester.test_all(
            config.mongo_connection_string, config.mongo_database_name, config.postgres_connection_string
        )
        verified = report.all_successful
        self.record(
            operations, RecoveryOperationType.DATA_VALIDATION, "Recovery verification", start,
            error=None if verified else f"Unreachable after recovery: {', '.join(report.failed_databases)}",
        )

        checkpoint = await self.latest_unfinished_checkpoint(config.migration_id)
        result.can_resume_migration = bool(succeeded and verified and checkpoint and not context.fresh_run)
        result.resume_checkpoint_id = checkpoint.checkpoint_id if result.can_resume_migration else None

        # 7. record
        error = None
        if not succeeded:
            failed = [op for op in operations if not op.is_success]
            error = failed[-1].error_message if failed else f"Strategy {strategy.strategy_id} did not succeed"
        return await self._finish(config, result, strategy, error)

    async def _attempt(self, strategy: RecoveryStrategy, context: RecoveryContext, result: RecoveryResult) -> bool:
        context.resume_engine = False
        context.fresh_run = False
        start = time.monotonic()
        try:
            handled = await strategy.handler(self, context)
        except (OSError, ValueError) as e:
            logger.error(f"Recovery strategy {strategy.strategy_id} raised: {e}")
            self.record(context.operations, RecoveryOperationType.RETRY, f"Run {strategy.name}", start, error=str(e))
            return False
        if not handled:
            return False
        if not context.config.resume_migration or self.engine is None:
            return True
        if not (context.resume_engine or context.fresh_run):
            return True

        start = time.monotonic()
        if context.fresh_run:
            migration = await self.engine.migrate(context.engine_config)
            description = "Fresh migration run after restore"
        else:
            checkpoint = await self.latest_unfinished_checkpoint(context.config.migration_id)
            if checkpoint is None:
                self.record(context.operations, RecoveryOperationType.RESUME, "Resume migration", start,
                            error="No unfinished checkpoint to resume from")
                return False
            migration = await self.engine.resume(context.engine_config, checkpoint.checkpoint_id)
            description = f"Resumed migration from checkpoint {checkpoint.checkpoint_id}"
        result.migration_result = migration
        self.record(
            context.operations, RecoveryOperationType.RESUME, description, start,
            error=None if migration.is_success else migration.error_message,
            details={"documents_migrated": migration.statistics.total_documents_migrated},
        )
        if migration.is_success:
            context.statistics.documents_recovered += migration.statistics.total_documents_migrated
        return migration.is_success

    async def _pre_recovery_backup(self, config: RecoveryConfiguration, operations: List[RecoveryOperation]) -> None:
        start = time.monotonic()
        database = parse_postgres_dsn(config.postgres_connection_string)["dbname"] or "nocturne"
        backup_config = BackupConfiguration(
            connection_string=config.postgres_connection_string,
            database_name=database,
            output_directory=config.backup_directory,
            backup_filename=f"pre_recovery_{config.migration_id}_{utc_now():%Y%m%d_%H%M%S}.sql",
        )
        try:
            backup = await self.backup_service.create_postgres_backup(backup_config)
            error = backup.error_message
            details = {"backup_path": backup.backup_file_path or "", "backup_size": backup.backup_file_size}
        except ValueError as e:
            error, details = str(e), {}
        if error:
            logger.warning(f"Pre-recovery backup failed, but continuing with recovery: {error}")
        self.record(operations, RecoveryOperationType.BACKUP, "Pre-recovery backup creation", start,
                    error=error, details=details)

    async def _finish(
        self,
        config: RecoveryConfiguration,
        result: RecoveryResult,
        strategy: Optional[RecoveryStrategy],
        error: Optional[str],
    ) -> RecoveryResult:
        result.is_success = error is None
        result.error_message = error
        result.statistics.end_time = utc_now()
        state = RecoveryState.COMPLETED if result.is_success else RecoveryState.FAILED
        self._set_status(result.recovery_id, state, 100, state.value, result.statistics)

        metadata: Dict[str, Any] = {"recovery_id": result.recovery_id}
        if strategy is not None and result.failure_analysis is not None:
            metadata.update(
                strategy_id=strategy.strategy_id,
                failure_type=result.failure_analysis.failure_type.value,
                outcome="success" if result.is_success else "failure",
            )
        if result.is_success:
            message = f"Recovery {result.recovery_id} succeeded with {result.strategy_id}"
            logger.info(f"{message} in {result.statistics.duration_seconds:.1f}s")
        else:
            message = f"Recovery {result.recovery_id} failed: {error}"
            logger.error(message)
        if config.migration_id in await self.repository.list_migration_ids():
            await self.repository.log(
                config.migration_id,
                LogLevel.INFO if result.is_success else LogLevel.ERROR,
                message,
                component=COMPONENT,
                **metadata,
            )
        return result

    # ========================================================================
    # Helpers
    # ========================================================================

    def _select_strategy(self, config: RecoveryConfiguration, analysis: FailureAnalysis) -> RecoveryStrategy:
        if config.strategy_id:
            strategy = self.registry.get(config.strategy_id)
            if strategy is not None:
                return strategy
            logger.warning(f"Unknown recovery strategy '{config.strategy_id}', using the best ranked one")
        if analysis.recommended_strategies:
            return analysis.recommended_strategies[0].strategy
        return self.registry.get("resume_from_checkpoint") or builtin_strategies()[0]

    @staticmethod
    def _engine_errors(logs: List[MigrationLog]) -> List[MigrationLog]:
        return [
            entry for entry in logs
            if entry.component == ENGINE_COMPONENT and entry.level in (LogLevel.ERROR, LogLevel.CRITICAL)
        ]

    @staticmethod
    def _root_cause(entry: MigrationLog) -> str:
        if entry.exception:
            return entry.exception.splitlines()[0].strip()
        return truncate_text(entry.message, 100, suffix="...")

    def _set_status(
        self, recovery_id: str, state: RecoveryState, progress: float, operation: str, statistics: RecoveryStatistics
    ) -> None:
        status = RecoveryStatus(
            recovery_id=recovery_id,
            state=state,
            migration_id=self._migrations.get(recovery_id),
            progress_percentage=progress,
            current_operation=operation,
            statistics=statistics,
        )
        self._statuses[recovery_id] = status
        if self.engine is not None and status.migration_id:
            self.engine.report_recovery_status(status.migration_id, status)

    @staticmethod
    def record(
        operations: List[RecoveryOperation],
        operation_type: RecoveryOperationType,
        description: str,
        start: float,
        error: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        operations.append(RecoveryOperation(
            operation_type=operation_type,
            description=description,
            is_success=error is None,
            error_message=error,
            duration_seconds=time.monotonic() - start,
            details=details or {},
        ))
