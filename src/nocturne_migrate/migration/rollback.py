"""
Rollback Service
================
Undoes a migration: drops (or trims) the target tables it wrote and can
restore the source database from a ``mongodump`` archive.

A rollback is an ordered list of operations, each recorded with its own
success flag:

    validation -> confirmation -> backup verification -> drop/delete
    -> restore -> integrity check -> cleanup

``dry_run`` records the same list as planned operations without touching
either store.
"""

import asyncio
import logging
import os
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..errors import MigrationError
from ..process import ProcessRunner
from .backup import BackupService, BackupType
from .models import (
    CheckpointStatus,
    LogLevel,
    RollbackPoint,
    RollbackPointState,
    ValidationResult,
    new_id,
    utc_now,
)
from .repository import MigrationRepository
from .stores import (
    COLLECTION_TABLES,
    EXTRA_ROLLBACK_TABLES,
    TARGET_SCHEMA,
    RelationalTarget,
    table_for_collection,
)

logger = logging.getLogger(__name__)

COMPONENT = "rollback"
DEFAULT_ROLLBACK_TIMEOUT_SECONDS = 60 * 60
_RESTORED_RE = re.compile(r"(\d+)\s+document\(s\)\s+restored successfully")

ConfirmCallback = Callable[[str], bool]


class RollbackType(str, Enum):
    FULL = "full"
    SCHEMA_ONLY = "schema_only"
    PARTIAL = "partial"
    POINT_IN_TIME = "point_in_time"

    @classmethod
    def from_string(cls, value: str) -> "RollbackType":
        value_lower = value.lower().strip().replace("-", "_")
        for member in cls:
            if member.value == value_lower or member.value.replace("_", "") == value_lower:
                return member
        raise ValueError(f"Invalid rollback type: {value}. Valid types: {[m.value for m in cls]}")


class RollbackState(str, Enum):
    INITIALIZING = "initializing"
    VALIDATING = "validating"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    RUNNING = "running"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RollbackOperationType(str, Enum):
    VALIDATION = "validation"
    CONFIRMATION = "confirmation"
    BACKUP_VERIFICATION = "backup_verification"
    DROP_TABLE = "drop_table"
    DROP_INDEX = "drop_index"
    DELETE_ROWS = "delete_rows"
    RESTORE_DATA = "restore_data"
    INTEGRITY_CHECK = "integrity_check"
    CLEANUP = "cleanup"


@dataclass
class PartialRollbackOptions:
    """Scope of a partial rollback; empty fields do not filter."""
    collections: List[str] = field(default_factory=list)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    document_ids: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.collections or self.start_date or self.end_date or self.document_ids)


@dataclass
class RollbackConfiguration:
    migration_id: str
    postgres_connection_string: str = ""
    mongo_connection_string: Optional[str] = None
    mongo_database_name: Optional[str] = None
    rollback_type: RollbackType = RollbackType.FULL
    backup_file: Optional[str] = None
    rollback_point_id: Optional[str] = None
    drop_tables: bool = True
    restore_mongo_data: bool = False
    require_confirmation: bool = True
    dry_run: bool = False
    timeout_seconds: float = DEFAULT_ROLLBACK_TIMEOUT_SECONDS
    partial: PartialRollbackOptions = field(default_factory=PartialRollbackOptions)

    def __post_init__(self) -> None:
        if isinstance(self.rollback_type, str) and not isinstance(self.rollback_type, RollbackType):
            self.rollback_type = RollbackType.from_string(self.rollback_type)


@dataclass
class RollbackStatistics:
    start_time: datetime = field(default_factory=utc_now)
    end_time: Optional[datetime] = None
    tables_dropped: int = 0
    rows_deleted: int = 0
    indexes_dropped: int = 0
    documents_restored: int = 0
    data_size_restored: int = 0

    @property
    def duration_seconds(self) -> float:
        return ((self.end_time or utc_now()) - self.start_time).total_seconds()


@dataclass
class RollbackOperation:
    operation_type: RollbackOperationType
    description: str
    is_success: bool = True
    error_message: Optional[str] = None
    duration_seconds: float = 0.0
    planned: bool = False
    timestamp: datetime = field(default_factory=utc_now)
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RollbackResult:
    rollback_id: str
    is_success: bool
    state: RollbackState
    error_message: Optional[str] = None
    statistics: RollbackStatistics = field(default_factory=RollbackStatistics)
    operations: List[RollbackOperation] = field(default_factory=list)
    integrity_verified: bool = False
    integrity_details: Optional[str] = None
    dry_run: bool = False

    @property
    def cancelled(self) -> bool:
        return self.state == RollbackState.CANCELLED


@dataclass
class RollbackStatus:
    rollback_id: str
    state: RollbackState
    progress_percentage: float = 0.0
    current_operation: Optional[str] = None
    statistics: RollbackStatistics = field(default_factory=RollbackStatistics)


class RollbackService:
    """
    Drops or trims migrated target tables and restores source archives.

    Args:
        target: Relational store the migration wrote to
        repository: Checkpoint, log and rollback-point store
        backup_service: Verifies archives before and after a restore
        runner: Runs ``mongorestore`` (defaults to the backup service's runner)
    """

    def __init__(
        self,
        target: RelationalTarget,
        repository: MigrationRepository,
        backup_service: Optional[BackupService] = None,
        runner: Optional[ProcessRunner] = None,
        mongorestore: str = "mongorestore",
    ):
        self.target = target
        self.repository = repository
        self.backup_service = backup_service or BackupService(runner=runner)
        self.runner = runner or self.backup_service.runner
        self.mongorestore = mongorestore
        self._statuses: Dict[str, RollbackStatus] = {}

    # ========================================================================
    # Rollback points
    # ========================================================================

    async def create_rollback_point(
        self,
        migration_id: str,
        description: str,
        state: RollbackPointState = RollbackPointState.DATA_MIGRATION,
        migrated_collections: Optional[List[str]] = None,
        statistics: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        backup_file_path: Optional[str] = None,
    ) -> RollbackPoint:
        existing = await self.repository.list_rollback_points(migration_id)
        point = RollbackPoint(
            migration_id=migration_id,
            sequence=len(existing) + 1,
            state=state,
            description=description,
            migrated_collections=list(migrated_collections or []),
            statistics=dict(statistics or {}),
            metadata=dict(metadata or {}),
            backup_file_path=backup_file_path,
        )
        await self.repository.save_rollback_point(point)
        logger.info(f"Created rollback point {point.sequence} for migration {migration_id}: {description}")
        return point

    async def list_rollback_points(self, migration_id: str) -> List[RollbackPoint]:
        return await self.repository.list_rollback_points(migration_id)

    def get_rollback_status(self, rollback_id: str) -> Optional[RollbackStatus]:
        return self._statuses.get(rollback_id)

    # ========================================================================
    # Validation
    # ========================================================================

    async def validate_rollback(self, config: RollbackConfiguration) -> ValidationResult:
        if not config.migration_id:
            raise ValueError("migration_id is required")

        result = ValidationResult()
        known = await self.repository.list_migration_ids()
        if config.migration_id not in known:
            result.add_error("unknown_migration", f"No recorded state for migration {config.migration_id}")

        if not await self.target.can_connect():
            result.add_error("target_unreachable", "Cannot connect to the PostgreSQL target")

        if config.restore_mongo_data:
            if not config.backup_file:
                result.add_error("backup_required", "Restoring MongoDB data requires a backup file")
            if not config.mongo_connection_string or not config.mongo_database_name:
                result.add_error(
                    "mongo_settings_required",
                    "Restoring MongoDB data requires a MongoDB connection string and database name",
                )

        if config.backup_file:
            verification = await self.backup_service.verify_backup(config.backup_file, BackupType.MONGODB)
            if not verification.is_valid:
                result.add_error("backup_invalid", f"Backup failed verification: {verification.error_message}")

        if config.rollback_type == RollbackType.POINT_IN_TIME:
            if not config.rollback_point_id:
                result.add_error("rollback_point_required", "Point-in-time rollback needs a rollback point id")
            elif await self._find_point(config) is None:
                result.add_error("unknown_rollback_point", f"Rollback point {config.rollback_point_id} not found")

        if config.rollback_type == RollbackType.PARTIAL and config.partial.is_empty:
            result.add_error(
                "partial_scope_required",
                "Partial rollback needs collections, a date range or document ids",
            )
        return result

    # ========================================================================
    # Rollback
    # ========================================================================

    async def rollback(
        self,
        config: RollbackConfiguration,
        confirm: Optional[ConfirmCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RollbackResult:
        """
        Run the rollback described by ``config``.

        Args:
            config: What to roll back and how
            confirm: Called with a summary when confirmation is required;
                returning False cancels the rollback
            cancel_event: Shared cancellation signal for ``mongorestore``

        Returns:
            RollbackResult with every operation attempted
        """
        rollback_id = new_id()
        result = RollbackResult(
            rollback_id=rollback_id, is_success=False, state=RollbackState.INITIALIZING, dry_run=config.dry_run
        )
        self._set_status(rollback_id, RollbackState.VALIDATING, 5, "Validating rollback", result)
        logger.info(f"Starting {config.rollback_type.value} rollback {rollback_id} for {config.migration_id}")

        # 1. validation
        start = time.monotonic()
        validation = await self.validate_rollback(config)
        self._record(result, RollbackOperationType.VALIDATION, "Validate rollback configuration",
                     start, error=validation.error_message)
        if not validation.is_valid:
            return await self._finish(config, result, RollbackState.FAILED, validation.error_message)

        # 2. confirmation
        if config.require_confirmation and not config.dry_run:
            self._set_status(rollback_id, RollbackState.AWAITING_CONFIRMATION, 10, "Awaiting confirmation", result)
            start = time.monotonic()
            summary = self._describe(config)
            accepted = bool(confirm(summary)) if confirm is not None else False
            self._record(result, RollbackOperationType.CONFIRMATION, summary, start,
                         error=None if accepted else "Rollback not confirmed")
            if not accepted:
                return await self._finish(config, result, RollbackState.CANCELLED, "Rollback cancelled by user")

        self._set_status(rollback_id, RollbackState.RUNNING, 20, "Running rollback", result)

        # 3. backup verification
        if config.backup_file:
            if config.dry_run:
                self._plan(result, RollbackOperationType.BACKUP_VERIFICATION, f"Verify backup {config.backup_file}")
            else:
                start = time.monotonic()
                check = await self.backup_service.verify_backup(config.backup_file, BackupType.MONGODB)
                self._record(result, RollbackOperationType.BACKUP_VERIFICATION,
                             f"Verify backup {config.backup_file}", start, error=check.error_message)
                if not check.is_valid:
                    return await self._finish(config, result, RollbackState.FAILED, check.error_message)

        # 4. target tables
        dropped = await self._rollback_target(config, result)
        self._set_status(rollback_id, RollbackState.RUNNING, 60, "Target rollback finished", result)

        # 5. source restore
        if config.restore_mongo_data and config.rollback_type in (RollbackType.FULL, RollbackType.POINT_IN_TIME):
            await self._restore_mongo(config, result, cancel_event)

        if config.dry_run:
            self._plan(result, RollbackOperationType.INTEGRITY_CHECK, "Verify target state and backup checksum")
            self._plan(result, RollbackOperationType.CLEANUP, "Mark checkpoints rolled back")
            return await self._finish(config, result, RollbackState.COMPLETED, None)

        # 6. integrity
        self._set_status(rollback_id, RollbackState.VERIFYING, 85, "Verifying integrity", result)
        await self._verify_integrity(config, result, dropped)

        # 7. cleanup
        await self._cleanup(config, result)

        failed = [op for op in result.operations if not op.is_success]
        if failed:
            return await self._finish(
                config, result, RollbackState.FAILED,
                f"{len(failed)} rollback operation(s) failed: {failed[0].error_message}",
            )
        return await self._finish(config, result, RollbackState.COMPLETED, None)

    async def _rollback_target(self, config: RollbackConfiguration, result: RollbackResult) -> List[str]:
        """Drop or trim target tables; returns the tables dropped."""
        dropped: List[str] = []
        if config.rollback_type in (RollbackType.FULL, RollbackType.SCHEMA_ONLY):
            if config.rollback_type == RollbackType.FULL and not config.drop_tables:
                return dropped
            for table in list(TARGET_SCHEMA) + EXTRA_ROLLBACK_TABLES:
                description = f"DROP TABLE IF EXISTS {table} CASCADE"
                if config.dry_run:
                    self._plan(result, RollbackOperationType.DROP_TABLE, description)
                    continue
                start = time.monotonic()
                try:
                    if await self.target.drop_table(table):
                        result.statistics.tables_dropped += 1
                    dropped.append(table)
                    self._record(result, RollbackOperationType.DROP_TABLE, f"Dropped table: {table}", start)
                except MigrationError as e:
                    logger.warning(f"Failed to drop table {table}: {e}")
                    self._record(result, RollbackOperationType.DROP_TABLE,
                                 f"Failed to drop table: {table}", start, error=str(e))
            return dropped

        if config.rollback_type == RollbackType.PARTIAL:
            collections = config.partial.collections or list(COLLECTION_TABLES)
            for collection in collections:
                await self._delete_rows(config, result, collection, config.partial)
            return dropped

        point = await self._find_point(config)
        checkpoints = await self.repository.list_checkpoints(config.migration_id)
        later = sorted({c.collection_name for c in checkpoints} - set(point.migrated_collections))
        logger.info(f"Rolling back to point {point.sequence}: clearing {later or 'nothing'}")
        for collection in later:
            await self._delete_rows(config, result, collection, PartialRollbackOptions())
        return dropped

    async def _delete_rows(
        self,
        config: RollbackConfiguration,
        result: RollbackResult,
        collection: str,
        scope: PartialRollbackOptions,
    ) -> None:
        table = table_for_collection(collection) or collection
        if table not in TARGET_SCHEMA:
            self._record(result, RollbackOperationType.DELETE_ROWS, f"Unknown collection: {collection}",
                         time.monotonic(), error=f"No target table for {collection}")
            return

        conditions: List[str] = []
        args: List[Any] = []
        if scope.start_date or scope.end_date:
            if "mills" not in TARGET_SCHEMA[table]:
                self._record(result, RollbackOperationType.DELETE_ROWS,
                             f"Skipped {table}: no timestamp column for a date range", time.monotonic())
                return
            if scope.start_date:
                args.append(int(scope.start_date.timestamp() * 1000))
                conditions.append(f"mills >= ${len(args)}")
            if scope.end_date:
                args.append(int(scope.end_date.timestamp() * 1000))
                conditions.append(f"mills <= ${len(args)}")
        if scope.document_ids:
            args.append(list(scope.document_ids))
            conditions.append(f"original_id = ANY(${len(args)}::text[])")
        where = " AND ".join(conditions) or "TRUE"

        description = f"DELETE FROM {table} WHERE {where}"
        if config.dry_run:
            self._plan(result, RollbackOperationType.DELETE_ROWS, description)
            return
        start = time.monotonic()
        try:
            deleted = await self.target.delete_rows(table, where, args)
            result.statistics.rows_deleted += deleted
            self._record(result, RollbackOperationType.DELETE_ROWS,
                         f"Rolled back {deleted} records from {table}", start, details={"rows": deleted})
        except MigrationError as e:
            logger.error(f"Failed to roll back {table}: {e}")
            self._record(result, RollbackOperationType.DELETE_ROWS,
                         f"Failed to roll back {table}", start, error=str(e))

    async def _restore_mongo(
        self, config: RollbackConfiguration, result: RollbackResult, cancel_event: Optional[asyncio.Event]
    ) -> None:
        backup_file = config.backup_file
        metadata = self.backup_service.read_metadata(backup_file)
        args = [
            f"--uri={config.mongo_connection_string}",
            f"--nsInclude={config.mongo_database_name}.*",
            f"--archive={backup_file}",
        ]
        if backup_file.endswith(".gz") or (metadata and metadata.compressed):
            args.append("--gzip")
        args.append("--drop")

        if config.dry_run:
            self._plan(result, RollbackOperationType.RESTORE_DATA, f"{self.mongorestore} {' '.join(args[1:])}")
            return

        start = time.monotonic()
        try:
            process = await self.runner.run(
                self.mongorestore, args, timeout=config.timeout_seconds, cancel_event=cancel_event
            )
        except FileNotFoundError:
            self._record(result, RollbackOperationType.RESTORE_DATA, "Restore MongoDB data from backup",
                         start, error=f"{self.mongorestore} not found")
            return

        if not process.success:
            if process.timed_out:
                error = f"{self.mongorestore} timed out after {config.timeout_seconds}s"
            elif process.cancelled:
                error = f"{self.mongorestore} was cancelled"
            else:
                error = f"{self.mongorestore} exited with code {process.return_code}: {process.stderr.strip()[-2000:]}"
            self._record(result, RollbackOperationType.RESTORE_DATA,
                         "Failed to restore MongoDB data from backup", start, error=error)
            return

        restored = sum(int(n) for n in _RESTORED_RE.findall(process.stderr + process.stdout))
        result.statistics.documents_restored += restored
        result.statistics.data_size_restored += _file_size(backup_file)
        self._record(result, RollbackOperationType.RESTORE_DATA, "Restored MongoDB data from backup",
                     start, details={"documents_restored": restored})

    async def _verify_integrity(
        self, config: RollbackConfiguration, result: RollbackResult, dropped: List[str]
    ) -> None:
        start = time.monotonic()
        problems: List[str] = []
        if not await self.target.can_connect():
            problems.append("Cannot connect to PostgreSQL after rollback")
        elif dropped:
            remaining = set(await self.target.list_tables()) & set(dropped)
            if remaining:
                problems.append(f"Tables still present: {', '.join(sorted(remaining))}")
        if config.backup_file:
            check = await self.backup_service.verify_backup(config.backup_file, BackupType.MONGODB)
            if not check.is_valid:
                problems.append(f"Backup checksum no longer verifies: {check.error_message}")

        result.integrity_verified = not problems
        result.integrity_details = "; ".join(problems) if problems else "Target state and backup checksum verified"
        self._record(result, RollbackOperationType.INTEGRITY_CHECK, "Verify integrity after rollback",
                     start, error=result.integrity_details if problems else None)

    async def _cleanup(self, config: RollbackConfiguration, result: RollbackResult) -> None:
        start = time.monotonic()
        if config.rollback_type == RollbackType.PARTIAL:
            self._record(result, RollbackOperationType.CLEANUP, "Partial rollback keeps checkpoints", start)
            return
        checkpoints = await self.repository.list_checkpoints(config.migration_id)
        marked = 0
        for checkpoint in checkpoints:
            if checkpoint.status != CheckpointStatus.ROLLED_BACK:
                checkpoint.status = CheckpointStatus.ROLLED_BACK
                await self.repository.save_checkpoint(checkpoint)
                marked += 1
        self._record(result, RollbackOperationType.CLEANUP,
                     f"Marked {marked} checkpoints rolled back", start, details={"checkpoints": marked})

    async def _finish(
        self,
        config: RollbackConfiguration,
        result: RollbackResult,
        state: RollbackState,
        error: Optional[str],
    ) -> RollbackResult:
        result.state = state
        result.is_success = state == RollbackState.COMPLETED
        result.error_message = error
        result.statistics.end_time = utc_now()
        if result.integrity_details is None and not result.is_success:
            result.integrity_details = "Rollback did not reach integrity verification"
        self._set_status(result.rollback_id, state, 100, state.value, result)

        level = LogLevel.INFO if result.is_success else LogLevel.ERROR
        message = (
            f"Rollback {result.rollback_id} ({config.rollback_type.value}"
            f"{', dry run' if config.dry_run else ''}) {state.value}"
        )
        if error:
            message += f": {error}"
            logger.error(message)
        else:
            logger.info(message)
        if config.migration_id in await self.repository.list_migration_ids():
            await self.repository.log(
                config.migration_id,
                level,
                message,
                component=COMPONENT,
                rollback_id=result.rollback_id,
                rollback_type=config.rollback_type.value,
                tables_dropped=result.statistics.tables_dropped,
                rows_deleted=result.statistics.rows_deleted,
            )
        return result

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _find_point(self, config: RollbackConfiguration) -> Optional[RollbackPoint]:
        for point in await self.repository.list_rollback_points(config.migration_id):
            if point.point_id == config.rollback_point_id:
                return point
        return None

    def _set_status(
        self, rollback_id: str, state: RollbackState, progress: float, operation: str, result: RollbackResult
    ) -> None:
        self._statuses[rollback_id] = RollbackStatus(
            rollback_id=rollback_id,
            state=state,
            progress_percentage=progress,
            current_operation=operation,
            statistics=result.statistics,
        )

    @staticmethod
    def _record(
        result: RollbackResult,
        operation_type: RollbackOperationType,
        description: str,
        start: float,
        error: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        result.operations.append(RollbackOperation(
            operation_type=operation_type,
            description=description,
            is_success=error is None,
            error_message=error,
            duration_seconds=time.monotonic() - start,
            details=details or {},
        ))

    @staticmethod
    def _plan(result: RollbackResult, operation_type: RollbackOperationType, description: str) -> None:
        result.operations.append(RollbackOperation(
            operation_type=operation_type, description=description, planned=True
        ))

    @staticmethod
    def _describe(config: RollbackConfiguration) -> str:
        parts = [f"{config.rollback_type.value} rollback of migration {config.migration_id}"]
        if config.rollback_type in (RollbackType.FULL, RollbackType.SCHEMA_ONLY) and config.drop_tables:
            parts.append("drops all migrated tables")
        if config.restore_mongo_data:
            parts.append(f"restores MongoDB from {config.backup_file}")
        return "; ".join(parts)


def _file_size(path: str) -> int:
    try:
        return os.path.getsize(path)
    except OSError:
        return 0
