"""
Migration Engine
================

Streams every supported MongoDB collection into its PostgreSQL table in
``_id`` order, checkpointing the cursor so a cancelled, crashed or failed run
can be resumed exactly where its last committed batch ended.

Usage:
    engine = MigrationEngine(JsonFileRepository(".migration_state"))
    result = await engine.migrate(config)
    if not result.is_success and result.checkpoint_id:
        result = await engine.resume(config, result.checkpoint_id)

Collections run concurrently (bounded by ``max_degree_of_parallelism``);
batches inside one collection are strictly sequential because a checkpoint
only records the last committed position.
"""

import asyncio
import gc
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..errors import (
    ConnectivityError,
    DuplicateKeyError,
    MigrationCancelledError,
    MigrationError,
    TransformationError,
    error_category,
)
from ..config.config import MigrationEngineConfig
from .backup import BackupConfiguration, BackupService
from .index_models import IndexCreationResult
from .indexes import IndexOptimizationService
from .introspection import SchemaIntrospectionService
from .models import (
    CheckpointStatus,
    CollectionStatistics,
    LogLevel,
    MigrationCheckpoint,
    MigrationResult,
    MigrationState,
    MigrationStatistics,
    MigrationStatus,
    RollbackPoint,
    RollbackPointState,
    ValidationResult,
    new_id,
    utc_now,
)
from .recovery import classify_error
from .repository import MigrationRepository
from .resources import InFlightTracker, MemoryMonitor
from .retry import retry_async
from .rollback import RollbackConfiguration, RollbackService, RollbackType
from .stores import (
    DocumentSource,
    MongoDocumentSource,
    PostgresTarget,
    RelationalTarget,
    decode_cursor_id,
    encode_cursor_id,
)
from .transform import DataTransformationService
from .validation import ValidationService

logger = logging.getLogger(__name__)

COMPONENT = "engine"

ProgressCallback = Callable[[str, CollectionStatistics], None]


class _CollectionFailure(Exception):
    """Carries the original error out of a collection task after its checkpoint was flushed."""

    def __init__(self, collection: str, checkpoint_id: str, error: BaseException):
        super().__init__(str(error))
        self.collection = collection
        self.checkpoint_id = checkpoint_id
        self.error = error


@dataclass
class _Run:
    """State of one in-progress migrate/resume call."""
    migration_id: str
    config: MigrationEngineConfig
    source: DocumentSource
    target: RelationalTarget
    transformation: DataTransformationService
    monitor: MemoryMonitor
    rollback_service: RollbackService
    resuming: bool = False
    state: MigrationState = MigrationState.INITIALIZING
    current_operation: str = "Initializing"
    statistics: MigrationStatistics = field(default_factory=MigrationStatistics)
    checkpoints: Dict[str, MigrationCheckpoint] = field(default_factory=dict)
    completed: List[str] = field(default_factory=list)
    rollback_points: List[RollbackPoint] = field(default_factory=list)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    in_flight: InFlightTracker = field(default_factory=InFlightTracker)
    point_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    backup_file: Optional[str] = None
    rollback_id: Optional[str] = None


class MigrationEngine:
    """
    Orchestrates validation, backup, schema, data transfer and indexes.

    Args:
        repository: Checkpoint, log and rollback-point store
        source: Document source (defaults to a motor client per run)
        target: Relational target (defaults to an asyncpg pool per run)
        backup_service: Used for the optional pre-migration backup
        memory_probe: Returns current memory usage in MB (defaults to psutil RSS)
        progress_callback: Called after every batch with the collection's statistics
        sleep: Awaitable sleep used by retries and throttling
    """

    def __init__(
        self,
        repository: MigrationRepository,
        source: Optional[DocumentSource] = None,
        target: Optional[RelationalTarget] = None,
        backup_service: Optional[BackupService] = None,
        memory_probe: Optional[Callable[[], float]] = None,
        progress_callback: Optional[ProgressCallback] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.repository = repository
        self.source = source
        self.target = target
        self.backup_service = backup_service or BackupService(source=source)
        self.memory_probe = memory_probe
        self.progress_callback = progress_callback
        self.sleep = sleep
        self._runs: Dict[str, _Run] = {}
        self._recovery_statuses: Dict[str, Any] = {}

    # ========================================================================
    # Public API
    # ========================================================================

    async def migrate(self, config: MigrationEngineConfig) -> MigrationResult:
        """Run a new migration (or continue ``config.migration_id`` from scratch)."""
        migration_id = config.migration_id or new_id()
        return await self._execute(config.copy(migration_id=migration_id), resuming=False)

    async def resume(self, config: MigrationEngineConfig, checkpoint_id: str) -> MigrationResult:
        """
        Continue the migration that owns ``checkpoint_id``.

        Completed collections are skipped; the others restart after their
        checkpointed cursor. Tables and indexes are never dropped on resume.
        """
        if not checkpoint_id:
            raise ValueError("checkpoint_id is required")
        checkpoint = await self.repository.get_checkpoint_by_id(checkpoint_id)
        if checkpoint is None:
            return MigrationResult(
                migration_id=config.migration_id or "",
                is_success=False,
                state=MigrationState.FAILED,
                error_message=f"Checkpoint not found: {checkpoint_id}",
            )
        if checkpoint.status == CheckpointStatus.ROLLED_BACK:
            return MigrationResult(
                migration_id=checkpoint.migration_id,
                is_success=False,
                state=MigrationState.FAILED,
                error_message=f"Migration {checkpoint.migration_id} was rolled back and cannot be resumed",
            )

        changes: Dict[str, Any] = {"migration_id": checkpoint.migration_id, "drop_existing_tables": False}
        stored = checkpoint.checkpoint_data
        if config.start_date is None and stored.get("start_date"):
            changes["start_date"] = stored["start_date"]
        if config.end_date is None and stored.get("end_date"):
            changes["end_date"] = stored["end_date"]
        resumed = config.copy(**changes)
        resumed.index_optimization.drop_existing_indexes = False
        resumed.backup.create_pre_migration_backup = False
        logger.info(f"Resuming migration {checkpoint.migration_id} from checkpoint {checkpoint_id}")
        return await self._execute(resumed, resuming=True)

    def cancel(self, migration_id: Optional[str] = None) -> None:
        """Request cancellation; running collections stop after their current batch."""
        for run in self._runs.values():
            if migration_id is None or run.migration_id == migration_id:
                logger.warning(f"Cancellation requested for migration {run.migration_id}")
                run.cancel_event.set()

    def validate(self, config: MigrationEngineConfig) -> ValidationResult:
        """Check connection strings and engine parameters without touching either store."""
        result = ValidationResult()
        result.merge(ValidationService.validate_connection_string(config.mongo_connection_string, "mongo"))
        result.merge(ValidationService.validate_connection_string(config.postgres_connection_string, "postgres"))
        result.merge(ValidationService.validate_parameters(config))
        return result

    async def validate_pre_migration(self, config: MigrationEngineConfig) -> ValidationResult:
        """Run every enabled validation pass against both stores."""
        source, target = self._open(config)
        try:
            transformation = DataTransformationService(config.transformation)
            result = ValidationResult()
            if not config.skip_connection_test:
                result.merge(await self._check_connections(source, target))
                if not result.is_valid:
                    return result
            collections = await self._resolve_collections(config, source, transformation)
            validator = ValidationService(transformation, config.validation)
            return result.merge(await validator.validate_all(config, source, target, collections))
        finally:
            await self._close(source, target)

    async def get_status(self, migration_id: str) -> Optional[MigrationStatus]:
        """
        Progress snapshot for ``migration_id``.

        Live runs report in-memory counters; finished or interrupted runs are
        rebuilt from their persisted checkpoints. Returns None for unknown ids.
        """
        run = self._runs.get(migration_id)
        if run is not None:
            checkpoints = list(run.checkpoints.values())
            status = MigrationStatus(
                migration_id=migration_id,
                state=run.state,
                progress_percentage=self._progress(checkpoints),
                current_operation=run.current_operation,
                statistics=run.statistics,
                estimated_time_remaining_seconds=self._eta(run),
                checkpoints=checkpoints,
            )
            if run.rollback_id:
                status.rollback_status = run.rollback_service.get_rollback_status(run.rollback_id)
            status.recovery_status = self._recovery_statuses.get(migration_id)
            return status

        checkpoints = await self.repository.list_checkpoints(migration_id)
        if not checkpoints:
            return None
        statuses = {c.status for c in checkpoints}
        if statuses == {CheckpointStatus.COMPLETED}:
            state = MigrationState.COMPLETED
        elif CheckpointStatus.FAILED in statuses:
            state = MigrationState.FAILED
        elif statuses & {CheckpointStatus.CANCELLED, CheckpointStatus.ROLLED_BACK}:
            state = MigrationState.CANCELLED
        else:
            state = MigrationState.PAUSED
        statistics = MigrationStatistics()
        for checkpoint in checkpoints:
            statistics.collection_stats[checkpoint.collection_name] = CollectionStatistics(
                collection_name=checkpoint.collection_name,
                total_documents=checkpoint.total_documents,
                documents_processed=checkpoint.documents_processed,
                completed=checkpoint.is_finished,
            )
        return MigrationStatus(
            migration_id=migration_id,
            state=state,
            progress_percentage=self._progress(checkpoints),
            current_operation=None,
            statistics=statistics,
            recovery_status=self._recovery_statuses.get(migration_id),
            checkpoints=checkpoints,
        )

    def report_recovery_status(self, migration_id: str, status: Any) -> None:
        """Attach a recovery's status so ``get_status`` can nest it."""
        self._recovery_statuses[migration_id] = status

    # ========================================================================
    # Orchestration
    # ========================================================================

    async def _execute(self, config: MigrationEngineConfig, resuming: bool) -> MigrationResult:
        migration_id = config.migration_id
        source, target = self._open(config)
        run = _Run(
            migration_id=migration_id,
            config=config,
            source=source,
            target=target,
            transformation=DataTransformationService(config.transformation),
            monitor=MemoryMonitor(config.max_memory_mb, config.memory_check_interval, self.memory_probe),
            rollback_service=RollbackService(target, self.repository, self.backup_service),
            resuming=resuming,
        )
        self._runs[migration_id] = run
        result = MigrationResult(
            migration_id=migration_id, is_success=False, state=MigrationState.INITIALIZING,
            statistics=run.statistics,
        )
        logger.info(f"Starting migration {migration_id} ({'resume' if resuming else 'new run'})")
        try:
            await self._run_phases(run, result)
        except asyncio.CancelledError:
            run.state = MigrationState.CANCELLED
            logger.warning(f"Migration {migration_id} task was cancelled")
            raise
        except Exception as e:
            logger.exception(f"Migration {migration_id} failed unexpectedly")
            await self._fail(run, result, f"Migration failed: {e}", e)
        finally:
            run.statistics.end_time = utc_now()
            run.statistics.peak_memory_mb = run.monitor.peak_mb
            result.state = run.state
            result.rollback_points = run.rollback_points
            self._runs.pop(migration_id, None)
            await self._close(source, target)
        return result

    async def _run_phases(self, run: _Run, result: MigrationResult) -> None:
        config = run.config

        # 1. validation
        run.state = MigrationState.RUNNING
        run.current_operation = "Validating"
        if not config.skip_connection_test:
            connection_check = await self._check_connections(run.source, run.target)
            if not connection_check.is_valid:
                await self._fail(run, result, connection_check.error_message,
                                 ConnectivityError("store", connection_check.error_message or ""))
                return
        collections = await self._resolve_collections(config, run.source, run.transformation)

        if not config.skip_validation:
            validator = ValidationService(run.transformation, config.validation)
            validation = await validator.validate_all(config, run.source, run.target, collections)
            result.validation = validation
            for conflict in validation.conflicts:
                logger.warning(f"Conflict in {conflict.collection}: {conflict.description}")
            if validation.conflicts:
                await self._log(run, LogLevel.WARNING, f"{len(validation.conflicts)} validation conflicts detected",
                                conflicts=[c.description for c in validation.conflicts])
            if not validation.is_valid:
                await self._fail(run, result, f"Validation failed: {validation.error_message}",
                                 MigrationError(validation.error_message or "validation failed"),
                                 category="schema_validation")
                return

        # 2. backup
        if config.backup.create_pre_migration_backup and not run.resuming:
            run.current_operation = "Creating pre-migration backup"
            backup = await self._pre_migration_backup(run, collections)
            result.pre_migration_backup = backup
            if not backup.is_success:
                await self._fail(run, result, f"Pre-migration backup failed: {backup.error_message}",
                                 MigrationError(backup.error_message or "backup failed"), category="subprocess")
                return

        # 3. schema
        run.current_operation = "Preparing target schema"
        tables = sorted({run.transformation.table_for(c) for c in collections})
        await run.target.ensure_schema(tables, drop_existing=config.drop_existing_tables and not run.resuming)
        if config.rollback.create_rollback_points and not run.resuming:
            await self._create_rollback_point(run, RollbackPointState.SCHEMA_CREATED, "Target schema created")

        # 4. indexes before data
        index_service = IndexOptimizationService(config.index_optimization)
        index_options = config.index_optimization
        if index_options.drop_existing_indexes and not run.resuming:
            for table in tables:
                await index_service.drop_existing_indexes(table, run.target)
        if not index_options.skip_index_creation and not index_options.defer_index_creation:
            run.current_operation = "Creating indexes"
            result.index_results.extend(await self._create_indexes(run, index_service, collections))

        # 5-12. data
        run.current_operation = "Migrating data"
        for collection in collections:
            run.statistics.collection_stats[collection] = CollectionStatistics(collection_name=collection)
        semaphore = asyncio.Semaphore(max(1, config.max_degree_of_parallelism))

        async def bounded(collection: str) -> None:
            async with semaphore:
                await self._migrate_collection(run, collection)

        outcomes = await asyncio.gather(*(bounded(c) for c in collections), return_exceptions=True)
        cancelled = [o for o in outcomes if isinstance(o, _CollectionFailure)
                     and isinstance(o.error, MigrationCancelledError)]
        failures = [o for o in outcomes if isinstance(o, _CollectionFailure)
                    and not isinstance(o.error, MigrationCancelledError)]
        unexpected = [o for o in outcomes if isinstance(o, BaseException) and not isinstance(o, _CollectionFailure)]
        if unexpected:
            raise unexpected[0]

        if cancelled:
            run.state = MigrationState.CANCELLED
            result.checkpoint_id = cancelled[0].checkpoint_id
            result.error_message = "Migration cancelled"
            await self._log(run, LogLevel.WARNING, "Migration cancelled; checkpoints flushed",
                            error_category="cancelled", collections=[c.collection for c in cancelled])
            logger.warning(f"Migration {run.migration_id} cancelled")
            return
        if failures:
            first = failures[0]
            result.checkpoint_id = first.checkpoint_id
            await self._fail(run, result, f"Migration of {first.collection} failed: {first.error}",
                             first.error, logged=True)
            return

        # 13. deferred indexes and verification
        if not index_options.skip_index_creation and index_options.defer_index_creation:
            run.current_operation = "Creating deferred indexes"
            result.index_results.extend(await self._create_indexes(run, index_service, collections))

        if config.verify_after_migration:
            run.current_operation = "Verifying"
            validator = ValidationService(run.transformation, config.validation)
            accepted = {
                name: stats.accepted_skips + stats.documents_failed
                for name, stats in run.statistics.collection_stats.items()
            }
            verification = await validator.verify_migration(
                run.source, run.target, collections, config.start_date, config.end_date, accepted
            )
            result.verification = verification
            if not verification.is_consistent:
                message = f"Verification failed for: {', '.join(verification.inconsistent_collections)}"
                await self._fail(run, result, message, MigrationError(message), category="data_corruption")
                return

        if config.rollback.create_rollback_points:
            await self._create_rollback_point(run, RollbackPointState.POST_MIGRATION, "Migration completed")

        run.state = MigrationState.COMPLETED
        run.current_operation = "Completed"
        result.is_success = True
        stats = run.statistics
        message = (
            f"Migration completed: {stats.total_documents_processed} processed, "
            f"{stats.total_documents_migrated} migrated, {stats.total_skipped_duplicates} duplicates skipped, "
            f"{stats.total_documents_failed} failed"
        )
        logger.info(message)
        await self._log(run, LogLevel.INFO, message, statistics=stats.to_dict())

    # ========================================================================
    # Collection loop
    # ========================================================================

    async def _migrate_collection(self, run: _Run, collection: str) -> None:
        config = run.config
        table = run.transformation.table_for(collection)
        stats = run.statistics.collection_stats.setdefault(
            collection, CollectionStatistics(collection_name=collection)
        )
        checkpoint = await self.repository.get_checkpoint(run.migration_id, collection)
        if checkpoint is not None and checkpoint.is_finished:
            logger.info(f"Skipping {collection}: already completed in {run.migration_id}")
            stats.total_documents = checkpoint.total_documents
            stats.completed = True
            run.checkpoints[collection] = checkpoint
            return
        if checkpoint is None:
            checkpoint = MigrationCheckpoint(migration_id=run.migration_id, collection_name=collection)
        run.checkpoints[collection] = checkpoint

        started = time.monotonic()
        skip_ids = set(config.skip_document_ids)
        after_id = decode_cursor_id(checkpoint.last_processed_id, checkpoint.checkpoint_data.get("id_type"))
        batch_number = 0
        try:
            stats.total_documents = await retry_async(
                lambda: run.source.count_documents(collection, config.start_date, config.end_date),
                config.retry, f"count {collection}", sleep=self.sleep,
            )
            checkpoint.total_documents = stats.total_documents
            checkpoint.status = CheckpointStatus.RUNNING
            checkpoint.checkpoint_data.update(
                start_date=config.start_date.isoformat() if config.start_date else None,
                end_date=config.end_date.isoformat() if config.end_date else None,
                batch_size=config.batch_size,
            )
            await self.repository.save_checkpoint(checkpoint)
            logger.info(
                f"Migrating {collection} -> {table}: {stats.total_documents} documents"
                + (f", resuming after {checkpoint.last_processed_id}" if after_id is not None else "")
            )

            while True:
                if run.cancel_event.is_set():
                    raise MigrationCancelledError(f"Migration of {collection} cancelled")

                batch = await retry_async(
                    lambda: run.source.fetch_batch(
                        collection, after_id, config.batch_size, config.start_date, config.end_date
                    ),
                    config.retry, f"fetch {collection}", sleep=self.sleep,
                )
                if not batch:
                    break
                batch_number += 1

                records, failed_ids = self._transform_batch(run, collection, batch, skip_ids, stats)
                if failed_ids and not config.continue_on_error:
                    raise _TransformBatchError(collection, failed_ids)

                run.in_flight.begin()
                try:
                    written = await retry_async(
                        lambda: run.target.insert_batch(table, records, config.skip_duplicates),
                        config.retry, f"write {table}", sleep=self.sleep,
                    )
                finally:
                    run.in_flight.end()
                if written.failed:
                    stats.documents_failed += written.failed
                    failed_ids.extend(written.failed_ids)
                    if not config.continue_on_error:
                        raise _WriteBatchError(table, written.failed_ids, written.errors)

                stats.documents_processed += len(batch)
                stats.documents_migrated += written.inserted
                stats.skipped_duplicates += written.skipped_duplicates
                after_id = batch[-1]["_id"]
                checkpoint.documents_processed += len(batch)
                checkpoint.last_processed_id, checkpoint.checkpoint_data["id_type"] = encode_cursor_id(after_id)

                if failed_ids:
                    await self._log(
                        run, LogLevel.WARNING, f"{len(failed_ids)} documents failed in {collection}",
                        collection=collection, failed_document_ids=failed_ids,
                    )
                if config.enable_checkpointing and batch_number % max(1, config.checkpoint_interval) == 0:
                    await self.repository.save_checkpoint(checkpoint)
                if run.monitor.should_check(batch_number):
                    await self._throttle_if_needed(run)
                if self.progress_callback is not None:
                    self.progress_callback(collection, stats)

            checkpoint.status = CheckpointStatus.COMPLETED
            await self.repository.save_checkpoint(checkpoint)
            stats.completed = True
            stats.duration_seconds = time.monotonic() - started
            logger.info(
                f"Completed {collection}: {stats.documents_migrated} migrated, "
                f"{stats.skipped_duplicates} duplicates, {stats.documents_failed} failed "
                f"in {stats.duration_seconds:.1f}s"
            )
            await self._collection_completed(run, collection)

        except MigrationCancelledError as e:
            stats.duration_seconds = time.monotonic() - started
            await self._flush(checkpoint, CheckpointStatus.CANCELLED)
            raise _CollectionFailure(collection, checkpoint.checkpoint_id, e)
        except asyncio.CancelledError:
            await self._flush(checkpoint, CheckpointStatus.CANCELLED)
            raise
        except Exception as e:
            stats.duration_seconds = time.monotonic() - started
            await self._flush(checkpoint, CheckpointStatus.FAILED)
            metadata: Dict[str, Any] = {"collection": collection, "checkpoint_id": checkpoint.checkpoint_id}
            if isinstance(e, (_TransformBatchError, _WriteBatchError)):
                metadata["failed_document_ids"] = e.failed_ids
            message = f"Migration of {collection} failed after {checkpoint.documents_processed} documents: {e}"
            logger.error(message)
            await self._log(run, LogLevel.ERROR, message, exception=e, error_category=error_category(e), **metadata)
            raise _CollectionFailure(collection, checkpoint.checkpoint_id, e)

    def _transform_batch(
        self,
        run: _Run,
        collection: str,
        batch: List[Dict[str, Any]],
        skip_ids: set,
        stats: CollectionStatistics,
    ):
        records = []
        failed_ids: List[str] = []
        for document in batch:
            document_id = str(document.get("_id"))
            if document_id in skip_ids:
                stats.accepted_skips += 1
                continue
            transformed = run.transformation.transform(collection, document)
            if transformed.is_success:
                records.append(transformed.record)
            else:
                stats.documents_failed += 1
                failed_ids.append(document_id)
                logger.debug(f"Failed to transform {collection}/{document_id}: {'; '.join(transformed.errors)}")
        return records, failed_ids

    async def _throttle_if_needed(self, run: _Run) -> None:
        usage = run.monitor.sample()
        if not run.monitor.is_over_limit(usage):
            return
        run.monitor.throttle_count += 1
        logger.warning(
            f"Memory usage {usage:.0f} MB exceeds {run.config.max_memory_mb} MB; "
            f"waiting for {run.in_flight.count} in-flight batches"
        )
        await run.in_flight.wait_idle()
        gc.collect()
        await self.sleep(run.config.memory_throttle_delay_seconds)

    async def _flush(self, checkpoint: MigrationCheckpoint, status: CheckpointStatus) -> None:
        checkpoint.status = status
        await self.repository.save_checkpoint(checkpoint)
        logger.info(
            f"Checkpoint {checkpoint.collection_name} flushed as {status.value} "
            f"at {checkpoint.documents_processed} documents"
        )

    async def _collection_completed(self, run: _Run, collection: str) -> None:
        rollback_options = run.config.rollback
        async with run.point_lock:
            run.completed.append(collection)
            due = len(run.completed) % max(1, rollback_options.rollback_point_interval) == 0
        if rollback_options.create_rollback_points and due:
            await self._create_rollback_point(
                run, RollbackPointState.DATA_MIGRATION, f"Collections migrated: {', '.join(run.completed)}"
            )

    async def _create_rollback_point(self, run: _Run, state: RollbackPointState, description: str) -> None:
        async with run.point_lock:
            point = await run.rollback_service.create_rollback_point(
                run.migration_id,
                description,
                state=state,
                migrated_collections=list(run.completed),
                statistics=run.statistics.to_dict(),
                backup_file_path=run.backup_file,
            )
        run.rollback_points.append(point)

    # ========================================================================
    # Phases
    # ========================================================================

    async def _pre_migration_backup(self, run: _Run, collections: List[str]):
        config = run.config
        backup = await self.backup_service.create_mongo_backup(
            BackupConfiguration(
                connection_string=config.mongo_connection_string,
                database_name=config.mongo_database_name,
                output_directory=config.backup.backup_directory,
                compress=config.backup.compress,
                collections=collections,
            ),
            run.cancel_event,
            source=run.source,
        )
        if backup.is_success and config.backup.verify_backup_integrity:
            check = await self.backup_service.verify_backup(backup.backup_file_path, backup.backup_type)
            if not check.is_valid:
                backup.is_success = False
                backup.error_message = f"Backup verification failed: {check.error_message}"
        if backup.is_success:
            run.backup_file = backup.backup_file_path
            if config.rollback.create_rollback_points:
                await self._create_rollback_point(run, RollbackPointState.PRE_MIGRATION, "Pre-migration backup")
        return backup

    async def _create_indexes(
        self, run: _Run, index_service: IndexOptimizationService, collections: List[str]
    ) -> List[IndexCreationResult]:
        introspection = SchemaIntrospectionService(run.source, run.config.validation.sample_size)
        analyses = [await introspection.build_index_analysis(c) for c in collections]
        strategies = index_service.analyze_and_recommend(analyses)
        results = await index_service.create_indexes(strategies, run.target)
        failed = [r for r in results if not r.is_success]
        if failed:
            await self._log(run, LogLevel.WARNING, f"{len(failed)} indexes failed to create",
                            indexes=[r.index_name for r in failed])
        return results

    async def _fail(
        self,
        run: _Run,
        result: MigrationResult,
        message: str,
        error: BaseException,
        category: Optional[str] = None,
        logged: bool = False,
    ) -> None:
        run.state = MigrationState.FAILED
        run.current_operation = "Failed"
        result.is_success = False
        result.error_message = message
        category = category or error_category(error)
        if not logged:
            logger.error(message)
            await self._log(run, LogLevel.ERROR, message, exception=error, error_category=category)

        rollback_options = run.config.rollback
        if rollback_options.enable_auto_rollback:
            failure = classify_error(message, None, category)
            if failure.category.value in rollback_options.auto_rollback_triggers:
                await self._auto_rollback(run, result, failure.category.value)

    async def _auto_rollback(self, run: _Run, result: MigrationResult, reason: str) -> None:
        config = run.config
        logger.warning(f"Auto-rollback triggered for {run.migration_id} ({reason})")
        rollback = await run.rollback_service.rollback(RollbackConfiguration(
            migration_id=run.migration_id,
            postgres_connection_string=config.postgres_connection_string,
            mongo_connection_string=config.mongo_connection_string,
            mongo_database_name=config.mongo_database_name,
            rollback_type=RollbackType.FULL,
            backup_file=run.backup_file,
            restore_mongo_data=run.backup_file is not None,
            require_confirmation=False,
        ))
        run.rollback_id = rollback.rollback_id
        result.rollback_result = rollback
        if not rollback.is_success:
            logger.error(f"Auto-rollback failed: {rollback.error_message}")

    # ========================================================================
    # Helpers
    # ========================================================================

    def _open(self, config: MigrationEngineConfig):
        source = self.source or MongoDocumentSource(config.mongo_connection_string, config.mongo_database_name)
        target = self.target or PostgresTarget(config.postgres_connection_string)
        return source, target

    async def _close(self, source: DocumentSource, target: RelationalTarget) -> None:
        if source is not self.source:
            await source.close()
        if target is not self.target:
            await target.close()

    @staticmethod
    async def _check_connections(source: DocumentSource, target: RelationalTarget) -> ValidationResult:
        result = ValidationResult()
        try:
            await source.ping()
        except MigrationError as e:
            result.add_error("source_unreachable", f"Cannot connect to MongoDB: {e}")
        if not await target.can_connect():
            result.add_error("target_unreachable", "Cannot connect to PostgreSQL")
        return result

    @staticmethod
    async def _resolve_collections(
        config: MigrationEngineConfig, source: DocumentSource, transformation: DataTransformationService
    ) -> List[str]:
        """(requested or all) that exist in the source and have a transformer."""
        existing = await source.list_collections()
        requested = config.collections or existing
        missing = [c for c in requested if c not in existing]
        if missing:
            logger.warning(f"Requested collections not found in source: {', '.join(missing)}")
        unsupported = [c for c in requested if c in existing and not transformation.is_supported(c)]
        if unsupported:
            logger.info(f"Skipping unsupported collections: {', '.join(unsupported)}")
        return [c for c in requested if c in existing and transformation.is_supported(c)]

    async def _log(
        self,
        run: _Run,
        level: LogLevel,
        message: str,
        exception: Optional[BaseException] = None,
        **metadata: Any,
    ) -> None:
        await self.repository.log(run.migration_id, level, message, component=COMPONENT,
                                  exception=exception, **metadata)

    @staticmethod
    def _progress(checkpoints: List[MigrationCheckpoint]) -> float:
        total = sum(c.total_documents for c in checkpoints)
        if not total:
            return 100.0 if checkpoints and all(c.is_finished for c in checkpoints) else 0.0
        processed = sum(min(c.documents_processed, c.total_documents) for c in checkpoints)
        return round(100.0 * processed / total, 2)

    @staticmethod
    def _eta(run: _Run) -> Optional[float]:
        processed = run.statistics.total_documents_processed
        if not processed:
            return None
        remaining = sum(
            max(0, c.total_documents - c.documents_processed) for c in run.checkpoints.values()
        )
        return run.statistics.duration_seconds / processed * remaining


class _TransformBatchError(TransformationError):
    def __init__(self, collection: str, failed_ids: List[str]):
        super().__init__(
            f"{len(failed_ids)} documents in {collection} could not be transformed",
            {"collection": collection, "failed_document_ids": failed_ids[:20]},
        )
        self.failed_ids = failed_ids


class _WriteBatchError(DuplicateKeyError):
    def __init__(self, table: str, failed_ids: List[str], errors: List[str]):
        super().__init__(table, ", ".join(failed_ids[:5]))
        self.failed_ids = failed_ids
        self.errors = errors
