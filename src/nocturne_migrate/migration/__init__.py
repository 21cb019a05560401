"""
Nocturne Migration Module
=========================

Moves a Nocturne MongoDB database into PostgreSQL and keeps the move
reversible.

Components:
    - MigrationEngine: Orchestrates validation, backup, schema, data and indexes with checkpoint/resume
    - ConnectionTestService: Concurrent reachability checks for both stores
    - SchemaIntrospectionService: Samples collections and source indexes
    - ValidationService: Pre-migration checks and post-migration count verification
    - DataTransformationService: Per-collection document to row mapping
    - IndexOptimizationService: Query-pattern driven PostgreSQL index planning
    - BackupService: mongodump/pg_dump archives with checksummed metadata
    - RollbackService: Full, schema-only, partial and point-in-time rollback
    - RecoveryService: Failure analysis and ranked recovery strategies
"""

from .backup import (
    BackupConfiguration,
    BackupInfo,
    BackupResult,
    BackupService,
    BackupType,
    CleanupResult,
)
from .connection import ConnectionTestService, DatabaseConnectionReport
from .engine import MigrationEngine
from .indexes import IndexOptimizationService
from .introspection import SchemaIntrospectionService
from .models import (
    CheckpointStatus,
    MigrationCheckpoint,
    MigrationResult,
    MigrationState,
    MigrationStatistics,
    MigrationStatus,
    ValidationResult,
)
from .recovery import (
    FailureAnalysis,
    FailureType,
    RecoveryConfiguration,
    RecoveryResult,
    RecoveryService,
)
from .repository import JsonFileRepository, MigrationRepository, PostgresRepository
from .rollback import (
    PartialRollbackOptions,
    RollbackConfiguration,
    RollbackResult,
    RollbackService,
    RollbackType,
)
from .stores import MongoDocumentSource, PostgresTarget
from .transform import DataTransformationService
from .validation import ValidationService

__all__ = [
    'BackupConfiguration',
    'BackupInfo',
    'BackupResult',
    'BackupService',
    'BackupType',
    'CheckpointStatus',
    'CleanupResult',
    'ConnectionTestService',
    'DataTransformationService',
    'DatabaseConnectionReport',
    'FailureAnalysis',
    'FailureType',
    'IndexOptimizationService',
    'JsonFileRepository',
    'MigrationCheckpoint',
    'MigrationEngine',
    'MigrationRepository',
    'MigrationResult',
    'MigrationState',
    'MigrationStatistics',
    'MigrationStatus',
    'MongoDocumentSource',
    'PartialRollbackOptions',
    'PostgresRepository',
    'PostgresTarget',
    'RecoveryConfiguration',
    'RecoveryResult',
    'RecoveryService',
    'RollbackConfiguration',
    'RollbackResult',
    'RollbackService',
    'RollbackType',
    'SchemaIntrospectionService',
    'ValidationResult',
    'ValidationService',
]
