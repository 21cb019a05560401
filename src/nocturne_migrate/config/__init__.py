# Config module - re-exports for convenience
#
#   MigrationEngineConfig - one migration run (batching, memory, toggles)
#   *Options              - nested settings for validation, indexes, backup,
#                           rollback and recovery
#   ConnectionSettings    - source/target connection strings from env
#
from .config import (  # noqa: F401
    DEFAULT_BACKUP_DIR,
    DEFAULT_STATE_DIR,
    BackupOptions,
    ConnectionSettings,
    IndexOptimizationOptions,
    MigrationEngineConfig,
    RecoveryOptions,
    RetentionPolicy,
    RetryPolicy,
    RollbackOptions,
    StateStoreType,
    TransformationOptions,
    ValidationOptions,
    load_config,
    parse_datetime,
)
