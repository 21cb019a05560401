"""
Exception types shared by the store adapters and migration services.

Services return result objects for expected failures; these exceptions travel
between the adapters (asyncpg / motor) and the services that decide whether
to retry, skip, or record a failure. Each carries a ``category`` string that
is written into migration log metadata so failures can be classified later
without parsing messages.
"""

import asyncio
from typing import Any, Dict, Optional


class MigrationError(Exception):
    """Base exception for all migration errors."""

    category = "unknown"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (details: {self.details})"
        return self.message


# ============================================================================
# Connectivity
# ============================================================================


class ConnectivityError(MigrationError):
    """Raised when a source or target store cannot be reached."""

    category = "connectivity"

    def __init__(self, store: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"{store} connection failed: {message}", details)
        self.store = store


class AuthenticationError(ConnectivityError):
    """Raised when a store rejects the supplied credentials."""

    category = "authentication"


class TransientStoreError(MigrationError):
    """Raised for errors worth retrying (timeouts, lock contention, dropped sockets)."""

    category = "transient"


# ============================================================================
# Data
# ============================================================================


class DuplicateKeyError(MigrationError):
    """Raised when a write violates a unique constraint and duplicates are not skipped."""

    category = "constraint_violation"

    def __init__(self, table: str, key: Optional[str] = None):
        super().__init__(
            f"Duplicate key in table '{table}'" + (f": {key}" if key else ""),
            {"table": table, "key": key},
        )
        self.table = table
        self.key = key


class SchemaValidationError(MigrationError):
    """Raised when the target schema is incompatible with the migration."""

    category = "schema_validation"


class TransformationError(MigrationError):
    """Raised when a document cannot be mapped to a target record."""

    category = "data_transformation"


class DataCorruptionError(MigrationError):
    """Raised when stored data or a backup fails an integrity check."""

    category = "data_corruption"


# ============================================================================
# Resources and processes
# ============================================================================


class ResourceExhaustedError(MigrationError):
    """Raised when memory or disk limits make progress impossible."""

    category = "resource_exhaustion"


class ProcessExecutionError(MigrationError):
    """Raised when an external dump/restore tool exits unsuccessfully."""

    category = "subprocess"

    def __init__(self, program: str, return_code: Optional[int], stderr: str = ""):
        super().__init__(
            f"{program} exited with code {return_code}",
            {"stderr": stderr.strip()[-2000:]} if stderr else None,
        )
        self.program = program
        self.return_code = return_code
        self.stderr = stderr


class MigrationCancelledError(MigrationError):
    """Raised inside the engine when cancellation was requested."""

    category = "cancelled"


def error_category(exc: BaseException) -> str:
    """Return the category recorded in log metadata for an exception."""
    if isinstance(exc, MigrationError):
        return exc.category
    if isinstance(exc, MemoryError):
        return "resource_exhaustion"
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return "timeout"
    if isinstance(exc, ConnectionError):
        return "connectivity"
    return "unknown"
