"""
Connection Test Service
=======================
Checks that the source and target stores are reachable with the supplied
credentials, and reports server versions and object counts.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from ..errors import MigrationError
from ..utils import mask_connection_string
from .stores import DocumentSource, MongoDocumentSource, PostgresTarget, RelationalTarget
from .validation import ValidationService

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MONGO_DATABASE = "nightscout02"

SourceFactory = Callable[[str, str, float], DocumentSource]
TargetFactory = Callable[[str, float], RelationalTarget]


def _default_source(connection_string: str, database_name: str, timeout: float) -> DocumentSource:
    return MongoDocumentSource(connection_string, database_name, server_selection_timeout_ms=int(timeout * 1000))


def _default_target(connection_string: str, timeout: float) -> RelationalTarget:
    return PostgresTarget(connection_string, max_size=1, timeout=timeout)


@dataclass
class ConnectionTestResult:
    database_type: str
    is_success: bool
    connection_string: str = ""
    database_name: Optional[str] = None
    server_version: Optional[str] = None
    object_count: int = 0
    duration_seconds: float = 0.0
    timed_out: bool = False
    error_message: Optional[str] = None


@dataclass
class DatabaseConnectionReport:
    mongo: Optional[ConnectionTestResult] = None
    postgres: Optional[ConnectionTestResult] = None
    total_duration_seconds: float = 0.0

    @property
    def results(self) -> List[ConnectionTestResult]:
        return [r for r in (self.mongo, self.postgres) if r is not None]

    @property
    def all_successful(self) -> bool:
        return bool(self.results) and all(r.is_success for r in self.results)

    @property
    def any_timed_out(self) -> bool:
        return any(r.timed_out for r in self.results)

    @property
    def failed_databases(self) -> List[str]:
        return [r.database_type for r in self.results if not r.is_success]


class ConnectionTestService:
    """Tests store connectivity; never raises for unreachable stores."""

    def __init__(
        self,
        source_factory: Optional[SourceFactory] = None,
        target_factory: Optional[TargetFactory] = None,
    ):
        self.source_factory = source_factory or _default_source
        self.target_factory = target_factory or _default_target

    @staticmethod
    def validate_connection_string(value: Optional[str], kind: str):
        return ValidationService.validate_connection_string(value, kind)

    async def test_mongo(
        self,
        connection_string: str,
        database_name: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> ConnectionTestResult:
        """Ping, read the server version and count collections."""
        database_name = database_name or DEFAULT_MONGO_DATABASE
        result = ConnectionTestResult(
            database_type="MongoDB",
            is_success=False,
            connection_string=mask_connection_string(connection_string),
            database_name=database_name,
        )
        fmt = self.validate_connection_string(connection_string, "mongo")
        if not fmt.is_valid:
            result.error_message = fmt.error_message
            return result

        source = self.source_factory(connection_string, database_name, timeout)
        start = time.monotonic()

        async def probe() -> None:
            await source.ping()
            result.server_version = await source.server_version()
            result.object_count = len(await source.list_collections())

        try:
            await asyncio.wait_for(probe(), timeout=timeout)
            result.is_success = True
        except asyncio.TimeoutError:
            result.timed_out = True
            result.error_message = f"Connection timed out after {timeout}s"
        except (MigrationError, OSError) as e:
            result.error_message = str(e)
        finally:
            result.duration_seconds = time.monotonic() - start
            await source.close()

        self._log(result)
        return result

    async def test_postgres(
        self, connection_string: str, timeout: float = DEFAULT_TIMEOUT_SECONDS
    ) -> ConnectionTestResult:
        """Connect, read ``server_version`` and count public tables."""
        result = ConnectionTestResult(
            database_type="PostgreSQL",
            is_success=False,
            connection_string=mask_connection_string(connection_string),
        )
        fmt = self.validate_connection_string(connection_string, "postgres")
        if not fmt.is_valid:
            result.error_message = fmt.error_message
            return result

        target = self.target_factory(connection_string, timeout)
        start = time.monotonic()

        async def probe() -> None:
            result.server_version = await target.server_version()
            result.object_count = len(await target.list_tables())

        try:
            await asyncio.wait_for(probe(), timeout=timeout)
            result.is_success = True
        except asyncio.TimeoutError:
            result.timed_out = True
            result.error_message = f"Connection timed out after {timeout}s"
        except (MigrationError, OSError) as e:
            result.error_message = str(e)
        finally:
            result.duration_seconds = time.monotonic() - start
            await target.close()

        self._log(result)
        return result

    async def test_all(
        self,
        mongo_connection_string: Optional[str] = None,
        mongo_database_name: Optional[str] = None,
        postgres_connection_string: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> DatabaseConnectionReport:
        """Test whichever stores have a connection string, concurrently."""
        start = time.monotonic()
        report = DatabaseConnectionReport()
        tasks = {}
        if mongo_connection_string:
            tasks["mongo"] = self.test_mongo(mongo_connection_string, mongo_database_name, timeout)
        if postgres_connection_string:
            tasks["postgres"] = self.test_postgres(postgres_connection_string, timeout)
        results = await asyncio.gather(*tasks.values())
        for name, result in zip(tasks.keys(), results):
            setattr(report, name, result)
        report.total_duration_seconds = time.monotonic() - start
        return report

    @staticmethod
    def _log(result: ConnectionTestResult) -> None:
        if result.is_success:
            logger.info(
                f"{result.database_type} reachable (version {result.server_version}, "
                f"{result.object_count} objects) in {result.duration_seconds:.2f}s"
            )
        else:
            logger.error(f"{result.database_type} connection failed: {result.error_message}")
