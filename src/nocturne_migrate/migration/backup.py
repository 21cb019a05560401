"""
Backup Service
==============
Creates, verifies, lists and prunes point-in-time backups of either store.

Backups are produced by the external dump tools (``mongodump`` with an
archive, ``pg_dump`` with a plain SQL file), run through ``ProcessRunner`` so
they honour a timeout and the shared cancellation event. Every successful
backup gets exactly one JSON sidecar, ``<backup-file>.metadata``, holding the
SHA-256 checksum that ``verify_backup`` compares against later.
"""

import asyncio
import hashlib
import json
import logging
import os
import time
import urllib.parse
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .. import TOOL_VERSION
from ..config.config import RetentionPolicy, parse_datetime
from ..errors import MigrationError
from ..process import ProcessRunner
from .models import ValidationResult, utc_now
from .stores import DocumentSource

logger = logging.getLogger(__name__)

METADATA_SUFFIX = ".metadata"
GZIP_MAGIC = b"\x1f\x8b"
# mongodump archive magic number 0x8199e26d, little-endian
MONGO_ARCHIVE_MAGIC = (0x8199E26D).to_bytes(4, "little")
PG_DUMP_PREFIXES = ("--", "CREATE", "SET")
DEFAULT_BACKUP_TIMEOUT_SECONDS = 2 * 60 * 60


class BackupType(str, Enum):
    """Which store a backup was taken from."""
    MONGODB = "mongodb"
    POSTGRESQL = "postgresql"

    @classmethod
    def from_string(cls, value: str) -> "BackupType":
        value_lower = value.lower().strip()
        aliases = {"mongo": cls.MONGODB, "postgres": cls.POSTGRESQL}
        if value_lower in aliases:
            return aliases[value_lower]
        for member in cls:
            if member.value == value_lower:
                return member
        raise ValueError(f"Invalid backup type: {value}. Valid options: mongodb, postgresql")


@dataclass
class BackupConfiguration:
    connection_string: str
    database_name: str
    output_directory: str
    backup_filename: Optional[str] = None
    compress: bool = True
    collections: List[str] = field(default_factory=list)
    additional_options: Dict[str, Any] = field(default_factory=dict)
    timeout_seconds: float = DEFAULT_BACKUP_TIMEOUT_SECONDS


@dataclass
class BackupMetadata:
    """Contents of a backup's ``.metadata`` sidecar."""
    tool_version: Optional[str] = None
    database_version: Optional[str] = None
    backup_type: Optional[str] = None
    collection_count: int = 0
    document_count: int = 0
    checksum: Optional[str] = None
    created_at: Optional[str] = None
    compressed: bool = False
    additional: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupMetadata":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class BackupInfo:
    file_path: str
    backup_type: BackupType
    created_at: datetime
    file_size_bytes: int
    is_compressed: bool = False
    database_name: Optional[str] = None
    metadata: BackupMetadata = field(default_factory=BackupMetadata)

    @property
    def checksum(self) -> Optional[str]:
        return self.metadata.checksum

    @property
    def collection_count(self) -> int:
        return self.metadata.collection_count


@dataclass
class BackupResult:
    is_success: bool
    backup_type: BackupType
    error_message: Optional[str] = None
    backup_file_path: Optional[str] = None
    backup_file_size: int = 0
    duration_seconds: float = 0.0
    metadata: BackupMetadata = field(default_factory=BackupMetadata)
    timed_out: bool = False
    cancelled: bool = False


@dataclass
class CleanupResult:
    is_success: bool
    error_message: Optional[str] = None
    files_deleted: int = 0
    bytes_freed: int = 0
    deleted_files: List[str] = field(default_factory=list)
    retained_files: List[str] = field(default_factory=list)


def file_checksum(path: str, chunk_size: int = 1024 * 1024) -> str:
    """SHA-256 hex digest of a file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def metadata_path(backup_path: str) -> str:
    return backup_path + METADATA_SUFFIX


def detect_backup_type(filename: str) -> Optional[BackupType]:
    if filename.startswith("mongo_") or "mongodump" in filename:
        return BackupType.MONGODB
    if filename.startswith("postgres_") or filename.endswith((".sql", ".sql.gz")):
        return BackupType.POSTGRESQL
    return None


def parse_postgres_dsn(dsn: str) -> Dict[str, Optional[str]]:
    """Split a postgresql:// URI or key=value DSN into pg_dump's parts."""
    parts: Dict[str, Optional[str]] = {"host": None, "port": None, "user": None, "password": None, "dbname": None}
    if "://" in dsn:
        parsed = urllib.parse.urlsplit(dsn)
        parts.update(
            host=parsed.hostname,
            port=str(parsed.port) if parsed.port else None,
            user=urllib.parse.unquote(parsed.username) if parsed.username else None,
            password=urllib.parse.unquote(parsed.password) if parsed.password else None,
            dbname=parsed.path.lstrip("/") or None,
        )
        return parts
    for token in dsn.replace(";", " ").split():
        if "=" not in token:
            continue
        key, value = token.split("=", 1)
        key = key.strip().lower()
        key = {"username": "user", "database": "dbname", "server": "host"}.get(key, key)
        if key in parts:
            parts[key] = value.strip()
    return parts


class BackupService:
    """
    Dump-tool based backups with checksummed sidecars.

    Args:
        runner: Process runner for the dump tools
        source: Optional document source used to count what a Mongo backup holds
        mongodump / pg_dump: Executable names or paths
    """

    def __init__(
        self,
        runner: Optional[ProcessRunner] = None,
        source: Optional[DocumentSource] = None,
        mongodump: str = "mongodump",
        pg_dump: str = "pg_dump",
    ):
        self.runner = runner or ProcessRunner()
        self.source = source
        self.mongodump = mongodump
        self.pg_dump = pg_dump

    # ========================================================================
    # Create
    # ========================================================================

    async def create_backup(
        self,
        config: BackupConfiguration,
        backup_type: BackupType,
        cancel_event: Optional[asyncio.Event] = None,
        source: Optional[DocumentSource] = None,
    ) -> BackupResult:
        if backup_type == BackupType.MONGODB:
            return await self.create_mongo_backup(config, cancel_event, source=source)
        return await self.create_postgres_backup(config, cancel_event)

    async def create_mongo_backup(
        self,
        config: BackupConfiguration,
        cancel_event: Optional[asyncio.Event] = None,
        source: Optional[DocumentSource] = None,
    ) -> BackupResult:
        """
        Run ``mongodump --archive`` for the configured database/collections.

        ``source`` (falling back to the service's own) is used to count what
        the archive holds.
        """
        self._require(config)
        path = self._backup_path(config, f"mongo_backup_{config.database_name}", "")
        args = [
            f"--uri={config.connection_string}",
            f"--db={config.database_name}",
            f"--archive={path}",
        ]
        if config.compress:
            args.append("--gzip")
        for collection in config.collections:
            args.append(f"--nsInclude={config.database_name}.{collection}")
        args.extend(self._extra_args(config.additional_options))

        return await self._run_dump(
            BackupType.MONGODB, self.mongodump, args, path, config, cancel_event, env=None, source=source
        )

    async def create_postgres_backup(
        self, config: BackupConfiguration, cancel_event: Optional[asyncio.Event] = None
    ) -> BackupResult:
        """Run ``pg_dump`` to a plain SQL file; the password goes through ``PGPASSWORD``."""
        self._require(config)
        parts = parse_postgres_dsn(config.connection_string)
        database = config.database_name or parts["dbname"] or ""
        path = self._backup_path(config, f"postgres_backup_{database}", ".sql")
        args = []
        if parts["host"]:
            args.append(f"--host={parts['host']}")
        if parts["port"]:
            args.append(f"--port={parts['port']}")
        if parts["user"]:
            args.append(f"--username={parts['user']}")
        args.extend([f"--dbname={database}", f"--file={path}", "--no-password"])
        if config.compress:
            args.append("--compress=9")
        args.extend(self._extra_args(config.additional_options))

        env = {"PGPASSWORD": parts["password"]} if parts["password"] else None
        return await self._run_dump(
            BackupType.POSTGRESQL, self.pg_dump, args, path, config, cancel_event, env=env
        )

    async def _run_dump(
        self,
        backup_type: BackupType,
        program: str,
        args: List[str],
        path: str,
        config: BackupConfiguration,
        cancel_event: Optional[asyncio.Event],
        env: Optional[Dict[str, str]],
        source: Optional[DocumentSource] = None,
    ) -> BackupResult:
        result = BackupResult(is_success=False, backup_type=backup_type, backup_file_path=path)
        start = time.monotonic()
        logger.info(f"Starting {backup_type.value} backup to {path}")

        try:
            process = await self.runner.run(
                program, args, timeout=config.timeout_seconds, cancel_event=cancel_event, env=env
            )
        except FileNotFoundError:
            result.error_message = f"{program} not found; install the database tools or put them on PATH"
            logger.error(result.error_message)
            return result

        result.duration_seconds = time.monotonic() - start
        if process.timed_out:
            result.timed_out = True
            result.error_message = f"{program} timed out after {config.timeout_seconds}s"
        elif process.cancelled:
            result.cancelled = True
            result.error_message = f"{program} was cancelled"
        elif process.return_code != 0:
            stderr = process.stderr.strip()
            result.error_message = f"{program} exited with code {process.return_code}: {stderr[-2000:]}"
        elif not os.path.exists(path):
            result.error_message = f"Backup file was not created: {path}"
        elif os.path.getsize(path) == 0:
            result.error_message = f"Backup file is empty: {path}"

        if result.error_message:
            logger.error(f"{backup_type.value} backup failed: {result.error_message}")
            self._discard_partial(path, result)
            return result

        result.backup_file_size = os.path.getsize(path)
        result.metadata = await self._write_metadata(path, backup_type, config, source or self.source)
        result.is_success = True
        logger.info(
            f"{backup_type.value} backup created: {path} "
            f"({result.backup_file_size} bytes, {result.duration_seconds:.1f}s)"
        )
        return result

    async def _write_metadata(
        self,
        path: str,
        backup_type: BackupType,
        config: BackupConfiguration,
        source: Optional[DocumentSource] = None,
    ) -> BackupMetadata:
        metadata = BackupMetadata(
            tool_version=TOOL_VERSION,
            database_version="Unknown",
            backup_type=backup_type.value,
            collection_count=len(config.collections),
            checksum=await asyncio.to_thread(file_checksum, path),
            created_at=utc_now().isoformat(),
            compressed=config.compress,
            additional={"database_name": config.database_name},
        )
        if backup_type == BackupType.MONGODB and source is not None:
            await self._count_source(source, metadata, config)

        with open(metadata_path(path), "w", encoding="utf-8") as f:
            json.dump(metadata.to_dict(), f, indent=2)
        return metadata

    async def _count_source(
        self, source: DocumentSource, metadata: BackupMetadata, config: BackupConfiguration
    ) -> None:
        """Count the collections that hold documents, and their documents."""
        try:
            metadata.database_version = await source.server_version()
            collections = config.collections or await source.list_collections()
            collection_count = 0
            document_count = 0
            for collection in collections:
                count = await source.count_documents(collection)
                if count > 0:
                    collection_count += 1
                    document_count += count
            metadata.collection_count = collection_count
            metadata.document_count = document_count
        except MigrationError as e:
            logger.warning(f"Could not count backed-up collections: {e}")

    # ========================================================================
    # Verify
    # ========================================================================

    async def verify_backup(self, backup_path: str, backup_type: BackupType) -> ValidationResult:
        """
        Check existence, size, format signature and (if a sidecar exists) checksum.

        Checks stop at the first failure.
        """
        result = ValidationResult()
        if not os.path.exists(backup_path):
            result.add_error("backup_missing", f"Backup file not found: {backup_path}")
            return result
        if os.path.getsize(backup_path) == 0:
            result.add_error("backup_empty", f"Backup file is empty: {backup_path}")
            return result

        sidecar = metadata_path(backup_path)
        metadata = self._read_metadata(sidecar) if os.path.exists(sidecar) else None
        compressed = backup_path.endswith(".gz") or bool(metadata and metadata.compressed)

        with open(backup_path, "rb") as f:
            head = f.read(1024)
        if compressed:
            if not head.startswith(GZIP_MAGIC):
                result.add_error("backup_format", "Compressed backup does not start with the gzip signature")
                return result
        elif backup_type == BackupType.MONGODB:
            if not head.startswith(MONGO_ARCHIVE_MAGIC):
                result.add_error("backup_format", "File does not appear to be a mongodump archive")
                return result
        else:
            first_line = head.split(b"\n", 1)[0].decode("utf-8", errors="replace").strip()
            if not ("PostgreSQL database dump" in first_line or first_line.startswith(PG_DUMP_PREFIXES)):
                result.add_error("backup_format", "File does not appear to be a valid PostgreSQL dump")
                return result

        if os.path.exists(sidecar):
            if metadata is None or not metadata.checksum:
                result.add_error("checksum_missing", "No checksum found in backup metadata")
                return result
            actual = await asyncio.to_thread(file_checksum, backup_path)
            if actual.lower() != metadata.checksum.lower():
                result.add_error("checksum_mismatch", "Backup file checksum does not match metadata")
                return result
            result.details["checksum"] = actual
        else:
            result.warnings.append("No metadata sidecar; checksum not verified")
        return result

    # ========================================================================
    # List and cleanup
    # ========================================================================

    async def list_backups(self, directory: str, backup_type: Optional[BackupType] = None) -> List[BackupInfo]:
        """Backups found in ``directory``, newest first."""
        root = Path(directory)
        if not root.is_dir():
            return []

        backups = []
        for path in root.iterdir():
            if not path.is_file() or path.name.endswith(METADATA_SUFFIX):
                continue
            detected = detect_backup_type(path.name)
            if detected is None or (backup_type is not None and detected != backup_type):
                continue

            sidecar = metadata_path(str(path))
            metadata = self._read_metadata(sidecar) if os.path.exists(sidecar) else None
            stat = path.stat()
            created_at = parse_datetime(metadata.created_at) if metadata and metadata.created_at else None
            if created_at is None:
                created_at = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)

            backups.append(BackupInfo(
                file_path=str(path),
                backup_type=detected,
                created_at=created_at,
                file_size_bytes=stat.st_size,
                is_compressed=path.name.endswith(".gz") or bool(metadata and metadata.compressed),
                database_name=(metadata.additional.get("database_name") if metadata else None),
                metadata=metadata or BackupMetadata(),
            ))
        return sorted(backups, key=lambda b: b.created_at, reverse=True)

    async def cleanup_backups(self, directory: str, policy: Optional[RetentionPolicy] = None) -> CleanupResult:
        """
        Apply the retention policy.

        Newest first, a backup is kept while fewer than ``max_count`` are kept
        and it is younger than ``max_age_days``. Then the oldest kept backups
        are dropped until the kept total fits ``max_total_size_bytes``.
        """
        policy = policy or RetentionPolicy()
        if not os.path.isdir(directory):
            return CleanupResult(is_success=False, error_message=f"Backup directory does not exist: {directory}")

        backups = await self.list_backups(directory)
        cutoff = utc_now() - timedelta(days=policy.max_age_days)
        kept: List[BackupInfo] = []
        doomed: List[BackupInfo] = []
        for backup in backups:
            if len(kept) < policy.max_count and backup.created_at > cutoff:
                kept.append(backup)
            else:
                doomed.append(backup)

        total = sum(b.file_size_bytes for b in kept)
        while kept and total > policy.max_total_size_bytes:
            oldest = kept.pop()
            total -= oldest.file_size_bytes
            doomed.append(oldest)

        result = CleanupResult(is_success=True, retained_files=[b.file_path for b in kept])
        for backup in doomed:
            try:
                os.remove(backup.file_path)
            except OSError as e:
                logger.warning(f"Failed to delete backup file {backup.file_path}: {e}")
                result.is_success = False
                result.error_message = str(e)
                continue
            result.deleted_files.append(backup.file_path)
            result.bytes_freed += backup.file_size_bytes
            sidecar = metadata_path(backup.file_path)
            if os.path.exists(sidecar):
                result.bytes_freed += os.path.getsize(sidecar)
                os.remove(sidecar)
                result.deleted_files.append(sidecar)
            logger.info(f"Deleted backup file: {backup.file_path}")

        result.files_deleted = len(result.deleted_files)
        logger.info(
            f"Backup cleanup completed. Deleted {result.files_deleted} files, "
            f"freed {result.bytes_freed} bytes"
        )
        return result

    # ========================================================================
    # Helpers
    # ========================================================================

    @staticmethod
    def _require(config: BackupConfiguration) -> None:
        if not config.connection_string:
            raise ValueError("connection_string is required")
        if not config.output_directory:
            raise ValueError("output_directory is required")

    @staticmethod
    def _backup_path(config: BackupConfiguration, prefix: str, extension: str) -> str:
        os.makedirs(config.output_directory, exist_ok=True)
        filename = config.backup_filename
        if not filename:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            filename = f"{prefix}_{timestamp}{extension}"
            if config.compress:
                filename += ".gz"
        return os.path.join(config.output_directory, filename)

    @staticmethod
    def _extra_args(options: Dict[str, Any]) -> List[str]:
        args = []
        for key, value in options.items():
            if value is True:
                args.append(f"--{key}")
            elif value is not False and value is not None:
                args.append(f"--{key}={value}")
        return args

    @staticmethod
    def _read_metadata(path: str) -> Optional[BackupMetadata]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return BackupMetadata.from_dict(json.load(f))
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load backup metadata {path}: {e}")
            return None

    @staticmethod
    def _discard_partial(path: str, result: BackupResult) -> None:
        if os.path.exists(path) and (result.timed_out or result.cancelled):
            try:
                os.remove(path)
            except OSError as e:
                logger.warning(f"Could not remove partial backup {path}: {e}")

    @staticmethod
    def read_metadata(backup_path: str) -> Optional[BackupMetadata]:
        sidecar = metadata_path(backup_path)
        return BackupService._read_metadata(sidecar) if os.path.exists(sidecar) else None
