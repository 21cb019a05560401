"""
Migration State Repository
==========================

Checkpoints, audit logs and rollback points sit behind a small async
interface so the engine, rollback and recovery services do not care where
state lives.

Implementations:
    - JsonFileRepository: one directory per migration under a state dir
    - PostgresRepository: tables in the target database (asyncpg)

Invariants enforced by every implementation:
    - one checkpoint per (migration_id, collection_name); saving upserts
    - documents_processed never decreases; a lower value is ignored
    - logs are append-only
"""

import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import asyncpg

from .models import (
    LogLevel,
    MigrationCheckpoint,
    MigrationLog,
    RollbackPoint,
    utc_now_iso,
)

logger = logging.getLogger(__name__)


def _guard_progress(
    existing: Optional[MigrationCheckpoint], checkpoint: MigrationCheckpoint
) -> MigrationCheckpoint:
    """Keep the stored counter when an update would move it backwards."""
    if existing is not None and checkpoint.documents_processed < existing.documents_processed:
        logger.warning(
            f"Ignoring checkpoint regression for {checkpoint.migration_id}/"
            f"{checkpoint.collection_name}: {checkpoint.documents_processed} < "
            f"{existing.documents_processed}"
        )
        checkpoint.documents_processed = existing.documents_processed
        checkpoint.last_processed_id = existing.last_processed_id
        # the cursor id and its type tag move together
        if "id_type" in existing.checkpoint_data:
            checkpoint.checkpoint_data["id_type"] = existing.checkpoint_data["id_type"]
        else:
            checkpoint.checkpoint_data.pop("id_type", None)
    if existing is not None:
        checkpoint.checkpoint_id = existing.checkpoint_id
        checkpoint.start_time = existing.start_time
    checkpoint.last_update = utc_now_iso()
    return checkpoint


class MigrationRepository(ABC):
    """Async store for checkpoints, logs and rollback points."""

    @abstractmethod
    async def save_checkpoint(self, checkpoint: MigrationCheckpoint) -> MigrationCheckpoint:
        """Upsert the checkpoint for (migration_id, collection_name)."""

    @abstractmethod
    async def get_checkpoint(self, migration_id: str, collection_name: str) -> Optional[MigrationCheckpoint]:
        ...

    @abstractmethod
    async def get_checkpoint_by_id(self, checkpoint_id: str) -> Optional[MigrationCheckpoint]:
        ...

    @abstractmethod
    async def list_checkpoints(self, migration_id: Optional[str] = None) -> List[MigrationCheckpoint]:
        ...

    @abstractmethod
    async def append_log(self, entry: MigrationLog) -> None:
        ...

    @abstractmethod
    async def list_logs(self, migration_id: str, level: Optional[LogLevel] = None) -> List[MigrationLog]:
        """Entries in append order, optionally filtered by level."""

    @abstractmethod
    async def save_rollback_point(self, point: RollbackPoint) -> None:
        ...

    @abstractmethod
    async def list_rollback_points(self, migration_id: str) -> List[RollbackPoint]:
        """Points ordered by sequence."""

    @abstractmethod
    async def list_migration_ids(self) -> List[str]:
        ...

    async def close(self) -> None:
        return None

    async def log(
        self,
        migration_id: str,
        level: LogLevel,
        message: str,
        component: str,
        exception: Optional[BaseException] = None,
        **metadata: Any,
    ) -> MigrationLog:
        """Convenience wrapper: build and append a log entry tagged with its component."""
        metadata["component"] = component
        entry = MigrationLog(
            migration_id=migration_id,
            level=level,
            message=message,
            exception=f"{type(exception).__name__}: {exception}" if exception else None,
            metadata=metadata,
        )
        await self.append_log(entry)
        return entry


# ============================================================================
# JSON files
# ============================================================================


class JsonFileRepository(MigrationRepository):
    """
    File-backed repository.

    Layout::

        <state_dir>/<migration_id>/checkpoints.json
        <state_dir>/<migration_id>/logs.jsonl
        <state_dir>/<migration_id>/rollback_points.json
    """

    CHECKPOINTS_FILE = "checkpoints.json"
    LOGS_FILE = "logs.jsonl"
    ROLLBACK_POINTS_FILE = "rollback_points.json"

    def __init__(self, state_dir: str):
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, migration_id: str) -> asyncio.Lock:
        if migration_id not in self._locks:
            self._locks[migration_id] = asyncio.Lock()
        return self._locks[migration_id]

    def _dir(self, migration_id: str) -> Path:
        path = self.state_dir / migration_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    @staticmethod
    def _read_json(path: Path, default: Any) -> Any:
        if not path.exists():
            return default
        with open(path, 'r') as f:
            return json.load(f)

    @staticmethod
    def _write_json(path: Path, data: Any) -> None:
        """Write via temp file + replace so a crash never leaves a torn file."""
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _load_checkpoints(self, migration_id: str) -> Dict[str, MigrationCheckpoint]:
        path = self.state_dir / migration_id / self.CHECKPOINTS_FILE
        raw = self._read_json(path, {})
        return {name: MigrationCheckpoint.from_dict(data) for name, data in raw.items()}

    async def save_checkpoint(self, checkpoint: MigrationCheckpoint) -> MigrationCheckpoint:
        async with self._lock(checkpoint.migration_id):
            checkpoints = self._load_checkpoints(checkpoint.migration_id)
            existing = checkpoints.get(checkpoint.collection_name)
            checkpoint = _guard_progress(existing, checkpoint)
            checkpoints[checkpoint.collection_name] = checkpoint
            path = self._dir(checkpoint.migration_id) / self.CHECKPOINTS_FILE
            self._write_json(path, {name: cp.to_dict() for name, cp in checkpoints.items()})
        return checkpoint

    async def get_checkpoint(self, migration_id: str, collection_name: str) -> Optional[MigrationCheckpoint]:
        return self._load_checkpoints(migration_id).get(collection_name)

    async def get_checkpoint_by_id(self, checkpoint_id: str) -> Optional[MigrationCheckpoint]:
        for checkpoint in await self.list_checkpoints():
            if checkpoint.checkpoint_id == checkpoint_id:
                return checkpoint
        return None

    async def list_checkpoints(self, migration_id: Optional[str] = None) -> List[MigrationCheckpoint]:
        ids = [migration_id] if migration_id else await self.list_migration_ids()
        result = []
        for mid in ids:
            result.extend(self._load_checkpoints(mid).values())
        return result

    async def append_log(self, entry: MigrationLog) -> None:
        async with self._lock(entry.migration_id):
            path = self._dir(entry.migration_id) / self.LOGS_FILE
            with open(path, 'a') as f:
                f.write(json.dumps(entry.to_dict(), default=str) + "\n")

    async def list_logs(self, migration_id: str, level: Optional[LogLevel] = None) -> List[MigrationLog]:
        path = self.state_dir / migration_id / self.LOGS_FILE
        if not path.exists():
            return []
        entries = []
        with open(path, 'r') as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                entry = MigrationLog.from_dict(json.loads(line))
                if level is None or entry.level == level:
                    entries.append(entry)
        return entries

    async def save_rollback_point(self, point: RollbackPoint) -> None:
        async with self._lock(point.migration_id):
            path = self._dir(point.migration_id) / self.ROLLBACK_POINTS_FILE
            points = self._read_json(path, [])
            points = [p for p in points if p.get("point_id") != point.point_id]
            points.append(point.to_dict())
            self._write_json(path, points)

    async def list_rollback_points(self, migration_id: str) -> List[RollbackPoint]:
        path = self.state_dir / migration_id / self.ROLLBACK_POINTS_FILE
        points = [RollbackPoint.from_dict(p) for p in self._read_json(path, [])]
        return sorted(points, key=lambda p: p.sequence)

    async def list_migration_ids(self) -> List[str]:
        if not self.state_dir.exists():
            return []
        return sorted(p.name for p in self.state_dir.iterdir() if p.is_dir())


# ============================================================================
# PostgreSQL
# ============================================================================


class PostgresRepository(MigrationRepository):
    """Repository stored in the target PostgreSQL database."""

    SCHEMA_SQL = """
        CREATE TABLE IF NOT EXISTS migration_checkpoints (
            checkpoint_id TEXT PRIMARY KEY,
            migration_id TEXT NOT NULL,
            collection_name TEXT NOT NULL,
            last_processed_id TEXT,
            documents_processed BIGINT NOT NULL DEFAULT 0,
            total_documents BIGINT NOT NULL DEFAULT 0,
            start_time TEXT NOT NULL,
            last_update TEXT NOT NULL,
            status TEXT NOT NULL,
            checkpoint_data JSONB NOT NULL DEFAULT '{}'::jsonb,
            UNIQUE (migration_id, collection_name)
        );
        CREATE TABLE IF NOT EXISTS migration_logs (
            log_id TEXT PRIMARY KEY,
            seq BIGSERIAL,
            migration_id TEXT NOT NULL,
            level TEXT NOT NULL,
            message TEXT NOT NULL,
            exception TEXT,
            timestamp TEXT NOT NULL,
            metadata JSONB NOT NULL DEFAULT '{}'::jsonb
        );
        CREATE INDEX IF NOT EXISTS ix_migration_logs_migration_id
            ON migration_logs (migration_id, seq);
        CREATE TABLE IF NOT EXISTS migration_rollback_points (
            point_id TEXT PRIMARY KEY,
            migration_id TEXT NOT NULL,
            sequence INTEGER NOT NULL,
            data JSONB NOT NULL
        );
    """

    def __init__(self, dsn: str):
        self.dsn = dsn
        self._pool: Optional[asyncpg.Pool] = None
        self._init_lock = asyncio.Lock()

    async def _get_pool(self) -> asyncpg.Pool:
        async with self._init_lock:
            if self._pool is None:
                self._pool = await asyncpg.create_pool(self.dsn, min_size=1, max_size=4)
                async with self._pool.acquire() as conn:
                    await conn.execute(self.SCHEMA_SQL)
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @staticmethod
    def _row_to_checkpoint(row) -> MigrationCheckpoint:
        data = dict(row)
        if isinstance(data.get("checkpoint_data"), str):
            data["checkpoint_data"] = json.loads(data["checkpoint_data"])
        return MigrationCheckpoint.from_dict(data)

    async def save_checkpoint(self, checkpoint: MigrationCheckpoint) -> MigrationCheckpoint:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT * FROM migration_checkpoints "
                    "WHERE migration_id = $1 AND collection_name = $2 FOR UPDATE",
                    checkpoint.migration_id, checkpoint.collection_name,
                )
                existing = self._row_to_checkpoint(row) if row else None
                checkpoint = _guard_progress(existing, checkpoint)
                await conn.execute(
                    """
                    INSERT INTO migration_checkpoints
                        (checkpoint_id, migration_id, collection_name, last_processed_id,
                         documents_processed, total_documents, start_time, last_update,
                         status, checkpoint_data)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb)
                    ON CONFLICT (migration_id, collection_name) DO UPDATE SET
                        last_processed_id = EXCLUDED.last_processed_id,
                        documents_processed = EXCLUDED.documents_processed,
                        total_documents = EXCLUDED.total_documents,
                        last_update = EXCLUDED.last_update,
                        status = EXCLUDED.status,
                        checkpoint_data = EXCLUDED.checkpoint_data
                    """,
                    checkpoint.checkpoint_id, checkpoint.migration_id,
                    checkpoint.collection_name, checkpoint.last_processed_id,
                    checkpoint.documents_processed, checkpoint.total_documents,
                    checkpoint.start_time, checkpoint.last_update,
                    checkpoint.status.value, json.dumps(checkpoint.checkpoint_data),
                )
        return checkpoint

    async def get_checkpoint(self, migration_id: str, collection_name: str) -> Optional[MigrationCheckpoint]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            "SELECT * FROM migration_checkpoints WHERE migration_id = $1 AND collection_name = $2",
            migration_id, collection_name,
        )
        return self._row_to_checkpoint(row) if row else None

    async def get_checkpoint_by_id(self, checkpoint_id: str) -> Optional[MigrationCheckpoint]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            "SELECT * FROM migration_checkpoints WHERE checkpoint_id = $1", checkpoint_id
        )
        return self._row_to_checkpoint(row) if row else None

    async def list_checkpoints(self, migration_id: Optional[str] = None) -> List[MigrationCheckpoint]:
        pool = await self._get_pool()
        if migration_id:
            rows = await pool.fetch(
                "SELECT * FROM migration_checkpoints WHERE migration_id = $1 ORDER BY collection_name",
                migration_id,
            )
        else:
            rows = await pool.fetch("SELECT * FROM migration_checkpoints ORDER BY migration_id, collection_name")
        return [self._row_to_checkpoint(r) for r in rows]

    async def append_log(self, entry: MigrationLog) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            INSERT INTO migration_logs (log_id, migration_id, level, message, exception, timestamp, metadata)
            VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
            """,
            entry.log_id, entry.migration_id, entry.level.value, entry.message,
            entry.exception, entry.timestamp, json.dumps(entry.metadata, default=str),
        )

    async def list_logs(self, migration_id: str, level: Optional[LogLevel] = None) -> List[MigrationLog]:
        pool = await self._get_pool()
        query = (
            "SELECT log_id, migration_id, level, message, exception, timestamp, metadata "
            "FROM migration_logs WHERE migration_id = $1"
        )
        args: List[Any] = [migration_id]
        if level is not None:
            query += " AND level = $2"
            args.append(level.value)
        rows = await pool.fetch(query + " ORDER BY seq", *args)
        entries = []
        for row in rows:
            data = dict(row)
            if isinstance(data.get("metadata"), str):
                data["metadata"] = json.loads(data["metadata"])
            entries.append(MigrationLog.from_dict(data))
        return entries

    async def save_rollback_point(self, point: RollbackPoint) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            INSERT INTO migration_rollback_points (point_id, migration_id, sequence, data)
            VALUES ($1, $2, $3, $4::jsonb)
            ON CONFLICT (point_id) DO UPDATE SET data = EXCLUDED.data
            """,
            point.point_id, point.migration_id, point.sequence, json.dumps(point.to_dict()),
        )

    async def list_rollback_points(self, migration_id: str) -> List[RollbackPoint]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            "SELECT data FROM migration_rollback_points WHERE migration_id = $1 ORDER BY sequence",
            migration_id,
        )
        points = []
        for row in rows:
            data = row["data"]
            points.append(RollbackPoint.from_dict(json.loads(data) if isinstance(data, str) else data))
        return points

    async def list_migration_ids(self) -> List[str]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            "SELECT DISTINCT migration_id FROM migration_checkpoints "
            "UNION SELECT DISTINCT migration_id FROM migration_logs ORDER BY 1"
        )
        return [r["migration_id"] for r in rows]
