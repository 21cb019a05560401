"""
Store Adapters
==============

Async interfaces over the document source (MongoDB, via motor) and the
relational target (PostgreSQL, via asyncpg), plus the fixed target schema.

Driver exceptions are translated into ``nocturne_migrate.errors`` types so
the engine can decide between retrying, skipping and failing without knowing
which driver raised.
"""

import contextlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import asyncpg
from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import errors as mongo_errors

from ..errors import (
    AuthenticationError,
    ConnectivityError,
    DuplicateKeyError,
    MigrationError,
    TransformationError,
    TransientStoreError,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Target schema
# ============================================================================

# Source collection -> target table
COLLECTION_TABLES: Dict[str, str] = {
    "entries": "entries",
    "treatments": "treatments",
    "profile": "profiles",
    "devicestatus": "devicestatus",
    "settings": "settings",
    "food": "food",
    "activity": "activity",
}

# Source field holding each collection's timestamp
COLLECTION_DATE_FIELDS: Dict[str, str] = {
    "entries": "date",
    "treatments": "created_at",
    "devicestatus": "created_at",
    "profile": "created_at",
    "food": "created_at",
    "activity": "created_at",
}

# Tables removed by a full rollback in addition to the migrated ones
EXTRA_ROLLBACK_TABLES: List[str] = ["auth"]

_COMMON_COLUMNS = {
    "id": "uuid",
    "original_id": "text",
    "sys_created_at": "timestamptz",
    "sys_updated_at": "timestamptz",
}

TARGET_SCHEMA: Dict[str, Dict[str, str]] = {
    "entries": {
        **_COMMON_COLUMNS,
        "mills": "bigint",
        "date": "timestamptz",
        "date_string": "text",
        "sgv": "double precision",
        "direction": "text",
        "device": "text",
        "type": "text",
        "filtered": "double precision",
        "unfiltered": "double precision",
        "rssi": "integer",
        "noise": "integer",
        "utc_offset": "integer",
        "delta": "double precision",
        "created_at": "text",
        "additional_properties": "jsonb",
    },
    "treatments": {
        **_COMMON_COLUMNS,
        "event_type": "text",
        "mills": "bigint",
        "created_at": "text",
        "insulin": "double precision",
        "carbs": "double precision",
        "glucose": "double precision",
        "glucose_type": "text",
        "notes": "text",
        "entered_by": "text",
        "duration": "double precision",
        "percent": "double precision",
        "absolute": "double precision",
        "boluscalc": "jsonb",
        "additional_properties": "jsonb",
    },
    "profiles": {
        **_COMMON_COLUMNS,
        "default_profile": "text",
        "units": "text",
        "start_date": "text",
        "mills": "bigint",
        "created_at": "text",
        "store": "jsonb",
        "additional_properties": "jsonb",
    },
    "devicestatus": {
        **_COMMON_COLUMNS,
        "device": "text",
        "mills": "bigint",
        "created_at": "text",
        "additional_properties": "jsonb",
    },
    "settings": {
        **_COMMON_COLUMNS,
        "key": "text",
        "value": "jsonb",
        "created_at": "text",
    },
    "food": {
        **_COMMON_COLUMNS,
        "name": "text",
        "category": "text",
        "subcategory": "text",
        "carbs": "double precision",
        "protein": "double precision",
        "fat": "double precision",
        "energy": "double precision",
    },
    "activity": {
        **_COMMON_COLUMNS,
        "activity_type": "text",
        "description": "text",
        "duration": "double precision",
        "mills": "bigint",
        "created_at": "text",
        "additional_properties": "jsonb",
    },
}


def table_for_collection(collection: str) -> Optional[str]:
    return COLLECTION_TABLES.get(collection)


def create_table_sql(table: str) -> str:
    columns = TARGET_SCHEMA[table]
    parts = []
    for name, pg_type in columns.items():
        definition = f'"{name}" {pg_type}'
        if name == "id":
            definition += " PRIMARY KEY"
        parts.append(definition)
    return f"CREATE TABLE IF NOT EXISTS {table} ({', '.join(parts)})"


# ============================================================================
# Cursor ids and JSON
# ============================================================================


def encode_cursor_id(value: Any) -> Tuple[str, str]:
    """Return (string form, type tag) for a source ``_id``."""
    if isinstance(value, ObjectId):
        return str(value), "objectid"
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value), "int"
    return str(value), "str"


def decode_cursor_id(value: Optional[str], id_type: Optional[str]) -> Any:
    """Rebuild the BSON value persisted by ``encode_cursor_id``."""
    if value is None:
        return None
    if id_type == "objectid":
        return ObjectId(value)
    if id_type == "int":
        return int(value)
    return value


class MongoJSONEncoder(json.JSONEncoder):
    """JSON encoder for BSON types (ObjectId, datetime, bytes)."""

    def default(self, obj):
        if isinstance(obj, ObjectId):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, bytes):
            return obj.hex()
        return super().default(obj)


def dumps_json(value: Any) -> str:
    return json.dumps(value, cls=MongoJSONEncoder)


# ============================================================================
# Document source
# ============================================================================


class DocumentSource(ABC):
    """Read interface over the document store."""

    database_name: str = ""

    @abstractmethod
    async def list_collections(self) -> List[str]:
        ...

    @abstractmethod
    async def count_documents(
        self, collection: str, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None
    ) -> int:
        ...

    @abstractmethod
    async def fetch_batch(
        self,
        collection: str,
        after_id: Any,
        limit: int,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Next ``limit`` documents with ``_id > after_id`` in ascending ``_id`` order."""

    @abstractmethod
    async def sample_documents(self, collection: str, size: int) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def find(
        self,
        collection: str,
        query: Optional[Dict[str, Any]] = None,
        limit: int = 0,
        sort: Optional[List[Tuple[str, int]]] = None,
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def list_indexes(self, collection: str) -> List[Dict[str, Any]]:
        """Raw index documents (``name``, ``key`` and options)."""

    @abstractmethod
    async def find_duplicate_ids(self, collection: str, limit: int = 100) -> List[Tuple[Any, int]]:
        ...

    @abstractmethod
    async def ping(self) -> None:
        ...

    @abstractmethod
    async def server_version(self) -> str:
        ...

    async def close(self) -> None:
        return None


def build_date_filter(
    start_date: Optional[datetime], end_date: Optional[datetime]
) -> Dict[str, Any]:
    """Match documents whose ``date``/``mills`` (ms) or ``created_at`` (ISO) falls in range."""
    if start_date is None and end_date is None:
        return {}
    ms_range: Dict[str, Any] = {}
    iso_range: Dict[str, Any] = {}
    if start_date is not None:
        ms_range["$gte"] = int(start_date.timestamp() * 1000)
        iso_range["$gte"] = start_date.astimezone(timezone.utc).isoformat()
    if end_date is not None:
        ms_range["$lte"] = int(end_date.timestamp() * 1000)
        iso_range["$lte"] = end_date.astimezone(timezone.utc).isoformat()
    return {"$or": [{"date": ms_range}, {"mills": dict(ms_range)}, {"created_at": iso_range}]}


@contextlib.contextmanager
def _mongo_errors(operation: str) -> Iterator[None]:
    """Translate pymongo exceptions raised by ``operation``."""
    try:
        yield
    except (mongo_errors.AutoReconnect, mongo_errors.NetworkTimeout, mongo_errors.ExecutionTimeout) as e:
        raise TransientStoreError(f"MongoDB {operation} failed: {e}") from e
    except mongo_errors.OperationFailure as e:
        if e.code in (13, 18):
            raise AuthenticationError("MongoDB", str(e), {"operation": operation}) from e
        raise MigrationError(f"MongoDB {operation} failed: {e}", {"code": e.code}) from e
    except mongo_errors.ConnectionFailure as e:
        raise ConnectivityError("MongoDB", str(e), {"operation": operation}) from e


class MongoDocumentSource(DocumentSource):
    """DocumentSource backed by motor's ``AsyncIOMotorClient``."""

    def __init__(self, connection_string: str, database_name: str, server_selection_timeout_ms: int = 30000):
        self.connection_string = connection_string
        self.database_name = database_name
        self.server_selection_timeout_ms = server_selection_timeout_ms
        self._client: Optional[AsyncIOMotorClient] = None

    @property
    def client(self) -> AsyncIOMotorClient:
        if self._client is None:
            self._client = AsyncIOMotorClient(
                self.connection_string,
                serverSelectionTimeoutMS=self.server_selection_timeout_ms,
            )
        return self._client

    @property
    def db(self):
        return self.client[self.database_name]

    async def list_collections(self) -> List[str]:
        with _mongo_errors("list_collections"):
            names = await self.db.list_collection_names()
        return sorted(n for n in names if not n.startswith("system."))

    async def count_documents(self, collection, start_date=None, end_date=None) -> int:
        with _mongo_errors("count_documents"):
            return await self.db[collection].count_documents(build_date_filter(start_date, end_date))

    async def fetch_batch(self, collection, after_id, limit, start_date=None, end_date=None):
        query = build_date_filter(start_date, end_date)
        if after_id is not None:
            query = {"$and": [query, {"_id": {"$gt": after_id}}]} if query else {"_id": {"$gt": after_id}}
        with _mongo_errors("fetch_batch"):
            cursor = self.db[collection].find(query).sort("_id", 1).limit(limit)
            return await cursor.to_list(length=limit)

    async def sample_documents(self, collection, size):
        with _mongo_errors("sample_documents"):
            cursor = self.db[collection].aggregate([{"$sample": {"size": size}}])
            return await cursor.to_list(length=size)

    async def find(self, collection, query=None, limit=0, sort=None):
        with _mongo_errors("find"):
            cursor = self.db[collection].find(query or {})
            if sort:
                cursor = cursor.sort(sort)
            if limit:
                cursor = cursor.limit(limit)
            return await cursor.to_list(length=limit or None)

    async def list_indexes(self, collection):
        indexes = []
        with _mongo_errors("list_indexes"):
            async for index in self.db[collection].list_indexes():
                data = dict(index)
                data["key"] = list(dict(index["key"]).items())
                indexes.append(data)
        return indexes

    async def find_duplicate_ids(self, collection, limit=100):
        pipeline = [
            {"$group": {"_id": "$_id", "count": {"$sum": 1}}},
            {"$match": {"count": {"$gt": 1}}},
            {"$limit": limit},
        ]
        with _mongo_errors("find_duplicate_ids"):
            rows = await self.db[collection].aggregate(pipeline).to_list(length=limit)
        return [(row["_id"], row["count"]) for row in rows]

    async def ping(self) -> None:
        with _mongo_errors("ping"):
            await self.client.admin.command("ping")

    async def server_version(self) -> str:
        with _mongo_errors("buildInfo"):
            info = await self.client.admin.command("buildInfo")
        return str(info.get("version", "Unknown"))

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


# ============================================================================
# Relational target
# ============================================================================


@dataclass
class BatchWriteResult:
    """Outcome of one batch insert."""
    inserted: int = 0
    skipped_duplicates: int = 0
    failed: int = 0
    failed_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class RelationalTarget(ABC):
    """DDL/DML interface over the relational store."""

    @abstractmethod
    async def can_connect(self) -> bool:
        ...

    @abstractmethod
    async def list_tables(self) -> List[str]:
        ...

    @abstractmethod
    async def get_table_columns(self, table: str) -> Dict[str, str]:
        """Column name -> data type; empty when the table does not exist."""

    @abstractmethod
    async def list_indexes(self, table: Optional[str] = None) -> List[Dict[str, str]]:
        """Dicts with ``name``, ``table`` and ``definition``."""

    @abstractmethod
    async def ensure_schema(self, tables: Sequence[str], drop_existing: bool = False) -> None:
        ...

    @abstractmethod
    async def drop_table(self, table: str) -> bool:
        """Drop with CASCADE; returns whether the table existed."""

    @abstractmethod
    async def delete_rows(self, table: str, where_sql: str, args: Sequence[Any] = ()) -> int:
        ...

    @abstractmethod
    async def insert_batch(
        self, table: str, records: List[Dict[str, Any]], skip_duplicates: bool = True
    ) -> BatchWriteResult:
        ...

    @abstractmethod
    async def count_rows(self, table: str) -> int:
        ...

    @abstractmethod
    async def execute(self, sql: str, *args: Any) -> str:
        ...

    @abstractmethod
    async def server_version(self) -> str:
        ...

    async def close(self) -> None:
        return None


_TRANSIENT_PG_ERRORS = (
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.LockNotAvailableError,
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.QueryCanceledError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
)

# Rows the server rejects on their content
_ROW_DATA_ERRORS = (
    asyncpg.exceptions.DataError,
    asyncpg.exceptions.NotNullViolationError,
    asyncpg.exceptions.CheckViolationError,
    asyncpg.exceptions.ForeignKeyViolationError,
)

# asyncpg raises a ValueError subclass when an argument cannot be encoded,
# e.g. an integer outside the int32 range
_REJECTED_ROW_ERRORS = _ROW_DATA_ERRORS + (ValueError,)


@contextlib.contextmanager
def _pg_errors(operation: str) -> Iterator[None]:
    """Translate asyncpg exceptions raised by ``operation``."""
    try:
        yield
    except (asyncpg.exceptions.InvalidPasswordError,
            asyncpg.exceptions.InvalidAuthorizationSpecificationError) as e:
        raise AuthenticationError("PostgreSQL", str(e), {"operation": operation}) from e
    except _TRANSIENT_PG_ERRORS as e:
        raise TransientStoreError(f"PostgreSQL {operation} failed: {e}") from e
    except _ROW_DATA_ERRORS as e:
        raise TransformationError(
            f"PostgreSQL {operation} rejected row data: {e}", {"operation": operation}
        ) from e
    except asyncpg.exceptions.PostgresConnectionError as e:
        raise ConnectivityError("PostgreSQL", str(e), {"operation": operation}) from e
    except OSError as e:
        raise ConnectivityError("PostgreSQL", str(e), {"operation": operation}) from e


def _coerce(value: Any, pg_type: str) -> Any:
    if value is None:
        return None
    if pg_type == "jsonb" and not isinstance(value, str):
        return dumps_json(value)
    return value


class PostgresTarget(RelationalTarget):
    """RelationalTarget backed by an asyncpg pool."""

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10, timeout: float = 30.0):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.timeout = timeout
        self._pool: Optional[asyncpg.Pool] = None

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            with _pg_errors("connect"):
                self._pool = await asyncpg.create_pool(
                    self.dsn, min_size=self.min_size, max_size=self.max_size, timeout=self.timeout
                )
        return self._pool

    async def can_connect(self) -> bool:
        try:
            pool = await self._get_pool()
            with _pg_errors("select 1"):
                await pool.fetchval("SELECT 1")
            return True
        except MigrationError as e:
            logger.warning(f"PostgreSQL not reachable: {e}")
            return False

    async def list_tables(self) -> List[str]:
        pool = await self._get_pool()
        with _pg_errors("list_tables"):
            rows = await pool.fetch(
                "SELECT table_name FROM information_schema.tables "
                "WHERE table_schema = 'public' AND table_type = 'BASE TABLE' ORDER BY table_name"
            )
        return [r["table_name"] for r in rows]

    async def get_table_columns(self, table: str) -> Dict[str, str]:
        pool = await self._get_pool()
        with _pg_errors("get_table_columns"):
            rows = await pool.fetch(
                "SELECT column_name, data_type FROM information_schema.columns "
                "WHERE table_schema = 'public' AND table_name = $1 ORDER BY ordinal_position",
                table,
            )
        return {r["column_name"]: r["data_type"] for r in rows}

    async def list_indexes(self, table: Optional[str] = None) -> List[Dict[str, str]]:
        pool = await self._get_pool()
        query = "SELECT indexname, tablename, indexdef FROM pg_indexes WHERE schemaname = 'public'"
        args: List[Any] = []
        if table:
            query += " AND tablename = $1"
            args.append(table)
        with _pg_errors("list_indexes"):
            rows = await pool.fetch(query + " ORDER BY indexname", *args)
        return [
            {"name": r["indexname"], "table": r["tablename"], "definition": r["indexdef"]}
            for r in rows
        ]

    async def ensure_schema(self, tables: Sequence[str], drop_existing: bool = False) -> None:
        pool = await self._get_pool()
        with _pg_errors("ensure_schema"):
            async with pool.acquire() as conn:
                async with conn.transaction():
                    for table in tables:
                        if drop_existing:
                            await conn.execute(f"DROP TABLE IF EXISTS {table} CASCADE")
                        await conn.execute(create_table_sql(table))
        logger.info(f"Target schema ready for {len(tables)} tables (drop_existing={drop_existing})")

    async def drop_table(self, table: str) -> bool:
        existed = table in await self.list_tables()
        await self.execute(f"DROP TABLE IF EXISTS {table} CASCADE")
        return existed

    async def delete_rows(self, table: str, where_sql: str, args: Sequence[Any] = ()) -> int:
        status = await self.execute(f"DELETE FROM {table} WHERE {where_sql}", *args)
        return int(status.split()[-1]) if status.startswith("DELETE") else 0

    async def insert_batch(
        self, table: str, records: List[Dict[str, Any]], skip_duplicates: bool = True
    ) -> BatchWriteResult:
        """
        Insert a batch in one transaction.

        With ``skip_duplicates`` every row uses ``ON CONFLICT DO NOTHING`` and
        rows the database skipped are counted. Without it a unique violation
        aborts the batch transaction. Either way a batch that fails on a
        duplicate or on rejected row data is retried one row per transaction
        so only the offending rows are reported as failed.
        """
        result = BatchWriteResult()
        if not records:
            return result

        schema = TARGET_SCHEMA[table]
        columns = [c for c in schema if any(c in r for r in records)]
        placeholders = ", ".join(
            f"${i + 1}::jsonb" if schema[c] == "jsonb" else f"${i + 1}"
            for i, c in enumerate(columns)
        )
        column_sql = ", ".join(f'"{c}"' for c in columns)
        sql = f"INSERT INTO {table} ({column_sql}) VALUES ({placeholders})"
        rows = [[_coerce(r.get(c), schema[c]) for c in columns] for r in records]

        pool = await self._get_pool()
        if skip_duplicates:
            sql += " ON CONFLICT DO NOTHING"

        try:
            with _pg_errors("insert_batch"):
                async with pool.acquire() as conn:
                    async with conn.transaction():
                        if skip_duplicates:
                            for row in rows:
                                status = await conn.execute(sql, *row)
                                if status.endswith(" 1"):
                                    result.inserted += 1
                                else:
                                    result.skipped_duplicates += 1
                        else:
                            await conn.executemany(sql, rows)
                            result.inserted = len(rows)
            return result
        except asyncpg.exceptions.UniqueViolationError:
            logger.info(f"Duplicate key in {table} batch; retrying rows individually")
        except (TransformationError, ValueError) as e:
            logger.warning(f"{table} batch rejected ({e}); retrying rows individually")

        return await self._insert_rows(pool, table, sql, records, rows)

    async def _insert_rows(
        self,
        pool: asyncpg.Pool,
        table: str,
        sql: str,
        records: List[Dict[str, Any]],
        rows: List[List[Any]],
    ) -> BatchWriteResult:
        """Insert rows one per transaction so only the offending rows fail."""
        result = BatchWriteResult()
        with _pg_errors("insert_row"):
            async with pool.acquire() as conn:
                for record, row in zip(records, rows):
                    row_id = str(record.get("original_id") or record.get("id"))
                    try:
                        async with conn.transaction():
                            status = await conn.execute(sql, *row)
                    except asyncpg.exceptions.UniqueViolationError as e:
                        result.failed += 1
                        result.failed_ids.append(row_id)
                        result.errors.append(str(DuplicateKeyError(table, str(record.get("id")))))
                        logger.debug(f"Duplicate row in {table}: {e}")
                        continue
                    except _REJECTED_ROW_ERRORS as e:
                        result.failed += 1
                        result.failed_ids.append(row_id)
                        result.errors.append(f"{table} row {row_id} rejected: {e}")
                        logger.warning(f"Rejected row {row_id} in {table}: {e}")
                        continue
                    if status.endswith(" 1"):
                        result.inserted += 1
                    else:
                        result.skipped_duplicates += 1
        return result

    async def count_rows(self, table: str) -> int:
        pool = await self._get_pool()
        with _pg_errors("count_rows"):
            return int(await pool.fetchval(f"SELECT COUNT(*) FROM {table}"))

    async def execute(self, sql: str, *args: Any) -> str:
        pool = await self._get_pool()
        with _pg_errors("execute"):
            return await pool.execute(sql, *args)

    async def server_version(self) -> str:
        pool = await self._get_pool()
        with _pg_errors("server_version"):
            return str(await pool.fetchval("SHOW server_version"))

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
