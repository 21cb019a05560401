"""
Shared Test Fixtures
====================
In-memory stand-ins for the document source, the relational target and the
dump/restore process runner, so every service can be exercised without a
MongoDB or PostgreSQL server.
"""

import asyncio
import gzip
import re
from typing import Any, Callable, Dict, List, Optional, Sequence

import pytest

from nocturne_migrate.errors import ConnectivityError
from nocturne_migrate.migration.backup import MONGO_ARCHIVE_MAGIC
from nocturne_migrate.migration.repository import JsonFileRepository
from nocturne_migrate.migration.stores import (
    TARGET_SCHEMA,
    BatchWriteResult,
    DocumentSource,
    RelationalTarget,
)
from nocturne_migrate.process import ProcessResult

BASE_MILLS = 1_700_000_000_000


# =============================================================================
# Document factories
# =============================================================================

def make_entries(count: int, start: int = 1) -> List[Dict[str, Any]]:
    """Glucose entries with integer ids ``start..start+count-1``, one minute apart."""
    return [
        {
            "_id": i,
            "date": BASE_MILLS + i * 60_000,
            "sgv": 100 + (i % 50),
            "direction": "Flat",
            "type": "sgv",
            "device": "xDrip",
        }
        for i in range(start, start + count)
    ]


def make_treatments(count: int, start: int = 1) -> List[Dict[str, Any]]:
    return [
        {
            "_id": f"t{i:05d}",
            "eventType": "Meal Bolus",
            "mills": BASE_MILLS + i * 60_000,
            "insulin": 1.5,
            "carbs": 30,
        }
        for i in range(start, start + count)
    ]


# =============================================================================
# Fakes
# =============================================================================

class FakeDocumentSource(DocumentSource):
    """DocumentSource over a dict of collection name -> documents."""

    def __init__(self, collections: Optional[Dict[str, List[Dict[str, Any]]]] = None,
                 indexes: Optional[Dict[str, List[Dict[str, Any]]]] = None,
                 database_name: str = "nocturne"):
        self.collections = collections if collections is not None else {}
        self.indexes = indexes or {}
        self.database_name = database_name
        self.reachable = True
        self.fetch_calls = 0
        self.fetch_failures: List[BaseException] = []
        self.closed = False

    def _filtered(self, collection, start_date=None, end_date=None):
        documents = self.collections.get(collection, [])
        if start_date is None and end_date is None:
            return list(documents)
        low = int(start_date.timestamp() * 1000) if start_date else None
        high = int(end_date.timestamp() * 1000) if end_date else None
        selected = []
        for document in documents:
            mills = document.get("date", document.get("mills"))
            if mills is None:
                continue
            if low is not None and mills < low:
                continue
            if high is not None and mills > high:
                continue
            selected.append(document)
        return selected

    async def list_collections(self):
        return sorted(self.collections)

    async def count_documents(self, collection, start_date=None, end_date=None):
        return len(self._filtered(collection, start_date, end_date))

    async def fetch_batch(self, collection, after_id, limit, start_date=None, end_date=None):
        self.fetch_calls += 1
        if self.fetch_failures:
            raise self.fetch_failures.pop(0)
        documents = sorted(self._filtered(collection, start_date, end_date), key=lambda d: d["_id"])
        if after_id is not None:
            documents = [d for d in documents if d["_id"] > after_id]
        return [dict(d) for d in documents[:limit]]

    async def sample_documents(self, collection, size):
        return [dict(d) for d in self.collections.get(collection, [])[:size]]

    async def find(self, collection, query=None, limit=0, sort=None):
        """Honors ``sort`` on a single field; ``query`` is ignored."""
        documents = [dict(d) for d in self.collections.get(collection, [])]
        if sort:
            name, direction = sort[0]
            documents = sorted(
                (d for d in documents if d.get(name) is not None),
                key=lambda d: d[name], reverse=direction < 0,
            )
        return documents[:limit] if limit else documents

    async def list_indexes(self, collection):
        return self.indexes.get(collection, [{"name": "_id_", "key": {"_id": 1}}])

    async def find_duplicate_ids(self, collection, limit=100):
        return []

    async def ping(self):
        if not self.reachable:
            raise ConnectivityError("MongoDB", "connection refused")

    async def server_version(self):
        return "7.0.4"

    async def close(self):
        self.closed = True


_CONDITION_RE = re.compile(r"(mills >= |mills <= |original_id = ANY\()\$(\d+)")


class FakeRelationalTarget(RelationalTarget):
    """RelationalTarget keeping rows in dicts keyed by primary key."""

    def __init__(self):
        self.tables: Dict[str, Dict[Any, Dict[str, Any]]] = {}
        self.indexes: Dict[str, Dict[str, str]] = {}
        self.executed: List[str] = []
        self.reachable = True
        self.insert_calls = 0
        self.write_failures: List[BaseException] = []
        self.on_insert: Optional[Callable[[str, int], None]] = None
        self.closed = False

    async def can_connect(self):
        return self.reachable

    async def list_tables(self):
        return sorted(self.tables)

    async def get_table_columns(self, table):
        return dict(TARGET_SCHEMA[table]) if table in self.tables else {}

    async def list_indexes(self, table=None):
        return [
            {"name": name, "table": info["table"], "definition": info["definition"]}
            for name, info in self.indexes.items()
            if table is None or info["table"] == table
        ]

    async def ensure_schema(self, tables: Sequence[str], drop_existing: bool = False):
        for table in tables:
            if drop_existing:
                self.tables.pop(table, None)
            self.tables.setdefault(table, {})

    async def drop_table(self, table):
        existed = table in self.tables
        self.tables.pop(table, None)
        for name in [n for n, i in self.indexes.items() if i["table"] == table]:
            del self.indexes[name]
        return existed

    async def delete_rows(self, table, where_sql, args=()):
        rows = self.tables.get(table, {})
        conditions = _CONDITION_RE.findall(where_sql)

        def matches(row):
            for operator, position in conditions:
                value = args[int(position) - 1]
                if operator == "mills >= " and not (row.get("mills") is not None and row["mills"] >= value):
                    return False
                if operator == "mills <= " and not (row.get("mills") is not None and row["mills"] <= value):
                    return False
                if operator.startswith("original_id") and row.get("original_id") not in value:
                    return False
            return True

        doomed = [key for key, row in rows.items() if matches(row)]
        for key in doomed:
            del rows[key]
        return len(doomed)

    async def insert_batch(self, table, records, skip_duplicates=True):
        self.insert_calls += 1
        if self.write_failures:
            raise self.write_failures.pop(0)
        rows = self.tables.setdefault(table, {})
        result = BatchWriteResult()
        for record in records:
            key = record["id"]
            if key in rows:
                if skip_duplicates:
                    result.skipped_duplicates += 1
                else:
                    result.failed += 1
                    result.failed_ids.append(str(record.get("original_id")))
                continue
            rows[key] = dict(record)
            result.inserted += 1
        if self.on_insert is not None:
            self.on_insert(table, self.insert_calls)
        return result

    async def count_rows(self, table):
        return len(self.tables.get(table, {}))

    async def execute(self, sql, *args):
        self.executed.append(sql)
        created = re.match(r"CREATE (?:UNIQUE )?INDEX (?:CONCURRENTLY )?IF NOT EXISTS (\S+) ON (\S+)", sql)
        if created:
            self.indexes[created.group(1)] = {"table": created.group(2), "definition": sql}
            return "CREATE INDEX"
        dropped = re.match(r"DROP INDEX (?:CONCURRENTLY )?IF EXISTS (\S+)", sql)
        if dropped:
            self.indexes.pop(dropped.group(1), None)
            return "DROP INDEX"
        return "OK"

    async def server_version(self):
        return "16.1"

    async def close(self):
        self.closed = True


class FakeProcessRunner:
    """
    Stands in for ``ProcessRunner``.

    mongodump/pg_dump write a small file carrying the real format signature;
    mongorestore reports ``restored_documents`` on stderr.
    """

    def __init__(self, return_code: int = 0, timed_out: bool = False, missing: bool = False,
                 restored_documents: int = 0):
        self.return_code = return_code
        self.timed_out = timed_out
        self.missing = missing
        self.restored_documents = restored_documents
        self.calls: List[Dict[str, Any]] = []

    async def run(self, program, args, timeout=None, cancel_event=None, env=None, cwd=None):
        self.calls.append({"program": program, "args": list(args), "env": env, "timeout": timeout})
        if self.missing:
            raise FileNotFoundError(program)
        result = ProcessResult(program=program, args=list(args), return_code=self.return_code)
        if self.timed_out:
            result.timed_out = True
            result.return_code = None
            return result
        if cancel_event is not None and cancel_event.is_set():
            result.cancelled = True
            return result
        if self.return_code != 0:
            result.stderr = "Failed: error connecting to db server"
            return result

        options = dict(a.split("=", 1) for a in args if a.startswith("--") and "=" in a)
        if program.endswith("mongodump"):
            payload = MONGO_ARCHIVE_MAGIC + b"\x00fake mongodump archive"
            self._write(options["--archive"], payload, "--gzip" in args)
        elif program.endswith("pg_dump"):
            payload = b"--\n-- PostgreSQL database dump\n--\nSET statement_timeout = 0;\n"
            self._write(options["--file"], payload, any(a.startswith("--compress") for a in args))
        elif program.endswith("mongorestore"):
            result.stderr = (
                f"{self.restored_documents} document(s) restored successfully. "
                f"0 document(s) failed to restore."
            )
        return result

    @staticmethod
    def _write(path: str, payload: bytes, compress: bool) -> None:
        with open(path, "wb") as f:
            f.write(gzip.compress(payload) if compress else payload)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def source():
    return FakeDocumentSource()


@pytest.fixture
def target():
    return FakeRelationalTarget()


@pytest.fixture
def runner():
    return FakeProcessRunner()


@pytest.fixture
def repository(tmp_path):
    return JsonFileRepository(str(tmp_path / "state"))


def run(coro):
    """Drive a coroutine to completion; tests use this instead of an async plugin."""
    return asyncio.run(coro)


async def no_sleep(_seconds: float) -> None:
    return None
