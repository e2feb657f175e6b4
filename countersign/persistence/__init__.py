"""
Countersign - Persistence Port

Typed CRUD with conditional update over named collections. Every record
carries an integer ``version`` (first write is version 1) and ``updated_at``.
A put with ``expected_version=0`` means "must not exist yet".

Implementations:
- InMemoryStore: asyncio-safe dict store with fault injection for tests
- SQLiteStore: file-backed store for single-host deployments and the CLI
"""

import asyncio
import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, TypeVar

from ..core.clock import Clock, SystemClock, format_datetime
from ..core.config import PersistenceBackend, PersistenceConfig
from ..core.exceptions import ConflictError, DependencyUnavailableError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_DELAYS_MS = (50, 100, 200, 400)
MAX_BATCH_WRITES = 500


class Collections:
    """Collection names used by the core."""
    DOCUMENTS = "documents"
    WORKFLOW_DEFINITIONS = "workflow_definitions"
    WORKFLOW_INSTANCES = "workflow_instances"
    PARTICIPANTS = "participants"
    STAGES = "stages"
    SIGNATURES = "signatures"
    TIMESTAMPS = "timestamps"
    COMPOSITES = "composites"
    VALIDATION_REPORTS = "validation_reports"
    POLICIES = "policies"
    RELATIONSHIPS = "relationships"
    DECISION_CACHE = "decision_cache"
    SUBJECTS = "subjects"

    @staticmethod
    def audit(stream_id: str) -> str:
        safe = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in stream_id)
        return f"audit_{safe}"


@dataclass
class Record:
    """A stored record with its concurrency metadata."""
    collection: str
    id: str
    data: Dict[str, Any]
    version: int
    updated_at: str

    def to_dict(self) -> Dict[str, Any]:
        result = dict(self.data)
        result["id"] = self.id
        result["version"] = self.version
        result["updated_at"] = self.updated_at
        return result


@dataclass
class PutResult:
    """Outcome of a conditional write."""
    ok: bool
    new_version: Optional[int] = None
    current_version: Optional[int] = None

    @property
    def conflict(self) -> bool:
        return not self.ok

    def raise_for_conflict(self, collection: str, entity_id: str, expected_version: int) -> int:
        if not self.ok:
            raise ConflictError(
                f"Version conflict on {collection}/{entity_id}",
                collection=collection,
                entity_id=entity_id,
                expected_version=expected_version,
                current_version=self.current_version,
            )
        return self.new_version


@dataclass
class Write:
    """One element of a batch."""
    id: str
    data: Dict[str, Any]
    expected_version: int


@dataclass
class BatchResult:
    ok: bool
    versions: Dict[str, int] = field(default_factory=dict)
    conflicts: Dict[str, Optional[int]] = field(default_factory=dict)


Predicate = Callable[[Dict[str, Any]], bool]


class Store(ABC):
    """Persistence port."""

    @abstractmethod
    async def get(self, collection: str, record_id: str) -> Optional[Record]:
        """Return the record or None when absent."""

    @abstractmethod
    async def put(
        self,
        collection: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: int,
    ) -> PutResult:
        """Conditional write; conflict when expected_version != current."""

    @abstractmethod
    async def list(
        self,
        collection: str,
        predicate: Optional[Predicate] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Record]:
        """
        List records.

        ``order`` is a field name, optionally prefixed with ``-`` for
        descending order; ``id`` orders by record id.
        """

    @abstractmethod
    async def batch(self, collection: str, writes: Sequence[Write]) -> BatchResult:
        """All-or-nothing conditional writes to one collection."""

    @abstractmethod
    async def delete(self, collection: str, record_id: str, expected_version: int) -> PutResult:
        """Conditional delete."""

    async def require(self, collection: str, record_id: str) -> Record:
        record = await self.get(collection, record_id)
        if record is None:
            raise NotFoundError(
                f"{collection}/{record_id} not found",
                collection=collection,
                entity_id=record_id,
            )
        return record

    async def close(self) -> None:
        return None


def _sort_records(records: List[Record], order: Optional[str]) -> List[Record]:
    if not order:
        return records
    descending = order.startswith("-")
    key = order.lstrip("-")

    def sort_key(record: Record) -> Tuple[int, Any]:
        if key == "id":
            return (0, record.id)
        if key in ("version", "updated_at"):
            return (0, getattr(record, key))
        value = record.data.get(key)
        return (0 if value is not None else 1, value if value is not None else "")

    return sorted(records, key=sort_key, reverse=descending)


def _check_batch_size(writes: Sequence[Write]) -> None:
    if len(writes) > MAX_BATCH_WRITES:
        raise ValidationError(
            f"Batch of {len(writes)} writes exceeds the limit of {MAX_BATCH_WRITES}",
            code="BATCH_TOO_LARGE",
        )
    ids = [w.id for w in writes]
    if len(set(ids)) != len(ids):
        raise ValidationError("Batch contains duplicate record ids", code="BATCH_DUPLICATE_ID")


class InMemoryStore(Store):
    """
    Dict-backed store.

    ``fail_next(n)`` makes the next n operations raise
    DependencyUnavailableError, and ``unavailable`` can mark whole
    collections as unreachable.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._data: Dict[str, Dict[str, Record]] = {}
        self._lock = asyncio.Lock()
        self._fail_remaining = 0
        self.unavailable: Set[str] = set()
        self.operations = 0

    def fail_next(self, count: int = 1) -> None:
        self._fail_remaining = count

    def _check_available(self, collection: str) -> None:
        self.operations += 1
        if collection in self.unavailable or "*" in self.unavailable:
            raise DependencyUnavailableError(
                f"Collection {collection} unavailable", dependency="persistence"
            )
        if self._fail_remaining > 0:
            self._fail_remaining -= 1
            raise DependencyUnavailableError(
                f"Injected failure on {collection}", dependency="persistence"
            )

    def _now(self) -> str:
        return format_datetime(self._clock.now())

    async def get(self, collection: str, record_id: str) -> Optional[Record]:
        async with self._lock:
            self._check_available(collection)
            record = self._data.get(collection, {}).get(record_id)
            if record is None:
                return None
            return Record(collection, record.id, json.loads(json.dumps(record.data)), record.version, record.updated_at)

    async def put(self, collection, record_id, data, expected_version) -> PutResult:
        async with self._lock:
            self._check_available(collection)
            return self._put_locked(collection, record_id, data, expected_version)

    def _put_locked(self, collection, record_id, data, expected_version) -> PutResult:
        table = self._data.setdefault(collection, {})
        current = table.get(record_id)
        current_version = current.version if current else 0
        if current_version != expected_version:
            return PutResult(ok=False, current_version=current_version)
        new_version = current_version + 1
        # Round-trip through JSON so callers cannot mutate stored state.
        table[record_id] = Record(
            collection, record_id, json.loads(json.dumps(data)), new_version, self._now()
        )
        return PutResult(ok=True, new_version=new_version)

    async def list(self, collection, predicate=None, order=None, limit=None) -> List[Record]:
        async with self._lock:
            self._check_available(collection)
            records = [
                Record(collection, r.id, json.loads(json.dumps(r.data)), r.version, r.updated_at)
                for r in self._data.get(collection, {}).values()
            ]
        if predicate is not None:
            records = [r for r in records if predicate(r.data)]
        records = _sort_records(records, order)
        if limit is not None:
            records = records[:limit]
        return records

    async def batch(self, collection: str, writes: Sequence[Write]) -> BatchResult:
        _check_batch_size(writes)
        async with self._lock:
            self._check_available(collection)
            table = self._data.setdefault(collection, {})
            conflicts = {}
            for write in writes:
                current = table.get(write.id)
                current_version = current.version if current else 0
                if current_version != write.expected_version:
                    conflicts[write.id] = current_version
            if conflicts:
                return BatchResult(ok=False, conflicts=conflicts)
            versions = {}
            for write in writes:
                result = self._put_locked(collection, write.id, write.data, write.expected_version)
                versions[write.id] = result.new_version
            return BatchResult(ok=True, versions=versions)

    async def delete(self, collection, record_id, expected_version) -> PutResult:
        async with self._lock:
            self._check_available(collection)
            table = self._data.setdefault(collection, {})
            current = table.get(record_id)
            current_version = current.version if current else 0
            if current is None or current_version != expected_version:
                return PutResult(ok=False, current_version=current_version)
            del table[record_id]
            return PutResult(ok=True, new_version=0)

    def raw(self, collection: str, record_id: str) -> Record:
        """Direct access to the stored record (tests and repair tooling)."""
        return self._data[collection][record_id]


class SQLiteStore(Store):
    """
    Persistent store using SQLite.

    One table holds every collection; rows are keyed by (collection, id)
    and the record body is stored as JSON. Calls run in a worker thread so
    the event loop is not blocked on disk I/O.
    """

    def __init__(self, db_path: Optional[Path] = None, clock: Optional[Clock] = None):
        if db_path is None:
            db_path = Path.cwd() / "data" / "countersign.db"

        self._db_path = Path(db_path)
        self._clock = clock or SystemClock()
        self._lock = threading.RLock()

        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @property
    def path(self) -> Path:
        return self._db_path

    def _init_db(self) -> None:
        """Initialize the SQLite database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS records (
                    collection TEXT NOT NULL,
                    id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    updated_at TEXT NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (collection, id)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_records_collection
                ON records(collection)
            """)
            conn.commit()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection."""
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=30.0,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        return conn

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.OperationalError as e:
            raise DependencyUnavailableError(
                f"SQLite store unavailable: {e}", dependency="persistence"
            ) from e

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> Record:
        return Record(
            collection=row["collection"],
            id=row["id"],
            data=json.loads(row["data"]),
            version=row["version"],
            updated_at=row["updated_at"],
        )

    def _get_sync(self, collection: str, record_id: str) -> Optional[Record]:
        with self._lock:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM records WHERE collection = ? AND id = ?",
                    (collection, record_id),
                ).fetchone()
            finally:
                conn.close()
        return self._row_to_record(row) if row else None

    def _put_in_tx(self, conn: sqlite3.Connection, collection, record_id, data, expected_version) -> PutResult:
        row = conn.execute(
            "SELECT version FROM records WHERE collection = ? AND id = ?",
            (collection, record_id),
        ).fetchone()
        current_version = row["version"] if row else 0
        if current_version != expected_version:
            return PutResult(ok=False, current_version=current_version)
        new_version = current_version + 1
        conn.execute(
            """
            INSERT INTO records (collection, id, version, updated_at, data)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(collection, id) DO UPDATE SET
                version = excluded.version,
                updated_at = excluded.updated_at,
                data = excluded.data
            """,
            (
                collection,
                record_id,
                new_version,
                format_datetime(self._clock.now()),
                json.dumps(data, sort_keys=True),
            ),
        )
        return PutResult(ok=True, new_version=new_version)

    def _put_sync(self, collection, record_id, data, expected_version) -> PutResult:
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                result = self._put_in_tx(conn, collection, record_id, data, expected_version)
                conn.execute("COMMIT" if result.ok else "ROLLBACK")
                return result
            except sqlite3.Error:
                conn.rollback()
                raise
            finally:
                conn.close()

    def _list_sync(self, collection: str) -> List[Record]:
        with self._lock:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM records WHERE collection = ? ORDER BY id",
                    (collection,),
                ).fetchall()
            finally:
                conn.close()
        return [self._row_to_record(row) for row in rows]

    def _batch_sync(self, collection: str, writes: Sequence[Write]) -> BatchResult:
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                versions = {}
                for write in writes:
                    result = self._put_in_tx(conn, collection, write.id, write.data, write.expected_version)
                    if not result.ok:
                        conn.execute("ROLLBACK")
                        return BatchResult(ok=False, conflicts={write.id: result.current_version})
                    versions[write.id] = result.new_version
                conn.execute("COMMIT")
                return BatchResult(ok=True, versions=versions)
            except sqlite3.Error:
                conn.rollback()
                raise
            finally:
                conn.close()

    def _delete_sync(self, collection, record_id, expected_version) -> PutResult:
        with self._lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "DELETE FROM records WHERE collection = ? AND id = ? AND version = ?",
                    (collection, record_id, expected_version),
                )
                conn.commit()
                if cursor.rowcount == 1:
                    return PutResult(ok=True, new_version=0)
                row = conn.execute(
                    "SELECT version FROM records WHERE collection = ? AND id = ?",
                    (collection, record_id),
                ).fetchone()
                return PutResult(ok=False, current_version=row["version"] if row else 0)
            finally:
                conn.close()

    def tamper(self, collection: str, record_id: str, data: Dict[str, Any]) -> None:
        """Overwrite a row without touching its version (repair and forensic tooling)."""
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute(
                    "UPDATE records SET data = ? WHERE collection = ? AND id = ?",
                    (json.dumps(data, sort_keys=True), collection, record_id),
                )
                conn.commit()
            finally:
                conn.close()

    async def get(self, collection, record_id):
        return await self._run(self._get_sync, collection, record_id)

    async def put(self, collection, record_id, data, expected_version):
        return await self._run(self._put_sync, collection, record_id, data, expected_version)

    async def list(self, collection, predicate=None, order=None, limit=None):
        records = await self._run(self._list_sync, collection)
        if predicate is not None:
            records = [r for r in records if predicate(r.data)]
        records = _sort_records(records, order)
        if limit is not None:
            records = records[:limit]
        return records

    async def batch(self, collection, writes):
        _check_batch_size(writes)
        return await self._run(self._batch_sync, collection, list(writes))

    async def delete(self, collection, record_id, expected_version):
        return await self._run(self._delete_sync, collection, record_id, expected_version)


async def retry_unavailable(
    operation: Callable[[], Awaitable[T]],
    delays_ms: Iterable[int] = DEFAULT_RETRY_DELAYS_MS,
    description: str = "persistence operation",
) -> T:
    """
    Run ``operation`` retrying DependencyUnavailableError with backoff.

    The number of tries equals the number of delays (4 by default); the
    final failure is re-raised with the attempt count.
    """
    delays = list(delays_ms)
    for attempt, delay in enumerate(delays, start=1):
        try:
            return await operation()
        except DependencyUnavailableError as e:
            if attempt == len(delays):
                logger.error(f"{description} failed after {attempt} attempts: {e}")
                e.attempts = attempt
                e.details["attempts"] = attempt
                raise
            logger.warning(f"{description} unavailable (attempt {attempt}), retrying in {delay}ms")
            await asyncio.sleep(delay / 1000.0)
    raise DependencyUnavailableError(f"{description} was not attempted", dependency="persistence")


def create_store(config: PersistenceConfig, clock: Optional[Clock] = None) -> Store:
    """Build the store named by PersistenceConfig."""
    if config.backend == PersistenceBackend.SQLITE:
        return SQLiteStore(Path(config.sqlite_path), clock=clock)
    return InMemoryStore(clock=clock)
