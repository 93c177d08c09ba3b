"""Shared state store for proposals and verification sessions.

Service instances are stateless; everything they coordinate on lives here.
The store exposes exactly three primitives and no read-modify-write helpers:

- ``get(key)``: current record (value + version token), or None once expired
- ``create(key, value, ttl)``: insert if absent (an expired record counts as absent)
- ``compare_and_swap(key, expected_version, value)``: replace the value only if
  the stored version still equals ``expected_version``; bumps the version

Callers merge state by re-reading and retrying on a lost CAS. Two concurrent
writers that both read version N cannot both commit: exactly one UPDATE
matches ``version = N``.

Backends:
- SqliteStateStore: WAL-mode SQLite file shared by every process on the host
- MemoryStateStore: single-process, lock-guarded (tests / dev)
- RedisStateStore: WATCH/MULTI/EXEC optimistic transactions (multi-host)
"""

from __future__ import annotations

import abc
import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

from .errors import gov_error, GOV_E_STORE_UNAVAILABLE
from .lockdown import StoreCircuitBreaker, StoreUnavailableError

logger = logging.getLogger("quorum_gateway.store")


def _now_epoch() -> float:
    return time.time()


@dataclass(frozen=True)
class StoredRecord:
    key: str
    version: int
    value: Dict[str, Any]
    expires_at: float


class StateStore(abc.ABC):
    """Keyed TTL records with atomic conditional updates."""

    @abc.abstractmethod
    def get(self, key: str) -> Optional[StoredRecord]:
        raise NotImplementedError

    @abc.abstractmethod
    def create(self, key: str, value: Dict[str, Any], ttl_seconds: float) -> bool:
        """Insert ``value`` at version 1. Returns False if a live record exists."""
        raise NotImplementedError

    @abc.abstractmethod
    def compare_and_swap(
        self,
        key: str,
        expected_version: int,
        value: Dict[str, Any],
        ttl_seconds: Optional[float] = None,
    ) -> bool:
        """Replace a live record iff its version is ``expected_version``.

        ``ttl_seconds=None`` keeps the current expiry.
        """
        raise NotImplementedError

    def close(self) -> None:
        return None


class SqliteConnector:
    """Per-operation SQLite connections guarded by the store circuit breaker.

    Write operations run inside ``BEGIN IMMEDIATE`` so the database write lock
    is held from the first read of the transaction to its commit; that is what
    makes read-then-insert sequences atomic across processes.
    """

    def __init__(self, db_path: str, circuit: Optional[StoreCircuitBreaker] = None):
        self.db_path = str(db_path)
        self.circuit = circuit or StoreCircuitBreaker()

    @contextmanager
    def connect(self, *, write: bool = False) -> Iterator[sqlite3.Connection]:
        self.circuit.raise_if_open()
        start = time.monotonic()
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=float(self.circuit.config.connect_timeout_seconds),
                isolation_level=None,
            )
            try:
                if write:
                    conn.execute("BEGIN IMMEDIATE")
                    try:
                        yield conn
                    except BaseException:
                        conn.execute("ROLLBACK")
                        raise
                    conn.execute("COMMIT")
                else:
                    yield conn
            finally:
                conn.close()
        except sqlite3.OperationalError as e:
            if self.circuit.counts_as_failure(str(e)):
                self.circuit.record_failure()
            logger.error("%s store operation failed on %s: %s", self.circuit.name, self.db_path, e)
            raise gov_error(
                StoreUnavailableError,
                GOV_E_STORE_UNAVAILABLE,
                f"{self.circuit.name} store operation failed",
                http_status=503,
                store=self.circuit.name,
                error=str(e),
            ) from e
        self.circuit.record_success((time.monotonic() - start) * 1000.0)

    def init_schema(self, *statements: str) -> None:
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
        with self.connect(write=True) as conn:
            for stmt in statements:
                conn.execute(stmt)


class SqliteStateStore(StateStore):
    """State store on a shared SQLite file."""

    def __init__(self, db_path: str = "quorum_gateway.db", circuit: Optional[StoreCircuitBreaker] = None):
        self.db_path = str(db_path)
        self._sql = SqliteConnector(self.db_path, circuit)
        self.circuit = self._sql.circuit
        self._sql.init_schema(
            """
            CREATE TABLE IF NOT EXISTS records (
                key TEXT PRIMARY KEY,
                version INTEGER NOT NULL,
                value_json TEXT NOT NULL,
                expires_at REAL NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS records_expires_at ON records (expires_at)",
        )

    def get(self, key: str) -> Optional[StoredRecord]:
        with self._sql.connect() as conn:
            row = conn.execute(
                "SELECT version, value_json, expires_at FROM records WHERE key = ? AND expires_at > ?",
                (key, _now_epoch()),
            ).fetchone()
        if row is None:
            return None
        return StoredRecord(key=key, version=int(row[0]), value=json.loads(row[1]), expires_at=float(row[2]))

    def create(self, key: str, value: Dict[str, Any], ttl_seconds: float) -> bool:
        now = _now_epoch()
        with self._sql.connect(write=True) as conn:
            conn.execute("DELETE FROM records WHERE key = ? AND expires_at <= ?", (key, now))
            try:
                conn.execute(
                    "INSERT INTO records (key, version, value_json, expires_at) VALUES (?, 1, ?, ?)",
                    (key, json.dumps(value, sort_keys=True), now + float(ttl_seconds)),
                )
            except sqlite3.IntegrityError:
                return False
        return True

    def compare_and_swap(
        self,
        key: str,
        expected_version: int,
        value: Dict[str, Any],
        ttl_seconds: Optional[float] = None,
    ) -> bool:
        now = _now_epoch()
        new_expiry = None if ttl_seconds is None else now + float(ttl_seconds)
        with self._sql.connect(write=True) as conn:
            cur = conn.execute(
                """
                UPDATE records
                SET version = version + 1,
                    value_json = ?,
                    expires_at = COALESCE(?, expires_at)
                WHERE key = ? AND version = ? AND expires_at > ?
                """,
                (json.dumps(value, sort_keys=True), new_expiry, key, int(expected_version), now),
            )
            return cur.rowcount == 1

    def purge_expired(self) -> int:
        """Delete expired records. Returns number of rows deleted."""
        with self._sql.connect(write=True) as conn:
            cur = conn.execute("DELETE FROM records WHERE expires_at <= ?", (_now_epoch(),))
            return int(cur.rowcount or 0)


class MemoryStateStore(StateStore):
    """Single-process state store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, StoredRecord] = {}

    def _live(self, key: str, now: float) -> Optional[StoredRecord]:
        rec = self._records.get(key)
        if rec is None:
            return None
        if rec.expires_at <= now:
            del self._records[key]
            return None
        return rec

    def get(self, key: str) -> Optional[StoredRecord]:
        with self._lock:
            rec = self._live(key, _now_epoch())
            if rec is None:
                return None
            # Hand out a copy so callers cannot mutate stored state in place.
            return StoredRecord(rec.key, rec.version, json.loads(json.dumps(rec.value)), rec.expires_at)

    def create(self, key: str, value: Dict[str, Any], ttl_seconds: float) -> bool:
        now = _now_epoch()
        with self._lock:
            if self._live(key, now) is not None:
                return False
            self._records[key] = StoredRecord(key, 1, json.loads(json.dumps(value)), now + float(ttl_seconds))
            return True

    def compare_and_swap(
        self,
        key: str,
        expected_version: int,
        value: Dict[str, Any],
        ttl_seconds: Optional[float] = None,
    ) -> bool:
        now = _now_epoch()
        with self._lock:
            rec = self._live(key, now)
            if rec is None or rec.version != int(expected_version):
                return False
            expires_at = rec.expires_at if ttl_seconds is None else now + float(ttl_seconds)
            self._records[key] = StoredRecord(key, rec.version + 1, json.loads(json.dumps(value)), expires_at)
            return True


class RedisStateStore(StateStore):
    """Redis-backed state store using optimistic WATCH/MULTI/EXEC transactions.

    Each key holds ``{"version": n, "value": {...}}`` with a native Redis TTL.
    Install with ``pip install quorum-gateway[redis]``.
    """

    def __init__(self, redis_url: str, *, namespace: str = "quorum", socket_timeout: float = 2.0):
        import redis as _redis_lib

        self._redis_lib = _redis_lib
        self._ns = namespace
        self._client = _redis_lib.Redis.from_url(
            redis_url,
            socket_connect_timeout=socket_timeout,
            socket_timeout=socket_timeout,
            decode_responses=True,
        )
        logger.info("redis state store configured: %s", redis_url)

    def _k(self, key: str) -> str:
        return f"{self._ns}:{key}"

    def _unavailable(self, e: Exception) -> StoreUnavailableError:
        logger.error("redis state store operation failed: %s", e)
        return gov_error(
            StoreUnavailableError,
            GOV_E_STORE_UNAVAILABLE,
            "state store operation failed",
            http_status=503,
            error=str(e),
        )

    def get(self, key: str) -> Optional[StoredRecord]:
        try:
            pipe = self._client.pipeline(transaction=False)
            pipe.get(self._k(key))
            pipe.pttl(self._k(key))
            raw, pttl = pipe.execute()
        except self._redis_lib.RedisError as e:
            raise self._unavailable(e) from e
        if raw is None:
            return None
        doc = json.loads(raw)
        expires_at = _now_epoch() + (max(int(pttl), 0) / 1000.0)
        return StoredRecord(key=key, version=int(doc["version"]), value=doc["value"], expires_at=expires_at)

    def create(self, key: str, value: Dict[str, Any], ttl_seconds: float) -> bool:
        doc = json.dumps({"version": 1, "value": value}, sort_keys=True)
        try:
            return bool(self._client.set(self._k(key), doc, nx=True, px=int(float(ttl_seconds) * 1000)))
        except self._redis_lib.RedisError as e:
            raise self._unavailable(e) from e

    def compare_and_swap(
        self,
        key: str,
        expected_version: int,
        value: Dict[str, Any],
        ttl_seconds: Optional[float] = None,
    ) -> bool:
        rkey = self._k(key)
        try:
            with self._client.pipeline() as pipe:
                try:
                    pipe.watch(rkey)
                    raw = pipe.get(rkey)
                    if raw is None or int(json.loads(raw)["version"]) != int(expected_version):
                        pipe.unwatch()
                        return False
                    doc = json.dumps({"version": int(expected_version) + 1, "value": value}, sort_keys=True)
                    pipe.multi()
                    if ttl_seconds is None:
                        pipe.set(rkey, doc, keepttl=True)
                    else:
                        pipe.set(rkey, doc, px=int(float(ttl_seconds) * 1000))
                    pipe.execute()
                    return True
                except self._redis_lib.WatchError:
                    return False
        except self._redis_lib.RedisError as e:
            raise self._unavailable(e) from e

    def close(self) -> None:
        self._client.close()
