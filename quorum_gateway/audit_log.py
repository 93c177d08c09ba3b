"""Append-only audit log.

Every backend hands out 1-based indices that are strictly increasing and
gap-free, and none of them can delete or rewrite an entry.

The ordered-store backends also chain entries:
- body_hash: SHA256 of the canonical body JSON (hex)
- entry_hash: SHA256(prev_hash || body_hash || index || timestamp) (hex)

so any after-the-fact edit, deletion or reordering is caught by
``verify_chain``.

Appends are idempotent: each entry carries a dedup key (the caller's
idempotency key, or the SHA256 of the canonical body) and appending under a
key that is already present returns the existing receipt with
``duplicate=True`` instead of writing a second entry.
"""

from __future__ import annotations

import abc
import json
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .crypto import canonical_json_dumps, hash_canonical, safe_hash_encode, sha256_hex
from .errors import NotFoundError, gov_error, GOV_E_AUDIT_ENTRY_NOT_FOUND
from .lockdown import StoreCircuitBreaker
from .store import SqliteConnector

GENESIS_HASH = "0" * 64


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _entry_hash(prev_hash: str, body_hash: str, index: int, timestamp: str) -> str:
    return sha256_hex(safe_hash_encode([prev_hash, body_hash, str(index), timestamp]))


@dataclass(frozen=True)
class AuditReceipt:
    uuid: str
    index: int
    duplicate: bool = field(default=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"uuid": self.uuid, "logIndex": self.index}


@dataclass(frozen=True)
class AuditEntry:
    uuid: str
    index: int
    timestamp: str
    body: Dict[str, Any]
    prev_hash: Optional[str] = None
    entry_hash: Optional[str] = None

    @property
    def receipt(self) -> AuditReceipt:
        return AuditReceipt(uuid=self.uuid, index=self.index)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "uuid": self.uuid,
            "logIndex": self.index,
            "integratedTime": self.timestamp,
            "body": self.body,
        }
        if self.entry_hash is not None:
            d["prevHash"] = self.prev_hash
            d["entryHash"] = self.entry_hash
        return d


class AuditLog(abc.ABC):
    """Append-only log interface."""

    @abc.abstractmethod
    def append(self, body: Dict[str, Any], *, idempotency_key: Optional[str] = None) -> AuditReceipt:
        raise NotImplementedError

    @abc.abstractmethod
    def get(self, index: int) -> AuditEntry:
        """Entry at ``index``; NotFoundError when there is none."""
        raise NotImplementedError

    @abc.abstractmethod
    def range(self, start: int, end: int) -> List[AuditEntry]:
        """Entries with ``start <= index < end``, in index order."""
        raise NotImplementedError

    @abc.abstractmethod
    def size(self) -> int:
        raise NotImplementedError


def dedup_key_for(body: Dict[str, Any], idempotency_key: Optional[str] = None) -> str:
    key = (idempotency_key or "").strip()
    return key or hash_canonical(body)


def _not_found(index: int) -> NotFoundError:
    return gov_error(NotFoundError, GOV_E_AUDIT_ENTRY_NOT_FOUND, "audit entry not found", index=index)


class InMemoryAuditLog(AuditLog):
    """Ordered list guarded by a lock (single process)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: List[AuditEntry] = []
        self._by_key: Dict[str, int] = {}

    def append(self, body: Dict[str, Any], *, idempotency_key: Optional[str] = None) -> AuditReceipt:
        body_hash = hash_canonical(body)
        key = dedup_key_for(body, idempotency_key)
        with self._lock:
            existing = self._by_key.get(key)
            if existing is not None:
                entry = self._entries[existing - 1]
                return AuditReceipt(uuid=entry.uuid, index=entry.index, duplicate=True)
            index = len(self._entries) + 1
            prev = self._entries[-1].entry_hash if self._entries else GENESIS_HASH
            ts = _now_iso()
            entry = AuditEntry(
                uuid=uuid.uuid4().hex,
                index=index,
                timestamp=ts,
                body=json.loads(canonical_json_dumps(body)),
                prev_hash=prev,
                entry_hash=_entry_hash(prev, body_hash, index, ts),
            )
            self._entries.append(entry)
            self._by_key[key] = index
        return entry.receipt

    def get(self, index: int) -> AuditEntry:
        with self._lock:
            if 1 <= index <= len(self._entries):
                return self._entries[index - 1]
        raise _not_found(index)

    def range(self, start: int, end: int) -> List[AuditEntry]:
        with self._lock:
            lo = max(1, int(start))
            return list(self._entries[lo - 1:max(lo - 1, int(end) - 1)])

    def size(self) -> int:
        with self._lock:
            return len(self._entries)


class SqliteAuditLog(AuditLog):
    """Audit log in a SQLite file that several processes may append to.

    Index assignment (``MAX(idx) + 1``) and the insert share one
    ``BEGIN IMMEDIATE`` transaction, so appenders are serialized by the
    database write lock; the PRIMARY KEY on ``idx`` backs that up.
    """

    def __init__(self, db_path: str = "quorum_audit.db", circuit: Optional[StoreCircuitBreaker] = None):
        self.db_path = str(db_path)
        self._sql = SqliteConnector(self.db_path, circuit)
        self._sql.init_schema(
            """
            CREATE TABLE IF NOT EXISTS audit_entries (
                idx INTEGER PRIMARY KEY,
                uuid TEXT NOT NULL UNIQUE,
                ts TEXT NOT NULL,
                body_json TEXT NOT NULL,
                body_hash TEXT NOT NULL,
                dedup_key TEXT NOT NULL UNIQUE,
                prev_hash TEXT NOT NULL,
                entry_hash TEXT NOT NULL
            )
            """,
            """
            CREATE TRIGGER IF NOT EXISTS audit_entries_no_update
            BEFORE UPDATE ON audit_entries
            BEGIN SELECT RAISE(ABORT, 'audit entries are immutable'); END
            """,
            """
            CREATE TRIGGER IF NOT EXISTS audit_entries_no_delete
            BEFORE DELETE ON audit_entries
            BEGIN SELECT RAISE(ABORT, 'audit entries are immutable'); END
            """,
        )

    def append(self, body: Dict[str, Any], *, idempotency_key: Optional[str] = None) -> AuditReceipt:
        body_json = canonical_json_dumps(body)
        body_hash = sha256_hex(body_json.encode("utf-8"))
        key = dedup_key_for(body, idempotency_key)
        entry_uuid = uuid.uuid4().hex
        with self._sql.connect(write=True) as conn:
            # Same write transaction as the insert, so a concurrent retry sees one or the other.
            dup = conn.execute("SELECT idx, uuid FROM audit_entries WHERE dedup_key = ?", (key,)).fetchone()
            if dup is not None:
                return AuditReceipt(uuid=str(dup[1]), index=int(dup[0]), duplicate=True)
            row = conn.execute(
                "SELECT idx, entry_hash FROM audit_entries ORDER BY idx DESC LIMIT 1"
            ).fetchone()
            index = 1 if row is None else int(row[0]) + 1
            prev = GENESIS_HASH if row is None else str(row[1])
            ts = _now_iso()
            conn.execute(
                """
                INSERT INTO audit_entries (idx, uuid, ts, body_json, body_hash, dedup_key, prev_hash, entry_hash)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (index, entry_uuid, ts, body_json, body_hash, key, prev, _entry_hash(prev, body_hash, index, ts)),
            )
        return AuditReceipt(uuid=entry_uuid, index=index)

    @staticmethod
    def _row_to_entry(row: Tuple[Any, ...]) -> AuditEntry:
        return AuditEntry(
            index=int(row[0]),
            uuid=str(row[1]),
            timestamp=str(row[2]),
            body=json.loads(row[3]),
            prev_hash=str(row[4]),
            entry_hash=str(row[5]),
        )

    def get(self, index: int) -> AuditEntry:
        with self._sql.connect() as conn:
            row = conn.execute(
                "SELECT idx, uuid, ts, body_json, prev_hash, entry_hash FROM audit_entries WHERE idx = ?",
                (int(index),),
            ).fetchone()
        if row is None:
            raise _not_found(index)
        return self._row_to_entry(row)

    def range(self, start: int, end: int) -> List[AuditEntry]:
        with self._sql.connect() as conn:
            rows = conn.execute(
                """
                SELECT idx, uuid, ts, body_json, prev_hash, entry_hash FROM audit_entries
                WHERE idx >= ? AND idx < ? ORDER BY idx
                """,
                (int(start), int(end)),
            ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def size(self) -> int:
        with self._sql.connect() as conn:
            row = conn.execute("SELECT COUNT(*) FROM audit_entries").fetchone()
        return int(row[0])

    def verify_chain(self) -> Tuple[bool, str, int]:
        """Verify indices and the hash chain. Returns (ok, reason, count)."""
        return verify_entries(self._iter_raw())

    def _iter_raw(self):
        with self._sql.connect() as conn:
            rows = conn.execute(
                "SELECT idx, ts, body_json, body_hash, prev_hash, entry_hash FROM audit_entries ORDER BY idx"
            ).fetchall()
        for idx, ts, body_json, body_hash, prev_hash, entry_hash in rows:
            yield int(idx), str(ts), str(body_json), str(body_hash), str(prev_hash), str(entry_hash)


def verify_entries(rows) -> Tuple[bool, str, int]:
    prev = GENESIS_HASH
    count = 0
    for idx, ts, body_json, body_hash, prev_hash, entry_hash in rows:
        count += 1
        if idx != count:
            return False, f"INDEX_GAP:{count}", count
        if prev_hash != prev:
            return False, "CHAIN_BROKEN", count
        if sha256_hex(body_json.encode("utf-8")) != body_hash:
            return False, "BODY_HASH_MISMATCH", count
        expected = _entry_hash(prev_hash, body_hash, idx, ts)
        if expected != entry_hash:
            return False, "ENTRY_HASH_MISMATCH", count
        prev = expected
    return True, "OK", count
