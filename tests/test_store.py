import os
import sqlite3
import threading

import pytest
from prometheus_client import REGISTRY

import quorum_gateway.store as store_mod
from quorum_gateway.audit_log import SqliteAuditLog
from quorum_gateway.errors import GOV_E_STORE_UNAVAILABLE
from quorum_gateway.lockdown import CircuitBreakerConfig, StoreCircuitBreaker, StoreUnavailableError
from quorum_gateway.store import MemoryStateStore, SqliteStateStore


@pytest.fixture(params=["sqlite", "memory", "redis"])
def state_store(request, tmp_path):
    if request.param == "sqlite":
        s = SqliteStateStore(str(tmp_path / "state.db"))
    elif request.param == "memory":
        s = MemoryStateStore()
    else:
        url = os.getenv("GOV_TEST_REDIS_URL")
        if not url:
            pytest.skip("GOV_TEST_REDIS_URL not set")
        pytest.importorskip("redis")
        s = store_mod.RedisStateStore(url, namespace=f"quorum-test-{os.getpid()}-{id(request)}")
    yield s
    s.close()


def test_create_is_insert_if_absent(state_store):
    assert state_store.create("k", {"n": 1}, 60) is True
    assert state_store.create("k", {"n": 2}, 60) is False
    rec = state_store.get("k")
    assert rec.version == 1
    assert rec.value == {"n": 1}


def test_get_missing_returns_none(state_store):
    assert state_store.get("missing") is None


def test_compare_and_swap_requires_current_version(state_store):
    state_store.create("k", {"n": 1}, 60)
    assert state_store.compare_and_swap("k", 1, {"n": 2}) is True
    # Stale version loses.
    assert state_store.compare_and_swap("k", 1, {"n": 3}) is False
    rec = state_store.get("k")
    assert rec.version == 2
    assert rec.value == {"n": 2}


def test_compare_and_swap_on_missing_key_fails(state_store):
    assert state_store.compare_and_swap("nope", 1, {"n": 1}) is False


def test_concurrent_cas_has_exactly_one_winner(state_store):
    state_store.create("k", {"winner": None}, 60)
    barrier = threading.Barrier(8)
    results = []
    lock = threading.Lock()

    def worker(i):
        barrier.wait()
        ok = state_store.compare_and_swap("k", 1, {"winner": i})
        with lock:
            results.append((i, ok))

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    winners = [i for i, ok in results if ok]
    assert len(winners) == 1
    assert state_store.get("k").value == {"winner": winners[0]}


@pytest.mark.parametrize("kind", ["sqlite", "memory"])
def test_expired_records_are_absent(kind, tmp_path, monkeypatch):
    s = SqliteStateStore(str(tmp_path / "state.db")) if kind == "sqlite" else MemoryStateStore()
    t0 = 1_800_000_000.0
    monkeypatch.setattr(store_mod, "_now_epoch", lambda: t0)
    s.create("k", {"n": 1}, 10)
    assert s.get("k") is not None

    monkeypatch.setattr(store_mod, "_now_epoch", lambda: t0 + 11)
    assert s.get("k") is None
    assert s.compare_and_swap("k", 1, {"n": 2}) is False
    # An expired record does not block re-creation.
    assert s.create("k", {"n": 3}, 10) is True
    assert s.get("k").version == 1


@pytest.mark.parametrize("kind", ["sqlite", "memory"])
def test_cas_ttl_none_keeps_expiry(kind, tmp_path, monkeypatch):
    s = SqliteStateStore(str(tmp_path / "state.db")) if kind == "sqlite" else MemoryStateStore()
    t0 = 1_800_000_000.0
    monkeypatch.setattr(store_mod, "_now_epoch", lambda: t0)
    s.create("k", {"n": 1}, 10)
    s.compare_and_swap("k", 1, {"n": 2})
    assert s.get("k").expires_at == pytest.approx(t0 + 10)

    s.compare_and_swap("k", 2, {"n": 3}, ttl_seconds=100)
    assert s.get("k").expires_at == pytest.approx(t0 + 100)


def test_memory_store_returns_copies():
    s = MemoryStateStore()
    s.create("k", {"items": [1]}, 60)
    rec = s.get("k")
    rec.value["items"].append(2)
    assert s.get("k").value == {"items": [1]}


def test_sqlite_purge_expired(tmp_path, monkeypatch):
    s = SqliteStateStore(str(tmp_path / "state.db"))
    t0 = 1_800_000_000.0
    monkeypatch.setattr(store_mod, "_now_epoch", lambda: t0)
    s.create("a", {}, 5)
    s.create("b", {}, 50)
    monkeypatch.setattr(store_mod, "_now_epoch", lambda: t0 + 6)
    assert s.purge_expired() == 1
    assert s.get("b") is not None


def test_sqlite_store_is_shared_between_instances(tmp_path):
    path = str(tmp_path / "state.db")
    a = SqliteStateStore(path)
    b = SqliteStateStore(path)
    a.create("k", {"n": 1}, 60)
    assert b.compare_and_swap("k", 1, {"n": 2}) is True
    assert a.compare_and_swap("k", 1, {"n": 3}) is False
    assert a.get("k").value == {"n": 2}


def test_storage_lockdown_trips_on_operational_error(tmp_path, monkeypatch):
    circuit = StoreCircuitBreaker(CircuitBreakerConfig(failure_threshold=1, lockdown_seconds=60))
    s = SqliteStateStore(str(tmp_path / "state.db"), circuit=circuit)

    def _boom(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store_mod.sqlite3, "connect", _boom)

    with pytest.raises(StoreUnavailableError) as exc:
        s.get("k")
    assert exc.value.code == GOV_E_STORE_UNAVAILABLE
    assert exc.value.http_status == 503
    assert circuit.is_open()

    # Once tripped, store operations fail closed without touching the database.
    monkeypatch.undo()
    with pytest.raises(StoreUnavailableError):
        s.get("k")


def test_circuit_breaker_recovers_failure_count_on_success():
    circuit = StoreCircuitBreaker(CircuitBreakerConfig(failure_threshold=2, lockdown_seconds=60))
    circuit.record_failure()
    circuit.record_success(1.0)
    circuit.record_failure()
    assert not circuit.is_open()
    circuit.record_failure()
    assert circuit.is_open()


def test_circuit_breaker_latency_trip_is_opt_in():
    circuit = StoreCircuitBreaker(CircuitBreakerConfig(failure_threshold=1))
    circuit.record_success(60_000.0)
    assert not circuit.is_open()

    slow = StoreCircuitBreaker(CircuitBreakerConfig(latency_threshold_ms=100, failure_threshold=1))
    slow.record_success(250.0)
    assert slow.is_open()


def test_circuit_breaker_config_from_env(monkeypatch):
    monkeypatch.setenv("GOV_DB_FAILURE_THRESHOLD", "5")
    monkeypatch.setenv("GOV_DB_LOCKDOWN_SECONDS", "not-a-number")
    cfg = CircuitBreakerConfig.from_env()
    assert cfg.failure_threshold == 5
    assert cfg.lockdown_seconds == 30


def test_lenient_breaker_counts_only_lock_contention(tmp_path, monkeypatch):
    circuit = StoreCircuitBreaker(
        CircuitBreakerConfig(failure_threshold=1, lockdown_seconds=60, error_strict=False), name="state"
    )
    s = SqliteStateStore(str(tmp_path / "state.db"), circuit=circuit)
    errors = iter(["disk I/O error", "database is locked"])

    def _boom(*args, **kwargs):
        raise sqlite3.OperationalError(next(errors))

    monkeypatch.setattr(store_mod.sqlite3, "connect", _boom)

    with pytest.raises(StoreUnavailableError):
        s.get("k")
    assert not circuit.is_open()
    with pytest.raises(StoreUnavailableError):
        s.get("k")
    assert circuit.is_open()


def test_error_strict_from_env(monkeypatch):
    monkeypatch.setenv("GOV_DB_ERROR_STRICT", "0")
    assert CircuitBreakerConfig.from_env().error_strict is False
    monkeypatch.delenv("GOV_DB_ERROR_STRICT")
    assert CircuitBreakerConfig.from_env().error_strict is True
    assert StoreCircuitBreaker(CircuitBreakerConfig()).counts_as_failure("disk I/O error")


def test_lockdown_gauge_follows_window():
    def gauge(name):
        return REGISTRY.get_sample_value("gov_store_lockdown_active", {"store": name})

    circuit = StoreCircuitBreaker(CircuitBreakerConfig(failure_threshold=1, lockdown_seconds=60), name="gauge-open")
    circuit.record_failure()
    assert circuit.is_open()
    assert gauge("gauge-open") == 1.0

    # A zero-length window has already expired when it is next observed.
    short = StoreCircuitBreaker(CircuitBreakerConfig(failure_threshold=1, lockdown_seconds=0), name="gauge-expired")
    short.record_failure()
    assert gauge("gauge-expired") == 1.0
    assert not short.is_open()
    assert gauge("gauge-expired") == 0.0


def test_audit_breaker_does_not_lock_out_state_store(tmp_path, monkeypatch):
    state_circuit = StoreCircuitBreaker(CircuitBreakerConfig(failure_threshold=1, lockdown_seconds=60), name="state")
    audit_circuit = StoreCircuitBreaker(CircuitBreakerConfig(failure_threshold=1, lockdown_seconds=60), name="audit")
    state = SqliteStateStore(str(tmp_path / "state.db"), circuit=state_circuit)
    audit = SqliteAuditLog(str(tmp_path / "audit.db"), circuit=audit_circuit)

    def _boom(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store_mod.sqlite3, "connect", _boom)
    with pytest.raises(StoreUnavailableError) as exc:
        audit.size()
    assert exc.value.details["store"] == "audit"
    monkeypatch.undo()

    assert audit_circuit.is_open()
    assert not state_circuit.is_open()
    assert state.create("k", {"n": 1}, 60) is True
    with pytest.raises(StoreUnavailableError):
        audit.size()
