"""Circuit breakers for the gateway's SQLite stores.

Every correctness property of the gateway (one execution per proposal, one
audit entry per verification) rests on the stores' atomic updates. When a
store degrades (locked, slow, unreachable) the gateway stops using it for a
lockdown window instead of limping along.

Each store gets its own breaker, named after it ("state", "audit"), so a
locked audit database does not take proposal voting down with it. A breaker
keeps a failure count that every failed operation raises by one and every
healthy operation lowers by one; the window opens when the count reaches the
threshold. While a window is open ``gov_store_lockdown_active{store=<name>}``
reads 1.

Which ``sqlite3.OperationalError`` counts as a failure depends on
GOV_DB_ERROR_STRICT: strict (the default) counts all of them, otherwise only
lock contention ("database is locked" / "database is busy") does.

Environment variables:
- GOV_DB_LATENCY_THRESHOLD_MS: trip on operations slower than this (default 0, off)
- GOV_DB_FAILURE_THRESHOLD: failure count that trips the breaker (default 2)
- GOV_DB_LOCKDOWN_SECONDS: duration of the lockdown window (default 30)
- GOV_DB_CONNECT_TIMEOUT_SECONDS: sqlite busy/connect timeout (default 5)
- GOV_DB_ERROR_STRICT: if '0'/'false', count only lock contention errors (default 1)
"""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass
from typing import Optional

from . import metrics
from .errors import DependencyError, gov_error, GOV_E_STORE_UNAVAILABLE


class StoreUnavailableError(DependencyError):
    """Raised while a store circuit is open."""


@dataclass(frozen=True)
class CircuitBreakerConfig:
    latency_threshold_ms: int = 0
    failure_threshold: int = 2
    lockdown_seconds: int = 30
    connect_timeout_seconds: float = 5.0
    error_strict: bool = True

    @classmethod
    def from_env(cls) -> "CircuitBreakerConfig":
        def _get(name: str, default: float, conv):
            try:
                return conv(os.getenv(name, str(default)).strip())
            except ValueError:
                return default

        latency = _get("GOV_DB_LATENCY_THRESHOLD_MS", cls.latency_threshold_ms, int)
        failures = _get("GOV_DB_FAILURE_THRESHOLD", cls.failure_threshold, int)
        lockdown = _get("GOV_DB_LOCKDOWN_SECONDS", cls.lockdown_seconds, int)
        timeout = _get("GOV_DB_CONNECT_TIMEOUT_SECONDS", cls.connect_timeout_seconds, float)
        strict = os.getenv("GOV_DB_ERROR_STRICT", "1").strip().lower() not in ("0", "false", "no", "off")

        return cls(
            latency_threshold_ms=latency if latency >= 0 else cls.latency_threshold_ms,
            failure_threshold=max(1, failures),
            lockdown_seconds=max(1, lockdown),
            connect_timeout_seconds=timeout if timeout > 0 else 0.01,
            error_strict=strict,
        )


class StoreCircuitBreaker:
    """Counts failures of one store and opens a lockdown window past the threshold."""

    def __init__(self, config: Optional[CircuitBreakerConfig] = None, name: str = "state"):
        self.config = config or CircuitBreakerConfig.from_env()
        self.name = str(name)
        self._lock = threading.Lock()
        self._failure_count = 0
        self._lockdown_until = 0.0
        self._gauge_open = False

    def is_open(self) -> bool:
        open_ = time.monotonic() < self._lockdown_until
        if not open_ and self._gauge_open:
            with self._lock:
                if self._gauge_open and time.monotonic() >= self._lockdown_until:
                    self._gauge_open = False
                    metrics.set_lockdown_active(self.name, False)
        return open_

    def raise_if_open(self) -> None:
        if self.is_open():
            raise gov_error(
                StoreUnavailableError,
                GOV_E_STORE_UNAVAILABLE,
                f"{self.name} store temporarily unavailable",
                http_status=503,
                store=self.name,
            )

    def counts_as_failure(self, message: str) -> bool:
        if self.config.error_strict:
            return True
        msg = (message or "").lower()
        return "database is locked" in msg or "database is busy" in msg

    def _trip(self) -> None:
        self._lockdown_until = time.monotonic() + float(self.config.lockdown_seconds)
        self._failure_count = self.config.failure_threshold
        self._gauge_open = True
        metrics.set_lockdown_active(self.name, True)

    def record_success(self, elapsed_ms: float = 0.0) -> None:
        with self._lock:
            if elapsed_ms >= float(self.config.latency_threshold_ms) > 0:
                self._failure_count += 1
                self._trip()
            elif self._failure_count > 0:
                self._failure_count -= 1

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            if self._failure_count >= self.config.failure_threshold:
                self._trip()
