"""In-process rate limiting.

The HTTP layer consults a ``RateLimiter`` before any business logic runs.
The bundled token bucket is per process; a fleet behind a load balancer
should put a shared limiter (API gateway, reverse proxy) in front as well.
"""

from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Tuple


class RateLimiter(Protocol):
    def allow(self, key: str, cost: float = 1.0) -> bool: ...


@dataclass
class TokenBucket:
    """A basic token bucket limiter.

    capacity: max tokens
    refill_rate_per_sec: tokens added per second
    """

    capacity: float
    refill_rate_per_sec: float
    tokens: float
    last_ts: float

    @classmethod
    def new(cls, capacity: float, refill_rate_per_sec: float) -> "TokenBucket":
        return cls(capacity=capacity, refill_rate_per_sec=refill_rate_per_sec, tokens=capacity, last_ts=time.monotonic())

    def allow(self, cost: float = 1.0) -> bool:
        now = time.monotonic()
        elapsed = max(0.0, now - self.last_ts)
        self.last_ts = now
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate_per_sec)
        if self.tokens >= cost:
            self.tokens -= cost
            return True
        return False


class TokenBucketRateLimiter:
    """Keyed token-bucket rate limiter (per-process)."""

    def __init__(self, capacity: float, refill_rate_per_sec: float, max_keys: int = 20000):
        if capacity <= 0 or refill_rate_per_sec <= 0:
            raise ValueError("capacity and refill_rate_per_sec must be positive")
        self._capacity = float(capacity)
        self._refill = float(refill_rate_per_sec)
        self._max_keys = int(max_keys) if int(max_keys) > 0 else 20000
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_spec(cls, spec: str) -> Optional["TokenBucketRateLimiter"]:
        """Build from a spec like '1000/15m'; None when the spec disables limiting."""
        parsed = parse_rate_limit(spec)
        if parsed is None:
            return None
        return cls(*parsed)

    def allow(self, key: str, cost: float = 1.0) -> bool:
        if not key:
            key = "_anon"
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                # Prevent unbounded memory growth from high-cardinality keys.
                if len(self._buckets) >= self._max_keys:
                    self._evict_full_buckets()
                    if len(self._buckets) >= self._max_keys:
                        return False
                bucket = TokenBucket.new(self._capacity, self._refill)
                self._buckets[key] = bucket
            return bucket.allow(cost=cost)

    def _evict_full_buckets(self) -> None:
        now = time.monotonic()
        for key, bucket in list(self._buckets.items()):
            if bucket.tokens + (now - bucket.last_ts) * bucket.refill_rate_per_sec >= bucket.capacity:
                del self._buckets[key]


_UNITS = {
    "s": 1.0, "sec": 1.0, "second": 1.0, "seconds": 1.0,
    "m": 60.0, "min": 60.0, "minute": 60.0, "minutes": 60.0,
    "h": 3600.0, "hr": 3600.0, "hour": 3600.0, "hours": 3600.0,
}
_WINDOW_RE = re.compile(r"^(\d+(?:\.\d+)?)?\s*([a-z]+)$")


def parse_rate_limit(spec: str) -> Optional[Tuple[float, float]]:
    """Parse a compact rate limit spec like '30/m', '10/s' or '1000/15m'.

    Returns (capacity, refill_rate_per_sec), or None for 'off'.
    """
    s = (spec or "").strip().lower()
    if not s:
        raise ValueError("empty rate limit spec")
    if s in ("off", "none", "disabled", "0"):
        return None
    if "/" not in s:
        raise ValueError("invalid rate limit spec; expected like '30/m' or '1000/15m'")
    num_str, window = s.split("/", 1)
    n = float(num_str)
    if n <= 0:
        raise ValueError("rate must be positive")
    m = _WINDOW_RE.match(window.strip())
    if not m or m.group(2) not in _UNITS:
        raise ValueError(f"unsupported rate window: {window}")
    multiple = float(m.group(1)) if m.group(1) else 1.0
    if multiple <= 0:
        raise ValueError("rate window must be positive")
    seconds = multiple * _UNITS[m.group(2)]
    # capacity = n (burst size of one window)
    return float(n), float(n) / seconds
