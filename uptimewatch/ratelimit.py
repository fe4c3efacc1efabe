"""Per-key token bucket rate limiter."""

import math
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

from .config import ConfigError, validate_rate_limit


@dataclass
class TokenBucket:
    """Rate limiter state for one key. Never persisted."""

    tokens: float
    last_refill_ms: float


class TokenBucketRateLimiter:
    """Token bucket limiter keyed by an arbitrary string (site URL, client IP).

    Each key gets a bucket of `burst` tokens that refills continuously,
    going from empty to full in `window_sec` seconds. Refill is computed
    lazily on each access. Buckets start full.

    With max_keys set, the least recently used bucket is evicted once more
    than max_keys keys are live. An evicted key comes back with a full bucket.

    Thread-safe.
    """

    def __init__(
        self,
        burst: int,
        window_sec: float,
        max_keys: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the limiter.

        Args:
            burst: Bucket capacity, the most actions allowed at once.
            window_sec: Seconds for an empty bucket to refill completely.
            max_keys: Upper bound on tracked keys, or None for unbounded.
            clock: Monotonic clock returning seconds.

        Raises:
            ConfigError: If burst or window_sec is not positive, or max_keys < 1.
        """
        validate_rate_limit(burst, window_sec)
        if max_keys is not None and max_keys < 1:
            raise ConfigError(f"Rate limiter max_keys must be at least 1 (got {max_keys})")

        self._burst = burst
        self._window_ms = window_sec * 1000
        self._max_keys = max_keys
        self._clock = clock
        self._buckets: OrderedDict[str, TokenBucket] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def burst(self) -> int:
        return self._burst

    @property
    def refill_rate(self) -> float:
        """Tokens added per millisecond."""
        return self._burst / self._window_ms

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _bucket(self, key: str) -> TokenBucket:
        """Get the refilled bucket for key. Caller must hold the lock."""
        now = self._now_ms()
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(tokens=float(self._burst), last_refill_ms=now)
            self._buckets[key] = bucket
            if self._max_keys is not None and len(self._buckets) > self._max_keys:
                self._buckets.popitem(last=False)
            return bucket

        self._buckets.move_to_end(key)
        elapsed = now - bucket.last_refill_ms
        if elapsed > 0:
            bucket.tokens = min(float(self._burst), bucket.tokens + elapsed * self._burst / self._window_ms)
            bucket.last_refill_ms = now
        return bucket

    def is_allowed(self, key: str) -> bool:
        """Check whether an action would be allowed, without consuming a token."""
        with self._lock:
            return self._bucket(key).tokens >= 1

    def consume(self, key: str) -> bool:
        """Take one token for key.

        Returns:
            True if a token was taken, False if the bucket is empty.
        """
        with self._lock:
            bucket = self._bucket(key)
            if bucket.tokens >= 1:
                bucket.tokens -= 1
                return True
            return False

    def token_count(self, key: str) -> int:
        """Whole tokens currently available for key."""
        with self._lock:
            return math.floor(self._bucket(key).tokens)

    def time_until_next_token_ms(self, key: str) -> int:
        """Milliseconds until key has at least one whole token (0 if it has one now)."""
        with self._lock:
            bucket = self._bucket(key)
            if bucket.tokens >= 1:
                return 0
            # (1 - tokens) / refill_rate, kept as one division to stay exact
            return math.ceil((1 - bucket.tokens) * self._window_ms / self._burst)

    def reset(self) -> None:
        """Discard all per-key state."""
        with self._lock:
            self._buckets.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)
