"""
Token Bucket Admission Control

Gates outbound calls per (provider, tenant) pair. Denied callers either wait
a bounded time in a bounded queue or are rejected immediately.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from .errors import RateLimitedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BucketConfig:
    """Capacity and refill rate (tokens per second) of one bucket."""
    capacity: float
    refill_rate: float

    def __post_init__(self):
        if self.capacity <= 0:
            raise ValueError("capacity must be > 0")
        if self.refill_rate <= 0:
            raise ValueError("refill_rate must be > 0")


class TokenBucket:
    """Time-refilled token bucket.

    Every mutation happens under the bucket's own lock, so each bucket has a
    single writer at a time and buckets never contend with each other.
    """

    def __init__(self, config: BucketConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self._clock = clock
        self.tokens = float(config.capacity)  # Start with full bucket
        self.last_refill = clock()
        self.waiters = 0
        self.lock = threading.Lock()

    def _refill(self) -> None:
        """Refill tokens based on elapsed time. Caller holds the lock."""
        now = self._clock()
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.config.capacity, self.tokens + elapsed * self.config.refill_rate)
        self.last_refill = now

    def try_consume(self, cost: float) -> Tuple[bool, float]:
        """Take ``cost`` tokens if available.

        Returns:
            (granted, seconds until enough tokens would be available)
        """
        with self.lock:
            self._refill()
            if self.tokens >= cost:
                self.tokens -= cost
                return True, 0.0
            return False, (cost - self.tokens) / self.config.refill_rate

    def reconfigure(self, config: BucketConfig) -> None:
        with self.lock:
            self._refill()
            self.config = config
            self.tokens = min(self.tokens, config.capacity)

    def status(self) -> Dict[str, Any]:
        with self.lock:
            self._refill()
            return {
                "available_tokens": self.tokens,
                "capacity": self.config.capacity,
                "refill_rate": self.config.refill_rate,
                "waiters": self.waiters,
            }


class AdmissionController:
    """Per-(provider, tenant) token bucket gate.

    Args:
        default_limit: Bucket config used for providers without an override
        provider_limits: Per-provider bucket config overrides
        queue_timeout: Maximum seconds a denied caller may wait; 0 rejects at once
        max_queue_depth: Maximum callers waiting on one bucket
    """

    def __init__(
        self,
        default_limit: BucketConfig,
        provider_limits: Optional[Dict[str, BucketConfig]] = None,
        queue_timeout: float = 0.0,
        max_queue_depth: int = 0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if queue_timeout < 0:
            raise ValueError("queue_timeout cannot be negative")
        if max_queue_depth < 0:
            raise ValueError("max_queue_depth cannot be negative")
        self.default_limit = default_limit
        self.provider_limits = dict(provider_limits or {})
        self.queue_timeout = queue_timeout
        self.max_queue_depth = max_queue_depth
        self._clock = clock
        self._sleep = sleep
        self._buckets: Dict[Tuple[str, str], TokenBucket] = {}
        self._registry_lock = threading.Lock()

    def limit_for(self, provider_id: str) -> BucketConfig:
        return self.provider_limits.get(provider_id, self.default_limit)

    def _bucket(self, provider_id: str, tenant_id: str) -> TokenBucket:
        key = (provider_id, tenant_id)
        bucket = self._buckets.get(key)
        if bucket is None:
            with self._registry_lock:
                bucket = self._buckets.get(key)
                if bucket is None:
                    bucket = TokenBucket(self.limit_for(provider_id), self._clock)
                    self._buckets[key] = bucket
        return bucket

    def try_acquire(self, provider_id: str, tenant_id: str, cost: float = 1.0,
                    max_wait: Optional[float] = None) -> bool:
        """Acquire ``cost`` tokens for a call.

        Args:
            max_wait: Caller's own bound on the wait, e.g. time left before its
                deadline; the shorter of this and ``queue_timeout`` applies

        Returns:
            True when granted

        Raises:
            RateLimitedError: If denied and the bounded wait is unavailable or
                elapses first
        """
        bucket = self._bucket(provider_id, tenant_id)
        if cost > bucket.config.capacity:
            raise RateLimitedError(
                f"Cost {cost} exceeds bucket capacity for {provider_id}/{tenant_id}",
                provider_id, tenant_id,
            )

        granted, wait = bucket.try_consume(cost)
        if granted:
            return True

        wait_limit = self.queue_timeout if max_wait is None else min(self.queue_timeout, max_wait)
        if wait_limit <= 0 or wait > wait_limit:
            raise RateLimitedError(
                f"Rate limit exceeded for {provider_id}/{tenant_id}",
                provider_id, tenant_id,
            )

        with bucket.lock:
            if bucket.waiters >= self.max_queue_depth:
                queued = False
            else:
                bucket.waiters += 1
                queued = True
        if not queued:
            raise RateLimitedError(
                f"Admission queue full for {provider_id}/{tenant_id}",
                provider_id, tenant_id,
            )

        give_up_at = self._clock() + wait_limit
        try:
            while True:
                remaining = give_up_at - self._clock()
                if remaining <= 0:
                    break
                self._sleep(min(wait, remaining))
                granted, wait = bucket.try_consume(cost)
                if granted:
                    return True
        finally:
            with bucket.lock:
                bucket.waiters -= 1

        logger.warning("Admission wait timed out for %s/%s", provider_id, tenant_id)
        raise RateLimitedError(
            f"Timed out waiting for rate limit on {provider_id}/{tenant_id}",
            provider_id, tenant_id,
        )

    def reconfigure(
        self,
        default_limit: BucketConfig,
        provider_limits: Optional[Dict[str, BucketConfig]] = None,
        queue_timeout: Optional[float] = None,
        max_queue_depth: Optional[int] = None,
    ) -> None:
        """Apply new limits to existing and future buckets."""
        with self._registry_lock:
            self.default_limit = default_limit
            self.provider_limits = dict(provider_limits or {})
            if queue_timeout is not None:
                self.queue_timeout = queue_timeout
            if max_queue_depth is not None:
                self.max_queue_depth = max_queue_depth
            buckets = list(self._buckets.items())
        for (provider_id, _), bucket in buckets:
            bucket.reconfigure(self.limit_for(provider_id))

    def status(self, provider_id: str, tenant_id: str) -> Dict[str, Any]:
        """Get current bucket status."""
        return self._bucket(provider_id, tenant_id).status()
