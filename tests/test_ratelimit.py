"""
Unit tests for token bucket admission control.
"""

import threading

import pytest

from ai_cost_router.core.errors import ErrorKind, RateLimitedError
from ai_cost_router.core.ratelimit import AdmissionController, BucketConfig, TokenBucket


class TestTokenBucket:
    """Test bucket refill and consumption."""

    def test_starts_full(self, clock):
        bucket = TokenBucket(BucketConfig(capacity=5, refill_rate=1), clock)
        assert bucket.status()["available_tokens"] == 5

    def test_consume_and_wait_estimate(self, clock):
        bucket = TokenBucket(BucketConfig(capacity=2, refill_rate=4), clock)
        assert bucket.try_consume(2) == (True, 0.0)

        granted, wait = bucket.try_consume(1)

        assert granted is False
        assert wait == pytest.approx(0.25)

    def test_refill_over_time_capped_at_capacity(self, clock):
        bucket = TokenBucket(BucketConfig(capacity=3, refill_rate=1), clock)
        bucket.try_consume(3)

        clock.advance(100)

        assert bucket.status()["available_tokens"] == 3

    def test_reconfigure_shrinks_tokens(self, clock):
        bucket = TokenBucket(BucketConfig(capacity=10, refill_rate=1), clock)
        bucket.reconfigure(BucketConfig(capacity=4, refill_rate=2))
        status = bucket.status()
        assert status["available_tokens"] == 4
        assert status["refill_rate"] == 2

    def test_invalid_config(self):
        with pytest.raises(ValueError, match="capacity must be > 0"):
            BucketConfig(capacity=0, refill_rate=1)


class TestAdmissionController:
    """Test per-(provider, tenant) admission."""

    def test_grants_within_capacity(self, clock):
        admission = AdmissionController(BucketConfig(capacity=2, refill_rate=1), clock=clock, sleep=clock.sleep)
        assert admission.try_acquire("x", "T1") is True
        assert admission.try_acquire("x", "T1") is True

    def test_rejects_immediately_without_queue(self, clock):
        admission = AdmissionController(BucketConfig(capacity=1, refill_rate=1), clock=clock, sleep=clock.sleep)
        admission.try_acquire("x", "T1")

        with pytest.raises(RateLimitedError) as exc_info:
            admission.try_acquire("x", "T1")

        assert exc_info.value.kind == ErrorKind.RATE_LIMITED
        assert exc_info.value.provider_id == "x"
        assert exc_info.value.tenant_id == "T1"
        assert clock.sleeps == []

    def test_buckets_are_per_provider_and_tenant(self, clock):
        admission = AdmissionController(BucketConfig(capacity=1, refill_rate=1), clock=clock, sleep=clock.sleep)
        admission.try_acquire("x", "T1")

        assert admission.try_acquire("x", "T2") is True
        assert admission.try_acquire("y", "T1") is True

    def test_provider_override(self, clock):
        admission = AdmissionController(
            BucketConfig(capacity=1, refill_rate=1),
            provider_limits={"big": BucketConfig(capacity=3, refill_rate=1)},
            clock=clock,
        )
        for _ in range(3):
            admission.try_acquire("big", "T1")
        assert admission.status("big", "T1")["capacity"] == 3

    def test_bounded_wait_then_granted(self, clock):
        admission = AdmissionController(
            BucketConfig(capacity=1, refill_rate=2),
            queue_timeout=1.0,
            max_queue_depth=5,
            clock=clock,
            sleep=clock.sleep,
        )
        admission.try_acquire("x", "T1")

        assert admission.try_acquire("x", "T1") is True
        assert clock.sleeps == [0.5]
        assert admission.status("x", "T1")["waiters"] == 0

    def test_wait_longer_than_queue_timeout_rejected(self, clock):
        admission = AdmissionController(
            BucketConfig(capacity=1, refill_rate=0.1),
            queue_timeout=1.0,
            max_queue_depth=5,
            clock=clock,
            sleep=clock.sleep,
        )
        admission.try_acquire("x", "T1")

        with pytest.raises(RateLimitedError, match="Rate limit exceeded"):
            admission.try_acquire("x", "T1")
        assert clock.sleeps == []

    def test_caller_max_wait_shortens_queue_timeout(self, clock):
        admission = AdmissionController(
            BucketConfig(capacity=1, refill_rate=2),
            queue_timeout=1.0,
            max_queue_depth=5,
            clock=clock,
            sleep=clock.sleep,
        )
        admission.try_acquire("x", "T1")

        with pytest.raises(RateLimitedError, match="Rate limit exceeded"):
            admission.try_acquire("x", "T1", max_wait=0.25)
        with pytest.raises(RateLimitedError):
            admission.try_acquire("x", "T1", max_wait=0)
        assert clock.sleeps == []
        assert admission.try_acquire("x", "T1", max_wait=2.0) is True
        assert clock.sleeps == [0.5]

    def test_full_queue_rejected(self, clock):
        admission = AdmissionController(
            BucketConfig(capacity=1, refill_rate=2),
            queue_timeout=1.0,
            max_queue_depth=0,
            clock=clock,
            sleep=clock.sleep,
        )
        admission.try_acquire("x", "T1")

        with pytest.raises(RateLimitedError, match="queue full"):
            admission.try_acquire("x", "T1")

    def test_cost_above_capacity_rejected(self, clock):
        admission = AdmissionController(BucketConfig(capacity=2, refill_rate=1), clock=clock)
        with pytest.raises(RateLimitedError, match="exceeds bucket capacity"):
            admission.try_acquire("x", "T1", cost=3)

    def test_concurrent_grants_never_exceed_capacity(self, clock):
        admission = AdmissionController(BucketConfig(capacity=10, refill_rate=0.001), clock=clock)
        granted = []
        lock = threading.Lock()

        def worker():
            try:
                admission.try_acquire("x", "T1")
            except RateLimitedError:
                return
            with lock:
                granted.append(1)

        threads = [threading.Thread(target=worker) for _ in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(granted) == 10

    def test_reconfigure_applies_to_existing_buckets(self, clock):
        admission = AdmissionController(BucketConfig(capacity=5, refill_rate=1), clock=clock)
        admission.try_acquire("x", "T1")

        admission.reconfigure(BucketConfig(capacity=2, refill_rate=1))

        assert admission.status("x", "T1")["capacity"] == 2
        assert admission.status("x", "T1")["available_tokens"] == 2
