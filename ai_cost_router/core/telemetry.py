"""
Cost and telemetry recording.

Builds exactly one billing record per terminal call and delivers it to the
billing sink in the background. Records are queued before ``record`` returns
and retried until the sink accepts them; nothing is dropped.
"""

import logging
import queue
import threading
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional, Protocol

from ..storage.models import BillingRecord
from .models import CallOutcome, CallRequest
from .pricing import ModelPricing, PricingRegistry, calculate_cost
from .redaction import redact

logger = logging.getLogger(__name__)

_STOP = object()


class BillingSink(Protocol):
    """Append-only store for billing records."""

    def append(self, record: BillingRecord) -> None:
        ...


def format_trail(outcome: CallOutcome) -> str:
    """Compact attempt trail, e.g. ``x/m1:provider_unavailable,y/m2:ok``."""
    return ",".join(
        f"{a.provider_id}/{a.model_id}:{a.error_kind.value if a.error_kind else 'ok'}"
        for a in outcome.trail
    )


class TelemetryRecorder:
    """Prices outcomes and persists billing records asynchronously.

    Args:
        sink: Billing sink records are delivered to
        pricing: Current pricing registry
        max_queue: Bound on records waiting for delivery
        enqueue_timeout: Seconds to wait for queue space before delivering on
            the caller's thread instead
        retry_base: First delay after a failed delivery
        retry_max: Cap on the delay between delivery retries
    """

    def __init__(
        self,
        sink: BillingSink,
        pricing: PricingRegistry,
        max_queue: int = 1000,
        enqueue_timeout: float = 1.0,
        retry_base: float = 0.5,
        retry_max: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        start: bool = True,
    ):
        if max_queue <= 0:
            raise ValueError("max_queue must be > 0")
        self.sink = sink
        self.pricing = pricing
        self.enqueue_timeout = enqueue_timeout
        self.retry_base = retry_base
        self.retry_max = retry_max
        self._sleep = sleep
        self._now = now
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=max_queue)
        self._closed = threading.Event()
        self._worker: Optional[threading.Thread] = None
        if start:
            self.start()

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._worker = threading.Thread(target=self._run, name="billing-writer", daemon=True)
        self._worker.start()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def pending(self) -> int:
        """Records queued but not yet delivered."""
        return self._queue.unfinished_tasks

    def price(self, outcome: CallOutcome, fallback: Optional[ModelPricing] = None) -> Decimal:
        """Estimated price of an outcome.

        Cache hits are free; so are failures, which carry no usage.
        """
        usage = outcome.usage
        if outcome.cache_hit or outcome.provider_id is None:
            return Decimal("0")
        if usage.total_tokens == 0 and usage.total_bytes == 0:
            return Decimal("0")
        try:
            pricing = self.pricing.get_pricing(outcome.provider_id, outcome.model_id)
        except ValueError:
            if fallback is None:
                logger.error(
                    "No price for %s/%s, billing at zero cost",
                    outcome.provider_id, outcome.model_id,
                )
                return Decimal("0")
            pricing = fallback
        return calculate_cost(pricing, outcome.usage)

    def build_record(self, request: CallRequest, outcome: CallOutcome,
                     fallback_pricing: Optional[ModelPricing] = None) -> BillingRecord:
        """Create the billing record for an outcome without queueing it.

        Only counts, identifiers and derived metrics are copied; payloads are
        never part of the record and error text is redacted.
        """
        usage = outcome.usage
        return BillingRecord(
            timestamp=self._now(),
            request_id=request.request_id,
            tenant_id=request.tenant_id,
            task_kind=request.task_kind,
            status=outcome.status.value,
            provider_id=outcome.provider_id,
            model_id=outcome.model_id,
            attempts=outcome.attempts,
            latency_ms=int(round(outcome.latency * 1000)),
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            request_bytes=usage.request_bytes,
            response_bytes=usage.response_bytes,
            estimated_cost=self.price(outcome, fallback_pricing),
            cache_hit=outcome.cache_hit,
            failure_kind=outcome.failure_kind.value if outcome.failure_kind else None,
            error_detail=redact(outcome.error_message),
            attempt_trail=format_trail(outcome),
            redacted=True,
        )

    def record(self, request: CallRequest, outcome: CallOutcome,
               fallback_pricing: Optional[ModelPricing] = None) -> BillingRecord:
        """Build the billing record and queue it for delivery.

        Returns once the record is queued (or, under sustained backpressure,
        delivered on the caller's thread).
        """
        record = self.build_record(request, outcome, fallback_pricing)
        self._enqueue(record)
        return record

    def _enqueue(self, record: BillingRecord) -> None:
        if self._closed.is_set():
            raise RuntimeError("TelemetryRecorder is closed")
        try:
            self._queue.put(record, timeout=self.enqueue_timeout)
            return
        except queue.Full:
            logger.warning("Billing queue full, delivering record %s inline", record.record_id)

        try:
            self.sink.append(record)
        except Exception as e:
            logger.error("Inline billing delivery failed (%s), waiting for queue space", e)
            self._queue.put(record)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(item)
            finally:
                self._queue.task_done()

    def _deliver(self, record: BillingRecord) -> None:
        """Deliver one record, retrying with backoff until the sink accepts it."""
        failures = 0
        while True:
            try:
                self.sink.append(record)
                if failures:
                    logger.info("Billing record %s delivered after %d retries", record.record_id, failures)
                return
            except Exception as e:
                failures += 1
                delay = min(self.retry_max, self.retry_base * (2 ** (failures - 1)))
                logger.warning(
                    "Billing sink unavailable (attempt %d): %s; retrying in %.2fs",
                    failures, e, delay,
                )
                self._sleep(delay)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued record is delivered.

        Returns:
            True if the queue drained within the timeout
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def close(self, timeout: Optional[float] = 10.0) -> None:
        """Stop accepting records and drain the queue."""
        if self._closed.is_set():
            return
        self._closed.set()
        if self._worker is None:
            return
        self._queue.put(_STOP)
        self._worker.join(timeout)
        if self._worker.is_alive():
            logger.error("Billing writer did not drain; %d records pending", self.pending)
