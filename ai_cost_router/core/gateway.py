"""
Gateway: the single entry point for routed calls.

Wires quota reservation, the response cache, the router and the telemetry
recorder together so that every call ends with exactly one outcome for the
caller and exactly one billing record for the ledger.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Callable, Optional, Tuple

from .cache import CacheEntry, ResponseCache, fingerprint
from .health import HealthTracker
from .models import CallOutcome, CallRequest, OutcomeStatus
from .pricing import ModelPricing, PricingRegistry, estimate_cost
from .quota import QuotaEnforcer, UsageLoader
from .ratelimit import AdmissionController
from .router import Router
from .telemetry import BillingSink, TelemetryRecorder
from .token_counter import estimate_prompt_tokens, payload_bytes

if TYPE_CHECKING:
    from ..adapters.base import AdapterRegistry
    from ..config.loader import RouterConfig

logger = logging.getLogger(__name__)


class Gateway:
    """Multi-provider router with quotas, caching and billing.

    Usage:
        gateway = Gateway(load_router_config("router.yaml"), adapters, SQLiteBillingSink())
        outcome = gateway.submit(CallRequest(tenant_id="T1", task_kind="summarize", prompt=text))

    Args:
        config: Router configuration snapshot
        adapters: Adapter per provider ID
        sink: Billing sink records are delivered to
        usage_loader: Optional source of tenant usage already billed this period
        max_workers: Worker threads for provider attempts
    """

    def __init__(
        self,
        config: "RouterConfig",
        adapters: "AdapterRegistry",
        sink: BillingSink,
        usage_loader: Optional[UsageLoader] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        max_workers: int = 16,
    ):
        self._config = config
        self._clock = clock
        self._lock = threading.Lock()
        self._async_pool: Optional[ThreadPoolExecutor] = None
        self._max_workers = max_workers

        self.pricing = PricingRegistry(config.pricing_table())
        self.health = HealthTracker(
            down_threshold=config.routing.down_threshold,
            down_cooldown=config.routing.down_cooldown,
            clock=clock,
        )
        self.admission = AdmissionController(
            default_limit=config.rate_limits.per_provider,
            provider_limits=dict(config.rate_limits.providers),
            queue_timeout=config.rate_limits.queue_timeout,
            max_queue_depth=config.rate_limits.max_queue_depth,
            clock=clock,
            sleep=sleep,
        )
        self.cache = ResponseCache(max_size=config.cache.max_size, clock=clock)
        self.router = Router(
            profiles=config.profiles(),
            adapters=adapters,
            admission=self.admission,
            health=self.health,
            policy=config.routing.policy(),
            clock=clock,
            sleep=sleep,
            max_workers=max_workers,
        )
        self.quota = QuotaEnforcer(
            default_quota=config.quotas.per_tenant,
            tenant_quotas=dict(config.quotas.tenants),
            period=config.quotas.period,
            on_breach=config.quotas.on_breach,
            usage_loader=usage_loader,
            now=now,
        )
        self.recorder = TelemetryRecorder(
            sink=sink,
            pricing=self.pricing,
            max_queue=config.telemetry.max_queue,
            enqueue_timeout=config.telemetry.enqueue_timeout,
            retry_base=config.telemetry.retry_base,
            retry_max=config.telemetry.retry_max,
            sleep=sleep,
            now=now,
        )

    @property
    def config(self) -> "RouterConfig":
        return self._config

    def estimate_cost(self, request: CallRequest) -> Decimal:
        """Conservative pre-dispatch estimate: the priciest candidate's cost.

        Prompt tokens are estimated from the payload size; completion tokens
        from ``max_tokens`` or the configured default.
        """
        candidates = self.router.candidates(request)
        if not candidates:
            return Decimal("0")
        prompt_tokens, completion_tokens = self._token_estimate(request)
        request_bytes = payload_bytes(request.prompt)
        return max(
            estimate_cost(self._pricing_for(p.provider_id, p.model_id) or p.pricing,
                          prompt_tokens, completion_tokens, request_bytes)
            for p in candidates
        )

    def estimate_tokens(self, request: CallRequest) -> int:
        """Prompt plus expected completion tokens held against the token quota."""
        return sum(self._token_estimate(request))

    def _token_estimate(self, request: CallRequest) -> Tuple[int, int]:
        completion_tokens = request.parameters.max_tokens or self._config.quotas.default_max_tokens
        return estimate_prompt_tokens(request.prompt), completion_tokens

    def _pricing_for(self, provider_id: Optional[str], model_id: Optional[str]) -> Optional[ModelPricing]:
        if provider_id is None or model_id is None:
            return None
        if (provider_id, model_id) in self.pricing.table:
            return self.pricing.get_pricing(provider_id, model_id)
        for profile in self.router.profiles:
            if profile.key == (provider_id, model_id):
                return profile.pricing
        return None

    def submit(self, request: CallRequest) -> CallOutcome:
        """
        Route one call to a terminal outcome.

        Args:
            request: Authenticated, validated request

        Returns:
            The call's single outcome, success or terminal failure

        Raises:
            QuotaExceededError: If the tenant cannot afford the call; nothing
                is dispatched or billed
            RuntimeError: If the gateway is closed; nothing is dispatched
        """
        if self.recorder.closed:
            raise RuntimeError(f"Gateway is closed, call {request.request_id} not dispatched")
        config = self._config
        deadline_at = self._clock() + (request.deadline or config.routing.call_deadline)

        reservation = self.quota.check_and_reserve(
            request.tenant_id, self.estimate_cost(request), self.estimate_tokens(request)
        )
        try:
            key = fingerprint(request)
            entry = self.cache.lookup(key)
            if entry is not None:
                outcome = CallOutcome(
                    request_id=request.request_id,
                    status=OutcomeStatus.SUCCESS,
                    provider_id=entry.provider_id,
                    model_id=entry.model_id,
                    response=entry.payload,
                    cache_hit=True,
                )
                logger.debug("Cache hit for request %s", request.request_id)
            else:
                outcome = self.router.route(request, deadline_at)
                if outcome.succeeded and key is not None:
                    self.cache.insert(key, CacheEntry(
                        payload=outcome.response,
                        usage=outcome.usage,
                        provider_id=outcome.provider_id,
                        model_id=outcome.model_id,
                        created_at=self.cache.now(),
                        ttl=config.cache.ttl,
                    ))

            record = self.recorder.record(
                request, outcome, self._pricing_for(outcome.provider_id, outcome.model_id)
            )
        except BaseException:
            self.quota.release(reservation)
            raise

        self.quota.finalize(reservation, record)
        if not outcome.succeeded:
            logger.warning(
                "Call %s for tenant %s failed: %s",
                request.request_id, request.tenant_id, outcome.failure_kind.value,
            )
        return outcome

    def submit_async(self, request: CallRequest) -> "Future[CallOutcome]":
        """Run submit() on a background thread."""
        with self._lock:
            if self._async_pool is None:
                self._async_pool = ThreadPoolExecutor(
                    max_workers=max(1, self._max_workers), thread_name_prefix="gateway-submit"
                )
            pool = self._async_pool
        return pool.submit(self.submit, request)

    def reload(self, config: "RouterConfig") -> None:
        """Apply a new configuration; calls in flight keep their snapshot."""
        with self._lock:
            self.pricing.reload(config.pricing_table())
            self.health.down_threshold = config.routing.down_threshold
            self.health.down_cooldown = config.routing.down_cooldown
            self.admission.reconfigure(
                default_limit=config.rate_limits.per_provider,
                provider_limits=dict(config.rate_limits.providers),
                queue_timeout=config.rate_limits.queue_timeout,
                max_queue_depth=config.rate_limits.max_queue_depth,
            )
            self.cache.resize(config.cache.max_size)
            self.router.reload(config.profiles(), config.routing.policy())
            self.quota.reconfigure(
                default_quota=config.quotas.per_tenant,
                tenant_quotas=dict(config.quotas.tenants),
                period=config.quotas.period,
                on_breach=config.quotas.on_breach,
            )
            self._config = config
        logger.info("Router configuration reloaded (%d provider models)", len(config.providers))

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued billing records to reach the sink."""
        return self.recorder.flush(timeout)

    def close(self) -> None:
        if self._async_pool is not None:
            self._async_pool.shutdown(wait=True)
        self.recorder.close()
        self.router.close()
