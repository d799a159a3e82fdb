"""
Router and failover engine.

Orders candidate provider models for a task kind and walks them one at a time
under the call's deadline. Retryable errors fail over after a backoff;
fatal errors abort the call so configuration bugs are never masked.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence, Tuple

from .errors import ErrorKind, ProviderError, RateLimitedError, normalize_error
from .health import HealthTracker
from .models import (
    AttemptRecord,
    CallOutcome,
    CallRequest,
    HealthState,
    OutcomeStatus,
    ProviderProfile,
)
from .ratelimit import AdmissionController

if TYPE_CHECKING:
    from ..adapters.base import AdapterRegistry, AdapterResponse

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoutingPolicy:
    """Ordering and retry settings for one config snapshot."""
    failover_order: Tuple[str, ...] = ()
    backoff_base: float = 0.1
    backoff_max: float = 2.0
    attempt_timeout: Optional[float] = None

    def __post_init__(self):
        if self.backoff_base < 0:
            raise ValueError("backoff_base cannot be negative")
        if self.backoff_max < self.backoff_base:
            raise ValueError("backoff_max must be >= backoff_base")
        if self.attempt_timeout is not None and self.attempt_timeout <= 0:
            raise ValueError("attempt_timeout must be > 0")

    def backoff(self, failures: int) -> float:
        """Delay after the n-th retryable failure of a call (n >= 1)."""
        return min(self.backoff_max, self.backoff_base * (2 ** (failures - 1)))


def order_candidates(
    profiles: Sequence[ProviderProfile],
    task_kind: str,
    health: HealthTracker,
    failover_order: Sequence[str] = (),
) -> List[ProviderProfile]:
    """Build the ordered candidate list for a task kind.

    Profiles are sorted by priority rank, ties broken by the provider's
    position in ``failover_order`` (unlisted providers last). DOWN profiles
    are skipped and DEGRADED ones are moved to the tail, keeping their
    relative order.
    """
    position = {provider_id: i for i, provider_id in enumerate(failover_order)}
    serving = [p for p in profiles if p.serves(task_kind)]
    serving.sort(key=lambda p: (p.rank_for(task_kind), position.get(p.provider_id, len(position))))

    healthy, degraded = [], []
    for profile in serving:
        state = health.state(profile)
        if state == HealthState.DOWN:
            continue
        if state == HealthState.DEGRADED:
            degraded.append(profile)
        else:
            healthy.append(profile)
    return healthy + degraded


class _AttemptAbandoned(Exception):
    """An attempt was still running when the call's deadline passed."""


@dataclass
class _CallState:
    """Explicit failover state for one call."""
    deadline_at: float
    started_at: float
    cursor: int = 0
    attempts: int = 0
    retryable_failures: int = 0
    last_error: Optional[ProviderError] = None
    admission_denials: int = 0
    trail: List[AttemptRecord] = field(default_factory=list)


class Router:
    """Dispatches a request across its candidates.

    Attempts run strictly one at a time. With a worker pool the router stops
    waiting on an attempt at the call's deadline; ``max_workers=0`` runs
    attempts on the calling thread. Either way the per-attempt timeout is
    handed to the adapter to enforce.
    """

    def __init__(
        self,
        profiles: Sequence[ProviderProfile],
        adapters: "AdapterRegistry",
        admission: AdmissionController,
        health: HealthTracker,
        policy: Optional[RoutingPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        max_workers: int = 16,
    ):
        self._profiles: Tuple[ProviderProfile, ...] = tuple(profiles)
        self._policy = policy or RoutingPolicy()
        self.adapters = adapters
        self.admission = admission
        self.health = health
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._executor = (
            ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="provider-call")
            if max_workers > 0 else None
        )

    @property
    def profiles(self) -> Tuple[ProviderProfile, ...]:
        return self._profiles

    @property
    def policy(self) -> RoutingPolicy:
        return self._policy

    def reload(self, profiles: Sequence[ProviderProfile], policy: RoutingPolicy) -> None:
        """Swap profiles and policy; calls in flight keep their snapshot."""
        with self._lock:
            self._profiles = tuple(profiles)
            self._policy = policy

    def candidates(self, request: CallRequest) -> List[ProviderProfile]:
        return order_candidates(
            self._profiles, request.task_kind, self.health, self._policy.failover_order
        )

    def route(self, request: CallRequest, deadline_at: float) -> CallOutcome:
        """Run the failover state machine until a terminal outcome."""
        with self._lock:
            profiles, policy = self._profiles, self._policy
        candidates = order_candidates(profiles, request.task_kind, self.health, policy.failover_order)
        state = _CallState(deadline_at=deadline_at, started_at=self._clock())

        if not candidates:
            logger.warning("No available candidates for task kind %s", request.task_kind)

        while state.cursor < len(candidates):
            if self._remaining(state) <= 0:
                return self._fail(request, state, ErrorKind.DEADLINE_EXCEEDED,
                                  "Deadline elapsed before a provider succeeded")

            profile = candidates[state.cursor]
            state.cursor += 1

            try:
                self.admission.try_acquire(
                    profile.provider_id, request.tenant_id, max_wait=self._remaining(state)
                )
            except RateLimitedError as e:
                state.admission_denials += 1
                logger.info("Admission denied for %s: %s", profile.provider_id, e)
                continue

            if self._remaining(state) <= 0:
                return self._fail(request, state, ErrorKind.DEADLINE_EXCEEDED,
                                  "Deadline elapsed while waiting for admission")

            state.attempts += 1
            attempt_started = self._clock()
            try:
                response = self._invoke(profile, request, state, policy)
            except _AttemptAbandoned:
                logger.warning(
                    "Attempt on %s/%s still running at the deadline, abandoning call",
                    profile.provider_id, profile.model_id,
                )
                state.trail.append(AttemptRecord(
                    profile.provider_id, profile.model_id, ErrorKind.DEADLINE_EXCEEDED,
                    self._clock() - attempt_started,
                ))
                return self._fail(request, state, ErrorKind.DEADLINE_EXCEEDED,
                                  "No provider response before the deadline")
            except ProviderError as e:
                latency = self._clock() - attempt_started
                state.trail.append(AttemptRecord(profile.provider_id, profile.model_id, e.kind, latency))
                state.last_error = e

                if e.kind.fatal:
                    logger.error(
                        "Fatal %s from %s/%s, aborting without failover",
                        e.kind.value, profile.provider_id, profile.model_id,
                    )
                    return self._fail(request, state, e.kind, str(e))

                self.health.mark_failure(profile)
                state.retryable_failures += 1
                logger.warning(
                    "Attempt %d on %s/%s failed with %s, failing over",
                    state.attempts, profile.provider_id, profile.model_id, e.kind.value,
                )
                if state.cursor < len(candidates):
                    self._backoff(state, policy)
                continue

            latency = self._clock() - attempt_started
            if self._clock() > state.deadline_at:
                # Resolved too late: the caller has already given up on it
                logger.warning(
                    "Discarding response from %s/%s that arrived after the deadline",
                    profile.provider_id, profile.model_id,
                )
                state.trail.append(AttemptRecord(
                    profile.provider_id, profile.model_id, ErrorKind.DEADLINE_EXCEEDED, latency
                ))
                return self._fail(request, state, ErrorKind.DEADLINE_EXCEEDED,
                                  "Provider responded after the deadline")

            self.health.mark_success(profile)
            state.trail.append(AttemptRecord(profile.provider_id, profile.model_id, None, latency))
            return CallOutcome(
                request_id=request.request_id,
                status=OutcomeStatus.SUCCESS,
                provider_id=profile.provider_id,
                model_id=profile.model_id,
                attempts=state.attempts,
                latency=self._clock() - state.started_at,
                usage=response.usage,
                response=response.payload,
                trail=tuple(state.trail),
            )

        if self._remaining(state) <= 0:
            return self._fail(request, state, ErrorKind.DEADLINE_EXCEEDED,
                              "Deadline elapsed before a provider succeeded")
        return self._fail(request, state, ErrorKind.ALL_PROVIDERS_EXHAUSTED,
                          self._exhausted_message(request, state))

    def _remaining(self, state: _CallState) -> float:
        return state.deadline_at - self._clock()

    def _attempt_timeout(self, state: _CallState, policy: RoutingPolicy) -> float:
        remaining = self._remaining(state)
        if policy.attempt_timeout is None:
            return remaining
        return min(policy.attempt_timeout, remaining)

    def _backoff(self, state: _CallState, policy: RoutingPolicy) -> None:
        delay = min(policy.backoff(state.retryable_failures), max(0.0, self._remaining(state)))
        if delay > 0:
            self._sleep(delay)

    def _invoke(self, profile: ProviderProfile, request: CallRequest,
                state: _CallState, policy: RoutingPolicy) -> "AdapterResponse":
        """Run one attempt to completion or until the call's deadline.

        The adapter enforces the per-attempt timeout. The next candidate is
        never dispatched while this attempt is still running.
        """
        adapter = self.adapters.get(profile.provider_id)
        timeout = self._attempt_timeout(state, policy)
        if self._executor is None:
            try:
                return adapter.invoke(profile, request, timeout)
            except ProviderError:
                raise
            except Exception as e:
                raise normalize_error(e, profile.provider_id) from e

        future = self._executor.submit(adapter.invoke, profile, request, timeout)
        try:
            return future.result(timeout=max(0.0, self._remaining(state)))
        except FuturesTimeout:
            if not future.done():
                future.add_done_callback(_log_late_result(profile))
                raise _AttemptAbandoned() from None
            # The adapter itself raised TimeoutError, or finished at the deadline
            error = future.exception()
            if error is None:
                return future.result()
            raise normalize_error(error, profile.provider_id) from error
        except ProviderError:
            raise
        except Exception as e:
            raise normalize_error(e, profile.provider_id) from e

    def _exhausted_message(self, request: CallRequest, state: _CallState) -> str:
        if state.attempts == 0 and state.admission_denials == 0:
            return f"No provider serves task kind {request.task_kind}"
        message = f"All providers exhausted after {state.attempts} attempts"
        if state.admission_denials:
            message += f" ({state.admission_denials} denied by rate limit)"
        if state.last_error is not None:
            message += f"; last error: {state.last_error}"
        return message

    def _fail(self, request: CallRequest, state: _CallState, kind: ErrorKind, message: str) -> CallOutcome:
        last = state.trail[-1] if state.trail else None
        return CallOutcome(
            request_id=request.request_id,
            status=OutcomeStatus.FAILED,
            provider_id=last.provider_id if last else None,
            model_id=last.model_id if last else None,
            attempts=state.attempts,
            latency=self._clock() - state.started_at,
            failure_kind=kind,
            error_message=message,
            trail=tuple(state.trail),
        )

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)


def _log_late_result(profile: ProviderProfile) -> Callable[[Future], None]:
    def _callback(future: Future) -> None:
        if future.exception() is None:
            logger.warning(
                "Late response from %s/%s after the call deadline was discarded",
                profile.provider_id, profile.model_id,
            )
    return _callback
