"""
Provider health tracking.

Keeps HEALTHY/DEGRADED/DOWN state per provider model. The router is the only
writer; admission and candidate ordering read it.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

from .models import HealthState, ProviderProfile

logger = logging.getLogger(__name__)


@dataclass
class _HealthEntry:
    state: HealthState = HealthState.HEALTHY
    consecutive_failures: int = 0
    last_failure_time: float = 0.0


class HealthTracker:
    """Per-profile health state machine.

    A retryable failure degrades a profile; ``down_threshold`` consecutive
    failures take it DOWN. After ``down_cooldown`` seconds a DOWN profile is
    reported as DEGRADED again so a single probe call can reach it.
    """

    def __init__(
        self,
        down_threshold: int = 3,
        down_cooldown: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if down_threshold < 1:
            raise ValueError("down_threshold must be >= 1")
        if down_cooldown < 0:
            raise ValueError("down_cooldown cannot be negative")
        self.down_threshold = down_threshold
        self.down_cooldown = down_cooldown
        self._clock = clock
        self._entries: Dict[Tuple[str, str], _HealthEntry] = {}
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, key: Tuple[str, str]) -> threading.Lock:
        lock = self._locks.get(key)
        if lock is None:
            with self._registry_lock:
                self._entries.setdefault(key, _HealthEntry())
                lock = self._locks.setdefault(key, threading.Lock())
        return lock

    def state(self, profile: ProviderProfile) -> HealthState:
        """Current effective state, applying the DOWN cooldown."""
        key = profile.key
        with self._lock_for(key):
            entry = self._entries[key]
            if (entry.state == HealthState.DOWN
                    and self._clock() - entry.last_failure_time >= self.down_cooldown):
                entry.state = HealthState.DEGRADED
                logger.info("Provider %s/%s cooled down, probing as DEGRADED", *key)
            return entry.state

    def mark_success(self, profile: ProviderProfile) -> None:
        key = profile.key
        with self._lock_for(key):
            entry = self._entries[key]
            if entry.state != HealthState.HEALTHY:
                logger.info("Provider %s/%s recovered (HEALTHY)", *key)
            entry.state = HealthState.HEALTHY
            entry.consecutive_failures = 0

    def mark_failure(self, profile: ProviderProfile) -> HealthState:
        """Record a retryable failure and return the resulting state."""
        key = profile.key
        with self._lock_for(key):
            entry = self._entries[key]
            entry.consecutive_failures += 1
            entry.last_failure_time = self._clock()
            if entry.consecutive_failures >= self.down_threshold:
                if entry.state != HealthState.DOWN:
                    logger.error(
                        "Provider %s/%s marked DOWN after %d consecutive failures",
                        key[0], key[1], entry.consecutive_failures,
                    )
                entry.state = HealthState.DOWN
            else:
                entry.state = HealthState.DEGRADED
            return entry.state

    def set_state(self, profile: ProviderProfile, state: HealthState) -> None:
        """Force a state, e.g. from an operator or a health probe."""
        key = profile.key
        with self._lock_for(key):
            entry = self._entries[key]
            entry.state = state
            if state == HealthState.HEALTHY:
                entry.consecutive_failures = 0
            elif state == HealthState.DOWN:
                entry.consecutive_failures = max(entry.consecutive_failures, self.down_threshold)
                entry.last_failure_time = self._clock()

    def snapshot(self) -> Dict[Tuple[str, str], Dict[str, object]]:
        with self._registry_lock:
            keys = list(self._entries)
        result = {}
        for key in keys:
            with self._lock_for(key):
                entry = self._entries[key]
                result[key] = {
                    "state": entry.state.value,
                    "consecutive_failures": entry.consecutive_failures,
                }
        return result
