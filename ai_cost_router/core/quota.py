"""
Per-tenant quota enforcement.

Reserves an estimated cost before dispatch so concurrent calls cannot
overshoot a tenant's quota, then reconciles the reservation with the billed
cost once the call completes.

Enforcement:
1. Token quota - tokens used + reserved + this estimate above the limit
2. Cost quota - spent + reserved + this estimate above the limit
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from ..storage.models import BillingRecord
from .errors import QuotaExceededError

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

UsageLoader = Callable[[str, datetime], Tuple[int, Decimal]]


class QuotaPeriod(Enum):
    """Billing period; boundaries are in UTC."""
    DAILY = "daily"
    MONTHLY = "monthly"

    def start_of(self, moment: datetime) -> datetime:
        moment = moment.astimezone(timezone.utc)
        start = moment.replace(hour=0, minute=0, second=0, microsecond=0)
        if self == QuotaPeriod.MONTHLY:
            start = start.replace(day=1)
        return start


class BreachAction(Enum):
    """Actions to take when a tenant is over quota."""
    BLOCK = "block"  # Reject the call before dispatch
    WARN = "warn"    # Log a warning and let the call through


@dataclass(frozen=True)
class TenantQuota:
    """Limits for one tenant per period. None means unlimited."""
    max_cost: Optional[Decimal] = None
    max_tokens: Optional[int] = None

    def __post_init__(self):
        if self.max_cost is not None and self.max_cost < 0:
            raise ValueError("max_cost cannot be negative")
        if self.max_tokens is not None and self.max_tokens < 0:
            raise ValueError("max_tokens cannot be negative")


@dataclass
class TenantUsage:
    """Cumulative usage of one tenant in the current period."""
    tenant_id: str
    period_start: datetime
    tokens_used: int = 0
    cost_spent: Decimal = ZERO
    cost_reserved: Decimal = ZERO
    tokens_reserved: int = 0
    requests: int = 0

    @property
    def committed(self) -> Decimal:
        return self.cost_spent + self.cost_reserved

    @property
    def tokens_committed(self) -> int:
        return self.tokens_used + self.tokens_reserved


@dataclass(frozen=True)
class Reservation:
    """Cost and tokens held for one call until it is finalized or released."""
    tenant_id: str
    amount: Decimal
    period_start: datetime
    over_quota: bool = False
    tokens: int = 0
    reservation_id: str = field(default_factory=lambda: uuid.uuid4().hex)


class QuotaEnforcer:
    """Reserve-then-reconcile quota accounting, one lock per tenant.

    Args:
        default_quota: Quota for tenants without an explicit entry
        tenant_quotas: Per-tenant quota overrides
        period: Billing period usage accumulates over
        on_breach: BLOCK rejects over-quota calls, WARN lets them through
        usage_loader: Optional ``(tenant_id, period_start) -> (tokens, cost)``
            used to seed a tenant's usage from the billing ledger
    """

    def __init__(
        self,
        default_quota: Optional[TenantQuota] = None,
        tenant_quotas: Optional[Dict[str, TenantQuota]] = None,
        period: QuotaPeriod = QuotaPeriod.MONTHLY,
        on_breach: BreachAction = BreachAction.BLOCK,
        usage_loader: Optional[UsageLoader] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.default_quota = default_quota or TenantQuota()
        self.tenant_quotas = dict(tenant_quotas or {})
        self.period = period
        self.on_breach = on_breach
        self.usage_loader = usage_loader
        self._now = now
        self._usage: Dict[str, TenantUsage] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def quota_for(self, tenant_id: str) -> TenantQuota:
        return self.tenant_quotas.get(tenant_id, self.default_quota)

    def _lock_for(self, tenant_id: str) -> threading.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            with self._registry_lock:
                lock = self._locks.setdefault(tenant_id, threading.Lock())
        return lock

    def _current(self, tenant_id: str) -> TenantUsage:
        """Usage for the current period, rolling over if needed. Caller holds the tenant lock."""
        period_start = self.period.start_of(self._now())
        usage = self._usage.get(tenant_id)
        if usage is None or usage.period_start != period_start:
            usage = TenantUsage(tenant_id=tenant_id, period_start=period_start)
            if self.usage_loader is not None:
                tokens, cost = self.usage_loader(tenant_id, period_start)
                usage.tokens_used = tokens
                usage.cost_spent = Decimal(cost)
            self._usage[tenant_id] = usage
        return usage

    def check_and_reserve(self, tenant_id: str, estimated_cost: Decimal,
                          estimated_tokens: int = 0) -> Reservation:
        """
        Reserve an estimated cost and token count for a call.

        Args:
            tenant_id: Tenant making the call
            estimated_cost: Optimistic pre-dispatch estimate
            estimated_tokens: Prompt plus expected completion tokens

        Returns:
            Reservation to pass to finalize() or release()

        Raises:
            QuotaExceededError: If the tenant cannot afford the call and the
                breach action is BLOCK
        """
        estimated_cost = Decimal(estimated_cost)
        if estimated_cost < 0:
            raise ValueError("estimated_cost cannot be negative")
        if estimated_tokens < 0:
            raise ValueError("estimated_tokens cannot be negative")

        quota = self.quota_for(tenant_id)
        with self._lock_for(tenant_id):
            usage = self._current(tenant_id)
            message = self._breach_message(tenant_id, quota, usage, estimated_cost, estimated_tokens)
            over_quota = message is not None
            if over_quota:
                if self.on_breach == BreachAction.BLOCK:
                    raise QuotaExceededError(message, tenant_id, self._usage_info(quota, usage))
                logger.warning("%s; allowing call (on_breach=warn)", message)

            usage.cost_reserved += estimated_cost
            usage.tokens_reserved += estimated_tokens
            return Reservation(
                tenant_id=tenant_id,
                amount=estimated_cost,
                period_start=usage.period_start,
                over_quota=over_quota,
                tokens=estimated_tokens,
            )

    def _breach_message(self, tenant_id: str, quota: TenantQuota, usage: TenantUsage,
                        estimated_cost: Decimal, estimated_tokens: int) -> Optional[str]:
        if quota.max_tokens is not None:
            if usage.tokens_committed >= quota.max_tokens:
                return (
                    f"Token quota of {quota.max_tokens} reached for tenant {tenant_id}. "
                    f"Current usage: {usage.tokens_used}, reserved: {usage.tokens_reserved}"
                )
            if usage.tokens_committed + estimated_tokens > quota.max_tokens:
                return (
                    f"Token quota of {quota.max_tokens} would be exceeded for tenant {tenant_id}: "
                    f"used {usage.tokens_used}, reserved {usage.tokens_reserved}, "
                    f"requested {estimated_tokens}"
                )
        if quota.max_cost is not None and usage.committed + estimated_cost > quota.max_cost:
            return (
                f"Cost quota of ${quota.max_cost} would be exceeded for tenant {tenant_id}: "
                f"spent ${usage.cost_spent}, reserved ${usage.cost_reserved}, "
                f"requested ${estimated_cost}"
            )
        return None

    @staticmethod
    def _usage_info(quota: TenantQuota, usage: TenantUsage) -> Dict[str, Any]:
        return {
            "max_cost": quota.max_cost,
            "max_tokens": quota.max_tokens,
            "cost_spent": usage.cost_spent,
            "cost_reserved": usage.cost_reserved,
            "tokens_used": usage.tokens_used,
            "tokens_reserved": usage.tokens_reserved,
            "period_start": usage.period_start.isoformat(),
        }

    def finalize(self, reservation: Reservation, record: BillingRecord) -> None:
        """Replace a reservation with the billed cost and tokens."""
        with self._lock_for(reservation.tenant_id):
            usage = self._current(reservation.tenant_id)
            if usage.period_start == reservation.period_start:
                self._drop_reservation(usage, reservation)
            usage.cost_spent += record.estimated_cost
            usage.tokens_used += record.total_tokens
            usage.requests += 1

    def release(self, reservation: Reservation) -> None:
        """Return a reservation that will never be billed."""
        with self._lock_for(reservation.tenant_id):
            usage = self._current(reservation.tenant_id)
            if usage.period_start == reservation.period_start:
                self._drop_reservation(usage, reservation)

    @staticmethod
    def _drop_reservation(usage: TenantUsage, reservation: Reservation) -> None:
        usage.cost_reserved = max(ZERO, usage.cost_reserved - reservation.amount)
        usage.tokens_reserved = max(0, usage.tokens_reserved - reservation.tokens)

    def usage(self, tenant_id: str) -> TenantUsage:
        """Snapshot of a tenant's usage for the current period."""
        with self._lock_for(tenant_id):
            return replace(self._current(tenant_id))

    def remaining(self, tenant_id: str) -> Optional[Decimal]:
        """Cost still available to a tenant, or None when unlimited."""
        quota = self.quota_for(tenant_id)
        if quota.max_cost is None:
            return None
        usage = self.usage(tenant_id)
        return max(ZERO, quota.max_cost - usage.committed)

    def reconfigure(
        self,
        default_quota: TenantQuota,
        tenant_quotas: Optional[Dict[str, TenantQuota]] = None,
        period: Optional[QuotaPeriod] = None,
        on_breach: Optional[BreachAction] = None,
    ) -> None:
        """Apply new limits; accumulated usage is kept."""
        with self._registry_lock:
            self.default_quota = default_quota
            self.tenant_quotas = dict(tenant_quotas or {})
            if period is not None:
                self.period = period
            if on_breach is not None:
                self.on_breach = on_breach
