"""
Configuration management and loading.

Strict YAML configuration for providers, routing, rate limits, quotas, cache
and telemetry, plus runtime overrides and reload-on-signal.
"""

import logging
import signal
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

import yaml

from ai_cost_router.core.errors import ConfigError
from ai_cost_router.core.models import ProviderProfile
from ai_cost_router.core.pricing import ModelPricing, PricingTable
from ai_cost_router.core.quota import BreachAction, QuotaPeriod, TenantQuota
from ai_cost_router.core.ratelimit import BucketConfig
from ai_cost_router.core.router import RoutingPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderConfig:
    """One provider model entry."""
    provider: str
    model: str
    priorities: Mapping[str, int]
    pricing: ModelPricing
    capabilities: FrozenSet[str] = frozenset()

    def to_profile(self) -> ProviderProfile:
        return ProviderProfile(
            provider_id=self.provider,
            model_id=self.model,
            priorities=dict(self.priorities),
            pricing=self.pricing,
            capabilities=self.capabilities,
        )


@dataclass(frozen=True)
class RoutingConfig:
    """Candidate ordering, retry and deadline settings."""
    primary_provider: Optional[str] = None
    failover_order: Tuple[str, ...] = ()
    call_deadline: float = 30.0
    attempt_timeout: Optional[float] = None
    backoff_base: float = 0.1
    backoff_max: float = 2.0
    down_threshold: int = 3
    down_cooldown: float = 30.0

    def __post_init__(self):
        """Validate routing values."""
        if self.call_deadline <= 0:
            raise ConfigError("call_deadline must be > 0")
        if self.attempt_timeout is not None and self.attempt_timeout <= 0:
            raise ConfigError("attempt_timeout must be > 0")
        if self.backoff_base < 0:
            raise ConfigError("backoff_base cannot be negative")
        if self.backoff_max < self.backoff_base:
            raise ConfigError("backoff_max must be >= backoff_base")
        if self.down_threshold < 1:
            raise ConfigError("down_threshold must be >= 1")
        if self.down_cooldown < 0:
            raise ConfigError("down_cooldown cannot be negative")

    @property
    def effective_order(self) -> Tuple[str, ...]:
        """Failover order with the primary provider moved to the front."""
        if not self.primary_provider:
            return self.failover_order
        rest = tuple(p for p in self.failover_order if p != self.primary_provider)
        return (self.primary_provider,) + rest

    def policy(self) -> RoutingPolicy:
        return RoutingPolicy(
            failover_order=self.effective_order,
            backoff_base=self.backoff_base,
            backoff_max=self.backoff_max,
            attempt_timeout=self.attempt_timeout,
        )


@dataclass(frozen=True)
class RateLimitConfig:
    """Token bucket limits per (provider, tenant)."""
    per_provider: BucketConfig = field(default_factory=lambda: BucketConfig(capacity=10, refill_rate=5))
    providers: Mapping[str, BucketConfig] = field(default_factory=dict)
    queue_timeout: float = 0.0
    max_queue_depth: int = 0

    def __post_init__(self):
        if self.queue_timeout < 0:
            raise ConfigError("queue_timeout cannot be negative")
        if self.max_queue_depth < 0:
            raise ConfigError("max_queue_depth cannot be negative")


@dataclass(frozen=True)
class QuotaConfig:
    """Tenant quotas."""
    per_tenant: TenantQuota = field(default_factory=TenantQuota)
    tenants: Mapping[str, TenantQuota] = field(default_factory=dict)
    period: QuotaPeriod = QuotaPeriod.MONTHLY
    on_breach: BreachAction = BreachAction.BLOCK
    default_max_tokens: int = 512

    def __post_init__(self):
        if self.default_max_tokens <= 0:
            raise ConfigError("default_max_tokens must be > 0")


@dataclass(frozen=True)
class CacheConfig:
    """Response cache limits."""
    ttl: float = 300.0
    max_size: int = 10 * 1024 * 1024

    def __post_init__(self):
        if self.ttl <= 0:
            raise ConfigError("cache ttl must be > 0")
        if self.max_size <= 0:
            raise ConfigError("cache max_size must be > 0")


@dataclass(frozen=True)
class TelemetryConfig:
    """Billing delivery settings."""
    max_queue: int = 1000
    enqueue_timeout: float = 1.0
    retry_base: float = 0.5
    retry_max: float = 30.0

    def __post_init__(self):
        if self.max_queue <= 0:
            raise ConfigError("telemetry max_queue must be > 0")
        if self.enqueue_timeout < 0:
            raise ConfigError("telemetry enqueue_timeout cannot be negative")
        if self.retry_base <= 0 or self.retry_max < self.retry_base:
            raise ConfigError("telemetry retry_base must be > 0 and <= retry_max")


@dataclass(frozen=True)
class RouterConfig:
    """Complete router configuration."""
    providers: Tuple[ProviderConfig, ...]
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    quotas: QuotaConfig = field(default_factory=QuotaConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)

    def __post_init__(self):
        seen = set()
        for provider in self.providers:
            key = (provider.provider, provider.model)
            if key in seen:
                raise ConfigError(f"Duplicate provider model: {key[0]}/{key[1]}")
            seen.add(key)
        known = {p.provider for p in self.providers}
        primary = self.routing.primary_provider
        if primary and primary not in known:
            raise ConfigError(f"primary_provider '{primary}' is not a configured provider")
        unknown = [p for p in self.routing.failover_order if p not in known]
        if unknown:
            raise ConfigError(f"failover_order names unknown providers: {unknown}")

    def profiles(self) -> Tuple[ProviderProfile, ...]:
        return tuple(p.to_profile() for p in self.providers)

    def pricing_table(self) -> PricingTable:
        return PricingTable({(p.provider, p.model): p.pricing for p in self.providers})


def load_router_config(path: str) -> RouterConfig:
    """Load and validate router configuration from YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to unexpected cost overruns or misrouted calls.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated RouterConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ConfigError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Router config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ConfigError("Configuration file is empty")
    return parse_router_config(raw_config)


def parse_router_config(raw_config: Dict[str, Any]) -> RouterConfig:
    """Validate an already-parsed configuration mapping."""
    if not isinstance(raw_config, dict):
        raise ConfigError("Configuration must be a mapping")
    _check_keys(raw_config, {'routing', 'providers', 'rate_limits', 'quotas', 'cache', 'telemetry'},
                "configuration")

    providers_data = raw_config.get('providers')
    if not providers_data:
        raise ConfigError("Missing required 'providers' section")
    if not isinstance(providers_data, list):
        raise ConfigError("'providers' must be a list")
    providers = tuple(
        _parse_provider(entry, f"providers[{i}]") for i, entry in enumerate(providers_data)
    )

    return RouterConfig(
        providers=providers,
        routing=_parse_routing(_section(raw_config, 'routing')),
        rate_limits=_parse_rate_limits(_section(raw_config, 'rate_limits')),
        quotas=_parse_quotas(_section(raw_config, 'quotas')),
        cache=_parse_cache(_section(raw_config, 'cache')),
        telemetry=_parse_telemetry(_section(raw_config, 'telemetry')),
    )


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    data = raw.get(name) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"'{name}' must be a dictionary")
    return data


def _check_keys(data: Dict[str, Any], allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ConfigError(f"Unknown keys in {path}: {unknown_keys}")


def _number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"'{path}' must be a number")
    return float(value)


def _integer(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"'{path}' must be an integer")
    return value


def _decimal(value: Any, path: str) -> Decimal:
    if isinstance(value, bool):
        raise ConfigError(f"'{path}' must be a number")
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise ConfigError(f"'{path}' must be a number")
    if result < 0:
        raise ConfigError(f"'{path}' cannot be negative")
    return result


def _parse_provider(data: Any, path: str) -> ProviderConfig:
    """Parse and validate one provider entry.

    Raises:
        ConfigError: If the entry is invalid
    """
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a dictionary")
    _check_keys(data, {'provider', 'model', 'priorities', 'pricing', 'capabilities'}, path)

    for key in ('provider', 'model', 'priorities', 'pricing'):
        if key not in data:
            raise ConfigError(f"Missing required '{key}' in {path}")

    provider, model = data['provider'], data['model']
    if not isinstance(provider, str) or not provider.strip():
        raise ConfigError(f"'provider' in {path} must be a non-empty string")
    if not isinstance(model, str) or not model.strip():
        raise ConfigError(f"'model' in {path} must be a non-empty string")

    priorities_data = data['priorities']
    if not isinstance(priorities_data, dict) or not priorities_data:
        raise ConfigError(f"'priorities' in {path} must map task kinds to ranks")
    priorities = {}
    for kind, rank in priorities_data.items():
        rank = _integer(rank, f"{path}.priorities.{kind}")
        if rank < 0:
            raise ConfigError(f"'{path}.priorities.{kind}' cannot be negative")
        priorities[str(kind)] = rank

    pricing_data = data['pricing']
    if not isinstance(pricing_data, dict):
        raise ConfigError(f"'pricing' in {path} must be a dictionary")
    _check_keys(pricing_data, {'prompt_per_token', 'completion_per_token', 'per_token', 'per_byte'},
                f"{path}.pricing")
    if 'per_token' in pricing_data:
        if 'prompt_per_token' in pricing_data or 'completion_per_token' in pricing_data:
            raise ConfigError(f"{path}.pricing: use either per_token or prompt/completion prices")
        prompt_price = completion_price = _decimal(pricing_data['per_token'], f"{path}.pricing.per_token")
    else:
        for key in ('prompt_per_token', 'completion_per_token'):
            if key not in pricing_data:
                raise ConfigError(f"Missing required '{key}' in {path}.pricing")
        prompt_price = _decimal(pricing_data['prompt_per_token'], f"{path}.pricing.prompt_per_token")
        completion_price = _decimal(pricing_data['completion_per_token'],
                                    f"{path}.pricing.completion_per_token")
    byte_price = _decimal(pricing_data.get('per_byte', 0), f"{path}.pricing.per_byte")

    capabilities = data.get('capabilities', [])
    if not isinstance(capabilities, list) or not all(isinstance(c, str) for c in capabilities):
        raise ConfigError(f"'capabilities' in {path} must be a list of strings")

    return ProviderConfig(
        provider=provider,
        model=model,
        priorities=priorities,
        pricing=ModelPricing(
            prompt_cost_per_token=prompt_price,
            completion_cost_per_token=completion_price,
            cost_per_byte=byte_price,
        ),
        capabilities=frozenset(capabilities),
    )


def _parse_routing(data: Dict[str, Any]) -> RoutingConfig:
    _check_keys(data, {'primary_provider', 'failover_order', 'call_deadline', 'attempt_timeout',
                       'backoff_base', 'backoff_max', 'down_threshold', 'down_cooldown'}, "routing")
    defaults = RoutingConfig()

    failover_order = data.get('failover_order', [])
    if not isinstance(failover_order, list) or not all(isinstance(p, str) for p in failover_order):
        raise ConfigError("'routing.failover_order' must be a list of provider IDs")

    primary = data.get('primary_provider')
    if primary is not None and not isinstance(primary, str):
        raise ConfigError("'routing.primary_provider' must be a string")

    attempt_timeout = data.get('attempt_timeout')
    return RoutingConfig(
        primary_provider=primary,
        failover_order=tuple(failover_order),
        call_deadline=_number(data.get('call_deadline', defaults.call_deadline), "routing.call_deadline"),
        attempt_timeout=(None if attempt_timeout is None
                         else _number(attempt_timeout, "routing.attempt_timeout")),
        backoff_base=_number(data.get('backoff_base', defaults.backoff_base), "routing.backoff_base"),
        backoff_max=_number(data.get('backoff_max', defaults.backoff_max), "routing.backoff_max"),
        down_threshold=_integer(data.get('down_threshold', defaults.down_threshold), "routing.down_threshold"),
        down_cooldown=_number(data.get('down_cooldown', defaults.down_cooldown), "routing.down_cooldown"),
    )


def _parse_bucket(data: Any, path: str) -> BucketConfig:
    if not isinstance(data, dict):
        raise ConfigError(f"'{path}' must be a dictionary")
    _check_keys(data, {'capacity', 'refill_rate'}, path)
    for key in ('capacity', 'refill_rate'):
        if key not in data:
            raise ConfigError(f"Missing required '{key}' in {path}")
    capacity = _number(data['capacity'], f"{path}.capacity")
    refill_rate = _number(data['refill_rate'], f"{path}.refill_rate")
    if capacity <= 0 or refill_rate <= 0:
        raise ConfigError(f"'{path}' capacity and refill_rate must be > 0")
    return BucketConfig(capacity=capacity, refill_rate=refill_rate)


def _parse_rate_limits(data: Dict[str, Any]) -> RateLimitConfig:
    _check_keys(data, {'per_provider', 'providers', 'queue_timeout', 'max_queue_depth'}, "rate_limits")
    defaults = RateLimitConfig()

    overrides_data = data.get('providers', {})
    if not isinstance(overrides_data, dict):
        raise ConfigError("'rate_limits.providers' must be a dictionary")

    return RateLimitConfig(
        per_provider=(_parse_bucket(data['per_provider'], "rate_limits.per_provider")
                      if 'per_provider' in data else defaults.per_provider),
        providers={
            name: _parse_bucket(bucket, f"rate_limits.providers.{name}")
            for name, bucket in overrides_data.items()
        },
        queue_timeout=_number(data.get('queue_timeout', defaults.queue_timeout), "rate_limits.queue_timeout"),
        max_queue_depth=_integer(data.get('max_queue_depth', defaults.max_queue_depth),
                                 "rate_limits.max_queue_depth"),
    )


def _parse_tenant_quota(data: Any, path: str) -> TenantQuota:
    if not isinstance(data, dict):
        raise ConfigError(f"'{path}' must be a dictionary")
    _check_keys(data, {'max_cost', 'max_tokens'}, path)
    max_cost = data.get('max_cost')
    max_tokens = data.get('max_tokens')
    if max_tokens is not None:
        max_tokens = _integer(max_tokens, f"{path}.max_tokens")
        if max_tokens < 0:
            raise ConfigError(f"'{path}.max_tokens' cannot be negative")
    return TenantQuota(
        max_cost=None if max_cost is None else _decimal(max_cost, f"{path}.max_cost"),
        max_tokens=max_tokens,
    )


def _parse_quotas(data: Dict[str, Any]) -> QuotaConfig:
    _check_keys(data, {'per_tenant', 'tenants', 'period', 'on_breach', 'default_max_tokens'}, "quotas")
    defaults = QuotaConfig()

    tenants_data = data.get('tenants', {})
    if not isinstance(tenants_data, dict):
        raise ConfigError("'quotas.tenants' must be a dictionary")

    period_str = data.get('period', defaults.period.value)
    try:
        period = QuotaPeriod(str(period_str).lower())
    except ValueError:
        raise ConfigError(f"'quotas.period' must be one of: {[p.value for p in QuotaPeriod]}")

    action_str = data.get('on_breach', defaults.on_breach.value)
    try:
        on_breach = BreachAction(str(action_str).lower())
    except ValueError:
        raise ConfigError(f"'quotas.on_breach' must be one of: {[a.value for a in BreachAction]}")

    return QuotaConfig(
        per_tenant=(_parse_tenant_quota(data['per_tenant'], "quotas.per_tenant")
                    if 'per_tenant' in data else defaults.per_tenant),
        tenants={
            str(tenant): _parse_tenant_quota(quota, f"quotas.tenants.{tenant}")
            for tenant, quota in tenants_data.items()
        },
        period=period,
        on_breach=on_breach,
        default_max_tokens=_integer(data.get('default_max_tokens', defaults.default_max_tokens),
                                    "quotas.default_max_tokens"),
    )


def _parse_cache(data: Dict[str, Any]) -> CacheConfig:
    _check_keys(data, {'ttl', 'max_size'}, "cache")
    defaults = CacheConfig()
    return CacheConfig(
        ttl=_number(data.get('ttl', defaults.ttl), "cache.ttl"),
        max_size=_integer(data.get('max_size', defaults.max_size), "cache.max_size"),
    )


def _parse_telemetry(data: Dict[str, Any]) -> TelemetryConfig:
    _check_keys(data, {'max_queue', 'enqueue_timeout', 'retry_base', 'retry_max'}, "telemetry")
    defaults = TelemetryConfig()
    return TelemetryConfig(
        max_queue=_integer(data.get('max_queue', defaults.max_queue), "telemetry.max_queue"),
        enqueue_timeout=_number(data.get('enqueue_timeout', defaults.enqueue_timeout),
                                "telemetry.enqueue_timeout"),
        retry_base=_number(data.get('retry_base', defaults.retry_base), "telemetry.retry_base"),
        retry_max=_number(data.get('retry_max', defaults.retry_max), "telemetry.retry_max"),
    )


# Runtime-overridable options and the section field each one maps to
OVERRIDABLE_OPTIONS = {
    'primary_provider': ('routing', 'primary_provider'),
    'failover_order': ('routing', 'failover_order'),
    'call_deadline': ('routing', 'call_deadline'),
    'backoff_base': ('routing', 'backoff_base'),
    'backoff_max': ('routing', 'backoff_max'),
    'per_provider_rate_limit': ('rate_limits', 'per_provider'),
    'per_tenant_quota': ('quotas', 'per_tenant'),
    'cache_ttl': ('cache', 'ttl'),
    'cache_max_size': ('cache', 'max_size'),
}


def apply_overrides(config: RouterConfig, overrides: Dict[str, Any]) -> RouterConfig:
    """Return a new config with runtime overrides applied.

    Values may be given in their YAML form (e.g. a dict for
    ``per_provider_rate_limit``) or as already-built objects.

    Raises:
        ConfigError: If an option is unknown or a value is invalid
    """
    unknown = set(overrides) - set(OVERRIDABLE_OPTIONS)
    if unknown:
        raise ConfigError(f"Unknown override options: {unknown}")

    sections: Dict[str, Dict[str, Any]] = {}
    for option, value in overrides.items():
        section, attr = OVERRIDABLE_OPTIONS[option]
        if option == 'failover_order':
            value = tuple(value)
        elif option == 'per_provider_rate_limit' and isinstance(value, dict):
            value = _parse_bucket(value, option)
        elif option == 'per_tenant_quota' and isinstance(value, dict):
            value = _parse_tenant_quota(value, option)
        sections.setdefault(section, {})[attr] = value

    changes = {
        section: replace(getattr(config, section), **values)
        for section, values in sections.items()
    }
    return replace(config, **changes)


def install_reload_handler(gateway: Any, path: str, signum: Optional[int] = None) -> None:
    """Reload ``path`` into ``gateway`` whenever the process receives ``signum``.

    ``signum`` defaults to SIGHUP and must be given where SIGHUP does not
    exist. An invalid file is logged and the running configuration is kept.
    Must be called from the main thread.

    Raises:
        ValueError: If no signal is given and the platform has no SIGHUP
    """
    if signum is None:
        signum = getattr(signal, "SIGHUP", None)
        if signum is None:
            raise ValueError("SIGHUP is not available on this platform; pass signum explicitly")

    def _handler(_signum, _frame):
        try:
            config = load_router_config(path)
        except (OSError, yaml.YAMLError, ConfigError) as e:
            logger.error("Config reload from %s failed, keeping current config: %s", path, e)
            return
        gateway.reload(config)

    signal.signal(signum, _handler)
