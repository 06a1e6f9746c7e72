"""
Configuration management and loading.

Handles metering settings from YAML and environment variables.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from usage_meter.core.ceiling import MAX_MONTHLY_COST, WARNING_RATIO
from usage_meter.core.entitlement import (
    DEFAULT_PLAN_LIMITS,
    TRIAL_GRANTS_UNLIMITED,
    PlanLimits,
    PlanLimitsTable,
    PlanType,
)
from usage_meter.core.pricing import DEFAULT_PRICING_TABLE, ModelPricing, PricingTable
from usage_meter.core.retention import INTERVAL_HOURS, MAX_AGE_DAYS, MAX_COST_THRESHOLD
from usage_meter.storage.db import DEFAULT_DB_PATH

MAX_MONTHLY_COST_ENV = "MAX_MONTHLY_COST_PER_USER"


class Environment(Enum):
    """Deployment environments."""
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class StorageBackend(Enum):
    """Usage counter backends."""
    SQLITE = "sqlite"
    MEMORY = "memory"
    DYNAMODB = "dynamodb"


class LedgerBackend(Enum):
    """Cost ledger backends."""
    SQLITE = "sqlite"
    MEMORY = "memory"


@dataclass(frozen=True)
class StorageConfig:
    """Where usage counters live."""
    backend: StorageBackend = StorageBackend.SQLITE
    db_path: str = DEFAULT_DB_PATH
    table_name: str = "UsageCounters"
    region: Optional[str] = None


@dataclass(frozen=True)
class LedgerConfig:
    """Where the cost ledger lives."""
    backend: LedgerBackend = LedgerBackend.SQLITE
    db_path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class CeilingConfig:
    """Monthly cost ceiling; ``max_monthly_cost`` of None disables it."""
    max_monthly_cost: Optional[Decimal] = MAX_MONTHLY_COST
    warning_ratio: Decimal = WARNING_RATIO

    def __post_init__(self):
        """Validate ceiling values."""
        if self.max_monthly_cost is not None and self.max_monthly_cost <= 0:
            raise ValueError("max_monthly_cost must be > 0")
        if not Decimal("0") < self.warning_ratio <= Decimal("1"):
            raise ValueError("warning_ratio must be in (0, 1]")


@dataclass(frozen=True)
class RetentionConfig:
    """Ledger retention window."""
    max_age_days: int = MAX_AGE_DAYS
    max_cost_threshold: Decimal = MAX_COST_THRESHOLD
    interval_hours: float = INTERVAL_HOURS

    def __post_init__(self):
        """Validate retention values."""
        if self.max_age_days <= 0:
            raise ValueError("max_age_days must be > 0")
        if self.max_cost_threshold < 0:
            raise ValueError("max_cost_threshold cannot be negative")
        if self.interval_hours <= 0:
            raise ValueError("interval_hours must be > 0")


@dataclass(frozen=True)
class MeteringConfig:
    """Complete metering configuration."""
    environment: Environment = Environment.DEVELOPMENT
    storage: StorageConfig = field(default_factory=StorageConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    pricing: PricingTable = DEFAULT_PRICING_TABLE
    plans: PlanLimitsTable = DEFAULT_PLAN_LIMITS
    cost_ceiling: CeilingConfig = field(default_factory=CeilingConfig)
    trial_grants_unlimited: bool = TRIAL_GRANTS_UNLIMITED
    retention: RetentionConfig = field(default_factory=RetentionConfig)

    def __post_init__(self):
        """Refuse process-local backends in production."""
        if self.environment == Environment.PRODUCTION:
            if self.storage.backend == StorageBackend.MEMORY:
                raise ValueError("The in-memory usage store cannot be used in production")
            if self.ledger.backend == LedgerBackend.MEMORY:
                raise ValueError("The in-memory cost ledger cannot be used in production")


def default_metering_config() -> MeteringConfig:
    """All-defaults configuration, with environment overrides applied."""
    return _apply_env_overrides(MeteringConfig())


def load_metering_config(path: str) -> MeteringConfig:
    """Load and validate metering configuration from YAML file.

    Strict validation ensures no silent misconfigurations: a typo in a
    key would otherwise quietly fall back to a default cap or ceiling.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MeteringConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Metering config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    _check_keys(raw_config, {
        'environment', 'storage', 'ledger', 'pricing', 'plans',
        'cost_ceiling', 'entitlement', 'retention'
    }, "configuration")

    environment = _parse_enum(raw_config.get('environment', 'development'), Environment, "environment")

    config = MeteringConfig(
        environment=environment,
        storage=_parse_storage(_section(raw_config, 'storage')),
        ledger=_parse_ledger(_section(raw_config, 'ledger')),
        pricing=_parse_pricing(_section(raw_config, 'pricing')),
        plans=_parse_plans(_section(raw_config, 'plans')),
        cost_ceiling=_parse_ceiling(_section(raw_config, 'cost_ceiling')),
        trial_grants_unlimited=_parse_entitlement(_section(raw_config, 'entitlement')),
        retention=_parse_retention(_section(raw_config, 'retention')),
    )
    return _apply_env_overrides(config)


def _apply_env_overrides(config: MeteringConfig) -> MeteringConfig:
    raw = os.environ.get(MAX_MONTHLY_COST_ENV)
    if raw is None or not raw.strip():
        return config
    try:
        ceiling = Decimal(raw.strip())
    except InvalidOperation:
        raise ValueError(f"{MAX_MONTHLY_COST_ENV} must be a number, got {raw!r}")
    return MeteringConfig(
        environment=config.environment,
        storage=config.storage,
        ledger=config.ledger,
        pricing=config.pricing,
        plans=config.plans,
        cost_ceiling=CeilingConfig(max_monthly_cost=ceiling, warning_ratio=config.cost_ceiling.warning_ratio),
        trial_grants_unlimited=config.trial_grants_unlimited,
        retention=config.retention,
    )


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _parse_enum(value: Any, enum_cls, path: str):
    if not isinstance(value, str):
        raise ValueError(f"'{path}' must be a string")
    try:
        return enum_cls(value.lower())
    except ValueError:
        valid = [member.value for member in enum_cls]
        raise ValueError(f"'{path}' must be one of: {valid}")


def _parse_decimal(value: Any, path: str) -> Decimal:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
        raise ValueError(f"'{path}' must be a number")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")


def _parse_int(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{path}' must be an integer")
    return value


def _parse_str(value: Any, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{path}' must be a non-empty string")
    return value


def _parse_storage(data: Dict) -> StorageConfig:
    _check_keys(data, {'backend', 'db_path', 'table_name', 'region'}, "storage")
    region = data.get('region')
    return StorageConfig(
        backend=_parse_enum(data.get('backend', 'sqlite'), StorageBackend, "storage.backend"),
        db_path=_parse_str(data.get('db_path', DEFAULT_DB_PATH), "storage.db_path"),
        table_name=_parse_str(data.get('table_name', 'UsageCounters'), "storage.table_name"),
        region=_parse_str(region, "storage.region") if region is not None else None,
    )


def _parse_ledger(data: Dict) -> LedgerConfig:
    _check_keys(data, {'backend', 'db_path'}, "ledger")
    return LedgerConfig(
        backend=_parse_enum(data.get('backend', 'sqlite'), LedgerBackend, "ledger.backend"),
        db_path=_parse_str(data.get('db_path', DEFAULT_DB_PATH), "ledger.db_path"),
    )


def _parse_pricing(data: Dict) -> PricingTable:
    """Parse the pricing section.

    A ``models`` mapping replaces the default table entirely; omitting it
    keeps the defaults.
    """
    _check_keys(data, {'default_model', 'models'}, "pricing")
    models_data = data.get('models')
    if models_data is None:
        prices = dict(DEFAULT_PRICING_TABLE.prices)
    else:
        if not isinstance(models_data, dict) or not models_data:
            raise ValueError("'pricing.models' must be a non-empty dictionary")
        prices = {}
        for model, rates in models_data.items():
            path = f"pricing.models.{model}"
            if not isinstance(rates, dict):
                raise ValueError(f"'{path}' must be a dictionary")
            _check_keys(rates, {'input_per_1k', 'output_per_1k'}, path)
            for key in ('input_per_1k', 'output_per_1k'):
                if key not in rates:
                    raise ValueError(f"Missing required '{key}' in {path}")
            prices[str(model)] = ModelPricing(
                input_cost_per_1k=_parse_decimal(rates['input_per_1k'], f"{path}.input_per_1k"),
                output_cost_per_1k=_parse_decimal(rates['output_per_1k'], f"{path}.output_per_1k"),
            )

    default_model = _parse_str(
        data.get('default_model', DEFAULT_PRICING_TABLE.default_model), "pricing.default_model"
    )
    if default_model not in prices:
        raise ValueError(f"'pricing.default_model' {default_model!r} is not a configured model")
    return PricingTable(prices=prices, default_model=default_model)


def _parse_plans(data: Dict) -> PlanLimitsTable:
    _check_keys(data, {plan.value for plan in PlanType}, "plans")
    limits = dict(DEFAULT_PLAN_LIMITS.limits)
    for plan_name, plan_data in data.items():
        path = f"plans.{plan_name}"
        if not isinstance(plan_data, dict):
            raise ValueError(f"'{path}' must be a dictionary")
        _check_keys(plan_data, {'daily_summary_cap', 'monthly_chat_cap'}, path)
        plan_type = PlanType(plan_name)
        current = limits[plan_type]
        limits[plan_type] = PlanLimits(
            daily_summary_cap=_parse_int(
                plan_data.get('daily_summary_cap', current.daily_summary_cap), f"{path}.daily_summary_cap"
            ),
            monthly_chat_cap=_parse_int(
                plan_data.get('monthly_chat_cap', current.monthly_chat_cap), f"{path}.monthly_chat_cap"
            ),
        )
    return PlanLimitsTable(limits)


def _parse_ceiling(data: Dict) -> CeilingConfig:
    _check_keys(data, {'max_monthly_cost', 'warning_ratio'}, "cost_ceiling")
    if 'max_monthly_cost' in data:
        raw_max = data['max_monthly_cost']
        max_cost = None if raw_max is None else _parse_decimal(raw_max, "cost_ceiling.max_monthly_cost")
    else:
        max_cost = MAX_MONTHLY_COST
    ratio = _parse_decimal(data.get('warning_ratio', WARNING_RATIO), "cost_ceiling.warning_ratio")
    return CeilingConfig(max_monthly_cost=max_cost, warning_ratio=ratio)


def _parse_entitlement(data: Dict) -> bool:
    _check_keys(data, {'trial_grants_unlimited'}, "entitlement")
    value = data.get('trial_grants_unlimited', TRIAL_GRANTS_UNLIMITED)
    if not isinstance(value, bool):
        raise ValueError("'entitlement.trial_grants_unlimited' must be a boolean")
    return value


def _parse_retention(data: Dict) -> RetentionConfig:
    _check_keys(data, {'max_age_days', 'max_cost_threshold', 'interval_hours'}, "retention")
    interval = data.get('interval_hours', INTERVAL_HOURS)
    if isinstance(interval, bool) or not isinstance(interval, (int, float)):
        raise ValueError("'retention.interval_hours' must be a number")
    return RetentionConfig(
        max_age_days=_parse_int(data.get('max_age_days', MAX_AGE_DAYS), "retention.max_age_days"),
        max_cost_threshold=_parse_decimal(
            data.get('max_cost_threshold', MAX_COST_THRESHOLD), "retention.max_cost_threshold"
        ),
        interval_hours=float(interval),
    )
