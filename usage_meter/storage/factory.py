"""
Backend construction.

Builds the configured usage store, cost ledger and engine. Callers pass
the results into MeteringEngine explicitly; nothing here is global.
"""

import logging

from usage_meter.config.loader import (
    LedgerBackend,
    MeteringConfig,
    StorageBackend,
)
from usage_meter.core.ceiling import CostCeilingGuard
from usage_meter.core.engine import MeteringEngine
from usage_meter.core.entitlement import EntitlementPolicy
from usage_meter.core.pricing import CostCalculator
from usage_meter.core.retention import RetentionJob
from .counters import UsageStore
from .dynamodb_store import DynamoUsageStore
from .ledger import CostLedger, InMemoryCostLedger, SqliteCostLedger
from .memory_store import InMemoryUsageStore
from .sqlite_store import SqliteUsageStore

logger = logging.getLogger(__name__)


def build_usage_store(config: MeteringConfig) -> UsageStore:
    """Create the configured usage counter adapter.

    MeteringConfig already refuses the in-memory store in production.
    """
    backend = config.storage.backend
    if backend == StorageBackend.MEMORY:
        logger.warning("Using in-memory usage counters; usage will not survive a restart")
        return InMemoryUsageStore()
    if backend == StorageBackend.DYNAMODB:
        return DynamoUsageStore(table_name=config.storage.table_name, region_name=config.storage.region)
    return SqliteUsageStore(config.storage.db_path)


def build_cost_ledger(config: MeteringConfig) -> CostLedger:
    """Create the configured cost ledger."""
    if config.ledger.backend == LedgerBackend.MEMORY:
        return InMemoryCostLedger()
    return SqliteCostLedger(config.ledger.db_path)


def build_engine(config: MeteringConfig) -> MeteringEngine:
    """Wire an engine from configuration."""
    ceiling = config.cost_ceiling
    return MeteringEngine(
        store=build_usage_store(config),
        ledger=build_cost_ledger(config),
        policy=EntitlementPolicy(config.plans, config.trial_grants_unlimited),
        ceiling=CostCeilingGuard(ceiling.max_monthly_cost, ceiling.warning_ratio),
        calculator=CostCalculator(config.pricing),
    )


def build_retention_job(config: MeteringConfig, ledger: CostLedger) -> RetentionJob:
    retention = config.retention
    return RetentionJob(
        ledger,
        max_age_days=retention.max_age_days,
        max_cost_threshold=retention.max_cost_threshold,
        interval_hours=retention.interval_hours,
    )
