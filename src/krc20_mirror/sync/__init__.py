"""Sync layer - reconciliation engine, hourly scheduler and price sampler."""

from krc20_mirror.sync.engine import (
    ConcurrencyConflict,
    EngineState,
    EngineStats,
    PassResult,
    ReconciliationEngine,
    TickerSyncError,
)
from krc20_mirror.sync.price_sampler import PriceSampler, SampleResult
from krc20_mirror.sync.scheduler import HourlyScheduler, next_hour_boundary

__all__ = [
    "ConcurrencyConflict",
    "EngineState",
    "EngineStats",
    "HourlyScheduler",
    "PassResult",
    "PriceSampler",
    "ReconciliationEngine",
    "SampleResult",
    "TickerSyncError",
    "next_hour_boundary",
]
