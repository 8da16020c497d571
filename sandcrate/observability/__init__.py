"""
Sandcrate Observability Module.

Provides OpenTelemetry-based metrics for monitoring sandbox executions,
backend fallbacks and the container pool.
"""

from sandcrate.observability.metrics import (
    # Initialization
    init_metrics,
    shutdown_metrics,
    is_initialized,
    get_meter_provider,
    get_meter,
    ExporterType,
    # Execution metrics
    record_execution,
    record_fallback,
    # Pool metrics
    update_pool_size,
    get_pool_size,
    # Context managers
    ExecutionTimer,
)

__all__ = [
    "init_metrics",
    "shutdown_metrics",
    "is_initialized",
    "get_meter_provider",
    "get_meter",
    "ExporterType",
    "record_execution",
    "record_fallback",
    "update_pool_size",
    "get_pool_size",
    "ExecutionTimer",
]
