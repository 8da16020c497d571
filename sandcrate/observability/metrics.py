"""
OpenTelemetry metrics definitions for Sandcrate.

This module provides metrics instrumentation using OpenTelemetry SDK,
with configurable exporter backends (Prometheus, OTLP, Console, etc.).
Every record_* helper is a no-op until init_metrics() has been called.
"""

import time
from typing import Optional, List, Dict
from enum import Enum


class ExporterType(str, Enum):
    """Supported metrics exporter types."""
    PROMETHEUS = "prometheus"
    OTLP = "otlp"
    OTLP_HTTP = "otlp_http"
    CONSOLE = "console"
    NONE = "none"  # For testing or disabled metrics


# Global state
_meter = None
_meter_provider = None
_initialized = False

# Metric instruments
_execution_counter = None
_execution_duration = None
_fallback_counter = None
_pool_containers = None

# State for observable gauges
_current_pool_sizes: Dict[str, int] = {"idle": 0, "in_use": 0}


def _pool_containers_callback(options):
    """Callback for pool size observable gauge."""
    from opentelemetry.metrics import Observation
    for state, count in list(_current_pool_sizes.items()):
        yield Observation(count, {"state": state})


def _create_exporter(
    exporter_type: ExporterType,
    **kwargs,
):
    """
    Create a metric reader based on the exporter type.

    Args:
        exporter_type: Type of exporter to create
        **kwargs: Additional arguments for the exporter
            - endpoint: OTLP endpoint URL
            - headers: OTLP headers dict
            - export_interval_millis: Export interval for periodic exporters

    Returns:
        A metric reader instance, or None for ExporterType.NONE
    """
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader

    export_interval = kwargs.pop("export_interval_millis", 10000)

    if exporter_type == ExporterType.PROMETHEUS:
        from opentelemetry.exporter.prometheus import PrometheusMetricReader
        return PrometheusMetricReader()

    elif exporter_type == ExporterType.OTLP:
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
        exporter = OTLPMetricExporter(**kwargs)
        return PeriodicExportingMetricReader(
            exporter,
            export_interval_millis=export_interval,
        )

    elif exporter_type == ExporterType.OTLP_HTTP:
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        exporter = OTLPMetricExporter(**kwargs)
        return PeriodicExportingMetricReader(
            exporter,
            export_interval_millis=export_interval,
        )

    elif exporter_type == ExporterType.CONSOLE:
        from opentelemetry.sdk.metrics.export import ConsoleMetricExporter
        exporter = ConsoleMetricExporter()
        return PeriodicExportingMetricReader(
            exporter,
            export_interval_millis=export_interval,
        )

    elif exporter_type == ExporterType.NONE:
        return None

    else:
        raise ValueError(f"Unknown exporter type: {exporter_type}")


def init_metrics(
    service_name: str = "sandcrate",
    exporter_type: str | ExporterType = ExporterType.NONE,
    additional_exporters: Optional[List[tuple]] = None,
    **exporter_kwargs,
):
    """
    Initialize OpenTelemetry metrics with the specified exporter(s).

    Args:
        service_name: Name of the service for resource identification
        exporter_type: Primary exporter type ("prometheus", "otlp", "otlp_http", "console", "none")
        additional_exporters: List of (exporter_type, kwargs) tuples for additional exporters
        **exporter_kwargs: Additional arguments for the primary exporter

    Returns:
        The configured MeterProvider

    Example:
        # In-process only (instruments are live, nothing is exported)
        init_metrics()

        # OTLP gRPC
        init_metrics(exporter_type="otlp", endpoint="http://localhost:4317")
    """
    global _meter, _meter_provider, _initialized
    global _execution_counter, _execution_duration, _fallback_counter, _pool_containers

    if _initialized:
        return _meter_provider

    from opentelemetry import metrics
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.resources import Resource, SERVICE_NAME

    if isinstance(exporter_type, str):
        exporter_type = ExporterType(exporter_type)

    resource = Resource.create({SERVICE_NAME: service_name})

    readers = []

    primary_reader = _create_exporter(exporter_type, **exporter_kwargs)
    if primary_reader is not None:
        readers.append(primary_reader)

    if additional_exporters:
        for exp_type, exp_kwargs in additional_exporters:
            if isinstance(exp_type, str):
                exp_type = ExporterType(exp_type)
            reader = _create_exporter(exp_type, **exp_kwargs)
            if reader is not None:
                readers.append(reader)

    _meter_provider = MeterProvider(resource=resource, metric_readers=readers)
    metrics.set_meter_provider(_meter_provider)

    _meter = _meter_provider.get_meter("sandcrate.metrics", version="0.1.0")

    _execution_counter = _meter.create_counter(
        name="sandcrate_execution_total",
        description="Total number of sandbox executions by backend and outcome",
        unit="1",
    )

    _execution_duration = _meter.create_histogram(
        name="sandcrate_execution_duration_seconds",
        description="Sandbox execution duration in seconds",
        unit="s",
    )

    _fallback_counter = _meter.create_counter(
        name="sandcrate_fallback_total",
        description="Executions that ran on a fallback backend",
        unit="1",
    )

    _pool_containers = _meter.create_observable_gauge(
        name="sandcrate_pool_containers",
        description="Live pooled containers by state",
        unit="1",
        callbacks=[_pool_containers_callback],
    )

    _initialized = True
    return _meter_provider


def shutdown_metrics() -> None:
    """Shutdown the meter provider and flush metrics."""
    global _meter_provider, _initialized, _meter
    global _execution_counter, _execution_duration, _fallback_counter, _pool_containers
    if _meter_provider is not None:
        _meter_provider.shutdown()
        _meter_provider = None
    _meter = None
    _execution_counter = None
    _execution_duration = None
    _fallback_counter = None
    _pool_containers = None
    _initialized = False


def is_initialized() -> bool:
    """Check if metrics have been initialized."""
    return _initialized


def get_meter_provider():
    """Get the current meter provider."""
    return _meter_provider


def get_meter():
    """Get the current meter instance."""
    return _meter


# =============================================================================
# Execution Metrics Helper Functions
# =============================================================================


def record_execution(backend: str, outcome: str, duration: Optional[float] = None) -> None:
    """Record one finished execution.

    ``outcome`` is one of ok, nonzero_exit, timeout, cancelled, error.
    """
    if _execution_counter is not None:
        _execution_counter.add(1, {"backend": backend, "outcome": outcome})
    if duration is not None and _execution_duration is not None:
        _execution_duration.record(duration, {"backend": backend})


def record_fallback(requested: str, used: str) -> None:
    """Record that a request for one backend was served by another."""
    if _fallback_counter is not None:
        _fallback_counter.add(1, {"requested": requested, "used": used})


# =============================================================================
# Pool Metrics Helper Functions
# =============================================================================


def update_pool_size(idle: int, in_use: int) -> None:
    """Update the pooled container counts."""
    _current_pool_sizes["idle"] = idle
    _current_pool_sizes["in_use"] = in_use


def get_pool_size() -> Dict[str, int]:
    return dict(_current_pool_sizes)


# =============================================================================
# Context Managers
# =============================================================================


class ExecutionTimer:
    """Context manager for timing one backend execution.

    The caller sets ``outcome`` before the block exits; an exception
    escaping the block is recorded as ``error``.
    """

    def __init__(self, backend: str):
        self.backend = backend
        self.outcome = "ok"
        self.start_time: Optional[float] = None

    def __enter__(self) -> "ExecutionTimer":
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.start_time is None:
            return
        duration = time.time() - self.start_time
        outcome = "error" if exc_type is not None else self.outcome
        record_execution(self.backend, outcome, duration)
