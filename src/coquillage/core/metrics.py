"""OpenTelemetry metrics instruments for the synchronization core.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during startup (alongside
``init_telemetry``).  When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the
global no-op MeterProvider is used and all recordings are silent no-ops.

Instruments
-----------
  coquillage.sync.operations_total            Counter (labels: operation, outcome)
      Synchronizer operations by outcome (``ok`` or an error kind).

  coquillage.sync.partial_write_failures_total  Counter (label: operation)
      Operations that left one store mutated and the other not.

  coquillage.sync.operation_duration_ms       Histogram (label: operation)
      Wall-clock duration of each synchronizer operation.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "coquillage"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics for the service.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a MeterProvider with
    a periodic OTLP gRPC exporter.  Otherwise the global no-op MeterProvider
    is used.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=endpoint), export_interval_millis=15_000
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider (no-op before init)."""
    return metrics.get_meter(_METER_NAME)


class SyncMetrics:
    """Convenience wrapper around the synchronizer instruments.

    Instruments are created on first use, so constructing this object before
    ``init_metrics`` is safe: recordings are no-ops until a real provider is
    installed.
    """

    def __init__(self) -> None:
        self._operations: metrics.Counter | None = None
        self._partial_failures: metrics.Counter | None = None
        self._duration: metrics.Histogram | None = None

    @property
    def _operations_counter(self) -> metrics.Counter:
        if self._operations is None:
            self._operations = get_meter().create_counter(
                name="coquillage.sync.operations_total",
                description="Synchronizer operations by outcome",
                unit="operations",
            )
        return self._operations

    @property
    def _partial_failures_counter(self) -> metrics.Counter:
        if self._partial_failures is None:
            self._partial_failures = get_meter().create_counter(
                name="coquillage.sync.partial_write_failures_total",
                description="Operations that left the calendar and record store inconsistent",
                unit="failures",
            )
        return self._partial_failures

    @property
    def _duration_histogram(self) -> metrics.Histogram:
        if self._duration is None:
            self._duration = get_meter().create_histogram(
                name="coquillage.sync.operation_duration_ms",
                description="Duration of synchronizer operations",
                unit="ms",
            )
        return self._duration

    def record_operation(self, operation: str, outcome: str, duration_ms: float) -> None:
        """Record one finished operation and its outcome."""
        self._operations_counter.add(1, {"operation": operation, "outcome": outcome})
        self._duration_histogram.record(duration_ms, {"operation": operation})

    def partial_write_failure(self, operation: str) -> None:
        self._partial_failures_counter.add(1, {"operation": operation})
