"""Unit tests for the synchronizer metrics instruments."""

from __future__ import annotations

from typing import Any

import pytest
from opentelemetry import metrics
from opentelemetry.metrics import _internal as _metrics_internal
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.util._once import Once

from coquillage.core.metrics import SyncMetrics, init_metrics
from coquillage.errors import PartialWriteFailureError
from coquillage.store.base import RecordStoreUnavailableError
from coquillage.sync import AppointmentSynchronizer
from coquillage.testing import FakeCalendarProvider, InMemoryRecordStore

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Helpers / fixtures
# ---------------------------------------------------------------------------


def _reset_metrics_global_state() -> None:
    """Reset the OTel global MeterProvider state for test isolation."""
    _metrics_internal._METER_PROVIDER_SET_ONCE = Once()
    _metrics_internal._METER_PROVIDER = None


@pytest.fixture
def reader():
    _reset_metrics_global_state()
    reader = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[reader])
    metrics.set_meter_provider(provider)
    yield reader
    provider.shutdown()
    _reset_metrics_global_state()


def _collect_metrics(reader: InMemoryMetricReader) -> dict[str, Any]:
    """Flatten metrics data into {metric_name: data_points}."""
    result: dict[str, Any] = {}
    data = reader.get_metrics_data()
    for rm in data.resource_metrics:
        for sm in rm.scope_metrics:
            for metric in sm.metrics:
                if metric.data.data_points:
                    result[metric.name] = metric.data.data_points
    return result


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


def test_init_metrics_noop_without_endpoint(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
    assert init_metrics("clinic") is not None


def test_record_operation(reader):
    sync_metrics = SyncMetrics()

    sync_metrics.record_operation("create_appointment", "ok", 12.5)
    sync_metrics.record_operation("create_appointment", "AdapterUnavailable", 3.0)

    collected = _collect_metrics(reader)
    counts = {
        point.attributes["outcome"]: point.value
        for point in collected["coquillage.sync.operations_total"]
    }
    assert counts == {"ok": 1, "AdapterUnavailable": 1}
    (histogram,) = collected["coquillage.sync.operation_duration_ms"]
    assert histogram.count == 2
    assert histogram.sum == pytest.approx(15.5)


async def test_synchronizer_records_partial_write(reader, appointment_details):
    store = InMemoryRecordStore()
    store.failures["insert"] = RecordStoreUnavailableError("down")
    synchronizer = AppointmentSynchronizer(
        calendar=FakeCalendarProvider(), store=store, metrics=SyncMetrics()
    )

    with pytest.raises(PartialWriteFailureError):
        await synchronizer.create_appointment(appointment_details)

    collected = _collect_metrics(reader)
    (partial,) = collected["coquillage.sync.partial_write_failures_total"]
    assert partial.value == 1
    assert partial.attributes == {"operation": "create_appointment"}
    (operation,) = collected["coquillage.sync.operations_total"]
    assert operation.attributes == {
        "operation": "create_appointment",
        "outcome": "PartialWriteFailure",
    }
