"""OpenTelemetry initialization and span wrappers for the synchronization core."""

from __future__ import annotations

import functools
import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "coquillage"

# True once the global TracerProvider has been installed, so repeated
# init_telemetry() calls in one process do not trigger override warnings.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str) -> trace.Tracer:
    """Initialize OpenTelemetry tracing for the service.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a TracerProvider with
    an OTLP gRPC exporter on the first call.  Otherwise the global no-op
    provider stays in place and spans cost nothing.

    Args:
        service_name: Service name recorded on the tracer resource.

    Returns:
        A Tracer instance (real or no-op depending on config)
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(service_name)

    if _tracer_provider_installed:
        logger.debug(
            "TracerProvider already initialized; reusing existing provider for service=%s",
            service_name,
        )
        return trace.get_tracer(service_name)

    # Import exporter only when needed
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)

    return trace.get_tracer(service_name)


def get_tracer(name: str = _TRACER_NAME) -> trace.Tracer:
    """Get a tracer from the current provider."""
    return trace.get_tracer(name)


class sync_span:
    """Create an OpenTelemetry span around a synchronization operation.

    Can be used as a **context manager** or as a **decorator** on async functions.

    Context manager usage::

        with sync_span("create_appointment") as span:
            span.set_attribute("appointment.external_event_id", event_id)

    Decorator usage::

        @sync_span("delete_appointment")
        async def delete_appointment(self, external_event_id: str): ...

    The span is named ``coquillage.sync.<operation>``.  Exceptions are
    recorded on the span and the span status is set to ERROR before the
    exception is re-raised.
    """

    def __init__(self, operation: str) -> None:
        self._operation = operation
        self._span_name = f"coquillage.sync.{operation}"
        self._span: trace.Span | None = None
        self._token: object | None = None

    def __enter__(self) -> trace.Span:
        tracer = trace.get_tracer(_TRACER_NAME)
        self._span = tracer.start_span(self._span_name)
        self._span.set_attribute("coquillage.operation", self._operation)
        self._token = trace.context_api.attach(trace.set_span_in_context(self._span))
        return self._span

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._span is None:
            return
        if exc_val is not None:
            self._span.set_status(trace.StatusCode.ERROR, str(exc_val))
            self._span.record_exception(exc_val)
        self._span.end()
        if self._token is not None:
            trace.context_api.detach(self._token)

    def __call__(self, func):  # noqa: ANN001, ANN204
        operation = self._operation

        @functools.wraps(func)
        async def _wrapper(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
            # Fresh instance per call so concurrent invocations never share span state.
            with sync_span(operation):
                return await func(*args, **kwargs)

        return _wrapper
