from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import contextmanager
from typing import Any, Iterator, Mapping

import structlog
from opentelemetry import trace
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.trace import Span, SpanKind, Status, StatusCode

from insights_trigger.telemetry.correlation import parent_context_for


OPERATION_ID_PROPERTY = "operation_Id"
CUSTOM_EVENT_ATTRIBUTE = "microsoft.custom_event.name"
INSTRUMENTATION_SCOPE = "insights_trigger"

# Loggers whose records must not be forwarded back into the exporters.
_NOT_FORWARDED = ("opentelemetry", "azure", "urllib3", "httpx", "httpcore")


def _attributes(properties: Mapping[str, Any] | None) -> dict[str, Any]:
    if not properties:
        return {}
    out: dict[str, Any] = {}
    for key, value in properties.items():
        if value is None:
            continue
        out[str(key)] = value if isinstance(value, (bool, int, float, str)) else str(value)
    return out


class _ForwardFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return not record.name.startswith(_NOT_FORWARDED)


class TelemetryClient:
    """Process-wide telemetry client over the OpenTelemetry SDK providers.

    Spans, log records and metric points are handed to the providers'
    processors without blocking; ``flush()`` is the one place an export is
    forced. Flushes are serialised so a flush that returns has covered every
    record produced before it started.
    """

    def __init__(
        self,
        *,
        tracer_provider: TracerProvider,
        logger_provider: LoggerProvider,
        meter_provider: MeterProvider,
        flush_timeout_s: float = 5.0,
    ) -> None:
        self.tracer_provider = tracer_provider
        self.logger_provider = logger_provider
        self.meter_provider = meter_provider
        self.flush_timeout_s = flush_timeout_s
        self.flush_count = 0

        self.tracer = tracer_provider.get_tracer(INSTRUMENTATION_SCOPE)
        self.meter = meter_provider.get_meter(INSTRUMENTATION_SCOPE)
        self._histograms: dict[str, Any] = {}

        # Events, traces and exceptions travel as log records on a private logger.
        self._records_handler = LoggingHandler(level=logging.NOTSET, logger_provider=logger_provider)
        self.records_logger = logging.getLogger(f"{INSTRUMENTATION_SCOPE}.records.{uuid.uuid4().hex[:8]}")
        self.records_logger.setLevel(logging.DEBUG)
        self.records_logger.propagate = False
        self.records_logger.addHandler(self._records_handler)

        self._forwarded: list[tuple[logging.Logger, logging.Handler]] = []
        self._flush_lock = asyncio.Lock()
        self._logger = structlog.get_logger("telemetry")

    @contextmanager
    def start_operation(
        self,
        operation_id: str,
        *,
        name: str,
        url: str,
        method: str,
        carrier: Mapping[str, str] | None = None,
        properties: Mapping[str, Any] | None = None,
    ) -> Iterator["OperationTelemetry"]:
        """Open the invocation's request span and make it current.

        The span is ended by ``OperationTelemetry.track_request``; if the block
        exits without one, it is ended here.
        """

        start_ns = time.time_ns()
        span = self.tracer.start_span(
            name,
            context=parent_context_for(operation_id, carrier),
            kind=SpanKind.SERVER,
            start_time=start_ns,
            attributes={
                **_attributes(properties),
                OPERATION_ID_PROPERTY: operation_id,
                "http.method": method,
                "http.request.method": method,
                "http.url": url,
                "url.full": url,
            },
        )
        telemetry = OperationTelemetry(self, operation_id=operation_id, span=span, start_ns=start_ns)
        try:
            with trace.use_span(span, end_on_exit=False):
                yield telemetry
        finally:
            if not telemetry.request_tracked:
                span.end()

    def forward_logs(self, logger: logging.Logger | None = None, level: int = logging.INFO) -> LoggingHandler:
        """Ship stdlib/structlog records from ``logger`` (root by default) as traces."""

        target = logger or logging.getLogger()
        handler = LoggingHandler(level=level, logger_provider=self.logger_provider)
        handler.addFilter(_ForwardFilter())
        target.addHandler(handler)
        self._forwarded.append((target, handler))
        return handler

    def _histogram(self, name: str) -> Any:
        if name not in self._histograms:
            self._histograms[name] = self.meter.create_histogram(name, unit="ms")
        return self._histograms[name]

    def _force_flush(self) -> bool:
        timeout_ms = int(self.flush_timeout_s * 1000)
        results = [
            self.tracer_provider.force_flush(timeout_ms),
            self.logger_provider.force_flush(timeout_ms),
            self.meter_provider.force_flush(timeout_ms),
        ]
        return all(result is not False for result in results)

    async def flush(self) -> bool:
        """Force export of everything recorded so far; False if an export timed out."""

        async with self._flush_lock:
            self.flush_count += 1
            completed = await asyncio.to_thread(self._force_flush)

        if not completed:
            self._logger.warning("telemetry_flush_incomplete", timeout_s=self.flush_timeout_s)
        return completed

    async def close(self) -> None:
        await self.flush()
        for target, handler in self._forwarded:
            target.removeHandler(handler)
        self._forwarded.clear()
        self.records_logger.removeHandler(self._records_handler)
        await asyncio.to_thread(self._shutdown)

    def _shutdown(self) -> None:
        self.tracer_provider.shutdown()
        self.logger_provider.shutdown()
        self.meter_provider.shutdown()


class OperationTelemetry:
    """The client seen through one invocation.

    Every span, log record and metric point gets the invocation's trace id
    and an ``operation_Id`` attribute equal to the invocation id.
    """

    def __init__(self, client: TelemetryClient, *, operation_id: str, span: Span, start_ns: int) -> None:
        self.client = client
        self.operation_id = operation_id
        self.span = span
        self.start_ns = start_ns
        self.request_tracked = False

    def _attributes(self, properties: Mapping[str, Any] | None) -> dict[str, Any]:
        merged = _attributes(properties)
        merged[OPERATION_ID_PROPERTY] = self.operation_id
        return merged

    def _log(self, level: int, message: str, attributes: dict[str, Any], exc: BaseException | None = None) -> None:
        exc_info = (type(exc), exc, exc.__traceback__) if exc is not None else None
        with trace.use_span(self.span, end_on_exit=False):
            self.client.records_logger.log(level, message, extra=attributes, exc_info=exc_info)

    def track_event(self, name: str, properties: Mapping[str, Any] | None = None) -> None:
        attributes = self._attributes(properties)
        attributes[CUSTOM_EVENT_ATTRIBUTE] = name
        self._log(logging.INFO, name, attributes)

    def track_trace(self, message: str, properties: Mapping[str, Any] | None = None, *, level: int = logging.INFO) -> None:
        self._log(level, message, self._attributes(properties))

    def track_exception(self, exc: BaseException, properties: Mapping[str, Any] | None = None) -> None:
        self.span.record_exception(exc, attributes={OPERATION_ID_PROPERTY: self.operation_id})
        self._log(logging.ERROR, str(exc) or type(exc).__name__, self._attributes(properties), exc=exc)

    def track_metric(self, name: str, value: float, properties: Mapping[str, Any] | None = None) -> None:
        self.client._histogram(name).record(float(value), attributes=self._attributes(properties))

    def track_dependency(
        self,
        *,
        target: str,
        name: str,
        duration_ms: float,
        result_code: int,
        success: bool,
        data: str | None = None,
        dependency_type: str = "HTTP",
        properties: Mapping[str, Any] | None = None,
    ) -> Span:
        """Record a finished outbound call as a client span under the request span."""

        end_ns = time.time_ns()
        start_ns = end_ns - int(max(0.0, duration_ms) * 1_000_000)
        method, _, path = (data or name).partition(" ")
        attributes = self._attributes(properties)
        attributes.update(
            {
                "dependency.type": dependency_type,
                "dependency.data": data or name,
                "server.address": target,
                "net.peer.name": target,
                "http.method": method,
                "http.request.method": method,
                "http.url": f"https://{target}{path or '/'}",
                "http.status_code": result_code,
                "http.response.status_code": result_code,
            }
        )
        span = self.client.tracer.start_span(
            name,
            context=trace.set_span_in_context(self.span),
            kind=SpanKind.CLIENT,
            start_time=start_ns,
            attributes=attributes,
        )
        span.set_status(Status(StatusCode.OK) if success else Status(StatusCode.ERROR, f"HTTP {result_code}"))
        span.end(end_time=end_ns)
        return span

    def track_request(
        self,
        *,
        duration_ms: float,
        result_code: str,
        success: bool,
        properties: Mapping[str, Any] | None = None,
    ) -> Span:
        """Finish the invocation's request span with its outcome."""

        if self.request_tracked:
            raise RuntimeError(f"Request for operation {self.operation_id} already tracked")

        status_code = int(result_code)
        self.span.set_attributes(self._attributes(properties))
        self.span.set_attribute("http.status_code", status_code)
        self.span.set_attribute("http.response.status_code", status_code)
        self.span.set_status(Status(StatusCode.OK) if success else Status(StatusCode.ERROR, f"HTTP {status_code}"))
        self.span.end(end_time=self.start_ns + int(max(0.0, duration_ms) * 1_000_000))
        self.request_tracked = True
        return self.span
