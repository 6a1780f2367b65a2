from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Sequence
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from opentelemetry.sdk._logs import LoggerProvider
from opentelemetry.sdk._logs.export import InMemoryLogExporter, SimpleLogRecordProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor, SpanExporter, SpanExportResult
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import SpanKind

from insights_trigger.config import Settings, get_settings
from insights_trigger.functions.dependency import DependencySimulator, make_dependency_simulator
from insights_trigger.main import app
from insights_trigger.telemetry.client import CUSTOM_EVENT_ATTRIBUTE, OperationTelemetry, TelemetryClient


class CapturedTelemetry:
    """A TelemetryClient whose providers export into memory."""

    def __init__(self, span_processor: Any | None = None) -> None:
        self.span_exporter = InMemorySpanExporter()
        self.log_exporter = InMemoryLogExporter()
        self.metric_reader = InMemoryMetricReader()

        tracer_provider = TracerProvider()
        tracer_provider.add_span_processor(span_processor or SimpleSpanProcessor(self.span_exporter))
        logger_provider = LoggerProvider()
        logger_provider.add_log_record_processor(SimpleLogRecordProcessor(self.log_exporter))
        meter_provider = MeterProvider(metric_readers=[self.metric_reader])

        self.client = TelemetryClient(
            tracer_provider=tracer_provider,
            logger_provider=logger_provider,
            meter_provider=meter_provider,
            flush_timeout_s=2.0,
        )

    def spans(self, kind: SpanKind | None = None) -> list[ReadableSpan]:
        return [s for s in self.span_exporter.get_finished_spans() if kind is None or s.kind == kind]

    def log_records(self) -> list[Any]:
        # Newer SDKs hand out the record itself, older ones wrap it in LogData.
        return [getattr(item, "log_record", item) for item in self.log_exporter.get_finished_logs()]

    def events(self, name: str | None = None) -> list[Any]:
        return [
            r
            for r in self.log_records()
            if CUSTOM_EVENT_ATTRIBUTE in r.attributes and (name is None or r.attributes[CUSTOM_EVENT_ATTRIBUTE] == name)
        ]

    def exceptions(self) -> list[Any]:
        return [r for r in self.log_records() if "exception.type" in r.attributes]

    def traces(self) -> list[Any]:
        return [
            r
            for r in self.log_records()
            if CUSTOM_EVENT_ATTRIBUTE not in r.attributes and "exception.type" not in r.attributes
        ]

    def metric_points(self, name: str) -> list[Any]:
        data = self.metric_reader.get_metrics_data()
        if data is None:
            return []
        points: list[Any] = []
        for resource_metrics in data.resource_metrics:
            for scope_metrics in resource_metrics.scope_metrics:
                for metric in scope_metrics.metrics:
                    if metric.name == name:
                        points.extend(metric.data.data_points)
        return points


class RecordingSpanExporter(SpanExporter):
    """Exports slowly and remembers span names in export order."""

    def __init__(self, delay_s: float = 0.0, fail: bool = False) -> None:
        self.delay_s = delay_s
        self.fail = fail
        self.names: list[str] = []

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        time.sleep(self.delay_s)
        if self.fail:
            raise RuntimeError("ingestion endpoint unavailable")
        self.names.extend(span.name for span in spans)
        return SpanExportResult.SUCCESS

    def shutdown(self) -> None:
        return None


def raising_simulator(exc: Exception) -> DependencySimulator:
    async def _simulate(operation_id: str, telemetry: OperationTelemetry) -> None:
        _ = operation_id, telemetry
        await asyncio.sleep(0)
        raise exc

    return _simulate


def fixed_delay_settings(delay_ms: float, success_rate: float = 1.0) -> Settings:
    return Settings(
        DEPENDENCY_MIN_DELAY_MS=delay_ms,
        DEPENDENCY_MAX_DELAY_MS=delay_ms,
        DEPENDENCY_SUCCESS_RATE=success_rate,
    )


@pytest.fixture(autouse=True)
def test_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APPLICATIONINSIGHTS_CONNECTION_STRING", "")
    monkeypatch.setenv("APPLICATIONINSIGHTS_STATSBEAT_DISABLED_ALL", "true")
    monkeypatch.setenv("DEPENDENCY_MIN_DELAY_MS", "1")
    monkeypatch.setenv("DEPENDENCY_MAX_DELAY_MS", "5")
    get_settings.cache_clear()

    yield

    get_settings.cache_clear()


@pytest.fixture
def captured() -> CapturedTelemetry:
    return CapturedTelemetry()


@pytest.fixture
def telemetry_client(captured: CapturedTelemetry) -> TelemetryClient:
    return captured.client


@pytest.fixture
async def api_client(telemetry_client: TelemetryClient) -> AsyncIterator[AsyncClient]:
    # ASGITransport does not run the lifespan; wire app state by hand.
    app.state.telemetry_client = telemetry_client
    app.state.dependency_simulator = make_dependency_simulator(get_settings())

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    del app.state.telemetry_client
    del app.state.dependency_simulator
