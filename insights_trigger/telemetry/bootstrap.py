from __future__ import annotations

from typing import Any

import structlog
from azure.monitor.opentelemetry.exporter import (
    AzureMonitorLogExporter,
    AzureMonitorMetricExporter,
    AzureMonitorTraceExporter,
)
from opentelemetry.sdk._logs import LoggerProvider
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor, ConsoleLogExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import ConsoleMetricExporter, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from insights_trigger.config import Settings
from insights_trigger.errors import ConfigurationError
from insights_trigger.telemetry.client import TelemetryClient


def _azure_exporters(settings: Settings) -> tuple[AzureMonitorTraceExporter, AzureMonitorLogExporter, AzureMonitorMetricExporter]:
    options = {
        "connection_string": settings.applicationinsights_connection_string,
        "disable_offline_storage": settings.telemetry_disable_offline_storage,
    }
    if settings.telemetry_storage_directory:
        options["storage_directory"] = settings.telemetry_storage_directory

    try:
        return (
            AzureMonitorTraceExporter(**options),
            AzureMonitorLogExporter(**options),
            AzureMonitorMetricExporter(**options),
        )
    except ValueError as exc:
        raise ConfigurationError(f"Invalid APPLICATIONINSIGHTS_CONNECTION_STRING: {exc}") from exc


def build_exporters(settings: Settings) -> tuple[Any, Any, Any]:
    """Span, log and metric exporters for the configured destination.

    Azure Monitor when a connection string is configured (with the exporter's
    on-disk retry storage), the console otherwise.
    """

    logger = structlog.get_logger("telemetry")
    if settings.applicationinsights_connection_string:
        exporters = _azure_exporters(settings)
        logger.info(
            "telemetry_exporter_selected",
            exporter="azure_monitor",
            offline_storage=not settings.telemetry_disable_offline_storage,
        )
        return exporters

    logger.info("telemetry_exporter_selected", exporter="console")
    return ConsoleSpanExporter(), ConsoleLogExporter(), ConsoleMetricExporter()


def build_telemetry_client(settings: Settings) -> TelemetryClient:
    """Create the process-wide client."""

    resource = Resource.create({SERVICE_NAME: settings.cloud_role_name})
    span_exporter, log_exporter, metric_exporter = build_exporters(settings)

    tracer_provider = TracerProvider(resource=resource)
    tracer_provider.add_span_processor(BatchSpanProcessor(span_exporter))

    logger_provider = LoggerProvider(resource=resource)
    logger_provider.add_log_record_processor(BatchLogRecordProcessor(log_exporter))

    meter_provider = MeterProvider(
        resource=resource,
        metric_readers=[
            PeriodicExportingMetricReader(
                metric_exporter,
                export_interval_millis=settings.telemetry_metric_export_interval_ms,
            )
        ],
    )

    client = TelemetryClient(
        tracer_provider=tracer_provider,
        logger_provider=logger_provider,
        meter_provider=meter_provider,
        flush_timeout_s=settings.telemetry_flush_timeout_s,
    )
    if settings.telemetry_forward_logs:
        client.forward_logs()
    return client
