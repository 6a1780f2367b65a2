from __future__ import annotations

import logging
import sys
from typing import Any, MutableMapping

import structlog
from opentelemetry import trace
from opentelemetry.trace import format_span_id, format_trace_id


_CONFIGURED = False


def add_correlation_ids(logger: Any, method_name: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """Stamp log lines with the ids the telemetry backend groups by.

    ``operation_Id`` mirrors the bound invocation id; ``trace_id``/``span_id``
    come from the active span, so a log line joins the request it ran under.
    """

    _ = logger, method_name
    invocation_id = event_dict.get("invocation_id") or event_dict.get("operation_id")
    if invocation_id and "operation_Id" not in event_dict:
        event_dict["operation_Id"] = invocation_id

    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict.setdefault("trace_id", format_trace_id(span_context.trace_id))
        event_dict.setdefault("span_id", format_span_id(span_context.span_id))
    return event_dict


def _level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    resolved = logging.getLevelName(value.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(level: int | str = logging.INFO) -> None:
    """JSON logs on stdout, correlated with the invocation's telemetry.

    Records still go through the root logger, so the telemetry client can
    attach its forwarding handler there. No-op after the first call.
    """

    global _CONFIGURED
    if _CONFIGURED:
        return

    shared: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_correlation_ids,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    stdout = logging.StreamHandler(sys.stdout)
    stdout.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=shared,
        )
    )

    root = logging.getLogger()
    root.handlers = [stdout]
    root.setLevel(_level(level))

    # The local host's access log duplicates the middleware's; keep only its errors.
    for name in ("uvicorn", "uvicorn.error"):
        logging.getLogger(name).handlers = []
        logging.getLogger(name).propagate = True
    logging.getLogger("uvicorn.access").disabled = True

    _CONFIGURED = True
