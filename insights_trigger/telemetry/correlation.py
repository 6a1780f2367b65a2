from __future__ import annotations

import hashlib
import random
import uuid
from typing import Mapping

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.trace import NonRecordingSpan, SpanContext, TraceFlags, format_trace_id
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator


INVOCATION_ID_HEADER = "X-Invocation-Id"

_propagator = TraceContextTextMapPropagator()


def trace_id_for(invocation_id: str) -> int:
    """Map an invocation id onto a 128-bit trace id.

    UUIDs and 32-hex ids map onto themselves, so the backend's ``operation_Id``
    reads the same as the invocation id. Anything else is hashed.
    """

    try:
        value = uuid.UUID(invocation_id).int
    except ValueError:
        value = 0
    if value:
        return value
    return int.from_bytes(hashlib.blake2b(invocation_id.encode("utf-8"), digest_size=16).digest(), "big") or 1


def remote_span_context(carrier: Mapping[str, str] | None) -> SpanContext | None:
    """The W3C ``traceparent`` caller context, if the request carried a valid one."""

    if not carrier:
        return None
    headers = {k.lower(): v for k, v in carrier.items()}
    span_context = trace.get_current_span(_propagator.extract(carrier=headers)).get_span_context()
    return span_context if span_context.is_valid else None


def invocation_id_from_headers(headers: Mapping[str, str]) -> str | None:
    """``X-Invocation-Id`` first, then the ``traceparent`` trace id."""

    explicit = headers.get(INVOCATION_ID_HEADER) or headers.get(INVOCATION_ID_HEADER.lower())
    if explicit:
        return explicit
    remote = remote_span_context(headers)
    if remote is not None:
        return format_trace_id(remote.trace_id)
    return None


def new_invocation_id() -> str:
    return uuid.uuid4().hex


def parent_context_for(invocation_id: str, carrier: Mapping[str, str] | None = None) -> Context:
    """Context the invocation's request span is started under.

    A caller's ``traceparent`` is honoured when it belongs to the same trace;
    otherwise a host span with the invocation's trace id stands in as parent.
    """

    trace_id = trace_id_for(invocation_id)
    remote = remote_span_context(carrier)
    if remote is None or remote.trace_id != trace_id:
        remote = SpanContext(
            trace_id=trace_id,
            span_id=random.getrandbits(64) or 1,
            is_remote=True,
            trace_flags=TraceFlags(TraceFlags.SAMPLED),
        )
    return trace.set_span_in_context(NonRecordingSpan(remote))
