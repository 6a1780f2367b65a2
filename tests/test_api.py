from __future__ import annotations

import asyncio

from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from opentelemetry.trace import SpanKind

from conftest import raising_simulator
from insights_trigger.api.http_trigger import build_function_router
from insights_trigger.config import get_settings
from insights_trigger.functions.dependency import make_dependency_simulator
from insights_trigger.main import app
from insights_trigger.telemetry.correlation import trace_id_for


TRACEPARENT = "00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01"


async def test_health(api_client) -> None:
    resp = await api_client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


async def test_get_uses_host_supplied_invocation_id(api_client, captured) -> None:
    resp = await api_client.get("/api/httpTrigger", headers={"X-Invocation-Id": "host-abc"})

    assert resp.status_code == 200
    assert resp.headers["content-type"] == "application/json"
    assert resp.headers["x-invocation-id"] == "host-abc"
    assert resp.json()["operationId"] == "host-abc"
    assert {s.attributes["operation_Id"] for s in captured.spans()} == {"host-abc"}
    assert {s.context.trace_id for s in captured.spans()} == {trace_id_for("host-abc")}


async def test_post_generates_invocation_id_when_missing(api_client, captured) -> None:
    resp = await api_client.post("/api/httpTrigger", content=b"anything")

    assert resp.status_code == 200
    invocation_id = resp.headers["x-invocation-id"]
    assert invocation_id
    assert resp.json()["operationId"] == invocation_id

    [request_span] = captured.spans(SpanKind.SERVER)
    assert request_span.name == "POST http://test/api/httpTrigger"
    assert request_span.attributes["function_name"] == "httpTrigger"
    assert request_span.context.trace_id == trace_id_for(invocation_id)


async def test_traceparent_continues_the_callers_trace(api_client, captured) -> None:
    resp = await api_client.get("/api/httpTrigger", headers={"traceparent": TRACEPARENT})

    assert resp.status_code == 200
    assert resp.json()["operationId"] == "4bf92f3577b34da6a3ce929d0e0e4736"

    [request_span] = captured.spans(SpanKind.SERVER)
    assert request_span.context.trace_id == 0x4BF92F3577B34DA6A3CE929D0E0E4736
    assert request_span.parent.span_id == 0x00F067AA0BA902B7
    assert request_span.parent.is_remote


async def test_explicit_invocation_id_wins_over_foreign_traceparent(api_client, captured) -> None:
    resp = await api_client.get(
        "/api/httpTrigger",
        headers={"X-Invocation-Id": "host-xyz", "traceparent": TRACEPARENT},
    )

    assert resp.json()["operationId"] == "host-xyz"
    [request_span] = captured.spans(SpanKind.SERVER)
    assert request_span.context.trace_id == trace_id_for("host-xyz")
    assert request_span.parent.span_id != 0x00F067AA0BA902B7


async def test_dependency_failure_maps_to_500(api_client, captured) -> None:
    app.state.dependency_simulator = raising_simulator(Exception("boom"))

    resp = await api_client.post("/api/httpTrigger", headers={"X-Invocation-Id": "inv-err"})

    assert resp.status_code == 500
    assert resp.json() == {"error": "boom"}
    [started] = captured.events("FunctionStarted")
    assert started.attributes["invocationId"] == "inv-err"


async def test_other_methods_are_not_routed(api_client) -> None:
    resp = await api_client.delete("/api/httpTrigger")
    assert resp.status_code == 405


async def test_concurrent_invocations_keep_their_own_ids(api_client, captured) -> None:
    ids = [f"inv-{i}" for i in range(5)]
    responses = await asyncio.gather(
        *(api_client.get("/api/httpTrigger", headers={"X-Invocation-Id": i}) for i in ids)
    )

    assert [r.json()["operationId"] for r in responses] == ids
    for invocation_id in ids:
        spans = [s for s in captured.spans() if s.attributes["operation_Id"] == invocation_id]
        assert len(spans) == 2
        assert {s.context.trace_id for s in spans} == {trace_id_for(invocation_id)}


async def test_route_resolves_invocation_id_without_middleware(telemetry_client) -> None:
    bare = FastAPI()
    bare.include_router(build_function_router(get_settings()))
    bare.state.telemetry_client = telemetry_client
    bare.state.dependency_simulator = make_dependency_simulator(get_settings())

    async with AsyncClient(transport=ASGITransport(app=bare), base_url="http://test") as client:
        generated = await client.get("/api/httpTrigger")
        explicit = await client.get("/api/httpTrigger", headers={"X-Invocation-Id": "bare-1"})

    assert generated.status_code == 200
    assert generated.json()["operationId"]
    assert explicit.json()["operationId"] == "bare-1"
