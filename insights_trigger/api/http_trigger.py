from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from insights_trigger.config import Settings, get_settings
from insights_trigger.functions.dependency import DependencySimulator
from insights_trigger.functions.http_trigger import handle_invocation
from insights_trigger.models.schemas import HttpRequestData, InvocationContext
from insights_trigger.telemetry.client import TelemetryClient
from insights_trigger.telemetry.correlation import invocation_id_from_headers, new_invocation_id


def get_telemetry_client(request: Request) -> TelemetryClient:
    return request.app.state.telemetry_client


def get_dependency_simulator(request: Request) -> DependencySimulator:
    return request.app.state.dependency_simulator


def get_invocation_context(request: Request, settings: Settings = Depends(get_settings)) -> InvocationContext:
    # The middleware normally assigns the id; resolve it here when it is not installed.
    invocation_id = (
        getattr(request.state, "invocation_id", None)
        or invocation_id_from_headers(request.headers)
        or new_invocation_id()
    )
    return InvocationContext(invocation_id=invocation_id, function_name=settings.function_name)


async def http_trigger(
    request: Request,
    context: InvocationContext = Depends(get_invocation_context),
    telemetry_client: TelemetryClient = Depends(get_telemetry_client),
    simulator: DependencySimulator = Depends(get_dependency_simulator),
) -> Response:
    request_data = HttpRequestData(
        method=request.method,
        url=str(request.url),
        headers=dict(request.headers),
        body=await request.body(),
    )
    result = await handle_invocation(
        request_data,
        context,
        telemetry_client=telemetry_client,
        simulator=simulator,
    )
    return Response(content=result.body, status_code=result.status, headers=result.headers)


def build_function_router(settings: Settings) -> APIRouter:
    """One anonymous GET/POST route bound to the invocation handler."""

    router = APIRouter(tags=["functions"])
    router.add_api_route(
        settings.function_route,
        http_trigger,
        methods=["GET", "POST"],
        name=settings.function_name,
        response_class=Response,
    )
    return router
