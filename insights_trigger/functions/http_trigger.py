from __future__ import annotations

from datetime import datetime, timezone
from time import perf_counter

import structlog

from insights_trigger.functions.dependency import DependencySimulator
from insights_trigger.models.schemas import (
    ErrorBody,
    HttpRequestData,
    InvocationContext,
    InvocationResponse,
    SuccessBody,
)
from insights_trigger.telemetry.client import TelemetryClient


GREETING = "Hello from Azure Functions with Application Insights!"
STARTED_EVENT = "FunctionStarted"
COMPLETED_EVENT = "FunctionCompleted"
PROCESSING_TIME_METRIC = "ProcessingTime"
SUCCESS_TRACE = "Function executed successfully"


async def handle_invocation(
    request: HttpRequestData,
    context: InvocationContext,
    *,
    telemetry_client: TelemetryClient,
    simulator: DependencySimulator,
) -> InvocationResponse:
    """Run one invocation and emit its correlated telemetry.

    Never raises for workload failures: they become exception + failed request
    telemetry and an HTTP 500. The client is flushed on every exit path; an
    error raised by the flush itself is not caught here.
    """

    start = perf_counter()
    operation_id = context.invocation_id
    log = structlog.get_logger("function").bind(
        function_name=context.function_name,
        operation_id=operation_id,
    )

    def elapsed_ms() -> float:
        return (perf_counter() - start) * 1000.0

    with telemetry_client.start_operation(
        operation_id,
        name=f"{request.method} {request.url}",
        url=request.url,
        method=request.method,
        carrier=request.headers,
        properties={"function_name": context.function_name},
    ) as telemetry:
        try:
            log.info("function_invoked", url=request.url)
            telemetry.track_event(
                STARTED_EVENT,
                {
                    "functionName": context.function_name,
                    "invocationId": context.invocation_id,
                },
            )

            await simulator(operation_id, telemetry)

            telemetry.track_metric(PROCESSING_TIME_METRIC, elapsed_ms())
            telemetry.track_trace(SUCCESS_TRACE, {"functionName": context.function_name})

            body = SuccessBody(
                message=GREETING,
                timestamp=datetime.now(timezone.utc).isoformat(),
                operationId=operation_id,
            )

            duration_ms = elapsed_ms()
            telemetry.track_request(duration_ms=duration_ms, result_code="200", success=True)
            telemetry.track_event(
                COMPLETED_EVENT,
                {
                    "functionName": context.function_name,
                    "invocationId": context.invocation_id,
                    "duration": str(duration_ms),
                },
            )
            return InvocationResponse(status=200, body=body.model_dump_json())

        except Exception as exc:
            message = str(exc) or "Unknown error"
            telemetry.track_exception(exc, {"functionName": context.function_name})
            if not telemetry.request_tracked:
                telemetry.track_request(duration_ms=elapsed_ms(), result_code="500", success=False)
            log.error("function_failed", error=message, error_type=type(exc).__name__)
            return InvocationResponse(status=500, body=ErrorBody(error=message).model_dump_json())

        finally:
            await telemetry_client.flush()
