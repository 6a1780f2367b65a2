from __future__ import annotations

from time import perf_counter
from typing import Any, Callable

import structlog
from starlette.datastructures import Headers, MutableHeaders

from insights_trigger.telemetry.correlation import (
    INVOCATION_ID_HEADER,
    invocation_id_from_headers,
    new_invocation_id,
)


class InvocationContextMiddleware:
    """Assigns the invocation id, binds it for logging, and writes access logs.

    The id is the ``X-Invocation-Id`` header when the host sets one, else the
    trace id of a W3C ``traceparent`` header, else a fresh UUID4 (hex).
    Handlers read it from ``request.state.invocation_id``.
    """

    def __init__(self, app: Callable[..., Any]) -> None:
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        invocation_id = invocation_id_from_headers(Headers(scope=scope)) or new_invocation_id()
        scope.setdefault("state", {})["invocation_id"] = invocation_id
        path = scope.get("path")
        method = scope.get("method")

        structlog.contextvars.bind_contextvars(
            invocation_id=invocation_id,
            path=path,
            method=method,
        )

        start = perf_counter()
        status_code: int = 500

        async def send_wrapper(message: dict[str, Any]) -> None:
            nonlocal status_code

            if message.get("type") == "http.response.start":
                status_code = int(message.get("status", 500))
                headers = MutableHeaders(scope=message)
                headers[INVOCATION_ID_HEADER] = invocation_id

            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            elapsed_ms = (perf_counter() - start) * 1000.0
            structlog.get_logger("access").info(
                "http_request",
                status_code=status_code,
                elapsed_ms=round(elapsed_ms, 2),
            )
            structlog.contextvars.clear_contextvars()
