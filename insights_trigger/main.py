from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from insights_trigger.api.http_trigger import build_function_router
from insights_trigger.config import get_settings
from insights_trigger.functions.dependency import make_dependency_simulator
from insights_trigger.observability.logging import configure_logging
from insights_trigger.observability.middleware import InvocationContextMiddleware
from insights_trigger.telemetry.bootstrap import build_telemetry_client


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    client = build_telemetry_client(settings)
    app.state.telemetry_client = client
    app.state.dependency_simulator = make_dependency_simulator(settings)
    try:
        yield
    finally:
        await client.close()


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="Insights Trigger", version="0.1.0", lifespan=lifespan)
    app.add_middleware(InvocationContextMiddleware)
    app.include_router(build_function_router(settings))

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
