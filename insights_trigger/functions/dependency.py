from __future__ import annotations

import asyncio
import random
from time import perf_counter
from typing import Awaitable, Callable

import structlog

from insights_trigger.config import Settings
from insights_trigger.errors import DependencyError
from insights_trigger.telemetry.client import OperationTelemetry


DEPENDENCY_TYPE = "HTTP"

# (operation_id, telemetry) -> None; raises to signal a failed dependency.
DependencySimulator = Callable[[str, OperationTelemetry], Awaitable[None]]


async def simulate_external_dependency(
    operation_id: str,
    *,
    telemetry: OperationTelemetry,
    settings: Settings,
    rng: random.Random | None = None,
) -> None:
    """Stand in for one outbound HTTP call and record it as a dependency.

    Sleeps a random latency in the configured range, then succeeds with
    probability ``dependency_success_rate``. Exactly one dependency record is
    emitted either way; failures are re-raised after recording.
    """

    rng = rng or random.Random()
    start = perf_counter()
    log = structlog.get_logger("dependency")

    try:
        delay_ms = rng.uniform(settings.dependency_min_delay_ms, settings.dependency_max_delay_ms)
        await asyncio.sleep(delay_ms / 1000.0)

        if rng.random() >= settings.dependency_success_rate:
            raise DependencyError(f"Simulated failure calling {settings.dependency_target}")
    except Exception as exc:
        elapsed_ms = (perf_counter() - start) * 1000.0
        telemetry.track_dependency(
            target=settings.dependency_target,
            name=settings.dependency_name,
            data=settings.dependency_name,
            duration_ms=elapsed_ms,
            result_code=getattr(exc, "result_code", 500),
            success=False,
            dependency_type=DEPENDENCY_TYPE,
        )
        log.warning(
            "dependency_call_failed",
            operation_id=operation_id,
            target=settings.dependency_target,
            elapsed_ms=round(elapsed_ms, 2),
            error=str(exc),
        )
        raise
    else:
        telemetry.track_dependency(
            target=settings.dependency_target,
            name=settings.dependency_name,
            data=settings.dependency_name,
            duration_ms=(perf_counter() - start) * 1000.0,
            result_code=200,
            success=True,
            dependency_type=DEPENDENCY_TYPE,
        )


def make_dependency_simulator(settings: Settings, *, rng: random.Random | None = None) -> DependencySimulator:
    async def _simulate(operation_id: str, telemetry: OperationTelemetry) -> None:
        await simulate_external_dependency(operation_id, telemetry=telemetry, settings=settings, rng=rng)

    return _simulate
