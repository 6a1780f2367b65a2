from __future__ import annotations


class TelemetryFunctionError(Exception):
    """Base class for errors raised by this package."""


class ConfigurationError(TelemetryFunctionError):
    pass


class DependencyError(TelemetryFunctionError):
    """The simulated external dependency failed."""

    def __init__(self, message: str = "Simulated dependency failure", *, result_code: int = 500) -> None:
        super().__init__(message)
        self.result_code = result_code
