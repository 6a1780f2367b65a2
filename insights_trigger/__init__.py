"""HTTP-triggered function that emits correlated Application Insights telemetry."""

__version__ = "0.1.0"
