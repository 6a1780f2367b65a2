"""Logging and per-invocation context for the function host.

structlog contextvars carry the invocation id into every log line, so logs and
telemetry records for one invocation can be joined on the same identifier.
"""
