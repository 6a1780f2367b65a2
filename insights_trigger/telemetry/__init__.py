"""Correlated telemetry for one function invocation.

Requests and dependencies are OpenTelemetry spans, events/traces/exceptions
are log records and metrics are histogram points, all sharing the trace id
derived from the invocation id. The providers export to Azure Monitor when a
connection string is configured and to the console otherwise.
"""
