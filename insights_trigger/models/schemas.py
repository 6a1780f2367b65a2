from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class InvocationContext(BaseModel):
    """What the host knows about one invocation. Read-only for the handler."""

    model_config = ConfigDict(frozen=True)

    invocation_id: str = Field(min_length=1)
    function_name: str


class HttpRequestData(BaseModel):
    model_config = ConfigDict(frozen=True)

    method: str
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    body: bytes = b""


class SuccessBody(BaseModel):
    message: str
    timestamp: str
    operationId: str


class ErrorBody(BaseModel):
    error: str


class InvocationResponse(BaseModel):
    status: int
    headers: dict[str, str] = Field(default_factory=lambda: {"Content-Type": "application/json"})
    body: str
