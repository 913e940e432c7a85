"""Pydantic models for the flow server wire format."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class FlowInvokeEnvelope(BaseModel):
    """Start or resume request: ``{name, input?, runId?, resume?, auth?}``."""

    model_config = ConfigDict(populate_by_name=True)

    name: str | None = None
    input: Any = None
    run_id: str | None = Field(default=None, alias="runId")
    resume: Any = None
    auth: Any = None

    def wants_resume(self) -> bool:
        return "resume" in self.model_fields_set


class ResumeRequest(BaseModel):
    resume: Any = None
    auth: Any = None


class BatchRequest(BaseModel):
    inputs: list[Any] = Field(default_factory=list)
    auth: Any = None


class BatchResponse(BaseModel):
    results: list[dict[str, Any]] = Field(default_factory=list)


class ApiError(BaseModel):
    kind: str
    message: str
    details: Any = None


class ErrorResponse(BaseModel):
    error: ApiError


class FlowDescriptor(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    key: str
    name: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    input_schema: dict[str, Any] | None = Field(default=None, alias="inputSchema")
    output_schema: dict[str, Any] | None = Field(default=None, alias="outputSchema")
