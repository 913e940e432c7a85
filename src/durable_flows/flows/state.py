"""Persisted flow state and its status state machine.

A ``FlowState`` is the durable record of one run identifier. The step cache
only grows, and once a run reaches ``succeeded`` or ``failed`` no transition
leaves it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from durable_flows.errors import DuplicateNameError, IllegalTransitionError


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class FlowStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    INTERRUPTED = "interrupted"

    @property
    def is_terminal(self) -> bool:
        return self in (FlowStatus.SUCCEEDED, FlowStatus.FAILED)


ALLOWED_TRANSITIONS: dict[FlowStatus, set[FlowStatus]] = {
    FlowStatus.RUNNING: {FlowStatus.SUCCEEDED, FlowStatus.FAILED, FlowStatus.INTERRUPTED},
    FlowStatus.INTERRUPTED: {FlowStatus.RUNNING},
    FlowStatus.SUCCEEDED: set(),
    FlowStatus.FAILED: set(),
}


@dataclass(frozen=True, slots=True)
class Pending:
    """The tagged "pending" result a flow body returns to suspend itself.

    ``token`` names the wait point; a later resume binds its payload to it.
    """

    token: str
    payload: Any = None


class ErrorInfo(BaseModel):
    kind: str
    message: str
    details: Any = None


class StepRecord(BaseModel):
    value: Any = None
    completed_at: datetime = Field(default_factory=_utc_now)


class PendingInfo(BaseModel):
    token: str
    payload: Any = None


class FlowState(BaseModel):
    """Durable execution state for one run identifier."""

    run_id: str
    flow_name: str
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    input: Any = None
    steps: dict[str, StepRecord] = Field(default_factory=dict)
    status: FlowStatus = FlowStatus.RUNNING

    output: Any = None
    error: ErrorInfo | None = None
    pending: PendingInfo | None = None
    resumed: dict[str, Any] = Field(default_factory=dict)

    def record_step(self, name: str, value: Any) -> StepRecord:
        if name in self.steps:
            raise DuplicateNameError(
                f"Step '{name}' is already recorded for run '{self.run_id}'",
                details={"step": name, "run_id": self.run_id},
            )
        record = StepRecord(value=value)
        self.steps[name] = record
        self.touch()
        return record

    def touch(self) -> None:
        self.updated_at = _utc_now()

    def transition(self, to: FlowStatus) -> None:
        allowed = ALLOWED_TRANSITIONS.get(self.status, set())
        if to not in allowed:
            raise IllegalTransitionError(
                f"Illegal transition: {self.status.value} -> {to.value}",
                details={"run_id": self.run_id},
            )
        self.status = to
        self.touch()

    def clone(self) -> FlowState:
        return self.model_copy(deep=True)


class Operation(BaseModel):
    """Caller-visible projection of a FlowState. Produced fresh on each read."""

    id: str
    done: bool
    result: Any = None
    error: ErrorInfo | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_state(cls, state: FlowState) -> Operation:
        metadata: dict[str, Any] = {
            "flowName": state.flow_name,
            "status": state.status.value,
            "createdAt": state.created_at.isoformat(),
            "updatedAt": state.updated_at.isoformat(),
            "steps": list(state.steps),
        }
        if state.pending is not None:
            metadata["pending"] = state.pending.model_dump(mode="json")
        return cls(
            id=state.run_id,
            done=state.status.is_terminal,
            result=state.output if state.status is FlowStatus.SUCCEEDED else None,
            error=state.error if state.status is FlowStatus.FAILED else None,
            metadata=metadata,
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class Chunk(BaseModel):
    """One streamed partial result."""

    index: int
    content: Any = None


class FlowStateSummary(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    run_id: str
    flow_name: str
    status: FlowStatus
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_state(cls, state: FlowState) -> FlowStateSummary:
        return cls(
            run_id=state.run_id,
            flow_name=state.flow_name,
            status=state.status,
            created_at=state.created_at,
            updated_at=state.updated_at,
        )


class FlowStatePage(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    items: list[FlowStateSummary] = Field(default_factory=list)
    next_page_token: str | None = None


class FlowStateFilter(BaseModel):
    flow_name: str | None = None
    status: FlowStatus | None = None

    def matches(self, state: FlowState) -> bool:
        if self.flow_name is not None and state.flow_name != self.flow_name:
            return False
        if self.status is not None and state.status is not self.status:
            return False
        return True
