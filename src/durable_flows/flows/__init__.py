"""Durable flow execution.

This package holds the flow wrapper, step memoization, persisted flow state
and the state store contract. Long-running execution is restartable: every
step result is persisted, so a resumed run replays finished steps instead of
repeating them.
"""

from durable_flows.flows.auth import AuthContext, AuthPolicy, decode_credential
from durable_flows.flows.flow import (
    Flow,
    FlowConfig,
    FlowContext,
    FlowStream,
    define_flow,
    lookup_flow,
    resume_flow,
    run_flow,
    run_flow_batch,
    stream_flow,
)
from durable_flows.flows.state import (
    Chunk,
    ErrorInfo,
    FlowState,
    FlowStateFilter,
    FlowStatus,
    Operation,
    Pending,
)
from durable_flows.flows.steps import StepExecutor
from durable_flows.flows.store import (
    FileFlowStateStore,
    FlowStateStore,
    InMemoryFlowStateStore,
    create_state_store,
)

__all__ = [
    "AuthContext",
    "AuthPolicy",
    "Chunk",
    "ErrorInfo",
    "FileFlowStateStore",
    "Flow",
    "FlowConfig",
    "FlowContext",
    "FlowState",
    "FlowStateFilter",
    "FlowStateStore",
    "FlowStatus",
    "FlowStream",
    "InMemoryFlowStateStore",
    "Operation",
    "Pending",
    "StepExecutor",
    "create_state_store",
    "decode_credential",
    "define_flow",
    "lookup_flow",
    "resume_flow",
    "run_flow",
    "run_flow_batch",
    "stream_flow",
]
