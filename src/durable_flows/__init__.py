"""Durable flows.

Long-running, named, typed operations composed of memoized steps, with
execution state that survives process interruption and can be resumed,
streamed and invoked over HTTP.
"""

__version__ = "0.1.0"

from durable_flows.config import FlowSettings
from durable_flows.core.registry import ActionKind, ActionRegistry
from durable_flows.flows import (
    FlowConfig,
    Operation,
    Pending,
    define_flow,
    resume_flow,
    run_flow,
    stream_flow,
)

__all__ = [
    "__version__",
    "ActionKind",
    "ActionRegistry",
    "FlowConfig",
    "FlowSettings",
    "Operation",
    "Pending",
    "define_flow",
    "resume_flow",
    "run_flow",
    "stream_flow",
]
