"""Core package initialization."""

from durable_flows.core.registry import Action, ActionKind, ActionRegistry

__all__ = [
    "Action",
    "ActionKind",
    "ActionRegistry",
]
