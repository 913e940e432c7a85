"""Action registry.

Every invokable unit (flows, and anything a flow calls through
``run_action``) is an :class:`Action` keyed by ``(kind, name)``. Invoking an
action validates its input, runs it inside a tracing span and validates its
output.

The registry is an explicit object: build one at startup, register actions
while warming up, then treat it as read-only. Tests build a fresh one per case.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable, Iterator
from enum import Enum
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from durable_flows.errors import (
    DuplicateNameError,
    InterruptionSignal,
    NotFoundError,
    ValidationError,
)
from durable_flows.tracing import get_tracer

if TYPE_CHECKING:
    from durable_flows.flows.store import FlowStateStore

logger = logging.getLogger(__name__)

ActionFn = Callable[..., Any]


class ActionKind(str, Enum):
    FLOW = "flow"
    MODEL = "model"
    PROMPT = "prompt"
    TOOL = "tool"
    RETRIEVER = "retriever"
    INDEXER = "indexer"
    EMBEDDER = "embedder"
    EVALUATOR = "evaluator"
    UTIL = "util"
    CUSTOM = "custom"


def action_key(kind: ActionKind | str, name: str) -> str:
    return f"/{ActionKind(kind).value}/{name}"


async def resolve(value: Any) -> Any:
    """Await ``value`` if it is awaitable; sync callables return plain values."""

    if inspect.isawaitable(value):
        return await value
    return value


class Action:
    """A named, schema-typed, traced callable.

    Schemas are plain Python types (builtins, ``list[str]``, pydantic models,
    ...). ``None`` accepts anything.
    """

    def __init__(
        self,
        *,
        kind: ActionKind | str,
        name: str,
        fn: ActionFn,
        input_schema: Any = None,
        output_schema: Any = None,
        metadata: dict[str, Any] | None = None,
        subtype: str | None = None,
        tracer: trace.Tracer | None = None,
    ) -> None:
        if not name or not name.strip():
            raise ValueError("Action name is required")
        if "/" in name:
            raise ValueError(f"Action name must not contain '/': {name!r}")

        self.kind = ActionKind(kind)
        self.name = name
        self.fn = fn
        self.input_schema = input_schema
        self.output_schema = output_schema
        self.metadata: dict[str, Any] = dict(metadata or {})
        self.subtype = subtype
        self._tracer = tracer

        self._input_adapter: TypeAdapter[Any] | None = (
            TypeAdapter(input_schema) if input_schema is not None else None
        )
        self._output_adapter: TypeAdapter[Any] | None = (
            TypeAdapter(output_schema) if output_schema is not None else None
        )

    @property
    def key(self) -> str:
        return action_key(self.kind, self.name)

    @property
    def tracer(self) -> trace.Tracer:
        return self._tracer or get_tracer()

    @tracer.setter
    def tracer(self, tracer: trace.Tracer | None) -> None:
        self._tracer = tracer

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.key!r})"

    def _validate(self, adapter: TypeAdapter[Any] | None, value: Any, *, what: str) -> Any:
        if adapter is None:
            return value
        try:
            return adapter.validate_python(value)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid {what} for action '{self.key}'",
                details=e.errors(include_url=False, include_context=False),
            ) from e

    def validate_input(self, value: Any) -> Any:
        return self._validate(self._input_adapter, value, what="input")

    def validate_output(self, value: Any) -> Any:
        return self._validate(self._output_adapter, value, what="output")

    def dump_output(self, value: Any) -> Any:
        """Render an output value as JSON-compatible data."""

        if self._output_adapter is None:
            return TypeAdapter(Any).dump_python(value, mode="json")
        return self._output_adapter.dump_python(value, mode="json")

    def describe(self) -> dict[str, Any]:
        """JSON-friendly descriptor for tooling."""

        def _schema(adapter: TypeAdapter[Any] | None) -> dict[str, Any] | None:
            if adapter is None:
                return None
            try:
                return adapter.json_schema()
            except Exception:  # noqa: BLE001 (arbitrary types have no JSON schema)
                return None

        return {
            "key": self.key,
            "kind": self.kind.value,
            "name": self.name,
            "subtype": self.subtype,
            "metadata": self.metadata,
            "inputSchema": _schema(self._input_adapter),
            "outputSchema": _schema(self._output_adapter),
        }

    async def invoke(self, input: Any = None, **options: Any) -> Any:  # noqa: A002
        """Validate, trace and run the action.

        Extra keyword ``options`` are forwarded to the wrapped callable.

        Raises:
            ValidationError: If the input or output does not match its schema.
        """

        with self.tracer.start_as_current_span(
            self.name, record_exception=False, set_status_on_exception=False
        ) as span:
            span.set_attribute("action.type", self.kind.value)
            span.set_attribute("action.name", self.name)
            if self.subtype:
                span.set_attribute("action.subtype", self.subtype)
            try:
                value = self.validate_input(input)
                result = await resolve(self.fn(value, **options))
                output = self.validate_output(result)
            except InterruptionSignal as signal:
                span.set_attribute("action.state", "interrupted")
                span.set_attribute("action.pending_token", signal.pending.token)
                raise
            except Exception as e:
                span.set_attribute("action.state", "error")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise
            span.set_attribute("action.state", "success")
            return output

    async def __call__(self, input: Any = None, **options: Any) -> Any:  # noqa: A002
        return await self.invoke(input, **options)


class ActionRegistry:
    """Registry of actions keyed by ``(kind, name)``.

    Registration is append-only; there is no removal. ``close()`` tears the
    registry down and rejects further registration.

    ``state_store`` is where flows defined without their own store keep their
    runs, so resuming by run identifier finds every such run in one place.
    """

    def __init__(
        self,
        *,
        tracer: trace.Tracer | None = None,
        state_store: FlowStateStore | None = None,
    ) -> None:
        self._actions: dict[str, Action] = {}
        self._closed = False
        self.tracer = tracer
        self.state_store = state_store

    def __enter__(self) -> ActionRegistry:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    def close(self) -> None:
        self._actions.clear()
        self._closed = True
        logger.debug("Action registry closed")

    def add(self, action: Action) -> Action:
        """Register a pre-built action.

        Raises:
            DuplicateNameError: If ``(kind, name)`` is already registered.
        """

        if self._closed:
            raise RuntimeError("Action registry is closed")
        if action.key in self._actions:
            raise DuplicateNameError(
                f"Action '{action.key}' is already registered",
                details={"kind": action.kind.value, "name": action.name},
            )
        if self.tracer is not None:
            action.tracer = self.tracer
        self._actions[action.key] = action
        logger.debug("Action registered", extra={"action": action.key})
        return action

    def register(
        self,
        kind: ActionKind | str,
        name: str,
        fn: ActionFn,
        *,
        input_schema: Any = None,
        output_schema: Any = None,
        metadata: dict[str, Any] | None = None,
        subtype: str | None = None,
    ) -> Action:
        return self.add(
            Action(
                kind=kind,
                name=name,
                fn=fn,
                input_schema=input_schema,
                output_schema=output_schema,
                metadata=metadata,
                subtype=subtype,
            )
        )

    def find(self, kind: ActionKind | str, name: str) -> Action | None:
        return self._actions.get(action_key(kind, name))

    def lookup(self, kind: ActionKind | str, name: str) -> Action:
        """Return the action registered under ``(kind, name)``.

        Raises:
            NotFoundError: If nothing is registered under that key.
        """

        action = self.find(kind, name)
        if action is None:
            raise NotFoundError(
                f"Action '{action_key(kind, name)}' not found",
                details={"kind": ActionKind(kind).value, "name": name},
            )
        return action

    def list(self, kind: ActionKind | str | None = None) -> list[Action]:
        if kind is None:
            return list(self._actions.values())
        wanted = ActionKind(kind)
        return [a for a in self._actions.values() if a.kind is wanted]

    def __contains__(self, key: object) -> bool:
        return key in self._actions

    def __iter__(self) -> Iterator[Action]:
        return iter(list(self._actions.values()))

    def __len__(self) -> int:
        return len(self._actions)
