"""Durable flows.

A :class:`Flow` is an :class:`~durable_flows.core.registry.Action` of kind
``flow`` whose body runs against a persisted :class:`FlowState`:

- steps are memoized per run identifier (see :mod:`durable_flows.flows.steps`)
- an optional auth policy is evaluated before any state or step is touched
- a body suspends by returning :class:`Pending` (or raising
  :class:`InterruptionSignal` through ``ctx.interrupt``); a later resume binds
  its payload to the pending token and re-enters the body

Pre-dispatch rejections (unknown flow, auth, invalid input, resume of a
finished run) raise. Failures inside the body are persisted and reported in
``Operation.error``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Sequence
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from durable_flows.core.registry import Action, ActionKind, ActionRegistry, resolve
from durable_flows.errors import (
    AlreadyTerminalError,
    AuthError,
    FlowError,
    InterruptionSignal,
    NotFoundError,
    StorageError,
    ValidationError,
    error_info_from_exception,
)
from durable_flows.flows.auth import AuthContext, AuthPolicy
from durable_flows.flows.state import (
    Chunk,
    FlowState,
    FlowStatus,
    Operation,
    Pending,
    PendingInfo,
)
from durable_flows.flows.steps import StepExecutor
from durable_flows.flows.store import FlowStateStore, InMemoryFlowStateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

ChunkCallback = Callable[[Chunk], None]
StepsFunction = Callable[[Any, "FlowContext"], Awaitable[Any]]


def new_run_id() -> str:
    return uuid.uuid4().hex


class FlowConfig(BaseModel):
    """Explicit flow configuration, validated when the flow is defined."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    name: str
    input_schema: Any = None
    output_schema: Any = None
    auth_policy: AuthPolicy | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("flow name is required")
        if "/" in value:
            raise ValueError("flow name must not contain '/'")
        return value

    @field_validator("auth_policy")
    @classmethod
    def _check_policy(cls, value: Any) -> Any:
        if value is not None and not callable(value):
            raise ValueError("auth_policy must be callable")
        return value


class FlowContext:
    """What a flow body sees for the duration of one invocation."""

    def __init__(
        self,
        *,
        flow: Flow,
        state: FlowState,
        executor: StepExecutor,
        auth: AuthContext | None,
        resume: Any,
        on_chunk: ChunkCallback | None,
    ) -> None:
        self.flow = flow
        self.auth = auth
        self.resume = resume
        self._state = state
        self._executor = executor
        self._on_chunk = on_chunk
        self._chunk_index = 0

    @property
    def run_id(self) -> str:
        return self._state.run_id

    @property
    def steps(self) -> StepExecutor:
        return self._executor

    async def run(self, name: str, fn: Callable[[], Any], *, schema: Any = None) -> Any:
        return await self._executor.run(name, fn, schema=schema)

    async def run_action(self, name: str, action: Action, input: Any = None) -> Any:  # noqa: A002
        return await self._executor.run_action(name, action, input)

    async def run_map(self, name: str, items: Iterable[T], fn: Callable[[T], R]) -> Sequence[R]:
        return await self._executor.run_map(name, items, fn)

    def send_chunk(self, content: Any) -> Chunk:
        """Emit a partial result to a streaming caller. A no-op otherwise."""

        chunk = Chunk(index=self._chunk_index, content=content)
        self._chunk_index += 1
        if self._on_chunk is not None:
            self._on_chunk(chunk)
        return chunk

    def resumed(self, token: str, default: Any = None) -> Any:
        """Return the resume payload bound to ``token``, or ``default``."""

        return self._state.resumed.get(token, default)

    def has_resumed(self, token: str) -> bool:
        return token in self._state.resumed

    def interrupt(self, token: str, payload: Any = None) -> Any:
        """Suspend the flow at ``token`` unless a resume already answered it.

        Returns the bound resume payload when one exists, so nested code can
        use ``answer = ctx.interrupt("approve", draft)`` as a durable wait.
        """

        if token in self._state.resumed:
            return self._state.resumed[token]
        raise InterruptionSignal(Pending(token=token, payload=payload))


class Flow(Action):
    """An action with durable, resumable, steps-based execution."""

    def __init__(
        self,
        config: FlowConfig,
        steps_fn: StepsFunction,
        *,
        store: FlowStateStore | None = None,
    ) -> None:
        super().__init__(
            kind=ActionKind.FLOW,
            name=config.name,
            fn=self._call_steps,
            input_schema=config.input_schema,
            output_schema=config.output_schema,
            metadata=config.metadata,
        )
        self.config = config
        self.steps_fn = steps_fn
        self.store: FlowStateStore = store if store is not None else InMemoryFlowStateStore()

    async def _call_steps(self, input: Any, *, context: FlowContext) -> Any:  # noqa: A002
        result = await resolve(self.steps_fn(input, context))
        if isinstance(result, Pending):
            raise InterruptionSignal(result)
        return result

    async def authorize(self, auth: AuthContext | None, input: Any) -> None:  # noqa: A002
        """Evaluate the auth policy.

        Raises:
            AuthError: If the policy returns ``False`` or raises.
        """

        policy = self.config.auth_policy
        if policy is None:
            return
        try:
            allowed = await resolve(policy(auth, input))
        except AuthError:
            raise
        except Exception as e:
            raise AuthError(str(e) or "Unauthorized", details={"flow": self.name}) from e
        if allowed is False:
            raise AuthError(
                f"Not authorized to run flow '{self.name}'", details={"flow": self.name}
            )

    async def _load(self, run_id: str) -> FlowState | None:
        state = await self.store.load(run_id)
        if state is not None and state.flow_name != self.name:
            raise ValidationError(
                f"Run '{run_id}' belongs to flow '{state.flow_name}', not '{self.name}'",
                details={"run_id": run_id, "flow": state.flow_name},
            )
        return state

    async def start(
        self,
        input: Any = None,  # noqa: A002
        *,
        run_id: str | None = None,
        auth: AuthContext | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> Operation:
        """Run the flow to completion, failure or interruption.

        With an existing ``run_id`` the stored input and step cache are reused:
        an interrupted or abandoned run continues, and a succeeded run replays
        its body against the cache without changing its recorded outcome. A
        failed run is not re-entered; its stored Operation is returned.
        """

        run_id = run_id or new_run_id()
        await self.authorize(auth, input)

        state = await self._load(run_id)
        if state is not None and state.status is FlowStatus.FAILED:
            logger.info("Run already failed", extra={"flow": self.name, "run_id": run_id})
            return Operation.from_state(state)
        if state is None:
            state = FlowState(run_id=run_id, flow_name=self.name, input=self.validate_input(input))
            await self.store.save(run_id, state)
            logger.info("Flow started", extra={"flow": self.name, "run_id": run_id})
        else:
            if input is not None and input != state.input:
                logger.warning(
                    "Ignoring new input for existing run; the stored input is used",
                    extra={"flow": self.name, "run_id": run_id},
                )
            if state.status is FlowStatus.INTERRUPTED:
                state.pending = None
                state.transition(FlowStatus.RUNNING)
                await self.store.save(run_id, state)
            logger.info(
                "Flow re-entered",
                extra={"flow": self.name, "run_id": run_id, "status": state.status.value},
            )
        return await self._execute(state, auth=auth, resume=None, on_chunk=on_chunk)

    async def resume(
        self,
        run_id: str,
        resume: Any = None,
        *,
        auth: AuthContext | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> Operation:
        """Resume an interrupted (or abandoned) run with ``resume`` as payload.

        Raises:
            NotFoundError: If the run identifier is unknown.
            AlreadyTerminalError: If the run already succeeded or failed.
        """

        state = await self._load(run_id)
        if state is None:
            raise NotFoundError(f"Run '{run_id}' not found", details={"run_id": run_id})
        if state.status.is_terminal:
            raise AlreadyTerminalError(
                f"Run '{run_id}' already {state.status.value}",
                details={"run_id": run_id, "status": state.status.value},
            )
        await self.authorize(auth, state.input)

        if state.pending is not None:
            state.resumed[state.pending.token] = resume
            state.pending = None
        if state.status is FlowStatus.INTERRUPTED:
            state.transition(FlowStatus.RUNNING)
        state.touch()
        await self.store.save(run_id, state)
        logger.info("Flow resumed", extra={"flow": self.name, "run_id": run_id})
        return await self._execute(state, auth=auth, resume=resume, on_chunk=on_chunk)

    async def _execute(
        self,
        state: FlowState,
        *,
        auth: AuthContext | None,
        resume: Any,
        on_chunk: ChunkCallback | None,
    ) -> Operation:
        replay = state.status.is_terminal
        executor = StepExecutor(state, self.store)
        context = FlowContext(
            flow=self,
            state=state,
            executor=executor,
            auth=auth,
            resume=resume,
            on_chunk=on_chunk,
        )

        try:
            output = await self.invoke(state.input, context=context)
        except InterruptionSignal as signal:
            if replay:
                return _replay_operation(state, error=signal)
            state.pending = PendingInfo(token=signal.pending.token, payload=signal.pending.payload)
            state.transition(FlowStatus.INTERRUPTED)
            storage_error = await self._save_outcome(state)
            if storage_error is not None:
                return _storage_failure(state, storage_error)
            logger.info(
                "Flow interrupted",
                extra={"flow": self.name, "run_id": state.run_id, "token": signal.pending.token},
            )
            return Operation.from_state(state)
        except Exception as e:
            if replay:
                return _replay_operation(state, error=e)
            state.error = error_info_from_exception(e)
            state.transition(FlowStatus.FAILED)
            logger.exception(
                "Flow failed",
                extra={"flow": self.name, "run_id": state.run_id, "kind": state.error.kind},
            )
            # The body's error is the one reported, persisted or not.
            await self._save_outcome(state)
            return Operation.from_state(state)

        if replay:
            if executor.executed:
                storage_error = await self._save_outcome(state)
                if storage_error is not None:
                    return _storage_failure(state, storage_error)
            return _replay_operation(state, output=output)

        state.output = output
        state.transition(FlowStatus.SUCCEEDED)
        storage_error = await self._save_outcome(state)
        if storage_error is not None:
            return _storage_failure(state, storage_error)
        logger.info(
            "Flow succeeded",
            extra={
                "flow": self.name,
                "run_id": state.run_id,
                "executed_steps": len(executor.executed),
                "replayed_steps": len(executor.replayed),
            },
        )
        return Operation.from_state(state)

    async def _save_outcome(self, state: FlowState) -> StorageError | None:
        try:
            await self.store.save(state.run_id, state)
        except StorageError as e:
            logger.error(
                "Failed to persist flow outcome",
                extra={
                    "flow": self.name,
                    "run_id": state.run_id,
                    "status": state.status.value,
                    "error": e.message,
                },
            )
            return e
        return None

    async def operation(self, run_id: str) -> Operation:
        state = await self._load(run_id)
        if state is None:
            raise NotFoundError(f"Run '{run_id}' not found", details={"run_id": run_id})
        return Operation.from_state(state)


def _replay_operation(
    state: FlowState, *, output: Any = None, error: BaseException | None = None
) -> Operation:
    # The stored outcome of a finished run is never rewritten; report this replay only.
    operation = Operation.from_state(state)
    operation.metadata["replay"] = True
    if error is not None:
        return operation.model_copy(
            update={"result": None, "error": error_info_from_exception(error)}
        )
    return operation.model_copy(update={"result": output, "error": None})


def _storage_failure(state: FlowState, error: StorageError) -> Operation:
    # The outcome was not persisted; the storage failure is what the caller sees.
    operation = Operation.from_state(state)
    operation.metadata["status"] = FlowStatus.FAILED.value
    operation.metadata.pop("pending", None)
    return operation.model_copy(update={"done": True, "result": None, "error": error.to_info()})


def define_flow(
    registry: ActionRegistry,
    config: FlowConfig | dict[str, Any],
    steps_fn: StepsFunction,
    *,
    store: FlowStateStore | None = None,
) -> Flow:
    """Define a flow and register it as an action of kind ``flow``.

    Without ``store`` the flow uses ``registry.state_store``, created in memory
    on first use, so all such flows of one registry share their runs.

    Raises:
        DuplicateNameError: If a flow with the same name is already registered.
    """

    if not isinstance(config, FlowConfig):
        config = FlowConfig.model_validate(config)
    if store is None:
        if registry.state_store is None:
            registry.state_store = InMemoryFlowStateStore()
        store = registry.state_store
    flow = Flow(config, steps_fn, store=store)
    registry.add(flow)
    return flow


def lookup_flow(registry: ActionRegistry, name: str) -> Flow:
    """Return the flow registered under ``name``.

    Raises:
        NotFoundError: If no flow is registered under ``name``.
    """

    action = registry.lookup(ActionKind.FLOW, name)
    if not isinstance(action, Flow):
        raise NotFoundError(f"Action '{action.key}' is not a flow", details={"name": name})
    return action


async def run_flow(
    flow: Flow,
    input: Any = None,  # noqa: A002
    *,
    run_id: str | None = None,
    auth: AuthContext | None = None,
) -> Operation:
    return await flow.start(input, run_id=run_id, auth=auth)


async def resume_flow(
    registry: ActionRegistry,
    store: FlowStateStore,
    run_id: str,
    resume: Any = None,
    *,
    auth: AuthContext | None = None,
) -> Operation:
    """Resume a run by identifier alone; the flow is found from its state.

    Raises:
        NotFoundError: If the run or its flow is unknown.
        AlreadyTerminalError: If the run already succeeded or failed.
    """

    state = await store.load(run_id)
    if state is None:
        raise NotFoundError(f"Run '{run_id}' not found", details={"run_id": run_id})
    flow = lookup_flow(registry, state.flow_name)
    return await flow.resume(run_id, resume, auth=auth)


async def run_flow_batch(
    flow: Flow,
    inputs: Iterable[Any],
    *,
    auth: AuthContext | None = None,
) -> list[Operation]:
    """Start one run per input concurrently. Results are positional.

    A rejected or failed input yields a failed Operation in its slot and never
    aborts its siblings.
    """

    async def _one(item: Any) -> Operation:
        run_id = new_run_id()
        try:
            return await flow.start(item, run_id=run_id, auth=auth)
        except FlowError as e:
            return Operation(
                id=run_id, done=True, error=e.to_info(), metadata={"flowName": flow.name}
            )

    return list(await asyncio.gather(*(_one(item) for item in inputs)))


_DONE = object()


def _forget_abandoned(task: asyncio.Task[Operation]) -> None:
    FlowStream._background.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.error("Abandoned stream failed before dispatch", exc_info=task.exception())


class FlowStream:
    """Chunks of one streaming invocation, followed by its final Operation.

    Iterate once: ``async for item in stream`` yields :class:`Chunk` objects and
    then exactly one :class:`Operation`. Abandoning the iteration stops chunk
    delivery only; the run continues and its state is still persisted.
    """

    _background: set[asyncio.Task[Operation]] = set()

    def __init__(self, start: Callable[[ChunkCallback], Awaitable[Operation]]) -> None:
        self._start = start
        self._started = False
        self.operation: Operation | None = None

    def __aiter__(self) -> AsyncIterator[Chunk | Operation]:
        if self._started:
            raise RuntimeError("A flow stream can only be iterated once")
        self._started = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Chunk | Operation]:
        queue: asyncio.Queue[Any] = asyncio.Queue()
        task = asyncio.ensure_future(self._start(queue.put_nowait))
        task.add_done_callback(lambda _t: queue.put_nowait(_DONE))
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                yield item
            self.operation = task.result()
            yield self.operation
        finally:
            if not task.done():
                logger.info("Stream abandoned; run continues without a consumer")
                FlowStream._background.add(task)
                task.add_done_callback(_forget_abandoned)


def stream_flow(
    flow: Flow,
    input: Any = None,  # noqa: A002
    *,
    run_id: str | None = None,
    auth: AuthContext | None = None,
) -> FlowStream:
    """Start a streaming invocation. Nothing runs until the stream is iterated."""

    return FlowStream(
        lambda on_chunk: flow.start(input, run_id=run_id, auth=auth, on_chunk=on_chunk)
    )
