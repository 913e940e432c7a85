"""Step memoization.

A :class:`StepExecutor` is bound to one :class:`FlowState` for the duration
of one invocation. Each named step runs at most once per run identifier: a
cached name replays its recorded value instead of calling the step function,
which is what makes resuming a flow safe when steps have side effects.

Failures are never cached, so a resumed invocation re-attempts exactly the
step that failed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from typing import Any, TypeVar

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from durable_flows.core.registry import Action, resolve
from durable_flows.errors import DuplicateNameError, InterruptionSignal, StepError, ValidationError
from durable_flows.flows.state import FlowState
from durable_flows.flows.store import FlowStateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def map_step_name(name: str, index: int) -> str:
    """Step name for one element of a ``run_map`` fan-out.

    Elements are keyed by position, so the mapped sequence must keep its order
    between the original run and any resumption.
    """

    return f"{name}[{index}]"


class StepExecutor:
    def __init__(self, state: FlowState, store: FlowStateStore) -> None:
        self._state = state
        self._store = store
        self._claimed: set[str] = set()
        self.executed: list[str] = []
        self.replayed: list[str] = []

    @property
    def state(self) -> FlowState:
        return self._state

    def _claim(self, name: str) -> None:
        if not name:
            raise ValueError("Step name is required")
        if name in self._claimed:
            raise DuplicateNameError(
                f"Step '{name}' already ran in this invocation",
                details={"step": name, "run_id": self._state.run_id},
            )
        self._claimed.add(name)

    async def run(self, name: str, fn: Callable[[], Any], *, schema: Any = None) -> Any:
        """Run ``fn`` as the step ``name``, or replay its cached value.

        A store may hand back a cached value as plain JSON data; with
        ``schema`` the replayed value is validated back into that type.

        Raises:
            StepError: If ``fn`` raises, or a replayed value does not match
                ``schema``. The failure is not recorded.
            DuplicateNameError: If ``name`` was already used in this invocation.
        """

        restore = TypeAdapter(schema).validate_python if schema is not None else None
        return await self._run(name, fn, restore)

    async def _run(
        self, name: str, fn: Callable[[], Any], restore: Callable[[Any], Any] | None
    ) -> Any:
        self._claim(name)

        cached = self._state.steps.get(name)
        if cached is not None:
            logger.debug(
                "Replaying cached step", extra={"run_id": self._state.run_id, "step": name}
            )
            self.replayed.append(name)
            if restore is None:
                return cached.value
            try:
                return restore(cached.value)
            except (PydanticValidationError, ValidationError) as e:
                raise StepError(name, e) from e

        try:
            value = await resolve(fn())
        except (InterruptionSignal, StepError):
            raise
        except Exception as e:
            logger.warning(
                "Step failed",
                extra={"run_id": self._state.run_id, "step": name, "error": str(e)},
            )
            raise StepError(name, e) from e

        self._state.record_step(name, value)
        self.executed.append(name)
        await self._store.save(self._state.run_id, self._state)
        logger.debug("Step recorded", extra={"run_id": self._state.run_id, "step": name})
        return value

    async def run_action(self, name: str, action: Action, input: Any = None) -> Any:  # noqa: A002
        """Invoke a registered action as the memoized step ``name``.

        A replayed value is validated against the action's output schema, so
        the body sees the same type before and after a resume.
        """

        return await self._run(name, lambda: action.invoke(input), action.validate_output)

    async def run_map(
        self, name: str, items: Iterable[T], fn: Callable[[T], R]
    ) -> Sequence[R]:
        """Apply ``fn`` to every item as its own memoized step.

        Elements run concurrently; the result keeps input order. All elements
        settle before the first failure is re-raised, so finished elements stay
        cached for a resumption.
        """

        elements = list(items)
        outcomes = await asyncio.gather(
            *(
                self.run(map_step_name(name, index), _bind(fn, item))
                for index, item in enumerate(elements)
            ),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return list(outcomes)


def _bind(fn: Callable[[T], R], item: T) -> Callable[[], R]:
    return lambda: fn(item)
