"""Unit tests for step memoization."""

from __future__ import annotations

import asyncio

import pytest
from pydantic import BaseModel

from durable_flows.core.registry import ActionKind, ActionRegistry
from durable_flows.errors import DuplicateNameError, StepError
from durable_flows.flows.state import FlowState
from durable_flows.flows.steps import StepExecutor, map_step_name
from durable_flows.flows.store import FileFlowStateStore, InMemoryFlowStateStore


@pytest.fixture
def state() -> FlowState:
    return FlowState(run_id="r1", flow_name="test")


@pytest.mark.asyncio
async def test_run_executes_once_and_persists(state: FlowState, store: InMemoryFlowStateStore):
    calls = []

    def build():
        calls.append(1)
        return "Hello"

    executor = StepExecutor(state, store)
    assert await executor.run("build", build) == "Hello"
    assert calls == [1]
    assert executor.executed == ["build"]

    stored = await store.load("r1")
    assert stored is not None
    assert stored.steps["build"].value == "Hello"

    # A later invocation against the stored state replays instead of calling again.
    replay = StepExecutor(stored, store)
    assert await replay.run("build", build) == "Hello"
    assert calls == [1]
    assert replay.replayed == ["build"]


@pytest.mark.asyncio
async def test_run_awaits_coroutines(state: FlowState, store: InMemoryFlowStateStore) -> None:
    async def fetch():
        await asyncio.sleep(0)
        return {"ok": True}

    assert await StepExecutor(state, store).run("fetch", fetch) == {"ok": True}


@pytest.mark.asyncio
async def test_cached_none_is_still_a_cache_hit(state: FlowState, store) -> None:
    calls = []
    await StepExecutor(state, store).run("side_effect", lambda: calls.append(1))

    await StepExecutor(state, store).run("side_effect", lambda: calls.append(1))
    assert calls == [1]


@pytest.mark.asyncio
async def test_failures_are_not_cached(state: FlowState, store: InMemoryFlowStateStore) -> None:
    def boom():
        raise KeyError("missing")

    with pytest.raises(StepError) as exc:
        await StepExecutor(state, store).run("lookup", boom)

    assert exc.value.step == "lookup"
    assert isinstance(exc.value.cause, KeyError)
    assert "lookup" not in state.steps

    # The next invocation re-attempts the failed step.
    assert await StepExecutor(state, store).run("lookup", lambda: "found") == "found"


@pytest.mark.asyncio
async def test_step_names_are_unique_per_invocation(state: FlowState, store) -> None:
    executor = StepExecutor(state, store)
    await executor.run("a", lambda: 1)

    with pytest.raises(DuplicateNameError):
        await executor.run("a", lambda: 2)
    with pytest.raises(ValueError):
        await executor.run("", lambda: 3)


@pytest.mark.asyncio
async def test_run_action_memoizes_registered_actions(
    registry: ActionRegistry, state: FlowState, store: InMemoryFlowStateStore
) -> None:
    calls = []

    def shout(text: str) -> str:
        calls.append(text)
        return text.upper()

    action = registry.register(ActionKind.TOOL, "shout", shout, input_schema=str)

    assert await StepExecutor(state, store).run_action("loud", action, "hi") == "HI"
    assert await StepExecutor(state, store).run_action("loud", action, "hi") == "HI"
    assert calls == ["hi"]


@pytest.mark.asyncio
async def test_run_map_preserves_order_and_length(state: FlowState, store) -> None:
    async def slow_double(n: int) -> int:
        # Later elements finish first.
        await asyncio.sleep(0.001 * (5 - n))
        return n * 2

    result = await StepExecutor(state, store).run_map("double", range(5), slow_double)

    assert result == [0, 2, 4, 6, 8]
    assert sorted(state.steps) == sorted(map_step_name("double", i) for i in range(5))


@pytest.mark.asyncio
async def test_run_map_keeps_finished_elements_when_one_fails(state: FlowState, store) -> None:
    calls: list[int] = []

    def flaky(n: int) -> int:
        calls.append(n)
        if n == 1 and calls.count(1) == 1:
            raise RuntimeError("transient")
        return n + 100

    with pytest.raises(StepError) as exc:
        await StepExecutor(state, store).run_map("inc", [0, 1, 2], flaky)
    assert exc.value.step == "inc[1]"
    assert set(state.steps) == {"inc[0]", "inc[2]"}

    result = await StepExecutor(state, store).run_map("inc", [0, 1, 2], flaky)
    assert result == [100, 101, 102]
    assert sorted(calls) == [0, 1, 1, 2]


def test_map_step_name() -> None:
    assert map_step_name("fetch", 3) == "fetch[3]"


@pytest.mark.asyncio
async def test_run_map_leaves_every_element_on_disk(file_store) -> None:
    state = FlowState(run_id="m1", flow_name="test")

    async def square(n: int) -> int:
        await asyncio.sleep(0)
        return n * n

    await StepExecutor(state, file_store).run_map("sq", range(30), square)

    # A fresh store reads only what actually reached the file.
    on_disk = await FileFlowStateStore(file_store.root).load("m1")
    assert on_disk is not None
    assert set(on_disk.steps) == {map_step_name("sq", i) for i in range(30)}


class Point(BaseModel):
    x: int
    y: int


@pytest.mark.asyncio
async def test_schema_restores_replayed_values(file_store) -> None:
    state = FlowState(run_id="p1", flow_name="test")
    first = await StepExecutor(state, file_store).run("origin", lambda: Point(x=0, y=0))
    assert first == Point(x=0, y=0)

    stored = await file_store.load("p1")
    assert stored is not None
    assert stored.steps["origin"].value == {"x": 0, "y": 0}

    replayed = await StepExecutor(stored, file_store).run("origin", lambda: None, schema=Point)
    assert replayed == Point(x=0, y=0)

    with pytest.raises(StepError):
        await StepExecutor(stored, file_store).run("origin", lambda: None, schema=int)
