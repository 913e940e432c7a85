"""Unit tests for the durable flow wrapper.

These tests assert the run/resume contract: memoized steps are never
recomputed for a run identifier, interruption persists a continuation, and
pre-dispatch rejections leave no trace in the step cache.
"""

from __future__ import annotations

from typing import Any

import pytest
from pydantic import BaseModel

from durable_flows.core.registry import ActionKind, ActionRegistry
from durable_flows.errors import (
    AlreadyTerminalError,
    AuthError,
    DuplicateNameError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from durable_flows.flows.auth import AuthContext, require_token
from durable_flows.flows.flow import (
    FlowConfig,
    FlowContext,
    define_flow,
    lookup_flow,
    resume_flow,
    run_flow,
    run_flow_batch,
    stream_flow,
)
from durable_flows.flows.state import Chunk, FlowStatus, Operation, Pending
from durable_flows.flows.store import FileFlowStateStore, FlowStateStore, InMemoryFlowStateStore


@pytest.fixture(params=["memory", "file"])
def store(request: pytest.FixtureRequest, tmp_path) -> FlowStateStore:
    """Run every flow against both state store backends."""
    if request.param == "file":
        return FileFlowStateStore(tmp_path / "state")
    return InMemoryFlowStateStore()


def _greet(registry: ActionRegistry, store: FlowStateStore, calls: list[str]):
    async def steps(name: str, ctx: FlowContext) -> str:
        def build() -> str:
            calls.append(name)
            return "Hello, " + name

        s = await ctx.run("build", build)
        return s + "!"

    return define_flow(registry, {"name": "greet", "input_schema": str}, steps, store=store)


@pytest.mark.asyncio
async def test_greet_runs_and_replays_cached_steps(registry, store) -> None:
    calls: list[str] = []
    greet = _greet(registry, store, calls)

    op = await run_flow(greet, "Ada", run_id="run-1")
    assert op.done is True
    assert op.result == "Hello, Ada!"
    assert op.error is None

    again = await run_flow(greet, "Ada", run_id="run-1")
    assert again.result == "Hello, Ada!"
    assert again.metadata["replay"] is True
    assert calls == ["Ada"]

    stored = await store.load("run-1")
    assert stored is not None
    assert stored.status is FlowStatus.SUCCEEDED
    assert list(stored.steps) == ["build"]


@pytest.mark.asyncio
async def test_fresh_run_ids_are_generated(registry, store) -> None:
    calls: list[str] = []
    greet = _greet(registry, store, calls)

    first = await run_flow(greet, "Ada")
    second = await run_flow(greet, "Ada")

    assert first.id != second.id
    assert calls == ["Ada", "Ada"]


@pytest.mark.asyncio
async def test_invalid_input_is_rejected_before_any_state(registry, store) -> None:
    greet = _greet(registry, store, [])

    with pytest.raises(ValidationError):
        await run_flow(greet, {"not": "a string"}, run_id="bad")
    assert await store.load("bad") is None


def test_define_flow_validates_config(registry) -> None:
    async def steps(_input, _ctx):
        return None

    with pytest.raises(ValueError):
        define_flow(registry, {"name": ""}, steps)
    with pytest.raises(ValueError):
        define_flow(registry, {"name": "a/b"}, steps)
    with pytest.raises(ValueError):
        define_flow(registry, {"name": "x", "auth_policy": "nope"}, steps)

    flow = define_flow(registry, FlowConfig(name="x"), steps)
    assert flow.key == "/flow/x"
    assert flow.kind is ActionKind.FLOW
    with pytest.raises(DuplicateNameError):
        define_flow(registry, FlowConfig(name="x"), steps)


def test_lookup_unknown_flow_raises_not_found(registry) -> None:
    with pytest.raises(NotFoundError):
        lookup_flow(registry, "nope")


@pytest.mark.asyncio
async def test_resume_of_succeeded_run_is_rejected(registry, store) -> None:
    greet = _greet(registry, store, [])
    await run_flow(greet, "Ada", run_id="done")

    with pytest.raises(AlreadyTerminalError):
        await resume_flow(registry, store, "done", "anything")
    with pytest.raises(NotFoundError):
        await resume_flow(registry, store, "unknown", None)


class Draft(BaseModel):
    topic: str


def _approval_flow(registry, store, counts: dict[str, int]):
    async def steps(draft: Draft, ctx: FlowContext) -> Any:
        def write() -> str:
            counts["write"] += 1
            return f"Post about {draft.topic}"

        text = await ctx.run("write", write)
        if not ctx.has_resumed("approval"):
            return Pending(token="approval", payload={"text": text})

        decision = ctx.resumed("approval")

        def publish() -> str:
            counts["publish"] += 1
            return f"{text} [{decision}]"

        return await ctx.run("publish", publish)

    return define_flow(
        registry, FlowConfig(name="approve", input_schema=Draft), steps, store=store
    )


@pytest.mark.asyncio
async def test_interrupt_then_resume_runs_each_step_once(registry, store) -> None:
    counts = {"write": 0, "publish": 0}
    flow = _approval_flow(registry, store, counts)

    op = await run_flow(flow, {"topic": "otters"}, run_id="a1")
    assert op.done is False
    assert op.metadata["status"] == "interrupted"
    assert op.metadata["pending"] == {
        "token": "approval",
        "payload": {"text": "Post about otters"},
    }

    resumed = await resume_flow(registry, store, "a1", "approved")
    assert resumed.done is True
    assert resumed.result == "Post about otters [approved]"
    assert counts == {"write": 1, "publish": 1}

    stored = await store.load("a1")
    assert stored is not None
    assert stored.pending is None
    assert stored.resumed == {"approval": "approved"}

    with pytest.raises(AlreadyTerminalError):
        await flow.resume("a1", "again")


@pytest.mark.asyncio
async def test_nested_interrupt_returns_bound_payload(registry, store) -> None:
    async def steps(_input, ctx: FlowContext) -> str:
        answer = ctx.interrupt("question", {"ask": "name?"})
        return f"hi {answer}"

    flow = define_flow(registry, {"name": "ask"}, steps, store=store)

    op = await flow.start(None, run_id="q1")
    assert op.metadata["pending"]["token"] == "question"

    done = await flow.resume("q1", "Ada")
    assert done.result == "hi Ada"


@pytest.mark.asyncio
async def test_restarting_an_interrupted_run_interrupts_again(registry, store) -> None:
    counts = {"write": 0, "publish": 0}
    flow = _approval_flow(registry, store, counts)

    await run_flow(flow, {"topic": "otters"}, run_id="a2")
    op = await run_flow(flow, {"topic": "ignored"}, run_id="a2")

    assert op.metadata["status"] == "interrupted"
    assert counts["write"] == 1


@pytest.mark.asyncio
async def test_body_failure_becomes_failed_operation(registry, store) -> None:
    attempts = []

    async def steps(_input, ctx: FlowContext) -> str:
        await ctx.run("ok", lambda: "fine")

        def flaky() -> str:
            attempts.append(1)
            raise RuntimeError("downstream unavailable")

        return await ctx.run("flaky", flaky)

    flow = define_flow(registry, {"name": "fragile"}, steps, store=store)
    op = await run_flow(flow, None, run_id="f1")

    assert op.done is True
    assert op.result is None
    assert op.error is not None
    assert op.error.kind == "StepError"
    assert op.error.details == {"step": "flaky", "type": "RuntimeError"}

    stored = await store.load("f1")
    assert stored is not None
    assert stored.status is FlowStatus.FAILED
    assert list(stored.steps) == ["ok"]

    # A failed run is settled: starting it again reports the stored failure.
    again = await run_flow(flow, None, run_id="f1")
    assert attempts == [1]
    assert again.error == op.error
    assert "replay" not in again.metadata


@pytest.mark.asyncio
async def test_unexpected_exception_is_reported_as_internal_error(registry, store) -> None:
    async def steps(_input, _ctx):
        raise LookupError("no such thing")

    flow = define_flow(registry, {"name": "broken"}, steps, store=store)
    op = await run_flow(flow)

    assert op.error is not None
    assert op.error.kind == "InternalError"
    assert op.error.message == "no such thing"


@pytest.mark.asyncio
async def test_always_deny_policy_leaves_no_steps(registry, store) -> None:
    ran = []

    async def steps(_input, ctx: FlowContext) -> str:
        return await ctx.run("work", lambda: ran.append(1) or "done")

    flow = define_flow(
        registry,
        FlowConfig(name="guarded", auth_policy=lambda auth, _input: False),
        steps,
        store=store,
    )

    with pytest.raises(AuthError):
        await run_flow(flow, None, run_id="g1")

    assert ran == []
    assert await store.load("g1") is None
    assert (await store.list()).items == []


@pytest.mark.asyncio
async def test_token_policy_sees_the_auth_context(registry, store) -> None:
    seen: list[AuthContext | None] = []

    async def steps(_input, ctx: FlowContext) -> str:
        seen.append(ctx.auth)
        return "ok"

    flow = define_flow(
        registry,
        FlowConfig(name="private", auth_policy=require_token(["secret"])),
        steps,
        store=store,
    )

    with pytest.raises(AuthError):
        await run_flow(flow, None, auth=AuthContext(token="wrong"))

    op = await run_flow(flow, None, auth=AuthContext(token="secret"))
    assert op.result == "ok"
    assert seen[0] is not None and seen[0].token == "secret"


@pytest.mark.asyncio
async def test_run_belonging_to_another_flow_is_rejected(registry, store) -> None:
    greet = _greet(registry, store, [])

    async def steps(_input, _ctx):
        return 1

    other = define_flow(registry, {"name": "other"}, steps, store=store)
    await run_flow(greet, "Ada", run_id="shared")

    with pytest.raises(ValidationError):
        await run_flow(other, None, run_id="shared")


@pytest.mark.asyncio
async def test_streamed_chunks_concatenate_to_the_result(registry, store) -> None:
    async def steps(words: list[str], ctx: FlowContext) -> str:
        out = ""
        for word in words:
            piece = await ctx.run(f"word-{word}", lambda w=word: w + " ")
            ctx.send_chunk(piece)
            out += piece
        return out

    flow = define_flow(
        registry, {"name": "talk", "input_schema": list[str]}, steps, store=store
    )

    stream = stream_flow(flow, ["one", "two", "three"])
    items = [item async for item in stream]

    chunks = [i for i in items if isinstance(i, Chunk)]
    final = items[-1]
    assert isinstance(final, Operation)
    assert stream.operation is final
    assert [c.index for c in chunks] == [0, 1, 2]
    assert "".join(c.content for c in chunks) == final.result == "one two three "


@pytest.mark.asyncio
async def test_stream_surfaces_pre_dispatch_errors(registry, store) -> None:
    flow = _greet(registry, store, [])
    stream = stream_flow(flow, 42)

    with pytest.raises(ValidationError):
        async for _item in stream:
            pass
    with pytest.raises(RuntimeError):
        stream.__aiter__()


@pytest.mark.asyncio
async def test_batch_runs_are_positional_and_isolated(registry, store) -> None:
    async def steps(n: int, ctx: FlowContext) -> int:
        def check() -> int:
            if n < 0:
                raise ValueError("negative")
            return n * n

        return await ctx.run("square", check)

    flow = define_flow(registry, {"name": "square", "input_schema": int}, steps, store=store)

    results = await run_flow_batch(flow, [3, -1, "x", 4])

    assert [r.result for r in results] == [9, None, None, 16]
    assert results[1].error is not None and results[1].error.kind == "StepError"
    assert results[2].error is not None and results[2].error.kind == "ValidationError"
    assert len({r.id for r in results}) == 4


@pytest.mark.asyncio
async def test_run_map_inside_a_flow_survives_resume(registry, store) -> None:
    fetched: list[str] = []

    async def steps(urls: list[str], ctx: FlowContext) -> Any:
        def fetch(url: str) -> str:
            fetched.append(url)
            return url.upper()

        pages = await ctx.run_map("fetch", urls, fetch)
        if not ctx.has_resumed("review"):
            return Pending(token="review", payload=pages)
        return {"pages": list(pages), "verdict": ctx.resumed("review")}

    flow = define_flow(registry, {"name": "crawl", "input_schema": list[str]}, steps, store=store)

    op = await flow.start(["a", "b", "c"], run_id="c1")
    assert op.metadata["pending"]["payload"] == ["A", "B", "C"]

    done = await flow.resume("c1", "ok")
    assert done.result == {"pages": ["A", "B", "C"], "verdict": "ok"}
    assert sorted(fetched) == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_flows_trace_as_flow_actions(registry, store, span_exporter) -> None:
    greet = _greet(registry, store, [])
    await run_flow(greet, "Ada")

    spans = span_exporter.get_finished_spans()
    assert [s.attributes["action.type"] for s in spans] == ["flow"]
    assert spans[0].name == "greet"


class Doc(BaseModel):
    value: str


@pytest.mark.asyncio
async def test_typed_step_values_survive_a_resume(registry, store) -> None:
    fetched: list[str] = []

    def fetch_doc(key: str) -> Doc:
        fetched.append(key)
        return Doc(value=key.upper())

    fetch = registry.register(
        ActionKind.TOOL, "fetch", fetch_doc, input_schema=str, output_schema=Doc
    )

    async def steps(key: str, ctx: FlowContext) -> str:
        doc = await ctx.run_action("fetch", fetch, key)
        size = await ctx.run("size", lambda: Doc(value=str(len(doc.value))), schema=Doc)
        if not ctx.has_resumed("review"):
            return Pending(token="review", payload=doc.value)
        return f"{doc.value}:{size.value}:{ctx.resumed('review')}"

    flow = define_flow(registry, {"name": "review", "input_schema": str}, steps, store=store)

    op = await flow.start("abc", run_id="t1")
    assert op.metadata["pending"]["payload"] == "ABC"

    done = await resume_flow(registry, store, "t1", "ok")
    assert done.error is None
    assert done.result == "ABC:3:ok"
    assert fetched == ["abc"]


class FailingStore(InMemoryFlowStateStore):
    """Accepts the first ``healthy_saves`` saves, then fails every one after."""

    def __init__(self, healthy_saves: int) -> None:
        super().__init__()
        self.healthy_saves = healthy_saves
        self.saves = 0

    async def save(self, run_id, state) -> None:
        self.saves += 1
        if self.saves > self.healthy_saves:
            raise StorageError("disk full", details={"run_id": run_id})
        await super().save(run_id, state)


def _counter(registry: ActionRegistry, store: FlowStateStore):
    async def steps(n: int, ctx: FlowContext) -> int:
        return await ctx.run("double", lambda: n * 2)

    return define_flow(registry, {"name": "double", "input_schema": int}, steps, store=store)


@pytest.mark.asyncio
async def test_storage_failure_in_a_step_is_a_failed_operation(registry) -> None:
    failing = FailingStore(healthy_saves=1)
    flow = _counter(registry, failing)

    op = await run_flow(flow, 1, run_id="s1")

    assert op.done is True
    assert op.result is None
    assert op.error is not None
    assert (op.error.kind, op.error.message) == ("StorageError", "disk full")
    stored = await failing.load("s1")
    assert stored is not None
    assert stored.status is FlowStatus.RUNNING


@pytest.mark.asyncio
async def test_storage_failure_on_completion_is_a_failed_operation(registry) -> None:
    failing = FailingStore(healthy_saves=2)
    flow = _counter(registry, failing)

    op = await run_flow(flow, 21, run_id="s2")

    assert op.done is True
    assert op.result is None
    assert op.error is not None and op.error.kind == "StorageError"
    assert op.metadata["status"] == "failed"

    # The step itself was persisted, so a retry of the run reuses it.
    stored = await failing.load("s2")
    assert stored is not None
    assert stored.steps["double"].value == 42


@pytest.mark.asyncio
async def test_flows_without_a_store_share_the_registry_default(registry) -> None:
    async def ask(_input, ctx: FlowContext) -> str:
        return f"hi {ctx.interrupt('name')}"

    first = define_flow(registry, {"name": "ask"}, ask)
    second = _counter(registry, None)

    assert registry.state_store is not None
    assert first.store is second.store is registry.state_store

    op = await run_flow(first, run_id="d1")
    done = await resume_flow(registry, registry.state_store, op.id, "Ada")
    assert done.result == "hi Ada"
