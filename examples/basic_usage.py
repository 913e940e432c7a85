#!/usr/bin/env python3
"""Programmatic flow example.

This demonstrates using the flow runtime directly:

* define a flow with a memoized step
* pause it for human approval and resume it
* replay a finished run without recomputing its steps

The module-level ``registry`` can also be served over HTTP:

    flows serve --app examples.basic_usage:registry
"""

from __future__ import annotations

import argparse
import asyncio
from typing import Any, Sequence

from durable_flows import ActionRegistry, FlowConfig, FlowSettings, Pending, define_flow, run_flow
from durable_flows.flows import FlowContext, create_state_store, lookup_flow, resume_flow
from durable_flows.logging import configure_logging

settings = FlowSettings()
registry = ActionRegistry(state_store=create_state_store(settings))


async def greet(name: str, ctx: FlowContext) -> str:
    s = await ctx.run("build", lambda: "Hello, " + name)
    return s + "!"


async def publish(topic: str, ctx: FlowContext) -> Any:
    draft = await ctx.run("draft", lambda: f"A short post about {topic}.")
    if not ctx.has_resumed("approval"):
        return Pending(token="approval", payload={"draft": draft})
    if ctx.resumed("approval") != "approve":
        return {"published": False, "draft": draft}
    return {"published": True, "post": await ctx.run("publish", lambda: draft.upper())}


define_flow(registry, FlowConfig(name="greet", input_schema=str), greet)
define_flow(registry, FlowConfig(name="publish", input_schema=str), publish)


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the example flows in-process.")
    parser.add_argument("--name", default="Ada", help="Who to greet")
    parser.add_argument("--topic", default="otters", help="What to write about")
    parser.add_argument(
        "--decision", default="approve", help="Resume payload for the approval step"
    )
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> int:
    greet_flow = lookup_flow(registry, "greet")
    first = await run_flow(greet_flow, args.name, run_id="example-greet")
    replay = await run_flow(greet_flow, args.name, run_id="example-greet")
    print(f"greet: {first.result} (replayed: {replay.metadata.get('replay', False)})")

    pending = await run_flow(lookup_flow(registry, "publish"), args.topic)
    print(f"publish: waiting on {pending.metadata['pending']['token']}")

    done = await resume_flow(registry, registry.state_store, pending.id, args.decision)
    print(f"publish: {done.result}")
    return 0 if done.error is None else 1


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_logging(settings.log_level)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
