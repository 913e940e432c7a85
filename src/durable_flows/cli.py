"""CLI entrypoint for durable-flows.

Every command except ``serve`` talks to a running flow server
(``FLOW_SERVER_URL``); ``serve`` starts one for a registry given as
``module:attribute``.

Exit codes: 0 on success (an interrupted run counts), 1 when a flow fails or
the server rejects the call, 2 on configuration or usage errors.
"""

from __future__ import annotations

import argparse
import importlib
import json
import logging
import sys
from pathlib import Path
from typing import Any

import requests
from pydantic import ValidationError

from durable_flows import __version__
from durable_flows.client import FlowClientError, FlowServerClient
from durable_flows.config import FlowSettings
from durable_flows.core.registry import ActionRegistry
from durable_flows.logging import configure_logging

logger = logging.getLogger(__name__)


class UsageError(Exception):
    """Bad arguments that argparse cannot detect on its own."""


def _parse_json_arg(value: str | None, *, what: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise UsageError(f"{what} must be valid JSON: {e}") from e


def _parse_resume_arg(value: str) -> Any:
    # Plain strings are accepted without JSON quoting.
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def _read_inputs(path: Path) -> list[Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise UsageError(f"Cannot read input file '{path}': {e}") from e
    except json.JSONDecodeError as e:
        raise UsageError(f"Input file '{path}' is not valid JSON: {e}") from e
    if not isinstance(data, list):
        raise UsageError(f"Input file '{path}' must contain a JSON array")
    return data


def _load_registry(target: str) -> ActionRegistry:
    module_name, sep, attribute = target.partition(":")
    if not sep or not module_name or not attribute:
        raise UsageError("--app must look like 'package.module:registry'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise UsageError(f"Cannot import '{module_name}': {e}") from e
    registry = getattr(module, attribute, None)
    if not isinstance(registry, ActionRegistry):
        raise UsageError(f"'{target}' is not an ActionRegistry")
    return registry


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, indent=2)


def _report(operation: dict[str, Any]) -> int:
    print(_dump(operation))
    error = operation.get("error")
    if error:
        print(f"{error.get('kind', 'InternalError')}: {error.get('message', '')}")
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flows",
        description="Run, resume and inspect durable flows on a flow server",
    )
    parser.add_argument("--version", action="version", version=f"durable-flows {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("flow:run", help="Run a flow and print its Operation")
    run.add_argument("name", help="Flow name")
    run.add_argument("--input", default=None, help="Flow input as JSON")
    run.add_argument("--run-id", default=None, help="Reuse (or choose) a run identifier")
    run.add_argument(
        "--stream",
        action="store_true",
        help="Print streamed chunks as they arrive, then the Operation",
    )

    batch = subparsers.add_parser(
        "flow:batchRun", help="Run a flow once per element of a JSON array"
    )
    batch.add_argument("name", help="Flow name")
    batch.add_argument(
        "--input", required=True, type=Path, help="Path to a JSON file holding an array of inputs"
    )
    batch.add_argument(
        "--output", default=None, type=Path, help="Write the results here instead of stdout"
    )

    resume = subparsers.add_parser("flow:resume", help="Resume an interrupted run")
    resume.add_argument("run_id", help="Run identifier")
    resume.add_argument(
        "--resume",
        required=True,
        help="Resume payload (JSON; anything that is not JSON is sent as a string)",
    )

    subparsers.add_parser("flow:list", help="List the flows registered on the server")

    runs = subparsers.add_parser("runs:list", help="List stored runs")
    runs.add_argument("--flow", default=None, help="Only runs of this flow")
    runs.add_argument(
        "--status",
        default=None,
        choices=["running", "succeeded", "failed", "interrupted"],
        help="Only runs in this status",
    )
    runs.add_argument("--page-token", default=None, help="Continue a previous listing")
    runs.add_argument("--page-size", type=int, default=None, help="Runs per page")

    serve = subparsers.add_parser("serve", help="Serve a registry over HTTP")
    serve.add_argument(
        "--app", required=True, help="Registry to serve, as 'package.module:attribute'"
    )
    serve.add_argument("--host", default=None, help="Override FLOW_SERVER_HOST")
    serve.add_argument("--port", type=int, default=None, help="Override FLOW_SERVER_PORT")

    return parser


def _run_command(args: argparse.Namespace, settings: FlowSettings) -> int:
    if args.command == "serve":
        from durable_flows.server import serve

        registry = _load_registry(args.app)
        overrides: dict[str, Any] = {}
        if args.host:
            overrides["server_host"] = args.host
        if args.port:
            overrides["server_port"] = args.port
        serve(registry, settings=settings.model_copy(update=overrides))
        return 0

    client = FlowServerClient(base_url=settings.server_url, token=settings.auth_token)

    if args.command == "flow:run":
        flow_input = _parse_json_arg(args.input, what="--input")
        if not args.stream:
            return _report(client.run(args.name, flow_input, run_id=args.run_id))

        operation: dict[str, Any] | None = None
        for frame in client.stream(args.name, flow_input, run_id=args.run_id):
            if "id" in frame:
                operation = frame
                continue
            content = frame.get("content")
            print(content if isinstance(content, str) else json.dumps(content), flush=True)
        if operation is None:
            raise FlowClientError("InternalError", "Stream ended without an Operation")
        return _report(operation)

    if args.command == "flow:batchRun":
        inputs = _read_inputs(args.input)
        results = client.batch(args.name, inputs)
        rendered = _dump(results)
        if args.output is not None:
            args.output.parent.mkdir(parents=True, exist_ok=True)
            args.output.write_text(rendered + "\n", encoding="utf-8")
            logger.info(
                "Batch results written", extra={"path": str(args.output), "count": len(results)}
            )
        else:
            print(rendered)
        failures = [r["error"] for r in results if r.get("error")]
        if failures:
            first = failures[0]
            print(
                f"{first.get('kind', 'InternalError')}: {first.get('message', '')} "
                f"({len(failures)} of {len(results)} inputs failed)"
            )
            return 1
        return 0

    if args.command == "flow:resume":
        return _report(client.resume(args.run_id, _parse_resume_arg(args.resume)))

    if args.command == "flow:list":
        for flow in client.list_flows():
            print(flow["name"])
        return 0

    if args.command == "runs:list":
        page = client.list_runs(
            flow_name=args.flow,
            status=args.status,
            page_token=args.page_token,
            page_size=args.page_size,
        )
        for item in page.get("items", []):
            print(f"{item['runId']}\t{item['flowName']}\t{item['status']}\t{item['updatedAt']}")
        if page.get("nextPageToken"):
            print(f"next page token: {page['nextPageToken']}")
        return 0

    raise UsageError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = FlowSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    # Results go to stdout; keep logs out of the way.
    configure_logging(settings.log_level, stream=sys.stderr)

    try:
        return _run_command(args, settings)
    except UsageError as e:
        print(f"Usage error: {e}", file=sys.stderr)
        return 2
    except FlowClientError as e:
        print(f"{e.kind}: {e.message}")
        return 1
    except requests.RequestException as e:
        print(f"ConnectionError: {e}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
