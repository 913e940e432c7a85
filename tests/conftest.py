"""Test configuration and fixtures."""

from pathlib import Path

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from durable_flows.core.registry import ActionRegistry
from durable_flows.flows.store import FileFlowStateStore, InMemoryFlowStateStore


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep a developer's .env and FLOW_* variables out of the tests."""
    monkeypatch.chdir(tmp_path)
    for name in (
        "LOG_LEVEL",
        "FLOW_STATE_STORE",
        "FLOW_STATE_PATH",
        "FLOW_SERVER_HOST",
        "FLOW_SERVER_PORT",
        "FLOW_SERVER_URL",
        "FLOW_AUTH_TOKEN",
        "FLOW_CORS_ORIGINS",
        "FLOW_TRACING",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def span_exporter() -> InMemorySpanExporter:
    """Collect finished spans in memory."""
    return InMemorySpanExporter()


@pytest.fixture
def registry(span_exporter: InMemorySpanExporter) -> ActionRegistry:
    """Provide a fresh registry whose actions trace into ``span_exporter``."""
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    with ActionRegistry(tracer=provider.get_tracer("tests")) as reg:
        yield reg


@pytest.fixture
def store() -> InMemoryFlowStateStore:
    """Provide an empty in-memory flow state store."""
    return InMemoryFlowStateStore()


@pytest.fixture
def file_store(tmp_path: Path) -> FileFlowStateStore:
    """Provide a file-backed store rooted in a temporary directory."""
    return FileFlowStateStore(tmp_path / ".flows" / "state")
