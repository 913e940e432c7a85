"""FastAPI server adapter for durable-flows.

Design intent:
- Keep flow execution in `durable_flows.flows`
- Keep server-specific concerns (routing, CORS, status mapping) here
"""

from __future__ import annotations

__all__ = ["create_app", "serve"]

import logging

import uvicorn

from durable_flows.config import FlowSettings
from durable_flows.core.registry import ActionRegistry
from durable_flows.flows.store import FlowStateStore
from durable_flows.logging import configure_logging
from durable_flows.server.app import create_app
from durable_flows.tracing import configure_tracing

logger = logging.getLogger(__name__)


def serve(
    registry: ActionRegistry,
    *,
    store: FlowStateStore | None = None,
    settings: FlowSettings | None = None,
) -> None:
    """Serve every flow in ``registry`` until interrupted."""

    settings = settings or FlowSettings()
    configure_logging(settings.log_level)
    configure_tracing(settings)

    app = create_app(registry, store=store, settings=settings)
    logger.info(
        "Starting flow server",
        extra={"host": settings.server_host, "port": settings.server_port},
    )
    uvicorn.run(
        app,
        host=settings.server_host,
        port=settings.server_port,
        log_level=settings.log_level.lower(),
        log_config=None,
    )
