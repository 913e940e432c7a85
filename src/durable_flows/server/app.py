"""FastAPI app factory.

Endpoints are thin wrappers over the flow runtime in ``durable_flows.flows``.
Every flow registered in the given registry is served. The app's store is the
one its flows share (``registry.state_store`` by default); listing runs reads
that store, and run lookup and resume fall back on any flow's own store.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from durable_flows import __version__
from durable_flows.config import FlowSettings
from durable_flows.core.registry import ActionKind, ActionRegistry
from durable_flows.errors import FlowError, NotFoundError, ValidationError
from durable_flows.flows.auth import AuthContext, AuthDecoder, decode_credential
from durable_flows.flows.flow import (
    Flow,
    FlowStream,
    lookup_flow,
    resume_flow,
    run_flow_batch,
    stream_flow,
)
from durable_flows.flows.state import Chunk, FlowState, FlowStateFilter, FlowStatus, Operation
from durable_flows.flows.store import DEFAULT_PAGE_SIZE, FlowStateStore, create_state_store
from durable_flows.server.models import (
    ApiError,
    BatchRequest,
    BatchResponse,
    ErrorResponse,
    FlowDescriptor,
    FlowInvokeEnvelope,
    ResumeRequest,
)

logger = logging.getLogger(__name__)

STATUS_BY_KIND: dict[str, int] = {
    "ValidationError": 400,
    "AuthError": 403,
    "NotFoundError": 404,
    "AlreadyTerminalError": 409,
    "DuplicateNameError": 409,
}


def status_for_kind(kind: str) -> int:
    return STATUS_BY_KIND.get(kind, 500)


def _error_body(kind: str, message: str, details: Any = None) -> dict[str, Any]:
    body = ErrorResponse(error=ApiError(kind=kind, message=message, details=details))
    return body.model_dump(mode="json", exclude_none=True)


def _operation_response(operation: Operation) -> JSONResponse:
    status_code = 200 if operation.error is None else status_for_kind(operation.error.kind)
    return JSONResponse(status_code=status_code, content=operation.to_wire())


def _frame(item: Chunk | Operation) -> str:
    if isinstance(item, Chunk):
        payload = item.model_dump(mode="json")
    else:
        payload = item.to_wire()
    return json.dumps(payload, ensure_ascii=False) + "\n"


def _flow_stores(registry: ActionRegistry) -> list[FlowStateStore]:
    stores = {
        id(flow.store): flow.store
        for flow in registry.list(ActionKind.FLOW)
        if isinstance(flow, Flow)
    }
    return list(stores.values())


def _shared_store(registry: ActionRegistry) -> FlowStateStore | None:
    # Flows defined against one store let the /runs endpoints see their runs.
    stores = _flow_stores(registry)
    if len(stores) == 1:
        return stores[0]
    return registry.state_store


def create_app(
    registry: ActionRegistry,
    *,
    store: FlowStateStore | None = None,
    settings: FlowSettings | None = None,
    auth_decoder: AuthDecoder | None = None,
) -> FastAPI:
    settings = settings or FlowSettings()
    if store is None:
        store = _shared_store(registry)
    if store is None:
        store = create_state_store(settings)
    decode = auth_decoder or decode_credential

    app = FastAPI(
        title="Durable Flows",
        version=__version__,
        description="Start, stream, batch and resume registered flows.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    # Expose collaborators for request handlers and tests.
    app.state.settings = settings
    app.state.registry = registry
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(FlowError)
    async def _flow_error(_request: Request, exc: FlowError) -> JSONResponse:
        logger.info("Request rejected", extra={"kind": exc.kind, "error": exc.message})
        return JSONResponse(
            status_code=status_for_kind(exc.kind),
            content=_error_body(exc.kind, exc.message, exc.details),
        )

    @app.exception_handler(RequestValidationError)
    async def _request_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content=_error_body(
                ValidationError.kind,
                "Malformed request",
                json.loads(json.dumps(exc.errors(), default=str)),
            ),
        )

    def _auth(request: Request, credential: Any) -> AuthContext | None:
        # The Authorization header wins over an envelope credential.
        header = request.headers.get("authorization")
        return decode(header if header else credential)

    def _flow(name: str, envelope_name: str | None = None) -> Flow:
        if envelope_name and envelope_name != name:
            raise ValidationError(
                f"Envelope names flow '{envelope_name}' but the path names '{name}'",
                details={"name": envelope_name},
            )
        return lookup_flow(registry, name)

    @app.get("/api/v1/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    @app.get("/api/v1/flows", response_model=list[FlowDescriptor])
    def list_flows() -> list[FlowDescriptor]:
        return [
            FlowDescriptor.model_validate(action.describe())
            for action in registry.list(ActionKind.FLOW)
        ]

    @app.post("/api/v1/flows/{name}")
    async def invoke_flow(
        name: str, envelope: FlowInvokeEnvelope, request: Request
    ) -> JSONResponse:
        flow = _flow(name, envelope.name)
        auth = _auth(request, envelope.auth)
        if envelope.wants_resume():
            if not envelope.run_id:
                raise ValidationError("runId is required to resume a flow")
            operation = await flow.resume(envelope.run_id, envelope.resume, auth=auth)
        else:
            operation = await flow.start(envelope.input, run_id=envelope.run_id, auth=auth)
        return _operation_response(operation)

    @app.post("/api/v1/flows/{name}/stream")
    async def stream_flow_endpoint(
        name: str, envelope: FlowInvokeEnvelope, request: Request
    ) -> StreamingResponse:
        flow = _flow(name, envelope.name)
        auth = _auth(request, envelope.auth)
        if envelope.wants_resume():
            if not envelope.run_id:
                raise ValidationError("runId is required to resume a flow")
            run_id = envelope.run_id
            payload = envelope.resume
            stream = FlowStream(
                lambda on_chunk: flow.resume(run_id, payload, auth=auth, on_chunk=on_chunk)
            )
        else:
            stream = stream_flow(flow, envelope.input, run_id=envelope.run_id, auth=auth)

        # Pull the first frame before responding so rejections still map to a status code.
        frames = aiter(stream)
        first = await anext(frames)

        async def body() -> AsyncIterator[str]:
            yield _frame(first)
            async for item in frames:
                yield _frame(item)

        return StreamingResponse(
            body(),
            media_type="application/x-ndjson",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.post("/api/v1/flows/{name}/batch", response_model=BatchResponse)
    async def batch_flow(name: str, req: BatchRequest, request: Request) -> BatchResponse:
        flow = _flow(name)
        auth = _auth(request, req.auth)
        operations = await run_flow_batch(flow, req.inputs, auth=auth)
        return BatchResponse(results=[op.to_wire() for op in operations])

    @app.get("/api/v1/runs")
    async def list_runs(
        flow_name: str | None = Query(default=None, alias="flowName"),
        status: FlowStatus | None = Query(default=None),
        page_token: str | None = Query(default=None, alias="pageToken"),
        page_size: int = Query(default=DEFAULT_PAGE_SIZE, alias="pageSize", gt=0, le=500),
    ) -> dict[str, Any]:
        page = await store.list(
            FlowStateFilter(flow_name=flow_name, status=status),
            page_token=page_token,
            page_size=page_size,
        )
        return page.model_dump(mode="json", by_alias=True)

    async def _find_run(run_id: str) -> tuple[FlowStateStore, FlowState]:
        # Flows with stores of their own keep runs the app store never sees.
        candidates = [store, *(s for s in _flow_stores(registry) if s is not store)]
        for candidate in candidates:
            state = await candidate.load(run_id)
            if state is not None:
                return candidate, state
        raise NotFoundError(f"Run '{run_id}' not found", details={"run_id": run_id})

    @app.get("/api/v1/runs/{run_id}")
    async def get_run(run_id: str) -> dict[str, Any]:
        _store, state = await _find_run(run_id)
        return Operation.from_state(state).to_wire()

    @app.post("/api/v1/runs/{run_id}/resume")
    async def resume_run(run_id: str, req: ResumeRequest, request: Request) -> JSONResponse:
        auth = _auth(request, req.auth)
        found, _state = await _find_run(run_id)
        operation = await resume_flow(registry, found, run_id, req.resume, auth=auth)
        return _operation_response(operation)

    return app
