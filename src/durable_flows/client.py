"""HTTP client for the flow server.

Used by the CLI so that commands run against a live server instead of an
in-process registry.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from typing import Any
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)


class FlowClientError(Exception):
    """A server-side rejection: ``{"error": {kind, message, details}}``."""

    def __init__(self, kind: str, message: str, details: Any = None, status_code: int = 0) -> None:
        super().__init__(f"{kind}: {message}")
        self.kind = kind
        self.message = message
        self.details = details
        self.status_code = status_code


class FlowServerClient:
    """Small wrapper around the ``/api/v1`` endpoints.

    Operation responses are returned as plain dicts, including failed
    operations; only rejections raise :class:`FlowClientError`.
    """

    def __init__(
        self,
        *,
        base_url: str,
        token: str = "",
        session: requests.Session | None = None,
        timeout: float = 30,
    ) -> None:
        if not base_url:
            raise ValueError("Flow server URL is required")

        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update(
            {"Accept": "application/json", "User-Agent": "durable-flows-cli"}
        )
        if token:
            self._session.headers["Authorization"] = f"Bearer {token}"

    @property
    def base_url(self) -> str:
        return self._base_url

    def _url(self, path: str) -> str:
        return f"{self._base_url}/api/v1/{path.lstrip('/')}"

    def _flow_url(self, name: str, suffix: str = "") -> str:
        if not name.strip():
            raise ValueError("flow name is required")
        return self._url(f"flows/{quote(name, safe='')}{suffix}")

    @staticmethod
    def _check(resp: requests.Response) -> Any:
        try:
            data = resp.json()
        except ValueError:
            resp.raise_for_status()
            raise FlowClientError(
                "InternalError", "Server returned a non-JSON response", status_code=resp.status_code
            ) from None

        # A failed Operation still carries an id; a rejection does not.
        if isinstance(data, dict) and "id" not in data and isinstance(data.get("error"), dict):
            error = data["error"]
            logger.debug(
                "Flow server rejected request",
                extra={"status_code": resp.status_code, "kind": error.get("kind")},
            )
            raise FlowClientError(
                str(error.get("kind") or "InternalError"),
                str(error.get("message") or ""),
                error.get("details"),
                status_code=resp.status_code,
            )
        if resp.status_code >= 400 and not isinstance(data, dict):
            resp.raise_for_status()
        return data

    def health(self) -> dict[str, Any]:
        resp = self._session.get(self._url("health"), timeout=self._timeout)
        return self._check(resp)

    def list_flows(self) -> list[dict[str, Any]]:
        resp = self._session.get(self._url("flows"), timeout=self._timeout)
        return self._check(resp)

    def run(
        self, name: str, input: Any = None, *, run_id: str | None = None  # noqa: A002
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": name, "input": input}
        if run_id:
            payload["runId"] = run_id
        resp = self._session.post(self._flow_url(name), json=payload, timeout=self._timeout)
        return self._check(resp)

    def stream(
        self, name: str, input: Any = None, *, run_id: str | None = None  # noqa: A002
    ) -> Iterator[dict[str, Any]]:
        """Yield chunk frames, then the final Operation frame."""

        payload: dict[str, Any] = {"name": name, "input": input}
        if run_id:
            payload["runId"] = run_id
        with self._session.post(
            self._flow_url(name, "/stream"),
            json=payload,
            timeout=self._timeout,
            stream=True,
            headers={"Accept": "application/x-ndjson"},
        ) as resp:
            if resp.status_code >= 400:
                self._check(resp)
            for line in resp.iter_lines(decode_unicode=True):
                if line:
                    yield json.loads(line)

    def batch(self, name: str, inputs: list[Any]) -> list[dict[str, Any]]:
        resp = self._session.post(
            self._flow_url(name, "/batch"), json={"inputs": inputs}, timeout=self._timeout
        )
        return self._check(resp)["results"]

    def resume(self, run_id: str, resume: Any = None) -> dict[str, Any]:
        if not run_id.strip():
            raise ValueError("run id is required")
        resp = self._session.post(
            self._url(f"runs/{quote(run_id, safe='')}/resume"),
            json={"resume": resume},
            timeout=self._timeout,
        )
        return self._check(resp)

    def get_run(self, run_id: str) -> dict[str, Any]:
        resp = self._session.get(
            self._url(f"runs/{quote(run_id, safe='')}"), timeout=self._timeout
        )
        return self._check(resp)

    def list_runs(
        self,
        *,
        flow_name: str | None = None,
        status: str | None = None,
        page_token: str | None = None,
        page_size: int | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if flow_name:
            params["flowName"] = flow_name
        if status:
            params["status"] = status
        if page_token:
            params["pageToken"] = page_token
        if page_size:
            params["pageSize"] = page_size
        resp = self._session.get(self._url("runs"), params=params or None, timeout=self._timeout)
        return self._check(resp)
