"""Flow state persistence.

The flow runtime depends only on the narrow :class:`FlowStateStore` contract:
whole-state ``save`` (last writer wins), ``load`` and a paged ``list`` used by
tooling. A run identifier is expected to have at most one active executor, so
no read-modify-write locking is done across executors.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import threading
import weakref
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import ValidationError as PydanticValidationError

from durable_flows.errors import StorageError, ValidationError
from durable_flows.flows.state import FlowState, FlowStateFilter, FlowStatePage, FlowStateSummary

if TYPE_CHECKING:
    from durable_flows.config import FlowSettings

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50

_SAFE_RUN_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,199}$")


def _parse_page_token(page_token: str | None) -> int:
    if not page_token:
        return 0
    try:
        offset = int(page_token)
    except ValueError as e:
        raise ValidationError(f"Invalid page token: {page_token!r}") from e
    if offset < 0:
        raise ValidationError(f"Invalid page token: {page_token!r}")
    return offset


def _paginate(
    states: list[FlowState],
    *,
    flow_filter: FlowStateFilter | None,
    page_token: str | None,
    page_size: int,
) -> FlowStatePage:
    if page_size <= 0:
        raise ValidationError("page_size must be a positive integer")
    flow_filter = flow_filter or FlowStateFilter()
    matching = [s for s in states if flow_filter.matches(s)]
    matching.sort(key=lambda s: (s.created_at, s.run_id))

    offset = _parse_page_token(page_token)
    page = matching[offset : offset + page_size]
    next_offset = offset + len(page)
    return FlowStatePage(
        items=[FlowStateSummary.from_state(s) for s in page],
        next_page_token=str(next_offset) if next_offset < len(matching) else None,
    )


class FlowStateStore(ABC):
    """Persistence contract for flow state, keyed by run identifier."""

    @abstractmethod
    async def save(self, run_id: str, state: FlowState) -> None:
        """Persist ``state`` under ``run_id``, overwriting any previous value.

        Raises:
            StorageError: If the backend could not persist the state.
        """

    @abstractmethod
    async def load(self, run_id: str) -> FlowState | None:
        """Return the stored state, or ``None`` when the run is unknown.

        Raises:
            StorageError: If the backend could not be read.
        """

    @abstractmethod
    async def list(
        self,
        flow_filter: FlowStateFilter | None = None,
        page_token: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> FlowStatePage:
        """Return a page of state summaries ordered by creation time."""


class InMemoryFlowStateStore(FlowStateStore):
    """Reference store. States are copied on the way in and out."""

    def __init__(self) -> None:
        self._states: dict[str, FlowState] = {}

    async def save(self, run_id: str, state: FlowState) -> None:
        self._states[run_id] = state.clone()

    async def load(self, run_id: str) -> FlowState | None:
        state = self._states.get(run_id)
        return state.clone() if state is not None else None

    async def list(
        self,
        flow_filter: FlowStateFilter | None = None,
        page_token: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> FlowStatePage:
        return _paginate(
            list(self._states.values()),
            flow_filter=flow_filter,
            page_token=page_token,
            page_size=page_size,
        )

    def __len__(self) -> int:
        return len(self._states)


class FileFlowStateStore(FlowStateStore):
    """One JSON document per run identifier under ``root``.

    Writes go to a temporary sibling first and are then renamed into place, so
    a crash mid-write never leaves a truncated state file behind.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self._lock = threading.Lock()
        self._save_locks: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock] = (
            weakref.WeakKeyDictionary()
        )

    def _path_for(self, run_id: str) -> Path:
        if not _SAFE_RUN_ID.match(run_id):
            raise StorageError(
                f"Run identifier is not safe to use as a file name: {run_id!r}",
                details={"run_id": run_id},
            )
        return self.root / f"{run_id}.json"

    def _write_unlocked(self, path: Path, payload: dict[str, object]) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(
            json.dumps(payload, indent=2, ensure_ascii=False) + "\n",
            encoding="utf-8",
        )
        tmp.replace(path)

    def _read_unlocked(self, path: Path) -> FlowState | None:
        if not path.exists():
            return None
        raw = json.loads(path.read_text(encoding="utf-8"))
        return FlowState.model_validate(raw)

    def _save_sync(self, run_id: str, payload: dict[str, object]) -> None:
        path = self._path_for(run_id)
        with self._lock:
            try:
                self._write_unlocked(path, payload)
            except OSError as e:
                raise StorageError(
                    f"Failed to save state for run '{run_id}': {e}", details={"run_id": run_id}
                ) from e
        logger.debug("Flow state saved", extra={"run_id": run_id, "path": str(path)})

    def _load_sync(self, run_id: str) -> FlowState | None:
        path = self._path_for(run_id)
        with self._lock:
            try:
                return self._read_unlocked(path)
            except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
                raise StorageError(
                    f"Failed to load state for run '{run_id}': {e}", details={"run_id": run_id}
                ) from e

    def _load_all_sync(self) -> list[FlowState]:
        if not self.root.exists():
            return []
        states: list[FlowState] = []
        with self._lock:
            for path in sorted(self.root.glob("*.json")):
                try:
                    state = self._read_unlocked(path)
                except (OSError, json.JSONDecodeError, PydanticValidationError):
                    logger.warning("Skipping unreadable state file", extra={"path": str(path)})
                    continue
                if state is not None:
                    states.append(state)
        return states

    def _save_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        lock = self._save_locks.get(loop)
        if lock is None:
            lock = self._save_locks[loop] = asyncio.Lock()
        return lock

    async def save(self, run_id: str, state: FlowState) -> None:
        # Saves land on disk in the order they were issued.
        async with self._save_lock():
            try:
                payload = state.model_dump(mode="json")
            except (TypeError, ValueError) as e:
                raise StorageError(
                    f"State for run '{run_id}' is not JSON serializable: {e}",
                    details={"run_id": run_id},
                ) from e
            await asyncio.to_thread(self._save_sync, run_id, payload)

    async def load(self, run_id: str) -> FlowState | None:
        return await asyncio.to_thread(self._load_sync, run_id)

    async def list(
        self,
        flow_filter: FlowStateFilter | None = None,
        page_token: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> FlowStatePage:
        states = await asyncio.to_thread(self._load_all_sync)
        return _paginate(
            states, flow_filter=flow_filter, page_token=page_token, page_size=page_size
        )


def create_state_store(settings: FlowSettings) -> FlowStateStore:
    """Create the configured flow state store.

    Raises:
        ValueError: If the backend name is not supported.
    """
    logger.info("Creating flow state store", extra={"backend": settings.state_store})

    if settings.state_store == "memory":
        return InMemoryFlowStateStore()
    elif settings.state_store == "file":
        return FileFlowStateStore(settings.state_path)
    else:
        raise ValueError(f"Unsupported flow state store: {settings.state_store}")
