"""Error taxonomy shared by the registry, the flow runtime and the server.

Every error carries a stable ``kind`` string. The server and the CLI report
``kind`` and ``message`` verbatim, so keep both short and actionable.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from durable_flows.flows.state import ErrorInfo, Pending


class FlowError(Exception):
    """Base class for all errors raised by durable-flows."""

    kind: str = "FlowError"

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_info(self) -> ErrorInfo:
        from durable_flows.flows.state import ErrorInfo

        return ErrorInfo(kind=self.kind, message=self.message, details=self.details)


class ValidationError(FlowError):
    """Input or output did not match an action's schema."""

    kind = "ValidationError"


class DuplicateNameError(FlowError):
    """An action key or a step name was registered twice."""

    kind = "DuplicateNameError"


class NotFoundError(FlowError):
    """Unknown action/flow name or run identifier."""

    kind = "NotFoundError"


class AuthError(FlowError):
    """The flow's auth policy rejected the caller."""

    kind = "AuthError"


class AlreadyTerminalError(FlowError):
    """Resume was attempted on a run that already succeeded or failed."""

    kind = "AlreadyTerminalError"


class StorageError(FlowError):
    """The flow state store failed to save, load or list."""

    kind = "StorageError"


class IllegalTransitionError(FlowError):
    """A flow state transition broke the status state machine."""

    kind = "IllegalTransitionError"


class StepError(FlowError):
    """A memoized step raised. The failure is never cached."""

    kind = "StepError"

    def __init__(self, step: str, cause: BaseException) -> None:
        super().__init__(
            f"Step '{step}' failed: {cause}",
            details={"step": step, "type": type(cause).__name__},
        )
        self.step = step
        self.cause = cause


class InterruptionSignal(FlowError):
    """Deliberate suspension of a flow awaiting external input.

    Not a failure: the flow runtime persists the continuation and reports a
    pending Operation.
    """

    kind = "InterruptionSignal"

    def __init__(self, pending: Pending) -> None:
        super().__init__(f"Flow interrupted at '{pending.token}'", details=pending.payload)
        self.pending = pending


def error_info_from_exception(exc: BaseException) -> ErrorInfo:
    """Project any exception onto the wire error shape."""

    from durable_flows.flows.state import ErrorInfo

    if isinstance(exc, FlowError):
        return exc.to_info()
    return ErrorInfo(
        kind="InternalError",
        message=str(exc) or type(exc).__name__,
        details={"type": type(exc).__name__},
    )
