"""
Exception classes for serveflow.

``WorkflowAbort`` is the step-boundary signal and deliberately sits outside
the ``WorkflowError`` hierarchy so that ``except WorkflowError`` blocks in
route functions never swallow it.
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from serveflow.core.steps import Step


class WorkflowError(Exception):
    """Base exception for all serveflow errors."""

    pass


class WorkflowProtocolError(WorkflowError):
    """
    The inbound request does not match what the route function expects.

    Raised for malformed step history, missing protocol headers, an
    incompatible protocol version, or a step name/type mismatch during replay.
    """

    pass


class SignatureError(WorkflowError):
    """Raised when an inbound request signature cannot be verified."""

    pass


class ConfigurationError(WorkflowError):
    """Raised when required configuration (keys, tokens) is missing."""

    pass


class QueueError(WorkflowError):
    """
    The queue service rejected a request.

    Attributes:
        status: HTTP status code returned by the queue service, if any.
    """

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class RateLimitError(QueueError):
    """The queue service answered with HTTP 429."""

    def __init__(self, message: str, reset: Optional[float] = None) -> None:
        super().__init__(message, status=429)
        self.reset = reset


class WorkflowAbort(Exception):
    """
    Ends the current invocation once a step has been handed to the queue.

    Attributes:
        step_name: Name of the step that caused the abort.
        step: The step that was published, or None for discarded
            parallel invocations.
    """

    def __init__(self, step_name: str, step: Optional["Step"] = None) -> None:
        super().__init__(f"Aborting workflow after executing step '{step_name}'.")
        self.step_name = step_name
        self.step = step
