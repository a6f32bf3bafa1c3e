"""
WorkflowContext - the API a route function uses to define its steps.

A new context is built from the inbound request on every invocation. It is
also exposed through a ContextVar while the route function runs, so helper
functions can reach it without explicit passing.

Usage:
    from serveflow import serve

    async def process_order(context):
        order = context.request_payload
        charge = await context.run("charge", charge_card, order["card"])
        await context.sleep("wait-for-settlement", "1h")
        receipt = await context.call("send-receipt", url="https://mail.example.com", method="POST")
        return receipt

    handler = serve(process_order)
"""

from __future__ import annotations

import asyncio
from contextvars import ContextVar, Token
from datetime import datetime, timedelta
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Coroutine,
    Dict,
    List,
    Optional,
    TypeVar,
    Union,
)

import httpx
from loguru import logger

from serveflow.core.steps import (
    LazyCallStep,
    LazyFunctionStep,
    LazySleepStep,
    LazySleepUntilStep,
    Step,
)
from serveflow.engine.executor import AutoExecutor
from serveflow.utils.duration import to_seconds, to_timestamp

if TYPE_CHECKING:
    from serveflow.client.client import Client

T = TypeVar("T")
StepFunction = Callable[..., Union[T, Awaitable[T]]]

_current_context: ContextVar[Optional["WorkflowContext"]] = ContextVar(
    "workflow_context", default=None
)


def get_context() -> "WorkflowContext":
    """
    Get the context of the invocation currently running.

    Raises:
        RuntimeError: If called outside of a route function
    """
    ctx = _current_context.get()
    if ctx is None:
        raise RuntimeError(
            "No workflow context available. "
            "This function must be called within a route function served with serve()."
        )
    return ctx


def has_context() -> bool:
    return _current_context.get() is not None


def set_context(ctx: Optional["WorkflowContext"]) -> Token:
    """Set the current workflow context. Returns a token for reset_context()."""
    return _current_context.set(ctx)


def reset_context(token: Token) -> None:
    _current_context.reset(token)


class WorkflowContext:
    """
    Per-invocation view of a workflow run.

    Attributes:
        client: Queue publisher used to submit steps
        workflow_run_id: Id of the run
        request_payload: Initial payload, parsed
        raw_initial_payload: Initial payload as received
        headers: Headers of the original request, queue headers removed
        steps: Step history, the synthetic initial step first
        url: Workflow endpoint the run publishes to
        failure_url: Endpoint called once the queue gives up on a step
        verbose: Log engine events at INFO level
    """

    def __init__(
        self,
        client: "Client",
        workflow_run_id: str,
        request_payload: Any,
        raw_initial_payload: str,
        headers: httpx.Headers,
        steps: List[Step],
        url: str,
        failure_url: Optional[str] = None,
        verbose: bool = False,
    ) -> None:
        self.client = client
        self.workflow_run_id = workflow_run_id
        self.request_payload = request_payload
        self.raw_initial_payload = raw_initial_payload
        self.headers = headers
        self.steps = steps
        self.url = url
        self.failure_url = failure_url
        self.verbose = verbose

        self.executor = AutoExecutor(self, steps)
        self._token: Optional[Token] = None

    # =========================================================================
    # Steps
    # =========================================================================

    async def run(self, step_name: str, func: StepFunction[T], *args: Any, **kwargs: Any) -> T:
        """
        Run a function as a step.

        The function runs once over the lifetime of the run. Later invocations
        get its return value from the history, so it must be JSON serializable.

        Args:
            step_name: Name of the step, unique within the run
            func: Function to execute (sync or async)
            *args: Positional arguments passed to func
            **kwargs: Keyword arguments passed to func

        Returns:
            Output of func

        Examples:
            result = await context.run("fetch-user", fetch_user, user_id)

            # Two steps in parallel, both results returned together
            a, b = await asyncio.gather(
                context.run("a", step_a),
                context.run("b", step_b),
            )
        """
        return await self.executor.add_step(LazyFunctionStep(step_name, func, args, kwargs))

    async def sleep(self, step_name: str, duration: Union[str, int, float, timedelta]) -> None:
        """
        Pause the run for a duration.

        The queue delays the next invocation, nothing is kept running.

        Args:
            step_name: Name of the step
            duration: Seconds, a timedelta, or a duration string like "10m" or "1h"
        """
        await self.executor.add_step(LazySleepStep(step_name, to_seconds(duration)))

    async def sleep_until(self, step_name: str, until: Union[datetime, int, float]) -> None:
        """
        Pause the run until a point in time.

        Args:
            step_name: Name of the step
            until: A datetime or a unix timestamp in seconds
        """
        await self.executor.add_step(LazySleepUntilStep(step_name, to_timestamp(until)))

    async def call(
        self,
        step_name: str,
        url: str,
        method: str = "GET",
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """
        Make an HTTP request through the queue service.

        The request is made by the queue and may take as long as the third
        party needs. Its response body comes back as the step output.

        Args:
            step_name: Name of the step
            url: Third-party endpoint
            method: HTTP method
            body: Request body
            headers: Request headers

        Returns:
            Response body as a string
        """
        return await self.executor.add_step(LazyCallStep(step_name, url, method, body, headers))

    async def parallel(self, *tasks: Coroutine[Any, Any, T]) -> List[T]:
        """
        Run several steps as one parallel group.

        Each awaitable must request exactly one step. Equivalent to
        ``asyncio.gather``.

        Args:
            *tasks: Step coroutines, e.g. ``context.run("a", fn)``

        Returns:
            Step outputs in the order of the tasks
        """
        return list(await asyncio.gather(*tasks))

    # =========================================================================
    # Utility methods
    # =========================================================================

    def log(self, message: str, level: str = "info", **kwargs: Any) -> None:
        """
        Log a message with the run id attached.

        Args:
            message: Log message
            level: Log level (debug, info, warning, error)
            **kwargs: Additional context to include in log
        """
        log_fn = getattr(logger.bind(run_id=self.workflow_run_id, **kwargs), level, logger.info)
        log_fn(message)

    def __repr__(self) -> str:
        return (
            f"WorkflowContext(workflow_run_id={self.workflow_run_id!r}, url={self.url!r},"
            f" steps={len(self.steps)})"
        )

    def __enter__(self) -> "WorkflowContext":
        """Context manager entry - set as current context."""
        self._token = set_context(self)
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit - restore previous context."""
        if self._token is not None:
            reset_context(self._token)
            self._token = None
