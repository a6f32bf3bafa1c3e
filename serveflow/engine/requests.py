"""
Outgoing requests made by the invocation driver.

Builds the headers every published workflow message carries and wraps the
calls made to the queue service at the edges of a run: starting it,
running the route function, cleaning up after it and relaying the result
of a third-party call back into the run.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

import httpx
from loguru import logger
from pydantic import ValidationError

from serveflow.constants import (
    DEFAULT_CONTENT_TYPE,
    INTERNAL_HEADER_PREFIXES,
    INTERNAL_HEADERS,
    WORKFLOW_CALLBACK_HEADER,
    WORKFLOW_FAILURE_HEADER,
    WORKFLOW_ID_HEADER,
    WORKFLOW_INIT_HEADER,
    WORKFLOW_PROTOCOL_VERSION,
    WORKFLOW_PROTOCOL_VERSION_HEADER,
    WORKFLOW_URL_HEADER,
)
from serveflow.core.exceptions import WorkflowAbort, WorkflowError, WorkflowProtocolError
from serveflow.core.steps import CallStep, Step, StepType
from serveflow.engine.parser import CallbackMessage, decode_base64
from serveflow.observability.logging import log_workflow_event

if TYPE_CHECKING:
    from serveflow.client.client import Client
    from serveflow.context.base import WorkflowContext


class RouteOutcome(str, Enum):
    STEP_FINISHED = "step-finished"
    WORKFLOW_FINISHED = "workflow-finished"


@dataclass
class RouteResult:
    """
    Outcome of running the route function once.

    Exactly one of ``outcome`` and ``error`` is set. ``step`` is the step
    published before the invocation stopped, if any.
    """

    outcome: Optional[RouteOutcome] = None
    error: Optional[BaseException] = None
    step: Optional[Step] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class CallResultCheck(str, Enum):
    IS_CALL_RETURN = "is-call-return"
    CALL_WILL_RETRY = "call-will-retry"
    CONTINUE_WORKFLOW = "continue-workflow"


def get_headers(
    init_header_value: str,
    workflow_run_id: str,
    workflow_url: str,
    user_headers: Optional[httpx.Headers] = None,
    step: Optional[Step] = None,
    failure_url: Optional[str] = None,
) -> Dict[str, str]:
    """
    Headers of a message published to the queue on behalf of a run.

    Headers prefixed with ``Upstash-Forward-`` are forwarded by the queue to
    the destination. For call steps the destination is the third party, so
    the workflow's own headers travel in the ``Upstash-Callback-*`` block and
    reach the workflow endpoint with the callback instead.

    Args:
        init_header_value: "true" for the message starting the run, else "false"
        workflow_run_id: Run id
        workflow_url: Workflow endpoint
        user_headers: Headers of the original request to forward
        step: Step the message carries, if any
        failure_url: Endpoint to call once the queue gives up on the message
    """
    is_call = isinstance(step, CallStep) and bool(step.call_url)

    headers: Dict[str, str] = {
        WORKFLOW_INIT_HEADER: init_header_value,
        WORKFLOW_ID_HEADER: workflow_run_id,
        WORKFLOW_URL_HEADER: workflow_url,
        f"Upstash-Forward-{WORKFLOW_PROTOCOL_VERSION_HEADER}": WORKFLOW_PROTOCOL_VERSION,
    }

    if failure_url:
        if not is_call:
            headers[f"Upstash-Failure-Callback-Forward-{WORKFLOW_FAILURE_HEADER}"] = "true"
        headers["Upstash-Failure-Callback"] = failure_url

    if user_headers:
        prefix = "Upstash-Callback-Forward-" if is_call else "Upstash-Forward-"
        for key, value in user_headers.items():
            headers[f"{prefix}{key}"] = value

    if isinstance(step, CallStep) and is_call:
        for key, value in step.call_headers.items():
            headers[f"Upstash-Forward-{key}"] = value

        content_type = _get_header(step.call_headers, "Content-Type") or DEFAULT_CONTENT_TYPE
        headers.update(
            {
                "Upstash-Callback": workflow_url,
                "Upstash-Callback-Workflow-RunId": workflow_run_id,
                "Upstash-Callback-Workflow-CallType": "fromCallback",
                "Upstash-Callback-Workflow-Init": "false",
                "Upstash-Callback-Workflow-Url": workflow_url,
                f"Upstash-Callback-Forward-{WORKFLOW_CALLBACK_HEADER}": "true",
                "Upstash-Callback-Forward-Upstash-Workflow-StepId": str(step.step_id),
                "Upstash-Callback-Forward-Upstash-Workflow-StepName": step.step_name,
                "Upstash-Callback-Forward-Upstash-Workflow-StepType": step.step_type.value,
                "Upstash-Callback-Forward-Upstash-Workflow-Concurrent": str(step.concurrent),
                "Upstash-Callback-Forward-Upstash-Workflow-ContentType": content_type,
                "Upstash-Workflow-CallType": "toCallback",
            }
        )

    return headers


def _get_header(headers: Dict[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name.lower():
            return value
    return None


def recreate_user_headers(headers: httpx.Headers) -> httpx.Headers:
    """Strip queue and platform headers, keeping what the caller sent."""
    kept = []
    for key, value in headers.multi_items():
        lowered = key.lower()
        if lowered.startswith(INTERNAL_HEADER_PREFIXES) or lowered in INTERNAL_HEADERS:
            continue
        kept.append((key, value))
    return httpx.Headers(kept)


async def trigger_first_invocation(context: "WorkflowContext") -> None:
    """Publish the initial payload to the workflow endpoint, starting the run."""
    headers = get_headers(
        "true",
        context.workflow_run_id,
        context.url,
        context.headers,
        failure_url=context.failure_url,
    )
    log_workflow_event(
        "SUBMIT_FIRST_INVOCATION",
        "Publishing initial payload",
        run_id=context.workflow_run_id,
        verbose=context.verbose,
        url=context.url,
    )
    await context.client.publish(
        url=context.url,
        body=context.raw_initial_payload,
        headers=headers,
        method="POST",
    )


async def trigger_route_function(
    on_step: Callable[[], Awaitable[Any]],
    on_cleanup: Callable[[], Awaitable[Any]],
) -> RouteResult:
    """
    Run the route function and turn its ending into a ``RouteResult``.

    A ``WorkflowAbort`` means a step was published and the invocation is
    over. A normal return means the run is complete and ``on_cleanup`` runs.
    """
    try:
        await on_step()
    except WorkflowAbort as abort:
        return RouteResult(outcome=RouteOutcome.STEP_FINISHED, step=abort.step)
    except Exception as e:
        return RouteResult(error=e)

    try:
        await on_cleanup()
    except Exception as e:
        return RouteResult(error=e)
    return RouteResult(outcome=RouteOutcome.WORKFLOW_FINISHED)


async def trigger_workflow_delete(context: "WorkflowContext", cancel: bool = False) -> bool:
    """Remove the finished run from the queue service."""
    log_workflow_event(
        "SUBMIT_CLEANUP",
        "Deleting workflow run",
        run_id=context.workflow_run_id,
        verbose=context.verbose,
        cancel=cancel,
    )
    return await context.client.delete_run(context.workflow_run_id, cancel=cancel)


async def handle_third_party_call_result(
    request: httpx.Request,
    request_payload: str,
    client: "Client",
    workflow_url: str,
    failure_url: Optional[str] = None,
    verbose: bool = False,
) -> CallResultCheck:
    """
    Relay the outcome of a third-party call back into the run.

    Callbacks are recognized by the callback header. A failed call is left to
    the queue service to retry. A successful one is turned into the result
    step of the call and published to the workflow endpoint.

    Raises:
        WorkflowProtocolError: If the callback is missing step headers
    """
    if not request.headers.get(WORKFLOW_CALLBACK_HEADER):
        return CallResultCheck.CONTINUE_WORKFLOW

    try:
        callback = CallbackMessage.model_validate_json(request_payload)
    except ValidationError as e:
        raise WorkflowProtocolError(f"Unable to parse callback message: {e}") from e

    if not 200 <= callback.status < 300:
        logger.bind(event_type="SUBMIT_THIRD_PARTY_RESULT").warning(
            f"Third party call returned status {callback.status}, the queue will retry the call"
        )
        return CallResultCheck.CALL_WILL_RETRY

    required = {
        "workflow_run_id": request.headers.get(WORKFLOW_ID_HEADER),
        "step_id": request.headers.get("Upstash-Workflow-StepId"),
        "step_name": request.headers.get("Upstash-Workflow-StepName"),
        "step_type": request.headers.get("Upstash-Workflow-StepType"),
        "concurrent": request.headers.get("Upstash-Workflow-Concurrent"),
        "content_type": request.headers.get("Upstash-Workflow-ContentType"),
    }
    missing = [name for name, value in required.items() if not value]
    if missing:
        raise WorkflowProtocolError(
            f"Missing info in callback message source header: {json.dumps(required)}"
        )

    if required["step_type"] != StepType.CALL.value:
        raise WorkflowProtocolError(
            f"Callback message received for a step of type {required['step_type']}"
        )

    try:
        step_id = int(required["step_id"])
        concurrent = int(required["concurrent"])
    except ValueError as e:
        raise WorkflowProtocolError(f"Invalid step headers in callback message: {e}") from e

    result_step = CallStep(
        step_id=step_id,
        step_name=required["step_name"],
        out=decode_base64(callback.body) if callback.body else "",
        concurrent=concurrent,
    )
    workflow_run_id = required["workflow_run_id"]

    log_workflow_event(
        "SUBMIT_THIRD_PARTY_RESULT",
        "Publishing third party call result",
        run_id=workflow_run_id,
        verbose=verbose,
        step_id=step_id,
    )

    headers = get_headers("false", workflow_run_id, workflow_url, failure_url=failure_url)
    await client.publish_json(
        url=workflow_url,
        body=result_step.to_dict(),
        headers=headers,
        method="POST",
    )
    return CallResultCheck.IS_CALL_RETURN


def raise_for_route_result(result: RouteResult) -> RouteOutcome:
    """Return the outcome of a route run, re-raising the error it carries."""
    if result.error is not None:
        raise result.error
    if result.outcome is None:
        raise WorkflowError("Route function finished without an outcome")
    return result.outcome
