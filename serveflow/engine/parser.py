"""
Inbound request parsing.

A continuation request carries the whole step history of the run as a JSON
array of envelopes::

    [{"messageId": "msg_1", "body": "<base64>", "callType": "step"}, ...]

The first envelope holds the initial payload the run was started with. The
remaining ones hold steps in their JSON wire form. Envelopes belonging to the
third-party call sub-protocol (``toCallback``/``fromCallback``) are ignored.
"""

from __future__ import annotations

import base64
import binascii
import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Literal, Optional, Set, Tuple

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from serveflow.constants import (
    NO_CONCURRENCY,
    WORKFLOW_FAILURE_HEADER,
    WORKFLOW_ID_HEADER,
    WORKFLOW_PROTOCOL_VERSION,
    WORKFLOW_PROTOCOL_VERSION_HEADER,
)
from serveflow.core.exceptions import WorkflowError, WorkflowProtocolError
from serveflow.core.steps import InitialStep, Step

if TYPE_CHECKING:
    from serveflow.client.client import Client
    from serveflow.context.base import WorkflowContext

InitialPayloadParser = Callable[[str], Any]
FailureFunction = Callable[["WorkflowContext", int, str, Dict[str, List[str]]], Awaitable[Any]]


class RawStep(BaseModel):
    """Envelope of one history entry as delivered by the queue service."""

    model_config = ConfigDict(populate_by_name=True)

    message_id: Optional[str] = Field(default=None, alias="messageId")
    body: str
    call_type: Literal["step", "toCallback", "fromCallback"] = Field(
        default="step", alias="callType"
    )


class CallbackMessage(BaseModel):
    """Body the queue service posts back once a third-party call has been made."""

    status: int
    body: str = ""
    header: Dict[str, List[str]] = Field(default_factory=dict)


class FailurePayload(BaseModel):
    """Body of a failure callback, sent once the queue gives up on a run."""

    model_config = ConfigDict(populate_by_name=True)

    status: int
    header: Dict[str, List[str]] = Field(default_factory=dict)
    body: str = ""
    url: str
    source_header: Dict[str, List[str]] = Field(default_factory=dict, alias="sourceHeader")
    source_body: str = Field(alias="sourceBody")
    workflow_run_id: str = Field(alias="workflowRunId")


_RAW_STEPS = TypeAdapter(List[RawStep])


@dataclass
class ParsedRequest:
    """Result of parsing an inbound request body."""

    raw_initial_payload: str
    steps: List[Step] = field(default_factory=list)
    is_last_duplicate: bool = False


class FailureCheck(str, Enum):
    IS_FAILURE_CALLBACK = "is-failure-callback"
    NOT_FAILURE_CALLBACK = "not-failure-callback"


def decode_base64(encoded: str) -> str:
    """Decode a base64 string into text."""
    try:
        return base64.b64decode(encoded, validate=False).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise WorkflowProtocolError(f"Unable to decode base64 body: {e}") from e


def default_initial_payload_parser(raw_payload: str) -> Any:
    """Parse the initial payload as JSON, falling back to the raw string."""
    if not raw_payload:
        return None
    try:
        return json.loads(raw_payload)
    except json.JSONDecodeError:
        return raw_payload


async def get_payload(request: httpx.Request) -> str:
    """Read the request body as text. Returns an empty string for no body."""
    content = await request.aread()
    return content.decode("utf-8") if content else ""


def validate_request(headers: httpx.Headers) -> Tuple[bool, str]:
    """
    Check protocol headers and work out the run id.

    The first invocation of a run is the only one without a protocol
    version header. It gets a freshly generated run id.

    Returns:
        Tuple of (is_first_invocation, workflow_run_id)

    Raises:
        WorkflowProtocolError: On a protocol version mismatch or a
            continuation request without run id
    """
    version = headers.get(WORKFLOW_PROTOCOL_VERSION_HEADER)
    is_first_invocation = not version

    if not is_first_invocation and version != WORKFLOW_PROTOCOL_VERSION:
        raise WorkflowProtocolError(
            f"Incompatible workflow sdk protocol version. Expected {WORKFLOW_PROTOCOL_VERSION},"
            f" got {version} from the request."
        )

    if is_first_invocation:
        workflow_run_id = f"wfr_{uuid.uuid4().hex}"
    else:
        workflow_run_id = headers.get(WORKFLOW_ID_HEADER) or ""

    if not workflow_run_id:
        raise WorkflowProtocolError("Couldn't get workflow id from header")

    return is_first_invocation, workflow_run_id


def _decode_steps(request_payload: str) -> Tuple[str, List[Step]]:
    try:
        raw_steps = _RAW_STEPS.validate_json(request_payload)
    except ValidationError as e:
        raise WorkflowProtocolError(f"Unable to parse step history from the request: {e}") from e

    raw_steps = [raw for raw in raw_steps if raw.call_type == "step"]
    if not raw_steps:
        raise WorkflowProtocolError("Step history in the request is empty")

    initial, *others = raw_steps
    raw_initial_payload = decode_base64(initial.body)

    steps: List[Step] = []
    for raw in others:
        try:
            data = json.loads(decode_base64(raw.body))
        except json.JSONDecodeError as e:
            raise WorkflowProtocolError(
                f"Step in message {raw.message_id} is not valid JSON: {e}"
            ) from e
        steps.append(Step.from_dict(data))

    return raw_initial_payload, steps


def _dedup_key(step: Step) -> Tuple[bool, int]:
    if step.is_plan_step:
        return True, step.target_step or 0
    return False, step.step_id


def deduplicate_steps(steps: List[Step]) -> Tuple[List[Step], bool]:
    """
    Drop redelivered steps.

    The first result step per ``step_id`` and the first plan step per
    ``target_step`` are kept, later ones are dropped wherever they appear.
    Returns the kept steps and whether the final input step repeats an
    earlier one.
    """
    kept: List[Step] = []
    seen: Set[Tuple[bool, int]] = set()

    for step in steps:
        key = _dedup_key(step)
        if key in seen:
            continue
        seen.add(key)
        kept.append(step)

    is_last_duplicate = False
    if len(steps) >= 2:
        last = steps[-1]
        is_last_duplicate = any(
            step.step_id == last.step_id and step.target_step == last.target_step
            for step in steps[:-1]
        )

    return kept, is_last_duplicate


def parse_request(request_payload: Optional[str], is_first_invocation: bool) -> ParsedRequest:
    """
    Turn the request body into the initial payload and the step history.

    On the first invocation the body is the initial payload itself. Otherwise
    the history is decoded and a synthetic initial step is put in front of it.

    Raises:
        WorkflowProtocolError: If a continuation request has no usable history
    """
    if is_first_invocation:
        return ParsedRequest(raw_initial_payload=request_payload or "")

    if not request_payload:
        raise WorkflowProtocolError("Only first call can have an empty body")

    raw_initial_payload, decoded = _decode_steps(request_payload)
    initial_step = InitialStep(
        step_id=0,
        step_name="init",
        out=raw_initial_payload,
        concurrent=NO_CONCURRENCY,
    )
    steps, is_last_duplicate = deduplicate_steps(decoded)

    if is_last_duplicate:
        last = decoded[-1]
        logger.bind(event_type="RESPONSE_DEFAULT").warning(
            f"The step '{last.step_name}' with id '{last.step_id}' has run twice during "
            "workflow execution. Rest of the workflow will continue running as usual."
        )

    return ParsedRequest(
        raw_initial_payload=raw_initial_payload,
        steps=[initial_step, *steps],
        is_last_duplicate=is_last_duplicate,
    )


def flatten_headers(headers: Dict[str, List[str]]) -> httpx.Headers:
    """Build headers from the multi-value form used in callback bodies."""
    return httpx.Headers([(key, value) for key, values in headers.items() for value in values])


async def handle_failure(
    request: httpx.Request,
    request_payload: str,
    client: "Client",
    initial_payload_parser: InitialPayloadParser,
    failure_function: Optional[FailureFunction] = None,
) -> FailureCheck:
    """
    Call the failure function if the request is a failure callback.

    The queue service calls the workflow endpoint with the failure header
    once it has exhausted retries for a step. The body carries the failed
    request's history so a context can be rebuilt for the failure function.

    Raises:
        WorkflowError: If the request is a failure callback and no failure
            function was configured
    """
    if request.headers.get(WORKFLOW_FAILURE_HEADER) != "true":
        return FailureCheck.NOT_FAILURE_CALLBACK

    if failure_function is None:
        raise WorkflowError(
            "Workflow endpoint is called to handle a failure,"
            " but a failure_function is not provided in serve options."
            " Either provide a failure_url or a failure_function."
        )

    from serveflow.context.base import WorkflowContext
    from serveflow.engine.requests import recreate_user_headers

    try:
        payload = FailurePayload.model_validate_json(request_payload)
    except ValidationError as e:
        raise WorkflowProtocolError(f"Unable to parse failure callback: {e}") from e

    decoded_body = decode_base64(payload.body) if payload.body else "{}"
    try:
        message = json.loads(decoded_body).get("message", "")
    except (json.JSONDecodeError, AttributeError):
        message = decoded_body

    parsed = parse_request(decode_base64(payload.source_body), is_first_invocation=False)

    context = WorkflowContext(
        client=client,
        workflow_run_id=payload.workflow_run_id,
        request_payload=initial_payload_parser(parsed.raw_initial_payload),
        raw_initial_payload=parsed.raw_initial_payload,
        headers=recreate_user_headers(flatten_headers(payload.source_header)),
        steps=parsed.steps,
        url=payload.url,
        failure_url=payload.url,
    )

    logger.bind(run_id=payload.workflow_run_id, event_type="RESPONSE_DEFAULT").warning(
        f"Workflow run failed with status {payload.status}: {message}"
    )
    await failure_function(context, payload.status, message, payload.header)
    return FailureCheck.IS_FAILURE_CALLBACK
