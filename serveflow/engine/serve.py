"""
Invocation driver.

``serve`` turns a route function into an HTTP handler. Each call to the
handler is one invocation of the workflow: it verifies the request, rebuilds
the step history, runs the route function until it reaches a step without a
recorded result and answers once that step has been handed to the queue.

The handler takes and returns ``httpx`` request/response objects. Framework
adapters in ``serveflow.frameworks`` translate from and to their native types.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
from loguru import logger

from serveflow.client.client import Client
from serveflow.client.http import RetryConfig
from serveflow.config import get_config, get_environment
from serveflow.constants import REGION_HEADER, SIGNATURE_HEADER, SUPPORTED_REGIONS
from serveflow.context.base import WorkflowContext
from serveflow.core.exceptions import QueueError, SignatureError, WorkflowProtocolError
from serveflow.engine.parser import (
    FailureCheck,
    FailureFunction,
    InitialPayloadParser,
    default_initial_payload_parser,
    get_payload,
    handle_failure,
    parse_request,
    validate_request,
)
from serveflow.engine.requests import (
    CallResultCheck,
    RouteOutcome,
    handle_third_party_call_result,
    raise_for_route_result,
    recreate_user_headers,
    trigger_first_invocation,
    trigger_route_function,
    trigger_workflow_delete,
)
from serveflow.observability.logging import log_workflow_event, workflow_logging_context
from serveflow.security.receiver import Receiver
from serveflow.security.regions import get_receiver_signing_keys, normalize_region


RouteFunction = Callable[[WorkflowContext], Awaitable[Any]]
Handler = Callable[[httpx.Request], Awaitable[httpx.Response]]

NO_WORKFLOW_ID = "no-workflow-id"


class FinishCondition(str, Enum):
    """How an invocation ended."""

    SUCCESS = "success"
    DUPLICATE_STEP = "duplicate-step"
    FAILURE_CALLBACK = "failure-callback"
    IS_CALL_RETURN = "is-call-return"
    CALL_WILL_RETRY = "call-will-retry"
    STEP_FINISHED = "step-finished"
    WORKFLOW_FINISHED = "workflow-finished"
    AUTH_FAIL = "auth-fail"


OnStepFinish = Callable[[str, FinishCondition], Union[httpx.Response, Awaitable[httpx.Response]]]


class _UseDefault:
    def __repr__(self) -> str:
        return "<default>"


_DEFAULT: Any = _UseDefault()


def default_on_step_finish(workflow_run_id: str, condition: FinishCondition) -> httpx.Response:
    return httpx.Response(200, json={"workflowRunId": workflow_run_id})


def error_response(error: BaseException, status_code: int) -> httpx.Response:
    return httpx.Response(
        status_code,
        json={"error": type(error).__name__, "message": str(error)},
    )


def _default_receiver() -> Optional[Receiver]:
    """
    A receiver when signing keys are configured, else None.

    In multi-region mode keys are resolved per request from the region header,
    so configured keys only serve as the fallback pair.
    """
    config = get_config()
    environment = get_environment(config)
    multi_region = normalize_region(environment.get("QSTASH_REGION")) is not None
    if not multi_region and config.current_signing_key and config.next_signing_key:
        return Receiver(config.current_signing_key, config.next_signing_key, environment=environment)
    if config.current_signing_key and config.next_signing_key:
        environment["QSTASH_CURRENT_SIGNING_KEY"] = config.current_signing_key
        environment["QSTASH_NEXT_SIGNING_KEY"] = config.next_signing_key
    if get_receiver_signing_keys(environment=environment) is not None:
        return Receiver(environment=environment)
    if multi_region and any(
        environment.get(f"{region}_QSTASH_CURRENT_SIGNING_KEY") for region in SUPPORTED_REGIONS
    ):
        return Receiver(environment=environment)
    return None


def _default_client() -> Client:
    config = get_config()
    return Client(
        token=config.qstash_token,
        base_url=config.qstash_url,
        retry=RetryConfig(retries=config.retries),
        environment=get_environment(config),
    )


def determine_workflow_url(
    request: httpx.Request, url: Optional[str] = None, base_url: Optional[str] = None
) -> str:
    """
    Url the run publishes its steps to.

    An explicit ``url`` wins. Otherwise the request url is used, with its
    origin replaced by ``base_url`` when given.
    """
    if url:
        return url
    if base_url:
        return base_url.rstrip("/") + request.url.raw_path.decode("ascii")
    return str(request.url)


def verify_request(
    body: str,
    signature: Optional[str],
    receiver: Optional[Receiver],
    region: Optional[str] = None,
) -> None:
    """
    Check that the request was sent by the queue service.

    Raises:
        SignatureError: If verification is enabled and fails
    """
    if receiver is None:
        return

    try:
        if not signature:
            raise SignatureError("`Upstash-Signature` header is not passed.")
        receiver.verify(signature=signature, body=body, region=region)
    except SignatureError as e:
        raise SignatureError(
            f"Failed to verify that the workflow request comes from the queue service: {e}\n\n"
            "If signature is missing, trigger the workflow endpoint by publishing your request"
            " to the queue service instead of calling it directly.\n\n"
            "If you want to disable verification, clear the environment variables"
            " QSTASH_CURRENT_SIGNING_KEY and QSTASH_NEXT_SIGNING_KEY."
        ) from e


def serve(
    route_function: RouteFunction,
    *,
    client: Optional[Client] = None,
    receiver: Optional[Receiver] = _DEFAULT,
    url: Optional[str] = None,
    base_url: Optional[str] = None,
    initial_payload_parser: Optional[InitialPayloadParser] = None,
    failure_function: Optional[FailureFunction] = None,
    failure_url: Optional[str] = None,
    on_step_finish: Optional[OnStepFinish] = None,
    verbose: Optional[bool] = None,
) -> Handler:
    """
    Create an HTTP handler running ``route_function`` as a workflow.

    Args:
        route_function: Async function taking a WorkflowContext
        client: Queue client, built from configuration by default
        receiver: Signature verifier. Defaults to one using the configured
            signing keys, or no verification when none are configured.
            Pass None to disable verification.
        url: Url of the endpoint, defaults to the request url
        base_url: Origin replacing the one of the request url
        initial_payload_parser: Parses the initial payload, JSON by default
        failure_function: Called when the queue gives up on a step
        failure_url: Endpoint the queue calls when it gives up on a step.
            Ignored when failure_function is set, the workflow endpoint
            handles failures itself then.
        on_step_finish: Builds the response from run id and finish condition
        verbose: Log engine events at INFO level

    Returns:
        Async handler taking an ``httpx.Request`` and returning an ``httpx.Response``

    Example:
        async def route(context):
            result = await context.run("step-1", lambda: "done")
            await context.sleep("pause", "10s")

        handler = serve(route)
        response = await handler(request)
    """
    config = get_config()
    queue_client = client or _default_client()
    verifier = _default_receiver() if receiver is _DEFAULT else receiver
    payload_parser = initial_payload_parser or default_initial_payload_parser
    finish = on_step_finish or default_on_step_finish
    is_verbose = config.verbose if verbose is None else verbose
    origin = base_url or config.workflow_url

    if verifier is None:
        logger.debug("Request signature verification is disabled")

    async def respond(workflow_run_id: str, condition: FinishCondition) -> httpx.Response:
        log_workflow_event(
            "RESPONSE_WORKFLOW" if condition == FinishCondition.STEP_FINISHED else "RESPONSE_DEFAULT",
            f"Invocation finished: {condition.value}",
            run_id=workflow_run_id,
            verbose=is_verbose,
        )
        response = finish(workflow_run_id, condition)
        if asyncio.iscoroutine(response):
            response = await response
        return response

    async def handle(request: httpx.Request) -> httpx.Response:
        workflow_url = determine_workflow_url(request, url, origin)
        workflow_failure_url = workflow_url if failure_function else failure_url
        request_payload = await get_payload(request)

        verify_request(
            request_payload,
            request.headers.get(SIGNATURE_HEADER),
            verifier,
            region=request.headers.get(REGION_HEADER),
        )

        is_first_invocation, workflow_run_id = validate_request(request.headers)
        log_workflow_event(
            "ENDPOINT_START",
            "Handling workflow request",
            run_id=workflow_run_id,
            verbose=is_verbose,
            first_invocation=is_first_invocation,
        )
        parsed = parse_request(request_payload, is_first_invocation)

        if parsed.is_last_duplicate:
            return await respond(NO_WORKFLOW_ID, FinishCondition.DUPLICATE_STEP)

        failure_check = await handle_failure(
            request,
            request_payload,
            queue_client,
            payload_parser,
            failure_function,
        )
        if failure_check == FailureCheck.IS_FAILURE_CALLBACK:
            return await respond(NO_WORKFLOW_ID, FinishCondition.FAILURE_CALLBACK)

        context = WorkflowContext(
            client=queue_client,
            workflow_run_id=workflow_run_id,
            request_payload=payload_parser(parsed.raw_initial_payload),
            raw_initial_payload=parsed.raw_initial_payload,
            headers=recreate_user_headers(request.headers),
            steps=parsed.steps,
            url=workflow_url,
            failure_url=workflow_failure_url,
            verbose=is_verbose,
        )
        log_workflow_event(
            "CREATE_CONTEXT",
            "Created workflow context",
            run_id=workflow_run_id,
            verbose=is_verbose,
            url=workflow_url,
            steps=len(parsed.steps),
        )

        call_check = await handle_third_party_call_result(
            request,
            request_payload,
            queue_client,
            workflow_url,
            failure_url=workflow_failure_url,
            verbose=is_verbose,
        )
        if call_check == CallResultCheck.IS_CALL_RETURN:
            return await respond(NO_WORKFLOW_ID, FinishCondition.IS_CALL_RETURN)
        if call_check == CallResultCheck.CALL_WILL_RETRY:
            return await respond(NO_WORKFLOW_ID, FinishCondition.CALL_WILL_RETRY)

        if is_first_invocation:
            await trigger_first_invocation(context)
            return await respond(workflow_run_id, FinishCondition.SUCCESS)

        async def on_step() -> None:
            with context, workflow_logging_context(workflow_run_id):
                await route_function(context)

        async def on_cleanup() -> None:
            try:
                await trigger_workflow_delete(context, cancel=False)
            except QueueError as e:
                # Cleanup is best effort, leftover messages are discarded on replay
                logger.bind(run_id=workflow_run_id, event_type="SUBMIT_CLEANUP").warning(
                    f"Failed to delete finished workflow run: {e}"
                )

        result = await trigger_route_function(on_step, on_cleanup)
        outcome = raise_for_route_result(result)
        if outcome == RouteOutcome.STEP_FINISHED:
            return await respond(workflow_run_id, FinishCondition.STEP_FINISHED)
        return await respond(workflow_run_id, FinishCondition.WORKFLOW_FINISHED)

    async def handler(request: httpx.Request) -> httpx.Response:
        try:
            return await handle(request)
        except SignatureError as e:
            logger.bind(event_type="ERROR", condition=FinishCondition.AUTH_FAIL.value).warning(str(e))
            return error_response(e, 401)
        except WorkflowProtocolError as e:
            logger.bind(event_type="ERROR").error(f"Workflow protocol error: {e}")
            return error_response(e, 400)
        except Exception as e:
            logger.bind(event_type="ERROR").exception(f"Workflow invocation failed: {e}")
            return error_response(e, 500)

    return handler
