"""Shared fixtures: an in-memory queue service and a clean configuration."""

import base64
import json
from typing import Any, Dict, List, Optional

import httpx
import pytest

from serveflow.client import Client, RetryConfig
from serveflow.config import reset_config
from serveflow.context import WorkflowContext
from serveflow.core.steps import InitialStep, Step

WORKFLOW_ENDPOINT = "https://example.com/api/workflow"
QUEUE_URL = "https://queue.test"
QUEUE_TOKEN = "test-token"


class FakeQueue:
    """Records requests sent to the queue service and answers them."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.responses: List[httpx.Response] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            return self.responses.pop(0)
        if request.method == "DELETE":
            return httpx.Response(200)
        if request.url.path.endswith("/v2/batch"):
            messages = json.loads(request.content)
            return httpx.Response(200, json=[{"messageId": f"msg_{i}"} for i in range(len(messages))])
        return httpx.Response(200, json={"messageId": "msg_publish"})

    def client(self, retry: Optional[RetryConfig] = None) -> Client:
        return Client(
            token=QUEUE_TOKEN,
            base_url=QUEUE_URL,
            retry=retry or RetryConfig.disabled(),
            transport=httpx.MockTransport(self.handler),
        )

    def batches(self) -> List[List[Dict[str, Any]]]:
        """Bodies of all batch requests, decoded."""
        return [
            json.loads(request.content)
            for request in self.requests
            if request.url.path.endswith("/v2/batch")
        ]

    def published_steps(self) -> List[Dict[str, Any]]:
        """Step bodies of all batch messages, decoded."""
        return [json.loads(message["body"]) for batch in self.batches() for message in batch]


def encode_history(initial_payload: str, steps: List[Step]) -> str:
    """Build the body of a continuation request."""
    entries = [{"messageId": "msg_init", "body": b64(initial_payload), "callType": "step"}]
    for i, step in enumerate(steps):
        entries.append({"messageId": f"msg_{i}", "body": b64(step.to_json()), "callType": "step"})
    return json.dumps(entries)


def b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def make_context(
    client: Client,
    steps: List[Step],
    initial_payload: str = "my-payload",
    run_id: str = "wfr_test",
    headers: Optional[httpx.Headers] = None,
) -> WorkflowContext:
    """Context as built for a continuation invocation."""
    initial = InitialStep(step_id=0, step_name="init", out=initial_payload)
    return WorkflowContext(
        client=client,
        workflow_run_id=run_id,
        request_payload=initial_payload,
        raw_initial_payload=initial_payload,
        headers=headers or httpx.Headers(),
        steps=[initial, *steps],
        url=WORKFLOW_ENDPOINT,
    )


@pytest.fixture(autouse=True)
def clean_config(monkeypatch, tmp_path):
    """Isolate tests from queue credentials and config files of the machine."""
    for variable in (
        "QSTASH_URL",
        "QSTASH_TOKEN",
        "QSTASH_CURRENT_SIGNING_KEY",
        "QSTASH_NEXT_SIGNING_KEY",
        "QSTASH_REGION",
        "UPSTASH_WORKFLOW_URL",
        "US_EAST_1_QSTASH_URL",
        "US_EAST_1_QSTASH_TOKEN",
        "US_EAST_1_QSTASH_CURRENT_SIGNING_KEY",
        "US_EAST_1_QSTASH_NEXT_SIGNING_KEY",
        "EU_CENTRAL_1_QSTASH_URL",
        "EU_CENTRAL_1_QSTASH_TOKEN",
        "EU_CENTRAL_1_QSTASH_CURRENT_SIGNING_KEY",
        "EU_CENTRAL_1_QSTASH_NEXT_SIGNING_KEY",
    ):
        monkeypatch.delenv(variable, raising=False)
    monkeypatch.chdir(tmp_path)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def queue():
    return FakeQueue()
