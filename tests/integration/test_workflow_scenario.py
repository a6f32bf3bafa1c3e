"""
End-to-end runs driven through the handler, one request per invocation.

The queue is simulated: whatever a run publishes is turned back into the
body of the next request, the way the queue service would deliver it.
"""

import asyncio
import base64
import json

import httpx
import pytest
from conftest import WORKFLOW_ENDPOINT

from serveflow import serve


def b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


class Run:
    """Replays published messages back to the handler."""

    def __init__(self, handler, queue):
        self.handler = handler
        self.queue = queue
        self.run_id = None
        self.initial_payload = None
        self.history = []

    async def start(self, payload: str) -> httpx.Response:
        response = await self.handler(httpx.Request("POST", WORKFLOW_ENDPOINT, content=payload))
        self.run_id = response.json()["workflowRunId"]
        self.initial_payload = self.queue.requests[-1].content.decode("utf-8")
        return response

    def request(self, extra_bodies=()) -> httpx.Request:
        entries = [{"messageId": "msg_init", "body": b64(self.initial_payload), "callType": "step"}]
        for i, body in enumerate([*self.history, *extra_bodies]):
            entries.append({"messageId": f"msg_{i}", "body": b64(body), "callType": "step"})
        return httpx.Request(
            "POST",
            WORKFLOW_ENDPOINT,
            headers={"Upstash-Workflow-Sdk-Version": "1", "Upstash-Workflow-RunId": self.run_id},
            content=json.dumps(entries),
        )

    def last_batch(self):
        return json.loads(self.queue.requests[-1].content)

    async def deliver(self, body: str) -> httpx.Response:
        """Deliver one published message, recording it in the history."""
        self.history.append(body)
        return await self.handler(self.request())


class TestSequentialRun:
    @pytest.mark.asyncio
    async def test_two_steps(self, queue):
        async def route(context):
            payload = context.request_payload
            result1 = await context.run("step1", lambda: f"processed '{payload}'")
            await context.run("step2", lambda: f"processed '{result1}'")

        run = Run(serve(route, client=queue.client(), receiver=None), queue)

        response = await run.start("my-payload")
        assert response.status_code == 200
        assert run.initial_payload == "my-payload"
        assert queue.requests[0].headers["Upstash-Workflow-Init"] == "true"

        response = await run.handler(run.request())
        assert response.json() == {"workflowRunId": run.run_id}
        step1 = json.loads(run.last_batch()[0]["body"])
        assert step1 == {
            "stepId": 1,
            "stepName": "step1",
            "stepType": "Run",
            "out": "processed 'my-payload'",
            "concurrent": 1,
        }

        await run.deliver(run.last_batch()[0]["body"])
        step2 = json.loads(run.last_batch()[0]["body"])
        assert step2["stepId"] == 2
        assert step2["out"] == "processed 'processed 'my-payload''"

        response = await run.deliver(run.last_batch()[0]["body"])
        assert response.status_code == 200
        delete = queue.requests[-1]
        assert delete.method == "DELETE"
        assert delete.url.path == f"/v2/workflows/runs/{run.run_id}"
        assert delete.url.params["cancel"] == "false"

    @pytest.mark.asyncio
    async def test_replay_is_idempotent(self, queue):
        executions = []

        async def route(context):
            await context.run("step1", lambda: executions.append("step1") or "done")
            await context.run("step2", lambda: executions.append("step2") or "done")

        run = Run(serve(route, client=queue.client(), receiver=None), queue)
        await run.start("{}")
        await run.handler(run.request())
        body = run.last_batch()[0]["body"]
        run.history.append(body)

        await run.handler(run.request())
        first = run.last_batch()
        await run.handler(run.request())
        second = run.last_batch()

        assert first == second
        assert executions == ["step1", "step2", "step2"]

    @pytest.mark.asyncio
    async def test_sleep(self, queue):
        async def route(context):
            await context.sleep("wait", "2m")
            await context.run("after", lambda: "woke up")

        run = Run(serve(route, client=queue.client(), receiver=None), queue)
        await run.start("{}")
        await run.handler(run.request())

        message = run.last_batch()[0]
        assert message["headers"]["upstash-delay"] == "120s"
        assert json.loads(message["body"]) == {
            "stepId": 1,
            "stepName": "wait",
            "stepType": "SleepFor",
            "sleepFor": 120,
            "concurrent": 1,
        }

        await run.deliver(message["body"])
        assert json.loads(run.last_batch()[0]["body"])["out"] == "woke up"


class TestParallelRun:
    """A parallel group of two steps, driven through every call state."""

    @pytest.mark.asyncio
    async def test_two_parallel_steps(self, queue):
        results = []

        async def route(context):
            a, b = await asyncio.gather(
                context.run("a", lambda: "result a"),
                context.run("b", lambda: "result b"),
            )
            results.append((a, b))

        run = Run(serve(route, client=queue.client(), receiver=None), queue)
        await run.start("{}")

        # First: one plan step per member
        await run.handler(run.request())
        plans = [json.loads(message["body"]) for message in run.last_batch()]
        assert [(p["stepName"], p["stepId"], p["targetStep"], p["concurrent"]) for p in plans] == [
            ("a", 0, 1, 2),
            ("b", 0, 2, 2),
        ]
        plan_bodies = [message["body"] for message in run.last_batch()]

        # Partial: each plan step gets its member executed
        await run.handler(run.request([plan_bodies[0]]))
        result_a = run.last_batch()[0]["body"]
        assert json.loads(result_a) == {
            "stepId": 1,
            "stepName": "a",
            "stepType": "Run",
            "out": "result a",
            "concurrent": 2,
        }

        await run.handler(run.request([plan_bodies[0], plan_bodies[1]]))
        result_b = run.last_batch()[0]["body"]
        assert json.loads(result_b)["out"] == "result b"

        # Discard: a result arriving while the other is still missing
        requests_before = len(queue.requests)
        response = await run.handler(run.request([plan_bodies[0], plan_bodies[1], result_a]))
        assert response.status_code == 200
        assert len(queue.requests) == requests_before

        # Last: all results recorded, the group resolves and the run ends
        run.history.extend([plan_bodies[0], plan_bodies[1], result_a, result_b])
        response = await run.handler(run.request())
        assert response.status_code == 200
        assert results == [("result a", "result b")]
        assert queue.requests[-1].method == "DELETE"


class TestFastAPIAdapter:
    @pytest.mark.asyncio
    async def test_endpoint(self, queue):
        from fastapi import FastAPI

        from serveflow.frameworks.fastapi import serve as serve_fastapi

        async def route(context):
            await context.run("step1", lambda: context.request_payload["order"])

        app = FastAPI()
        app.add_api_route(
            "/api/workflow",
            serve_fastapi(route, client=queue.client(), receiver=None),
            methods=["POST"],
        )

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="https://example.com") as client:
            first = await client.post("/api/workflow", json={"order": 42})
            assert first.status_code == 200
            run_id = first.json()["workflowRunId"]

            initial_payload = queue.requests[-1].content.decode("utf-8")
            history = [{"messageId": "msg_init", "body": b64(initial_payload), "callType": "step"}]
            second = await client.post(
                "/api/workflow",
                content=json.dumps(history),
                headers={"Upstash-Workflow-Sdk-Version": "1", "Upstash-Workflow-RunId": run_id},
            )

        assert second.status_code == 200
        assert second.json() == {"workflowRunId": run_id}
        published = json.loads(queue.batches()[0][0]["body"])
        assert published["out"] == 42
        assert queue.batches()[0][0]["destination"] == WORKFLOW_ENDPOINT
