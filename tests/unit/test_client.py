"""Tests for the queue service client and its retrying requester."""

import json

import httpx
import pytest
from conftest import QUEUE_URL

from serveflow.client import Client, RetryConfig
from serveflow.client.client import prefix_headers
from serveflow.client.http import compute_backoff, compute_ratelimit_backoff
from serveflow.core.exceptions import QueueError, RateLimitError


def no_wait(retries=2):
    return RetryConfig(retries=retries, backoff=lambda _: 0, ratelimit_backoff=lambda _: 0)


class TestPrefixHeaders:
    def test_forwarded_headers(self):
        assert prefix_headers({"Authorization": "Bearer x", "X-Custom": "1"}) == {
            "Upstash-Forward-Authorization": "Bearer x",
            "Upstash-Forward-X-Custom": "1",
        }

    def test_queue_headers_are_kept(self):
        headers = {"Upstash-Delay": "5s", "content-type": "text/plain"}
        assert prefix_headers(headers) == headers

    def test_none(self):
        assert prefix_headers(None) == {}


class TestPublish:
    """Tests for publishing single messages."""

    @pytest.mark.asyncio
    async def test_publish(self, queue):
        message_id = await queue.client().publish(
            url="https://example.com/hook",
            body="hello",
            headers={"X-Custom": "1"},
            delay=30,
            content_type="text/plain",
        )

        assert message_id == "msg_publish"
        request = queue.requests[0]
        assert request.url.host == "queue.test"
        assert request.url.path == "/v2/publish/https://example.com/hook"
        assert request.content == b"hello"
        assert request.headers["Authorization"] == "Bearer test-token"
        assert request.headers["Upstash-Forward-X-Custom"] == "1"
        assert request.headers["Upstash-Delay"] == "30s"
        assert request.headers["Upstash-Method"] == "POST"
        assert request.headers["Content-Type"] == "text/plain"

    @pytest.mark.asyncio
    async def test_publish_json(self, queue):
        await queue.client().publish_json(
            url="https://example.com/hook", body={"a": [1, 2]}, not_before=1700000000
        )

        request = queue.requests[0]
        assert request.content == b'{"a":[1,2]}'
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["Upstash-Not-Before"] == "1700000000"

    @pytest.mark.asyncio
    async def test_explicit_content_type_header_wins(self, queue):
        await queue.client().publish(
            url="https://example.com/hook",
            body="<a/>",
            headers={"Content-Type": "application/xml"},
            content_type="text/plain",
        )
        assert queue.requests[0].headers["Content-Type"] == "application/xml"


class TestBatch:
    @pytest.mark.asyncio
    async def test_batch(self, queue):
        responses = await queue.client().batch(
            [
                {"destination": "https://example.com/a", "body": "1", "headers": {"X-A": "a"}},
                {"destination": "https://example.com/b", "body": "2", "delay": 10},
            ]
        )

        assert responses == [{"messageId": "msg_0"}, {"messageId": "msg_1"}]
        request = queue.requests[0]
        assert request.url.path == "/v2/batch"
        assert json.loads(request.content) == [
            {
                "destination": "https://example.com/a",
                "headers": {"upstash-forward-x-a": "a"},
                "body": "1",
            },
            {
                "destination": "https://example.com/b",
                "headers": {"upstash-delay": "10s"},
                "body": "2",
            },
        ]

    @pytest.mark.asyncio
    async def test_batch_json(self, queue):
        await queue.client().batch_json(
            [
                {"destination": "https://example.com/a", "body": {"x": 1}},
                {"destination": "https://example.com/b", "body": "already encoded"},
            ]
        )

        messages = queue.batches()[0]
        assert messages[0]["body"] == '{"x":1}'
        assert messages[0]["headers"]["content-type"] == "application/json"
        assert messages[1]["body"] == "already encoded"

    @pytest.mark.asyncio
    async def test_empty_batch_sends_nothing(self, queue):
        assert await queue.client().batch([]) == []
        assert queue.requests == []


class TestDeleteRun:
    @pytest.mark.asyncio
    async def test_delete(self, queue):
        assert await queue.client().delete_run("wfr_1") is True
        request = queue.requests[0]
        assert request.method == "DELETE"
        assert request.url.params["cancel"] == "false"

    @pytest.mark.asyncio
    async def test_cancel(self, queue):
        assert await queue.client().cancel("wfr_1") is True
        assert queue.requests[0].url.params["cancel"] == "true"

    @pytest.mark.asyncio
    async def test_not_found(self, queue):
        queue.responses.append(httpx.Response(404, text="workflowRun not found"))
        assert await queue.client().delete_run("wfr_1") is False


class TestRetries:
    """Tests for which failures are retried."""

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self, queue):
        queue.responses.extend([httpx.Response(500), httpx.Response(502)])

        message_id = await queue.client(retry=no_wait()).publish(url="https://example.com/hook")

        assert message_id == "msg_publish"
        assert len(queue.requests) == 3

    @pytest.mark.asyncio
    async def test_retries_are_limited(self, queue):
        queue.responses.extend([httpx.Response(500, text="down") for _ in range(3)])

        with pytest.raises(QueueError) as exc_info:
            await queue.client(retry=no_wait()).publish(url="https://example.com/hook")

        assert exc_info.value.status == 500
        assert str(exc_info.value) == "down"
        assert len(queue.requests) == 3

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, queue):
        queue.responses.append(httpx.Response(400, text="invalid destination"))

        with pytest.raises(QueueError, match="invalid destination"):
            await queue.client(retry=no_wait()).publish(url="not-a-url")

        assert len(queue.requests) == 1

    @pytest.mark.asyncio
    async def test_rate_limit(self, queue):
        queue.responses.append(httpx.Response(429, headers={"RateLimit-Reset": "1700000000"}))

        with pytest.raises(RateLimitError) as exc_info:
            await queue.client().publish(url="https://example.com/hook")

        assert exc_info.value.status == 429
        assert exc_info.value.reset == 1700000000.0

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self, queue):
        queue.responses.append(httpx.Response(429))

        await queue.client(retry=no_wait()).publish(url="https://example.com/hook")

        assert len(queue.requests) == 2

    @pytest.mark.asyncio
    async def test_network_error_is_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"messageId": "msg_1"})

        client = Client(
            token="t", base_url=QUEUE_URL, retry=no_wait(), transport=httpx.MockTransport(handler)
        )
        assert await client.publish(url="https://example.com/hook") == "msg_1"
        assert len(attempts) == 2

    def test_backoff_grows(self):
        assert compute_backoff(0) < compute_backoff(1) < compute_backoff(2)

    def test_ratelimit_backoff_is_at_least_a_second(self):
        assert compute_ratelimit_backoff(0) >= 1000
        assert compute_ratelimit_backoff(10000) == 11000
