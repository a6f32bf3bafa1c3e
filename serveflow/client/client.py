"""
Client for the queue service publish, batch and workflow run APIs.

Only the parts of the API a workflow needs are covered: publishing
messages (one at a time or in a batch) and deleting a run once it is done.
"""

import json
from typing import Any, Dict, List, Mapping, Optional, Union
from urllib.parse import quote

import httpx

from serveflow.client.http import HttpClient, RetryConfig
from serveflow.constants import DEFAULT_CONTENT_TYPE
from serveflow.core.exceptions import QueueError
from serveflow.security.regions import get_client_credentials

# Headers the queue service reads itself instead of forwarding
_UNPREFIXED_HEADERS = {"content-type"}


def prefix_headers(headers: Optional[Dict[str, str]]) -> Dict[str, str]:
    """
    Prefix headers meant for the destination with ``Upstash-Forward-``.

    Headers starting with ``Upstash-`` configure the queue service and are
    kept as they are, like ``Content-Type``.
    """
    prefixed: Dict[str, str] = {}
    for key, value in (headers or {}).items():
        lowered = key.lower()
        if lowered.startswith("upstash-") or lowered in _UNPREFIXED_HEADERS:
            prefixed[key] = value
        else:
            prefixed[f"Upstash-Forward-{key}"] = value
    return prefixed


def _message_headers(
    headers: Optional[Dict[str, str]] = None,
    method: Optional[str] = None,
    delay: Optional[int] = None,
    not_before: Optional[int] = None,
    content_type: Optional[str] = None,
) -> Dict[str, str]:
    processed = prefix_headers(headers)
    if content_type and not any(key.lower() == "content-type" for key in processed):
        processed["Content-Type"] = content_type
    if method:
        processed["Upstash-Method"] = method
    if delay is not None:
        processed["Upstash-Delay"] = f"{delay}s"
    if not_before is not None:
        processed["Upstash-Not-Before"] = str(not_before)
    return processed


def _encode(body: Any) -> Optional[str]:
    if body is None or isinstance(body, str):
        return body
    return json.dumps(body, separators=(",", ":"))


class Client:
    """
    Queue service client.

    Credentials default to the environment, see
    ``serveflow.security.regions.get_client_credentials``.

    Example:
        client = Client(token="...")
        message_id = await client.publish_json(
            url="https://example.com/api/workflow",
            body={"hello": "world"},
        )
    """

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        retry: Optional[RetryConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        environment: Optional[Mapping[str, str]] = None,
    ) -> None:
        credentials = get_client_credentials(
            base_url=base_url, token=token, environment=environment
        )
        self.region = credentials.region
        self.http = HttpClient(
            base_url=credentials.base_url,
            authorization=f"Bearer {credentials.token}",
            retry=retry,
            transport=transport,
        )

    async def publish(
        self,
        url: str,
        body: Union[str, bytes, None] = None,
        headers: Optional[Dict[str, str]] = None,
        method: str = "POST",
        delay: Optional[int] = None,
        not_before: Optional[int] = None,
        content_type: Optional[str] = None,
    ) -> str:
        """
        Publish a message to a destination url.

        Args:
            url: Destination
            body: Raw message body
            headers: Headers, forwarded unless they start with ``Upstash-``
            method: HTTP method the queue uses towards the destination
            delay: Seconds to wait before delivery
            not_before: Unix time before which the message is not delivered
            content_type: Content type of the body

        Returns:
            Message id
        """
        response = await self.http.request(
            path=["v2", "publish", url],
            method="POST",
            body=body,
            headers=_message_headers(headers, method, delay, not_before, content_type),
        )
        return _message_id(response)

    async def publish_json(
        self,
        url: str,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        method: str = "POST",
        delay: Optional[int] = None,
        not_before: Optional[int] = None,
    ) -> str:
        """Publish a message, serializing the body as JSON."""
        return await self.publish(
            url=url,
            body=json.dumps(body, separators=(",", ":")),
            headers=headers,
            method=method,
            delay=delay,
            not_before=not_before,
            content_type=DEFAULT_CONTENT_TYPE,
        )

    async def batch(self, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Publish several messages in one request.

        Each message is a dict with ``destination`` and optionally
        ``headers``, ``body``, ``method``, ``delay``, ``not_before`` and
        ``content_type``.

        Returns:
            One response per message, each holding the ``messageId``
        """
        if not messages:
            return []

        payload = []
        for message in messages:
            headers = _message_headers(
                message.get("headers"),
                message.get("method"),
                message.get("delay"),
                message.get("not_before"),
                message.get("content_type"),
            )
            payload.append(
                {
                    "destination": message["destination"],
                    "headers": {key.lower(): value for key, value in headers.items()},
                    "body": message.get("body"),
                }
            )

        response = await self.http.request(
            path=["v2", "batch"],
            method="POST",
            body=json.dumps(payload),
            headers={"Content-Type": DEFAULT_CONTENT_TYPE},
        )
        if response is None:
            return []
        return response if isinstance(response, list) else [response]

    async def batch_json(self, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Like ``batch``, serializing every body that is not already a string as JSON."""
        encoded = []
        for message in messages:
            encoded.append(
                {
                    **message,
                    "body": _encode(message.get("body")),
                    "content_type": message.get("content_type") or DEFAULT_CONTENT_TYPE,
                }
            )
        return await self.batch(encoded)

    async def delete_run(self, run_id: str, cancel: bool = False) -> bool:
        """
        Delete a workflow run.

        Args:
            run_id: Workflow run id
            cancel: Also cancel messages of the run that are still pending

        Returns:
            True if the run was deleted, False if it was not found
        """
        try:
            await self.http.request(
                path=["v2", "workflows", "runs", quote(run_id, safe="")],
                method="DELETE",
                query={"cancel": cancel},
                parse_response_as_json=False,
            )
        except QueueError as e:
            if e.status == 404:
                return False
            raise
        return True

    async def cancel(self, run_id: str) -> bool:
        """Cancel a workflow run, dropping its pending messages."""
        return await self.delete_run(run_id, cancel=True)

    async def aclose(self) -> None:
        await self.http.aclose()

    async def __aenter__(self) -> "Client":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()


def _message_id(response: Any) -> str:
    if isinstance(response, dict):
        return str(response.get("messageId", ""))
    if isinstance(response, list) and response and isinstance(response[0], dict):
        return str(response[0].get("messageId", ""))
    return ""
