"""
HTTP requester for the queue service API.

Requests are retried with exponential backoff on network errors, rate
limiting (429) and server errors. Other client errors are raised at once.
"""

import asyncio
import math
import random
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
from loguru import logger

from serveflow.core.exceptions import QueueError, RateLimitError

RATELIMIT_STATUS = 429


def compute_backoff(retry_count: int) -> float:
    """Backoff in milliseconds before retry number ``retry_count``."""
    return math.exp(retry_count) * 50


def compute_ratelimit_backoff(last_backoff: float) -> float:
    """Backoff in milliseconds after a rate limited response."""
    return max(last_backoff, random.random() * 4000) + 1000


@dataclass
class RetryConfig:
    """
    Retry behaviour of the requester.

    Attributes:
        retries: Retries after the first attempt, 0 disables retrying
        backoff: Milliseconds to wait before a retry, given the retry count
        ratelimit_backoff: Milliseconds to wait after a 429, given the last backoff
    """

    retries: int = 5
    backoff: Callable[[int], float] = field(default=compute_backoff)
    ratelimit_backoff: Callable[[float], float] = field(default=compute_ratelimit_backoff)

    @classmethod
    def disabled(cls) -> "RetryConfig":
        return cls(retries=0, backoff=lambda _: 0, ratelimit_backoff=lambda _: 0)


class HttpClient:
    """
    Async requester bound to a base url and an authorization header.

    Args:
        base_url: Queue service url, e.g. "https://qstash.upstash.io"
        authorization: Value of the Authorization header
        retry: Retry configuration, defaults to five retries
        timeout: Request timeout in seconds
        transport: Optional httpx transport, used by tests
    """

    def __init__(
        self,
        base_url: str,
        authorization: str,
        retry: Optional[RetryConfig] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.authorization = authorization
        self.retry = retry or RetryConfig()
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def request(
        self,
        path: List[str],
        method: str = "POST",
        body: Union[str, bytes, None] = None,
        headers: Optional[Dict[str, str]] = None,
        query: Optional[Dict[str, Any]] = None,
        parse_response_as_json: bool = True,
    ) -> Any:
        """
        Send a request, retrying as configured.

        Args:
            path: Url path segments, joined with "/" after the base url
            method: HTTP method
            body: Request body
            headers: Request headers
            query: Query parameters, None values are dropped
            parse_response_as_json: Return the decoded JSON body, else None

        Raises:
            RateLimitError: If still rate limited after all retries
            QueueError: On any other non-2xx response
        """
        url = "/".join([self.base_url, *path])
        request_headers = {"Authorization": self.authorization, **(headers or {})}
        params = {
            key: str(value).lower() if isinstance(value, bool) else str(value)
            for key, value in (query or {}).items()
            if value is not None
        }

        response = await self._request_with_backoff(method, url, body, request_headers, params)

        if not parse_response_as_json or not response.content:
            return None
        return response.json()

    async def _request_with_backoff(
        self,
        method: str,
        url: str,
        body: Union[str, bytes, None],
        headers: Dict[str, str],
        params: Dict[str, str],
    ) -> httpx.Response:
        ratelimit_backoff = 0.0
        attempt = 0
        while True:
            try:
                response = await self._client.request(
                    method, url, content=body, headers=headers, params=params
                )
                self._check_response(response)
                return response
            except (httpx.TransportError, QueueError) as error:
                retryable = not isinstance(error, QueueError) or _is_retryable(error)
                if not retryable or attempt >= self.retry.retries:
                    raise

                if isinstance(error, RateLimitError):
                    ratelimit_backoff = self.retry.ratelimit_backoff(ratelimit_backoff)
                    delay_ms = ratelimit_backoff
                    logger.warning(
                        f"Queue rate limit exceeded. Retrying after {delay_ms:.0f} milliseconds."
                    )
                else:
                    delay_ms = self.retry.backoff(attempt)
                    logger.debug(f"Request to {url} failed ({error}), retrying in {delay_ms:.0f}ms")

                await asyncio.sleep(delay_ms / 1000)
                attempt += 1

    @staticmethod
    def _check_response(response: httpx.Response) -> None:
        if response.status_code == RATELIMIT_STATUS:
            reset = response.headers.get("Burst-RateLimit-Reset") or response.headers.get(
                "RateLimit-Reset"
            )
            raise RateLimitError(
                f"Rate limit exceeded: {response.text or 'status=429'}",
                reset=float(reset) if reset else None,
            )

        if not 200 <= response.status_code < 300:
            raise QueueError(
                response.text or f"Error: status={response.status_code}",
                status=response.status_code,
            )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "HttpClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()


def _is_retryable(error: QueueError) -> bool:
    return error.status is None or error.status == RATELIMIT_STATUS or error.status >= 500
