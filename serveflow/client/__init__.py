"""Queue service client."""

from serveflow.client.client import Client
from serveflow.client.http import HttpClient, RetryConfig

__all__ = ["Client", "HttpClient", "RetryConfig"]
