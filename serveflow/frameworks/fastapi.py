"""
FastAPI / Starlette adapter.

Usage:
    from fastapi import FastAPI
    from serveflow.frameworks.fastapi import serve

    app = FastAPI()

    async def process_order(context):
        await context.run("charge", charge_card)

    app.add_api_route("/api/workflow", serve(process_order), methods=["POST"])
"""

from typing import Any, Awaitable, Callable

import httpx
from starlette.requests import Request
from starlette.responses import Response

from serveflow.engine.serve import RouteFunction
from serveflow.engine.serve import serve as serve_base


async def to_httpx_request(request: Request) -> httpx.Request:
    """Build the framework-neutral request the driver works with."""
    body = await request.body()
    return httpx.Request(
        method=request.method,
        url=str(request.url),
        headers=request.headers.raw,
        content=body,
    )


def to_starlette_response(response: httpx.Response) -> Response:
    return Response(
        content=response.content,
        status_code=response.status_code,
        headers=dict(response.headers),
    )


def serve(route_function: RouteFunction, **options: Any) -> Callable[[Request], Awaitable[Response]]:
    """
    Serve a route function as a FastAPI endpoint.

    Takes the same options as ``serveflow.serve``.
    """
    handler = serve_base(route_function, **options)

    async def endpoint(request: Request) -> Response:
        response = await handler(await to_httpx_request(request))
        return to_starlette_response(response)

    return endpoint
