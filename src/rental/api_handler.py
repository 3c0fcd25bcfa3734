from __future__ import annotations

from typing import Any

from aws_lambda_powertools import Logger
from mangum import Mangum
from mangum.types import LambdaContext

from rental.api import app

logger = Logger()
handler = Mangum(app, lifespan="off")


def _fill_http_context(event: dict[str, Any]) -> dict[str, Any]:
    """Add the HTTP API v2 request context keys Mangum reads unconditionally.

    Gateway test invocations and ``sam local`` events can leave them out.
    """
    request_context = event.setdefault("requestContext", {})
    http_ctx = request_context.setdefault("http", {})
    http_ctx.setdefault("method", event.get("routeKey", "GET /").split(" ", 1)[0])
    http_ctx.setdefault("path", event.get("rawPath", "/"))
    http_ctx.setdefault("protocol", "HTTP/1.1")
    http_ctx.setdefault("sourceIp", "127.0.0.1")
    http_ctx.setdefault("userAgent", "")
    request_context.setdefault("stage", "$default")
    return request_context


def lambda_handler(event: dict[str, Any], context: LambdaContext) -> Any:
    if isinstance(event, dict) and event.get("version") == "2.0":
        request_context = _fill_http_context(event)
        logger.append_keys(route=event.get("routeKey"), request_id=request_context.get("requestId"))
    return handler(event, context)
