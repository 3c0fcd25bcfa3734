from __future__ import annotations

from typing import Annotated, Any

from fastapi import Header, HTTPException, Request
from pydantic import ValidationError

from rental.models import Actor


def _authorizer_context(request: Request) -> dict[str, Any]:
    # Mangum exposes the raw API Gateway event on the ASGI scope
    event = request.scope.get("aws.event")
    if not isinstance(event, dict):
        return {}
    authorizer = event.get("requestContext", {}).get("authorizer") or {}
    ctx = authorizer.get("lambda") or {}
    return ctx if isinstance(ctx, dict) else {}


def get_actor(
    request: Request,
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_role: Annotated[str | None, Header()] = None,
) -> Actor:
    """Resolve the calling principal.

    The Lambda authorizer context wins over headers. The headers must be set
    by the gateway, never passed through from clients.
    """
    ctx = _authorizer_context(request)
    user_id = ctx.get("user_id") or x_user_id
    role = ctx.get("role") or x_user_role or "user"
    if not user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        return Actor(user_id=user_id, role=role)
    except ValidationError as exc:
        raise HTTPException(status_code=401, detail="Unknown role") from exc
