"""Request ID tracing middleware — tags every request, log line and response."""
from __future__ import annotations

import re
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# Read by src.logging_config so every log record carries the id
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

_VALID_ID = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


def incoming_request_id(value: str | None) -> str:
    """Client-supplied id if it's safe to echo into logs and headers, else a fresh UUID4."""
    if value and _VALID_ID.match(value):
        return value
    return str(uuid.uuid4())


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Honor or generate X-Request-ID and echo it on the response."""

    async def dispatch(self, request: Request, call_next) -> Response:
        rid = incoming_request_id(request.headers.get("x-request-id"))
        token = request_id_var.set(rid)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = rid
        return response
