"""Request ID middleware.

Tags every request with an ID and echoes it back in X-Request-ID. A
caller-supplied ID is reused when it is a short token, so marking runs can
be traced across a client and this service; anything else is replaced.
"""

import re
import uuid
from collections.abc import Awaitable, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

_CALLER_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def resolve_request_id(supplied: str | None) -> str:
    """The caller's ID if it is safe to log, otherwise a fresh hex UUID."""
    if supplied and _CALLER_ID.match(supplied):
        return supplied
    return uuid.uuid4().hex


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Sets request.state.request_id; adds X-Request-ID to the response."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = resolve_request_id(request.headers.get("X-Request-ID"))
        request.state.request_id = request_id
        response: Response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response
