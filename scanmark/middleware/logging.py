"""Access logging for the marking API: one JSON line per request."""

import json
import logging
import sys
import time
import uuid
from typing import Any, Awaitable, Callable, Dict

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    stream=sys.stdout,
)

logger = logging.getLogger(__name__)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


def _request_fields(request: Request, request_id: str) -> Dict[str, Any]:
    fields: Dict[str, Any] = {
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "client_ip": request.client.host if request.client else "unknown",
    }
    # Upload size only; page images and marking schemes stay out of the logs
    if request.headers.get("content-length", "").isdigit():
        fields["upload_bytes"] = int(request.headers["content-length"])
    return fields


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log each request once it has a response (or has failed).

    Marking responses are event streams, so processing_time_ms for them is
    the time until the stream opened rather than until marking finished.
    """

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        request_id = getattr(request.state, "request_id", None) or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()
        entry = _request_fields(request, request_id)

        try:
            response = await call_next(request)
        except Exception as e:
            entry.update(
                status_code=500,
                processing_time_ms=_elapsed_ms(started),
                error=str(e),
                error_type=type(e).__name__,
            )
            logger.error(json.dumps(entry), exc_info=True)
            raise

        entry.update(status_code=response.status_code, processing_time_ms=_elapsed_ms(started))
        if response.headers.get("content-type", "").startswith("text/event-stream"):
            entry["streamed"] = True
            entry["upload_kind"] = response.headers.get("X-Upload-Kind", "unknown")

        logger.info(json.dumps(entry))
        response.headers["X-Request-ID"] = request_id
        return response
