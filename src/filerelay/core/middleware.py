"""Middleware for request correlation and HTTP error logging."""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from filerelay.core.logging import object_key_context, request_id_context

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "x-request-id"


class HTTPErrorLoggingMiddleware(BaseHTTPMiddleware):
    """Tag every request with an id and log error responses.

    - 4xx responses: logged at WARN level
    - 5xx responses: logged at ERROR level

    The request body is never touched here; upload routes consume it as a stream.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request_id_context.set(request_id)
        object_key_context.set(None)

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id

        duration_ms = (time.time() - start_time) * 1000
        details = {
            "http_status": response.status_code,
            "method": request.method,
            "path": request.url.path,
            "duration_ms": duration_ms,
        }

        if 400 <= response.status_code < 500:
            logger.warning("Client error response", extra=details)
        elif response.status_code >= 500:
            logger.error("Server error response", extra=details)

        return response
