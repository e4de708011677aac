"""
Request ID Middleware

Binds a correlation ID to the logging context for the lifetime of each
request. An incoming X-Request-ID header is honored; otherwise a UUID4 is
generated. The ID is echoed back on the response.
"""

import uuid
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from almacen.core.config.constants import HEADER_REQUEST_ID
from almacen.core.logging.logger import clear_request_id, set_request_id


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(HEADER_REQUEST_ID) or str(uuid.uuid4())
        set_request_id(request_id)
        request.state.request_id = request_id
        try:
            response = await call_next(request)
            response.headers[HEADER_REQUEST_ID] = request_id
            return response
        finally:
            clear_request_id()
