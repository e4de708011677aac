"""
Error Handling Middleware
=========================

Last line of defense for exceptions that escape route handlers and the
AlmacenError exception handler. Every unhandled error is logged with the
request context and turned into a JSON 500 body; internal details are only
included when include_traceback is set (development).

Recommended order (outermost first):
    1. Error handling (this)
    2. Request ID
    3. Request metrics
    4. CORS
"""

import traceback
from collections.abc import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from almacen.core.exceptions import AlmacenError
from almacen.core.logging.logger import get_logger, get_request_id

logger = get_logger(__name__)


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Convert unhandled exceptions into consistent JSON error responses."""

    def __init__(self, app, include_traceback: bool = False):
        super().__init__(app)
        self.include_traceback = include_traceback

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as e:
            method = request.method
            path = request.url.path
            error_type = type(e).__name__

            logger.error(
                f"Unhandled exception in request: {method} {path}",
                method=method,
                path=path,
                error_type=error_type,
                error_message=str(e),
                exc_info=True,
            )

            status_code = e.status_code if isinstance(e, AlmacenError) else 500
            error_response = {
                "error": "internal_server_error" if status_code == 500 else "service_unavailable",
                "message": "An unexpected error occurred while processing your request",
                "error_type": error_type,
                "request_id": getattr(request.state, "request_id", None) or get_request_id(),
            }
            if self.include_traceback:
                error_response["traceback"] = traceback.format_exc()
                error_response["detail"] = str(e)

            return JSONResponse(status_code=status_code, content=error_response)


def add_error_handling_middleware(app, include_traceback: bool = False):
    """
    Add error handling middleware to the FastAPI application.

    Error handling should be registered LAST (outermost) so it also catches
    failures raised by the other middleware.
    """
    app.add_middleware(ErrorHandlingMiddleware, include_traceback=include_traceback)
    logger.info("Error handling middleware registered", include_traceback=include_traceback)
