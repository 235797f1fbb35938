"""Middleware for error handling and request logging."""

import time
import uuid
from datetime import datetime, timezone
from typing import Callable
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import (
    WorkflowEngineError, GraphValidationError, NotFoundError, SessionNotFoundError,
    StorageError, TransientError, create_error_response
)
from .logging import get_logger, logging_context


logger = get_logger(__name__)


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Converts uncaught errors into structured JSON responses."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request with error handling."""
        # Generate request ID for tracing
        request_id = str(uuid.uuid4())
        start_time = time.time()

        # Scope logging context to this request
        with logging_context(request_id=request_id, method=request.method, path=request.url.path):
            try:
                # Process request
                response = await call_next(request)

                # Add request ID to response headers
                response.headers["X-Request-ID"] = request_id
                return response

            except WorkflowEngineError as e:
                # Handle known workflow runner errors
                duration = time.time() - start_time

                logger.warning(
                    f"Workflow engine error: {request.method} {request.url.path} - "
                    f"Error: {e.error_code} - Duration: {duration:.3f}s"
                )

                return JSONResponse(
                    status_code=self._get_status_code_for_error(e),
                    content=create_error_response(e),
                    headers={"X-Request-ID": request_id}
                )

            except Exception as e:
                # Handle unexpected errors
                duration = time.time() - start_time

                logger.error(
                    f"Unexpected error: {request.method} {request.url.path} - "
                    f"Error: {str(e)} - Duration: {duration:.3f}s",
                    exc_info=True
                )

                return JSONResponse(
                    status_code=500,
                    content={
                        "error": "InternalServerError",
                        "message": "An unexpected error occurred",
                        "details": {
                            "error_type": type(e).__name__,
                            "timestamp": datetime.now(timezone.utc).isoformat()
                        },
                        "request_id": request_id
                    },
                    headers={"X-Request-ID": request_id}
                )

    def _get_status_code_for_error(self, error: WorkflowEngineError) -> int:
        """Determine appropriate HTTP status code for workflow engine error."""
        if isinstance(error, GraphValidationError):
            return 400
        elif isinstance(error, (NotFoundError, SessionNotFoundError)):
            return 404
        elif isinstance(error, (StorageError, TransientError)):
            return 503
        else:
            return 500


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request with its status and duration."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Log request and response details."""
        start_time = time.time()

        # Log request start
        logger.debug(
            f"Request details: {request.method} {request.url} - "
            f"Query params: {dict(request.query_params)}"
        )

        response = await call_next(request)

        # Calculate duration
        duration = time.time() - start_time

        # Log completed response
        logger.info(
            f"Request completed: {request.method} {request.url.path} - "
            f"Status: {response.status_code} - Duration: {duration:.3f}s"
        )

        # Add timing to response headers
        response.headers["X-Response-Time"] = f"{duration:.3f}s"

        return response
