"""
FastAPI middleware for request logging and tracing.
"""

import time
from typing import Callable

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.logging import (
    performance_event_logger,
    app_logger,
    generate_request_id,
    get_client_ip
)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for request/response logging and performance monitoring."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = generate_request_id()
        request.state.request_id = request_id

        client_ip = get_client_ip(request)
        method = request.method
        path = request.url.path

        start_time = time.time()

        app_logger.debug(
            f"Request started: {method} {path}",
            extra={
                "event_type": "request_start",
                "request_id": request_id,
                "method": method,
                "endpoint": path,
                "client_ip": client_ip,
                "user_agent": request.headers.get("user-agent", "unknown"),
            }
        )

        try:
            response = await call_next(request)
        except Exception:
            app_logger.exception(
                f"Unhandled error: {method} {path}",
                extra={
                    "event_type": "request_error",
                    "request_id": request_id,
                    "response_time": time.time() - start_time,
                    "client_ip": client_ip,
                }
            )
            raise

        performance_event_logger.log_request(
            method=method,
            endpoint=path,
            status_code=response.status_code,
            response_time=time.time() - start_time,
            client_ip=client_ip,
            request_id=request_id
        )

        response.headers["X-Request-ID"] = request_id
        return response


def setup_middleware(app: FastAPI):
    """Setup all middleware for the application."""
    app.add_middleware(RequestLoggingMiddleware)
    app_logger.info("All middleware configured successfully")
