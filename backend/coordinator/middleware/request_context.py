"""
Request context middleware.

Provides:
- Request ID injection (X-Request-ID)
- Access logging with request id, timing and client address
"""

import logging
import time
import uuid
from typing import Callable, Optional, Set

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

access_logger = logging.getLogger("coordinator.access")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Attach a request id to the request state and the response headers."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log all requests with context."""

    def __init__(self, app, exclude_paths: Optional[Set[str]] = None):
        super().__init__(app)
        self.exclude_paths = exclude_paths or {"/health", "/health/live", "/metrics"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.exclude_paths:
            return await call_next(request)

        request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
        start_time = time.perf_counter()
        status_code = 500
        error = None

        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception as e:
            error = str(e)
            raise
        finally:
            duration = time.perf_counter() - start_time

            client_ip = request.headers.get("X-Forwarded-For", "")
            if client_ip:
                client_ip = client_ip.split(",")[0].strip()
            elif request.client:
                client_ip = request.client.host
            else:
                client_ip = "unknown"

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "query": str(request.query_params) if request.query_params else None,
                "status_code": status_code,
                "duration_ms": round(duration * 1000, 2),
                "client_ip": client_ip,
            }
            workspace_id = request.path_params.get("workspace_id")
            if workspace_id:
                log_data["workspace_id"] = workspace_id
            if error:
                log_data["error"] = error

            if status_code >= 500:
                access_logger.error("Request failed", extra=log_data)
            elif status_code >= 400:
                access_logger.warning("Request client error", extra=log_data)
            else:
                access_logger.info("Request completed", extra=log_data)

        return response
