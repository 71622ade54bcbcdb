import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from . import config, errors
from .logging_config import trace_id_var
from .security import get_security_headers
from .services.prometheus_metrics import prometheus_metrics

logger = logging.getLogger("app")

REQUEST_ID_HEADER = "X-Request-ID"


class TracingMiddleware(BaseHTTPMiddleware):
    """Request IDs, structured request logs, request metrics and rate-limit headers"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Generate or reuse trace ID
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        token = trace_id_var.set(request_id)
        request.state.request_id = request_id

        client_ip = request.client.host if request.client else "unknown"
        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            latency_ms = round((time.time() - start_time) * 1000, 2)
            logger.error(f"Request failed: {e}", extra={
                "method": request.method,
                "path": request.url.path,
                "status": 500,
                "latency_ms": latency_ms,
                "client_ip": client_ip,
            })
            prometheus_metrics.increment_requests(500)
            raise
        finally:
            trace_id_var.reset(token)

        latency_ms = round((time.time() - start_time) * 1000, 2)
        self._log_request(request.method, request.url.path, response.status_code, latency_ms, client_ip)
        prometheus_metrics.increment_requests(response.status_code)

        response.headers[REQUEST_ID_HEADER] = request_id
        for name, value in getattr(request.state, "rate_limit_headers", {}).items():
            response.headers.setdefault(name, value)
        return response

    def _log_request(self, method: str, path: str, status: int, latency_ms: float, client_ip: str):
        if path in config.HTTP_LOG_EXCLUDE_PATHS:
            return
        if status >= 500:
            level = logging.ERROR
        elif status >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(level, "HTTP Request", extra={
            "method": method,
            "path": path,
            "status": status,
            "latency_ms": latency_ms,
            "client_ip": client_ip,
        })


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for name, value in get_security_headers().items():
            response.headers.setdefault(name, value)
        response.headers["X-API-Version"] = config.API_VERSION
        return response


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests whose declared Content-Length exceeds MAX_REQUEST_BYTES"""

    async def dispatch(self, request: Request, call_next):
        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > config.MAX_REQUEST_BYTES:
            return errors.build_error_response(
                errors.PAYLOAD_TOO_LARGE,
                f"Payload too large (max {config.MAX_REQUEST_BYTES} bytes)",
                request_id=getattr(request.state, "request_id", None),
            )
        return await call_next(request)
