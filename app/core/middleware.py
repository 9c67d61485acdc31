"""
Request/response logging middleware for the payout API.

Every request gets an `X-Request-ID`. Payout bodies are flat JSON objects;
the transaction id they carry (`clientUniqueId`) is logged for correlation
while destinations, callback URLs and credentials are redacted.
"""

import json
import logging
import time
from typing import Any, Callable, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.monitoring import error_monitor

REDACTED = "[REDACTED]"

# Request body fields that identify a payee or a merchant endpoint
SENSITIVE_FIELDS = {"destination", "sbp_bank", "sbpBank", "callback_url", "callbackUrl"}

SENSITIVE_HEADERS = {"token", "x-monitoring-key", "x-signature", "authorization", "cookie"}

# JSON payout calls whose bodies are logged
BODY_LOG_PREFIXES = ("/api/payout/create", "/api/payout/status", "/api/payout/cancel")


def redact_body(body: bytes) -> Optional[Dict[str, Any]]:
    """Parse a JSON object body and mask payee fields. None if not a JSON object."""
    try:
        data = json.loads(body.decode())
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    return {key: (REDACTED if key in SENSITIVE_FIELDS else value) for key, value in data.items()}


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    return {k: (REDACTED if k.lower() in SENSITIVE_HEADERS else v) for k, v in headers.items()}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs one line per request and one per response, tagged with a request id."""

    def __init__(self, app, logger_name: str = "payout_router.requests"):
        super().__init__(app)
        self.logger = logging.getLogger(logger_name)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        request_id = f"req_{int(start_time * 1000)}"
        request.state.request_id = request_id

        # Read the body once and replay it to the route
        body = await request.body()

        async def receive():
            return {"type": "http.request", "body": body}

        request._receive = receive

        self._log_request(request, request_id, body)

        try:
            response = await call_next(request)
        except Exception as e:
            error_monitor.log_error(e, {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "process_time": time.time() - start_time,
                "context": "middleware_error",
            })
            raise

        process_time = time.time() - start_time
        self._log_response(request, response, request_id, process_time)
        response.headers["X-Request-ID"] = request_id
        return response

    def _log_request(self, request: Request, request_id: str, body: bytes) -> None:
        fields = None
        if request.method == "POST" and request.url.path.startswith(BODY_LOG_PREFIXES):
            fields = redact_body(body)

        tx_id = fields.get("clientUniqueId") if fields else None
        self.logger.info(
            f"[{request_id}] {request.method} {request.url.path}" + (f" tx={tx_id}" if tx_id else ""),
            extra={
                "request_id": request_id,
                "client_ip": request.client.host if request.client else "unknown",
            },
        )
        if fields is not None:
            self.logger.debug(f"[{request_id}] Request body: {json.dumps(fields, default=str)}")

    def _log_response(self, request: Request, response: Response, request_id: str, process_time: float) -> None:
        status_code = response.status_code
        level = logging.INFO if status_code < 400 else logging.WARNING if status_code < 500 else logging.ERROR

        self.logger.log(
            level,
            f"[{request_id}] {request.method} {request.url.path} - {status_code} - {process_time:.3f}s",
            extra={
                "request_id": request_id,
                "response_headers": redact_headers(dict(response.headers)),
            },
        )
