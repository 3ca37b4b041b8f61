import logging
import json
import time
import sys
import uuid
import traceback
from datetime import datetime, timezone
from typing import Callable, Optional
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

# Never written to logs in clear
SENSITIVE_HEADERS = {"authorization", "cookie", "x-api-key", "x-paystack-signature"}

# Request headers worth keeping on the access log line
LOGGED_HEADERS = {"user-agent", "content-type", "origin", "x-forwarded-for"} | SENSITIVE_HEADERS

# Paths whose successful hits are logged at DEBUG
QUIET_PATHS = {"/health"}

# Extra attributes lifted from the record into the JSON line
EXTRA_FIELDS = (
    "request_id",
    "user_id",
    "method",
    "path",
    "status_code",
    "duration_ms",
    "headers",
    "order_id",
    "reference",
    "channel",
    "event",
    "attempt",
    "manual_review",
)

# Third-party loggers that are chatty at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "pymongo", "uvicorn.access")


class JSONFormatter(logging.Formatter):
    """One JSON object per line. Extras that are None are left out."""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "service": self.service_name,
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "func": record.funcName,
            "line": record.lineno,
        }

        for field in EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_obj[field] = value

        if record.exc_info:
            log_obj["exception"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(log_obj, default=str)


def setup_logging(service_name: str, level: int = logging.INFO) -> logging.Logger:
    """Route the root logger to stdout as JSON. Safe to call more than once."""
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service_name))
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    return logging.getLogger(service_name)


def mask_headers(request: Request) -> dict:
    headers = {}
    for key, value in request.headers.items():
        key = key.lower()
        if key in SENSITIVE_HEADERS:
            headers[key] = "***"
        elif key in LOGGED_HEADERS:
            headers[key] = value
    return headers


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Access log with an X-Request-ID correlation id, echoed back on the response."""

    def __init__(self, app: ASGIApp, service_name: str):
        super().__init__(app)
        self.logger = logging.getLogger(service_name)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            self.log_request(request, 500, started, request_id, exc_info=sys.exc_info())
            raise

        self.log_request(request, response.status_code, started, request_id)
        response.headers["X-Request-ID"] = request_id
        return response

    def log_request(self, request: Request, status_code: int, started: float, request_id: str, exc_info=None):
        # user_id is set by the auth dependency once the token is decoded
        user_id: Optional[str] = getattr(request.state, "user_id", None)
        path = request.url.path
        extra = {
            "request_id": request_id,
            "method": request.method,
            "path": path,
            "status_code": status_code,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            "headers": mask_headers(request),
            "user_id": user_id,
        }
        message = f"{request.method} {path} -> {status_code}"

        if status_code >= 500:
            self.logger.error(message, extra=extra, exc_info=exc_info)
        elif status_code >= 400:
            self.logger.warning(message, extra=extra)
        elif path in QUIET_PATHS:
            self.logger.debug(message, extra=extra)
        else:
            self.logger.info(message, extra=extra)
