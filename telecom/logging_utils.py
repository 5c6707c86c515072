"""
Structured JSON logging.

Every record carries an ISO-8601 ``ts``, the level, the logger name and, inside
a request, the ``request_id`` of that request. ``RequestLoggingMiddleware``
writes one line per HTTP request; routes enrich it with messaging fields via
``log_message_data``.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from pythonjsonlogger import jsonlogger
from starlette.middleware.base import BaseHTTPMiddleware

from telecom.metrics import record_http_request


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

REQUEST_ID_HEADER = "X-Request-ID"
UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")
MESSAGE_LOG_FIELDS = ("message_id", "participants", "result")

request_logger = logging.getLogger("telecom.requests")


class TelecomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding ``ts``, ``level`` and the current request id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record.setdefault("ts", _iso_now())
        log_record["level"] = record.levelname

        request_id = request_id_ctx.get()
        if request_id and "request_id" not in log_record:
            log_record["request_id"] = request_id


def _iso_now() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Send all application and Uvicorn logs to stdout as JSON lines.

    Args:
        log_level: Root level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(TelecomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in UVICORN_LOGGERS:
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False

    # The request middleware replaces Uvicorn's access log
    logging.getLogger("uvicorn.access").disabled = True

    return root


def _route_path(request: Request) -> str:
    # Templated path keeps metric label cardinality bounded
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured log line and one metrics sample per HTTP request.

    Log keys: request_id, method, path, status, latency_ms, plus any of
    message_id, participants and result set by the route. A request id sent by
    the caller in X-Request-ID is reused, otherwise a new one is generated; it
    is echoed back in the response header either way.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - started
            response.headers[REQUEST_ID_HEADER] = request_id

            path = _route_path(request)
            if path != "/metrics":
                record_http_request(request.method, path, response.status_code, elapsed)

            fields = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
                **getattr(request.state, "message_log_data", {}),
            }
            request_logger.log(_level_for(response.status_code), "Request completed", extra=fields)
            return response
        finally:
            request_id_ctx.reset(token)


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


def log_message_data(request: Request, **fields) -> None:
    """
    Attach messaging fields to the current request's log line.

    Accepted keys are message_id, participants and result; None values are
    dropped.
    """
    unknown = set(fields) - set(MESSAGE_LOG_FIELDS)
    if unknown:
        raise TypeError(f"Unknown message log fields: {sorted(unknown)}")
    request.state.message_log_data = {k: v for k, v in fields.items() if v is not None}
