import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from phonechat.metrics import record_http_request, record_auth_outcome


REQUEST_LOGGER = "phonechat.requests"
UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")

# request_id of the request being served, if any
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    return request_id_ctx.get()


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON records with an ISO-8601 `ts`, the level name and the current request_id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            created = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record['ts'] = created.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname
        log_record.setdefault('logger', record.name)

        request_id = get_request_id()
        if request_id and 'request_id' not in log_record:
            log_record['request_id'] = request_id


def setup_logging(log_level: str = "INFO", stream=None) -> logging.Logger:
    """
    Route the root logger and uvicorn's loggers through one JSON handler.

    Used by the backend at import time; the chat and phone auth controllers
    log through module loggers and pick the same handler up.

    Args:
        log_level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        stream: Output stream, stdout by default
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(message)s'))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in UVICORN_LOGGERS:
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False

    # Replaced by RequestLoggingMiddleware
    logging.getLogger("uvicorn.access").disabled = True

    return root


def mask_token(token: Optional[str], visible: int = 6) -> str:
    """Short, non-replayable form of a bearer token for log lines."""
    if not token:
        return "<none>"
    if len(token) <= visible * 2:
        return f"<{len(token)} chars>"
    return f"{token[:visible]}...{token[-visible:]} <{len(token)} chars>"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured log line and one metrics sample per HTTP request.

    Keys: request_id, method, path, status, latency_ms, plus the endpoint,
    uid and result attached by log_auth_outcome. Requests that end in an
    unhandled exception are logged with status 500 before the exception
    reaches the app's error handler.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            try:
                response = await call_next(request)
            except Exception:
                self._record(request, 500, time.perf_counter() - started)
                raise

            response.headers["X-Request-ID"] = request_id
            self._record(request, response.status_code, time.perf_counter() - started)
            return response
        finally:
            request_id_ctx.reset(token)

    def _record(self, request: Request, status_code: int, latency_seconds: float) -> None:
        path = request.url.path
        if path != "/metrics":
            record_http_request(
                method=request.method,
                path=path,
                status=status_code,
                latency_seconds=latency_seconds
            )

        log_data = {
            "request_id": request.state.request_id,
            "method": request.method,
            "path": path,
            "status": status_code,
            "latency_ms": round(latency_seconds * 1000, 2),
        }
        log_data.update(getattr(request.state, "auth_log_data", {}))

        logger = logging.getLogger(REQUEST_LOGGER)
        if status_code >= 500:
            logger.error("Request failed", extra=log_data)
        elif status_code >= 400:
            logger.warning("Request completed", extra=log_data)
        else:
            logger.info("Request completed", extra=log_data)


def log_auth_outcome(request: Request, endpoint: str, result: str, uid: str = None) -> None:
    """
    Count an auth endpoint outcome and attach it to the request log line.

    Args:
        request: FastAPI request object
        endpoint: Short endpoint name (verify_token, revoke_tokens, ...)
        result: Outcome label (verified, invalid_token, not_found, ...)
        uid: User ID involved in the call, when known
    """
    record_auth_outcome(endpoint, result)

    auth_data = {"endpoint": endpoint, "result": result}
    if uid is not None:
        auth_data["uid"] = uid
    request.state.auth_log_data = auth_data
