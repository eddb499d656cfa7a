"""
JSON logging for orderflow.

Each record becomes one JSON object on stdout. The request middleware
stamps the request and correlation ids into context vars, ``get_principal``
adds the caller, and the formatter copies whatever is set into a ``trace``
block. Workflow code attaches its own fields through
``extra={'extra_fields': {...}}``; those land under ``custom``.
"""

import json
import logging
import os
import re
import sys
import time
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)

_TRACE_VARS = {
    "request_id": request_id_var,
    "correlation_id": correlation_id_var,
    "user_id": user_id_var,
}

# Chatty third-party loggers kept at WARNING
QUIET_LOGGERS = ('uvicorn.access', 'sqlalchemy.engine', 'httpx', 'httpcore', 'stripe')


class StructuredFormatter(logging.Formatter):
    def __init__(self, service_name: Optional[str] = None):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "@timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name or os.getenv('SERVICE_NAME', 'orderflow-service'),
            "environment": os.getenv('ENVIRONMENT', 'development'),
            "source": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        trace = {name: var.get() for name, var in _TRACE_VARS.items() if var.get()}
        if trace:
            entry["trace"] = trace

        custom = getattr(record, 'extra_fields', None)
        if custom:
            entry["custom"] = custom

        if hasattr(record, 'duration_ms'):
            entry["performance"] = {"duration_ms": record.duration_ms}

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc, tb = record.exc_info
            entry["error"] = {
                "type": exc_type.__name__,
                "message": str(exc),
                "stacktrace": traceback.format_exception(exc_type, exc, tb),
            }

        return json.dumps(entry, default=str)


class PerformanceFilter(logging.Filter):
    """Turns a ``duration`` attribute (seconds) into ``duration_ms``."""

    def filter(self, record: logging.LogRecord) -> bool:
        duration = getattr(record, 'duration', None)
        if duration is not None:
            record.duration_ms = round(duration * 1000, 3)
        return True


class SecurityFilter(logging.Filter):
    """Masks gateway keys, webhook secrets, intent client secrets and bearer tokens."""

    PATTERNS = (
        re.compile(r'\b(?:sk|rk)_(?:test|live)_[A-Za-z0-9]+'),
        re.compile(r'\bwhsec_[A-Za-z0-9]+'),
        re.compile(r'\bpi_[A-Za-z0-9]+_secret_[A-Za-z0-9]+'),
        re.compile(r'Bearer\s+[A-Za-z0-9\-_.]+'),
    )
    MASK = '***REDACTED***'

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = message
        for pattern in self.PATTERNS:
            masked = pattern.sub(self.MASK, masked)
        if masked != message:
            record.msg, record.args = masked, None
        return True


def setup_logging(service_name: str, level: str = "INFO", stream=None) -> None:
    """Routes the root logger to one JSON stream handler.

    Replaces any handlers already installed, so calling it twice is harmless.
    """
    os.environ['SERVICE_NAME'] = service_name

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(StructuredFormatter(service_name))
    handler.addFilter(PerformanceFilter())
    handler.addFilter(SecurityFilter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root.info("Logging initialized", extra={'extra_fields': {'service': service_name, 'level': level}})


class LoggerAdapter(logging.LoggerAdapter):
    """Merges fields bound at creation time into each record's ``extra_fields``."""

    def process(self, msg, kwargs):
        if self.extra:
            extra = dict(kwargs.get('extra') or {})
            extra['extra_fields'] = {**self.extra, **extra.get('extra_fields', {})}
            kwargs['extra'] = extra
        return msg, kwargs


def get_logger(name: str, **bound: Any) -> LoggerAdapter:
    return LoggerAdapter(logging.getLogger(name), bound)


def set_request_context(
    request_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    user_id: Optional[str] = None
) -> None:
    for var, value in ((request_id_var, request_id), (correlation_id_var, correlation_id),
                       (user_id_var, user_id)):
        if value:
            var.set(value)


def generate_request_id() -> str:
    return uuid.uuid4().hex


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log line per request, plus the ``X-Request-ID`` response header."""

    logger = get_logger('orderflow.http')

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get('X-Request-ID') or generate_request_id()
        correlation_id = request.headers.get('X-Correlation-ID') or request_id
        tokens = [request_id_var.set(request_id), correlation_id_var.set(correlation_id)]
        request.state.request_id = request_id
        try:
            response = await self._timed(request, call_next)
        finally:
            for token in reversed(tokens):
                token.var.reset(token)
        response.headers['X-Request-ID'] = request_id
        response.headers['X-Correlation-ID'] = correlation_id
        return response

    async def _timed(self, request: Request, call_next) -> Response:
        fields = {'method': request.method, 'path': request.url.path}
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self.logger.error(f"{request.method} {request.url.path} failed", exc_info=True,
                              extra={'extra_fields': fields,
                                     'duration': time.perf_counter() - started})
            raise

        fields['status_code'] = response.status_code
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        self.logger.log(level, f"{request.method} {request.url.path} -> {response.status_code}",
                        extra={'extra_fields': fields, 'duration': time.perf_counter() - started})
        return response
