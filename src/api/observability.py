import json
import logging
import os
import time
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from typing import Awaitable, Callable
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from prometheus_fastapi_instrumentator import Instrumentator

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
trace_id_var: ContextVar[str] = ContextVar("trace_id", default="")
actor_id_var: ContextVar[str] = ContextVar("actor_id", default="")

_LOG_CONTEXT: dict[str, ContextVar[str]] = {
    "correlation_id": correlation_id_var,
    "request_id": request_id_var,
    "trace_id": trace_id_var,
    "actor_id": actor_id_var,
}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "service": os.getenv("SERVICE_NAME", "timesheet-approvals"),
            "environment": os.getenv("ENVIRONMENT", "local"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field, var in _LOG_CONTEXT.items():
            payload[field] = var.get() or None
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        if hasattr(record, "extra_fields") and isinstance(record.extra_fields, dict):
            payload.update(record.extra_fields)
        return json.dumps({k: v for k, v in payload.items() if v is not None})


def _trace_id_from(traceparent: str) -> str:
    parts = traceparent.split("-")
    if len(parts) >= 4 and len(parts[1]) == 32:
        return parts[1]
    return uuid4().hex


def _request_context(request: Request) -> dict[str, str]:
    """Resolve per-request log context from inbound headers, generating missing ids."""
    return {
        "correlation_id": request.headers.get("X-Correlation-Id")
        or f"corr_{uuid4().hex[:12]}",
        "request_id": request.headers.get("X-Request-Id") or f"req_{uuid4().hex[:12]}",
        "trace_id": _trace_id_from(request.headers.get("traceparent", "")),
        "actor_id": request.headers.get("X-Actor-Id", "").strip(),
    }


def _configure_logging() -> None:
    root_logger = logging.getLogger()
    if root_logger.hasHandlers():
        root_logger.handlers.clear()
    root_logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)


def setup_observability(app: FastAPI) -> None:
    _configure_logging()
    Instrumentator().instrument(app).expose(app)

    @app.middleware("http")
    async def _request_observability_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        logger = logging.getLogger("http.access")
        started = time.perf_counter()
        context = _request_context(request)
        tokens: dict[str, Token[str]] = {
            field: _LOG_CONTEXT[field].set(value) for field, value in context.items()
        }
        status_code = 500
        try:
            response: Response = await call_next(request)
            status_code = response.status_code
        finally:
            logger.info(
                "request.completed",
                extra={
                    "extra_fields": {
                        "http_method": request.method,
                        "endpoint": request.url.path,
                        "status_code": status_code,
                        "latency_ms": round((time.perf_counter() - started) * 1000, 2),
                    }
                },
            )
            for field, token in tokens.items():
                _LOG_CONTEXT[field].reset(token)

        trace_id = context["trace_id"]
        response.headers.setdefault("X-Correlation-Id", context["correlation_id"])
        response.headers["X-Request-Id"] = context["request_id"]
        response.headers["X-Trace-Id"] = trace_id
        response.headers["traceparent"] = f"00-{trace_id}-0000000000000001-01"
        return response
