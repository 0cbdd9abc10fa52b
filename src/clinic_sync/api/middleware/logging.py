"""Request logging middleware and structlog setup.

Every request is logged once on completion as ``http.request_completed``
with method, path, status and duration. ``request_id`` (the incoming
X-Request-ID, or a fresh UUID) and, on provider routes, ``provider_id``
are bound into structlog contextvars for the lifetime of the request, so
sync pass logs emitted by an API-triggered pass carry both.

Probe traffic (/metrics, health checks) is logged at debug level.
"""

from __future__ import annotations

import logging
import re
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.clinic_sync.config import Environment, get_settings

logger = structlog.get_logger(__name__)

_PROVIDER_PATH_RE = re.compile(r"^/api/v1/providers/(?P<provider_id>[^/]+)")
_QUIET_PATHS = ("/metrics", "/api/v1/health")

# Third-party loggers that chatter at INFO on every HTTP call or timer fire.
_NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler")


def configure_structlog(log_level: str | None = None) -> None:
    """Configure structlog: JSON in production, console renderer elsewhere."""
    settings = get_settings()
    level = getattr(logging, (log_level or settings.LOG_LEVEL).upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", level=level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if settings.ENVIRONMENT == Environment.production:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _request_context(request: Request) -> dict[str, str]:
    context = {"request_id": request.headers.get("X-Request-ID") or str(uuid.uuid4())}
    match = _PROVIDER_PATH_RE.match(request.url.path)
    if match:
        context["provider_id"] = match.group("provider_id")
    return context


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        context = _request_context(request)
        path = request.url.path
        started = time.monotonic()
        structlog.contextvars.bind_contextvars(**context)

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "http.request_failed",
                method=request.method,
                path=path,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )
            raise
        finally:
            structlog.contextvars.unbind_contextvars(*context)

        response.headers["X-Request-ID"] = context["request_id"]

        if response.status_code >= 500:
            log = logger.error
        elif response.status_code >= 400:
            log = logger.warning
        elif path.startswith(_QUIET_PATHS):
            log = logger.debug
        else:
            log = logger.info
        log(
            "http.request_completed",
            method=request.method,
            path=path,
            status_code=response.status_code,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
            **context,
        )
        return response
