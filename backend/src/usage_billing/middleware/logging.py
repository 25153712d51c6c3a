"""structlog configuration and per-request log context."""
import logging
import sys
import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from usage_billing.config import settings

QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "arq.worker")
QUIET_PATHS = frozenset({"/health", "/health/ready", "/metrics"})


def setup_logging(level: str | None = None, json_logs: bool | None = None) -> None:
    """
    Route stdlib and structlog output through one processor chain.

    Args:
        level: Log level name (defaults to settings.log_level)
        json_logs: Render JSON (defaults to True in production)
    """
    level_name = (level or settings.log_level).upper()
    if json_logs is None:
        json_logs = settings.app_env == "production"

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.dict_tracebacks if json_logs else structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=getattr(logging, level_name, logging.INFO))
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Binds request_id to every log line emitted while a request is handled.

    Webhook deliveries also carry the provider's event id header so a
    delivery can be followed from receipt to handler outcome.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:12]}"
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        context = {"request_id": request_id}
        provider_event_id = request.headers.get("x-provider-event-id")
        if provider_event_id:
            context["provider_event_id"] = provider_event_id
        structlog.contextvars.bind_contextvars(**context)

        logger = structlog.get_logger(__name__)
        started = time.perf_counter()
        response = await call_next(request)
        duration_ms = round((time.perf_counter() - started) * 1000, 1)

        if request.url.path not in QUIET_PATHS:
            logger.info(
                "request_handled",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=duration_ms,
            )
        response.headers["X-Request-ID"] = request_id
        return response
