"""structlog setup and per-request trace logging."""
import logging
import time
import uuid
from typing import Callable

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from abtest.config import get_settings

TRACE_HEADER = "X-Trace-ID"


def configure_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """
    Configure structlog.

    Args:
        log_level: Minimum level name (DEBUG, INFO, WARNING, ...)
        json_logs: JSON lines when True, coloured console output otherwise
    """
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False
    )


_settings = get_settings()
configure_logging(_settings.log_level, json_logs=not _settings.debug)

logger = structlog.get_logger()


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Tag every request with a trace id and log its outcome.

    A caller-supplied ``X-Trace-ID`` is reused so traces can span
    services; otherwise a fresh id is generated. The id is bound into
    structlog context vars, so service events (``user_assigned``,
    ``experiment_started`` ...) carry it, and is echoed in the response.
    """

    async def dispatch(self, request: Request, call_next: Callable):
        trace_id = request.headers.get(TRACE_HEADER) or str(uuid.uuid4())
        request.state.trace_id = trace_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(trace_id=trace_id)

        logger.debug("request_started", method=request.method, path=request.url.path)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
                error_type=type(e).__name__,
                latency_ms=_elapsed_ms(started)
            )
            raise

        # Routing has run by now, so path params are available
        experiment_id = request.path_params.get("experiment_id")
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=_elapsed_ms(started),
            **({"experiment_id": experiment_id} if experiment_id else {})
        )

        response.headers[TRACE_HEADER] = trace_id
        return response


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def get_logger():
    """Get configured structured logger."""
    return logger
