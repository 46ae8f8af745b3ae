"""Map experimentation errors to HTTP responses."""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from abtest.exceptions import ConflictError, ExperimentError, NotFoundError, StoreError, ValidationError
from abtest.middleware.logging import get_logger

logger = get_logger()

# Most specific first: InvalidTransitionError is matched as a ValidationError
ERROR_STATUS = [
    (ValidationError, 400, "validation_error"),
    (NotFoundError, 404, "not_found"),
    (ConflictError, 409, "conflict"),
    (StoreError, 503, "store_unavailable"),
]


async def experiment_error_handler(request: Request, exc: ExperimentError) -> JSONResponse:
    """Surface the error message verbatim with a stable error kind."""
    trace_id = getattr(request.state, "trace_id", "unknown")

    for error_type, status_code, kind in ERROR_STATUS:
        if isinstance(exc, error_type):
            break
    else:
        status_code, kind = 500, "experiment_error"

    if status_code >= 500:
        logger.error(kind, trace_id=trace_id, error=str(exc), error_type=type(exc).__name__)
    else:
        logger.warning(kind, trace_id=trace_id, error=str(exc))

    return JSONResponse(
        status_code=status_code,
        content={"error": kind, "message": str(exc), "trace_id": trace_id}
    )


def register_error_handlers(app: FastAPI) -> None:
    """Install the handler for the whole ExperimentError hierarchy."""
    app.add_exception_handler(ExperimentError, experiment_error_handler)
