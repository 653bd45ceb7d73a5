"""
Exception handlers — map :class:`RolloutError` subclasses to RFC 7807 responses.
"""

from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse

from rollout.api.schemas import ProblemDetail
from rollout.core.errors import (
    BusyError,
    ConflictError,
    DefinitionError,
    NotFoundError,
    RolloutError,
    TerminalStateError,
    UnknownTargetError,
    ValidationError,
)
from rollout.core.logging import get_logger

logger = get_logger(__name__)

# First match wins; order subclasses before their bases.
ERROR_STATUS: list[tuple[type[RolloutError], int]] = [
    (ValidationError, 422),
    (DefinitionError, 422),
    (NotFoundError, 404),
    (UnknownTargetError, 404),
    (ConflictError, 409),
    (BusyError, 409),
    (TerminalStateError, 409),
]


def status_for_error(error: RolloutError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


def problem_response(*, status: int, title: str, detail: str = "", instance: str = "",
                     context: dict | None = None) -> JSONResponse:
    body = ProblemDetail(title=title, status=status, detail=detail, instance=instance, context=context or {})
    return JSONResponse(status_code=status, content=body.model_dump())


async def rollout_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, RolloutError)
    status = status_for_error(exc)
    if status >= 500:
        logger.error("api.error", path=request.url.path, error=exc.to_dict())
    return problem_response(
        status=status,
        title=type(exc).__name__,
        detail=exc.message,
        instance=str(request.url.path),
        context={k: v if isinstance(v, str | int | float | bool) else str(v) for k, v in exc.context.to_dict().items()},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unhandled exceptions — returns 500 with ProblemDetail."""
    logger.exception("api.unhandled", path=request.url.path)
    return problem_response(
        status=500,
        title="Internal Server Error",
        detail=f"{type(exc).__name__}: {exc}",
        instance=str(request.url.path),
    )
