from __future__ import annotations

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from idstitch.core.exceptions import IdStitchError, InvariantViolation, TransientStoreError, ValidationError

logger = logging.getLogger(__name__)


class ApiError(Exception):
    def __init__(
        self,
        code: str,
        message: str,
        status: int = 400,
        *,
        retryable: bool = False,
        **extra: object,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status
        self.retryable = retryable
        self.extra = extra


def error_body(code: str, message: str, *, retryable: bool = False, **extra: object) -> dict[str, object]:
    return {"status": 0, "error": {"code": code, "message": message, "retryable": retryable, **extra}}


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    body = error_body(exc.code, exc.message, retryable=exc.retryable, **exc.extra)
    return JSONResponse(status_code=exc.status, content=body)


def _classify(exc: IdStitchError) -> tuple[int, str, bool]:
    if isinstance(exc, ValidationError):
        return 400, "ingest.invalid_payload", False
    if isinstance(exc, TransientStoreError):
        return 503, "store.unavailable", True
    if isinstance(exc, InvariantViolation):
        return 500, "store.invariant_violation", False
    return 500, "internal.error", False


async def idstitch_error_handler(request: Request, exc: IdStitchError) -> JSONResponse:
    status, code, retryable = _classify(exc)
    # Invariant details stay in the server log.
    message = str(exc) if status < 500 or retryable else "Internal error"
    return JSONResponse(status_code=status, content=error_body(code, message, retryable=retryable))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", extra={"path": request.url.path, "method": request.method})
    return JSONResponse(status_code=500, content=error_body("internal.error", "Internal error"))
