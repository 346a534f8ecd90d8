"""Translate core exceptions into the JSON envelope served by the HTTP layer."""

from __future__ import annotations

import asyncio
from typing import Any, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, Field

from municipio_auth.logging import get_correlation_id, get_logger
from municipio_auth.service.errors import ServiceError
from municipio_auth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    504: "timeout",
    500: "server_error",
}


class ErrorBody(BaseModel):
    code: str = Field(..., description="Stable error code clients may branch on")
    message: str
    details: Optional[Any] = None


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_envelope(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> Tuple[int, Envelope]:
    error_body = ErrorBody(
        code=code or _error_code_for_status(status_code),
        message=message,
        details=details or None,
    )
    return status_code, Envelope(status="error", error=error_body)


def ok_envelope(data: Any) -> Envelope:
    return Envelope(status="ok", data=data)


def error_response(exc: BaseException) -> Tuple[int, Envelope]:
    """Map any exception raised by the core to ``(status_code, envelope)``.

    Unknown exceptions become a generic 500 and their text is never echoed.
    """

    if isinstance(exc, ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _error_envelope(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    if isinstance(exc, ConstraintViolation):
        logger.warning("constraint_violation", message=exc.message, detail=exc.detail)
        return _error_envelope(409, exc.message, exc.detail, code="conflict")

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        logger.warning("operation_timeout")
        return _error_envelope(504, "operation timed out", code="timeout")

    logger.exception("unhandled_error", error_type=type(exc).__name__, exc_info=exc)
    return _error_envelope(500, "internal server error", code="server_error")
