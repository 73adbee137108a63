from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from loginguard.api.schemas import Envelope, ErrorBody
from loginguard.logging import get_logger
from loginguard.service.errors import ServiceError
from loginguard.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_DEFAULT_CODES = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
}


def _envelope(status_code: int, message: str, *, code: Optional[str] = None, details: Any = None) -> JSONResponse:
    body = ErrorBody(
        code=code or _DEFAULT_CODES.get(status_code, "server_error"),
        message=message,
        details=details,
    )
    payload = Envelope(status="error", error=body).model_dump(mode="json")
    return JSONResponse(status_code=status_code, content=payload)


def _where(request: Request) -> dict:
    return {"path": request.url.path, "method": request.method}


async def _on_constraint(request: Request, exc: ConstraintViolation) -> JSONResponse:
    logger.warning("constraint_violation", message=exc.message, detail=exc.detail, **_where(request))
    return _envelope(409, exc.message, code="conflict", details=exc.detail)


async def _on_service_error(request: Request, exc: ServiceError) -> JSONResponse:
    emit = logger.error if exc.status_code >= 500 else logger.warning
    emit(
        "service_error",
        status_code=exc.status_code,
        error_code=exc.error_code,
        message=exc.message,
        **_where(request),
    )
    return _envelope(exc.status_code, exc.message, code=exc.error_code, details=exc.detail or None)


async def _on_invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = [
        {"loc": list(item.get("loc", ())), "msg": item.get("msg", ""), "type": item.get("type", "")}
        for item in exc.errors()
    ]
    logger.warning("request_validation_error", error_count=len(problems), **_where(request))
    return _envelope(400, "invalid request", code="validation_error", details=problems)


async def _on_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("http_error", status_code=exc.status_code, **_where(request))
    if isinstance(exc.detail, str):
        return _envelope(exc.status_code, exc.detail)
    details = exc.detail if isinstance(exc.detail, dict) else None
    return _envelope(exc.status_code, "http error", details=details)


async def _on_unhandled(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_exception",
        exc_info=exc,
        error_type=type(exc).__name__,
        **_where(request),
    )
    return _envelope(500, "internal server error", code="server_error")


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as an error envelope."""
    app.add_exception_handler(ConstraintViolation, _on_constraint)
    app.add_exception_handler(ServiceError, _on_service_error)
    app.add_exception_handler(RequestValidationError, _on_invalid_request)
    app.add_exception_handler(HTTPException, _on_http_exception)
    app.add_exception_handler(Exception, _on_unhandled)
