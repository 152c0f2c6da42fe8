from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from projectgate.apps.api.response import error_response, is_versioned_request
from projectgate.core.errors import InternalFailure, ProjectGateError
from projectgate.core.sanitize import sanitize_public_message
from projectgate.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    415: "UNSUPPORTED_MEDIA_TYPE",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    # Map status codes to fallback error codes when none are provided.
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def projectgate_exception_handler(request: Request, exc: ProjectGateError) -> JSONResponse:
    # Single translation point from typed failures to the error envelope.
    if isinstance(exc, InternalFailure):
        logger.error(
            "internal_failure type=%s path=%s",
            type(exc).__name__,
            request.url.path,
            exc_info=exc.__cause__ or exc,
        )
        message = InternalFailure.message
    else:
        message = sanitize_public_message(exc.message)
    payload = error_response(request=request, code=exc.code, message=message, details=exc.details())
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers())


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Normalize HTTPExceptions into the shared error envelope for v1 routes.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(
        request=request,
        code=code,
        message=sanitize_public_message(message),
        details=details,
    )
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


def _validation_details(exc: RequestValidationError) -> list[dict[str, Any]]:
    # Input values are omitted so rejected secrets are never echoed back.
    details: list[dict[str, Any]] = []
    for error in exc.errors():
        details.append(
            {
                "loc": [str(part) for part in error.get("loc", ())],
                "msg": str(error.get("msg", "")),
                "type": str(error.get("type", "")),
            }
        )
    return details


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = _validation_details(exc)
    message = "Validation error"
    if errors:
        field = ".".join(part for part in errors[0]["loc"] if part != "body") or "request"
        message = f"Validation error: {field}: {errors[0]['msg']}"
    payload = error_response(
        request=request,
        code="VALIDATION_ERROR",
        message=sanitize_public_message(message),
        details={"errors": errors},
    )
    return JSONResponse(content=payload, status_code=400)


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    # A query without a project predicate is a server bug, never a client error.
    logger.error("tenant_predicate_missing path=%s table=%s", request.url.path, exc.table)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
