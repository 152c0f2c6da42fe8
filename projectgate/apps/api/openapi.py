from __future__ import annotations

from typing import Any

from projectgate.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {"success": False, "error": message, "code": code}
    if details:
        payload["details"] = details
    payload["meta"] = {"request_id": "req_example", "api_version": "v1"}
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Validation error", code="VALIDATION_ERROR", message="Validation error: title: Field required"),
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Authentication failed"),
    403: _response("Forbidden", code="NOT_A_MEMBER", message="Not a member of this project"),
    404: _response("Not found", code="NOT_FOUND", message="Task not found"),
    429: _response(
        "Rate limited",
        code="RATE_LIMITED",
        message="Rate limit exceeded. Try again in 42 seconds",
        details={"retry_after_s": 42},
    ),
    500: _response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
    503: _response(
        "Rate limit backend unavailable",
        code="RATE_LIMIT_UNAVAILABLE",
        message="Rate limiting temporarily unavailable",
    ),
}
