from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
import logging
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from projectgate.apps.api.errors import (
    http_exception_handler,
    projectgate_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from projectgate.apps.api.response import API_VERSION, error_response
from projectgate.apps.api.routes.admin import router as admin_router
from projectgate.apps.api.routes.audit import router as audit_router
from projectgate.apps.api.routes.budget import router as budget_router
from projectgate.apps.api.routes.change_orders import router as change_orders_router
from projectgate.apps.api.routes.contacts import router as contacts_router
from projectgate.apps.api.routes.health import router as health_router
from projectgate.apps.api.routes.procurement import router as procurement_router
from projectgate.apps.api.routes.projects import router as projects_router
from projectgate.apps.api.routes.proposals import router as proposals_router
from projectgate.apps.api.routes.schedule import router as schedule_router
from projectgate.apps.api.routes.tasks import router as tasks_router
from projectgate.core.config import get_settings
from projectgate.core.errors import ProjectGateError
from projectgate.core.logging import configure_logging, request_id_var
from projectgate.persistence.db import SessionLocal
from projectgate.persistence.guards import TenantPredicateError
from projectgate.services.audit import build_audit_sink
from projectgate.services.auth.identity import JwtIdentityVerifier
from projectgate.services.auth.principals import is_token_revoked
from projectgate.services.rate_limit import build_rate_limit_store


logger = logging.getLogger(__name__)

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
}
_PUBLIC_PATHS = {"/v1/health"}


async def _revocation_check(subject: str, issued_at: datetime | None) -> bool:
    # Own session: runs before the request session is opened.
    async with SessionLocal() as session:
        return await is_token_revoked(session, subject, issued_at)


def _content_length(request: Request) -> int | None:
    raw = request.headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    # Flush buffered audit records and release the rate-limit backend.
    await app.state.audit_sink.close()
    close_store = getattr(app.state.rate_limit_store, "close", None)
    if close_store is not None:
        await close_store()


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="ProjectGate API", lifespan=_lifespan)

    app.state.audit_sink = build_audit_sink(mode=settings.audit_sink_mode, buffer_size=settings.audit_buffer_size)
    app.state.rate_limit_store = build_rate_limit_store(settings)
    app.state.identity_verifier = JwtIdentityVerifier(settings=settings, revocation_check=_revocation_check)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        try:
            length = _content_length(request)
            if length is not None and length > settings.max_body_bytes:
                logger.warning("request_body_too_large path=%s bytes=%s", request.url.path, length)
                payload = error_response(
                    request=request,
                    code="VALIDATION_ERROR",
                    message="Request body too large",
                )
                response = JSONResponse(content=payload, status_code=400)
            else:
                response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers.setdefault("X-Request-Id", request_id)
        for header, value in _SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response

    @app.exception_handler(ProjectGateError)
    async def _projectgate_exception_handler(request: Request, exc: ProjectGateError):
        return await projectgate_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(TenantPredicateError)
    async def _tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError):
        return await tenant_predicate_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(projects_router, prefix=f"/{API_VERSION}")
    app.include_router(tasks_router, prefix=f"/{API_VERSION}")
    app.include_router(schedule_router, prefix=f"/{API_VERSION}")
    app.include_router(budget_router, prefix=f"/{API_VERSION}")
    app.include_router(procurement_router, prefix=f"/{API_VERSION}")
    app.include_router(contacts_router, prefix=f"/{API_VERSION}")
    app.include_router(proposals_router, prefix=f"/{API_VERSION}")
    app.include_router(change_orders_router, prefix=f"/{API_VERSION}")
    # Project-scoped audit trail for project admins.
    app.include_router(audit_router, prefix=f"/{API_VERSION}")
    # Principal provisioning and revocation for global admins.
    app.include_router(admin_router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        # Inject bearer auth into the OpenAPI schema.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title="ProjectGate API",
            version=API_VERSION,
            routes=app.routes,
        )
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
