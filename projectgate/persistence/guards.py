from __future__ import annotations

from typing import Any

from sqlalchemy import ColumnElement

from projectgate.core.config import get_settings


TENANT_COLUMN = "project_id"


class TenantPredicateError(RuntimeError):
    """A tenant-scoped query was about to run without a usable project id."""

    def __init__(self, message: str, *, table: str | None = None, project_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.table = table
        self.project_id = project_id


def require_tenant_id(project_id: str | None, *, table: str | None = None) -> None:
    if not get_settings().authz_require_tenant_predicate:
        return
    if not project_id or not project_id.strip():
        raise TenantPredicateError(
            f"Query on {table or 'unknown table'} has no project_id predicate",
            table=table,
            project_id=project_id,
        )


def tenant_predicate(model: Any, project_id: str) -> ColumnElement[bool]:
    # Single source of the project clause for every scoped query.
    table = getattr(model, "__tablename__", None)
    column = getattr(model, TENANT_COLUMN, None)
    if column is None:
        raise TenantPredicateError(f"{table} is not project scoped", table=table, project_id=project_id)
    require_tenant_id(project_id, table=table)
    return column == project_id
