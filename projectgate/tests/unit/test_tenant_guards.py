from __future__ import annotations

import pytest

from projectgate.domain.models import AuditEvent, Task
from projectgate.persistence.guards import TenantPredicateError, require_tenant_id, tenant_predicate


def test_empty_project_id_is_rejected() -> None:
    with pytest.raises(TenantPredicateError):
        require_tenant_id("")
    with pytest.raises(TenantPredicateError):
        require_tenant_id("   ")
    with pytest.raises(TenantPredicateError) as excinfo:
        tenant_predicate(Task, None)  # type: ignore[arg-type]
    assert excinfo.value.table == "tasks"
    assert excinfo.value.message == "Query on tasks has no project_id predicate"


def test_unscoped_model_is_rejected() -> None:
    with pytest.raises(TenantPredicateError, match="audit_events is not project scoped") as excinfo:
        tenant_predicate(AuditEvent, "p1")
    assert excinfo.value.project_id == "p1"


def test_predicate_targets_project_column() -> None:
    clause = tenant_predicate(Task, "p1")
    assert str(clause.compile(compile_kwargs={"literal_binds": True})) == "tasks.project_id = 'p1'"


def test_guard_can_be_disabled(monkeypatch) -> None:
    monkeypatch.setenv("AUTHZ_REQUIRE_TENANT_PREDICATE", "false")
    require_tenant_id(None)
