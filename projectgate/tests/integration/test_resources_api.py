from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import text

from projectgate.apps.api.main import create_app
from projectgate.core.config import get_settings
from projectgate.domain.access import Module, Role
from projectgate.domain.models import BudgetItem, Contact, Task
from projectgate.persistence import scoped
from projectgate.persistence.db import SessionLocal
from projectgate.tests.utils.audit import fetch_audit_events
from projectgate.tests.utils.auth import add_member, create_member, create_project, grant_module


async def _seed_task(project_id: str, title: str) -> str:
    async with SessionLocal() as session:
        task = Task(project_id=project_id, title=title, status="open")
        session.add(task)
        await session.commit()
        return task.id


async def _seed_budget_item(project_id: str) -> str:
    async with SessionLocal() as session:
        item = BudgetItem(
            project_id=project_id,
            item="Concrete",
            discipline="structural",
            quantity=120.0,
            est_unit_cost=145.0,
            est_total=17400.0,
            committed_total=16000.0,
            paid_to_date=8000.0,
            variance_amount=1400.0,
            variance_percent=8.0,
        )
        session.add(item)
        await session.commit()
        return item.id


@pytest.mark.asyncio
async def test_task_lifecycle_within_project() -> None:
    get_settings.cache_clear()
    app = create_app()
    await create_project("p1")
    staff = await create_member(Role.STAFF, "p1")
    headers = staff.headers()
    params = {"project_id": "p1"}

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        created = await client.post(
            "/v1/tasks",
            params=params,
            json={"title": "Order scaffolding", "assignee": "crew-a", "project_id": "p2"},
            headers=headers,
        )
        assert created.status_code == 201
        task = created.json()["data"]
        assert task["project_id"] == "p1"
        assert task["status"] == "open"

        fetched = await client.get(f"/v1/tasks/{task['id']}", params=params, headers=headers)
        assert fetched.status_code == 200
        assert fetched.json()["data"]["title"] == "Order scaffolding"

        updated = await client.patch(
            f"/v1/tasks/{task['id']}", params=params, json={"status": "done"}, headers=headers
        )
        assert updated.status_code == 200
        assert updated.json()["data"]["status"] == "done"

        filtered = await client.get("/v1/tasks", params={**params, "status": "done"}, headers=headers)
        assert filtered.json()["data"]["total"] == 1

        deleted = await client.delete(f"/v1/tasks/{task['id']}", params=params, headers=headers)
        assert deleted.status_code == 200
        assert deleted.json()["data"] == {"id": task["id"], "deleted": True}

        missing = await client.get(f"/v1/tasks/{task['id']}", params=params, headers=headers)
        assert missing.status_code == 404
        assert missing.json()["code"] == "NOT_FOUND"

    mutations = [event.event_type for event in await fetch_audit_events(principal_id=staff.id)]
    assert "mutation.create" in mutations
    assert "mutation.update" in mutations
    assert "mutation.delete" in mutations


@pytest.mark.asyncio
async def test_foreign_record_ids_are_ownership_violations() -> None:
    get_settings.cache_clear()
    app = create_app()
    await create_project("p1")
    await create_project("p2")
    foreign_id = await _seed_task("p2", "Other site task")
    staff = await create_member(Role.STAFF, "p1", "p2")
    headers = staff.headers()
    params = {"project_id": "p1"}

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        responses = [
            await client.get(f"/v1/tasks/{foreign_id}", params=params, headers=headers),
            await client.patch(f"/v1/tasks/{foreign_id}", params=params, json={"status": "done"}, headers=headers),
            await client.delete(f"/v1/tasks/{foreign_id}", params=params, headers=headers),
        ]

    for response in responses:
        assert response.status_code == 403
        assert response.json()["code"] == "OWNERSHIP_VIOLATION"
        assert response.json()["error"] == "Access denied - resource belongs to different project"

    violations = await fetch_audit_events("ownership.violation", principal_id=staff.id)
    assert len(violations) == 3
    assert {event.tenant_id for event in violations} == {"p1"}

    async with SessionLocal() as session:
        stored = await session.get(Task, foreign_id)
        assert stored is not None
        assert stored.status == "open"


@pytest.mark.asyncio
async def test_unknown_project_falls_back_to_first_membership() -> None:
    get_settings.cache_clear()
    app = create_app()
    await create_project("p1")
    await create_project("p2")
    await _seed_task("p1", "First project task")
    staff = await create_member(Role.STAFF, "p1", "p2")

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/v1/tasks", params={"project_id": "no-such-project"}, headers=staff.headers())
        default = await client.get("/v1/tasks", headers=staff.headers())

    assert response.status_code == 200
    assert response.json()["data"]["project_id"] == "p1"
    assert default.json()["data"]["project_id"] == "p1"
    (fallback,) = await fetch_audit_events("membership.fallback", principal_id=staff.id)
    assert fallback.tenant_id == "p1"
    assert fallback.metadata_json["requested_project_id"] == "no-such-project"


@pytest.mark.asyncio
async def test_unknown_project_without_memberships_is_not_found() -> None:
    get_settings.cache_clear()
    app = create_app()
    loner = await create_member(Role.STAFF)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        unknown = await client.get("/v1/tasks", params={"project_id": "nowhere"}, headers=loner.headers())
        absent = await client.get("/v1/tasks", headers=loner.headers())

    assert unknown.status_code == 404
    assert unknown.json()["code"] == "PROJECT_NOT_FOUND"
    assert absent.status_code == 403
    assert absent.json()["code"] == "NO_PROJECTS"


@pytest.mark.asyncio
async def test_budget_cost_fields_are_removed_for_contractors() -> None:
    get_settings.cache_clear()
    app = create_app()
    await create_project("p1")
    item_id = await _seed_budget_item("p1")
    contractor = await create_member(Role.CONTRACTOR, "p1")
    staff = await create_member(Role.STAFF, "p1")
    params = {"project_id": "p1"}

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        contractor_view = await client.get(f"/v1/budget/{item_id}", params=params, headers=contractor.headers())
        contractor_list = await client.get("/v1/budget", params=params, headers=contractor.headers())
        staff_view = await client.get(f"/v1/budget/{item_id}", params=params, headers=staff.headers())

    assert contractor_view.status_code == 200
    redacted = contractor_view.json()["data"]
    assert redacted["item"] == "Concrete"
    assert redacted["quantity"] == 120.0
    for hidden in ("est_unit_cost", "est_total", "committed_total", "paid_to_date", "variance_amount"):
        assert hidden not in redacted
    assert "est_total" not in contractor_list.json()["data"]["items"][0]
    assert staff_view.json()["data"]["est_total"] == 17400.0


@pytest.mark.asyncio
async def test_budget_updates_are_redacted_like_reads() -> None:
    get_settings.cache_clear()
    app = create_app()
    await create_project("p1")
    item_id = await _seed_budget_item("p1")
    contractor = await create_member(Role.CONTRACTOR, "p1")
    await grant_module(contractor, "p1", Module.BUDGET, can_view=True, can_edit=True)
    params = {"project_id": "p1"}

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        empty_patch = await client.patch(f"/v1/budget/{item_id}", params=params, json={}, headers=contractor.headers())
        notes_patch = await client.patch(
            f"/v1/budget/{item_id}", params=params, json={"notes": "Pour moved"}, headers=contractor.headers()
        )

    for response in (empty_patch, notes_patch):
        assert response.status_code == 200
        body = response.json()["data"]
        assert body["item"] == "Concrete"
        for hidden in ("est_unit_cost", "est_total", "committed_total", "paid_to_date", "variance_amount"):
            assert hidden not in body
    assert notes_patch.json()["data"]["notes"] == "Pour moved"


@pytest.mark.asyncio
async def test_contacts_from_other_projects_are_not_readable() -> None:
    get_settings.cache_clear()
    app = create_app()
    await create_project("p1")
    await create_project("p2")
    async with SessionLocal() as session:
        contact = Contact(project_id="p2", name="Secret Sub", rate=99.0)
        session.add(contact)
        await session.commit()
        contact_id = contact.id
    member = await create_member(Role.STAFF, "p1")
    await add_member(member, "p2", Role.VIEWER)
    await grant_module(member, "p2", Module.CONTACTS)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        direct = await client.get("/v1/contacts", params={"project_id": "p2"}, headers=member.headers())
        via_p1 = await client.get(f"/v1/contacts/{contact_id}", params={"project_id": "p1"}, headers=member.headers())

    assert direct.status_code == 403
    assert via_p1.status_code == 403
    assert via_p1.json()["code"] == "OWNERSHIP_VIOLATION"
    assert "Secret Sub" not in via_p1.text


@pytest.mark.asyncio
async def test_storage_errors_render_as_sanitized_internal_failure(monkeypatch) -> None:
    get_settings.cache_clear()
    app = create_app()
    await create_project("p1")
    staff = await create_member(Role.STAFF, "p1")
    # A predicate the database cannot evaluate.
    monkeypatch.setattr(scoped, "tenant_predicate", lambda model, tenant_id: text("no_such_column = 1"))

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/v1/tasks", params={"project_id": "p1"}, headers=staff.headers())

    assert response.status_code == 500
    assert response.json()["code"] == "INTERNAL_ERROR"
    assert response.json()["error"] == "Internal server error"
    assert "no_such_column" not in response.text


@pytest.mark.asyncio
async def test_contractor_module_defaults_and_grants() -> None:
    get_settings.cache_clear()
    app = create_app()
    await create_project("p1")
    contractor = await create_member(Role.CONTRACTOR, "p1")
    granted = await create_member(Role.CONTRACTOR, "p1")
    await grant_module(granted, "p1", Module.PROPOSALS, can_view=True)
    params = {"project_id": "p1"}

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        hidden = await client.get("/v1/proposals", params=params, headers=contractor.headers())
        visible = await client.get("/v1/proposals", params=params, headers=granted.headers())
        write = await client.post("/v1/tasks", params=params, json={"title": "x"}, headers=contractor.headers())

    assert hidden.status_code == 403
    assert hidden.json()["code"] == "NO_MODULE_ACCESS"
    assert hidden.json()["error"] == "No PROPOSALS access for this project"
    assert visible.status_code == 200
    assert write.status_code == 403
    assert write.json()["code"] == "INSUFFICIENT_PERMISSION"
    assert write.json()["error"] == "No write permission for TASKS"


@pytest.mark.asyncio
async def test_procurement_approval_flow() -> None:
    get_settings.cache_clear()
    app = create_app()
    await create_project("p1")
    staff = await create_member(Role.STAFF, "p1")
    viewer = await create_member(Role.VIEWER, "p1")
    params = {"project_id": "p1"}

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        created = await client.post(
            "/v1/procurement",
            params=params,
            json={"item": "Rebar #5", "vendor": "Steel Co", "unit_cost": 12.5, "total_cost": 1250.0},
            headers=staff.headers(),
        )
        item_id = created.json()["data"]["id"]
        viewer_attempt = await client.post(
            f"/v1/procurement/{item_id}/approve", params=params, json={"action": "approve"}, headers=viewer.headers()
        )
        approved = await client.post(
            f"/v1/procurement/{item_id}/approve", params=params, json={"action": "approve"}, headers=staff.headers()
        )
        again = await client.post(
            f"/v1/procurement/{item_id}/approve", params=params, json={"action": "reject"}, headers=staff.headers()
        )
        viewer_read = await client.get(f"/v1/procurement/{item_id}", params=params, headers=viewer.headers())

    assert created.status_code == 201
    assert viewer_attempt.status_code == 403
    assert viewer_attempt.json()["code"] == "INSUFFICIENT_ROLE"
    assert approved.status_code == 200
    assert approved.json()["data"]["status"] == "approved"
    assert approved.json()["data"]["approved_by"] == staff.id
    assert again.status_code == 400
    assert again.json()["error"] == "Can only approve or reject items in requested or quoted status"
    assert "unit_cost" not in viewer_read.json()["data"]
    assert "total_cost" not in viewer_read.json()["data"]

    (approval,) = await fetch_audit_events("mutation.approve", principal_id=staff.id)
    assert approval.reason == "Procurement item approved successfully"


@pytest.mark.asyncio
async def test_request_validation_uses_error_envelope() -> None:
    get_settings.cache_clear()
    app = create_app()
    await create_project("p1")
    staff = await create_member(Role.STAFF, "p1")
    params = {"project_id": "p1"}

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        bad_status = await client.post(
            "/v1/tasks", params=params, json={"title": "x", "status": "finished"}, headers=staff.headers()
        )
        unknown_field = await client.post(
            "/v1/tasks", params=params, json={"title": "x", "password": "hunter2"}, headers=staff.headers()
        )
        bad_filter = await client.get("/v1/tasks", params={**params, "budget": "1"}, headers=staff.headers())

    for response in (bad_status, unknown_field, bad_filter):
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
    assert "hunter2" not in unknown_field.text
    assert bad_filter.json()["error"] == "Unsupported filter field: budget"


@pytest.mark.asyncio
async def test_oversized_body_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("MAX_BODY_BYTES", "256")
    get_settings.cache_clear()
    app = create_app()
    await create_project("p1")
    staff = await create_member(Role.STAFF, "p1")

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post(
            "/v1/tasks",
            params={"project_id": "p1"},
            json={"title": "x", "description": "a" * 1024},
            headers=staff.headers(),
        )

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"
    assert response.json()["error"] == "Request body too large"
    assert await fetch_audit_events("mutation.create") == []


@pytest.mark.asyncio
async def test_responses_carry_security_headers() -> None:
    get_settings.cache_clear()
    app = create_app()
    await create_project("p1")
    staff = await create_member(Role.STAFF, "p1")

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        ok = await client.get(
            "/v1/tasks", params={"project_id": "p1"}, headers={**staff.headers(), "X-Request-Id": "req-123"}
        )
        denied = await client.get("/v1/tasks")

    for response in (ok, denied):
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Referrer-Policy"] == "no-referrer"
        assert "default-src 'none'" in response.headers["Content-Security-Policy"]
    assert ok.headers["X-Request-Id"] == "req-123"
    assert ok.json()["meta"]["request_id"] == "req-123"
    assert ok.headers["X-RateLimit-Limit"] == "150"
