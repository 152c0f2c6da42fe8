from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from projectgate.apps.api.main import create_app
from projectgate.core.config import get_settings
from projectgate.domain.access import Role
from projectgate.tests.utils.audit import fetch_audit_events
from projectgate.tests.utils.auth import create_member, create_project


@pytest.mark.asyncio
async def test_project_admin_reads_only_own_project_trail() -> None:
    get_settings.cache_clear()
    app = create_app()
    await create_project("p1")
    await create_project("p2")
    admin = await create_member(Role.ADMIN, "p1")
    staff = await create_member(Role.STAFF, "p1", "p2")
    viewer = await create_member(Role.VIEWER, "p1")

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        await client.get("/v1/tasks", params={"project_id": "p1"}, headers=staff.headers())
        await client.get("/v1/tasks", params={"project_id": "p2"}, headers=staff.headers())
        await client.post("/v1/tasks", params={"project_id": "p1"}, json={"title": "x"}, headers=viewer.headers())

        trail = await client.get(
            "/v1/audit/events", params={"project_id": "p1", "event_type": "policy.decision"}, headers=admin.headers()
        )
        denied_only = await client.get(
            "/v1/audit/events", params={"project_id": "p1", "outcome": "deny"}, headers=admin.headers()
        )
        paged = await client.get(
            "/v1/audit/events",
            params={"project_id": "p1", "event_type": "policy.decision", "limit": 1},
            headers=admin.headers(),
        )
        refused = await client.get("/v1/audit/events", params={"project_id": "p1"}, headers=staff.headers())

    assert trail.status_code == 200
    data = trail.json()["data"]
    assert data["project_id"] == "p1"
    assert data["total"] == 2
    assert {item["tenant_id"] for item in data["items"]} == {"p1"}
    assert {item["principal_id"] for item in data["items"]} == {staff.id, viewer.id}

    denied = denied_only.json()["data"]["items"]
    assert [item["principal_id"] for item in denied] == [viewer.id]
    assert denied[0]["error_code"] == "INSUFFICIENT_PERMISSION"

    assert paged.json()["data"]["next_offset"] == 1
    assert len(paged.json()["data"]["items"]) == 1

    assert refused.status_code == 403
    assert refused.json()["code"] == "INSUFFICIENT_ROLE"

    event_id = data["items"][0]["id"]
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        single = await client.get(f"/v1/audit/events/{event_id}", params={"project_id": "p1"}, headers=admin.headers())
    assert single.status_code == 200
    assert single.json()["data"]["id"] == event_id


@pytest.mark.asyncio
async def test_sensitive_body_values_never_reach_the_trail() -> None:
    get_settings.cache_clear()
    app = create_app()
    await create_project("p1")
    viewer = await create_member(Role.VIEWER, "p1")

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post(
            "/v1/contacts",
            params={"project_id": "p1"},
            json={"name": "Dana", "api_key": "sk-live-998877"},
            headers={**viewer.headers(), "User-Agent": "curl/8 Bearer sk-live-998877"},
        )

    assert response.status_code == 403
    events = await fetch_audit_events(principal_id=viewer.id)
    assert events
    for event in events:
        rendered = repr((event.reason, event.metadata_json, event.user_agent))
        assert "sk-live-998877" not in rendered
