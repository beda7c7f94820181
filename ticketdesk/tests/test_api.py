from __future__ import annotations

from types import SimpleNamespace

import httpx
import pytest
import pytest_asyncio

from conftest import CREATOR_ID, GUILD_ID, OWNER_ID, PANEL_CHANNEL_ID, STAFF_ID, SUPPORT_ROLE_ID
from core.api import create_api_app

OWNER = {"X-Actor-Id": str(OWNER_ID)}


@pytest_asyncio.fixture
async def client(app_config, services, gateway):
    bot = SimpleNamespace(
        config=app_config,
        gateway=gateway,
        tenant_service=services.tenant_service,
        panel_service=services.panel_service,
        ticket_service=services.ticket_service,
        advisor_service=services.advisor_service,
        entitlement_service=services.entitlement_service,
    )
    transport = httpx.ASGITransport(app=create_api_app(bot))
    async with httpx.AsyncClient(transport=transport, base_url="http://console") as http:
        yield http


@pytest.mark.asyncio
async def test_health_and_actor_header(client) -> None:
    assert (await client.get("/health")).json() == {"status": "ok"}
    assert (await client.get("/accounts/me/tenants")).status_code == 401


@pytest.mark.asyncio
async def test_api_key_is_enforced_when_configured(app_config) -> None:
    app_config.fastapi.api_key = "console-key"
    transport = httpx.ASGITransport(app=create_api_app(SimpleNamespace(config=app_config)))
    async with httpx.AsyncClient(transport=transport, base_url="http://console") as http:
        denied = await http.get("/accounts/me/tenants", headers=OWNER)
        assert denied.status_code == 401


@pytest.mark.asyncio
async def test_console_ticket_flow(client, tenant, panel) -> None:
    created = await client.post(
        f"/tenants/{GUILD_ID}/tickets",
        headers={"X-Actor-Id": str(CREATOR_ID)},
        json={"panel_id": panel.id, "creator_name": "creator", "form_responses": {"order_number": "9"}},
    )
    assert created.status_code == 201
    ticket = created.json()
    assert ticket["display_name"] == "SUP-1"
    assert ticket["channel_id"] == 9000

    listed = await client.get(f"/tenants/{GUILD_ID}/tickets", headers=OWNER, params={"status": "open"})
    assert [t["id"] for t in listed.json()] == [ticket["id"]]

    posted = await client.post(
        f"/tickets/{ticket['id']}/messages",
        headers=OWNER,
        json={"content": "We are on it.", "author_name": "Owner"},
    )
    assert posted.status_code == 201
    assert posted.json()["seq"] == 2

    newer = await client.get(f"/tickets/{ticket['id']}/messages", headers=OWNER, params={"after": 1})
    assert [m["content"] for m in newer.json()] == ["We are on it."]

    closed = await client.patch(f"/tickets/{ticket['id']}", headers=OWNER, json={"status": "closed"})
    assert closed.json()["status"] == "closed"
    assert closed.json()["closed_by_id"] == OWNER_ID

    transcript = await client.post(f"/tickets/{ticket['id']}/transcript", headers=OWNER)
    assert transcript.json()["line_count"] == 2


@pytest.mark.asyncio
async def test_claim_conflict_maps_to_409(client, gateway, panel) -> None:
    gateway.member_roles[STAFF_ID] = {SUPPORT_ROLE_ID}
    ticket = await client.post(
        f"/tenants/{GUILD_ID}/tickets",
        headers={"X-Actor-Id": str(CREATOR_ID)},
        json={"panel_id": panel.id, "creator_name": "creator", "form_responses": {"order_number": "9"}},
    )
    ticket_id = ticket.json()["id"]

    claimed = await client.post(f"/tickets/{ticket_id}/claim", headers={"X-Actor-Id": str(STAFF_ID)})
    assert claimed.json()["claimed_by_id"] == STAFF_ID

    conflict = await client.post(f"/tickets/{ticket_id}/claim", headers=OWNER)
    assert conflict.status_code == 409
    assert conflict.json()["holder_id"] == STAFF_ID


@pytest.mark.asyncio
async def test_error_statuses(client, services) -> None:
    missing = await client.get("/tickets/nope", headers=OWNER)
    assert missing.status_code == 404

    await client.put("/accounts/me", headers=OWNER, json={"username": "owner"})
    await services.tenant_service.create_tenant(GUILD_ID, "Guild", OWNER_ID)
    payment = await client.post(f"/tenants/{GUILD_ID}/activate", headers=OWNER)
    assert payment.status_code == 402

    forbidden = await client.get(f"/tenants/{GUILD_ID}", headers={"X-Actor-Id": str(CREATOR_ID)})
    assert forbidden.status_code == 403

    invalid = await client.patch(f"/tenants/{GUILD_ID}/tickets", headers=OWNER, json={})
    assert invalid.status_code == 405


@pytest.mark.asyncio
async def test_tenant_settings_and_panels(client, tenant) -> None:
    patched = await client.patch(f"/tenants/{GUILD_ID}", headers=OWNER, json={"anonymous_mode": True})
    assert patched.json()["anonymous_mode"] is True
    assert patched.json()["advisor_enabled"] is False

    created = await client.post(
        f"/tenants/{GUILD_ID}/panels",
        headers=OWNER,
        json={
            "channel_id": PANEL_CHANNEL_ID,
            "prefix": "bug",
            "title": "Bug reports",
            "form_fields": [{"label": "Steps", "kind": "multiline"}],
        },
    )
    assert created.status_code == 201
    panel = created.json()
    assert panel["prefix"] == "BUG"
    assert panel["form_fields"][0]["id"] == "steps"

    renamed = await client.patch(
        f"/tenants/{GUILD_ID}/panels/{panel['id']}", headers=OWNER, json={"title": "Bugs"}
    )
    assert renamed.json()["title"] == "Bugs"

    other_guild = await client.get(f"/tenants/{GUILD_ID + 1}/panels/{panel['id']}", headers=OWNER)
    assert other_guild.status_code == 404

    deleted = await client.delete(f"/tenants/{GUILD_ID}/panels/{panel['id']}", headers=OWNER)
    assert deleted.status_code == 204
    assert (await client.get(f"/tenants/{GUILD_ID}/panels", headers=OWNER)).json() == []


@pytest.mark.asyncio
async def test_webhook_requires_signature(client) -> None:
    response = await client.post("/billing/webhook", content=b"{}")
    assert response.status_code == 422
