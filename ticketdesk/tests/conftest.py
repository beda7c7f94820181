from __future__ import annotations

import itertools
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from core.bot import AppServices, build_services
from core.config import AppConfig, DiscordConfig, SecurityConfig, TranscriptConfig
from database.base import Database
from database.migrations.runner import run_migrations
from database.models import Tenant, TicketPanel
from services.cache import MemoryCache
from services.gateway import ChannelInfo, RoleInfo
from services.panel_service import PanelDraft

MIGRATIONS_DIR = Path(__file__).resolve().parents[1] / "database" / "migrations"

GUILD_ID = 111
OWNER_ID = 1001
CREATOR_ID = 2002
STAFF_ID = 3003
PANEL_CHANNEL_ID = 500
TRANSCRIPT_CHANNEL_ID = 501
CATEGORY_ID = 600
SUPPORT_ROLE_ID = 700


def make_gateway() -> AsyncMock:
    """Chat gateway double that accepts every call and hands out fresh channel ids."""
    gateway = AsyncMock()
    channel_ids = itertools.count(9000)
    member_roles: dict[int, set[int]] = {}

    gateway.member_roles = member_roles
    gateway.create_channel.side_effect = lambda *args, **kwargs: next(channel_ids)
    gateway.send_as_system.return_value = 1
    gateway.send_as_identity.return_value = 2
    gateway.publish_panel.return_value = 777
    gateway.list_channels.return_value = [
        ChannelInfo(id=PANEL_CHANNEL_ID, name="support"),
        ChannelInfo(id=TRANSCRIPT_CHANNEL_ID, name="transcripts"),
    ]
    gateway.list_categories.return_value = [ChannelInfo(id=CATEGORY_ID, name="Tickets")]
    gateway.list_roles.return_value = [RoleInfo(id=SUPPORT_ROLE_ID, name="Support")]
    gateway.resolve_role.side_effect = lambda guild_id, role_id: RoleInfo(id=role_id, name=f"role-{role_id}")
    gateway.get_member_role_ids.side_effect = lambda guild_id, user_id: set(member_roles.get(user_id, set()))
    return gateway


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        discord=DiscordConfig(token="x"),
        security=SecurityConfig(
            ticket_creation_cooldown_seconds=0,
            ticket_creation_max_per_hour=0,
            max_open_tickets_per_user=3,
        ),
        transcripts=TranscriptConfig(storage_directory=str(tmp_path / "transcripts")),
    )


@pytest_asyncio.fixture
async def database(tmp_path: Path):
    db = Database(url=f"sqlite:///{tmp_path / 'ticketdesk.db'}")
    await db.connect()
    await run_migrations(db, MIGRATIONS_DIR)
    yield db
    await db.close()


@pytest.fixture
def gateway() -> AsyncMock:
    return make_gateway()


@pytest_asyncio.fixture
async def services(app_config: AppConfig, database: Database, gateway: AsyncMock):
    built = build_services(app_config, database, MemoryCache(), gateway)
    yield built
    await built.ticket_service.drain_background()


async def register_tenant(services: AppServices, *, active: bool = True) -> Tenant:
    await services.tenant_service.upsert_account(OWNER_ID, "owner", None)
    tenant = await services.tenant_service.create_tenant(GUILD_ID, "Test Guild", OWNER_ID)
    if active:
        await services.tenant_service.adjust_token_balance(OWNER_ID, 1)
        tenant = await services.tenant_service.activate_tenant(GUILD_ID, OWNER_ID)
    return tenant


@pytest_asyncio.fixture
async def tenant(services: AppServices) -> Tenant:
    return await register_tenant(services)


@pytest_asyncio.fixture
async def panel(services: AppServices, tenant: Tenant) -> TicketPanel:
    return await services.panel_service.create_panel(
        GUILD_ID,
        OWNER_ID,
        PanelDraft(
            channel_id=PANEL_CHANNEL_ID,
            prefix="sup",
            title="Support",
            description="Open a ticket to reach the team.",
            category_id=CATEGORY_ID,
            support_role_ids=[SUPPORT_ROLE_ID],
            transcript_channel_id=TRANSCRIPT_CHANNEL_ID,
            form_fields=[
                {"label": "Order number", "kind": "text"},
                {"label": "Details", "kind": "multiline", "required": False},
            ],
        ),
    )
