from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import discord
from discord.ext import commands

from core.config import AppConfig
from core.errors import handle_app_command_error, handle_prefix_command_error
from core.extensions import load_extensions
from database.base import Database
from database.migrations.runner import run_migrations
from database.repositories import (
    AccountRepository,
    AuditRepository,
    BillingEventRepository,
    EventRepository,
    KnowledgeRepository,
    MessageRepository,
    PanelRepository,
    ParticipantRepository,
    TenantRepository,
    TicketRepository,
)
from services.advisor_service import AdvisorService, OpenAIResponder
from services.cache import CacheBackend, build_cache
from services.entitlement_service import EntitlementService
from services.gateway import ChatGateway, DiscordGateway
from services.panel_service import PanelService
from services.tenant_service import TenantService
from services.ticket_service import TicketService, TicketServiceDeps
from services.transcript_service import TranscriptService

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class AppServices:
    panel_repo: PanelRepository
    ticket_repo: TicketRepository
    tenant_service: TenantService
    panel_service: PanelService
    ticket_service: TicketService
    transcript_service: TranscriptService
    entitlement_service: EntitlementService
    advisor_service: AdvisorService


def build_services(
    config: AppConfig,
    database: Database,
    cache: CacheBackend,
    gateway: ChatGateway,
) -> AppServices:
    account_repo = AccountRepository(database)
    tenant_repo = TenantRepository(database)
    panel_repo = PanelRepository(database)
    ticket_repo = TicketRepository(database)
    message_repo = MessageRepository(database)
    event_repo = EventRepository(database)
    audit_repo = AuditRepository(database)
    knowledge_repo = KnowledgeRepository(database)

    tenant_service = TenantService(database, account_repo, tenant_repo, audit_repo, gateway)
    transcript_service = TranscriptService(config.transcripts)
    deps = TicketServiceDeps(
        db=database,
        panel_repo=panel_repo,
        ticket_repo=ticket_repo,
        message_repo=message_repo,
        participant_repo=ParticipantRepository(database),
        event_repo=event_repo,
        tenants=tenant_service,
        gateway=gateway,
        transcripts=transcript_service,
        cache=cache,
    )
    ticket_service = TicketService(config, deps)

    responder = None
    if config.advisor.enabled and config.advisor.api_key:
        responder = OpenAIResponder(config.advisor)
    elif config.advisor.enabled:
        LOGGER.warning("Advisor enabled without an API key; automated replies are off")
    advisor_service = AdvisorService(
        config.advisor,
        tenant_service,
        ticket_service,
        knowledge_repo,
        message_repo,
        event_repo,
        responder,
    )
    if responder is not None:
        ticket_service.attach_advisor(advisor_service)

    return AppServices(
        panel_repo=panel_repo,
        ticket_repo=ticket_repo,
        tenant_service=tenant_service,
        panel_service=PanelService(panel_repo, audit_repo, tenant_service, gateway),
        ticket_service=ticket_service,
        transcript_service=transcript_service,
        entitlement_service=EntitlementService(
            database,
            config.billing,
            tenant_repo,
            account_repo,
            BillingEventRepository(database),
            audit_repo,
        ),
        advisor_service=advisor_service,
    )


class TicketBot(commands.Bot):
    def __init__(self, config: AppConfig) -> None:
        intents = discord.Intents.default()
        intents.guilds = True
        intents.members = True
        intents.messages = True
        intents.message_content = True

        super().__init__(
            command_prefix=config.discord.prefix,
            intents=intents,
            application_id=config.discord.application_id,
            allowed_mentions=discord.AllowedMentions(
                everyone=config.discord.allowed_mentions_everyone,
                roles=True,
                users=True,
                replied_user=False,
            ),
            help_command=None,
        )
        self.config = config
        self.root_dir = Path(__file__).resolve().parent.parent
        self.database = Database(
            url=config.database.url,
            timeout_seconds=config.database.timeout_seconds,
            pool_min_size=config.database.pool_min_size,
            pool_max_size=config.database.pool_max_size,
        )
        self.cache: CacheBackend | None = None
        self.gateway = DiscordGateway(self)

        # Repositories and services are initialized during setup_hook.
        self.panel_repo: PanelRepository
        self.ticket_repo: TicketRepository
        self.tenant_service: TenantService
        self.panel_service: PanelService
        self.ticket_service: TicketService
        self.transcript_service: TranscriptService
        self.entitlement_service: EntitlementService
        self.advisor_service: AdvisorService

    async def setup_hook(self) -> None:
        await self.database.connect()
        await run_migrations(self.database, self.root_dir / "database" / "migrations")
        self.cache = await build_cache(self.config.redis)

        services = build_services(self.config, self.database, self.cache, self.gateway)
        self.panel_repo = services.panel_repo
        self.ticket_repo = services.ticket_repo
        self.tenant_service = services.tenant_service
        self.panel_service = services.panel_service
        self.ticket_service = services.ticket_service
        self.transcript_service = services.transcript_service
        self.entitlement_service = services.entitlement_service
        self.advisor_service = services.advisor_service

        await load_extensions(self, self.config.enabled_extensions)

        if self.config.discord.sync_commands_on_start:
            synced = await self.tree.sync()
            LOGGER.info("Synced %s application commands", len(synced))

        self.tree.on_error = handle_app_command_error  # type: ignore[assignment]

    async def on_ready(self) -> None:
        LOGGER.info("Bot ready as %s (%s)", self.user, self.user.id if self.user else "n/a")
        activity_type = self.config.discord.activity_type.lower()
        if activity_type == "playing":
            activity = discord.Game(name=self.config.discord.status_text)
        elif activity_type == "listening":
            activity = discord.Activity(
                type=discord.ActivityType.listening, name=self.config.discord.status_text
            )
        else:
            activity = discord.Activity(
                type=discord.ActivityType.watching, name=self.config.discord.status_text
            )
        await self.change_presence(status=discord.Status.online, activity=activity)

    async def on_command_error(self, ctx: commands.Context[commands.Bot], error: commands.CommandError) -> None:
        if ctx.command and ctx.command.has_error_handler():
            return
        await handle_prefix_command_error(ctx, error)

    async def close(self) -> None:
        await super().close()
        if hasattr(self, "ticket_service"):
            await self.ticket_service.drain_background()
        await self.database.close()
        if self.cache:
            await self.cache.close()
