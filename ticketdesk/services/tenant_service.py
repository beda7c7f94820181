from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from core.errors import (
    AccountNotFoundError,
    ConflictError,
    InsufficientTokensError,
    PermissionDeniedError,
    SubscriptionRequiredError,
    TenantNotFoundError,
)
from database.base import Database
from database.models import Account, Tenant
from database.repositories import AccountRepository, AuditRepository, TenantRepository
from services.gateway import ChatGateway
from utils.constants import ADMINISTRATOR_PERMISSION, SUBSCRIPTION_ACTIVE

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ObservedGuild:
    id: int
    name: str
    icon_url: str | None = None
    owner: bool = False
    permissions: int = 0

    @property
    def administrable(self) -> bool:
        return self.owner or bool(self.permissions & ADMINISTRATOR_PERMISSION)


class TenantService:
    def __init__(
        self,
        db: Database,
        account_repo: AccountRepository,
        tenant_repo: TenantRepository,
        audit_repo: AuditRepository,
        gateway: ChatGateway,
    ) -> None:
        self.db = db
        self.account_repo = account_repo
        self.tenant_repo = tenant_repo
        self.audit_repo = audit_repo
        self.gateway = gateway

    async def get_account(self, account_id: int) -> Account:
        account = await self.account_repo.get(account_id)
        if not account:
            raise AccountNotFoundError()
        return account

    async def upsert_account(self, account_id: int, username: str, avatar_url: str | None = None) -> Account:
        return await self.account_repo.upsert(account_id, username, avatar_url)

    async def get_tenant(self, guild_id: int) -> Tenant:
        tenant = await self.tenant_repo.get(guild_id)
        if not tenant:
            raise TenantNotFoundError()
        return tenant

    async def list_tenants_for_account(self, account_id: int) -> list[Tenant]:
        return await self.tenant_repo.list_for_account(account_id)

    async def find_tenant_by_subscription(self, subscription_id: str) -> Tenant | None:
        return await self.tenant_repo.get_by_subscription(subscription_id)

    async def create_tenant(
        self,
        guild_id: int,
        name: str,
        owner_id: int,
        icon_url: str | None = None,
    ) -> Tenant:
        created = await self.tenant_repo.create(
            Tenant(guild_id=guild_id, name=name, owner_id=owner_id, icon_url=icon_url)
        )
        if created:
            LOGGER.info("Registered tenant guild=%s owner=%s", guild_id, owner_id)
        return await self.get_tenant(guild_id)

    async def register_guilds(self, account_id: int, guilds: Iterable[ObservedGuild]) -> list[Tenant]:
        registered: list[Tenant] = []
        for guild in guilds:
            if not guild.administrable:
                continue
            registered.append(
                await self.create_tenant(
                    guild_id=guild.id,
                    name=guild.name,
                    owner_id=account_id,
                    icon_url=guild.icon_url,
                )
            )
        return registered

    async def update_tenant(self, guild_id: int, **fields: Any) -> Tenant:
        await self.get_tenant(guild_id)
        await self.tenant_repo.update_fields(guild_id, fields)
        return await self.get_tenant(guild_id)

    async def update_settings(self, guild_id: int, actor_id: int, **fields: Any) -> Tenant:
        tenant = await self.get_tenant(guild_id)
        await self.require_operator(tenant, actor_id)
        changes = dict(fields)
        updated = await self.update_tenant(guild_id, **changes)
        await self.audit_repo.log(
            guild_id=guild_id,
            actor_id=actor_id,
            action="tenant_update",
            target_id=str(guild_id),
            metadata={key: value for key, value in changes.items() if key != "webhook_avatar_url"},
        )
        return updated

    async def adjust_token_balance(self, account_id: int, delta: int) -> Account:
        await self.get_account(account_id)
        if not await self.account_repo.adjust_tokens(account_id, delta):
            raise InsufficientTokensError()
        return await self.get_account(account_id)

    async def activate_tenant(self, guild_id: int, actor_id: int) -> Tenant:
        tenant = await self.get_tenant(guild_id)
        await self.require_operator(tenant, actor_id)
        if tenant.is_active:
            raise ConflictError("This server already has an active subscription.")

        async with self.db.transaction() as tx:
            if not await self.account_repo.adjust_tokens(actor_id, -1, tx=tx):
                raise InsufficientTokensError()
            if not await self.tenant_repo.activate(guild_id, actor_id, tx=tx):
                # Rolls back the token spend.
                raise ConflictError("This server already has an active subscription.")
            await self.audit_repo.log(
                guild_id=guild_id,
                actor_id=actor_id,
                action="tenant_activate",
                target_id=str(guild_id),
                tx=tx,
            )
        LOGGER.info("Tenant activated guild=%s by=%s", guild_id, actor_id)
        return await self.get_tenant(guild_id)

    async def is_operator(self, tenant: Tenant, actor_id: int) -> bool:
        if actor_id in {tenant.owner_id, tenant.claimed_by_id}:
            return True
        if tenant.manager_role_id is None:
            return False
        role_ids = await self.gateway.get_member_role_ids(tenant.guild_id, actor_id)
        return tenant.manager_role_id in role_ids

    async def require_operator(self, tenant: Tenant, actor_id: int) -> None:
        if not await self.is_operator(tenant, actor_id):
            raise PermissionDeniedError()

    @staticmethod
    def require_active(tenant: Tenant) -> None:
        if tenant.subscription_status != SUBSCRIPTION_ACTIVE:
            raise SubscriptionRequiredError()
