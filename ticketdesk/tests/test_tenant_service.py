from __future__ import annotations

import asyncio

import pytest

from conftest import GUILD_ID, OWNER_ID, STAFF_ID, register_tenant
from core.errors import (
    ConflictError,
    InsufficientTokensError,
    PermissionDeniedError,
    SubscriptionRequiredError,
    TenantNotFoundError,
)
from services.tenant_service import ObservedGuild


@pytest.mark.asyncio
async def test_register_guilds_keeps_administrable_and_first_owner(services) -> None:
    await services.tenant_service.upsert_account(OWNER_ID, "owner", None)
    observed = [
        ObservedGuild(id=GUILD_ID, name="Owned", owner=True),
        ObservedGuild(id=GUILD_ID + 1, name="Admin", permissions=0x8),
        ObservedGuild(id=GUILD_ID + 2, name="Member", permissions=0x400),
    ]

    registered = await services.tenant_service.register_guilds(OWNER_ID, observed)
    assert sorted(t.guild_id for t in registered) == [GUILD_ID, GUILD_ID + 1]
    assert all(t.subscription_status == "none" for t in registered)

    again = await services.tenant_service.register_guilds(STAFF_ID, [ObservedGuild(id=GUILD_ID, name="x", owner=True)])
    assert again[0].owner_id == OWNER_ID
    assert again[0].name == "Owned"

    mine = await services.tenant_service.list_tenants_for_account(OWNER_ID)
    assert [t.name for t in mine] == ["Admin", "Owned"]


@pytest.mark.asyncio
async def test_activation_spends_one_token(services) -> None:
    await register_tenant(services, active=False)
    await services.tenant_service.adjust_token_balance(OWNER_ID, 2)

    tenant = await services.tenant_service.activate_tenant(GUILD_ID, OWNER_ID)

    assert tenant.is_active
    assert tenant.claimed_by_id == OWNER_ID
    assert (await services.tenant_service.get_account(OWNER_ID)).token_balance == 1
    with pytest.raises(ConflictError):
        await services.tenant_service.activate_tenant(GUILD_ID, OWNER_ID)
    assert (await services.tenant_service.get_account(OWNER_ID)).token_balance == 1


@pytest.mark.asyncio
async def test_activation_without_tokens_changes_nothing(services) -> None:
    await register_tenant(services, active=False)

    with pytest.raises(InsufficientTokensError):
        await services.tenant_service.activate_tenant(GUILD_ID, OWNER_ID)

    tenant = await services.tenant_service.get_tenant(GUILD_ID)
    assert tenant.subscription_status == "none"
    assert tenant.claimed_by_id is None
    with pytest.raises(SubscriptionRequiredError):
        services.tenant_service.require_active(tenant)


@pytest.mark.asyncio
async def test_token_balance_never_goes_negative(services) -> None:
    await services.tenant_service.upsert_account(OWNER_ID, "owner", None)
    await services.tenant_service.adjust_token_balance(OWNER_ID, 1)
    with pytest.raises(InsufficientTokensError):
        await services.tenant_service.adjust_token_balance(OWNER_ID, -2)
    assert (await services.tenant_service.get_account(OWNER_ID)).token_balance == 1


@pytest.mark.asyncio
async def test_concurrent_activations_spend_a_single_token(services) -> None:
    await services.tenant_service.upsert_account(OWNER_ID, "owner", None)
    await services.tenant_service.create_tenant(GUILD_ID, "First", OWNER_ID)
    await services.tenant_service.create_tenant(GUILD_ID + 1, "Second", OWNER_ID)
    await services.tenant_service.adjust_token_balance(OWNER_ID, 1)

    results = await asyncio.gather(
        services.tenant_service.activate_tenant(GUILD_ID, OWNER_ID),
        services.tenant_service.activate_tenant(GUILD_ID + 1, OWNER_ID),
        return_exceptions=True,
    )

    activated = [r for r in results if not isinstance(r, BaseException)]
    rejected = [r for r in results if isinstance(r, InsufficientTokensError)]
    assert len(activated) == 1 and len(rejected) == 1
    assert activated[0].is_active
    assert (await services.tenant_service.get_account(OWNER_ID)).token_balance == 0
    tenants = await services.tenant_service.list_tenants_for_account(OWNER_ID)
    assert sum(t.is_active for t in tenants) == 1


@pytest.mark.asyncio
async def test_manager_role_grants_operator_rights(services, gateway) -> None:
    tenant = await register_tenant(services)
    assert await services.tenant_service.is_operator(tenant, STAFF_ID) is False

    with pytest.raises(PermissionDeniedError):
        await services.tenant_service.update_settings(GUILD_ID, STAFF_ID, anonymous_mode=True)

    updated = await services.tenant_service.update_settings(GUILD_ID, OWNER_ID, manager_role_id=800)
    gateway.member_roles[STAFF_ID] = {800}
    assert await services.tenant_service.is_operator(updated, STAFF_ID) is True

    updated = await services.tenant_service.update_settings(GUILD_ID, STAFF_ID, advisor_enabled=True)
    assert updated.advisor_enabled is True
    assert updated.manager_role_id == 800


@pytest.mark.asyncio
async def test_unknown_tenant(services) -> None:
    with pytest.raises(TenantNotFoundError):
        await services.tenant_service.get_tenant(404)
    assert await services.tenant_service.find_tenant_by_subscription("sub_missing") is None
