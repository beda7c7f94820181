from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from core.errors import ChannelGoneError, UpstreamUnavailableError
from services.gateway import (
    WEBHOOK_NAME,
    DiscordGateway,
    Notice,
    OutgoingFile,
    PermissionRule,
)


def _text_channel(channel_id: int = 55) -> MagicMock:
    channel = MagicMock(spec=discord.TextChannel)
    channel.id = channel_id
    channel.send = AsyncMock(return_value=SimpleNamespace(id=4001))
    channel.set_permissions = AsyncMock()
    return channel


def _bot_with(guild: MagicMock | None = None, channel: MagicMock | None = None) -> MagicMock:
    bot = MagicMock()
    bot.get_guild = MagicMock(return_value=guild)
    bot.get_channel = MagicMock(return_value=channel)
    return bot


def _http_error(cls: type[discord.HTTPException], status: int) -> discord.HTTPException:
    return cls(MagicMock(status=status, reason="error"), "failed")


@pytest.mark.asyncio
async def test_create_channel_with_mocked_guild() -> None:
    guild = MagicMock()
    guild.id = 123
    guild.me = MagicMock()
    guild.get_channel = MagicMock(return_value=None)
    guild.create_text_channel = AsyncMock(return_value=SimpleNamespace(id=987654321))
    gateway = DiscordGateway(_bot_with(guild=guild))

    channel_id = await gateway.create_channel(
        123,
        "sup-1",
        None,
        [
            PermissionRule(subject_id=123, kind="role", allow=False),
            PermissionRule(subject_id=999, kind="member", allow=True),
            PermissionRule(subject_id=700, kind="role", allow=True, manage=True),
        ],
        topic="Ticket SUP-1",
    )

    assert channel_id == 987654321
    kwargs = guild.create_text_channel.await_args.kwargs
    assert kwargs["name"] == "sup-1"
    assert kwargs["topic"] == "Ticket SUP-1"
    overwrites = {target.id: overwrite for target, overwrite in kwargs["overwrites"].items() if target is not guild.me}
    assert overwrites[123].view_channel is False
    assert overwrites[999].send_messages is True
    assert overwrites[999].manage_messages is None
    assert overwrites[700].manage_messages is True
    assert kwargs["overwrites"][guild.me].manage_webhooks is True


@pytest.mark.asyncio
async def test_create_channel_failure_is_upstream_error() -> None:
    guild = MagicMock()
    guild.me = None
    guild.get_channel = MagicMock(return_value=None)
    guild.create_text_channel = AsyncMock(side_effect=_http_error(discord.Forbidden, 403))
    gateway = DiscordGateway(_bot_with(guild=guild))

    with pytest.raises(UpstreamUnavailableError):
        await gateway.create_channel(123, "sup-1", None, [])


@pytest.mark.asyncio
async def test_send_as_identity_reuses_ticket_webhook() -> None:
    webhook = MagicMock()
    webhook.name = WEBHOOK_NAME
    webhook.token = "token"
    webhook.send = AsyncMock(return_value=SimpleNamespace(id=5001))
    channel = _text_channel()
    channel.webhooks = AsyncMock(return_value=[webhook])
    channel.create_webhook = AsyncMock()
    gateway = DiscordGateway(_bot_with(channel=channel))

    message_id = await gateway.send_as_identity(55, "hello", "Alice (Support Team)", "https://cdn.example/a.png")

    assert message_id == 5001
    channel.create_webhook.assert_not_awaited()
    kwargs = webhook.send.await_args.kwargs
    assert kwargs["username"] == "Alice (Support Team)"
    assert kwargs["avatar_url"] == "https://cdn.example/a.png"
    assert kwargs["wait"] is True


@pytest.mark.asyncio
async def test_send_as_identity_creates_missing_webhook() -> None:
    created = MagicMock()
    created.send = AsyncMock(return_value=SimpleNamespace(id=5002))
    channel = _text_channel()
    channel.webhooks = AsyncMock(return_value=[])
    channel.create_webhook = AsyncMock(return_value=created)
    gateway = DiscordGateway(_bot_with(channel=channel))

    await gateway.send_as_identity(55, "hello", "Support Team", None)

    channel.create_webhook.assert_awaited_once_with(name=WEBHOOK_NAME)
    assert created.send.await_args.kwargs["avatar_url"] is discord.utils.MISSING


@pytest.mark.asyncio
async def test_send_as_system_attaches_notices_and_file() -> None:
    channel = _text_channel()
    gateway = DiscordGateway(_bot_with(channel=channel))

    message_id = await gateway.send_as_system(
        55,
        content="<@1>",
        notices=[Notice(title="Ticket Claimed", description="<@2> will handle this ticket.")],
        file=OutgoingFile(filename="t.txt", content=b"log"),
    )

    assert message_id == 4001
    kwargs = channel.send.await_args.kwargs
    assert kwargs["content"] == "<@1>"
    assert kwargs["embeds"][0].title == "Ticket Claimed"
    assert kwargs["file"].filename == "t.txt"
    assert "view" not in kwargs


@pytest.mark.asyncio
async def test_member_roles_for_departed_member_are_empty() -> None:
    guild = MagicMock()
    guild.get_member = MagicMock(return_value=None)
    guild.fetch_member = AsyncMock(side_effect=_http_error(discord.NotFound, 404))
    gateway = DiscordGateway(_bot_with(guild=guild))

    assert await gateway.get_member_role_ids(123, 999) == set()


@pytest.mark.asyncio
async def test_missing_channel_is_reported_as_gone() -> None:
    bot = _bot_with()
    bot.fetch_channel = AsyncMock(side_effect=_http_error(discord.NotFound, 404))
    gateway = DiscordGateway(bot)

    with pytest.raises(ChannelGoneError):
        await gateway.edit_channel_permissions(55, PermissionRule(subject_id=1, kind="member", allow=False))
