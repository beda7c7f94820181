from __future__ import annotations

import io
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Protocol

import discord

from core.errors import ChannelGoneError, UpstreamUnavailableError, ValidationError
from database.models import TicketPanel
from utils.embeds import notice_embed, panel_embed

if TYPE_CHECKING:
    from core.bot import TicketBot

LOGGER = logging.getLogger(__name__)

WEBHOOK_NAME = "Ticket System"


class TicketControls(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


@dataclass(slots=True, frozen=True)
class PermissionRule:
    """Channel access for one role or member.

    ``allow=False`` hides the channel from the subject; ``allow=True`` grants
    read/write access, plus message management when ``manage`` is set.
    """

    subject_id: int
    kind: str = "role"
    allow: bool = True
    manage: bool = False


@dataclass(slots=True)
class Notice:
    title: str
    description: str = ""
    fields: list[tuple[str, str]] = field(default_factory=list)
    tone: str = "info"
    footer: str | None = None


@dataclass(slots=True)
class OutgoingFile:
    filename: str
    content: bytes


@dataclass(slots=True)
class ChannelInfo:
    id: int
    name: str


@dataclass(slots=True)
class RoleInfo:
    id: int
    name: str


class ChatGateway(Protocol):
    async def create_channel(
        self,
        guild_id: int,
        name: str,
        category_id: int | None,
        rules: Sequence[PermissionRule],
        topic: str | None = None,
    ) -> int: ...

    async def delete_channel(self, channel_id: int) -> None: ...

    async def edit_channel_permissions(self, channel_id: int, rule: PermissionRule) -> None: ...

    async def send_as_system(
        self,
        channel_id: int,
        content: str | None = None,
        notices: Sequence[Notice] = (),
        controls: TicketControls | None = None,
        file: OutgoingFile | None = None,
    ) -> int: ...

    async def send_as_identity(
        self,
        channel_id: int,
        content: str,
        display_name: str,
        avatar_url: str | None,
        notices: Sequence[Notice] = (),
    ) -> int: ...

    async def publish_panel(self, panel: TicketPanel) -> int: ...

    async def list_channels(self, guild_id: int) -> list[ChannelInfo]: ...

    async def list_categories(self, guild_id: int) -> list[ChannelInfo]: ...

    async def list_roles(self, guild_id: int) -> list[RoleInfo]: ...

    async def resolve_role(self, guild_id: int, role_id: int) -> RoleInfo | None: ...

    async def get_member_role_ids(self, guild_id: int, user_id: int) -> set[int]: ...


def _overwrite_for(rule: PermissionRule) -> discord.PermissionOverwrite:
    if not rule.allow:
        return discord.PermissionOverwrite(view_channel=False)
    overwrite = discord.PermissionOverwrite(
        view_channel=True,
        send_messages=True,
        read_message_history=True,
        attach_files=True,
        embed_links=True,
    )
    if rule.manage:
        overwrite.manage_messages = True
    return overwrite


def _target_for(rule: PermissionRule) -> discord.Object:
    target_type = discord.Member if rule.kind == "member" else discord.Role
    return discord.Object(id=rule.subject_id, type=target_type)


class DiscordGateway(ChatGateway):
    def __init__(self, bot: TicketBot) -> None:
        self.bot = bot

    async def _guild(self, guild_id: int) -> discord.Guild:
        guild = self.bot.get_guild(guild_id)
        if guild is not None:
            return guild
        try:
            return await self.bot.fetch_guild(guild_id)
        except discord.NotFound as exc:
            raise ValidationError("The bot is not a member of this server.") from exc
        except discord.HTTPException as exc:
            raise UpstreamUnavailableError() from exc

    async def _text_channel(self, channel_id: int) -> discord.TextChannel:
        channel = self.bot.get_channel(channel_id)
        if channel is None:
            try:
                channel = await self.bot.fetch_channel(channel_id)
            except discord.NotFound as exc:
                raise ChannelGoneError() from exc
            except discord.HTTPException as exc:
                raise UpstreamUnavailableError() from exc
        if not isinstance(channel, discord.TextChannel):
            raise ValidationError("The channel is not a text channel.")
        return channel

    async def create_channel(
        self,
        guild_id: int,
        name: str,
        category_id: int | None,
        rules: Sequence[PermissionRule],
        topic: str | None = None,
    ) -> int:
        guild = await self._guild(guild_id)
        overwrites: dict[discord.abc.Snowflake, discord.PermissionOverwrite] = {
            _target_for(rule): _overwrite_for(rule) for rule in rules
        }
        if guild.me is not None:
            overwrites[guild.me] = discord.PermissionOverwrite(
                view_channel=True,
                send_messages=True,
                read_message_history=True,
                manage_channels=True,
                manage_messages=True,
                manage_webhooks=True,
            )
        category = guild.get_channel(category_id) if category_id else None
        if category is not None and not isinstance(category, discord.CategoryChannel):
            category = None
        try:
            channel = await guild.create_text_channel(
                name=name,
                category=category,
                overwrites=overwrites,
                topic=topic,
                reason=f"Ticket {name}",
            )
        except discord.HTTPException as exc:
            LOGGER.warning("Channel creation failed guild=%s name=%s: %s", guild_id, name, exc)
            raise UpstreamUnavailableError() from exc
        return channel.id

    async def delete_channel(self, channel_id: int) -> None:
        channel = self.bot.get_channel(channel_id)
        try:
            if channel is None:
                channel = await self.bot.fetch_channel(channel_id)
            await channel.delete(reason="Ticket channel deleted")
        except discord.NotFound:
            LOGGER.info("Channel %s already deleted", channel_id)
        except discord.HTTPException as exc:
            raise UpstreamUnavailableError() from exc

    async def edit_channel_permissions(self, channel_id: int, rule: PermissionRule) -> None:
        channel = await self._text_channel(channel_id)
        try:
            await channel.set_permissions(_target_for(rule), overwrite=_overwrite_for(rule))
        except discord.NotFound as exc:
            raise ChannelGoneError() from exc
        except discord.HTTPException as exc:
            raise UpstreamUnavailableError() from exc

    async def send_as_system(
        self,
        channel_id: int,
        content: str | None = None,
        notices: Sequence[Notice] = (),
        controls: TicketControls | None = None,
        file: OutgoingFile | None = None,
    ) -> int:
        from views.ticket_controls import ClosedTicketControlsView, OpenTicketControlsView

        channel = await self._text_channel(channel_id)
        view: discord.ui.View | None = None
        if controls is TicketControls.OPEN:
            view = OpenTicketControlsView(self.bot)
        elif controls is TicketControls.CLOSED:
            view = ClosedTicketControlsView(self.bot)
        kwargs: dict[str, object] = {"embeds": [notice_embed(n) for n in notices]}
        if view is not None:
            kwargs["view"] = view
        if file is not None:
            kwargs["file"] = discord.File(io.BytesIO(file.content), filename=file.filename)
        try:
            message = await channel.send(content=content or None, **kwargs)
        except discord.NotFound as exc:
            raise ChannelGoneError() from exc
        except discord.HTTPException as exc:
            raise UpstreamUnavailableError() from exc
        return message.id

    async def _ticket_webhook(self, channel: discord.TextChannel) -> discord.Webhook:
        webhooks = await channel.webhooks()
        for webhook in webhooks:
            if webhook.name == WEBHOOK_NAME and webhook.token:
                return webhook
        return await channel.create_webhook(name=WEBHOOK_NAME)

    async def send_as_identity(
        self,
        channel_id: int,
        content: str,
        display_name: str,
        avatar_url: str | None,
        notices: Sequence[Notice] = (),
    ) -> int:
        channel = await self._text_channel(channel_id)
        try:
            webhook = await self._ticket_webhook(channel)
            message = await webhook.send(
                content=content,
                username=display_name[:80],
                avatar_url=avatar_url or discord.utils.MISSING,
                embeds=[notice_embed(n) for n in notices],
                wait=True,
            )
        except discord.NotFound as exc:
            raise ChannelGoneError() from exc
        except discord.HTTPException as exc:
            LOGGER.warning("Identity send failed channel=%s: %s", channel_id, exc)
            raise UpstreamUnavailableError() from exc
        return message.id

    async def publish_panel(self, panel: TicketPanel) -> int:
        from views.ticket_panel import TicketPanelView

        channel = await self._text_channel(panel.channel_id)
        view = TicketPanelView(self.bot, panel.id)
        try:
            message = await channel.send(embed=panel_embed(panel), view=view)
        except discord.HTTPException as exc:
            raise UpstreamUnavailableError() from exc
        self.bot.add_view(view)
        return message.id

    async def list_channels(self, guild_id: int) -> list[ChannelInfo]:
        guild = await self._guild(guild_id)
        return [ChannelInfo(id=c.id, name=c.name) for c in guild.text_channels]

    async def list_categories(self, guild_id: int) -> list[ChannelInfo]:
        guild = await self._guild(guild_id)
        return [ChannelInfo(id=c.id, name=c.name) for c in guild.categories]

    async def list_roles(self, guild_id: int) -> list[RoleInfo]:
        guild = await self._guild(guild_id)
        return [
            RoleInfo(id=role.id, name=role.name)
            for role in guild.roles
            if not role.is_default() and not role.managed
        ]

    async def resolve_role(self, guild_id: int, role_id: int) -> RoleInfo | None:
        guild = await self._guild(guild_id)
        role = guild.get_role(role_id)
        if role is None or role.is_default():
            return None
        return RoleInfo(id=role.id, name=role.name)

    async def get_member_role_ids(self, guild_id: int, user_id: int) -> set[int]:
        guild = await self._guild(guild_id)
        member = guild.get_member(user_id)
        if member is None:
            try:
                member = await guild.fetch_member(user_id)
            except discord.NotFound:
                return set()
            except discord.HTTPException as exc:
                raise UpstreamUnavailableError() from exc
        return {role.id for role in member.roles}
