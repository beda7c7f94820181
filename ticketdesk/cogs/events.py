from __future__ import annotations

import logging

import discord
from discord.ext import commands

from core.bot import TicketBot

LOGGER = logging.getLogger(__name__)


class EventsCog(commands.Cog):
    def __init__(self, bot: TicketBot) -> None:
        self.bot = bot

    @commands.Cog.listener()
    async def on_guild_join(self, guild: discord.Guild) -> None:
        LOGGER.info("Joined guild %s (%s)", guild.id, guild.name)

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        # Webhook posts are the console mirror and are already in the log.
        if message.author.bot or message.webhook_id is not None or not message.guild:
            return
        if not isinstance(message.channel, discord.TextChannel):
            return
        await self.bot.ticket_service.ingest_channel_message(
            guild_id=message.guild.id,
            channel_id=message.channel.id,
            author_id=message.author.id,
            author_name=message.author.display_name,
            avatar_url=message.author.display_avatar.url,
            content=message.content,
            attachments=[attachment.url for attachment in message.attachments],
        )

    @commands.Cog.listener()
    async def on_guild_channel_delete(self, channel: discord.abc.GuildChannel) -> None:
        await self.bot.ticket_service.handle_channel_deleted(channel.id)


async def setup(bot: TicketBot) -> None:
    await bot.add_cog(EventsCog(bot))
