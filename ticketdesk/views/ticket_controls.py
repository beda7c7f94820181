from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord

from core.errors import BotError, ValidationError, send_error_response
from utils.constants import TICKET_STATUS_CLOSED, TICKET_STATUS_OPEN
from utils.embeds import success_embed

if TYPE_CHECKING:
    from core.bot import TicketBot
    from database.models import TicketRecord

LOGGER = logging.getLogger(__name__)


async def resolve_channel_ticket(bot: TicketBot, interaction: discord.Interaction) -> TicketRecord:
    if interaction.guild is None or interaction.channel is None:
        raise ValidationError("Guild context is required.")
    return await bot.ticket_service.get_ticket_for_channel(interaction.channel.id)


class _TicketControlsView(discord.ui.View):
    def __init__(self, bot: TicketBot) -> None:
        super().__init__(timeout=None)
        self.bot = bot

    async def on_error(
        self,
        interaction: discord.Interaction,
        error: Exception,
        item: discord.ui.Item[discord.ui.View],
    ) -> None:
        if isinstance(error, BotError):
            await send_error_response(interaction, error.user_message)
            return
        LOGGER.exception(
            "Ticket control failed. custom_id=%s guild=%s channel=%s user=%s",
            getattr(item, "custom_id", None),
            getattr(interaction.guild, "id", None),
            getattr(interaction.channel, "id", None),
            interaction.user.id,
            exc_info=error,
        )
        await send_error_response(interaction, "Action failed due to an unexpected error.")


class OpenTicketControlsView(_TicketControlsView):
    @discord.ui.button(
        label="Claim",
        style=discord.ButtonStyle.primary,
        emoji="🛠️",
        custom_id="ticketdesk:claim",
    )
    async def claim_button(self, interaction: discord.Interaction, _: discord.ui.Button) -> None:
        ticket = await resolve_channel_ticket(self.bot, interaction)
        await interaction.response.defer(ephemeral=True, thinking=True)
        updated = await self.bot.ticket_service.claim_ticket(ticket.id, interaction.user.id)
        message = "You claimed this ticket." if updated.claimed_by_id else "You released this ticket."
        await interaction.followup.send(embed=success_embed(message), ephemeral=True)

    @discord.ui.button(
        label="Close",
        style=discord.ButtonStyle.danger,
        emoji="🔒",
        custom_id="ticketdesk:close",
    )
    async def close_button(self, interaction: discord.Interaction, _: discord.ui.Button) -> None:
        ticket = await resolve_channel_ticket(self.bot, interaction)
        await interaction.response.defer(ephemeral=True, thinking=True)
        await self.bot.ticket_service.set_status(ticket.id, interaction.user.id, TICKET_STATUS_CLOSED)
        await interaction.followup.send(embed=success_embed("Ticket closed."), ephemeral=True)


class ClosedTicketControlsView(_TicketControlsView):
    @discord.ui.button(
        label="Save Transcript",
        style=discord.ButtonStyle.secondary,
        emoji="🧾",
        custom_id="ticketdesk:transcript",
    )
    async def transcript_button(self, interaction: discord.Interaction, _: discord.ui.Button) -> None:
        ticket = await resolve_channel_ticket(self.bot, interaction)
        await interaction.response.defer(ephemeral=True, thinking=True)
        await self.bot.ticket_service.generate_transcript(ticket.id, interaction.user.id)
        await interaction.followup.send(
            embed=success_embed(f"Transcript saved to <#{ticket.transcript_channel_id}>."),
            ephemeral=True,
        )

    @discord.ui.button(
        label="Reopen",
        style=discord.ButtonStyle.success,
        emoji="♻️",
        custom_id="ticketdesk:reopen",
    )
    async def reopen_button(self, interaction: discord.Interaction, _: discord.ui.Button) -> None:
        ticket = await resolve_channel_ticket(self.bot, interaction)
        await interaction.response.defer(ephemeral=True, thinking=True)
        await self.bot.ticket_service.set_status(ticket.id, interaction.user.id, TICKET_STATUS_OPEN)
        await interaction.followup.send(embed=success_embed("Ticket reopened."), ephemeral=True)

    @discord.ui.button(
        label="Delete Channel",
        style=discord.ButtonStyle.danger,
        emoji="🗑️",
        custom_id="ticketdesk:delete",
    )
    async def delete_button(self, interaction: discord.Interaction, _: discord.ui.Button) -> None:
        ticket = await resolve_channel_ticket(self.bot, interaction)
        await self.bot.tenant_service.require_operator(
            await self.bot.tenant_service.get_tenant(ticket.guild_id),
            interaction.user.id,
        )
        await interaction.response.send_message(embed=success_embed("Deleting this channel."), ephemeral=True)
        await self.bot.ticket_service.delete_channel(ticket.id, interaction.user.id)
