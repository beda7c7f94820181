from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord

from core.errors import BotError, ValidationError, send_error_response
from utils.embeds import make_embed, success_embed

if TYPE_CHECKING:
    from core.bot import TicketBot
    from database.models import TicketPanel, TicketRecord

LOGGER = logging.getLogger(__name__)


def _created_embed(ticket: TicketRecord) -> discord.Embed:
    if ticket.channel_id is not None:
        return success_embed(f"Ticket created: <#{ticket.channel_id}>")
    return make_embed(
        title=f"Ticket {ticket.display_name}",
        description="Your ticket was recorded but its channel could not be created yet. Staff have been notified.",
        color=discord.Color.orange(),
    )


async def _open_ticket(
    bot: TicketBot,
    interaction: discord.Interaction,
    panel: TicketPanel,
    answers: dict[str, str] | None = None,
) -> None:
    if interaction.guild is None:
        raise ValidationError("Guild context is required.")
    ticket = await bot.ticket_service.create_ticket(
        guild_id=interaction.guild.id,
        panel_id=panel.id,
        creator_id=interaction.user.id,
        creator_name=interaction.user.display_name,
        form_responses=answers,
    )
    await interaction.followup.send(embed=_created_embed(ticket), ephemeral=True)


class TicketFormModal(discord.ui.Modal):
    def __init__(self, bot: TicketBot, panel: TicketPanel) -> None:
        super().__init__(title=panel.title[:45] or "Create Ticket", timeout=600)
        self.bot = bot
        self.panel = panel
        self._inputs: list[tuple[str, discord.ui.TextInput]] = []

        for form_field in panel.form_fields:
            placeholder = form_field.placeholder
            if form_field.kind == "choice":
                placeholder = placeholder or " / ".join(form_field.options)
            text_input = discord.ui.TextInput(
                label=form_field.label[:45],
                placeholder=placeholder[:100] or None,
                style=discord.TextStyle.long if form_field.kind == "multiline" else discord.TextStyle.short,
                required=form_field.required,
                max_length=1000,
            )
            self._inputs.append((form_field.id, text_input))
            self.add_item(text_input)

    async def on_submit(self, interaction: discord.Interaction) -> None:
        await interaction.response.defer(ephemeral=True, thinking=True)
        answers = {field_id: str(text_input.value).strip() for field_id, text_input in self._inputs}
        await _open_ticket(self.bot, interaction, self.panel, answers)

    async def on_error(self, interaction: discord.Interaction, error: Exception) -> None:
        if isinstance(error, BotError):
            await send_error_response(interaction, error.user_message)
            return
        LOGGER.exception(
            "Ticket form failed. panel=%s guild=%s user=%s",
            self.panel.id,
            getattr(interaction.guild, "id", None),
            interaction.user.id,
            exc_info=error,
        )
        await send_error_response(interaction, "Ticket creation failed due to an unexpected error.")


class TicketPanelView(discord.ui.View):
    def __init__(self, bot: TicketBot, panel_id: str) -> None:
        super().__init__(timeout=None)
        self.bot = bot
        self.panel_id = panel_id
        button = discord.ui.Button(
            label="Create Ticket",
            style=discord.ButtonStyle.primary,
            emoji="🎫",
            custom_id=f"ticketdesk:panel:{panel_id}",
        )
        button.callback = self.create_ticket
        self.add_item(button)

    async def create_ticket(self, interaction: discord.Interaction) -> None:
        panel = await self.bot.panel_service.get_panel(self.panel_id)
        if panel.is_deleted:
            raise ValidationError("This panel is no longer accepting tickets.")
        if panel.form_fields:
            await interaction.response.send_modal(TicketFormModal(self.bot, panel))
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        await _open_ticket(self.bot, interaction, panel)

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
            "Panel button failed. panel=%s guild=%s user=%s",
            self.panel_id,
            getattr(interaction.guild, "id", None),
            interaction.user.id,
            exc_info=error,
        )
        await send_error_response(interaction, "Ticket creation failed due to an unexpected error.")
