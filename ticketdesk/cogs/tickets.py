from __future__ import annotations

import logging

import discord
from discord.ext import commands

from core.bot import TicketBot
from core.errors import ValidationError
from database.models import TicketRecord
from utils.constants import TICKET_STATUS_CLOSED, TICKET_STATUS_OPEN
from utils.embeds import make_embed, success_embed
from views.ticket_controls import ClosedTicketControlsView, OpenTicketControlsView
from views.ticket_panel import TicketPanelView

LOGGER = logging.getLogger(__name__)


class TicketsCog(commands.Cog):
    def __init__(self, bot: TicketBot) -> None:
        self.bot = bot

    async def cog_load(self) -> None:
        self.bot.add_view(OpenTicketControlsView(self.bot))
        self.bot.add_view(ClosedTicketControlsView(self.bot))
        panels = await self.bot.panel_repo.list_live()
        for panel in panels:
            self.bot.add_view(TicketPanelView(self.bot, panel.id))
        LOGGER.info("Registered persistent views for %s panels", len(panels))

    async def _current_ticket(self, ctx: commands.Context[TicketBot]) -> TicketRecord:
        if not ctx.guild:
            raise ValidationError("Guild context is required.")
        if ctx.interaction is not None:
            await ctx.defer(ephemeral=True)
        return await self.bot.ticket_service.get_ticket_for_channel(ctx.channel.id)

    async def _done(self, ctx: commands.Context[TicketBot], message: str) -> None:
        await ctx.reply(embed=success_embed(message), mention_author=False, ephemeral=True)

    @commands.hybrid_group(name="ticket", with_app_command=True, description="Ticket command group.")
    async def ticket(self, ctx: commands.Context[TicketBot]) -> None:
        if ctx.invoked_subcommand is None:
            await ctx.reply(
                embed=make_embed(
                    "Ticket Commands",
                    "`/ticket claim` to claim or release\n"
                    "`/ticket close` and `/ticket reopen`\n"
                    "`/ticket adduser` and `/ticket removeuser`\n"
                    "`/ticket upgrade <role>` to escalate\n"
                    "`/ticket transcript` to archive\n"
                    "`/ticket delete` to remove the channel",
                ),
                mention_author=False,
            )

    @ticket.command(name="claim", description="Claim or release the current ticket.")
    async def ticket_claim(self, ctx: commands.Context[TicketBot]) -> None:
        ticket = await self._current_ticket(ctx)
        updated = await self.bot.ticket_service.claim_ticket(ticket.id, ctx.author.id)
        await self._done(ctx, "You claimed this ticket." if updated.claimed_by_id else "You released this ticket.")

    @ticket.command(name="close", description="Close the current ticket.")
    async def ticket_close(self, ctx: commands.Context[TicketBot]) -> None:
        ticket = await self._current_ticket(ctx)
        await self.bot.ticket_service.set_status(ticket.id, ctx.author.id, TICKET_STATUS_CLOSED)
        await self._done(ctx, "Ticket closed.")

    @ticket.command(name="reopen", description="Reopen the current ticket.")
    async def ticket_reopen(self, ctx: commands.Context[TicketBot]) -> None:
        ticket = await self._current_ticket(ctx)
        await self.bot.ticket_service.set_status(ticket.id, ctx.author.id, TICKET_STATUS_OPEN)
        await self._done(ctx, "Ticket reopened.")

    @ticket.command(name="adduser", description="Give a member access to the current ticket.")
    async def ticket_adduser(self, ctx: commands.Context[TicketBot], member: discord.Member) -> None:
        ticket = await self._current_ticket(ctx)
        added = await self.bot.ticket_service.add_participant(ticket.id, ctx.author.id, member.id)
        await self._done(ctx, f"{member.mention} added." if added else f"{member.mention} already has access.")

    @ticket.command(name="removeuser", description="Remove a member from the current ticket.")
    async def ticket_removeuser(self, ctx: commands.Context[TicketBot], member: discord.Member) -> None:
        ticket = await self._current_ticket(ctx)
        removed = await self.bot.ticket_service.remove_participant(ticket.id, ctx.author.id, member.id)
        await self._done(ctx, f"{member.mention} removed." if removed else f"{member.mention} was not a participant.")

    @ticket.command(name="upgrade", description="Escalate the current ticket to another support role.")
    async def ticket_upgrade(self, ctx: commands.Context[TicketBot], role: discord.Role) -> None:
        ticket = await self._current_ticket(ctx)
        await self.bot.ticket_service.escalate(ticket.id, ctx.author.id, role.id)
        await self._done(ctx, f"{role.mention} added to this ticket.")

    @ticket.command(name="transcript", description="Save a transcript of the current ticket.")
    async def ticket_transcript(self, ctx: commands.Context[TicketBot]) -> None:
        ticket = await self._current_ticket(ctx)
        artifact = await self.bot.ticket_service.generate_transcript(ticket.id, ctx.author.id)
        await self._done(ctx, f"Transcript with {artifact.line_count} messages sent to <#{ticket.transcript_channel_id}>.")

    @ticket.command(name="delete", description="Delete the current ticket channel.")
    async def ticket_delete(self, ctx: commands.Context[TicketBot]) -> None:
        ticket = await self._current_ticket(ctx)
        await self.bot.tenant_service.require_operator(
            await self.bot.tenant_service.get_tenant(ticket.guild_id),
            ctx.author.id,
        )
        await self._done(ctx, "Deleting this channel.")
        await self.bot.ticket_service.delete_channel(ticket.id, ctx.author.id)


async def setup(bot: TicketBot) -> None:
    await bot.add_cog(TicketsCog(bot))
