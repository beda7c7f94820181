from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import discord

if TYPE_CHECKING:
    from database.models import TicketPanel
    from services.gateway import Notice

_TONE_COLORS = {
    "info": discord.Color.blurple,
    "success": discord.Color.green,
    "warning": discord.Color.orange,
    "danger": discord.Color.red,
    "staff": discord.Color.gold,
}


def make_embed(
    title: str,
    description: str,
    color: discord.Color | None = None,
    footer: str | None = None,
) -> discord.Embed:
    resolved_color = color if color is not None else discord.Color.blurple()
    embed = discord.Embed(
        title=title,
        description=description,
        color=resolved_color,
        timestamp=datetime.now(UTC),
    )
    if footer:
        embed.set_footer(text=footer)
    return embed


def success_embed(message: str) -> discord.Embed:
    return make_embed(title="Success", description=message, color=discord.Color.green())


def notice_embed(notice: Notice) -> discord.Embed:
    color = _TONE_COLORS.get(notice.tone, discord.Color.blurple)()
    embed = make_embed(title=notice.title, description=notice.description, color=color, footer=notice.footer)
    for name, value in notice.fields:
        embed.add_field(name=name, value=value or "-", inline=False)
    return embed


def panel_embed(panel: TicketPanel) -> discord.Embed:
    embed = make_embed(title=panel.title, description=panel.description, color=discord.Color.blurple())
    roles = " ".join(f"<@&{role_id}>" for role_id in panel.support_role_ids) or "-"
    embed.add_field(name="Support Team", value=roles, inline=False)
    embed.add_field(name="Ticket Format", value=f"`{panel.prefix}-NUMBER`", inline=False)
    return embed
