"""
Small helpers shared by the command cogs.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

import discord

from loki.datatypes.discord_datatypes import GuildID
from loki.datatypes.errors import LokiError, PersistenceFailure
from loki.util.logger import get_logger

logger = get_logger("discord_utils")

# Permission set applied to the configuration command groups.
ADMIN_PERMISSIONS = discord.Permissions(administrator=True)


async def require_guild(ctx: discord.ApplicationContext) -> Optional[GuildID]:
    """Return the invoking guild, or answer ephemerally and return None in DMs."""
    if not ctx.guild_id:
        await ctx.respond("This command can only be used in a server.", ephemeral=True)
        return None
    return GuildID(ctx.guild_id)


def has_manage_permission(ctx: discord.ApplicationContext) -> bool:
    if not isinstance(ctx.user, discord.Member):
        return False
    return ctx.user.guild_permissions.manage_guild


async def require_manage_permission(ctx: discord.ApplicationContext) -> bool:
    if not has_manage_permission(ctx):
        await ctx.respond("You need Manage Server permission.", ephemeral=True)
        return False
    return True


async def respond_error(ctx: discord.ApplicationContext, exc: LokiError) -> None:
    """Show a feature error to the invoking user."""
    if isinstance(exc, PersistenceFailure):
        logger.error("[COMMANDS] /%s failed to persist: %s", ctx.command.qualified_name if ctx.command else "?", exc)
        text = "❌ Could not save the change, please try again later."
    else:
        text = f"❌ {exc}"

    if ctx.response.is_done():
        await ctx.send_followup(text, ephemeral=True)
    else:
        await ctx.respond(text, ephemeral=True)


def discord_timestamp(when: datetime, style: str = "F") -> str:
    """Render ``when`` as a client-localised Discord timestamp."""
    return discord.utils.format_dt(when, style=style)


def truncate_label(text: str, limit: int = 45) -> str:
    """Cut ``text`` to a modal label's length, marking the cut with an ellipsis."""
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"
