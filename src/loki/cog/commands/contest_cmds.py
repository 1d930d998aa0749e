"""
Meme contest commands.

- /memes set_channel: start the weekly contest in a channel
- /memes unset_channel: stop the contest and forget its entries
"""

import discord
from discord import Option
from discord.ext import commands

from loki.bot.runtime import LokiRuntime
from loki.datatypes.discord_datatypes import ChannelID
from loki.datatypes.errors import LokiError
from loki.util.discord_utils import ADMIN_PERMISSIONS, discord_timestamp, require_guild, respond_error
from loki.util.logger import get_logger

logger = get_logger("contest_commands")


class ContestCog(commands.Cog):
    """Configuration commands for the meme-voting system."""

    memes = discord.SlashCommandGroup(
        "memes",
        "Configuration commands for the meme-voting system.",
        default_member_permissions=ADMIN_PERMISSIONS,
    )

    def __init__(self, bot: discord.Bot, runtime: LokiRuntime) -> None:
        self.bot = bot
        self.runtime = runtime
        logger.info("[CONTEST CMDS] Contest cog loaded")

    @memes.command(name="set_channel", description="Sets the memes channel for this server and initialises the meme subsystem.")
    async def set_channel(
        self,
        ctx: discord.ApplicationContext,
        channel: Option(discord.TextChannel, "The channel which is to be used for memes."),  # type: ignore
    ) -> None:
        guild_id = await require_guild(ctx)
        if guild_id is None:
            return

        await ctx.defer(ephemeral=True)
        try:
            resolves_at = await self.runtime.contest.set_channel(guild_id, ChannelID.from_object(channel))
        except LokiError as exc:
            await respond_error(ctx, exc)
            return

        await ctx.send_followup(
            f"Memes channel set to {channel.mention}. Voting closes {discord_timestamp(resolves_at)}.",
            ephemeral=True,
        )

    @memes.command(name="unset_channel", description="Unsets the memes channel for this server, resetting the meme subsystem.")
    async def unset_channel(self, ctx: discord.ApplicationContext) -> None:
        guild_id = await require_guild(ctx)
        if guild_id is None:
            return

        await ctx.defer(ephemeral=True)
        try:
            previous = await self.runtime.contest.unset_channel(guild_id)
        except LokiError as exc:
            await respond_error(ctx, exc)
            return

        if previous is None:
            await ctx.send_followup("No memes channel was set.", ephemeral=True)
        else:
            await ctx.send_followup("Memes channel unset.", ephemeral=True)


def setup(bot: discord.Bot, runtime: LokiRuntime) -> None:
    bot.add_cog(ContestCog(bot, runtime))
