"""
Timeout statistics commands.

- /timeouts user: how often and how long a member has been timed out
- /timeouts announcements_configure: channel and/or prefix for announcements
- /timeouts announcements_stop: turn announcements off
"""

import discord
from discord import Option
from discord.ext import commands

from loki.bot.runtime import LokiRuntime
from loki.datatypes.discord_datatypes import ChannelID, UserID
from loki.datatypes.errors import LokiError
from loki.features.timeout_aggregator import format_summary
from loki.util.discord_utils import require_guild, require_manage_permission, respond_error
from loki.util.logger import get_logger

logger = get_logger("timeout_commands")


class TimeoutCog(commands.Cog):
    """Timeout statistics for members."""

    timeouts = discord.SlashCommandGroup("timeouts", "Timeout statistics for a given user.")

    def __init__(self, bot: discord.Bot, runtime: LokiRuntime) -> None:
        self.bot = bot
        self.runtime = runtime
        logger.info("[TIMEOUT CMDS] Timeout cog loaded")

    @timeouts.command(name="user", description="Timeout statistics for a given user.")
    async def user(
        self,
        ctx: discord.ApplicationContext,
        user: Option(discord.Member, "The user to view timeout statistics of."),  # type: ignore
    ) -> None:
        guild_id = await require_guild(ctx)
        if guild_id is None:
            return

        user_id = UserID.from_object(user)
        record = await self.runtime.timeouts.check_user(guild_id, user_id)
        await ctx.respond(format_summary(user_id, record), ephemeral=True)

    @timeouts.command(
        name="announcements_configure",
        description="Announce new timeouts in a channel, optionally with a prefix.",
    )
    async def announcements_configure(
        self,
        ctx: discord.ApplicationContext,
        channel: Option(discord.TextChannel, "Where to announce timeouts.", required=False, default=None),  # type: ignore
        prefix: Option(str, "Text placed before each announcement.", required=False, default=None),  # type: ignore
    ) -> None:
        guild_id = await require_guild(ctx)
        if guild_id is None:
            return
        if not await require_manage_permission(ctx):
            return

        if channel is None and prefix is None:
            await ctx.respond("Give a channel, a prefix, or both.", ephemeral=True)
            return

        try:
            config = await self.runtime.timeouts.configure_announcements(
                guild_id,
                channel=ChannelID.from_object(channel) if channel is not None else None,
                prefix=prefix,
            )
        except LokiError as exc:
            await respond_error(ctx, exc)
            return

        prefix_text = f" with prefix `{config.prefix}`" if config.prefix else ""
        await ctx.respond(f"Timeouts will be announced in <#{config.channel}>{prefix_text}.", ephemeral=True)

    @timeouts.command(
        name="announcements_stop",
        description="Stop announcing timeouts.",
    )
    async def announcements_stop(self, ctx: discord.ApplicationContext) -> None:
        guild_id = await require_guild(ctx)
        if guild_id is None:
            return
        if not await require_manage_permission(ctx):
            return

        try:
            changed = await self.runtime.timeouts.stop_announcements(guild_id)
        except LokiError as exc:
            await respond_error(ctx, exc)
            return

        await ctx.respond(
            "Timeout announcements stopped." if changed else "Timeout announcements were not configured.",
            ephemeral=True,
        )


def setup(bot: discord.Bot, runtime: LokiRuntime) -> None:
    bot.add_cog(TimeoutCog(bot, runtime))
