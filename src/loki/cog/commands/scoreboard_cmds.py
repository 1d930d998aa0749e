"""
Scoreboard commands.

Scoreboards are named per-guild tables of user scores. Anyone can view a
board and set their own score; creating or deleting a board and overriding
someone else's score needs Manage Server.
"""

import discord
from discord import Option
from discord.ext import commands

from loki.bot.runtime import LokiRuntime
from loki.datatypes.discord_datatypes import GuildID, UserID
from loki.datatypes.errors import LokiError
from loki.features.scoreboards import MAX_SCOREBOARDS, ScoreEntry
from loki.util.discord_utils import require_guild, require_manage_permission, respond_error
from loki.util.logger import get_logger

logger = get_logger("scoreboard_commands")


async def scoreboard_names(ctx: discord.AutocompleteContext) -> list[str]:
    """Autocomplete board names of the invoking guild."""
    guild_id = ctx.interaction.guild_id
    if guild_id is None or ctx.cog is None:
        return []
    names = await ctx.cog.runtime.scoreboards.names(GuildID(guild_id))
    typed = (ctx.value or "").lower()
    return [name for name in names if typed in name.lower()][:25]


def render_board(name: str, entries: list[ScoreEntry]) -> discord.Embed:
    embed = discord.Embed(title=name, color=discord.Color.blurple())
    if not entries:
        embed.description = "No scores yet."
        return embed
    embed.add_field(name="#", value="\n".join(str(pos) for pos, _, _ in entries), inline=True)
    embed.add_field(name="User", value="\n".join(f"<@{uid}>" for _, uid, _ in entries), inline=True)
    embed.add_field(name="Score", value="\n".join(str(score) for _, _, score in entries), inline=True)
    return embed


def _was(previous: int | None) -> str:
    return f" (was `{previous}`)" if previous is not None else ""


class ScoreboardCog(commands.Cog):
    """Track all the scores!"""

    scoreboard = discord.SlashCommandGroup("scoreboard", "Track all the scores!")

    def __init__(self, bot: discord.Bot, runtime: LokiRuntime) -> None:
        self.bot = bot
        self.runtime = runtime
        logger.info("[SCOREBOARD CMDS] Scoreboard cog loaded")

    @commands.slash_command(name="create_scoreboard", description=f"Create a new scoreboard (max. {MAX_SCOREBOARDS}).")
    async def create_scoreboard(
        self,
        ctx: discord.ApplicationContext,
        name: Option(str, "The scoreboard's name.", min_length=1, max_length=100),  # type: ignore
    ) -> None:
        guild_id = await require_guild(ctx)
        if guild_id is None or not await require_manage_permission(ctx):
            return

        try:
            await self.runtime.scoreboards.create(guild_id, name)
        except LokiError as exc:
            await ctx.respond(f"**Could not create scoreboard `{name}`:**\n{exc}", ephemeral=True)
            return
        await ctx.respond(f"**Created new scoreboard `{name.strip()}`!**")

    @scoreboard.command(name="delete", description="Delete a scoreboard.")
    async def delete(
        self,
        ctx: discord.ApplicationContext,
        name: Option(str, "Which scoreboard to use.", autocomplete=scoreboard_names),  # type: ignore
    ) -> None:
        guild_id = await require_guild(ctx)
        if guild_id is None or not await require_manage_permission(ctx):
            return

        try:
            await self.runtime.scoreboards.delete(guild_id, name)
        except LokiError as exc:
            await respond_error(ctx, exc)
            return
        await ctx.respond(f"**Deleted scoreboard `{name}`.**")

    @scoreboard.command(name="view", description="View the top 10 scores on the board, or a given user's score.")
    async def view(
        self,
        ctx: discord.ApplicationContext,
        name: Option(str, "Which scoreboard to use.", autocomplete=scoreboard_names),  # type: ignore
        user: Option(discord.Member, "The specific user to check the score of.", required=False, default=None),  # type: ignore
    ) -> None:
        guild_id = await require_guild(ctx)
        if guild_id is None:
            return

        try:
            if user is None:
                entries = await self.runtime.scoreboards.top(guild_id, name)
            else:
                entry = await self.runtime.scoreboards.position(guild_id, name, UserID.from_object(user))
                entries = [entry] if entry else []
        except LokiError as exc:
            await respond_error(ctx, exc)
            return

        if user is not None and not entries:
            await ctx.respond(f"{user.mention} has no score on `{name}`.", ephemeral=True)
            return
        await ctx.respond(embed=render_board(name, entries))

    @scoreboard.command(name="set", description="Set your score on a board.")
    async def set_score(
        self,
        ctx: discord.ApplicationContext,
        name: Option(str, "Which scoreboard to use.", autocomplete=scoreboard_names),  # type: ignore
        score: Option(int, "Your score!"),  # type: ignore
    ) -> None:
        guild_id = await require_guild(ctx)
        if guild_id is None:
            return

        try:
            previous = await self.runtime.scoreboards.set_score(guild_id, name, UserID.from_object(ctx.user), score)
        except LokiError as exc:
            await respond_error(ctx, exc)
            return
        await ctx.respond(
            f"**Updated scoreboard `{name}`**\n{ctx.user.mention} has updated their score to `{score}`{_was(previous)}."
        )

    @scoreboard.command(name="override", description="Override a user's score on the board.")
    async def override(
        self,
        ctx: discord.ApplicationContext,
        name: Option(str, "Which scoreboard to use.", autocomplete=scoreboard_names),  # type: ignore
        user: Option(discord.Member, "The user whose score you wish to override."),  # type: ignore
        score: Option(int, "The score to set for the given user."),  # type: ignore
    ) -> None:
        guild_id = await require_guild(ctx)
        if guild_id is None or not await require_manage_permission(ctx):
            return

        try:
            previous = await self.runtime.scoreboards.set_score(guild_id, name, UserID.from_object(user), score)
        except LokiError as exc:
            await respond_error(ctx, exc)
            return
        await ctx.respond(
            f"**Updated scoreboard `{name}`**\n"
            f"{ctx.user.mention} has overridden {user.mention}'s score to `{score}`{_was(previous)}."
        )


def setup(bot: discord.Bot, runtime: LokiRuntime) -> None:
    bot.add_cog(ScoreboardCog(bot, runtime))
