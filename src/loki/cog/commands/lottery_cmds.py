"""
Nickname lottery commands.

/nickname_lottery edit opens a form prefilled with the current pool, one
nickname per line. Submitting it replaces the pool; an empty form turns the
lottery off.

/nickname_lottery announcements_configure picks the channel where members the
bot could not rename are told their new name, and the heading of that post.
"""

import discord
from discord import Option
from discord.ext import commands

from loki.bot.runtime import LokiRuntime
from loki.datatypes.discord_datatypes import ChannelID, GuildID
from loki.datatypes.errors import LokiError
from loki.features.rotation_lottery import MAX_NICKNAME_LENGTH, announcement_title, parse_pool_text
from loki.util.discord_utils import (
    ADMIN_PERMISSIONS,
    discord_timestamp,
    require_guild,
    require_manage_permission,
    respond_error,
)
from loki.util.logger import get_logger

logger = get_logger("lottery_commands")


class NicknamePoolModal(discord.ui.Modal):
    """Edit form for a guild's nickname pool."""

    def __init__(self, runtime: LokiRuntime, guild_id: GuildID, current_pool: list[str]) -> None:
        super().__init__(title="Nickname lottery")
        self.runtime = runtime
        self.guild_id = guild_id
        self.add_item(
            discord.ui.InputText(
                label="Nicknames (one per line)",
                style=discord.InputTextStyle.long,
                placeholder=f"One nickname per line, up to {MAX_NICKNAME_LENGTH} characters each.",
                value="\n".join(current_pool) or None,
                required=False,
                max_length=4000,
            )
        )

    async def callback(self, interaction: discord.Interaction) -> None:
        names = parse_pool_text(self.children[0].value or "")
        try:
            pool, next_fire = await self.runtime.lottery.set_nickname_pool(self.guild_id, names)
        except LokiError as exc:
            await interaction.response.send_message(f"❌ {exc}", ephemeral=True)
            return

        if next_fire is None:
            await interaction.response.send_message("Nickname pool cleared, the lottery is off.", ephemeral=True)
            return

        await interaction.response.send_message(
            f"Saved {len(pool)} nickname(s). Next rotation {discord_timestamp(next_fire, 'R')}.",
            ephemeral=True,
        )


class LotteryCog(commands.Cog):
    """Commands for the nickname lottery."""

    nickname_lottery = discord.SlashCommandGroup(
        "nickname_lottery",
        "Commands for the nickname lottery.",
        default_member_permissions=ADMIN_PERMISSIONS,
    )

    def __init__(self, bot: discord.Bot, runtime: LokiRuntime) -> None:
        self.bot = bot
        self.runtime = runtime
        logger.info("[LOTTERY CMDS] Lottery cog loaded")

    @nickname_lottery.command(name="edit", description="Edit the pool of nicknames handed out by the lottery.")
    async def edit(self, ctx: discord.ApplicationContext) -> None:
        guild_id = await require_guild(ctx)
        if guild_id is None:
            return

        try:
            pool = await self.runtime.lottery.nickname_pool(guild_id)
        except LokiError as exc:
            await respond_error(ctx, exc)
            return
        await ctx.send_modal(NicknamePoolModal(self.runtime, guild_id, pool))

    @nickname_lottery.command(name="show", description="Show the nickname pool and the next rotation.")
    async def show(self, ctx: discord.ApplicationContext) -> None:
        guild_id = await require_guild(ctx)
        if guild_id is None:
            return

        state = await self.runtime.scheduler.read(guild_id)
        pool = state.lottery.nickname_pool
        if not pool:
            await ctx.respond("**No nicknames in the pool.**\nUse `/nickname_lottery edit` to add some.", ephemeral=True)
            return

        lines = [f"**{len(pool)} nickname(s):**"] + [f"•\t{name}" for name in pool]
        if state.lottery.next_fire_at is not None:
            lines.append(f"\nNext rotation {discord_timestamp(state.lottery.next_fire_at, 'R')}.")
        await ctx.respond("\n".join(lines), ephemeral=True)

    @nickname_lottery.command(
        name="announcements_configure",
        description="Announce members the bot fails to rename, and every rename on April 1.",
    )
    async def announcements_configure(
        self,
        ctx: discord.ApplicationContext,
        channel: Option(discord.TextChannel, "Where to post the announcements.", required=False, default=None),  # type: ignore
        title_override: Option(str, "Heading of each announcement.", required=False, default=None),  # type: ignore
    ) -> None:
        guild_id = await require_guild(ctx)
        if guild_id is None:
            return
        if not await require_manage_permission(ctx):
            return

        if channel is None and title_override is None:
            await ctx.respond("Give a channel, a title, or both.", ephemeral=True)
            return

        try:
            config = await self.runtime.lottery.configure_announcements(
                guild_id,
                channel=ChannelID.from_object(channel) if channel is not None else None,
                title=title_override,
            )
        except LokiError as exc:
            await respond_error(ctx, exc)
            return

        await ctx.respond(
            "**Nickname lottery complaints channel updated!**\n"
            f"Channel: <#{config.announcement_channel}>\n"
            f"Title text: {announcement_title(config)}",
            ephemeral=True,
        )

    @nickname_lottery.command(name="announcements_stop", description="Stop nickname lottery announcements.")
    async def announcements_stop(self, ctx: discord.ApplicationContext) -> None:
        guild_id = await require_guild(ctx)
        if guild_id is None:
            return
        if not await require_manage_permission(ctx):
            return

        try:
            changed = await self.runtime.lottery.stop_announcements(guild_id)
        except LokiError as exc:
            await respond_error(ctx, exc)
            return

        await ctx.respond(
            "Nickname lottery announcements stopped." if changed else "Nickname lottery announcements were not configured.",
            ephemeral=True,
        )


def setup(bot: discord.Bot, runtime: LokiRuntime) -> None:
    bot.add_cog(LotteryCog(bot, runtime))
