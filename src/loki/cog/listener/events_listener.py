"""Event listener Cog for Loki.

Handles the gateway lifecycle (``on_ready``) and member updates, which are
where timeouts become visible.
"""

import discord
from discord.ext import commands

from loki.bot.runtime import LokiRuntime
from loki.datatypes.discord_datatypes import GuildID, UserID
from loki.datatypes.errors import LokiError
from loki.util.logger import get_logger

logger = get_logger("events_listener")


class EventsListenerCog(commands.Cog):
    """Handles Discord bot lifecycle and member events."""

    def __init__(self, bot: discord.Bot, runtime: LokiRuntime) -> None:
        self.bot = bot
        self.runtime = runtime
        logger.info("[EVENTS LISTENER] Events listener cog loaded")

    # ------------------------------------------------------------------
    # Lifecycle events
    # ------------------------------------------------------------------

    @commands.Cog.listener(name="on_ready")
    async def on_ready(self) -> None:
        """Set presence and start the scheduler the first time the gateway is ready."""
        if not self.bot.user:
            logger.warning("[EVENTS LISTENER] Bot partially connected, user info not yet available.")
            return

        await self.bot.change_presence(
            status=discord.Status.online,
            activity=discord.Activity(type=discord.ActivityType.watching, name="the memes roll in"),
        )
        logger.info("Bot connected as %s (ID: %s)", self.bot.user, self.bot.user.id)

        try:
            started = await self.runtime.start()
        except LokiError:
            logger.exception("[EVENTS LISTENER] Failed to start the scheduler")
            return
        if not started:
            logger.debug("[EVENTS LISTENER] Reconnected; scheduler already running")

    # ------------------------------------------------------------------
    # Member events
    # ------------------------------------------------------------------

    @commands.Cog.listener(name="on_member_update")
    async def on_member_update(self, before: discord.Member, after: discord.Member) -> None:
        """Count timeouts as they are applied."""
        until = after.communication_disabled_until
        if until is None or until == before.communication_disabled_until:
            return

        try:
            await self.runtime.timeouts.on_member_update(
                GuildID.from_object(after.guild), UserID.from_object(after), until
            )
        except LokiError:
            logger.exception("[EVENTS LISTENER] Failed to record timeout of %s in %s", after.id, after.guild.id)
            await self.runtime.scheduler.report_error(f"Could not record timeout of <@{after.id}> in guild {after.guild.id}.")


def setup(bot: discord.Bot, runtime: LokiRuntime) -> None:
    """Register the EventsListenerCog with the bot."""
    bot.add_cog(EventsListenerCog(bot, runtime))
