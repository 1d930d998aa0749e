"""
Event subscription commands.

Subscriptions are per user and global; notifications arrive as DMs.
"""

import discord
from discord import Option
from discord.ext import commands

from loki.bot.runtime import LokiRuntime
from loki.datatypes.discord_datatypes import UserID
from loki.datatypes.errors import LokiError
from loki.datatypes.event_datatypes import EventKind
from loki.util.discord_utils import respond_error
from loki.util.logger import get_logger

logger = get_logger("events_commands")

EVENT_CHOICES = [discord.OptionChoice(name=kind.value, value=kind.value) for kind in EventKind]


class EventsCog(commands.Cog):
    """Subscribe to bot events."""

    events = discord.SlashCommandGroup("events", "Subscribe to notifications about bot events.")

    def __init__(self, bot: discord.Bot, runtime: LokiRuntime) -> None:
        self.bot = bot
        self.runtime = runtime
        logger.info("[EVENTS CMDS] Events cog loaded")

    @events.command(name="subscribe", description="Get a direct message whenever the given event happens.")
    async def subscribe(
        self,
        ctx: discord.ApplicationContext,
        event: Option(str, "The event to subscribe to.", choices=EVENT_CHOICES),  # type: ignore
    ) -> None:
        kind = EventKind(event)
        try:
            changed = await self.runtime.event_bus.subscribe(UserID.from_object(ctx.user), kind)
        except LokiError as exc:
            await respond_error(ctx, exc)
            return

        if changed:
            await ctx.respond(f"Subscribed to `{kind}` events.", ephemeral=True)
        else:
            await ctx.respond(f"You're already subscribed to `{kind}` events.", ephemeral=True)

    @events.command(name="unsubscribe", description="Stop receiving messages about the given event.")
    async def unsubscribe(
        self,
        ctx: discord.ApplicationContext,
        event: Option(str, "The event to unsubscribe from.", choices=EVENT_CHOICES),  # type: ignore
    ) -> None:
        kind = EventKind(event)
        try:
            changed = await self.runtime.event_bus.unsubscribe(UserID.from_object(ctx.user), kind)
        except LokiError as exc:
            await respond_error(ctx, exc)
            return

        if changed:
            await ctx.respond(f"Unsubscribed from `{kind}` events.", ephemeral=True)
        else:
            await ctx.respond(f"You weren't subscribed to `{kind}` events.", ephemeral=True)

    @events.command(name="list", description="List the events you're subscribed to.")
    async def list_subscriptions(self, ctx: discord.ApplicationContext) -> None:
        kinds = await self.runtime.event_bus.subscriptions(UserID.from_object(ctx.user))
        if not kinds:
            await ctx.respond("You aren't subscribed to any events.", ephemeral=True)
            return
        names = ", ".join(f"`{kind}`" for kind in sorted(kinds, key=lambda k: k.value))
        await ctx.respond(f"You're subscribed to: {names}", ephemeral=True)


def setup(bot: discord.Bot, runtime: LokiRuntime) -> None:
    bot.add_cog(EventsCog(bot, runtime))
