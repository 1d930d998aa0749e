"""
General commands.
"""

import discord
from discord.ext import commands

from loki import __version__
from loki.bot.runtime import LokiRuntime
from loki.util.logger import get_logger

logger = get_logger("general_commands")


class GeneralCog(commands.Cog):
    def __init__(self, bot: discord.Bot, runtime: LokiRuntime) -> None:
        self.bot = bot
        self.runtime = runtime

    @commands.slash_command(name="about", description="Information about the bot.")
    async def about(self, ctx: discord.ApplicationContext) -> None:
        deadline = self.runtime.scheduler.next_deadline()
        lines = [
            f"**Loki v{__version__}**",
            "Weekly meme contests, nickname lotteries, timeout statistics and more.",
            f"Latency: {self.bot.latency * 1000:.0f} ms",
        ]
        if deadline is not None:
            lines.append(f"Next scheduled event: {discord.utils.format_dt(deadline, 'R')}")
        await ctx.respond("\n".join(lines), ephemeral=True)


def setup(bot: discord.Bot, runtime: LokiRuntime) -> None:
    bot.add_cog(GeneralCog(bot, runtime))
