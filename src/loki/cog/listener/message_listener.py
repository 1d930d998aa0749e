"""Message listener Cog for Loki.

Forwards guild messages to the two features that look at message content:
the meme contest (candidate entries) and the text responses.
"""

import discord
from discord.ext import commands

from loki.bot.runtime import LokiRuntime
from loki.datatypes.discord_datatypes import ChannelID, GuildID, MessageID, UserID
from loki.datatypes.errors import LokiError
from loki.util.logger import get_logger

logger = get_logger("message_listener_cog")


def should_process_message(message: discord.Message) -> bool:
    """Only guild messages from humans are of interest."""
    return message.guild is not None and not message.author.bot and not message.webhook_id


class MessageListenerCog(commands.Cog):
    """Thin event listener that hands messages to the feature engines."""

    def __init__(self, bot: discord.Bot, runtime: LokiRuntime) -> None:
        self.bot = bot
        self.runtime = runtime
        logger.info("[MESSAGE LISTENER] Message listener cog loaded")

    @commands.Cog.listener(name="on_message")
    async def on_message(self, message: discord.Message) -> None:
        if not should_process_message(message):
            return

        guild_id = GuildID.from_object(message.guild)

        try:
            await self.runtime.contest.on_message(
                guild_id,
                ChannelID.from_object(message.channel),
                MessageID.from_object(message),
                UserID.from_object(message.author),
                message.created_at,
                is_bot=message.author.bot,
            )
        except LokiError:
            logger.exception("[MESSAGE LISTENER] Failed to enter message %s into the contest", message.id)

        await self._send_text_responses(guild_id, message)

    async def _send_text_responses(self, guild_id: GuildID, message: discord.Message) -> None:
        try:
            responses = await self.runtime.responses.responses_for(guild_id, message.content)
        except LokiError:
            logger.exception("[MESSAGE LISTENER] Failed to look up text responses in %s", guild_id)
            return

        for response in responses:
            try:
                await message.channel.send(response)
            except discord.HTTPException as exc:
                logger.warning("[MESSAGE LISTENER] Text response in %s failed: %s", message.channel.id, exc)
                await self.runtime.scheduler.report_error(f"Error in text response handler:\n```\n{exc}\n```")


def setup(bot: discord.Bot, runtime: LokiRuntime) -> None:
    bot.add_cog(MessageListenerCog(bot, runtime))
