"""
Text response commands.

- /response list: activation phrases with a response
- /response set: open a form to set (or, when left empty, unset) a response
"""

import discord
from discord import Option
from discord.ext import commands

from loki.bot.runtime import LokiRuntime
from loki.datatypes.discord_datatypes import GuildID
from loki.datatypes.errors import LokiError
from loki.util.discord_utils import ADMIN_PERMISSIONS, require_guild, respond_error, truncate_label
from loki.util.logger import get_logger

logger = get_logger("response_commands")


class ResponseModal(discord.ui.Modal):
    def __init__(self, runtime: LokiRuntime, guild_id: GuildID, phrase: str, current: str | None) -> None:
        super().__init__(title="Set text response value")
        self.runtime = runtime
        self.guild_id = guild_id
        self.phrase = phrase
        self.add_item(
            discord.ui.InputText(
                label=truncate_label(f'Response for "{phrase}"'),
                style=discord.InputTextStyle.long,
                placeholder="Enter the response to this phrase here, or submit an empty response to unset.",
                value=current,
                required=False,
            )
        )

    async def callback(self, interaction: discord.Interaction) -> None:
        text = self.children[0].value or ""
        try:
            await self.runtime.responses.set_response(self.guild_id, self.phrase, text)
        except LokiError as exc:
            await interaction.response.send_message(f"❌ {exc}", ephemeral=True)
            return

        if text.strip():
            await interaction.response.send_message(f"Response for `{self.phrase}` saved.", ephemeral=True)
        else:
            await interaction.response.send_message(f"Response for `{self.phrase}` removed.", ephemeral=True)


class ResponseCog(commands.Cog):
    """Controls for the text response subsystem."""

    response = discord.SlashCommandGroup(
        "response",
        "Controls for the text response subsystem.",
        default_member_permissions=ADMIN_PERMISSIONS,
    )

    def __init__(self, bot: discord.Bot, runtime: LokiRuntime) -> None:
        self.bot = bot
        self.runtime = runtime
        logger.info("[RESPONSE CMDS] Response cog loaded")

    @response.command(name="list", description="List all text inputs which have an associated response set.")
    async def list_responses(self, ctx: discord.ApplicationContext) -> None:
        guild_id = await require_guild(ctx)
        if guild_id is None:
            return

        phrases = await self.runtime.responses.list_phrases(guild_id)
        if not phrases:
            await ctx.respond("**No activation phrases.**\nPerhaps try adding some?", ephemeral=True)
            return

        lines = [f"**{len(phrases)} activation phrase(s):**"] + [f"•\t{phrase}" for phrase in phrases]
        await ctx.respond("\n".join(lines), ephemeral=True)

    @response.command(name="set", description="Set the response the bot gives to a given text input.")
    async def set_response(
        self,
        ctx: discord.ApplicationContext,
        activation_phrase: Option(str, "The phrase which will activate this response when seen.", min_length=1),  # type: ignore
    ) -> None:
        guild_id = await require_guild(ctx)
        if guild_id is None:
            return

        try:
            current = await self.runtime.responses.get_response(guild_id, activation_phrase)
        except LokiError as exc:
            await respond_error(ctx, exc)
            return
        await ctx.send_modal(ResponseModal(self.runtime, guild_id, activation_phrase, current))


def setup(bot: discord.Bot, runtime: LokiRuntime) -> None:
    bot.add_cog(ResponseCog(bot, runtime))
