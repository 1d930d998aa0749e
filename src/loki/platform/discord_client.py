"""
py-cord backed :class:`PlatformClient`.

Refusals that concern a single target (missing permission, unknown member,
closed DMs) are mapped to outcomes. Server errors and connection problems
propagate so :func:`retry_platform_call` can retry them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

import discord

from loki.datatypes.discord_datatypes import ChannelID, GuildID, MessageID, UserID
from loki.datatypes.errors import NotConfigured, PermissionDenied
from loki.datatypes.event_datatypes import NicknameOutcome, OutcomeStatus
from loki.platform.platform_client import ChannelMessage, PlatformClient
from loki.util.logger import get_logger

logger = get_logger("discord_client")


class DiscordPlatformClient(PlatformClient):
    """Adapter from the engine-facing interface to a running ``discord.Bot``."""

    def __init__(self, bot: discord.Bot) -> None:
        self.bot = bot

    @property
    def bot_user_id(self) -> UserID | None:
        return UserID.from_object(self.bot.user) if self.bot.user else None

    async def _messageable(self, channel: ChannelID) -> discord.abc.Messageable:
        resolved = self.bot.get_channel(channel.to_int())
        if resolved is None:
            try:
                resolved = await self.bot.fetch_channel(channel.to_int())
            except discord.NotFound as exc:
                raise NotConfigured(f"channel {channel} no longer exists") from exc
            except discord.Forbidden as exc:
                raise PermissionDenied(f"cannot access channel {channel}") from exc
        if not isinstance(resolved, discord.abc.Messageable):
            raise NotConfigured(f"channel {channel} cannot hold messages")
        return resolved

    async def post_message(self, channel: ChannelID, text: str) -> MessageID:
        target = await self._messageable(channel)
        try:
            message = await target.send(text, allowed_mentions=discord.AllowedMentions(users=True, roles=False, everyone=False))
        except discord.Forbidden as exc:
            raise PermissionDenied(f"cannot post in channel {channel}") from exc
        return MessageID.from_object(message)

    async def list_reactions(self, channel: ChannelID, message: MessageID) -> Dict[str, int]:
        target = await self._messageable(channel)
        try:
            fetched = await target.fetch_message(message.to_int())
        except discord.NotFound:
            logger.debug("[DISCORD CLIENT] Message %s in %s was deleted", message, channel)
            return {}
        except discord.Forbidden as exc:
            raise PermissionDenied(f"cannot read message {message}") from exc

        counts: Dict[str, int] = {}
        for reaction in fetched.reactions:
            key = str(reaction.emoji)
            counts[key] = counts.get(key, 0) + reaction.count
        return counts

    async def set_nickname(self, guild: GuildID, user: UserID, nickname: str) -> NicknameOutcome:
        discord_guild = self.bot.get_guild(guild.to_int())
        if discord_guild is None:
            return OutcomeStatus.NOT_FOUND

        member = discord_guild.get_member(user.to_int())
        try:
            if member is None:
                member = await discord_guild.fetch_member(user.to_int())
            await member.edit(nick=nickname, reason="Nickname lottery")
        except discord.Forbidden:
            return OutcomeStatus.PERMISSION_DENIED
        except discord.NotFound:
            return OutcomeStatus.NOT_FOUND
        return OutcomeStatus.SUCCESS

    async def send_direct_message(self, user: UserID, text: str) -> bool:
        target = self.bot.get_user(user.to_int())
        try:
            if target is None:
                target = await self.bot.fetch_user(user.to_int())
            await target.send(text)
        except (discord.Forbidden, discord.NotFound) as exc:
            logger.debug("[DISCORD CLIENT] Could not DM user %s: %s", user, exc)
            return False
        return True

    async def list_member_ids(self, guild: GuildID) -> List[UserID]:
        discord_guild = self.bot.get_guild(guild.to_int())
        if discord_guild is None:
            return []
        return [UserID.from_object(member) for member in discord_guild.members]

    async def display_name(self, guild: GuildID, user: UserID) -> Optional[str]:
        discord_guild = self.bot.get_guild(guild.to_int())
        if discord_guild is None:
            return None
        member = discord_guild.get_member(user.to_int())
        return member.display_name if member is not None else None

    async def list_messages_after(self, channel: ChannelID, after: MessageID | datetime) -> List[ChannelMessage]:
        target = await self._messageable(channel)
        marker = discord.Object(id=after.to_int()) if isinstance(after, MessageID) else after
        try:
            return [
                ChannelMessage(
                    message_id=MessageID.from_object(message),
                    author_id=UserID.from_object(message.author),
                    posted_at=message.created_at,
                    is_bot=message.author.bot,
                )
                async for message in target.history(limit=None, after=marker, oldest_first=True)
            ]
        except discord.Forbidden as exc:
            raise PermissionDenied(f"cannot read the history of channel {channel}") from exc
