"""
Interface the feature engines use to act on the chat platform.

Engines never import py-cord directly; they go through a
:class:`PlatformClient`, which the runtime backs with
:class:`loki.platform.discord_client.DiscordPlatformClient` and tests back
with a recording fake.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import aiohttp
import discord

from loki.datatypes.discord_datatypes import ChannelID, GuildID, MessageID, UserID
from loki.datatypes.errors import NetworkTransient
from loki.datatypes.event_datatypes import NicknameOutcome
from loki.util.logger import get_logger

logger = get_logger("platform_client")

T = TypeVar("T")

TRANSIENT_ERRORS = (discord.DiscordServerError, aiohttp.ClientError, asyncio.TimeoutError)


@dataclass(slots=True, frozen=True)
class ChannelMessage:
    """A message read back from a channel's history."""

    message_id: MessageID
    author_id: UserID
    posted_at: datetime
    is_bot: bool = False


class PlatformClient(ABC):
    """Outward calls made by the feature engines."""

    @property
    @abstractmethod
    def bot_user_id(self) -> UserID | None:
        """The bot's own user id, once connected."""

    @abstractmethod
    async def post_message(self, channel: ChannelID, text: str) -> MessageID:
        """Post ``text`` in ``channel`` and return the new message id."""

    @abstractmethod
    async def list_reactions(self, channel: ChannelID, message: MessageID) -> Dict[str, int]:
        """Return ``{emoji: count}`` for a message."""

    @abstractmethod
    async def set_nickname(self, guild: GuildID, user: UserID, nickname: str) -> NicknameOutcome:
        """Rename a member. Never raises for per-member refusals."""

    @abstractmethod
    async def send_direct_message(self, user: UserID, text: str) -> bool:
        """DM a user; False when the message could not be delivered."""

    @abstractmethod
    async def list_member_ids(self, guild: GuildID) -> List[UserID]:
        """Ids of every member of the guild the bot can see."""

    @abstractmethod
    async def display_name(self, guild: GuildID, user: UserID) -> Optional[str]:
        """Name the member is currently shown as, None when unknown."""

    @abstractmethod
    async def list_messages_after(self, channel: ChannelID, after: MessageID | datetime) -> List[ChannelMessage]:
        """Messages posted in ``channel`` after a message or a moment, oldest first."""


async def retry_platform_call(
    coro_func: Callable[[], Awaitable[T]],
    operation_name: str,
    max_retries: int = 3,
    initial_delay: float = 2.0,
    backoff_factor: float = 2.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Run a platform call, retrying transient failures with exponential backoff.

    :param coro_func: function returning a fresh coroutine per attempt,
        e.g. ``lambda: client.list_reactions(channel, message)``
    :param operation_name: description used in log lines
    :param max_retries: total attempts
    :param initial_delay: seconds before the second attempt
    :param backoff_factor: multiplier applied to the delay after each retry
    :param sleep: awaitable used to wait between attempts
    :return: the result of the first successful attempt
    :raises NetworkTransient: when every attempt failed transiently
    """
    delay = initial_delay
    attempts = max(1, max_retries)

    for i in range(attempts):
        try:
            return await coro_func()
        except TRANSIENT_ERRORS as exc:
            if i == attempts - 1:
                logger.error("[PLATFORM] '%s' failed after %d attempt(s): %s", operation_name, attempts, exc)
                raise NetworkTransient(f"{operation_name} failed: {exc}") from exc

            logger.warning(
                "[PLATFORM] '%s' failed (attempt %d/%d): %s. Retrying in %.2fs",
                operation_name, i + 1, attempts, exc, delay,
            )
            await sleep(delay)
            delay *= backoff_factor

    raise AssertionError("unreachable")


class RetryPolicy:
    """Bounded retry settings for scheduler-initiated platform calls."""

    def __init__(
        self,
        attempts: int = 3,
        initial_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.attempts = attempts
        self.initial_delay = initial_delay
        self.sleep = sleep

    async def call(self, coro_func: Callable[[], Awaitable[T]], operation_name: str) -> T:
        return await retry_platform_call(
            coro_func,
            operation_name,
            max_retries=self.attempts,
            initial_delay=self.initial_delay,
            sleep=self.sleep,
        )
