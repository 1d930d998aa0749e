"""Phrase → canned response map, checked against every guild message."""

from __future__ import annotations

from typing import List, Optional

from loki.datatypes.discord_datatypes import GuildID
from loki.datatypes.errors import InvalidInput
from loki.datatypes.feature_state import GuildFeatureState
from loki.scheduler.timer_scheduler import TimerScheduler
from loki.util.logger import get_logger

logger = get_logger("text_responses")


class TextResponses:
    def __init__(self, scheduler: TimerScheduler) -> None:
        self.scheduler = scheduler

    async def set_response(self, guild: GuildID, phrase: str, text: str) -> Optional[str]:
        """
        Map ``phrase`` to ``text``; an empty ``text`` removes the mapping.

        Returns:
            The previous response, if there was one.
        """
        if not phrase:
            raise InvalidInput("The activation phrase cannot be empty.")
        response = text.strip()

        def apply(state: GuildFeatureState) -> Optional[str]:
            if response:
                previous = state.responses.get(phrase)
                state.responses[phrase] = response
                return previous
            return state.responses.pop(phrase, None)

        previous = await self.scheduler.mutate(guild, apply)
        logger.info("[TEXT RESPONSES] Guild %s: %s response for %r", guild, "set" if response else "unset", phrase)
        return previous

    async def get_response(self, guild: GuildID, phrase: str) -> Optional[str]:
        state = await self.scheduler.read(guild)
        return state.responses.get(phrase)

    async def list_phrases(self, guild: GuildID) -> List[str]:
        state = await self.scheduler.read(guild)
        return sorted(state.responses)

    async def responses_for(self, guild: GuildID, content: str) -> List[str]:
        """Responses whose phrase occurs anywhere in ``content``."""
        if not content:
            return []
        state = await self.scheduler.read(guild)
        return [response for phrase, response in state.responses.items() if phrase in content]
