"""Named per-guild score tables."""

from __future__ import annotations

from typing import List, Optional, Tuple

from loki.datatypes.discord_datatypes import GuildID, UserID
from loki.datatypes.errors import InvalidInput
from loki.datatypes.feature_state import GuildFeatureState
from loki.scheduler.timer_scheduler import TimerScheduler
from loki.util.logger import get_logger

logger = get_logger("scoreboards")

# Discord caps choice lists at 25 entries; one slot stays free.
MAX_SCOREBOARDS = 24
MAX_NAME_LENGTH = 100
TOP_LIMIT = 10

# (position, user, score), position starting at 1
ScoreEntry = Tuple[int, UserID, int]


def rank(board: dict[UserID, int]) -> List[ScoreEntry]:
    ordered = sorted(board.items(), key=lambda item: (-item[1], item[0].to_int()))
    return [(i + 1, uid, score) for i, (uid, score) in enumerate(ordered)]


class Scoreboards:
    def __init__(self, scheduler: TimerScheduler) -> None:
        self.scheduler = scheduler

    async def names(self, guild: GuildID) -> List[str]:
        state = await self.scheduler.read(guild)
        return sorted(state.scoreboards)

    async def create(self, guild: GuildID, name: str) -> None:
        name = name.strip()
        if not name or len(name) > MAX_NAME_LENGTH:
            raise InvalidInput(f"Scoreboard names must be 1 to {MAX_NAME_LENGTH} characters long.")

        def apply(state: GuildFeatureState) -> None:
            if name in state.scoreboards:
                raise InvalidInput("A scoreboard with that name already exists.")
            if len(state.scoreboards) >= MAX_SCOREBOARDS:
                raise InvalidInput("The maximum number of scoreboards already exist - consider deleting one.")
            state.scoreboards[name] = {}

        await self.scheduler.mutate(guild, apply)
        logger.info("[SCOREBOARDS] Guild %s: created %r", guild, name)

    async def delete(self, guild: GuildID, name: str) -> None:
        def apply(state: GuildFeatureState) -> None:
            if state.scoreboards.pop(name, None) is None:
                raise InvalidInput(f"Scoreboard {name} does not exist!")

        await self.scheduler.mutate(guild, apply)
        logger.info("[SCOREBOARDS] Guild %s: deleted %r", guild, name)

    async def set_score(self, guild: GuildID, name: str, user: UserID, score: int) -> Optional[int]:
        """Set a user's score. Returns the previous score, if any."""

        def apply(state: GuildFeatureState) -> Optional[int]:
            board = state.scoreboards.get(name)
            if board is None:
                raise InvalidInput(f"Scoreboard {name} does not exist!")
            previous = board.get(user)
            board[user] = score
            return previous

        return await self.scheduler.mutate(guild, apply)

    async def _board(self, guild: GuildID, name: str) -> dict[UserID, int]:
        state = await self.scheduler.read(guild)
        board = state.scoreboards.get(name)
        if board is None:
            raise InvalidInput(f"Scoreboard {name} does not exist!")
        return board

    async def top(self, guild: GuildID, name: str, limit: int = TOP_LIMIT) -> List[ScoreEntry]:
        return rank(await self._board(guild, name))[:limit]

    async def position(self, guild: GuildID, name: str, user: UserID) -> Optional[ScoreEntry]:
        for entry in rank(await self._board(guild, name)):
            if entry[1] == user:
                return entry
        return None
