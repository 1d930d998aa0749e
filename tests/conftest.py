"""
Pytest configuration and fixtures for Loki tests.
"""

import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Add src directory to path so imports work
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from loki.datatypes.discord_datatypes import ChannelID, GuildID, MessageID, UserID  # noqa: E402
from loki.datatypes.event_datatypes import NicknameOutcome, OutcomeStatus  # noqa: E402
from loki.platform.platform_client import ChannelMessage, PlatformClient, RetryPolicy  # noqa: E402
from loki.scheduler.timer_scheduler import TimerScheduler  # noqa: E402
from loki.state.state_store import MemoryStateStore  # noqa: E402
from loki.util.clock import Clock  # noqa: E402

T0 = datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc)


class FakeClock(Clock):
    """Clock frozen at ``current`` until moved with ``advance``/``set``."""

    def __init__(self, start: datetime = T0, seed: int = 1234, tz=timezone.utc) -> None:
        super().__init__(tz=tz, rng=random.Random(seed))
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta) -> datetime:
        self.current += delta
        return self.current

    def set(self, moment: datetime) -> None:
        self.current = moment


class FakePlatform(PlatformClient):
    """Recording platform client."""

    def __init__(self, bot_id: int = 999) -> None:
        self._bot_id = UserID(bot_id)
        self.posts: List[tuple[ChannelID, str]] = []
        self.reactions: Dict[MessageID, Dict[str, int]] = {}
        self.reaction_errors: Dict[MessageID, Exception] = {}
        self.members: Dict[GuildID, List[UserID]] = {}
        self.nickname_outcomes: Dict[UserID, NicknameOutcome] = {}
        self.nicknames: Dict[UserID, str] = {}
        self.rename_calls: List[tuple[UserID, str]] = []
        self.history: Dict[ChannelID, List[ChannelMessage]] = {}
        self.history_error: Exception | None = None
        self.history_requests: List[tuple[ChannelID, object]] = []
        self.closed_dms: set[UserID] = set()
        self.dms: List[tuple[UserID, str]] = []
        self.post_error: Exception | None = None
        self._next_message = 10_000

    @property
    def bot_user_id(self) -> UserID:
        return self._bot_id

    async def post_message(self, channel: ChannelID, text: str) -> MessageID:
        if self.post_error is not None:
            raise self.post_error
        self.posts.append((channel, text))
        self._next_message += 1
        return MessageID(self._next_message)

    async def list_reactions(self, channel: ChannelID, message: MessageID) -> Dict[str, int]:
        if message in self.reaction_errors:
            raise self.reaction_errors[message]
        return dict(self.reactions.get(message, {}))

    async def set_nickname(self, guild: GuildID, user: UserID, nickname: str) -> NicknameOutcome:
        self.rename_calls.append((user, nickname))
        outcome = self.nickname_outcomes.get(user, OutcomeStatus.SUCCESS)
        if outcome is OutcomeStatus.SUCCESS:
            self.nicknames[user] = nickname
        return outcome

    async def send_direct_message(self, user: UserID, text: str) -> bool:
        if user in self.closed_dms:
            return False
        self.dms.append((user, text))
        return True

    async def list_member_ids(self, guild: GuildID) -> List[UserID]:
        return list(self.members.get(guild, []))

    async def display_name(self, guild: GuildID, user: UserID) -> Optional[str]:
        return self.nicknames.get(user)

    async def list_messages_after(self, channel: ChannelID, after) -> List[ChannelMessage]:
        self.history_requests.append((channel, after))
        if self.history_error is not None:
            raise self.history_error
        messages = self.history.get(channel, [])
        if isinstance(after, MessageID):
            return [m for m in messages if after < m.message_id]
        return [m for m in messages if m.posted_at > after]


async def _no_sleep(_delay: float) -> None:
    return None


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture()
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture()
def retry() -> RetryPolicy:
    return RetryPolicy(attempts=3, initial_delay=0.0, sleep=_no_sleep)


@pytest.fixture()
def scheduler(store: MemoryStateStore, clock: FakeClock) -> TimerScheduler:
    return TimerScheduler(store, clock)


@pytest.fixture()
def guild() -> GuildID:
    return GuildID(1001)


@pytest.fixture()
def channel() -> ChannelID:
    return ChannelID(2002)
