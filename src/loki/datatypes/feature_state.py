"""
Per-guild feature state records.

One :class:`GuildFeatureState` exists per guild and holds every feature's
sub-state. Records are plain dataclasses; ``to_dict``/``from_dict`` turn them
into JSON-safe primitives (ids as strings, timestamps as ISO-8601) for the
state store. Unknown keys are ignored when loading and missing keys fall back
to defaults, so older records keep loading after fields are added.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from loki.datatypes.discord_datatypes import ChannelID, GuildID, MessageID, UserID
from loki.datatypes.event_datatypes import EventKind

# Timeout counters are stored as signed 64-bit values by older records.
COUNTER_CEILING = 2**63 - 1


def dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.astimezone(timezone.utc).isoformat() if value else None


def dt_from_str(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def saturating_add(current: int, amount: int) -> int:
    """Add a non-negative amount without passing :data:`COUNTER_CEILING`."""
    return min(COUNTER_CEILING, current + max(0, amount))


class ContestPhase(Enum):
    """Phases of the weekly contest state machine."""

    IDLE = "idle"
    WATCHING = "watching"
    REMINDER_SENT = "reminder_sent"
    TALLYING = "tallying"

    def __str__(self) -> str:
        return self.value


@dataclass(slots=True, frozen=True)
class Candidate:
    """A message entered into the current contest cycle."""

    message_id: MessageID
    author_id: UserID
    posted_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": str(self.message_id),
            "author_id": str(self.author_id),
            "posted_at": dt_to_str(self.posted_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Candidate":
        return cls(
            message_id=MessageID(data["message_id"]),
            author_id=UserID(data["author_id"]),
            posted_at=dt_from_str(data["posted_at"]),  # type: ignore[arg-type]
        )


@dataclass(slots=True)
class ContestState:
    """State of the meme-of-the-week contest for one guild.

    Attributes:
        phase: Current phase. Anything but IDLE requires ``channel``.
        channel: Contest channel; ``None`` means the feature is disabled.
        cycle_started_at: Start of the current cycle.
        reminder_sent_at: When the reminder deadline fired in this cycle.
        candidates: Entries in posting order, unique by message id.
    """

    phase: ContestPhase = ContestPhase.IDLE
    channel: Optional[ChannelID] = None
    cycle_started_at: Optional[datetime] = None
    reminder_sent_at: Optional[datetime] = None
    candidates: List[Candidate] = field(default_factory=list)

    def check_invariant(self) -> None:
        if self.phase is not ContestPhase.IDLE and self.channel is None:
            raise AssertionError(f"contest phase {self.phase} without a channel")

    def has_candidate(self, message_id: MessageID) -> bool:
        return any(c.message_id == message_id for c in self.candidates)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "channel": str(self.channel) if self.channel else None,
            "cycle_started_at": dt_to_str(self.cycle_started_at),
            "reminder_sent_at": dt_to_str(self.reminder_sent_at),
            "candidates": [c.to_dict() for c in self.candidates],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContestState":
        channel = data.get("channel")
        return cls(
            phase=ContestPhase(data.get("phase", ContestPhase.IDLE.value)),
            channel=ChannelID(channel) if channel else None,
            cycle_started_at=dt_from_str(data.get("cycle_started_at")),
            reminder_sent_at=dt_from_str(data.get("reminder_sent_at")),
            candidates=[Candidate.from_dict(c) for c in data.get("candidates", [])],
        )


@dataclass(slots=True)
class LotteryState:
    """Nickname lottery configuration. ``next_fire_at`` is never persisted.

    Attributes:
        nickname_pool: Names handed out by the lottery.
        announcement_channel: Where failed renames (and every April 1
            rename) are announced; ``None`` keeps the lottery silent.
        title_override: Heading of those announcements instead of the default.
        next_fire_at: Next rotation, filled in from the scheduler on read.
    """

    nickname_pool: List[str] = field(default_factory=list)
    announcement_channel: Optional[ChannelID] = None
    title_override: Optional[str] = None
    next_fire_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nickname_pool": list(self.nickname_pool),
            "announcement_channel": str(self.announcement_channel) if self.announcement_channel else None,
            "title_override": self.title_override,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LotteryState":
        channel = data.get("announcement_channel")
        return cls(
            nickname_pool=[str(n) for n in data.get("nickname_pool", [])],
            announcement_channel=ChannelID(channel) if channel else None,
            title_override=data.get("title_override"),
        )


@dataclass(slots=True)
class TimeoutRecord:
    """Timeout statistics for one member of one guild."""

    count: int = 0
    total_duration_seconds: int = 0
    last_timed_out: Optional[datetime] = None
    expected_expiry: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "total_duration_seconds": self.total_duration_seconds,
            "last_timed_out": dt_to_str(self.last_timed_out),
            "expected_expiry": dt_to_str(self.expected_expiry),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimeoutRecord":
        return cls(
            count=int(data.get("count", 0)),
            total_duration_seconds=int(data.get("total_duration_seconds", 0)),
            last_timed_out=dt_from_str(data.get("last_timed_out")),
            expected_expiry=dt_from_str(data.get("expected_expiry")),
        )


@dataclass(slots=True)
class AnnouncementConfig:
    """Where timeout announcements go, and the text placed before them."""

    channel: Optional[ChannelID] = None
    prefix: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"channel": str(self.channel) if self.channel else None, "prefix": self.prefix}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnnouncementConfig":
        channel = data.get("channel")
        return cls(channel=ChannelID(channel) if channel else None, prefix=data.get("prefix"))


@dataclass(slots=True)
class GuildFeatureState:
    """Every feature's state for a single guild."""

    guild_id: GuildID
    contest: ContestState = field(default_factory=ContestState)
    lottery: LotteryState = field(default_factory=LotteryState)
    timeouts: Dict[UserID, TimeoutRecord] = field(default_factory=dict)
    announcements: AnnouncementConfig = field(default_factory=AnnouncementConfig)
    responses: Dict[str, str] = field(default_factory=dict)
    scoreboards: Dict[str, Dict[UserID, int]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "guild_id": str(self.guild_id),
            "contest": self.contest.to_dict(),
            "lottery": self.lottery.to_dict(),
            "timeouts": {str(uid): rec.to_dict() for uid, rec in self.timeouts.items()},
            "announcements": self.announcements.to_dict(),
            "responses": dict(self.responses),
            "scoreboards": {
                name: {str(uid): score for uid, score in board.items()}
                for name, board in self.scoreboards.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GuildFeatureState":
        return cls(
            guild_id=GuildID(data["guild_id"]),
            contest=ContestState.from_dict(data.get("contest") or {}),
            lottery=LotteryState.from_dict(data.get("lottery") or {}),
            timeouts={
                UserID(uid): TimeoutRecord.from_dict(rec)
                for uid, rec in (data.get("timeouts") or {}).items()
            },
            announcements=AnnouncementConfig.from_dict(data.get("announcements") or {}),
            responses={str(k): str(v) for k, v in (data.get("responses") or {}).items()},
            scoreboards={
                str(name): {UserID(uid): int(score) for uid, score in board.items()}
                for name, board in (data.get("scoreboards") or {}).items()
            },
        )

    def copy(self) -> "GuildFeatureState":
        """Independent deep copy. The in-memory lottery deadline is carried over."""
        clone = GuildFeatureState.from_dict(self.to_dict())
        clone.lottery.next_fire_at = self.lottery.next_fire_at
        return clone


SubscriptionMap = Dict[UserID, Set[EventKind]]


def subscriptions_to_dict(subscriptions: SubscriptionMap) -> Dict[str, List[str]]:
    return {str(uid): sorted(kind.value for kind in kinds) for uid, kinds in subscriptions.items() if kinds}


def subscriptions_from_dict(data: Dict[str, List[str]]) -> SubscriptionMap:
    result: SubscriptionMap = {}
    for uid, kinds in data.items():
        parsed = {EventKind(k) for k in kinds if k in EventKind._value2member_map_}
        if parsed:
            result[UserID(uid)] = parsed
    return result
