"""
Per-member timeout statistics.

Counters only ever grow and saturate at ``COUNTER_CEILING``. Member updates
from the gateway repeat for the same timeout, so a timeout only counts when
its expiry is later than the one already recorded.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Optional, Tuple

from loki.datatypes.discord_datatypes import ChannelID, GuildID, UserID
from loki.datatypes.errors import NotConfigured
from loki.datatypes.event_datatypes import EventKind
from loki.datatypes.feature_state import (
    AnnouncementConfig,
    GuildFeatureState,
    TimeoutRecord,
    saturating_add,
)
from loki.platform.platform_client import PlatformClient, RetryPolicy
from loki.scheduler.timer_scheduler import TimerScheduler
from loki.util.clock import Clock
from loki.util.logger import get_logger

if TYPE_CHECKING:
    from loki.features.event_bus import EventBus

logger = get_logger("timeout_aggregator")


def format_summary(user: UserID, record: TimeoutRecord) -> str:
    if record.count == 0:
        return f"<@{user}> hasn't been timed out!"
    return (
        f"<@{user}> has been timed out **{record.count}** time(s), "
        f"for a total of **{record.total_duration_seconds} second(s)**."
    )


def format_announcement(prefix: Optional[str], summary: str) -> str:
    return f"{prefix} {summary}" if prefix else summary


def _copy(record: TimeoutRecord) -> TimeoutRecord:
    return TimeoutRecord(
        count=record.count,
        total_duration_seconds=record.total_duration_seconds,
        last_timed_out=record.last_timed_out,
        expected_expiry=record.expected_expiry,
    )


class TimeoutAggregator:
    def __init__(
        self,
        scheduler: TimerScheduler,
        platform: PlatformClient,
        event_bus: EventBus | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.scheduler = scheduler
        self.platform = platform
        self.event_bus = event_bus
        self.retry = retry or RetryPolicy()

    @property
    def clock(self) -> Clock:
        return self.scheduler.clock

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    @staticmethod
    def _apply(
        state: GuildFeatureState,
        user: UserID,
        duration_seconds: int,
        now: datetime,
        expires_at: Optional[datetime],
    ) -> Tuple[TimeoutRecord, AnnouncementConfig]:
        record = state.timeouts.setdefault(user, TimeoutRecord())
        record.count = saturating_add(record.count, 1)
        record.total_duration_seconds = saturating_add(record.total_duration_seconds, duration_seconds)
        record.last_timed_out = now
        if expires_at is not None:
            record.expected_expiry = expires_at
        announcements = state.announcements
        return _copy(record), AnnouncementConfig(announcements.channel, announcements.prefix)

    async def record_timeout(
        self,
        guild: GuildID,
        user: UserID,
        duration_seconds: int,
        expires_at: Optional[datetime] = None,
    ) -> TimeoutRecord:
        """Count one timeout of ``duration_seconds`` and announce it if configured."""
        now = self.clock.now()
        record, announcements = await self.scheduler.mutate(
            guild, lambda state: self._apply(state, user, duration_seconds, now, expires_at)
        )
        await self._after_record(guild, user, record, announcements)
        return record

    async def on_member_update(
        self,
        guild: GuildID,
        user: UserID,
        timed_out_until: Optional[datetime],
    ) -> Optional[TimeoutRecord]:
        """
        Record a timeout reported by a member update, once per timeout.

        Returns:
            The updated record, or None when the update was not a new timeout.
        """
        now = self.clock.now()
        if timed_out_until is None or timed_out_until <= now:
            return None

        snapshot = await self.check_user(guild, user)
        if snapshot.expected_expiry is not None and timed_out_until <= snapshot.expected_expiry:
            return None

        duration = int((timed_out_until - now).total_seconds())

        def apply(state: GuildFeatureState):
            existing = state.timeouts.get(user)
            if existing and existing.expected_expiry and timed_out_until <= existing.expected_expiry:
                return None
            return self._apply(state, user, duration, now, timed_out_until)

        result = await self.scheduler.mutate(guild, apply)
        if result is None:
            return None

        record, announcements = result
        await self._after_record(guild, user, record, announcements)
        return record

    async def _after_record(
        self,
        guild: GuildID,
        user: UserID,
        record: TimeoutRecord,
        announcements: AnnouncementConfig,
    ) -> None:
        summary = format_summary(user, record)
        logger.info("[TIMEOUTS] Guild %s: user %s now at %d timeout(s)", guild, user, record.count)

        if announcements.channel is not None:
            text = format_announcement(announcements.prefix, summary)
            try:
                await self.retry.call(
                    lambda: self.platform.post_message(announcements.channel, text),
                    f"announce timeout of {user}",
                )
            except Exception as exc:
                logger.warning("[TIMEOUTS] Guild %s: announcement failed: %s", guild, exc)

        if self.event_bus is not None:
            try:
                await self.event_bus.publish(EventKind.TIMEOUT_RECORDED, f"In guild {guild}: {summary}")
            except Exception:
                logger.exception("[TIMEOUTS] Failed to publish timeout_recorded")

    # ------------------------------------------------------------------
    # Queries and configuration
    # ------------------------------------------------------------------

    async def check_user(self, guild: GuildID, user: UserID) -> TimeoutRecord:
        """Current statistics of a member; a zero record when never timed out."""
        state = await self.scheduler.read(guild)
        record = state.timeouts.get(user)
        return _copy(record) if record else TimeoutRecord()

    async def configure_announcements(
        self,
        guild: GuildID,
        channel: Optional[ChannelID] = None,
        prefix: Optional[str] = None,
    ) -> AnnouncementConfig:
        """
        Set the announcement channel and/or prefix.

        An empty prefix clears it.

        Raises:
            NotConfigured: A prefix was given but no channel exists or was supplied.
        """

        def apply(state: GuildFeatureState) -> AnnouncementConfig:
            announcements = state.announcements
            if prefix is not None and channel is None and announcements.channel is None:
                raise NotConfigured("Set an announcement channel before setting a prefix.")
            if channel is not None:
                announcements.channel = channel
            if prefix is not None:
                announcements.prefix = prefix.strip() or None
            return AnnouncementConfig(announcements.channel, announcements.prefix)

        result = await self.scheduler.mutate(guild, apply)
        logger.info("[TIMEOUTS] Guild %s: announcements -> channel=%s prefix=%r", guild, result.channel, result.prefix)
        return result

    async def stop_announcements(self, guild: GuildID) -> bool:
        """Clear channel and prefix. Returns whether anything was configured."""

        def apply(state: GuildFeatureState) -> bool:
            announcements = state.announcements
            was_configured = announcements.channel is not None or announcements.prefix is not None
            state.announcements = AnnouncementConfig()
            return was_configured

        changed = await self.scheduler.mutate(guild, apply)
        logger.info("[TIMEOUTS] Guild %s: announcements stopped", guild)
        return changed
