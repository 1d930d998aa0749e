"""
Nickname lottery.

At random intervals between 30 minutes and 5 days one name is drawn from the
guild's pool and every member is renamed to it. On April 1 (in the
configured timezone) the interval is always 30 minutes.

When an announcement channel is set, a member the bot could not rename is
called out there so they can change it themselves. On April 1 every rename
is announced.

The next firing time is only kept in the scheduler. After a restart each
guild with a pool gets a fresh draw, so the longest gap around a restart is
the sum of two draws.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Iterable, List, Optional, Tuple

from loki.datatypes.discord_datatypes import ChannelID, GuildID, UserID
from loki.datatypes.errors import NotConfigured
from loki.datatypes.event_datatypes import DeliveryReport, EventKind, OutcomeStatus
from loki.datatypes.feature_state import GuildFeatureState, LotteryState
from loki.platform.platform_client import PlatformClient, RetryPolicy
from loki.scheduler.timer_scheduler import FeatureKind, TimerScheduler
from loki.util.clock import Clock
from loki.util.logger import get_logger

if TYPE_CHECKING:
    from loki.features.event_bus import EventBus

logger = get_logger("rotation_lottery")

MIN_INTERVAL_SECONDS = 30 * 60
MAX_INTERVAL_SECONDS = 5 * 24 * 60 * 60
MAX_NICKNAME_LENGTH = 30

DEFAULT_TITLE = "Bot demands new nickname"


def normalize_pool(names: Iterable[str]) -> List[str]:
    """Strip each name, then cut it to 30 characters. Blank names are dropped."""
    pool: List[str] = []
    for name in names:
        stripped = name.strip()
        if stripped:
            pool.append(stripped[:MAX_NICKNAME_LENGTH])
    return pool


def parse_pool_text(text: str) -> List[str]:
    """Split the edit form's contents into one candidate name per line."""
    return normalize_pool(text.splitlines())


def announcement_title(lottery: LotteryState) -> str:
    return lottery.title_override or DEFAULT_TITLE


def format_rename_demand(title: str, user: UserID, nickname: str) -> str:
    return f"**{title}**\n<@{user}> won/lost the lottery! From now on, they are to be named: `{nickname}`"


class RotationLottery:
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
        scheduler.register(FeatureKind.LOTTERY, self.on_fire, self.restore)

    @property
    def clock(self) -> Clock:
        return self.scheduler.clock

    def is_april_fools(self, now: datetime) -> bool:
        today = self.clock.local_date(now)
        return today.month == 4 and today.day == 1

    def draw_interval(self, now: datetime) -> timedelta:
        """Whole-second uniform draw in [30 min, 5 days]; exactly 30 min on April 1."""
        if self.is_april_fools(now):
            return timedelta(seconds=MIN_INTERVAL_SECONDS)
        return timedelta(seconds=self.clock.uniform_int(MIN_INTERVAL_SECONDS, MAX_INTERVAL_SECONDS))

    async def _schedule_next(self, guild: GuildID, now: datetime) -> datetime:
        when = now + self.draw_interval(now)
        await self.scheduler.schedule_at(guild, FeatureKind.LOTTERY, when)
        return when

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def set_nickname_pool(self, guild: GuildID, names: Iterable[str]) -> Tuple[List[str], Optional[datetime]]:
        """
        Replace the pool wholesale and (re)schedule the next rotation.

        Returns:
            The normalized pool and the next firing time (None when the pool
            is empty and the lottery is disabled).
        """
        pool = normalize_pool(names)

        def apply(state: GuildFeatureState) -> None:
            state.lottery.nickname_pool = list(pool)

        await self.scheduler.mutate(guild, apply)

        if not pool:
            await self.scheduler.cancel(guild, FeatureKind.LOTTERY)
            logger.info("[LOTTERY] Guild %s: pool cleared, lottery disabled", guild)
            return pool, None

        when = await self._schedule_next(guild, self.clock.now())
        logger.info("[LOTTERY] Guild %s: %d nickname(s) in pool, next rotation at %s", guild, len(pool), when.isoformat())
        return pool, when

    async def nickname_pool(self, guild: GuildID) -> List[str]:
        state = await self.scheduler.read(guild)
        return list(state.lottery.nickname_pool)

    async def configure_announcements(
        self,
        guild: GuildID,
        channel: Optional[ChannelID] = None,
        title: Optional[str] = None,
    ) -> LotteryState:
        """
        Set the announcement channel and/or the announcement title.

        A title needs a channel, either given now or configured earlier.

        Raises:
            NotConfigured: a title was given and no channel exists.
        """

        def apply(state: GuildFeatureState) -> LotteryState:
            lottery = state.lottery
            if channel is not None:
                lottery.announcement_channel = channel
            if title is not None:
                if lottery.announcement_channel is None:
                    raise NotConfigured("Set an announcement channel before a title.")
                lottery.title_override = title.strip() or None
            return LotteryState(
                announcement_channel=lottery.announcement_channel,
                title_override=lottery.title_override,
            )

        config = await self.scheduler.mutate(guild, apply)
        logger.info("[LOTTERY] Guild %s: announcements in %s", guild, config.announcement_channel)
        return config

    async def stop_announcements(self, guild: GuildID) -> bool:
        """Clear the announcement channel and title. Returns whether anything was set."""

        def apply(state: GuildFeatureState) -> bool:
            lottery = state.lottery
            changed = lottery.announcement_channel is not None or lottery.title_override is not None
            lottery.announcement_channel = None
            lottery.title_override = None
            return changed

        return await self.scheduler.mutate(guild, apply)

    # ------------------------------------------------------------------
    # Deadlines
    # ------------------------------------------------------------------

    async def on_fire(self, guild: GuildID, fired_at: datetime) -> DeliveryReport[UserID]:
        """Draw one name, rename every member to it, then report per-member outcomes."""
        report: DeliveryReport[UserID] = DeliveryReport()
        when = await self._schedule_next(guild, fired_at)

        state = await self.scheduler.read(guild)
        pool = state.lottery.nickname_pool
        if not pool:
            if self.scheduler.pending(guild, FeatureKind.LOTTERY) == when:
                await self.scheduler.cancel(guild, FeatureKind.LOTTERY)
            logger.debug("[LOTTERY] Guild %s: empty pool, not rescheduling", guild)
            return report

        nickname = self.clock.choice(pool)

        try:
            members = await self.retry.call(lambda: self.platform.list_member_ids(guild), f"list members of {guild}")
        except Exception as exc:
            logger.warning("[LOTTERY] Guild %s: could not list members: %s", guild, exc)
            members = []

        bot_id = self.platform.bot_user_id
        for member in members:
            if member == bot_id:
                continue
            if await self.platform.display_name(guild, member) == nickname:
                report.record(member, OutcomeStatus.SKIPPED, nickname)
                continue
            try:
                outcome = await self.retry.call(
                    lambda member=member: self.platform.set_nickname(guild, member, nickname),
                    f"rename {member}",
                )
            except Exception as exc:
                logger.debug("[LOTTERY] Guild %s: renaming %s failed: %s", guild, member, exc)
                report.record(member, OutcomeStatus.FAILED, str(exc))
                continue
            report.record(member, outcome, nickname)

        renamed = sum(1 for o in report.outcomes if o.status is OutcomeStatus.SUCCESS)
        logger.info(
            "[LOTTERY] Guild %s: renamed %d/%d member(s) to %r, next rotation at %s",
            guild, renamed, len(report), nickname, when.isoformat(),
        )

        await self.announce(guild, state.lottery, report, nickname, self.is_april_fools(fired_at))

        if self.event_bus is not None:
            try:
                await self.event_bus.publish(
                    EventKind.LOTTERY_ROTATED,
                    f"Nickname lottery in guild {guild} renamed {renamed} of {len(report)} member(s) to `{nickname}`.",
                )
            except Exception:
                logger.exception("[LOTTERY] Failed to publish lottery_rotated")
        return report

    async def announce(
        self,
        guild: GuildID,
        lottery: LotteryState,
        report: DeliveryReport[UserID],
        nickname: str,
        april_fools: bool,
    ) -> int:
        """
        Call out members who still need the new name.

        Failed renames are always announced; on April 1 successful ones are
        too. Nothing is posted without an announcement channel.

        Returns:
            int: Number of announcements posted.
        """
        channel = lottery.announcement_channel
        if channel is None:
            return 0

        title = announcement_title(lottery)
        posted = 0
        for outcome in report.outcomes:
            if outcome.status is OutcomeStatus.SKIPPED:
                continue
            if outcome.ok and not april_fools:
                continue
            try:
                await self.retry.call(
                    lambda target=outcome.target: self.platform.post_message(
                        channel, format_rename_demand(title, target, nickname)
                    ),
                    f"lottery announcement in {channel}",
                )
            except Exception as exc:
                logger.error("[LOTTERY] Guild %s: invalid announcement channel %s: %s", guild, channel, exc)
                await self.scheduler.report_error(f"Guild {guild}: invalid nickname lottery channel {channel}: {exc}")
                break
            posted += 1
        return posted

    async def restore(self, state: GuildFeatureState) -> None:
        """Redraw the next rotation for guilds with a pool."""
        if not state.lottery.nickname_pool:
            return
        when = await self._schedule_next(state.guild_id, self.clock.now())
        logger.info("[LOTTERY] Guild %s: redrew next rotation at %s", state.guild_id, when.isoformat())
