"""
Meme-of-the-week contest.

Each guild with a contest channel cycles through

    WATCHING --(+5 days)--> REMINDER_SENT --(+2 days)--> TALLYING --> WATCHING

Messages posted in the channel while WATCHING or REMINDER_SENT become
candidates. At the tally the candidate with the strictly greatest total
reaction count wins; ties go to the earliest post and a candidate without
any reactions never wins.

Every state step is committed through ``TimerScheduler.mutate`` before any
platform call is made, so a slow or failing channel never holds a guild
lock and never rolls a phase back.

At boot, messages posted in the channel while the bot was offline are read
back from the channel history and entered like live ones.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Dict, Iterable, Optional, Sequence

from loki.datatypes.discord_datatypes import ChannelID, GuildID, MessageID, UserID
from loki.datatypes.event_datatypes import EventKind
from loki.datatypes.feature_state import (
    Candidate,
    ContestPhase,
    ContestState,
    GuildFeatureState,
)
from loki.platform.platform_client import PlatformClient, RetryPolicy
from loki.scheduler.timer_scheduler import FeatureKind, TimerScheduler
from loki.util.clock import Clock
from loki.util.logger import get_logger

if TYPE_CHECKING:
    from loki.features.event_bus import EventBus

logger = get_logger("contest_engine")

REMINDER_AFTER = timedelta(days=5)
TALLY_AFTER_REMINDER = timedelta(days=2)
CYCLE_LENGTH = REMINDER_AFTER + TALLY_AFTER_REMINDER

DATE_FMT = "%H:%M on %A %d %B %Y (%Z)"

ACCEPTING_PHASES = (ContestPhase.WATCHING, ContestPhase.REMINDER_SENT)

REMINDER_TEXT = "**No memes?**\nTwo days left! Perhaps time to post some?"
FAREWELL_TEXT = "**Halt your memes!**\nI won't see them anymore. :("


@dataclass(slots=True)
class ContestResult:
    """Outcome of one tally."""

    winner: Optional[Candidate]
    votes: int
    next_reminder_at: datetime


def select_winner(
    candidates: Sequence[Candidate],
    counts: Dict[MessageID, int],
) -> Optional[Candidate]:
    """
    Pick the candidate with the strictly greatest reaction total.

    Ties are broken by earliest ``posted_at`` (then by posting order).
    Candidates missing from ``counts`` count as zero, and a total of zero
    never wins.
    """
    best: Optional[Candidate] = None
    best_total = 0
    for candidate in sorted(candidates, key=lambda c: c.posted_at):
        total = counts.get(candidate.message_id, 0)
        if total > best_total:
            best, best_total = candidate, total
    return best


def message_link(guild: GuildID, channel: ChannelID, message: MessageID) -> str:
    return f"https://discord.com/channels/{guild}/{channel}/{message}"


class ContestEngine:
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
        scheduler.register(FeatureKind.CONTEST, self.on_fire, self.restore)

    @property
    def clock(self) -> Clock:
        return self.scheduler.clock

    def format_deadline(self, when: datetime) -> str:
        return when.astimezone(self.clock.tz).strftime(DATE_FMT)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def set_channel(self, guild: GuildID, channel: ChannelID) -> datetime:
        """
        Start a fresh cycle in ``channel`` from any phase.

        Returns:
            datetime: When the cycle will be resolved.
        """
        now = self.clock.now()

        def apply(state: GuildFeatureState) -> None:
            contest = state.contest
            contest.phase = ContestPhase.WATCHING
            contest.channel = channel
            contest.cycle_started_at = now
            contest.reminder_sent_at = None
            contest.candidates = []

        await self.scheduler.mutate(guild, apply)
        await self.scheduler.schedule_at(guild, FeatureKind.CONTEST, now + REMINDER_AFTER)
        logger.info("[CONTEST] Guild %s: channel set to %s", guild, channel)

        resolves_at = now + CYCLE_LENGTH
        await self._post(
            channel,
            "**Post your best memes!**\n"
            f"The post with the most total reactions by {self.format_deadline(resolves_at)} wins!",
            retry=False,
        )
        return resolves_at

    async def unset_channel(self, guild: GuildID) -> Optional[ChannelID]:
        """
        Return the guild to IDLE and drop its deadline.

        Returns:
            The channel that was configured, if any.
        """

        def apply(state: GuildFeatureState) -> Optional[ChannelID]:
            contest = state.contest
            previous = contest.channel
            contest.phase = ContestPhase.IDLE
            contest.channel = None
            contest.cycle_started_at = None
            contest.reminder_sent_at = None
            contest.candidates = []
            return previous

        previous = await self.scheduler.mutate(guild, apply)
        await self.scheduler.cancel(guild, FeatureKind.CONTEST)
        logger.info("[CONTEST] Guild %s: channel unset (was %s)", guild, previous)

        if previous is not None:
            await self._post(previous, FAREWELL_TEXT, retry=False)
        return previous

    # ------------------------------------------------------------------
    # Platform events
    # ------------------------------------------------------------------

    async def on_message(
        self,
        guild: GuildID,
        channel: ChannelID,
        message_id: MessageID,
        author_id: UserID,
        posted_at: datetime,
        is_bot: bool = False,
    ) -> bool:
        """
        Enter a message into the current cycle if it qualifies.

        Returns:
            bool: True when a new candidate was appended.
        """
        if is_bot or author_id == self.platform.bot_user_id:
            return False

        snapshot = await self.scheduler.read(guild)
        if not self._accepts(snapshot.contest, channel, message_id):
            return False

        def apply(state: GuildFeatureState) -> bool:
            contest = state.contest
            if not self._accepts(contest, channel, message_id):
                return False
            contest.candidates.append(Candidate(message_id, author_id, posted_at))
            return True

        appended = await self.scheduler.mutate(guild, apply)
        if appended:
            logger.debug("[CONTEST] Guild %s: candidate %s by %s", guild, message_id, author_id)
        return appended

    @staticmethod
    def _accepts(contest: ContestState, channel: ChannelID, message_id: MessageID) -> bool:
        return (
            contest.phase in ACCEPTING_PHASES
            and contest.channel == channel
            and not contest.has_candidate(message_id)
        )

    # ------------------------------------------------------------------
    # Deadlines
    # ------------------------------------------------------------------

    async def on_fire(self, guild: GuildID, fired_at: datetime) -> None:
        state = await self.scheduler.read(guild)
        phase = state.contest.phase

        if phase is ContestPhase.WATCHING:
            await self.send_reminder(guild, fired_at)
        elif phase in (ContestPhase.REMINDER_SENT, ContestPhase.TALLYING):
            await self.tally(guild, fired_at)
        else:
            logger.debug("[CONTEST] Guild %s: stale deadline in phase %s", guild, phase)

    async def send_reminder(self, guild: GuildID, now: datetime) -> bool:
        """WATCHING -> REMINDER_SENT; the reminder is only posted when nobody entered."""

        def apply(state: GuildFeatureState):
            contest = state.contest
            if contest.phase is not ContestPhase.WATCHING:
                return None
            contest.phase = ContestPhase.REMINDER_SENT
            contest.reminder_sent_at = now
            return contest.channel, len(contest.candidates)

        result = await self.scheduler.mutate(guild, apply)
        if result is None:
            return False

        channel, entries = result
        await self.scheduler.schedule_at(guild, FeatureKind.CONTEST, now + TALLY_AFTER_REMINDER)
        logger.info("[CONTEST] Guild %s: reminder deadline reached with %d entries", guild, entries)

        if entries == 0:
            await self._post(channel, REMINDER_TEXT)
        return True

    async def tally(self, guild: GuildID, now: datetime) -> Optional[ContestResult]:
        """
        Resolve the current cycle and start the next one.

        Returns None when the guild was not due for a tally or the cycle was
        replaced while reactions were being counted.
        """

        def begin(state: GuildFeatureState):
            contest = state.contest
            if contest.phase not in (ContestPhase.REMINDER_SENT, ContestPhase.TALLYING):
                return None
            contest.phase = ContestPhase.TALLYING
            return contest.channel, list(contest.candidates), contest.cycle_started_at

        snapshot = await self.scheduler.mutate(guild, begin)
        if snapshot is None:
            return None
        channel, candidates, cycle_started_at = snapshot

        counts = await self.count_reactions(channel, candidates)
        winner = select_winner(candidates, counts)
        votes = counts.get(winner.message_id, 0) if winner else 0
        next_reminder_at = now + REMINDER_AFTER

        def commit(state: GuildFeatureState) -> bool:
            contest = state.contest
            if (
                contest.phase is not ContestPhase.TALLYING
                or contest.channel != channel
                or contest.cycle_started_at != cycle_started_at
            ):
                return False
            contest.candidates = []
            contest.cycle_started_at = now
            contest.reminder_sent_at = None
            contest.phase = ContestPhase.WATCHING
            return True

        if not await self.scheduler.mutate(guild, commit):
            logger.info("[CONTEST] Guild %s: cycle changed during tally, result discarded", guild)
            return None

        await self.scheduler.schedule_at(guild, FeatureKind.CONTEST, next_reminder_at)
        logger.info(
            "[CONTEST] Guild %s: tallied %d candidate(s), winner %s with %d vote(s)",
            guild, len(candidates), winner.message_id if winner else None, votes,
        )

        resolves_at = now + CYCLE_LENGTH
        if winner is not None:
            text = (
                "**Voting results**\n"
                f"Congratulations <@{winner.author_id}> for winning this week's meme contest, with their "
                f"entry [here]({message_link(guild, channel, winner.message_id)})!\n\n"
                f"It won with a resounding {votes} votes.\n\n"
                "I've reset the entries, so post your best memes and perhaps next week you'll win? 😉\n\n"
                f"You've got until {self.format_deadline(resolves_at)}."
            )
            summary = f"Meme contest in guild {guild} won by <@{winner.author_id}> with {votes} votes."
        else:
            text = (
                "**No votes**\n"
                "There weren't any votes (reactions), so there's no winner. Sadge.\n\n"
                "I've reset the entries, so can you, like, _do something_ this week?\n\n"
                f"You've got until {self.format_deadline(resolves_at)}."
            )
            summary = f"Meme contest in guild {guild} ended without a winner."

        await self._post(channel, text)
        await self._publish(summary)
        return ContestResult(winner=winner, votes=votes, next_reminder_at=next_reminder_at)

    async def count_reactions(
        self,
        channel: ChannelID,
        candidates: Iterable[Candidate],
    ) -> Dict[MessageID, int]:
        """Total reactions per candidate; a failed fetch counts as zero."""
        counts: Dict[MessageID, int] = {}
        for candidate in candidates:
            try:
                reactions = await self.retry.call(
                    lambda candidate=candidate: self.platform.list_reactions(channel, candidate.message_id),
                    f"list reactions of {candidate.message_id}",
                )
            except Exception as exc:
                logger.warning("[CONTEST] Could not count reactions of %s: %s", candidate.message_id, exc)
                counts[candidate.message_id] = 0
                continue
            counts[candidate.message_id] = sum(reactions.values())
        return counts

    async def restore(self, state: GuildFeatureState) -> None:
        """Rebuild the contest deadline from persisted timestamps."""
        contest = state.contest
        if contest.phase is ContestPhase.IDLE or contest.channel is None:
            return

        started = contest.cycle_started_at or self.clock.now()
        if contest.phase is ContestPhase.WATCHING:
            when = started + REMINDER_AFTER
        elif contest.reminder_sent_at is not None:
            when = contest.reminder_sent_at + TALLY_AFTER_REMINDER
        else:
            when = started + CYCLE_LENGTH

        await self.scheduler.schedule_at(state.guild_id, FeatureKind.CONTEST, when)
        logger.info("[CONTEST] Guild %s: restored %s deadline at %s", state.guild_id, contest.phase, when.isoformat())

        await self.catch_up(state)

    async def catch_up(self, state: GuildFeatureState) -> int:
        """
        Enter messages posted in the contest channel while the bot was offline.

        History is read after the last candidate, or after the start of the
        cycle when there is none yet.

        Returns:
            int: Number of candidates added.
        """
        contest = state.contest
        channel = contest.channel
        if contest.phase not in ACCEPTING_PHASES or channel is None:
            return 0

        after = contest.candidates[-1].message_id if contest.candidates else contest.cycle_started_at
        if after is None:
            return 0

        try:
            messages = await self.retry.call(
                lambda: self.platform.list_messages_after(channel, after),
                f"read missed messages in {channel}",
            )
        except Exception as exc:
            logger.error("[CONTEST] Guild %s: could not retrieve missed messages: %s", state.guild_id, exc)
            await self.scheduler.report_error(f"Error retrieving missed messages in guild {state.guild_id}: {exc}")
            return 0

        added = 0
        for message in messages:
            if await self.on_message(
                state.guild_id, channel, message.message_id, message.author_id, message.posted_at, message.is_bot
            ):
                added += 1
        logger.info("[CONTEST] Guild %s: caught up with %d missed message(s)", state.guild_id, added)
        return added

    # ------------------------------------------------------------------
    # Outward calls
    # ------------------------------------------------------------------

    async def _post(self, channel: ChannelID, text: str, retry: bool = True) -> Optional[MessageID]:
        """Post a message; failures are logged and never raised."""
        try:
            if retry:
                return await self.retry.call(lambda: self.platform.post_message(channel, text), f"post in {channel}")
            return await self.platform.post_message(channel, text)
        except Exception as exc:
            logger.warning("[CONTEST] Failed to post in channel %s: %s", channel, exc)
            return None

    async def _publish(self, message: str) -> None:
        if self.event_bus is None:
            return
        try:
            await self.event_bus.publish(EventKind.CONTEST_RESOLVED, message)
        except Exception:
            logger.exception("[CONTEST] Failed to publish contest_resolved")
