import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import T0
from loki.datatypes.discord_datatypes import ChannelID, GuildID, MessageID, UserID
from loki.datatypes.errors import NetworkTransient
from loki.datatypes.event_datatypes import EventKind
from loki.datatypes.feature_state import Candidate, ContestPhase, GuildFeatureState
from loki.features.contest_engine import (
    FAREWELL_TEXT,
    REMINDER_TEXT,
    ContestEngine,
    message_link,
    select_winner,
)
from loki.platform.platform_client import ChannelMessage
from loki.scheduler.timer_scheduler import FeatureKind


@pytest.fixture()
def bus():
    return AsyncMock()


@pytest.fixture()
def engine(scheduler, platform, retry, bus) -> ContestEngine:
    return ContestEngine(scheduler, platform, event_bus=bus, retry=retry)


async def _enter(engine, guild, channel, message: int, author: int, offset_hours: int = 1) -> bool:
    return await engine.on_message(
        guild, channel, MessageID(message), UserID(author), T0 + timedelta(hours=offset_hours)
    )


def test_select_winner_prefers_earliest_on_ties():
    a = Candidate(MessageID(1), UserID(10), T0)
    b = Candidate(MessageID(2), UserID(20), T0 + timedelta(hours=1))
    c = Candidate(MessageID(3), UserID(30), T0 + timedelta(hours=2))

    counts = {a.message_id: 3, b.message_id: 5, c.message_id: 5}

    assert select_winner([c, a, b], counts) == b


def test_select_winner_needs_at_least_one_reaction():
    a = Candidate(MessageID(1), UserID(10), T0)
    assert select_winner([a], {}) is None
    assert select_winner([a], {a.message_id: 0}) is None
    assert select_winner([], {}) is None


def test_message_link_format():
    assert message_link(GuildID(1), ChannelID(2), MessageID(3)) == "https://discord.com/channels/1/2/3"


@pytest.mark.asyncio
async def test_set_channel_starts_watching_and_greets(engine, scheduler, platform, guild, channel):
    resolves_at = await engine.set_channel(guild, channel)

    assert resolves_at == T0 + timedelta(days=7)
    assert scheduler.pending(guild, FeatureKind.CONTEST) == T0 + timedelta(days=5)

    state = await scheduler.read(guild)
    assert state.contest.phase is ContestPhase.WATCHING
    assert state.contest.channel == channel
    assert state.contest.cycle_started_at == T0

    assert len(platform.posts) == 1
    assert platform.posts[0][0] == channel
    assert "Post your best memes" in platform.posts[0][1]


@pytest.mark.asyncio
async def test_greeting_failure_does_not_undo_the_channel(engine, scheduler, platform, guild, channel):
    platform.post_error = RuntimeError("no access")

    await engine.set_channel(guild, channel)

    state = await scheduler.read(guild)
    assert state.contest.channel == channel


@pytest.mark.asyncio
async def test_messages_only_count_in_the_contest_channel(engine, scheduler, guild, channel):
    await engine.set_channel(guild, channel)

    assert await _enter(engine, guild, channel, 1, 10) is True
    assert await _enter(engine, guild, channel, 1, 10) is False
    assert await _enter(engine, guild, ChannelID(1), 2, 10) is False
    assert await engine.on_message(guild, channel, MessageID(3), UserID(11), T0, is_bot=True) is False
    assert await engine.on_message(guild, channel, MessageID(4), UserID(999), T0) is False

    state = await scheduler.read(guild)
    assert [c.message_id for c in state.contest.candidates] == [MessageID(1)]


@pytest.mark.asyncio
async def test_messages_ignored_when_idle(engine, scheduler, guild, channel):
    assert await _enter(engine, guild, channel, 1, 10) is False
    assert await scheduler.store.load_guild(guild) is None


@pytest.mark.asyncio
async def test_full_cycle_timing_and_winner(engine, scheduler, clock, platform, bus, guild, channel):
    await engine.set_channel(guild, channel)
    await _enter(engine, guild, channel, 1, 10, offset_hours=1)
    await _enter(engine, guild, channel, 2, 20, offset_hours=2)
    await _enter(engine, guild, channel, 3, 30, offset_hours=3)
    platform.reactions = {
        MessageID(1): {"👍": 3},
        MessageID(2): {"😂": 4, "🔥": 1},
        MessageID(3): {"💀": 5},
    }
    platform.posts.clear()

    clock.set(T0 + timedelta(days=5))
    assert await scheduler.fire_due() == 1

    state = await scheduler.read(guild)
    assert state.contest.phase is ContestPhase.REMINDER_SENT
    assert scheduler.pending(guild, FeatureKind.CONTEST) == T0 + timedelta(days=7)
    # entries exist, so no nudge
    assert platform.posts == []

    clock.set(T0 + timedelta(days=7))
    assert await scheduler.fire_due() == 1

    state = await scheduler.read(guild)
    assert state.contest.phase is ContestPhase.WATCHING
    assert state.contest.candidates == []
    assert state.contest.cycle_started_at == T0 + timedelta(days=7)
    assert scheduler.pending(guild, FeatureKind.CONTEST) == T0 + timedelta(days=12)

    assert len(platform.posts) == 1
    announcement = platform.posts[0][1]
    assert "<@20>" in announcement
    assert message_link(guild, channel, MessageID(2)) in announcement
    assert "5 votes" in announcement

    bus.publish.assert_awaited_once()
    assert bus.publish.await_args.args[0] is EventKind.CONTEST_RESOLVED


@pytest.mark.asyncio
async def test_reminder_posted_only_without_entries(engine, scheduler, clock, platform, guild, channel):
    await engine.set_channel(guild, channel)
    platform.posts.clear()

    clock.set(T0 + timedelta(days=5))
    await scheduler.fire_due()

    assert platform.posts == [(channel, REMINDER_TEXT)]


@pytest.mark.asyncio
async def test_tally_without_votes_posts_no_winner(engine, scheduler, clock, platform, guild, channel):
    await engine.set_channel(guild, channel)
    await _enter(engine, guild, channel, 1, 10)
    clock.set(T0 + timedelta(days=5))
    await engine.send_reminder(guild, clock.now())
    platform.posts.clear()

    clock.set(T0 + timedelta(days=7))
    result = await engine.tally(guild, clock.now())

    assert result is not None
    assert result.winner is None
    assert result.votes == 0
    assert result.next_reminder_at == T0 + timedelta(days=12)
    assert "No votes" in platform.posts[0][1]


@pytest.mark.asyncio
async def test_failed_reaction_fetch_counts_as_zero(engine, scheduler, clock, platform, guild, channel):
    await engine.set_channel(guild, channel)
    await _enter(engine, guild, channel, 1, 10, offset_hours=1)
    await _enter(engine, guild, channel, 2, 20, offset_hours=2)
    platform.reactions = {MessageID(1): {"👍": 9}, MessageID(2): {"👍": 1}}
    platform.reaction_errors = {MessageID(1): NetworkTransient("gone away")}
    await engine.send_reminder(guild, T0 + timedelta(days=5))

    result = await engine.tally(guild, T0 + timedelta(days=7))

    assert result is not None and result.winner is not None
    assert result.winner.message_id == MessageID(2)
    assert result.votes == 1


@pytest.mark.asyncio
async def test_tally_outside_reminder_phase_is_a_no_op(engine, scheduler, guild, channel):
    await engine.set_channel(guild, channel)

    assert await engine.tally(guild, T0 + timedelta(days=1)) is None
    state = await scheduler.read(guild)
    assert state.contest.phase is ContestPhase.WATCHING


@pytest.mark.asyncio
async def test_unset_channel_goes_idle_and_says_goodbye(engine, scheduler, platform, guild, channel):
    await engine.set_channel(guild, channel)
    await _enter(engine, guild, channel, 1, 10)
    platform.posts.clear()

    assert await engine.unset_channel(guild) == channel

    state = await scheduler.read(guild)
    assert state.contest.phase is ContestPhase.IDLE
    assert state.contest.channel is None
    assert state.contest.candidates == []
    assert scheduler.pending(guild, FeatureKind.CONTEST) is None
    assert platform.posts == [(channel, FAREWELL_TEXT)]

    assert await engine.unset_channel(guild) is None


@pytest.mark.asyncio
async def test_set_channel_again_restarts_the_cycle(engine, scheduler, clock, guild, channel):
    await engine.set_channel(guild, channel)
    await _enter(engine, guild, channel, 1, 10)

    clock.advance(timedelta(days=2))
    other = ChannelID(3003)
    await engine.set_channel(guild, other)

    state = await scheduler.read(guild)
    assert state.contest.channel == other
    assert state.contest.candidates == []
    assert scheduler.pending(guild, FeatureKind.CONTEST) == T0 + timedelta(days=7)


@pytest.mark.asyncio
async def test_restore_rebuilds_deadlines_per_phase(engine, scheduler, store):
    watching = GuildFeatureState(guild_id=GuildID(1))
    watching.contest.phase = ContestPhase.WATCHING
    watching.contest.channel = ChannelID(10)
    watching.contest.cycle_started_at = T0

    reminded = GuildFeatureState(guild_id=GuildID(2))
    reminded.contest.phase = ContestPhase.REMINDER_SENT
    reminded.contest.channel = ChannelID(20)
    reminded.contest.cycle_started_at = T0
    reminded.contest.reminder_sent_at = T0 + timedelta(days=5, hours=1)

    idle = GuildFeatureState(guild_id=GuildID(3))

    for state in (watching, reminded, idle):
        await store.save_guild(state)

    await scheduler.restore()

    assert scheduler.pending(GuildID(1), FeatureKind.CONTEST) == T0 + timedelta(days=5)
    assert scheduler.pending(GuildID(2), FeatureKind.CONTEST) == T0 + timedelta(days=7, hours=1)
    assert scheduler.pending(GuildID(3), FeatureKind.CONTEST) is None


@pytest.mark.asyncio
async def test_overdue_tally_after_restart_fires_immediately(engine, scheduler, clock, platform, store):
    state = GuildFeatureState(guild_id=GuildID(1))
    state.contest.phase = ContestPhase.TALLYING
    state.contest.channel = ChannelID(10)
    state.contest.cycle_started_at = T0 - timedelta(days=9)
    state.contest.reminder_sent_at = T0 - timedelta(days=4)
    await store.save_guild(state)

    await scheduler.restore()
    assert await scheduler.fire_due() == 1

    after = await scheduler.read(GuildID(1))
    assert after.contest.phase is ContestPhase.WATCHING
    assert after.contest.cycle_started_at == T0
    assert scheduler.pending(GuildID(1), FeatureKind.CONTEST) == T0 + timedelta(days=5)
    # the next cycle runs from the late tally, not from the missed deadline
    assert engine.format_deadline(T0 + timedelta(days=7)) in platform.posts[-1][1]


@pytest.mark.asyncio
async def test_failed_reminder_write_keeps_a_deadline(engine, scheduler, clock, store, platform, guild, channel):
    await engine.set_channel(guild, channel)
    clock.set(T0 + timedelta(days=5))

    store.fail_writes = OSError("database is locked")
    await scheduler.fire_due()
    store.fail_writes = None

    retry_at = scheduler.pending(guild, FeatureKind.CONTEST)
    assert retry_at == T0 + timedelta(days=5, minutes=1)
    assert (await scheduler.read(guild)).contest.phase is ContestPhase.WATCHING

    clock.set(retry_at)
    assert await scheduler.fire_due() == 1

    state = await scheduler.read(guild)
    assert state.contest.phase is ContestPhase.REMINDER_SENT
    assert scheduler.pending(guild, FeatureKind.CONTEST) == retry_at + timedelta(days=2)
    assert platform.posts[-1] == (channel, REMINDER_TEXT)


def _watching_state(phase: ContestPhase = ContestPhase.WATCHING) -> GuildFeatureState:
    state = GuildFeatureState(guild_id=GuildID(1))
    state.contest.phase = phase
    state.contest.channel = ChannelID(10)
    state.contest.cycle_started_at = T0 - timedelta(days=1)
    if phase is not ContestPhase.WATCHING:
        state.contest.reminder_sent_at = T0 - timedelta(hours=1)
    return state


@pytest.mark.asyncio
async def test_restore_enters_messages_posted_while_offline(engine, scheduler, store, platform):
    state = _watching_state()
    state.contest.candidates = [Candidate(MessageID(50), UserID(1), T0 - timedelta(hours=20))]
    await store.save_guild(state)
    platform.history[ChannelID(10)] = [
        ChannelMessage(MessageID(40), UserID(2), T0 - timedelta(hours=22)),
        ChannelMessage(MessageID(60), UserID(3), T0 - timedelta(hours=5)),
        ChannelMessage(MessageID(61), UserID(4), T0 - timedelta(hours=4), is_bot=True),
        ChannelMessage(MessageID(62), platform.bot_user_id, T0 - timedelta(hours=3)),
        ChannelMessage(MessageID(63), UserID(5), T0 - timedelta(hours=2)),
    ]

    await scheduler.restore()

    assert platform.history_requests == [(ChannelID(10), MessageID(50))]
    after = await scheduler.read(GuildID(1))
    assert [c.message_id for c in after.contest.candidates] == [MessageID(50), MessageID(60), MessageID(63)]
    assert after.contest.candidates[1].posted_at == T0 - timedelta(hours=5)
    assert scheduler.pending(GuildID(1), FeatureKind.CONTEST) == T0 + timedelta(days=4)


@pytest.mark.asyncio
async def test_catch_up_without_entries_reads_from_cycle_start(engine, store, platform):
    state = _watching_state(ContestPhase.REMINDER_SENT)
    await store.save_guild(state)
    platform.history[ChannelID(10)] = [
        ChannelMessage(MessageID(30), UserID(2), T0 - timedelta(days=2)),
        ChannelMessage(MessageID(70), UserID(3), T0 - timedelta(hours=6)),
    ]

    assert await engine.catch_up(state) == 1
    assert platform.history_requests == [(ChannelID(10), T0 - timedelta(days=1))]


@pytest.mark.asyncio
async def test_catch_up_skipped_outside_accepting_phases(engine, store, platform):
    tallying = _watching_state(ContestPhase.TALLYING)
    idle = GuildFeatureState(guild_id=GuildID(2))

    assert await engine.catch_up(tallying) == 0
    assert await engine.catch_up(idle) == 0
    assert platform.history_requests == []


@pytest.mark.asyncio
async def test_history_failure_is_reported_and_deadline_kept(engine, scheduler, store, platform):
    reporter = AsyncMock()
    scheduler.error_reporter = reporter
    platform.history_error = NetworkTransient("gateway unavailable")
    await store.save_guild(_watching_state())

    await scheduler.restore()

    assert scheduler.pending(GuildID(1), FeatureKind.CONTEST) == T0 + timedelta(days=4)
    reporter.assert_awaited_once()
    assert "Error retrieving missed messages in guild 1" in reporter.await_args.args[0]
    assert (await scheduler.read(GuildID(1))).contest.candidates == []


class HeldReactions:
    """Reaction lookup that waits until the test lets it return."""

    def __init__(self) -> None:
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, channel, message):
        self.entered.set()
        await self.release.wait()
        return {"👍": 3}


async def _start_held_tally(engine, scheduler, clock, platform, guild, channel):
    await engine.set_channel(guild, channel)
    await _enter(engine, guild, channel, 1, 10)
    await engine.send_reminder(guild, T0 + timedelta(days=5))

    held = HeldReactions()
    platform.list_reactions = held
    clock.set(T0 + timedelta(days=7))
    task = asyncio.create_task(engine.tally(guild, clock.now()))
    await held.entered.wait()
    return held, task


@pytest.mark.asyncio
async def test_messages_rejected_while_tallying(engine, scheduler, clock, platform, guild, channel):
    held, task = await _start_held_tally(engine, scheduler, clock, platform, guild, channel)

    assert (await scheduler.read(guild)).contest.phase is ContestPhase.TALLYING
    assert await _enter(engine, guild, channel, 2, 20, offset_hours=170) is False

    held.release.set()
    result = await task

    assert result is not None and result.votes == 3
    assert (await scheduler.read(guild)).contest.candidates == []


@pytest.mark.asyncio
async def test_channel_change_during_tally_discards_result(engine, scheduler, clock, platform, bus, guild, channel):
    held, task = await _start_held_tally(engine, scheduler, clock, platform, guild, channel)
    posts_before = len(platform.posts)

    other = ChannelID(3003)
    clock.advance(timedelta(hours=1))
    await engine.set_channel(guild, other)
    held.release.set()

    assert await task is None

    state = await scheduler.read(guild)
    assert state.contest.phase is ContestPhase.WATCHING
    assert state.contest.channel == other
    assert state.contest.cycle_started_at == T0 + timedelta(days=7, hours=1)
    assert state.contest.candidates == []
    assert scheduler.pending(guild, FeatureKind.CONTEST) == T0 + timedelta(days=12, hours=1)
    # only the greeting for the new channel
    assert len(platform.posts) == posts_before + 1
    assert not any("Voting results" in text for _, text in platform.posts)
    bus.publish.assert_not_awaited()


@pytest.mark.asyncio
async def test_unset_during_tally_leaves_guild_idle(engine, scheduler, clock, platform, guild, channel):
    held, task = await _start_held_tally(engine, scheduler, clock, platform, guild, channel)

    assert await engine.unset_channel(guild) == channel
    held.release.set()

    assert await task is None
    state = await scheduler.read(guild)
    assert state.contest.phase is ContestPhase.IDLE
    assert state.contest.channel is None
    assert scheduler.pending(guild, FeatureKind.CONTEST) is None
    assert not any("Voting results" in text for _, text in platform.posts)
