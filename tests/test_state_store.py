from pathlib import Path

import pytest

from conftest import T0
from loki.datatypes.discord_datatypes import ChannelID, GuildID, UserID
from loki.datatypes.errors import PersistenceFailure
from loki.datatypes.event_datatypes import EventKind
from loki.datatypes.feature_state import ContestPhase, GuildFeatureState, TimeoutRecord
from loki.state.state_store import MemoryStateStore, SqliteStateStore


def _state(guild: int) -> GuildFeatureState:
    state = GuildFeatureState(guild_id=GuildID(guild))
    state.contest.phase = ContestPhase.WATCHING
    state.contest.channel = ChannelID(guild + 1)
    state.contest.cycle_started_at = T0
    state.timeouts[UserID(5)] = TimeoutRecord(count=1, total_duration_seconds=60, last_timed_out=T0)
    state.responses["hello"] = "hi there"
    return state


@pytest.mark.asyncio
async def test_memory_store_copies_records_in_and_out() -> None:
    store = MemoryStateStore()
    state = _state(1)
    await store.save_guild(state)

    state.responses["hello"] = "changed after save"
    loaded = await store.load_guild(GuildID(1))

    assert loaded is not None
    assert loaded.responses == {"hello": "hi there"}
    assert await store.load_guild(GuildID(2)) is None


@pytest.mark.asyncio
async def test_memory_store_failed_write_keeps_previous_record() -> None:
    store = MemoryStateStore()
    await store.save_guild(_state(1))

    store.fail_writes = OSError("read-only")
    changed = _state(1)
    changed.responses.clear()
    with pytest.raises(PersistenceFailure):
        await store.save_guild(changed)

    loaded = await store.load_guild(GuildID(1))
    assert loaded is not None and loaded.responses == {"hello": "hi there"}


@pytest.mark.asyncio
async def test_sqlite_store_round_trips_guild_records(tmp_path: Path) -> None:
    store = SqliteStateStore(tmp_path / "nested" / "state.db")
    await store.open()
    try:
        await store.save_guild(_state(1))
        await store.save_guild(_state(2))

        loaded = await store.load_guild(GuildID(1))
        assert loaded is not None
        assert loaded.contest.phase is ContestPhase.WATCHING
        assert loaded.contest.channel == ChannelID(2)
        assert loaded.timeouts[UserID(5)].count == 1

        everything = await store.load_all()
        assert sorted(s.guild_id for s in everything) == [GuildID(1), GuildID(2)]
        assert await store.load_guild(GuildID(3)) is None
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_sqlite_store_upsert_replaces_record(tmp_path: Path) -> None:
    store = SqliteStateStore(tmp_path / "state.db")
    await store.open()
    try:
        state = _state(1)
        await store.save_guild(state)
        state.responses = {"bye": "see you"}
        await store.save_guild(state)

        loaded = await store.load_guild(GuildID(1))
        assert loaded is not None and loaded.responses == {"bye": "see you"}
        assert len(await store.load_all()) == 1
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_sqlite_store_persists_across_reopen(tmp_path: Path) -> None:
    path = tmp_path / "state.db"
    store = SqliteStateStore(path)
    await store.open()
    await store.save_guild(_state(7))
    await store.save_subscriptions({UserID(1): {EventKind.STARTUP, EventKind.ERROR}})
    await store.close()

    reopened = SqliteStateStore(path)
    await reopened.open()
    try:
        loaded = await reopened.load_guild(GuildID(7))
        assert loaded is not None and loaded.contest.cycle_started_at == T0
        assert await reopened.load_subscriptions() == {UserID(1): {EventKind.STARTUP, EventKind.ERROR}}
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_sqlite_subscriptions_are_replaced_wholesale(tmp_path: Path) -> None:
    store = SqliteStateStore(tmp_path / "state.db")
    await store.open()
    try:
        await store.save_subscriptions({UserID(1): {EventKind.STARTUP}, UserID(2): {EventKind.ERROR}})
        await store.save_subscriptions({UserID(2): {EventKind.CONTEST_RESOLVED}})

        assert await store.load_subscriptions() == {UserID(2): {EventKind.CONTEST_RESOLVED}}
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_sqlite_store_open_failure_is_a_persistence_failure(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("a file, not a directory", encoding="utf-8")

    store = SqliteStateStore(blocker / "state.db")
    with pytest.raises(PersistenceFailure):
        await store.open()
