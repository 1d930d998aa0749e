from unittest.mock import AsyncMock

import pytest

from loki.datatypes.discord_datatypes import UserID
from loki.datatypes.errors import PermissionDenied
from loki.datatypes.event_datatypes import EventKind, OutcomeStatus
from loki.features.event_bus import EventBus, format_notification

MANAGER = UserID(1)
ALICE = UserID(2)
BOB = UserID(3)


@pytest.fixture()
def bus(scheduler, platform, retry) -> EventBus:
    return EventBus(scheduler, platform, manager_id=MANAGER, retry=retry)


def test_format_notification_mentions_the_kind():
    text = format_notification(EventKind.STARTUP, "Loki has started up.")
    assert text.startswith("Loki has started up.\n\n")
    assert "`startup`" in text


@pytest.mark.asyncio
async def test_subscribe_is_idempotent(bus):
    assert await bus.subscribe(ALICE, EventKind.STARTUP) is True
    assert await bus.subscribe(ALICE, EventKind.STARTUP) is False
    assert await bus.subscriptions(ALICE) == {EventKind.STARTUP}


@pytest.mark.asyncio
async def test_unsubscribe_is_idempotent(bus):
    await bus.subscribe(ALICE, EventKind.STARTUP)
    await bus.subscribe(ALICE, EventKind.CONTEST_RESOLVED)

    assert await bus.unsubscribe(ALICE, EventKind.STARTUP) is True
    assert await bus.unsubscribe(ALICE, EventKind.STARTUP) is False
    assert await bus.unsubscribe(BOB, EventKind.STARTUP) is False
    assert await bus.subscriptions(ALICE) == {EventKind.CONTEST_RESOLVED}


@pytest.mark.asyncio
async def test_error_events_are_manager_only(bus, scheduler):
    with pytest.raises(PermissionDenied):
        await bus.subscribe(ALICE, EventKind.ERROR)
    assert await scheduler.read_subscriptions() == {}

    assert await bus.subscribe(MANAGER, EventKind.ERROR) is True


@pytest.mark.asyncio
async def test_error_events_rejected_without_a_manager(scheduler, platform, retry):
    bus = EventBus(scheduler, platform, manager_id=None, retry=retry)
    with pytest.raises(PermissionDenied):
        await bus.subscribe(ALICE, EventKind.ERROR)


@pytest.mark.asyncio
async def test_publish_reaches_only_subscribers_and_reports_closed_dms(bus, platform):
    await bus.subscribe(ALICE, EventKind.STARTUP)
    await bus.subscribe(BOB, EventKind.STARTUP)
    await bus.subscribe(MANAGER, EventKind.CONTEST_RESOLVED)
    platform.closed_dms.add(BOB)

    report = await bus.publish(EventKind.STARTUP, "Loki has started up.")

    assert report.succeeded == [ALICE]
    assert [(o.target, o.status) for o in report.failed] == [(BOB, OutcomeStatus.FAILED)]
    assert [user for user, _ in platform.dms] == [ALICE]
    assert "Loki has started up." in platform.dms[0][1]


@pytest.mark.asyncio
async def test_publish_continues_after_a_raising_recipient(bus, platform):
    await bus.subscribe(ALICE, EventKind.STARTUP)
    await bus.subscribe(BOB, EventKind.STARTUP)

    original = platform.send_direct_message

    async def flaky(user, text):
        if user == ALICE:
            raise RuntimeError("boom")
        return await original(user, text)

    platform.send_direct_message = flaky

    report = await bus.publish(EventKind.STARTUP, "hello")

    assert report.succeeded == [BOB]
    assert report.failed[0].target == ALICE


@pytest.mark.asyncio
async def test_publish_without_subscribers_is_empty(bus, platform):
    report = await bus.publish(EventKind.LOTTERY_ROTATED, "nothing to see")
    assert len(report) == 0
    assert platform.dms == []


@pytest.mark.asyncio
async def test_publish_error_goes_to_error_subscribers(bus, platform):
    await bus.subscribe(MANAGER, EventKind.ERROR)

    await bus.publish_error("something broke")

    assert platform.dms[0][0] == MANAGER
    assert "`error`" in platform.dms[0][1]


@pytest.mark.asyncio
async def test_scheduler_failures_reach_error_subscribers(bus, scheduler, clock, platform, guild):
    from datetime import timedelta

    from loki.scheduler.timer_scheduler import FeatureKind

    scheduler.error_reporter = bus.publish_error
    scheduler.register(FeatureKind.CONTEST, AsyncMock(side_effect=RuntimeError("kaboom")))
    await bus.subscribe(MANAGER, EventKind.ERROR)

    await scheduler.schedule_at(guild, FeatureKind.CONTEST, clock.now())
    clock.advance(timedelta(seconds=1))
    await scheduler.fire_due()

    assert len(platform.dms) == 1
    assert "kaboom" in platform.dms[0][1]
