"""
Wiring of the state store, scheduler and feature engines.

One :class:`LokiRuntime` exists per process. ``main`` builds it from the
application config, the cogs receive it in their ``setup`` function, and the
events listener starts it once the gateway is ready.
"""

from __future__ import annotations

import discord

from loki.configuration.app_configuration import AppConfig, app_config
from loki.datatypes.discord_datatypes import UserID
from loki.datatypes.event_datatypes import EventKind
from loki.features.contest_engine import ContestEngine
from loki.features.event_bus import EventBus
from loki.features.rotation_lottery import RotationLottery
from loki.features.scoreboards import Scoreboards
from loki.features.text_responses import TextResponses
from loki.features.timeout_aggregator import TimeoutAggregator
from loki.platform.discord_client import DiscordPlatformClient
from loki.platform.platform_client import PlatformClient, RetryPolicy
from loki.scheduler.timer_scheduler import TimerScheduler
from loki.state.state_store import SqliteStateStore, StateStore
from loki.util.clock import Clock
from loki.util.logger import get_logger

logger = get_logger("runtime")


class LokiRuntime:
    """Owns every long-lived component of the bot."""

    def __init__(
        self,
        store: StateStore,
        platform: PlatformClient,
        clock: Clock,
        manager_id: UserID | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.store = store
        self.platform = platform
        self.clock = clock
        self.manager_id = manager_id
        self.retry = retry or RetryPolicy()

        self.scheduler = TimerScheduler(store, clock)
        self.event_bus = EventBus(self.scheduler, platform, manager_id, self.retry)
        self.contest = ContestEngine(self.scheduler, platform, self.event_bus, self.retry)
        self.lottery = RotationLottery(self.scheduler, platform, self.event_bus, self.retry)
        self.timeouts = TimeoutAggregator(self.scheduler, platform, self.event_bus, self.retry)
        self.responses = TextResponses(self.scheduler)
        self.scoreboards = Scoreboards(self.scheduler)
        self.scheduler.error_reporter = self.event_bus.publish_error
        self._started = False

    @classmethod
    def from_config(cls, bot: discord.Bot, config: AppConfig = app_config) -> "LokiRuntime":
        manager = config.manager_id
        return cls(
            store=SqliteStateStore(config.state_path),
            platform=DiscordPlatformClient(bot),
            clock=Clock(config.timezone),
            manager_id=UserID(manager) if manager is not None else None,
            retry=RetryPolicy(config.retry_attempts, config.retry_initial_delay),
        )

    @property
    def started(self) -> bool:
        return self._started

    async def open(self) -> None:
        """Open the state store. Raises PersistenceFailure when it is unusable."""
        await self.store.open()

    async def start(self) -> bool:
        """
        Restore deadlines, start the scheduler loop and announce the startup.

        Returns False when the runtime was already started (gateway reconnects
        fire ``on_ready`` again).
        """
        if self._started:
            return False
        self._started = True

        restored = await self.scheduler.restore()
        self.scheduler.start()
        logger.info("[RUNTIME] Started with %d guild record(s)", restored)

        await self.event_bus.publish(EventKind.STARTUP, "Loki has started up.")
        return True

    async def shutdown(self) -> None:
        await self.scheduler.shutdown()
        await self.store.close()
        self._started = False
        logger.info("[RUNTIME] Shutdown complete")
