"""
Timer scheduler shared by every time-driven feature.

The scheduler is the single arbiter of "what happens next and when":

  - it keeps one pending deadline per ``(guild, feature)`` key in a min-heap
    and sleeps until the earliest one, waking early when a sooner deadline
    is registered;
  - it is the only writer to the :class:`StateStore`; every mutation runs
    under the guild's lock against a freshly loaded record and is saved
    before the lock is released.

Feature engines register an on-fire callback per :class:`FeatureKind` and
an optional restorer that rebuilds deadlines from persisted records at boot.
Callbacks must not hold a guild lock while talking to the platform; they
call :meth:`TimerScheduler.mutate` for each state step instead.

Each due callback runs in its own task, so a guild stuck on a slow platform
call never delays other guilds. Callbacks of the same guild still run one
at a time. A callback that fails without registering its next deadline is
re-armed with a bounded backoff.
"""

from __future__ import annotations

import asyncio
import heapq
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from loki.datatypes.discord_datatypes import GuildID
from loki.datatypes.feature_state import GuildFeatureState, SubscriptionMap
from loki.state.state_store import StateStore
from loki.util.clock import Clock
from loki.util.logger import get_logger

logger = get_logger("timer_scheduler")

R = TypeVar("R")

FireCallback = Callable[[GuildID, datetime], Awaitable[None]]
Restorer = Callable[[GuildFeatureState], Awaitable[None]]
ErrorReporter = Callable[[str], Awaitable[object]]

RETRY_BASE_DELAY = timedelta(minutes=1)
RETRY_MAX_DELAY = timedelta(hours=1)


class FeatureKind(Enum):
    """Features that own a deadline in the scheduler."""

    CONTEST = "contest"
    LOTTERY = "lottery"

    def __str__(self) -> str:
        return self.value


JobKey = Tuple[GuildID, FeatureKind]


class TimerScheduler:
    """
    Min-heap of per-guild feature deadlines plus the serialized mutation path.

    Attributes:
        heap (list): Min-heap of (run_at, job_id, key) tuples.
        pending_keys (Dict): Maps (guild_id, feature) to (job_id, run_at).
        cancelled_ids (set): Job IDs replaced or cancelled but still in the heap.
        counter (int): Monotonically increasing job ID counter.
        runner_task (asyncio.Task | None): Background task running the loop.
        condition (asyncio.Condition): Wakes the loop when the heap changes.
        tasks (set): Callback tasks that have not finished yet.
        failures (Dict): Consecutive callback failures per (guild_id, feature).
    """

    def __init__(self, store: StateStore, clock: Clock) -> None:
        self.store = store
        self.clock = clock
        self.heap: list[tuple[datetime, int, JobKey]] = []
        self.pending_keys: Dict[JobKey, Tuple[int, datetime]] = {}
        self.cancelled_ids: set[int] = set()
        self.counter: int = 0
        self.runner_task: asyncio.Task[None] | None = None
        self.condition: asyncio.Condition = asyncio.Condition()
        self.callbacks: Dict[FeatureKind, FireCallback] = {}
        self.restorers: List[Restorer] = []
        self.error_reporter: ErrorReporter | None = None
        self.tasks: set[asyncio.Task[None]] = set()
        self.failures: Dict[JobKey, int] = {}
        self._guild_locks: Dict[GuildID, asyncio.Lock] = {}
        self._firing_locks: Dict[GuildID, asyncio.Lock] = {}
        self._subscription_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        feature_kind: FeatureKind,
        callback: FireCallback,
        restorer: Restorer | None = None,
    ) -> None:
        """Bind the on-fire coroutine (and optional boot restorer) of a feature."""
        self.callbacks[feature_kind] = callback
        if restorer is not None:
            self.restorers.append(restorer)

    # ------------------------------------------------------------------
    # Deadlines
    # ------------------------------------------------------------------

    async def schedule_at(self, guild_id: GuildID, feature_kind: FeatureKind, when: datetime) -> None:
        """Register or replace the wake request for ``(guild_id, feature_kind)``."""
        async with self.condition:
            key = (guild_id, feature_kind)
            previous = self.pending_keys.get(key)
            if previous is not None:
                self.cancelled_ids.add(previous[0])

            self.counter += 1
            job_id = self.counter
            heapq.heappush(self.heap, (when, job_id, key))
            self.pending_keys[key] = (job_id, when)
            self.condition.notify_all()

        logger.debug("[TIMER SCHEDULER] %s for guild %s scheduled at %s", feature_kind, guild_id, when.isoformat())

    async def cancel(self, guild_id: GuildID, feature_kind: FeatureKind) -> bool:
        """
        Cancel the pending deadline of a feature if one exists.

        The job stays in the heap and is skipped when it reaches the top.

        Returns:
            bool: True if a deadline was found and cancelled.
        """
        async with self.condition:
            entry = self.pending_keys.pop((guild_id, feature_kind), None)
            if entry is None:
                return False

            self.cancelled_ids.add(entry[0])
            self.condition.notify_all()
            return True

    def pending(self, guild_id: GuildID, feature_kind: FeatureKind) -> Optional[datetime]:
        """Deadline currently registered for the key, if any."""
        entry = self.pending_keys.get((guild_id, feature_kind))
        return entry[1] if entry else None

    def next_deadline(self) -> Optional[datetime]:
        """Earliest live deadline across all guilds and features."""
        if not self.pending_keys:
            return None
        return min(when for _, when in self.pending_keys.values())

    # ------------------------------------------------------------------
    # Serialized state access
    # ------------------------------------------------------------------

    def guild_lock(self, guild_id: GuildID) -> asyncio.Lock:
        lock = self._guild_locks.get(guild_id)
        if lock is None:
            lock = self._guild_locks[guild_id] = asyncio.Lock()
        return lock

    async def mutate(self, guild_id: GuildID, fn: Callable[[GuildFeatureState], R]) -> R:
        """
        Apply ``fn`` to the guild's record under its lock and persist the result.

        If ``fn`` raises, nothing is written. If the write fails,
        :class:`PersistenceFailure` propagates and the stored record keeps
        its previous value.
        """
        async with self.guild_lock(guild_id):
            state = await self.store.load_guild(guild_id) or GuildFeatureState(guild_id=guild_id)
            result = fn(state)
            state.contest.check_invariant()
            await self.store.save_guild(state)
            return result

    async def read(self, guild_id: GuildID) -> GuildFeatureState:
        """Snapshot of the guild's record; a default record if none is stored."""
        state = await self.store.load_guild(guild_id) or GuildFeatureState(guild_id=guild_id)
        state.lottery.next_fire_at = self.pending(guild_id, FeatureKind.LOTTERY)
        return state

    async def mutate_subscriptions(self, fn: Callable[[SubscriptionMap], R]) -> R:
        """Same as :meth:`mutate` for the global subscription map."""
        async with self._subscription_lock:
            subscriptions = await self.store.load_subscriptions()
            result = fn(subscriptions)
            await self.store.save_subscriptions(subscriptions)
            return result

    async def read_subscriptions(self) -> SubscriptionMap:
        return await self.store.load_subscriptions()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def restore(self) -> int:
        """
        Rebuild deadlines from every persisted guild record.

        Returns:
            int: Number of guild records handed to the restorers.
        """
        states = await self.store.load_all()
        for state in states:
            for restorer in self.restorers:
                try:
                    await restorer(state)
                except Exception:
                    logger.exception("[TIMER SCHEDULER] Failed to restore deadlines for guild %s", state.guild_id)
        logger.info("[TIMER SCHEDULER] Restored %d guild record(s), %d deadline(s) pending", len(states), len(self.pending_keys))
        return len(states)

    def ensure_runner(self) -> None:
        """Create the background runner task if it's not already active."""
        loop = asyncio.get_running_loop()
        if self.runner_task is None or self.runner_task.done():
            self.runner_task = loop.create_task(self.run(), name="loki-timer-scheduler")

    def start(self) -> None:
        self.ensure_runner()
        logger.info("[TIMER SCHEDULER] Started")

    async def shutdown(self) -> None:
        """
        Stop the loop, cancel running callbacks and drop all pending deadlines.

        Safe to call multiple times.
        """
        async with self.condition:
            if self.runner_task:
                self.runner_task.cancel()
            self.heap.clear()
            self.pending_keys.clear()
            self.cancelled_ids.clear()
            self.failures.clear()
            self.condition.notify_all()

        if self.runner_task:
            try:
                await self.runner_task
            except asyncio.CancelledError:
                pass
            finally:
                self.runner_task = None

        running = list(self.tasks)
        for task in running:
            if not task.done():
                task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        self.tasks.clear()
        logger.info("[TIMER SCHEDULER] Shut down")

    async def run(self) -> None:
        """
        Background loop: sleep until the earliest deadline, then fire due jobs.

        Runs until :meth:`shutdown` cancels it.
        """
        while True:
            async with self.condition:
                self._drop_cancelled_head()

                if not self.heap:
                    await self.condition.wait()
                    continue

                run_at = self.heap[0][0]
                delay = (run_at - self.clock.now()).total_seconds()

                if delay > 0:
                    try:
                        await asyncio.wait_for(self.condition.wait(), timeout=delay)
                    except asyncio.TimeoutError:
                        pass
                    continue

            await self.fire_due(wait=False)

    async def fire_due(self, wait: bool = True) -> int:
        """
        Start a callback task for every job due at or before ``clock.now()``.

        Args:
            wait: Await the started tasks before returning. The run loop
                passes False so it can keep watching other deadlines.

        Returns:
            int: Number of callbacks started.
        """
        started: list[asyncio.Task[None]] = []
        while True:
            async with self.condition:
                self._drop_cancelled_head()
                if not self.heap or self.heap[0][0] > self.clock.now():
                    break

                _, job_id, key = heapq.heappop(self.heap)
                entry = self.pending_keys.get(key)
                if entry is not None and entry[0] == job_id:
                    del self.pending_keys[key]

            started.append(self.spawn(key[0], key[1]))

        if wait and started:
            await asyncio.gather(*started, return_exceptions=True)
        return len(started)

    def spawn(self, guild_id: GuildID, feature_kind: FeatureKind) -> asyncio.Task[None]:
        """Run one firing in its own task, tracked until it finishes."""
        task = asyncio.get_running_loop().create_task(
            self._fire(guild_id, feature_kind),
            name=f"loki-fire-{feature_kind}-{guild_id}",
        )
        self.tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self.tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[TIMER SCHEDULER] Firing task %s crashed: %s", task.get_name(), exc, exc_info=exc)

    async def _fire(self, guild_id: GuildID, feature_kind: FeatureKind) -> None:
        lock = self._firing_locks.get(guild_id)
        if lock is None:
            lock = self._firing_locks[guild_id] = asyncio.Lock()
        async with lock:
            await self.execute(guild_id, feature_kind)

    async def execute(self, guild_id: GuildID, feature_kind: FeatureKind) -> None:
        """
        Invoke the feature's callback; errors are logged and reported, never raised.

        When the callback fails before registering its next deadline, the same
        key is re-armed after a backoff that doubles per consecutive failure,
        up to ``RETRY_MAX_DELAY``.
        """
        callback = self.callbacks.get(feature_kind)
        if callback is None:
            logger.warning("[TIMER SCHEDULER] No callback registered for %s (guild %s)", feature_kind, guild_id)
            return

        key = (guild_id, feature_kind)
        try:
            await callback(guild_id, self.clock.now())
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("[TIMER SCHEDULER] %s callback failed for guild %s", feature_kind, guild_id)
            failures = self.failures[key] = self.failures.get(key, 0) + 1
            if self.pending(guild_id, feature_kind) is None:
                delay = min(RETRY_BASE_DELAY * 2 ** (failures - 1), RETRY_MAX_DELAY)
                await self.schedule_at(guild_id, feature_kind, self.clock.now() + delay)
                logger.warning(
                    "[TIMER SCHEDULER] %s for guild %s re-armed in %s (failure %d)",
                    feature_kind, guild_id, delay, failures,
                )
            await self.report_error(f"`{feature_kind}` firing failed for guild {guild_id}: {exc}")
        else:
            self.failures.pop(key, None)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _drop_cancelled_head(self) -> None:
        while self.heap and self.heap[0][1] in self.cancelled_ids:
            _, job_id, _ = heapq.heappop(self.heap)
            self.cancelled_ids.discard(job_id)

    async def report_error(self, message: str) -> None:
        if self.error_reporter is None:
            return
        try:
            await self.error_reporter(message)
        except Exception:
            logger.exception("[TIMER SCHEDULER] Failed to publish error event")
