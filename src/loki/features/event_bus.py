"""
User-level event subscriptions and direct-message fan-out.

Subscriptions are global (not per guild). ``publish`` DMs every subscriber
of a kind; a recipient that cannot be reached is recorded in the returned
report and never stops delivery to the others.
"""

from __future__ import annotations

from typing import Optional, Set

from loki.datatypes.discord_datatypes import UserID
from loki.datatypes.errors import PermissionDenied
from loki.datatypes.event_datatypes import (
    RESTRICTED_EVENTS,
    DeliveryReport,
    EventKind,
    OutcomeStatus,
)
from loki.datatypes.feature_state import SubscriptionMap
from loki.platform.platform_client import PlatformClient, RetryPolicy
from loki.scheduler.timer_scheduler import TimerScheduler
from loki.util.logger import get_logger

logger = get_logger("event_bus")


def format_notification(kind: EventKind, message: str) -> str:
    return (
        f"{message}\n\n"
        f"_You're receiving this message because you're subscribed to the `{kind}` event._"
    )


class EventBus:
    def __init__(
        self,
        scheduler: TimerScheduler,
        platform: PlatformClient,
        manager_id: Optional[UserID] = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.scheduler = scheduler
        self.platform = platform
        self.manager_id = manager_id
        self.retry = retry or RetryPolicy()

    async def subscribe(self, user: UserID, kind: EventKind) -> bool:
        """
        Add ``kind`` to the user's subscriptions.

        Returns:
            bool: False when the user was already subscribed.

        Raises:
            PermissionDenied: ``kind`` is restricted and ``user`` is not the manager.
        """
        if kind in RESTRICTED_EVENTS and user != self.manager_id:
            raise PermissionDenied(f"Only the bot manager can subscribe to `{kind}` events.")

        def apply(subscriptions: SubscriptionMap) -> bool:
            kinds = subscriptions.setdefault(user, set())
            if kind in kinds:
                return False
            kinds.add(kind)
            return True

        changed = await self.scheduler.mutate_subscriptions(apply)
        logger.info("[EVENT BUS] User %s subscribe %s (changed=%s)", user, kind, changed)
        return changed

    async def unsubscribe(self, user: UserID, kind: EventKind) -> bool:
        """Remove ``kind`` from the user's subscriptions. Absent is a no-op returning False."""

        def apply(subscriptions: SubscriptionMap) -> bool:
            kinds = subscriptions.get(user)
            if not kinds or kind not in kinds:
                return False
            kinds.discard(kind)
            if not kinds:
                del subscriptions[user]
            return True

        changed = await self.scheduler.mutate_subscriptions(apply)
        logger.info("[EVENT BUS] User %s unsubscribe %s (changed=%s)", user, kind, changed)
        return changed

    async def subscriptions(self, user: UserID) -> Set[EventKind]:
        current = await self.scheduler.read_subscriptions()
        return set(current.get(user, set()))

    async def subscribers(self, kind: EventKind) -> list[UserID]:
        current = await self.scheduler.read_subscriptions()
        return sorted(uid for uid, kinds in current.items() if kind in kinds)

    async def publish(self, kind: EventKind, message: str) -> DeliveryReport[UserID]:
        """DM every subscriber of ``kind``; per-recipient failures are recorded, not raised."""
        report: DeliveryReport[UserID] = DeliveryReport()
        recipients = await self.subscribers(kind)
        text = format_notification(kind, message)

        for user in recipients:
            try:
                delivered = await self.retry.call(
                    lambda user=user: self.platform.send_direct_message(user, text),
                    f"notify {user} of {kind}",
                )
            except Exception as exc:
                logger.warning("[EVENT BUS] Delivery of %s to %s failed: %s", kind, user, exc)
                report.record(user, OutcomeStatus.FAILED, str(exc))
                continue

            if delivered:
                report.record(user, OutcomeStatus.SUCCESS)
            else:
                logger.info("[EVENT BUS] User %s does not accept direct messages", user)
                report.record(user, OutcomeStatus.FAILED, "direct messages closed")

        logger.debug("[EVENT BUS] Published %s to %d subscriber(s), %d failed", kind, len(report), len(report.failed))
        return report

    async def publish_error(self, message: str) -> DeliveryReport[UserID]:
        return await self.publish(EventKind.ERROR, message)
