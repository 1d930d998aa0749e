"""
Event kinds and per-target outcome reports.

Outward calls that fan out to many targets (reaction fetches, nickname
changes, direct messages) collect one :class:`DeliveryOutcome` per target in
a :class:`DeliveryReport` instead of failing as a whole.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, List, TypeVar

TargetT = TypeVar("TargetT")


class EventKind(Enum):
    """System events users can subscribe to."""

    STARTUP = "startup"
    ERROR = "error"
    CONTEST_RESOLVED = "contest_resolved"
    LOTTERY_ROTATED = "lottery_rotated"
    TIMEOUT_RECORDED = "timeout_recorded"

    def __str__(self) -> str:
        return self.value


# Only the configured manager may subscribe to these.
RESTRICTED_EVENTS = frozenset({EventKind.ERROR})


class OutcomeStatus(Enum):
    """Result of a single outward call."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


# Alias used by the platform client's set_nickname contract.
NicknameOutcome = OutcomeStatus


@dataclass(slots=True)
class DeliveryOutcome(Generic[TargetT]):
    target: TargetT
    status: OutcomeStatus
    detail: str = ""

    @property
    def ok(self) -> bool:
        # skipped targets needed no call
        return self.status in (OutcomeStatus.SUCCESS, OutcomeStatus.SKIPPED)


@dataclass(slots=True)
class DeliveryReport(Generic[TargetT]):
    """Collected outcomes of one fan-out operation."""

    outcomes: List[DeliveryOutcome[TargetT]] = field(default_factory=list)

    def record(self, target: TargetT, status: OutcomeStatus, detail: str = "") -> None:
        self.outcomes.append(DeliveryOutcome(target, status, detail))

    @property
    def succeeded(self) -> List[TargetT]:
        return [o.target for o in self.outcomes if o.ok]

    @property
    def failed(self) -> List[DeliveryOutcome[TargetT]]:
        return [o for o in self.outcomes if not o.ok]

    def __len__(self) -> int:
        return len(self.outcomes)
