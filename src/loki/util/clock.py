"""
Time and randomness source.

Everything that reads the wall clock or draws a random number does it
through a :class:`Clock`, so tests can pin the current time and the RNG seed.
"""

from __future__ import annotations

import random
from datetime import date, datetime, timezone, tzinfo
from typing import Sequence, TypeVar

T = TypeVar("T")


class Clock:
    """System clock with a private ``random.Random`` instance.

    Args:
        tz: Timezone used for calendar questions (``local_date``).
        rng: Random generator; a fresh unseeded one by default.
    """

    def __init__(self, tz: tzinfo = timezone.utc, rng: random.Random | None = None) -> None:
        self.tz = tz
        self.rng = rng or random.Random()

    def now(self) -> datetime:
        """Current time, timezone-aware UTC."""
        return datetime.now(timezone.utc)

    def local_date(self, moment: datetime | None = None) -> date:
        """Calendar date of ``moment`` (default: now) in the configured timezone."""
        return (moment or self.now()).astimezone(self.tz).date()

    def uniform_int(self, low: int, high: int) -> int:
        """Uniform integer draw, both bounds inclusive."""
        return self.rng.randint(low, high)

    def choice(self, items: Sequence[T]) -> T:
        return self.rng.choice(items)
