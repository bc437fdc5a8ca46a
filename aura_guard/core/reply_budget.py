"""
Global daily ceiling on AI replies.

Independent of, and in addition to, the per-user call budgets.
"""

import logging
from datetime import datetime
from typing import Callable

log = logging.getLogger(__name__)


class ReplyBudget:
    """Process-wide reply counter scoped to the calendar date.

    The counter resets when the clock's date string differs from the last
    reset date; the comparison runs at the start of every call.
    """

    def __init__(self, daily_cap: int, clock: Callable[[], datetime] = datetime.now):
        if daily_cap <= 0:
            raise ValueError("daily_cap must be > 0")
        self.daily_cap = daily_cap
        self.clock = clock
        self.count = 0
        self.last_reset = self._today()

    def _today(self) -> str:
        return self.clock().date().isoformat()

    def _reset_if_needed(self) -> None:
        today = self._today()
        if today != self.last_reset:
            log.info("Reply budget reset for %s (%d replies on %s)", today, self.count, self.last_reset)
            self.count = 0
            self.last_reset = today

    def check(self) -> bool:
        """True while replies remain today."""
        self._reset_if_needed()
        return self.count < self.daily_cap

    def reserve(self) -> bool:
        """Claim one reply. Check and increment happen without yielding."""
        self._reset_if_needed()
        if self.count >= self.daily_cap:
            return False
        self.count += 1
        return True

    def release(self) -> None:
        """Give back a reply that was reserved but not delivered."""
        self._reset_if_needed()
        if self.count > 0:
            self.count -= 1

    @property
    def remaining(self) -> int:
        self._reset_if_needed()
        return max(0, self.daily_cap - self.count)
