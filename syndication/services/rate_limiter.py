"""Per-platform fixed-window rate limiting.

Every outbound call asks ``admit`` first. Windows are aligned to the wall
clock (a 60 second window always starts on the minute), matching the coarse
per-second/minute/hour quotas the platforms publish.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Union

from ..models.migration import Platform, RateBudget

logger = logging.getLogger(__name__)

# Platform -> (capacity, window seconds)
DEFAULT_LIMITS: Dict[str, tuple] = {
    Platform.AIRTABLE.value: (5, 1.0),
    Platform.DISCORD.value: (50, 60.0),
    Platform.IMGUR.value: (12500, 3600.0),
    Platform.INSTAGRAM.value: (200, 3600.0),
    Platform.FACEBOOK.value: (200, 3600.0),
}

FALLBACK_LIMIT = (60, 60.0)


@dataclass(frozen=True)
class Proceed:
    """The call may go ahead now."""


@dataclass(frozen=True)
class WaitUntil:
    """The window is exhausted; retry ``admit`` at ``timestamp`` (epoch seconds)."""
    timestamp: float


Outcome = Union[Proceed, WaitUntil]


class RateLimiter:
    """
    Thread-safe fixed-window limiter keyed by platform.

    ``admit`` never performs I/O and never blocks; ``wait_for`` is the
    blocking convenience used by callers that are happy to sleep.
    """

    def __init__(
        self,
        limits: Optional[Dict[str, Dict[str, float]]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the limiter.

        Args:
            limits: Overrides as platform -> {"capacity": int, "window": seconds}
            clock: Returns the current epoch time in seconds
            sleep: Used by ``wait_for`` to suspend the calling thread
        """
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._budgets: Dict[str, RateBudget] = {}

        merged = {p: {"capacity": c, "window": w} for p, (c, w) in DEFAULT_LIMITS.items()}
        for platform, override in (limits or {}).items():
            merged.setdefault(platform, {"capacity": FALLBACK_LIMIT[0], "window": FALLBACK_LIMIT[1]})
            merged[platform].update(override)

        for platform, limit in merged.items():
            self._budgets[platform] = self._new_budget(limit["capacity"], limit["window"])

    @staticmethod
    def _new_budget(capacity: float, window: float) -> RateBudget:
        if capacity < 1 or window <= 0:
            raise ValueError(f"Invalid rate limit: {capacity} per {window}s")
        return RateBudget(capacity=int(capacity), refill_window=float(window))

    def _budget(self, platform: str) -> RateBudget:
        budget = self._budgets.get(platform)
        if budget is None:
            budget = self._new_budget(*FALLBACK_LIMIT)
            self._budgets[platform] = budget
        return budget

    def admit(self, platform: str) -> Outcome:
        """Check-and-increment the budget for ``platform``."""
        now = self._clock()
        with self._lock:
            budget = self._budget(platform)

            if budget.blocked_until is not None:
                if now < budget.blocked_until:
                    return WaitUntil(budget.blocked_until)
                budget.blocked_until = None

            window_start = (now // budget.refill_window) * budget.refill_window
            if window_start != budget.window_started_at:
                budget.window_started_at = window_start
                budget.consumed_in_window = 0

            if budget.consumed_in_window < budget.capacity:
                budget.consumed_in_window += 1
                return Proceed()

            return WaitUntil(budget.window_ends_at)

    def now(self) -> float:
        """Current time according to the limiter's clock."""
        return self._clock()

    def defer(self, platform: str, until: float) -> None:
        """Block ``platform`` until ``until`` (e.g. from a Retry-After hint)."""
        with self._lock:
            budget = self._budget(platform)
            if budget.blocked_until is None or until > budget.blocked_until:
                budget.blocked_until = until
                logger.info(f"Rate limiter: {platform} deferred for {until - self._clock():.1f}s")

    def wait_for(self, platform: str) -> None:
        """Block until a call to ``platform`` is admitted."""
        while True:
            outcome = self.admit(platform)
            if isinstance(outcome, Proceed):
                return
            delay = max(0.0, outcome.timestamp - self._clock())
            logger.debug(f"Rate limit reached for {platform}, waiting {delay:.2f}s")
            self._sleep(delay)

    def snapshot(self) -> Dict[str, RateBudget]:
        """Copy of the current budgets, for reporting."""
        with self._lock:
            return {
                platform: RateBudget(**budget.to_dict())
                for platform, budget in self._budgets.items()
            }
