"""Refresh loop health and last-known bulb liveness."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Iterable, Optional, Tuple

from .metrics import record_refresh_status, record_refresh_suppressed, set_bulbs_offline

if TYPE_CHECKING:
    from .models import Identifier
    from .registry import RefreshOutcome

# Growth stops long before this; it only keeps the power finite.
_MAX_EXPONENT = 32


@dataclass
class BackoffPolicy:
    """Exponential delay between failed refresh cycles."""

    base: float
    factor: float
    maximum: float

    def delay(self, failures: int) -> float:
        if failures <= 0:
            return 0.0
        exponent = min(failures - 1, _MAX_EXPONENT)
        return min(self.maximum, max(0.0, self.base) * self.factor ** exponent)


class RefreshHealth:
    """Circuit breaker for the refresh loop.

    A cycle fails when it raises, or when it queried at least one bulb and none
    of them answered (the usual symptom of a lost LAN link). After
    ``failure_threshold`` failed cycles in a row the loop is paused for
    ``cooldown_seconds``. The outcome of each bulb's latest refresh is kept so
    ``/health`` can list the bulbs that stopped answering.
    """

    def __init__(self, failure_threshold: int, cooldown_seconds: float) -> None:
        self._failure_threshold = max(1, failure_threshold)
        self._cooldown = max(0.0, cooldown_seconds)
        self._lock = asyncio.Lock()
        self.status = "ok"
        self.failed_cycles = 0
        self.suppressions = 0
        self.last_error: Optional[str] = None
        self._suppressed_until: Optional[float] = None
        self._last_cycle: Optional[float] = None
        self._answered: Dict[str, bool] = {}
        self._offline_reason: Dict[str, str] = {}
        record_refresh_status("ok")
        set_bulbs_offline(0)

    async def record_cycle(
        self, outcomes: Iterable["RefreshOutcome"], registered: Iterable["Identifier"]
    ) -> None:
        """Fold one cycle's per-bulb outcomes into the breaker and liveness view.

        Bulbs no longer in ``registered`` are forgotten.
        """

        async with self._lock:
            queried = answered = 0
            for outcome in outcomes:
                key = str(outcome.id)
                queried += 1
                if outcome.status == "ok":
                    answered += 1
                    self._answered[key] = True
                    self._offline_reason.pop(key, None)
                else:
                    self._answered[key] = False
                    self._offline_reason[key] = outcome.status
            known = {str(identifier) for identifier in registered}
            for key in list(self._answered):
                if key not in known:
                    del self._answered[key]
                    self._offline_reason.pop(key, None)
            set_bulbs_offline(len(self._offline_reason))
            self._last_cycle = time.monotonic()
            if queried and not answered:
                self._fail(f"none of {queried} queried bulbs answered")
            else:
                self._succeed()

    async def record_failure(self, error: BaseException) -> None:
        """Record a cycle that raised before producing outcomes."""

        async with self._lock:
            self._fail(str(error))

    async def allow_attempt(self) -> Tuple[bool, float]:
        """Return whether a cycle may run now and the remaining pause otherwise."""

        async with self._lock:
            now = time.monotonic()
            if self._suppressed_until and self._suppressed_until > now:
                return False, self._suppressed_until - now
            if self.status == "suppressed":
                self.status = "recovering"
                record_refresh_status(self.status)
        return True, 0.0

    async def snapshot(self) -> Dict[str, Any]:
        async with self._lock:
            now = time.monotonic()
            paused_for = None
            if self._suppressed_until is not None:
                paused_for = max(0.0, self._suppressed_until - now)
            return {
                "status": self.status,
                "failed_cycles": self.failed_cycles,
                "suppressions": self.suppressions,
                "suppressed_for": paused_for,
                "last_error": self.last_error,
                "seconds_since_cycle": (
                    None if self._last_cycle is None else round(now - self._last_cycle, 3)
                ),
                "bulbs_answering": sum(1 for ok in self._answered.values() if ok),
                "bulbs_offline": dict(sorted(self._offline_reason.items())),
            }

    def _succeed(self) -> None:
        self.status = "ok"
        self.failed_cycles = 0
        self.last_error = None
        self._suppressed_until = None
        record_refresh_status("ok")

    def _fail(self, reason: str) -> None:
        self.failed_cycles += 1
        self.last_error = reason
        if self.failed_cycles >= self._failure_threshold:
            self.status = "suppressed"
            self.suppressions += 1
            self._suppressed_until = time.monotonic() + self._cooldown
            record_refresh_suppressed()
        else:
            self.status = "degraded"
        record_refresh_status(self.status)
