"""
Per-tenant fixed-window action counter.

Applies globally per tenant across every action kind. A window starts on
the first action after the previous one expired and resets lazily on the
next check, so idle tenants cost nothing until :meth:`RateGate.sweep`
evicts them.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict

from postify.utils import Clock, utc_now

logger = logging.getLogger(__name__)


@dataclass
class RateWindow:
    tenant_id: int
    window_start: datetime
    count: int = 0


class RateGate:
    """Fixed-window limiter: ``max_actions`` per ``window_seconds`` per tenant."""

    def __init__(
        self,
        max_actions: int = 10,
        window_seconds: int = 60,
        clock: Clock = utc_now,
    ) -> None:
        if max_actions < 1:
            raise ValueError(f"max_actions must be positive, got {max_actions}")
        self.max_actions = max_actions
        self.window = timedelta(seconds=window_seconds)
        self._clock = clock
        self._windows: Dict[int, RateWindow] = {}

    def is_limited(self, tenant_id: int) -> bool:
        """Count one action for *tenant_id* and report whether it is over budget.

        A denied call is not counted, so a tenant that keeps retrying does
        not extend its own lockout.
        """
        now = self._clock()
        entry = self._windows.get(tenant_id)

        if entry is None or now > entry.window_start + self.window:
            self._windows[tenant_id] = RateWindow(tenant_id, window_start=now, count=1)
            return False

        if entry.count >= self.max_actions:
            logger.warning(
                "[GATES] Rate limit exceeded for tenant %s (%d actions)",
                tenant_id,
                entry.count,
            )
            return True

        entry.count += 1
        return False

    def remaining_seconds(self, tenant_id: int) -> float:
        """Seconds until the tenant's current window rolls over (0 if none)."""
        entry = self._windows.get(tenant_id)
        if entry is None:
            return 0.0
        remaining = (entry.window_start + self.window - self._clock()).total_seconds()
        return max(0.0, remaining)

    def sweep(self) -> int:
        """Evict windows that have expired. Returns how many were removed."""
        now = self._clock()
        stale = [
            tenant_id
            for tenant_id, entry in self._windows.items()
            if now > entry.window_start + self.window
        ]
        for tenant_id in stale:
            del self._windows[tenant_id]
        return len(stale)

    def __len__(self) -> int:
        return len(self._windows)


__all__ = ["RateGate", "RateWindow"]
