"""
Per-resource mutual exclusion with a bounded lease.

A resource (one channel, one post, one tenant's draft) accepts only one
in-flight mutating action at a time. There is no queueing: a second caller
is denied immediately and told the resource is busy.

Leases are plain ``expires_at`` timestamps checked lazily on access. A
periodic :meth:`ResourceLock.sweep` reclaims locks whose holder never
released them.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, Dict, List, Optional

from postify.exceptions import ResourceBusyError
from postify.utils import Clock, utc_now

logger = logging.getLogger(__name__)


@dataclass
class Lock:
    """A held lease on one resource key."""

    resource_key: str
    holder_id: str
    acquired_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class ResourceLock:
    """Lock table keyed by resource.

    Args:
        lease_seconds: Lease length; an unreleased lock is treated as free
            once it has been held this long.
        clock: Source of the current UTC time.
    """

    DEFAULT_LEASE_SECONDS: int = 30

    def __init__(
        self,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        clock: Clock = utc_now,
    ) -> None:
        self.lease = timedelta(seconds=lease_seconds)
        self._clock = clock
        self._locks: Dict[str, Lock] = {}

    def acquire(self, owner_id: str, resource_key: str) -> bool:
        """Take the lock on *resource_key* for *owner_id*.

        Returns ``False`` while any unexpired lock exists for the key,
        including one held by the same owner.
        """
        now = self._clock()
        existing = self._locks.get(resource_key)
        if existing is not None and not existing.is_expired(now):
            logger.debug(
                "[GATES] Lock busy: %s held by %s (requested by %s)",
                resource_key,
                existing.holder_id,
                owner_id,
            )
            return False

        self._locks[resource_key] = Lock(
            resource_key=resource_key,
            holder_id=owner_id,
            acquired_at=now,
            expires_at=now + self.lease,
        )
        logger.debug("[GATES] Lock acquired: %s by %s", resource_key, owner_id)
        return True

    def release(self, owner_id: str, resource_key: str) -> bool:
        """Release the lock if *owner_id* holds it.

        Returns ``True`` when a lock was removed. A lock that expired and
        was re-acquired by someone else is left untouched.
        """
        existing = self._locks.get(resource_key)
        if existing is None or existing.holder_id != owner_id:
            return False
        del self._locks[resource_key]
        logger.debug("[GATES] Lock released: %s by %s", resource_key, owner_id)
        return True

    @asynccontextmanager
    async def hold(self, owner_id: str, resource_key: str) -> AsyncIterator[Lock]:
        """Hold the lock for the duration of an ``async with`` block.

        Raises:
            ResourceBusyError: If the resource is already locked.
        """
        if not self.acquire(owner_id, resource_key):
            raise ResourceBusyError(resource_key)
        try:
            yield self._locks[resource_key]
        finally:
            self.release(owner_id, resource_key)

    def is_locked(self, resource_key: str) -> bool:
        existing = self._locks.get(resource_key)
        return existing is not None and not existing.is_expired(self._clock())

    def holder(self, resource_key: str) -> Optional[str]:
        """Current holder of an unexpired lock, or ``None``."""
        if not self.is_locked(resource_key):
            return None
        return self._locks[resource_key].holder_id

    def locks_held_by(self, owner_id: str) -> List[str]:
        now = self._clock()
        return [
            key
            for key, lock in self._locks.items()
            if lock.holder_id == owner_id and not lock.is_expired(now)
        ]

    def sweep(self) -> int:
        """Drop expired locks. Returns how many were reclaimed."""
        now = self._clock()
        expired = [key for key, lock in self._locks.items() if lock.is_expired(now)]
        for key in expired:
            del self._locks[key]
        if expired:
            logger.debug("[GATES] Reclaimed %d expired locks", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._locks)


__all__ = ["Lock", "ResourceLock"]
