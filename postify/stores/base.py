"""
Abstract store interfaces consumed by the supervisor and the schedule engine.

Every store method may raise :class:`~postify.exceptions.DatabaseError`
when the persistence layer is unavailable. That error is fatal to the
operation in progress and is never converted into a connection cooldown.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from postify.models import (
    Channel,
    CredentialRecord,
    CredentialStatus,
    JobStatus,
    Post,
    ScheduledJob,
)


class CredentialStore(ABC):
    """Encrypted tenant credentials and their status field."""

    @abstractmethod
    async def get_credential(self, tenant_id: int) -> Optional[CredentialRecord]:
        """Get the stored credential for a tenant, whatever its status."""
        pass

    @abstractmethod
    async def list_active_credentials(self, limit: int = 500) -> List[CredentialRecord]:
        """List credentials with status ``active`` (most recently updated first)."""
        pass

    @abstractmethod
    async def save_credential(self, record: CredentialRecord) -> None:
        """Insert or replace the credential for ``record.tenant_id``."""
        pass

    @abstractmethod
    async def set_credential_status(
        self,
        tenant_id: int,
        status: CredentialStatus,
        last_error: Optional[str] = None,
    ) -> None:
        """Write the status field and last-error text."""
        pass


class ContentStore(ABC):
    """Posts and channels, with their ownership."""

    @abstractmethod
    async def get_post(self, post_id: str) -> Optional[Post]:
        pass

    @abstractmethod
    async def save_post(self, post: Post) -> str:
        """Insert or replace a post, returning its ID."""
        pass

    @abstractmethod
    async def update_post(self, post_id: str, fields: Dict[str, Any]) -> None:
        """Update selected post fields.

        Values are Python values (enums, datetimes); the store serializes.
        """
        pass

    @abstractmethod
    async def get_channel(self, channel_id: str) -> Optional[Channel]:
        pass

    @abstractmethod
    async def save_channel(self, channel: Channel) -> str:
        pass


class JobStore(ABC):
    """Durable delayed-job storage.

    ``claim`` and ``cancel_job`` are conditional on the job still being
    ``PENDING``; exactly one of any set of racing callers wins.
    """

    @abstractmethod
    async def schedule(
        self, fire_at: datetime, job_name: str, payload: Dict[str, Any]
    ) -> str:
        """Persist a pending job and return its ID.

        ``payload`` carries ``post_id``, ``tenant_id``, ``channel_id`` and
        ``timezone``.
        """
        pass

    @abstractmethod
    async def cancel(self, job_name: str, post_id: str) -> int:
        """Cancel every pending *job_name* job for *post_id*. Returns the count."""
        pass

    @abstractmethod
    async def cancel_job(self, job_id: str) -> bool:
        """Move one job PENDING -> CANCELLED. ``False`` if it was not pending."""
        pass

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[ScheduledJob]:
        pass

    @abstractmethod
    async def get_pending_job_for_post(self, post_id: str) -> Optional[ScheduledJob]:
        pass

    @abstractmethod
    async def claim(self, job_id: str, fired_at: datetime) -> bool:
        """Move one job PENDING -> FIRED. ``False`` if another caller won."""
        pass

    @abstractmethod
    async def record_outcome(
        self,
        job_id: str,
        error: Optional[str] = None,
        message_id: Optional[int] = None,
    ) -> None:
        """Attach the result of a fire attempt to a fired job."""
        pass

    @abstractmethod
    async def get_due_jobs(self, now: datetime, limit: int = 50) -> List[ScheduledJob]:
        """Pending jobs with ``fire_at <= now``, earliest first."""
        pass

    @abstractmethod
    async def list_pending_jobs(
        self,
        channel_id: str,
        start: datetime,
        end: datetime,
        exclude_job_id: Optional[str] = None,
    ) -> List[ScheduledJob]:
        """Pending jobs for a channel with ``start <= fire_at <= end``."""
        pass

    @abstractmethod
    async def list_jobs_for_tenant(
        self,
        tenant_id: int,
        channel_id: Optional[str] = None,
        status: JobStatus = JobStatus.PENDING,
        limit: int = 20,
        offset: int = 0,
    ) -> List[ScheduledJob]:
        """A tenant's jobs ordered by ``fire_at`` ascending."""
        pass

    @abstractmethod
    async def count_pending_by_channel(self) -> Dict[str, int]:
        """Number of pending jobs per channel ID."""
        pass


__all__ = ["CredentialStore", "ContentStore", "JobStore"]
