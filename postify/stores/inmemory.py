"""In-memory implementations of the store interfaces.

Used by the test-suite and for local development without Supabase. Records
are copied on the way in and out so callers never share mutable state with
the store, matching what a real database round trip does.
"""

import copy
from datetime import datetime
from typing import Any, Dict, List, Optional

from postify.exceptions import NotFoundError
from postify.models import (
    Channel,
    CredentialRecord,
    CredentialStatus,
    JobStatus,
    Post,
    ScheduledJob,
)
from postify.stores.base import ContentStore, CredentialStore, JobStore
from postify.utils import ensure_utc, generate_id, utc_now


class InMemoryCredentialStore(CredentialStore):
    """Dict-backed credential store keyed by tenant id."""

    def __init__(self) -> None:
        self._records: Dict[int, CredentialRecord] = {}

    async def get_credential(self, tenant_id: int) -> Optional[CredentialRecord]:
        record = self._records.get(tenant_id)
        return copy.deepcopy(record) if record else None

    async def list_active_credentials(self, limit: int = 500) -> List[CredentialRecord]:
        active = [r for r in self._records.values() if r.is_active]
        active.sort(key=lambda r: r.updated_at, reverse=True)
        return [copy.deepcopy(r) for r in active[:limit]]

    async def save_credential(self, record: CredentialRecord) -> None:
        record = copy.deepcopy(record)
        record.updated_at = utc_now()
        self._records[record.tenant_id] = record

    async def set_credential_status(
        self,
        tenant_id: int,
        status: CredentialStatus,
        last_error: Optional[str] = None,
    ) -> None:
        record = self._records.get(tenant_id)
        if record is None:
            raise NotFoundError(f"No credential for tenant {tenant_id}")
        record.status = status
        record.last_error = last_error
        record.updated_at = utc_now()


class InMemoryContentStore(ContentStore):
    """Dict-backed post and channel store."""

    def __init__(self) -> None:
        self._posts: Dict[str, Post] = {}
        self._channels: Dict[str, Channel] = {}

    async def get_post(self, post_id: str) -> Optional[Post]:
        post = self._posts.get(post_id)
        return copy.deepcopy(post) if post else None

    async def save_post(self, post: Post) -> str:
        self._posts[post.id] = copy.deepcopy(post)
        return post.id

    async def update_post(self, post_id: str, fields: Dict[str, Any]) -> None:
        post = self._posts.get(post_id)
        if post is None:
            raise NotFoundError(f"Post {post_id} not found")
        for name, value in fields.items():
            if not hasattr(post, name):
                raise ValueError(f"Unknown post field: {name}")
            setattr(post, name, value)

    async def get_channel(self, channel_id: str) -> Optional[Channel]:
        channel = self._channels.get(channel_id)
        return copy.deepcopy(channel) if channel else None

    async def save_channel(self, channel: Channel) -> str:
        self._channels[channel.id] = copy.deepcopy(channel)
        return channel.id


class InMemoryJobStore(JobStore):
    """Dict-backed job store.

    Conditional transitions check and set status without an intervening
    ``await``, which makes them atomic on a single event loop.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, ScheduledJob] = {}

    async def schedule(
        self, fire_at: datetime, job_name: str, payload: Dict[str, Any]
    ) -> str:
        job_id = generate_id()
        self._jobs[job_id] = ScheduledJob(
            job_id=job_id,
            job_name=job_name,
            post_id=payload["post_id"],
            tenant_id=int(payload["tenant_id"]),
            channel_id=payload["channel_id"],
            fire_at=ensure_utc(fire_at),
            timezone=payload.get("timezone", "UTC"),
        )
        return job_id

    async def cancel(self, job_name: str, post_id: str) -> int:
        cancelled = 0
        for job in self._jobs.values():
            if job.job_name == job_name and job.post_id == post_id and job.is_pending:
                job.status = JobStatus.CANCELLED
                cancelled += 1
        return cancelled

    async def cancel_job(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None or not job.is_pending:
            return False
        job.status = JobStatus.CANCELLED
        return True

    async def get_job(self, job_id: str) -> Optional[ScheduledJob]:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def get_pending_job_for_post(self, post_id: str) -> Optional[ScheduledJob]:
        pending = [j for j in self._jobs.values() if j.post_id == post_id and j.is_pending]
        if not pending:
            return None
        pending.sort(key=lambda j: j.created_at, reverse=True)
        return copy.deepcopy(pending[0])

    async def claim(self, job_id: str, fired_at: datetime) -> bool:
        job = self._jobs.get(job_id)
        if job is None or not job.is_pending:
            return False
        job.status = JobStatus.FIRED
        job.fired_at = ensure_utc(fired_at)
        return True

    async def record_outcome(
        self,
        job_id: str,
        error: Optional[str] = None,
        message_id: Optional[int] = None,
    ) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        job.error = error
        job.message_id = message_id

    async def get_due_jobs(self, now: datetime, limit: int = 50) -> List[ScheduledJob]:
        now = ensure_utc(now)
        due = [j for j in self._jobs.values() if j.is_pending and j.fire_at <= now]
        due.sort(key=lambda j: j.fire_at)
        return [copy.deepcopy(j) for j in due[:limit]]

    async def list_pending_jobs(
        self,
        channel_id: str,
        start: datetime,
        end: datetime,
        exclude_job_id: Optional[str] = None,
    ) -> List[ScheduledJob]:
        start, end = ensure_utc(start), ensure_utc(end)
        return [
            copy.deepcopy(j)
            for j in sorted(self._jobs.values(), key=lambda j: j.fire_at)
            if j.is_pending
            and j.channel_id == channel_id
            and j.job_id != exclude_job_id
            and start <= j.fire_at <= end
        ]

    async def list_jobs_for_tenant(
        self,
        tenant_id: int,
        channel_id: Optional[str] = None,
        status: JobStatus = JobStatus.PENDING,
        limit: int = 20,
        offset: int = 0,
    ) -> List[ScheduledJob]:
        jobs = [
            j
            for j in self._jobs.values()
            if j.tenant_id == tenant_id
            and j.status == status
            and (channel_id is None or j.channel_id == channel_id)
        ]
        jobs.sort(key=lambda j: j.fire_at)
        return [copy.deepcopy(j) for j in jobs[offset:offset + limit]]

    async def count_pending_by_channel(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for job in self._jobs.values():
            if job.is_pending:
                counts[job.channel_id] = counts.get(job.channel_id, 0) + 1
        return counts


__all__ = [
    "InMemoryCredentialStore",
    "InMemoryContentStore",
    "InMemoryJobStore",
]
