"""
Post scheduling lifecycle: admission control, persistence and firing.

``ScheduleEngine`` is the only code that changes job state. Per post::

    DRAFT -> SCHEDULED -> PUBLISHED
             SCHEDULED -> DRAFT   (cancelled, or the fire attempt failed)

Each job moves PENDING -> FIRED exactly once through the job store's
conditional claim, before any publish attempt. A failed fire is recorded
on the job and the post; it is never retried automatically. The tenant
re-schedules explicitly.

All instants are stored and compared in UTC. The tenant zone only shapes
parsing and the calendar-hour boundary used by the hourly limit.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from postify.config import SchedulerSettings
from postify.connections.supervisor import ConnectionSupervisor
from postify.connections.transport import Connection, FailureKind, SentMessage, TransportError
from postify.exceptions import (
    ConnectionFailure,
    JobFireError,
    NotFoundError,
    ScheduleStateError,
    UnauthorizedError,
    ValidationError,
)
from postify.logging import ComponentLogger, LogComponent
from postify.models import (
    PUBLISH_JOB_NAME,
    Channel,
    JobStatus,
    Post,
    PostStatus,
    ScheduledJob,
)
from postify.scheduling.models import ConflictCheck, FireOutcome, FireStatus, ScheduleResult
from postify.scheduling.publisher import ConnectionPublisher, PublishAction
from postify.scheduling.time_parser import parse_target, resolve_zone
from postify.stores.base import ContentStore, JobStore
from postify.utils import Clock, ensure_utc, utc_now

logger = logging.getLogger(__name__)

# Failures that make the tenant's connection unusable.
_CONNECTION_KILLERS = (FailureKind.CONFLICT, FailureKind.AUTH_REVOKED)


class ScheduleEngine:
    """Schedules, cancels and fires post publish jobs.

    Args:
        content: Post and channel store.
        jobs: Durable job store.
        supervisor: Resolves the tenant's live connection at fire time.
        publisher: Performs the send.
        settings: Scheduling windows and limits.
        clock: Source of the current UTC time.
    """

    def __init__(
        self,
        content: ContentStore,
        jobs: JobStore,
        supervisor: ConnectionSupervisor,
        publisher: Optional[PublishAction] = None,
        settings: Optional[SchedulerSettings] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.content = content
        self.jobs = jobs
        self.supervisor = supervisor
        self.publisher = publisher or ConnectionPublisher()
        self.settings = settings or SchedulerSettings()
        self.log = ComponentLogger(LogComponent.SCHEDULER)
        self._clock = clock

    # ================================================================
    # PARSING AND ADMISSION
    # ================================================================

    def parse_target(self, text: str, tz: str = "UTC", now: Optional[datetime] = None) -> datetime:
        """Parse a human time expression with this engine's bounds."""
        return parse_target(
            text,
            tz,
            now=now or self._clock(),
            min_lead=timedelta(minutes=self.settings.min_lead_minutes),
            max_days=self.settings.max_schedule_days,
            default_hour=self.settings.default_hour,
        )

    async def check_conflicts(
        self,
        channel_id: str,
        instant: datetime,
        exclude_job_id: Optional[str] = None,
        tz: str = "UTC",
    ) -> ConflictCheck:
        """Advisory crowding check for a channel.

        Flags another pending job within the proximity window, or a
        calendar hour (in the tenant zone) that already holds the hourly
        maximum. Never blocks scheduling.
        """
        instant = ensure_utc(instant)
        window = timedelta(minutes=self.settings.conflict_window_minutes)

        nearby = await self.jobs.list_pending_jobs(
            channel_id, instant - window, instant + window, exclude_job_id
        )
        if nearby:
            return ConflictCheck(
                conflict=True,
                reason=(
                    f"Consider scheduling at least "
                    f"{self.settings.conflict_window_minutes} minutes apart from other posts"
                ),
                conflicting_job_ids=[job.job_id for job in nearby[:5]],
            )

        hour_start, hour_end = self._calendar_hour(instant, tz)
        in_hour = await self.jobs.list_pending_jobs(
            channel_id, hour_start, hour_end, exclude_job_id
        )
        if len(in_hour) >= self.settings.max_jobs_per_hour:
            return ConflictCheck(
                conflict=True,
                reason=(
                    f"Channel has reached the hourly limit of "
                    f"{self.settings.max_jobs_per_hour} posts. "
                    f"Consider scheduling in a different hour."
                ),
            )

        return ConflictCheck()

    @staticmethod
    def _calendar_hour(instant: datetime, tz: str) -> Tuple[datetime, datetime]:
        local = instant.astimezone(resolve_zone(tz))
        start = local.replace(minute=0, second=0, microsecond=0)
        end = start + timedelta(hours=1) - timedelta(microseconds=1)
        return start, end

    # ================================================================
    # OWNERSHIP
    # ================================================================

    async def _owned_post(self, tenant_id: int, post_id: str) -> Post:
        post = await self.content.get_post(post_id)
        if post is None:
            raise NotFoundError(f"Post {post_id} not found")
        if post.tenant_id != tenant_id:
            raise UnauthorizedError(f"Post {post_id} does not belong to tenant {tenant_id}")
        return post

    async def _owned_channel(self, tenant_id: int, channel_id: str) -> Channel:
        channel = await self.content.get_channel(channel_id)
        if channel is None:
            raise NotFoundError(f"Channel {channel_id} not found")
        if not channel.is_owned_by(tenant_id):
            raise UnauthorizedError(
                f"Tenant {tenant_id} does not have access to channel {channel_id}"
            )
        return channel

    # ================================================================
    # SCHEDULE / CANCEL
    # ================================================================

    async def schedule(
        self,
        tenant_id: int,
        post_id: str,
        channel_id: str,
        instant: datetime,
        tz: str = "UTC",
    ) -> ScheduleResult:
        """Schedule *post_id* for publication at *instant*.

        Re-scheduling an already scheduled post replaces its job, so at
        most one pending job exists per post.

        Raises:
            NotFoundError: Post or channel does not exist.
            UnauthorizedError: Tenant owns neither the post nor the channel.
            ScheduleStateError: The post was already published.
            ValidationError: *instant* is not far enough in the future.
        """
        post = await self._owned_post(tenant_id, post_id)
        await self._owned_channel(tenant_id, channel_id)
        if post.status == PostStatus.PUBLISHED:
            raise ScheduleStateError(f"Post {post_id} is already published")

        instant = ensure_utc(instant)
        now = self._clock()
        if instant < now + timedelta(minutes=self.settings.min_lead_minutes):
            raise ValidationError("Scheduled time must be at least 1 minute in the future")

        existing = await self.jobs.get_pending_job_for_post(post_id)
        check = await self.check_conflicts(
            channel_id,
            instant,
            exclude_job_id=existing.job_id if existing else None,
            tz=tz,
        )

        replaced = await self.jobs.cancel(PUBLISH_JOB_NAME, post_id)
        job_id = await self.jobs.schedule(
            instant,
            PUBLISH_JOB_NAME,
            {
                "post_id": post_id,
                "tenant_id": tenant_id,
                "channel_id": channel_id,
                "timezone": tz,
            },
        )
        await self.content.update_post(
            post_id,
            {
                "status": PostStatus.SCHEDULED,
                "channel_id": channel_id,
                "scheduled_at": instant,
                "last_error": None,
            },
        )

        job = ScheduledJob(
            job_id=job_id,
            post_id=post_id,
            tenant_id=tenant_id,
            channel_id=channel_id,
            fire_at=instant,
            timezone=tz,
            created_at=now,
        )
        await self.log.info(
            "Post scheduled",
            tenant_id=tenant_id,
            job_id=job_id,
            data={
                "post_id": post_id,
                "fire_at": instant.isoformat(),
                "replaced": replaced,
                "warning": check.reason,
            },
        )
        return ScheduleResult(
            job=job,
            warning=check.reason if check.conflict else None,
            replaced_job_id=existing.job_id if existing else None,
        )

    async def cancel(self, tenant_id: int, post_id: str) -> ScheduledJob:
        """Cancel the post's pending job and revert the post to DRAFT.

        Raises:
            NotFoundError: Post does not exist.
            UnauthorizedError: Tenant does not own the post.
            ScheduleStateError: No pending job, or firing already began.
        """
        await self._owned_post(tenant_id, post_id)
        job = await self.jobs.get_pending_job_for_post(post_id)
        if job is None:
            raise ScheduleStateError(f"Post {post_id} has no pending job to cancel")
        if job.tenant_id != tenant_id:
            raise UnauthorizedError(f"Job {job.job_id} does not belong to tenant {tenant_id}")

        if not await self.jobs.cancel_job(job.job_id):
            raise ScheduleStateError(f"Job {job.job_id} is already firing and cannot be cancelled")

        await self.content.update_post(
            post_id, {"status": PostStatus.DRAFT, "scheduled_at": None}
        )
        job.status = JobStatus.CANCELLED
        await self.log.info(
            "Post schedule cancelled",
            tenant_id=tenant_id,
            job_id=job.job_id,
            data={"post_id": post_id},
        )
        return job

    async def reschedule(
        self, tenant_id: int, post_id: str, instant: datetime, tz: str = "UTC"
    ) -> ScheduleResult:
        """Move a post to a new instant on its current channel."""
        post = await self._owned_post(tenant_id, post_id)
        return await self.schedule(tenant_id, post_id, post.channel_id, instant, tz)

    # ================================================================
    # FIRING
    # ================================================================

    async def fire(self, job_id: str) -> FireOutcome:
        """Fire a due job.

        The PENDING -> FIRED claim happens first; a job that loses the
        claim (cancelled or fired elsewhere) is left untouched. After the
        claim, a post that is no longer SCHEDULED is skipped. Acquire and
        publish failures are recorded on the job and the post reverts to
        DRAFT with ``last_error``, unless the post was re-scheduled while
        this job was in flight. A successful publish cancels such a newer
        job instead.
        """
        if not await self.jobs.claim(job_id, self._clock()):
            logger.debug("[SCHEDULER] Job %s already claimed or cancelled", job_id)
            return FireOutcome(job_id=job_id, status=FireStatus.NOT_CLAIMED)

        job = await self.jobs.get_job(job_id)
        post = await self.content.get_post(job.post_id) if job else None
        if job is None or post is None or post.status != PostStatus.SCHEDULED:
            await self.log.info(
                "Job fired for a post that is no longer scheduled; skipped",
                job_id=job_id,
                tenant_id=job.tenant_id if job else None,
            )
            return FireOutcome(job_id=job_id, status=FireStatus.SKIPPED)

        channel = await self.content.get_channel(job.channel_id)
        if channel is None:
            return await self._record_failure(job, post, JobFireError("Channel not found"))

        try:
            connection = await self.supervisor.acquire(job.tenant_id)
        except ConnectionFailure as exc:
            return await self._record_failure(job, post, JobFireError(str(exc), kind=exc.reason))

        try:
            sent = await self._send(connection, channel, post)
        except JobFireError as exc:
            return await self._record_failure(job, post, exc)

        published_at = ensure_utc(sent.sent_at)
        await self.jobs.record_outcome(job_id, error=None, message_id=sent.message_id)
        # A re-schedule made while this job was in flight would post a second copy.
        dropped = await self.jobs.cancel(PUBLISH_JOB_NAME, post.id)
        await self._mark_published(post, sent)
        await self.log.info(
            "Job fired and post published",
            tenant_id=job.tenant_id,
            job_id=job_id,
            data={
                "post_id": post.id,
                "message_id": sent.message_id,
                "cancelled_jobs": dropped,
            },
        )
        return FireOutcome(
            job_id=job_id,
            status=FireStatus.PUBLISHED,
            message_id=sent.message_id,
            published_at=published_at,
        )

    async def publish_now(self, tenant_id: int, post_id: str) -> SentMessage:
        """Publish a post immediately, outside the job store.

        Once a connection is in hand, any pending job for the post is
        cancelled so it cannot fire a second copy.

        Raises:
            NotFoundError / UnauthorizedError: Ownership checks failed.
            ScheduleStateError: The post was already published.
            JobFireError: The connection or the send failed.
        """
        post = await self._owned_post(tenant_id, post_id)
        channel = await self._owned_channel(tenant_id, post.channel_id)
        if post.status == PostStatus.PUBLISHED:
            raise ScheduleStateError(f"Post {post_id} is already published")

        try:
            connection = await self.supervisor.acquire(tenant_id)
        except ConnectionFailure as exc:
            raise JobFireError(str(exc), kind=exc.reason) from exc

        await self.jobs.cancel(PUBLISH_JOB_NAME, post_id)
        try:
            sent = await self._send(connection, channel, post)
        except JobFireError as exc:
            await self.content.update_post(
                post_id,
                {"status": PostStatus.DRAFT, "scheduled_at": None, "last_error": str(exc)},
            )
            raise

        await self._mark_published(post, sent)
        return sent

    async def _send(self, connection: Connection, channel: Channel, post: Post) -> SentMessage:
        """Publish and translate failures into :class:`JobFireError`.

        Conflict and auth failures are reported to the supervisor so the
        connection is evicted and cooled down.
        """
        try:
            return await self.publisher.publish(connection, channel, post)
        except TransportError as exc:
            if exc.kind in _CONNECTION_KILLERS:
                await self.supervisor.report_failure(post.tenant_id, exc, connection=connection)
            raise JobFireError(str(exc), kind=exc.kind) from exc
        except Exception as exc:
            logger.exception("[SCHEDULER] Unexpected publish error for post %s", post.id)
            raise JobFireError(f"{type(exc).__name__}: {exc}", kind=FailureKind.UNKNOWN) from exc

    async def _mark_published(self, post: Post, sent: SentMessage) -> None:
        await self.content.update_post(
            post.id,
            {
                "status": PostStatus.PUBLISHED,
                "published_at": ensure_utc(sent.sent_at),
                "published_message_id": sent.message_id,
                "last_error": None,
            },
        )

    async def _record_failure(
        self, job: ScheduledJob, post: Post, error: JobFireError
    ) -> FireOutcome:
        message = str(error)
        await self.jobs.record_outcome(job.job_id, error=message)

        newer = await self.jobs.get_pending_job_for_post(post.id)
        if newer is not None and newer.job_id != job.job_id:
            await self.log.warning(
                "Job fire failed; post was re-scheduled meanwhile and is left as is",
                error=error,
                tenant_id=job.tenant_id,
                job_id=job.job_id,
                data={"post_id": post.id, "pending_job_id": newer.job_id},
            )
            return FireOutcome(job_id=job.job_id, status=FireStatus.FAILED, error=message)

        await self.content.update_post(
            post.id,
            {"status": PostStatus.DRAFT, "scheduled_at": None, "last_error": message},
        )
        await self.log.error(
            "Job fire failed; post reverted to draft",
            error=error,
            tenant_id=job.tenant_id,
            job_id=job.job_id,
            data={
                "post_id": post.id,
                "kind": error.kind.value if isinstance(error.kind, FailureKind) else None,
            },
        )
        return FireOutcome(job_id=job.job_id, status=FireStatus.FAILED, error=message)

    # ================================================================
    # QUERIES
    # ================================================================

    async def list_scheduled(
        self,
        tenant_id: int,
        channel_id: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[ScheduledJob]:
        """A tenant's pending jobs, soonest first (the queue view)."""
        if channel_id is not None:
            await self._owned_channel(tenant_id, channel_id)
        return await self.jobs.list_jobs_for_tenant(
            tenant_id, channel_id=channel_id, status=JobStatus.PENDING, limit=limit, offset=offset
        )

    async def jobs_per_channel(self) -> Dict[str, int]:
        """Pending job count per channel, for operators."""
        return await self.jobs.count_pending_by_channel()


__all__ = ["ScheduleEngine"]
