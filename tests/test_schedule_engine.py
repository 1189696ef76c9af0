"""Tests for postify.scheduling.schedule_engine.

Covers:
- Ownership checks and the post state machine on schedule/cancel.
- Idempotent re-scheduling (one live job per post).
- Advisory conflict checks (proximity window, hourly limit).
- Firing: exactly-once claim, skips, recorded failures, no auto-retry.
- publish_now and queue listing.
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import CHANNEL_ID, CHAT_ID, NOW, OTHER_TENANT, TENANT
from postify.connections.transport import FailureKind, TransportError
from postify.exceptions import (
    JobFireError,
    NotFoundError,
    ScheduleStateError,
    TransientFailureError,
    UnauthorizedError,
    ValidationError,
)
from postify.models import Channel, CredentialStatus, JobStatus, MediaType, PostStatus
from postify.scheduling.models import FireStatus
from postify.scheduling.publisher import PublishAction

IN_ONE_HOUR = NOW + timedelta(hours=1)


# =============================================================================
# schedule
# =============================================================================


class TestSchedule:

    @pytest.mark.asyncio
    async def test_schedule_persists_job_and_flips_post(
        self, engine, job_store, content_store, channel, add_post
    ):
        await add_post()

        result = await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR, "Europe/Berlin")

        assert result.warning is None
        assert result.replaced_job_id is None
        stored = await job_store.get_job(result.job.job_id)
        assert stored.status == JobStatus.PENDING
        assert stored.fire_at == IN_ONE_HOUR
        assert stored.timezone == "Europe/Berlin"
        post = await content_store.get_post("post-1")
        assert post.status == PostStatus.SCHEDULED
        assert post.scheduled_at == IN_ONE_HOUR

    @pytest.mark.asyncio
    async def test_rescheduling_leaves_one_live_job(self, engine, job_store, channel, add_post):
        await add_post()
        first = await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)
        second = await engine.schedule(
            TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR + timedelta(minutes=1)
        )

        assert second.replaced_job_id == first.job.job_id
        pending = await job_store.list_jobs_for_tenant(TENANT)
        assert [job.job_id for job in pending] == [second.job.job_id]
        assert (await job_store.get_job(first.job.job_id)).status == JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_rescheduling_does_not_conflict_with_itself(self, engine, channel, add_post):
        await add_post()
        await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)
        result = await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)
        assert result.warning is None

    @pytest.mark.asyncio
    async def test_missing_post(self, engine, channel):
        with pytest.raises(NotFoundError):
            await engine.schedule(TENANT, "nope", CHANNEL_ID, IN_ONE_HOUR)

    @pytest.mark.asyncio
    async def test_missing_channel(self, engine, add_post):
        await add_post()
        with pytest.raises(NotFoundError):
            await engine.schedule(TENANT, "post-1", "chan-missing", IN_ONE_HOUR)

    @pytest.mark.asyncio
    async def test_post_owned_by_another_tenant(self, engine, channel, add_post):
        await add_post(tenant_id=OTHER_TENANT)
        with pytest.raises(UnauthorizedError):
            await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)

    @pytest.mark.asyncio
    async def test_channel_owned_by_another_tenant(self, engine, content_store, add_post):
        await content_store.save_channel(Channel(id="chan-2", chat_id=-100, owners=[OTHER_TENANT]))
        await add_post(channel_id="chan-2")
        with pytest.raises(UnauthorizedError):
            await engine.schedule(TENANT, "post-1", "chan-2", IN_ONE_HOUR)

    @pytest.mark.asyncio
    async def test_published_post_cannot_be_scheduled(self, engine, channel, add_post):
        await add_post(status=PostStatus.PUBLISHED)
        with pytest.raises(ScheduleStateError):
            await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)

    @pytest.mark.asyncio
    async def test_instant_must_be_in_the_future(self, engine, channel, add_post):
        await add_post()
        with pytest.raises(ValidationError):
            await engine.schedule(TENANT, "post-1", CHANNEL_ID, NOW + timedelta(seconds=30))

    @pytest.mark.asyncio
    async def test_reschedule_keeps_channel(self, engine, job_store, channel, add_post):
        await add_post()
        await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)

        result = await engine.reschedule(TENANT, "post-1", IN_ONE_HOUR + timedelta(hours=2))

        assert result.job.channel_id == CHANNEL_ID
        assert len(await job_store.list_jobs_for_tenant(TENANT)) == 1

    def test_parse_target_uses_engine_clock(self, engine):
        assert engine.parse_target("in 15m") == NOW + timedelta(minutes=15)


# =============================================================================
# check_conflicts
# =============================================================================


class TestConflicts:

    @pytest.mark.asyncio
    async def test_nearby_job_is_flagged(self, engine, channel, add_post):
        await add_post()
        first = await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)

        check = await engine.check_conflicts(CHANNEL_ID, IN_ONE_HOUR + timedelta(minutes=2))

        assert check.conflict is True
        assert "3 minutes apart" in check.reason
        assert check.conflicting_job_ids == [first.job.job_id]

    @pytest.mark.asyncio
    async def test_outside_window_is_clear(self, engine, channel, add_post):
        await add_post()
        await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)

        check = await engine.check_conflicts(CHANNEL_ID, IN_ONE_HOUR + timedelta(minutes=4))

        assert check.conflict is False
        assert check.reason is None

    @pytest.mark.asyncio
    async def test_other_channels_do_not_conflict(self, engine, channel, add_post):
        await add_post()
        await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)
        check = await engine.check_conflicts("chan-other", IN_ONE_HOUR)
        assert check.conflict is False

    @pytest.mark.asyncio
    async def test_eleventh_job_in_an_hour_warns_but_schedules(
        self, engine, job_store, channel, add_post
    ):
        """Ten jobs 5 minutes apart fill the hour; the eleventh still goes through."""
        hour = (NOW + timedelta(hours=2)).replace(minute=0)
        for i in range(10):
            await add_post(post_id=f"post-{i}")
            result = await engine.schedule(
                TENANT, f"post-{i}", CHANNEL_ID, hour + timedelta(minutes=5 * i)
            )
            assert result.warning is None

        await add_post(post_id="post-10")
        result = await engine.schedule(
            TENANT, "post-10", CHANNEL_ID, hour + timedelta(minutes=52)
        )

        assert result.warning is not None
        assert "hourly limit" in result.warning
        assert (await job_store.count_pending_by_channel()) == {CHANNEL_ID: 11}

    @pytest.mark.asyncio
    async def test_hour_boundary_follows_tenant_zone(self, engine, channel, add_post):
        """India is UTC+5:30, so a local hour spans :30 to :30 in UTC."""
        base = (NOW + timedelta(hours=2)).replace(minute=30)
        for i in range(10):
            await add_post(post_id=f"post-{i}")
            await engine.schedule(
                TENANT, f"post-{i}", CHANNEL_ID, base + timedelta(minutes=5 * i), "Asia/Kolkata"
            )

        # 14:26 UTC is 19:56 in Kolkata, the previous local hour
        outside = await engine.check_conflicts(
            CHANNEL_ID, base - timedelta(minutes=4), tz="Asia/Kolkata"
        )
        inside = await engine.check_conflicts(
            CHANNEL_ID, base + timedelta(minutes=56), tz="Asia/Kolkata"
        )

        assert outside.conflict is False
        assert inside.conflict is True


# =============================================================================
# cancel
# =============================================================================


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_pending_job_reverts_post(
        self, engine, job_store, content_store, channel, add_post
    ):
        await add_post()
        scheduled = await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)

        job = await engine.cancel(TENANT, "post-1")

        assert job.job_id == scheduled.job.job_id
        assert job.status == JobStatus.CANCELLED
        assert (await job_store.get_job(job.job_id)).status == JobStatus.CANCELLED
        post = await content_store.get_post("post-1")
        assert post.status == PostStatus.DRAFT
        assert post.scheduled_at is None

    @pytest.mark.asyncio
    async def test_cancel_fired_job_fails(self, engine, job_store, channel, add_post):
        await add_post()
        scheduled = await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)
        await job_store.claim(scheduled.job.job_id, IN_ONE_HOUR)

        with pytest.raises(ScheduleStateError):
            await engine.cancel(TENANT, "post-1")

    @pytest.mark.asyncio
    async def test_cancel_without_job_fails(self, engine, channel, add_post):
        await add_post()
        with pytest.raises(ScheduleStateError):
            await engine.cancel(TENANT, "post-1")

    @pytest.mark.asyncio
    async def test_cancel_by_non_owner_fails(self, engine, job_store, channel, add_post):
        await add_post()
        await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)

        with pytest.raises(UnauthorizedError):
            await engine.cancel(OTHER_TENANT, "post-1")
        assert len(await job_store.list_jobs_for_tenant(TENANT)) == 1


# =============================================================================
# fire
# =============================================================================


class TestFire:

    @pytest.mark.asyncio
    async def test_fire_publishes_and_records_message(
        self, engine, job_store, content_store, transport, channel, add_post, add_credential
    ):
        await add_credential()
        await add_post(text="Launch day")
        scheduled = await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)

        outcome = await engine.fire(scheduled.job.job_id)

        assert outcome.status == FireStatus.PUBLISHED
        [connection] = transport.connections
        assert connection.sent == [
            {"chat_id": CHAT_ID, "text": "Launch day", "media_type": MediaType.TEXT, "media_file_id": None}
        ]
        job = await job_store.get_job(scheduled.job.job_id)
        assert job.status == JobStatus.FIRED
        assert job.message_id == outcome.message_id
        assert job.error is None
        post = await content_store.get_post("post-1")
        assert post.status == PostStatus.PUBLISHED
        assert post.published_message_id == outcome.message_id
        assert post.published_at == NOW

    @pytest.mark.asyncio
    async def test_fire_sends_media(self, engine, transport, channel, add_post, add_credential):
        await add_credential()
        await add_post(text="caption", media_type=MediaType.PHOTO, media_file_id="file-abc")
        scheduled = await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)

        await engine.fire(scheduled.job.job_id)

        sent = transport.connections[0].sent[0]
        assert sent["media_type"] == MediaType.PHOTO
        assert sent["media_file_id"] == "file-abc"

    @pytest.mark.asyncio
    async def test_second_fire_is_not_claimed(self, engine, transport, channel, add_post, add_credential):
        await add_credential()
        await add_post()
        scheduled = await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)

        await engine.fire(scheduled.job.job_id)
        again = await engine.fire(scheduled.job.job_id)

        assert again.status == FireStatus.NOT_CLAIMED
        assert len(transport.connections[0].sent) == 1

    @pytest.mark.asyncio
    async def test_cancelled_job_does_not_fire(self, engine, transport, channel, add_post):
        await add_post()
        scheduled = await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)
        await engine.cancel(TENANT, "post-1")

        outcome = await engine.fire(scheduled.job.job_id)

        assert outcome.status == FireStatus.NOT_CLAIMED
        assert transport.open_calls == []

    @pytest.mark.asyncio
    async def test_post_no_longer_scheduled_is_skipped(
        self, engine, job_store, content_store, transport, channel, add_post
    ):
        await add_post()
        scheduled = await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)
        await content_store.update_post("post-1", {"status": PostStatus.DRAFT})

        outcome = await engine.fire(scheduled.job.job_id)

        assert outcome.status == FireStatus.SKIPPED
        assert (await job_store.get_job(scheduled.job.job_id)).status == JobStatus.FIRED
        assert transport.open_calls == []

    @pytest.mark.asyncio
    async def test_acquire_failure_is_recorded_once(
        self, engine, job_store, content_store, transport, channel, add_post, add_credential
    ):
        """A failed acquire still fires the job exactly once, with no retry."""
        await add_credential()
        await add_post()
        transport.failures[TENANT] = TransportError(FailureKind.AUTH_REVOKED, "Unauthorized")
        scheduled = await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)

        outcome = await engine.fire(scheduled.job.job_id)

        assert outcome.status == FireStatus.FAILED
        assert "Unauthorized" in outcome.error
        job = await job_store.get_job(scheduled.job.job_id)
        assert job.status == JobStatus.FIRED
        assert "Unauthorized" in job.error
        post = await content_store.get_post("post-1")
        assert post.status == PostStatus.DRAFT
        assert "Unauthorized" in post.last_error
        assert await job_store.get_due_jobs(IN_ONE_HOUR + timedelta(days=1)) == []

    @pytest.mark.asyncio
    async def test_missing_credential_is_recorded(
        self, engine, job_store, channel, add_post
    ):
        await add_post()
        scheduled = await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)

        outcome = await engine.fire(scheduled.job.job_id)

        assert outcome.status == FireStatus.FAILED
        assert (await job_store.get_job(scheduled.job.job_id)).status == JobStatus.FIRED

    @pytest.mark.asyncio
    async def test_publish_conflict_evicts_connection(
        self, engine, supervisor, content_store, channel, add_post, add_credential
    ):
        await add_credential()
        await add_post()
        connection = await supervisor.acquire(TENANT)
        connection.publish_error = TransportError(FailureKind.CONFLICT, "Conflict")
        scheduled = await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)

        outcome = await engine.fire(scheduled.job.job_id)

        assert outcome.status == FireStatus.FAILED
        assert connection.stopped is True
        assert supervisor.active_cooldown(TENANT).reason == FailureKind.CONFLICT

    @pytest.mark.asyncio
    async def test_unexpected_publisher_error_is_recorded(
        self, content_store, job_store, supervisor, clock, channel, add_post, add_credential
    ):
        from postify.scheduling.schedule_engine import ScheduleEngine

        class BrokenPublisher(PublishAction):
            async def publish(self, connection, channel, post):
                raise KeyError("chat_id")

        engine = ScheduleEngine(
            content_store, job_store, supervisor, publisher=BrokenPublisher(), clock=clock
        )
        await add_credential()
        await add_post()
        scheduled = await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)

        outcome = await engine.fire(scheduled.job.job_id)

        assert outcome.status == FireStatus.FAILED
        assert "KeyError" in outcome.error
        assert supervisor.is_running(TENANT)

    @pytest.mark.asyncio
    async def test_missing_channel_is_recorded(
        self, engine, job_store, content_store, channel, add_post
    ):
        await add_post()
        scheduled = await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)
        content_store._channels.clear()

        outcome = await engine.fire(scheduled.job.job_id)

        assert outcome.status == FireStatus.FAILED
        assert outcome.error == "Channel not found"

    @pytest.mark.asyncio
    async def test_failed_fire_keeps_reschedule_made_in_flight(
        self, engine, supervisor, job_store, content_store, channel, add_post, add_credential,
        monkeypatch,
    ):
        """The post is only reverted to DRAFT when no newer job replaced the fired one."""
        await add_credential()
        await add_post()
        first = await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)
        later = IN_ONE_HOUR + timedelta(hours=1)
        gate = asyncio.Event()

        async def slow_failing_acquire(tenant_id):
            await gate.wait()
            raise TransientFailureError(tenant_id, "network down", reason=FailureKind.UNKNOWN)

        monkeypatch.setattr(supervisor, "acquire", slow_failing_acquire)
        firing = asyncio.create_task(engine.fire(first.job.job_id))
        await asyncio.sleep(0.01)
        second = await engine.schedule(TENANT, "post-1", CHANNEL_ID, later)
        gate.set()
        outcome = await firing

        assert outcome.status == FireStatus.FAILED
        assert (await job_store.get_job(first.job.job_id)).error == "network down"
        post = await content_store.get_post("post-1")
        assert post.status == PostStatus.SCHEDULED
        assert post.scheduled_at == later
        assert (await job_store.get_job(second.job.job_id)).status == JobStatus.PENDING

        monkeypatch.undo()
        again = await engine.fire(second.job.job_id)

        assert again.status == FireStatus.PUBLISHED
        assert (await content_store.get_post("post-1")).status == PostStatus.PUBLISHED

    @pytest.mark.asyncio
    async def test_successful_fire_drops_reschedule_made_in_flight(
        self, engine, supervisor, job_store, content_store, transport, channel, add_post,
        add_credential, monkeypatch,
    ):
        await add_credential()
        await add_post()
        first = await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)
        gate = asyncio.Event()
        real_acquire = supervisor.acquire

        async def slow_acquire(tenant_id):
            await gate.wait()
            return await real_acquire(tenant_id)

        monkeypatch.setattr(supervisor, "acquire", slow_acquire)
        firing = asyncio.create_task(engine.fire(first.job.job_id))
        await asyncio.sleep(0.01)
        second = await engine.schedule(
            TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR + timedelta(hours=1)
        )
        gate.set()
        outcome = await firing

        assert outcome.status == FireStatus.PUBLISHED
        assert (await content_store.get_post("post-1")).status == PostStatus.PUBLISHED
        assert (await job_store.get_job(second.job.job_id)).status == JobStatus.CANCELLED
        assert (await engine.fire(second.job.job_id)).status == FireStatus.NOT_CLAIMED
        assert len(transport.connections[0].sent) == 1


# =============================================================================
# publish_now and queries
# =============================================================================


class TestPublishNow:

    @pytest.mark.asyncio
    async def test_publish_now_sends_and_cancels_pending_job(
        self, engine, job_store, content_store, transport, channel, add_post, add_credential
    ):
        await add_credential()
        await add_post()
        scheduled = await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)

        sent = await engine.publish_now(TENANT, "post-1")

        assert sent.chat_id == CHAT_ID
        assert (await job_store.get_job(scheduled.job.job_id)).status == JobStatus.CANCELLED
        post = await content_store.get_post("post-1")
        assert post.status == PostStatus.PUBLISHED
        assert post.published_message_id == sent.message_id

    @pytest.mark.asyncio
    async def test_publish_now_acquire_failure_leaves_post_untouched(
        self, engine, job_store, content_store, channel, add_post
    ):
        await add_post()
        scheduled = await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)

        with pytest.raises(JobFireError):
            await engine.publish_now(TENANT, "post-1")

        assert (await job_store.get_job(scheduled.job.job_id)).status == JobStatus.PENDING
        assert (await content_store.get_post("post-1")).status == PostStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_publish_now_send_failure_reverts_to_draft(
        self, engine, supervisor, content_store, channel, add_post, add_credential
    ):
        await add_credential()
        await add_post()
        connection = await supervisor.acquire(TENANT)
        connection.publish_error = TransportError(FailureKind.UNKNOWN, "Bad Request: chat not found")

        with pytest.raises(JobFireError) as exc_info:
            await engine.publish_now(TENANT, "post-1")

        assert exc_info.value.kind == FailureKind.UNKNOWN
        post = await content_store.get_post("post-1")
        assert post.status == PostStatus.DRAFT
        assert "chat not found" in post.last_error
        assert connection.stopped is False

    @pytest.mark.asyncio
    async def test_publish_now_rejects_published_post(self, engine, channel, add_post):
        await add_post(status=PostStatus.PUBLISHED)
        with pytest.raises(ScheduleStateError):
            await engine.publish_now(TENANT, "post-1")


class TestQueries:

    @pytest.mark.asyncio
    async def test_list_scheduled_is_ordered_and_paged(self, engine, channel, add_post):
        for i, hours in enumerate([3, 1, 2]):
            await add_post(post_id=f"post-{i}")
            await engine.schedule(TENANT, f"post-{i}", CHANNEL_ID, NOW + timedelta(hours=hours))

        jobs = await engine.list_scheduled(TENANT)
        assert [job.post_id for job in jobs] == ["post-1", "post-2", "post-0"]

        page = await engine.list_scheduled(TENANT, CHANNEL_ID, limit=1, offset=1)
        assert [job.post_id for job in page] == ["post-2"]

    @pytest.mark.asyncio
    async def test_list_scheduled_checks_channel_ownership(self, engine, content_store):
        await content_store.save_channel(Channel(id="chan-2", chat_id=-100, owners=[OTHER_TENANT]))
        with pytest.raises(UnauthorizedError):
            await engine.list_scheduled(TENANT, "chan-2")

    @pytest.mark.asyncio
    async def test_jobs_per_channel(self, engine, channel, add_post):
        await add_post()
        await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)
        assert await engine.jobs_per_channel() == {CHANNEL_ID: 1}

    @pytest.mark.asyncio
    async def test_auth_failure_at_fire_disables_credential(
        self, engine, credential_store, transport, channel, add_post, add_credential
    ):
        await add_credential()
        await add_post()
        transport.failures[TENANT] = TransportError(FailureKind.AUTH_REVOKED, "Unauthorized")
        scheduled = await engine.schedule(TENANT, "post-1", CHANNEL_ID, IN_ONE_HOUR)

        await engine.fire(scheduled.job.job_id)

        record = await credential_store.get_credential(TENANT)
        assert record.status == CredentialStatus.DISABLED
