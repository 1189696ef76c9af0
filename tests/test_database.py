"""
Tests for postify.database: validators, config loading and SupabaseDB
queries against a mocked async Supabase client.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from postgrest.exceptions import APIError

from postify.database import (
    SupabaseConfig,
    SupabaseDB,
    serialize_fields,
    validate_not_empty,
    validate_positive,
)
from postify.exceptions import ConfigurationError, DatabaseError, ValidationError
from postify.models import CredentialRecord, CredentialStatus, JobStatus, Post, PostStatus

FIRE_AT = datetime(2025, 6, 18, 13, 0, tzinfo=timezone.utc)


@pytest.fixture
def db(mock_supabase_client):
    return SupabaseDB(mock_supabase_client)


def _job_row(job_id="job-1", status="pending"):
    return {
        "id": job_id,
        "job_name": "publish_post",
        "post_id": "post-1",
        "tenant_id": 1001,
        "channel_id": "chan-1",
        "fire_at": "2025-06-18T13:00:00+00:00",
        "status": status,
        "timezone": "Europe/Berlin",
        "created_at": "2025-06-18T12:00:00Z",
    }


# =============================================================================
# Validators
# =============================================================================


class TestValidators:

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_validate_not_empty_rejects(self, value):
        with pytest.raises(ValidationError):
            validate_not_empty(value, "field")

    def test_validate_not_empty_accepts(self):
        validate_not_empty("x", "field")
        validate_not_empty(0, "field")

    @pytest.mark.parametrize("value", [None, 0, -3])
    def test_validate_positive_rejects(self, value):
        with pytest.raises(ValidationError):
            validate_positive(value, "limit")

    def test_serialize_fields(self):
        row = serialize_fields({
            "status": PostStatus.PUBLISHED,
            "published_at": FIRE_AT,
            "published_message_id": 77,
        })
        assert row == {
            "status": "published",
            "published_at": "2025-06-18T13:00:00+00:00",
            "published_message_id": 77,
        }


# =============================================================================
# Config
# =============================================================================


class TestSupabaseConfig:

    def test_missing_env_raises(self):
        with pytest.raises(ConfigurationError):
            SupabaseConfig.from_env()

    def test_reads_env(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
        monkeypatch.setenv("SUPABASE_SERVICE_KEY", "service-key")
        config = SupabaseConfig.from_env()
        assert config.url == "https://example.supabase.co"
        assert config.key == "service-key"


# =============================================================================
# Credentials
# =============================================================================


class TestCredentials:

    @pytest.mark.asyncio
    async def test_get_credential(self, db, mock_supabase_client):
        mock_supabase_client.rows = [{
            "tenant_id": "1001",
            "token_encrypted": "v1:abc",
            "status": "disabled",
            "last_error": "Unauthorized",
            "updated_at": "2025-06-18T12:00:00Z",
        }]

        record = await db.get_credential(1001)

        mock_supabase_client.table.assert_called_with("user_bots")
        assert record.tenant_id == 1001
        assert record.status == CredentialStatus.DISABLED
        assert record.last_error == "Unauthorized"

    @pytest.mark.asyncio
    async def test_get_credential_missing(self, db):
        assert await db.get_credential(1001) is None

    @pytest.mark.asyncio
    async def test_save_credential_upserts_on_tenant(self, db, mock_supabase_client):
        mock_supabase_client.rows = [{"tenant_id": 1001}]

        await db.save_credential(CredentialRecord(tenant_id=1001, token_encrypted="v1:abc"))

        args, kwargs = mock_supabase_client.query.upsert.call_args
        assert args[0]["token_encrypted"] == "v1:abc"
        assert args[0]["status"] == "active"
        assert kwargs == {"on_conflict": "tenant_id"}

    @pytest.mark.asyncio
    async def test_save_credential_without_data_raises(self, db):
        with pytest.raises(DatabaseError, match="no data"):
            await db.save_credential(CredentialRecord(tenant_id=1001, token_encrypted="v1:abc"))

    @pytest.mark.asyncio
    async def test_list_active_rejects_bad_limit(self, db):
        with pytest.raises(ValidationError):
            await db.list_active_credentials(limit=0)


# =============================================================================
# Posts
# =============================================================================


class TestPosts:

    @pytest.mark.asyncio
    async def test_save_post_requires_content(self, db):
        post = Post(id="p", tenant_id=1, channel_id="c", text="")
        with pytest.raises(ValidationError):
            await db.save_post(post)

    @pytest.mark.asyncio
    async def test_update_post_serializes(self, db, mock_supabase_client):
        await db.update_post("post-1", {"status": PostStatus.DRAFT, "scheduled_at": None})

        mock_supabase_client.query.update.assert_called_once_with(
            {"status": "draft", "scheduled_at": None}
        )
        mock_supabase_client.query.eq.assert_called_with("id", "post-1")

    @pytest.mark.asyncio
    async def test_update_post_requires_fields(self, db):
        with pytest.raises(ValidationError):
            await db.update_post("post-1", {})


# =============================================================================
# Jobs
# =============================================================================


class TestJobs:

    @pytest.mark.asyncio
    async def test_schedule_inserts_pending_row(self, db, mock_supabase_client):
        mock_supabase_client.rows = [{"id": "job-9"}]

        job_id = await db.schedule(
            FIRE_AT,
            "publish_post",
            {"post_id": "post-1", "tenant_id": 1001, "channel_id": "chan-1"},
        )

        assert job_id == "job-9"
        row = mock_supabase_client.query.insert.call_args.args[0]
        assert row["status"] == "pending"
        assert row["fire_at"] == "2025-06-18T13:00:00+00:00"
        assert row["timezone"] == "UTC"

    @pytest.mark.asyncio
    async def test_schedule_requires_payload_keys(self, db):
        with pytest.raises(ValidationError, match="missing"):
            await db.schedule(FIRE_AT, "publish_post", {"post_id": "post-1"})

    @pytest.mark.asyncio
    async def test_claim_succeeds_when_row_matched(self, db, mock_supabase_client):
        mock_supabase_client.rows = [_job_row(status="fired")]

        assert await db.claim("job-1", FIRE_AT) is True
        mock_supabase_client.query.eq.assert_any_call("status", "pending")

    @pytest.mark.asyncio
    async def test_claim_fails_when_already_claimed(self, db):
        assert await db.claim("job-1", FIRE_AT) is False

    @pytest.mark.asyncio
    async def test_cancel_job_only_pending(self, db, mock_supabase_client):
        assert await db.cancel_job("job-1") is False

        mock_supabase_client.rows = [_job_row(status="cancelled")]
        assert await db.cancel_job("job-1") is True
        mock_supabase_client.query.update.assert_called_with({"status": "cancelled"})

    @pytest.mark.asyncio
    async def test_get_due_jobs_parses_rows(self, db, mock_supabase_client):
        mock_supabase_client.rows = [_job_row()]

        jobs = await db.get_due_jobs(FIRE_AT)

        assert len(jobs) == 1
        assert jobs[0].fire_at == FIRE_AT
        assert jobs[0].status == JobStatus.PENDING
        assert jobs[0].timezone == "Europe/Berlin"
        mock_supabase_client.query.lte.assert_called_with("fire_at", FIRE_AT.isoformat())

    @pytest.mark.asyncio
    async def test_list_pending_jobs_excludes_job(self, db, mock_supabase_client):
        await db.list_pending_jobs("chan-1", FIRE_AT, FIRE_AT, exclude_job_id="job-1")
        mock_supabase_client.query.neq.assert_called_once_with("id", "job-1")

    @pytest.mark.asyncio
    async def test_count_pending_by_channel(self, db, mock_supabase_client):
        mock_supabase_client.rows = [
            {"channel_id": "a"}, {"channel_id": "b"}, {"channel_id": "a"},
        ]
        assert await db.count_pending_by_channel() == {"a": 2, "b": 1}


# =============================================================================
# Error wrapping
# =============================================================================


class TestErrorWrapping:

    @pytest.mark.asyncio
    async def test_api_error_becomes_database_error(self, db, mock_supabase_client):
        mock_supabase_client.query.execute = AsyncMock(
            side_effect=APIError({"message": "relation does not exist", "code": "42P01"})
        )
        with pytest.raises(DatabaseError, match="get_job failed"):
            await db.get_job("job-1")

    @pytest.mark.asyncio
    async def test_http_error_becomes_database_error(self, db, mock_supabase_client):
        mock_supabase_client.query.execute = AsyncMock(
            side_effect=httpx.ConnectError("connection refused")
        )
        with pytest.raises(DatabaseError, match="claim_job failed"):
            await db.claim("job-1", FIRE_AT)

    @pytest.mark.asyncio
    async def test_save_event_log_requires_entry(self, db):
        with pytest.raises(ValidationError):
            await db.save_event_log({})


@pytest.mark.asyncio
async def test_create_uses_async_client(monkeypatch):
    client = MagicMock()
    factory = AsyncMock(return_value=client)
    monkeypatch.setattr("postify.database.create_async_client", factory)

    db = await SupabaseDB.create(SupabaseConfig(url="https://x.supabase.co", key="k"))

    factory.assert_awaited_once_with("https://x.supabase.co", "k")
    assert db.client is client
