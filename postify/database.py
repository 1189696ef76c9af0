"""
Unified async database client for all Postify persistence.

ALL Supabase calls go through the SupabaseDB class defined here. It
implements the credential, content and job store interfaces on top of
five tables: ``user_bots``, ``posts``, ``channels``, ``scheduled_jobs``
and ``event_logs``.

Usage::

    from postify.database import get_db

    # In async context:
    db = await get_db()
    job_id = await db.schedule(fire_at, "publish_post", payload)
"""

import asyncio
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import httpx
from postgrest.exceptions import APIError
from supabase import AsyncClient, create_async_client

from postify.exceptions import ConfigurationError, DatabaseError, ValidationError
from postify.models import (
    Channel,
    CredentialRecord,
    CredentialStatus,
    JobStatus,
    Post,
    ScheduledJob,
)
from postify.stores.base import ContentStore, CredentialStore, JobStore
from postify.utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)


# =============================================================================
# VALIDATION HELPERS
# =============================================================================


def validate_not_empty(value: Any, name: str) -> None:
    """Validate that *value* is not ``None`` or an empty string.

    Raises:
        ValidationError: If *value* is ``None`` or a blank string.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if isinstance(value, str) and not value.strip():
        raise ValidationError(f"{name} cannot be empty string")


def validate_positive(value: Union[int, float], name: str) -> None:
    """Validate that *value* is strictly positive (> 0).

    Raises:
        ValidationError: If *value* is ``None`` or not positive.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if value <= 0:
        raise ValidationError(f"{name} must be positive, got {value}")


def serialize_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Convert enums and datetimes in an update dict to column values."""
    row: Dict[str, Any] = {}
    for name, value in fields.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = ensure_utc(value).isoformat()
        row[name] = value
    return row


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class SupabaseConfig:
    """Supabase configuration loaded from environment variables.

    Attributes:
        url: The Supabase project URL (``SUPABASE_URL``).
        key: The service-role key (``SUPABASE_SERVICE_KEY``).
    """

    url: str
    key: str

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        """Create a config instance from environment variables.

        Raises:
            ConfigurationError: If either variable is missing or empty.
        """
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_KEY")

        if not url or not key:
            raise ConfigurationError(
                "SUPABASE_URL and SUPABASE_SERVICE_KEY must be set"
            )

        return cls(url=url, key=key)


# =============================================================================
# SUPABASE DATABASE CLIENT
# =============================================================================


class SupabaseDB(CredentialStore, ContentStore, JobStore):
    """Unified **async** database client for all Postify stores.

    **Important:** Use the :meth:`create` factory method instead of
    ``__init__`` directly -- the underlying async client requires an
    ``await`` during initialisation.

    Every query failure (PostgREST error or HTTP transport error) is raised
    as :class:`DatabaseError`.
    """

    def __init__(self, client: AsyncClient) -> None:
        """Private constructor.  Use :meth:`create` factory method."""
        self.client = client

    @classmethod
    async def create(
        cls, config: Optional[SupabaseConfig] = None
    ) -> "SupabaseDB":
        """Factory method to create an async :class:`SupabaseDB` instance."""
        config = config or SupabaseConfig.from_env()
        client = await create_async_client(config.url, config.key)
        return cls(client)

    async def _execute(self, query: Any, operation: str) -> List[Dict[str, Any]]:
        """Run a query builder and return its rows.

        Raises:
            DatabaseError: On any PostgREST or transport failure.
        """
        try:
            result = await query.execute()
        except (APIError, httpx.HTTPError) as exc:
            logger.error("[DB] %s failed: %s", operation, exc)
            raise DatabaseError(f"{operation} failed: {exc}") from exc
        return result.data or []

    # -----------------------------------------------------------------
    # CREDENTIALS (user_bots)
    # -----------------------------------------------------------------

    async def get_credential(self, tenant_id: int) -> Optional[CredentialRecord]:
        """Get a tenant's credential row, or ``None``."""
        rows = await self._execute(
            self.client.table("user_bots")
            .select("*")
            .eq("tenant_id", tenant_id)
            .limit(1),
            "get_credential",
        )
        return CredentialRecord.from_row(rows[0]) if rows else None

    async def list_active_credentials(self, limit: int = 500) -> List[CredentialRecord]:
        """List active credentials, most recently updated first."""
        validate_positive(limit, "limit")
        rows = await self._execute(
            self.client.table("user_bots")
            .select("*")
            .eq("status", CredentialStatus.ACTIVE.value)
            .order("updated_at", desc=True)
            .limit(limit),
            "list_active_credentials",
        )
        return [CredentialRecord.from_row(row) for row in rows]

    async def save_credential(self, record: CredentialRecord) -> None:
        """Upsert a tenant credential keyed by ``tenant_id``."""
        validate_not_empty(record.token_encrypted, "token_encrypted")
        row = record.to_row()
        row["updated_at"] = utc_now().isoformat()
        rows = await self._execute(
            self.client.table("user_bots").upsert(row, on_conflict="tenant_id"),
            "save_credential",
        )
        if not rows:
            raise DatabaseError("Upsert succeeded but returned no data")

    async def set_credential_status(
        self,
        tenant_id: int,
        status: CredentialStatus,
        last_error: Optional[str] = None,
    ) -> None:
        """Write a credential's status and last-error text."""
        await self._execute(
            self.client.table("user_bots")
            .update({
                "status": status.value,
                "last_error": last_error,
                "updated_at": utc_now().isoformat(),
            })
            .eq("tenant_id", tenant_id),
            "set_credential_status",
        )

    # -----------------------------------------------------------------
    # POSTS
    # -----------------------------------------------------------------

    async def get_post(self, post_id: str) -> Optional[Post]:
        """Get a post by ID."""
        validate_not_empty(post_id, "post_id")
        rows = await self._execute(
            self.client.table("posts").select("*").eq("id", post_id),
            "get_post",
        )
        return Post.from_row(rows[0]) if rows else None

    async def save_post(self, post: Post) -> str:
        """Upsert a post.

        Raises:
            ValidationError: If the post has no text.
            DatabaseError: When the upsert returns no data.
        """
        if not post.text and post.media_file_id is None:
            raise ValidationError("post must have text or media")
        rows = await self._execute(
            self.client.table("posts").upsert(post.to_row()),
            "save_post",
        )
        if not rows:
            raise DatabaseError("Upsert succeeded but returned no data")
        return rows[0]["id"]

    async def update_post(self, post_id: str, fields: Dict[str, Any]) -> None:
        """Update selected post columns."""
        validate_not_empty(post_id, "post_id")
        if not fields:
            raise ValidationError("fields cannot be empty")
        await self._execute(
            self.client.table("posts")
            .update(serialize_fields(fields))
            .eq("id", post_id),
            "update_post",
        )

    # -----------------------------------------------------------------
    # CHANNELS
    # -----------------------------------------------------------------

    async def get_channel(self, channel_id: str) -> Optional[Channel]:
        """Get a channel by ID."""
        validate_not_empty(channel_id, "channel_id")
        rows = await self._execute(
            self.client.table("channels").select("*").eq("id", channel_id),
            "get_channel",
        )
        return Channel.from_row(rows[0]) if rows else None

    async def save_channel(self, channel: Channel) -> str:
        """Upsert a channel."""
        rows = await self._execute(
            self.client.table("channels").upsert(channel.to_row()),
            "save_channel",
        )
        if not rows:
            raise DatabaseError("Upsert succeeded but returned no data")
        return rows[0]["id"]

    # -----------------------------------------------------------------
    # SCHEDULED JOBS
    # -----------------------------------------------------------------

    async def schedule(
        self, fire_at: datetime, job_name: str, payload: Dict[str, Any]
    ) -> str:
        """Insert a pending job.

        Raises:
            ValidationError: If the payload lacks a required key.
            DatabaseError: When the insert returns no data.
        """
        missing = {"post_id", "tenant_id", "channel_id"} - set(payload)
        if missing:
            raise ValidationError(f"job payload missing required fields: {missing}")

        row = {
            "job_name": job_name,
            "post_id": payload["post_id"],
            "tenant_id": payload["tenant_id"],
            "channel_id": payload["channel_id"],
            "timezone": payload.get("timezone", "UTC"),
            "fire_at": ensure_utc(fire_at).isoformat(),
            "status": JobStatus.PENDING.value,
            "created_at": utc_now().isoformat(),
        }
        rows = await self._execute(
            self.client.table("scheduled_jobs").insert(row),
            "schedule_job",
        )
        if not rows:
            raise DatabaseError("Insert succeeded but returned no data")
        return rows[0]["id"]

    async def cancel(self, job_name: str, post_id: str) -> int:
        """Cancel all pending jobs of *job_name* for a post."""
        rows = await self._execute(
            self.client.table("scheduled_jobs")
            .update({"status": JobStatus.CANCELLED.value})
            .eq("job_name", job_name)
            .eq("post_id", post_id)
            .eq("status", JobStatus.PENDING.value),
            "cancel_jobs",
        )
        return len(rows)

    async def cancel_job(self, job_id: str) -> bool:
        """Atomically cancel one job.

        Only succeeds if the job is still ``pending``; a job that has been
        claimed for firing is left alone.
        """
        validate_not_empty(job_id, "job_id")
        rows = await self._execute(
            self.client.table("scheduled_jobs")
            .update({"status": JobStatus.CANCELLED.value})
            .eq("id", job_id)
            .eq("status", JobStatus.PENDING.value),
            "cancel_job",
        )
        return bool(rows)

    async def get_job(self, job_id: str) -> Optional[ScheduledJob]:
        validate_not_empty(job_id, "job_id")
        rows = await self._execute(
            self.client.table("scheduled_jobs").select("*").eq("id", job_id),
            "get_job",
        )
        return ScheduledJob.from_row(rows[0]) if rows else None

    async def get_pending_job_for_post(self, post_id: str) -> Optional[ScheduledJob]:
        rows = await self._execute(
            self.client.table("scheduled_jobs")
            .select("*")
            .eq("post_id", post_id)
            .eq("status", JobStatus.PENDING.value)
            .order("created_at", desc=True)
            .limit(1),
            "get_pending_job_for_post",
        )
        return ScheduledJob.from_row(rows[0]) if rows else None

    async def claim(self, job_id: str, fired_at: datetime) -> bool:
        """Atomically claim a job for firing.

        Transitions the job from ``pending`` to ``fired``. Only succeeds if
        the job currently has status ``pending``, preventing double fires.

        Returns:
            ``True`` if the claim succeeded, ``False`` if the job was
            already claimed or cancelled.
        """
        validate_not_empty(job_id, "job_id")
        rows = await self._execute(
            self.client.table("scheduled_jobs")
            .update({
                "status": JobStatus.FIRED.value,
                "fired_at": ensure_utc(fired_at).isoformat(),
            })
            .eq("id", job_id)
            .eq("status", JobStatus.PENDING.value),
            "claim_job",
        )
        # If data is returned, the update matched and the claim succeeded
        return bool(rows)

    async def record_outcome(
        self,
        job_id: str,
        error: Optional[str] = None,
        message_id: Optional[int] = None,
    ) -> None:
        await self._execute(
            self.client.table("scheduled_jobs")
            .update({"error": error, "message_id": message_id})
            .eq("id", job_id),
            "record_outcome",
        )

    async def get_due_jobs(self, now: datetime, limit: int = 50) -> List[ScheduledJob]:
        """Pending jobs whose ``fire_at`` is at or before *now*."""
        rows = await self._execute(
            self.client.table("scheduled_jobs")
            .select("*")
            .eq("status", JobStatus.PENDING.value)
            .lte("fire_at", ensure_utc(now).isoformat())
            .order("fire_at", desc=False)
            .limit(limit),
            "get_due_jobs",
        )
        return [ScheduledJob.from_row(row) for row in rows]

    async def list_pending_jobs(
        self,
        channel_id: str,
        start: datetime,
        end: datetime,
        exclude_job_id: Optional[str] = None,
    ) -> List[ScheduledJob]:
        query = (
            self.client.table("scheduled_jobs")
            .select("*")
            .eq("channel_id", channel_id)
            .eq("status", JobStatus.PENDING.value)
            .gte("fire_at", ensure_utc(start).isoformat())
            .lte("fire_at", ensure_utc(end).isoformat())
        )
        if exclude_job_id:
            query = query.neq("id", exclude_job_id)
        rows = await self._execute(
            query.order("fire_at", desc=False), "list_pending_jobs"
        )
        return [ScheduledJob.from_row(row) for row in rows]

    async def list_jobs_for_tenant(
        self,
        tenant_id: int,
        channel_id: Optional[str] = None,
        status: JobStatus = JobStatus.PENDING,
        limit: int = 20,
        offset: int = 0,
    ) -> List[ScheduledJob]:
        query = (
            self.client.table("scheduled_jobs")
            .select("*")
            .eq("tenant_id", tenant_id)
            .eq("status", status.value)
        )
        if channel_id:
            query = query.eq("channel_id", channel_id)
        rows = await self._execute(
            query.order("fire_at", desc=False).range(offset, offset + limit - 1),
            "list_jobs_for_tenant",
        )
        return [ScheduledJob.from_row(row) for row in rows]

    async def count_pending_by_channel(self) -> Dict[str, int]:
        rows = await self._execute(
            self.client.table("scheduled_jobs")
            .select("channel_id")
            .eq("status", JobStatus.PENDING.value),
            "count_pending_by_channel",
        )
        counts: Dict[str, int] = {}
        for row in rows:
            counts[row["channel_id"]] = counts.get(row["channel_id"], 0) + 1
        return counts

    # -----------------------------------------------------------------
    # EVENT LOGS
    # -----------------------------------------------------------------

    async def save_event_log(self, log_entry: Dict[str, Any]) -> None:
        """Insert a structured log entry into ``event_logs``."""
        if not log_entry:
            raise ValidationError("log_entry cannot be None or empty")
        await self._execute(
            self.client.table("event_logs").insert(log_entry),
            "save_event_log",
        )


# =============================================================================
# GLOBAL DATABASE INSTANCE (Singleton)
# =============================================================================

_db_instance: Optional[SupabaseDB] = None
_db_lock: Optional[asyncio.Lock] = None

# Thread lock for safe initialisation of the async lock itself.
_init_lock = threading.Lock()


async def get_db() -> SupabaseDB:
    """Get the global async database instance.

    The first call creates the :class:`SupabaseDB` singleton; subsequent
    calls return the same instance.
    """
    global _db_instance, _db_lock

    if _db_lock is None:
        with _init_lock:
            if _db_lock is None:
                _db_lock = asyncio.Lock()

    if _db_instance is None:
        async with _db_lock:
            if _db_instance is None:
                _db_instance = await SupabaseDB.create()

    return _db_instance


__all__ = [
    "SupabaseConfig",
    "SupabaseDB",
    "get_db",
    "serialize_fields",
    "validate_not_empty",
    "validate_positive",
]
