"""
Stored records shared across Postify: credentials, posts and channels.

These are the rows the credential and content stores hand back. Connection
and scheduling models live beside their owners in
``postify.connections.models`` and ``postify.scheduling.models``.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from postify.utils import parse_timestamp, utc_now


# =============================================================================
# ENUMS
# =============================================================================


class CredentialStatus(Enum):
    """Status field of a stored tenant bot credential."""

    ACTIVE = "active"
    DISABLED = "disabled"
    ERROR = "error"


class PostStatus(Enum):
    """Lifecycle status of a post.

    Transitions:
        DRAFT -> SCHEDULED -> PUBLISHED
                 SCHEDULED -> DRAFT (cancelled or publish failed)
    """

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    PUBLISHED = "published"


class MediaType(Enum):
    """Kind of content a post carries."""

    TEXT = "text"
    PHOTO = "photo"
    VIDEO = "video"


class JobStatus(Enum):
    """Lifecycle status of a scheduled publish job.

    Transitions:
        PENDING -> FIRED      (exactly once, at the first fire attempt)
        PENDING -> CANCELLED  (only before firing begins)
    """

    PENDING = "pending"
    FIRED = "fired"
    CANCELLED = "cancelled"


# =============================================================================
# CREDENTIAL RECORD
# =============================================================================


@dataclass
class CredentialRecord:
    """A tenant's encrypted bot token and its health status.

    Attributes:
        tenant_id: Owning tenant (Telegram user id).
        token_encrypted: Vault envelope of the bot token.
        status: ``active`` credentials are kept connected by reconciliation.
        username: Bot username reported by the endpoint, when known.
        last_error: Reason recorded when the status left ``active``.
    """

    tenant_id: int
    token_encrypted: str
    status: CredentialStatus = CredentialStatus.ACTIVE
    username: Optional[str] = None
    last_error: Optional[str] = None
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        return self.status == CredentialStatus.ACTIVE

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CredentialRecord":
        return cls(
            tenant_id=int(row["tenant_id"]),
            token_encrypted=row["token_encrypted"],
            status=CredentialStatus(row.get("status") or "active"),
            username=row.get("username"),
            last_error=row.get("last_error"),
            updated_at=parse_timestamp(row.get("updated_at")) or utc_now(),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "token_encrypted": self.token_encrypted,
            "status": self.status.value,
            "username": self.username,
            "last_error": self.last_error,
            "updated_at": self.updated_at.isoformat(),
        }


# =============================================================================
# CHANNEL
# =============================================================================


@dataclass
class Channel:
    """A Telegram channel that posts are published to.

    Attributes:
        id: Unique identifier (UUID).
        chat_id: Telegram chat id of the channel.
        title: Display title.
        owners: Tenants allowed to schedule into this channel.
    """

    id: str
    chat_id: int
    title: str = ""
    owners: List[int] = field(default_factory=list)

    def is_owned_by(self, tenant_id: int) -> bool:
        return tenant_id in self.owners

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Channel":
        return cls(
            id=row["id"],
            chat_id=int(row["chat_id"]),
            title=row.get("title") or "",
            owners=[int(owner) for owner in (row.get("owners") or [])],
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "chat_id": self.chat_id,
            "title": self.title,
            "owners": list(self.owners),
        }


# =============================================================================
# POST
# =============================================================================


@dataclass
class Post:
    """A channel post owned by one tenant.

    Attributes:
        id: Unique identifier (UUID).
        tenant_id: Owning tenant.
        channel_id: Target channel.
        text: Post text (caption for media posts).
        status: Current lifecycle status.
        media_type: ``text``, ``photo`` or ``video``.
        media_file_id: Telegram file id for media posts.
        scheduled_at: Target instant while ``SCHEDULED`` (UTC).
        published_at: Actual publication time (UTC).
        published_message_id: Message id returned by the endpoint.
        last_error: Error from the most recent failed publish.
    """

    id: str
    tenant_id: int
    channel_id: str
    text: str
    status: PostStatus = PostStatus.DRAFT
    media_type: MediaType = MediaType.TEXT
    media_file_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    published_message_id: Optional[int] = None
    last_error: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Post":
        message_id = row.get("published_message_id")
        return cls(
            id=row["id"],
            tenant_id=int(row["tenant_id"]),
            channel_id=row["channel_id"],
            text=row.get("text") or "",
            status=PostStatus(row.get("status") or "draft"),
            media_type=MediaType(row.get("media_type") or "text"),
            media_file_id=row.get("media_file_id"),
            scheduled_at=parse_timestamp(row.get("scheduled_at")),
            published_at=parse_timestamp(row.get("published_at")),
            published_message_id=int(message_id) if message_id is not None else None,
            last_error=row.get("last_error"),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "channel_id": self.channel_id,
            "text": self.text,
            "status": self.status.value,
            "media_type": self.media_type.value,
            "media_file_id": self.media_file_id,
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "published_at": self.published_at.isoformat() if self.published_at else None,
            "published_message_id": self.published_message_id,
            "last_error": self.last_error,
        }


# =============================================================================
# SCHEDULED JOB
# =============================================================================


PUBLISH_JOB_NAME = "publish_post"


@dataclass
class ScheduledJob:
    """A persisted future publish action for one post.

    Attributes:
        job_id: Unique identifier (UUID) assigned by the job store.
        job_name: Job kind; publish jobs use ``publish_post``.
        post_id: Post to publish.
        tenant_id: Tenant whose connection publishes it.
        channel_id: Target channel.
        fire_at: When the job becomes due (timezone-aware UTC).
        status: ``PENDING`` until cancelled or claimed for firing.
        timezone: Tenant zone the instant was entered in (display only).
        fired_at: When the fire claim happened.
        error: Recorded failure of the fire attempt, if any.
        message_id: Message id of the successful publish.
    """

    job_id: str
    post_id: str
    tenant_id: int
    channel_id: str
    fire_at: datetime
    job_name: str = PUBLISH_JOB_NAME
    status: JobStatus = JobStatus.PENDING
    timezone: str = "UTC"
    created_at: datetime = field(default_factory=utc_now)
    fired_at: Optional[datetime] = None
    error: Optional[str] = None
    message_id: Optional[int] = None

    @property
    def is_pending(self) -> bool:
        return self.status == JobStatus.PENDING

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ScheduledJob":
        message_id = row.get("message_id")
        return cls(
            job_id=row["id"],
            job_name=row.get("job_name") or PUBLISH_JOB_NAME,
            post_id=row["post_id"],
            tenant_id=int(row["tenant_id"]),
            channel_id=row["channel_id"],
            fire_at=parse_timestamp(row["fire_at"]),
            status=JobStatus(row.get("status") or "pending"),
            timezone=row.get("timezone") or "UTC",
            created_at=parse_timestamp(row.get("created_at")) or utc_now(),
            fired_at=parse_timestamp(row.get("fired_at")),
            error=row.get("error"),
            message_id=int(message_id) if message_id is not None else None,
        )


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "CredentialStatus",
    "PostStatus",
    "MediaType",
    "JobStatus",
    "CredentialRecord",
    "Channel",
    "Post",
    "PUBLISH_JOB_NAME",
    "ScheduledJob",
]
