"""Shared fixtures for the Postify test suite."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from postify.config import SchedulerSettings, SupervisorSettings, reset_settings
from postify.connections.supervisor import ConnectionSupervisor
from postify.connections.transport import (
    Connection,
    ErrorHandler,
    SentMessage,
    Transport,
    TransportError,
    UpdateHandler,
)
from postify.logging import reset_logger
from postify.models import Channel, CredentialRecord, CredentialStatus, MediaType, Post, PostStatus
from postify.scheduling.schedule_engine import ScheduleEngine
from postify.stores.inmemory import (
    InMemoryContentStore,
    InMemoryCredentialStore,
    InMemoryJobStore,
)
from postify.vault import CredentialVault

# Wednesday, 12:00 UTC
NOW = datetime(2025, 6, 18, 12, 0, 0, tzinfo=timezone.utc)

TENANT = 1001
OTHER_TENANT = 2002
CHANNEL_ID = "chan-1"
CHAT_ID = -1001234567890
TOKEN = "123456789:" + "A" * 35


# ---------------------------------------------------------------------------
# Ensure we don't hit real services during tests
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _block_env_keys(monkeypatch):
    """Clear all deployment variables so tests never hit real services."""
    keys = [
        "SUPABASE_URL",
        "SUPABASE_SERVICE_KEY",
        "ENCRYPTION_KEY",
        "LOG_LEVEL",
        "LOG_DIR",
        "DEFAULT_TIMEZONE",
        "RATE_LIMIT_MAX_REQUESTS",
        "RATE_LIMIT_WINDOW_SECONDS",
        "RECONCILE_INTERVAL_SECONDS",
        "JOB_CHECK_INTERVAL_SECONDS",
    ]
    for key in keys:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Drop cached settings and the global event logger around each test."""
    reset_settings()
    reset_logger()
    yield
    reset_settings()
    reset_logger()


# ---------------------------------------------------------------------------
# Controllable clock
# ---------------------------------------------------------------------------
class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FixedClock(NOW)


# ---------------------------------------------------------------------------
# Fake transport
# ---------------------------------------------------------------------------
class FakeConnection(Connection):
    """In-memory connection that records what it sent."""

    def __init__(
        self,
        token: str,
        owner_id: int,
        on_update: Optional[UpdateHandler] = None,
        on_error: Optional[ErrorHandler] = None,
    ) -> None:
        self.token = token
        self.owner_id = owner_id
        self.on_update = on_update
        self.on_error = on_error
        self.username = "tenant_bot"
        self.healthy = True
        self.stopped = False
        self.publish_error: Optional[BaseException] = None
        self.sent: List[dict] = []
        self._next_message_id = 500

    def is_healthy(self) -> bool:
        return self.healthy and not self.stopped

    async def stop(self) -> None:
        self.stopped = True

    async def publish(
        self,
        chat_id: int,
        text: str,
        media_type: MediaType = MediaType.TEXT,
        media_file_id: Optional[str] = None,
    ) -> SentMessage:
        if self.publish_error is not None:
            raise self.publish_error
        self._next_message_id += 1
        self.sent.append(
            {
                "chat_id": chat_id,
                "text": text,
                "media_type": media_type,
                "media_file_id": media_file_id,
            }
        )
        return SentMessage(message_id=self._next_message_id, chat_id=chat_id, sent_at=NOW)


class FakeTransport(Transport):
    """Transport whose ``open`` takes a moment and can be told to fail per tenant."""

    def __init__(self, delay: float = 0.01) -> None:
        self.delay = delay
        self.open_calls: List[int] = []
        self.failures: Dict[int, BaseException] = {}
        self.connections: List[FakeConnection] = []

    async def open(
        self,
        token: str,
        owner_id: int,
        on_update: Optional[UpdateHandler] = None,
        on_error: Optional[ErrorHandler] = None,
    ) -> FakeConnection:
        self.open_calls.append(owner_id)
        await asyncio.sleep(self.delay)
        error = self.failures.get(owner_id)
        if error is not None:
            raise error
        connection = FakeConnection(token, owner_id, on_update, on_error)
        self.connections.append(connection)
        return connection

    def opens_for(self, owner_id: int) -> int:
        return self.open_calls.count(owner_id)


@pytest.fixture
def transport():
    return FakeTransport()


# ---------------------------------------------------------------------------
# Stores and vault
# ---------------------------------------------------------------------------
@pytest.fixture
def vault():
    """Vault with a fixed 32-byte key."""
    return CredentialVault(bytes(range(32)))


@pytest.fixture
def credential_store():
    return InMemoryCredentialStore()


@pytest.fixture
def content_store():
    return InMemoryContentStore()


@pytest.fixture
def job_store():
    return InMemoryJobStore()


@pytest.fixture
def add_credential(credential_store, vault):
    """Factory storing an encrypted credential for a tenant."""

    async def _add(
        tenant_id: int = TENANT,
        token: str = TOKEN,
        status: CredentialStatus = CredentialStatus.ACTIVE,
    ) -> CredentialRecord:
        record = CredentialRecord(
            tenant_id=tenant_id,
            token_encrypted=vault.encrypt(token),
            status=status,
        )
        await credential_store.save_credential(record)
        return record

    return _add


@pytest_asyncio.fixture
async def channel(content_store):
    """A channel owned by ``TENANT``."""
    channel = Channel(id=CHANNEL_ID, chat_id=CHAT_ID, title="Test channel", owners=[TENANT])
    await content_store.save_channel(channel)
    return channel


@pytest.fixture
def add_post(content_store):
    """Factory storing a post (draft by default)."""

    async def _add(
        post_id: str = "post-1",
        tenant_id: int = TENANT,
        channel_id: str = CHANNEL_ID,
        status: PostStatus = PostStatus.DRAFT,
        text: str = "Hello channel",
        media_type: MediaType = MediaType.TEXT,
        media_file_id: Optional[str] = None,
    ) -> Post:
        post = Post(
            id=post_id,
            tenant_id=tenant_id,
            channel_id=channel_id,
            text=text,
            status=status,
            media_type=media_type,
            media_file_id=media_file_id,
        )
        await content_store.save_post(post)
        return post

    return _add


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------
@pytest.fixture
def supervisor_settings():
    """Supervisor settings without stagger delays."""
    return SupervisorSettings(stagger_seconds=0)


@pytest.fixture
def supervisor(credential_store, vault, transport, supervisor_settings, clock):
    return ConnectionSupervisor(
        credential_store,
        vault,
        transport,
        settings=supervisor_settings,
        clock=clock,
    )


@pytest.fixture
def engine(content_store, job_store, supervisor, clock):
    return ScheduleEngine(
        content_store,
        job_store,
        supervisor,
        settings=SchedulerSettings(),
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Mock Supabase client
# ---------------------------------------------------------------------------
@pytest.fixture
def mock_supabase_client():
    """A mock Supabase async client whose query builder chains to itself.

    Set ``client.rows`` to control what ``execute()`` returns.
    """
    client = MagicMock()
    client.rows = []
    table_mock = MagicMock()
    for method in (
        "select", "insert", "update", "upsert", "delete", "eq", "neq",
        "gte", "lte", "order", "limit", "range",
    ):
        getattr(table_mock, method).return_value = table_mock

    async def mock_execute():
        return MagicMock(data=client.rows)

    table_mock.execute = AsyncMock(side_effect=mock_execute)
    client.table.return_value = table_mock
    client.query = table_mock
    return client


@pytest.fixture
def transport_error():
    """Factory for classified transport errors."""

    def _make(kind, message: str = "boom") -> TransportError:
        return TransportError(kind, message)

    return _make
