"""
Postify front door.

``PostifyService`` wires the components together and is what request
handlers call. Every tenant action passes the admission gates in order::

    RateGate.is_limited -> ResourceLock.hold -> ScheduleEngine

It also owns the background tasks: the supervisor's reconcile loop, the
job runner and the periodic sweep of gates and cooldowns.
"""

import asyncio
import logging
import re
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from postify.config import Settings, get_settings
from postify.connections.models import ConnectionInfo, SupervisorStats
from postify.connections.supervisor import ConnectionSupervisor, InboundHandler
from postify.connections.transport import Connection, SentMessage, Transport
from postify.exceptions import RateLimitedError, ValidationError
from postify.gates import RateGate, ResourceLock
from postify.logging import ComponentLogger, LogComponent, event_logger
from postify.models import CredentialRecord, CredentialStatus, ScheduledJob
from postify.scheduling.job_runner import JobRunner
from postify.scheduling.models import ScheduleResult
from postify.scheduling.publisher import PublishAction
from postify.scheduling.schedule_engine import ScheduleEngine
from postify.stores.base import ContentStore, CredentialStore, JobStore
from postify.utils import Clock, utc_now
from postify.vault import CredentialVault

logger = logging.getLogger(__name__)

_BOT_TOKEN = re.compile(r"^\d+:[A-Za-z0-9_-]{35,}$")


def validate_token_format(token: str) -> str:
    """Return the stripped token, or raise if it is not a bot token.

    Raises:
        ValidationError: If the token does not look like ``<id>:<secret>``.
    """
    token = token.strip()
    if not _BOT_TOKEN.match(token):
        raise ValidationError("Invalid bot token format")
    return token


class PostifyService:
    """Owns one isolated set of gates, supervisor, engine and runner.

    Args:
        credentials: Credential store.
        content: Post and channel store.
        jobs: Job store.
        vault: Credential encryption.
        transport: Connection factory.
        settings: Application settings (defaults to :func:`get_settings`).
        publisher: Publish boundary override.
        inbound: Handler for inbound updates on tenant connections.
        clock: Source of the current UTC time.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        content: ContentStore,
        jobs: JobStore,
        vault: CredentialVault,
        transport: Transport,
        settings: Optional[Settings] = None,
        publisher: Optional[PublishAction] = None,
        inbound: Optional[InboundHandler] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.settings = settings or get_settings()
        self.credentials = credentials
        self.content = content
        self.vault = vault
        self._clock = clock

        gates = self.settings.gates
        self.locks = ResourceLock(lease_seconds=gates.lock_lease_seconds, clock=clock)
        self.rate_gate = RateGate(
            max_actions=gates.rate_limit_max_actions,
            window_seconds=gates.rate_limit_window_seconds,
            clock=clock,
        )
        self.supervisor = ConnectionSupervisor(
            credentials,
            vault,
            transport,
            settings=self.settings.supervisor,
            inbound=inbound,
            clock=clock,
        )
        self.engine = ScheduleEngine(
            content,
            jobs,
            self.supervisor,
            publisher=publisher,
            settings=self.settings.scheduler,
            clock=clock,
        )
        self.runner = JobRunner(
            self.engine,
            check_interval_seconds=self.settings.scheduler.check_interval_seconds,
            batch_size=self.settings.scheduler.due_batch_size,
            clock=clock,
        )
        self.log = ComponentLogger(LogComponent.SERVICE)
        self._tasks: List["asyncio.Task[None]"] = []

    # ================================================================
    # GATES
    # ================================================================

    def _admit(self, tenant_id: int) -> None:
        if self.rate_gate.is_limited(tenant_id):
            raise RateLimitedError(tenant_id, self.rate_gate.remaining_seconds(tenant_id))

    @staticmethod
    def _holder(tenant_id: int) -> str:
        return f"tenant:{tenant_id}"

    # ================================================================
    # POST ACTIONS
    # ================================================================

    async def schedule_post(
        self,
        tenant_id: int,
        post_id: str,
        when: str,
        tz: Optional[str] = None,
        channel_id: Optional[str] = None,
    ) -> ScheduleResult:
        """Parse *when* and schedule the post.

        Without *channel_id* the post keeps its current channel.

        Raises:
            RateLimitedError: Tenant exceeded its action budget.
            ResourceBusyError: Another action on the post is in flight.
            ParseError: *when* could not be understood.
            NotFoundError / UnauthorizedError: Ownership checks failed.
        """
        self._admit(tenant_id)
        tz = tz or self.settings.default_timezone
        async with self.locks.hold(self._holder(tenant_id), f"post:{post_id}"):
            instant = self.engine.parse_target(when, tz)
            if channel_id is None:
                return await self.engine.reschedule(tenant_id, post_id, instant, tz)
            return await self.engine.schedule(tenant_id, post_id, channel_id, instant, tz)

    async def cancel_post(self, tenant_id: int, post_id: str) -> ScheduledJob:
        """Cancel a scheduled post (reverts it to draft)."""
        self._admit(tenant_id)
        async with self.locks.hold(self._holder(tenant_id), f"post:{post_id}"):
            return await self.engine.cancel(tenant_id, post_id)

    async def publish_now(self, tenant_id: int, post_id: str) -> SentMessage:
        """Send a post immediately over the tenant's connection."""
        self._admit(tenant_id)
        async with self.locks.hold(self._holder(tenant_id), f"post:{post_id}"):
            return await self.engine.publish_now(tenant_id, post_id)

    async def list_queue(
        self,
        tenant_id: int,
        channel_id: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[ScheduledJob]:
        """The tenant's pending jobs, soonest first."""
        self._admit(tenant_id)
        return await self.engine.list_scheduled(tenant_id, channel_id, limit=limit, offset=offset)

    # ================================================================
    # CREDENTIALS
    # ================================================================

    async def register_credential(
        self, tenant_id: int, token: str, username: Optional[str] = None
    ) -> Connection:
        """Store a fresh bot token for a tenant and connect it.

        The token is encrypted and stored as ``active``; any cooldown is
        cleared and a connection opened with the previous token is
        released. The credential stays stored even when the first
        connection attempt fails.

        Raises:
            ValidationError: The token is malformed.
            ConnectionFailure: The new credential could not be connected.
        """
        self._admit(tenant_id)
        token = validate_token_format(token)
        async with self.locks.hold(self._holder(tenant_id), f"credential:{tenant_id}"):
            record = CredentialRecord(
                tenant_id=tenant_id,
                token_encrypted=self.vault.encrypt(token),
                status=CredentialStatus.ACTIVE,
                username=username,
            )
            await self.credentials.save_credential(record)
            self.supervisor.clear_cooldown(tenant_id)
            await self.supervisor.release(tenant_id)
            await self.log.info("Credential registered", tenant_id=tenant_id)
            return await self.supervisor.acquire(tenant_id)

    async def unlink_credential(self, tenant_id: int) -> None:
        """Disable the tenant's credential and stop its connection."""
        self._admit(tenant_id)
        async with self.locks.hold(self._holder(tenant_id), f"credential:{tenant_id}"):
            await self.credentials.set_credential_status(
                tenant_id, CredentialStatus.DISABLED, "Unlinked by owner"
            )
            await self.supervisor.release(tenant_id)
            await self.log.info("Credential unlinked", tenant_id=tenant_id)

    # ================================================================
    # OPERATORS
    # ================================================================

    async def status(self) -> Dict[str, Any]:
        """Read-only snapshot: connection counts, per-connection health,
        pending jobs per channel."""
        stats: SupervisorStats = self.supervisor.stats()
        connections: List[ConnectionInfo] = self.supervisor.connection_info()
        return {
            "connections": asdict(stats),
            "connection_info": [asdict(info) for info in connections],
            "jobs_per_channel": await self.engine.jobs_per_channel(),
            "locks_held": len(self.locks),
            "job_runner_running": self.runner.running,
        }

    # ================================================================
    # LIFECYCLE
    # ================================================================

    def sweep(self) -> Dict[str, int]:
        """Reclaim expired locks, rate windows and cooldowns."""
        return {
            "locks": self.locks.sweep(),
            "rate_windows": self.rate_gate.sweep(),
            "cooldowns": self.supervisor.sweep_cooldowns(),
        }

    async def _sweep_loop(self) -> None:
        interval = self.settings.gates.sweep_interval_seconds
        while True:
            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break
            swept = self.sweep()
            if any(swept.values()):
                logger.debug("[SERVICE] Swept %s", swept)

    async def start(self) -> None:
        """Start the supervisor, job runner and sweep loops in the background."""
        if self._tasks:
            logger.warning("[SERVICE] Already started, ignoring start()")
            return
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self.supervisor.start(), name="postify-supervisor"),
            loop.create_task(self.runner.start(), name="postify-job-runner"),
            loop.create_task(self._sweep_loop(), name="postify-sweep"),
        ]
        await self.log.info("Service started")

    async def stop(self) -> None:
        """Cancel background loops and release every connection."""
        await self.runner.stop()
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.supervisor.stop()
        await self.log.info("Service stopped")
        if event_logger.is_initialized():
            await event_logger.get_logger().flush()


__all__ = ["PostifyService", "validate_token_format"]
