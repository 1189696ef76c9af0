"""
Per-tenant connection supervision.

``ConnectionSupervisor`` owns the registry of tenant -> live connection. It
is the only code that opens, registers or stops tenant connections, and it
guarantees:

- at most one creation attempt in flight per tenant (concurrent
  ``acquire`` callers share the pending task's result);
- at most one RUNNING connection per tenant, registered only after the
  transport confirmed the session;
- classified cooldowns after failures, during which ``acquire`` fails fast
  without touching the network.

Cooldown and lease expiry are plain timestamps checked lazily, plus a
periodic :meth:`ConnectionSupervisor.sweep_cooldowns`.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from postify.config import SupervisorSettings
from postify.connections.models import (
    ConnectionInfo,
    ConnectionRegistry,
    ConnectionStatus,
    FailureCooldown,
    ReconcileReport,
    SupervisorStats,
    TenantConnection,
)
from postify.connections.transport import (
    Connection,
    FailureKind,
    Transport,
    TransportError,
    UpdateHandler,
)
from postify.exceptions import (
    AuthRevokedError,
    ConflictCooldownError,
    ConnectionFailure,
    CredentialDecryptError,
    CredentialNotFoundError,
    DatabaseError,
    TransientFailureError,
)
from postify.logging import ComponentLogger, LogComponent
from postify.models import CredentialRecord, CredentialStatus
from postify.stores.base import CredentialStore
from postify.utils import Clock, utc_now, with_retry
from postify.vault import CredentialVault

logger = logging.getLogger(__name__)

# Inbound handler shared by all tenants: receives (tenant_id, update).
InboundHandler = Callable[[int, Any], Awaitable[None]]

_FAILURE_ERRORS: Dict[FailureKind, Type[ConnectionFailure]] = {
    FailureKind.CONFLICT: ConflictCooldownError,
    FailureKind.AUTH_REVOKED: AuthRevokedError,
    FailureKind.UNKNOWN: TransientFailureError,
}

RUNTIME_FAILURE_MESSAGE = "Too many runtime errors"


class ConnectionSupervisor:
    """Creates, monitors and tears down tenant connections.

    Args:
        credentials: Store holding encrypted tenant credentials.
        vault: Decrypts stored credentials.
        transport: Opens live connections.
        settings: Cooldowns, intervals and caps.
        inbound: Handler for updates arriving on any tenant connection.
        clock: Source of the current UTC time.
        sleep: Awaitable delay used for stagger and the reconcile loop.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        vault: CredentialVault,
        transport: Transport,
        settings: Optional[SupervisorSettings] = None,
        inbound: Optional[InboundHandler] = None,
        clock: Clock = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.credentials = credentials
        self.vault = vault
        self.transport = transport
        self.settings = settings or SupervisorSettings()
        self.inbound = inbound
        self.registry = ConnectionRegistry()
        self.log = ComponentLogger(LogComponent.SUPERVISOR)
        self._clock = clock
        self._sleep = sleep
        self._running = False

    # ================================================================
    # ACQUIRE / RELEASE
    # ================================================================

    async def acquire(self, tenant_id: int) -> Connection:
        """Return the tenant's live connection, creating it if needed.

        Raises:
            ConflictCooldownError: Another consumer holds the credential.
            AuthRevokedError: The credential was rejected.
            CredentialNotFoundError: No active credential is stored.
            TransientFailureError: Unclassified failure; retry later.
            DatabaseError: The credential store is unavailable.
        """
        entry = self.registry.running.get(tenant_id)
        if entry is not None:
            if entry.is_healthy():
                return entry.connection
            await self._evict(entry, "unhealthy on acquire")

        stopping = self.registry.stopping.get(tenant_id)
        if stopping is not None:
            logger.debug("[SUPERVISOR] Tenant %s: waiting for old session to stop", tenant_id)
            await asyncio.wait({stopping})
            return await self.acquire(tenant_id)

        pending = self.registry.pending.get(tenant_id)
        if pending is not None:
            logger.debug("[SUPERVISOR] Tenant %s: joining pending creation", tenant_id)
            shared = await asyncio.shield(pending)
            return shared.connection

        cooldown = self.active_cooldown(tenant_id)
        if cooldown is not None:
            raise self._cooldown_error(cooldown)

        task = asyncio.get_running_loop().create_task(self._create(tenant_id))
        task.add_done_callback(_consume_task_exception)
        self.registry.pending[tenant_id] = task
        created = await asyncio.shield(task)
        return created.connection

    async def release(self, tenant_id: int) -> bool:
        """Stop and forget the tenant's connection.

        Idempotent. An in-flight creation is allowed to finish first so
        the session it opens is not left running unregistered.

        Returns:
            ``True`` if a running connection was stopped.
        """
        pending = self.registry.pending.get(tenant_id)
        if pending is not None:
            await asyncio.wait({pending})

        entry = self.registry.running.get(tenant_id)
        if entry is None:
            return False
        await self._retire(entry, ConnectionStatus.STOPPED)
        await self.log.info("Connection released", tenant_id=tenant_id)
        return True

    async def release_all(self) -> int:
        tenant_ids = list(self.registry.running) + [
            t for t in self.registry.pending if t not in self.registry.running
        ]
        released = 0
        for tenant_id in tenant_ids:
            if await self.release(tenant_id):
                released += 1
        return released

    # ================================================================
    # CREATION
    # ================================================================

    async def _create(self, tenant_id: int) -> TenantConnection:
        """Body of the pending creation task."""
        try:
            entry = await self._open(tenant_id)
            # No await between registering RUNNING and dropping the pending
            # task: observers see exactly one of them.
            self.registry.running[tenant_id] = entry
            return entry
        finally:
            self.registry.pending.pop(tenant_id, None)

    async def _open(self, tenant_id: int) -> TenantConnection:
        record = await self.credentials.get_credential(tenant_id)
        if record is None or not record.is_active:
            raise CredentialNotFoundError(
                tenant_id, f"No active credential for tenant {tenant_id}"
            )

        try:
            token = self.vault.decrypt(record.token_encrypted)
        except CredentialDecryptError as exc:
            cooldown = await self._apply_failure(
                tenant_id, FailureKind.AUTH_REVOKED, f"Credential unreadable: {exc}"
            )
            raise self._cooldown_error(cooldown) from exc

        opened: Optional[Connection] = None

        async def _on_error(error: TransportError) -> None:
            await self.report_failure(tenant_id, error, connection=opened)

        try:
            opened = await self.transport.open(
                token,
                owner_id=tenant_id,
                on_update=self._update_handler(tenant_id),
                on_error=_on_error,
            )
        except TransportError as exc:
            cooldown = await self._apply_failure(tenant_id, exc.kind, str(exc))
            raise self._cooldown_error(cooldown) from exc
        except Exception as exc:
            cooldown = await self._apply_failure(
                tenant_id, FailureKind.UNKNOWN, f"{type(exc).__name__}: {exc}"
            )
            raise self._cooldown_error(cooldown) from exc

        entry = TenantConnection(
            tenant_id=tenant_id,
            credential_ref=record.tenant_id,
            connection=opened,
            started_at=self._clock(),
            username=getattr(opened, "username", None) or record.username,
        )
        await self.log.info(
            "Connection started",
            tenant_id=tenant_id,
            data={"username": entry.username},
        )
        return entry

    def _update_handler(self, tenant_id: int) -> Optional[UpdateHandler]:
        if self.inbound is None:
            return None
        inbound = self.inbound

        async def _handle(update: Any) -> None:
            await inbound(tenant_id, update)

        return _handle

    # ================================================================
    # FAILURES AND COOLDOWNS
    # ================================================================

    def cooldown_seconds(self, kind: FailureKind) -> int:
        if kind == FailureKind.CONFLICT:
            return self.settings.conflict_cooldown_seconds
        if kind == FailureKind.AUTH_REVOKED:
            return self.settings.auth_revoked_cooldown_seconds
        return self.settings.unknown_cooldown_seconds

    async def _apply_failure(
        self, tenant_id: int, kind: FailureKind, message: str
    ) -> FailureCooldown:
        """Install the cooldown for *kind* and persist side effects."""
        cooldown = FailureCooldown(
            tenant_id=tenant_id,
            reason=kind,
            until=self._clock() + timedelta(seconds=self.cooldown_seconds(kind)),
            message=message,
        )
        self.registry.cooldowns[tenant_id] = cooldown

        await self.log.warning(
            f"Cooldown installed ({kind.value})",
            tenant_id=tenant_id,
            data={"until": cooldown.until.isoformat(), "message": message},
        )

        if kind == FailureKind.AUTH_REVOKED:
            await self.credentials.set_credential_status(
                tenant_id, CredentialStatus.DISABLED, message
            )
        return cooldown

    def _cooldown_error(self, cooldown: FailureCooldown) -> ConnectionFailure:
        error_cls = _FAILURE_ERRORS[cooldown.reason]
        return error_cls(
            cooldown.tenant_id,
            f"Tenant {cooldown.tenant_id} in {cooldown.reason.value} cooldown "
            f"until {cooldown.until.isoformat()}: {cooldown.message}",
            reason=cooldown.reason,
            until=cooldown.until,
        )

    def active_cooldown(self, tenant_id: int) -> Optional[FailureCooldown]:
        """The tenant's unexpired cooldown, dropping an expired one."""
        cooldown = self.registry.cooldowns.get(tenant_id)
        if cooldown is None:
            return None
        if cooldown.is_active(self._clock()):
            return cooldown
        del self.registry.cooldowns[tenant_id]
        return None

    def clear_cooldown(self, tenant_id: int) -> bool:
        """Forget a cooldown, e.g. after a fresh credential was supplied."""
        return self.registry.cooldowns.pop(tenant_id, None) is not None

    def sweep_cooldowns(self) -> int:
        """Remove expired cooldowns. Expiry never triggers a reconnect."""
        now = self._clock()
        expired = [
            tenant_id
            for tenant_id, cooldown in self.registry.cooldowns.items()
            if not cooldown.is_active(now)
        ]
        for tenant_id in expired:
            del self.registry.cooldowns[tenant_id]
        return len(expired)

    async def report_failure(
        self,
        tenant_id: int,
        error: BaseException,
        connection: Optional[Connection] = None,
    ) -> None:
        """Record a runtime error on a live connection.

        Conflict and auth failures make the connection unusable: it is
        evicted and the matching cooldown installed. Other errors only
        count toward the runtime failure threshold enforced by
        :meth:`reconcile`. Reports about a connection that has since been
        replaced are ignored.
        """
        entry = self.registry.running.get(tenant_id)
        if connection is not None and (entry is None or entry.connection is not connection):
            logger.debug("[SUPERVISOR] Ignoring stale failure for tenant %s", tenant_id)
            return

        kind = error.kind if isinstance(error, TransportError) else FailureKind.UNKNOWN
        if entry is not None:
            entry.consecutive_failures += 1
            entry.last_error = str(error)

        await self.log.warning(
            f"Runtime failure ({kind.value})",
            tenant_id=tenant_id,
            error=error,
            data={"failures": entry.consecutive_failures if entry else None},
        )

        if kind in (FailureKind.CONFLICT, FailureKind.AUTH_REVOKED):
            # Cooldown first: an acquire waiting on the stop must see it.
            await self._apply_failure(tenant_id, kind, str(error))
            if entry is not None:
                await self._evict(entry, f"runtime {kind.value}")

    async def _retire(self, entry: TenantConnection, status: ConnectionStatus) -> None:
        """Deregister *entry* and stop its session.

        Until ``stop()`` returns the tenant is parked in
        ``registry.stopping``; ``acquire`` waits there instead of opening
        a second session beside the one still shutting down.
        """
        tenant_id = entry.tenant_id
        entry.status = status
        if self.registry.running.get(tenant_id) is entry:
            del self.registry.running[tenant_id]
        task = asyncio.get_running_loop().create_task(entry.connection.stop())
        task.add_done_callback(_consume_task_exception)
        self.registry.stopping[tenant_id] = task
        try:
            await asyncio.shield(task)
        finally:
            if self.registry.stopping.get(tenant_id) is task:
                del self.registry.stopping[tenant_id]

    async def _evict(self, entry: TenantConnection, reason: str) -> None:
        await self._retire(entry, ConnectionStatus.STOPPED)
        await self.log.warning(f"Connection evicted: {reason}", tenant_id=entry.tenant_id)

    async def _demote(self, entry: TenantConnection) -> None:
        await self._retire(entry, ConnectionStatus.FAILED)
        await self.credentials.set_credential_status(
            entry.tenant_id, CredentialStatus.ERROR, RUNTIME_FAILURE_MESSAGE
        )
        await self.log.error(
            "Too many failures; credential marked error",
            tenant_id=entry.tenant_id,
            data={"failures": entry.consecutive_failures},
        )

    # ================================================================
    # RECONCILIATION
    # ================================================================

    @with_retry(
        max_attempts=3,
        base_delay=1.0,
        retryable_exceptions=(DatabaseError,),
        operation_name="load_active_credentials",
    )
    async def _load_desired(self, limit: int) -> List[CredentialRecord]:
        return await self.credentials.list_active_credentials(limit=limit)

    @with_retry(
        max_attempts=3,
        base_delay=1.0,
        retryable_exceptions=(DatabaseError,),
        operation_name="get_credential",
    )
    async def _still_active(self, tenant_id: int) -> bool:
        record = await self.credentials.get_credential(tenant_id)
        return record is not None and record.is_active

    async def reconcile(self) -> ReconcileReport:
        """Converge the registry on the set of active credentials.

        1. Evict RUNNING entries whose transport is unhealthy.
        2. Demote entries over the runtime failure threshold.
        3. Release entries whose credential is no longer active.
        4. Start desired-but-absent tenants (skipping cooldowns), one at a
           time with a stagger delay between opens.

        Only step 4 is capped at ``warm_load_limit``. A running tenant
        outside the newest N credentials is looked up on its own and kept
        while its credential stays active.
        """
        async with self.log.timed("Reconcile pass"):
            return await self._reconcile_once()

    async def _reconcile_once(self) -> ReconcileReport:
        report = ReconcileReport()
        records = await self._load_desired(self.settings.warm_load_limit)
        desired = [r.tenant_id for r in records]
        desired_set = set(desired)

        for tenant_id, entry in list(self.registry.running.items()):
            if not entry.connection.is_healthy():
                await self._evict(entry, "unhealthy on reconcile")
                report.evicted.append(tenant_id)

        for tenant_id, entry in list(self.registry.running.items()):
            if entry.consecutive_failures >= self.settings.max_runtime_failures:
                await self._demote(entry)
                report.demoted.append(tenant_id)
                desired_set.discard(tenant_id)

        for tenant_id in list(self.registry.running):
            if tenant_id in desired_set or await self._still_active(tenant_id):
                continue
            await self.release(tenant_id)
            report.released.append(tenant_id)

        first = True
        for tenant_id in desired:
            if tenant_id not in desired_set:
                continue
            if tenant_id in self.registry.running or tenant_id in self.registry.pending:
                continue
            if self.active_cooldown(tenant_id) is not None:
                report.skipped_cooldown.append(tenant_id)
                continue
            if not first and self.settings.stagger_seconds > 0:
                await self._sleep(self.settings.stagger_seconds)
            first = False
            try:
                await self.acquire(tenant_id)
                report.started.append(tenant_id)
            except ConnectionFailure as exc:
                report.failed.append(tenant_id)
                logger.warning("[SUPERVISOR] Reconcile start failed for %s: %s", tenant_id, exc)

        if report.evicted or report.started or report.released or report.demoted or report.failed:
            await self.log.info(
                "Reconcile changes",
                data={
                    "evicted": report.evicted,
                    "started": report.started,
                    "failed": report.failed,
                    "released": report.released,
                    "demoted": report.demoted,
                },
            )
        return report

    async def warm_load(self) -> int:
        """Open connections for every active credential (startup).

        Capped at ``warm_load_limit`` credentials. Returns how many
        connections are running afterwards.
        """
        records = await self._load_desired(self.settings.warm_load_limit)
        logger.info("[SUPERVISOR] Warm-loading %d tenant connections", len(records))
        for index, record in enumerate(records):
            if index and self.settings.stagger_seconds > 0:
                await self._sleep(self.settings.stagger_seconds)
            try:
                await self.acquire(record.tenant_id)
            except ConnectionFailure as exc:
                logger.error(
                    "[SUPERVISOR] Failed to launch tenant %s on startup: %s",
                    record.tenant_id,
                    exc,
                )
        return len(self.registry.running)

    # ================================================================
    # LIFECYCLE
    # ================================================================

    async def start(self) -> None:
        """Warm-load, then reconcile every ``reconcile_interval_seconds``.

        Runs until :meth:`stop` is called or the task is cancelled. Errors
        in a single pass are logged and never end the loop.
        """
        self._running = True
        logger.info(
            "[SUPERVISOR] Supervisor started (interval=%ds)",
            self.settings.reconcile_interval_seconds,
        )
        try:
            await self.warm_load()
        except asyncio.CancelledError:
            self._running = False
        except Exception:
            logger.exception("[SUPERVISOR] Warm-load failed")

        while self._running:
            try:
                await self.reconcile()
            except asyncio.CancelledError:
                logger.info("[SUPERVISOR] Supervisor cancelled")
                break
            except Exception:
                logger.exception("[SUPERVISOR] Reconcile pass failed")

            try:
                await self._sleep(self.settings.reconcile_interval_seconds)
            except asyncio.CancelledError:
                break

        logger.info("[SUPERVISOR] Supervisor stopped")

    async def stop(self) -> None:
        """Request loop exit and release every connection."""
        self._running = False
        released = await self.release_all()
        logger.info("[SUPERVISOR] Released %d connections on stop", released)

    # ================================================================
    # OBSERVABILITY
    # ================================================================

    def stats(self) -> SupervisorStats:
        now = self._clock()
        return SupervisorStats(
            running=len(self.registry.running),
            pending=len(self.registry.pending),
            cooldown=sum(1 for c in self.registry.cooldowns.values() if c.is_active(now)),
        )

    def connection_info(self) -> List[ConnectionInfo]:
        return [
            ConnectionInfo(
                tenant_id=entry.tenant_id,
                healthy=entry.is_healthy(),
                consecutive_failures=entry.consecutive_failures,
                started_at=entry.started_at,
                username=entry.username,
                last_error=entry.last_error,
            )
            for entry in self.registry.running.values()
        ]

    def is_running(self, tenant_id: int) -> bool:
        return tenant_id in self.registry.running


def _consume_task_exception(task: "asyncio.Task[Any]") -> None:
    # Callers receive the exception through the shield; this only marks it
    # retrieved when every caller was cancelled first.
    if not task.cancelled():
        task.exception()


__all__ = [
    "ConnectionSupervisor",
    "InboundHandler",
    "RUNTIME_FAILURE_MESSAGE",
]
