"""
Connection supervision data models.

- ``ConnectionStatus``: lifecycle of a tenant connection entry.
- ``TenantConnection``: registry entry for one tenant's live connection.
- ``FailureCooldown``: time-boxed refusal to reconnect after a failure.
- ``ConnectionRegistry``: all mutable supervisor state in one object.
- ``SupervisorStats`` / ``ConnectionInfo`` / ``ReconcileReport``: read-only views.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from postify.connections.transport import Connection, FailureKind


class ConnectionStatus(Enum):
    """Lifecycle status of a tenant connection.

    Transitions:
        STARTING -> RUNNING -> STOPPED
        STARTING -> FAILED
        RUNNING  -> FAILED (runtime failure threshold)
    """

    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass
class TenantConnection:
    """A tenant's registered connection.

    Attributes:
        tenant_id: Owning tenant.
        credential_ref: Reference to the stored credential used (tenant id
            of the ``user_bots`` row).
        connection: The live transport session.
        status: Only ``RUNNING`` entries are kept in the registry.
        started_at: When the session was confirmed live.
        consecutive_failures: Runtime errors since the last success.
        last_error: Text of the most recent runtime error.
    """

    tenant_id: int
    credential_ref: int
    connection: Connection
    started_at: datetime
    status: ConnectionStatus = ConnectionStatus.RUNNING
    username: Optional[str] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None

    def is_healthy(self) -> bool:
        return self.status == ConnectionStatus.RUNNING and self.connection.is_healthy()


@dataclass
class FailureCooldown:
    """Active refusal to reconnect a tenant until ``until``."""

    tenant_id: int
    reason: FailureKind
    until: datetime
    message: str = ""

    def is_active(self, now: datetime) -> bool:
        return now < self.until


@dataclass
class ConnectionRegistry:
    """Mutable supervisor state.

    Owned by one ``ConnectionSupervisor`` instance; tests build a fresh one
    per case.
    """

    running: Dict[int, TenantConnection] = field(default_factory=dict)
    pending: Dict[int, "asyncio.Task[TenantConnection]"] = field(default_factory=dict)
    # Sessions deregistered but still shutting down
    stopping: Dict[int, "asyncio.Task[None]"] = field(default_factory=dict)
    cooldowns: Dict[int, FailureCooldown] = field(default_factory=dict)


@dataclass
class SupervisorStats:
    """Counts of running, pending and cooling-down tenants."""

    running: int
    pending: int
    cooldown: int


@dataclass
class ConnectionInfo:
    """Per-connection health snapshot for operators."""

    tenant_id: int
    healthy: bool
    consecutive_failures: int
    started_at: datetime
    username: Optional[str] = None
    last_error: Optional[str] = None


@dataclass
class ReconcileReport:
    """What a single reconcile pass did."""

    evicted: List[int] = field(default_factory=list)
    started: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    released: List[int] = field(default_factory=list)
    demoted: List[int] = field(default_factory=list)
    skipped_cooldown: List[int] = field(default_factory=list)


__all__ = [
    "ConnectionStatus",
    "TenantConnection",
    "FailureCooldown",
    "ConnectionRegistry",
    "SupervisorStats",
    "ConnectionInfo",
    "ReconcileReport",
]
