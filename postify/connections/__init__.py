"""Tenant connection supervision.

The python-telegram-bot transport lives in
``postify.connections.telegram_transport`` and is imported explicitly by
the runtime entry point.
"""

from postify.connections.models import (
    ConnectionInfo,
    ConnectionRegistry,
    ConnectionStatus,
    FailureCooldown,
    ReconcileReport,
    SupervisorStats,
    TenantConnection,
)
from postify.connections.supervisor import ConnectionSupervisor
from postify.connections.transport import (
    Connection,
    FailureKind,
    SentMessage,
    Transport,
    TransportError,
)

__all__ = [
    "Connection",
    "ConnectionInfo",
    "ConnectionRegistry",
    "ConnectionStatus",
    "ConnectionSupervisor",
    "FailureCooldown",
    "FailureKind",
    "ReconcileReport",
    "SentMessage",
    "SupervisorStats",
    "TenantConnection",
    "Transport",
    "TransportError",
]
