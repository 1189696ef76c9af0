"""Logging data models: LogLevel, LogComponent, LogEntry."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class LogLevel(Enum):
    """Log levels with numeric values for severity comparison.

    Values match the stdlib ``logging`` levels so entries can be mirrored
    with ``logger.log(level.value, ...)``.
    """

    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50

    @property
    def name_str(self) -> str:
        """Get lowercase name for display/serialization."""
        return self.name.lower()


class LogComponent(Enum):
    """All system components that can produce logs."""

    SUPERVISOR = "supervisor"
    SCHEDULER = "scheduler"
    JOB_RUNNER = "job_runner"
    TRANSPORT = "transport"
    GATES = "gates"
    VAULT = "vault"
    SERVICE = "service"
    DATABASE = "database"
    STARTUP = "startup"

    @property
    def prefix(self) -> str:
        """Bracketed tag used in stdlib log lines, e.g. ``[SUPERVISOR]``."""
        return f"[{self.name}]"


@dataclass
class LogEntry:
    """Structured log entry.

    Represents a single log event with tenant/job context, optional error
    details, and performance timing.
    """

    # Required fields
    timestamp: datetime
    level: LogLevel
    component: LogComponent
    message: str

    # Context
    tenant_id: Optional[int] = None
    job_id: Optional[str] = None

    # Additional data
    data: Dict[str, Any] = field(default_factory=dict)

    # Error details
    error_type: Optional[str] = None
    error_message: Optional[str] = None

    # Performance
    duration_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary for Supabase insertion."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "level_name": self.level.name_str,
            "component": self.component.value,
            "message": self.message,
            "tenant_id": self.tenant_id,
            "job_id": self.job_id,
            "data": self.data,
            "error_type": self.error_type,
            "error_message": self.error_message,
            "duration_ms": self.duration_ms,
        }

    def to_json(self) -> str:
        """Serialize to a JSON line for file logging."""
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)

    def to_readable(self) -> str:
        """Human-readable one-line format for console output."""
        time_str = self.timestamp.strftime("%H:%M:%S")
        msg = (
            f"[{self.level.name}] [{time_str}] "
            f"[{self.component.value}] {self.message}"
        )
        if self.tenant_id is not None:
            msg += f" tenant={self.tenant_id}"
        if self.duration_ms:
            msg += f" ({self.duration_ms}ms)"
        return msg
