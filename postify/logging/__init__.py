"""Structured event logging for Postify."""
from postify.logging.models import LogLevel, LogComponent, LogEntry
from postify.logging.event_logger import (
    EventLogger,
    init_logger,
    get_logger,
    is_initialized,
    reset_logger,
)
from postify.logging.component_logger import ComponentLogger, TimedOperation

__all__ = [
    "LogLevel", "LogComponent", "LogEntry",
    "EventLogger", "init_logger", "get_logger", "is_initialized", "reset_logger",
    "ComponentLogger", "TimedOperation",
]
