"""Per-component logger wrapper and timed-operation context manager.

``ComponentLogger`` binds a fixed ``LogComponent`` and writes every event
twice: to stdlib ``logging`` (always, tagged with the component prefix)
and to the global ``EventLogger`` when one has been initialised. Library
code can therefore log events without caring whether the process set up
structured logging.
"""

import logging
import time
from typing import Any, Optional

from postify.logging import event_logger
from postify.logging.models import LogComponent, LogLevel


class ComponentLogger:
    """Wrapper that binds a fixed ``LogComponent``.

    Usage::

        self.log = ComponentLogger(LogComponent.SUPERVISOR)
        await self.log.info("Connection started", tenant_id=42)
    """

    def __init__(self, component: LogComponent) -> None:
        self.component = component
        self._std = logging.getLogger(f"postify.{component.value}")

    async def log(
        self,
        level: LogLevel,
        message: str,
        error: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        tenant_id = kwargs.get("tenant_id")
        suffix = f" (tenant={tenant_id})" if tenant_id is not None else ""
        if error is not None:
            suffix += f": {error}"
        self._std.log(level.value, "%s %s%s", self.component.prefix, message, suffix)

        if event_logger.is_initialized():
            await event_logger.get_logger().log(
                level, self.component, message, error=error, **kwargs
            )

    async def debug(self, message: str, **kwargs: Any) -> None:
        await self.log(LogLevel.DEBUG, message, **kwargs)

    async def info(self, message: str, **kwargs: Any) -> None:
        await self.log(LogLevel.INFO, message, **kwargs)

    async def warning(self, message: str, **kwargs: Any) -> None:
        await self.log(LogLevel.WARNING, message, **kwargs)

    async def error(
        self, message: str, error: Optional[BaseException] = None, **kwargs: Any
    ) -> None:
        await self.log(LogLevel.ERROR, message, error=error, **kwargs)

    async def critical(
        self, message: str, error: Optional[BaseException] = None, **kwargs: Any
    ) -> None:
        await self.log(LogLevel.CRITICAL, message, error=error, **kwargs)

    def timed(self, message: str, **kwargs: Any) -> "TimedOperation":
        """Return an async context manager that logs start/end with duration.

        Usage::

            async with self.log.timed("Reconcile pass"):
                await self._reconcile_once()
        """
        return TimedOperation(self, message, **kwargs)


class TimedOperation:
    """Async context manager that measures and logs operation duration.

    On entry, logs a DEBUG message (``"Starting: <message>"``).
    On successful exit, logs an INFO message with ``duration_ms``.
    On exception, logs an ERROR message with ``duration_ms`` and the error,
    then re-raises the exception (does **not** suppress it).
    """

    def __init__(self, logger: ComponentLogger, message: str, **kwargs: Any) -> None:
        self.logger = logger
        self.message = message
        self.kwargs = kwargs
        self.start: Optional[float] = None
        self.duration_ms: Optional[int] = None

    async def __aenter__(self) -> "TimedOperation":
        self.start = time.monotonic()
        await self.logger.debug(f"Starting: {self.message}", **self.kwargs)
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type],
        exc_val: Optional[BaseException],
        exc_tb: Any,
    ) -> None:
        assert self.start is not None
        self.duration_ms = int((time.monotonic() - self.start) * 1000)

        if exc_type is not None:
            await self.logger.error(
                f"Failed: {self.message}",
                error=exc_val,
                duration_ms=self.duration_ms,
                **self.kwargs,
            )
        else:
            await self.logger.info(
                f"Completed: {self.message}",
                duration_ms=self.duration_ms,
                **self.kwargs,
            )
        # Return None (falsy) so exceptions propagate
