"""Structured event log: JSON-lines files plus an optional Supabase table.

Supervisor, scheduler and service events land here through
``ComponentLogger``. Each entry is appended to ``events.log``, and also to
``errors.log`` (ERROR and up) or ``debug.log`` (DEBUG) in the same directory.
When a Supabase client is configured, entries at or above ``min_level`` are
inserted into ``event_logs`` from background tasks that ``flush()`` awaits.
The last ``max_recent`` entries stay in memory for operator queries.

Process-wide instance: ``init_logger()`` / ``get_logger()`` /
``is_initialized()`` / ``reset_logger()``.
"""

import asyncio
import logging
from collections import deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Set

import aiofiles

from postify.logging.models import LogComponent, LogEntry, LogLevel
from postify.utils import utc_now

_stdlib_logger = logging.getLogger(__name__)

EntryHandler = Callable[[LogEntry], None]


class EventLogger:
    """Writes ``LogEntry`` records to files, Supabase and in-memory history.

    Parameters:
        log_dir: Directory for the JSON-lines files; created if missing.
        supabase_client: Anything with an async ``save_event_log(dict)``
            (``SupabaseDB``), or ``None`` for file-only logging.
        min_level: Lowest level mirrored to Supabase.
        max_recent: Entries kept for ``get_recent()``.
    """

    def __init__(
        self,
        log_dir: str = "logs",
        supabase_client: Any = None,
        min_level: LogLevel = LogLevel.INFO,
        max_recent: int = 1000,
    ) -> None:
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.supabase = supabase_client
        self.min_level = min_level

        self._all_path = self.log_dir / "events.log"
        self._error_path = self.log_dir / "errors.log"
        self._debug_path = self.log_dir / "debug.log"

        self._recent: Deque[LogEntry] = deque(maxlen=max_recent)
        self._handlers: List[EntryHandler] = []
        # Strong references; the loop only keeps weak ones to tasks.
        self._inflight: Set["asyncio.Task[None]"] = set()

    def add_handler(self, handler: EntryHandler) -> None:
        """Call *handler* synchronously with every new entry."""
        self._handlers.append(handler)

    async def log(
        self,
        level: LogLevel,
        component: LogComponent,
        message: str,
        tenant_id: Optional[int] = None,
        job_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[BaseException] = None,
        duration_ms: Optional[int] = None,
    ) -> LogEntry:
        """Record one event and return it.

        The file append is awaited; the Supabase insert is not, so a slow
        database never holds up a reconcile pass or a job fire.
        """
        entry = LogEntry(
            timestamp=utc_now(),
            level=level,
            component=component,
            message=message,
            tenant_id=tenant_id,
            job_id=job_id,
            data=data or {},
            error_type=type(error).__name__ if error is not None else None,
            error_message=str(error) if error is not None else None,
            duration_ms=duration_ms,
        )
        self._recent.append(entry)

        await self._append(entry)

        if self.supabase is not None and level.value >= self.min_level.value:
            task = asyncio.create_task(self._insert_row(entry))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

        for handler in self._handlers:
            try:
                handler(entry)
            except Exception:
                _stdlib_logger.exception("[LOGGING] Event handler failed")

        return entry

    def get_recent(
        self,
        limit: int = 20,
        level: Optional[LogLevel] = None,
        component: Optional[LogComponent] = None,
        tenant_id: Optional[int] = None,
    ) -> List[LogEntry]:
        """Newest matching entries from memory, oldest first."""
        matches = [
            entry
            for entry in self._recent
            if (level is None or entry.level == level)
            and (component is None or entry.component == component)
            and (tenant_id is None or entry.tenant_id == tenant_id)
        ]
        return matches[-limit:]

    async def flush(self) -> None:
        """Wait for outstanding Supabase inserts (call before shutdown)."""
        if not self._inflight:
            return
        await asyncio.gather(*list(self._inflight), return_exceptions=True)
        self._inflight.clear()

    def _paths_for(self, entry: LogEntry) -> List[Path]:
        paths = [self._all_path]
        if entry.level.value >= LogLevel.ERROR.value:
            paths.append(self._error_path)
        elif entry.level == LogLevel.DEBUG:
            paths.append(self._debug_path)
        return paths

    async def _append(self, entry: LogEntry) -> None:
        line = entry.to_json() + "\n"
        for path in self._paths_for(entry):
            async with aiofiles.open(path, "a", encoding="utf-8") as fh:
                await fh.write(line)

    async def _insert_row(self, entry: LogEntry) -> None:
        try:
            await self.supabase.save_event_log(entry.to_dict())
        except Exception as exc:
            # stdlib only: routing this through EventLogger would recurse.
            _stdlib_logger.warning("[LOGGING] Failed to write to Supabase: %s", exc)


# ======================================================================
# PROCESS-WIDE INSTANCE
# ======================================================================

_logger: Optional[EventLogger] = None


def init_logger(
    log_dir: str = "logs",
    supabase_client: Any = None,
    min_level: LogLevel = LogLevel.INFO,
) -> EventLogger:
    """Create the process-wide ``EventLogger`` (replacing any previous one)."""
    global _logger
    _logger = EventLogger(
        log_dir=log_dir,
        supabase_client=supabase_client,
        min_level=min_level,
    )
    return _logger


def get_logger() -> EventLogger:
    """Return the process-wide ``EventLogger``.

    Raises:
        RuntimeError: ``init_logger()`` has not run.
    """
    if _logger is None:
        raise RuntimeError("Logger not initialized. Call init_logger() first.")
    return _logger


def is_initialized() -> bool:
    return _logger is not None


def reset_logger() -> None:
    global _logger
    _logger = None
