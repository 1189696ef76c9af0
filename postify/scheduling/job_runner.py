"""
Background runner that fires scheduled jobs when they come due.

``JobRunner`` runs as an asyncio background task, periodically polling
the job store for pending jobs whose ``fire_at`` has passed and handing
each to :meth:`ScheduleEngine.fire`. Double fires are prevented by the
engine's conditional claim, so two runners polling the same store are
safe.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List

from postify.scheduling.models import FireOutcome, FireStatus
from postify.scheduling.schedule_engine import ScheduleEngine
from postify.utils import Clock, utc_now

logger = logging.getLogger(__name__)


class JobRunner:
    """Polls for due jobs and fires them.

    Args:
        engine: The schedule engine that owns job state.
        check_interval_seconds: How often to poll for due jobs.
        batch_size: Maximum jobs fired per poll.
        clock: Source of the current UTC time.
    """

    def __init__(
        self,
        engine: ScheduleEngine,
        check_interval_seconds: int = 30,
        batch_size: int = 50,
        clock: Clock = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.engine = engine
        self.check_interval_seconds = check_interval_seconds
        self.batch_size = batch_size
        self._clock = clock
        self._sleep = sleep
        self._running: bool = False
        self._cycle_count: int = 0

    @property
    def running(self) -> bool:
        return self._running

    # ================================================================
    # LIFECYCLE
    # ================================================================

    async def start(self) -> None:
        """Enter the polling loop.

        The loop runs until :meth:`stop` is called or the task is
        cancelled. A failed cycle is logged and the loop carries on.
        """
        self._running = True
        self._cycle_count = 0
        logger.info(
            "[JOBS] Job runner started (interval=%ds)",
            self.check_interval_seconds,
        )

        while self._running:
            try:
                await self.run_due()
                self._cycle_count += 1
            except asyncio.CancelledError:
                logger.info("[JOBS] Job runner cancelled")
                break
            except Exception:
                logger.exception("[JOBS] Unexpected error in job runner loop")

            try:
                await self._sleep(self.check_interval_seconds)
            except asyncio.CancelledError:
                logger.info("[JOBS] Job runner sleep cancelled")
                break

        self._running = False
        logger.info("[JOBS] Job runner stopped")

    async def stop(self) -> None:
        """Ask the loop to exit after the current cycle."""
        self._running = False
        logger.info("[JOBS] Job runner stop requested")

    # ================================================================
    # CORE CHECK
    # ================================================================

    async def run_due(self) -> List[FireOutcome]:
        """Fire every job that is due now (one batch).

        A job that raises (for instance because the store became
        unavailable mid-fire) is logged and the batch continues.
        """
        due = await self.engine.jobs.get_due_jobs(self._clock(), limit=self.batch_size)
        if not due:
            return []

        logger.info("[JOBS] Found %d due jobs", len(due))
        outcomes: List[FireOutcome] = []
        for job in due:
            try:
                outcome = await self.engine.fire(job.job_id)
            except Exception:
                logger.exception("[JOBS] Firing job %s failed", job.job_id)
                continue
            outcomes.append(outcome)
            if outcome.status == FireStatus.FAILED:
                logger.warning("[JOBS] Job %s failed: %s", job.job_id, outcome.error)
        return outcomes


__all__ = ["JobRunner"]
