"""
Scheduling result models: ConflictCheck, ScheduleResult, FireOutcome.

Job and post records themselves live in ``postify.models`` because the
stores share them.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from postify.models import ScheduledJob


# =============================================================================
# ADMISSION CONTROL
# =============================================================================


@dataclass
class ConflictCheck:
    """Advisory result of ``ScheduleEngine.check_conflicts``.

    Attributes:
        conflict: Whether the instant crowds the channel.
        reason: Recommendation shown to the tenant when ``conflict`` is set.
        conflicting_job_ids: Nearby jobs (proximity conflicts only).
    """

    conflict: bool = False
    reason: Optional[str] = None
    conflicting_job_ids: List[str] = field(default_factory=list)


@dataclass
class ScheduleResult:
    """A persisted job plus any non-blocking warning."""

    job: ScheduledJob
    warning: Optional[str] = None
    replaced_job_id: Optional[str] = None


# =============================================================================
# FIRING
# =============================================================================


class FireStatus(Enum):
    """What happened when a job fired.

    PUBLISHED  the post was delivered
    FAILED     acquire or publish failed; recorded on the job
    SKIPPED    the post was no longer scheduled
    NOT_CLAIMED  another caller fired or cancelled the job first
    """

    PUBLISHED = "published"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOT_CLAIMED = "not_claimed"


@dataclass
class FireOutcome:
    job_id: str
    status: FireStatus
    message_id: Optional[int] = None
    published_at: Optional[datetime] = None
    error: Optional[str] = None


__all__ = [
    "ConflictCheck",
    "ScheduleResult",
    "FireStatus",
    "FireOutcome",
]
