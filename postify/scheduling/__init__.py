"""Scheduling subsystem: time parsing, admission control, job firing."""
from postify.scheduling.models import ConflictCheck, FireOutcome, FireStatus, ScheduleResult
from postify.scheduling.publisher import ConnectionPublisher, PublishAction
from postify.scheduling.schedule_engine import ScheduleEngine
from postify.scheduling.job_runner import JobRunner
from postify.scheduling.time_parser import parse_target

__all__ = [
    "ConflictCheck",
    "FireOutcome",
    "FireStatus",
    "ScheduleResult",
    "PublishAction",
    "ConnectionPublisher",
    "ScheduleEngine",
    "JobRunner",
    "parse_target",
]
