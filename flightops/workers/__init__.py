"""Background workers: assignment scheduling and recovery."""

from .recovery import RecoveryReport, RecoveryTool
from .scheduler import AssignmentScheduler, SchedulerTiming

__all__ = [
    "AssignmentScheduler",
    "RecoveryReport",
    "RecoveryTool",
    "SchedulerTiming",
]
