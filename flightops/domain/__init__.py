"""Domain layer definitions."""

from .plans import (
    Assignment,
    AssignmentRecord,
    AuthorizationStatus,
    FlightPlan,
    PlanResult,
    PlanStatus,
    Worker,
    WorkerAvailability,
)

__all__ = [
    "Assignment",
    "AssignmentRecord",
    "AuthorizationStatus",
    "FlightPlan",
    "PlanResult",
    "PlanStatus",
    "Worker",
    "WorkerAvailability",
]
