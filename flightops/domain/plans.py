"""Domain entities for flight-plan processing."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlanStatus(str, Enum):
    UNPROCESSED = "unprocessed"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    ERROR = "error"


class WorkerAvailability(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"


class AuthorizationStatus(str, Enum):
    NONE = "none"
    APPROVED = "approved"
    DENIED = "denied"


@dataclass(slots=True)
class FlightPlan:
    """A submitted flight plan and its processing/authorization state."""

    id: int
    custom_name: str
    file_content: str
    status: PlanStatus = PlanStatus.UNPROCESSED
    assigned_worker_id: int | None = None
    result_id: int | None = None
    authorization_status: AuthorizationStatus = AuthorizationStatus.NONE
    authorization_message: str | None = None
    external_response_number: str | None = None
    error_message: str | None = None
    user_id: int | None = None
    folder_id: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class Worker:
    """A remote processing machine reachable at ``address``."""

    id: int
    name: str
    address: str
    availability: WorkerAvailability = WorkerAvailability.AVAILABLE


@dataclass(slots=True)
class PlanResult:
    """Result payload stored apart from the plan row; ``id`` equals the plan id."""

    id: int
    payload: str
    size_bytes: int
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class Assignment:
    """Outcome of a successful reservation."""

    plan: FlightPlan
    worker: Worker


@dataclass(slots=True)
class AssignmentRecord:
    """Append-only audit entry written when a plan is bound to a worker."""

    plan_id: int
    worker_id: int
    worker_name: str
    assigned_at: datetime = field(default_factory=utcnow)
