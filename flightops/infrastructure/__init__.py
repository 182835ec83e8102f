"""Infrastructure layer exports."""

from .dispatch import Dispatcher, DispatchOutcome, WorkerDispatchClient
from .plans import InMemoryPlanRepository, PlanRepository

__all__ = [
    "Dispatcher",
    "DispatchOutcome",
    "InMemoryPlanRepository",
    "PlanRepository",
    "WorkerDispatchClient",
]
