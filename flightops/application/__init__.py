"""Application services."""

from .plans import (
    PlanService,
    build_repository,
    configure_plan_service,
    get_plan_service,
    reset_plan_state,
)

__all__ = [
    "PlanService",
    "build_repository",
    "configure_plan_service",
    "get_plan_service",
    "reset_plan_state",
]
