"""Application service layer for plan lifecycle use cases."""
from __future__ import annotations

import json
from typing import Any, Callable, Iterable

import structlog

from flightops.core.settings import Settings, WorkerConfig
from flightops.core.validation import ConflictError, NotFoundError, ValidationError, parse_ids
from flightops.domain import (
    AssignmentRecord,
    AuthorizationStatus,
    FlightPlan,
    PlanResult,
    PlanStatus,
    Worker,
    WorkerAvailability,
)
from flightops.infrastructure import InMemoryPlanRepository, PlanRepository
from flightops.infrastructure.duckdb_store import DuckDBPlanRepository

logger = structlog.get_logger(__name__)

ACCEPTED_STATE = "ACCEPTED"


class PlanService:
    """Coordinates plan, worker and result use cases on top of a repository."""

    def __init__(self, repository: PlanRepository, *, max_bulk_ids: int = 5000) -> None:
        self._repository = repository
        self._max_bulk_ids = max_bulk_ids
        self._queue_listeners: list[Callable[[], None]] = []

    @property
    def repository(self) -> PlanRepository:
        return self._repository

    # ------------------------------------------------------------------
    # queue notifications
    # ------------------------------------------------------------------
    def add_queue_listener(self, listener: Callable[[], None]) -> None:
        self._queue_listeners.append(listener)

    def remove_queue_listener(self, listener: Callable[[], None]) -> None:
        if listener in self._queue_listeners:
            self._queue_listeners.remove(listener)

    def _notify_queue(self) -> None:
        for listener in list(self._queue_listeners):
            listener()

    # ------------------------------------------------------------------
    # plan lifecycle
    # ------------------------------------------------------------------
    def create_plan(
        self,
        custom_name: str,
        file_content: str,
        *,
        status: PlanStatus = PlanStatus.UNPROCESSED,
        user_id: int | None = None,
        folder_id: int | None = None,
    ) -> FlightPlan:
        if status not in {PlanStatus.UNPROCESSED, PlanStatus.QUEUED}:
            raise ValidationError("new plans must be unprocessed or queued")
        plan = self._repository.create_plan(
            custom_name,
            file_content,
            status=status,
            user_id=user_id,
            folder_id=folder_id,
        )
        logger.info("plan.created", plan_id=plan.id, status=plan.status.value)
        if plan.status == PlanStatus.QUEUED:
            self._notify_queue()
        return plan

    def get_plan(self, plan_id: int) -> FlightPlan:
        plan = self._repository.get_plan(plan_id)
        if plan is None:
            raise NotFoundError("flight plan not found")
        return plan

    def list_plans(self, status: PlanStatus | None = None) -> list[FlightPlan]:
        return self._repository.list_plans(status)

    def enqueue_plan(self, plan_id: int) -> FlightPlan:
        """Put a plan (back) in the queue; the explicit retry for ``error`` plans."""

        plan = self.get_plan(plan_id)
        if plan.status == PlanStatus.QUEUED:
            return plan
        if not self._repository.enqueue_plan(plan_id):
            raise ConflictError(f"plan cannot be queued while {plan.status.value}")
        logger.info("plan.enqueued", plan_id=plan_id, previous_status=plan.status.value)
        self._notify_queue()
        return self.get_plan(plan_id)

    def reset_plan(self, plan_id: int) -> FlightPlan:
        plan = self.get_plan(plan_id)
        if plan.status == PlanStatus.UNPROCESSED:
            raise ValidationError("plan is already unprocessed")
        self._repository.reset_plan(plan_id)
        logger.info("plan.reset", plan_id=plan_id, previous_status=plan.status.value)
        if plan.status == PlanStatus.IN_PROGRESS:
            # its worker was released
            self._notify_queue()
        return self.get_plan(plan_id)

    def assign_external_reference(self, plan_id: int, number: str) -> FlightPlan:
        self.get_plan(plan_id)
        if not self._repository.set_external_response_number(plan_id, number):
            raise ConflictError("externalResponseNumber already assigned to another plan")
        return self.get_plan(plan_id)

    # ------------------------------------------------------------------
    # authorization callback
    # ------------------------------------------------------------------
    def apply_authorization_callback(self, external_number: str, body: Any) -> FlightPlan:
        """Record the authority's verdict on the plan addressed by ``external_number``.

        Only the authorization fields are written. The detail payload (every
        field except ``state``) is stored as canonical JSON so identical
        callbacks produce identical rows.
        """

        if not isinstance(body, dict):
            raise ValidationError("callback body must be a JSON object")
        state = body.get("state")
        if not state or (isinstance(state, str) and not state.strip()):
            raise ValidationError("Missing required field: state")

        plan = self._repository.find_plan_by_external_number(external_number)
        if plan is None:
            raise NotFoundError("FlightPlan not found")

        accepted = isinstance(state, str) and state.strip() == ACCEPTED_STATE
        status = AuthorizationStatus.APPROVED if accepted else AuthorizationStatus.DENIED
        detail = {key: value for key, value in body.items() if key != "state"}
        message = json.dumps(detail, sort_keys=True, ensure_ascii=False, default=str)

        if not self._repository.update_authorization(plan.id, status, message):
            raise NotFoundError("FlightPlan not found")
        logger.info(
            "authorization.updated",
            plan_id=plan.id,
            external_response_number=external_number,
            authorization_status=status.value,
        )
        return self.get_plan(plan.id)

    # ------------------------------------------------------------------
    # workers
    # ------------------------------------------------------------------
    def register_worker(
        self,
        name: str,
        address: str,
        availability: WorkerAvailability = WorkerAvailability.AVAILABLE,
    ) -> Worker:
        worker = self._repository.register_worker(name, address.rstrip("/"), availability)
        if worker.availability == WorkerAvailability.AVAILABLE:
            self._notify_queue()
        return worker

    def sync_workers(self, configured: Iterable[WorkerConfig]) -> list[Worker]:
        """Register every configured worker; existing rows keep their availability."""

        workers = [self._repository.register_worker(item.name, item.address) for item in configured]
        if workers:
            logger.info("workers.synchronised", count=len(workers), names=[worker.name for worker in workers])
            self._notify_queue()
        return workers

    def get_worker(self, worker_id: int) -> Worker:
        worker = self._repository.get_worker(worker_id)
        if worker is None:
            raise NotFoundError("worker not found")
        return worker

    def list_workers(self, availability: WorkerAvailability | None = None) -> list[Worker]:
        return self._repository.list_workers(availability)

    def set_worker_status(self, worker_id: int, availability: WorkerAvailability) -> Worker:
        if not self._repository.set_worker_availability(worker_id, availability):
            self.get_worker(worker_id)
            raise ConflictError("worker still has a flight plan in progress")
        logger.info("worker.status_set", worker_id=worker_id, availability=availability.value)
        if availability == WorkerAvailability.AVAILABLE:
            self._notify_queue()
        return self.get_worker(worker_id)

    def remove_worker(self, worker_id: int) -> None:
        if not self._repository.remove_worker(worker_id):
            raise NotFoundError("worker not found")
        logger.info("worker.removed", worker_id=worker_id)
        self._notify_queue()

    # ------------------------------------------------------------------
    # results
    # ------------------------------------------------------------------
    def get_result(self, result_id: int) -> PlanResult:
        result = self._repository.get_result(result_id)
        if result is None:
            raise NotFoundError("result not found")
        return result

    def get_results_bulk(self, raw_ids: Iterable[Any]) -> list[dict[str, Any]]:
        ids = parse_ids(raw_ids, limit=self._max_bulk_ids)
        results = self._repository.get_results(ids)
        names = {plan.id: plan.custom_name for plan in self._plans_by_id(ids)}
        return [
            {"id": result.id, "customName": names.get(result.id) or f"plan_{result.id}", "csvResult": result.payload}
            for result in results
        ]

    def delete_results(self, raw_ids: Iterable[Any]) -> int:
        ids = parse_ids(raw_ids, limit=self._max_bulk_ids)
        deleted = self._repository.delete_results(ids)
        if deleted:
            logger.info("results.deleted", count=deleted)
            self._notify_queue()
        return deleted

    def _plans_by_id(self, ids: list[int]) -> list[FlightPlan]:
        plans = []
        for plan_id in ids:
            plan = self._repository.get_plan(plan_id)
            if plan is not None:
                plans.append(plan)
        return plans

    # ------------------------------------------------------------------
    # audit
    # ------------------------------------------------------------------
    def list_assignments(self, plan_id: int | None = None) -> list[AssignmentRecord]:
        return self._repository.list_assignments(plan_id)

    # ------------------------------------------------------------------
    # testing helpers
    # ------------------------------------------------------------------
    def reset(self) -> None:
        self._repository.reset()


_service = PlanService(InMemoryPlanRepository())


def build_repository(settings: Settings) -> PlanRepository:
    if settings.database:
        return DuckDBPlanRepository(settings.database)
    return InMemoryPlanRepository()


def configure_plan_service(service: PlanService) -> None:
    """Install the service used by the HTTP routes."""

    global _service
    _service = service


def get_plan_service() -> PlanService:
    """Return the singleton plan service for the process."""

    return _service


def reset_plan_state() -> None:
    """Reset the installed store (used in tests)."""

    _service.reset()
