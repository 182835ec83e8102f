"""Infrastructure layer for plan, worker and result persistence."""
from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Iterable, Protocol

from flightops.domain import (
    Assignment,
    AssignmentRecord,
    AuthorizationStatus,
    FlightPlan,
    PlanResult,
    PlanStatus,
    Worker,
    WorkerAvailability,
)
from flightops.domain.plans import utcnow

REQUEUEABLE_STATUSES = frozenset({PlanStatus.UNPROCESSED, PlanStatus.ERROR, PlanStatus.DONE})


def payload_size(payload: str) -> int:
    return len(payload.encode("utf-8"))


class PlanRepository(Protocol):
    """Persistence contract shared by the scheduler, callbacks and maintenance tools.

    Every method that changes a plan ``status`` or a worker ``availability``
    is a conditional write: it only applies while the row is still in the
    expected prior state and reports whether it did.
    """

    # plans
    def create_plan(
        self,
        custom_name: str,
        file_content: str,
        *,
        status: PlanStatus = PlanStatus.UNPROCESSED,
        user_id: int | None = None,
        folder_id: int | None = None,
        created_at: datetime | None = None,
    ) -> FlightPlan: ...

    def get_plan(self, plan_id: int) -> FlightPlan | None: ...

    def list_plans(self, status: PlanStatus | None = None) -> list[FlightPlan]: ...

    def enqueue_plan(self, plan_id: int) -> bool: ...

    def reset_plan(self, plan_id: int) -> bool: ...

    def set_external_response_number(self, plan_id: int, number: str) -> bool: ...

    def find_plan_by_external_number(self, number: str) -> FlightPlan | None: ...

    def update_authorization(self, plan_id: int, status: AuthorizationStatus, message: str | None) -> bool: ...

    # workers
    def register_worker(
        self,
        name: str,
        address: str,
        availability: WorkerAvailability = WorkerAvailability.AVAILABLE,
    ) -> Worker: ...

    def get_worker(self, worker_id: int) -> Worker | None: ...

    def list_workers(self, availability: WorkerAvailability | None = None) -> list[Worker]: ...

    def find_available_worker(self) -> Worker | None: ...

    def set_worker_availability(self, worker_id: int, availability: WorkerAvailability) -> bool:
        """False when the worker is unknown, or when freeing it while a plan is in progress on it."""

    def remove_worker(self, worker_id: int) -> bool: ...

    # scheduling
    def find_oldest_queued_plan(self) -> FlightPlan | None: ...

    def reserve(self, plan_id: int, worker_id: int) -> Assignment | None: ...

    def complete_plan(self, plan_id: int, worker_id: int, payload: str) -> bool: ...

    def fail_plan(self, plan_id: int, worker_id: int, reason: str) -> bool: ...

    # results
    def get_result(self, result_id: int) -> PlanResult | None: ...

    def get_results(self, result_ids: Iterable[int]) -> list[PlanResult]: ...

    def delete_results(self, result_ids: Iterable[int]) -> int: ...

    def list_undersized_results(self, min_bytes: int) -> list[int]: ...

    # recovery
    def release_all_workers(self) -> int: ...

    def requeue_in_progress_plans(self) -> list[int]: ...

    def requeue_plans(self, plan_ids: Iterable[int]) -> list[int]: ...

    # audit
    def record_assignment(self, record: AssignmentRecord) -> None: ...

    def list_assignments(self, plan_id: int | None = None) -> list[AssignmentRecord]: ...

    def reset(self) -> None: ...


class InMemoryPlanRepository:
    """Dict-backed repository for tests and single-process deployments.

    A single lock serialises every read-check-write so that each conditional
    write is atomic. Entities are copied on the way in and out.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._plans: dict[int, FlightPlan] = {}
        self._workers: dict[int, Worker] = {}
        self._results: dict[int, PlanResult] = {}
        self._assignments: list[AssignmentRecord] = []
        self._plan_counter = 0
        self._worker_counter = 0

    # ------------------------------------------------------------------
    # internal helpers
    # ------------------------------------------------------------------
    def _touch(self, plan: FlightPlan) -> None:
        plan.updated_at = utcnow()

    def _requeue(self, plan: FlightPlan) -> None:
        self._results.pop(plan.id, None)
        plan.status = PlanStatus.QUEUED
        plan.assigned_worker_id = None
        plan.result_id = None
        plan.error_message = None
        self._touch(plan)

    def _release(self, worker_id: int | None) -> None:
        worker = self._workers.get(worker_id) if worker_id is not None else None
        if worker is not None:
            worker.availability = WorkerAvailability.AVAILABLE

    def _owned_plan(self, plan_id: int, worker_id: int) -> FlightPlan | None:
        plan = self._plans.get(plan_id)
        if plan is None or plan.status != PlanStatus.IN_PROGRESS or plan.assigned_worker_id != worker_id:
            return None
        return plan

    # ------------------------------------------------------------------
    # plans
    # ------------------------------------------------------------------
    def create_plan(
        self,
        custom_name: str,
        file_content: str,
        *,
        status: PlanStatus = PlanStatus.UNPROCESSED,
        user_id: int | None = None,
        folder_id: int | None = None,
        created_at: datetime | None = None,
    ) -> FlightPlan:
        with self._lock:
            self._plan_counter += 1
            now = utcnow()
            plan = FlightPlan(
                id=self._plan_counter,
                custom_name=custom_name,
                file_content=file_content,
                status=status,
                user_id=user_id,
                folder_id=folder_id,
                created_at=created_at or now,
                updated_at=now,
            )
            self._plans[plan.id] = plan
            return replace(plan)

    def get_plan(self, plan_id: int) -> FlightPlan | None:
        with self._lock:
            plan = self._plans.get(plan_id)
            return replace(plan) if plan else None

    def list_plans(self, status: PlanStatus | None = None) -> list[FlightPlan]:
        with self._lock:
            plans = [replace(plan) for plan in self._plans.values() if status is None or plan.status == status]
        plans.sort(key=lambda item: (item.created_at, item.id))
        return plans

    def enqueue_plan(self, plan_id: int) -> bool:
        with self._lock:
            plan = self._plans.get(plan_id)
            if plan is None or plan.status not in REQUEUEABLE_STATUSES:
                return False
            self._requeue(plan)
            return True

    def reset_plan(self, plan_id: int) -> bool:
        with self._lock:
            plan = self._plans.get(plan_id)
            if plan is None:
                return False
            if plan.status == PlanStatus.IN_PROGRESS:
                self._release(plan.assigned_worker_id)
            self._results.pop(plan.id, None)
            plan.status = PlanStatus.UNPROCESSED
            plan.assigned_worker_id = None
            plan.result_id = None
            plan.error_message = None
            plan.authorization_status = AuthorizationStatus.NONE
            plan.authorization_message = None
            plan.external_response_number = None
            self._touch(plan)
            return True

    def set_external_response_number(self, plan_id: int, number: str) -> bool:
        with self._lock:
            plan = self._plans.get(plan_id)
            if plan is None:
                return False
            for other in self._plans.values():
                if other.id != plan_id and other.external_response_number == number:
                    return False
            plan.external_response_number = number
            self._touch(plan)
            return True

    def find_plan_by_external_number(self, number: str) -> FlightPlan | None:
        with self._lock:
            for plan in self._plans.values():
                if plan.external_response_number == number:
                    return replace(plan)
        return None

    def update_authorization(self, plan_id: int, status: AuthorizationStatus, message: str | None) -> bool:
        with self._lock:
            plan = self._plans.get(plan_id)
            if plan is None:
                return False
            plan.authorization_status = status
            plan.authorization_message = message
            return True

    # ------------------------------------------------------------------
    # workers
    # ------------------------------------------------------------------
    def register_worker(
        self,
        name: str,
        address: str,
        availability: WorkerAvailability = WorkerAvailability.AVAILABLE,
    ) -> Worker:
        with self._lock:
            for worker in self._workers.values():
                if worker.name == name:
                    worker.address = address
                    return replace(worker)
            self._worker_counter += 1
            worker = Worker(id=self._worker_counter, name=name, address=address, availability=availability)
            self._workers[worker.id] = worker
            return replace(worker)

    def get_worker(self, worker_id: int) -> Worker | None:
        with self._lock:
            worker = self._workers.get(worker_id)
            return replace(worker) if worker else None

    def list_workers(self, availability: WorkerAvailability | None = None) -> list[Worker]:
        with self._lock:
            return [
                replace(worker)
                for worker_id, worker in sorted(self._workers.items())
                if availability is None or worker.availability == availability
            ]

    def find_available_worker(self) -> Worker | None:
        workers = self.list_workers(WorkerAvailability.AVAILABLE)
        return workers[0] if workers else None

    def set_worker_availability(self, worker_id: int, availability: WorkerAvailability) -> bool:
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None:
                return False
            if availability == WorkerAvailability.AVAILABLE and any(
                plan.status == PlanStatus.IN_PROGRESS and plan.assigned_worker_id == worker_id
                for plan in self._plans.values()
            ):
                return False
            worker.availability = availability
            return True

    def remove_worker(self, worker_id: int) -> bool:
        with self._lock:
            if worker_id not in self._workers:
                return False
            for plan in self._plans.values():
                if plan.status == PlanStatus.IN_PROGRESS and plan.assigned_worker_id == worker_id:
                    self._requeue(plan)
            del self._workers[worker_id]
            return True

    # ------------------------------------------------------------------
    # scheduling
    # ------------------------------------------------------------------
    def find_oldest_queued_plan(self) -> FlightPlan | None:
        queued = self.list_plans(PlanStatus.QUEUED)
        return queued[0] if queued else None

    def reserve(self, plan_id: int, worker_id: int) -> Assignment | None:
        with self._lock:
            plan = self._plans.get(plan_id)
            worker = self._workers.get(worker_id)
            if plan is None or worker is None:
                return None
            if plan.status != PlanStatus.QUEUED or worker.availability != WorkerAvailability.AVAILABLE:
                return None
            plan.status = PlanStatus.IN_PROGRESS
            plan.assigned_worker_id = worker.id
            plan.error_message = None
            self._touch(plan)
            worker.availability = WorkerAvailability.BUSY
            return Assignment(plan=replace(plan), worker=replace(worker))

    def complete_plan(self, plan_id: int, worker_id: int, payload: str) -> bool:
        with self._lock:
            plan = self._owned_plan(plan_id, worker_id)
            if plan is None:
                return False
            self._results[plan.id] = PlanResult(id=plan.id, payload=payload, size_bytes=payload_size(payload))
            plan.status = PlanStatus.DONE
            plan.assigned_worker_id = None
            plan.result_id = plan.id
            self._touch(plan)
            self._release(worker_id)
            return True

    def fail_plan(self, plan_id: int, worker_id: int, reason: str) -> bool:
        with self._lock:
            plan = self._owned_plan(plan_id, worker_id)
            if plan is None:
                return False
            plan.status = PlanStatus.ERROR
            plan.assigned_worker_id = None
            plan.error_message = reason
            self._touch(plan)
            self._release(worker_id)
            return True

    # ------------------------------------------------------------------
    # results
    # ------------------------------------------------------------------
    def get_result(self, result_id: int) -> PlanResult | None:
        with self._lock:
            result = self._results.get(result_id)
            return replace(result) if result else None

    def get_results(self, result_ids: Iterable[int]) -> list[PlanResult]:
        with self._lock:
            return [replace(self._results[item]) for item in dict.fromkeys(result_ids) if item in self._results]

    def delete_results(self, result_ids: Iterable[int]) -> int:
        with self._lock:
            deleted = 0
            for result_id in set(result_ids):
                if self._results.pop(result_id, None) is None:
                    continue
                deleted += 1
                for plan in self._plans.values():
                    if plan.result_id == result_id:
                        self._requeue(plan)
            return deleted

    def list_undersized_results(self, min_bytes: int) -> list[int]:
        with self._lock:
            return sorted(result.id for result in self._results.values() if result.size_bytes < min_bytes)

    # ------------------------------------------------------------------
    # recovery
    # ------------------------------------------------------------------
    def release_all_workers(self) -> int:
        with self._lock:
            released = 0
            for worker in self._workers.values():
                if worker.availability == WorkerAvailability.BUSY:
                    worker.availability = WorkerAvailability.AVAILABLE
                    released += 1
            return released

    def requeue_in_progress_plans(self) -> list[int]:
        with self._lock:
            stuck = [plan for plan in self._plans.values() if plan.status == PlanStatus.IN_PROGRESS]
            for plan in stuck:
                self._requeue(plan)
            return sorted(plan.id for plan in stuck)

    def requeue_plans(self, plan_ids: Iterable[int]) -> list[int]:
        with self._lock:
            requeued: list[int] = []
            for plan_id in sorted(set(plan_ids)):
                # orphaned results go as well
                self._results.pop(plan_id, None)
                plan = self._plans.get(plan_id)
                if plan is not None:
                    self._requeue(plan)
                    requeued.append(plan_id)
            return requeued

    # ------------------------------------------------------------------
    # audit
    # ------------------------------------------------------------------
    def record_assignment(self, record: AssignmentRecord) -> None:
        with self._lock:
            self._assignments.append(replace(record))

    def list_assignments(self, plan_id: int | None = None) -> list[AssignmentRecord]:
        with self._lock:
            return [replace(item) for item in self._assignments if plan_id is None or item.plan_id == plan_id]

    def reset(self) -> None:
        with self._lock:
            self._plans.clear()
            self._workers.clear()
            self._results.clear()
            self._assignments.clear()
            self._plan_counter = 0
            self._worker_counter = 0
