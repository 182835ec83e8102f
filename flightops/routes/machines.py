from __future__ import annotations

from fastapi import APIRouter, Query, Response

from flightops.application import get_plan_service
from flightops.core.schema import WorkerCreate, WorkerStatusUpdate, serialise_worker
from flightops.core.validation import ValidationError, parse_id
from flightops.domain import WorkerAvailability

router = APIRouter(prefix="/machines", tags=["machines"])


@router.get("")
async def list_machines(
    name: str | None = Query(default=None),
    status: str | None = Query(default=None),
) -> dict:
    availability: WorkerAvailability | None = None
    if status:
        try:
            availability = WorkerAvailability(status)
        except ValueError:
            raise ValidationError(f"unknown status {status!r}") from None
    service = get_plan_service()
    workers = service.list_workers(availability)
    if name:
        workers = [worker for worker in workers if worker.name == name]
    return {"items": [serialise_worker(worker) for worker in workers]}


@router.post("", status_code=201)
async def register_machine(payload: WorkerCreate) -> dict:
    service = get_plan_service()
    worker = service.register_worker(payload.name, payload.address, WorkerAvailability(payload.status))
    return serialise_worker(worker)


@router.put("/{worker_id}")
async def update_machine_status(worker_id: str, payload: WorkerStatusUpdate) -> dict:
    """Set a worker's availability directly (manual intervention)."""
    service = get_plan_service()
    worker = service.set_worker_status(parse_id(worker_id, label="machine id"), WorkerAvailability(payload.status))
    return serialise_worker(worker)


@router.delete("/{worker_id}", status_code=204)
async def remove_machine(worker_id: str) -> Response:
    service = get_plan_service()
    service.remove_worker(parse_id(worker_id, label="machine id"))
    return Response(status_code=204)
