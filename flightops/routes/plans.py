from __future__ import annotations

from fastapi import APIRouter, Query

from flightops.application import get_plan_service
from flightops.core.schema import ExternalReferenceUpdate, FlightPlanCreate, serialise_plan
from flightops.core.validation import ValidationError, parse_id
from flightops.domain import PlanStatus

router = APIRouter(prefix="/flightPlans", tags=["flight-plans"])


@router.post("", status_code=201)
async def create_flight_plan(payload: FlightPlanCreate) -> dict:
    service = get_plan_service()
    plan = service.create_plan(
        payload.custom_name,
        payload.file_content,
        status=PlanStatus(payload.status),
        user_id=payload.user_id,
        folder_id=payload.folder_id,
    )
    return serialise_plan(plan)


@router.get("")
async def list_flight_plans(status: str | None = Query(default=None)) -> dict:
    wanted: PlanStatus | None = None
    if status:
        try:
            wanted = PlanStatus(status)
        except ValueError:
            raise ValidationError(f"unknown status {status!r}") from None
    service = get_plan_service()
    return {"items": [serialise_plan(plan) for plan in service.list_plans(wanted)]}


@router.get("/{plan_id}")
async def get_flight_plan(plan_id: str) -> dict:
    service = get_plan_service()
    plan = service.get_plan(parse_id(plan_id, label="flight plan id"))
    return serialise_plan(plan, include_content=True)


@router.post("/{plan_id}/enqueue")
async def enqueue_flight_plan(plan_id: str) -> dict:
    """Queue an unprocessed plan, or explicitly retry one that ended in error."""
    service = get_plan_service()
    plan = service.enqueue_plan(parse_id(plan_id, label="flight plan id"))
    return serialise_plan(plan)


@router.post("/{plan_id}/reset")
async def reset_flight_plan(plan_id: str) -> dict:
    service = get_plan_service()
    plan = service.reset_plan(parse_id(plan_id, label="flight plan id"))
    return {"message": "flight plan reset", "flightPlan": serialise_plan(plan)}


@router.put("/{plan_id}/external-reference")
async def set_external_reference(plan_id: str, payload: ExternalReferenceUpdate) -> dict:
    service = get_plan_service()
    plan = service.assign_external_reference(
        parse_id(plan_id, label="flight plan id"),
        payload.external_response_number,
    )
    return serialise_plan(plan)
