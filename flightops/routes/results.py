from __future__ import annotations

from fastapi import APIRouter, Query, Response

from flightops.application import get_plan_service
from flightops.core.schema import ResultBulkRequest, ResultDeleteRequest, serialise_assignment
from flightops.core.validation import ValidationError, parse_id

router = APIRouter(tags=["results"])


@router.get("/csvResult")
async def get_result(id: str | None = Query(default=None)) -> dict:
    if id is None:
        raise ValidationError("ID parameter required for GET")
    service = get_plan_service()
    result = service.get_result(parse_id(id))
    return {"csvResult": result.payload}


@router.post("/csvResult/bulk")
async def get_results_bulk(payload: ResultBulkRequest) -> dict:
    service = get_plan_service()
    return {"items": service.get_results_bulk(payload.ids)}


@router.delete("/csvResult", response_model=None)
async def delete_results(payload: ResultDeleteRequest) -> Response | dict:
    service = get_plan_service()
    if payload.id is not None:
        result_id = parse_id(payload.id)
        service.get_result(result_id)
        service.delete_results([result_id])
        return Response(status_code=204)
    if payload.ids:
        return {"deletedCount": service.delete_results(payload.ids)}
    raise ValidationError("id or ids[] required for DELETE")


@router.get("/assignments")
async def list_assignments(plan_id: str | None = Query(default=None, alias="planId")) -> dict:
    service = get_plan_service()
    wanted = parse_id(plan_id, label="flight plan id") if plan_id is not None else None
    return {"items": [serialise_assignment(record) for record in service.list_assignments(wanted)]}
