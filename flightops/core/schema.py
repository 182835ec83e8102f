from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, constr

from flightops.domain import AssignmentRecord, FlightPlan, Worker


class FlightPlanCreate(BaseModel):
    custom_name: constr(min_length=1, max_length=255) = Field(alias="customName")
    file_content: constr(min_length=1) = Field(alias="fileContent")
    status: Literal["unprocessed", "queued"] = "unprocessed"
    user_id: int | None = Field(default=None, alias="userId", gt=0)
    folder_id: int | None = Field(default=None, alias="folderId", gt=0)

    model_config = ConfigDict(populate_by_name=True)


class ExternalReferenceUpdate(BaseModel):
    external_response_number: constr(strip_whitespace=True, min_length=1, max_length=255) = Field(
        alias="externalResponseNumber"
    )

    model_config = ConfigDict(populate_by_name=True)


class WorkerCreate(BaseModel):
    name: constr(strip_whitespace=True, min_length=1, max_length=255)
    address: constr(strip_whitespace=True, min_length=1)
    status: Literal["available", "busy"] = "available"


class WorkerStatusUpdate(BaseModel):
    status: Literal["available", "busy"]


class ResultBulkRequest(BaseModel):
    ids: list[Any] = Field(min_length=1)


class ResultDeleteRequest(BaseModel):
    id: Any | None = None
    ids: list[Any] | None = None


def serialise_plan(plan: FlightPlan, *, include_content: bool = False) -> dict[str, Any]:
    data = {
        "id": plan.id,
        "customName": plan.custom_name,
        "status": plan.status.value,
        "machineAssignedId": plan.assigned_worker_id,
        "csvResult": plan.result_id,
        "authorizationStatus": plan.authorization_status.value,
        "authorizationMessage": plan.authorization_message,
        "externalResponseNumber": plan.external_response_number,
        "errorMessage": plan.error_message,
        "userId": plan.user_id,
        "folderId": plan.folder_id,
        "createdAt": _isoformat(plan.created_at),
        "updatedAt": _isoformat(plan.updated_at),
    }
    if include_content:
        data["fileContent"] = plan.file_content
    return data


def serialise_worker(worker: Worker) -> dict[str, Any]:
    return {
        "id": worker.id,
        "name": worker.name,
        "address": worker.address,
        "status": worker.availability.value,
    }


def serialise_assignment(record: AssignmentRecord) -> dict[str, Any]:
    return {
        "planId": record.plan_id,
        "workerId": record.worker_id,
        "workerName": record.worker_name,
        "assignedAt": _isoformat(record.assigned_at),
    }


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
