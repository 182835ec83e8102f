"""Callback endpoint for the external flight authorization service (FAS).

Called by a third party, so it carries no user authentication; it can only
rewrite the authorization fields of an existing plan.
"""
from __future__ import annotations

import json

from fastapi import APIRouter, Request

from flightops.application import get_plan_service
from flightops.core.validation import ValidationError

router = APIRouter(prefix="/fas", tags=["authorization"])


@router.put("/{external_response_number}")
async def authorization_callback(external_response_number: str, request: Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Invalid JSON body") from None

    service = get_plan_service()
    plan = service.apply_authorization_callback(external_response_number, body)
    return {"success": True, "id": plan.id, "authorizationStatus": plan.authorization_status.value}
