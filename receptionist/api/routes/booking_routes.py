"""
Booking API route.
Executes one catalog function against the scheduling backend on behalf of an
authenticated caller. The tenant comes from the caller's credentials, never
from the request body.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from receptionist.core.auth import AuthenticatedCaller, get_booking_caller
from receptionist.core.exceptions import BookingApiError
from receptionist.models.booking_schemas import BookingRequest, BookingResponse
from receptionist.services.booking_client import booking_client, strip_tenant_fields
from receptionist.services.function_catalog import get_entry, validate_parameters

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["booking"])


@router.post("/booking", response_model=BookingResponse)
async def execute_booking_function(
    request: BookingRequest,
    caller: AuthenticatedCaller = Depends(get_booking_caller)
):
    """
    Execute a booking function.

    Validation failures answer 200 with success false so the calling model
    can read the error and ask the user for what is missing.
    """
    entry = get_entry(request.function_name)
    if entry is None or entry.is_local:
        raise HTTPException(status_code=404, detail=f"Unknown booking function: {request.function_name}")

    parameters, stripped = strip_tenant_fields(request.parameters)
    if stripped:
        logger.warning(f"Stripped tenant fields {stripped} from {request.function_name} ({caller.kind} caller)")

    validation_error = validate_parameters(entry.name, parameters)
    if validation_error is not None:
        logger.info(f"Validation failed for {entry.name}: {validation_error.get('missingFields')}")
        return BookingResponse(success=False, error=validation_error)

    try:
        payload, status_code = await booking_client.forward_to_backend(entry.name, parameters, caller.organization_id)
    except BookingApiError as e:
        logger.error(f"Scheduling backend unreachable for {entry.name}: {e}")
        return BookingResponse(success=False, error={"message": str(e), "status": e.status_code})

    if status_code >= 400:
        logger.warning(f"Scheduling backend rejected {entry.name}: HTTP {status_code}")
        error = payload.get("error", payload) if isinstance(payload, dict) else payload
        return BookingResponse(success=False, error={"message": error, "status": status_code})

    # Backends may already wrap results as {success, result}
    if isinstance(payload, dict) and "success" in payload and ("result" in payload or "error" in payload):
        return BookingResponse(success=bool(payload["success"]), result=payload.get("result"), error=payload.get("error"))
    return BookingResponse(success=True, result=payload)
