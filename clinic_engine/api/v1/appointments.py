from fastapi import APIRouter, Depends, HTTPException, Query, status
from datetime import date, datetime
from typing import Optional

from ...api.deps import get_appointments, get_registry, get_state_machine
from ...core.config import settings
from ...schemas.appointment import (
    AppointmentSnapshot,
    CancelRequest,
    TimelineResponse,
)
from ...schemas.encounter import BeginEncounterRequest, TransitionResult
from ...services.appointment_state import AppointmentStateMachine
from ...services.encounter_service import WorkspaceRegistry
from ...services.gateways import AppointmentGateway
from ...services.timeline import business_timezone, layout_day, window_span

router = APIRouter(prefix="/appointments", tags=["Appointments"])

@router.post("/{appointment_id}/begin", response_model=TransitionResult)
async def begin_appointment(
    appointment_id: str,
    request: Optional[BeginEncounterRequest] = None,
    state_machine: AppointmentStateMachine = Depends(get_state_machine),
):
    """Move an appointment to in progress. Already-started appointments succeed as no-ops."""
    known_status = request.known_status if request else None
    return await state_machine.begin_encounter(appointment_id, known_status)

@router.post("/{appointment_id}/cancel", response_model=AppointmentSnapshot)
async def cancel_appointment(
    appointment_id: str,
    request: Optional[CancelRequest] = None,
    state_machine: AppointmentStateMachine = Depends(get_state_machine),
    registry: WorkspaceRegistry = Depends(get_registry),
):
    snapshot = await state_machine.cancel(appointment_id, request.reason if request else None)
    registry.release_appointment(appointment_id)
    return snapshot

@router.post("/{appointment_id}/complete", response_model=AppointmentSnapshot)
async def complete_appointment(
    appointment_id: str,
    state_machine: AppointmentStateMachine = Depends(get_state_machine),
    registry: WorkspaceRegistry = Depends(get_registry),
):
    snapshot = await state_machine.complete(appointment_id)
    registry.release_appointment(appointment_id)
    return snapshot

@router.get("/timeline", response_model=TimelineResponse)
async def day_timeline(
    day: Optional[date] = Query(None, description="Business-local day, defaults to today"),
    practitioner_id: Optional[str] = None,
    appointments: AppointmentGateway = Depends(get_appointments),
):
    """Block layout of one day of appointments."""
    tz = business_timezone()
    day = day or datetime.now(tz).date()
    snapshots = await appointments.list_appointments(day, practitioner_id)
    try:
        blocks = layout_day(snapshots, day, tz=tz)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return TimelineResponse(
        day=day.isoformat(),
        start_hour=settings.TIMELINE_START_HOUR,
        end_hour=settings.TIMELINE_END_HOUR,
        total_height=window_span(
            settings.TIMELINE_START_HOUR,
            settings.TIMELINE_END_HOUR,
            settings.TIMELINE_UNITS_PER_HOUR,
        ),
        blocks=blocks,
    )
