from fastapi import APIRouter, Depends, Header
from typing import Optional

from ...api.deps import DEFAULT_WORKSPACE, get_registry, get_workspace
from ...schemas.encounter import EncounterLink, EncounterOutcome, StartEncounterRequest
from ...services.encounter_service import Workspace, WorkspaceRegistry

router = APIRouter(prefix="/encounters", tags=["Encounters"])

@router.post("/start", response_model=EncounterOutcome)
async def start_encounter(
    request: StartEncounterRequest,
    workspace: Workspace = Depends(get_workspace),
):
    """Open a consultation, beginning the appointment first when one is given."""
    return await workspace.encounter.start_encounter(
        request.patient_id, request.appointment_id, request.known_status
    )

@router.post("/end")
async def end_encounter(workspace: Workspace = Depends(get_workspace)):
    """Close the consultation draft without touching the appointment."""
    workspace.encounter.end_encounter()
    return {"message": "Encounter ended"}

@router.post("/complete", response_model=EncounterOutcome)
async def complete_encounter(workspace: Workspace = Depends(get_workspace)):
    return await workspace.encounter.complete_encounter()

@router.get("/current", response_model=Optional[EncounterLink])
async def current_encounter(workspace: Workspace = Depends(get_workspace)):
    return workspace.encounter.link

@router.delete("/workspace")
async def discard_workspace(
    x_workspace_id: Optional[str] = Header(None),
    registry: WorkspaceRegistry = Depends(get_registry),
):
    """Drop the caller's workspace when its session ends."""
    discarded = registry.discard(x_workspace_id or DEFAULT_WORKSPACE)
    return {"discarded": discarded}
