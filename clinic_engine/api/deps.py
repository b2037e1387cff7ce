from fastapi import Depends, Header, Request
from typing import Optional

from ..services.appointment_state import AppointmentStateMachine
from ..services.encounter_service import Workspace, WorkspaceRegistry
from ..services.gateways import AppointmentGateway

DEFAULT_WORKSPACE = "default"

def get_registry(request: Request) -> WorkspaceRegistry:
    """Workspace registry built at startup."""
    return request.app.state.registry

def get_state_machine(request: Request) -> AppointmentStateMachine:
    return request.app.state.state_machine

def get_appointments(request: Request) -> AppointmentGateway:
    return request.app.state.gateway

async def get_workspace(
    x_workspace_id: Optional[str] = Header(None),
    registry: WorkspaceRegistry = Depends(get_registry),
) -> Workspace:
    """Workspace selected by the X-Workspace-Id header."""
    return registry.get(x_workspace_id or DEFAULT_WORKSPACE)
