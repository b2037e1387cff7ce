from pydantic import BaseModel, Field
from datetime import datetime
from typing import List, Optional

from ..models.appointment import AppointmentStatus
from .notification import ClinicalAlert

class EncounterLink(BaseModel):
    """Patient (and optionally appointment) of the active consultation draft."""

    patient_id: str
    appointment_id: Optional[str] = None
    started_at: datetime

class TransitionResult(BaseModel):
    ok: bool
    appointment_id: str
    status: Optional[AppointmentStatus] = None
    # False for idempotent no-ops
    changed: bool = False
    # terminal_state, invalid_status, remote_failure or not_found
    error: Optional[str] = None
    message: Optional[str] = None

class EncounterOutcome(BaseModel):
    ok: bool
    link: Optional[EncounterLink] = None
    transition: Optional[TransitionResult] = None
    alerts: List[ClinicalAlert] = Field(default_factory=list)
    error: Optional[str] = None
    message: Optional[str] = None
    # Set when the link was made but the patient snapshot could not be loaded
    patient_error: Optional[str] = None

class StartEncounterRequest(BaseModel):
    patient_id: str
    appointment_id: Optional[str] = None
    known_status: Optional[str] = None

class BeginEncounterRequest(BaseModel):
    known_status: Optional[str] = None
