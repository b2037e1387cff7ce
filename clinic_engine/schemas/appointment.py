from pydantic import BaseModel, field_validator
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from ..models.appointment import AppointmentStatus, DEFAULT_DURATION_MINUTES, normalize_status

class AppointmentSnapshot(BaseModel):
    """Appointment as returned by the appointment service."""

    id: str
    patient_id: str
    practitioner_id: Optional[str] = None
    scheduled_at: datetime
    duration_minutes: int = DEFAULT_DURATION_MINUTES
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    cancellation_reason: Optional[str] = None
    subject: Optional[str] = None
    notes: Optional[str] = None

    class Config:
        from_attributes = True

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value):
        return normalize_status(value)

    @field_validator("scheduled_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        # SQLite hands back naive datetimes
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @field_validator("duration_minutes", mode="before")
    @classmethod
    def _default_duration(cls, value):
        return value or DEFAULT_DURATION_MINUTES

    @property
    def ends_at(self) -> datetime:
        return self.scheduled_at + timedelta(minutes=self.duration_minutes)

class TimelineBlock(BaseModel):
    appointment_id: str
    patient_id: str
    status: AppointmentStatus
    starts_at: datetime
    duration_minutes: int
    offset: float
    height: float
    # True when the window cut part of the appointment off
    clipped: bool = False

class TimelineResponse(BaseModel):
    day: str
    start_hour: int
    end_hour: int
    total_height: float
    blocks: List[TimelineBlock]

class CancelRequest(BaseModel):
    reason: Optional[str] = None
