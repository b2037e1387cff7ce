from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Text, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum
import uuid

from ..core.database import Base
from ..core.errors import InvalidTransition

class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

TERMINAL_STATUSES = frozenset({AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED})

DEFAULT_DURATION_MINUTES = 30

class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Relationships
    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=False, index=True)
    practitioner_id = Column(String(36), nullable=False, index=True)

    # Appointment details
    scheduled_at = Column(DateTime(timezone=True), nullable=False, index=True)
    duration_minutes = Column(Integer, nullable=False, default=DEFAULT_DURATION_MINUTES)
    status = Column(SQLEnum(AppointmentStatus), nullable=False, default=AppointmentStatus.SCHEDULED)
    subject = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)

    # Tracking
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    cancellation_reason = Column(String(255), nullable=True)

    # Relationships
    patient = relationship("Patient", back_populates="appointments")

    def __repr__(self):
        return f"<Appointment(id={self.id}, patient_id={self.patient_id}, status='{self.status}', date='{self.scheduled_at}')>"

# Every status spelling the engine accepts, mapped onto the canonical four.
# Legacy rows use the French vocabulary.
STATUS_SYNONYMS = {
    "scheduled": AppointmentStatus.SCHEDULED,
    "pending": AppointmentStatus.SCHEDULED,
    "programme": AppointmentStatus.SCHEDULED,
    "in_progress": AppointmentStatus.IN_PROGRESS,
    "in-progress": AppointmentStatus.IN_PROGRESS,
    "confirmed": AppointmentStatus.IN_PROGRESS,
    "en_cours": AppointmentStatus.IN_PROGRESS,
    "completed": AppointmentStatus.COMPLETED,
    "termine": AppointmentStatus.COMPLETED,
    "cancelled": AppointmentStatus.CANCELLED,
    "canceled": AppointmentStatus.CANCELLED,
    "annule": AppointmentStatus.CANCELLED,
}

def normalize_status(value) -> AppointmentStatus:
    """Map any accepted status spelling onto AppointmentStatus.

    Raises InvalidTransition for values outside the table.
    """
    if isinstance(value, AppointmentStatus):
        return value
    key = str(value or "").strip().lower()
    try:
        return STATUS_SYNONYMS[key]
    except KeyError:
        raise InvalidTransition(f"Unrecognized appointment status: {value!r}") from None
