"""
Interfaces of the external services the engine talks to.

Implementations live in ``store`` (local SQLAlchemy database) and
``http_gateway`` (remote clinic API). Both raise RemoteFetchFailed /
RemoteMutationFailed for transport problems and AppointmentNotFound for
unknown appointment ids.
"""
from datetime import date
from typing import List, Optional, Protocol

from ..models.appointment import AppointmentStatus
from ..schemas.appointment import AppointmentSnapshot
from ..schemas.notification import NotificationFilter, NotificationRecord
from ..schemas.patient import PatientSnapshot


class AppointmentGateway(Protocol):
    async def fetch_appointment(self, appointment_id: str) -> AppointmentSnapshot:
        ...

    async def set_appointment_status(
        self,
        appointment_id: str,
        status: AppointmentStatus,
        reason: Optional[str] = None,
    ) -> AppointmentSnapshot:
        ...

    async def list_appointments(
        self, day: date, practitioner_id: Optional[str] = None
    ) -> List[AppointmentSnapshot]:
        ...


class PatientGateway(Protocol):
    async def fetch_patient(self, patient_id: str) -> PatientSnapshot:
        ...


class NotificationGateway(Protocol):
    async def fetch_notifications(
        self, notification_filter: NotificationFilter
    ) -> List[NotificationRecord]:
        ...

    async def mark_notification_read(self, notification_id: str) -> None:
        ...

    async def mark_all_notifications_read(self) -> int:
        ...

    async def archive_notification(self, notification_id: str) -> None:
        ...
