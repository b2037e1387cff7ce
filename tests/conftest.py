import asyncio
import os
from datetime import date, datetime, timezone
from typing import Dict, List, Optional

import pytest

# Set testing environment before the settings are loaded
os.environ["TESTING"] = "1"
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///./test.db")

from clinic_engine.core.errors import (
    AppointmentNotFound,
    InvalidTransition,
    RemoteFetchFailed,
    RemoteMutationFailed,
)
from clinic_engine.models.appointment import AppointmentStatus
from clinic_engine.schemas.appointment import AppointmentSnapshot
from clinic_engine.schemas.notification import NotificationFilter, NotificationRecord
from clinic_engine.schemas.patient import PatientSnapshot
from clinic_engine.services.appointment_state import can_transition


class FakeClinic:
    """In-memory appointment, patient and notification service.

    Counts mutations and can be told to fail or to stall status changes.
    """

    def __init__(self):
        self.appointments: Dict[str, AppointmentSnapshot] = {}
        self.patients: Dict[str, PatientSnapshot] = {}
        self.notifications: Dict[str, NotificationRecord] = {}
        self.status_calls: List[tuple] = []
        self.fetch_calls = 0
        self.fail_status_change: Optional[Exception] = None
        self.fail_patient_fetch: Optional[Exception] = None
        self.fail_notification_mutation: Optional[Exception] = None
        self.status_delay = 0.0
        self.read_calls: List[str] = []
        self.archive_calls: List[str] = []

    def add_appointment(self, appointment_id="apt-1", patient_id="pat-1", status="scheduled", **kwargs):
        kwargs.setdefault("scheduled_at", datetime(2024, 3, 10, 9, 0, tzinfo=timezone.utc))
        snapshot = AppointmentSnapshot(
            id=appointment_id, patient_id=patient_id, status=status, **kwargs
        )
        self.appointments[appointment_id] = snapshot
        return snapshot

    def add_patient(self, patient_id="pat-1", name="Amani Kabila", allergies=None, medical_history=None):
        patient = PatientSnapshot(
            id=patient_id, name=name, allergies=allergies, medical_history=medical_history
        )
        self.patients[patient_id] = patient
        return patient

    def add_notification(self, notification_id, created_at, **kwargs):
        kwargs.setdefault("title", f"Notification {notification_id}")
        record = NotificationRecord(id=notification_id, created_at=created_at, **kwargs)
        self.notifications[notification_id] = record
        return record

    async def fetch_appointment(self, appointment_id):
        self.fetch_calls += 1
        if appointment_id not in self.appointments:
            raise AppointmentNotFound(f"Appointment {appointment_id} not found", appointment_id)
        return self.appointments[appointment_id]

    async def set_appointment_status(self, appointment_id, status, reason=None):
        self.status_calls.append((appointment_id, status, reason))
        if self.status_delay:
            await asyncio.sleep(self.status_delay)
        if self.fail_status_change is not None:
            raise self.fail_status_change
        if appointment_id not in self.appointments:
            raise AppointmentNotFound(f"Appointment {appointment_id} not found", appointment_id)
        current = self.appointments[appointment_id].status
        if current is status:
            return self.appointments[appointment_id]
        if not can_transition(current, status):
            raise InvalidTransition(
                f"Cannot move appointment from {current.value} to {status.value}",
                appointment_id=appointment_id,
                current_status=current.value,
            )
        update = {"status": status}
        if status is AppointmentStatus.CANCELLED:
            update["cancellation_reason"] = reason
        snapshot = self.appointments[appointment_id].model_copy(update=update)
        self.appointments[appointment_id] = snapshot
        return snapshot

    async def list_appointments(self, day: date, practitioner_id=None):
        return [
            a for a in self.appointments.values()
            if practitioner_id is None or a.practitioner_id == practitioner_id
        ]

    async def fetch_patient(self, patient_id):
        if self.fail_patient_fetch is not None:
            raise self.fail_patient_fetch
        if patient_id not in self.patients:
            raise RemoteFetchFailed(f"Patient {patient_id} not found")
        return self.patients[patient_id]

    async def fetch_notifications(self, notification_filter: NotificationFilter):
        records = [r for r in self.notifications.values() if not r.is_archived]
        if notification_filter.unread_only:
            records = [r for r in records if not r.is_read]
        if notification_filter.category:
            records = [r for r in records if r.category == notification_filter.category]
        return records

    async def mark_notification_read(self, notification_id):
        self.read_calls.append(notification_id)
        if self.fail_notification_mutation is not None:
            raise self.fail_notification_mutation
        record = self.notifications[notification_id]
        self.notifications[notification_id] = record.model_copy(update={"is_read": True})

    async def mark_all_notifications_read(self):
        if self.fail_notification_mutation is not None:
            raise self.fail_notification_mutation
        unread = [key for key, r in self.notifications.items() if not r.is_read]
        for key in unread:
            self.notifications[key] = self.notifications[key].model_copy(update={"is_read": True})
        return len(unread)

    async def archive_notification(self, notification_id):
        self.archive_calls.append(notification_id)
        if self.fail_notification_mutation is not None:
            raise self.fail_notification_mutation
        record = self.notifications[notification_id]
        self.notifications[notification_id] = record.model_copy(update={"is_archived": True})


@pytest.fixture
def clinic():
    return FakeClinic()


@pytest.fixture
def now():
    return datetime(2024, 3, 10, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def mutation_failure():
    return RemoteMutationFailed("Service unavailable")
