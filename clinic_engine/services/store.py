"""
Gateway implementation backed by the local SQLAlchemy database.

Used by the bundled FastAPI application. Each call opens its own session so
the gateway can be shared between workspaces.
"""
import logging
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.database import SessionLocal
from ..core.errors import (
    AppointmentNotFound,
    InvalidTransition,
    RemoteFetchFailed,
    RemoteMutationFailed,
)
from ..models.appointment import Appointment, AppointmentStatus, normalize_status
from ..models.notification import Notification
from ..models.patient import Patient
from ..schemas.appointment import AppointmentSnapshot
from ..schemas.notification import NotificationFilter, NotificationRecord
from ..schemas.patient import PatientSnapshot
from .appointment_state import can_transition

logger = logging.getLogger(__name__)


def _to_record(notification: Notification) -> NotificationRecord:
    return NotificationRecord(
        id=notification.id,
        severity=notification.severity,
        category=notification.category,
        title=notification.title,
        message=notification.message or "",
        is_read=notification.is_read,
        is_archived=notification.is_archived,
        created_at=notification.created_at or datetime.now(timezone.utc),
        target_id=notification.target_id,
        target_type=notification.target_type,
        action_url=notification.action_url,
        metadata=notification.extra,
    )


class SqlAlchemyStore:
    """Appointments, patients and notifications from the local database."""

    def __init__(self, session_factory=SessionLocal, user_id: Optional[str] = None):
        self.session_factory = session_factory
        self.user_id = user_id

    @contextmanager
    def _session(self, error_cls) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error: {str(e)}")
            raise error_cls(f"Database error: {str(e)}") from e
        finally:
            db.close()

    def _get_appointment(self, db: Session, appointment_id: str) -> Appointment:
        appointment = db.query(Appointment).filter(Appointment.id == appointment_id).first()
        if not appointment:
            raise AppointmentNotFound(
                f"Appointment {appointment_id} not found", appointment_id=appointment_id
            )
        return appointment

    def _ensure_practitioner_free(self, db: Session, appointment: Appointment) -> None:
        if not appointment.practitioner_id:
            return
        busy = (
            db.query(Appointment)
            .filter(
                Appointment.practitioner_id == appointment.practitioner_id,
                Appointment.status == AppointmentStatus.IN_PROGRESS,
                Appointment.id != appointment.id,
            )
            .first()
        )
        if busy:
            logger.warning(
                f"Practitioner {appointment.practitioner_id} already has appointment {busy.id} in progress"
            )
            raise InvalidTransition(
                f"Practitioner already has appointment {busy.id} in progress",
                appointment_id=appointment.id,
                current_status=normalize_status(appointment.status).value,
            )

    async def fetch_appointment(self, appointment_id: str) -> AppointmentSnapshot:
        with self._session(RemoteFetchFailed) as db:
            appointment = self._get_appointment(db, appointment_id)
            return AppointmentSnapshot.model_validate(appointment)

    async def set_appointment_status(
        self,
        appointment_id: str,
        status: AppointmentStatus,
        reason: Optional[str] = None,
    ) -> AppointmentSnapshot:
        """Apply a lifecycle step, checked against the stored status.

        Writing the current status again is accepted as a no-op. A
        practitioner has at most one appointment in progress.
        """
        with self._session(RemoteMutationFailed) as db:
            appointment = self._get_appointment(db, appointment_id)
            current = normalize_status(appointment.status)
            if current is status:
                return AppointmentSnapshot.model_validate(appointment)
            if not can_transition(current, status):
                logger.warning(
                    f"Store refused appointment {appointment_id}: {current.value} -> {status.value}"
                )
                raise InvalidTransition(
                    f"Cannot move appointment from {current.value} to {status.value}",
                    appointment_id=appointment_id,
                    current_status=current.value,
                )
            if status is AppointmentStatus.IN_PROGRESS:
                self._ensure_practitioner_free(db, appointment)

            appointment.status = status
            if status is AppointmentStatus.CANCELLED:
                appointment.cancellation_reason = reason
            db.commit()
            db.refresh(appointment)
            return AppointmentSnapshot.model_validate(appointment)

    async def list_appointments(
        self, day: date, practitioner_id: Optional[str] = None
    ) -> List[AppointmentSnapshot]:
        """Appointments around ``day``; the caller narrows to the business-local day."""
        # Widened by a day on each side so every timezone offset is covered
        window_start = datetime.combine(day - timedelta(days=1), time.min, tzinfo=timezone.utc)
        window_end = datetime.combine(day + timedelta(days=2), time.min, tzinfo=timezone.utc)
        with self._session(RemoteFetchFailed) as db:
            query = db.query(Appointment).filter(
                Appointment.scheduled_at >= window_start,
                Appointment.scheduled_at < window_end,
            )
            if practitioner_id:
                query = query.filter(Appointment.practitioner_id == practitioner_id)
            return [
                AppointmentSnapshot.model_validate(a)
                for a in query.order_by(Appointment.scheduled_at, Appointment.id).all()
            ]

    async def fetch_patient(self, patient_id: str) -> PatientSnapshot:
        with self._session(RemoteFetchFailed) as db:
            patient = db.query(Patient).filter(Patient.id == patient_id).first()
            if not patient:
                raise RemoteFetchFailed(f"Patient {patient_id} not found")
            return PatientSnapshot(
                id=patient.id,
                name=patient.full_name,
                allergies=patient.allergies,
                medical_history=patient.medical_history,
            )

    def _notifications(self, db: Session):
        query = db.query(Notification)
        if self.user_id:
            query = query.filter(Notification.user_id == self.user_id)
        return query

    async def fetch_notifications(
        self, notification_filter: NotificationFilter
    ) -> List[NotificationRecord]:
        with self._session(RemoteFetchFailed) as db:
            query = self._notifications(db).filter(Notification.is_archived.is_(False))
            if notification_filter.unread_only:
                query = query.filter(Notification.is_read.is_(False))
            if notification_filter.category:
                query = query.filter(Notification.category == notification_filter.category)
            skip = (max(notification_filter.page, 1) - 1) * notification_filter.limit
            rows = (
                query.order_by(Notification.created_at.desc())
                .offset(skip)
                .limit(notification_filter.limit)
                .all()
            )
            return [_to_record(row) for row in rows]

    def _get_notification(self, db: Session, notification_id: str) -> Notification:
        notification = self._notifications(db).filter(Notification.id == notification_id).first()
        if not notification:
            raise RemoteMutationFailed(f"Notification {notification_id} not found")
        return notification

    async def mark_notification_read(self, notification_id: str) -> None:
        with self._session(RemoteMutationFailed) as db:
            notification = self._get_notification(db, notification_id)
            if not notification.is_read:
                notification.is_read = True
                notification.read_at = datetime.now(timezone.utc)
                db.commit()

    async def mark_all_notifications_read(self) -> int:
        with self._session(RemoteMutationFailed) as db:
            updated = (
                self._notifications(db)
                .filter(Notification.is_read.is_(False))
                .update(
                    {"is_read": True, "read_at": datetime.now(timezone.utc)},
                    synchronize_session=False,
                )
            )
            db.commit()
            return updated

    async def archive_notification(self, notification_id: str) -> None:
        with self._session(RemoteMutationFailed) as db:
            notification = self._get_notification(db, notification_id)
            notification.is_archived = True
            db.commit()
