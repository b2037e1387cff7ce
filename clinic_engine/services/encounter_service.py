"""
Encounter orchestration.

An encounter links the active consultation draft to a patient and, when it
was opened from an appointment, to that appointment. The appointment is
moved to in_progress first; the link is only touched once that succeeded.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ..core.errors import EngineError, RemoteCallFailed
from ..schemas.encounter import EncounterLink, EncounterOutcome
from ..schemas.notification import ClinicalAlert
from ..schemas.patient import PatientSnapshot
from .appointment_state import AppointmentStateMachine
from .clinical_alerts import derive_clinical_alerts
from .gateways import NotificationGateway, PatientGateway
from .notification_feed import NotificationAggregator

logger = logging.getLogger(__name__)


class EncounterOrchestrator:
    """Active encounter of one workspace."""

    def __init__(
        self,
        state_machine: AppointmentStateMachine,
        patients: PatientGateway,
        aggregator: Optional[NotificationAggregator] = None,
    ):
        self.state_machine = state_machine
        self.patients = patients
        self.aggregator = aggregator
        self.link: Optional[EncounterLink] = None
        self.patient: Optional[PatientSnapshot] = None
        self.alerts: List[ClinicalAlert] = []

    async def start_encounter(
        self,
        patient_id: str,
        appointment_id: Optional[str] = None,
        known_status=None,
    ) -> EncounterOutcome:
        """Open a consultation for a patient, optionally from an appointment.

        If the appointment cannot be begun, nothing changes: the previous link,
        patient snapshot and alerts stay as they were. When two starts overlap
        the last one to finish owns the link.
        """
        transition = None
        if appointment_id:
            transition = await self.state_machine.begin_encounter(appointment_id, known_status)
            if not transition.ok:
                logger.warning(
                    f"Encounter not started for patient {patient_id}: "
                    f"appointment {appointment_id} {transition.error}"
                )
                return EncounterOutcome(
                    ok=False,
                    link=self.link,
                    transition=transition,
                    alerts=self.alerts,
                    error=transition.error,
                    message=transition.message,
                )

        link = EncounterLink(
            patient_id=patient_id,
            appointment_id=appointment_id,
            started_at=datetime.now(timezone.utc),
        )
        self.link = link
        self._set_patient(None)
        logger.info(f"Encounter started for patient {patient_id} (appointment {appointment_id})")

        patient_error = None
        try:
            patient = await self.patients.fetch_patient(patient_id)
        except RemoteCallFailed as e:
            logger.error(f"Could not load patient {patient_id}: {e.message}")
            patient_error = e.message
        else:
            if self.link is link:
                self._set_patient(patient)

        return EncounterOutcome(
            ok=True,
            link=link,
            transition=transition,
            alerts=self.alerts if self.link is link else [],
            patient_error=patient_error,
        )

    def end_encounter(self) -> None:
        """Drop the link. The appointment keeps whatever status it has."""
        if self.link is not None:
            logger.info(f"Encounter ended for patient {self.link.patient_id}")
        self.link = None
        self._set_patient(None)

    async def complete_encounter(self) -> EncounterOutcome:
        """Complete the linked appointment, then end the encounter."""
        link = self.link
        if link is None:
            return EncounterOutcome(ok=False, error="no_encounter", message="No active encounter")

        if link.appointment_id:
            try:
                await self.state_machine.complete(link.appointment_id)
            except EngineError as e:
                logger.warning(f"Could not complete appointment {link.appointment_id}: {e.message}")
                return EncounterOutcome(
                    ok=False, link=link, alerts=self.alerts, error=e.code, message=e.message
                )

        if self.link is link:
            self.end_encounter()
        return EncounterOutcome(ok=True, link=link)

    def release_appointment(self, appointment_id: str) -> bool:
        """Clear the link when its appointment was cancelled or completed elsewhere."""
        if self.link is not None and self.link.appointment_id == appointment_id:
            self.end_encounter()
            return True
        return False

    async def refresh_patient(self) -> Optional[PatientSnapshot]:
        """Reload the linked patient and recompute the clinical alerts."""
        link = self.link
        if link is None:
            return None
        patient = await self.patients.fetch_patient(link.patient_id)
        if self.link is link:
            self._set_patient(patient)
        return patient

    def _set_patient(self, patient: Optional[PatientSnapshot]) -> None:
        self.patient = patient
        self.alerts = derive_clinical_alerts(patient)
        if self.aggregator is not None:
            self.aggregator.set_clinical_alerts(self.alerts)


class Workspace:
    """Encounter and notification feed of one session."""

    def __init__(
        self,
        state_machine: AppointmentStateMachine,
        patients: PatientGateway,
        notifications: NotificationGateway,
    ):
        self.notifications = NotificationAggregator(notifications)
        self.encounter = EncounterOrchestrator(state_machine, patients, self.notifications)


class WorkspaceRegistry:
    """One workspace per session id, sharing a single state machine."""

    def __init__(
        self,
        state_machine: AppointmentStateMachine,
        patients: PatientGateway,
        notifications: NotificationGateway,
    ):
        self.state_machine = state_machine
        self.patients = patients
        self.notifications = notifications
        self._workspaces: Dict[str, Workspace] = {}

    def get(self, workspace_id: str) -> Workspace:
        workspace = self._workspaces.get(workspace_id)
        if workspace is None:
            workspace = Workspace(self.state_machine, self.patients, self.notifications)
            self._workspaces[workspace_id] = workspace
            logger.debug(f"Created workspace {workspace_id}")
        return workspace

    def discard(self, workspace_id: str) -> bool:
        """Forget a workspace, its encounter and its notification feed."""
        if self._workspaces.pop(workspace_id, None) is None:
            return False
        logger.debug(f"Discarded workspace {workspace_id}")
        return True

    def release_appointment(self, appointment_id: str) -> int:
        """Drop every encounter linked to an appointment that just closed."""
        return sum(
            1 for workspace in self._workspaces.values()
            if workspace.encounter.release_appointment(appointment_id)
        )
