import asyncio

import pytest

from clinic_engine.core.errors import RemoteFetchFailed
from clinic_engine.models.appointment import AppointmentStatus
from clinic_engine.services.appointment_state import REMOTE_FAILURE, TERMINAL_STATE, AppointmentStateMachine
from clinic_engine.services.encounter_service import EncounterOrchestrator, WorkspaceRegistry


@pytest.fixture
def machine(clinic):
    return AppointmentStateMachine(clinic)


@pytest.fixture
def orchestrator(machine, clinic):
    return EncounterOrchestrator(machine, clinic)


class TestStartEncounter:
    @pytest.mark.asyncio
    async def test_links_patient_and_appointment(self, clinic, orchestrator):
        clinic.add_appointment(status="scheduled")
        clinic.add_patient(allergies="Peanuts, Penicillin")

        outcome = await orchestrator.start_encounter("pat-1", "apt-1")

        assert outcome.ok
        assert outcome.transition.changed
        assert orchestrator.link.patient_id == "pat-1"
        assert orchestrator.link.appointment_id == "apt-1"
        assert clinic.appointments["apt-1"].status is AppointmentStatus.IN_PROGRESS
        assert [a.display_text for a in outcome.alerts] == ["Peanuts, Penicillin"]

    @pytest.mark.asyncio
    async def test_ad_hoc_encounter(self, clinic, orchestrator):
        clinic.add_patient()

        outcome = await orchestrator.start_encounter("pat-1")

        assert outcome.ok
        assert outcome.transition is None
        assert orchestrator.link.appointment_id is None
        assert clinic.status_calls == []

    @pytest.mark.asyncio
    async def test_failed_transition_leaves_link_unset(self, clinic, orchestrator, mutation_failure):
        clinic.add_appointment(status="scheduled")
        clinic.add_patient()
        clinic.fail_status_change = mutation_failure

        outcome = await orchestrator.start_encounter("pat-1", "apt-1")

        assert not outcome.ok
        assert outcome.error == REMOTE_FAILURE
        assert orchestrator.link is None

    @pytest.mark.asyncio
    async def test_terminal_appointment_keeps_previous_link(self, clinic, orchestrator):
        clinic.add_patient("pat-1", allergies="Latex")
        clinic.add_patient("pat-2")
        clinic.add_appointment("apt-2", patient_id="pat-2", status="completed")
        await orchestrator.start_encounter("pat-1")
        previous = orchestrator.link

        outcome = await orchestrator.start_encounter("pat-2", "apt-2")

        assert not outcome.ok
        assert outcome.error == TERMINAL_STATE
        assert orchestrator.link is previous
        assert [a.patient_id for a in orchestrator.alerts] == ["pat-1"]

    @pytest.mark.asyncio
    async def test_patient_failure_keeps_transition(self, clinic, orchestrator):
        clinic.add_appointment(status="scheduled")
        clinic.fail_patient_fetch = RemoteFetchFailed("Patient service down")

        outcome = await orchestrator.start_encounter("pat-1", "apt-1")

        assert outcome.ok
        assert outcome.patient_error == "Patient service down"
        assert orchestrator.link.appointment_id == "apt-1"
        assert orchestrator.alerts == []

    @pytest.mark.asyncio
    async def test_last_caller_wins(self, clinic, orchestrator):
        clinic.add_patient("pat-1")
        clinic.add_patient("pat-2")
        clinic.add_appointment("apt-1", patient_id="pat-1")
        clinic.add_appointment("apt-2", patient_id="pat-2")
        clinic.status_delay = 0.01

        await asyncio.gather(
            orchestrator.start_encounter("pat-1", "apt-1"),
            orchestrator.start_encounter("pat-2", "apt-2"),
        )

        assert orchestrator.link.patient_id == "pat-2"
        assert orchestrator.patient.id == "pat-2"


class TestEndAndComplete:
    @pytest.mark.asyncio
    async def test_end_clears_link_only(self, clinic, orchestrator):
        clinic.add_appointment(status="scheduled")
        clinic.add_patient()
        await orchestrator.start_encounter("pat-1", "apt-1")

        orchestrator.end_encounter()

        assert orchestrator.link is None
        assert orchestrator.alerts == []
        assert clinic.appointments["apt-1"].status is AppointmentStatus.IN_PROGRESS

    def test_end_without_encounter(self, orchestrator):
        orchestrator.end_encounter()
        assert orchestrator.link is None

    @pytest.mark.asyncio
    async def test_complete_encounter(self, clinic, orchestrator):
        clinic.add_appointment(status="scheduled")
        clinic.add_patient()
        await orchestrator.start_encounter("pat-1", "apt-1")

        outcome = await orchestrator.complete_encounter()

        assert outcome.ok
        assert orchestrator.link is None
        assert clinic.appointments["apt-1"].status is AppointmentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_complete_failure_keeps_link(self, clinic, orchestrator, mutation_failure):
        clinic.add_appointment(status="scheduled")
        clinic.add_patient()
        await orchestrator.start_encounter("pat-1", "apt-1")
        clinic.fail_status_change = mutation_failure

        outcome = await orchestrator.complete_encounter()

        assert not outcome.ok
        assert outcome.error == "remote_failure"
        assert orchestrator.link is not None

    @pytest.mark.asyncio
    async def test_complete_without_encounter(self, orchestrator):
        outcome = await orchestrator.complete_encounter()
        assert outcome.error == "no_encounter"


class TestWorkspaceRegistry:
    @pytest.mark.asyncio
    async def test_alerts_reach_workspace_feed(self, clinic, machine):
        clinic.add_patient(medical_history="hypertension")
        registry = WorkspaceRegistry(machine, clinic, clinic)
        workspace = registry.get("desk-1")

        await workspace.encounter.start_encounter("pat-1")

        assert [a.id for a in workspace.notifications.alerts] == ["condition-alert-pat-1-hypertension"]
        assert registry.get("desk-2").notifications.alerts == []

    @pytest.mark.asyncio
    async def test_release_appointment(self, clinic, machine):
        clinic.add_appointment(status="scheduled")
        clinic.add_patient()
        registry = WorkspaceRegistry(machine, clinic, clinic)
        workspace = registry.get("desk-1")
        await workspace.encounter.start_encounter("pat-1", "apt-1")

        assert registry.release_appointment("apt-1") == 1
        assert workspace.encounter.link is None

    def test_get_is_stable(self, clinic, machine):
        registry = WorkspaceRegistry(machine, clinic, clinic)
        assert registry.get("a") is registry.get("a")
        assert registry.discard("a")
        assert not registry.discard("a")
        assert registry.get("a") is not None
