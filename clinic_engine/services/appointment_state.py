"""
Appointment lifecycle.

    scheduled -> in_progress -> completed
    scheduled -> cancelled
    in_progress -> cancelled

completed and cancelled are terminal. The same appointment can be begun from
several entry points (deep link, calendar tile, notification action), so
begin_encounter is a check-then-act that treats "already in progress" as
success.
"""
import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Dict, Optional

from ..core.errors import (
    AppointmentNotFound,
    InvalidTransition,
    RemoteCallFailed,
    RemoteMutationFailed,
)
from ..models.appointment import AppointmentStatus, normalize_status
from ..schemas.appointment import AppointmentSnapshot
from ..schemas.encounter import TransitionResult
from .gateways import AppointmentGateway

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    AppointmentStatus.SCHEDULED: frozenset({AppointmentStatus.IN_PROGRESS, AppointmentStatus.CANCELLED}),
    AppointmentStatus.IN_PROGRESS: frozenset({AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED}),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
}

# Position along the lifecycle; both terminal statuses share the last rank
LIFECYCLE_RANK = {
    AppointmentStatus.SCHEDULED: 0,
    AppointmentStatus.IN_PROGRESS: 1,
    AppointmentStatus.COMPLETED: 2,
    AppointmentStatus.CANCELLED: 2,
}

DEFAULT_CANCELLATION_REASON = "Appointment cancelled"

# Appointments whose observed status and last result are remembered
MAX_TRACKED_APPOINTMENTS = 1024

# Error kinds carried by TransitionResult
TERMINAL_STATE = "terminal_state"
INVALID_STATUS = "invalid_status"
REMOTE_FAILURE = "remote_failure"
NOT_FOUND = "not_found"


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    """Check whether current -> target is an allowed lifecycle step."""
    return target in ALLOWED_TRANSITIONS[current]


def is_startable(appointment: AppointmentSnapshot, now: Optional[datetime] = None) -> bool:
    """Whether a consultation can still be opened for the appointment.

    Terminal appointments and appointments whose slot is already over are not
    startable.
    """
    if appointment.status.is_terminal:
        return False
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return appointment.ends_at >= now


class AppointmentStateMachine:
    """Canonical status transitions for appointments held by an external store."""

    def __init__(self, gateway: AppointmentGateway, max_tracked: int = MAX_TRACKED_APPOINTMENTS):
        self.gateway = gateway
        self.max_tracked = max_tracked
        self._observed: "OrderedDict[str, AppointmentStatus]" = OrderedDict()
        self._in_flight: Dict[str, "asyncio.Task[TransitionResult]"] = {}
        self.last_results: "OrderedDict[str, TransitionResult]" = OrderedDict()

    def observed_status(self, appointment_id: str) -> Optional[AppointmentStatus]:
        """Furthest status this state machine has seen for the appointment."""
        return self._observed.get(appointment_id)

    def _observe(self, appointment_id: str, status: AppointmentStatus) -> AppointmentStatus:
        previous = self._observed.get(appointment_id)
        if previous is not None and LIFECYCLE_RANK[status] <= LIFECYCLE_RANK[previous]:
            status = previous
        self._remember(self._observed, appointment_id, status)
        return status

    def _remember(self, mapping: OrderedDict, appointment_id: str, value) -> None:
        mapping[appointment_id] = value
        mapping.move_to_end(appointment_id)
        while len(mapping) > self.max_tracked:
            mapping.popitem(last=False)

    async def current_status(
        self, appointment_id: str, known_status=None
    ) -> AppointmentStatus:
        """Resolve the status to act on.

        A caller-supplied status skips the fetch. Whatever this state machine
        already observed wins when it is further along the lifecycle.
        """
        if known_status is None:
            snapshot = await self.gateway.fetch_appointment(appointment_id)
            return self._observe(appointment_id, snapshot.status)

        status = normalize_status(known_status)
        observed = self._observed.get(appointment_id)
        if observed is not None and LIFECYCLE_RANK[observed] > LIFECYCLE_RANK[status]:
            return observed
        return status

    async def begin_encounter(
        self, appointment_id: str, known_status=None
    ) -> TransitionResult:
        """Move an appointment to in_progress.

        Returns a successful no-op when the appointment is already in progress
        and a failure for terminal appointments, without any mutation. Callers
        racing on the same appointment share one in-flight request.
        """
        pending = self._in_flight.get(appointment_id)
        if pending is not None:
            logger.info(f"Joining in-flight begin for appointment {appointment_id}")
            return await asyncio.shield(pending)

        task = asyncio.ensure_future(self._begin(appointment_id, known_status))
        self._in_flight[appointment_id] = task

        def _release(done, appointment_id=appointment_id):
            if self._in_flight.get(appointment_id) is done:
                del self._in_flight[appointment_id]

        task.add_done_callback(_release)
        return await asyncio.shield(task)

    async def _begin(self, appointment_id: str, known_status) -> TransitionResult:
        try:
            status = await self.current_status(appointment_id, known_status)
        except InvalidTransition as e:
            return self._failure(appointment_id, INVALID_STATUS, e.message)
        except AppointmentNotFound as e:
            return self._failure(appointment_id, NOT_FOUND, e.message)
        except RemoteCallFailed as e:
            return self._failure(appointment_id, REMOTE_FAILURE, e.message)

        if status is AppointmentStatus.IN_PROGRESS:
            logger.info(f"Appointment {appointment_id} already in progress, nothing to do")
            return self._record(TransitionResult(
                ok=True, appointment_id=appointment_id, status=status, changed=False
            ))

        if status.is_terminal:
            logger.warning(
                f"Refusing to begin appointment {appointment_id}: status is {status.value}"
            )
            return self._failure(
                appointment_id,
                TERMINAL_STATE,
                f"Appointment is {status.value} and cannot be reopened",
                status=status,
            )

        try:
            snapshot = await self.gateway.set_appointment_status(
                appointment_id, AppointmentStatus.IN_PROGRESS
            )
        except asyncio.TimeoutError:
            return self._failure(
                appointment_id, REMOTE_FAILURE, "Status change timed out", status=status
            )
        except InvalidTransition as e:
            # The store refused: its status is authoritative over the hint
            current = _reported_status(e)
            if current is not None and current.is_terminal:
                self._observe(appointment_id, current)
                return self._failure(appointment_id, TERMINAL_STATE, e.message, status=current)
            return self._failure(appointment_id, INVALID_STATUS, e.message, status=current or status)
        except AppointmentNotFound as e:
            return self._failure(appointment_id, NOT_FOUND, e.message)
        except RemoteCallFailed as e:
            return self._failure(appointment_id, REMOTE_FAILURE, e.message, status=status)

        new_status = self._observe(appointment_id, snapshot.status)
        logger.info(f"Appointment {appointment_id} transitioned: {status.value} -> {new_status.value}")
        return self._record(TransitionResult(
            ok=True, appointment_id=appointment_id, status=new_status, changed=True
        ))

    async def cancel(
        self, appointment_id: str, reason: Optional[str] = None
    ) -> AppointmentSnapshot:
        """Cancel a scheduled or in-progress appointment."""
        return await self._transition(
            appointment_id,
            AppointmentStatus.CANCELLED,
            reason=reason or DEFAULT_CANCELLATION_REASON,
        )

    async def complete(self, appointment_id: str) -> AppointmentSnapshot:
        """Finalize an in-progress appointment."""
        return await self._transition(appointment_id, AppointmentStatus.COMPLETED)

    async def _transition(
        self,
        appointment_id: str,
        target: AppointmentStatus,
        reason: Optional[str] = None,
    ) -> AppointmentSnapshot:
        current = await self.current_status(appointment_id)
        if not can_transition(current, target):
            logger.warning(
                f"Invalid transition for appointment {appointment_id}: "
                f"{current.value} -> {target.value}"
            )
            raise InvalidTransition(
                f"Cannot move appointment from {current.value} to {target.value}",
                appointment_id=appointment_id,
                current_status=current.value,
            )

        try:
            snapshot = await self.gateway.set_appointment_status(
                appointment_id, target, reason
            )
        except asyncio.TimeoutError as e:
            raise RemoteMutationFailed(
                "Status change timed out", appointment_id=appointment_id
            ) from e

        self._observe(appointment_id, snapshot.status)
        logger.info(f"Appointment {appointment_id} transitioned: {current.value} -> {target.value}")
        return snapshot

    def _failure(
        self,
        appointment_id: str,
        error: str,
        message: str,
        status: Optional[AppointmentStatus] = None,
    ) -> TransitionResult:
        if error == REMOTE_FAILURE:
            logger.error(f"Could not begin appointment {appointment_id}: {message}")
        return self._record(TransitionResult(
            ok=False,
            appointment_id=appointment_id,
            status=status,
            error=error,
            message=message,
        ))

    def _record(self, result: TransitionResult) -> TransitionResult:
        self._remember(self.last_results, result.appointment_id, result)
        return result


def _reported_status(error: InvalidTransition) -> Optional[AppointmentStatus]:
    if error.current_status is None:
        return None
    try:
        return normalize_status(error.current_status)
    except InvalidTransition:
        return None


def describe_failure(result: TransitionResult) -> str:
    """Short user-facing reason for a failed transition."""
    if result.ok:
        return ""
    if result.error == TERMINAL_STATE:
        return "This appointment is already closed."
    if result.error == NOT_FOUND:
        return "This appointment no longer exists."
    if result.error == REMOTE_FAILURE:
        return "The appointment could not be updated. Please try again."
    return "This appointment has an unexpected status."


