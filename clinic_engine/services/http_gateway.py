"""
Gateway implementation for a remote clinic API.

The API wraps payloads as ``{"success": true, "data": ...}`` and still uses
the legacy camelCase / French field names (``dateHeure``, ``statut``,
``medecinId``). Both are translated here so the rest of the engine only sees
AppointmentSnapshot, PatientSnapshot and NotificationRecord.
"""
import asyncio
import logging
from collections import OrderedDict
from datetime import date
from typing import Any, Dict, List, Optional

import httpx

from ..core.config import settings
from ..core.errors import (
    AppointmentNotFound,
    InvalidTransition,
    RemoteFetchFailed,
    RemoteMutationFailed,
)
from ..models.appointment import AppointmentStatus
from ..schemas.appointment import AppointmentSnapshot
from ..schemas.notification import NotificationFilter, NotificationRecord
from ..schemas.patient import PatientSnapshot

logger = logging.getLogger(__name__)

# Status vocabulary the remote API expects on writes
WIRE_STATUS = {
    AppointmentStatus.SCHEDULED: "programme",
    AppointmentStatus.IN_PROGRESS: "en_cours",
    AppointmentStatus.COMPLETED: "termine",
    AppointmentStatus.CANCELLED: "annule",
}

# Appointments kept for building a result when a 204 cannot be read back
MAX_CACHED_APPOINTMENTS = 256


def _pick(payload: Dict[str, Any], *keys: str, default=None):
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return default


def _unwrap(body: Any) -> Any:
    if isinstance(body, dict) and "data" in body and ("success" in body or "meta" in body):
        return body["data"]
    return body


def appointment_from_payload(payload: Dict[str, Any]) -> AppointmentSnapshot:
    return AppointmentSnapshot(
        id=str(payload["id"]),
        patient_id=str(_pick(payload, "patient_id", "patientId")),
        practitioner_id=_pick(payload, "practitioner_id", "medecinId", "doctorId"),
        scheduled_at=_pick(payload, "scheduled_at", "dateHeure", "date"),
        duration_minutes=_pick(payload, "duration_minutes", "dureeMinutes", "duration"),
        status=_pick(payload, "status", "statut", default="scheduled"),
        cancellation_reason=_pick(payload, "cancellation_reason", "motifAnnulation"),
        subject=_pick(payload, "subject", "motif"),
        notes=payload.get("notes"),
    )


def patient_from_payload(payload: Dict[str, Any]) -> PatientSnapshot:
    name = _pick(payload, "name", "fullName")
    if name is None:
        parts = [_pick(payload, "first_name", "prenom"), _pick(payload, "last_name", "nom")]
        name = " ".join(part for part in parts if part) or None
    return PatientSnapshot(
        id=str(payload["id"]),
        name=name,
        allergies=payload.get("allergies"),
        medical_history=_pick(payload, "medical_history", "antecedentsMedicaux", "medicalHistory"),
    )


def notification_from_payload(payload: Dict[str, Any]) -> NotificationRecord:
    return NotificationRecord(
        id=str(payload["id"]),
        severity=_pick(payload, "severity", "type", default="info"),
        category=payload.get("category"),
        title=payload.get("title") or "",
        message=payload.get("message") or "",
        is_read=bool(_pick(payload, "is_read", "isRead", default=False)),
        is_archived=bool(_pick(payload, "is_archived", "isArchived", default=False)),
        created_at=_pick(payload, "created_at", "createdAt"),
        target_id=_pick(payload, "target_id", "targetId"),
        target_type=_pick(payload, "target_type", "targetType"),
        action_url=_pick(payload, "action_url", "actionUrl"),
        metadata=payload.get("metadata"),
    )


class ClinicApiClient:
    """Async client for the remote clinic API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url or settings.CLINIC_API_BASE_URL
        if not self.base_url:
            raise ValueError("CLINIC_API_BASE_URL is not configured")
        self.token = token if token is not None else settings.CLINIC_API_TOKEN
        self.timeout = timeout or settings.CLINIC_API_TIMEOUT_SECONDS
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._appointments: "OrderedDict[str, AppointmentSnapshot]" = OrderedDict()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Accept": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ClinicApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        error_cls,
        appointment_id: Optional[str] = None,
        **kwargs,
    ) -> Any:
        client = self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            logger.error(f"Timeout calling {method} {path}")
            raise error_cls(f"{method} {path} timed out", appointment_id=appointment_id) from e
        except httpx.HTTPError as e:
            logger.error(f"Request error calling {method} {path}: {e}")
            raise error_cls(f"{method} {path} failed: {e}", appointment_id=appointment_id) from e

        if response.status_code == 404 and appointment_id is not None:
            raise AppointmentNotFound(
                f"Appointment {appointment_id} not found", appointment_id=appointment_id
            )
        if response.status_code in (409, 422) and appointment_id is not None:
            raise InvalidTransition(
                f"Rejected by the clinic API: {response.text}", appointment_id=appointment_id
            )
        if response.status_code >= 400:
            logger.error(f"HTTP error calling {method} {path}: {response.status_code}")
            raise error_cls(
                f"{method} {path} returned {response.status_code}", appointment_id=appointment_id
            )

        if not response.content:
            return None
        try:
            return _unwrap(response.json())
        except ValueError as e:
            raise error_cls(f"{method} {path} returned invalid JSON") from e

    def _cache(self, snapshot: AppointmentSnapshot) -> AppointmentSnapshot:
        self._appointments[snapshot.id] = snapshot
        self._appointments.move_to_end(snapshot.id)
        while len(self._appointments) > MAX_CACHED_APPOINTMENTS:
            self._appointments.popitem(last=False)
        return snapshot

    async def fetch_appointment(self, appointment_id: str) -> AppointmentSnapshot:
        data = await self._request(
            "GET", f"/appointments/{appointment_id}", RemoteFetchFailed,
            appointment_id=appointment_id,
        )
        return self._cache(appointment_from_payload(data))

    async def set_appointment_status(
        self,
        appointment_id: str,
        status: AppointmentStatus,
        reason: Optional[str] = None,
    ) -> AppointmentSnapshot:
        body: Dict[str, Any] = {"status": WIRE_STATUS[status]}
        if reason:
            body["motifAnnulation"] = reason
        data = await self._request(
            "PATCH", f"/appointments/{appointment_id}/status", RemoteMutationFailed,
            appointment_id=appointment_id, json=body,
        )
        if not data:
            return await self._read_back(appointment_id, status, reason)
        return self._cache(appointment_from_payload(data))

    async def _read_back(
        self,
        appointment_id: str,
        status: AppointmentStatus,
        reason: Optional[str],
    ) -> AppointmentSnapshot:
        """Snapshot after a 204. The change is applied even if the read fails."""
        try:
            return await self.fetch_appointment(appointment_id)
        except RemoteFetchFailed:
            known = self._appointments.get(appointment_id)
            if known is None:
                raise
            logger.warning(
                f"Could not read back appointment {appointment_id}, "
                f"using last known snapshot with status {status.value}"
            )
            update: Dict[str, Any] = {"status": status}
            if status is AppointmentStatus.CANCELLED:
                update["cancellation_reason"] = reason
            return self._cache(known.model_copy(update=update))

    async def list_appointments(
        self, day: date, practitioner_id: Optional[str] = None
    ) -> List[AppointmentSnapshot]:
        params = {"date": day.isoformat()}
        if practitioner_id:
            params["medecinId"] = practitioner_id
        data = await self._request("GET", "/appointments", RemoteFetchFailed, params=params)
        return [appointment_from_payload(item) for item in data or []]

    async def fetch_patient(self, patient_id: str) -> PatientSnapshot:
        data = await self._request("GET", f"/patients/{patient_id}", RemoteFetchFailed)
        return patient_from_payload(data)

    async def fetch_notifications(
        self, notification_filter: NotificationFilter
    ) -> List[NotificationRecord]:
        params: Dict[str, Any] = {
            "page": notification_filter.page,
            "limit": min(notification_filter.limit, settings.NOTIFICATION_FETCH_LIMIT),
        }
        if notification_filter.unread_only:
            params["unread_only"] = "true"
        if notification_filter.category:
            params["category"] = notification_filter.category
        data = await self._request("GET", "/notifications", RemoteFetchFailed, params=params)
        return [notification_from_payload(item) for item in data or []]

    async def mark_notification_read(self, notification_id: str) -> None:
        await self._request("PATCH", f"/notifications/{notification_id}/read", RemoteMutationFailed)

    async def mark_all_notifications_read(self) -> int:
        data = await self._request("PATCH", "/notifications/read-all", RemoteMutationFailed)
        if isinstance(data, dict):
            return int(_pick(data, "updated", "count", default=0))
        return 0

    async def archive_notification(self, notification_id: str) -> None:
        await self._request("DELETE", f"/notifications/{notification_id}", RemoteMutationFailed)
