"""
Day timeline layout.

Each appointment becomes a block whose vertical offset and height are
proportional to its start time and duration inside the visible window.
Overlapping appointments are laid out independently and may overlap on
screen; there is no column splitting.
"""
from datetime import date, datetime, tzinfo
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo

from ..core.config import settings
from ..schemas.appointment import AppointmentSnapshot, TimelineBlock


def business_timezone() -> tzinfo:
    return ZoneInfo(settings.BUSINESS_TIMEZONE)


def to_local(instant: datetime, tz: Optional[tzinfo] = None) -> datetime:
    """Express an instant in the business timezone. Naive values are taken as local."""
    if instant.tzinfo is None:
        return instant
    return instant.astimezone(tz or business_timezone())


def day_key(instant: datetime, tz: Optional[tzinfo] = None) -> date:
    return to_local(instant, tz).date()


def sort_for_listing(appointments: Iterable[AppointmentSnapshot]) -> List[AppointmentSnapshot]:
    """Ascending by start, ties broken by identifier."""
    return sorted(appointments, key=lambda a: (a.scheduled_at, a.id))


def appointments_for_day(
    appointments: Iterable[AppointmentSnapshot],
    day: date,
    tz: Optional[tzinfo] = None,
) -> List[AppointmentSnapshot]:
    return sort_for_listing(a for a in appointments if day_key(a.scheduled_at, tz) == day)


def window_span(start_hour: int, end_hour: int, units_per_hour: float) -> float:
    return (end_hour - start_hour) * units_per_hour


def layout_block(
    appointment: AppointmentSnapshot,
    start_hour: int,
    end_hour: int,
    units_per_hour: float,
    min_height: float,
    tz: Optional[tzinfo] = None,
) -> TimelineBlock:
    """Position one appointment inside the [start_hour, end_hour] window.

    The block never starts above the window and never runs past its bottom.
    Only the part of the appointment inside the window counts towards the
    height, which is floor-clamped to ``min_height``.
    """
    local_start = to_local(appointment.scheduled_at, tz)
    start_h = local_start.hour + local_start.minute / 60 + local_start.second / 3600
    end_h = start_h + appointment.duration_minutes / 60

    span = window_span(start_hour, end_hour, units_per_hour)
    visible_start = min(max(start_h, start_hour), end_hour)
    visible_end = max(min(end_h, end_hour), start_hour)

    offset = (visible_start - start_hour) * units_per_hour
    height = max(visible_end - visible_start, 0) * units_per_hour
    height = min(max(height, min_height), span)
    if offset + height > span:
        offset = span - height

    return TimelineBlock(
        appointment_id=appointment.id,
        patient_id=appointment.patient_id,
        status=appointment.status,
        starts_at=appointment.scheduled_at,
        duration_minutes=appointment.duration_minutes,
        offset=offset,
        height=height,
        clipped=start_h < start_hour or end_h > end_hour,
    )


def layout_day(
    appointments: Iterable[AppointmentSnapshot],
    day: date,
    start_hour: Optional[int] = None,
    end_hour: Optional[int] = None,
    units_per_hour: Optional[float] = None,
    min_height: Optional[float] = None,
    tz: Optional[tzinfo] = None,
) -> List[TimelineBlock]:
    """Lay out the appointments of ``day``, ordered by start then id."""
    start_hour = settings.TIMELINE_START_HOUR if start_hour is None else start_hour
    end_hour = settings.TIMELINE_END_HOUR if end_hour is None else end_hour
    units_per_hour = settings.TIMELINE_UNITS_PER_HOUR if units_per_hour is None else units_per_hour
    min_height = settings.TIMELINE_MIN_BLOCK_HEIGHT if min_height is None else min_height

    if not 0 <= start_hour < end_hour <= 24:
        raise ValueError(f"Invalid timeline window: {start_hour}h-{end_hour}h")
    if units_per_hour <= 0:
        raise ValueError("units_per_hour must be positive")

    return [
        layout_block(appointment, start_hour, end_hour, units_per_hour, min_height, tz)
        for appointment in appointments_for_day(appointments, day, tz)
    ]
