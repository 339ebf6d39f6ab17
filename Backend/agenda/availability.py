"""
Availability calculator.

Produces the free (slot, barber) pairs of one local day. Slots start every
``SLOT_MINUTES`` from opening hour up to (not including) closing hour; a
pair is free when no live appointment of that barber overlaps the
default-length window starting at the slot.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from .conflicts import overlaps
from .core.config import get_settings
from .models import Appointment, Barber
from .tenancy import UnitContext, list_active_barbers, list_live_appointments_in_range
from .timezones import day_bounds_utc, isoformat_utc, local_now, parse_date, to_utc


logger = logging.getLogger(__name__)


@dataclass
class AvailableSlot:
    time: str
    start_utc: datetime
    barber_id: uuid.UUID
    barber_name: str

    def to_dict(self) -> dict:
        return {
            "time": self.time,
            "datetime": isoformat_utc(self.start_utc),
            "barber_id": str(self.barber_id),
            "barber_name": self.barber_name,
        }


@dataclass
class AvailabilityResult:
    date: date
    slots: list[AvailableSlot] = field(default_factory=list)
    barbers: list[Barber] = field(default_factory=list)
    message: Optional[str] = None


def build_slots(
    barbers: Sequence[Barber],
    appointments: Sequence[Appointment],
    local_day: date,
    timezone_id: str,
    opening_hour: int,
    closing_hour: int,
    now_utc: datetime,
    slot_minutes: int = 30,
) -> list[AvailableSlot]:
    """
    Pure slot enumeration over already-fetched barbers and appointments.

    When ``local_day`` is today in the unit's timezone, slots at or before
    the current local minute are dropped.
    """
    now_local = local_now(timezone_id, now_utc).replace(second=0, microsecond=0, tzinfo=None)
    is_today = now_local.date() == local_day
    step = timedelta(minutes=slot_minutes)

    by_barber: dict[uuid.UUID, list[Appointment]] = {}
    for appointment in appointments:
        by_barber.setdefault(appointment.barber_id, []).append(appointment)

    slots: list[AvailableSlot] = []
    cursor = datetime(local_day.year, local_day.month, local_day.day, opening_hour)
    closing = datetime(local_day.year, local_day.month, local_day.day) + timedelta(hours=closing_hour)

    while cursor < closing:
        slot_local = cursor
        cursor += step

        # Skip slots that have already started
        if is_today and slot_local <= now_local:
            continue

        slot_start = to_utc(slot_local, timezone_id)
        slot_end = slot_start + step
        for barber in barbers:
            busy = any(
                overlaps(a.start_time, a.end_time, slot_start, slot_end)
                for a in by_barber.get(barber.id, ())
            )
            if not busy:
                slots.append(
                    AvailableSlot(
                        time=slot_local.strftime("%H:%M"),
                        start_utc=slot_start,
                        barber_id=barber.id,
                        barber_name=barber.name,
                    )
                )
    return slots


async def compute_slots(
    session: AsyncSession,
    unit: UnitContext,
    date_value: str | date,
    professional: Optional[str] = None,
    now: Optional[datetime] = None,
) -> AvailabilityResult:
    settings = get_settings()
    local_day = parse_date(date_value) if isinstance(date_value, str) else date_value
    now = now or datetime.now(timezone.utc)

    barbers = list(await list_active_barbers(session, unit.unit_id, name_filter=professional))
    if not barbers:
        if professional and professional.strip():
            message = f"No active barber matching '{professional.strip()}'"
        else:
            message = "No active barbers registered for this unit"
        logger.info(f"Availability for unit {unit.unit_id} on {local_day}: {message}")
        return AvailabilityResult(date=local_day, message=message)

    day_start, day_end = day_bounds_utc(local_day, unit.timezone)
    appointments = await list_live_appointments_in_range(session, unit.unit_id, day_start, day_end)

    slots = build_slots(
        barbers,
        appointments,
        local_day,
        unit.timezone,
        unit.opening_hour,
        unit.closing_hour,
        now,
        slot_minutes=settings.slot_minutes,
    )
    message = None if slots else "No available slots for this date"
    return AvailabilityResult(date=local_day, slots=slots, barbers=barbers, message=message)
