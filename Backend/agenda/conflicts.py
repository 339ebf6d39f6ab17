"""
Slot conflict guard.

Decides whether a barber is free for a candidate [start, start + duration)
window by re-reading persisted appointments. Intervals are half-open, so
back-to-back bookings never conflict.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.errors import InvalidInput
from .models import Appointment, AppointmentStatus
from .timezones import isoformat_utc


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open interval overlap: [a) and [b) share at least one instant."""
    return start_a < end_b and end_a > start_b


@dataclass
class SlotCheck:
    available: bool
    conflicts: list[Appointment] = field(default_factory=list)


async def find_conflicts(
    session: AsyncSession,
    unit_id: uuid.UUID,
    barber_id: uuid.UUID,
    start: datetime,
    end: datetime,
    exclude_appointment_id: Optional[uuid.UUID] = None,
) -> list[Appointment]:
    """Non-cancelled appointments of this barber overlapping [start, end)."""
    stmt = select(Appointment).where(
        Appointment.unit_id == unit_id,
        Appointment.barber_id == barber_id,
        Appointment.status != AppointmentStatus.CANCELLED,
        Appointment.start_time < end,
        Appointment.end_time > start,
    )
    if exclude_appointment_id is not None:
        stmt = stmt.where(Appointment.id != exclude_appointment_id)
    result = await session.execute(stmt.order_by(Appointment.start_time))
    return list(result.scalars().all())


async def is_available(
    session: AsyncSession,
    unit_id: uuid.UUID,
    barber_id: uuid.UUID,
    start: datetime,
    duration_minutes: int,
    exclude_appointment_id: Optional[uuid.UUID] = None,
) -> SlotCheck:
    if duration_minutes <= 0:
        raise InvalidInput(f"duration_minutes must be positive, got {duration_minutes}")
    end = start + timedelta(minutes=duration_minutes)
    conflicts = await find_conflicts(
        session, unit_id, barber_id, start, end, exclude_appointment_id=exclude_appointment_id
    )
    return SlotCheck(available=not conflicts, conflicts=conflicts)


def describe_conflict(appointment: Appointment) -> dict:
    return {
        "appointment_id": str(appointment.id),
        "client": appointment.client_name,
        "start": isoformat_utc(appointment.start_time),
        "end": isoformat_utc(appointment.end_time),
    }
