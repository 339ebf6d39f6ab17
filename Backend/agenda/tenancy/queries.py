"""
Unit-scoped query helpers.

Every query for tenant data (barbers, services, clients, appointments) goes
through these helpers or carries an explicit ``unit_id`` filter.

Usage:
    from agenda.tenancy.queries import list_active_barbers, scoped_select

    barbers = await list_active_barbers(session, ctx.unit_id, name_filter="joao")
    stmt = scoped_select(Service, ctx.unit_id).where(Service.is_active.is_(True))
"""

import uuid
from datetime import datetime
from typing import Optional, Sequence, Type, TypeVar

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase

from ..models import Appointment, AppointmentStatus, Barber, Client, Service

T = TypeVar("T", bound=DeclarativeBase)


# ────────────────────────────────────────────────────────────────
# Composable Query Helpers
# ────────────────────────────────────────────────────────────────

def scoped_select(model: Type[T], unit_id: uuid.UUID) -> Select:
    """Create a SELECT statement pre-filtered by unit_id."""
    return select(model).where(model.unit_id == unit_id)


def contains_pattern(text: str) -> str:
    """ILIKE pattern matching ``text`` literally, with `%`, `_` and `\\` escaped."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


async def require_owned(
    session: AsyncSession,
    model: Type[T],
    entity_id: uuid.UUID,
    unit_id: uuid.UUID,
) -> Optional[T]:
    """Fetch an entity by ID, returning None if missing or owned by another unit."""
    result = await session.execute(
        select(model).where(model.id == entity_id, model.unit_id == unit_id)
    )
    return result.scalar_one_or_none()


# ────────────────────────────────────────────────────────────────
# Barber Queries
# ────────────────────────────────────────────────────────────────

async def list_active_barbers(
    session: AsyncSession,
    unit_id: uuid.UUID,
    name_filter: Optional[str] = None,
) -> Sequence[Barber]:
    """Active barbers ordered by name, optionally filtered by case-insensitive substring."""
    stmt = scoped_select(Barber, unit_id).where(Barber.is_active.is_(True))
    if name_filter and name_filter.strip():
        stmt = stmt.where(Barber.name.ilike(contains_pattern(name_filter.strip()), escape="\\"))
    result = await session.execute(stmt.order_by(Barber.name))
    return result.scalars().all()


async def get_active_barber(
    session: AsyncSession,
    unit_id: uuid.UUID,
    barber_id: uuid.UUID,
) -> Optional[Barber]:
    result = await session.execute(
        scoped_select(Barber, unit_id).where(Barber.id == barber_id, Barber.is_active.is_(True))
    )
    return result.scalar_one_or_none()


async def find_barber_by_name(
    session: AsyncSession,
    unit_id: uuid.UUID,
    name: str,
) -> Optional[Barber]:
    """First active barber whose name contains ``name`` (case-insensitive)."""
    barbers = await list_active_barbers(session, unit_id, name_filter=name)
    return barbers[0] if barbers else None


async def lock_barber(
    session: AsyncSession,
    unit_id: uuid.UUID,
    barber_id: uuid.UUID,
) -> Optional[Barber]:
    """
    Take a row lock on the barber for the rest of the transaction.

    Concurrent bookings for the same barber queue here, so the conflict
    re-check that follows sees every committed competitor. Backends without
    row locks ignore FOR UPDATE.
    """
    result = await session.execute(
        scoped_select(Barber, unit_id).where(Barber.id == barber_id).with_for_update()
    )
    return result.scalar_one_or_none()


# ────────────────────────────────────────────────────────────────
# Service Queries
# ────────────────────────────────────────────────────────────────

async def list_active_services(session: AsyncSession, unit_id: uuid.UUID) -> Sequence[Service]:
    result = await session.execute(
        scoped_select(Service, unit_id)
        .where(Service.is_active.is_(True))
        .order_by(Service.name)
    )
    return result.scalars().all()


async def get_active_service(
    session: AsyncSession,
    unit_id: uuid.UUID,
    service_id: uuid.UUID,
) -> Optional[Service]:
    result = await session.execute(
        scoped_select(Service, unit_id).where(Service.id == service_id, Service.is_active.is_(True))
    )
    return result.scalar_one_or_none()


async def find_service_by_name(
    session: AsyncSession,
    unit_id: uuid.UUID,
    name: str,
) -> Optional[Service]:
    """First active service whose name contains ``name`` (case-insensitive)."""
    if not name or not name.strip():
        return None
    result = await session.execute(
        scoped_select(Service, unit_id)
        .where(
            Service.is_active.is_(True),
            Service.name.ilike(contains_pattern(name.strip()), escape="\\"),
        )
        .order_by(Service.name)
        .limit(1)
    )
    return result.scalar_one_or_none()


# ────────────────────────────────────────────────────────────────
# Client Queries
# ────────────────────────────────────────────────────────────────

async def get_client_by_phone(
    session: AsyncSession,
    unit_id: uuid.UUID,
    phone: str,
) -> Optional[Client]:
    result = await session.execute(
        scoped_select(Client, unit_id).where(Client.phone == phone)
    )
    return result.scalar_one_or_none()


# ────────────────────────────────────────────────────────────────
# Appointment Queries
# ────────────────────────────────────────────────────────────────

async def get_appointment(
    session: AsyncSession,
    unit_id: uuid.UUID,
    appointment_id: uuid.UUID,
) -> Optional[Appointment]:
    return await require_owned(session, Appointment, appointment_id, unit_id)


async def list_live_appointments_in_range(
    session: AsyncSession,
    unit_id: uuid.UUID,
    start: datetime,
    end: datetime,
    barber_id: Optional[uuid.UUID] = None,
) -> Sequence[Appointment]:
    """
    Non-cancelled appointments whose interval intersects [start, end].

    An appointment that began the evening before and runs past ``start`` is
    included, so callers can test slot occupancy against it.
    """
    stmt = scoped_select(Appointment, unit_id).where(
        Appointment.status != AppointmentStatus.CANCELLED,
        Appointment.start_time <= end,
        Appointment.end_time > start,
    )
    if barber_id is not None:
        stmt = stmt.where(Appointment.barber_id == barber_id)
    result = await session.execute(stmt.order_by(Appointment.start_time))
    return result.scalars().all()
