"""
Management API used by the booking UI.

Same scheduling core as the conversational channel, addressed by ids
instead of fuzzy names, under ``/units/{unit_id}``.
"""

import logging
import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .auth import verify_api_key
from .availability import compute_slots
from .background import BackgroundRunner, get_background_runner
from .client_memory import UNSET, client_to_dict
from .conflicts import describe_conflict, is_available
from .core.config import get_settings
from .core.db import get_session, get_sessionmaker
from .core.errors import NotFound
from .core.responses import success_response
from .fidelity import check_cycle_completion, use_courtesy
from .lifecycle import (
    appointment_to_dict,
    create_appointment,
    delete_appointment,
    list_day,
    reschedule,
    transition,
)
from .models import AppointmentSource, AppointmentStatus, Barber, PaymentMethod, Service
from .tenancy import UnitContext, get_active_barber, resolve_unit_context
from .timezones import isoformat_utc, to_utc

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/units/{unit_id}",
    tags=["appointments"],
    dependencies=[Depends(verify_api_key)],
)


# ────────────────────────────────────────────────────────────────
# Request Models
# ────────────────────────────────────────────────────────────────

class AppointmentCreate(BaseModel):
    barber_id: uuid.UUID
    service_id: uuid.UUID
    start: str = Field(..., description="Local wall-clock datetime, e.g. 2025-06-10T14:00")
    client_name: str = Field(..., min_length=1)
    client_phone: Optional[str] = None
    client_birth_date: Optional[date] = None
    notes: Optional[str] = None
    status: AppointmentStatus = AppointmentStatus.PENDING


class AppointmentUpdate(BaseModel):
    barber_id: Optional[uuid.UUID] = None
    service_id: Optional[uuid.UUID] = None
    start: Optional[str] = None
    notes: Optional[str] = None


class StatusChange(BaseModel):
    status: AppointmentStatus
    payment_method: Optional[PaymentMethod] = None
    reason: Optional[str] = None


async def get_unit(unit_id: str, session: AsyncSession = Depends(get_session)) -> UnitContext:
    return await resolve_unit_context(session, unit_id=unit_id)


async def _name_maps(session: AsyncSession, unit_id: uuid.UUID) -> tuple[dict, dict]:
    barbers = await session.execute(select(Barber.id, Barber.name).where(Barber.unit_id == unit_id))
    services = await session.execute(select(Service.id, Service.name).where(Service.unit_id == unit_id))
    return dict(barbers.all()), dict(services.all())


# ────────────────────────────────────────────────────────────────
# Availability
# ────────────────────────────────────────────────────────────────

@router.get("/availability")
async def get_availability(
    date: str = Query(..., description="Local date, YYYY-MM-DD"),
    professional: Optional[str] = None,
    unit: UnitContext = Depends(get_unit),
    session: AsyncSession = Depends(get_session),
):
    result = await compute_slots(session, unit, date, professional)
    return success_response(
        date=result.date.isoformat(),
        available_slots=[slot.to_dict() for slot in result.slots],
        message=result.message,
    )


@router.get("/slot-check")
async def slot_check(
    barber_id: uuid.UUID,
    start: str = Query(..., description="Local wall-clock datetime"),
    duration_minutes: Optional[int] = Query(None, gt=0),
    unit: UnitContext = Depends(get_unit),
    session: AsyncSession = Depends(get_session),
):
    barber = await get_active_barber(session, unit.unit_id, barber_id)
    if not barber:
        raise NotFound(f"Professional not found: {barber_id}")

    start_utc = to_utc(start, unit.timezone)
    check = await is_available(
        session,
        unit.unit_id,
        barber.id,
        start_utc,
        duration_minutes or get_settings().slot_minutes,
    )
    return success_response(
        available=check.available,
        barber_id=str(barber.id),
        start=isoformat_utc(start_utc),
        conflicts=[describe_conflict(c) for c in check.conflicts],
    )


# ────────────────────────────────────────────────────────────────
# Appointments
# ────────────────────────────────────────────────────────────────

@router.get("/appointments")
async def list_appointments(
    date: str = Query(..., description="Local date, YYYY-MM-DD"),
    unit: UnitContext = Depends(get_unit),
    session: AsyncSession = Depends(get_session),
):
    appointments = await list_day(session, unit, date)
    barber_names, service_names = await _name_maps(session, unit.unit_id)
    return success_response(
        date=date,
        appointments=[
            appointment_to_dict(a, barber_names.get(a.barber_id), service_names.get(a.service_id))
            for a in appointments
        ],
    )


@router.post("/appointments", status_code=status.HTTP_201_CREATED)
async def create_manual_appointment(
    payload: AppointmentCreate,
    unit: UnitContext = Depends(get_unit),
    session: AsyncSession = Depends(get_session),
):
    booked = await create_appointment(
        session,
        unit,
        start_local=payload.start,
        client_name=payload.client_name,
        barber_id=payload.barber_id,
        service_id=payload.service_id,
        client_phone=payload.client_phone,
        client_birth_date=payload.client_birth_date,
        notes=payload.notes,
        status=payload.status,
        source=AppointmentSource.MANUAL,
    )
    await session.commit()
    return success_response(
        appointment=appointment_to_dict(booked.appointment, booked.barber.name, booked.service.name)
    )


@router.patch("/appointments/{appointment_id}")
async def update_appointment(
    appointment_id: uuid.UUID,
    payload: AppointmentUpdate,
    unit: UnitContext = Depends(get_unit),
    session: AsyncSession = Depends(get_session),
):
    booked = await reschedule(
        session,
        unit,
        appointment_id,
        barber_id=payload.barber_id,
        service_id=payload.service_id,
        start_local=payload.start,
        notes=payload.notes if "notes" in payload.model_fields_set else UNSET,
    )
    await session.commit()
    return success_response(
        appointment=appointment_to_dict(booked.appointment, booked.barber.name, booked.service.name)
    )


@router.post("/appointments/{appointment_id}/status")
async def change_status(
    appointment_id: uuid.UUID,
    payload: StatusChange,
    unit: UnitContext = Depends(get_unit),
    session: AsyncSession = Depends(get_session),
    session_factory: async_sessionmaker = Depends(get_sessionmaker),
    runner: BackgroundRunner = Depends(get_background_runner),
):
    result = await transition(
        session,
        unit,
        appointment_id,
        payload.status,
        payment_method=payload.payment_method,
        reason=payload.reason,
    )
    await session.commit()

    appointment = result.appointment
    if result.needs_cycle_check:
        runner.spawn(
            check_cycle_completion(
                session_factory,
                unit.unit_id,
                appointment.client_phone,
                result.courtesies_before,
                get_settings().fidelity_check_delay_seconds,
            ),
            name=f"fidelity-check-{appointment.id}",
        )

    barber_names, service_names = await _name_maps(session, unit.unit_id)
    return success_response(
        appointment=appointment_to_dict(
            appointment,
            barber_names.get(appointment.barber_id),
            service_names.get(appointment.service_id),
        ),
        previous_status=result.previous_status.value,
        fidelity_check_scheduled=result.needs_cycle_check,
    )


@router.delete("/appointments/{appointment_id}")
async def remove_appointment(
    appointment_id: uuid.UUID,
    reason: Optional[str] = None,
    unit: UnitContext = Depends(get_unit),
    session: AsyncSession = Depends(get_session),
):
    appointment = await delete_appointment(session, unit, appointment_id, reason)
    await session.commit()
    return success_response(
        message="Appointment deleted",
        deleted_appointment_id=str(appointment.id),
        previous_status=appointment.status.value,
    )


# ────────────────────────────────────────────────────────────────
# Fidelity
# ────────────────────────────────────────────────────────────────

@router.post("/clients/{phone}/courtesies/use")
async def redeem_courtesy(
    phone: str,
    unit: UnitContext = Depends(get_unit),
    session: AsyncSession = Depends(get_session),
):
    client = await use_courtesy(session, unit.unit_id, phone)
    await session.commit()
    return success_response(client=client_to_dict(client, include_stats=True))
