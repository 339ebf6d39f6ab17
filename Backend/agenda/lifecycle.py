"""
Appointment lifecycle.

State graph::

    pending ──► confirmed ──► completed
       │            ├──────► no_show
       └────────────┴──────► cancelled

``completed``, ``cancelled`` and ``no_show`` are terminal. Every
cancellation, every no-show and every deletion of a confirmed or completed
appointment leaves a CancellationHistory row behind.

These functions only flush; the caller owns the transaction and commits.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .client_memory import UNSET, normalize_phone, record_visit
from .conflicts import describe_conflict, find_conflicts
from .core.config import get_settings
from .core.errors import Conflict, InvalidInput, NotFound
from .core.responses import ErrorCodes
from .fidelity import get_courtesies, use_courtesy
from .models import (
    Appointment,
    AppointmentSource,
    AppointmentStatus,
    Barber,
    CancellationHistory,
    PaymentMethod,
    Service,
)
from .tenancy import (
    UnitContext,
    find_barber_by_name,
    find_service_by_name,
    get_active_barber,
    get_active_service,
    get_appointment,
    lock_barber,
    parse_uuid,
    scoped_select,
)
from .timezones import day_bounds_utc, isoformat_utc, to_utc


logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.PENDING: frozenset({AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED}),
    AppointmentStatus.CONFIRMED: frozenset(
        {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}
    ),
}

# Deleting these requires a reason and is audited.
AUDITED_ON_DELETE = frozenset({AppointmentStatus.CONFIRMED, AppointmentStatus.COMPLETED})
CANCELLABLE = frozenset({AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED})

FIDELITY_COURTESY_REASON = "Fidelity courtesy redeemed"


@dataclass
class BookedAppointment:
    appointment: Appointment
    barber: Barber
    service: Service


@dataclass
class TransitionResult:
    appointment: Appointment
    previous_status: AppointmentStatus
    # Courtesy count read before completion; set only when a cycle check should follow.
    courtesies_before: Optional[int] = None

    @property
    def needs_cycle_check(self) -> bool:
        return self.courtesies_before is not None


def can_transition(current: AppointmentStatus, new: AppointmentStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


def cancellation_metrics(
    scheduled_time: datetime,
    cancelled_at: datetime,
    late_threshold_minutes: int,
) -> tuple[int, bool]:
    """Minutes between cancellation and start (rounded), and whether that is a late cancellation."""
    delta = scheduled_time - cancelled_at
    minutes_before = math.floor(delta.total_seconds() / 60 + 0.5)
    is_late = delta < timedelta(minutes=late_threshold_minutes)
    return minutes_before, is_late


async def appointment_names(session: AsyncSession, appointment: Appointment) -> tuple[str, str]:
    barber = await session.get(Barber, appointment.barber_id)
    service = await session.get(Service, appointment.service_id)
    return (barber.name if barber else "Unknown"), (service.name if service else "Service")


async def record_cancellation(
    session: AsyncSession,
    appointment: Appointment,
    *,
    source: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
    is_no_show: bool = False,
) -> CancellationHistory:
    now = now or datetime.now(timezone.utc)
    minutes_before, is_late = cancellation_metrics(
        appointment.start_time, now, get_settings().late_cancellation_minutes
    )
    barber_name, service_name = await appointment_names(session, appointment)
    entry = CancellationHistory(
        unit_id=appointment.unit_id,
        appointment_id=appointment.id,
        client_name=appointment.client_name,
        client_phone=appointment.client_phone,
        barber_name=barber_name,
        service_name=service_name,
        scheduled_time=appointment.start_time,
        cancelled_at=now,
        minutes_before=minutes_before,
        is_late_cancellation=is_late,
        is_no_show=is_no_show,
        total_price=appointment.total_price or Decimal("0"),
        cancellation_source=source,
        reason=reason,
    )
    session.add(entry)
    logger.info(
        f"Cancellation recorded for appointment {appointment.id}: "
        f"{minutes_before} min before, late={is_late}, no_show={is_no_show}"
    )
    return entry


async def _resolve_barber(
    session: AsyncSession,
    unit: UnitContext,
    barber_id: Optional[uuid.UUID | str],
    barber_name: Optional[str],
) -> Barber:
    if barber_id:
        barber = await get_active_barber(session, unit.unit_id, parse_uuid(barber_id, "barber_id"))
    elif barber_name and barber_name.strip():
        barber = await find_barber_by_name(session, unit.unit_id, barber_name)
    else:
        raise InvalidInput("professional is required", code=ErrorCodes.MISSING_FIELD)
    if not barber:
        raise NotFound(f"Professional not found: {barber_name or barber_id}")
    return barber


async def _resolve_service(
    session: AsyncSession,
    unit: UnitContext,
    service_id: Optional[uuid.UUID | str],
    service_name: Optional[str],
) -> Service:
    if service_id:
        service = await get_active_service(session, unit.unit_id, parse_uuid(service_id, "service_id"))
    elif service_name and service_name.strip():
        service = await find_service_by_name(session, unit.unit_id, service_name)
    else:
        raise InvalidInput("service is required", code=ErrorCodes.MISSING_FIELD)
    if not service:
        raise NotFound(f"Service not found: {service_name or service_id}")
    return service


async def _ensure_free(
    session: AsyncSession,
    unit: UnitContext,
    barber: Barber,
    start: datetime,
    end: datetime,
    exclude_appointment_id: Optional[uuid.UUID] = None,
) -> None:
    # The lock serializes writers for this barber, so the re-check below
    # sees every competing booking that committed first.
    await lock_barber(session, unit.unit_id, barber.id)
    conflicts = await find_conflicts(
        session, unit.unit_id, barber.id, start, end, exclude_appointment_id=exclude_appointment_id
    )
    if conflicts:
        raise Conflict(
            f"{barber.name} already has an appointment at this time",
            code=ErrorCodes.SLOT_TAKEN,
            details={"conflicts": [describe_conflict(c) for c in conflicts]},
        )


async def _flush_guarded(session: AsyncSession, appointment: Appointment, is_new: bool) -> None:
    try:
        async with session.begin_nested():
            if is_new:
                session.add(appointment)
            await session.flush()
    except IntegrityError:
        logger.warning(f"Storage rejected overlapping appointment for barber {appointment.barber_id}")
        raise Conflict("This time slot was just taken", code=ErrorCodes.SLOT_TAKEN) from None


async def create_appointment(
    session: AsyncSession,
    unit: UnitContext,
    *,
    start_local: str | datetime,
    client_name: str,
    barber_id: Optional[uuid.UUID | str] = None,
    barber_name: Optional[str] = None,
    service_id: Optional[uuid.UUID | str] = None,
    service_name: Optional[str] = None,
    client_phone: Optional[str] = None,
    client_birth_date: Optional[date] = None,
    notes: Optional[str] = None,
    status: AppointmentStatus = AppointmentStatus.PENDING,
    source: AppointmentSource = AppointmentSource.WHATSAPP,
) -> BookedAppointment:
    """
    Book an appointment after re-validating the slot inside the transaction.

    Raises:
        InvalidInput: missing client name / professional / service, bad datetime
        NotFound: professional or service not matched
        Conflict: the barber is busy in [start, start + service duration)
    """
    if not client_name or not client_name.strip():
        raise InvalidInput("client_name is required", code=ErrorCodes.MISSING_FIELD)

    barber = await _resolve_barber(session, unit, barber_id, barber_name)
    service = await _resolve_service(session, unit, service_id, service_name)

    start = to_utc(start_local, unit.timezone)
    end = start + timedelta(minutes=service.duration_minutes)

    if status != AppointmentStatus.CANCELLED:
        await _ensure_free(session, unit, barber, start, end)

    appointment = Appointment(
        unit_id=unit.unit_id,
        barber_id=barber.id,
        service_id=service.id,
        client_name=client_name.strip(),
        client_phone=normalize_phone(client_phone),
        client_birth_date=client_birth_date,
        start_time=start,
        end_time=end,
        total_price=service.price,
        status=status,
        source=source,
        notes=notes.strip() if notes and notes.strip() else None,
    )
    await _flush_guarded(session, appointment, is_new=True)

    logger.info(
        f"Booked {appointment.id}: {appointment.client_name} with {barber.name} "
        f"for {service.name} at {isoformat_utc(start)} (unit {unit.unit_id}, {source.value})"
    )
    return BookedAppointment(appointment=appointment, barber=barber, service=service)


async def _require_appointment(
    session: AsyncSession, unit: UnitContext, appointment_id: uuid.UUID | str
) -> Appointment:
    appointment = await get_appointment(session, unit.unit_id, parse_uuid(appointment_id, "appointment_id"))
    if not appointment:
        raise NotFound(f"Appointment not found: {appointment_id}")
    return appointment


async def transition(
    session: AsyncSession,
    unit: UnitContext,
    appointment_id: uuid.UUID | str,
    new_status: AppointmentStatus,
    *,
    payment_method: Optional[PaymentMethod] = None,
    reason: Optional[str] = None,
    source: str = "manual",
    now: Optional[datetime] = None,
) -> TransitionResult:
    """
    Move an appointment along the state graph, applying side effects.

    Completing records the visit on the client. Paying with a fidelity
    courtesy consumes one credit and sets an automatic reason; any other
    completion reports the courtesy count beforehand so the caller can
    schedule the delayed cycle check.
    """
    now = now or datetime.now(timezone.utc)
    appointment = await _require_appointment(session, unit, appointment_id)
    previous = appointment.status

    if not can_transition(previous, new_status):
        raise InvalidInput(
            f"Cannot change appointment from {previous.value} to {new_status.value}",
            code=ErrorCodes.INVALID_TRANSITION,
        )
    if payment_method is not None and new_status != AppointmentStatus.COMPLETED:
        raise InvalidInput("payment_method only applies when completing an appointment")

    result = TransitionResult(appointment=appointment, previous_status=previous)
    clean_reason = reason.strip() if reason and reason.strip() else None

    if new_status == AppointmentStatus.COMPLETED:
        if payment_method == PaymentMethod.FIDELITY_COURTESY:
            await use_courtesy(session, unit.unit_id, appointment.client_phone)
            appointment.status_reason = FIDELITY_COURTESY_REASON
        else:
            appointment.status_reason = clean_reason
            if appointment.client_phone:
                result.courtesies_before = await get_courtesies(
                    session, unit.unit_id, appointment.client_phone
                )
        appointment.payment_method = payment_method
        await record_visit(session, unit.unit_id, appointment.client_phone, now)
    elif new_status == AppointmentStatus.CANCELLED:
        appointment.status_reason = clean_reason
        await record_cancellation(session, appointment, source=source, reason=clean_reason, now=now)
    elif new_status == AppointmentStatus.NO_SHOW:
        appointment.status_reason = clean_reason
        await record_cancellation(
            session, appointment, source=source, reason=clean_reason, now=now, is_no_show=True
        )
    else:
        appointment.status_reason = clean_reason

    appointment.status = new_status
    await session.flush()
    logger.info(f"Appointment {appointment.id}: {previous.value} -> {new_status.value}")
    return result


async def delete_appointment(
    session: AsyncSession,
    unit: UnitContext,
    appointment_id: uuid.UUID | str,
    reason: Optional[str] = None,
    *,
    source: str = "manual",
    now: Optional[datetime] = None,
) -> Appointment:
    """
    Permanently delete an appointment.

    Confirmed and completed appointments need a non-blank reason, which is
    kept in the cancellation history together with the timing metrics.
    """
    appointment = await _require_appointment(session, unit, appointment_id)
    clean_reason = reason.strip() if reason and reason.strip() else None

    if appointment.status in AUDITED_ON_DELETE:
        if not clean_reason:
            raise InvalidInput(
                f"A reason is required to delete a {appointment.status.value} appointment",
                code=ErrorCodes.MISSING_FIELD,
            )
        await record_cancellation(session, appointment, source=source, reason=clean_reason, now=now)

    await session.delete(appointment)
    await session.flush()
    logger.info(f"Deleted appointment {appointment.id} ({appointment.status.value}) in unit {unit.unit_id}")
    return appointment


async def cancel_by_id(
    session: AsyncSession,
    unit: UnitContext,
    appointment_id: uuid.UUID | str,
    *,
    reason: Optional[str] = None,
    source: str = "whatsapp",
    now: Optional[datetime] = None,
) -> Appointment:
    appointment = await get_appointment(session, unit.unit_id, parse_uuid(appointment_id, "appointment_id"))
    if not appointment or appointment.status not in CANCELLABLE:
        raise NotFound("Appointment not found or already cancelled")
    result = await transition(
        session, unit, appointment.id, AppointmentStatus.CANCELLED, reason=reason, source=source, now=now
    )
    return result.appointment


async def find_cancellable_by_phone(
    session: AsyncSession,
    unit: UnitContext,
    phone: str,
    day: Optional[str | date] = None,
    now: Optional[datetime] = None,
) -> Optional[Appointment]:
    """
    Earliest pending/confirmed appointment of this phone.

    With ``day`` the search covers that local day; otherwise only
    appointments starting from ``now`` on. Ties on start time go to the
    one created first.
    """
    now = now or datetime.now(timezone.utc)
    stmt = scoped_select(Appointment, unit.unit_id).where(
        Appointment.client_phone == phone,
        Appointment.status.in_(CANCELLABLE),
    )
    if day:
        day_start, day_end = day_bounds_utc(day, unit.timezone)
        stmt = stmt.where(Appointment.start_time >= day_start, Appointment.start_time <= day_end)
    else:
        stmt = stmt.where(Appointment.start_time >= now)
    stmt = stmt.order_by(Appointment.start_time, Appointment.created_at).limit(1)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def cancel_by_phone(
    session: AsyncSession,
    unit: UnitContext,
    phone: Optional[str],
    day: Optional[str | date] = None,
    *,
    reason: Optional[str] = None,
    source: str = "whatsapp",
    now: Optional[datetime] = None,
) -> Appointment:
    now = now or datetime.now(timezone.utc)
    normalized = normalize_phone(phone)
    if not normalized:
        raise InvalidInput("appointment_id or phone is required", code=ErrorCodes.MISSING_FIELD)

    appointment = await find_cancellable_by_phone(session, unit, normalized, day, now)
    if not appointment:
        scope = f" on {day}" if day else " upcoming"
        raise NotFound(f"No{scope} appointment found for this phone")

    age = now - appointment.created_at
    guard = timedelta(seconds=get_settings().recent_booking_guard_seconds)
    if age < guard:
        logger.warning(
            f"Refusing to cancel appointment {appointment.id}: created {age.total_seconds():.1f}s ago"
        )
        raise Conflict(
            "This appointment was created moments ago and cannot be cancelled yet",
            code=ErrorCodes.TOO_RECENT,
        )

    result = await transition(
        session, unit, appointment.id, AppointmentStatus.CANCELLED, reason=reason, source=source, now=now
    )
    return result.appointment


async def reschedule(
    session: AsyncSession,
    unit: UnitContext,
    appointment_id: uuid.UUID | str,
    *,
    barber_id: Optional[uuid.UUID | str] = None,
    service_id: Optional[uuid.UUID | str] = None,
    start_local: Optional[str | datetime] = None,
    notes=UNSET,
) -> BookedAppointment:
    """
    Edit barber, service, start or notes of a live appointment.

    The price snapshot is retaken only when the service changes. The
    appointment's own interval never conflicts with itself.
    """
    appointment = await _require_appointment(session, unit, appointment_id)
    if appointment.status not in CANCELLABLE:
        raise InvalidInput(
            f"Cannot edit a {appointment.status.value} appointment",
            code=ErrorCodes.INVALID_TRANSITION,
        )

    if barber_id:
        barber = await _resolve_barber(session, unit, barber_id, None)
    else:
        barber = await session.get(Barber, appointment.barber_id)

    service_changed = bool(service_id) and parse_uuid(service_id, "service_id") != appointment.service_id
    if service_changed:
        service = await _resolve_service(session, unit, service_id, None)
        duration = timedelta(minutes=service.duration_minutes)
    else:
        service = await session.get(Service, appointment.service_id)
        duration = appointment.end_time - appointment.start_time

    start = to_utc(start_local, unit.timezone) if start_local else appointment.start_time
    end = start + duration

    await _ensure_free(session, unit, barber, start, end, exclude_appointment_id=appointment.id)

    appointment.barber_id = barber.id
    appointment.start_time = start
    appointment.end_time = end
    if service_changed:
        appointment.service_id = service.id
        appointment.total_price = service.price
    if notes is not UNSET:
        appointment.notes = notes.strip() if notes and notes.strip() else None

    await _flush_guarded(session, appointment, is_new=False)
    logger.info(f"Rescheduled {appointment.id} with {barber.name} at {isoformat_utc(start)}")
    return BookedAppointment(appointment=appointment, barber=barber, service=service)


async def list_day(
    session: AsyncSession,
    unit: UnitContext,
    day: str | date,
) -> Sequence[Appointment]:
    """Every appointment starting on the local day, in start order."""
    day_start, day_end = day_bounds_utc(day, unit.timezone)
    result = await session.execute(
        select(Appointment)
        .where(
            Appointment.unit_id == unit.unit_id,
            Appointment.start_time >= day_start,
            Appointment.start_time <= day_end,
        )
        .order_by(Appointment.start_time, Appointment.created_at)
    )
    return result.scalars().all()


def appointment_to_dict(
    appointment: Appointment,
    barber_name: Optional[str] = None,
    service_name: Optional[str] = None,
) -> dict:
    return {
        "id": str(appointment.id),
        "client_name": appointment.client_name,
        "client_phone": appointment.client_phone,
        "barber_id": str(appointment.barber_id),
        "barber": barber_name,
        "service_id": str(appointment.service_id),
        "service": service_name,
        "start_time": isoformat_utc(appointment.start_time),
        "end_time": isoformat_utc(appointment.end_time),
        "total_price": float(appointment.total_price),
        "status": appointment.status.value,
        "source": appointment.source.value if appointment.source else None,
        "payment_method": appointment.payment_method.value if appointment.payment_method else None,
        "status_reason": appointment.status_reason,
        "notes": appointment.notes,
    }
