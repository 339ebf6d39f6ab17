"""
Booking API for the conversational (WhatsApp bot) channel.

A single ``POST /agenda-api`` endpoint dispatches on ``action``:

    check / check_availability      free slots of a day
    check_slot                      is one barber free at date + time
    create / schedule_appointment   book, upserting the client
    cancel / cancel_appointment     cancel by id, or by phone (+ optional date)
    check_client                    look a client up by phone
    register_client                 create a client
    update_client                   edit a client found by phone

Field names are accepted in Portuguese or English (see ``field_aliases``).
The unit is addressed by ``unit_id`` or by the messaging ``instance_name``.
Every body carries ``success``; failures also carry ``error``.
"""

import logging
from typing import Any, Awaitable, Callable

from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import verify_api_key
from .availability import compute_slots
from .background import BackgroundRunner, get_background_runner
from .client_memory import (
    UNSET,
    check_client,
    client_to_dict,
    parse_birth_date,
    register_client,
    resolve_client,
    update_client,
)
from .conflicts import is_available
from .core.config import get_settings
from .core.db import get_session
from .core.errors import InvalidInput
from .core.responses import ErrorCodes, success_response
from .field_aliases import BookingRequest, normalize_fields
from .lifecycle import (
    appointment_names,
    appointment_to_dict,
    cancel_by_id,
    cancel_by_phone,
    create_appointment,
)
from .models import AppointmentSource, AppointmentStatus
from .tenancy import UnitContext, find_barber_by_name, list_active_services, resolve_unit_context
from .timezones import isoformat_utc, to_utc
from .whatsapp import send_booking_confirmation

logger = logging.getLogger(__name__)
router = APIRouter(tags=["agenda-api"])


class ActionContext:
    """Everything an action handler may need for one request."""

    def __init__(
        self,
        request: BookingRequest,
        unit: UnitContext,
        session: AsyncSession,
        runner: BackgroundRunner,
    ):
        self.request = request
        self.unit = unit
        self.session = session
        self.runner = runner


def _require(request: BookingRequest, *fields: str) -> None:
    missing = [field for field in fields if not getattr(request, field)]
    if missing:
        raise InvalidInput(
            f"Missing required field(s): {', '.join(missing)}",
            code=ErrorCodes.MISSING_FIELD,
        )


# ────────────────────────────────────────────────────────────────
# Action Handlers
# ────────────────────────────────────────────────────────────────

async def handle_check(ctx: ActionContext) -> dict:
    day = ctx.request.day
    if not day:
        raise InvalidInput("date is required", code=ErrorCodes.MISSING_FIELD)

    result = await compute_slots(ctx.session, ctx.unit, day, ctx.request.professional)
    services = await list_active_services(ctx.session, ctx.unit.unit_id)

    response = success_response(
        date=result.date.isoformat(),
        available_slots=[slot.to_dict() for slot in result.slots],
        services=[
            {
                "id": str(service.id),
                "name": service.name,
                "price": float(service.price),
                "duration_minutes": service.duration_minutes,
            }
            for service in services
        ],
    )
    if result.message:
        response["message"] = result.message
    return response


async def handle_check_slot(ctx: ActionContext) -> dict:
    request = ctx.request
    if not request.day:
        raise InvalidInput("date is required", code=ErrorCodes.MISSING_FIELD)
    _require(request, "time", "professional")

    local_datetime = request.local_datetime
    barber = await find_barber_by_name(ctx.session, ctx.unit.unit_id, request.professional)
    if not barber:
        logger.info(f"check_slot: professional '{request.professional}' not found in unit {ctx.unit.unit_id}")
        return success_response(
            available=False,
            professional=request.professional,
            datetime=local_datetime,
            reason=f"Professional '{request.professional}' not found or inactive",
        )

    start = to_utc(local_datetime, ctx.unit.timezone)
    check = await is_available(
        ctx.session, ctx.unit.unit_id, barber.id, start, get_settings().slot_minutes
    )
    response = success_response(
        available=check.available,
        professional=barber.name,
        professional_id=str(barber.id),
        datetime=local_datetime,
        datetime_utc=isoformat_utc(start),
    )
    if not check.available:
        response["reason"] = f"{barber.name} already has an appointment at this time"
        response["conflicts"] = [
            {
                "client": c.client_name,
                "start": isoformat_utc(c.start_time),
                "end": isoformat_utc(c.end_time),
            }
            for c in check.conflicts
        ]
    return response


async def handle_create(ctx: ActionContext) -> dict:
    request = ctx.request
    _require(request, "client_name", "professional", "service")
    start_local = request.local_datetime
    if not start_local:
        raise InvalidInput("datetime is required", code=ErrorCodes.MISSING_FIELD)

    birth_date = parse_birth_date(request.birth_date)
    resolution = await resolve_client(
        ctx.session,
        ctx.unit.unit_id,
        request.client_name,
        phone=request.client_phone,
        birth_date=birth_date,
        notes=request.notes,
        tags=request.tags,
    )
    client = resolution.client

    booked = await create_appointment(
        ctx.session,
        ctx.unit,
        start_local=start_local,
        client_name=request.client_name,
        barber_name=request.professional,
        service_name=request.service,
        client_phone=request.client_phone,
        client_birth_date=birth_date or (client.birth_date if client else None),
        notes=request.notes,
        status=AppointmentStatus.PENDING,
        source=AppointmentSource.WHATSAPP,
    )
    await ctx.session.commit()

    appointment = booked.appointment
    if appointment.client_phone and ctx.unit.can_send_messages:
        ctx.runner.spawn(
            send_booking_confirmation(
                ctx.unit,
                client_name=appointment.client_name,
                client_phone=appointment.client_phone,
                start_time=appointment.start_time,
                service_name=booked.service.name,
                barber_name=booked.barber.name,
                price=appointment.total_price,
            ),
            name=f"whatsapp-confirmation-{appointment.id}",
        )
    else:
        logger.info(f"No WhatsApp confirmation for {appointment.id}: phone or unit credentials missing")

    client_payload = None
    if client:
        client_payload = {**client_to_dict(client), "is_new": resolution.created}

    return success_response(
        message="Appointment created successfully",
        client_created=resolution.created,
        client=client_payload,
        appointment={
            "id": str(appointment.id),
            "client_name": appointment.client_name,
            "barber": booked.barber.name,
            "service": booked.service.name,
            "start_time": isoformat_utc(appointment.start_time),
            "end_time": isoformat_utc(appointment.end_time),
            "total_price": float(appointment.total_price),
            "status": appointment.status.value,
        },
    )


async def handle_cancel(ctx: ActionContext) -> dict:
    request = ctx.request
    if request.appointment_id:
        appointment = await cancel_by_id(
            ctx.session, ctx.unit, request.appointment_id, reason=request.reason
        )
    elif request.client_phone:
        appointment = await cancel_by_phone(
            ctx.session, ctx.unit, request.client_phone, request.day, reason=request.reason
        )
    else:
        raise InvalidInput("appointment_id or phone is required", code=ErrorCodes.MISSING_FIELD)

    barber_name, service_name = await appointment_names(ctx.session, appointment)
    await ctx.session.commit()
    return success_response(
        message="Appointment cancelled successfully",
        cancelled_appointment=appointment_to_dict(appointment, barber_name, service_name),
    )


async def handle_check_client(ctx: ActionContext) -> dict:
    client = await check_client(ctx.session, ctx.unit.unit_id, ctx.request.client_phone)
    if not client:
        return success_response(found=False, message="Client not found")
    return success_response(found=True, client=client_to_dict(client, include_stats=True))


async def handle_register_client(ctx: ActionContext) -> dict:
    request = ctx.request
    client = await register_client(
        ctx.session,
        ctx.unit.unit_id,
        request.client_name,
        phone=request.client_phone,
        birth_date=parse_birth_date(request.birth_date),
        notes=request.notes,
        tags=request.tags,
    )
    await ctx.session.commit()
    return success_response(message="Client registered successfully", client=client_to_dict(client))


async def handle_update_client(ctx: ActionContext) -> dict:
    request = ctx.request
    client, updated_fields = await update_client(
        ctx.session,
        ctx.unit.unit_id,
        request.client_phone,
        name=request.client_name,
        birth_date=parse_birth_date(request.birth_date),
        notes=request.notes if request.notes_sent else UNSET,
        new_phone=request.new_phone,
    )
    await ctx.session.commit()
    return success_response(
        message="Client updated successfully",
        updated_fields=updated_fields,
        client=client_to_dict(client),
    )


ACTIONS: dict[str, Callable[[ActionContext], Awaitable[dict]]] = {
    "check": handle_check,
    "check_availability": handle_check,
    "check_slot": handle_check_slot,
    "create": handle_create,
    "schedule_appointment": handle_create,
    "cancel": handle_cancel,
    "cancel_appointment": handle_cancel,
    "check_client": handle_check_client,
    "register_client": handle_register_client,
    "update_client": handle_update_client,
}


# ────────────────────────────────────────────────────────────────
# Endpoint
# ────────────────────────────────────────────────────────────────

@router.post("/agenda-api")
async def agenda_api(
    body: dict[str, Any] = Body(...),
    _: bool = Depends(verify_api_key),
    session: AsyncSession = Depends(get_session),
    runner: BackgroundRunner = Depends(get_background_runner),
):
    request = normalize_fields(body)
    action = (request.action or "").strip().lower()
    handler = ACTIONS.get(action)
    if handler is None:
        raise InvalidInput(
            f"Invalid action: {request.action!r}",
            details={"valid_actions": sorted(ACTIONS)},
        )

    unit = await resolve_unit_context(session, request.unit_id, request.instance_name)
    logger.info(f"agenda-api action={action} unit={unit.unit_id} via {unit.source.value}")
    return await handler(ActionContext(request, unit, session, runner))
