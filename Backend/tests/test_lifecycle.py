"""
Appointment lifecycle tests: booking, transitions, cancellation history,
deletion, cancellation by phone and rescheduling.

Run with: pytest tests/test_lifecycle.py -v
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select, text

from agenda.client_memory import register_client
from agenda.core.errors import Conflict, InvalidInput, NotFound
from agenda.core.responses import ErrorCodes
from agenda.lifecycle import (
    FIDELITY_COURTESY_REASON,
    appointment_to_dict,
    can_transition,
    cancel_by_id,
    cancel_by_phone,
    cancellation_metrics,
    create_appointment,
    delete_appointment,
    find_cancellable_by_phone,
    list_day,
    reschedule,
    transition,
)
from agenda.models import (
    Appointment,
    AppointmentSource,
    AppointmentStatus,
    CancellationHistory,
    Client,
    PaymentMethod,
    Service,
)

START = datetime(2030, 6, 10, 17, 0, tzinfo=timezone.utc)  # 14:00 local


async def history(session):
    result = await session.execute(select(CancellationHistory))
    return result.scalars().all()


async def book(session, unit_ctx, **overrides):
    fields = dict(
        start_local="2030-06-10T14:00",
        client_name="Ana",
        barber_name="João",
        service_name="Corte",
        client_phone="11988887777",
    )
    fields.update(overrides)
    return await create_appointment(session, unit_ctx, **fields)


# ────────────────────────────────────────────────────────────────
# Pure helpers
# ────────────────────────────────────────────────────────────────

class TestTransitionsTable:
    @pytest.mark.parametrize(
        "current,new",
        [
            (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED),
            (AppointmentStatus.PENDING, AppointmentStatus.CANCELLED),
            (AppointmentStatus.CONFIRMED, AppointmentStatus.COMPLETED),
            (AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED),
            (AppointmentStatus.CONFIRMED, AppointmentStatus.NO_SHOW),
        ],
    )
    def test_allowed(self, current, new):
        assert can_transition(current, new)

    @pytest.mark.parametrize(
        "current,new",
        [
            (AppointmentStatus.PENDING, AppointmentStatus.COMPLETED),
            (AppointmentStatus.PENDING, AppointmentStatus.NO_SHOW),
            (AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED),
            (AppointmentStatus.CANCELLED, AppointmentStatus.CONFIRMED),
            (AppointmentStatus.NO_SHOW, AppointmentStatus.COMPLETED),
        ],
    )
    def test_forbidden(self, current, new):
        assert not can_transition(current, new)


class TestCancellationMetrics:
    def test_early_cancellation(self):
        minutes_before, is_late = cancellation_metrics(START, START - timedelta(hours=2), 10)
        assert (minutes_before, is_late) == (120, False)

    def test_late_cancellation(self):
        minutes_before, is_late = cancellation_metrics(START, START - timedelta(minutes=5), 10)
        assert (minutes_before, is_late) == (5, True)

    def test_exactly_at_threshold_is_not_late(self):
        assert cancellation_metrics(START, START - timedelta(minutes=10), 10) == (10, False)

    def test_rounding_half_up(self):
        assert cancellation_metrics(START, START - timedelta(minutes=9, seconds=30), 10) == (10, True)

    def test_after_start_is_negative_and_late(self):
        minutes_before, is_late = cancellation_metrics(START, START + timedelta(minutes=15), 10)
        assert minutes_before == -15
        assert is_late is True


# ────────────────────────────────────────────────────────────────
# Booking
# ────────────────────────────────────────────────────────────────

class TestCreateAppointment:
    async def test_books_with_snapshot(self, async_session, unit_ctx, unit_data):
        booked = await book(async_session, unit_ctx, client_phone="(11) 98888-7777")
        appointment = booked.appointment

        assert appointment.barber_id == unit_data.joao_id
        assert appointment.service_id == unit_data.corte_id
        assert appointment.start_time == START
        assert appointment.end_time == START + timedelta(minutes=30)
        assert appointment.total_price == Decimal("45.00")
        assert appointment.status == AppointmentStatus.PENDING
        assert appointment.source == AppointmentSource.WHATSAPP
        assert appointment.client_phone == "11988887777"

    async def test_duration_comes_from_service(self, async_session, unit_ctx):
        booked = await book(async_session, unit_ctx, service_name="corte + barba")
        assert booked.appointment.end_time - booked.appointment.start_time == timedelta(minutes=60)

    async def test_price_is_a_snapshot(self, async_session, unit_ctx, unit_data):
        booked = await book(async_session, unit_ctx)
        service = await async_session.get(Service, unit_data.corte_id)
        service.price = Decimal("99.00")
        await async_session.flush()
        assert booked.appointment.total_price == Decimal("45.00")

    async def test_overlap_is_rejected(self, async_session, unit_ctx):
        await book(async_session, unit_ctx, service_name="Corte + Barba")

        with pytest.raises(Conflict) as exc_info:
            await book(async_session, unit_ctx, start_local="2030-06-10T14:30", client_name="Bia")

        assert exc_info.value.code == ErrorCodes.SLOT_TAKEN
        assert exc_info.value.details["conflicts"][0]["client"] == "Ana"

    async def test_storage_rejection_becomes_slot_taken(self, async_session, unit_ctx, monkeypatch):
        await book(async_session, unit_ctx)
        # Unique index standing in for the PostgreSQL exclusion constraint.
        await async_session.execute(
            text("CREATE UNIQUE INDEX uq_test_barber_start ON appointments (barber_id, start_time)")
        )

        async def no_conflicts(*args, **kwargs):
            return []

        monkeypatch.setattr("agenda.lifecycle.find_conflicts", no_conflicts)

        with pytest.raises(Conflict) as exc_info:
            await book(async_session, unit_ctx, client_name="Bia")
        assert exc_info.value.code == ErrorCodes.SLOT_TAKEN

        # Only the savepoint was rolled back; the session keeps working.
        count = (await async_session.execute(select(func.count(Appointment.id)))).scalar_one()
        assert count == 1
        other = await book(async_session, unit_ctx, start_local="2030-06-10T15:00", client_name="Caio")
        assert other.appointment.client_name == "Caio"

    async def test_back_to_back_is_allowed(self, async_session, unit_ctx):
        await book(async_session, unit_ctx)
        booked = await book(async_session, unit_ctx, start_local="2030-06-10T14:30", client_name="Bia")
        assert booked.appointment.start_time == START + timedelta(minutes=30)

    async def test_other_barber_same_time(self, async_session, unit_ctx):
        await book(async_session, unit_ctx)
        booked = await book(async_session, unit_ctx, barber_name="Pedro", client_name="Bia")
        assert booked.barber.name == "Pedro"

    async def test_cancelled_initial_status_skips_conflict_check(self, async_session, unit_ctx):
        await book(async_session, unit_ctx)
        booked = await book(async_session, unit_ctx, status=AppointmentStatus.CANCELLED)
        assert booked.appointment.status == AppointmentStatus.CANCELLED

    async def test_by_ids(self, async_session, unit_ctx, unit_data):
        booked = await create_appointment(
            async_session,
            unit_ctx,
            start_local="2030-06-10T09:00",
            client_name="Caio",
            barber_id=str(unit_data.pedro_id),
            service_id=unit_data.barba_id,
            source=AppointmentSource.MANUAL,
        )
        assert booked.service.name == "Barba"
        assert booked.appointment.client_phone is None

    async def test_unknown_professional(self, async_session, unit_ctx):
        with pytest.raises(NotFound):
            await book(async_session, unit_ctx, barber_name="Zé")

    async def test_unknown_service(self, async_session, unit_ctx):
        with pytest.raises(NotFound):
            await book(async_session, unit_ctx, service_name="Massagem")

    async def test_missing_client_name(self, async_session, unit_ctx):
        with pytest.raises(InvalidInput):
            await book(async_session, unit_ctx, client_name=" ")

    async def test_bad_datetime(self, async_session, unit_ctx):
        with pytest.raises(InvalidInput):
            await book(async_session, unit_ctx, start_local="amanhã às 14h")

    async def test_other_units_barber_id_is_not_found(self, async_session, unit_ctx, other_unit):
        with pytest.raises(NotFound):
            await book(async_session, unit_ctx, barber_name=None, barber_id=other_unit.carlos_id)


# ────────────────────────────────────────────────────────────────
# Transitions
# ────────────────────────────────────────────────────────────────

class TestTransition:
    async def test_confirm(self, async_session, unit_ctx):
        booked = await book(async_session, unit_ctx)
        result = await transition(async_session, unit_ctx, booked.appointment.id, AppointmentStatus.CONFIRMED)
        assert result.previous_status == AppointmentStatus.PENDING
        assert result.appointment.status == AppointmentStatus.CONFIRMED
        assert await history(async_session) == []

    async def test_invalid_transition(self, async_session, unit_ctx):
        booked = await book(async_session, unit_ctx)
        with pytest.raises(InvalidInput) as exc_info:
            await transition(async_session, unit_ctx, booked.appointment.id, AppointmentStatus.COMPLETED)
        assert exc_info.value.code == ErrorCodes.INVALID_TRANSITION

    async def test_terminal_states_are_final(self, async_session, unit_ctx):
        booked = await book(async_session, unit_ctx)
        await transition(async_session, unit_ctx, booked.appointment.id, AppointmentStatus.CANCELLED)
        with pytest.raises(InvalidInput):
            await transition(async_session, unit_ctx, booked.appointment.id, AppointmentStatus.CONFIRMED)

    async def test_cancel_writes_history(self, async_session, unit_ctx):
        booked = await book(async_session, unit_ctx)
        now = START - timedelta(minutes=5)

        await transition(
            async_session,
            unit_ctx,
            booked.appointment.id,
            AppointmentStatus.CANCELLED,
            reason="Imprevisto",
            now=now,
        )

        [entry] = await history(async_session)
        assert entry.appointment_id == booked.appointment.id
        assert entry.barber_name == "João"
        assert entry.service_name == "Corte"
        assert entry.minutes_before == 5
        assert entry.is_late_cancellation is True
        assert entry.is_no_show is False
        assert entry.reason == "Imprevisto"
        assert entry.total_price == Decimal("45.00")
        assert booked.appointment.status_reason == "Imprevisto"

    async def test_no_show_writes_flagged_history(self, async_session, unit_ctx):
        booked = await book(async_session, unit_ctx)
        await transition(async_session, unit_ctx, booked.appointment.id, AppointmentStatus.CONFIRMED)
        await transition(
            async_session,
            unit_ctx,
            booked.appointment.id,
            AppointmentStatus.NO_SHOW,
            now=START + timedelta(minutes=20),
        )

        [entry] = await history(async_session)
        assert entry.is_no_show is True
        assert entry.minutes_before == -20

    async def test_complete_records_visit_and_reports_courtesies(self, async_session, unit_ctx, unit_data):
        client = await register_client(async_session, unit_data.unit_id, "Ana", phone="11988887777")
        client.available_courtesies = 2
        booked = await book(async_session, unit_ctx)
        await transition(async_session, unit_ctx, booked.appointment.id, AppointmentStatus.CONFIRMED)

        result = await transition(
            async_session,
            unit_ctx,
            booked.appointment.id,
            AppointmentStatus.COMPLETED,
            payment_method=PaymentMethod.PIX,
            now=START + timedelta(minutes=30),
        )

        assert result.needs_cycle_check is True
        assert result.courtesies_before == 2
        assert result.appointment.payment_method == PaymentMethod.PIX
        assert client.total_visits == 1
        assert client.last_visit_at == START + timedelta(minutes=30)

    async def test_complete_without_phone_needs_no_cycle_check(self, async_session, unit_ctx):
        booked = await book(async_session, unit_ctx, client_phone=None)
        await transition(async_session, unit_ctx, booked.appointment.id, AppointmentStatus.CONFIRMED)
        result = await transition(async_session, unit_ctx, booked.appointment.id, AppointmentStatus.COMPLETED)
        assert result.needs_cycle_check is False

    async def test_complete_with_courtesy(self, async_session, unit_ctx, unit_data):
        client = await register_client(async_session, unit_data.unit_id, "Ana", phone="11988887777")
        client.available_courtesies = 1
        booked = await book(async_session, unit_ctx)
        await transition(async_session, unit_ctx, booked.appointment.id, AppointmentStatus.CONFIRMED)

        result = await transition(
            async_session,
            unit_ctx,
            booked.appointment.id,
            AppointmentStatus.COMPLETED,
            payment_method=PaymentMethod.FIDELITY_COURTESY,
        )

        assert client.available_courtesies == 0
        assert result.appointment.status_reason == FIDELITY_COURTESY_REASON
        assert result.needs_cycle_check is False

    async def test_courtesy_without_credit_is_rejected(self, async_session, unit_ctx, unit_data):
        await register_client(async_session, unit_data.unit_id, "Ana", phone="11988887777")
        booked = await book(async_session, unit_ctx)
        await transition(async_session, unit_ctx, booked.appointment.id, AppointmentStatus.CONFIRMED)

        with pytest.raises(InvalidInput):
            await transition(
                async_session,
                unit_ctx,
                booked.appointment.id,
                AppointmentStatus.COMPLETED,
                payment_method=PaymentMethod.FIDELITY_COURTESY,
            )
        assert booked.appointment.status == AppointmentStatus.CONFIRMED

    async def test_payment_method_only_on_completion(self, async_session, unit_ctx):
        booked = await book(async_session, unit_ctx)
        with pytest.raises(InvalidInput):
            await transition(
                async_session,
                unit_ctx,
                booked.appointment.id,
                AppointmentStatus.CONFIRMED,
                payment_method=PaymentMethod.CASH,
            )

    async def test_unknown_appointment(self, async_session, unit_ctx):
        with pytest.raises(NotFound):
            await transition(
                async_session,
                unit_ctx,
                "00000000-0000-0000-0000-000000000000",
                AppointmentStatus.CONFIRMED,
            )

    async def test_cancelled_slot_becomes_free(self, async_session, unit_ctx):
        booked = await book(async_session, unit_ctx)
        await transition(async_session, unit_ctx, booked.appointment.id, AppointmentStatus.CANCELLED)
        rebooked = await book(async_session, unit_ctx, client_name="Bia")
        assert rebooked.appointment.start_time == START


# ────────────────────────────────────────────────────────────────
# Deletion
# ────────────────────────────────────────────────────────────────

class TestDeleteAppointment:
    async def test_pending_deleted_without_reason(self, async_session, unit_ctx):
        booked = await book(async_session, unit_ctx)
        await delete_appointment(async_session, unit_ctx, booked.appointment.id)

        assert await async_session.get(Appointment, booked.appointment.id) is None
        assert await history(async_session) == []

    async def test_confirmed_requires_reason(self, async_session, unit_ctx):
        booked = await book(async_session, unit_ctx)
        await transition(async_session, unit_ctx, booked.appointment.id, AppointmentStatus.CONFIRMED)

        with pytest.raises(InvalidInput):
            await delete_appointment(async_session, unit_ctx, booked.appointment.id, reason="  ")

    async def test_confirmed_deletion_is_audited(self, async_session, unit_ctx):
        booked = await book(async_session, unit_ctx)
        appointment_id = booked.appointment.id
        await transition(async_session, unit_ctx, appointment_id, AppointmentStatus.CONFIRMED)

        await delete_appointment(
            async_session, unit_ctx, appointment_id, "Lançado errado", now=START - timedelta(days=1)
        )

        [entry] = await history(async_session)
        assert entry.appointment_id == appointment_id
        assert entry.reason == "Lançado errado"
        assert entry.minutes_before == 24 * 60
        assert entry.is_late_cancellation is False
        assert await async_session.get(Appointment, appointment_id) is None


# ────────────────────────────────────────────────────────────────
# Cancellation by id / phone
# ────────────────────────────────────────────────────────────────

class TestCancelByIdAndPhone:
    async def test_cancel_by_id(self, async_session, unit_ctx):
        booked = await book(async_session, unit_ctx)
        cancelled = await cancel_by_id(async_session, unit_ctx, str(booked.appointment.id))
        assert cancelled.status == AppointmentStatus.CANCELLED
        [entry] = await history(async_session)
        assert entry.cancellation_source == "whatsapp"

    async def test_cancel_by_id_twice(self, async_session, unit_ctx):
        booked = await book(async_session, unit_ctx)
        await cancel_by_id(async_session, unit_ctx, booked.appointment.id)
        with pytest.raises(NotFound):
            await cancel_by_id(async_session, unit_ctx, booked.appointment.id)

    async def test_cancel_by_phone_picks_earliest_upcoming(self, async_session, unit_ctx, unit_data, add_appointment):
        later = await add_appointment(
            unit_data.unit_id, unit_data.joao_id, unit_data.corte_id, START + timedelta(days=1),
            client_phone="11988887777",
        )
        earlier = await add_appointment(
            unit_data.unit_id, unit_data.pedro_id, unit_data.corte_id, START, client_phone="11988887777"
        )

        cancelled = await cancel_by_phone(
            async_session, unit_ctx, "(11) 98888-7777", now=START - timedelta(days=2)
        )
        assert cancelled.id == earlier.id
        assert (await async_session.get(Appointment, later.id)).status == AppointmentStatus.CONFIRMED

    async def test_cancel_by_phone_on_given_day(self, async_session, unit_ctx, unit_data, add_appointment):
        await add_appointment(
            unit_data.unit_id, unit_data.joao_id, unit_data.corte_id, START, client_phone="11988887777"
        )
        target = await add_appointment(
            unit_data.unit_id, unit_data.joao_id, unit_data.corte_id, START + timedelta(days=1),
            client_phone="11988887777",
        )

        cancelled = await cancel_by_phone(
            async_session, unit_ctx, "11988887777", "2030-06-11", now=START - timedelta(days=2)
        )
        assert cancelled.id == target.id

    async def test_past_appointments_are_not_cancellable_without_day(
        self, async_session, unit_ctx, unit_data, add_appointment
    ):
        await add_appointment(
            unit_data.unit_id, unit_data.joao_id, unit_data.corte_id, START, client_phone="11988887777"
        )
        with pytest.raises(NotFound):
            await cancel_by_phone(async_session, unit_ctx, "11988887777", now=START + timedelta(hours=1))

    async def test_recently_created_is_refused(self, async_session, unit_ctx, unit_data, add_appointment):
        now = START - timedelta(days=1)
        await add_appointment(
            unit_data.unit_id,
            unit_data.joao_id,
            unit_data.corte_id,
            START,
            client_phone="11988887777",
            created_at=now - timedelta(seconds=2),
        )
        with pytest.raises(Conflict) as exc_info:
            await cancel_by_phone(async_session, unit_ctx, "11988887777", now=now)
        assert exc_info.value.code == ErrorCodes.TOO_RECENT

    async def test_phone_required(self, async_session, unit_ctx):
        with pytest.raises(InvalidInput):
            await cancel_by_phone(async_session, unit_ctx, "")

    async def test_find_ignores_terminal(self, async_session, unit_ctx, unit_data, add_appointment):
        await add_appointment(
            unit_data.unit_id,
            unit_data.joao_id,
            unit_data.corte_id,
            START,
            client_phone="11988887777",
            status=AppointmentStatus.COMPLETED,
        )
        found = await find_cancellable_by_phone(
            async_session, unit_ctx, "11988887777", now=START - timedelta(days=1)
        )
        assert found is None


# ────────────────────────────────────────────────────────────────
# Rescheduling and listing
# ────────────────────────────────────────────────────────────────

class TestReschedule:
    async def test_move_within_own_interval(self, async_session, unit_ctx):
        booked = await book(async_session, unit_ctx, service_name="Corte + Barba")
        moved = await reschedule(
            async_session, unit_ctx, booked.appointment.id, start_local="2030-06-10T14:30"
        )
        assert moved.appointment.start_time == START + timedelta(minutes=30)
        assert moved.appointment.end_time == START + timedelta(minutes=90)

    async def test_move_onto_another_booking(self, async_session, unit_ctx):
        await book(async_session, unit_ctx)
        other = await book(async_session, unit_ctx, start_local="2030-06-10T15:00", client_name="Bia")
        with pytest.raises(Conflict):
            await reschedule(async_session, unit_ctx, other.appointment.id, start_local="2030-06-10T14:00")

    async def test_service_change_retakes_price_and_duration(self, async_session, unit_ctx, unit_data):
        booked = await book(async_session, unit_ctx)
        moved = await reschedule(async_session, unit_ctx, booked.appointment.id, service_id=unit_data.combo_id)
        assert moved.appointment.total_price == Decimal("70.00")
        assert moved.appointment.end_time - moved.appointment.start_time == timedelta(minutes=60)

    async def test_same_service_keeps_price(self, async_session, unit_ctx, unit_data):
        booked = await book(async_session, unit_ctx)
        booked.appointment.total_price = Decimal("40.00")
        moved = await reschedule(async_session, unit_ctx, booked.appointment.id, service_id=unit_data.corte_id)
        assert moved.appointment.total_price == Decimal("40.00")

    async def test_change_barber_and_notes(self, async_session, unit_ctx, unit_data):
        booked = await book(async_session, unit_ctx, notes="antes")
        moved = await reschedule(
            async_session, unit_ctx, booked.appointment.id, barber_id=unit_data.pedro_id, notes=""
        )
        assert moved.barber.name == "Pedro"
        assert moved.appointment.notes is None

    async def test_terminal_cannot_be_edited(self, async_session, unit_ctx):
        booked = await book(async_session, unit_ctx)
        await transition(async_session, unit_ctx, booked.appointment.id, AppointmentStatus.CANCELLED)
        with pytest.raises(InvalidInput):
            await reschedule(async_session, unit_ctx, booked.appointment.id, start_local="2030-06-10T16:00")


async def test_list_day_includes_every_status(async_session, unit_ctx):
    first = await book(async_session, unit_ctx, start_local="2030-06-10T09:00")
    await book(async_session, unit_ctx, start_local="2030-06-10T20:30", client_name="Noite")
    await book(async_session, unit_ctx, start_local="2030-06-11T09:00", client_name="Amanhã")
    await transition(async_session, unit_ctx, first.appointment.id, AppointmentStatus.CANCELLED)

    appointments = await list_day(async_session, unit_ctx, "2030-06-10")
    assert [a.client_name for a in appointments] == ["Ana", "Noite"]
    assert appointments[0].status == AppointmentStatus.CANCELLED


async def test_appointment_to_dict(async_session, unit_ctx):
    booked = await book(async_session, unit_ctx, notes="Degradê")
    data = appointment_to_dict(booked.appointment, "João", "Corte")
    assert data["start_time"] == "2030-06-10T17:00:00Z"
    assert data["end_time"] == "2030-06-10T17:30:00Z"
    assert data["total_price"] == 45.0
    assert data["status"] == "pending"
    assert data["source"] == "whatsapp"
    assert data["payment_method"] is None
    assert data["notes"] == "Degradê"


async def test_clients_are_scoped(async_session, unit_data, other_unit):
    await register_client(async_session, other_unit.unit_id, "Ana", phone="11988887777")
    result = await async_session.execute(select(Client).where(Client.unit_id == unit_data.unit_id))
    assert result.scalars().all() == []
