"""
Pytest configuration and fixtures for async database testing.

Tests run against an in-memory SQLite database (aiosqlite) that is created
fresh for every test, so no PostgreSQL server is needed. The PostgreSQL-only
exclusion constraint is skipped there; the conflict re-check inside the
booking transaction is what the tests exercise.
"""
import os

# Settings are read once, on first import of the agenda package.
os.environ["AGENDA_API_KEY"] = "test-key"
os.environ["FIDELITY_CHECK_DELAY_SECONDS"] = "30"
os.environ["RECENT_BOOKING_GUARD_SECONDS"] = "5"
os.environ["LOG_LEVEL"] = "WARNING"

from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from agenda.core.db import Base, get_session, get_sessionmaker
from agenda.models import Appointment, AppointmentSource, AppointmentStatus, Barber, Service, Unit
from agenda.seed import seed_initial_data
from agenda.tenancy import UnitContext, UnitResolutionSource

TEST_DATABASE_URL = "sqlite+aiosqlite://"
API_KEY = "test-key"

# A weekday far enough ahead that "now" never cuts into its slots.
FUTURE_DAY = "2030-06-10"


@pytest.fixture(scope="function")
async def async_engine():
    """
    Create an in-memory engine with the schema in place.

    StaticPool keeps the single SQLite connection alive for the whole test.
    The two listeners hand transaction control to SQLAlchemy so SAVEPOINTs
    (``begin_nested``) behave as they do on PostgreSQL.
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine):
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def unit_data(session_factory):
    """
    Demo unit (Sao Paulo, 08-21h) with barbers João and Pedro and the
    services Barba (30 min), Corte (30 min) and Corte + Barba (60 min).
    """
    async with session_factory() as session:
        unit = await seed_initial_data(session)
        barbers = (await session.execute(select(Barber).where(Barber.unit_id == unit.id))).scalars().all()
        services = (await session.execute(select(Service).where(Service.unit_id == unit.id))).scalars().all()

    by_barber = {b.name: b.id for b in barbers}
    by_service = {s.name: s.id for s in services}
    return SimpleNamespace(
        unit_id=unit.id,
        joao_id=by_barber["João"],
        pedro_id=by_barber["Pedro"],
        corte_id=by_service["Corte"],
        barba_id=by_service["Barba"],
        combo_id=by_service["Corte + Barba"],
    )


@pytest.fixture(scope="function")
async def other_unit(session_factory):
    """A second unit, reachable by its messaging instance, with one barber."""
    async with session_factory() as session:
        unit = Unit(
            name="Barbearia Norte",
            timezone="America/Manaus",
            opening_time=time(9),
            closing_time=time(18),
            evolution_instance_name="norte-instance",
            evolution_api_key="norte-key",
        )
        session.add(unit)
        await session.flush()
        barber = Barber(unit_id=unit.id, name="Carlos", is_active=True)
        service = Service(unit_id=unit.id, name="Corte", price=Decimal("50.00"), duration_minutes=45)
        session.add_all([barber, service])
        await session.commit()
    return SimpleNamespace(unit_id=unit.id, carlos_id=barber.id, corte_id=service.id)


@pytest.fixture
def unit_ctx(unit_data):
    return UnitContext(
        unit_id=unit_data.unit_id,
        name="Barbearia Centro",
        timezone="America/Sao_Paulo",
        opening_hour=8,
        closing_hour=21,
        source=UnitResolutionSource.UNIT_ID,
    )


@pytest.fixture(scope="function")
async def async_session(session_factory, unit_data):
    """Session over the seeded database for direct calls into the core."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def add_appointment(session_factory):
    """
    Insert an appointment straight into storage, bypassing the booking
    checks. ``start`` is an aware UTC datetime.
    """
    async def _add(
        unit_id,
        barber_id,
        service_id,
        start,
        minutes=30,
        status=AppointmentStatus.CONFIRMED,
        client_name="Cliente Teste",
        client_phone=None,
        created_at=None,
        price=Decimal("45.00"),
    ):
        async with session_factory() as session:
            appointment = Appointment(
                unit_id=unit_id,
                barber_id=barber_id,
                service_id=service_id,
                client_name=client_name,
                client_phone=client_phone,
                start_time=start,
                end_time=start + timedelta(minutes=minutes),
                total_price=price,
                status=status,
                source=AppointmentSource.MANUAL,
                created_at=created_at or datetime.now(timezone.utc) - timedelta(hours=1),
            )
            session.add(appointment)
            await session.commit()
        return appointment

    return _add


@pytest.fixture(scope="function")
async def client(session_factory, unit_data):
    """
    FastAPI AsyncClient wired to the test database.

    ASGITransport does not run startup handlers, so the application never
    touches its configured PostgreSQL URL.
    """
    from agenda.main import app

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_sessionmaker] = lambda: session_factory

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"x-api-key": API_KEY},
    ) as ac:
        yield ac

    runner = app.state.background
    runner.cancel_all()
    await runner.drain(timeout=1)
    app.dependency_overrides.clear()
