from datetime import time
from decimal import Decimal

from sqlalchemy import select

from .core.config import get_settings
from .models import Barber, Service, Unit


DEMO_UNIT_NAME = "Barbearia Centro"


async def seed_initial_data(session):
    settings = get_settings()
    result = await session.execute(select(Unit).where(Unit.name == DEMO_UNIT_NAME))
    unit = result.scalar_one_or_none()

    if not unit:
        unit = Unit(
            name=DEMO_UNIT_NAME,
            timezone=settings.default_timezone,
            opening_time=time(settings.default_opening_hour),
            closing_time=time(settings.default_closing_hour),
        )
        session.add(unit)
        await session.flush()

    # Seed services if missing
    result = await session.execute(select(Service).where(Service.unit_id == unit.id))
    services = result.scalars().all()
    if not services:
        session.add_all(
            [
                Service(unit_id=unit.id, name="Corte", duration_minutes=30, price=Decimal("45.00")),
                Service(unit_id=unit.id, name="Barba", duration_minutes=30, price=Decimal("30.00")),
                Service(unit_id=unit.id, name="Corte + Barba", duration_minutes=60, price=Decimal("70.00")),
            ]
        )

    result = await session.execute(select(Barber).where(Barber.unit_id == unit.id))
    barbers = result.scalars().all()
    if not barbers:
        session.add_all(
            [
                Barber(unit_id=unit.id, name="João", is_active=True, commission_rate=Decimal("40.00")),
                Barber(unit_id=unit.id, name="Pedro", is_active=True, commission_rate=Decimal("40.00")),
            ]
        )

    await session.commit()
    return unit
