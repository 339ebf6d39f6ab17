"""
Fidelity program hooks.

Courtesies are credited by the database (a trigger counting completed
visits), asynchronously relative to the request that completed the
appointment. Whether a completion closed a cycle can therefore only be
observed by re-reading the counter a little later; this is best-effort
and may miss a slow trigger.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .client_memory import normalize_phone
from .core.db import utc_now
from .core.errors import InvalidInput, NotFound
from .tenancy import get_client_by_phone


logger = logging.getLogger(__name__)


@dataclass
class CycleCheck:
    earned: bool
    courtesies_before: int
    current_courtesies: int


async def get_courtesies(session: AsyncSession, unit_id: uuid.UUID, phone: Optional[str]) -> int:
    normalized = normalize_phone(phone)
    if not normalized:
        return 0
    client = await get_client_by_phone(session, unit_id, normalized)
    return client.available_courtesies if client else 0


async def evaluate_cycle(
    session: AsyncSession,
    unit_id: uuid.UUID,
    phone: Optional[str],
    courtesies_before: int,
) -> CycleCheck:
    current = await get_courtesies(session, unit_id, phone)
    return CycleCheck(
        earned=current > courtesies_before,
        courtesies_before=courtesies_before,
        current_courtesies=current,
    )


async def check_cycle_completion(
    session_factory: async_sessionmaker,
    unit_id: uuid.UUID,
    phone: Optional[str],
    courtesies_before: int,
    delay_seconds: float,
) -> CycleCheck:
    """
    Re-read the client's courtesy counter after ``delay_seconds``.

    Runs detached from the request, on its own session. A completed cycle
    is stamped on the client as ``last_cycle_completed_at`` so the booking
    UI can show it.
    """
    await asyncio.sleep(delay_seconds)
    async with session_factory() as session:
        result = await evaluate_cycle(session, unit_id, phone, courtesies_before)
        if result.earned:
            client = await get_client_by_phone(session, unit_id, normalize_phone(phone))
            client.last_cycle_completed_at = utc_now()
            await session.commit()

    if result.earned:
        logger.info(
            f"Fidelity cycle completed for {phone} in unit {unit_id}: "
            f"{result.courtesies_before} -> {result.current_courtesies} courtesies"
        )
    else:
        logger.debug(f"No fidelity cycle change for {phone} in unit {unit_id}")
    return result


async def use_courtesy(session: AsyncSession, unit_id: uuid.UUID, phone: Optional[str]):
    """Consume one courtesy credit. Raises InvalidInput when none is available."""
    normalized = normalize_phone(phone)
    if not normalized:
        raise InvalidInput("A client phone is required to redeem a courtesy")
    client = await get_client_by_phone(session, unit_id, normalized)
    if not client:
        raise NotFound(f"Client not found for phone {normalized}")
    if not client.available_courtesies or client.available_courtesies <= 0:
        raise InvalidInput(f"Client {client.name} has no courtesies available")

    client.available_courtesies -= 1
    await session.flush()
    logger.info(f"Courtesy redeemed by {normalized} in unit {unit_id}; {client.available_courtesies} left")
    return client
