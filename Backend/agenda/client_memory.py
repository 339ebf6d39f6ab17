from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import get_settings
from .core.errors import Conflict, InvalidInput, NotFound
from .core.responses import ErrorCodes
from .models import Client
from .tenancy import get_client_by_phone, scoped_select
from .timezones import isoformat_utc


logger = logging.getLogger(__name__)

UNSET = object()


@dataclass
class ClientResolution:
    client: Client | None
    created: bool


def normalize_phone(phone: str | None) -> str | None:
    if not phone:
        return None
    digits = re.sub(r"\D", "", str(phone))
    return digits or None


def parse_birth_date(value: str | date | None) -> date | None:
    """Accept ISO (YYYY-MM-DD) or Brazilian (DD/MM/YYYY) dates."""
    if value is None or isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    for fmt in ("%Y-%m-%d", "%d/%m/%Y"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise InvalidInput(f"Invalid birth_date: {value!r}")


def merge_tags(existing: list[str] | None, incoming: list[str] | None) -> list[str]:
    merged = list(existing or [])
    for tag in incoming or []:
        if tag and tag not in merged:
            merged.append(tag)
    return merged


def merge_client_fields(
    client: Client,
    birth_date: date | None,
    notes: str | None,
    tags: list[str] | None,
) -> bool:
    """Fill in only newly informative fields; never blank out stored values."""
    changed = False
    if birth_date and not client.birth_date:
        client.birth_date = birth_date
        changed = True
    if notes and notes.strip() and notes.strip() != (client.notes or ""):
        client.notes = notes.strip()
        changed = True
    if tags:
        merged = merge_tags(client.tags, tags)
        if merged != list(client.tags or []):
            client.tags = merged
            changed = True
    return changed


def client_to_dict(client: Client, include_stats: bool = False) -> dict:
    data = {
        "id": str(client.id),
        "name": client.name,
        "phone": client.phone,
        "birth_date": client.birth_date.isoformat() if client.birth_date else None,
        "notes": client.notes,
        "tags": list(client.tags or []),
    }
    if include_stats:
        data.update(
            {
                "total_visits": client.total_visits,
                "last_visit_at": isoformat_utc(client.last_visit_at) if client.last_visit_at else None,
                "available_courtesies": client.available_courtesies,
                "last_cycle_completed_at": (
                    isoformat_utc(client.last_cycle_completed_at) if client.last_cycle_completed_at else None
                ),
                "created_at": isoformat_utc(client.created_at) if client.created_at else None,
            }
        )
    return data


def _new_client(
    unit_id: uuid.UUID,
    name: str,
    phone: str | None,
    birth_date: date | None,
    notes: str | None,
    tags: list[str] | None,
) -> Client:
    return Client(
        unit_id=unit_id,
        name=name.strip(),
        phone=phone,
        birth_date=birth_date,
        notes=notes.strip() if notes and notes.strip() else None,
        tags=merge_tags([], tags) if tags else get_settings().default_client_tags_list,
        total_visits=0,
        available_courtesies=0,
    )


async def find_client_by_name(
    session: AsyncSession,
    unit_id: uuid.UUID,
    name: str,
    birth_date: date | None = None,
) -> Client | None:
    stmt = scoped_select(Client, unit_id).where(func.lower(Client.name) == name.strip().lower())
    if birth_date:
        stmt = stmt.where(Client.birth_date == birth_date)
    result = await session.execute(stmt.order_by(Client.created_at).limit(1))
    return result.scalar_one_or_none()


async def resolve_client(
    session: AsyncSession,
    unit_id: uuid.UUID,
    name: str,
    phone: str | None = None,
    birth_date: date | None = None,
    notes: str | None = None,
    tags: list[str] | None = None,
) -> ClientResolution:
    """
    Find or create the client a booking belongs to.

    With a phone the (unit, phone) pair is the identity and a lost insert
    race re-reads the winner's row. Without a phone the match is best-effort
    by name (and birth date when given); a storage failure there is logged
    and yields ``client=None`` so the booking can still go ahead.
    """
    if not name or not name.strip():
        raise InvalidInput("client_name is required", code=ErrorCodes.MISSING_FIELD)

    normalized = normalize_phone(phone)
    if normalized:
        existing = await get_client_by_phone(session, unit_id, normalized)
        if existing:
            if merge_client_fields(existing, birth_date, notes, tags):
                await session.flush()
            return ClientResolution(client=existing, created=False)

        client = _new_client(unit_id, name, normalized, birth_date, notes, tags)
        try:
            async with session.begin_nested():
                session.add(client)
                await session.flush()
        except IntegrityError:
            existing = await get_client_by_phone(session, unit_id, normalized)
            if existing is None:
                raise
            logger.info(f"Client {normalized} created concurrently in unit {unit_id}; reusing it")
            return ClientResolution(client=existing, created=False)
        logger.info(f"Created client {client.id} ({normalized}) in unit {unit_id}")
        return ClientResolution(client=client, created=True)

    # One savepoint around every statement, so a failure here leaves the
    # outer transaction usable for the booking itself.
    try:
        async with session.begin_nested():
            existing = await find_client_by_name(session, unit_id, name, birth_date)
            if existing:
                if merge_client_fields(existing, birth_date, notes, tags):
                    await session.flush()
                return ClientResolution(client=existing, created=False)

            client = _new_client(unit_id, name, None, birth_date, notes, tags)
            session.add(client)
            await session.flush()
    except SQLAlchemyError:
        logger.exception(f"Could not resolve phoneless client '{name}' in unit {unit_id}; booking continues")
        return ClientResolution(client=None, created=False)
    logger.info(f"Created phoneless client {client.id} in unit {unit_id}")
    return ClientResolution(client=client, created=True)


async def check_client(session: AsyncSession, unit_id: uuid.UUID, phone: str | None) -> Client | None:
    normalized = normalize_phone(phone)
    if not normalized:
        raise InvalidInput("phone is required", code=ErrorCodes.MISSING_FIELD)
    return await get_client_by_phone(session, unit_id, normalized)


async def register_client(
    session: AsyncSession,
    unit_id: uuid.UUID,
    name: str | None,
    phone: str | None = None,
    birth_date: date | None = None,
    notes: str | None = None,
    tags: list[str] | None = None,
) -> Client:
    if not name or not name.strip():
        raise InvalidInput("name is required", code=ErrorCodes.MISSING_FIELD)

    normalized = normalize_phone(phone)
    if normalized:
        existing = await get_client_by_phone(session, unit_id, normalized)
        if existing:
            raise Conflict(
                "A client with this phone is already registered",
                code=ErrorCodes.ALREADY_EXISTS,
                details={
                    "existing_client": {
                        "id": str(existing.id),
                        "name": existing.name,
                        "phone": existing.phone,
                    }
                },
            )

    client = _new_client(unit_id, name, normalized, birth_date, notes, tags)
    session.add(client)
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        raise Conflict("A client with this phone is already registered", code=ErrorCodes.ALREADY_EXISTS)
    logger.info(f"Registered client {client.id} in unit {unit_id}")
    return client


async def update_client(
    session: AsyncSession,
    unit_id: uuid.UUID,
    phone: str | None,
    name: str | None = None,
    birth_date: date | None = None,
    notes=UNSET,
    new_phone: str | None = None,
) -> tuple[Client, list[str]]:
    """
    Update a client found by phone.

    ``notes`` distinguishes "not sent" from an explicit empty value, which
    clears the stored notes.
    """
    normalized = normalize_phone(phone)
    if not normalized:
        raise InvalidInput("phone is required", code=ErrorCodes.MISSING_FIELD)

    new_normalized = normalize_phone(new_phone)
    if not (name and name.strip()) and birth_date is None and notes is UNSET and not new_normalized:
        raise InvalidInput(
            "Nothing to update: send at least one of name, birth_date, notes, new_phone",
            code=ErrorCodes.MISSING_FIELD,
        )

    client = await get_client_by_phone(session, unit_id, normalized)
    if not client:
        raise NotFound(f"Client not found for phone {normalized}")

    updated: list[str] = []
    if name and name.strip():
        client.name = name.strip()
        updated.append("name")
    if birth_date is not None:
        client.birth_date = birth_date
        updated.append("birth_date")
    if notes is not UNSET:
        client.notes = notes.strip() if notes and notes.strip() else None
        updated.append("notes")
    if new_normalized and new_normalized != client.phone:
        taken = await get_client_by_phone(session, unit_id, new_normalized)
        if taken:
            raise Conflict(
                f"Phone {new_normalized} already belongs to another client",
                code=ErrorCodes.ALREADY_EXISTS,
            )
        client.phone = new_normalized
        updated.append("phone")

    await session.flush()
    logger.info(f"Updated client {client.id} in unit {unit_id}: {', '.join(updated) or 'no changes'}")
    return client, updated


async def record_visit(
    session: AsyncSession,
    unit_id: uuid.UUID,
    phone: str | None,
    visited_at: datetime,
) -> Client | None:
    """Bump visit counters of the client behind a completed appointment."""
    normalized = normalize_phone(phone)
    if not normalized:
        return None
    client = await get_client_by_phone(session, unit_id, normalized)
    if not client:
        return None
    client.total_visits = (client.total_visits or 0) + 1
    client.last_visit_at = visited_at
    return client
