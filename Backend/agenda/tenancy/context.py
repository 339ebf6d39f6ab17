"""
Unit (tenant) context for the scheduling engine.

Every scheduling operation runs against exactly one Unit. The booking API
may address it either by ``unit_id`` or by the messaging-channel
``instance_name``; both are resolved here into an immutable UnitContext
before any tenant data is touched.
"""

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..core.errors import Internal, InvalidInput, NotFound
from ..core.responses import ErrorCodes
from ..models import Unit


logger = logging.getLogger(__name__)


class UnitResolutionSource(str, Enum):
    """How the unit context was determined."""

    UNIT_ID = "unit_id"                # Explicit unit_id in the request
    INSTANCE_NAME = "instance_name"    # Messaging-channel instance lookup


@dataclass(frozen=True)
class UnitContext:
    """
    Immutable context representing the unit a request operates on.

    Attributes:
        unit_id: Database ID of the unit (units.id)
        name: Human-readable unit name
        timezone: Regional timezone identifier (e.g. "America/Sao_Paulo")
        opening_hour: First bookable hour, local time
        closing_hour: Hour at which the last slot must have started before
        instance_name: Messaging-channel identifier, if configured
        evolution_api_key: Messaging gateway credential, if configured
        source: How this context was determined (for audit logging)
    """

    unit_id: uuid.UUID
    name: str
    timezone: str
    opening_hour: int
    closing_hour: int
    instance_name: Optional[str] = None
    evolution_api_key: Optional[str] = None
    source: UnitResolutionSource = UnitResolutionSource.UNIT_ID

    def __post_init__(self):
        if not 0 <= self.opening_hour < self.closing_hour <= 24:
            raise Internal(
                f"Unit {self.unit_id} has invalid business hours "
                f"{self.opening_hour}:00-{self.closing_hour}:00; opening must be before closing"
            )

    @property
    def can_send_messages(self) -> bool:
        return bool(self.instance_name and self.evolution_api_key)


def parse_uuid(value: Union[str, uuid.UUID], field: str) -> uuid.UUID:
    """Parse an identifier from the wire, raising InvalidInput when malformed."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value).strip())
    except (ValueError, AttributeError):
        raise InvalidInput(f"Invalid {field}: {value}") from None


def unit_to_context(unit: Unit, source: UnitResolutionSource) -> UnitContext:
    settings = get_settings()
    opening_hour = unit.opening_time.hour if unit.opening_time else settings.default_opening_hour
    closing_hour = unit.closing_time.hour if unit.closing_time else settings.default_closing_hour
    # 00:00 closes at midnight, the end of the business day.
    if unit.closing_time is not None and unit.closing_time.hour == 0 and unit.closing_time.minute == 0:
        closing_hour = 24
    return UnitContext(
        unit_id=unit.id,
        name=unit.name,
        timezone=unit.timezone or settings.default_timezone,
        opening_hour=opening_hour,
        closing_hour=closing_hour,
        instance_name=unit.evolution_instance_name,
        evolution_api_key=unit.evolution_api_key,
        source=source,
    )


# ────────────────────────────────────────────────────────────────
# Resolution Functions
# ────────────────────────────────────────────────────────────────

async def resolve_unit_from_id(
    session: AsyncSession,
    unit_id: Union[str, uuid.UUID],
) -> Optional[UnitContext]:
    unit = await session.get(Unit, parse_uuid(unit_id, "unit_id"))
    if not unit:
        return None
    return unit_to_context(unit, UnitResolutionSource.UNIT_ID)


async def resolve_unit_from_instance(
    session: AsyncSession,
    instance_name: str,
) -> Optional[UnitContext]:
    """
    Resolve a unit from its messaging-channel instance name.

    Returns:
        UnitContext if found, None if no unit owns that instance
    """
    result = await session.execute(
        select(Unit).where(Unit.evolution_instance_name == instance_name.strip())
    )
    unit = result.scalar_one_or_none()
    if not unit:
        return None
    return unit_to_context(unit, UnitResolutionSource.INSTANCE_NAME)


async def resolve_unit_context(
    session: AsyncSession,
    unit_id: Optional[Union[str, uuid.UUID]] = None,
    instance_name: Optional[str] = None,
) -> UnitContext:
    """
    Resolve the unit a request targets.

    Resolution priority:
        1. Explicit unit_id
        2. Messaging-channel instance_name

    Raises:
        InvalidInput: neither identifier given, or unit_id malformed
        NotFound: no unit matches
    """
    if unit_id:
        ctx = await resolve_unit_from_id(session, unit_id)
        if ctx is None:
            raise NotFound(f"Unit not found: {unit_id}", code=ErrorCodes.UNIT_NOT_FOUND)
        return ctx

    if instance_name and instance_name.strip():
        ctx = await resolve_unit_from_instance(session, instance_name)
        if ctx is None:
            logger.warning(f"No unit configured for instance '{instance_name}'")
            raise NotFound(
                f"Unit not found for instance: {instance_name}",
                code=ErrorCodes.UNIT_NOT_FOUND,
            )
        logger.debug(f"Resolved unit {ctx.unit_id} from instance '{instance_name}'")
        return ctx

    raise InvalidInput("unit_id or instance_name is required", code=ErrorCodes.MISSING_FIELD)
