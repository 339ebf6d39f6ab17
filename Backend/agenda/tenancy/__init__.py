"""
Multi-tenancy package for the scheduling engine.

Modules:
    context: UnitContext resolution from unit_id or messaging instance name
    queries: Unit-scoped query helpers
"""

from .context import (
    UnitContext,
    UnitResolutionSource,
    parse_uuid,
    resolve_unit_context,
    resolve_unit_from_id,
    resolve_unit_from_instance,
)

from .queries import (
    # Composable helpers
    scoped_select,
    require_owned,
    # Barber queries
    list_active_barbers,
    get_active_barber,
    find_barber_by_name,
    lock_barber,
    # Service queries
    list_active_services,
    get_active_service,
    find_service_by_name,
    # Client queries
    get_client_by_phone,
    # Appointment queries
    get_appointment,
    list_live_appointments_in_range,
)

__all__ = [
    # Context
    "UnitContext",
    "UnitResolutionSource",
    "parse_uuid",
    "resolve_unit_context",
    "resolve_unit_from_id",
    "resolve_unit_from_instance",
    # Query helpers
    "scoped_select",
    "require_owned",
    "list_active_barbers",
    "get_active_barber",
    "find_barber_by_name",
    "lock_barber",
    "list_active_services",
    "get_active_service",
    "find_service_by_name",
    "get_client_by_phone",
    "get_appointment",
    "list_live_appointments_in_range",
]
