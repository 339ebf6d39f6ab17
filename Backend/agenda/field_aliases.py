"""
Request-boundary normalization for the booking API.

The conversational channel sends Portuguese or English field names
(``nome`` / ``client_name``). Everything is mapped onto one canonical
field set here, before any scheduling logic runs. When several aliases of
the same field are present, the earlier alias in the table wins.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .core.errors import InvalidInput
from .core.responses import ErrorCodes


FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "client_name": ("nome", "client_name", "name"),
    "client_phone": ("telefone", "client_phone", "phone"),
    "datetime": ("data", "datetime"),
    "date": ("date",),
    "professional": ("barbeiro_nome", "professional", "barber_name"),
    "service": ("servico", "service", "service_name"),
    "birth_date": ("data_nascimento", "birth_date"),
    "notes": ("observacoes", "observations", "notes"),
    "new_phone": ("novo_telefone", "new_phone"),
}

PASSTHROUGH_FIELDS = ("action", "unit_id", "instance_name", "appointment_id", "time", "tags", "reason")


class BookingRequest(BaseModel):
    """Canonical booking API payload."""

    model_config = ConfigDict(extra="ignore")

    action: Optional[str] = None
    unit_id: Optional[str] = None
    instance_name: Optional[str] = None
    appointment_id: Optional[str] = None
    client_name: Optional[str] = None
    client_phone: Optional[str] = None
    datetime: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    professional: Optional[str] = None
    service: Optional[str] = None
    birth_date: Optional[str] = None
    notes: Optional[str] = None
    new_phone: Optional[str] = None
    reason: Optional[str] = None
    tags: Optional[list[str]] = None

    @field_validator("tags", mode="before")
    @classmethod
    def split_tags(cls, value: Any):
        if isinstance(value, str):
            return [tag.strip() for tag in value.split(",") if tag.strip()]
        return value

    @property
    def notes_sent(self) -> bool:
        """True when the caller sent a notes field at all, even an empty one."""
        return "notes" in self.model_fields_set

    @property
    def day(self) -> Optional[str]:
        """Local date the request refers to, from ``date`` or the ``datetime`` prefix."""
        value = self.date or self.datetime
        if not value:
            return None
        return value.strip().replace(" ", "T").split("T")[0]

    @property
    def local_datetime(self) -> Optional[str]:
        """Full local datetime, from ``datetime`` or ``date`` + ``time``."""
        if self.datetime:
            return self.datetime
        if self.date and self.time:
            clock = self.time.strip()
            if ":" not in clock:
                clock = f"{clock}:00"
            return f"{self.day}T{clock}"
        return self.date


def _coerce(value: Any) -> Any:
    # Phones and ids sometimes arrive as JSON numbers.
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, str):
        return value.strip()
    return value


def normalize_fields(body: dict[str, Any]) -> BookingRequest:
    canonical: dict[str, Any] = {}
    for field, aliases in FIELD_ALIASES.items():
        for alias in aliases:
            if body.get(alias) is not None:
                canonical[field] = _coerce(body[alias])
                break
    for field in PASSTHROUGH_FIELDS:
        if body.get(field) is not None:
            canonical[field] = _coerce(body[field])
    try:
        return BookingRequest.model_validate(canonical)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"])
        raise InvalidInput(
            f"Invalid {field}: {first['msg']}", code=ErrorCodes.VALIDATION_ERROR
        ) from None
