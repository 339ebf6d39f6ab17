"""
Outbound WhatsApp messages through the Evolution API gateway.

Only the booking confirmation is sent from here. Sending is best-effort:
every failure is logged and reported as ``False``, never raised, so a
caller running it in the background cannot be affected by it.
"""

import logging
import re
from datetime import datetime
from decimal import Decimal
from typing import Optional

import httpx

from .core.config import get_settings
from .tenancy import UnitContext
from .timezones import to_local

logger = logging.getLogger(__name__)

BRAZIL_COUNTRY_CODE = "55"


def format_whatsapp_number(phone: Optional[str]) -> Optional[str]:
    """Digits only, prefixed with the country code when it looks like a local number."""
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    if not digits:
        return None
    if not digits.startswith(BRAZIL_COUNTRY_CODE) and len(digits) <= 11:
        digits = BRAZIL_COUNTRY_CODE + digits
    return digits


def build_confirmation_message(
    client_name: str,
    start_time: datetime,
    timezone_id: str,
    service_name: str,
    barber_name: str,
    price: Decimal,
) -> str:
    when = to_local(start_time, timezone_id).strftime("%d/%m/%Y, %H:%M")
    return (
        "✅ *Agendamento Confirmado!*\n\n"
        f"Olá {client_name}!\n\n"
        "Seu agendamento foi realizado com sucesso:\n\n"
        f"📅 *Data/Hora:* {when}\n"
        f"✂️ *Serviço:* {service_name}\n"
        f"💈 *Profissional:* {barber_name}\n"
        f"💰 *Valor:* R$ {Decimal(price):.2f}\n\n"
        "Até lá! 💈"
    )


async def send_text(
    instance_name: str,
    api_key: str,
    number: str,
    text: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    settings = get_settings()
    url = f"{settings.evolution_api_url.rstrip('/')}/message/sendText/{instance_name}"
    headers = {
        "apikey": api_key,
        "Content-Type": "application/json",
    }

    try:
        async with httpx.AsyncClient(timeout=10.0, transport=transport) as client:
            response = await client.post(url, json={"number": number, "text": text}, headers=headers)
            response.raise_for_status()
    except httpx.HTTPStatusError as e:
        logger.error(f"Evolution API rejected message to {number}: {e.response.status_code}")
        return False
    except httpx.RequestError as e:
        logger.error(f"Could not reach Evolution API for {number}: {e}")
        return False

    logger.info(f"WhatsApp message sent to {number} via instance {instance_name}")
    return True


async def send_booking_confirmation(
    unit: UnitContext,
    client_name: str,
    client_phone: Optional[str],
    start_time: datetime,
    service_name: str,
    barber_name: str,
    price: Decimal,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    number = format_whatsapp_number(client_phone)
    if not number or not unit.can_send_messages:
        logger.info(f"WhatsApp confirmation skipped for unit {unit.unit_id}: missing phone or credentials")
        return False

    text = build_confirmation_message(
        client_name, start_time, unit.timezone, service_name, barber_name, price
    )
    return await send_text(unit.instance_name, unit.evolution_api_key, number, text, transport=transport)
