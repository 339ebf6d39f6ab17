import logging
import secrets
from typing import Optional

from fastapi import Header

from .core.config import get_settings
from .core.errors import Unauthorized

logger = logging.getLogger(__name__)


async def verify_api_key(x_api_key: Optional[str] = Header(None, alias="x-api-key")) -> bool:
    """Verify the shared secret sent by the booking channel and the management UI."""
    expected = get_settings().agenda_api_key
    if not expected:
        logger.warning("AGENDA_API_KEY is not configured; rejecting request")
        raise Unauthorized("API key not configured")
    if not x_api_key or not secrets.compare_digest(x_api_key.encode(), expected.encode()):
        logger.warning("Rejected request with missing or invalid x-api-key")
        raise Unauthorized("Invalid API key")
    return True
