import logging

from slowapi import Limiter
from slowapi.util import get_remote_address

from givingcore.core.config import settings

logger = logging.getLogger(__name__)


def _storage_uri() -> str:
    if settings.ENV.lower() != "prod":
        logger.info("Rate limiter using in-memory storage (dev/test mode)")
        return "memory://"
    return settings.REDIS_URL or "memory://"


limiter = Limiter(key_func=get_remote_address, storage_uri=_storage_uri())

RATE_LIMITS = {
    # Providers retry aggressively after slow acknowledgements
    "webhook": settings.WEBHOOK_RATE_LIMIT,
    "dispute_evidence": "30/minute",
    "reconciliation_sync": "10/minute",
}
