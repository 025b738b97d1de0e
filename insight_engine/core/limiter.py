"""
Rate limiting for the public intake, analysis and polling endpoints (slowapi).

Counters are shared through Redis when REDIS_URL answers a ping, and kept in
process memory otherwise. Clients are keyed by their first forwarded address
so a reverse proxy in front of the API does not collapse everyone into one
bucket.
"""
import logging

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from insight_engine.core.config import settings

logger = logging.getLogger(__name__)

MEMORY_STORAGE = "memory://"

# Endpoint-specific limits (importable constants)
CREATE_JOB_LIMIT = "10/minute"
UPLOAD_LIMIT = "10/minute"
ANALYZE_LIMIT = "30/minute"
STATUS_LIMIT = "120/minute"   # pollers hit this every 2s
WEBHOOK_LIMIT = "60/minute"


def client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    first_hop = forwarded.split(",")[0].strip()
    return first_hop or get_remote_address(request)


def limiter_storage_uri(redis_url: str) -> str:
    if not redis_url:
        return MEMORY_STORAGE
    try:
        import redis
        redis.from_url(redis_url, socket_connect_timeout=1).ping()
    except Exception as e:
        logger.warning(f"Rate Limiter: Redis not available ({e}). Falling back to memory storage.")
        return MEMORY_STORAGE
    logger.info(f"Rate Limiter connected to Redis at {redis_url}")
    return redis_url


limiter = Limiter(
    key_func=client_key,
    enabled=settings.RATE_LIMIT_ENABLED,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
    storage_uri=limiter_storage_uri(settings.REDIS_URL),
)

logger.info(f"Rate limiting {'ENABLED' if settings.RATE_LIMIT_ENABLED else 'DISABLED'}")
