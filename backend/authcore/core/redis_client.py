"""Redis client construction. Redis is optional: it backs rate limits and the statistics cache."""

import redis
from redis.exceptions import ConnectionError, RedisError

from authcore.core.config import Settings
from authcore.core.logging import get_logger

logger = get_logger(__name__)


def create_redis_client(settings: Settings) -> redis.Redis | None:
    """Create a Redis client. Returns None if Redis is disabled or unavailable."""
    if not settings.REDIS_ENABLED:
        return None

    if not settings.REDIS_URL:
        if settings.REDIS_REQUIRED:
            raise ValueError("REDIS_URL must be set when REDIS_REQUIRED=true")
        logger.warning("Redis enabled but REDIS_URL not set. Redis features will be disabled.")
        return None

    try:
        client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=1,
            socket_timeout=1,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        client.ping()
        logger.info("Redis connection established")
        return client
    except (ConnectionError, RedisError) as e:
        if settings.REDIS_REQUIRED:
            raise ConnectionError(f"Redis connection failed and REDIS_REQUIRED=true: {e}") from e
        logger.warning(f"Redis connection failed (non-fatal): {e}")
        return None
