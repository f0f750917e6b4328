"""Fixed-window rate limiting on Redis counters."""

from typing import Any, Tuple

from redis.exceptions import RedisError

from authcore.core.app_exceptions import RATE_LIMITED, raise_domain_error
from authcore.core.config import settings
from authcore.core.logging import get_logger
from authcore.core.security_logging import RequestMeta, log_security_event

logger = get_logger(__name__)

KEY_PREFIX = "authcore:rl:"


def _unavailable(limit: int, window_seconds: int) -> Tuple[bool, int, int]:
    if settings.REDIS_REQUIRED:
        return False, 0, window_seconds
    return True, limit, window_seconds


def rate_limit(client: Any | None, key: str, limit: int, window_seconds: int) -> Tuple[bool, int, int]:
    """
    Count one request against ``key``.

    Returns (allowed, remaining, reset_seconds). Without Redis the request is
    allowed unless REDIS_REQUIRED is set.
    """
    if client is None:
        if settings.REDIS_REQUIRED:
            logger.error("rate_limit_redis_missing", extra={"event": "rate_limit_redis_missing", "key": key})
        return _unavailable(limit, window_seconds)

    full_key = KEY_PREFIX + key
    try:
        current = client.get(full_key)
        if current is None:
            client.setex(full_key, window_seconds, 1)
            return True, limit - 1, window_seconds

        if int(current) >= limit:
            return False, 0, max(client.ttl(full_key), 1)

        new_count = client.incr(full_key)
        if new_count == 1:
            client.expire(full_key, window_seconds)
        return True, max(0, limit - new_count), max(client.ttl(full_key), 0)
    except RedisError as e:
        logger.error("rate_limit_check_failed", extra={"event": "rate_limit_check_failed", "key": key, "error": str(e)})
        return _unavailable(limit, window_seconds)


def check_rate_limit(
    client: Any | None,
    key: str,
    limit: int,
    window_seconds: int,
    meta: RequestMeta | None = None,
    event_type: str = "rate_limited",
) -> None:
    """Raise RATE_LIMITED (429, Retry-After) once ``key`` is over its limit."""
    if not settings.RATE_LIMIT_ENABLED:
        return

    allowed, _remaining, reset_seconds = rate_limit(client, key, limit, window_seconds)
    if allowed:
        return

    log_security_event(event_type, "deny", meta=meta, reason_code=RATE_LIMITED)
    raise_domain_error(
        RATE_LIMITED,
        "Rate limit exceeded. Please try again later.",
        {"retry_after_seconds": reset_seconds},
    )


def normalize_email_for_key(email: str) -> str:
    return email.lower().strip()
