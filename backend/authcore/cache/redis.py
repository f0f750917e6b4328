"""Fail-open JSON cache over an optional Redis client.

A missing client or any Redis error reads as a miss; callers always fall
back to computing the value.
"""

from __future__ import annotations

import json
from typing import Any

from redis.exceptions import RedisError

from authcore.core.logging import get_logger

logger = get_logger(__name__)

KEY_PREFIX = "authcore:"
MFA_ENFORCEMENT_STATS = "stats:mfa:enforcement"


class JsonCache:
    def __init__(self, client: Any | None, prefix: str = KEY_PREFIX):
        self.client = client
        self.prefix = prefix

    def _key(self, name: str) -> str:
        return f"{self.prefix}{name}"

    def _warn(self, op: str, name: str, error: Exception) -> None:
        logger.warning(
            "cache_error",
            extra={"event": "cache_error", "op": op, "key": self._key(name), "error": str(error)},
        )

    def get(self, name: str) -> Any | None:
        if self.client is None:
            return None
        try:
            raw = self.client.get(self._key(name))
            return json.loads(raw) if raw else None
        except (RedisError, ValueError) as e:
            self._warn("get", name, e)
            return None

    def set(self, name: str, value: Any, ttl_seconds: int) -> bool:
        if self.client is None:
            return False
        try:
            self.client.setex(self._key(name), int(ttl_seconds), json.dumps(value, default=str))
        except (RedisError, TypeError) as e:
            self._warn("set", name, e)
            return False
        return True

    def delete(self, name: str) -> None:
        if self.client is None:
            return
        try:
            self.client.delete(self._key(name))
        except RedisError as e:
            self._warn("delete", name, e)
