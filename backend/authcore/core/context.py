"""Explicit application context shared by request handlers and jobs."""

from dataclasses import dataclass
from typing import Any

from redis.exceptions import RedisError
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from authcore.core.config import Settings
from authcore.core.crypto import SecretCipher
from authcore.core.logging import get_logger
from authcore.core.redis_client import create_redis_client
from authcore.db.engine import create_db_engine
from authcore.db.session import create_session_factory

logger = get_logger(__name__)


@dataclass
class AppContext:
    """Process-lifetime resources: DB pool, optional Redis, encryption key."""

    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    cipher: SecretCipher
    redis: Any | None = None

    def dispose(self) -> None:
        self.engine.dispose()
        if self.redis is not None:
            try:
                self.redis.close()
            except RedisError as e:
                logger.warning("redis_close_failed", extra={"event": "redis_close_failed", "error": str(e)})


def build_context(settings: Settings, engine: Engine | None = None, redis_client: Any | None = None) -> AppContext:
    """Create the context and verify the encryption key with a round-trip probe."""
    if not settings.EMAIL_ENCRYPTION_KEY:
        raise ValueError("EMAIL_ENCRYPTION_KEY must be set")
    cipher = SecretCipher(settings.EMAIL_ENCRYPTION_KEY)
    cipher.self_test()

    engine = engine or create_db_engine(settings)
    if redis_client is None:
        redis_client = create_redis_client(settings)

    return AppContext(
        settings=settings,
        engine=engine,
        session_factory=create_session_factory(engine),
        cipher=cipher,
        redis=redis_client,
    )
