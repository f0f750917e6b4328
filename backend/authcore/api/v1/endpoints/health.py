"""Liveness and readiness probes."""

from typing import Any, Literal

from fastapi import APIRouter, Request
from pydantic import BaseModel
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from authcore.core.dependencies import Context, DbSession
from authcore.core.errors import get_request_id
from authcore.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["Health"])

CheckStatus = Literal["ok", "degraded", "down"]


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"


class ReadinessCheck(BaseModel):
    status: CheckStatus
    message: str | None = None


class ReadinessResponse(BaseModel):
    status: CheckStatus
    checks: dict[str, ReadinessCheck]
    request_id: str


def _check_database(db: Session) -> ReadinessCheck:
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error("readiness_db_failed", extra={"event": "readiness_db_failed", "error": str(e)})
        return ReadinessCheck(status="down", message="Database unreachable")
    return ReadinessCheck(status="ok")


def _check_redis(client: Any | None) -> ReadinessCheck:
    """Redis only backs a cache, so it can degrade readiness but never fail it."""
    if client is None:
        return ReadinessCheck(status="degraded", message="Redis disabled")
    try:
        client.ping()
    except RedisError as e:
        logger.warning("readiness_redis_failed", extra={"event": "readiness_redis_failed", "error": str(e)})
        return ReadinessCheck(status="degraded", message="Redis unreachable")
    return ReadinessCheck(status="ok")


@router.get("/health", response_model=HealthResponse, summary="Liveness probe")
async def health_check() -> HealthResponse:
    return HealthResponse()


@router.get(
    "/ready",
    response_model=ReadinessResponse,
    summary="Readiness probe",
    description="Database must answer; Redis is reported but optional.",
)
def readiness_check(request: Request, db: DbSession, ctx: Context) -> ReadinessResponse:
    checks = {"database": _check_database(db), "redis": _check_redis(ctx.redis)}
    overall: CheckStatus = "down" if checks["database"].status == "down" else "ok"
    return ReadinessResponse(status=overall, checks=checks, request_id=get_request_id(request))
