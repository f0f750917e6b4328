"""Request transport metadata and the security event log line."""

from dataclasses import dataclass
from typing import Any, Literal

from fastapi import Request

from authcore.core.errors import get_request_id
from authcore.core.logging import get_logger

logger = get_logger("authcore.security")

Outcome = Literal["allow", "deny", "degraded"]
USER_AGENT_MAX = 512


def get_client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip
    if request.client:
        return request.client.host
    return "unknown"


@dataclass(frozen=True)
class RequestMeta:
    """What the services need to know about the HTTP request; None for jobs."""

    ip_address: str | None = None
    user_agent: str | None = None
    accept_language: str | None = None
    request_id: str | None = None

    @classmethod
    def from_request(cls, request: Request) -> "RequestMeta":
        return cls(
            ip_address=get_client_ip(request),
            user_agent=(request.headers.get("User-Agent") or "")[:USER_AGENT_MAX] or None,
            accept_language=request.headers.get("Accept-Language"),
            request_id=get_request_id(request),
        )


def log_security_event(
    event_type: str,
    outcome: Outcome,
    *,
    meta: RequestMeta | None = None,
    reason_code: str | None = None,
    user_id: int | None = None,
    **fields: Any,
) -> None:
    """Emit one ``security_event`` line; denials and degradations log at WARNING."""
    record: dict[str, Any] = {"event": "security_event", "event_type": event_type, "outcome": outcome}
    if meta is not None:
        record.update(request_id=meta.request_id, ip_address=meta.ip_address, user_agent=meta.user_agent)
    if user_id is not None:
        record["user_id"] = user_id
    if reason_code:
        record["reason_code"] = reason_code
    record.update(fields)

    if outcome == "allow":
        logger.info("security_event", extra=record)
    else:
        logger.warning("security_event", extra=record)
