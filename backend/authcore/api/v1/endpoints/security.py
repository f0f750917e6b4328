"""Login history and security event endpoints."""

from typing import Literal

from fastapi import APIRouter, Depends, Query

from authcore.common.pagination import PaginatedResponse, PaginationParams, pagination_params
from authcore.core.dependencies import CurrentUser, DbSession, Now
from authcore.schemas.mfa import CountResponse, LoginAttemptOut, SecurityEventOut, SecurityEventsResponse
from authcore.services import security_events

router = APIRouter(tags=["Security"])


@router.get("/login-history", response_model=PaginatedResponse[LoginAttemptOut], summary="Login history")
def login_history(
    current_user: CurrentUser,
    db: DbSession,
    pagination: PaginationParams = Depends(pagination_params),
) -> PaginatedResponse[LoginAttemptOut]:
    items, total = security_events.list_login_history(db, current_user.id, pagination.offset, pagination.page_size)
    return PaginatedResponse[LoginAttemptOut](
        items=[LoginAttemptOut.model_validate(item) for item in items],
        page=pagination.page,
        page_size=pagination.page_size,
        total=total,
    )


@router.get("/login-stats", summary="Login statistics")
def login_stats(
    current_user: CurrentUser,
    db: DbSession,
    now: Now,
    days: int = Query(30, ge=1, le=365),
) -> dict:
    return security_events.login_statistics(db, current_user.id, now, days)


@router.get("/events", response_model=SecurityEventsResponse, summary="Security events")
def list_events(
    current_user: CurrentUser,
    db: DbSession,
    severity: Literal["info", "warning", "critical"] | None = None,
    unacknowledged_only: bool = False,
    pagination: PaginationParams = Depends(pagination_params),
) -> SecurityEventsResponse:
    items, _ = security_events.list_events(
        db, current_user.id, pagination.offset, pagination.page_size, severity, unacknowledged_only
    )
    return SecurityEventsResponse(
        items=[SecurityEventOut.model_validate(item) for item in items],
        unacknowledged_count=security_events.count_unacknowledged(db, current_user.id),
    )


@router.post("/events/{event_id}/acknowledge", response_model=SecurityEventOut, summary="Acknowledge event")
def acknowledge_event(event_id: int, current_user: CurrentUser, db: DbSession, now: Now) -> SecurityEventOut:
    event = security_events.acknowledge_event(db, current_user.id, event_id, now)
    db.commit()
    return SecurityEventOut.model_validate(event)


@router.post("/events/acknowledge-all", response_model=CountResponse, summary="Acknowledge all events")
def acknowledge_all(current_user: CurrentUser, db: DbSession, now: Now) -> CountResponse:
    count = security_events.acknowledge_all_events(db, current_user.id, now)
    db.commit()
    return CountResponse(count=count)
