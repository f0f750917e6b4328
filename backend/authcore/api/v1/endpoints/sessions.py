"""Session management endpoints."""

from fastapi import APIRouter

from authcore.core.audit import AuditAction, AuditCategory, write_audit
from authcore.core.dependencies import CurrentSessionId, CurrentUser, DbSession, Meta, Now
from authcore.schemas.auth import MessageResponse
from authcore.schemas.mfa import SessionOut
from authcore.services import sessions

router = APIRouter(tags=["Sessions"])


@router.get("", response_model=list[SessionOut], summary="List active sessions")
def list_sessions(
    current_user: CurrentUser, session_id: CurrentSessionId, db: DbSession, now: Now
) -> list[SessionOut]:
    items = []
    for row in sessions.list_user_sessions(db, current_user.id, now):
        item = SessionOut.model_validate(row)
        item.is_current = row.id == session_id
        items.append(item)
    return items


@router.delete("/{target_session_id}", response_model=MessageResponse, summary="Revoke a session")
def revoke_session(
    target_session_id: int, current_user: CurrentUser, db: DbSession, meta: Meta, now: Now
) -> MessageResponse:
    sessions.revoke_session(db, current_user.id, target_session_id, now)
    write_audit(
        db,
        AuditAction.SESSION_REVOKED,
        user_id=current_user.id,
        target_type="session",
        target_id=target_session_id,
        meta=meta,
        category=AuditCategory.STATE_CHANGE,
    )
    db.commit()
    return MessageResponse(message="Session revoked")
