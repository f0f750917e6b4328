"""Session manager: access/refresh token pairs backed by a session row."""

from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from authcore.core.app_exceptions import NOT_FOUND, UNAUTHORIZED, raise_domain_error
from authcore.core.config import settings
from authcore.core.logging import get_logger
from authcore.core.security import create_access_token, create_refresh_token, hash_token
from authcore.core.security_logging import RequestMeta
from authcore.models.session import AuthSession
from authcore.models.user import User
from authcore.services.security_events import location_from_ip, parse_user_agent

logger = get_logger(__name__)


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str
    session_id: int
    expires_at: datetime
    absolute_expires_at: datetime | None
    token_type: str = "bearer"


def _absolute_deadline(now: datetime, remember_me: bool) -> datetime:
    if remember_me:
        return now + timedelta(days=settings.SESSION_REMEMBER_ME_ABSOLUTE_DAYS)
    return now + timedelta(hours=settings.SESSION_ABSOLUTE_HOURS)


def _sliding_deadline(now: datetime, absolute: datetime | None) -> datetime:
    expires_at = now + timedelta(days=settings.JWT_REFRESH_EXPIRES_IN)
    if absolute is not None and expires_at > absolute:
        return absolute
    return expires_at


def create_session(
    db: Session,
    user: User,
    meta: RequestMeta | None,
    remember_me: bool,
    now: datetime,
    device_fingerprint: str | None = None,
) -> IssuedTokens:
    """Insert a session row and mint its token pair. Caller commits."""
    ua = parse_user_agent(meta.user_agent if meta else None)
    refresh_token = create_refresh_token()
    absolute = _absolute_deadline(now, remember_me)

    session_row = AuthSession(
        user_id=user.id,
        refresh_token_hash=hash_token(refresh_token),
        device_fingerprint=device_fingerprint,
        browser=ua.browser,
        os=ua.os,
        device_type=ua.device_type,
        ip_address=meta.ip_address if meta else None,
        location=location_from_ip(meta.ip_address if meta else None),
        remember_me=remember_me,
        is_active=True,
        created_at=now,
        last_activity_at=now,
        expires_at=_sliding_deadline(now, absolute),
        absolute_expires_at=absolute,
    )
    db.add(session_row)
    db.flush()

    return IssuedTokens(
        access_token=create_access_token(user.id, user.role, session_id=session_row.id),
        refresh_token=refresh_token,
        session_id=session_row.id,
        expires_at=session_row.expires_at,
        absolute_expires_at=absolute,
    )


def refresh_session(db: Session, refresh_token: str, now: datetime) -> tuple[User, IssuedTokens]:
    """Rotate the refresh token and slide the session, never past its absolute deadline."""
    session_row = (
        db.query(AuthSession)
        .filter(AuthSession.refresh_token_hash == hash_token(refresh_token))
        .with_for_update()
        .first()
    )
    if session_row is None or not session_row.is_valid(now):
        raise_domain_error(UNAUTHORIZED, "Invalid or expired refresh token")

    user = session_row.user
    if user is None or not user.can_authenticate:
        raise_domain_error(UNAUTHORIZED, "User not found or inactive")

    new_refresh_token = create_refresh_token()
    session_row.refresh_token_hash = hash_token(new_refresh_token)
    session_row.last_activity_at = now
    session_row.expires_at = _sliding_deadline(now, session_row.absolute_expires_at)
    db.flush()

    return user, IssuedTokens(
        access_token=create_access_token(user.id, user.role, session_id=session_row.id),
        refresh_token=new_refresh_token,
        session_id=session_row.id,
        expires_at=session_row.expires_at,
        absolute_expires_at=session_row.absolute_expires_at,
    )


def validate_session(db: Session, session_id: int, user_id: int, now: datetime) -> AuthSession | None:
    """Return the session when it belongs to the user and is still valid."""
    session_row = db.get(AuthSession, session_id)
    if session_row is None or session_row.user_id != user_id or not session_row.is_valid(now):
        return None
    session_row.last_activity_at = now
    return session_row


def _revoke(session_row: AuthSession, reason: str, now: datetime) -> None:
    session_row.is_active = False
    session_row.revoked_at = now
    session_row.revoked_reason = reason


def revoke_session(db: Session, user_id: int, session_id: int, now: datetime, reason: str = "user_revoked") -> None:
    session_row = (
        db.query(AuthSession)
        .filter(AuthSession.id == session_id, AuthSession.user_id == user_id)
        .with_for_update()
        .first()
    )
    if session_row is None:
        raise_domain_error(NOT_FOUND, "Session not found")
    if session_row.is_active:
        _revoke(session_row, reason, now)


def revoke_by_refresh_token(db: Session, refresh_token: str, now: datetime) -> AuthSession | None:
    """Logout. Idempotent: unknown or already revoked tokens are ignored."""
    session_row = (
        db.query(AuthSession)
        .filter(
            AuthSession.refresh_token_hash == hash_token(refresh_token),
            AuthSession.is_active.is_(True),
        )
        .with_for_update()
        .first()
    )
    if session_row is not None:
        _revoke(session_row, "logout", now)
    return session_row


def revoke_all_user_sessions(
    db: Session,
    user_id: int,
    now: datetime,
    reason: str = "logout_all",
    except_session_id: int | None = None,
) -> int:
    query = db.query(AuthSession).filter(AuthSession.user_id == user_id, AuthSession.is_active.is_(True))
    if except_session_id is not None:
        query = query.filter(AuthSession.id != except_session_id)
    revoked = query.update(
        {"is_active": False, "revoked_at": now, "revoked_reason": reason},
        synchronize_session="fetch",
    )
    logger.info(
        "sessions_revoked",
        extra={"event": "sessions_revoked", "user_id": user_id, "count": revoked, "reason": reason},
    )
    return revoked


def list_user_sessions(db: Session, user_id: int, now: datetime) -> list[AuthSession]:
    """Active, unexpired sessions, most recently used first."""
    rows = (
        db.query(AuthSession)
        .filter(AuthSession.user_id == user_id, AuthSession.is_active.is_(True))
        .order_by(AuthSession.last_activity_at.desc())
        .all()
    )
    return [row for row in rows if row.is_valid(now)]


def cleanup_expired_sessions(db: Session, now: datetime) -> int:
    """Delete sessions past either deadline, and revoked ones older than a day."""
    expired = (
        db.query(AuthSession)
        .filter(
            (AuthSession.expires_at < now)
            | (AuthSession.absolute_expires_at < now)
            | ((AuthSession.is_active.is_(False)) & (AuthSession.revoked_at < now - timedelta(days=1)))
        )
        .delete(synchronize_session=False)
    )
    logger.info("sessions_cleaned", extra={"event": "sessions_cleaned", "deleted": expired})
    return expired
