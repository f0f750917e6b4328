"""FastAPI dependencies for authentication and authorization."""

from datetime import datetime, timezone
from typing import Annotated

import jwt
from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from authcore.core.app_exceptions import ACCOUNT_DISABLED, NOT_ALLOWED, UNAUTHORIZED, raise_domain_error
from authcore.core.context import AppContext
from authcore.core.security import verify_access_token
from authcore.core.security_logging import RequestMeta
from authcore.db.session import get_db
from authcore.models.user import User, UserRole
from authcore.services.sessions import validate_session


def get_context(request: Request) -> AppContext:
    return request.app.state.ctx


def get_request_meta(request: Request) -> RequestMeta:
    return RequestMeta.from_request(request)


def get_now() -> datetime:
    """Request clock; overridden in tests."""
    return datetime.now(timezone.utc)


def get_bearer_claims(authorization: Annotated[str | None, Header()] = None) -> dict:
    """Decode the access token from the Authorization header."""
    if not authorization:
        raise_domain_error(UNAUTHORIZED, "Authorization header missing")

    # Extract token from "Bearer <token>"
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise_domain_error(UNAUTHORIZED, "Invalid authorization header format. Expected: Bearer <token>")

    try:
        return verify_access_token(token.strip())
    except jwt.InvalidTokenError as e:
        raise_domain_error(UNAUTHORIZED, f"Invalid or expired token: {e}")


def get_current_user(
    claims: dict = Depends(get_bearer_claims),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
) -> User:
    """Dependency to get the current authenticated user from JWT token and its live session."""
    try:
        user_id = int(claims["sub"])
        session_id = int(claims["sid"])
    except (KeyError, TypeError, ValueError):
        raise_domain_error(UNAUTHORIZED, "Invalid token claims")

    user = db.get(User, user_id)
    if user is None:
        raise_domain_error(UNAUTHORIZED, "User not found")
    if not user.can_authenticate:
        raise_domain_error(ACCOUNT_DISABLED, "User account is inactive")

    # Token role doesn't match DB role - token is stale
    if user.role != claims.get("role"):
        raise_domain_error(UNAUTHORIZED, "Token role mismatch. Please login again.")

    if validate_session(db, session_id, user.id, now) is None:
        raise_domain_error(UNAUTHORIZED, "Session has been revoked or expired")
    db.commit()
    return user


def get_current_session_id(claims: dict = Depends(get_bearer_claims)) -> int | None:
    sid = claims.get("sid")
    return int(sid) if sid is not None else None


def require_roles(*allowed_roles: UserRole):
    """Dependency factory to require specific roles."""
    allowed = {role.value for role in allowed_roles}

    def role_checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in allowed:
            raise_domain_error(
                NOT_ALLOWED,
                f"Access denied. Required roles: {sorted(allowed)}",
            )
        return current_user

    return role_checker


CurrentUser = Annotated[User, Depends(get_current_user)]
CurrentSessionId = Annotated[int | None, Depends(get_current_session_id)]
AdminUser = Annotated[User, Depends(require_roles(UserRole.ADMIN, UserRole.SUPER_ADMIN))]
DbSession = Annotated[Session, Depends(get_db)]
Context = Annotated[AppContext, Depends(get_context)]
Meta = Annotated[RequestMeta, Depends(get_request_meta)]
Now = Annotated[datetime, Depends(get_now)]
