"""Admin user management endpoints."""

from fastapi import APIRouter, Depends, Query, status

from authcore.common.pagination import PaginationParams, pagination_params
from authcore.core.config import settings
from authcore.core.dependencies import AdminUser, Context, DbSession, Meta, Now
from authcore.schemas.admin import (
    AdminUserCreatedResponse,
    AdminUserOut,
    PasswordResetTriggeredResponse,
    RoleChangeRequest,
    StatusChangeRequest,
    UserCreate,
    UsersListResponse,
    UserUpdate,
)
from authcore.schemas.auth import MessageResponse
from authcore.schemas.mfa import CountResponse
from authcore.services import admin_users
from authcore.services.email.dispatch import send_templated_email
from authcore.services.email.templates import PASSWORD_RESET

router = APIRouter(tags=["Admin - Users"])


def _send_reset(db, ctx, email: str, token: str) -> bool:
    return (
        send_templated_email(
            db,
            ctx.cipher,
            email,
            PASSWORD_RESET,
            {
                "reset_url": f"{settings.FRONTEND_BASE_URL}/reset-password?token={token}",
                "expires_minutes": settings.PASSWORD_RESET_EXPIRE_MINUTES,
            },
        )
        is not None
    )


@router.get(
    "",
    response_model=UsersListResponse,
    summary="List users",
    description="Get paginated list of users with optional search and filters.",
)
def list_users(
    current_user: AdminUser,
    db: DbSession,
    q: str | None = Query(None, description="Search by username or email"),
    role: str | None = Query(None, description="Filter by role"),
    status_filter: str | None = Query(
        None, alias="status", description="Filter by status: active|disabled|archived|anonymized"
    ),
    pagination: PaginationParams = Depends(pagination_params),
) -> UsersListResponse:
    users, total = admin_users.list_users(db, pagination.offset, pagination.page_size, q, role, status_filter)
    return UsersListResponse(
        items=[AdminUserOut.model_validate(user) for user in users],
        page=pagination.page,
        page_size=pagination.page_size,
        total=total,
    )


@router.get("/{user_id}", response_model=AdminUserOut, summary="Get user")
def get_user(user_id: int, current_user: AdminUser, db: DbSession) -> AdminUserOut:
    return AdminUserOut.model_validate(admin_users.get_user(db, user_id))


@router.post(
    "",
    response_model=AdminUserCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create user",
    description="Create a verified account. Without a password the user is sent a reset link.",
)
def create_user(
    payload: UserCreate, current_user: AdminUser, db: DbSession, ctx: Context, meta: Meta, now: Now
) -> AdminUserCreatedResponse:
    user, reset_token = admin_users.create_user(
        db, current_user, payload.username, payload.email, payload.role, now, payload.password, meta
    )
    db.commit()
    sent = _send_reset(db, ctx, user.email, reset_token) if reset_token else False
    return AdminUserCreatedResponse(user=AdminUserOut.model_validate(user), invite_email_sent=sent)


@router.patch("/{user_id}", response_model=AdminUserOut, summary="Update user")
def update_user(
    user_id: int, payload: UserUpdate, current_user: AdminUser, db: DbSession, meta: Meta, now: Now
) -> AdminUserOut:
    user = admin_users.update_user(db, current_user, user_id, payload.model_dump(exclude_unset=True), now, meta)
    db.commit()
    return AdminUserOut.model_validate(user)


@router.put("/{user_id}/role", response_model=AdminUserOut, summary="Change role")
def change_role(
    user_id: int, payload: RoleChangeRequest, current_user: AdminUser, db: DbSession, meta: Meta, now: Now
) -> AdminUserOut:
    user = admin_users.change_role(db, current_user, user_id, payload.role, now, meta)
    db.commit()
    return AdminUserOut.model_validate(user)


@router.put("/{user_id}/status", response_model=AdminUserOut, summary="Activate or deactivate")
def set_status(
    user_id: int, payload: StatusChangeRequest, current_user: AdminUser, db: DbSession, meta: Meta, now: Now
) -> AdminUserOut:
    user = admin_users.set_status(db, current_user, user_id, payload.is_active, now, meta)
    db.commit()
    return AdminUserOut.model_validate(user)


@router.delete("/{user_id}", response_model=MessageResponse, summary="Delete user")
def delete_user(user_id: int, current_user: AdminUser, db: DbSession, meta: Meta) -> MessageResponse:
    admin_users.delete_user(db, current_user, user_id, meta)
    db.commit()
    return MessageResponse(message="User deleted")


@router.post("/{user_id}/archive", response_model=AdminUserOut, summary="Archive user")
def archive_user(user_id: int, current_user: AdminUser, db: DbSession, meta: Meta, now: Now) -> AdminUserOut:
    user = admin_users.archive_user(db, current_user, user_id, now, meta)
    db.commit()
    return AdminUserOut.model_validate(user)


@router.post("/{user_id}/anonymize", response_model=AdminUserOut, summary="Anonymize user")
def anonymize_user(user_id: int, current_user: AdminUser, db: DbSession, meta: Meta, now: Now) -> AdminUserOut:
    user = admin_users.anonymize_user(db, current_user, user_id, now, meta)
    db.commit()
    return AdminUserOut.model_validate(user)


@router.post("/{user_id}/password-reset", response_model=PasswordResetTriggeredResponse, summary="Send reset link")
def trigger_password_reset(
    user_id: int, current_user: AdminUser, db: DbSession, ctx: Context, meta: Meta, now: Now
) -> PasswordResetTriggeredResponse:
    user, token = admin_users.trigger_password_reset(db, current_user, user_id, now, meta)
    db.commit()
    sent = _send_reset(db, ctx, user.email, token)
    return PasswordResetTriggeredResponse(message="Password reset link issued", email_sent=sent)


@router.post("/{user_id}/sessions/revoke", response_model=CountResponse, summary="Revoke all user sessions")
def revoke_sessions(user_id: int, current_user: AdminUser, db: DbSession, meta: Meta, now: Now) -> CountResponse:
    count = admin_users.revoke_user_sessions(db, current_user, user_id, now, meta)
    db.commit()
    return CountResponse(count=count)
