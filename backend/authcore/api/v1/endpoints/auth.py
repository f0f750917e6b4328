"""Authentication endpoints."""

import math
from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.orm import Session

from authcore.core.config import settings
from authcore.core.context import AppContext
from authcore.core.dependencies import Context, CurrentSessionId, CurrentUser, DbSession, Meta, Now
from authcore.core.rate_limit_deps import (
    require_rate_limit_login_email,
    require_rate_limit_login_ip,
    require_rate_limit_mfa_verify_ip,
    require_rate_limit_register_ip,
    require_rate_limit_reset_email,
    require_rate_limit_reset_ip,
)
from authcore.core.security_logging import log_security_event
from authcore.schemas.auth import (
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MessageResponse,
    MFAPartialResponse,
    MFAResendRequest,
    MFASetupCompleteRequest,
    MFASetupProgressResponse,
    MFASetupStartRequest,
    MFAVerifyRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    SecurityAlertOut,
    TokensResponse,
    UserOut,
    VerifyEmailRequest,
)
from authcore.schemas.mfa import TOTPSetupResponse
from authcore.services import auth_flow, sessions
from authcore.services.auth_flow import LoginResult, MFAChallengeResult, MFAPartialResult
from authcore.services.email.dispatch import (
    notify_new_device,
    send_code_email,
    send_templated_email,
    send_templated_email_detached,
)
from authcore.services.email.templates import EMAIL_VERIFICATION, PASSWORD_RESET
from authcore.services.sessions import IssuedTokens

router = APIRouter(tags=["Auth"])


def _tokens(tokens: IssuedTokens) -> TokensResponse:
    return TokensResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_at=tokens.expires_at,
        absolute_expires_at=tokens.absolute_expires_at,
    )


def _authenticated(db: Session, ctx: AppContext, result: LoginResult) -> LoginResponse:
    notify_new_device(db, ctx.cipher, result.user, result.alerts)
    return LoginResponse(
        status="authenticated",
        user=UserOut.model_validate(result.user),
        tokens=_tokens(result.tokens),
        security_alerts=[SecurityAlertOut.model_validate(alert) for alert in result.alerts],
        backup_codes=result.backup_codes,
    )


def _challenge(db: Session, ctx: AppContext, result: MFAChallengeResult, now: datetime) -> LoginResponse:
    email_sent = False
    if result.email_code is not None:
        minutes = max(1, math.ceil((result.email_code.expires_at - now).total_seconds() / 60))
        email_sent = send_code_email(db, ctx.cipher, result.email_recipients, result.email_code.code, minutes) > 0
    return LoginResponse(
        status="mfa_required",
        challenge_token=result.challenge_token,
        mode=result.mode,
        allowed_methods=result.allowed_methods,
        expires_at=result.expires_at,
        email_sent=email_sent,
    )


@router.post(
    "/register",
    response_model=RegisterResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register",
    description="Create a new account and send an email verification link.",
)
def register(
    payload: RegisterRequest,
    db: DbSession,
    ctx: Context,
    meta: Meta,
    now: Now,
    _rate_limit: None = Depends(require_rate_limit_register_ip),
) -> RegisterResponse:
    result = auth_flow.register(db, payload.username, payload.email, payload.password, now, meta)
    send_templated_email(
        db,
        ctx.cipher,
        result.user.email,
        EMAIL_VERIFICATION,
        {
            "username": result.user.username,
            "verify_url": f"{settings.FRONTEND_BASE_URL}/verify-email?token={result.verification_token}",
            "expires_hours": settings.EMAIL_VERIFICATION_EXPIRE_HOURS,
        },
    )
    return RegisterResponse(user=UserOut.model_validate(result.user))


@router.post(
    "/login",
    response_model=LoginResponse,
    summary="Login",
    description="Password step. Returns tokens, or a challenge when a second factor is required.",
)
def login(
    payload: LoginRequest,
    db: DbSession,
    ctx: Context,
    meta: Meta,
    now: Now,
    _rate_limit_ip: None = Depends(require_rate_limit_login_ip),
) -> LoginResponse:
    require_rate_limit_login_email(ctx, meta, payload.email)
    result = auth_flow.login(db, ctx, payload.email, payload.password, meta, payload.remember_me, now)
    if isinstance(result, MFAChallengeResult):
        return _challenge(db, ctx, result, now)
    return _authenticated(db, ctx, result)


@router.post(
    "/mfa/verify",
    response_model=LoginResponse | MFAPartialResponse,
    summary="Verify MFA",
    description="Answer a pending MFA challenge with a TOTP, email or backup code.",
)
def verify_mfa(
    payload: MFAVerifyRequest,
    db: DbSession,
    ctx: Context,
    meta: Meta,
    now: Now,
    _rate_limit: None = Depends(require_rate_limit_mfa_verify_ip),
) -> LoginResponse | MFAPartialResponse:
    result = auth_flow.verify_mfa(
        db, ctx, payload.challenge_token, payload.method, payload.code, payload.trust_device, meta, now
    )
    if isinstance(result, MFAPartialResult):
        return MFAPartialResponse(
            challenge_token=result.challenge_token,
            verified_methods=result.verified_methods,
            remaining_methods=result.remaining_methods,
        )
    return _authenticated(db, ctx, result)


@router.post("/mfa/resend", response_model=LoginResponse, summary="Resend email code")
def resend_mfa_code(payload: MFAResendRequest, db: DbSession, ctx: Context, now: Now) -> LoginResponse:
    result = auth_flow.resend_challenge_code(db, ctx, payload.challenge_token, now)
    return _challenge(db, ctx, result, now)


@router.post("/mfa/setup/totp", response_model=TOTPSetupResponse, summary="Start TOTP setup with a setup token")
def begin_mfa_setup(payload: MFASetupStartRequest, db: DbSession, ctx: Context, now: Now) -> TOTPSetupResponse:
    setup = auth_flow.begin_setup(db, ctx, payload.setup_token, now)
    return TOTPSetupResponse(secret=setup.secret, provisioning_uri=setup.provisioning_uri)


@router.post(
    "/mfa/setup/complete",
    response_model=LoginResponse | MFASetupProgressResponse,
    summary="Complete required MFA setup",
)
def complete_mfa_setup(
    payload: MFASetupCompleteRequest, db: DbSession, ctx: Context, meta: Meta, now: Now
) -> LoginResponse | MFASetupProgressResponse:
    result = auth_flow.complete_setup(db, ctx, payload.setup_token, payload.method, payload.code, meta, now)
    if isinstance(result, auth_flow.SetupProgress):
        return MFASetupProgressResponse(pending_methods=result.pending_methods)
    return _authenticated(db, ctx, result)


@router.post("/refresh", response_model=TokensResponse, summary="Refresh tokens")
def refresh(payload: RefreshRequest, db: DbSession, now: Now) -> TokensResponse:
    user, tokens = sessions.refresh_session(db, payload.refresh_token, now)
    db.commit()
    log_security_event(event_type="auth_refresh", outcome="allow", user_id=user.id)
    return _tokens(tokens)


@router.post("/logout", response_model=MessageResponse, summary="Logout")
def logout(payload: LogoutRequest, db: DbSession, meta: Meta, now: Now) -> MessageResponse:
    auth_flow.logout(db, payload.refresh_token, now, meta)
    return MessageResponse(message="Logged out")


@router.post("/logout-all", response_model=MessageResponse, summary="Logout everywhere")
def logout_all(current_user: CurrentUser, db: DbSession, meta: Meta, now: Now) -> MessageResponse:
    revoked = auth_flow.logout_all(db, current_user, now, meta)
    return MessageResponse(message=f"Revoked {revoked} session(s)")


@router.get("/me", response_model=UserOut, summary="Current user")
def me(current_user: CurrentUser) -> UserOut:
    return UserOut.model_validate(current_user)


@router.post("/verify-email", response_model=MessageResponse, summary="Verify email address")
def verify_email(payload: VerifyEmailRequest, db: DbSession, now: Now) -> MessageResponse:
    auth_flow.verify_email(db, payload.token, now)
    return MessageResponse(message="Email verified")


@router.post("/password-reset/request", response_model=MessageResponse, summary="Request password reset")
def request_password_reset(
    payload: PasswordResetRequest,
    background_tasks: BackgroundTasks,
    db: DbSession,
    ctx: Context,
    meta: Meta,
    now: Now,
    _rate_limit_ip: None = Depends(require_rate_limit_reset_ip),
) -> MessageResponse:
    require_rate_limit_reset_email(ctx, meta, payload.email)
    result = auth_flow.request_password_reset(db, payload.email, now)
    if result is not None:
        # Delivered after the response is sent
        background_tasks.add_task(
            send_templated_email_detached,
            ctx.session_factory,
            ctx.cipher,
            result.user.email,
            PASSWORD_RESET,
            {
                "reset_url": f"{settings.FRONTEND_BASE_URL}/reset-password?token={result.reset_token}",
                "expires_minutes": settings.PASSWORD_RESET_EXPIRE_MINUTES,
            },
        )
    # Same answer whether or not the account exists
    return MessageResponse(message="If an account exists for this email, a reset link has been sent.")


@router.post("/password-reset/confirm", response_model=MessageResponse, summary="Reset password")
def confirm_password_reset(payload: PasswordResetConfirm, db: DbSession, meta: Meta, now: Now) -> MessageResponse:
    auth_flow.reset_password(db, payload.token, payload.new_password, now, meta)
    return MessageResponse(message="Password has been reset. Please log in again.")


@router.post("/password/change", response_model=MessageResponse, summary="Change password")
def change_password(
    payload: PasswordChangeRequest,
    current_user: CurrentUser,
    session_id: CurrentSessionId,
    db: DbSession,
    meta: Meta,
    now: Now,
) -> MessageResponse:
    auth_flow.change_password(
        db, current_user, payload.current_password, payload.new_password, now, meta, current_session_id=session_id
    )
    return MessageResponse(message="Password changed. Other sessions have been signed out.")
