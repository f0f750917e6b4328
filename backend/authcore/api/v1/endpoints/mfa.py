"""MFA self-service endpoints (authenticated user)."""

from fastapi import APIRouter, status

from authcore.core.audit import AuditAction, AuditCategory, write_audit
from authcore.core.dependencies import Context, CurrentUser, DbSession, Meta, Now
from authcore.schemas.auth import MessageResponse
from authcore.schemas.mfa import (
    AlternateEmailRequest,
    AlternateEmailVerifyRequest,
    BackupCodesResponse,
    MFAStatusResponse,
    PasswordConfirmRequest,
    PreferredMethodRequest,
    TOTPConfirmRequest,
    TOTPSetupResponse,
    TrustedDeviceOut,
)
from authcore.services import mfa_admin, mfa_enforcement, totp, trusted_devices
from authcore.services.email.dispatch import send_templated_email
from authcore.services.email.templates import ALTERNATE_EMAIL_VERIFICATION
from authcore.services.mfa_store import get_mfa_config

router = APIRouter(tags=["MFA"])


def _audit_method(db, user, action: str, method: str, meta) -> None:
    write_audit(
        db,
        action,
        user_id=user.id,
        target_type="user",
        target_id=user.id,
        details={"method": method},
        meta=meta,
        category=AuditCategory.STATE_CHANGE,
    )


@router.get("/status", response_model=MFAStatusResponse, summary="MFA status")
def mfa_status(current_user: CurrentUser, db: DbSession, now: Now) -> MFAStatusResponse:
    return MFAStatusResponse.model_validate(mfa_admin.get_user_mfa_status(db, current_user, now))


@router.post("/totp/setup", response_model=TOTPSetupResponse, summary="Start TOTP setup")
def totp_setup(current_user: CurrentUser, db: DbSession, ctx: Context, now: Now) -> TOTPSetupResponse:
    setup = totp.start_setup(db, ctx.cipher, current_user, now)
    db.commit()
    return TOTPSetupResponse(secret=setup.secret, provisioning_uri=setup.provisioning_uri)


@router.post("/totp/confirm", response_model=BackupCodesResponse, summary="Confirm TOTP setup")
def totp_confirm(
    payload: TOTPConfirmRequest, current_user: CurrentUser, db: DbSession, ctx: Context, meta: Meta, now: Now
) -> BackupCodesResponse:
    config = get_mfa_config(db)
    codes = totp.confirm_setup(
        db, ctx.cipher, current_user, payload.code, now, with_backup_codes=config.backup_codes_enabled_totp
    )
    mfa_enforcement.refresh_completion(db, current_user, now)
    _audit_method(db, current_user, AuditAction.MFA_METHOD_ENABLED, "totp", meta)
    db.commit()
    return BackupCodesResponse(backup_codes=codes)


@router.post("/totp/disable", response_model=MessageResponse, summary="Disable TOTP")
def totp_disable(
    payload: PasswordConfirmRequest, current_user: CurrentUser, db: DbSession, meta: Meta
) -> MessageResponse:
    totp.disable(db, current_user, payload.password)
    _audit_method(db, current_user, AuditAction.MFA_METHOD_DISABLED, "totp", meta)
    db.commit()
    return MessageResponse(message="Authenticator app removed")


@router.post("/backup-codes/regenerate", response_model=BackupCodesResponse, summary="Regenerate backup codes")
def regenerate_backup_codes(
    payload: PasswordConfirmRequest, current_user: CurrentUser, db: DbSession, meta: Meta, now: Now
) -> BackupCodesResponse:
    codes = totp.regenerate_backup_codes(db, current_user, payload.password, now)
    write_audit(
        db,
        AuditAction.MFA_BACKUP_CODES_REGENERATED,
        user_id=current_user.id,
        target_type="user",
        target_id=current_user.id,
        meta=meta,
        category=AuditCategory.STATE_CHANGE,
    )
    db.commit()
    return BackupCodesResponse(backup_codes=codes)


@router.post("/email/enable", response_model=MessageResponse, summary="Enable email verification")
def email_enable(current_user: CurrentUser, db: DbSession, meta: Meta, now: Now) -> MessageResponse:
    mfa_admin.enable_email_2fa(db, current_user, get_mfa_config(db), now)
    mfa_enforcement.refresh_completion(db, current_user, now)
    _audit_method(db, current_user, AuditAction.MFA_METHOD_ENABLED, "email", meta)
    db.commit()
    return MessageResponse(message="Email verification enabled")


@router.post("/email/disable", response_model=MessageResponse, summary="Disable email verification")
def email_disable(current_user: CurrentUser, db: DbSession, meta: Meta) -> MessageResponse:
    mfa_admin.disable_email_2fa(db, current_user, get_mfa_config(db))
    _audit_method(db, current_user, AuditAction.MFA_METHOD_DISABLED, "email", meta)
    db.commit()
    return MessageResponse(message="Email verification disabled")


@router.post(
    "/alternate-email",
    response_model=MessageResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Set alternate email",
)
def alternate_email_set(
    payload: AlternateEmailRequest, current_user: CurrentUser, db: DbSession, ctx: Context, now: Now
) -> MessageResponse:
    token = mfa_admin.set_alternate_email(db, current_user, get_mfa_config(db), payload.email, now)
    db.commit()
    send_templated_email(db, ctx.cipher, payload.email, ALTERNATE_EMAIL_VERIFICATION, {"code": token})
    return MessageResponse(message="Verification sent to the alternate address")


@router.post("/alternate-email/verify", response_model=MessageResponse, summary="Verify alternate email")
def alternate_email_verify(
    payload: AlternateEmailVerifyRequest, current_user: CurrentUser, db: DbSession, now: Now
) -> MessageResponse:
    mfa_admin.verify_alternate_email(db, current_user, payload.token, now)
    db.commit()
    return MessageResponse(message="Alternate email verified")


@router.delete("/alternate-email", response_model=MessageResponse, summary="Remove alternate email")
def alternate_email_delete(current_user: CurrentUser, db: DbSession) -> MessageResponse:
    mfa_admin.remove_alternate_email(db, current_user)
    db.commit()
    return MessageResponse(message="Alternate email removed")


@router.put("/preferred-method", response_model=MessageResponse, summary="Set preferred method")
def preferred_method(
    payload: PreferredMethodRequest, current_user: CurrentUser, db: DbSession, meta: Meta
) -> MessageResponse:
    mfa_admin.set_preferred_method(db, current_user, get_mfa_config(db), payload.method)
    _audit_method(db, current_user, AuditAction.MFA_METHOD_CHANGED, payload.method, meta)
    db.commit()
    return MessageResponse(message=f"Preferred method set to {payload.method}")


@router.get("/trusted-devices", response_model=list[TrustedDeviceOut], summary="List trusted devices")
def list_trusted_devices(current_user: CurrentUser, db: DbSession, now: Now) -> list[TrustedDeviceOut]:
    return [TrustedDeviceOut.model_validate(d) for d in trusted_devices.list_devices(db, current_user.id, now)]


@router.delete("/trusted-devices/{device_id}", response_model=MessageResponse, summary="Revoke trusted device")
def revoke_trusted_device(device_id: int, current_user: CurrentUser, db: DbSession, meta: Meta) -> MessageResponse:
    trusted_devices.revoke_device(db, current_user.id, device_id)
    write_audit(
        db,
        AuditAction.DEVICE_REVOKED,
        user_id=current_user.id,
        target_type="trusted_device",
        target_id=device_id,
        meta=meta,
        category=AuditCategory.STATE_CHANGE,
    )
    db.commit()
    return MessageResponse(message="Device revoked")
