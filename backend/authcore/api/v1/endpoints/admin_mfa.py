"""Admin MFA configuration and enforcement endpoints."""

from fastapi import APIRouter

from authcore.core.audit import AuditAction, write_audit
from authcore.core.dependencies import AdminUser, Context, DbSession, Meta, Now
from authcore.schemas.admin import (
    ApplyMethodChangeRequest,
    EnforcementApplyRequest,
    EnforcementEnableRequest,
    ForceTransitionRequest,
    MFAConfigOut,
    MFAConfigUpdate,
    RoleConfigOut,
    RoleConfigUpdate,
)
from authcore.schemas.auth import MessageResponse
from authcore.schemas.mfa import CountResponse
from authcore.services import mfa_admin, mfa_enforcement
from authcore.services.mfa_store import get_mfa_config, list_role_configs

router = APIRouter(tags=["Admin - MFA"])


@router.get("/config", response_model=MFAConfigOut, summary="Get MFA configuration")
def get_config(current_user: AdminUser, db: DbSession) -> MFAConfigOut:
    return MFAConfigOut.model_validate(mfa_admin.get_config(db))


@router.put("/config", response_model=MFAConfigOut, summary="Update MFA configuration")
def update_config(
    payload: MFAConfigUpdate, current_user: AdminUser, db: DbSession, ctx: Context, meta: Meta
) -> MFAConfigOut:
    config = mfa_admin.update_config(db, current_user, payload.model_dump(exclude_unset=True), meta)
    db.commit()
    mfa_enforcement.invalidate_statistics(ctx.redis)
    return MFAConfigOut.model_validate(config)


@router.post("/config/reset", response_model=MFAConfigOut, summary="Reset MFA configuration")
def reset_config(current_user: AdminUser, db: DbSession, ctx: Context, meta: Meta) -> MFAConfigOut:
    config = mfa_admin.reset_config(db, current_user, meta)
    db.commit()
    mfa_enforcement.invalidate_statistics(ctx.redis)
    return MFAConfigOut.model_validate(config)


@router.get("/roles", response_model=list[RoleConfigOut], summary="List role configurations")
def list_roles(current_user: AdminUser, db: DbSession) -> list[RoleConfigOut]:
    return [RoleConfigOut.model_validate(row) for row in list_role_configs(db)]


@router.put("/roles/{role}", response_model=RoleConfigOut, summary="Update role configuration")
def update_role(
    role: str, payload: RoleConfigUpdate, current_user: AdminUser, db: DbSession, ctx: Context, meta: Meta
) -> RoleConfigOut:
    row = mfa_admin.update_role_config(db, current_user, role, payload.model_dump(exclude_unset=True), meta)
    db.commit()
    mfa_enforcement.invalidate_statistics(ctx.redis)
    return RoleConfigOut.model_validate(row)


@router.post("/users/{user_id}/force-transition", response_model=MessageResponse, summary="Force method transition")
def force_transition(
    user_id: int, payload: ForceTransitionRequest, current_user: AdminUser, db: DbSession, meta: Meta, now: Now
) -> MessageResponse:
    mfa_admin.force_transition(db, current_user, user_id, payload.method, now, meta)
    db.commit()
    return MessageResponse(message=f"User moved to {payload.method}")


@router.post("/users/{user_id}/unlock", response_model=CountResponse, summary="Unlock email verification")
def unlock_user(user_id: int, current_user: AdminUser, db: DbSession, meta: Meta) -> CountResponse:
    count = mfa_admin.unlock_user_mfa(db, current_user, user_id, meta)
    db.commit()
    return CountResponse(count=count)


@router.post("/apply-method-change", summary="Apply a method change to affected users")
def apply_method_change(
    payload: ApplyMethodChangeRequest, current_user: AdminUser, db: DbSession, meta: Meta, now: Now
) -> dict:
    result = mfa_admin.apply_method_change(
        db, current_user, payload.behavior, now, payload.grace_period_days, meta
    )
    db.commit()
    return result


@router.get("/enforcement", summary="Enforcement statistics")
def enforcement_statistics(current_user: AdminUser, db: DbSession, ctx: Context, now: Now) -> dict:
    return mfa_enforcement.get_statistics(db, now, ctx.redis, ctx.settings.STATS_CACHE_TTL_SECONDS)


@router.post("/enforcement/enable", summary="Enable enforcement")
def enable_enforcement(
    payload: EnforcementEnableRequest, current_user: AdminUser, db: DbSession, ctx: Context, meta: Meta, now: Now
) -> dict:
    result = mfa_enforcement.enable_enforcement(
        db,
        payload.grace_period_days,
        now,
        actor=current_user,
        apply_to_existing=payload.apply_to_existing,
        meta=meta,
        redis_client=ctx.redis,
    )
    db.commit()
    return result


@router.post("/enforcement/disable", response_model=MessageResponse, summary="Disable enforcement")
def disable_enforcement(
    current_user: AdminUser, db: DbSession, ctx: Context, meta: Meta, now: Now
) -> MessageResponse:
    mfa_enforcement.disable_enforcement(db, now, actor=current_user, meta=meta, redis_client=ctx.redis)
    db.commit()
    return MessageResponse(message="MFA enforcement disabled")


@router.post("/enforcement/apply", summary="Open grace periods for users without MFA")
def apply_enforcement(
    payload: EnforcementApplyRequest, current_user: AdminUser, db: DbSession, ctx: Context, meta: Meta, now: Now
) -> dict:
    config = get_mfa_config(db)
    days = payload.grace_period_days if payload.grace_period_days is not None else config.enforcement_grace_period_days
    result = mfa_enforcement.apply_to_existing_users(db, days, now)
    write_audit(
        db,
        AuditAction.MFA_GRACE_APPLIED,
        actor=current_user,
        target_type="mfa_config",
        target_id=config.id,
        details={"grace_period_days": days, "applied_count": result["applied_count"]},
        meta=meta,
    )
    db.commit()
    mfa_enforcement.invalidate_statistics(ctx.redis)
    return result
