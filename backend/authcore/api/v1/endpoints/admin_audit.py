"""Admin audit log endpoints."""

from datetime import timedelta

from fastapi import APIRouter, Depends, Query

from authcore.common.pagination import PaginationParams, paginate, pagination_params
from authcore.core.audit import AuditAction, purge_audit_logs, write_audit
from authcore.core.dependencies import AdminUser, DbSession, Meta, Now
from authcore.models.audit import AuditLog
from authcore.schemas.admin import AuditLogListResponse, AuditLogOut, AuditPurgeRequest
from authcore.schemas.mfa import CountResponse

router = APIRouter(tags=["Admin - Audit"])


@router.get("", response_model=AuditLogListResponse, summary="List audit logs")
def list_audit_logs(
    current_user: AdminUser,
    db: DbSession,
    action: str | None = Query(None),
    target_type: str | None = Query(None),
    target_id: int | None = Query(None),
    actor_id: int | None = Query(None),
    pagination: PaginationParams = Depends(pagination_params),
) -> AuditLogListResponse:
    query = db.query(AuditLog)
    if action:
        query = query.filter(AuditLog.action == action)
    if target_type:
        query = query.filter(AuditLog.target_type == target_type)
    if target_id is not None:
        query = query.filter(AuditLog.target_id == target_id)
    if actor_id is not None:
        query = query.filter(AuditLog.admin_id == actor_id)

    rows, total = paginate(query, pagination, AuditLog.created_at.desc(), AuditLog.id.desc())
    return AuditLogListResponse(
        items=[AuditLogOut.model_validate(row) for row in rows],
        page=pagination.page,
        page_size=pagination.page_size,
        total=total,
    )


@router.post("/purge", response_model=CountResponse, summary="Purge old audit logs")
def purge(payload: AuditPurgeRequest, current_user: AdminUser, db: DbSession, meta: Meta, now: Now) -> CountResponse:
    cutoff = now - timedelta(days=payload.older_than_days)
    deleted = purge_audit_logs(db, cutoff)
    write_audit(
        db,
        AuditAction.AUDIT_PURGE,
        actor=current_user,
        target_type="audit_logs",
        details={"older_than": cutoff.isoformat(), "deleted": deleted},
        meta=meta,
    )
    db.commit()
    return CountResponse(count=deleted)
