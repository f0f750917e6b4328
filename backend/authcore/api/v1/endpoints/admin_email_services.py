"""Admin email service endpoints."""

from fastapi import APIRouter, status

from authcore.core.dependencies import AdminUser, Context, DbSession, Meta
from authcore.schemas.admin import EmailServiceCreate, EmailServiceOut
from authcore.schemas.auth import MessageResponse
from authcore.services import email_services

router = APIRouter(tags=["Admin - Email"])


@router.get("", response_model=list[EmailServiceOut], summary="List email services")
def list_services(current_user: AdminUser, db: DbSession) -> list[EmailServiceOut]:
    return [EmailServiceOut.model_validate(row) for row in email_services.list_services(db)]


@router.post("", response_model=EmailServiceOut, status_code=status.HTTP_201_CREATED, summary="Create email service")
def create_service(
    payload: EmailServiceCreate, current_user: AdminUser, db: DbSession, ctx: Context, meta: Meta
) -> EmailServiceOut:
    service = email_services.create_service(
        db,
        ctx.cipher,
        current_user,
        payload.name,
        payload.provider_type,
        payload.from_email,
        payload.credentials,
        meta,
    )
    db.commit()
    return EmailServiceOut.model_validate(service)


@router.post("/{service_id}/activate", response_model=EmailServiceOut, summary="Activate email service")
def activate_service(service_id: int, current_user: AdminUser, db: DbSession, meta: Meta) -> EmailServiceOut:
    service = email_services.activate_service(db, current_user, service_id, meta)
    db.commit()
    return EmailServiceOut.model_validate(service)


@router.delete("/{service_id}", response_model=MessageResponse, summary="Delete email service")
def delete_service(service_id: int, current_user: AdminUser, db: DbSession, meta: Meta) -> MessageResponse:
    email_services.delete_service(db, current_user, service_id, meta)
    db.commit()
    return MessageResponse(message="Email service deleted")
