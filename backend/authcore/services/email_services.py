"""Outbound email service records (provider type plus encrypted credentials)."""

from typing import Any

from sqlalchemy.orm import Session

from authcore.core.app_exceptions import INVALID_INPUT, NOT_ALLOWED, NOT_FOUND, raise_domain_error
from authcore.core.audit import AuditAction, AuditCategory, write_audit
from authcore.core.config import settings
from authcore.core.crypto import DecryptionError, SecretCipher
from authcore.core.logging import get_logger
from authcore.core.security_logging import RequestMeta
from authcore.models.platform import EmailService
from authcore.models.user import User
from authcore.services.email.base import EmailProvider
from authcore.services.email.console import ConsoleEmailProvider
from authcore.services.email.smtp import SMTPEmailProvider

logger = get_logger(__name__)

PROVIDER_TYPES = ("smtp", "console")


def list_services(db: Session) -> list[EmailService]:
    return db.query(EmailService).order_by(EmailService.id).all()


def create_service(
    db: Session,
    cipher: SecretCipher,
    actor: User,
    name: str,
    provider_type: str,
    from_email: str,
    credentials: dict[str, Any] | None,
    meta: RequestMeta | None = None,
) -> EmailService:
    if provider_type not in PROVIDER_TYPES:
        raise_domain_error(INVALID_INPUT, f"Unsupported provider type: {provider_type}")

    service = EmailService(
        name=name,
        provider_type=provider_type,
        from_email=from_email,
        credentials_encrypted=cipher.encrypt_json(credentials) if credentials else None,
        is_active=False,
    )
    db.add(service)
    db.flush()
    write_audit(
        db,
        AuditAction.EMAIL_SERVICE_CREATED,
        actor=actor,
        target_type="email_service",
        target_id=service.id,
        details={"name": name, "provider_type": provider_type},
        meta=meta,
    )
    return service


def activate_service(
    db: Session, actor: User, service_id: int, meta: RequestMeta | None = None
) -> EmailService:
    """Deactivate every service, then activate the chosen one, in one transaction."""
    services = db.query(EmailService).with_for_update().all()
    target = next((service for service in services if service.id == service_id), None)
    if target is None:
        raise_domain_error(NOT_FOUND, "Email service not found")

    for service in services:
        service.is_active = False
    db.flush()
    target.is_active = True

    write_audit(
        db,
        AuditAction.EMAIL_SERVICE_ACTIVATED,
        actor=actor,
        target_type="email_service",
        target_id=target.id,
        details={"name": target.name, "provider_type": target.provider_type},
        meta=meta,
    )
    return target


def delete_service(db: Session, actor: User, service_id: int, meta: RequestMeta | None = None) -> None:
    service = db.query(EmailService).filter(EmailService.id == service_id).with_for_update().first()
    if service is None:
        raise_domain_error(NOT_FOUND, "Email service not found")
    if service.is_active:
        raise_domain_error(NOT_ALLOWED, "Cannot delete the active email service. Activate another one first.")

    write_audit(
        db,
        AuditAction.EMAIL_SERVICE_DELETED,
        actor=actor,
        target_type="email_service",
        target_id=service.id,
        details={"name": service.name},
        meta=meta,
        category=AuditCategory.ADMIN,
    )
    db.delete(service)


def _provider_from_settings() -> EmailProvider:
    if settings.EMAIL_BACKEND.lower() == "smtp":
        return SMTPEmailProvider(
            host=settings.EMAIL_HOST,
            port=settings.EMAIL_PORT,
            from_email=settings.EMAIL_FROM,
            use_tls=settings.EMAIL_USE_TLS,
            use_ssl=settings.EMAIL_USE_SSL,
            timeout=settings.EMAIL_SEND_TIMEOUT_SECONDS,
        )
    return ConsoleEmailProvider(from_email=settings.EMAIL_FROM)


def get_active_provider(db: Session, cipher: SecretCipher) -> EmailProvider:
    """Provider for the active service, or the one configured in settings."""
    service = db.query(EmailService).filter(EmailService.is_active.is_(True)).first()
    if service is None:
        return _provider_from_settings()

    if service.provider_type == "console":
        return ConsoleEmailProvider(from_email=service.from_email)

    try:
        credentials = cipher.decrypt_json(service.credentials_encrypted) if service.credentials_encrypted else {}
    except DecryptionError:
        logger.error(
            "email_service_credentials_unreadable",
            extra={"event": "email_service_credentials_unreadable", "service_id": service.id},
        )
        return _provider_from_settings()

    return SMTPEmailProvider(
        host=credentials.get("host", settings.EMAIL_HOST),
        port=int(credentials.get("port", settings.EMAIL_PORT)),
        from_email=service.from_email,
        username=credentials.get("username"),
        password=credentials.get("password"),
        use_tls=bool(credentials.get("use_tls", False)),
        use_ssl=bool(credentials.get("use_ssl", False)),
        timeout=settings.EMAIL_SEND_TIMEOUT_SECONDS,
    )
