"""Post-commit email dispatch."""

from sqlalchemy.orm import Session, sessionmaker

from authcore.core.crypto import SecretCipher
from authcore.core.logging import get_logger
from authcore.models.mfa_config import NotificationLevel
from authcore.models.security import SecurityEvent, SecurityEventType
from authcore.models.user import User
from authcore.services.email.base import EmailDeliveryError
from authcore.services.email.templates import MFA_CODE, NEW_DEVICE_LOGIN, render_template
from authcore.services.email_services import get_active_provider
from authcore.services.mfa_store import get_mfa_config

logger = get_logger(__name__)


def send_templated_email(db: Session, cipher: SecretCipher, to: str, template: str, data: dict) -> str | None:
    """Render and send. Delivery failures are logged and reported as None."""
    rendered = render_template(template, data, db=db)
    provider = get_active_provider(db, cipher)
    try:
        return provider.send(
            to=to,
            subject=rendered.subject,
            body_text=rendered.text,
            body_html=rendered.html,
            meta={"template": template},
        )
    except EmailDeliveryError as e:
        logger.error(
            "email_dispatch_failed",
            extra={
                "event": "email_dispatch_failed",
                "provider": provider.provider_type,
                "template": template,
                "email_to": to,
                "error": str(e),
            },
        )
        return None


def send_templated_email_detached(
    session_factory: sessionmaker, cipher: SecretCipher, to: str, template: str, data: dict
) -> None:
    """BackgroundTasks entry point: runs after the response, on its own session."""
    with session_factory() as db:
        send_templated_email(db, cipher, to, template, data)


def send_code_email(db: Session, cipher: SecretCipher, recipients: list[str], code: str, expires_minutes: int) -> int:
    """Send an MFA code to every recipient; returns how many were accepted."""
    sent = 0
    for to in recipients:
        if send_templated_email(db, cipher, to, MFA_CODE, {"code": code, "expires_minutes": expires_minutes}):
            sent += 1
    return sent


def notify_new_device(db: Session, cipher: SecretCipher, user: User, alerts: list[SecurityEvent]) -> None:
    """Email the user about a sign-in from a new device unless notifications are off."""
    config = get_mfa_config(db)
    if config.notification_level == NotificationLevel.NONE.value:
        return
    for alert in alerts:
        if alert.event_type != SecurityEventType.NEW_DEVICE.value:
            continue
        metadata = alert.event_metadata or {}
        send_templated_email(
            db,
            cipher,
            user.email,
            NEW_DEVICE_LOGIN,
            {
                "device": f"{metadata.get('browser', 'Unknown')} on {metadata.get('os', 'Unknown')}",
                "location": metadata.get("location") or "Unknown",
                "ip_address": metadata.get("ip_address") or "Unknown",
            },
        )
