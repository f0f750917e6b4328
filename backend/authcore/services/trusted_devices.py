"""Trusted devices: skip the MFA challenge on a remembered browser."""

from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from authcore.core.app_exceptions import NOT_FOUND, raise_domain_error
from authcore.core.logging import get_logger
from authcore.core.security_logging import RequestMeta
from authcore.core.tokens import sha256_hex
from authcore.models.mfa_config import MFAConfig
from authcore.models.session import TrustedDevice
from authcore.services.security_events import parse_user_agent

logger = get_logger(__name__)


def fingerprint_for(meta: RequestMeta | None) -> str:
    """SHA-256 of user agent and accept-language."""
    user_agent = (meta.user_agent if meta else None) or ""
    accept_language = (meta.accept_language if meta else None) or ""
    return sha256_hex(f"{user_agent}|{accept_language}")


def is_trusted(db: Session, config: MFAConfig, user_id: int, fingerprint: str, now: datetime) -> bool:
    if not config.device_trust_enabled:
        return False
    device = (
        db.query(TrustedDevice)
        .filter(
            TrustedDevice.user_id == user_id,
            TrustedDevice.device_fingerprint_hash == fingerprint,
        )
        .first()
    )
    if device is None or not device.is_trusted(now):
        return False
    device.last_used_at = now
    return True


def trust_device(
    db: Session,
    config: MFAConfig,
    user_id: int,
    meta: RequestMeta | None,
    now: datetime,
) -> TrustedDevice | None:
    """Upsert trust for the current device, evicting the oldest beyond the limit."""
    if not config.device_trust_enabled:
        return None

    fingerprint = fingerprint_for(meta)
    ua = parse_user_agent(meta.user_agent if meta else None)
    trusted_until = now + timedelta(days=config.device_trust_duration_days)

    device = (
        db.query(TrustedDevice)
        .filter(
            TrustedDevice.user_id == user_id,
            TrustedDevice.device_fingerprint_hash == fingerprint,
        )
        .with_for_update()
        .first()
    )
    if device is None:
        device = TrustedDevice(
            user_id=user_id,
            device_fingerprint_hash=fingerprint,
            device_name=ua.device_name,
            browser=ua.browser,
            os=ua.os,
            ip_address=meta.ip_address if meta else None,
            trusted_until=trusted_until,
            last_used_at=now,
            created_at=now,
        )
        db.add(device)
    else:
        device.trusted_until = trusted_until
        device.last_used_at = now
        device.ip_address = meta.ip_address if meta else device.ip_address
    db.flush()

    devices = (
        db.query(TrustedDevice)
        .filter(TrustedDevice.user_id == user_id)
        .order_by(TrustedDevice.last_used_at.desc(), TrustedDevice.id.desc())
        .all()
    )
    for stale in devices[max(config.max_trusted_devices, 1):]:
        db.delete(stale)
    db.flush()

    logger.info("device_trusted", extra={"event": "device_trusted", "user_id": user_id, "device_id": device.id})
    return device


def list_devices(db: Session, user_id: int, now: datetime) -> list[TrustedDevice]:
    return (
        db.query(TrustedDevice)
        .filter(TrustedDevice.user_id == user_id, TrustedDevice.trusted_until > now)
        .order_by(TrustedDevice.last_used_at.desc())
        .all()
    )


def revoke_device(db: Session, user_id: int, device_id: int) -> None:
    device = (
        db.query(TrustedDevice)
        .filter(TrustedDevice.id == device_id, TrustedDevice.user_id == user_id)
        .first()
    )
    if device is None:
        raise_domain_error(NOT_FOUND, "Trusted device not found")
    db.delete(device)


def revoke_all_devices(db: Session, user_id: int) -> int:
    return db.query(TrustedDevice).filter(TrustedDevice.user_id == user_id).delete(synchronize_session=False)


def cleanup_expired_devices(db: Session, now: datetime) -> int:
    return db.query(TrustedDevice).filter(TrustedDevice.trusted_until <= now).delete(synchronize_session=False)
