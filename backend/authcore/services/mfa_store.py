"""Policy-store access: system config singleton, role configs, user preferences."""

from sqlalchemy import select
from sqlalchemy.orm import Session

from authcore.core.logging import get_logger
from authcore.models.mfa import MFASecret
from authcore.models.mfa_config import MFA_CONFIG_ID, MFAConfig, MFARoleConfig, UserMFAPreferences
from authcore.models.user import UserRole

logger = get_logger(__name__)

DEFAULT_ROLE_METHODS = ["totp", "email"]


def ensure_mfa_config(db: Session) -> MFAConfig:
    """Read-or-create the config singleton and one row per role. Runs at startup."""
    config = db.get(MFAConfig, MFA_CONFIG_ID)
    created = False
    if config is None:
        config = MFAConfig(id=MFA_CONFIG_ID)
        db.add(config)
        created = True

    existing_roles = set(db.scalars(select(MFARoleConfig.role)).all())
    for role in UserRole:
        if role.value not in existing_roles:
            db.add(MFARoleConfig(role=role.value, allowed_methods=list(DEFAULT_ROLE_METHODS)))
            created = True

    if created:
        db.commit()
        logger.info("mfa_config_initialized", extra={"event": "mfa_config_initialized"})
    return config


def get_mfa_config(db: Session, for_update: bool = False) -> MFAConfig:
    stmt = select(MFAConfig).where(MFAConfig.id == MFA_CONFIG_ID)
    if for_update:
        stmt = stmt.with_for_update()
    config = db.scalars(stmt).first()
    if config is None:
        raise RuntimeError("MFA config not initialized; call ensure_mfa_config at startup")
    return config


def get_role_config(db: Session, role: str) -> MFARoleConfig | None:
    return db.scalars(select(MFARoleConfig).where(MFARoleConfig.role == role)).first()


def list_role_configs(db: Session) -> list[MFARoleConfig]:
    return list(db.scalars(select(MFARoleConfig).order_by(MFARoleConfig.id)).all())


def get_preferences(db: Session, user_id: int) -> UserMFAPreferences | None:
    return db.scalars(select(UserMFAPreferences).where(UserMFAPreferences.user_id == user_id)).first()


def get_or_create_preferences(db: Session, user_id: int) -> UserMFAPreferences:
    prefs = get_preferences(db, user_id)
    if prefs is None:
        prefs = UserMFAPreferences(user_id=user_id)
        db.add(prefs)
        db.flush()
    return prefs


def get_totp_secret(db: Session, user_id: int, for_update: bool = False) -> MFASecret | None:
    stmt = select(MFASecret).where(MFASecret.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    return db.scalars(stmt).first()


def has_totp_enabled(db: Session, user_id: int) -> bool:
    secret = get_totp_secret(db, user_id)
    return bool(secret and secret.enabled)
