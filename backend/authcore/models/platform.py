"""Email templates, email service credentials and system settings."""

from sqlalchemy import JSON, Boolean, Column, ForeignKey, Integer, String, Text, func

from authcore.db.base import Base
from authcore.db.types import UTCDateTime, utcnow


class EmailTemplate(Base):
    """Admin-editable email template (string.Template placeholders)."""

    __tablename__ = "email_templates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(64), nullable=False, unique=True)
    subject = Column(String(255), nullable=False)
    html_body = Column(Text, nullable=False)
    text_body = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)


class EmailService(Base):
    """Configured outbound email provider. At most one row is active."""

    __tablename__ = "email_services"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    provider_type = Column(String(32), nullable=False)
    credentials_encrypted = Column(Text, nullable=True)
    from_email = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)


class SystemSetting(Base):
    """Key/value runtime setting."""

    __tablename__ = "system_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(100), nullable=False, unique=True)
    value = Column(JSON, nullable=True)
    updated_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)
