"""Audit log model."""

from sqlalchemy import JSON, Column, Index, Integer, String, func

from authcore.db.base import Base
from authcore.db.types import UTCDateTime, utcnow


class AuditLog(Base):
    """Append-only audit record. Actor ids are kept even after the user is deleted."""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    admin_id = Column(Integer, nullable=True, index=True)
    admin_email = Column(String(255), nullable=True)
    user_id = Column(Integer, nullable=True, index=True)  # Self-acting user
    action = Column(String(64), nullable=False, index=True)
    target_type = Column(String(32), nullable=True)
    target_id = Column(Integer, nullable=True)
    details = Column(JSON, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_audit_logs_target", "target_type", "target_id"),
        Index("ix_audit_logs_created_at", "created_at"),
    )
