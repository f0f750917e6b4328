"""Add MFA secrets, backup codes, email codes, challenges and policy tables

Revision ID: 003
Revises: 002
Create Date: 2026-01-06 09:00:00.000000

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "003"
down_revision = "002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "mfa_secrets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
        ),
        sa.Column("secret_encrypted", sa.String(512), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("enabled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_step", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "mfa_backup_codes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("code_hash", sa.String(64), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "code_hash", name="uq_backup_code_user_hash"),
    )
    op.create_index("ix_mfa_backup_codes_user_id", "mfa_backup_codes", ["user_id"])

    op.create_table(
        "email_2fa_codes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("code_hash", sa.String(64), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resend_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_resend_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_email_2fa_codes_user_used", "email_2fa_codes", ["user_id", "used"])
    op.create_index("ix_email_2fa_codes_created_at", "email_2fa_codes", ["created_at"])

    op.create_table(
        "mfa_challenges",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("token_hash", sa.String(64), nullable=False, unique=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("mode", sa.String(32), nullable=False),
        sa.Column("required_methods", sa.JSON(), nullable=False),
        sa.Column("verified_methods", sa.JSON(), nullable=False),
        sa.Column("totp_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("email_fallback_allowed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("remember_me", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("device_fingerprint", sa.String(64), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_mfa_challenges_user_id", "mfa_challenges", ["user_id"])

    op.create_table(
        "mfa_config",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("mode", sa.String(32), nullable=False, server_default="disabled"),
        sa.Column("code_format", sa.String(32), nullable=False, server_default="numeric_6"),
        sa.Column("code_expiration_minutes", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("max_failed_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("lockout_behavior", sa.String(32), nullable=False, server_default="temporary_lockout"),
        sa.Column("lockout_duration_minutes", sa.Integer(), nullable=False, server_default="15"),
        sa.Column("resend_rate_limit", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("resend_cooldown_seconds", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("fallback_totp_attempts_threshold", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("backup_codes_enabled_totp", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("backup_codes_enabled_email", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("email_verification_required", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("allow_multiple_emails", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("user_control", sa.String(32), nullable=False, server_default="user_managed"),
        sa.Column("method_change_behavior", sa.String(32), nullable=False, server_default="immediate"),
        sa.Column("grace_period_days", sa.Integer(), nullable=False, server_default="7"),
        sa.Column("role_based_mfa_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("device_trust_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("device_trust_duration_days", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("max_trusted_devices", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("logging_level", sa.String(32), nullable=False, server_default="comprehensive"),
        sa.Column("notification_level", sa.String(32), nullable=False, server_default="security_events"),
        sa.Column("enforcement_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("enforcement_grace_period_days", sa.Integer(), nullable=False, server_default="14"),
        sa.Column("enforcement_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "mfa_role_config",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("role", sa.String(20), nullable=False, unique=True),
        sa.Column("mfa_required", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("allowed_methods", sa.JSON(), nullable=False),
        sa.Column("code_expiration_minutes", sa.Integer(), nullable=True),
        sa.Column("max_failed_attempts", sa.Integer(), nullable=True),
        sa.Column("lockout_behavior", sa.String(32), nullable=True),
        sa.Column("lockout_duration_minutes", sa.Integer(), nullable=True),
        sa.Column("exempt_from_enforcement", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "user_mfa_preferences",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
        ),
        sa.Column("preferred_method", sa.String(16), nullable=True),
        sa.Column("email_2fa_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("email_2fa_enabled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("alternate_email", sa.String(255), nullable=True),
        sa.Column("alternate_email_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("alternate_email_verification_token", sa.String(64), nullable=True),
        sa.Column("alternate_email_verification_expires", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pending_method_change", sa.String(16), nullable=True),
        sa.Column("pending_method_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("grandfathered", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("user_mfa_preferences")
    op.drop_table("mfa_role_config")
    op.drop_table("mfa_config")
    op.drop_table("mfa_challenges")
    op.drop_table("email_2fa_codes")
    op.drop_table("mfa_backup_codes")
    op.drop_table("mfa_secrets")
