"""Scheduled maintenance jobs and their CLI."""

from datetime import datetime, timedelta

import pytest
from click.testing import CliRunner
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from authcore.core.config import settings
from authcore.core.context import AppContext
from authcore.jobs import run as run_module
from authcore.jobs.maintenance import (
    JOBS,
    audit_retention,
    email_code_cleanup,
    enforcement_apply,
    session_cleanup,
)
from authcore.models.audit import AuditLog
from authcore.models.mfa import Email2FACode
from authcore.models.security import LoginAttempt
from authcore.models.session import AuthSession
from authcore.models.user import User
from authcore.services import email_otp, mfa_enforcement, sessions
from authcore.services.mfa_policy import EffectiveOTPSettings
from tests.helpers.seed import create_test_user, set_mfa_config

OTP_SETTINGS = EffectiveOTPSettings("numeric_6", 5, 5, "temporary_lockout", 15, 3, 60)


def test_session_cleanup(db: Session, test_user: User, now: datetime) -> None:
    sessions.create_session(db, test_user, None, remember_me=False, now=now)
    sessions.create_session(db, test_user, None, remember_me=True, now=now)
    db.commit()

    result = session_cleanup(db, settings, now + timedelta(hours=25))
    assert result == {"sessions_deleted": 1, "challenges_deleted": 0, "devices_deleted": 0}
    assert db.query(AuthSession).count() == 1


def test_email_code_cleanup(db: Session, test_user: User, now: datetime) -> None:
    email_otp.issue_code(db, test_user.id, OTP_SETTINGS, now)
    db.commit()

    assert email_code_cleanup(db, settings, now + timedelta(hours=1))["codes_deleted"] == 0
    result = email_code_cleanup(db, settings, now + timedelta(hours=settings.EMAIL_CODE_RETENTION_HOURS, minutes=1))
    assert result["codes_deleted"] == 1
    assert db.query(Email2FACode).count() == 0


def test_audit_retention(db: Session, now: datetime) -> None:
    db.add(AuditLog(action="old", created_at=now - timedelta(days=settings.AUDIT_RETENTION_DAYS + 1)))
    db.add(AuditLog(action="fresh", created_at=now - timedelta(days=1)))
    stale = now - timedelta(days=settings.AUDIT_RETENTION_DAYS + 30)
    db.add(LoginAttempt(email_attempted="a@x.com", success=False, attempted_at=stale))
    db.add(LoginAttempt(email_attempted="a@x.com", success=True, attempted_at=now - timedelta(days=2)))
    db.commit()

    result = audit_retention(db, settings, now)
    assert result["audit_logs_deleted"] == 1
    assert result["login_attempts_deleted"] == 1
    assert [row.action for row in db.query(AuditLog).all()] == ["fresh"]
    assert [row.success for row in db.query(LoginAttempt).all()] == [True]


def test_enforcement_apply(db: Session, test_user: User, now: datetime) -> None:
    assert enforcement_apply(db, settings, now) == {"skipped": True, "reason": "enforcement_disabled"}

    set_mfa_config(db, mode="totp_only", enforcement_enabled=True, enforcement_grace_period_days=14)
    result = enforcement_apply(db, settings, now)
    assert result["applied_count"] == 1
    assert result["grace_period_end"] == (now + timedelta(days=14)).isoformat()

    db.refresh(test_user)
    assert test_user.mfa_setup_required is True

    # Second run finds nobody new
    assert enforcement_apply(db, settings, now)["applied_count"] == 0


def test_enforcement_apply_leaves_immediate_setup_without_window(
    db: Session, test_user: User, now: datetime
) -> None:
    set_mfa_config(db, mode="totp_only", enforcement_enabled=True, enforcement_grace_period_days=14)
    newcomer = create_test_user(db, username="newcomer", email="newcomer@x.com")
    mfa_enforcement.mark_requires_setup(newcomer)
    db.commit()

    result = enforcement_apply(db, settings, now + timedelta(days=1))
    assert result["applied_count"] == 1

    db.refresh(newcomer)
    db.refresh(test_user)
    assert newcomer.mfa_setup_required is True
    assert newcomer.mfa_grace_period_end is None
    assert mfa_enforcement.get_status(db, newcomer, now + timedelta(days=1)).setup_required is True
    assert test_user.mfa_grace_period_end == now + timedelta(days=15)


@pytest.fixture
def cli_ctx(monkeypatch, ctx: AppContext, db: Session) -> AppContext:
    """Point the CLI at the test database."""
    monkeypatch.setattr(run_module, "create_db_engine", lambda _settings: create_engine("sqlite://"))
    monkeypatch.setattr(run_module, "create_session_factory", lambda _engine: ctx.session_factory)
    return ctx


def test_cli_runs_job(cli_ctx: AppContext) -> None:
    result = CliRunner().invoke(run_module.run, ["enforcement_apply"])
    assert result.exit_code == 0, result.output
    assert "Job completed" in result.output
    assert "enforcement_disabled" in result.output


def test_cli_reports_failure(cli_ctx: AppContext, monkeypatch) -> None:
    def broken(db, settings, now):
        raise RuntimeError("boom")

    monkeypatch.setitem(JOBS, "audit_retention", broken)
    result = CliRunner().invoke(run_module.run, ["audit_retention"])
    assert result.exit_code == 1
    assert "Job failed: boom" in result.output


def test_cli_rejects_unknown_job() -> None:
    result = CliRunner().invoke(run_module.run, ["reindex"])
    assert result.exit_code == 2
