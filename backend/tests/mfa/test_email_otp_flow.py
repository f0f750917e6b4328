"""Email one-time code challenges: lockout, expiry, resend and admin unlock."""

from dataclasses import replace
from datetime import datetime, timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy.orm import Session

from authcore.core.app_exceptions import AppError
from authcore.core.config import settings
from authcore.jobs.maintenance import email_code_cleanup
from authcore.models.mfa import Email2FACode
from authcore.models.user import User
from authcore.services import email_otp, mfa_admin
from authcore.services.mfa_policy import EffectiveOTPSettings
from authcore.services.mfa_store import get_mfa_config
from tests.helpers.seed import DEFAULT_PASSWORD, auth_headers, last_code, set_mfa_config

OTP_SETTINGS = EffectiveOTPSettings(
    code_format="numeric_6",
    code_expiration_minutes=5,
    max_failed_attempts=5,
    lockout_behavior="temporary_lockout",
    lockout_duration_minutes=15,
    resend_rate_limit=3,
    resend_cooldown_seconds=60,
)


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


async def _start_login(async_client: AsyncClient, email: str = "alice@x.com") -> dict:
    response = await async_client.post("/v1/auth/login", json={"email": email, "password": DEFAULT_PASSWORD})
    assert response.status_code == 200, response.text
    data = response.json()
    assert data["status"] == "mfa_required"
    return data


@pytest.fixture
def email_only(db: Session) -> None:
    set_mfa_config(db, mode="email_only")


@pytest.mark.asyncio
async def test_email_code_login_succeeds(
    async_client: AsyncClient, email_only, test_user: User, outbox
) -> None:
    challenge = await _start_login(async_client)
    assert challenge["mode"] == "any"
    assert challenge["allowed_methods"] == ["email"]
    assert challenge["email_sent"] is True

    code = last_code(outbox)
    assert len(code) == 6 and code.isdigit()

    response = await async_client.post(
        "/v1/auth/mfa/verify",
        json={"challenge_token": challenge["challenge_token"], "method": "email", "code": code},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "authenticated"
    assert response.json()["tokens"]["access_token"]


@pytest.mark.asyncio
async def test_email_code_lockout_after_max_attempts(
    async_client: AsyncClient, db: Session, email_only, test_user: User, outbox, now: datetime
) -> None:
    challenge = await _start_login(async_client)
    code = last_code(outbox)
    body = {"challenge_token": challenge["challenge_token"], "method": "email", "code": _wrong(code)}

    for expected_remaining in (4, 3, 2, 1):
        response = await async_client.post("/v1/auth/mfa/verify", json=body)
        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_CODE"
        assert response.json()["details"]["remaining_attempts"] == expected_remaining

    response = await async_client.post("/v1/auth/mfa/verify", json=body)
    assert response.status_code == 423
    data = response.json()
    assert data["error_code"] == "LOCKED_OUT"
    assert datetime.fromisoformat(data["details"]["locked_until"]) == now + timedelta(minutes=15)

    # The right code is refused while locked
    response = await async_client.post(
        "/v1/auth/mfa/verify",
        json={"challenge_token": challenge["challenge_token"], "method": "email", "code": code},
    )
    assert response.status_code == 423
    assert response.json()["error_code"] == "LOCKED_OUT"


@pytest.mark.asyncio
async def test_expired_code_does_not_count_as_attempt(
    async_client: AsyncClient, db: Session, email_only, test_user: User, outbox, clock
) -> None:
    challenge = await _start_login(async_client)
    code = last_code(outbox)
    clock.advance(minutes=6)

    response = await async_client.post(
        "/v1/auth/mfa/verify",
        json={"challenge_token": challenge["challenge_token"], "method": "email", "code": code},
    )
    assert response.status_code == 400
    assert response.json()["error_code"] == "EXPIRED_CODE"

    row = db.query(Email2FACode).filter(Email2FACode.user_id == test_user.id).one()
    db.refresh(row)
    assert row.attempts == 0
    assert row.used is False


@pytest.mark.asyncio
async def test_resend_enforces_cooldown_and_limit(
    async_client: AsyncClient, db: Session, email_only, test_user: User, outbox, clock
) -> None:
    challenge = await _start_login(async_client)
    token = challenge["challenge_token"]
    response = await async_client.post("/v1/auth/mfa/resend", json={"challenge_token": token})
    assert response.status_code == 429
    assert response.json()["error_code"] == "COOLDOWN"
    assert 0 < response.json()["details"]["wait_seconds"] <= 60

    for _ in range(3):
        clock.advance(seconds=61)
        response = await async_client.post("/v1/auth/mfa/resend", json={"challenge_token": token})
        assert response.status_code == 200
        assert response.json()["email_sent"] is True

    clock.advance(seconds=61)
    response = await async_client.post("/v1/auth/mfa/resend", json={"challenge_token": token})
    assert response.status_code == 429
    assert response.json()["error_code"] == "RATE_LIMITED"

    # Only the newest code is live
    active = db.query(Email2FACode).filter(
        Email2FACode.user_id == test_user.id, Email2FACode.used.is_(False)
    ).count()
    assert active == 1


@pytest.mark.asyncio
async def test_admin_intervention_lock_holds_until_unlock(
    async_client: AsyncClient,
    db: Session,
    email_only,
    test_user: User,
    test_admin_user: User,
    outbox,
    clock,
) -> None:
    set_mfa_config(db, lockout_behavior="admin_intervention", max_failed_attempts=2)
    challenge = await _start_login(async_client)
    code = last_code(outbox)
    body = {"challenge_token": challenge["challenge_token"], "method": "email", "code": _wrong(code)}

    await async_client.post("/v1/auth/mfa/verify", json=body)
    response = await async_client.post("/v1/auth/mfa/verify", json=body)
    assert response.status_code == 423

    # A day later a fresh login still cannot get a code
    clock.advance(days=1)
    response = await async_client.post(
        "/v1/auth/login", json={"email": "alice@x.com", "password": DEFAULT_PASSWORD}
    )
    assert response.status_code == 423
    assert response.json()["error_code"] == "LOCKED_OUT"

    # Fresh admin session; earlier ones are past their absolute expiry
    admin_headers = auth_headers(db, test_admin_user, clock.now)
    unlock = await async_client.post(f"/v1/admin/mfa/users/{test_user.id}/unlock", headers=admin_headers)
    assert unlock.status_code == 200
    assert unlock.json()["count"] >= 1

    challenge = await _start_login(async_client)
    response = await async_client.post(
        "/v1/auth/mfa/verify",
        json={"challenge_token": challenge["challenge_token"], "method": "email", "code": last_code(outbox)},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "authenticated"


def test_issue_code_keeps_single_active_code(db: Session, test_user: User, now: datetime) -> None:
    first = email_otp.issue_code(db, test_user.id, OTP_SETTINGS, now)
    second = email_otp.issue_code(db, test_user.id, OTP_SETTINGS, now + timedelta(seconds=1))

    rows = db.query(Email2FACode).filter(Email2FACode.user_id == test_user.id).all()
    assert sum(1 for row in rows if not row.used) == 1

    if first.code != second.code:
        stale = email_otp.verify_code(db, test_user.id, first.code, OTP_SETTINGS, now)
        assert stale.success is False
    fresh = email_otp.verify_code(db, test_user.id, second.code, OTP_SETTINGS, now + timedelta(seconds=2))
    assert fresh.success is True

    # Consumed codes cannot be replayed
    replay = email_otp.verify_code(db, test_user.id, second.code, OTP_SETTINGS, now + timedelta(seconds=3))
    assert replay.success is False
    assert replay.error_code == "NO_CODE"


def test_verify_is_case_insensitive_for_alphanumeric(db: Session, test_user: User, now: datetime) -> None:
    settings = replace(OTP_SETTINGS, code_format="alphanumeric_6")
    issued = email_otp.issue_code(db, test_user.id, settings, now)
    assert email_otp.verify_code(db, test_user.id, issued.code.lower(), settings, now).success is True


def test_issue_code_refused_while_locked(db: Session, test_user: User, now: datetime) -> None:
    issued = email_otp.issue_code(db, test_user.id, OTP_SETTINGS, now)
    wrong = _wrong(issued.code)
    for _ in range(OTP_SETTINGS.max_failed_attempts):
        result = email_otp.verify_code(db, test_user.id, wrong, OTP_SETTINGS, now)
    assert result.error_code == "LOCKED_OUT"

    with pytest.raises(AppError) as exc_info:
        email_otp.issue_code(db, test_user.id, OTP_SETTINGS, now + timedelta(minutes=1))
    assert exc_info.value.code == "LOCKED_OUT"

    # Temporary lock lifts on its own
    later = now + timedelta(minutes=16)
    assert email_otp.issue_code(db, test_user.id, OTP_SETTINGS, later).code


def test_code_status_reports_attempts_and_resend_window(db: Session, test_user: User, now: datetime) -> None:
    assert email_otp.get_code_status(db, test_user.id, OTP_SETTINGS, now) == {
        "has_active_code": False,
        "is_locked": False,
    }

    issued = email_otp.issue_code(db, test_user.id, OTP_SETTINGS, now)
    email_otp.verify_code(db, test_user.id, _wrong(issued.code), OTP_SETTINGS, now)

    status = email_otp.get_code_status(db, test_user.id, OTP_SETTINGS, now + timedelta(seconds=10))
    assert status["has_active_code"] is True
    assert status["attempts"] == 1
    assert status["remaining_attempts"] == 4
    assert status["is_locked"] is False
    assert status["can_resend_at"] == now + timedelta(seconds=60)

    expired = email_otp.get_code_status(db, test_user.id, OTP_SETTINGS, now + timedelta(minutes=6))
    assert expired["has_active_code"] is False


ADMIN_LOCK_SETTINGS = replace(OTP_SETTINGS, lockout_behavior="admin_intervention", max_failed_attempts=2)


def _lock_out(db: Session, user: User, now: datetime) -> None:
    issued = email_otp.issue_code(db, user.id, ADMIN_LOCK_SETTINGS, now)
    for _ in range(ADMIN_LOCK_SETTINGS.max_failed_attempts):
        result = email_otp.verify_code(db, user.id, _wrong(issued.code), ADMIN_LOCK_SETTINGS, now)
    assert result.error_code == "LOCKED_OUT"
    db.commit()


def test_cleanup_keeps_rows_that_hold_a_lock(db: Session, test_user: User, now: datetime) -> None:
    _lock_out(db, test_user, now)

    result = email_code_cleanup(db, settings, now + timedelta(hours=settings.EMAIL_CODE_RETENTION_HOURS + 1))
    assert result["codes_deleted"] == 0

    with pytest.raises(AppError) as exc_info:
        email_otp.issue_code(db, test_user.id, ADMIN_LOCK_SETTINGS, now + timedelta(days=2))
    assert exc_info.value.code == "LOCKED_OUT"

    # Once unlocked, the old rows are ordinary history again
    email_otp.unlock_user(db, test_user.id)
    db.commit()
    later = now + timedelta(days=3)
    assert email_code_cleanup(db, settings, later)["codes_deleted"] == 1


def test_toggling_email_verification_keeps_lock(db: Session, test_user: User, now: datetime) -> None:
    _lock_out(db, test_user, now)
    config = get_mfa_config(db)

    mfa_admin.enable_email_2fa(db, test_user, config, now)
    mfa_admin.disable_email_2fa(db, test_user, config)
    mfa_admin.enable_email_2fa(db, test_user, config, now)
    db.commit()

    with pytest.raises(AppError) as exc_info:
        email_otp.issue_code(db, test_user.id, ADMIN_LOCK_SETTINGS, now + timedelta(minutes=1))
    assert exc_info.value.code == "LOCKED_OUT"
    assert email_otp.get_code_status(db, test_user.id, ADMIN_LOCK_SETTINGS, now)["is_locked"] is True

    assert email_otp.unlock_user(db, test_user.id) == 1
    issued = email_otp.issue_code(db, test_user.id, ADMIN_LOCK_SETTINGS, now + timedelta(minutes=2))
    verification = email_otp.verify_code(
        db, test_user.id, issued.code, ADMIN_LOCK_SETTINGS, now + timedelta(minutes=2)
    )
    assert verification.success is True
