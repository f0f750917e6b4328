"""MFA enforcement: grace windows, setup-required logins and setup tokens."""

from datetime import datetime, timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy.orm import Session

from authcore.models.session import AuthSession
from authcore.models.user import User
from authcore.services import mfa_enforcement
from tests.helpers.seed import DEFAULT_PASSWORD, create_test_user, enable_email_mfa, set_mfa_config, totp_code


async def _enable(async_client: AsyncClient, headers: dict, days: int = 14) -> dict:
    response = await async_client.post(
        "/v1/admin/mfa/enforcement/enable",
        json={"grace_period_days": days, "apply_to_existing": True},
        headers=headers,
    )
    assert response.status_code == 200, response.text
    return response.json()


async def _login(async_client: AsyncClient, email: str = "alice@x.com"):
    return await async_client.post("/v1/auth/login", json={"email": email, "password": DEFAULT_PASSWORD})


@pytest.mark.asyncio
async def test_grace_period_then_setup_required(
    async_client: AsyncClient, db: Session, test_user: User, auth_headers_admin, clock
) -> None:
    set_mfa_config(db, mode="totp_only")
    result = await _enable(async_client, auth_headers_admin)
    assert result["enforcement_enabled"] is True
    assert result["applied"]["grace_period_days"] == 14

    db.refresh(test_user)
    assert test_user.mfa_setup_required is True
    assert test_user.mfa_grace_period_end == clock.now + timedelta(days=14)

    # Inside the window the user still signs in without a second factor
    response = await _login(async_client)
    assert response.status_code == 200
    assert response.json()["status"] == "authenticated"

    clock.advance(days=15)
    sessions_before = db.query(AuthSession).filter(AuthSession.user_id == test_user.id).count()

    response = await _login(async_client)
    assert response.status_code == 403
    data = response.json()
    assert data["error_code"] == "MFA_SETUP_REQUIRED"
    assert data["details"]["setup_token"]
    assert data["details"]["pending_methods"] == ["totp"]
    assert db.query(AuthSession).filter(AuthSession.user_id == test_user.id).count() == sessions_before


@pytest.mark.asyncio
async def test_setup_token_enrols_totp_and_signs_in(
    async_client: AsyncClient, db: Session, test_user: User, auth_headers_admin, clock
) -> None:
    set_mfa_config(db, mode="totp_only")
    await _enable(async_client, auth_headers_admin, days=0)

    response = await _login(async_client)
    assert response.status_code == 403
    setup_token = response.json()["details"]["setup_token"]

    # A setup token is not a challenge token
    misuse = await async_client.post(
        "/v1/auth/mfa/verify",
        json={"challenge_token": setup_token, "method": "totp", "code": "123456"},
    )
    assert misuse.status_code == 401

    setup = await async_client.post("/v1/auth/mfa/setup/totp", json={"setup_token": setup_token})
    assert setup.status_code == 200
    secret = setup.json()["secret"]

    done = await async_client.post(
        "/v1/auth/mfa/setup/complete",
        json={"setup_token": setup_token, "method": "totp", "code": totp_code(secret, clock.now)},
    )
    assert done.status_code == 200
    body = done.json()
    assert body["status"] == "authenticated"
    assert len(body["backup_codes"]) == 10

    db.refresh(test_user)
    assert test_user.mfa_setup_required is False
    assert test_user.mfa_setup_completed_at is not None

    # Next login asks for TOTP rather than setup
    clock.advance(seconds=60)
    response = await _login(async_client)
    assert response.status_code == 200
    assert response.json()["status"] == "mfa_required"


@pytest.mark.asyncio
async def test_required_mode_setup_reports_pending_methods(
    async_client: AsyncClient, db: Session, test_user: User, auth_headers_admin, clock
) -> None:
    set_mfa_config(db, mode="totp_email_required")
    await _enable(async_client, auth_headers_admin, days=0)

    response = await _login(async_client)
    setup_token = response.json()["details"]["setup_token"]
    assert sorted(response.json()["details"]["pending_methods"]) == ["email", "totp"]

    progress = await async_client.post(
        "/v1/auth/mfa/setup/complete", json={"setup_token": setup_token, "method": "email"}
    )
    assert progress.status_code == 200
    assert progress.json() == {"status": "mfa_setup_pending", "pending_methods": ["totp"]}

    secret = (await async_client.post("/v1/auth/mfa/setup/totp", json={"setup_token": setup_token})).json()["secret"]
    done = await async_client.post(
        "/v1/auth/mfa/setup/complete",
        json={"setup_token": setup_token, "method": "totp", "code": totp_code(secret, clock.now)},
    )
    assert done.json()["status"] == "authenticated"


@pytest.mark.asyncio
async def test_new_registration_must_set_up_immediately(
    async_client: AsyncClient, db: Session, auth_headers_admin
) -> None:
    set_mfa_config(db, mode="email_only")
    await _enable(async_client, auth_headers_admin)

    response = await async_client.post(
        "/v1/auth/register", json={"username": "newbie", "email": "newbie@x.com", "password": "Secure1!"}
    )
    assert response.status_code == 201
    assert response.json()["user"]["mfa_setup_required"] is True

    response = await _login(async_client, "newbie@x.com")
    assert response.status_code == 403
    assert response.json()["details"]["pending_methods"] == ["email"]


@pytest.mark.asyncio
async def test_exempt_role_is_not_enforced(
    async_client: AsyncClient, db: Session, test_user: User, auth_headers_admin
) -> None:
    set_mfa_config(db, mode="totp_only")
    response = await async_client.put(
        "/v1/admin/mfa/roles/user", json={"exempt_from_enforcement": True}, headers=auth_headers_admin
    )
    assert response.status_code == 200

    result = await _enable(async_client, auth_headers_admin)
    db.refresh(test_user)
    assert test_user.mfa_grace_period_end is None
    assert result["applied"]["total_users"] >= result["applied"]["applied_count"]


@pytest.mark.asyncio
async def test_enforcement_statistics(
    async_client: AsyncClient, db: Session, test_user: User, auth_headers_admin
) -> None:
    set_mfa_config(db, mode="totp_only")
    await _enable(async_client, auth_headers_admin)

    response = await async_client.get("/v1/admin/mfa/enforcement", headers=auth_headers_admin)
    assert response.status_code == 200
    stats = response.json()
    assert stats["enforcement_enabled"] is True
    assert stats["statistics"]["total_users"] == 2
    assert stats["statistics"]["users_in_grace_period"] == 2
    assert stats["statistics"]["compliance_rate"] == 0

    disabled = await async_client.post("/v1/admin/mfa/enforcement/disable", headers=auth_headers_admin)
    assert disabled.status_code == 200
    response = await async_client.get("/v1/admin/mfa/enforcement", headers=auth_headers_admin)
    assert response.json()["enforcement_enabled"] is False


def test_apply_to_existing_users_is_idempotent(db: Session, now: datetime) -> None:
    for index in range(3):
        create_test_user(db, username=f"user{index}", email=f"user{index}@x.com")
    db.commit()

    first = mfa_enforcement.apply_to_existing_users(db, 14, now)
    db.commit()
    assert first["applied_count"] == 3

    windows = {user.id: user.mfa_grace_period_end for user in db.query(User).all()}
    second = mfa_enforcement.apply_to_existing_users(db, 30, now + timedelta(days=1))
    db.commit()
    assert second["applied_count"] == 0
    assert {user.id: user.mfa_grace_period_end for user in db.query(User).all()} == windows


def test_status_reports_days_remaining(db: Session, test_user: User, now: datetime) -> None:
    set_mfa_config(db, mode="totp_only", enforcement_enabled=True)
    mfa_enforcement.apply_to_existing_users(db, 14, now)
    db.commit()

    status = mfa_enforcement.get_status(db, test_user, now + timedelta(days=3, hours=1))
    assert status.grace_period_active is True
    assert status.days_remaining == 11
    assert status.setup_required is False

    expired = mfa_enforcement.get_status(db, test_user, now + timedelta(days=14))
    assert expired.setup_required is True
    assert expired.grace_period_expired is True


def test_email_two_factor_counts_in_email_mode(db: Session, test_user: User, now: datetime) -> None:
    set_mfa_config(db, mode="email_only", enforcement_enabled=True)
    bob = create_test_user(db, username="bob", email="bob@x.com")
    db.commit()
    enable_email_mfa(db, test_user, now)

    result = mfa_enforcement.apply_to_existing_users(db, 14, now)
    db.commit()
    assert result["applied_count"] == 1

    db.refresh(test_user)
    db.refresh(bob)
    assert test_user.mfa_setup_required is False
    assert test_user.mfa_grace_period_end is None
    assert bob.mfa_grace_period_end == now + timedelta(days=14)

    stats = mfa_enforcement.get_statistics(db, now)["statistics"]
    assert stats["users_with_mfa"] == 1
    assert stats["users_without_mfa"] == 1
