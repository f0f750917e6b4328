"""Self-service MFA settings: email verification, alternate email, backup codes, trusted devices."""

from datetime import datetime, timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy.orm import Session

from authcore.core.audit import AuditAction
from authcore.core.context import AppContext
from authcore.models.audit import AuditLog
from authcore.models.session import TrustedDevice
from authcore.models.user import User
from authcore.services import auth_flow
from tests.helpers.seed import (
    DEFAULT_PASSWORD,
    auth_headers,
    create_test_user,
    enable_email_mfa,
    enroll_totp,
    last_code,
    set_mfa_config,
    totp_code,
)


@pytest.mark.asyncio
async def test_email_verification_toggle_and_preferred_method(
    async_client: AsyncClient, db: Session, test_user: User, auth_headers_user
) -> None:
    enabled = await async_client.post("/v1/mfa/email/enable", headers=auth_headers_user)
    assert enabled.status_code == 200

    status = (await async_client.get("/v1/mfa/status", headers=auth_headers_user)).json()
    assert status["email_2fa_enabled"] is True
    assert status["current_method"] == "email"

    no_totp = await async_client.put("/v1/mfa/preferred-method", json={"method": "totp"}, headers=auth_headers_user)
    assert no_totp.status_code == 403

    preferred = await async_client.put("/v1/mfa/preferred-method", json={"method": "email"}, headers=auth_headers_user)
    assert preferred.status_code == 200

    disabled = await async_client.post("/v1/mfa/email/disable", headers=auth_headers_user)
    assert disabled.status_code == 200
    status = (await async_client.get("/v1/mfa/status", headers=auth_headers_user)).json()
    assert status["email_2fa_enabled"] is False
    assert status["preferred_method"] is None

    actions = [row.action for row in db.query(AuditLog).filter(AuditLog.user_id == test_user.id).order_by(AuditLog.id)]
    assert actions == [
        AuditAction.MFA_METHOD_ENABLED,
        AuditAction.MFA_METHOD_CHANGED,
        AuditAction.MFA_METHOD_DISABLED,
    ]


@pytest.mark.asyncio
async def test_admin_controlled_settings_are_locked(
    async_client: AsyncClient, db: Session, test_user: User, auth_headers_user, now: datetime
) -> None:
    enable_email_mfa(db, test_user, now)
    set_mfa_config(db, user_control="admin_controlled")

    response = await async_client.post("/v1/mfa/email/disable", headers=auth_headers_user)
    assert response.status_code == 403
    assert response.json()["error_code"] == "NOT_ALLOWED"

    response = await async_client.put("/v1/mfa/preferred-method", json={"method": "email"}, headers=auth_headers_user)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_email_verification_requires_verified_address(
    async_client: AsyncClient, db: Session, now: datetime
) -> None:
    user = create_test_user(db, username="newbie", email="newbie@x.com", email_verified=False)
    db.commit()
    headers = auth_headers(db, user, now)

    response = await async_client.post("/v1/mfa/email/enable", headers=headers)
    assert response.status_code == 403
    assert response.json()["error_code"] == "EMAIL_NOT_VERIFIED"

    set_mfa_config(db, email_verification_required=False)
    response = await async_client.post("/v1/mfa/email/enable", headers=headers)
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_alternate_email_receives_codes_once_verified(
    async_client: AsyncClient, db: Session, test_user: User, auth_headers_user, outbox, clock
) -> None:
    response = await async_client.post(
        "/v1/mfa/alternate-email", json={"email": "Alice.Alt@x.com"}, headers=auth_headers_user
    )
    assert response.status_code == 202
    assert outbox[-1]["to"].lower() == "alice.alt@x.com"
    token = last_code(outbox)

    wrong = await async_client.post(
        "/v1/mfa/alternate-email/verify", json={"token": "0" * 64}, headers=auth_headers_user
    )
    assert wrong.status_code == 400
    assert wrong.json()["error_code"] == "INVALID_CODE"

    verified = await async_client.post(
        "/v1/mfa/alternate-email/verify", json={"token": token}, headers=auth_headers_user
    )
    assert verified.status_code == 200
    status = (await async_client.get("/v1/mfa/status", headers=auth_headers_user)).json()
    assert status["alternate_email"] == "alice.alt@x.com"
    assert status["alternate_email_verified"] is True

    set_mfa_config(db, mode="email_only")
    outbox.clear()
    login = await async_client.post("/v1/auth/login", json={"email": "alice@x.com", "password": DEFAULT_PASSWORD})
    assert login.json()["email_sent"] is True
    assert sorted(message["to"] for message in outbox) == ["alice.alt@x.com", "alice@x.com"]
    assert outbox[0]["body_text"] == outbox[1]["body_text"]

    removed = await async_client.delete("/v1/mfa/alternate-email", headers=auth_headers_user)
    assert removed.status_code == 200
    again = await async_client.delete("/v1/mfa/alternate-email", headers=auth_headers_user)
    assert again.status_code == 404


@pytest.mark.asyncio
async def test_alternate_email_rules(
    async_client: AsyncClient, db: Session, test_user: User, auth_headers_user, outbox, clock
) -> None:
    same = await async_client.post("/v1/mfa/alternate-email", json={"email": "alice@x.com"}, headers=auth_headers_user)
    assert same.status_code == 400

    await async_client.post("/v1/mfa/alternate-email", json={"email": "late@x.com"}, headers=auth_headers_user)
    token = last_code(outbox)
    clock.advance(hours=25)
    expired = await async_client.post(
        "/v1/mfa/alternate-email/verify", json={"token": token}, headers=auth_headers(db, test_user, clock.now)
    )
    assert expired.status_code == 400
    assert expired.json()["error_code"] == "EXPIRED_CODE"

    set_mfa_config(db, allow_multiple_emails=False)
    refused = await async_client.post(
        "/v1/mfa/alternate-email", json={"email": "other@x.com"}, headers=auth_headers(db, test_user, clock.now)
    )
    assert refused.status_code == 403


@pytest.mark.asyncio
async def test_regenerate_backup_codes(
    async_client: AsyncClient, db: Session, ctx: AppContext, test_user: User, auth_headers_user, now: datetime
) -> None:
    missing = await async_client.post(
        "/v1/mfa/backup-codes/regenerate", json={"password": DEFAULT_PASSWORD}, headers=auth_headers_user
    )
    assert missing.status_code == 404

    enroll_totp(db, ctx.cipher, test_user, now)
    wrong = await async_client.post(
        "/v1/mfa/backup-codes/regenerate", json={"password": "Wrong-pass1"}, headers=auth_headers_user
    )
    assert wrong.status_code == 401

    first = await async_client.post(
        "/v1/mfa/backup-codes/regenerate", json={"password": DEFAULT_PASSWORD}, headers=auth_headers_user
    )
    assert first.status_code == 200
    codes = first.json()["backup_codes"]
    assert len(codes) == 10

    second = await async_client.post(
        "/v1/mfa/backup-codes/regenerate", json={"password": DEFAULT_PASSWORD}, headers=auth_headers_user
    )
    assert set(second.json()["backup_codes"]).isdisjoint(codes)
    status = (await async_client.get("/v1/mfa/status", headers=auth_headers_user)).json()
    assert status["backup_codes_remaining"] == 10


@pytest.mark.asyncio
async def test_trusted_devices_list_and_revoke(
    async_client: AsyncClient, db: Session, ctx: AppContext, test_user: User, now: datetime
) -> None:
    secret = enroll_totp(db, ctx.cipher, test_user, now)
    set_mfa_config(db, mode="totp_only", device_trust_enabled=True)

    login = await async_client.post("/v1/auth/login", json={"email": "alice@x.com", "password": DEFAULT_PASSWORD})
    verified = await async_client.post(
        "/v1/auth/mfa/verify",
        json={
            "challenge_token": login.json()["challenge_token"],
            "method": "totp",
            "code": totp_code(secret, now),
            "trust_device": True,
        },
    )
    headers = {"Authorization": f"Bearer {verified.json()['tokens']['access_token']}"}

    devices = (await async_client.get("/v1/mfa/trusted-devices", headers=headers)).json()
    assert len(devices) == 1
    assert "device_fingerprint_hash" not in devices[0]

    revoked = await async_client.delete(f"/v1/mfa/trusted-devices/{devices[0]['id']}", headers=headers)
    assert revoked.status_code == 200
    assert db.query(AuditLog).filter(AuditLog.action == AuditAction.DEVICE_REVOKED).count() == 1

    missing = await async_client.delete(f"/v1/mfa/trusted-devices/{devices[0]['id']}", headers=headers)
    assert missing.status_code == 404

    again = await async_client.post("/v1/auth/login", json={"email": "alice@x.com", "password": DEFAULT_PASSWORD})
    assert again.json()["status"] == "mfa_required"


def test_password_reset_drops_device_trust(db: Session, test_user: User, now: datetime) -> None:
    db.add(
        TrustedDevice(
            user_id=test_user.id,
            device_fingerprint_hash="f" * 64,
            trusted_until=now + timedelta(days=30),
            last_used_at=now,
            created_at=now,
        )
    )
    db.commit()

    request = auth_flow.request_password_reset(db, "alice@x.com", now)
    auth_flow.reset_password(db, request.reset_token, "Another1!", now)
    assert db.query(TrustedDevice).filter(TrustedDevice.user_id == test_user.id).count() == 0
