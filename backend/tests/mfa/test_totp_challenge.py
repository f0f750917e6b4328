"""TOTP challenges: replay guard, combined factors, fallback, backup codes, trusted devices."""

from datetime import datetime, timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy.orm import Session

from authcore.core.context import AppContext
from authcore.models.session import TrustedDevice
from authcore.models.user import User
from authcore.services import totp
from tests.helpers.seed import DEFAULT_PASSWORD, enroll_totp, last_code, set_mfa_config, totp_code


def _wrong_totp(secret: str, at: datetime) -> str:
    valid = {totp_code(secret, at + timedelta(seconds=30 * k)) for k in (-1, 0, 1)}
    return next(candidate for candidate in ("000000", "111111", "222222", "333333") if candidate not in valid)


async def _login(async_client: AsyncClient, **extra) -> dict:
    response = await async_client.post(
        "/v1/auth/login", json={"email": "alice@x.com", "password": DEFAULT_PASSWORD, **extra}
    )
    assert response.status_code == 200, response.text
    return response.json()


async def _verify(async_client: AsyncClient, token: str, method: str, code: str, **extra):
    return await async_client.post(
        "/v1/auth/mfa/verify",
        json={"challenge_token": token, "method": method, "code": code, **extra},
    )


@pytest.fixture
def totp_secret(db: Session, ctx: AppContext, test_user: User, now: datetime) -> str:
    return enroll_totp(db, ctx.cipher, test_user, now)


@pytest.mark.asyncio
async def test_totp_code_cannot_be_replayed(
    async_client: AsyncClient, db: Session, totp_secret: str, clock
) -> None:
    set_mfa_config(db, mode="totp_only")
    code = totp_code(totp_secret, clock.now)

    challenge = await _login(async_client)
    assert challenge["status"] == "mfa_required"
    assert challenge["allowed_methods"] == ["totp"]
    assert challenge["email_sent"] is False

    first = await _verify(async_client, challenge["challenge_token"], "totp", code)
    assert first.status_code == 200
    assert first.json()["status"] == "authenticated"

    second_challenge = await _login(async_client)
    replay = await _verify(async_client, second_challenge["challenge_token"], "totp", code)
    assert replay.status_code == 400
    assert replay.json()["error_code"] == "INVALID_CODE"

    clock.advance(seconds=30)
    fresh = await _verify(
        async_client, second_challenge["challenge_token"], "totp", totp_code(totp_secret, clock.now)
    )
    assert fresh.status_code == 200


@pytest.mark.asyncio
async def test_required_mode_needs_both_factors(
    async_client: AsyncClient, db: Session, totp_secret: str, outbox, now: datetime
) -> None:
    set_mfa_config(db, mode="totp_email_required")

    challenge = await _login(async_client)
    assert challenge["mode"] == "all"
    assert challenge["allowed_methods"] == ["totp", "email"]
    assert challenge["email_sent"] is True
    token = challenge["challenge_token"]

    partial = await _verify(async_client, token, "totp", totp_code(totp_secret, now))
    assert partial.status_code == 200
    body = partial.json()
    assert body["status"] == "mfa_partial"
    assert body["verified_methods"] == ["totp"]
    assert body["remaining_methods"] == ["email"]

    again = await _verify(async_client, token, "totp", totp_code(totp_secret, now))
    assert again.status_code == 403
    assert again.json()["error_code"] == "NOT_ALLOWED"

    done = await _verify(async_client, token, "email", last_code(outbox))
    assert done.status_code == 200
    assert done.json()["status"] == "authenticated"


@pytest.mark.asyncio
async def test_challenge_token_is_single_use(
    async_client: AsyncClient, db: Session, totp_secret: str, clock
) -> None:
    set_mfa_config(db, mode="totp_only")
    challenge = await _login(async_client)
    token = challenge["challenge_token"]

    assert (await _verify(async_client, token, "totp", totp_code(totp_secret, clock.now))).status_code == 200

    clock.advance(seconds=30)
    reused = await _verify(async_client, token, "totp", totp_code(totp_secret, clock.now))
    assert reused.status_code == 401
    assert reused.json()["error_code"] == "UNAUTHORIZED"


@pytest.mark.asyncio
async def test_challenge_expires(async_client: AsyncClient, db: Session, totp_secret: str, clock) -> None:
    set_mfa_config(db, mode="totp_only")
    challenge = await _login(async_client)
    clock.advance(minutes=11)

    response = await _verify(
        async_client, challenge["challenge_token"], "totp", totp_code(totp_secret, clock.now)
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_email_fallback_opens_after_totp_failures(
    async_client: AsyncClient, db: Session, totp_secret: str, outbox, now: datetime
) -> None:
    set_mfa_config(db, mode="totp_email_fallback", fallback_totp_attempts_threshold=3)
    challenge = await _login(async_client)
    token = challenge["challenge_token"]
    assert challenge["mode"] == "fallback"
    assert challenge["allowed_methods"] == ["totp"]
    assert outbox == []

    early = await _verify(async_client, token, "email", "123456")
    assert early.status_code == 403

    wrong = _wrong_totp(totp_secret, now)
    for attempt in (1, 2, 3):
        response = await _verify(async_client, token, "totp", wrong)
        assert response.status_code == 400
        assert response.json()["details"]["totp_failures"] == attempt
    assert response.json()["details"]["email_fallback_allowed"] is True
    # Opening the fallback does not send a code by itself
    assert outbox == []

    resend = await async_client.post("/v1/auth/mfa/resend", json={"challenge_token": token})
    assert resend.status_code == 200
    assert resend.json()["allowed_methods"] == ["totp", "email"]
    assert resend.json()["email_sent"] is True

    done = await _verify(async_client, token, "email", last_code(outbox))
    assert done.status_code == 200
    assert done.json()["status"] == "authenticated"


@pytest.mark.asyncio
async def test_backup_code_substitutes_for_totp_once(
    async_client: AsyncClient, db: Session, totp_secret: str, test_user: User, now: datetime
) -> None:
    set_mfa_config(db, mode="totp_only")
    codes = totp.replace_backup_codes(db, test_user.id, now)
    db.commit()

    challenge = await _login(async_client)
    used = await _verify(async_client, challenge["challenge_token"], "backup_code", codes[0].lower())
    assert used.status_code == 200
    assert totp.remaining_backup_codes(db, test_user.id) == len(codes) - 1

    challenge = await _login(async_client)
    reused = await _verify(async_client, challenge["challenge_token"], "backup_code", codes[0])
    assert reused.status_code == 400
    assert reused.json()["error_code"] == "INVALID_CODE"


@pytest.mark.asyncio
async def test_backup_codes_not_accepted_for_email_by_default(
    async_client: AsyncClient, db: Session, test_user: User, now: datetime
) -> None:
    set_mfa_config(db, mode="email_only")
    codes = totp.replace_backup_codes(db, test_user.id, now)
    db.commit()

    challenge = await _login(async_client)
    response = await _verify(async_client, challenge["challenge_token"], "backup_code", codes[0])
    assert response.status_code == 403
    assert response.json()["error_code"] == "NOT_ALLOWED"


@pytest.mark.asyncio
async def test_trusted_device_skips_challenge(
    async_client: AsyncClient, db: Session, totp_secret: str, test_user: User, now: datetime
) -> None:
    set_mfa_config(db, mode="totp_only", device_trust_enabled=True, device_trust_duration_days=30)

    challenge = await _login(async_client)
    verified = await _verify(
        async_client, challenge["challenge_token"], "totp", totp_code(totp_secret, now), trust_device=True
    )
    assert verified.status_code == 200
    assert db.query(TrustedDevice).filter(TrustedDevice.user_id == test_user.id).count() == 1

    second = await _login(async_client)
    assert second["status"] == "authenticated"

    other_browser = await async_client.post(
        "/v1/auth/login",
        json={"email": "alice@x.com", "password": DEFAULT_PASSWORD},
        headers={"User-Agent": "Mozilla/5.0 (X11; Linux x86_64) Firefox/120.0"},
    )
    assert other_browser.json()["status"] == "mfa_required"


@pytest.mark.asyncio
async def test_self_service_totp_enrolment(
    async_client: AsyncClient, db: Session, test_user: User, auth_headers_user, now: datetime
) -> None:
    setup = await async_client.post("/v1/mfa/totp/setup", headers=auth_headers_user)
    assert setup.status_code == 200
    secret = setup.json()["secret"]
    assert setup.json()["provisioning_uri"].startswith("otpauth://totp/")

    bad = await async_client.post(
        "/v1/mfa/totp/confirm", json={"code": _wrong_totp(secret, now)}, headers=auth_headers_user
    )
    assert bad.status_code == 400

    confirm = await async_client.post(
        "/v1/mfa/totp/confirm", json={"code": totp_code(secret, now)}, headers=auth_headers_user
    )
    assert confirm.status_code == 200
    assert len(confirm.json()["backup_codes"]) == 10

    status = await async_client.get("/v1/mfa/status", headers=auth_headers_user)
    assert status.status_code == 200
    assert status.json()["totp_enabled"] is True
    assert status.json()["backup_codes_remaining"] == 10

    again = await async_client.post("/v1/mfa/totp/setup", headers=auth_headers_user)
    assert again.status_code == 409

    disable = await async_client.post(
        "/v1/mfa/totp/disable", json={"password": DEFAULT_PASSWORD}, headers=auth_headers_user
    )
    assert disable.status_code == 200
    status = await async_client.get("/v1/mfa/status", headers=auth_headers_user)
    assert status.json()["totp_enabled"] is False
