"""Registration, login and account token flows over HTTP."""

import pytest
from httpx import AsyncClient
from sqlalchemy.orm import Session

from authcore.api.v1.endpoints import auth as auth_endpoints
from authcore.core.audit import AuditAction
from authcore.models.audit import AuditLog
from authcore.models.security import LoginAttempt
from authcore.models.user import User
from tests.helpers.seed import DEFAULT_PASSWORD, create_test_user


@pytest.mark.asyncio
async def test_register_then_login_without_mfa(async_client: AsyncClient, db: Session, outbox) -> None:
    """Register and log in with the same credentials; MFA is disabled by default."""
    response = await async_client.post(
        "/v1/auth/register",
        json={"username": "alice", "email": "alice@x.com", "password": "Secure1!"},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["user"]["email"] == "alice@x.com"
    assert body["user"]["email_verified"] is False
    assert any("verify-email?token=" in message["body_text"] for message in outbox)

    response = await async_client.post("/v1/auth/login", json={"email": "alice@x.com", "password": "Secure1!"})
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "authenticated"
    assert data["tokens"]["access_token"]
    assert data["tokens"]["refresh_token"]
    assert data["challenge_token"] is None

    me = await async_client.get(
        "/v1/auth/me", headers={"Authorization": f"Bearer {data['tokens']['access_token']}"}
    )
    assert me.status_code == 200
    assert me.json()["username"] == "alice"


@pytest.mark.asyncio
async def test_register_rejects_weak_password(async_client: AsyncClient) -> None:
    response = await async_client.post(
        "/v1/auth/register",
        json={"username": "weakling", "email": "weak@x.com", "password": "password1"},
    )
    assert response.status_code == 400
    data = response.json()
    assert data["error_code"] == "INVALID_INPUT"
    assert data["details"]["errors"]


@pytest.mark.asyncio
async def test_register_email_is_case_insensitive(async_client: AsyncClient) -> None:
    first = await async_client.post(
        "/v1/auth/register",
        json={"username": "alice", "email": "Alice@x.com", "password": "Secure1!"},
    )
    assert first.status_code == 201
    assert first.json()["user"]["email"] == "alice@x.com"

    second = await async_client.post(
        "/v1/auth/register",
        json={"username": "alice2", "email": "alice@x.com", "password": "Secure1!"},
    )
    assert second.status_code == 409
    assert second.json()["error_code"] == "CONFLICT"
    assert second.json()["details"] == {"field": "email"}


@pytest.mark.asyncio
async def test_register_duplicate_username(async_client: AsyncClient, test_user: User) -> None:
    response = await async_client.post(
        "/v1/auth/register",
        json={"username": "ALICE", "email": "other@x.com", "password": "Secure1!"},
    )
    assert response.status_code == 409
    assert response.json()["details"] == {"field": "username"}


@pytest.mark.asyncio
async def test_login_wrong_password_and_unknown_user_look_alike(
    async_client: AsyncClient, db: Session, test_user: User
) -> None:
    wrong = await async_client.post("/v1/auth/login", json={"email": "alice@x.com", "password": "Wrong1!!"})
    unknown = await async_client.post("/v1/auth/login", json={"email": "nobody@x.com", "password": "Wrong1!!"})

    assert wrong.status_code == unknown.status_code == 401
    assert wrong.json()["error_code"] == unknown.json()["error_code"] == "INVALID_CREDENTIALS"
    assert wrong.json()["message"] == unknown.json()["message"]

    reasons = {row.failure_reason for row in db.query(LoginAttempt).all()}
    assert reasons == {"invalid_password", "user_not_found"}


@pytest.mark.asyncio
async def test_login_disabled_account(async_client: AsyncClient, db: Session) -> None:
    create_test_user(db, username="bob", email="bob@x.com", is_active=False)
    db.commit()

    response = await async_client.post("/v1/auth/login", json={"email": "bob@x.com", "password": DEFAULT_PASSWORD})
    assert response.status_code == 403
    assert response.json()["error_code"] == "ACCOUNT_DISABLED"


@pytest.mark.asyncio
async def test_verify_email_token(async_client: AsyncClient, db: Session, outbox) -> None:
    await async_client.post(
        "/v1/auth/register",
        json={"username": "carol", "email": "carol@x.com", "password": "Secure1!"},
    )
    link = next(message["body_text"] for message in outbox if "verify-email" in message["body_text"])
    token = link.split("token=")[1].split()[0]

    response = await async_client.post("/v1/auth/verify-email", json={"token": token})
    assert response.status_code == 200

    user = db.query(User).filter(User.email == "carol@x.com").one()
    db.refresh(user)
    assert user.email_verified is True
    assert user.email_verification_token is None

    again = await async_client.post("/v1/auth/verify-email", json={"token": token})
    assert again.status_code == 400
    assert again.json()["error_code"] == "INVALID_CODE"


@pytest.mark.asyncio
async def test_verify_email_token_expires(async_client: AsyncClient, db: Session, clock, outbox) -> None:
    await async_client.post(
        "/v1/auth/register",
        json={"username": "dave", "email": "dave@x.com", "password": "Secure1!"},
    )
    token = outbox[-1]["body_text"].split("token=")[1].split()[0]
    clock.advance(hours=25)

    response = await async_client.post("/v1/auth/verify-email", json={"token": token})
    assert response.status_code == 400
    assert response.json()["error_code"] == "EXPIRED_CODE"


@pytest.mark.asyncio
async def test_password_reset_flow_revokes_sessions(
    async_client: AsyncClient, db: Session, test_user: User, auth_headers_user, outbox
) -> None:
    unknown = await async_client.post("/v1/auth/password-reset/request", json={"email": "ghost@x.com"})
    known = await async_client.post("/v1/auth/password-reset/request", json={"email": "alice@x.com"})
    assert unknown.status_code == known.status_code == 200
    assert unknown.json() == known.json()

    token = outbox[-1]["body_text"].split("token=")[1].split()[0]
    response = await async_client.post(
        "/v1/auth/password-reset/confirm", json={"token": token, "new_password": "N3w-Secret!"}
    )
    assert response.status_code == 200

    # The session opened before the reset is gone
    me = await async_client.get("/v1/auth/me", headers=auth_headers_user)
    assert me.status_code == 401

    old = await async_client.post("/v1/auth/login", json={"email": "alice@x.com", "password": DEFAULT_PASSWORD})
    assert old.status_code == 401
    new = await async_client.post("/v1/auth/login", json={"email": "alice@x.com", "password": "N3w-Secret!"})
    assert new.status_code == 200

    reused = await async_client.post(
        "/v1/auth/password-reset/confirm", json={"token": token, "new_password": "An0ther-Secret!"}
    )
    assert reused.status_code == 400


@pytest.mark.asyncio
async def test_change_password_keeps_current_session(
    async_client: AsyncClient, db: Session, test_user: User, now
) -> None:
    login = await async_client.post("/v1/auth/login", json={"email": "alice@x.com", "password": DEFAULT_PASSWORD})
    other = await async_client.post("/v1/auth/login", json={"email": "alice@x.com", "password": DEFAULT_PASSWORD})
    current_headers = {"Authorization": f"Bearer {login.json()['tokens']['access_token']}"}
    other_headers = {"Authorization": f"Bearer {other.json()['tokens']['access_token']}"}

    wrong = await async_client.post(
        "/v1/auth/password/change",
        json={"current_password": "Nope1234!", "new_password": "Changed1!"},
        headers=current_headers,
    )
    assert wrong.status_code == 401

    response = await async_client.post(
        "/v1/auth/password/change",
        json={"current_password": DEFAULT_PASSWORD, "new_password": "Changed1!"},
        headers=current_headers,
    )
    assert response.status_code == 200

    assert (await async_client.get("/v1/auth/me", headers=current_headers)).status_code == 200
    assert (await async_client.get("/v1/auth/me", headers=other_headers)).status_code == 401

    audit = db.query(AuditLog).filter(AuditLog.action == AuditAction.PASSWORD_CHANGED).one()
    assert audit.details["sessions_revoked"] == 1


@pytest.mark.asyncio
async def test_me_requires_bearer_token(async_client: AsyncClient) -> None:
    missing = await async_client.get("/v1/auth/me")
    assert missing.status_code == 401
    assert missing.json()["error_code"] == "UNAUTHORIZED"

    garbage = await async_client.get("/v1/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert garbage.status_code == 401


@pytest.mark.asyncio
async def test_request_validation_error_envelope(async_client: AsyncClient) -> None:
    response = await async_client.post("/v1/auth/login", json={"email": "not-an-email"})
    assert response.status_code == 422
    data = response.json()
    assert data["error_code"] == "VALIDATION_ERROR"
    assert data["request_id"]
    fields = {detail["field"] for detail in data["details"]}
    assert "body.password" in fields


@pytest.mark.asyncio
async def test_password_reset_email_is_not_sent_inline(
    async_client: AsyncClient, db: Session, test_user: User, monkeypatch
) -> None:
    scheduled: list[tuple] = []

    def inline_send(*args, **kwargs):
        raise AssertionError("reset email sent from the request handler")

    monkeypatch.setattr(auth_endpoints, "send_templated_email", inline_send)
    monkeypatch.setattr(auth_endpoints, "send_templated_email_detached", lambda *args: scheduled.append(args))

    unknown = await async_client.post("/v1/auth/password-reset/request", json={"email": "ghost@x.com"})
    assert scheduled == []
    known = await async_client.post("/v1/auth/password-reset/request", json={"email": "alice@x.com"})
    assert unknown.json() == known.json()

    assert len(scheduled) == 1
    _session_factory, _cipher, to, template, data = scheduled[0]
    assert to == "alice@x.com"
    assert template == "password_reset"
    assert "reset-password?token=" in data["reset_url"]
