"""Admin email services and audit log API."""

from datetime import datetime, timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy.orm import Session

from authcore.core.audit import AuditAction
from authcore.core.context import AppContext
from authcore.models.audit import AuditLog
from authcore.models.platform import EmailService
from authcore.models.user import User
from authcore.services import email_services
from authcore.services.email.console import ConsoleEmailProvider
from authcore.services.email.smtp import SMTPEmailProvider

SMTP_PAYLOAD = {
    "name": "Primary SMTP",
    "provider_type": "smtp",
    "from_email": "noreply@example.com",
    "credentials": {"host": "smtp.example.com", "port": 2525, "username": "mailer", "password": "hunter22"},
}


@pytest.mark.asyncio
async def test_create_service_never_returns_credentials(
    async_client: AsyncClient, db: Session, ctx: AppContext, auth_headers_admin
) -> None:
    response = await async_client.post("/v1/admin/email-services", json=SMTP_PAYLOAD, headers=auth_headers_admin)
    assert response.status_code == 201
    body = response.json()
    assert "credentials" not in body
    assert "credentials_encrypted" not in body
    assert body["is_active"] is False

    row = db.get(EmailService, body["id"])
    assert "hunter22" not in row.credentials_encrypted
    assert ctx.cipher.decrypt_json(row.credentials_encrypted)["password"] == "hunter22"

    listed = await async_client.get("/v1/admin/email-services", headers=auth_headers_admin)
    assert [item["name"] for item in listed.json()] == ["Primary SMTP"]
    assert all("credentials" not in item for item in listed.json())


@pytest.mark.asyncio
async def test_activate_switches_the_single_active_service(
    async_client: AsyncClient, db: Session, ctx: AppContext, auth_headers_admin
) -> None:
    smtp = (await async_client.post("/v1/admin/email-services", json=SMTP_PAYLOAD, headers=auth_headers_admin)).json()
    console = (
        await async_client.post(
            "/v1/admin/email-services",
            json={"name": "Console", "provider_type": "console", "from_email": "dev@example.com"},
            headers=auth_headers_admin,
        )
    ).json()

    response = await async_client.post(f"/v1/admin/email-services/{smtp['id']}/activate", headers=auth_headers_admin)
    assert response.status_code == 200
    assert response.json()["is_active"] is True

    provider = email_services.get_active_provider(db, ctx.cipher)
    assert isinstance(provider, SMTPEmailProvider)
    assert provider.host == "smtp.example.com"
    assert provider.port == 2525

    await async_client.post(f"/v1/admin/email-services/{console['id']}/activate", headers=auth_headers_admin)
    active = db.query(EmailService).filter(EmailService.is_active.is_(True)).all()
    assert [row.id for row in active] == [console["id"]]
    assert isinstance(email_services.get_active_provider(db, ctx.cipher), ConsoleEmailProvider)


@pytest.mark.asyncio
async def test_delete_rules(async_client: AsyncClient, db: Session, auth_headers_admin) -> None:
    service = (await async_client.post("/v1/admin/email-services", json=SMTP_PAYLOAD, headers=auth_headers_admin)).json()
    await async_client.post(f"/v1/admin/email-services/{service['id']}/activate", headers=auth_headers_admin)

    refused = await async_client.delete(f"/v1/admin/email-services/{service['id']}", headers=auth_headers_admin)
    assert refused.status_code == 403
    assert refused.json()["error_code"] == "NOT_ALLOWED"

    other = (
        await async_client.post(
            "/v1/admin/email-services",
            json={"name": "Backup", "provider_type": "console", "from_email": "dev@example.com"},
            headers=auth_headers_admin,
        )
    ).json()
    deleted = await async_client.delete(f"/v1/admin/email-services/{other['id']}", headers=auth_headers_admin)
    assert deleted.status_code == 200
    assert db.get(EmailService, other["id"]) is None

    missing = await async_client.delete("/v1/admin/email-services/9999", headers=auth_headers_admin)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_unknown_provider_type_is_rejected(async_client: AsyncClient, auth_headers_admin) -> None:
    response = await async_client.post(
        "/v1/admin/email-services",
        json={**SMTP_PAYLOAD, "provider_type": "sendgrid"},
        headers=auth_headers_admin,
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_email_services_require_admin(async_client: AsyncClient, auth_headers_user) -> None:
    response = await async_client.get("/v1/admin/email-services", headers=auth_headers_user)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_audit_list_filters(
    async_client: AsyncClient, db: Session, test_admin_user: User, test_user: User, auth_headers_admin
) -> None:
    await async_client.post(f"/v1/admin/users/{test_user.id}/sessions/revoke", headers=auth_headers_admin)
    await async_client.put("/v1/admin/mfa/config", json={"mode": "email_only"}, headers=auth_headers_admin)

    everything = await async_client.get("/v1/admin/audit", headers=auth_headers_admin)
    assert everything.status_code == 200
    assert everything.json()["total"] >= 2

    by_action = await async_client.get(
        "/v1/admin/audit", params={"action": AuditAction.MFA_CONFIG_UPDATE}, headers=auth_headers_admin
    )
    items = by_action.json()["items"]
    assert len(items) == 1
    assert items[0]["admin_id"] == test_admin_user.id
    assert items[0]["admin_email"] == "admin@x.com"

    by_target = await async_client.get(
        "/v1/admin/audit",
        params={"target_type": "user", "target_id": test_user.id},
        headers=auth_headers_admin,
    )
    assert by_target.json()["total"] >= 1
    assert all(item["target_id"] == test_user.id for item in by_target.json()["items"])

    by_actor = await async_client.get("/v1/admin/audit", params={"actor_id": 9999}, headers=auth_headers_admin)
    assert by_actor.json()["total"] == 0


@pytest.mark.asyncio
async def test_audit_purge_removes_only_old_rows(
    async_client: AsyncClient, db: Session, auth_headers_admin, now: datetime
) -> None:
    db.add(AuditLog(action="legacy_event", details={"n": 1}, created_at=now - timedelta(days=400)))
    db.add(AuditLog(action="recent_event", details={"n": 2}, created_at=now - timedelta(days=5)))
    db.commit()

    response = await async_client.post(
        "/v1/admin/audit/purge", json={"older_than_days": 365}, headers=auth_headers_admin
    )
    assert response.status_code == 200
    assert response.json() == {"count": 1}

    actions = {row.action for row in db.query(AuditLog).all()}
    assert "legacy_event" not in actions
    assert "recent_event" in actions
    assert AuditAction.AUDIT_PURGE in actions

    invalid = await async_client.post("/v1/admin/audit/purge", json={"older_than_days": 0}, headers=auth_headers_admin)
    assert invalid.status_code == 422
