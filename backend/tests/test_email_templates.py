"""Email template rendering and database overrides."""

import pytest
from sqlalchemy.orm import Session

from authcore.models.platform import EmailTemplate
from authcore.services.email.templates import MFA_CODE, PASSWORD_RESET, render_template


def test_builtin_template_renders_placeholders() -> None:
    rendered = render_template(MFA_CODE, {"code": "123456", "expires_minutes": 5})
    assert rendered.subject == "Your verification code"
    assert "Your verification code is: 123456" in rendered.text
    assert "5 minutes" in rendered.text
    assert "<strong>123456</strong>" in rendered.html
    assert "$code" not in rendered.html


def test_active_database_template_overrides_builtin(db: Session) -> None:
    db.add(
        EmailTemplate(
            name=PASSWORD_RESET,
            subject="Reset for $app_name",
            html_body="<a href='$reset_url'>reset</a>",
            text_body="Go to $reset_url",
            is_active=True,
        )
    )
    db.commit()

    rendered = render_template(PASSWORD_RESET, {"reset_url": "https://app/reset?token=abc"}, db=db)
    assert rendered.text == "Go to https://app/reset?token=abc"
    assert rendered.subject.startswith("Reset for ")


def test_inactive_override_is_ignored(db: Session) -> None:
    db.add(EmailTemplate(name=MFA_CODE, subject="Old", html_body="x", text_body="x", is_active=False))
    db.commit()
    assert render_template(MFA_CODE, {"code": "1"}, db=db).subject == "Your verification code"


def test_unknown_template() -> None:
    with pytest.raises(ValueError):
        render_template("nope", {})
