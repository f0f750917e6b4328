"""Email templates.

Built-in templates can be overridden per name by an active ``EmailTemplate``
row. Placeholders use ``string.Template`` syntax (``$code``, ``${app_name}``).
"""

from dataclasses import dataclass
from string import Template

from sqlalchemy.orm import Session

from authcore.core.config import settings
from authcore.models.platform import EmailTemplate

MFA_CODE = "mfa_code"
EMAIL_VERIFICATION = "email_verification"
PASSWORD_RESET = "password_reset"
ALTERNATE_EMAIL_VERIFICATION = "alternate_email_verification"
NEW_DEVICE_LOGIN = "new_device_login"


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str
    text: str


_HTML_WRAPPER = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
</head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">
    <div style="background-color: #f4f4f4; padding: 20px; border-radius: 5px;">
        $content
    </div>
    <p style="margin-top: 20px; color: #999; font-size: 0.8em;">---<br>${app_name}</p>
</body>
</html>
"""

DEFAULT_TEMPLATES: dict[str, dict[str, str]] = {
    MFA_CODE: {
        "subject": "Your verification code",
        "text": (
            "Your verification code is: $code\n\n"
            "This code expires in $expires_minutes minutes.\n\n"
            "If you did not try to sign in, change your password.\n"
        ),
        "html": (
            "<h2>Verification code</h2>"
            '<p style="font-size: 2em; letter-spacing: 4px;"><strong>$code</strong></p>'
            '<p style="color: #666;">This code expires in $expires_minutes minutes.</p>'
            '<p style="color: #666;">If you did not try to sign in, change your password.</p>'
        ),
    },
    EMAIL_VERIFICATION: {
        "subject": "Verify your email address",
        "text": (
            "Hi $username,\n\nConfirm your email address by opening the link below:\n$verify_url\n\n"
            "This link will expire in $expires_hours hours.\n"
        ),
        "html": (
            "<h2>Verify your email</h2><p>Hi $username,</p>"
            '<p><a href="$verify_url">Confirm email address</a></p>'
            '<p style="color: #666;">This link will expire in $expires_hours hours.</p>'
        ),
    },
    PASSWORD_RESET: {
        "subject": "Password reset request",
        "text": (
            "You requested a password reset for your account.\n\n"
            "Open the link below to reset your password:\n$reset_url\n\n"
            "This link will expire in $expires_minutes minutes.\n\n"
            "If you did not request this reset, please ignore this email.\n"
        ),
        "html": (
            "<h2>Password Reset Request</h2><p>You requested a password reset for your account.</p>"
            '<p><a href="$reset_url">Reset Password</a></p>'
            '<p style="color: #666;">This link will expire in $expires_minutes minutes.</p>'
            '<p style="color: #666;">If you did not request this reset, please ignore this email.</p>'
        ),
    },
    ALTERNATE_EMAIL_VERIFICATION: {
        "subject": "Confirm your alternate email",
        "text": "Your alternate email confirmation code is: $code\n",
        "html": "<h2>Alternate email</h2><p>Your confirmation code is <strong>$code</strong>.</p>",
    },
    NEW_DEVICE_LOGIN: {
        "subject": "New sign-in to your account",
        "text": (
            "A new device signed in to your account.\n\n"
            "Device: $device\nLocation: $location\nIP address: $ip_address\n\n"
            "If this was not you, change your password and revoke your sessions.\n"
        ),
        "html": (
            "<h2>New sign-in</h2>"
            "<p>Device: $device<br>Location: $location<br>IP address: $ip_address</p>"
            '<p style="color: #666;">If this was not you, change your password and revoke your sessions.</p>'
        ),
    },
}


def render_template(name: str, data: dict, db: Session | None = None) -> RenderedEmail:
    """
    Render a named template.

    Args:
        name: Template name (e.g. "mfa_code")
        data: Placeholder values
        db: When given, an active database override for the name wins

    Returns:
        Subject, HTML and plain text bodies
    """
    values = {"app_name": settings.PROJECT_NAME, **{k: "" if v is None else v for k, v in data.items()}}

    override = None
    if db is not None:
        override = (
            db.query(EmailTemplate)
            .filter(EmailTemplate.name == name, EmailTemplate.is_active.is_(True))
            .first()
        )
    if override is not None:
        return RenderedEmail(
            subject=Template(override.subject).safe_substitute(values),
            html=Template(override.html_body).safe_substitute(values),
            text=Template(override.text_body).safe_substitute(values),
        )

    if name not in DEFAULT_TEMPLATES:
        raise ValueError(f"Unknown template: {name}")
    template = DEFAULT_TEMPLATES[name]
    content = Template(template["html"]).safe_substitute(values)
    return RenderedEmail(
        subject=Template(template["subject"]).safe_substitute(values),
        html=Template(_HTML_WRAPPER).safe_substitute({**values, "content": content}),
        text=Template(template["text"]).safe_substitute(values) + f"\n---\n{values['app_name']}\n",
    )
