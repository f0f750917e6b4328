"""FastAPI dependencies and helpers for rate limiting."""

from authcore.core.config import settings
from authcore.core.context import AppContext
from authcore.core.dependencies import Context, Meta
from authcore.core.rate_limit import check_rate_limit, normalize_email_for_key
from authcore.core.security_logging import RequestMeta


def require_rate_limit_login_ip(ctx: Context, meta: Meta) -> None:
    check_rate_limit(
        ctx.redis,
        f"login:ip:{meta.ip_address}",
        settings.RL_LOGIN_IP_LIMIT,
        settings.RL_LOGIN_IP_WINDOW,
        meta,
        event_type="rate_limited_login_ip",
    )


def require_rate_limit_register_ip(ctx: Context, meta: Meta) -> None:
    check_rate_limit(
        ctx.redis,
        f"register:ip:{meta.ip_address}",
        settings.RL_REGISTER_IP_LIMIT,
        settings.RL_REGISTER_IP_WINDOW,
        meta,
        event_type="rate_limited_register_ip",
    )


def require_rate_limit_reset_ip(ctx: Context, meta: Meta) -> None:
    check_rate_limit(
        ctx.redis,
        f"reset:ip:{meta.ip_address}",
        settings.RL_RESET_IP_LIMIT,
        settings.RL_RESET_IP_WINDOW,
        meta,
        event_type="rate_limited_reset_ip",
    )


def require_rate_limit_mfa_verify_ip(ctx: Context, meta: Meta) -> None:
    check_rate_limit(
        ctx.redis,
        f"mfa_verify:ip:{meta.ip_address}",
        settings.RL_MFA_VERIFY_IP_LIMIT,
        settings.RL_MFA_VERIFY_IP_WINDOW,
        meta,
        event_type="rate_limited_mfa_verify_ip",
    )


def require_rate_limit_login_email(ctx: AppContext, meta: RequestMeta, email: str) -> None:
    """Called from the handler once the body is parsed."""
    check_rate_limit(
        ctx.redis,
        f"login:email:{normalize_email_for_key(email)}",
        settings.RL_LOGIN_EMAIL_LIMIT,
        settings.RL_LOGIN_EMAIL_WINDOW,
        meta,
        event_type="rate_limited_login_email",
    )


def require_rate_limit_reset_email(ctx: AppContext, meta: RequestMeta, email: str) -> None:
    check_rate_limit(
        ctx.redis,
        f"reset:email:{normalize_email_for_key(email)}",
        settings.RL_RESET_EMAIL_LIMIT,
        settings.RL_RESET_EMAIL_WINDOW,
        meta,
        event_type="rate_limited_reset_email",
    )
