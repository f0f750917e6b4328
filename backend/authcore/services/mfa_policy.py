"""MFA policy resolution.

``resolve`` decides whether a login needs a second factor and which methods
may satisfy it. It only reads the attributes of the objects it is given and
never touches the database, so identical inputs always give identical
decisions.
"""

from dataclasses import dataclass, field
from typing import Any

from authcore.models.mfa_config import MFAMode

METHOD_TOTP = "totp"
METHOD_EMAIL = "email"
METHOD_BOTH = "both"


@dataclass(frozen=True)
class MFAPolicyDecision:
    required: bool
    method: str | None = None
    allowed_methods: tuple[str, ...] = field(default_factory=tuple)
    source: str = "none"  # disabled | role | user_preference | system_mode | none


@dataclass(frozen=True)
class EffectiveOTPSettings:
    """System OTP settings with the role's overrides applied."""

    code_format: str
    code_expiration_minutes: int
    max_failed_attempts: int
    lockout_behavior: str
    lockout_duration_minutes: int
    resend_rate_limit: int
    resend_cooldown_seconds: int


def resolve(
    user: Any,
    role_config: Any | None,
    system_config: Any,
    user_prefs: Any | None,
    has_totp: bool,
    has_email_enabled: bool,
) -> MFAPolicyDecision:
    """Resolve (required, method, allowed_methods) for one login."""
    mode = system_config.mode

    if mode == MFAMode.DISABLED.value:
        return MFAPolicyDecision(required=False, source="disabled")

    if (
        system_config.role_based_mfa_enabled
        and role_config is not None
        and role_config.mfa_required
        and role_config.allowed_methods
    ):
        allowed = tuple(role_config.allowed_methods)
        return MFAPolicyDecision(required=True, method=allowed[0], allowed_methods=allowed, source="role")

    if user_prefs is not None and user_prefs.email_2fa_enabled:
        return MFAPolicyDecision(
            required=True, method=METHOD_EMAIL, allowed_methods=(METHOD_EMAIL,), source="user_preference"
        )

    if mode == MFAMode.TOTP_ONLY.value:
        return MFAPolicyDecision(
            required=True, method=METHOD_TOTP, allowed_methods=(METHOD_TOTP,), source="system_mode"
        )
    if mode == MFAMode.EMAIL_ONLY.value:
        return MFAPolicyDecision(
            required=True, method=METHOD_EMAIL, allowed_methods=(METHOD_EMAIL,), source="system_mode"
        )
    if mode == MFAMode.TOTP_EMAIL_REQUIRED.value:
        return MFAPolicyDecision(
            required=True,
            method=METHOD_BOTH,
            allowed_methods=(METHOD_TOTP, METHOD_EMAIL),
            source="system_mode",
        )
    if mode == MFAMode.TOTP_EMAIL_FALLBACK.value:
        if has_totp:
            # Email becomes usable only after the TOTP failure threshold
            return MFAPolicyDecision(
                required=True,
                method=METHOD_TOTP,
                allowed_methods=(METHOD_TOTP, METHOD_EMAIL),
                source="system_mode",
            )
        return MFAPolicyDecision(
            required=True, method=METHOD_EMAIL, allowed_methods=(METHOD_EMAIL,), source="system_mode"
        )

    return MFAPolicyDecision(required=False)


def required_methods_for(decision: MFAPolicyDecision) -> list[str]:
    """Methods that must all be verified before a session is issued."""
    if not decision.required or decision.method is None:
        return []
    if decision.method == METHOD_BOTH:
        return [METHOD_TOTP, METHOD_EMAIL]
    return [decision.method]


def get_effective_settings(system_config: Any, role_config: Any | None) -> EffectiveOTPSettings:
    """Merge role overrides onto the system OTP settings (role-based MFA only)."""
    use_role = role_config is not None and bool(system_config.role_based_mfa_enabled)

    def pick(name: str) -> Any:
        if use_role:
            value = getattr(role_config, name, None)
            if value is not None:
                return value
        return getattr(system_config, name)

    return EffectiveOTPSettings(
        code_format=system_config.code_format,
        code_expiration_minutes=pick("code_expiration_minutes"),
        max_failed_attempts=pick("max_failed_attempts"),
        lockout_behavior=pick("lockout_behavior"),
        lockout_duration_minutes=pick("lockout_duration_minutes"),
        resend_rate_limit=system_config.resend_rate_limit,
        resend_cooldown_seconds=system_config.resend_cooldown_seconds,
    )
