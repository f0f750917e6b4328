"""Authentication orchestrator: login, MFA challenge, registration, account tokens.

Each public function runs as one unit of work on the caller's session and
commits it. Failures that leave state behind (login attempts, attempt
counters, audit rows) are committed before the error is raised. Email codes
are returned to the caller, which dispatches them after the commit.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import NoReturn

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from authcore.core.app_exceptions import (
    ACCOUNT_DISABLED,
    CONFLICT,
    EXPIRED_CODE,
    INVALID_CODE,
    INVALID_CREDENTIALS,
    INVALID_INPUT,
    LOCKED_OUT,
    MFA_SETUP_REQUIRED,
    NOT_ALLOWED,
    UNAUTHORIZED,
    AppError,
    raise_domain_error,
)
from authcore.core.audit import AuditAction, AuditCategory, write_audit
from authcore.core.config import settings
from authcore.core.context import AppContext
from authcore.core.logging import get_logger
from authcore.core.security import (
    UNUSABLE_PASSWORD_HASH,
    hash_password,
    hash_token,
    verify_password,
    verify_password_timing_safe,
)
from authcore.core.security_logging import RequestMeta, log_security_event
from authcore.core.tokens import generate_hex_token, generate_opaque_token, sha256_hex
from authcore.models.mfa import MFAChallenge, MFAMethod
from authcore.models.mfa_config import LockoutBehavior, MFAConfig, MFAMode
from authcore.models.security import SecurityEvent, SecurityEventType, Severity
from authcore.models.user import User, UserRole
from authcore.services import email_otp, mfa_enforcement, sessions, totp
from authcore.services import security_events as security
from authcore.services import trusted_devices
from authcore.services.email_otp import IssuedCode
from authcore.services.mfa_admin import enable_email_2fa
from authcore.services.mfa_policy import (
    METHOD_BOTH,
    METHOD_EMAIL,
    METHOD_TOTP,
    MFAPolicyDecision,
    get_effective_settings,
    required_methods_for,
    resolve,
)
from authcore.services.mfa_store import get_mfa_config, get_preferences, get_role_config, has_totp_enabled
from authcore.services.sessions import IssuedTokens

logger = get_logger(__name__)

# Challenge modes: every listed method, any one of them, or TOTP with email after repeated failures
CHALLENGE_ALL = "all"
CHALLENGE_ANY = "any"
CHALLENGE_FALLBACK = "fallback"
CHALLENGE_SETUP = "setup"

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 50


@dataclass
class LoginResult:
    user: User
    tokens: IssuedTokens
    alerts: list[SecurityEvent] = field(default_factory=list)
    backup_codes: list[str] | None = None


@dataclass
class MFAChallengeResult:
    challenge_token: str
    mode: str
    allowed_methods: list[str]
    expires_at: datetime
    email_code: IssuedCode | None = None
    email_recipients: list[str] = field(default_factory=list)


@dataclass
class MFAPartialResult:
    challenge_token: str
    verified_methods: list[str]
    remaining_methods: list[str]


@dataclass
class SetupProgress:
    pending_methods: list[str]


@dataclass
class RegistrationResult:
    user: User
    verification_token: str


@dataclass
class PasswordResetRequest:
    user: User
    reset_token: str


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def get_user_by_email(db: Session, email: str) -> User | None:
    return db.query(User).filter(func.lower(User.email) == normalize_email(email)).first()


def _commit_and_raise(db: Session, code: str, message: str, details: dict | None = None) -> NoReturn:
    db.commit()
    raise_domain_error(code, message, details)


def _email_recipients(db: Session, user: User) -> list[str]:
    """Primary address, plus the alternate one once verified."""
    recipients = [user.email]
    prefs = get_preferences(db, user.id)
    if prefs is not None and prefs.alternate_email_verified and prefs.alternate_email:
        if prefs.alternate_email.lower() != user.email.lower():
            recipients.append(prefs.alternate_email)
    return recipients


def _plan_challenge(decision: MFAPolicyDecision, config: MFAConfig, has_totp: bool) -> tuple[str, list[str]] | None:
    """Challenge mode and methods for a required decision, or None when no usable method exists."""
    if decision.method == METHOD_BOTH:
        if not has_totp:
            return None
        return CHALLENGE_ALL, required_methods_for(decision)

    if (
        config.mode == MFAMode.TOTP_EMAIL_FALLBACK.value
        and decision.source == "system_mode"
        and decision.method == METHOD_TOTP
        and has_totp
    ):
        return CHALLENGE_FALLBACK, [METHOD_TOTP]

    usable = [method for method in decision.allowed_methods if method == METHOD_EMAIL or has_totp]
    if not usable:
        return None
    return CHALLENGE_ANY, usable


def _acceptable_methods(challenge: MFAChallenge) -> list[str]:
    """Factor methods that may answer the challenge right now."""
    verified = set(challenge.verified_methods or [])
    if challenge.mode == CHALLENGE_ALL:
        return [method for method in challenge.required_methods if method not in verified]
    if challenge.mode == CHALLENGE_FALLBACK:
        return [METHOD_TOTP, METHOD_EMAIL] if challenge.email_fallback_allowed else [METHOD_TOTP]
    return list(challenge.required_methods)


def _backup_code_target(acceptable: list[str], config: MFAConfig) -> str | None:
    """Which factor a backup code stands in for, if any."""
    if METHOD_TOTP in acceptable and config.backup_codes_enabled_totp:
        return METHOD_TOTP
    if METHOD_EMAIL in acceptable and config.backup_codes_enabled_email:
        return METHOD_EMAIL
    return None


def _create_challenge(
    db: Session,
    user: User,
    mode: str,
    methods: list[str],
    meta: RequestMeta | None,
    remember_me: bool,
    now: datetime,
) -> tuple[str, MFAChallenge]:
    token = generate_opaque_token()
    challenge = MFAChallenge(
        token_hash=sha256_hex(token),
        user_id=user.id,
        mode=mode,
        required_methods=list(methods),
        verified_methods=[],
        totp_failures=0,
        email_fallback_allowed=False,
        remember_me=remember_me,
        device_fingerprint=trusted_devices.fingerprint_for(meta),
        ip_address=meta.ip_address if meta else None,
        user_agent=meta.user_agent if meta else None,
        issued_at=now,
        expires_at=now + timedelta(minutes=settings.MFA_CHALLENGE_EXPIRE_MINUTES),
    )
    db.add(challenge)
    db.flush()
    return token, challenge


def _load_challenge(db: Session, token: str, now: datetime, setup: bool = False) -> MFAChallenge:
    challenge = (
        db.query(MFAChallenge)
        .filter(MFAChallenge.token_hash == sha256_hex(token or ""))
        .with_for_update()
        .first()
    )
    if challenge is None or challenge.consumed_at is not None:
        raise_domain_error(UNAUTHORIZED, "Invalid or expired challenge token")
    if (challenge.mode == CHALLENGE_SETUP) != setup:
        raise_domain_error(UNAUTHORIZED, "Invalid or expired challenge token")
    if challenge.expires_at <= now:
        db.delete(challenge)
        _commit_and_raise(db, UNAUTHORIZED, "Challenge token has expired. Please log in again.")
    return challenge


def _record_failure(
    db: Session,
    email: str,
    reason: str,
    meta: RequestMeta | None,
    now: datetime,
    user: User | None = None,
    config: MFAConfig | None = None,
) -> None:
    security.record_login_attempt(
        db,
        email,
        success=False,
        now=now,
        user_id=user.id if user else None,
        failure_reason=reason,
        ip_address=meta.ip_address if meta else None,
        user_agent=meta.user_agent if meta else None,
    )
    if reason in security.CREDENTIAL_FAILURES:
        security.check_login_security(
            db,
            email,
            success=False,
            now=now,
            user=user,
            ip_address=meta.ip_address if meta else None,
            user_agent=meta.user_agent if meta else None,
        )
    write_audit(
        db,
        AuditAction.USER_LOGIN_FAILED,
        user_id=user.id if user else None,
        target_type="user",
        target_id=user.id if user else None,
        details={"reason": reason},
        meta=meta,
        category=AuditCategory.FAILURE,
        config=config,
    )
    log_security_event(
        event_type="auth_login_failed",
        outcome="deny",
        reason_code=reason,
        user_id=user.id if user else None,
        meta=meta,
    )


def _complete_login(
    db: Session,
    user: User,
    meta: RequestMeta | None,
    remember_me: bool,
    now: datetime,
    config: MFAConfig,
    mfa_method: str | None = None,
) -> LoginResult:
    """Alerts, login attempt, session, audit. Does not commit."""
    ip_address = meta.ip_address if meta else None
    user_agent = meta.user_agent if meta else None

    alerts = security.check_login_security(
        db, user.email, success=True, now=now, user=user, ip_address=ip_address, user_agent=user_agent
    )
    security.record_login_attempt(
        db, user.email, success=True, now=now, user_id=user.id, ip_address=ip_address, user_agent=user_agent
    )
    tokens = sessions.create_session(
        db,
        user,
        meta,
        remember_me,
        now,
        device_fingerprint=trusted_devices.fingerprint_for(meta),
    )
    user.last_login_at = now
    write_audit(
        db,
        AuditAction.USER_LOGIN,
        user_id=user.id,
        target_type="session",
        target_id=tokens.session_id,
        details={"mfa_method": mfa_method, "remember_me": remember_me},
        meta=meta,
        category=AuditCategory.INFO,
        config=config,
    )
    log_security_event(
        event_type="auth_login_success",
        outcome="allow",
        user_id=user.id,
        meta=meta,
        mfa_method=mfa_method,
    )
    return LoginResult(user=user, tokens=tokens, alerts=alerts)


def _require_setup(
    db: Session,
    user: User,
    pending: list[str],
    reason: str,
    meta: RequestMeta | None,
    remember_me: bool,
    now: datetime,
    config: MFAConfig,
) -> NoReturn:
    _record_failure(db, user.email, "mfa_setup_required", meta, now, user=user, config=config)
    token, challenge = _create_challenge(db, user, CHALLENGE_SETUP, pending, meta, remember_me, now)
    _commit_and_raise(
        db,
        MFA_SETUP_REQUIRED,
        "MFA setup is required before you can sign in",
        {
            "setup_token": token,
            "pending_methods": pending,
            "expires_at": challenge.expires_at.isoformat(),
            "reason": reason,
        },
    )


def login(
    db: Session,
    ctx: AppContext,
    email: str,
    password: str,
    meta: RequestMeta | None,
    remember_me: bool,
    now: datetime,
) -> LoginResult | MFAChallengeResult:
    """Password step. Returns a session, or a challenge when a second factor is needed."""
    config = get_mfa_config(db)
    user = get_user_by_email(db, email)

    if user is None:
        verify_password_timing_safe(password, None)
        _record_failure(db, email, "user_not_found", meta, now, config=config)
        _commit_and_raise(db, INVALID_CREDENTIALS, "Invalid email or password")

    if not user.can_authenticate:
        _record_failure(db, email, "account_disabled", meta, now, user=user, config=config)
        _commit_and_raise(db, ACCOUNT_DISABLED, "Account is disabled")

    if not verify_password_timing_safe(password, user.password_hash):
        _record_failure(db, email, "invalid_password", meta, now, user=user, config=config)
        _commit_and_raise(db, INVALID_CREDENTIALS, "Invalid email or password")

    status = mfa_enforcement.get_status(db, user, now)
    if status.setup_required:
        _require_setup(db, user, status.pending_methods, status.reason, meta, remember_me, now, config)

    prefs = get_preferences(db, user.id)
    has_totp = has_totp_enabled(db, user.id)
    decision = resolve(
        user,
        get_role_config(db, user.role),
        config,
        prefs,
        has_totp=has_totp,
        has_email_enabled=bool(prefs and prefs.email_2fa_enabled),
    )

    if not decision.required:
        result = _complete_login(db, user, meta, remember_me, now, config)
        db.commit()
        return result

    if trusted_devices.is_trusted(db, config, user.id, trusted_devices.fingerprint_for(meta), now):
        result = _complete_login(db, user, meta, remember_me, now, config, mfa_method="trusted_device")
        db.commit()
        return result

    plan = _plan_challenge(decision, config, has_totp)
    if plan is None:
        if status.grace_period_active:
            result = _complete_login(db, user, meta, remember_me, now, config, mfa_method="grace_period")
            db.commit()
            return result
        _require_setup(db, user, [METHOD_TOTP], "TOTP is required but not configured", meta, remember_me, now, config)

    mode, methods = plan
    token, challenge = _create_challenge(db, user, mode, methods, meta, remember_me, now)
    security.record_login_attempt(
        db,
        user.email,
        success=False,
        now=now,
        user_id=user.id,
        failure_reason="mfa_required",
        ip_address=meta.ip_address if meta else None,
        user_agent=meta.user_agent if meta else None,
    )

    issued: IssuedCode | None = None
    if mode == CHALLENGE_ALL or methods[0] == METHOD_EMAIL:
        otp_settings = get_effective_settings(config, get_role_config(db, user.role))
        if email_otp.get_active_code(db, user.id, now) is None:
            try:
                issued = email_otp.issue_code(db, user.id, otp_settings, now)
            except AppError:
                db.commit()
                raise
            write_audit(
                db,
                AuditAction.MFA_CODE_SENT,
                user_id=user.id,
                target_type="user",
                target_id=user.id,
                details={"challenge_mode": mode},
                meta=meta,
                category=AuditCategory.INFO,
                config=config,
            )

    db.commit()
    logger.info(
        "mfa_challenge_issued",
        extra={"event": "mfa_challenge_issued", "user_id": user.id, "mode": mode, "methods": methods},
    )
    return MFAChallengeResult(
        challenge_token=token,
        mode=mode,
        allowed_methods=methods,
        expires_at=challenge.expires_at,
        email_code=issued,
        email_recipients=_email_recipients(db, user) if issued else [],
    )


def verify_mfa(
    db: Session,
    ctx: AppContext,
    challenge_token: str,
    method: str,
    code: str,
    trust_device: bool,
    meta: RequestMeta | None,
    now: datetime,
) -> LoginResult | MFAPartialResult:
    """Second-factor step for an issued challenge."""
    challenge = _load_challenge(db, challenge_token, now)
    user = db.get(User, challenge.user_id)
    if user is None or not user.can_authenticate:
        db.delete(challenge)
        _commit_and_raise(db, ACCOUNT_DISABLED, "Account is disabled")

    config = get_mfa_config(db)
    otp_settings = get_effective_settings(config, get_role_config(db, user.role))
    acceptable = _acceptable_methods(challenge)

    satisfied: str | None = None
    if method == MFAMethod.BACKUP_CODE:
        target = _backup_code_target(acceptable, config)
        if target is None:
            raise_domain_error(NOT_ALLOWED, "Backup codes are not allowed for this challenge")
        result = totp.consume_backup_code(db, user.id, code, now)
        if result.success:
            satisfied = target
        else:
            _audit_factor_failure(db, user, method, meta, config)
            _commit_and_raise(db, INVALID_CODE, "Invalid backup code")
    elif method not in acceptable:
        raise_domain_error(
            NOT_ALLOWED, f"Method '{method}' is not allowed for this challenge", {"allowed_methods": acceptable}
        )
    elif method == METHOD_TOTP:
        if totp.verify_totp(db, ctx.cipher, user.id, code, now):
            satisfied = METHOD_TOTP
        else:
            _fail_totp(db, challenge, user, meta, config)
    elif method == METHOD_EMAIL:
        verification = email_otp.verify_code(db, user.id, code, otp_settings, now)
        if verification.success:
            satisfied = METHOD_EMAIL
        else:
            _fail_email(db, challenge, user, verification, meta, config, now)
    else:
        raise_domain_error(INVALID_INPUT, f"Unknown MFA method: {method}")

    verified = list(challenge.verified_methods or [])
    if satisfied not in verified:
        verified.append(satisfied)
    challenge.verified_methods = verified
    write_audit(
        db,
        AuditAction.MFA_CODE_VERIFIED,
        user_id=user.id,
        target_type="user",
        target_id=user.id,
        details={"method": method},
        meta=meta,
        category=AuditCategory.INFO,
        config=config,
    )

    if challenge.mode == CHALLENGE_ALL:
        remaining = [m for m in challenge.required_methods if m not in verified]
        if remaining:
            db.commit()
            return MFAPartialResult(
                challenge_token=challenge_token, verified_methods=verified, remaining_methods=remaining
            )

    remember_me = bool(challenge.remember_me)
    db.delete(challenge)

    if trust_device:
        device = trusted_devices.trust_device(db, config, user.id, meta, now)
        if device is not None:
            write_audit(
                db,
                AuditAction.DEVICE_TRUSTED,
                user_id=user.id,
                target_type="trusted_device",
                target_id=device.id,
                details={"trusted_until": device.trusted_until.isoformat()},
                meta=meta,
                category=AuditCategory.STATE_CHANGE,
                config=config,
            )

    result = _complete_login(db, user, meta, remember_me, now, config, mfa_method=method)
    db.commit()
    return result


def _audit_factor_failure(db: Session, user: User, method: str, meta: RequestMeta | None, config: MFAConfig) -> None:
    write_audit(
        db,
        AuditAction.MFA_CODE_FAILED,
        user_id=user.id,
        target_type="user",
        target_id=user.id,
        details={"method": method},
        meta=meta,
        category=AuditCategory.FAILURE,
        config=config,
    )
    log_security_event(
        event_type="mfa_verify_failed",
        outcome="deny",
        reason_code=INVALID_CODE,
        user_id=user.id,
        meta=meta,
        method=method,
    )


def _fail_totp(
    db: Session, challenge: MFAChallenge, user: User, meta: RequestMeta | None, config: MFAConfig
) -> NoReturn:
    challenge.totp_failures = (challenge.totp_failures or 0) + 1
    _audit_factor_failure(db, user, METHOD_TOTP, meta, config)

    if (
        challenge.mode == CHALLENGE_FALLBACK
        and not challenge.email_fallback_allowed
        and challenge.totp_failures >= config.fallback_totp_attempts_threshold
    ):
        challenge.email_fallback_allowed = True
        write_audit(
            db,
            AuditAction.MFA_FALLBACK_ENABLED,
            user_id=user.id,
            target_type="user",
            target_id=user.id,
            details={"totp_failures": challenge.totp_failures},
            meta=meta,
            category=AuditCategory.STATE_CHANGE,
            config=config,
        )

    _commit_and_raise(
        db,
        INVALID_CODE,
        "Invalid TOTP code",
        {
            "totp_failures": challenge.totp_failures,
            "email_fallback_allowed": bool(challenge.email_fallback_allowed),
        },
    )


def _fail_email(
    db: Session,
    challenge: MFAChallenge,
    user: User,
    verification: email_otp.CodeVerification,
    meta: RequestMeta | None,
    config: MFAConfig,
    now: datetime,
) -> NoReturn:
    if verification.error_code == LOCKED_OUT and verification.lockout_behavior is not None:
        # Lock was set by this attempt
        write_audit(
            db,
            AuditAction.MFA_LOCKOUT,
            user_id=user.id,
            target_type="user",
            target_id=user.id,
            details={"locked_until": verification.locked_until.isoformat(), "behavior": verification.lockout_behavior},
            meta=meta,
            category=AuditCategory.FAILURE,
            config=config,
        )
        security.create_event(
            db,
            user.id,
            SecurityEventType.MFA_LOCKOUT.value,
            "Email verification locked after too many failed attempts",
            Severity.WARNING.value,
            now,
            metadata={"locked_until": verification.locked_until.isoformat()},
            ip_address=meta.ip_address if meta else None,
        )
        if verification.lockout_behavior == LockoutBehavior.REQUIRE_PASSWORD.value:
            db.delete(challenge)
    elif verification.error_code == INVALID_CODE:
        _audit_factor_failure(db, user, METHOD_EMAIL, meta, config)

    messages = {
        INVALID_CODE: "Invalid verification code",
        EXPIRED_CODE: "Verification code has expired. Request a new one.",
        LOCKED_OUT: "Too many failed attempts. Email verification is locked.",
    }
    _commit_and_raise(
        db,
        verification.error_code,
        messages.get(verification.error_code, "No active verification code. Request a new one."),
        verification.details or None,
    )


def resend_challenge_code(
    db: Session, ctx: AppContext, challenge_token: str, now: datetime
) -> MFAChallengeResult:
    """Send a fresh email code for a pending challenge."""
    challenge = _load_challenge(db, challenge_token, now)
    if METHOD_EMAIL not in _acceptable_methods(challenge):
        raise_domain_error(NOT_ALLOWED, "Email verification is not available for this challenge")

    user = db.get(User, challenge.user_id)
    if user is None or not user.can_authenticate:
        raise_domain_error(ACCOUNT_DISABLED, "Account is disabled")

    config = get_mfa_config(db)
    otp_settings = get_effective_settings(config, get_role_config(db, user.role))
    issued = email_otp.resend_code(db, user.id, otp_settings, now)

    write_audit(
        db,
        AuditAction.MFA_CODE_SENT,
        user_id=user.id,
        target_type="user",
        target_id=user.id,
        details={"resend_count": issued.resend_count},
        category=AuditCategory.INFO,
        config=config,
    )
    db.commit()
    return MFAChallengeResult(
        challenge_token=challenge_token,
        mode=challenge.mode,
        allowed_methods=_acceptable_methods(challenge),
        expires_at=challenge.expires_at,
        email_code=issued,
        email_recipients=_email_recipients(db, user),
    )


def begin_setup(db: Session, ctx: AppContext, setup_token: str, now: datetime) -> totp.TOTPSetup:
    """Start TOTP enrolment for a user holding a setup token."""
    challenge = _load_challenge(db, setup_token, now, setup=True)
    user = db.get(User, challenge.user_id)
    if user is None or not user.can_authenticate:
        raise_domain_error(ACCOUNT_DISABLED, "Account is disabled")
    setup = totp.start_setup(db, ctx.cipher, user, now)
    db.commit()
    return setup


def complete_setup(
    db: Session,
    ctx: AppContext,
    setup_token: str,
    method: str,
    code: str | None,
    meta: RequestMeta | None,
    now: datetime,
) -> LoginResult | SetupProgress:
    """Finish enrolling one method; issues a session once the user is compliant."""
    challenge = _load_challenge(db, setup_token, now, setup=True)
    user = db.get(User, challenge.user_id)
    if user is None or not user.can_authenticate:
        raise_domain_error(ACCOUNT_DISABLED, "Account is disabled")
    config = get_mfa_config(db)

    backup_codes: list[str] | None = None
    if method == METHOD_TOTP:
        backup_codes = totp.confirm_setup(
            db, ctx.cipher, user, code or "", now, with_backup_codes=config.backup_codes_enabled_totp
        )
    elif method == METHOD_EMAIL:
        enable_email_2fa(db, user, config, now)
    else:
        raise_domain_error(INVALID_INPUT, f"Unknown MFA method: {method}")

    write_audit(
        db,
        AuditAction.MFA_METHOD_ENABLED,
        user_id=user.id,
        target_type="user",
        target_id=user.id,
        details={"method": method, "via": "setup_token"},
        meta=meta,
        category=AuditCategory.STATE_CHANGE,
        config=config,
    )

    configuration = mfa_enforcement.check_user_configuration(db, user, config.mode)
    if not configuration.is_fully_configured:
        challenge.required_methods = configuration.pending_methods
        db.commit()
        return SetupProgress(pending_methods=configuration.pending_methods)

    mfa_enforcement.mark_completed(user, now)
    remember_me = bool(challenge.remember_me)
    db.delete(challenge)
    result = _complete_login(db, user, meta, remember_me, now, config, mfa_method=method)
    result.backup_codes = backup_codes or None
    db.commit()
    return result


def validate_username(username: str) -> str:
    username = (username or "").strip()
    if not (USERNAME_MIN_LENGTH <= len(username) <= USERNAME_MAX_LENGTH):
        raise_domain_error(
            INVALID_INPUT,
            f"Username must be between {USERNAME_MIN_LENGTH} and {USERNAME_MAX_LENGTH} characters",
        )
    if not all(ch.isalnum() or ch in "._-" for ch in username):
        raise_domain_error(INVALID_INPUT, "Username may only contain letters, digits, '.', '_' and '-'")
    return username


def ensure_unique_identity(db: Session, username: str, email: str, exclude_user_id: int | None = None) -> None:
    """CONFLICT when the email or username is taken (case-insensitive)."""
    query = db.query(User).filter(
        (func.lower(User.email) == email.lower()) | (func.lower(User.username) == username.lower())
    )
    if exclude_user_id is not None:
        query = query.filter(User.id != exclude_user_id)
    existing = query.first()
    if existing is None:
        return
    if existing.email.lower() == email.lower():
        raise_domain_error(CONFLICT, "Email already registered", {"field": "email"})
    raise_domain_error(CONFLICT, "Username already taken", {"field": "username"})


def new_user(
    db: Session,
    username: str,
    email: str,
    password: str | None,
    now: datetime,
    role: str = UserRole.USER.value,
    email_verified: bool = False,
) -> User:
    """Validate and add a user row (no commit). Applies the new-user setup requirement."""
    username = validate_username(username)
    email = normalize_email(email)
    ensure_unique_identity(db, username, email)

    user = User(
        username=username,
        email=email,
        password_hash=hash_password(password) if password is not None else UNUSABLE_PASSWORD_HASH,
        role=role,
        is_active=True,
        email_verified=email_verified,
        email_verified_at=now if email_verified else None,
        created_at=now,
        updated_at=now,
    )
    db.add(user)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise_domain_error(CONFLICT, "Email or username already registered")

    config = get_mfa_config(db)
    if (
        config.enforcement_enabled
        and config.mode != MFAMode.DISABLED.value
        and not mfa_enforcement.is_role_exempt(db, role)
    ):
        mfa_enforcement.mark_requires_setup(user)
    return user


def register(
    db: Session, username: str, email: str, password: str, now: datetime, meta: RequestMeta | None = None
) -> RegistrationResult:
    user = new_user(db, username, email, password, now)

    token = generate_hex_token()
    user.email_verification_token = hash_token(token)
    user.email_verification_expires = now + timedelta(hours=settings.EMAIL_VERIFICATION_EXPIRE_HOURS)

    write_audit(
        db,
        AuditAction.USER_REGISTER,
        user_id=user.id,
        target_type="user",
        target_id=user.id,
        details={"username": user.username},
        meta=meta,
        category=AuditCategory.STATE_CHANGE,
    )
    db.commit()
    log_security_event(event_type="auth_register", outcome="allow", user_id=user.id)
    return RegistrationResult(user=user, verification_token=token)


def verify_email(db: Session, token: str, now: datetime) -> User:
    user = db.query(User).filter(User.email_verification_token == hash_token(token or "")).first()
    if user is None:
        raise_domain_error(INVALID_CODE, "Invalid verification token")
    if user.email_verification_expires is None or user.email_verification_expires < now:
        raise_domain_error(EXPIRED_CODE, "Verification token has expired")

    user.email_verified = True
    user.email_verified_at = now
    user.email_verification_token = None
    user.email_verification_expires = None
    write_audit(
        db,
        AuditAction.EMAIL_VERIFIED,
        user_id=user.id,
        target_type="user",
        target_id=user.id,
        category=AuditCategory.STATE_CHANGE,
    )
    db.commit()
    return user


def request_password_reset(db: Session, email: str, now: datetime) -> PasswordResetRequest | None:
    """Issue a reset token. Returns None for unknown or disabled accounts; callers answer the same way."""
    user = get_user_by_email(db, email)
    if user is None or not user.can_authenticate:
        log_security_event(event_type="auth_password_reset_request", outcome="allow", reason_code="unknown")
        return None

    token = generate_hex_token()
    user.password_reset_token = hash_token(token)
    user.password_reset_expires = now + timedelta(minutes=settings.PASSWORD_RESET_EXPIRE_MINUTES)
    db.commit()
    log_security_event(event_type="auth_password_reset_request", outcome="allow", user_id=user.id)
    return PasswordResetRequest(user=user, reset_token=token)


def _after_password_change(
    db: Session, user: User, via: str, meta: RequestMeta | None, now: datetime, keep_session_id: int | None = None
) -> None:
    revoked = sessions.revoke_all_user_sessions(
        db, user.id, now, reason="password_changed", except_session_id=keep_session_id
    )
    write_audit(
        db,
        AuditAction.PASSWORD_CHANGED,
        user_id=user.id,
        target_type="user",
        target_id=user.id,
        details={"via": via, "sessions_revoked": revoked},
        meta=meta,
        category=AuditCategory.STATE_CHANGE,
    )
    security.create_event(
        db,
        user.id,
        SecurityEventType.PASSWORD_CHANGED.value,
        "Your password was changed",
        Severity.INFO.value,
        now,
        metadata={"via": via},
        ip_address=meta.ip_address if meta else None,
        dedupe_minutes=0,
    )


def reset_password(
    db: Session, token: str, new_password: str, now: datetime, meta: RequestMeta | None = None
) -> User:
    user = db.query(User).filter(User.password_reset_token == hash_token(token or "")).first()
    if user is None or not user.can_authenticate:
        raise_domain_error(INVALID_CODE, "Invalid or expired reset token")
    if user.password_reset_expires is None or user.password_reset_expires < now:
        raise_domain_error(EXPIRED_CODE, "Reset token has expired")

    user.password_hash = hash_password(new_password)
    user.password_reset_token = None
    user.password_reset_expires = None
    # Device trust does not survive a reset
    trusted_devices.revoke_all_devices(db, user.id)
    _after_password_change(db, user, "reset", meta, now)
    db.commit()
    return user


def change_password(
    db: Session,
    user: User,
    current_password: str,
    new_password: str,
    now: datetime,
    meta: RequestMeta | None = None,
    current_session_id: int | None = None,
) -> None:
    """Change password and revoke every other session."""
    if not verify_password(current_password, user.password_hash):
        raise_domain_error(INVALID_CREDENTIALS, "Current password is incorrect")
    if current_password == new_password:
        raise_domain_error(INVALID_INPUT, "New password must differ from the current password")

    user.password_hash = hash_password(new_password)
    _after_password_change(db, user, "change", meta, now, keep_session_id=current_session_id)
    db.commit()


def logout(db: Session, refresh_token: str, now: datetime, meta: RequestMeta | None = None) -> None:
    session_row = sessions.revoke_by_refresh_token(db, refresh_token, now)
    if session_row is not None:
        write_audit(
            db,
            AuditAction.USER_LOGOUT,
            user_id=session_row.user_id,
            target_type="session",
            target_id=session_row.id,
            meta=meta,
            category=AuditCategory.INFO,
        )
    db.commit()


def logout_all(db: Session, user: User, now: datetime, meta: RequestMeta | None = None) -> int:
    revoked = sessions.revoke_all_user_sessions(db, user.id, now, reason="logout_all")
    write_audit(
        db,
        AuditAction.SESSIONS_REVOKED_ALL,
        user_id=user.id,
        target_type="user",
        target_id=user.id,
        details={"count": revoked},
        meta=meta,
        category=AuditCategory.STATE_CHANGE,
    )
    db.commit()
    return revoked


def cleanup_expired_challenges(db: Session, now: datetime) -> int:
    return db.query(MFAChallenge).filter(MFAChallenge.expires_at <= now).delete(synchronize_session=False)
