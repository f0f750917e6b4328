"""Login history and security alerts (new location, new device, brute force)."""

import ipaddress
import re
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.orm import Session

from authcore.core.app_exceptions import NOT_FOUND, raise_domain_error
from authcore.core.logging import get_logger
from authcore.models.security import LoginAttempt, SecurityEvent, SecurityEventType, Severity
from authcore.models.session import AuthSession
from authcore.models.user import User

logger = get_logger(__name__)

LOCAL_NETWORK = "Local Network"
BRUTE_FORCE_THRESHOLD = 5
BRUTE_FORCE_WINDOW_MINUTES = 15
DEFAULT_DEDUPE_MINUTES = 60
BRUTE_FORCE_DEDUPE_MINUTES = 120
HISTORY_LOOKBACK = 100
# Failure reasons counted towards brute-force detection
CREDENTIAL_FAILURES = ("user_not_found", "invalid_password")


@dataclass(frozen=True)
class UserAgentInfo:
    browser: str
    os: str
    device_type: str

    @property
    def fingerprint(self) -> str:
        return device_fingerprint(self.browser, self.os, self.device_type)

    @property
    def device_name(self) -> str:
        if self.browser == "Unknown" or self.os == "Unknown":
            return "Unknown Device"
        return f"{self.browser.split(' ')[0]} on {self.os.split(' ')[0]}"


UNKNOWN_AGENT = UserAgentInfo(browser="Unknown", os="Unknown", device_type="unknown")

# Order matters: Edge and Opera also announce Chrome, Chrome also announces Safari
_BROWSERS = (
    ("Edge", re.compile(r"Edg(?:e|A|iOS)?/(\d+)")),
    ("Opera", re.compile(r"(?:OPR|Opera)/(\d+)")),
    ("Firefox", re.compile(r"(?:Firefox|FxiOS)/(\d+)")),
    ("Chrome", re.compile(r"(?:Chrome|CriOS)/(\d+)")),
    ("Safari", re.compile(r"Version/(\d+).*Safari/")),
)

_OS = (
    ("Windows", re.compile(r"Windows NT (\d+\.\d+)")),
    ("iOS", re.compile(r"(?:iPhone|CPU) OS (\d+(?:_\d+)*)")),
    ("Mac OS", re.compile(r"Mac OS X (\d+(?:[_.]\d+)*)")),
    ("Android", re.compile(r"Android (\d+(?:\.\d+)*)")),
    ("Linux", re.compile(r"Linux()")),
)

_WINDOWS_VERSIONS = {"10.0": "10", "6.3": "8.1", "6.2": "8", "6.1": "7"}


def parse_user_agent(user_agent: str | None) -> UserAgentInfo:
    """Extract browser, OS and device type from a User-Agent header."""
    if not user_agent:
        return UNKNOWN_AGENT

    browser = "Unknown"
    for name, pattern in _BROWSERS:
        match = pattern.search(user_agent)
        if match:
            browser = f"{name} {match.group(1)}"
            break

    os_name = "Unknown"
    for name, pattern in _OS:
        match = pattern.search(user_agent)
        if match:
            version = match.group(1).replace("_", ".")
            if name == "Windows":
                version = _WINDOWS_VERSIONS.get(version, version)
            os_name = f"{name} {version}" if version else name
            break

    if "iPad" in user_agent or "Tablet" in user_agent:
        device_type = "tablet"
    elif "Mobi" in user_agent or "iPhone" in user_agent:
        device_type = "mobile"
    elif "Android" in user_agent:
        device_type = "tablet"
    else:
        device_type = "desktop"

    return UserAgentInfo(browser=browser, os=os_name, device_type=device_type)


def normalize_ip(ip_address: str | None) -> str | None:
    if not ip_address or ip_address == "unknown":
        return None
    if ip_address.startswith("::ffff:"):
        return ip_address[7:]
    return ip_address


def location_from_ip(ip_address: str | None) -> str | None:
    """Coarse location label. Private and loopback ranges map to "Local Network"."""
    ip_address = normalize_ip(ip_address)
    if ip_address is None:
        return None
    if ip_address == "localhost":
        return LOCAL_NETWORK
    try:
        parsed = ipaddress.ip_address(ip_address)
    except ValueError:
        return None
    if parsed.is_private or parsed.is_loopback or parsed.is_link_local:
        return LOCAL_NETWORK
    return None


def device_fingerprint(browser: str | None, os_name: str | None, device_type: str | None) -> str:
    return f"{browser or 'unknown'}|{os_name or 'unknown'}|{device_type or 'unknown'}"


def record_login_attempt(
    db: Session,
    email: str,
    success: bool,
    now: datetime,
    user_id: int | None = None,
    failure_reason: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> LoginAttempt:
    ua = parse_user_agent(user_agent)
    attempt = LoginAttempt(
        user_id=user_id,
        email_attempted=(email or "").strip().lower(),
        success=success,
        failure_reason=failure_reason,
        ip_address=ip_address,
        user_agent=user_agent,
        browser=ua.browser,
        os=ua.os,
        device_type=ua.device_type,
        location=location_from_ip(ip_address),
        attempted_at=now,
    )
    db.add(attempt)
    db.flush()
    return attempt


def count_recent_failures(db: Session, email: str, now: datetime, minutes: int = BRUTE_FORCE_WINDOW_MINUTES) -> int:
    return (
        db.query(func.count(LoginAttempt.id))
        .filter(
            LoginAttempt.email_attempted == (email or "").strip().lower(),
            LoginAttempt.success.is_(False),
            LoginAttempt.failure_reason.in_(CREDENTIAL_FAILURES),
            LoginAttempt.attempted_at > now - timedelta(minutes=minutes),
        )
        .scalar()
        or 0
    )


def detect_brute_force(
    db: Session,
    email: str,
    now: datetime,
    threshold: int = BRUTE_FORCE_THRESHOLD,
    minutes: int = BRUTE_FORCE_WINDOW_MINUTES,
) -> tuple[bool, int]:
    """(detected, failure_count) for the email inside the window."""
    failures = count_recent_failures(db, email, now, minutes)
    return failures >= threshold, failures


def detect_new_location(db: Session, user_id: int, location: str | None) -> bool:
    """True when earlier successful logins exist and none came from this location.

    Must run before the current attempt is recorded. A first login is never new.
    """
    if not location or location == "Unknown":
        return False
    previous = (
        db.query(LoginAttempt.location)
        .filter(LoginAttempt.user_id == user_id, LoginAttempt.success.is_(True))
        .order_by(LoginAttempt.attempted_at.desc())
        .limit(HISTORY_LOOKBACK)
        .all()
    )
    if not previous:
        return False
    return all(row.location != location for row in previous)


def detect_new_device(db: Session, user_id: int, fingerprint: str) -> bool:
    """True when earlier sessions exist and none match the fingerprint.

    Must run before the current session is created.
    """
    previous = (
        db.query(AuthSession.browser, AuthSession.os, AuthSession.device_type)
        .filter(AuthSession.user_id == user_id)
        .order_by(AuthSession.created_at.desc())
        .limit(HISTORY_LOOKBACK)
        .all()
    )
    if not previous:
        return False
    return all(device_fingerprint(row.browser, row.os, row.device_type) != fingerprint for row in previous)


def has_recent_similar_event(db: Session, user_id: int, event_type: str, now: datetime, minutes: int) -> bool:
    return (
        db.query(SecurityEvent.id)
        .filter(
            SecurityEvent.user_id == user_id,
            SecurityEvent.event_type == event_type,
            SecurityEvent.created_at > now - timedelta(minutes=minutes),
        )
        .first()
        is not None
    )


def create_event(
    db: Session,
    user_id: int,
    event_type: str,
    description: str,
    severity: str,
    now: datetime,
    metadata: dict | None = None,
    ip_address: str | None = None,
    dedupe_minutes: int = DEFAULT_DEDUPE_MINUTES,
) -> SecurityEvent | None:
    """Create the event unless one of the same type exists inside the dedupe window."""
    if has_recent_similar_event(db, user_id, event_type, now, dedupe_minutes):
        logger.info(
            "security_event_deduplicated",
            extra={"event": "security_event_deduplicated", "user_id": user_id, "event_type": event_type},
        )
        return None

    event = SecurityEvent(
        user_id=user_id,
        event_type=event_type,
        description=description,
        severity=severity,
        event_metadata=metadata,
        ip_address=ip_address,
        acknowledged=False,
        created_at=now,
    )
    db.add(event)
    db.flush()
    logger.warning(
        "security_event_created",
        extra={"event": "security_event_created", "user_id": user_id, "event_type": event_type, "severity": severity},
    )
    return event


def check_login_security(
    db: Session,
    email: str,
    success: bool,
    now: datetime,
    user: User | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> list[SecurityEvent]:
    """Raise alerts for a login.

    For successes call it before recording the attempt and creating the
    session; for failures call it after recording the attempt.
    """
    events: list[SecurityEvent] = []
    ua = parse_user_agent(user_agent)
    location = location_from_ip(ip_address)

    if success and user is not None:
        if detect_new_location(db, user.id, location):
            event = create_event(
                db,
                user.id,
                SecurityEventType.NEW_LOCATION.value,
                f"Login detected from a new location: {location}",
                Severity.WARNING.value,
                now,
                metadata={"location": location, "ip_address": ip_address, "browser": ua.browser, "os": ua.os},
                ip_address=ip_address,
            )
            if event is not None:
                events.append(event)

        if detect_new_device(db, user.id, ua.fingerprint):
            event = create_event(
                db,
                user.id,
                SecurityEventType.NEW_DEVICE.value,
                f"Login detected from a new device: {ua.browser} on {ua.os}",
                Severity.INFO.value,
                now,
                metadata={
                    "browser": ua.browser,
                    "os": ua.os,
                    "device_type": ua.device_type,
                    "device_fingerprint": ua.fingerprint,
                    "ip_address": ip_address,
                    "location": location,
                },
                ip_address=ip_address,
            )
            if event is not None:
                events.append(event)

    detected, failures = detect_brute_force(db, email, now)
    if detected and user is not None:
        event = create_event(
            db,
            user.id,
            SecurityEventType.BRUTE_FORCE.value,
            f"Multiple failed login attempts detected: {failures} failures in {BRUTE_FORCE_WINDOW_MINUTES} minutes",
            Severity.CRITICAL.value,
            now,
            metadata={
                "email": email,
                "failure_count": failures,
                "time_window_minutes": BRUTE_FORCE_WINDOW_MINUTES,
                "ip_address": ip_address,
            },
            ip_address=ip_address,
            dedupe_minutes=BRUTE_FORCE_DEDUPE_MINUTES,
        )
        if event is not None:
            events.append(event)

    return events


def list_login_history(db: Session, user_id: int, offset: int, limit: int) -> tuple[list[LoginAttempt], int]:
    query = db.query(LoginAttempt).filter(LoginAttempt.user_id == user_id)
    total = query.count()
    items = query.order_by(LoginAttempt.attempted_at.desc()).offset(offset).limit(limit).all()
    return items, total


def login_statistics(db: Session, user_id: int, now: datetime, days: int = 30) -> dict:
    since = now - timedelta(days=days)
    rows = (
        db.query(LoginAttempt)
        .filter(LoginAttempt.user_id == user_id, LoginAttempt.attempted_at > since)
        .all()
    )
    return {
        "days": days,
        "total_attempts": len(rows),
        "successful_logins": sum(1 for row in rows if row.success),
        "failed_logins": sum(1 for row in rows if not row.success),
        "unique_ips": len({row.ip_address for row in rows if row.ip_address}),
        "unique_devices": len({row.device_type for row in rows if row.device_type}),
    }


def list_events(
    db: Session,
    user_id: int,
    offset: int,
    limit: int,
    severity: str | None = None,
    unacknowledged_only: bool = False,
) -> tuple[list[SecurityEvent], int]:
    query = db.query(SecurityEvent).filter(SecurityEvent.user_id == user_id)
    if severity:
        query = query.filter(SecurityEvent.severity == severity)
    if unacknowledged_only:
        query = query.filter(SecurityEvent.acknowledged.is_(False))
    total = query.count()
    items = query.order_by(SecurityEvent.created_at.desc()).offset(offset).limit(limit).all()
    return items, total


def count_unacknowledged(db: Session, user_id: int) -> int:
    return (
        db.query(func.count(SecurityEvent.id))
        .filter(SecurityEvent.user_id == user_id, SecurityEvent.acknowledged.is_(False))
        .scalar()
        or 0
    )


def acknowledge_event(db: Session, user_id: int, event_id: int, now: datetime) -> SecurityEvent:
    event = (
        db.query(SecurityEvent)
        .filter(SecurityEvent.id == event_id, SecurityEvent.user_id == user_id)
        .first()
    )
    if event is None:
        raise_domain_error(NOT_FOUND, "Security event not found")
    if not event.acknowledged:
        event.acknowledged = True
        event.acknowledged_at = now
    return event


def acknowledge_all_events(db: Session, user_id: int, now: datetime) -> int:
    return (
        db.query(SecurityEvent)
        .filter(SecurityEvent.user_id == user_id, SecurityEvent.acknowledged.is_(False))
        .update({"acknowledged": True, "acknowledged_at": now}, synchronize_session="fetch")
    )


def cleanup_login_attempts(db: Session, older_than: datetime) -> int:
    return (
        db.query(LoginAttempt)
        .filter(LoginAttempt.attempted_at < older_than)
        .delete(synchronize_session=False)
    )
