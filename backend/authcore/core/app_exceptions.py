"""Application-specific exceptions for consistent error handling."""

from typing import Any, NoReturn

from fastapi import HTTPException, status

# Domain error kinds surfaced verbatim to clients.
INVALID_INPUT = "INVALID_INPUT"
INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
ACCOUNT_DISABLED = "ACCOUNT_DISABLED"
EMAIL_NOT_VERIFIED = "EMAIL_NOT_VERIFIED"
MFA_REQUIRED = "MFA_REQUIRED"
MFA_SETUP_REQUIRED = "MFA_SETUP_REQUIRED"
INVALID_CODE = "INVALID_CODE"
EXPIRED_CODE = "EXPIRED_CODE"
NO_CODE = "NO_CODE"
LOCKED_OUT = "LOCKED_OUT"
RATE_LIMITED = "RATE_LIMITED"
COOLDOWN = "COOLDOWN"
NOT_ALLOWED = "NOT_ALLOWED"
NOT_FOUND = "NOT_FOUND"
CONFLICT = "CONFLICT"
INTERNAL = "INTERNAL"
UNAUTHORIZED = "UNAUTHORIZED"

ERROR_STATUS: dict[str, int] = {
    INVALID_INPUT: status.HTTP_400_BAD_REQUEST,
    INVALID_CREDENTIALS: status.HTTP_401_UNAUTHORIZED,
    ACCOUNT_DISABLED: status.HTTP_403_FORBIDDEN,
    EMAIL_NOT_VERIFIED: status.HTTP_403_FORBIDDEN,
    MFA_REQUIRED: status.HTTP_401_UNAUTHORIZED,
    MFA_SETUP_REQUIRED: status.HTTP_403_FORBIDDEN,
    INVALID_CODE: status.HTTP_400_BAD_REQUEST,
    EXPIRED_CODE: status.HTTP_400_BAD_REQUEST,
    NO_CODE: status.HTTP_400_BAD_REQUEST,
    LOCKED_OUT: status.HTTP_423_LOCKED,
    RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    COOLDOWN: status.HTTP_429_TOO_MANY_REQUESTS,
    NOT_ALLOWED: status.HTTP_403_FORBIDDEN,
    NOT_FOUND: status.HTTP_404_NOT_FOUND,
    CONFLICT: status.HTTP_409_CONFLICT,
    INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
    UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
}


class AppError(HTTPException):
    """Application error with standardized error code."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: dict[str, Any] | list[Any] | None = None,
    ):
        """Initialize application error."""
        super().__init__(
            status_code=status_code,
            detail={
                "code": code,
                "message": message,
                "details": details,
            },
        )
        self.code = code
        self.message = message
        self.details = details


def raise_app_error(
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | list[Any] | None = None,
) -> NoReturn:
    """Raise an application error with standardized format."""
    raise AppError(status_code=status_code, code=code, message=message, details=details)


def raise_domain_error(
    code: str,
    message: str,
    details: dict[str, Any] | list[Any] | None = None,
) -> NoReturn:
    """Raise an application error whose HTTP status is derived from its kind."""
    raise_app_error(ERROR_STATUS.get(code, status.HTTP_400_BAD_REQUEST), code, message, details)
