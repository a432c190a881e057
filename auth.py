import re

import httpx

from errors import AuthError

MECHANIC_EMAIL_DOMAIN = "mech.auto"

# token failures reported by the auth backend
AUTH_FAILURE_MESSAGES = (
    "invalid refresh token",
    "refresh token not found",
    "jwt expired",
    "invalid jwt",
    "user not found",
)


def login_identifier(value: str) -> str:
    """Mechanics sign in with a phone number that maps onto a synthetic e-mail."""
    value = (value or "").strip()
    if not value:
        raise AuthError("email or phone is required")
    if "@" in value:
        return value
    phone = re.sub(r"\D", "", value)
    if not phone:
        raise AuthError(f"invalid phone number {value!r}")
    return f"{phone}@{MECHANIC_EMAIL_DOMAIN}"


def is_auth_failure(exc: BaseException) -> bool:
    """True when an error means the session is no longer valid and must be signed out."""
    if isinstance(exc, AuthError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in (401, 403)
    message = str(exc).lower()
    return any(m in message for m in AUTH_FAILURE_MESSAGES)
