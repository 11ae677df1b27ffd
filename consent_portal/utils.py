# consent_portal/utils.py
from datetime import datetime, timezone

from jose import JWTError, jwt

from consent_portal.config import settings


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def sign_token(payload: dict) -> str:
    """Return a compact JWT for payload. In prod, the identity provider issues these."""
    return jwt.encode(payload, settings.SIGN_KEY, algorithm=settings.JWT_ALG)


def verify_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.SIGN_KEY, algorithms=[settings.JWT_ALG])
    except JWTError:
        return {}
