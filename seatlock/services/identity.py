import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from seatlock.config import settings
from seatlock.services.types import Actor

logger = logging.getLogger(__name__)

GUEST_SESSION_RE = re.compile(r"^[A-Za-z0-9_-]{8,128}$")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def create_access_token(user_id, expires_in: timedelta = timedelta(minutes=15)) -> str:
    """Mint an access token the way the auth service does (used by tests and tooling)."""
    expire = _now() + expires_in
    payload = {"sub": str(user_id), "type": "access", "exp": int(expire.timestamp())}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_access_token(token: str) -> str:
    payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    if payload.get("type") != "access":
        raise JWTError("Invalid token type")
    sub = payload.get("sub")
    if not sub:
        raise JWTError("Token has no subject")
    return str(sub)


class IdentityResolver:
    """Maps request credentials to the Actor that owns seat locks.

    A valid bearer token always wins. A rejected token falls back to the guest
    session when one is present, matching how checkout treats anonymous shoppers.
    """

    def authenticated(self, token: Optional[str]) -> Optional[Actor]:
        if not token:
            return None
        try:
            return Actor.user(verify_access_token(token))
        except JWTError as exc:
            logger.info("Rejected bearer token: %s", exc)
            return None

    def guest(self, session_token: Optional[str]) -> Optional[Actor]:
        if not session_token or not GUEST_SESSION_RE.match(session_token):
            return None
        return Actor.guest(session_token)

    def resolve(self, token: Optional[str], session_token: Optional[str]) -> Optional[Actor]:
        return self.authenticated(token) or self.guest(session_token)


identity_resolver = IdentityResolver()
