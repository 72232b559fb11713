import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from seatlock.config import settings
from seatlock.services.identity import identity_resolver
from seatlock.services.types import Actor


bearer_scheme = HTTPBearer(auto_error=False)


def _token(credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    return credentials.credentials if credentials else None


async def get_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    guest_session: Optional[str] = Header(None, alias="X-Guest-Session"),
) -> Actor:
    actor = identity_resolver.resolve(_token(credentials), guest_session)
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer token or X-Guest-Session header required",
        )
    return actor


async def get_authenticated_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Actor:
    actor = identity_resolver.authenticated(_token(credentials))
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return actor


async def require_service_caller(service_key: Optional[str] = Header(None, alias="X-Service-Key")) -> None:
    expected = settings.SERVICE_API_KEY
    if not expected or not service_key or not hmac.compare_digest(service_key, expected):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Service credentials required")
