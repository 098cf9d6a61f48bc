from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from app.config import get_settings
from app.schemas.schemas import Actor, ActorRole

settings = get_settings()
bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(user_id: str, role: str = ActorRole.rider.value, expires_minutes: int | None = None) -> str:
    """Sign a JWT carrying the user id (`sub`) and role."""
    expires = datetime.now(timezone.utc) + timedelta(
        minutes=expires_minutes or settings.access_token_expire_minutes
    )
    return jwt.encode(
        {"sub": user_id, "role": role, "exp": expires},
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> dict:
    """Decode and validate the JWT Bearer token."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


async def get_current_actor(token_data: dict = Depends(get_current_user)) -> Actor:
    """Caller identity; tokens without a role claim belong to riders."""
    user_id = token_data.get("sub")
    role = token_data.get("role", ActorRole.rider.value)
    if not user_id or role not in (ActorRole.rider.value, ActorRole.driver.value):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return Actor(id=user_id, role=ActorRole(role))


async def get_current_rider(actor: Actor = Depends(get_current_actor)) -> Actor:
    if actor.role != ActorRole.rider:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Rider token required")
    return actor


async def get_current_driver(actor: Actor = Depends(get_current_actor)) -> Actor:
    if actor.role != ActorRole.driver:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Driver token required")
    return actor
