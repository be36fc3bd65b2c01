import uuid
from dataclasses import dataclass

import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.auth.service import decode_access_token
from app.database import get_db
from app.models.enums import UserRole
from app.models.provider_profile import ProviderProfile
from app.models.user import User

logger = structlog.get_logger()
security = HTTPBearer()


@dataclass
class Actor:
    """The authenticated caller, resolved once per request.

    ``provider`` is set for provider accounts that have a profile. Handlers
    check ownership through ``is_customer_of`` / ``is_provider_of`` instead of
    comparing ids inline.
    """

    user: User
    role: UserRole
    provider: ProviderProfile | None = None

    @property
    def user_id(self) -> uuid.UUID:
        return self.user.id

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def is_customer_of(self, obj) -> bool:
        return getattr(obj, "customer_id", None) == self.user.id

    def is_provider_of(self, obj) -> bool:
        if self.provider is None:
            return False
        provider_id = getattr(obj, "provider_id", None)
        if provider_id is None:
            provider_id = getattr(obj, "assigned_provider_id", None)
        return provider_id == self.provider.id


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Validate the bearer token and return the authenticated user."""
    payload = decode_access_token(credentials.credentials)
    if payload is None or not payload.get("jti"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
        )

    try:
        user_id = uuid.UUID(payload["sub"])
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
        )

    result = await db.execute(
        select(User).where(User.id == user_id).options(selectinload(User.provider_profile))
    )
    user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )

    # Block deactivated users at the auth level
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account has been deactivated. Contact support for more information.",
        )
    return user


async def get_actor(user: User = Depends(get_current_user)) -> Actor:
    return Actor(user=user, role=UserRole(user.role), provider=user.provider_profile)


async def require_customer(actor: Actor = Depends(get_actor)) -> Actor:
    if actor.role != UserRole.CUSTOMER:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only customers can access this resource",
        )
    return actor


async def require_provider(actor: Actor = Depends(get_actor)) -> Actor:
    """Provider with a profile that is allowed to transact."""
    if actor.role != UserRole.PROVIDER:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only providers can access this resource",
        )
    if actor.provider is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Provider profile not found",
        )
    if actor.provider.is_suspended:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account suspended. Contact support for more information.",
        )
    return actor


async def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    if not actor.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return actor
