import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from app.core.config import settings
from app.core.db import get_db
from app.modules.auth.models import User
from app.modules.auth.schemas import TokenData
from app.modules.compliance.policy import Actor, is_admin
from app.modules.compliance.service import KycService, get_kyc_service

logger = logging.getLogger(__name__)

# Tokens come from the external auth service; tokenUrl only feeds the OpenAPI docs
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.API_V1_STR}/auth/login", auto_error=False)

async def get_current_user(
    token: str | None = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db)
) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if not token:
        raise credentials_exception

    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise credentials_exception
        token_data = TokenData(id=user_id)
    except JWTError:
        raise credentials_exception

    import uuid
    try:
        u_id = uuid.UUID(token_data.id)
    except ValueError:
        raise credentials_exception

    result = await db.execute(select(User).where(User.id == u_id))
    user = result.scalars().first()

    if user is None:
        raise credentials_exception
    return user

async def get_current_active_user(
    current_user: User = Depends(get_current_user)
) -> User:
    if not current_user.is_active:
        raise HTTPException(status_code=400, detail="Inactive user")
    return current_user

async def get_current_actor(
    current_user: User = Depends(get_current_active_user)
) -> Actor:
    return Actor(id=current_user.id, role=current_user.role)

async def require_admin(
    actor: Actor = Depends(get_current_actor)
) -> Actor:
    if not is_admin(actor):
        raise HTTPException(status_code=403, detail="Admin only")
    return actor

async def require_kyc_verified(
    actor: Actor = Depends(get_current_actor),
    kyc: KycService = Depends(get_kyc_service),
) -> Actor:
    if not await kyc.is_kyc_verified(actor.id):
        logger.warning(f"[KYC] Blocked user {actor.id}: verification required")
        raise HTTPException(status_code=403, detail="KYC verification required")
    return actor
