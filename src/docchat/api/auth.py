"""Identity resolution from bearer JWTs."""

from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel
from structlog import get_logger

from ..config import Settings, get_settings
from ..domain.errors import Unauthenticated
from ..domain.models import User
from ..repositories.base import Repository
from .dependencies import get_repository

logger = get_logger()

security = HTTPBearer(auto_error=False)


class Identity(BaseModel):
    """Caller identity extracted from a verified token."""

    subject: str
    email: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None


def decode_token(token: str, settings: Settings) -> Identity:
    """Verify ``token`` and read the identity claims; raises ``Unauthenticated``."""
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        raise Unauthenticated(f"Invalid token: {e}") from e

    subject = payload.get("sub")
    if not subject:
        raise Unauthenticated("Token has no subject")
    return Identity(
        subject=subject,
        email=payload.get("email") or payload.get("email_address"),
        name=payload.get("name"),
        picture=payload.get("picture") or payload.get("image_url"),
    )


async def get_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    settings: Settings = Depends(get_settings),
) -> Identity:
    """Resolve the caller, rejecting anonymous requests."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return decode_token(credentials.credentials, settings)
    except Unauthenticated as e:
        logger.warning("authentication_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_user(
    identity: Identity = Depends(get_identity),
    repository: Repository = Depends(get_repository),
) -> User:
    """The stored user for the caller, created on first request."""
    return await repository.get_or_create_user(
        subject=identity.subject,
        email=identity.email or f"{identity.subject}@example.com",
        name=identity.name,
        picture=identity.picture,
    )
