"""
FastAPI Dependencies - Authentication and service wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

import secrets

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from credpool.config import settings
from credpool.db.session import get_db
from credpool.exceptions import AuthenticationError
from credpool.models.domain import Actor
from credpool.services.api_key import APIKeyService
from credpool.services.legacy_import import LegacyImporter
from credpool.services.pool_manager import CredentialPoolManager

logger = get_logger(__name__)

# Principal id used for requests authenticated with the admin key
ADMIN_USER_ID = "admin"

bearer_scheme = HTTPBearer(auto_error=False)


async def get_actor(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> Actor:
    """
    Resolve the caller from Authorization: Bearer {api_key}.

    The configured admin key yields an admin principal; any other key is
    looked up through APIKeyService and maps to its user.

    Raises:
        HTTPException 401 if the header is missing or the key is unknown
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = credentials.credentials
    if settings.admin_api_key and secrets.compare_digest(
        token.encode("utf-8"), settings.admin_api_key.encode("utf-8")
    ):
        return Actor(user_id=ADMIN_USER_ID, is_admin=True)

    try:
        api_key = await APIKeyService(db).validate_api_key(token)
    except AuthenticationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    return Actor(user_id=api_key.user_id)


async def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    """Allow only the admin principal."""
    if not actor.is_admin:
        logger.warning("admin_access_denied", actor=actor.user_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return actor


def get_pool_manager(request: Request) -> CredentialPoolManager:
    """The manager built during application startup."""
    manager: CredentialPoolManager = request.app.state.pool_manager
    return manager


def get_importer(
    manager: CredentialPoolManager = Depends(get_pool_manager),
) -> LegacyImporter:
    return LegacyImporter(manager)
