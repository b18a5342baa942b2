"""
Common Dependencies
===================

Shared dependencies used across the application.
"""

import logging
from functools import lru_cache
from typing import Annotated, Optional
import uuid

from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.config import settings
from entitlement_engine.core.errors import AuthenticationError, ErrorCodes
from entitlement_engine.core.security import decode_token, verify_internal_api_key
from entitlement_engine.db.session import get_db
from entitlement_engine.services.command_gateway import CommandGateway
from entitlement_engine.services.pipeline import EntitlementPipeline

logger = logging.getLogger(__name__)

# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]

# Security scheme for JWT authentication
security = HTTPBearer(auto_error=False)

# Development test user ID (consistent UUID for testing)
DEV_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")


# =============================================================================
# User resolution
# =============================================================================

def _user_id_from_token(credentials: HTTPAuthorizationCredentials) -> Optional[uuid.UUID]:
    payload = decode_token(credentials.credentials)
    if payload is None or payload.get("type", "access") != "access":
        return None

    user_id_str = payload.get("sub")
    if user_id_str is None:
        return None

    try:
        return uuid.UUID(str(user_id_str))
    except ValueError:
        return None


async def get_current_user_id(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> uuid.UUID:
    """
    Get the authenticated user's id from the bearer token.

    Raises 401 if not authenticated or the token is invalid.
    In development with DEV_AUTH_DISABLED=True, returns the dev user.
    """
    if settings.auth_disabled:
        user_id = DEV_USER_ID
    elif credentials is None:
        raise AuthenticationError(
            code=ErrorCodes.UNAUTHORIZED,
            message="Not authenticated",
        )
    else:
        user_id = _user_id_from_token(credentials)
        if user_id is None:
            raise AuthenticationError(
                code=ErrorCodes.AUTH_INVALID_TOKEN,
                message="Invalid or expired token",
            )

    # Picked up by the New Relic middleware
    request.state.user_id = user_id
    return user_id


async def require_internal_api_key(
    x_internal_api_key: Annotated[Optional[str], Header(alias="X-Internal-API-Key")] = None,
) -> None:
    """Gate for service-to-service endpoints."""
    if not verify_internal_api_key(x_internal_api_key):
        logger.warning("Rejected internal request with missing or invalid API key")
        raise AuthenticationError(
            code=ErrorCodes.UNAUTHORIZED,
            message="Invalid internal API key",
        )


# =============================================================================
# Services
# =============================================================================

@lru_cache
def get_pipeline() -> EntitlementPipeline:
    """Process-wide pipeline bound to the application session factory."""
    return EntitlementPipeline()


def get_command_gateway(
    pipeline: Annotated[EntitlementPipeline, Depends(get_pipeline)],
) -> CommandGateway:
    return CommandGateway(pipeline)


# Type aliases for route signatures
CurrentUserId = Annotated[uuid.UUID, Depends(get_current_user_id)]
Pipeline = Annotated[EntitlementPipeline, Depends(get_pipeline)]
Gateway = Annotated[CommandGateway, Depends(get_command_gateway)]
InternalCaller = Depends(require_internal_api_key)
