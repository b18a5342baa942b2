"""
Entitlement API Endpoints
=========================

Read-only view of what a user can do right now.
"""

import uuid

from fastapi import APIRouter

from entitlement_engine.dependencies import CurrentUserId, DBSession, InternalCaller
from entitlement_engine.schemas.entitlement import EntitlementResponse
from entitlement_engine.services.entitlements import EntitlementService

router = APIRouter()


@router.get("/me", response_model=EntitlementResponse)
async def get_my_entitlement(user_id: CurrentUserId, db: DBSession):
    """Current entitlement for the authenticated user."""
    data = await EntitlementService(db).get_entitlement(user_id)
    return EntitlementResponse(data=data)


@router.get(
    "/users/{user_id}",
    response_model=EntitlementResponse,
    dependencies=[InternalCaller],
)
async def get_user_entitlement(user_id: uuid.UUID, db: DBSession):
    """Current entitlement for any user. Requires the internal API key."""
    data = await EntitlementService(db).get_entitlement(user_id)
    return EntitlementResponse(data=data)
