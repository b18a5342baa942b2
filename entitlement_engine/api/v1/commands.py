"""
Command API Endpoints
=====================

Client hints about store purchases. Accepting a command never grants
access; it records a provisional event that the provider must confirm.
"""

import logging
from typing import Optional

from fastapi import APIRouter, status

from entitlement_engine.core.errors import (
    ErrorCodes,
    LedgerUnavailableError,
    ServiceUnavailableError,
    UnknownProductError,
    ValidationError,
)
from entitlement_engine.dependencies import CurrentUserId, Gateway
from entitlement_engine.schemas.common import ErrorResponse
from entitlement_engine.schemas.entitlement import (
    CommandAcceptedResponse,
    PurchaseIntentRequest,
    RestoreRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/purchase-intent",
    response_model=CommandAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        400: {"model": ErrorResponse, "description": "Unknown product"},
        503: {"model": ErrorResponse, "description": "Ledger unavailable"},
    },
)
async def submit_purchase_intent(
    request: PurchaseIntentRequest,
    user_id: CurrentUserId,
    gateway: Gateway,
):
    """The client's store purchase flow reported success."""
    try:
        ack = await gateway.submit_purchase_intent(
            user_id,
            request.product_ref,
            request.idempotency_key,
            claimed_ref=request.subscription_ref,
        )
    except UnknownProductError as exc:
        raise ValidationError(
            message=str(exc),
            field="product_ref",
            code=ErrorCodes.CMD_UNKNOWN_PRODUCT,
        )
    except LedgerUnavailableError as exc:
        logger.error("Purchase intent for user %s not recorded: %s", user_id, exc)
        raise ServiceUnavailableError()

    return CommandAcceptedResponse(data=ack)


@router.post(
    "/restore",
    response_model=CommandAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_restore_request(
    user_id: CurrentUserId,
    gateway: Gateway,
    request: Optional[RestoreRequest] = None,
):
    """Re-check the user's store subscriptions with the provider."""
    try:
        ack = await gateway.submit_restore_request(
            user_id,
            request.idempotency_key if request else None,
            claimed_ref=request.subscription_ref if request else None,
        )
    except LedgerUnavailableError as exc:
        logger.error("Restore request for user %s not recorded: %s", user_id, exc)
        raise ServiceUnavailableError()

    return CommandAcceptedResponse(data=ack)
