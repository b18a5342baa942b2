"""
Pydantic Schemas
================

Request/response schemas for API validation, and the canonical
lifecycle event shape.
"""

from entitlement_engine.schemas.common import ErrorDetail, ErrorResponse
from entitlement_engine.schemas.entitlement import (
    CommandAcceptedResponse,
    EntitlementData,
    EntitlementResponse,
    ProvisionalAck,
    PurchaseIntentRequest,
    RestoreRequest,
    WebhookAck,
)
from entitlement_engine.schemas.events import (
    LifecycleEvent,
    ProviderSubscriptionStatus,
    RemoteStatus,
)

__all__ = [
    "ErrorDetail",
    "ErrorResponse",
    "CommandAcceptedResponse",
    "EntitlementData",
    "EntitlementResponse",
    "ProvisionalAck",
    "PurchaseIntentRequest",
    "RestoreRequest",
    "WebhookAck",
    "LifecycleEvent",
    "ProviderSubscriptionStatus",
    "RemoteStatus",
]
