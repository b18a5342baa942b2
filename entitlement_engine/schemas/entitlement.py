"""
Entitlement Schemas
===================

Pydantic schemas for entitlement reads, client commands and webhook
acknowledgements.
"""

from datetime import datetime
from typing import Optional
import uuid

from pydantic import AliasChoices, BaseModel, Field


# ─── Entitlement Reads ───────────────────────────────────────────────────────


class EntitlementData(BaseModel):
    """What a user can do right now."""

    user_id: uuid.UUID
    tier_id: str
    resource_limit: int  # -1 for unlimited
    is_paid: bool
    source_provider: Optional[str] = None
    source_status: Optional[str] = None
    valid_until: Optional[datetime] = None
    revoke_at: Optional[datetime] = None
    pending_tier_id: Optional[str] = None
    pending_until: Optional[datetime] = None
    status_hash: Optional[str] = None
    computed_at: Optional[datetime] = None


class EntitlementResponse(BaseModel):
    """Response schema for entitlement reads."""

    success: bool = True
    data: EntitlementData


# ─── Commands ────────────────────────────────────────────────────────────────


class PurchaseIntentRequest(BaseModel):
    """Client reports that a store purchase flow returned success."""

    product_ref: str = Field(..., min_length=1, max_length=255)
    idempotency_key: Optional[str] = Field(default=None, max_length=128)
    subscription_ref: Optional[str] = Field(
        default=None,
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("subscription_ref", "original_transaction_id"),
        description="Store subscription the purchase created, if the client knows it",
    )


class RestoreRequest(BaseModel):
    """Client asks for its store purchases to be re-checked."""

    idempotency_key: Optional[str] = Field(default=None, max_length=128)
    subscription_ref: Optional[str] = Field(
        default=None,
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("subscription_ref", "original_transaction_id"),
        description="App Store original transaction id found on the device",
    )


class ProvisionalAck(BaseModel):
    """Acknowledgement of a client hint. Never a grant."""

    accepted: bool = True
    status: str = "pending_confirmation"
    event_id: str
    duplicate: bool = False
    expires_at: Optional[datetime] = None


class CommandAcceptedResponse(BaseModel):
    """Response schema for command submission."""

    success: bool = True
    data: ProvisionalAck
    message: str = "Accepted, pending confirmation"


# ─── Webhooks ────────────────────────────────────────────────────────────────


class WebhookAck(BaseModel):
    """Acknowledgement returned to payment providers."""

    received: bool = True
    event_id: Optional[str] = None
    outcome: Optional[str] = None
    duplicate: bool = False
    queued: bool = False
    dead_lettered: bool = False
