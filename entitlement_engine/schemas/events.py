"""
Lifecycle Event Schemas
=======================

Canonical, provider-neutral event shape that every pipeline entry point
(webhooks, reconciliation sweeps, client commands) produces, plus the
status snapshot returned by provider queries.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
import uuid

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field

from entitlement_engine.models.ledger import EventKind, Provenance
from entitlement_engine.models.subscription import (
    BillingCycle,
    Provider,
    ProvisionalKind,
    SubscriptionStatus,
)

PROVISIONAL_REF_PREFIX = "provisional:"

# Optional fields stored with the event in the log; enough to rebuild it
FACT_FIELDS = (
    "user_id",
    "product_ref",
    "tier_id",
    "billing_cycle",
    "period_end",
    "grace_until",
    "provisional_kind",
    "claimed_ref",
    "expected_status",
)


class LifecycleEvent(BaseModel):
    """
    One immutable lifecycle fact about one provider subscription.

    ``raw_provenance`` is kept for audit only; nothing downstream of the
    normalizer branches on its contents.
    """

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(..., min_length=1, max_length=255)
    provider: Provider
    subscription_ref: str = Field(..., min_length=1, max_length=255)
    kind: EventKind
    observed_at: AwareDatetime
    provenance: Provenance = Provenance.AUTHORITATIVE
    raw_provenance: dict[str, Any] = Field(default_factory=dict)

    user_id: Optional[uuid.UUID] = None
    product_ref: Optional[str] = None
    tier_id: Optional[str] = None
    billing_cycle: Optional[BillingCycle] = None
    period_end: Optional[AwareDatetime] = None
    grace_until: Optional[AwareDatetime] = None

    # Client hint bookkeeping (provisional provenance only). ``claimed_ref``
    # is the store subscription the client says it bought or owns.
    provisional_kind: Optional[ProvisionalKind] = None
    claimed_ref: Optional[str] = Field(default=None, max_length=255)

    # Guard for scheduler-synthesized events: only apply while the record
    # is still in the status the sweep observed.
    expected_status: Optional[SubscriptionStatus] = None

    @property
    def is_provisional(self) -> bool:
        return self.provenance == Provenance.PROVISIONAL

    @property
    def ordering_key(self) -> tuple[datetime, str]:
        return (self.observed_at, self.event_id)

    def facts(self) -> dict[str, Any]:
        """JSON-safe dict of the optional facts this event actually carries."""
        return self.model_dump(mode="json", include=set(FACT_FIELDS), exclude_none=True)


class RemoteStatus(str, Enum):
    """Subscription status as reported by a provider query."""
    ACTIVE = "active"
    GRACE = "grace"
    CANCEL_PENDING = "cancel_pending"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    UNKNOWN = "unknown"


class ProviderSubscriptionStatus(BaseModel):
    """Result of ``get_subscription_status`` on a provider adapter."""

    provider: Provider
    subscription_ref: str
    status: RemoteStatus
    period_end: Optional[AwareDatetime] = None
    grace_until: Optional[AwareDatetime] = None
    product_ref: Optional[str] = None
    auto_renew: Optional[bool] = None
    raw: dict[str, Any] = Field(default_factory=dict)
