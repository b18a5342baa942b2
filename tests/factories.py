"""
Test Factories
==============

Builders for lifecycle events, record snapshots and provider payloads.
"""

from datetime import datetime, timedelta, timezone
import hashlib
import hmac
import itertools
import time
from typing import Any, Optional
import uuid

from entitlement_engine.core.catalog import PREMIUM_TIER_ID
from entitlement_engine.models.ledger import EventKind, Provenance
from entitlement_engine.models.subscription import (
    BillingCycle,
    Provider,
    SubscriptionStatus,
)
from entitlement_engine.schemas.events import LifecycleEvent
from entitlement_engine.services.state_machine import RecordState

# Fixed instant every test clock starts from
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

_ids = itertools.count(1)


class FakeClock:
    """Mutable clock for pipeline, gateway and scheduler."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_event(
    kind: EventKind,
    *,
    at: datetime = T0,
    ref: str = "sub_1",
    provider: Provider = Provider.CARD_BILLING,
    event_id: Optional[str] = None,
    provenance: Provenance = Provenance.AUTHORITATIVE,
    user_id: Optional[uuid.UUID] = None,
    **facts: Any,
) -> LifecycleEvent:
    return LifecycleEvent(
        event_id=event_id or f"evt_{next(_ids)}",
        provider=provider,
        subscription_ref=ref,
        kind=kind,
        observed_at=at,
        provenance=provenance,
        user_id=user_id,
        **facts,
    )


def make_state(
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    *,
    at: datetime = T0,
    event_id: str = "evt_0",
    period_end: Optional[datetime] = None,
    grace_until: Optional[datetime] = None,
    lineage: int = 1,
    tier_id: str = PREMIUM_TIER_ID,
    billing_cycle: BillingCycle = BillingCycle.MONTHLY,
    **extra: Any,
) -> RecordState:
    return RecordState(
        status=status,
        tier_id=tier_id,
        billing_cycle=billing_cycle,
        product_ref=extra.pop("product_ref", "price_premium_monthly"),
        period_end=period_end if period_end is not None else at + timedelta(days=30),
        grace_until=grace_until,
        lineage=lineage,
        last_applied_event_id=event_id,
        last_applied_observed_at=at,
        **extra,
    )


def stripe_subscription_event(
    event_type: str,
    *,
    event_id: str = "evt_stripe_1",
    created: datetime = T0,
    subscription_id: str = "sub_1",
    user_id: Optional[uuid.UUID] = None,
    status: str = "active",
    cancel_at_period_end: bool = False,
    period_end: Optional[datetime] = None,
    price_id: str = "price_premium_monthly",
    interval: str = "month",
    previous_attributes: Optional[dict] = None,
) -> dict[str, Any]:
    period_end = period_end or created + timedelta(days=30)
    payload: dict[str, Any] = {
        "id": event_id,
        "type": event_type,
        "created": int(created.timestamp()),
        "data": {
            "object": {
                "id": subscription_id,
                "object": "subscription",
                "status": status,
                "cancel_at_period_end": cancel_at_period_end,
                "current_period_end": int(period_end.timestamp()),
                "metadata": {"user_id": str(user_id)} if user_id else {},
                "items": {
                    "data": [{
                        "price": {"id": price_id, "recurring": {"interval": interval}},
                    }],
                },
            },
        },
    }
    if previous_attributes is not None:
        payload["data"]["previous_attributes"] = previous_attributes
    return payload


def appstore_notification(
    notification_type: str,
    *,
    subtype: Optional[str] = None,
    notification_uuid: str = "6b0c8e0e-0000-4000-8000-000000000001",
    signed_at: datetime = T0,
    original_transaction_id: str = "2000000123456789",
    app_account_token: Optional[uuid.UUID] = None,
    product_id: str = "com.example.renewals.premium.monthly.v1",
    expires: Optional[datetime] = None,
    grace_expires: Optional[datetime] = None,
) -> dict[str, Any]:
    """Decoded Notification V2 claims, as ``decode_appstore_notification`` returns them."""
    expires = expires or signed_at + timedelta(days=30)
    transaction: dict[str, Any] = {
        "originalTransactionId": original_transaction_id,
        "transactionId": "2000000999",
        "productId": product_id,
        "expiresDate": int(expires.timestamp() * 1000),
    }
    if app_account_token is not None:
        transaction["appAccountToken"] = str(app_account_token)
    renewal: dict[str, Any] = {"originalTransactionId": original_transaction_id}
    if grace_expires is not None:
        renewal["gracePeriodExpiresDate"] = int(grace_expires.timestamp() * 1000)

    claims: dict[str, Any] = {
        "notificationType": notification_type,
        "notificationUUID": notification_uuid,
        "signedDate": int(signed_at.timestamp() * 1000),
        "data": {
            "bundleId": "com.example.renewals",
            "environment": "Sandbox",
            "transactionInfo": transaction,
            "renewalInfo": renewal,
        },
    }
    if subtype:
        claims["subtype"] = subtype
    return claims


def stripe_signature(body: bytes, secret: str = "whsec_test_secret", timestamp: Optional[int] = None) -> str:
    """``Stripe-Signature`` header value for ``body``."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode("utf-8") + body
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"
