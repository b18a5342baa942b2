"""
Event Normalizer
================

Maps provider webhook payloads onto the canonical ``LifecycleEvent``.

Pure translation and provenance tagging: no database access and no
business rules. Payload types this module does not know become
``EventKind.UNRECOGNIZED`` events so they are recorded and ignored
explicitly rather than dropped.

Card billing input is the Stripe event JSON. App Store input is the
decoded App Store Server Notification V2 claims, with the nested
``signedTransactionInfo`` / ``signedRenewalInfo`` already decoded into
``data.transactionInfo`` / ``data.renewalInfo`` (see ``webhook_auth``).
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional
import uuid

from pydantic import ValidationError as PydanticValidationError

from entitlement_engine.core.catalog import billing_cycle_from_interval, tier_for_product
from entitlement_engine.core.errors import NormalizationError
from entitlement_engine.models.ledger import EventKind, Provenance
from entitlement_engine.models.subscription import Provider
from entitlement_engine.schemas.events import LifecycleEvent

logger = logging.getLogger(__name__)

# Stripe subscription statuses that mean the subscription is over
_STRIPE_ENDED_STATUSES = {"canceled", "unpaid", "incomplete_expired"}
# Stripe subscription statuses that grant access
_STRIPE_LIVE_STATUSES = {"active", "trialing"}

_APPSTORE_KINDS = {
    "SUBSCRIBED": EventKind.ACTIVATED,
    "DID_RENEW": EventKind.RENEWED,
    "DID_FAIL_TO_RENEW": EventKind.RENEWAL_FAILED,
    "EXPIRED": EventKind.EXPIRED,
    "GRACE_PERIOD_EXPIRED": EventKind.EXPIRED,
    "REFUND": EventKind.REFUNDED,
    "REVOKE": EventKind.REFUNDED,
}


def normalize(raw_payload: dict[str, Any], provider: Provider) -> LifecycleEvent:
    """
    Translate one provider payload into a ``LifecycleEvent``.

    Raises:
        NormalizationError: the payload is structurally invalid.
    """
    if not isinstance(raw_payload, dict):
        raise NormalizationError("payload is not a JSON object")

    try:
        if provider == Provider.CARD_BILLING:
            event = _normalize_card(raw_payload)
        elif provider == Provider.APP_STORE_IAP:
            event = _normalize_appstore(raw_payload)
        else:
            raise NormalizationError(f"unsupported provider {provider}", raw_payload)
    except PydanticValidationError as exc:
        raise NormalizationError(f"event failed validation: {exc}", raw_payload) from exc

    if event.kind == EventKind.UNRECOGNIZED:
        logger.info(
            "Unrecognized %s event: event_id=%s raw=%s",
            provider.value,
            event.event_id,
            event.raw_provenance,
        )
    return event


# =============================================================================
# Field helpers
# =============================================================================

def _require(payload: dict[str, Any], key: str) -> Any:
    value = payload.get(key)
    if value is None or value == "":
        raise NormalizationError(f"missing required field '{key}'", payload)
    return value


def _from_epoch_seconds(value: Any, field: str) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError) as exc:
        raise NormalizationError(f"invalid timestamp in '{field}': {value!r}") from exc


def _from_epoch_ms(value: Any, field: str) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError) as exc:
        raise NormalizationError(f"invalid timestamp in '{field}': {value!r}") from exc


def _parse_user_id(value: Any) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise NormalizationError(f"invalid user id: {value!r}") from exc


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


# =============================================================================
# Card billing (Stripe)
# =============================================================================

def _normalize_card(payload: dict[str, Any]) -> LifecycleEvent:
    event_id = _require(payload, "id")
    event_type = _require(payload, "type")
    observed_at = _from_epoch_seconds(_require(payload, "created"), "created")

    data = payload.get("data")
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise NormalizationError("missing data.object", payload)
    obj = data["object"]
    previous = _as_dict(data.get("previous_attributes"))

    raw_provenance = {
        "type": event_type,
        "object_id": obj.get("id"),
        "livemode": payload.get("livemode"),
    }

    if event_type.startswith("customer.subscription."):
        return _card_subscription_event(
            event_id, event_type, observed_at, obj, previous, raw_provenance,
        )
    if event_type in ("invoice.payment_succeeded", "invoice.paid", "invoice.payment_failed"):
        return _card_invoice_event(event_id, event_type, observed_at, obj, raw_provenance)
    if event_type == "charge.refunded":
        return _card_refund_event(event_id, observed_at, obj, raw_provenance)

    return _unrecognized(
        Provider.CARD_BILLING, event_id, obj.get("id") or event_id, observed_at, raw_provenance,
    )


def _card_price(subscription: dict[str, Any]) -> tuple[Optional[str], Optional[str]]:
    """(price id, recurring interval) of the first subscription item."""
    items = _as_dict(subscription.get("items")).get("data") or []
    if items and isinstance(items[0], dict):
        price = _as_dict(items[0].get("price"))
        interval = _as_dict(price.get("recurring")).get("interval")
        if price.get("id"):
            return price["id"], interval
    plan = _as_dict(subscription.get("plan"))
    return plan.get("id"), plan.get("interval")


def _card_period_end(subscription: dict[str, Any]) -> Optional[datetime]:
    if subscription.get("current_period_end") is not None:
        return _from_epoch_seconds(subscription["current_period_end"], "current_period_end")
    # Newer API versions carry the period on the subscription item
    items = _as_dict(subscription.get("items")).get("data") or []
    if items and isinstance(items[0], dict) and items[0].get("current_period_end") is not None:
        return _from_epoch_seconds(items[0]["current_period_end"], "items.current_period_end")
    return None


def _card_user_id(metadata: Any) -> Optional[uuid.UUID]:
    metadata = _as_dict(metadata)
    return _parse_user_id(metadata.get("user_id") or metadata.get("supabase_user_id"))


def _card_subscription_event(
    event_id: str,
    event_type: str,
    observed_at: datetime,
    subscription: dict[str, Any],
    previous: dict[str, Any],
    raw_provenance: dict[str, Any],
) -> LifecycleEvent:
    subscription_ref = _require(subscription, "id")
    status = subscription.get("status")
    raw_provenance["status"] = status

    if event_type == "customer.subscription.deleted" or status in _STRIPE_ENDED_STATUSES:
        kind = EventKind.CANCELLED
    elif status == "past_due":
        kind = EventKind.RENEWAL_FAILED
    elif subscription.get("cancel_at_period_end"):
        kind = EventKind.AUTO_RENEW_DISABLED
    elif status not in _STRIPE_LIVE_STATUSES:
        # incomplete / paused: no payment has been taken for this period
        return _unrecognized(
            Provider.CARD_BILLING, event_id, subscription_ref, observed_at, raw_provenance,
        )
    elif event_type == "customer.subscription.created":
        kind = EventKind.ACTIVATED
    elif event_type == "customer.subscription.updated" and ("items" in previous or "plan" in previous):
        kind = EventKind.PLAN_CHANGED
    elif event_type == "customer.subscription.updated":
        kind = EventKind.RENEWED
    else:
        return _unrecognized(
            Provider.CARD_BILLING, event_id, subscription_ref, observed_at, raw_provenance,
        )

    price_id, interval = _card_price(subscription)
    tier_id, billing_cycle = tier_for_product(price_id, billing_cycle_from_interval(interval))

    return LifecycleEvent(
        event_id=event_id,
        provider=Provider.CARD_BILLING,
        subscription_ref=subscription_ref,
        kind=kind,
        observed_at=observed_at,
        provenance=Provenance.AUTHORITATIVE,
        raw_provenance=raw_provenance,
        user_id=_card_user_id(subscription.get("metadata")),
        product_ref=price_id,
        tier_id=tier_id,
        billing_cycle=billing_cycle,
        period_end=_card_period_end(subscription),
    )


def _card_invoice_event(
    event_id: str,
    event_type: str,
    observed_at: datetime,
    invoice: dict[str, Any],
    raw_provenance: dict[str, Any],
) -> LifecycleEvent:
    details = _as_dict(invoice.get("subscription_details")) or _as_dict(
        _as_dict(invoice.get("parent")).get("subscription_details")
    )
    subscription_ref = invoice.get("subscription") or details.get("subscription")
    if isinstance(subscription_ref, dict):
        subscription_ref = subscription_ref.get("id")
    if not subscription_ref:
        # One-off invoice, not part of a subscription
        return _unrecognized(
            Provider.CARD_BILLING, event_id, invoice.get("id") or event_id, observed_at, raw_provenance,
        )

    period_end = None
    price_id = None
    interval = None
    for line in _as_dict(invoice.get("lines")).get("data") or []:
        if not isinstance(line, dict):
            continue
        if line.get("type", "subscription") == "subscription":
            period_end = _from_epoch_seconds(_as_dict(line.get("period")).get("end"), "lines.period.end")
            price = _as_dict(line.get("price"))
            price_id = price.get("id")
            interval = _as_dict(price.get("recurring")).get("interval")
            break

    if event_type == "invoice.payment_failed":
        kind = EventKind.RENEWAL_FAILED
        tier_id = None
        billing_cycle = None
    else:
        kind = EventKind.RENEWED
        tier_id, billing_cycle = tier_for_product(price_id, billing_cycle_from_interval(interval))

    return LifecycleEvent(
        event_id=event_id,
        provider=Provider.CARD_BILLING,
        subscription_ref=subscription_ref,
        kind=kind,
        observed_at=observed_at,
        provenance=Provenance.AUTHORITATIVE,
        raw_provenance=raw_provenance,
        user_id=_card_user_id(details.get("metadata")),
        product_ref=price_id,
        tier_id=tier_id,
        billing_cycle=billing_cycle,
        period_end=period_end if kind == EventKind.RENEWED else None,
    )


def _card_refund_event(
    event_id: str,
    observed_at: datetime,
    charge: dict[str, Any],
    raw_provenance: dict[str, Any],
) -> LifecycleEvent:
    raw_provenance["amount_refunded"] = charge.get("amount_refunded")
    if not charge.get("refunded"):
        # Partial refund: money back, subscription continues
        return _unrecognized(
            Provider.CARD_BILLING, event_id, charge.get("id") or event_id, observed_at, raw_provenance,
        )

    metadata = _as_dict(charge.get("metadata"))
    invoice = _as_dict(charge.get("invoice"))
    subscription_ref = (
        charge.get("subscription")
        or metadata.get("subscription_id")
        or invoice.get("subscription")
    )
    if isinstance(subscription_ref, dict):
        subscription_ref = subscription_ref.get("id")
    if not subscription_ref:
        raise NormalizationError("refunded charge does not reference a subscription", charge)

    return LifecycleEvent(
        event_id=event_id,
        provider=Provider.CARD_BILLING,
        subscription_ref=subscription_ref,
        kind=EventKind.REFUNDED,
        observed_at=observed_at,
        provenance=Provenance.AUTHORITATIVE,
        raw_provenance=raw_provenance,
        user_id=_card_user_id(metadata),
    )


# =============================================================================
# App Store (Server Notifications V2)
# =============================================================================

def _appstore_kind(notification_type: str, subtype: Optional[str]) -> EventKind:
    if notification_type == "DID_CHANGE_RENEWAL_STATUS":
        if subtype == "AUTO_RENEW_DISABLED":
            return EventKind.AUTO_RENEW_DISABLED
        if subtype == "AUTO_RENEW_ENABLED":
            return EventKind.RENEWED
        return EventKind.UNRECOGNIZED
    if notification_type == "DID_CHANGE_RENEWAL_PREF":
        if subtype in ("UPGRADE", "DOWNGRADE"):
            return EventKind.PLAN_CHANGED
        return EventKind.UNRECOGNIZED
    return _APPSTORE_KINDS.get(notification_type, EventKind.UNRECOGNIZED)


def _normalize_appstore(payload: dict[str, Any]) -> LifecycleEvent:
    notification_type = _require(payload, "notificationType")
    event_id = _require(payload, "notificationUUID")
    observed_at = _from_epoch_ms(_require(payload, "signedDate"), "signedDate")
    subtype = payload.get("subtype")

    data = _as_dict(payload.get("data"))
    transaction = _as_dict(data.get("transactionInfo"))
    renewal = _as_dict(data.get("renewalInfo"))

    raw_provenance = {
        "type": notification_type,
        "subtype": subtype,
        "environment": data.get("environment"),
        "transaction_id": transaction.get("transactionId"),
    }

    kind = _appstore_kind(notification_type, subtype)
    original_transaction_id = transaction.get("originalTransactionId") or renewal.get(
        "originalTransactionId"
    )

    if kind == EventKind.UNRECOGNIZED:
        return _unrecognized(
            Provider.APP_STORE_IAP,
            event_id,
            original_transaction_id or event_id,
            observed_at,
            raw_provenance,
        )

    if not original_transaction_id:
        raise NormalizationError("missing data.transactionInfo.originalTransactionId", payload)

    product_ref = transaction.get("productId") or renewal.get("productId")
    tier_id, billing_cycle = tier_for_product(product_ref)

    grace_until = None
    if kind == EventKind.RENEWAL_FAILED:
        grace_until = _from_epoch_ms(
            renewal.get("gracePeriodExpiresDate"), "renewalInfo.gracePeriodExpiresDate",
        )

    return LifecycleEvent(
        event_id=event_id,
        provider=Provider.APP_STORE_IAP,
        subscription_ref=str(original_transaction_id),
        kind=kind,
        observed_at=observed_at,
        provenance=Provenance.AUTHORITATIVE,
        raw_provenance=raw_provenance,
        user_id=_parse_user_id(transaction.get("appAccountToken")),
        product_ref=product_ref,
        tier_id=tier_id,
        billing_cycle=billing_cycle,
        period_end=_from_epoch_ms(transaction.get("expiresDate"), "transactionInfo.expiresDate"),
        grace_until=grace_until,
    )


def _unrecognized(
    provider: Provider,
    event_id: str,
    subscription_ref: str,
    observed_at: datetime,
    raw_provenance: dict[str, Any],
) -> LifecycleEvent:
    return LifecycleEvent(
        event_id=event_id,
        provider=provider,
        subscription_ref=str(subscription_ref),
        kind=EventKind.UNRECOGNIZED,
        observed_at=observed_at,
        provenance=Provenance.AUTHORITATIVE,
        raw_provenance=raw_provenance,
    )
