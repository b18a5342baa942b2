"""
Event Normalizer Tests
======================

Tests for mapping provider payloads onto lifecycle events:
- Card billing (Stripe) subscription, invoice and refund events
- App Store Server Notifications V2
- Unrecognized and malformed payloads
"""

from datetime import timedelta
import uuid

import pytest

from entitlement_engine.core.catalog import PREMIUM_TIER_ID
from entitlement_engine.core.errors import NormalizationError
from entitlement_engine.models.ledger import EventKind, Provenance
from entitlement_engine.models.subscription import BillingCycle, Provider
from entitlement_engine.services.normalizer import normalize

from factories import T0, appstore_notification, stripe_subscription_event


USER_ID = uuid.UUID("00000000-0000-0000-0000-0000000000aa")


# ---------------------------------------------------------------------------
# Card billing
# ---------------------------------------------------------------------------

class TestCardSubscriptionEvents:
    """customer.subscription.* mapping"""

    def test_created_is_activated_with_facts(self):
        payload = stripe_subscription_event(
            "customer.subscription.created", user_id=USER_ID,
        )

        event = normalize(payload, Provider.CARD_BILLING)

        assert event.kind == EventKind.ACTIVATED
        assert event.event_id == "evt_stripe_1"
        assert event.subscription_ref == "sub_1"
        assert event.observed_at == T0
        assert event.provenance == Provenance.AUTHORITATIVE
        assert event.user_id == USER_ID
        assert event.tier_id == PREMIUM_TIER_ID
        assert event.billing_cycle == BillingCycle.MONTHLY
        assert event.period_end == T0 + timedelta(days=30)

    def test_cancel_at_period_end_is_auto_renew_disabled(self):
        payload = stripe_subscription_event(
            "customer.subscription.updated", cancel_at_period_end=True,
        )
        assert normalize(payload, Provider.CARD_BILLING).kind == EventKind.AUTO_RENEW_DISABLED

    def test_past_due_is_renewal_failed(self):
        payload = stripe_subscription_event("customer.subscription.updated", status="past_due")
        assert normalize(payload, Provider.CARD_BILLING).kind == EventKind.RENEWAL_FAILED

    @pytest.mark.parametrize("status", ["canceled", "unpaid", "incomplete_expired"])
    def test_ended_statuses_are_cancelled(self, status):
        payload = stripe_subscription_event("customer.subscription.updated", status=status)
        assert normalize(payload, Provider.CARD_BILLING).kind == EventKind.CANCELLED

    def test_deleted_is_cancelled(self):
        payload = stripe_subscription_event("customer.subscription.deleted", status="canceled")
        assert normalize(payload, Provider.CARD_BILLING).kind == EventKind.CANCELLED

    def test_price_change_is_plan_changed(self):
        payload = stripe_subscription_event(
            "customer.subscription.updated",
            price_id="price_premium_annual",
            interval="year",
            previous_attributes={"items": {"data": []}},
        )

        event = normalize(payload, Provider.CARD_BILLING)

        assert event.kind == EventKind.PLAN_CHANGED
        assert event.billing_cycle == BillingCycle.ANNUAL

    def test_plain_update_is_renewed(self):
        payload = stripe_subscription_event("customer.subscription.updated")
        assert normalize(payload, Provider.CARD_BILLING).kind == EventKind.RENEWED

    def test_incomplete_subscription_is_unrecognized(self):
        payload = stripe_subscription_event("customer.subscription.created", status="incomplete")
        assert normalize(payload, Provider.CARD_BILLING).kind == EventKind.UNRECOGNIZED


class TestCardInvoiceAndRefundEvents:
    """invoice.* and charge.refunded mapping"""

    def _invoice(self, event_type: str, subscription: str | None = "sub_1") -> dict:
        period_end = T0 + timedelta(days=31)
        return {
            "id": "evt_inv_1",
            "type": event_type,
            "created": int(T0.timestamp()),
            "data": {
                "object": {
                    "id": "in_1",
                    "subscription": subscription,
                    "lines": {
                        "data": [{
                            "type": "subscription",
                            "period": {"end": int(period_end.timestamp())},
                            "price": {
                                "id": "price_premium_monthly",
                                "recurring": {"interval": "month"},
                            },
                        }],
                    },
                },
            },
        }

    def test_payment_succeeded_is_renewed_with_period_end(self):
        event = normalize(self._invoice("invoice.payment_succeeded"), Provider.CARD_BILLING)

        assert event.kind == EventKind.RENEWED
        assert event.subscription_ref == "sub_1"
        assert event.period_end == T0 + timedelta(days=31)

    def test_payment_failed_is_renewal_failed(self):
        event = normalize(self._invoice("invoice.payment_failed"), Provider.CARD_BILLING)

        assert event.kind == EventKind.RENEWAL_FAILED
        assert event.period_end is None

    def test_one_off_invoice_is_unrecognized(self):
        event = normalize(self._invoice("invoice.paid", subscription=None), Provider.CARD_BILLING)
        assert event.kind == EventKind.UNRECOGNIZED

    def test_full_refund_is_refunded(self):
        payload = {
            "id": "evt_ref_1",
            "type": "charge.refunded",
            "created": int(T0.timestamp()),
            "data": {"object": {
                "id": "ch_1",
                "refunded": True,
                "amount_refunded": 999,
                "invoice": {"id": "in_1", "subscription": "sub_1"},
            }},
        }

        event = normalize(payload, Provider.CARD_BILLING)

        assert event.kind == EventKind.REFUNDED
        assert event.subscription_ref == "sub_1"

    def test_partial_refund_is_unrecognized(self):
        payload = {
            "id": "evt_ref_2",
            "type": "charge.refunded",
            "created": int(T0.timestamp()),
            "data": {"object": {"id": "ch_2", "refunded": False, "amount_refunded": 100}},
        }
        assert normalize(payload, Provider.CARD_BILLING).kind == EventKind.UNRECOGNIZED

    def test_refund_without_subscription_is_malformed(self):
        payload = {
            "id": "evt_ref_3",
            "type": "charge.refunded",
            "created": int(T0.timestamp()),
            "data": {"object": {"id": "ch_3", "refunded": True}},
        }
        with pytest.raises(NormalizationError):
            normalize(payload, Provider.CARD_BILLING)


class TestCardMalformed:
    """Structural failures"""

    def test_unknown_type_is_unrecognized(self):
        payload = {
            "id": "evt_x",
            "type": "customer.created",
            "created": int(T0.timestamp()),
            "data": {"object": {"id": "cus_1"}},
        }

        event = normalize(payload, Provider.CARD_BILLING)

        assert event.kind == EventKind.UNRECOGNIZED
        assert event.event_id == "evt_x"

    @pytest.mark.parametrize("missing", ["id", "type", "created"])
    def test_missing_required_field(self, missing):
        payload = stripe_subscription_event("customer.subscription.created")
        del payload[missing]
        with pytest.raises(NormalizationError):
            normalize(payload, Provider.CARD_BILLING)

    def test_missing_data_object(self):
        payload = {"id": "evt_y", "type": "customer.subscription.created", "created": 1}
        with pytest.raises(NormalizationError):
            normalize(payload, Provider.CARD_BILLING)


# ---------------------------------------------------------------------------
# App Store
# ---------------------------------------------------------------------------

class TestAppStoreEvents:
    """Notification V2 mapping"""

    def test_subscribed_is_activated(self):
        claims = appstore_notification("SUBSCRIBED", subtype="INITIAL_BUY", app_account_token=USER_ID)

        event = normalize(claims, Provider.APP_STORE_IAP)

        assert event.kind == EventKind.ACTIVATED
        assert event.provider == Provider.APP_STORE_IAP
        assert event.event_id == "6b0c8e0e-0000-4000-8000-000000000001"
        assert event.subscription_ref == "2000000123456789"
        assert event.user_id == USER_ID
        assert event.observed_at == T0
        assert event.billing_cycle == BillingCycle.MONTHLY

    @pytest.mark.parametrize("notification_type, subtype, kind", [
        ("DID_RENEW", None, EventKind.RENEWED),
        ("DID_CHANGE_RENEWAL_STATUS", "AUTO_RENEW_DISABLED", EventKind.AUTO_RENEW_DISABLED),
        ("DID_CHANGE_RENEWAL_STATUS", "AUTO_RENEW_ENABLED", EventKind.RENEWED),
        ("DID_CHANGE_RENEWAL_PREF", "UPGRADE", EventKind.PLAN_CHANGED),
        ("EXPIRED", "VOLUNTARY", EventKind.EXPIRED),
        ("GRACE_PERIOD_EXPIRED", None, EventKind.EXPIRED),
        ("REFUND", None, EventKind.REFUNDED),
        ("REVOKE", None, EventKind.REFUNDED),
        ("CONSUMPTION_REQUEST", None, EventKind.UNRECOGNIZED),
        ("TEST", None, EventKind.UNRECOGNIZED),
    ])
    def test_kind_mapping(self, notification_type, subtype, kind):
        claims = appstore_notification(notification_type, subtype=subtype)
        assert normalize(claims, Provider.APP_STORE_IAP).kind == kind

    def test_failed_renewal_carries_grace_until(self):
        grace = T0 + timedelta(days=16)
        claims = appstore_notification(
            "DID_FAIL_TO_RENEW", subtype="GRACE_PERIOD", grace_expires=grace,
        )

        event = normalize(claims, Provider.APP_STORE_IAP)

        assert event.kind == EventKind.RENEWAL_FAILED
        assert event.grace_until == grace

    def test_missing_original_transaction_id_is_malformed(self):
        claims = appstore_notification("DID_RENEW")
        del claims["data"]["transactionInfo"]["originalTransactionId"]
        del claims["data"]["renewalInfo"]["originalTransactionId"]

        with pytest.raises(NormalizationError):
            normalize(claims, Provider.APP_STORE_IAP)

    def test_missing_notification_uuid_is_malformed(self):
        claims = appstore_notification("DID_RENEW")
        del claims["notificationUUID"]

        with pytest.raises(NormalizationError):
            normalize(claims, Provider.APP_STORE_IAP)
