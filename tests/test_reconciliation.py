"""
Reconciliation Scheduler Tests
==============================

Tests for the background sweep:
- Provisional lapse and later authoritative activation
- Grace and cancel-pending deadlines
- Stale-record provider queries and corrective events
- Failure backoff and operational alerts
- Restore requests and client-claimed store subscriptions
- Divergence detection helpers
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch
import uuid

import pytest
from sqlalchemy import select

from entitlement_engine.core.catalog import FREE_TIER_ID, PREMIUM_TIER_ID
from entitlement_engine.core.errors import ReconciliationDivergenceError, TransientProviderError
from entitlement_engine.models.entitlement import ReconciliationAttempt, UserEntitlement
from entitlement_engine.models.ledger import EventKind, Provenance
from entitlement_engine.models.subscription import (
    BillingCycle,
    Provider,
    ProvisionalKind,
    ProvisionalResolution,
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionTransition,
)
from entitlement_engine.schemas.events import ProviderSubscriptionStatus, RemoteStatus
from entitlement_engine.services.entitlements import EntitlementService
from entitlement_engine.services.providers import ProviderAdapter
from entitlement_engine.services.reconciliation import (
    ALERT_EVENT_TYPE,
    ReconciliationScheduler,
    compare,
    corrective_event,
    synthetic_event_id,
)

from factories import T0, make_event


APPSTORE_REF = "2000000000000001"


def remote(status: RemoteStatus, provider=Provider.CARD_BILLING, ref="sub_1", **kwargs):
    return ProviderSubscriptionStatus(provider=provider, subscription_ref=ref, status=status, **kwargs)


def make_adapter(provider: Provider, result=None, error=None) -> MagicMock:
    adapter = MagicMock(spec=ProviderAdapter)
    adapter.provider = provider
    if error is not None:
        adapter.get_subscription_status = AsyncMock(side_effect=error)
    else:
        adapter.get_subscription_status = AsyncMock(return_value=result)
    return adapter


@pytest.fixture
def build_scheduler(pipeline, session_factory, clock):
    def build(adapters=None):
        return ReconciliationScheduler(
            pipeline,
            adapters=adapters or {},
            session_factory=session_factory,
            clock=clock,
        )
    return build


async def load_record(session_factory, **filters) -> SubscriptionRecord:
    async with session_factory() as session:
        result = await session.execute(select(SubscriptionRecord).filter_by(**filters))
        return result.scalar_one()


async def load_entitlement(session_factory, user_id) -> UserEntitlement:
    async with session_factory() as session:
        return await session.get(UserEntitlement, user_id)


async def load_attempt(session_factory, record_id):
    async with session_factory() as session:
        return await session.get(ReconciliationAttempt, record_id)


class TestProvisionalLapse:
    """Unconfirmed client hints expire through the pipeline"""

    @pytest.mark.asyncio
    async def test_hint_lapses_then_real_activation_grants(
        self, pipeline, build_scheduler, session_factory, user_id,
    ):
        await pipeline.process(make_event(
            EventKind.ACTIVATED,
            event_id="cmd_purchase",
            ref="provisional:cmd_purchase",
            provenance=Provenance.PROVISIONAL,
            user_id=user_id,
            tier_id=PREMIUM_TIER_ID,
            provisional_kind=ProvisionalKind.PURCHASE,
        ))
        scheduler = build_scheduler()

        early = await scheduler.sweep(T0 + timedelta(seconds=30))
        assert early.lapsed == 0

        report = await scheduler.sweep(T0 + timedelta(seconds=60))
        assert report.lapsed == 1

        hint = await load_record(session_factory, is_provisional=True)
        assert hint.status == SubscriptionStatus.EXPIRED
        assert hint.provisional_resolution == ProvisionalResolution.LAPSED
        assert hint.last_applied_event_id.startswith("sync:")

        entitlement = await load_entitlement(session_factory, user_id)
        assert entitlement.tier_id == FREE_TIER_ID
        assert entitlement.pending_tier_id is None

        await pipeline.process(make_event(
            EventKind.ACTIVATED, at=T0 + timedelta(minutes=5), user_id=user_id,
        ))
        entitlement = await load_entitlement(session_factory, user_id)
        assert entitlement.tier_id == PREMIUM_TIER_ID
        assert entitlement.source_record_id is not None

    @pytest.mark.asyncio
    async def test_repeated_sweeps_do_not_reprocess(self, pipeline, build_scheduler, user_id):
        await pipeline.process(make_event(
            EventKind.ACTIVATED,
            event_id="cmd_once",
            ref="provisional:cmd_once",
            provenance=Provenance.PROVISIONAL,
            user_id=user_id,
        ))
        scheduler = build_scheduler()

        assert (await scheduler.sweep(T0 + timedelta(minutes=2))).lapsed == 1
        assert (await scheduler.sweep(T0 + timedelta(minutes=3))).lapsed == 0


class TestTimers:
    """Deadlines that need no provider query"""

    @pytest.mark.asyncio
    async def test_grace_expires_at_grace_until(
        self, pipeline, build_scheduler, session_factory, user_id,
    ):
        await pipeline.process(make_event(
            EventKind.ACTIVATED, user_id=user_id, period_end=T0 + timedelta(days=30),
        ))
        await pipeline.process(make_event(EventKind.RENEWAL_FAILED, at=T0 + timedelta(days=30)))
        grace_until = T0 + timedelta(days=37)
        scheduler = build_scheduler()

        before = await scheduler.sweep(grace_until - timedelta(seconds=1))
        assert before.timers == 0
        assert (await load_record(session_factory)).status == SubscriptionStatus.GRACE

        after = await scheduler.sweep(grace_until)
        assert after.timers == 1
        record = await load_record(session_factory)
        assert record.status == SubscriptionStatus.EXPIRED
        assert record.last_applied_event_id == synthetic_event_id(
            Provider.CARD_BILLING, "sub_1", "grace_elapsed", int(grace_until.timestamp()),
        )
        assert (await load_entitlement(session_factory, user_id)).tier_id == FREE_TIER_ID

    @pytest.mark.asyncio
    async def test_cancel_pending_reverts_exactly_at_period_end(
        self, pipeline, build_scheduler, session_factory, user_id,
    ):
        period_end = T0 + timedelta(days=30)
        await pipeline.process(make_event(
            EventKind.ACTIVATED, user_id=user_id, period_end=period_end,
        ))
        await pipeline.process(make_event(
            EventKind.AUTO_RENEW_DISABLED, at=T0 + timedelta(seconds=300),
        ))

        stored = await load_entitlement(session_factory, user_id)
        just_before = EntitlementService.to_data(user_id, stored, period_end - timedelta(seconds=1))
        at_deadline = EntitlementService.to_data(user_id, stored, period_end)
        assert just_before.tier_id == PREMIUM_TIER_ID
        assert just_before.is_paid is True
        assert at_deadline.tier_id == FREE_TIER_ID
        assert at_deadline.is_paid is False

        scheduler = build_scheduler()
        assert (await scheduler.sweep(period_end - timedelta(seconds=1))).timers == 0
        assert (await scheduler.sweep(period_end)).timers == 1

        record = await load_record(session_factory)
        assert record.status == SubscriptionStatus.CANCELLED
        stored = await load_entitlement(session_factory, user_id)
        assert stored.tier_id == FREE_TIER_ID
        assert stored.revoke_at is None

    @pytest.mark.asyncio
    async def test_webhook_renewal_beats_late_timer(
        self, pipeline, build_scheduler, session_factory, user_id,
    ):
        await pipeline.process(make_event(
            EventKind.ACTIVATED, user_id=user_id, period_end=T0 + timedelta(days=30),
        ))
        await pipeline.process(make_event(EventKind.RENEWAL_FAILED, at=T0 + timedelta(days=30)))
        await pipeline.process(make_event(
            EventKind.RENEWED,
            at=T0 + timedelta(days=40),
            period_end=T0 + timedelta(days=70),
        ))

        report = await build_scheduler().sweep(T0 + timedelta(days=40, hours=1))

        assert report.timers == 0
        assert (await load_record(session_factory)).status == SubscriptionStatus.ACTIVE


class TestStaleReconciliation:
    """Records whose period ended without renewal news"""

    STALE_AT = T0 + timedelta(days=31, hours=1)

    @pytest.mark.asyncio
    async def test_dropped_renewal_is_corrected(
        self, pipeline, build_scheduler, session_factory, user_id,
    ):
        await pipeline.process(make_event(
            EventKind.ACTIVATED, user_id=user_id, period_end=T0 + timedelta(days=30),
        ))
        adapter = make_adapter(
            Provider.CARD_BILLING,
            remote(RemoteStatus.ACTIVE, period_end=T0 + timedelta(days=60)),
        )

        report = await build_scheduler({Provider.CARD_BILLING: adapter}).sweep(self.STALE_AT)

        assert report.checked == 1
        assert report.corrected == 1
        record = await load_record(session_factory)
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.period_end == T0 + timedelta(days=60)
        assert record.last_applied_event_id.startswith("sync:")

        async with session_factory() as session:
            result = await session.execute(
                select(SubscriptionTransition).where(
                    SubscriptionTransition.provenance == Provenance.SYNTHETIC.value,
                )
            )
            audit = result.scalar_one()
        assert audit.detail["correction"]["reason"] == "stale"
        assert audit.detail["correction"]["remote_status"] == "active"

        attempt = await load_attempt(session_factory, record.record_id)
        assert attempt.consecutive_failures == 0
        assert attempt.next_attempt_at == self.STALE_AT + timedelta(seconds=900)

    @pytest.mark.asyncio
    async def test_remote_cancellation_converges(
        self, pipeline, build_scheduler, session_factory, user_id,
    ):
        await pipeline.process(make_event(
            EventKind.ACTIVATED, user_id=user_id, period_end=T0 + timedelta(days=30),
        ))
        adapter = make_adapter(Provider.CARD_BILLING, remote(RemoteStatus.CANCELLED))

        await build_scheduler({Provider.CARD_BILLING: adapter}).sweep(self.STALE_AT)

        assert (await load_record(session_factory)).status == SubscriptionStatus.CANCELLED
        assert (await load_entitlement(session_factory, user_id)).tier_id == FREE_TIER_ID

    @pytest.mark.asyncio
    async def test_unknown_remote_changes_nothing(
        self, pipeline, build_scheduler, session_factory, user_id,
    ):
        await pipeline.process(make_event(
            EventKind.ACTIVATED, user_id=user_id, period_end=T0 + timedelta(days=30),
        ))
        adapter = make_adapter(Provider.CARD_BILLING, remote(RemoteStatus.UNKNOWN))

        report = await build_scheduler({Provider.CARD_BILLING: adapter}).sweep(self.STALE_AT)

        assert report.checked == 1
        assert report.corrected == 0
        assert (await load_record(session_factory)).status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_recent_records_are_not_queried(self, pipeline, build_scheduler, user_id):
        await pipeline.process(make_event(
            EventKind.ACTIVATED, user_id=user_id, period_end=T0 + timedelta(days=30),
        ))
        adapter = make_adapter(Provider.CARD_BILLING, remote(RemoteStatus.ACTIVE))

        # inside the 24h slack window
        report = await build_scheduler({Provider.CARD_BILLING: adapter}).sweep(
            T0 + timedelta(days=30, hours=23),
        )

        assert report.checked == 0
        adapter.get_subscription_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_checked_record_waits_for_next_attempt(self, pipeline, build_scheduler, user_id):
        await pipeline.process(make_event(
            EventKind.ACTIVATED, user_id=user_id, period_end=T0 + timedelta(days=30),
        ))
        adapter = make_adapter(Provider.CARD_BILLING, remote(RemoteStatus.UNKNOWN))
        scheduler = build_scheduler({Provider.CARD_BILLING: adapter})

        await scheduler.sweep(self.STALE_AT)
        await scheduler.sweep(self.STALE_AT + timedelta(minutes=5))
        assert adapter.get_subscription_status.await_count == 1

        await scheduler.sweep(self.STALE_AT + timedelta(minutes=15))
        assert adapter.get_subscription_status.await_count == 2

    @pytest.mark.asyncio
    async def test_record_without_period_end_is_queried_at_once(
        self, pipeline, build_scheduler, session_factory, user_id,
    ):
        # cancellation notice delivered before the activation that carries the period
        await pipeline.process(make_event(
            EventKind.AUTO_RENEW_DISABLED, at=T0 + timedelta(days=3), user_id=user_id,
        ))
        assert (await load_entitlement(session_factory, user_id)).revoke_at == T0 + timedelta(days=3)
        adapter = make_adapter(
            Provider.CARD_BILLING,
            remote(RemoteStatus.CANCEL_PENDING, period_end=T0 + timedelta(days=30)),
        )

        report = await build_scheduler({Provider.CARD_BILLING: adapter}).sweep(
            T0 + timedelta(days=3, minutes=5),
        )

        assert report.timers == 0
        assert report.checked == 1
        assert report.corrected == 1
        record = await load_record(session_factory)
        assert record.status == SubscriptionStatus.CANCEL_PENDING
        assert record.period_end == T0 + timedelta(days=30)
        entitlement = await load_entitlement(session_factory, user_id)
        assert entitlement.tier_id == PREMIUM_TIER_ID
        assert entitlement.revoke_at == T0 + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_same_ref_on_two_providers_both_corrected(
        self, pipeline, build_scheduler, session_factory, user_id,
    ):
        for provider in (Provider.CARD_BILLING, Provider.APP_STORE_IAP):
            await pipeline.process(make_event(
                EventKind.ACTIVATED,
                provider=provider,
                ref="1000",
                user_id=user_id,
                period_end=T0 + timedelta(days=30),
            ))
        adapters = {
            provider: make_adapter(provider, remote(RemoteStatus.EXPIRED, provider=provider, ref="1000"))
            for provider in (Provider.CARD_BILLING, Provider.APP_STORE_IAP)
        }

        report = await build_scheduler(adapters).sweep(T0 + timedelta(days=40))

        assert report.corrected == 2
        for provider in (Provider.CARD_BILLING, Provider.APP_STORE_IAP):
            record = await load_record(session_factory, provider=provider)
            assert record.status == SubscriptionStatus.EXPIRED
        assert (await load_entitlement(session_factory, user_id)).tier_id == FREE_TIER_ID


class TestQueryFailures:
    """Failures never revoke and eventually alert"""

    @pytest.mark.asyncio
    async def test_failure_preserves_access_and_backs_off(
        self, pipeline, build_scheduler, session_factory, user_id,
    ):
        await pipeline.process(make_event(
            EventKind.ACTIVATED, user_id=user_id, period_end=T0 + timedelta(days=30),
        ))
        adapter = make_adapter(
            Provider.CARD_BILLING,
            error=TransientProviderError("card_billing", "timeout", timed_out=True),
        )
        now = T0 + timedelta(days=32)

        report = await build_scheduler({Provider.CARD_BILLING: adapter}).sweep(now)

        assert report.failed == 1
        assert report.corrected == 0
        # initial call plus retries
        assert adapter.get_subscription_status.await_count == 4

        record = await load_record(session_factory)
        assert record.status == SubscriptionStatus.ACTIVE
        assert (await load_entitlement(session_factory, user_id)).tier_id == PREMIUM_TIER_ID

        attempt = await load_attempt(session_factory, record.record_id)
        assert attempt.consecutive_failures == 1
        assert "timeout" in attempt.last_error
        assert attempt.next_attempt_at == now + timedelta(seconds=900)

    @pytest.mark.asyncio
    async def test_alert_after_consecutive_failures(
        self, pipeline, build_scheduler, session_factory, user_id,
    ):
        await pipeline.process(make_event(
            EventKind.ACTIVATED, user_id=user_id, period_end=T0 + timedelta(days=30),
        ))
        adapter = make_adapter(
            Provider.CARD_BILLING,
            error=TransientProviderError("card_billing", "status 503 querying sub_1"),
        )
        scheduler = build_scheduler({Provider.CARD_BILLING: adapter})

        with patch("newrelic.agent.record_custom_event") as record_event:
            now = T0 + timedelta(days=32)
            for _ in range(6):
                await scheduler.sweep(now)
                now += timedelta(days=1)

        record_event.assert_called_once()
        event_type, params = record_event.call_args.args
        assert event_type == ALERT_EVENT_TYPE
        assert params["consecutive_failures"] == 5

        record = await load_record(session_factory)
        assert record.status == SubscriptionStatus.ACTIVE
        attempt = await load_attempt(session_factory, record.record_id)
        assert attempt.consecutive_failures == 6
        assert attempt.alerted_at is not None

    @pytest.mark.asyncio
    async def test_success_resets_failures(
        self, pipeline, build_scheduler, session_factory, user_id,
    ):
        await pipeline.process(make_event(
            EventKind.ACTIVATED, user_id=user_id, period_end=T0 + timedelta(days=30),
        ))
        adapter = make_adapter(
            Provider.CARD_BILLING,
            error=TransientProviderError("card_billing", "network error"),
        )
        scheduler = build_scheduler({Provider.CARD_BILLING: adapter})
        await scheduler.sweep(T0 + timedelta(days=32))

        adapter.get_subscription_status = AsyncMock(return_value=remote(RemoteStatus.UNKNOWN))
        await scheduler.sweep(T0 + timedelta(days=33))

        record = await load_record(session_factory)
        attempt = await load_attempt(session_factory, record.record_id)
        assert attempt.consecutive_failures == 0
        assert attempt.last_error is None


class TestRestore:
    """Restore requests query the user's store subscriptions once"""

    @pytest.mark.asyncio
    async def test_restore_queries_and_corrects(
        self, pipeline, build_scheduler, session_factory, user_id,
    ):
        await pipeline.process(make_event(
            EventKind.EXPIRED,
            ref=APPSTORE_REF,
            provider=Provider.APP_STORE_IAP,
            user_id=user_id,
        ))
        await pipeline.process(make_event(
            EventKind.ACTIVATED,
            event_id="cmd_restore",
            ref="provisional:cmd_restore",
            provider=Provider.APP_STORE_IAP,
            provenance=Provenance.PROVISIONAL,
            at=T0 + timedelta(minutes=1),
            user_id=user_id,
            provisional_kind=ProvisionalKind.RESTORE,
        ))
        adapter = make_adapter(
            Provider.APP_STORE_IAP,
            remote(
                RemoteStatus.ACTIVE,
                provider=Provider.APP_STORE_IAP,
                ref=APPSTORE_REF,
                period_end=T0 + timedelta(days=365),
                product_ref="com.example.renewals.premium.yearly.v1",
            ),
        )
        scheduler = build_scheduler({Provider.APP_STORE_IAP: adapter})

        report = await scheduler.sweep(T0 + timedelta(seconds=90))

        assert report.claims == 1
        assert report.corrected == 1
        adapter.get_subscription_status.assert_awaited_once_with(APPSTORE_REF)

        record = await load_record(session_factory, subscription_ref=APPSTORE_REF)
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.billing_cycle == BillingCycle.ANNUAL
        entitlement = await load_entitlement(session_factory, user_id)
        assert entitlement.tier_id == PREMIUM_TIER_ID
        assert entitlement.source_provider == Provider.APP_STORE_IAP

        again = await scheduler.sweep(T0 + timedelta(seconds=100))
        assert again.claims == 0
        adapter.get_subscription_status.assert_awaited_once()


class TestClaims:
    """Store subscriptions a client names on a purchase or restore"""

    YEARLY = "com.example.renewals.premium.yearly.v1"

    async def _claim(self, pipeline, user_id, kind=ProvisionalKind.PURCHASE, event_id="cmd_claim"):
        await pipeline.process(make_event(
            EventKind.ACTIVATED,
            event_id=event_id,
            ref=f"provisional:{event_id}",
            provider=Provider.APP_STORE_IAP,
            provenance=Provenance.PROVISIONAL,
            user_id=user_id,
            tier_id=PREMIUM_TIER_ID,
            provisional_kind=kind,
            claimed_ref=APPSTORE_REF,
        ))

    def _store(self, status, **kwargs):
        return remote(status, provider=Provider.APP_STORE_IAP, ref=APPSTORE_REF, **kwargs)

    @pytest.mark.asyncio
    async def test_confirmed_purchase_claim_grants(
        self, pipeline, build_scheduler, session_factory, user_id,
    ):
        await self._claim(pipeline, user_id)
        adapter = make_adapter(
            Provider.APP_STORE_IAP,
            self._store(
                RemoteStatus.ACTIVE, period_end=T0 + timedelta(days=365), product_ref=self.YEARLY,
            ),
        )
        scheduler = build_scheduler({Provider.APP_STORE_IAP: adapter})

        report = await scheduler.sweep(T0 + timedelta(seconds=20))

        assert report.claims == 1
        assert report.confirmed == 1
        adapter.get_subscription_status.assert_awaited_once_with(APPSTORE_REF)

        record = await load_record(session_factory, subscription_ref=APPSTORE_REF)
        assert record.user_id == user_id
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.billing_cycle == BillingCycle.ANNUAL
        assert record.period_end == T0 + timedelta(days=365)
        assert record.last_applied_event_id.startswith("sync:")

        hint = await load_record(session_factory, is_provisional=True)
        assert hint.claimed_ref == APPSTORE_REF
        assert hint.provisional_resolution == ProvisionalResolution.CORROBORATED

        entitlement = await load_entitlement(session_factory, user_id)
        assert entitlement.tier_id == PREMIUM_TIER_ID
        assert entitlement.source_record_id == record.record_id
        assert entitlement.source_provider == Provider.APP_STORE_IAP

        again = await scheduler.sweep(T0 + timedelta(seconds=30))
        assert again.claims == 0
        adapter.get_subscription_status.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_restore_claim_records_cancel_pending_subscription(
        self, pipeline, build_scheduler, session_factory, user_id,
    ):
        await self._claim(pipeline, user_id, kind=ProvisionalKind.RESTORE)
        adapter = make_adapter(
            Provider.APP_STORE_IAP,
            self._store(RemoteStatus.CANCEL_PENDING, period_end=T0 + timedelta(days=200)),
        )

        report = await build_scheduler({Provider.APP_STORE_IAP: adapter}).sweep(
            T0 + timedelta(seconds=20),
        )

        assert report.confirmed == 1
        record = await load_record(session_factory, subscription_ref=APPSTORE_REF)
        assert record.status == SubscriptionStatus.CANCEL_PENDING
        entitlement = await load_entitlement(session_factory, user_id)
        assert entitlement.tier_id == PREMIUM_TIER_ID
        assert entitlement.revoke_at == T0 + timedelta(days=200)

    @pytest.mark.asyncio
    async def test_restore_claim_for_known_subscription_is_queried_once(
        self, pipeline, build_scheduler, session_factory, user_id,
    ):
        await pipeline.process(make_event(
            EventKind.EXPIRED,
            ref=APPSTORE_REF,
            provider=Provider.APP_STORE_IAP,
            user_id=user_id,
        ))
        await self._claim(pipeline, user_id, kind=ProvisionalKind.RESTORE)
        adapter = make_adapter(
            Provider.APP_STORE_IAP,
            self._store(RemoteStatus.ACTIVE, period_end=T0 + timedelta(days=365), product_ref=self.YEARLY),
        )

        report = await build_scheduler({Provider.APP_STORE_IAP: adapter}).sweep(
            T0 + timedelta(seconds=20),
        )

        assert report.corrected == 1
        assert report.confirmed == 0
        adapter.get_subscription_status.assert_awaited_once_with(APPSTORE_REF)
        record = await load_record(session_factory, subscription_ref=APPSTORE_REF)
        assert record.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_claim_on_another_users_subscription_is_skipped(
        self, pipeline, build_scheduler, session_factory, user_id,
    ):
        owner = uuid.uuid4()
        await pipeline.process(make_event(
            EventKind.ACTIVATED,
            ref=APPSTORE_REF,
            provider=Provider.APP_STORE_IAP,
            user_id=owner,
            period_end=T0 + timedelta(days=30),
        ))
        await self._claim(pipeline, user_id)
        adapter = make_adapter(Provider.APP_STORE_IAP, self._store(RemoteStatus.ACTIVE))

        report = await build_scheduler({Provider.APP_STORE_IAP: adapter}).sweep(
            T0 + timedelta(seconds=20),
        )

        assert report.claims == 1
        assert report.confirmed == 0
        adapter.get_subscription_status.assert_not_awaited()
        record = await load_record(session_factory, subscription_ref=APPSTORE_REF)
        assert record.user_id == owner
        assert (await load_entitlement(session_factory, user_id)).tier_id == FREE_TIER_ID

    @pytest.mark.asyncio
    async def test_lapsed_subscription_is_not_recorded(
        self, pipeline, build_scheduler, session_factory, user_id,
    ):
        await self._claim(pipeline, user_id)
        adapter = make_adapter(Provider.APP_STORE_IAP, self._store(RemoteStatus.EXPIRED))

        report = await build_scheduler({Provider.APP_STORE_IAP: adapter}).sweep(
            T0 + timedelta(seconds=20),
        )

        assert report.confirmed == 0
        async with session_factory() as session:
            result = await session.execute(
                select(SubscriptionRecord).filter_by(subscription_ref=APPSTORE_REF)
            )
            assert result.scalar_one_or_none() is None

    @pytest.mark.asyncio
    async def test_failed_query_is_retried_after_backoff(
        self, pipeline, build_scheduler, session_factory, user_id,
    ):
        await self._claim(pipeline, user_id)
        adapter = make_adapter(
            Provider.APP_STORE_IAP,
            error=TransientProviderError("app_store_iap", "timeout", timed_out=True),
        )
        scheduler = build_scheduler({Provider.APP_STORE_IAP: adapter})
        now = T0 + timedelta(seconds=20)

        report = await scheduler.sweep(now)

        assert report.failed == 1
        assert report.confirmed == 0
        hint = await load_record(session_factory, is_provisional=True)
        attempt = await load_attempt(session_factory, hint.record_id)
        assert attempt.consecutive_failures == 1
        assert "timeout" in attempt.last_error

        adapter.get_subscription_status = AsyncMock(return_value=self._store(
            RemoteStatus.ACTIVE, period_end=T0 + timedelta(days=365), product_ref=self.YEARLY,
        ))
        # the hint has lapsed by now; the claim is still confirmed
        retry = await scheduler.sweep(attempt.next_attempt_at)

        assert retry.confirmed == 1
        record = await load_record(session_factory, subscription_ref=APPSTORE_REF)
        assert record.user_id == user_id
        assert (await load_entitlement(session_factory, user_id)).tier_id == PREMIUM_TIER_ID


class TestDivergence:
    """compare() and corrective_event()"""

    def _record(self, status=SubscriptionStatus.ACTIVE, period_end=T0 + timedelta(days=30)):
        return SubscriptionRecord(
            record_id=uuid.uuid4(),
            user_id=uuid.uuid4(),
            provider=Provider.CARD_BILLING,
            subscription_ref="sub_1",
            status=status,
            tier_id=PREMIUM_TIER_ID,
            billing_cycle=BillingCycle.MONTHLY,
            period_end=period_end,
            lineage=1,
            last_applied_event_id="evt_1",
            last_applied_observed_at=T0,
            is_provisional=False,
        )

    def test_unknown_never_diverges(self):
        compare(self._record(), remote(RemoteStatus.UNKNOWN))

    def test_matching_state_passes(self):
        compare(self._record(), remote(RemoteStatus.ACTIVE, period_end=T0 + timedelta(days=30)))

    def test_status_mismatch_diverges(self):
        with pytest.raises(ReconciliationDivergenceError) as exc_info:
            compare(self._record(), remote(RemoteStatus.GRACE))
        assert exc_info.value.remote_status == "grace"

    def test_later_remote_period_end_diverges(self):
        with pytest.raises(ReconciliationDivergenceError):
            compare(self._record(), remote(RemoteStatus.ACTIVE, period_end=T0 + timedelta(days=31)))

    def test_corrective_event_is_guarded_and_deterministic(self):
        record = self._record()
        now = T0 - timedelta(days=1)

        event = corrective_event(record, remote(RemoteStatus.EXPIRED), now, 42, "stale")
        again = corrective_event(record, remote(RemoteStatus.EXPIRED), now, 42, "stale")

        assert event.kind == EventKind.EXPIRED
        assert event.provenance == Provenance.SYNTHETIC
        assert event.expected_status == SubscriptionStatus.ACTIVE
        assert event.event_id == again.event_id == synthetic_event_id(
            Provider.CARD_BILLING, "sub_1", "expired", 42,
        )
        # never ordered before what was already applied
        assert event.observed_at > record.last_applied_observed_at

    def test_synthetic_id_depends_on_provider(self):
        card = synthetic_event_id(Provider.CARD_BILLING, "1000", "expired", 42)
        store = synthetic_event_id(Provider.APP_STORE_IAP, "1000", "expired", 42)

        assert card != store
        assert card == synthetic_event_id(Provider.CARD_BILLING, "1000", "expired", 42)


class TestLifecycle:
    """start/stop of the background task"""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, pipeline, session_factory, clock):
        scheduler = ReconciliationScheduler(
            pipeline,
            adapters={},
            session_factory=session_factory,
            clock=clock,
            interval_seconds=3600,
        )

        await scheduler.start()
        await scheduler.stop()

        assert scheduler._task is None
