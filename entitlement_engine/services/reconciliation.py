"""
Reconciliation Scheduler
========================

Background asyncio task that repairs what webhooks alone cannot:

    1. lapse provisional hints nobody confirmed in time
    2. fire time-based transitions (grace ended, cancel-pending period ended)
    3. query providers about records whose period ended a while ago without
       any renewal news, or that have no period end at all, and correct
       local state when the provider disagrees
    4. run provider queries for client claims: restore requests, and store
       subscriptions a purchase or restore names that the engine has not
       seen yet

Every correction is a synthetic lifecycle event pushed through the same
pipeline as webhooks. Synthetic ids are deterministic
(``sha256(provider|subscription_ref|status|bucket)``) so overlapping sweeps
collapse in the idempotency ledger.

Provider calls happen outside any database transaction. A query that fails
(timeout, 5xx, network) never produces a revoking event; the attempt is
recorded and rescheduled with backoff, and an operational alert fires after
``RECONCILE_ALERT_AFTER_FAILURES`` consecutive failures.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional
import uuid

import newrelic.agent
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlement_engine.config import settings
from entitlement_engine.core.catalog import tier_for_product
from entitlement_engine.core.errors import (
    ReconciliationDivergenceError,
    TransientProviderError,
)
from entitlement_engine.db.base import utcnow
from entitlement_engine.models.entitlement import ReconciliationAttempt
from entitlement_engine.models.ledger import EventKind, Provenance
from entitlement_engine.models.subscription import (
    GRANTING_STATUSES,
    Provider,
    ProvisionalKind,
    ProvisionalResolution,
    SubscriptionRecord,
    SubscriptionStatus,
)
from entitlement_engine.schemas.events import (
    LifecycleEvent,
    ProviderSubscriptionStatus,
    RemoteStatus,
)
from entitlement_engine.services.pipeline import EntitlementPipeline
from entitlement_engine.services.providers import (
    ProviderAdapter,
    build_default_adapters,
    query_with_retry,
)
from entitlement_engine.services.state_machine import STATUS_FOR_KIND

logger = logging.getLogger(__name__)

ALERT_EVENT_TYPE = "EntitlementReconciliationAlert"
MAX_RESCHEDULE = timedelta(hours=24)

_KIND_FOR_REMOTE = {
    RemoteStatus.ACTIVE: EventKind.RENEWED,
    RemoteStatus.GRACE: EventKind.RENEWAL_FAILED,
    RemoteStatus.CANCEL_PENDING: EventKind.AUTO_RENEW_DISABLED,
    RemoteStatus.CANCELLED: EventKind.CANCELLED,
    RemoteStatus.EXPIRED: EventKind.EXPIRED,
    RemoteStatus.REFUNDED: EventKind.REFUNDED,
}

# Only granting provider states are worth recording for an unseen claim
_KIND_FOR_CLAIM = {
    RemoteStatus.ACTIVE: EventKind.ACTIVATED,
    RemoteStatus.GRACE: EventKind.RENEWAL_FAILED,
    RemoteStatus.CANCEL_PENDING: EventKind.AUTO_RENEW_DISABLED,
}


def synthetic_event_id(provider: Provider, subscription_ref: str, status: str, bucket: int) -> str:
    digest = hashlib.sha256(
        f"{provider.value}|{subscription_ref}|{status}|{bucket}".encode("utf-8")
    )
    return f"sync:{digest.hexdigest()}"


def _after(record: SubscriptionRecord, at: datetime) -> datetime:
    """``at``, pushed past the record's last applied event if needed."""
    floor = record.last_applied_observed_at + timedelta(microseconds=1)
    return max(at, floor)


def compare(record: SubscriptionRecord, remote: ProviderSubscriptionStatus) -> None:
    """
    Check a local record against what the provider reports.

    ``unknown`` remote status is no evidence either way and never diverges.

    Raises:
        ReconciliationDivergenceError: the provider disagrees on status or
            reports a later period end.
    """
    kind = _KIND_FOR_REMOTE.get(remote.status)
    if kind is None:
        return

    expected = STATUS_FOR_KIND[kind]
    if record.status != expected:
        raise ReconciliationDivergenceError(
            record.subscription_ref, record.status.value, remote.status.value,
        )
    if (
        remote.period_end is not None
        and (record.period_end is None or remote.period_end > record.period_end)
    ):
        raise ReconciliationDivergenceError(
            record.subscription_ref,
            record.status.value,
            remote.status.value,
            local_period_end=record.period_end.isoformat() if record.period_end else None,
            remote_period_end=remote.period_end.isoformat(),
        )


def corrective_event(
    record: SubscriptionRecord,
    remote: ProviderSubscriptionStatus,
    now: datetime,
    bucket: int,
    reason: str,
) -> LifecycleEvent:
    """Synthetic event that moves ``record`` to what the provider reported."""
    kind = _KIND_FOR_REMOTE[remote.status]
    tier_id = billing_cycle = None
    if remote.product_ref:
        tier_id, billing_cycle = tier_for_product(remote.product_ref, record.billing_cycle)

    return LifecycleEvent(
        event_id=synthetic_event_id(
            record.provider, record.subscription_ref, remote.status.value, bucket,
        ),
        provider=record.provider,
        subscription_ref=record.subscription_ref,
        kind=kind,
        observed_at=_after(record, now),
        provenance=Provenance.SYNTHETIC,
        raw_provenance={
            "source": "reconciliation",
            "reason": reason,
            "local_status": record.status.value,
            "remote_status": remote.status.value,
            "remote": remote.raw,
        },
        user_id=record.user_id,
        product_ref=remote.product_ref,
        tier_id=tier_id,
        billing_cycle=billing_cycle,
        period_end=remote.period_end,
        grace_until=remote.grace_until,
        expected_status=record.status,
    )


def claim_event(
    hint: SubscriptionRecord,
    remote: ProviderSubscriptionStatus,
    now: datetime,
    bucket: int,
) -> LifecycleEvent:
    """Synthetic event recording a claimed subscription the provider confirmed."""
    product_ref = remote.product_ref or hint.product_ref
    tier_id, billing_cycle = tier_for_product(product_ref, hint.billing_cycle)

    return LifecycleEvent(
        event_id=synthetic_event_id(
            hint.provider, hint.claimed_ref, f"claim:{remote.status.value}", bucket,
        ),
        provider=hint.provider,
        subscription_ref=hint.claimed_ref,
        kind=_KIND_FOR_CLAIM[remote.status],
        observed_at=now,
        provenance=Provenance.SYNTHETIC,
        raw_provenance={
            "source": "client_claim",
            "claim_ref": hint.subscription_ref,
            "remote_status": remote.status.value,
            "remote": remote.raw,
        },
        user_id=hint.user_id,
        product_ref=product_ref,
        tier_id=tier_id,
        billing_cycle=billing_cycle,
        period_end=remote.period_end,
        grace_until=remote.grace_until,
    )


@dataclass
class SweepReport:
    """Counts from one sweep."""

    lapsed: int = 0
    timers: int = 0
    checked: int = 0
    corrected: int = 0
    failed: int = 0
    confirmed: int = 0
    claims: int = 0


class ReconciliationScheduler:
    """Periodic sweep over subscription records."""

    def __init__(
        self,
        pipeline: EntitlementPipeline,
        adapters: Optional[dict[Provider, ProviderAdapter]] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Callable[[], datetime] = utcnow,
        interval_seconds: Optional[float] = None,
    ):
        self.pipeline = pipeline
        self.adapters = adapters if adapters is not None else build_default_adapters()
        self._session_factory = session_factory
        self._clock = clock
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None
            else settings.RECONCILE_INTERVAL_SECONDS
        )
        self.bucket_seconds = settings.RECONCILE_BUCKET_SECONDS
        self.batch_size = settings.RECONCILE_BATCH_SIZE
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = self.pipeline.session_factory
        return self._session_factory

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "ReconciliationScheduler started (interval=%ss)", self.interval_seconds,
        )

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=10)
            except asyncio.TimeoutError:
                logger.warning("ReconciliationScheduler did not stop in time; cancelling")
                self._task.cancel()
            self._task = None
        logger.info("ReconciliationScheduler stopped")

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.sweep(self._clock())
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Reconciliation sweep failed")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    # -- sweep -------------------------------------------------------------

    async def sweep(self, now: datetime) -> SweepReport:
        """Run every pass once, in order."""
        report = SweepReport()
        report.lapsed = await self._lapse_provisionals(now)
        report.timers = await self._fire_timers(now)
        await self._reconcile_stale(now, report)
        report.claims = await self._process_claims(now, report)

        if report.lapsed or report.timers or report.corrected or report.failed or report.claims:
            logger.info(
                "Reconciliation sweep: lapsed=%d timers=%d checked=%d corrected=%d "
                "failed=%d claims=%d confirmed=%d",
                report.lapsed,
                report.timers,
                report.checked,
                report.corrected,
                report.failed,
                report.claims,
                report.confirmed,
            )
        return report

    def _bucket(self, moment: datetime) -> int:
        return int(moment.timestamp()) // self.bucket_seconds

    async def _load(self, stmt) -> list[SubscriptionRecord]:
        async with self.session_factory() as session:
            result = await session.execute(stmt.limit(self.batch_size))
            return list(result.scalars())

    # -- pass 1: provisional lapse -----------------------------------------

    async def _lapse_provisionals(self, now: datetime) -> int:
        hints = await self._load(
            select(SubscriptionRecord).where(
                SubscriptionRecord.is_provisional.is_(True),
                SubscriptionRecord.provisional_resolution == ProvisionalResolution.PENDING,
                SubscriptionRecord.provisional_expires_at <= now,
            )
        )
        for hint in hints:
            deadline = hint.provisional_expires_at
            await self.pipeline.process(LifecycleEvent(
                event_id=synthetic_event_id(
                    hint.provider, hint.subscription_ref, "lapsed", int(deadline.timestamp()),
                ),
                provider=hint.provider,
                subscription_ref=hint.subscription_ref,
                kind=EventKind.EXPIRED,
                observed_at=_after(hint, deadline),
                provenance=Provenance.SYNTHETIC,
                raw_provenance={"source": "provisional_lapse"},
                user_id=hint.user_id,
                expected_status=SubscriptionStatus.ACTIVE,
            ))
        return len(hints)

    # -- pass 2: timers ----------------------------------------------------

    async def _fire_timers(self, now: datetime) -> int:
        records = await self._load(
            select(SubscriptionRecord).where(
                SubscriptionRecord.is_provisional.is_(False),
                or_(
                    and_(
                        SubscriptionRecord.status == SubscriptionStatus.GRACE,
                        SubscriptionRecord.grace_until <= now,
                    ),
                    and_(
                        SubscriptionRecord.status == SubscriptionStatus.CANCEL_PENDING,
                        SubscriptionRecord.period_end <= now,
                    ),
                ),
            )
        )
        for record in records:
            if record.status == SubscriptionStatus.GRACE:
                kind, deadline, source = EventKind.EXPIRED, record.grace_until, "grace_elapsed"
            else:
                kind, deadline, source = EventKind.CANCELLED, record.period_end, "period_elapsed"

            await self.pipeline.process(LifecycleEvent(
                event_id=synthetic_event_id(
                    record.provider, record.subscription_ref, source, int(deadline.timestamp()),
                ),
                provider=record.provider,
                subscription_ref=record.subscription_ref,
                kind=kind,
                observed_at=_after(record, deadline),
                provenance=Provenance.SYNTHETIC,
                raw_provenance={"source": source, "deadline": deadline.isoformat()},
                user_id=record.user_id,
                expected_status=record.status,
            ))
        return len(records)

    # -- pass 3: stale records ---------------------------------------------

    def _slack(self, provider: Provider) -> timedelta:
        if provider == Provider.APP_STORE_IAP:
            return timedelta(hours=settings.RECONCILE_SLACK_HOURS_APPSTORE)
        return timedelta(hours=settings.RECONCILE_SLACK_HOURS_CARD)

    async def _reconcile_stale(self, now: datetime, report: SweepReport) -> None:
        for provider, adapter in self.adapters.items():
            records = await self._load(
                select(SubscriptionRecord)
                .outerjoin(
                    ReconciliationAttempt,
                    ReconciliationAttempt.record_id == SubscriptionRecord.record_id,
                )
                .where(
                    SubscriptionRecord.provider == provider,
                    SubscriptionRecord.is_provisional.is_(False),
                    SubscriptionRecord.status.in_(GRANTING_STATUSES),
                    # No period end means nothing local says when access ends
                    or_(
                        SubscriptionRecord.period_end.is_(None),
                        SubscriptionRecord.period_end < now - self._slack(provider),
                    ),
                    or_(
                        ReconciliationAttempt.record_id.is_(None),
                        ReconciliationAttempt.next_attempt_at <= now,
                    ),
                )
                .order_by(SubscriptionRecord.period_end.is_not(None), SubscriptionRecord.period_end)
            )
            for record in records:
                report.checked += 1
                error = await self._reconcile_record(adapter, record, now, report, "stale")
                await self._record_attempt(record.record_id, now, error)

    async def _reconcile_record(
        self,
        adapter: ProviderAdapter,
        record: SubscriptionRecord,
        now: datetime,
        report: SweepReport,
        reason: str,
    ) -> Optional[str]:
        """Query and correct one record. Returns None on success, else the error."""
        try:
            remote = await query_with_retry(adapter, record.subscription_ref)
        except TransientProviderError as exc:
            report.failed += 1
            logger.warning("Provider query for %s failed: %s", record.subscription_ref, exc)
            return str(exc)

        try:
            compare(record, remote)
        except ReconciliationDivergenceError as exc:
            logger.warning("Reconciliation divergence (%s): %s", reason, exc)
            result = await self.pipeline.process(
                corrective_event(record, remote, now, self._bucket(now), reason)
            )
            report.corrected += 1
            logger.info(
                "Corrected %s via %s: %s", record.subscription_ref, result.event_id, result.outcome.value,
            )
        return None

    async def _record_attempt(
        self,
        record_id: uuid.UUID,
        now: datetime,
        error: Optional[str],
    ) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                attempt = await session.get(ReconciliationAttempt, record_id, with_for_update=True)
                if attempt is None:
                    attempt = ReconciliationAttempt(record_id=record_id, consecutive_failures=0)
                    session.add(attempt)

                attempt.last_attempt_at = now
                retry_after = timedelta(seconds=settings.RECONCILE_RETRY_AFTER_SECONDS)
                if error is None:
                    attempt.consecutive_failures = 0
                    attempt.last_error = None
                    attempt.alerted_at = None
                    attempt.next_attempt_at = now + retry_after
                    return

                attempt.consecutive_failures += 1
                attempt.last_error = error[:2000]
                backoff = retry_after * (2 ** min(attempt.consecutive_failures - 1, 10))
                attempt.next_attempt_at = now + min(backoff, MAX_RESCHEDULE)

                if (
                    attempt.consecutive_failures >= settings.RECONCILE_ALERT_AFTER_FAILURES
                    and attempt.alerted_at is None
                ):
                    attempt.alerted_at = now
                    self._alert(record_id, attempt.consecutive_failures, error)

    @staticmethod
    def _alert(record_id: uuid.UUID, failures: int, error: str) -> None:
        logger.error(
            "Reconciliation for record %s failed %d times in a row: %s",
            record_id,
            failures,
            error,
        )
        newrelic.agent.record_custom_event(ALERT_EVENT_TYPE, {
            "record_id": str(record_id),
            "consecutive_failures": failures,
            "error": error[:255],
            "environment": settings.ENVIRONMENT,
        })

    # -- pass 4: client claims ---------------------------------------------

    async def _process_claims(self, now: datetime, report: SweepReport) -> int:
        # Claims may already have lapsed; the query still runs once.
        hints = await self._load(
            select(SubscriptionRecord)
            .outerjoin(
                ReconciliationAttempt,
                ReconciliationAttempt.record_id == SubscriptionRecord.record_id,
            )
            .where(
                SubscriptionRecord.is_provisional.is_(True),
                or_(
                    SubscriptionRecord.provisional_kind == ProvisionalKind.RESTORE,
                    SubscriptionRecord.claimed_ref.is_not(None),
                ),
                or_(
                    ReconciliationAttempt.record_id.is_(None),
                    and_(
                        ReconciliationAttempt.consecutive_failures > 0,
                        ReconciliationAttempt.next_attempt_at <= now,
                    ),
                ),
            )
        )

        for hint in hints:
            error = None
            if hint.claimed_ref:
                error = await self._confirm_claim(hint, now, report)

            checked = 0
            if hint.provisional_kind == ProvisionalKind.RESTORE:
                records = await self._load(
                    select(SubscriptionRecord).where(
                        SubscriptionRecord.user_id == hint.user_id,
                        SubscriptionRecord.is_provisional.is_(False),
                    )
                )
                for record in records:
                    adapter = self.adapters.get(record.provider)
                    if adapter is None or self._is_claimed(hint, record):
                        continue
                    checked += 1
                    report.checked += 1
                    error = await self._reconcile_record(adapter, record, now, report, "restore") or error

            await self._record_attempt(hint.record_id, now, error)
            logger.info(
                "Client %s claim for user %s: claimed=%s, %d known subscription(s) checked%s",
                hint.provisional_kind.value if hint.provisional_kind else "purchase",
                hint.user_id,
                hint.claimed_ref,
                checked,
                f", errors: {error}" if error else "",
            )
        return len(hints)

    @staticmethod
    def _is_claimed(hint: SubscriptionRecord, record: SubscriptionRecord) -> bool:
        return record.provider == hint.provider and record.subscription_ref == hint.claimed_ref

    async def _confirm_claim(
        self,
        hint: SubscriptionRecord,
        now: datetime,
        report: SweepReport,
    ) -> Optional[str]:
        """
        Ask the provider about the store subscription a client named.

        A subscription the user already has is reconciled like any other
        record. One linked to a different user is left alone. An unseen one
        that the provider reports as granting is recorded for the user
        through a synthetic event. Returns None on success, else the error.
        """
        adapter = self.adapters.get(hint.provider)
        if adapter is None:
            return None

        owners = await self._load(
            select(SubscriptionRecord).where(
                SubscriptionRecord.provider == hint.provider,
                SubscriptionRecord.subscription_ref == hint.claimed_ref,
                SubscriptionRecord.is_provisional.is_(False),
            )
        )
        report.checked += 1
        own = next((r for r in owners if r.user_id == hint.user_id), None)
        if own is not None:
            return await self._reconcile_record(adapter, own, now, report, "claim")
        if owners:
            logger.warning(
                "User %s claimed %s subscription %s, which belongs to another user",
                hint.user_id,
                hint.provider.value,
                hint.claimed_ref,
            )
            return None

        try:
            remote = await query_with_retry(adapter, hint.claimed_ref)
        except TransientProviderError as exc:
            report.failed += 1
            logger.warning("Provider query for claim %s failed: %s", hint.claimed_ref, exc)
            return str(exc)

        if remote.status not in _KIND_FOR_CLAIM:
            logger.info(
                "Claimed %s subscription %s is %s; nothing to record",
                hint.provider.value,
                hint.claimed_ref,
                remote.status.value,
            )
            return None

        result = await self.pipeline.process(claim_event(hint, remote, now, self._bucket(now)))
        report.confirmed += 1
        logger.info(
            "Confirmed claimed subscription %s for user %s via %s: %s",
            hint.claimed_ref,
            hint.user_id,
            result.event_id,
            result.outcome.value,
        )
        return None
