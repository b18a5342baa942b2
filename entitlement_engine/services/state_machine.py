"""
Subscription State Machine
==========================

Pure transition function for one (user, provider subscription) record:

    apply(current_state | None, event, policy) -> Transition
    replay(events, policy) -> RecordState | None

No I/O. The pipeline loads and locks the record, calls ``apply`` and
persists whatever comes back.

Ordering rules:
    - Events order by ``(observed_at, event_id)``. An event older than the
      last applied one raises ``StaleEventError``, except ``Refunded``,
      which always applies.
    - ``refunded`` is absorbing.
    - Authoritative and synthetic events are provider state snapshots: the
      status follows the event kind, facts the event carries overwrite,
      missing facts keep their current value.
    - A stale event cannot be folded in incrementally, because the facts it
      carries may be ones newer events left out. The pipeline answers
      ``StaleEventError`` by rebuilding the record with ``replay`` over the
      subscription's full event log. Every delivery order therefore ends in
      the state that timestamp order produces.
    - ``Activated`` on a cancelled/expired record opens a new lineage.
    - Provisional events only open client hints on provisional records;
      they never touch authoritative records.
"""

from dataclasses import dataclass, fields, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable, Optional

from entitlement_engine.config import settings
from entitlement_engine.core.catalog import PREMIUM_TIER_ID
from entitlement_engine.core.errors import StaleEventError
from entitlement_engine.models.ledger import EventKind, LedgerOutcome
from entitlement_engine.models.subscription import (
    BillingCycle,
    Provider,
    ProvisionalKind,
    ProvisionalResolution,
    SubscriptionStatus,
)
from entitlement_engine.schemas.events import LifecycleEvent


class Intent(str, Enum):
    """Side effect a transition asks for. Recorded on the audit trail."""
    GRANT_ENTITLEMENT = "grant_entitlement"
    EXTEND_ENTITLEMENT = "extend_entitlement"
    START_GRACE_TIMER = "start_grace_timer"
    CLEAR_GRACE = "clear_grace"
    SCHEDULE_PERIOD_END = "schedule_period_end"
    ADJUST_ENTITLEMENT = "adjust_entitlement"
    REVOKE_ENTITLEMENT = "revoke_entitlement"
    NONE = "none"


STATUS_FOR_KIND = {
    EventKind.ACTIVATED: SubscriptionStatus.ACTIVE,
    EventKind.RENEWED: SubscriptionStatus.ACTIVE,
    EventKind.PLAN_CHANGED: SubscriptionStatus.ACTIVE,
    EventKind.RENEWAL_FAILED: SubscriptionStatus.GRACE,
    EventKind.AUTO_RENEW_DISABLED: SubscriptionStatus.CANCEL_PENDING,
    EventKind.CANCELLED: SubscriptionStatus.CANCELLED,
    EventKind.EXPIRED: SubscriptionStatus.EXPIRED,
    EventKind.REFUNDED: SubscriptionStatus.REFUNDED,
}


@dataclass(frozen=True)
class LifecyclePolicy:
    """Time windows the transition function needs."""

    grace_window_card: timedelta = timedelta(days=7)
    grace_window_appstore: timedelta = timedelta(days=16)
    provisional_window: timedelta = timedelta(seconds=60)
    default_tier_id: str = PREMIUM_TIER_ID

    @classmethod
    def from_settings(cls) -> "LifecyclePolicy":
        return cls(
            grace_window_card=timedelta(days=settings.GRACE_PERIOD_DAYS_CARD),
            grace_window_appstore=timedelta(days=settings.GRACE_PERIOD_DAYS_APPSTORE),
            provisional_window=settings.provisional_window,
        )

    def grace_window(self, provider: Provider) -> timedelta:
        if provider == Provider.APP_STORE_IAP:
            return self.grace_window_appstore
        return self.grace_window_card


@dataclass(frozen=True)
class RecordState:
    """Snapshot of the mutable columns of a ``SubscriptionRecord``."""

    status: SubscriptionStatus
    tier_id: str
    billing_cycle: BillingCycle
    product_ref: Optional[str]
    period_end: Optional[datetime]
    grace_until: Optional[datetime]
    lineage: int
    last_applied_event_id: str
    last_applied_observed_at: datetime
    is_provisional: bool = False
    provisional_kind: Optional[ProvisionalKind] = None
    provisional_expires_at: Optional[datetime] = None
    provisional_resolution: Optional[ProvisionalResolution] = None
    claimed_ref: Optional[str] = None

    @classmethod
    def from_record(cls, record: Any) -> "RecordState":
        return cls(**{f.name: getattr(record, f.name) for f in fields(cls)})

    def write_to(self, record: Any) -> None:
        for f in fields(self):
            setattr(record, f.name, getattr(self, f.name))

    @property
    def ordering_key(self) -> tuple[datetime, str]:
        return (self.last_applied_observed_at, self.last_applied_event_id)

    @property
    def is_open_provisional(self) -> bool:
        return (
            self.is_provisional
            and self.provisional_resolution == ProvisionalResolution.PENDING
        )


@dataclass(frozen=True)
class Transition:
    """Result of applying one event to one record."""

    previous: Optional[RecordState]
    next: Optional[RecordState]
    intents: tuple[Intent, ...]
    outcome: LedgerOutcome
    reason: str

    @property
    def changed(self) -> bool:
        return self.next is not None and self.next != self.previous


def apply(
    current: Optional[RecordState],
    event: LifecycleEvent,
    policy: Optional[LifecyclePolicy] = None,
) -> Transition:
    """
    Apply ``event`` to ``current`` (None when the record does not exist yet).

    Raises:
        StaleEventError: the event is older than the last applied event and
            is not a refund.
    """
    policy = policy or LifecyclePolicy()

    if event.kind == EventKind.UNRECOGNIZED:
        return _ignored(current, "unrecognized event kind")

    if event.is_provisional:
        return _apply_provisional(current, event, policy)

    if current is not None and current.is_provisional:
        return _apply_to_provisional(current, event)

    if current is None:
        if event.expected_status is not None:
            return _ignored(None, "guarded event for a record that does not exist")
        created = _snapshot(None, event, policy)
        return Transition(
            previous=None,
            next=created,
            intents=_intents(None, created, event.kind),
            outcome=LedgerOutcome.APPLIED,
            reason="created",
        )

    if current.status == SubscriptionStatus.REFUNDED:
        return _ignored(current, "refunded is absorbing")

    if event.kind != EventKind.REFUNDED and event.ordering_key < current.ordering_key:
        raise StaleEventError(
            event.event_id, event.observed_at, current.last_applied_observed_at,
        )

    if event.expected_status is not None and current.status != event.expected_status:
        return _ignored(current, f"record already moved to {current.status.value}")

    updated = _snapshot(current, event, policy)
    if current.status.is_terminal and event.kind == EventKind.ACTIVATED:
        reason = "new lineage"
    elif current.status.is_terminal and updated.status.grants_access:
        reason = "reactivated"
    else:
        reason = f"{current.status.value} -> {updated.status.value}"

    return Transition(
        previous=current,
        next=updated,
        intents=_intents(current, updated, event.kind),
        outcome=LedgerOutcome.APPLIED,
        reason=reason,
    )


def replay(
    events: Iterable[LifecycleEvent],
    policy: Optional[LifecyclePolicy] = None,
) -> Optional[RecordState]:
    """
    Fold ``events`` into a record in ``(observed_at, event_id)`` order.

    Provisional events are skipped; they never touch authoritative records.
    Returns None when no event creates the record.
    """
    state: Optional[RecordState] = None
    for event in sorted(events, key=lambda e: e.ordering_key):
        if event.is_provisional:
            continue
        state = apply(state, event, policy).next
    return state


def corroborate(current: RecordState) -> RecordState:
    """Close an open provisional hint because provider truth arrived."""
    if not current.is_open_provisional:
        return current
    return replace(current, provisional_resolution=ProvisionalResolution.CORROBORATED)


# =============================================================================
# Internals
# =============================================================================

def _ignored(current: Optional[RecordState], reason: str) -> Transition:
    return Transition(
        previous=current,
        next=current,
        intents=(Intent.NONE,),
        outcome=LedgerOutcome.IGNORED,
        reason=reason,
    )


def _advance_ordering(
    current: Optional[RecordState],
    event: LifecycleEvent,
) -> tuple[str, datetime]:
    if current is None or event.ordering_key > current.ordering_key:
        return event.event_id, event.observed_at
    return current.last_applied_event_id, current.last_applied_observed_at


def _snapshot(
    current: Optional[RecordState],
    event: LifecycleEvent,
    policy: LifecyclePolicy,
) -> RecordState:
    status = STATUS_FOR_KIND[event.kind]

    grace_until = None
    if status == SubscriptionStatus.GRACE:
        grace_until = event.grace_until or event.observed_at + policy.grace_window(event.provider)

    lineage = current.lineage if current is not None else 1
    if current is not None and current.status.is_terminal and event.kind == EventKind.ACTIVATED:
        lineage += 1

    last_event_id, last_observed_at = _advance_ordering(current, event)

    return RecordState(
        status=status,
        tier_id=event.tier_id or (current.tier_id if current else policy.default_tier_id),
        billing_cycle=event.billing_cycle or (current.billing_cycle if current else BillingCycle.NONE),
        product_ref=event.product_ref or (current.product_ref if current else None),
        period_end=event.period_end or (current.period_end if current else None),
        grace_until=grace_until,
        lineage=lineage,
        last_applied_event_id=last_event_id,
        last_applied_observed_at=last_observed_at,
    )


def _apply_provisional(
    current: Optional[RecordState],
    event: LifecycleEvent,
    policy: LifecyclePolicy,
) -> Transition:
    if current is not None or event.kind != EventKind.ACTIVATED:
        return _ignored(current, "provisional events only open new hints")

    hint = RecordState(
        status=SubscriptionStatus.ACTIVE,
        tier_id=event.tier_id or policy.default_tier_id,
        billing_cycle=event.billing_cycle or BillingCycle.NONE,
        product_ref=event.product_ref,
        period_end=None,
        grace_until=None,
        lineage=1,
        last_applied_event_id=event.event_id,
        last_applied_observed_at=event.observed_at,
        is_provisional=True,
        provisional_kind=event.provisional_kind or ProvisionalKind.PURCHASE,
        provisional_expires_at=event.observed_at + policy.provisional_window,
        provisional_resolution=ProvisionalResolution.PENDING,
        claimed_ref=event.claimed_ref,
    )
    return Transition(
        previous=None,
        next=hint,
        intents=(Intent.NONE,),
        outcome=LedgerOutcome.PROVISIONAL_RECORDED,
        reason="provisional hint recorded",
    )


def _apply_to_provisional(current: RecordState, event: LifecycleEvent) -> Transition:
    if not current.is_open_provisional:
        return _ignored(current, "provisional hint already closed")
    if event.kind != EventKind.EXPIRED:
        return _ignored(current, "provisional hints only lapse")

    last_event_id, last_observed_at = _advance_ordering(current, event)
    lapsed = replace(
        current,
        status=SubscriptionStatus.EXPIRED,
        provisional_resolution=ProvisionalResolution.LAPSED,
        last_applied_event_id=last_event_id,
        last_applied_observed_at=last_observed_at,
    )
    return Transition(
        previous=current,
        next=lapsed,
        intents=(Intent.NONE,),
        outcome=LedgerOutcome.APPLIED,
        reason="provisional hint lapsed",
    )


def _intents(
    previous: Optional[RecordState],
    updated: RecordState,
    kind: EventKind,
) -> tuple[Intent, ...]:
    was_granting = previous is not None and previous.status.grants_access
    now_granting = updated.status.grants_access
    prev_status = previous.status if previous is not None else None

    intents: list[Intent] = []
    if now_granting and not was_granting:
        intents.append(Intent.GRANT_ENTITLEMENT)
    elif was_granting and not now_granting:
        intents.append(Intent.REVOKE_ENTITLEMENT)

    if now_granting:
        if updated.status == SubscriptionStatus.GRACE and prev_status != SubscriptionStatus.GRACE:
            intents.append(Intent.START_GRACE_TIMER)
        if prev_status == SubscriptionStatus.GRACE and updated.status != SubscriptionStatus.GRACE:
            intents.append(Intent.CLEAR_GRACE)
        if (
            updated.status == SubscriptionStatus.CANCEL_PENDING
            and prev_status != SubscriptionStatus.CANCEL_PENDING
        ):
            intents.append(Intent.SCHEDULE_PERIOD_END)
        if was_granting and kind == EventKind.RENEWED:
            intents.append(Intent.EXTEND_ENTITLEMENT)
        if was_granting and (
            kind == EventKind.PLAN_CHANGED
            or updated.tier_id != previous.tier_id
            or updated.billing_cycle != previous.billing_cycle
        ):
            intents.append(Intent.ADJUST_ENTITLEMENT)

    return tuple(intents) or (Intent.NONE,)
