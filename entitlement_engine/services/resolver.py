"""
Entitlement Resolver
====================

Pure, deterministic derivation of a user's entitlement from the set of
their subscription records.

Precedence: active > grace > cancel_pending > everything else. Ties go to
the later ``period_end``, then the later ``last_applied_observed_at``, then
the record id so the choice never depends on query order.

Provisional records never grant; an open purchase hint only shows up as
``pending_tier_id`` for client feedback.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
import hashlib
import json
from typing import Any, Iterable, Optional
import uuid

from entitlement_engine.core.catalog import FREE_TIER_ID, get_tier
from entitlement_engine.models.subscription import (
    GRANTING_STATUSES,
    Provider,
    ProvisionalKind,
    SubscriptionStatus,
)

_PRECEDENCE = {
    SubscriptionStatus.ACTIVE: 3,
    SubscriptionStatus.GRACE: 2,
    SubscriptionStatus.CANCEL_PENDING: 1,
}

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class Resolution:
    """Resolver output; everything ``UserEntitlement`` stores except timestamps."""

    user_id: uuid.UUID
    tier_id: str
    resource_limit: int
    source_provider: Optional[Provider] = None
    source_record_id: Optional[uuid.UUID] = None
    source_status: Optional[SubscriptionStatus] = None
    valid_until: Optional[datetime] = None
    revoke_at: Optional[datetime] = None
    pending_tier_id: Optional[str] = None
    pending_until: Optional[datetime] = None
    # record_id -> winning record_id for losing granting records, else None
    superseded: dict[uuid.UUID, Optional[uuid.UUID]] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.source_record_id is not None

    @property
    def status_hash(self) -> str:
        """sha256 over everything a reader can observe."""
        state = asdict(self)
        state.pop("superseded")
        encoded = json.dumps(state, sort_keys=True, default=_json_default)
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()

    def write_to(self, entitlement: Any) -> None:
        """Copy onto a ``UserEntitlement`` row."""
        entitlement.tier_id = self.tier_id
        entitlement.resource_limit = self.resource_limit
        entitlement.source_provider = self.source_provider
        entitlement.source_record_id = self.source_record_id
        entitlement.source_status = self.source_status
        entitlement.valid_until = self.valid_until
        entitlement.revoke_at = self.revoke_at
        entitlement.pending_tier_id = self.pending_tier_id
        entitlement.pending_until = self.pending_until
        entitlement.status_hash = self.status_hash


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if hasattr(value, "value"):
        return value.value
    raise TypeError(f"not serializable: {type(value).__name__}")


def _rank(record: Any) -> tuple:
    return (
        _PRECEDENCE[record.status],
        record.period_end or _EPOCH,
        record.last_applied_observed_at,
        str(record.record_id),
    )


def free_resolution(user_id: uuid.UUID) -> Resolution:
    return Resolution(
        user_id=user_id,
        tier_id=FREE_TIER_ID,
        resource_limit=get_tier(FREE_TIER_ID).resource_limit,
    )


def resolve(user_id: uuid.UUID, records: Iterable[Any]) -> Resolution:
    """
    Compute the entitlement for ``user_id`` from its subscription records.

    ``records`` are ``SubscriptionRecord`` rows (or anything exposing the
    same attributes).
    """
    records = list(records)
    authoritative = [r for r in records if not r.is_provisional]
    granting = [r for r in authoritative if r.status in GRANTING_STATUSES]
    winner = max(granting, key=_rank, default=None)

    superseded = {
        r.record_id: (
            winner.record_id
            if winner is not None and r.status in GRANTING_STATUSES and r is not winner
            else None
        )
        for r in authoritative
    }

    pending_tier_id = None
    pending_until = None
    if winner is None:
        hints = [
            r for r in records
            if r.is_open_provisional and r.provisional_kind == ProvisionalKind.PURCHASE
        ]
        hint = max(hints, key=lambda r: (r.provisional_expires_at, str(r.record_id)), default=None)
        if hint is not None:
            pending_tier_id = hint.tier_id
            pending_until = hint.provisional_expires_at

    if winner is None:
        base = free_resolution(user_id)
        return Resolution(
            user_id=user_id,
            tier_id=base.tier_id,
            resource_limit=base.resource_limit,
            pending_tier_id=pending_tier_id,
            pending_until=pending_until,
            superseded=superseded,
        )

    if winner.status == SubscriptionStatus.GRACE:
        valid_until = winner.grace_until
        revoke_at = winner.grace_until
    elif winner.status == SubscriptionStatus.CANCEL_PENDING:
        # No known period end: the paid period cannot be shown to still run,
        # so access ends now and the stale sweep asks the provider.
        valid_until = winner.period_end or winner.last_applied_observed_at
        revoke_at = valid_until
    else:
        valid_until = winner.period_end
        revoke_at = None

    tier = get_tier(winner.tier_id)
    return Resolution(
        user_id=user_id,
        tier_id=tier.tier_id,
        resource_limit=tier.resource_limit,
        source_provider=winner.provider,
        source_record_id=winner.record_id,
        source_status=winner.status,
        valid_until=valid_until,
        revoke_at=revoke_at,
        superseded=superseded,
    )
