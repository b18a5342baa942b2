"""
Subscription Models
===================

SQLAlchemy models for provider subscriptions and their transition history.

A ``SubscriptionRecord`` exists per (user, provider, provider subscription).
It is only ever written by the entitlement pipeline, and never deleted:
terminal records stay around for audit and re-subscription history.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
import uuid

from sqlalchemy import (
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from entitlement_engine.db.base import Base, TimestampMixin, utcnow, value_enum


class Provider(str, Enum):
    """Payment providers that can originate lifecycle events."""
    CARD_BILLING = "card_billing"
    APP_STORE_IAP = "app_store_iap"


class SubscriptionStatus(str, Enum):
    """Subscription status values."""
    ACTIVE = "active"
    GRACE = "grace"
    CANCEL_PENDING = "cancel_pending"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"

    @property
    def grants_access(self) -> bool:
        return self in GRANTING_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in (
            SubscriptionStatus.CANCELLED,
            SubscriptionStatus.EXPIRED,
            SubscriptionStatus.REFUNDED,
        )


GRANTING_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.GRACE,
    SubscriptionStatus.CANCEL_PENDING,
})


class BillingCycle(str, Enum):
    """Billing cadence of a paid plan."""
    MONTHLY = "monthly"
    ANNUAL = "annual"
    NONE = "none"


class ProvisionalKind(str, Enum):
    """What the client claimed when it submitted a provisional hint."""
    PURCHASE = "purchase"
    RESTORE = "restore"


class ProvisionalResolution(str, Enum):
    """How a provisional record was closed."""
    PENDING = "pending"
    CORROBORATED = "corroborated"
    LAPSED = "lapsed"


class SubscriptionRecord(Base, TimestampMixin):
    """
    Local view of one provider subscription for one user.

    ``last_applied_observed_at`` only moves forward; it is what the state
    machine uses to reject stale deliveries.
    """

    __tablename__ = "subscription_records"

    record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    # Composite natural key
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    provider: Mapped[Provider] = mapped_column(value_enum(Provider), nullable=False)
    subscription_ref: Mapped[str] = mapped_column(String(255), nullable=False)

    # State
    status: Mapped[SubscriptionStatus] = mapped_column(
        value_enum(SubscriptionStatus),
        nullable=False,
    )
    tier_id: Mapped[str] = mapped_column(String(50), nullable=False)
    billing_cycle: Mapped[BillingCycle] = mapped_column(
        value_enum(BillingCycle),
        default=BillingCycle.NONE,
        nullable=False,
    )
    product_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    period_end: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    grace_until: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    lineage: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Ordering
    last_applied_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    last_applied_observed_at: Mapped[datetime] = mapped_column(nullable=False)

    # Provisional (client-originated) bookkeeping
    is_provisional: Mapped[bool] = mapped_column(default=False, nullable=False)
    provisional_kind: Mapped[Optional[ProvisionalKind]] = mapped_column(
        value_enum(ProvisionalKind),
        nullable=True,
    )
    provisional_expires_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    provisional_resolution: Mapped[Optional[ProvisionalResolution]] = mapped_column(
        value_enum(ProvisionalResolution),
        nullable=True,
    )
    claimed_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Set by the resolver when another record is the entitlement source
    superseded_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("subscription_records.record_id"),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id", "provider", "subscription_ref",
            name="uq_subscription_records_user_provider_ref",
        ),
        Index("idx_subscription_records_provider_ref", "provider", "subscription_ref"),
        Index("idx_subscription_records_status_period", "status", "period_end"),
        Index(
            "idx_subscription_records_provisional",
            "is_provisional", "provisional_resolution", "provisional_expires_at",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRecord(user_id={self.user_id}, provider={self.provider}, "
            f"ref={self.subscription_ref}, status={self.status})>"
        )

    @property
    def is_open_provisional(self) -> bool:
        return (
            self.is_provisional
            and self.provisional_resolution == ProvisionalResolution.PENDING
        )


class SubscriptionTransition(Base):
    """
    Subscription transition history.

    One row per event the state machine looked at for a record, including
    rejected ones, so the audit trail explains every status the record held.
    """

    __tablename__ = "subscription_transitions"

    transition_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("subscription_records.record_id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_kind: Mapped[str] = mapped_column(String(50), nullable=False)
    provenance: Mapped[str] = mapped_column(String(20), nullable=False)
    outcome: Mapped[str] = mapped_column(String(30), nullable=False)

    previous_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    new_status: Mapped[str] = mapped_column(String(30), nullable=False)
    previous_tier: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    new_tier: Mapped[str] = mapped_column(String(50), nullable=False)

    intents: Mapped[list[str]] = mapped_column(nullable=False, default=list)
    detail: Mapped[Optional[dict[str, Any]]] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        default=utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("idx_sub_transitions_record", "record_id", "created_at"),
        Index("idx_sub_transitions_user", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionTransition(record_id={self.record_id}, "
            f"event={self.event_kind}, outcome={self.outcome})>"
        )
