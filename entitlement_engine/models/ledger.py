"""
Event Ledger Models
===================

Append-only storage for lifecycle events, the idempotency gate and the
dead-letter store.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
import uuid

from sqlalchemy import Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from entitlement_engine.db.base import Base, utcnow, value_enum
from entitlement_engine.models.subscription import Provider


class EventKind(str, Enum):
    """Canonical lifecycle event kinds."""
    ACTIVATED = "activated"
    RENEWED = "renewed"
    RENEWAL_FAILED = "renewal_failed"
    AUTO_RENEW_DISABLED = "auto_renew_disabled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    PLAN_CHANGED = "plan_changed"
    UNRECOGNIZED = "unrecognized"


class Provenance(str, Enum):
    """Where an event came from."""
    AUTHORITATIVE = "authoritative"  # provider webhook
    SYNTHETIC = "synthetic"  # reconciliation scheduler
    PROVISIONAL = "provisional"  # client command


class LedgerOutcome(str, Enum):
    """What processing an admitted event did."""
    APPLIED = "applied"
    STALE_REJECTED = "stale_rejected"
    IGNORED = "ignored"
    PROVISIONAL_RECORDED = "provisional_recorded"


class IdempotencyLedgerEntry(Base):
    """
    One row per event id ever admitted.

    The primary key is the gate: a second insert of the same ``event_id``
    fails in the database, whichever worker gets there second.
    """

    __tablename__ = "idempotency_ledger"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    processed_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    outcome: Mapped[Optional[LedgerOutcome]] = mapped_column(
        value_enum(LedgerOutcome),
        nullable=True,
    )
    resulting_status_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<IdempotencyLedgerEntry(event_id={self.event_id}, outcome={self.outcome})>"


class LifecycleEventRecord(Base):
    """Stored copy of an admitted ``LifecycleEvent``. Never updated."""

    __tablename__ = "lifecycle_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    provider: Mapped[Provider] = mapped_column(value_enum(Provider), nullable=False)
    subscription_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[EventKind] = mapped_column(value_enum(EventKind), nullable=False)
    provenance: Mapped[Provenance] = mapped_column(value_enum(Provenance), nullable=False)
    observed_at: Mapped[datetime] = mapped_column(nullable=False)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    facts: Mapped[dict[str, Any]] = mapped_column(nullable=False, default=dict)
    raw_provenance: Mapped[dict[str, Any]] = mapped_column(nullable=False, default=dict)
    received_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_lifecycle_events_subscription", "provider", "subscription_ref", "observed_at"),
    )


class DeadLetterEvent(Base):
    """Payloads that could not be processed and need a human to look at them."""

    __tablename__ = "dead_letter_events"

    dead_letter_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    provider: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    error_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(nullable=False, default=dict)
    received_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_dead_letter_received", "received_at"),
    )
