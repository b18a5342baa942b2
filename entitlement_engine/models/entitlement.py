"""
Entitlement Models
==================

Derived, per-user entitlement and per-record reconciliation bookkeeping.
"""

from datetime import datetime
from typing import Optional
import uuid

from sqlalchemy import Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from entitlement_engine.db.base import Base, TimestampMixin, value_enum
from entitlement_engine.models.subscription import Provider, SubscriptionStatus


class UserEntitlement(Base, TimestampMixin):
    """
    What a user can do right now.

    Always the resolver's output for the user's current records, written in
    the same transaction as the record change that caused it.
    """

    __tablename__ = "user_entitlements"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    tier_id: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_limit: Mapped[int] = mapped_column(Integer, nullable=False)

    source_provider: Mapped[Optional[Provider]] = mapped_column(
        value_enum(Provider),
        nullable=True,
    )
    source_record_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    source_status: Mapped[Optional[SubscriptionStatus]] = mapped_column(
        value_enum(SubscriptionStatus),
        nullable=True,
    )
    valid_until: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    # Known hard deadline (cancel-pending period end, grace end)
    revoke_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    # Client-side optimism only; never a grant
    pending_tier_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    pending_until: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    status_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    computed_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<UserEntitlement(user_id={self.user_id}, tier={self.tier_id})>"


class ReconciliationAttempt(Base, TimestampMixin):
    """Provider-query bookkeeping for one subscription record."""

    __tablename__ = "reconciliation_attempts"

    record_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    alerted_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    __table_args__ = (
        Index("idx_reconciliation_attempts_next", "next_attempt_at"),
    )
