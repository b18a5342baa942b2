"""
Database Models
===============

SQLAlchemy ORM models for all database entities.

All models are imported here to ensure they are registered
with SQLAlchemy's metadata for migrations and relationships.
"""

from entitlement_engine.models.subscription import (
    BillingCycle,
    GRANTING_STATUSES,
    Provider,
    ProvisionalKind,
    ProvisionalResolution,
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionTransition,
)
from entitlement_engine.models.ledger import (
    DeadLetterEvent,
    EventKind,
    IdempotencyLedgerEntry,
    LedgerOutcome,
    LifecycleEventRecord,
    Provenance,
)
from entitlement_engine.models.entitlement import (
    ReconciliationAttempt,
    UserEntitlement,
)

__all__ = [
    # Subscription
    "BillingCycle",
    "GRANTING_STATUSES",
    "Provider",
    "ProvisionalKind",
    "ProvisionalResolution",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "SubscriptionTransition",
    # Ledger
    "DeadLetterEvent",
    "EventKind",
    "IdempotencyLedgerEntry",
    "LedgerOutcome",
    "LifecycleEventRecord",
    "Provenance",
    # Entitlement
    "ReconciliationAttempt",
    "UserEntitlement",
]
