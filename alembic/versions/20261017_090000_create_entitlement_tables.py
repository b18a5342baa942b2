"""Create entitlement tables

Revision ID: 3f9c1e7a2b10
Revises:
Create Date: 2026-10-17 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3f9c1e7a2b10"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ENUMS = {
    "provider": ("card_billing", "app_store_iap"),
    "subscriptionstatus": (
        "active", "grace", "cancel_pending", "cancelled", "expired", "refunded",
    ),
    "billingcycle": ("monthly", "annual", "none"),
    "provisionalkind": ("purchase", "restore"),
    "provisionalresolution": ("pending", "corroborated", "lapsed"),
    "eventkind": (
        "activated", "renewed", "renewal_failed", "auto_renew_disabled",
        "cancelled", "expired", "refunded", "plan_changed", "unrecognized",
    ),
    "provenance": ("authoritative", "synthetic", "provisional"),
    "ledgeroutcome": ("applied", "stale_rejected", "ignored", "provisional_recorded"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    """Upgrade database schema."""
    bind = op.get_bind()
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    # ------------------------------------------------------------------
    # Subscription records and their audit trail
    # ------------------------------------------------------------------
    op.create_table(
        "subscription_records",
        sa.Column("record_id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("provider", _enum("provider"), nullable=False),
        sa.Column("subscription_ref", sa.String(255), nullable=False),
        sa.Column("status", _enum("subscriptionstatus"), nullable=False),
        sa.Column("tier_id", sa.String(50), nullable=False),
        sa.Column("billing_cycle", _enum("billingcycle"), nullable=False),
        sa.Column("product_ref", sa.String(255), nullable=True),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("grace_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lineage", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_applied_event_id", sa.String(255), nullable=False),
        sa.Column("last_applied_observed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_provisional", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("provisional_kind", _enum("provisionalkind"), nullable=True),
        sa.Column("provisional_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provisional_resolution", _enum("provisionalresolution"), nullable=True),
        sa.Column(
            "superseded_by_id",
            sa.Uuid(),
            sa.ForeignKey("subscription_records.record_id"),
            nullable=True,
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "provider", "subscription_ref",
            name="uq_subscription_records_user_provider_ref",
        ),
    )
    op.create_index("ix_subscription_records_user_id", "subscription_records", ["user_id"])
    op.create_index(
        "idx_subscription_records_provider_ref",
        "subscription_records",
        ["provider", "subscription_ref"],
    )
    op.create_index(
        "idx_subscription_records_status_period",
        "subscription_records",
        ["status", "period_end"],
    )
    op.create_index(
        "idx_subscription_records_provisional",
        "subscription_records",
        ["is_provisional", "provisional_resolution", "provisional_expires_at"],
    )

    op.create_table(
        "subscription_transitions",
        sa.Column("transition_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "record_id",
            sa.Uuid(),
            sa.ForeignKey("subscription_records.record_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("event_kind", sa.String(50), nullable=False),
        sa.Column("provenance", sa.String(20), nullable=False),
        sa.Column("outcome", sa.String(30), nullable=False),
        sa.Column("previous_status", sa.String(30), nullable=True),
        sa.Column("new_status", sa.String(30), nullable=False),
        sa.Column("previous_tier", sa.String(50), nullable=True),
        sa.Column("new_tier", sa.String(50), nullable=False),
        sa.Column("intents", postgresql.JSONB(), nullable=False),
        sa.Column("detail", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_sub_transitions_record", "subscription_transitions", ["record_id", "created_at"],
    )
    op.create_index(
        "idx_sub_transitions_user", "subscription_transitions", ["user_id", "created_at"],
    )

    # ------------------------------------------------------------------
    # Ledger, event log, dead letters
    # ------------------------------------------------------------------
    op.create_table(
        "idempotency_ledger",
        sa.Column("event_id", sa.String(255), primary_key=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("outcome", _enum("ledgeroutcome"), nullable=True),
        sa.Column("resulting_status_hash", sa.String(64), nullable=True),
    )

    op.create_table(
        "lifecycle_events",
        sa.Column("event_id", sa.String(255), primary_key=True),
        sa.Column("provider", _enum("provider"), nullable=False),
        sa.Column("subscription_ref", sa.String(255), nullable=False),
        sa.Column("kind", _enum("eventkind"), nullable=False),
        sa.Column("provenance", _enum("provenance"), nullable=False),
        sa.Column("observed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("facts", postgresql.JSONB(), nullable=False),
        sa.Column("raw_provenance", postgresql.JSONB(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_lifecycle_events_subscription",
        "lifecycle_events",
        ["provider", "subscription_ref", "observed_at"],
    )

    op.create_table(
        "dead_letter_events",
        sa.Column("dead_letter_id", sa.Uuid(), primary_key=True),
        sa.Column("provider", sa.String(50), nullable=True),
        sa.Column("event_id", sa.String(255), nullable=True),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("error_type", sa.String(100), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_dead_letter_received", "dead_letter_events", ["received_at"])

    # ------------------------------------------------------------------
    # Derived entitlements and reconciliation bookkeeping
    # ------------------------------------------------------------------
    op.create_table(
        "user_entitlements",
        sa.Column("user_id", sa.Uuid(), primary_key=True),
        sa.Column("tier_id", sa.String(50), nullable=False),
        sa.Column("resource_limit", sa.Integer(), nullable=False),
        sa.Column("source_provider", _enum("provider"), nullable=True),
        sa.Column("source_record_id", sa.Uuid(), nullable=True),
        sa.Column("source_status", _enum("subscriptionstatus"), nullable=True),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoke_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pending_tier_id", sa.String(50), nullable=True),
        sa.Column("pending_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status_hash", sa.String(64), nullable=False),
        sa.Column("computed_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "reconciliation_attempts",
        sa.Column("record_id", sa.Uuid(), primary_key=True),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("alerted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "idx_reconciliation_attempts_next", "reconciliation_attempts", ["next_attempt_at"],
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index("idx_reconciliation_attempts_next", table_name="reconciliation_attempts")
    op.drop_table("reconciliation_attempts")
    op.drop_table("user_entitlements")
    op.drop_index("idx_dead_letter_received", table_name="dead_letter_events")
    op.drop_table("dead_letter_events")
    op.drop_index("idx_lifecycle_events_subscription", table_name="lifecycle_events")
    op.drop_table("lifecycle_events")
    op.drop_table("idempotency_ledger")
    op.drop_index("idx_sub_transitions_user", table_name="subscription_transitions")
    op.drop_index("idx_sub_transitions_record", table_name="subscription_transitions")
    op.drop_table("subscription_transitions")
    op.drop_index("idx_subscription_records_provisional", table_name="subscription_records")
    op.drop_index("idx_subscription_records_status_period", table_name="subscription_records")
    op.drop_index("idx_subscription_records_provider_ref", table_name="subscription_records")
    op.drop_index("ix_subscription_records_user_id", table_name="subscription_records")
    op.drop_table("subscription_records")

    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
