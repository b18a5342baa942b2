"""
Idempotency Ledger
==================

Insert-first gate that every lifecycle event passes before it may change
state, plus the append-only event log and the dead-letter store.

``admit`` inserts the event id and flushes. The primary key rejects a
second insert of the same id in the database, so two workers racing on
the same delivery cannot both get through. The insert shares the caller's
transaction: if anything later in the unit fails, the ledger row rolls back
with it and the event can be retried end to end.
"""

import logging
from typing import Any, Optional
import uuid

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.core.errors import DuplicateEventError
from entitlement_engine.models.ledger import (
    DeadLetterEvent,
    IdempotencyLedgerEntry,
    LedgerOutcome,
    LifecycleEventRecord,
    Provenance,
)
from entitlement_engine.models.subscription import Provider
from entitlement_engine.schemas.events import LifecycleEvent

logger = logging.getLogger(__name__)


class IdempotencyLedger:
    """Ledger operations bound to one transaction."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def admit(self, event_id: str) -> IdempotencyLedgerEntry:
        """
        Claim ``event_id`` for this transaction.

        Raises:
            DuplicateEventError: the id is already in the ledger.
        """
        entry = IdempotencyLedgerEntry(event_id=event_id)
        self.db.add(entry)
        try:
            await self.db.flush()
        except IntegrityError as exc:
            raise DuplicateEventError(event_id) from exc
        return entry

    async def append_event(self, event: LifecycleEvent) -> LifecycleEventRecord:
        """Store the admitted event. Rows are never updated afterwards."""
        row = LifecycleEventRecord(
            event_id=event.event_id,
            provider=event.provider,
            subscription_ref=event.subscription_ref,
            kind=event.kind,
            provenance=event.provenance,
            observed_at=event.observed_at,
            user_id=event.user_id,
            facts=event.facts(),
            raw_provenance=event.raw_provenance,
        )
        self.db.add(row)
        return row

    @staticmethod
    def complete(
        entry: IdempotencyLedgerEntry,
        outcome: LedgerOutcome,
        status_hash: Optional[str],
    ) -> None:
        entry.outcome = outcome
        entry.resulting_status_hash = status_hash

    async def get_entry(self, event_id: str) -> Optional[IdempotencyLedgerEntry]:
        result = await self.db.execute(
            select(IdempotencyLedgerEntry).where(IdempotencyLedgerEntry.event_id == event_id)
        )
        return result.scalar_one_or_none()

    async def get_event(self, event_id: str) -> Optional[LifecycleEventRecord]:
        result = await self.db.execute(
            select(LifecycleEventRecord).where(LifecycleEventRecord.event_id == event_id)
        )
        return result.scalar_one_or_none()

    async def history(
        self,
        provider: Provider,
        subscription_ref: str,
        user_id: uuid.UUID,
    ) -> list[LifecycleEvent]:
        """
        Every non-provisional event logged for one subscription, rebuilt as
        ``LifecycleEvent``s. Events the normalizer could not attribute to a
        user are included; the subscription ref ties them to this record.
        """
        await self.db.flush()
        result = await self.db.execute(
            select(LifecycleEventRecord).where(
                LifecycleEventRecord.provider == provider,
                LifecycleEventRecord.subscription_ref == subscription_ref,
                LifecycleEventRecord.provenance != Provenance.PROVISIONAL,
                or_(
                    LifecycleEventRecord.user_id == user_id,
                    LifecycleEventRecord.user_id.is_(None),
                ),
            )
        )
        return [_to_event(row) for row in result.scalars()]

    def dead_letter(
        self,
        *,
        reason: str,
        error_type: str,
        payload: dict[str, Any],
        provider: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> DeadLetterEvent:
        """Park a payload for manual inspection."""
        row = DeadLetterEvent(
            provider=provider,
            event_id=event_id,
            reason=reason[:2000],
            error_type=error_type,
            payload=payload,
        )
        self.db.add(row)
        logger.warning(
            "Dead-lettered %s payload: event_id=%s error=%s reason=%s",
            provider or "unknown",
            event_id,
            error_type,
            reason,
        )
        return row


def _to_event(row: LifecycleEventRecord) -> LifecycleEvent:
    facts = dict(row.facts)
    # The column is authoritative; facts only repeat it
    facts.pop("user_id", None)
    return LifecycleEvent(
        event_id=row.event_id,
        provider=row.provider,
        subscription_ref=row.subscription_ref,
        kind=row.kind,
        observed_at=row.observed_at,
        provenance=row.provenance,
        raw_provenance=row.raw_provenance,
        user_id=row.user_id,
        **facts,
    )
