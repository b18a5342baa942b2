"""
Entitlement Pipeline
====================

The single transactional boundary every state change goes through,
whether the event came from a provider webhook, the reconciliation
scheduler or the command gateway.

One unit of work per event:
    1. admit the event id in the idempotency ledger (insert-first)
    2. append the event to ``lifecycle_events``
    3. lock the user's ``user_entitlements`` row, then the subscription
       record (``SELECT ... FOR UPDATE``, always in that order)
    4. run the state machine; a stale event instead rebuilds the record
       from the subscription's event log in timestamp order
    5. persist the record and its audit row
    6. re-run the resolver over all the user's records and store the result
    7. record the outcome and resulting status hash on the ledger entry

Everything commits or nothing does. Concurrent creation of the same row
surfaces as ``IntegrityError`` and the whole unit is retried.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlement_engine.core.errors import (
    DuplicateEventError,
    LedgerUnavailableError,
    StaleEventError,
    UnresolvedSubscriberError,
)
from entitlement_engine.db.base import utcnow
from entitlement_engine.db.session import get_session_factory
from entitlement_engine.models.entitlement import UserEntitlement
from entitlement_engine.models.ledger import EventKind, LedgerOutcome, Provenance
from entitlement_engine.models.subscription import (
    Provider,
    ProvisionalResolution,
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionTransition,
)
from entitlement_engine.schemas.events import LifecycleEvent
from entitlement_engine.services import state_machine
from entitlement_engine.services.ledger import IdempotencyLedger
from entitlement_engine.services.resolver import Resolution, free_resolution, resolve
from entitlement_engine.services.state_machine import (
    LifecyclePolicy,
    RecordState,
    Transition,
)

logger = logging.getLogger(__name__)

# Storage-level failures that mean the ledger cannot admit or reject events
_STORAGE_ERRORS = (OperationalError, InterfaceError, OSError)


@dataclass(frozen=True)
class PipelineResult:
    """What processing one event did."""

    event_id: str
    outcome: LedgerOutcome
    duplicate: bool = False
    dead_lettered: bool = False
    user_id: Optional[uuid.UUID] = None
    record_id: Optional[uuid.UUID] = None
    status: Optional[SubscriptionStatus] = None
    status_hash: Optional[str] = None
    reason: Optional[str] = None


class EntitlementPipeline:
    """Runs lifecycle events through ledger, state machine and resolver."""

    MAX_ATTEMPTS = 3

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        policy: Optional[LifecyclePolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.policy = policy or LifecyclePolicy.from_settings()
        self._clock = clock

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def process(self, event: LifecycleEvent) -> PipelineResult:
        """
        Process one event exactly once.

        Duplicates return the outcome recorded the first time.

        Raises:
            LedgerUnavailableError: storage cannot admit or reject the event.
        """
        last_error: Optional[Exception] = None

        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            try:
                return await self._process_once(event)
            except DuplicateEventError:
                return await self._previous_result(event.event_id)
            except IntegrityError as exc:
                last_error = exc
                logger.warning(
                    "Concurrent write while processing %s (attempt %d/%d): %s",
                    event.event_id,
                    attempt,
                    self.MAX_ATTEMPTS,
                    exc.orig if exc.orig is not None else exc,
                )
            except _STORAGE_ERRORS as exc:
                logger.error("Ledger unavailable while processing %s: %s", event.event_id, exc)
                raise LedgerUnavailableError(str(exc)) from exc

        raise LedgerUnavailableError(
            f"gave up on {event.event_id} after {self.MAX_ATTEMPTS} attempts"
        ) from last_error

    async def dead_letter(
        self,
        *,
        reason: str,
        error_type: str,
        payload: dict,
        provider: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> None:
        """Store an unprocessable payload in its own transaction."""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    IdempotencyLedger(session).dead_letter(
                        reason=reason,
                        error_type=error_type,
                        payload=payload,
                        provider=provider,
                        event_id=event_id,
                    )
        except _STORAGE_ERRORS as exc:
            logger.error("Dead-letter store unavailable: %s", exc)
            raise LedgerUnavailableError(str(exc)) from exc

    # -------------------------------------------------------------------------
    # Unit of work
    # -------------------------------------------------------------------------

    async def _process_once(self, event: LifecycleEvent) -> PipelineResult:
        async with self.session_factory() as session:
            async with session.begin():
                ledger = IdempotencyLedger(session)
                entry = await ledger.admit(event.event_id)
                await ledger.append_event(event)

                if event.kind == EventKind.UNRECOGNIZED:
                    ledger.complete(entry, LedgerOutcome.IGNORED, None)
                    return PipelineResult(
                        event_id=event.event_id,
                        outcome=LedgerOutcome.IGNORED,
                        reason="unrecognized event kind",
                    )

                try:
                    user_id = await self._resolve_user(session, event)
                except UnresolvedSubscriberError as exc:
                    ledger.dead_letter(
                        reason=str(exc),
                        error_type=type(exc).__name__,
                        payload=event.model_dump(mode="json"),
                        provider=event.provider.value,
                        event_id=event.event_id,
                    )
                    ledger.complete(entry, LedgerOutcome.IGNORED, None)
                    return PipelineResult(
                        event_id=event.event_id,
                        outcome=LedgerOutcome.IGNORED,
                        dead_lettered=True,
                        reason=str(exc),
                    )

                entitlement = await self._lock_entitlement(session, user_id)
                record = await self._lock_record(session, user_id, event)
                current = RecordState.from_record(record) if record is not None else None

                try:
                    transition = state_machine.apply(current, event, self.policy)
                except StaleEventError as exc:
                    logger.info("Stale event rejected: %s", exc)
                    status_hash = entitlement.status_hash
                    reason = str(exc)

                    rebuilt = state_machine.replay(
                        await ledger.history(event.provider, event.subscription_ref, user_id),
                        self.policy,
                    )
                    if rebuilt is not None and rebuilt != current:
                        rebuilt.write_to(record)
                        resolution = await self._recompute(session, user_id, entitlement)
                        status_hash = resolution.status_hash
                        reason = f"{reason}; record rebuilt from event log"
                        logger.info(
                            "Rebuilt %s subscription %s after stale event %s",
                            event.provider.value,
                            event.subscription_ref,
                            event.event_id,
                        )

                    self._audit(
                        session,
                        record,
                        event,
                        previous=current,
                        outcome=LedgerOutcome.STALE_REJECTED,
                        intents=[state_machine.Intent.NONE.value],
                        reason=reason,
                    )
                    ledger.complete(entry, LedgerOutcome.STALE_REJECTED, status_hash)
                    return PipelineResult(
                        event_id=event.event_id,
                        outcome=LedgerOutcome.STALE_REJECTED,
                        user_id=user_id,
                        record_id=record.record_id,
                        status=record.status,
                        status_hash=status_hash,
                        reason=reason,
                    )

                if transition.next is None:
                    ledger.complete(entry, transition.outcome, entitlement.status_hash)
                    return PipelineResult(
                        event_id=event.event_id,
                        outcome=transition.outcome,
                        user_id=user_id,
                        status_hash=entitlement.status_hash,
                        reason=transition.reason,
                    )

                record = await self._persist(session, record, user_id, event, transition)
                self._audit(
                    session,
                    record,
                    event,
                    previous=transition.previous,
                    outcome=transition.outcome,
                    intents=[intent.value for intent in transition.intents],
                    reason=transition.reason,
                )

                if transition.outcome == LedgerOutcome.IGNORED:
                    status_hash = entitlement.status_hash
                else:
                    if self._corroborates(event, transition):
                        await self._corroborate_hints(session, user_id, event.provider, record)
                    resolution = await self._recompute(session, user_id, entitlement)
                    status_hash = resolution.status_hash

                ledger.complete(entry, transition.outcome, status_hash)

            logger.info(
                "Processed %s %s event %s for user %s: %s (%s)",
                event.provenance.value,
                event.kind.value,
                event.event_id,
                user_id,
                transition.outcome.value,
                transition.reason,
            )
            return PipelineResult(
                event_id=event.event_id,
                outcome=transition.outcome,
                user_id=user_id,
                record_id=record.record_id,
                status=record.status,
                status_hash=status_hash,
                reason=transition.reason,
            )

    async def _previous_result(self, event_id: str) -> PipelineResult:
        try:
            async with self.session_factory() as session:
                entry = await IdempotencyLedger(session).get_entry(event_id)
        except _STORAGE_ERRORS as exc:
            raise LedgerUnavailableError(str(exc)) from exc

        if entry is None:
            # Lost a race with a transaction that rolled back; let the
            # provider redeliver.
            raise LedgerUnavailableError(f"ledger entry for {event_id} vanished")

        return PipelineResult(
            event_id=event_id,
            outcome=entry.outcome or LedgerOutcome.IGNORED,
            duplicate=True,
            status_hash=entry.resulting_status_hash,
            reason="duplicate",
        )

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    @staticmethod
    async def _resolve_user(session: AsyncSession, event: LifecycleEvent) -> uuid.UUID:
        if event.user_id is not None:
            return event.user_id

        result = await session.execute(
            select(SubscriptionRecord.user_id)
            .where(
                SubscriptionRecord.provider == event.provider,
                SubscriptionRecord.subscription_ref == event.subscription_ref,
            )
            .order_by(SubscriptionRecord.created_at.desc())
            .limit(1)
        )
        user_id = result.scalar_one_or_none()
        if user_id is None:
            raise UnresolvedSubscriberError(
                f"no user for {event.provider.value} subscription {event.subscription_ref}"
            )
        return user_id

    async def _lock_entitlement(self, session: AsyncSession, user_id: uuid.UUID) -> UserEntitlement:
        result = await session.execute(
            select(UserEntitlement)
            .where(UserEntitlement.user_id == user_id)
            .with_for_update()
        )
        entitlement = result.scalar_one_or_none()
        if entitlement is not None:
            return entitlement

        entitlement = UserEntitlement(user_id=user_id, computed_at=self._clock())
        free_resolution(user_id).write_to(entitlement)
        session.add(entitlement)
        await session.flush()
        return entitlement

    @staticmethod
    async def _lock_record(
        session: AsyncSession,
        user_id: uuid.UUID,
        event: LifecycleEvent,
    ) -> Optional[SubscriptionRecord]:
        result = await session.execute(
            select(SubscriptionRecord)
            .where(
                SubscriptionRecord.user_id == user_id,
                SubscriptionRecord.provider == event.provider,
                SubscriptionRecord.subscription_ref == event.subscription_ref,
            )
            .with_for_update()
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _persist(
        session: AsyncSession,
        record: Optional[SubscriptionRecord],
        user_id: uuid.UUID,
        event: LifecycleEvent,
        transition: Transition,
    ) -> SubscriptionRecord:
        if record is None:
            record = SubscriptionRecord(
                record_id=uuid.uuid4(),
                user_id=user_id,
                provider=event.provider,
                subscription_ref=event.subscription_ref,
            )
            transition.next.write_to(record)
            session.add(record)
            await session.flush()
        elif transition.changed:
            transition.next.write_to(record)
        return record

    @staticmethod
    def _corroborates(event: LifecycleEvent, transition: Transition) -> bool:
        return (
            event.provenance != Provenance.PROVISIONAL
            and event.kind in (EventKind.ACTIVATED, EventKind.RENEWED)
            and transition.next.status.grants_access
        )

    @staticmethod
    async def _corroborate_hints(
        session: AsyncSession,
        user_id: uuid.UUID,
        provider: Provider,
        source: SubscriptionRecord,
    ) -> None:
        result = await session.execute(
            select(SubscriptionRecord)
            .where(
                SubscriptionRecord.user_id == user_id,
                SubscriptionRecord.provider == provider,
                SubscriptionRecord.is_provisional.is_(True),
                SubscriptionRecord.provisional_resolution == ProvisionalResolution.PENDING,
            )
            .with_for_update()
        )
        for hint in result.scalars():
            state_machine.corroborate(RecordState.from_record(hint)).write_to(hint)
            hint.superseded_by_id = source.record_id
            logger.info(
                "Provisional %s hint %s corroborated by %s",
                hint.provisional_kind.value if hint.provisional_kind else "purchase",
                hint.subscription_ref,
                source.subscription_ref,
            )

    async def _recompute(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        entitlement: UserEntitlement,
    ) -> Resolution:
        result = await session.execute(
            select(SubscriptionRecord).where(SubscriptionRecord.user_id == user_id)
        )
        records = list(result.scalars())
        resolution = resolve(user_id, records)

        for record in records:
            if record.record_id in resolution.superseded:
                winner_id = resolution.superseded[record.record_id]
                if record.superseded_by_id != winner_id:
                    record.superseded_by_id = winner_id

        if entitlement.status_hash != resolution.status_hash:
            previous_tier = entitlement.tier_id
            resolution.write_to(entitlement)
            entitlement.computed_at = self._clock()
            if previous_tier != resolution.tier_id:
                logger.info(
                    "Entitlement for user %s changed: %s -> %s",
                    user_id,
                    previous_tier,
                    resolution.tier_id,
                )
        return resolution

    @staticmethod
    def _audit(
        session: AsyncSession,
        record: SubscriptionRecord,
        event: LifecycleEvent,
        *,
        previous: Optional[RecordState],
        outcome: LedgerOutcome,
        intents: list[str],
        reason: str,
    ) -> None:
        detail = {
            "reason": reason,
            "observed_at": event.observed_at.isoformat(),
            "lineage": record.lineage,
        }
        if event.provenance == Provenance.SYNTHETIC:
            detail["correction"] = event.raw_provenance

        session.add(SubscriptionTransition(
            record_id=record.record_id,
            user_id=record.user_id,
            event_id=event.event_id,
            event_kind=event.kind.value,
            provenance=event.provenance.value,
            outcome=outcome.value,
            previous_status=previous.status.value if previous is not None else None,
            new_status=record.status.value,
            previous_tier=previous.tier_id if previous is not None else None,
            new_tier=record.tier_id,
            intents=intents,
            detail=detail,
        ))
