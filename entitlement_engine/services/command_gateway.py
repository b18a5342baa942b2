"""
Command Gateway
===============

Client-originated commands ("my purchase went through", "restore my
purchases") become provisional lifecycle events and go through the
pipeline like everything else. Nothing here writes records or
entitlements directly, and nothing here can grant access: a provisional
record only surfaces as ``pending_tier_id`` until the provider confirms.
"""

import hashlib
import logging
from datetime import datetime
from typing import Callable, Optional
import uuid

from entitlement_engine.core.catalog import get_product
from entitlement_engine.core.errors import UnknownProductError
from entitlement_engine.db.base import utcnow
from entitlement_engine.models.ledger import EventKind, Provenance
from entitlement_engine.models.subscription import Provider, ProvisionalKind
from entitlement_engine.schemas.entitlement import ProvisionalAck
from entitlement_engine.schemas.events import PROVISIONAL_REF_PREFIX, LifecycleEvent
from entitlement_engine.services.pipeline import EntitlementPipeline

logger = logging.getLogger(__name__)


def command_event_id(
    user_id: uuid.UUID,
    kind: ProvisionalKind,
    idempotency_key: Optional[str],
) -> str:
    """Stable id for a keyed command so client retries collapse in the ledger."""
    if not idempotency_key:
        return f"cmd:{uuid.uuid4()}"
    digest = hashlib.sha256(f"{user_id}|{kind.value}|{idempotency_key}".encode("utf-8"))
    return f"cmd:{digest.hexdigest()}"


class CommandGateway:
    """Turns client commands into provisional events."""

    def __init__(
        self,
        pipeline: EntitlementPipeline,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.pipeline = pipeline
        self._clock = clock

    async def submit_purchase_intent(
        self,
        user_id: uuid.UUID,
        product_ref: str,
        idempotency_key: Optional[str] = None,
        claimed_ref: Optional[str] = None,
    ) -> ProvisionalAck:
        """
        Record that the client saw a store purchase succeed.

        ``claimed_ref`` names the store subscription the purchase created
        (App Store original transaction id, card subscription id). The
        reconciliation sweep asks the provider about it, so the purchase is
        confirmed even if its webhook never arrives.

        Raises:
            UnknownProductError: the catalog does not sell ``product_ref``.
            LedgerUnavailableError: the pipeline could not record the hint.
        """
        product = get_product(product_ref)
        if product is None:
            raise UnknownProductError(product_ref)

        event_id = command_event_id(user_id, ProvisionalKind.PURCHASE, idempotency_key)
        return await self._submit(LifecycleEvent(
            event_id=event_id,
            provider=product.provider,
            subscription_ref=f"{PROVISIONAL_REF_PREFIX}{event_id}",
            kind=EventKind.ACTIVATED,
            observed_at=self._clock(),
            provenance=Provenance.PROVISIONAL,
            raw_provenance={"source": "client", "command": "purchase_intent"},
            user_id=user_id,
            product_ref=product.product_ref,
            tier_id=product.tier_id,
            billing_cycle=product.billing_cycle,
            provisional_kind=ProvisionalKind.PURCHASE,
            claimed_ref=claimed_ref,
        ))

    async def submit_restore_request(
        self,
        user_id: uuid.UUID,
        idempotency_key: Optional[str] = None,
        claimed_ref: Optional[str] = None,
    ) -> ProvisionalAck:
        """
        Ask for the user's store subscriptions to be re-checked.

        The reconciliation scheduler picks the request up and queries the
        provider about every subscription the user already has, plus
        ``claimed_ref`` when the device supplied one. Confirmed
        subscriptions arrive as synthetic events.
        """
        event_id = command_event_id(user_id, ProvisionalKind.RESTORE, idempotency_key)
        return await self._submit(LifecycleEvent(
            event_id=event_id,
            provider=Provider.APP_STORE_IAP,
            subscription_ref=f"{PROVISIONAL_REF_PREFIX}{event_id}",
            kind=EventKind.ACTIVATED,
            observed_at=self._clock(),
            provenance=Provenance.PROVISIONAL,
            raw_provenance={"source": "client", "command": "restore"},
            user_id=user_id,
            provisional_kind=ProvisionalKind.RESTORE,
            claimed_ref=claimed_ref,
        ))

    async def _submit(self, event: LifecycleEvent) -> ProvisionalAck:
        result = await self.pipeline.process(event)
        logger.info(
            "Client %s command %s for user %s: %s%s",
            event.provisional_kind.value,
            event.event_id,
            event.user_id,
            result.outcome.value,
            " (duplicate)" if result.duplicate else "",
        )
        return ProvisionalAck(
            event_id=event.event_id,
            duplicate=result.duplicate,
            expires_at=None if result.duplicate else event.observed_at + self.pipeline.policy.provisional_window,
        )
