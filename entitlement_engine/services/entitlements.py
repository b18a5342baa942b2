"""
Entitlement Reads
=================

Read side of ``user_entitlements``. The stored row is the resolver output
as of the last committed transition; ``revoke_at`` is applied here so a
cancel-pending or grace entitlement drops to free exactly at its deadline
even when the reconciliation sweep runs late.
"""

from datetime import datetime
from typing import Callable, Optional
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.core.catalog import FREE_TIER_ID, get_tier
from entitlement_engine.db.base import utcnow
from entitlement_engine.models.entitlement import UserEntitlement
from entitlement_engine.schemas.entitlement import EntitlementData


class EntitlementService:
    """Service for reading user entitlements."""

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self._clock = clock

    async def get_entitlement(self, user_id: uuid.UUID) -> EntitlementData:
        result = await self.db.execute(
            select(UserEntitlement).where(UserEntitlement.user_id == user_id)
        )
        return self.to_data(user_id, result.scalar_one_or_none(), self._clock())

    @staticmethod
    def to_data(
        user_id: uuid.UUID,
        entitlement: Optional[UserEntitlement],
        now: datetime,
    ) -> EntitlementData:
        """Effective entitlement at ``now``. Users with no row are free."""
        if entitlement is None:
            free = get_tier(FREE_TIER_ID)
            return EntitlementData(
                user_id=user_id,
                tier_id=free.tier_id,
                resource_limit=free.resource_limit,
                is_paid=False,
            )

        pending_tier_id = entitlement.pending_tier_id
        pending_until = entitlement.pending_until
        if pending_until is not None and pending_until <= now:
            pending_tier_id = pending_until = None

        tier = get_tier(entitlement.tier_id)
        is_paid = entitlement.source_record_id is not None
        # Deadline passed but the sweep has not caught up yet
        if entitlement.revoke_at is not None and entitlement.revoke_at <= now:
            tier = get_tier(FREE_TIER_ID)
            is_paid = False

        return EntitlementData(
            user_id=user_id,
            tier_id=tier.tier_id,
            resource_limit=tier.resource_limit,
            is_paid=is_paid,
            source_provider=entitlement.source_provider.value if entitlement.source_provider else None,
            source_status=entitlement.source_status.value if entitlement.source_status else None,
            valid_until=entitlement.valid_until,
            revoke_at=entitlement.revoke_at,
            pending_tier_id=pending_tier_id,
            pending_until=pending_until,
            status_hash=entitlement.status_hash,
            computed_at=entitlement.computed_at,
        )
