"""
Product Catalog
===============

Tier definitions, resource limits, and the mapping from provider product
identifiers to tiers.
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from entitlement_engine.config import settings
from entitlement_engine.models.subscription import BillingCycle, Provider

logger = logging.getLogger(__name__)

FREE_TIER_ID = "free"
PREMIUM_TIER_ID = "premium_tier"

UNLIMITED = -1


@dataclass(frozen=True)
class Tier:
    tier_id: str
    name: str
    resource_limit: int  # -1 for unlimited
    is_paid: bool


TIERS = {
    FREE_TIER_ID: Tier(
        tier_id=FREE_TIER_ID,
        name="Free",
        resource_limit=5,
        is_paid=False,
    ),
    PREMIUM_TIER_ID: Tier(
        tier_id=PREMIUM_TIER_ID,
        name="Premium",
        resource_limit=UNLIMITED,
        is_paid=True,
    ),
}


@dataclass(frozen=True)
class Product:
    product_ref: str
    provider: Provider
    tier_id: str
    billing_cycle: BillingCycle


@lru_cache
def get_products() -> dict[str, Product]:
    """All sellable products keyed by provider product identifier."""
    bundle = settings.APPSTORE_BUNDLE_ID
    products = [
        Product(
            product_ref=f"{bundle}.premium.monthly.v1",
            provider=Provider.APP_STORE_IAP,
            tier_id=PREMIUM_TIER_ID,
            billing_cycle=BillingCycle.MONTHLY,
        ),
        Product(
            product_ref=f"{bundle}.premium.yearly.v1",
            provider=Provider.APP_STORE_IAP,
            tier_id=PREMIUM_TIER_ID,
            billing_cycle=BillingCycle.ANNUAL,
        ),
        Product(
            product_ref=settings.STRIPE_PRICE_PREMIUM_MONTHLY,
            provider=Provider.CARD_BILLING,
            tier_id=PREMIUM_TIER_ID,
            billing_cycle=BillingCycle.MONTHLY,
        ),
        Product(
            product_ref=settings.STRIPE_PRICE_PREMIUM_ANNUAL,
            provider=Provider.CARD_BILLING,
            tier_id=PREMIUM_TIER_ID,
            billing_cycle=BillingCycle.ANNUAL,
        ),
    ]
    return {product.product_ref: product for product in products}


def get_product(product_ref: Optional[str]) -> Optional[Product]:
    """Look up a product, or None if the catalog does not sell it."""
    if not product_ref:
        return None
    return get_products().get(product_ref)


def get_tier(tier_id: Optional[str]) -> Tier:
    """Get a tier definition, falling back to free."""
    return TIERS.get(tier_id or FREE_TIER_ID, TIERS[FREE_TIER_ID])


def tier_for_product(
    product_ref: Optional[str],
    fallback_cycle: Optional[BillingCycle] = None,
) -> tuple[str, BillingCycle]:
    """
    Map a product seen on a provider event to (tier_id, billing_cycle).

    A provider only sends events for things the user actually paid for, so
    an unknown product still maps to the paid tier. It is logged so the
    catalog can be brought up to date.
    """
    product = get_product(product_ref)
    if product is not None:
        return product.tier_id, product.billing_cycle

    if product_ref:
        logger.warning("Unknown product %s on provider event, defaulting to %s",
                       product_ref, PREMIUM_TIER_ID)
    return PREMIUM_TIER_ID, fallback_cycle or BillingCycle.NONE


def billing_cycle_from_interval(interval: Optional[str]) -> Optional[BillingCycle]:
    """Map a provider plan interval (``month``/``year``) to a billing cycle."""
    if not interval:
        return None
    interval = interval.lower()
    if interval in ("month", "monthly"):
        return BillingCycle.MONTHLY
    if interval in ("year", "yearly", "annual"):
        return BillingCycle.ANNUAL
    return BillingCycle.NONE
