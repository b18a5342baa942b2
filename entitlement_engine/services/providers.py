"""
Provider Adapters
=================

``get_subscription_status(subscription_ref)`` for each payment provider,
behind one interface. The reconciliation scheduler depends only on
``ProviderAdapter``; nothing outside this module knows provider URLs or
response shapes.

Every call has a bounded timeout. Timeouts, network failures and 5xx
responses raise ``TransientProviderError``; a 404 or an unparseable body
comes back as ``RemoteStatus.UNKNOWN``, which callers treat as "no
evidence", never as a negative answer.
"""

import base64
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote

import httpx
from jose import jwt

from entitlement_engine.config import settings
from entitlement_engine.core.errors import TransientProviderError
from entitlement_engine.core.retry import RetryConfig, provider_retry_config, retry_async
from entitlement_engine.models.subscription import Provider
from entitlement_engine.schemas.events import ProviderSubscriptionStatus, RemoteStatus

logger = logging.getLogger(__name__)


class ProviderAdapter:
    """Base class for provider status queries."""

    provider: Provider

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout if timeout is not None else settings.PROVIDER_TIMEOUT_SECONDS

    async def get_subscription_status(self, subscription_ref: str) -> ProviderSubscriptionStatus:
        raise NotImplementedError

    def _unknown(self, subscription_ref: str, raw: Optional[dict] = None) -> ProviderSubscriptionStatus:
        return ProviderSubscriptionStatus(
            provider=self.provider,
            subscription_ref=subscription_ref,
            status=RemoteStatus.UNKNOWN,
            raw=raw or {},
        )

    async def _get_json(
        self,
        url: str,
        headers: dict[str, str],
        subscription_ref: str,
    ) -> Optional[dict[str, Any]]:
        """GET ``url``; None on 404, TransientProviderError on timeout/5xx/network."""
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.get(url, headers=headers)
            except httpx.TimeoutException as exc:
                raise TransientProviderError(
                    self.provider.value, f"timeout querying {subscription_ref}", timed_out=True,
                ) from exc
            except httpx.RequestError as exc:
                raise TransientProviderError(
                    self.provider.value, f"network error querying {subscription_ref}: {exc}",
                ) from exc

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientProviderError(
                self.provider.value,
                f"status {response.status_code} querying {subscription_ref}",
            )
        if response.status_code == 404:
            logger.warning("%s has no subscription %s", self.provider.value, subscription_ref)
            return None
        if response.status_code != 200:
            logger.error(
                "%s API returned status %d for %s: %s",
                self.provider.value,
                response.status_code,
                subscription_ref,
                response.text[:200],
            )
            return None

        try:
            data = response.json()
        except ValueError:
            logger.error("%s API returned invalid JSON for %s", self.provider.value, subscription_ref)
            return None
        return data if isinstance(data, dict) else None


# =============================================================================
# Card billing (Stripe)
# =============================================================================

class StripeBillingAdapter(ProviderAdapter):
    """Reads subscriptions from the Stripe REST API."""

    provider = Provider.CARD_BILLING

    def __init__(self, timeout: Optional[float] = None, api_key: Optional[str] = None):
        super().__init__(timeout)
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self.base_url = settings.STRIPE_API_BASE.rstrip("/")

    def _get_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def get_subscription_status(self, subscription_ref: str) -> ProviderSubscriptionStatus:
        if not self.api_key:
            logger.warning("Stripe API key not configured, skipping status query")
            return self._unknown(subscription_ref)

        data = await self._get_json(
            f"{self.base_url}/subscriptions/{quote(subscription_ref, safe='')}",
            self._get_headers(),
            subscription_ref,
        )
        if data is None:
            return self._unknown(subscription_ref)
        return self.parse_subscription(subscription_ref, data)

    @classmethod
    def parse_subscription(cls, subscription_ref: str, data: dict[str, Any]) -> ProviderSubscriptionStatus:
        status = data.get("status")
        cancel_at_period_end = bool(data.get("cancel_at_period_end"))

        if status in ("active", "trialing"):
            remote = RemoteStatus.CANCEL_PENDING if cancel_at_period_end else RemoteStatus.ACTIVE
        elif status == "past_due":
            remote = RemoteStatus.GRACE
        elif status in ("canceled", "unpaid", "incomplete_expired"):
            remote = RemoteStatus.CANCELLED
        else:
            remote = RemoteStatus.UNKNOWN

        period_end = data.get("current_period_end")
        items = (data.get("items") or {}).get("data") or []
        if period_end is None and items:
            period_end = items[0].get("current_period_end")
        price_id = ((items[0].get("price") or {}).get("id") if items else None)

        return ProviderSubscriptionStatus(
            provider=cls.provider,
            subscription_ref=subscription_ref,
            status=remote,
            period_end=(
                datetime.fromtimestamp(int(period_end), tz=timezone.utc)
                if period_end is not None else None
            ),
            product_ref=price_id,
            auto_renew=not cancel_at_period_end,
            raw={"status": status, "cancel_at_period_end": cancel_at_period_end},
        )


# =============================================================================
# App Store (App Store Server API)
# =============================================================================

# App Store Server API subscription status codes
_APPSTORE_STATUS = {
    1: RemoteStatus.ACTIVE,
    2: RemoteStatus.EXPIRED,
    3: RemoteStatus.EXPIRED,  # billing retry without grace: no access
    4: RemoteStatus.GRACE,
    5: RemoteStatus.REFUNDED,  # revoked
}


def decode_unverified_jws_payload(compact_jws: Optional[str]) -> dict[str, Any]:
    """Payload of a compact JWS without checking the signature."""
    token = str(compact_jws or "").strip()
    if not token:
        return {}
    parts = token.split(".")
    if len(parts) < 2:
        return {}
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        parsed = json.loads(base64.urlsafe_b64decode(segment.encode("utf-8")).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


class AppStoreAdapter(ProviderAdapter):
    """Reads subscription status from the App Store Server API."""

    provider = Provider.APP_STORE_IAP

    def __init__(self, timeout: Optional[float] = None):
        super().__init__(timeout)
        self.base_url = settings.appstore_api_base

    @staticmethod
    def credentials_configured() -> bool:
        return bool(
            settings.APPSTORE_ISSUER_ID
            and settings.APPSTORE_KEY_ID
            and settings.APPSTORE_PRIVATE_KEY
        )

    @staticmethod
    def build_api_token() -> str:
        """Short-lived ES256 bearer token for the App Store Server API."""
        now = int(time.time())
        payload = {
            "iss": settings.APPSTORE_ISSUER_ID,
            "iat": now,
            "exp": now + 300,
            "aud": "appstoreconnect-v1",
            "bid": settings.APPSTORE_BUNDLE_ID,
        }
        private_key = settings.APPSTORE_PRIVATE_KEY.replace("\\n", "\n").strip()
        return jwt.encode(
            payload,
            private_key,
            algorithm="ES256",
            headers={"kid": settings.APPSTORE_KEY_ID, "typ": "JWT"},
        )

    async def get_subscription_status(self, subscription_ref: str) -> ProviderSubscriptionStatus:
        if not self.credentials_configured():
            logger.warning("App Store API credentials not configured, skipping status query")
            return self._unknown(subscription_ref)

        data = await self._get_json(
            f"{self.base_url}/inApps/v1/subscriptions/{quote(subscription_ref, safe='')}",
            {
                "Authorization": f"Bearer {self.build_api_token()}",
                "Accept": "application/json",
            },
            subscription_ref,
        )
        if data is None:
            return self._unknown(subscription_ref)
        return self.parse_statuses(subscription_ref, data)

    @classmethod
    def parse_statuses(cls, subscription_ref: str, data: dict[str, Any]) -> ProviderSubscriptionStatus:
        """Pick the entry for ``subscription_ref`` out of an ``/inApps/v1/subscriptions`` body."""
        for group in data.get("data") or []:
            for item in group.get("lastTransactions") or []:
                if str(item.get("originalTransactionId")) != subscription_ref:
                    continue

                transaction = decode_unverified_jws_payload(item.get("signedTransactionInfo"))
                renewal = decode_unverified_jws_payload(item.get("signedRenewalInfo"))
                remote = _APPSTORE_STATUS.get(item.get("status"), RemoteStatus.UNKNOWN)
                auto_renew = renewal.get("autoRenewStatus")
                if remote == RemoteStatus.ACTIVE and auto_renew == 0:
                    remote = RemoteStatus.CANCEL_PENDING

                return ProviderSubscriptionStatus(
                    provider=cls.provider,
                    subscription_ref=subscription_ref,
                    status=remote,
                    period_end=_from_ms(transaction.get("expiresDate")),
                    grace_until=_from_ms(renewal.get("gracePeriodExpiresDate")),
                    product_ref=transaction.get("productId"),
                    auto_renew=None if auto_renew is None else auto_renew == 1,
                    raw={"status": item.get("status"), "environment": data.get("environment")},
                )

        return ProviderSubscriptionStatus(
            provider=cls.provider,
            subscription_ref=subscription_ref,
            status=RemoteStatus.UNKNOWN,
            raw={"reason": "originalTransactionId not in response"},
        )


def _from_ms(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


# =============================================================================
# Registry
# =============================================================================

def build_default_adapters() -> dict[Provider, ProviderAdapter]:
    return {
        Provider.CARD_BILLING: StripeBillingAdapter(),
        Provider.APP_STORE_IAP: AppStoreAdapter(),
    }


async def query_with_retry(
    adapter: ProviderAdapter,
    subscription_ref: str,
    config: Optional[RetryConfig] = None,
) -> ProviderSubscriptionStatus:
    """
    ``get_subscription_status`` with exponential backoff.

    Raises:
        TransientProviderError: every attempt failed.
    """
    return await retry_async(
        adapter.get_subscription_status,
        subscription_ref,
        config=config or provider_retry_config(),
    )
