"""
Webhooks API Endpoints
======================

Lifecycle notifications from payment providers.

Authentication:
    Card billing: ``Stripe-Signature`` HMAC over the raw body.
    App Store: JWS ``signedPayload`` verified against its x5c chain.
    Anything that fails verification gets 401 and is not processed.

Responses:
    200 processed, duplicate, stale, ignored or dead-lettered (the provider
        must not retry these)
    202 accepted onto the ingest stream (``WEBHOOK_INGEST_MODE=queued``)
    401 signature verification failed
    503 the idempotency ledger is unavailable; the provider retries later
"""

import logging
from typing import Annotated, Any, Optional

from fastapi import APIRouter, Header, Request, Response, status
from redis.exceptions import RedisError

from entitlement_engine.config import settings
from entitlement_engine.core.errors import (
    AuthenticationError,
    ErrorCodes,
    LedgerUnavailableError,
    MalformedEventError,
    ServiceUnavailableError,
    WebhookAuthenticationError,
)
from entitlement_engine.dependencies import Pipeline
from entitlement_engine.models.subscription import Provider
from entitlement_engine.schemas.common import ErrorResponse
from entitlement_engine.schemas.entitlement import WebhookAck
from entitlement_engine.services.ingest_worker import enqueue_webhook, ingest_payload
from entitlement_engine.services.pipeline import EntitlementPipeline
from entitlement_engine.services.webhook_auth import (
    decode_appstore_notification,
    verify_card_webhook,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _record(request: Request, provider: Provider, ack: WebhookAck) -> WebhookAck:
    request.state.webhook_provider = provider.value
    request.state.webhook_event_id = ack.event_id
    if ack.dead_lettered:
        request.state.webhook_outcome = "dead_lettered"
    elif ack.queued:
        request.state.webhook_outcome = "queued"
    else:
        request.state.webhook_outcome = ack.outcome
    return ack


async def _dispatch(
    request: Request,
    pipeline: EntitlementPipeline,
    provider: Provider,
    payload: dict[str, Any],
    response: Response,
) -> WebhookAck:
    if settings.WEBHOOK_INGEST_MODE == "queued":
        try:
            await enqueue_webhook(provider, payload)
            response.status_code = status.HTTP_202_ACCEPTED
            return _record(request, provider, WebhookAck(queued=True))
        except RedisError as exc:
            logger.warning("Ingest stream unavailable, processing inline: %s", exc)

    try:
        result = await ingest_payload(pipeline, provider, payload)
    except LedgerUnavailableError as exc:
        logger.error("Rejecting %s webhook, ledger unavailable: %s", provider.value, exc)
        raise ServiceUnavailableError(message="Ledger unavailable, retry later")

    logger.info(
        "Webhook %s event %s: %s%s",
        provider.value,
        result.event_id,
        result.outcome.value,
        " (duplicate)" if result.duplicate else "",
    )
    return _record(request, provider, WebhookAck(
        event_id=result.event_id or None,
        outcome=result.outcome.value,
        duplicate=result.duplicate,
        dead_lettered=result.dead_lettered,
    ))


async def _dead_letter_unreadable(
    request: Request,
    pipeline: EntitlementPipeline,
    provider: Provider,
    body: bytes,
    exc: MalformedEventError,
) -> WebhookAck:
    try:
        await pipeline.dead_letter(
            reason=str(exc),
            error_type=type(exc).__name__,
            payload={"raw": body.decode("utf-8", errors="replace")[:10000]},
            provider=provider.value,
        )
    except LedgerUnavailableError:
        raise ServiceUnavailableError(message="Ledger unavailable, retry later")
    return _record(request, provider, WebhookAck(outcome="ignored", dead_lettered=True))


@router.post(
    "/card",
    response_model=WebhookAck,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid Stripe-Signature"},
        503: {"model": ErrorResponse, "description": "Ledger unavailable, redeliver later"},
    },
)
async def card_webhook(
    request: Request,
    response: Response,
    pipeline: Pipeline,
    stripe_signature: Annotated[Optional[str], Header(alias="Stripe-Signature")] = None,
):
    """Card billing (Stripe) subscription, invoice and refund events."""
    body = await request.body()

    try:
        payload = verify_card_webhook(body, stripe_signature or "")
    except WebhookAuthenticationError as exc:
        logger.warning("Unauthorized card webhook: %s", exc)
        raise AuthenticationError(
            code=ErrorCodes.HOOK_INVALID_SIGNATURE,
            message="Invalid webhook signature",
        )
    except MalformedEventError as exc:
        logger.error("Unreadable card webhook: %s", exc)
        return await _dead_letter_unreadable(request, pipeline, Provider.CARD_BILLING, body, exc)

    return await _dispatch(request, pipeline, Provider.CARD_BILLING, payload, response)


@router.post(
    "/appstore",
    response_model=WebhookAck,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid JWS or certificate chain"},
        503: {"model": ErrorResponse, "description": "Ledger unavailable, redeliver later"},
    },
)
async def appstore_webhook(
    request: Request,
    response: Response,
    pipeline: Pipeline,
):
    """App Store Server Notifications V2."""
    body = await request.body()

    try:
        payload = decode_appstore_notification(body)
    except WebhookAuthenticationError as exc:
        logger.warning("Unauthorized App Store webhook: %s", exc)
        raise AuthenticationError(
            code=ErrorCodes.HOOK_INVALID_SIGNATURE,
            message="Invalid signed payload",
        )
    except MalformedEventError as exc:
        logger.error("Unreadable App Store webhook: %s", exc)
        return await _dead_letter_unreadable(request, pipeline, Provider.APP_STORE_IAP, body, exc)

    return await _dispatch(request, pipeline, Provider.APP_STORE_IAP, payload, response)
