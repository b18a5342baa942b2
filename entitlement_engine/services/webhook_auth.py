"""
Webhook Authentication
======================

Turns raw webhook bodies into trusted payload dicts for the normalizer.

Card billing:
    Stripe signs the raw body with the endpoint secret
    (``Stripe-Signature`` header). ``stripe.Webhook.construct_event``
    checks the HMAC and the timestamp tolerance.

App Store:
    Notifications V2 arrive as ``{"signedPayload": "<JWS>"}``. The JWS
    header carries the signing certificate chain in ``x5c``; the leaf
    certificate's key verifies the signature and each certificate must be
    issued by the next one in the chain. ``transactionInfo`` and
    ``renewalInfo`` inside the payload are themselves JWS and are decoded
    in place.
"""

import base64
import json
import logging
from typing import Any

import stripe
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from jose import jws, jwt
from jose.exceptions import JOSEError

from entitlement_engine.config import settings
from entitlement_engine.core.errors import MalformedEventError, WebhookAuthenticationError

logger = logging.getLogger(__name__)


# =============================================================================
# Card billing
# =============================================================================

def verify_card_webhook(body: bytes, signature_header: str) -> dict[str, Any]:
    """
    Verify a Stripe webhook and return the event as a plain dict.

    Raises:
        WebhookAuthenticationError: missing secret/header or bad signature.
        MalformedEventError: the body is not a JSON object.
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("STRIPE_WEBHOOK_SECRET not configured, rejecting webhook")
        raise WebhookAuthenticationError("card webhook secret not configured")
    if not signature_header:
        raise WebhookAuthenticationError("missing Stripe-Signature header")

    try:
        stripe.Webhook.construct_event(body, signature_header, settings.STRIPE_WEBHOOK_SECRET)
    except stripe.SignatureVerificationError as exc:
        raise WebhookAuthenticationError(f"invalid card webhook signature: {exc}") from exc
    except ValueError as exc:
        raise MalformedEventError(f"invalid card webhook body: {exc}") from exc

    # construct_event returns a StripeObject; normalize from the plain JSON
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedEventError(f"invalid card webhook body: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedEventError("card webhook body is not an object")
    return payload


# =============================================================================
# App Store
# =============================================================================

def _load_chain(header: dict[str, Any]) -> list[x509.Certificate]:
    chain = header.get("x5c")
    if not isinstance(chain, list) or not chain:
        raise WebhookAuthenticationError("JWS header has no x5c certificate chain")
    try:
        return [x509.load_der_x509_certificate(base64.b64decode(cert)) for cert in chain]
    except (ValueError, TypeError) as exc:
        raise WebhookAuthenticationError(f"invalid x5c certificate: {exc}") from exc


def _verify_chain(certificates: list[x509.Certificate]) -> None:
    for cert, issuer in zip(certificates, certificates[1:]):
        try:
            cert.verify_directly_issued_by(issuer)
        except (ValueError, TypeError, InvalidSignature) as exc:
            raise WebhookAuthenticationError(
                f"x5c chain broken at {cert.subject.rfc4514_string()}"
            ) from exc


def verify_jws(token: str) -> dict[str, Any]:
    """Verify an App Store JWS against its own x5c chain and return the claims."""
    try:
        header = jws.get_unverified_header(token)
    except JOSEError as exc:
        raise WebhookAuthenticationError(f"unreadable JWS header: {exc}") from exc

    certificates = _load_chain(header)
    _verify_chain(certificates)
    public_key = certificates[0].public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )

    try:
        raw = jws.verify(token, public_key, algorithms=["ES256"])
    except JOSEError as exc:
        raise WebhookAuthenticationError(f"invalid JWS signature: {exc}") from exc

    try:
        claims = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedEventError(f"JWS payload is not JSON: {exc}") from exc
    if not isinstance(claims, dict):
        raise MalformedEventError("JWS payload is not an object")
    return claims


def _decode(token: str) -> dict[str, Any]:
    if settings.APPSTORE_VERIFY_SIGNATURES:
        return verify_jws(token)
    try:
        return jwt.get_unverified_claims(token)
    except JOSEError as exc:
        raise MalformedEventError(f"unreadable JWS: {exc}") from exc


def decode_appstore_notification(body: bytes) -> dict[str, Any]:
    """
    Verify and decode an App Store Server Notification V2 body.

    Returns the notification claims with ``data.transactionInfo`` and
    ``data.renewalInfo`` replaced by their decoded claims.

    Raises:
        WebhookAuthenticationError: signature, chain or bundle id check failed.
        MalformedEventError: the body is not a notification.
    """
    try:
        envelope = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedEventError(f"invalid app store webhook body: {exc}") from exc

    signed_payload = envelope.get("signedPayload") if isinstance(envelope, dict) else None
    if not signed_payload:
        raise MalformedEventError("missing signedPayload")

    claims = _decode(signed_payload)
    data = dict(claims.get("data") or {})

    bundle_id = data.get("bundleId")
    if bundle_id and bundle_id != settings.APPSTORE_BUNDLE_ID:
        raise WebhookAuthenticationError(
            f"notification for bundle {bundle_id}, expected {settings.APPSTORE_BUNDLE_ID}"
        )

    if data.get("signedTransactionInfo"):
        data["transactionInfo"] = _decode(data.pop("signedTransactionInfo"))
    if data.get("signedRenewalInfo"):
        data["renewalInfo"] = _decode(data.pop("signedRenewalInfo"))

    claims["data"] = data
    return claims
