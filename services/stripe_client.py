"""
Thin wrapper over the Stripe SDK.

Amounts cross this boundary as ``Decimal`` major units and are converted to
integer minor units (cents) for the provider. Connection failures are retried
with tenacity; mutating calls carry an idempotency key so a retry can never
create a second intent or refund.
"""
import json
from decimal import Decimal
from typing import Any, Dict

import stripe
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.config import settings
from core.errors import InvalidWebhookSignature, PaymentNotSucceeded, ProviderError
from core.logging import get_logger

logger = get_logger(__name__)

stripe.default_http_client = stripe.RequestsClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS)

# Reasons Stripe accepts on a refund; anything else is kept locally only
REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}


def provider_retry():
    return retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.3, min=0.3, max=3),
        retry=retry_if_exception_type(stripe.APIConnectionError),
    )


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


@provider_retry()
def _send(call, *args, **params):
    return call(*args, api_key=settings.STRIPE_SECRET_KEY, **params)


def _call(operation: str, call, *args, **params) -> Dict[str, Any]:
    try:
        return _send(call, *args, **params)
    except stripe.CardError as exc:
        logger.info("Stripe %s declined: %s", operation, exc.user_message)
        raise PaymentNotSucceeded(f"Payment declined: {exc.user_message}") from exc
    except stripe.APIConnectionError as exc:
        logger.error("Stripe %s failed: %s", operation, exc)
        raise ProviderError("Payment provider is unreachable, please retry") from exc
    except stripe.StripeError as exc:
        logger.error("Stripe %s returned %s: %s", operation, exc.http_status, exc.user_message)
        raise ProviderError(f"Payment provider error: {exc.user_message or exc}") from exc


def create_payment_intent(
    amount: Decimal, currency: str, metadata: Dict[str, Any] | None = None, idempotency_key: str | None = None
) -> Dict[str, Any]:
    intent = _call(
        "create intent",
        stripe.PaymentIntent.create,
        amount=to_minor_units(amount),
        currency=currency.lower(),
        automatic_payment_methods={"enabled": True},
        metadata={key: str(value) for key, value in (metadata or {}).items()},
        idempotency_key=idempotency_key,
    )
    logger.info("Payment intent created: %s for %s %s", intent.get("id"), amount, currency)
    return intent


def get_payment_intent(intent_id: str) -> Dict[str, Any]:
    return _call("retrieve intent", stripe.PaymentIntent.retrieve, intent_id)


def cancel_payment_intent(intent_id: str) -> Dict[str, Any]:
    intent = _call("cancel intent", stripe.PaymentIntent.cancel, intent_id, idempotency_key=f"cancel-{intent_id}")
    logger.info("Payment intent cancelled: %s", intent_id)
    return intent


def create_refund(
    intent_id: str, amount: Decimal | None = None, reason: str | None = None, idempotency_key: str | None = None
) -> Dict[str, Any]:
    params: Dict[str, Any] = {"payment_intent": intent_id}
    if amount is not None:
        params["amount"] = to_minor_units(amount)
    if reason in REFUND_REASONS:
        params["reason"] = reason
    refund = _call("refund", stripe.Refund.create, idempotency_key=idempotency_key, **params)
    logger.info("Refund created: %s for payment %s", refund.get("id"), intent_id)
    return refund


def construct_webhook_event(
    payload: bytes, signature_header: str | None, secret: str | None = None, tolerance: int | None = None
) -> Dict[str, Any]:
    """Verify a ``Stripe-Signature`` header and return the decoded event."""
    secret = secret if secret is not None else settings.STRIPE_WEBHOOK_SECRET
    tolerance = tolerance if tolerance is not None else settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
    if not signature_header:
        raise InvalidWebhookSignature("Missing Stripe signature")
    if not secret:
        raise InvalidWebhookSignature("Webhook secret is not configured")

    try:
        stripe.Webhook.construct_event(payload=payload, sig_header=signature_header, secret=secret, tolerance=tolerance)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Rejected webhook: %s", exc.user_message)
        raise InvalidWebhookSignature() from exc
    except ValueError as exc:
        raise InvalidWebhookSignature("Webhook payload is not valid JSON") from exc

    # Handlers work on the plain payload rather than SDK objects
    event = json.loads(payload)
    if not isinstance(event, dict) or not event.get("type"):
        raise InvalidWebhookSignature("Webhook payload is not an event")
    return event
