"""
Inbound Stripe webhooks. Signature is checked against the raw body before anything else;
only charge.refunded changes state, and an order already refunded is left alone
because Stripe redelivers events.
"""
import json
import logging

import stripe

from storefront.errors import ConfigurationError
from storefront.lifecycle import SOURCE_STRIPE, OrderLifecycle
from storefront.metrics import stripe_events_total
from storefront.order_state import OrderStatus
from storefront.redis_client import check_idempotency, release_idempotency

logger = logging.getLogger(__name__)

CHARGE_REFUNDED = "charge.refunded"


class WebhookSignatureError(Exception):
    """Raised when the Stripe-Signature header does not match the payload."""


def verify_stripe_event(payload: bytes, sig_header: str | None, secret: str | None) -> dict:
    """Verify the Stripe-Signature header and return the decoded event."""
    if not secret:
        raise ConfigurationError("Stripe webhook secret is not configured")
    if not sig_header:
        raise WebhookSignatureError("Missing Stripe-Signature header")
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise WebhookSignatureError(f"Payload is not valid UTF-8: {e}") from e
    try:
        stripe.WebhookSignature.verify_header(text, sig_header, secret, stripe.Webhook.DEFAULT_TOLERANCE)
    except stripe.SignatureVerificationError as e:
        raise WebhookSignatureError(str(e)) from e
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise WebhookSignatureError(f"Invalid payload: {e}") from e


async def handle_stripe_event(event: dict, lifecycle: OrderLifecycle) -> str:
    """
    Apply a verified event. Returns an outcome label; never raises for business outcomes
    (unknown order, duplicate delivery, unhandled type) since Stripe only needs the 200.
    """
    event_type = event.get("type") or "unknown"
    event_id = event.get("id")
    key = f"stripe:event:{event_id}" if event_id else None

    if key and await check_idempotency(key):
        logger.info("Duplicate Stripe event %s, skipped", event_id)
        return _outcome(event_type, "duplicate")

    try:
        return await _apply_event(event, event_type, event_id, lifecycle)
    except Exception:
        # A failed event must stay redeliverable
        if key:
            await release_idempotency(key)
        raise


async def _apply_event(event: dict, event_type: str, event_id: str | None, lifecycle: OrderLifecycle) -> str:
    if event_type != CHARGE_REFUNDED:
        logger.debug("Ignoring Stripe event %s of type %s", event_id, event_type)
        return _outcome(event_type, "ignored")

    charge = (event.get("data") or {}).get("object") or {}
    payment_intent_id = charge.get("payment_intent")
    if not payment_intent_id:
        logger.warning("Stripe event %s has no payment_intent, ignored", event_id)
        return _outcome(event_type, "no_payment_intent")

    order = await lifecycle.store.get_order_by_payment_intent(payment_intent_id)
    if order is None:
        logger.warning("No order found for payment intent %s (event %s)", payment_intent_id, event_id)
        return _outcome(event_type, "order_not_found")

    if order.order_status == OrderStatus.REFUNDED.value:
        logger.info("Order %s already refunded, ignoring event %s", order.order_id, event_id)
        return _outcome(event_type, "already_refunded")

    await lifecycle.update_order(
        order.id,
        {
            "order_status": OrderStatus.REFUNDED.value,
            "status_change_note": f"Refunded via Stripe (charge {charge.get('id') or 'unknown'})",
        },
        actor=None,
        trusted=True,
        source=SOURCE_STRIPE,
    )
    logger.info("Order %s marked refunded from Stripe event %s", order.order_id, event_id)
    return _outcome(event_type, "refunded")


def _outcome(event_type: str, outcome: str) -> str:
    stripe_events_total.labels(event_type=event_type, outcome=outcome).inc()
    return outcome
