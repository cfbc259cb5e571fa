"""
Stripe Checkout sessions for post purchases (card / hybrid remainder) and point packages.

All Stripe calls for purchases live here. Callers must not hold database row locks
while calling into this module: every function makes a network round trip.
"""
import logging

from billing import config
from billing.services.stripe_service import get_client, is_configured

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Raised when a Stripe call fails; message is safe to show to user."""

    def __init__(self, message: str, stripe_session_id: str = None):
        self.message = message
        self.stripe_session_id = stripe_session_id
        super().__init__(message)


def _friendly_message(e, fallback: str) -> str:
    err = getattr(e, "error", e)
    msg = getattr(err, "user_message", None) or ""
    if not msg or "api" in msg.lower():
        msg = fallback
    return msg


def create_checkout_session(
    *,
    checkout_session,
    product_name: str,
    success_url: str,
    cancel_url: str,
    customer_email: str = None,
    metadata: dict = None,
    idempotency_key: str = None,
) -> dict:
    """
    Create a Stripe Checkout session charging checkout_session.amount JPY.

    The local CheckoutSession id travels as client_reference_id and metadata.checkoutSessionId
    so the webhook can find the local row even if we never stored the Stripe id.

    Returns:
        {"stripe_session_id": "cs_xxx", "url": "https://checkout.stripe.com/..."}

    Raises:
        BillingError: when Stripe is not configured, the amount is invalid or create fails.
    """
    if not is_configured():
        raise BillingError("Payment is not configured. Please try again later.")
    amount = checkout_session.amount
    if amount < config.STRIPE_MIN_CHARGE_JPY:
        raise BillingError(f"Card payments must be at least ¥{config.STRIPE_MIN_CHARGE_JPY}.")

    stripe = get_client()
    full_metadata = {
        "type": checkout_session.kind,
        "userId": str(checkout_session.user_id),
        "checkoutSessionId": str(checkout_session.id),
        "stripeAmount": str(amount),
        "pointsUsed": str(checkout_session.points_reserved),
    }
    full_metadata.update({k: str(v) for k, v in (metadata or {}).items()})

    create_kwargs = dict(
        mode="payment",
        payment_method_types=["card"],
        line_items=[{
            "price_data": {
                "currency": config.CURRENCY,
                "product_data": {"name": product_name[:250]},
                "unit_amount": amount,
            },
            "quantity": 1,
        }],
        success_url=success_url,
        cancel_url=cancel_url,
        client_reference_id=str(checkout_session.id),
        metadata=full_metadata,
    )
    if customer_email:
        create_kwargs["customer_email"] = customer_email
    if idempotency_key:
        create_kwargs["idempotency_key"] = idempotency_key
    try:
        session = stripe.checkout.Session.create(**create_kwargs)
    except stripe.StripeError as e:
        logger.error("create_checkout_session: stripe error local=%s %s", checkout_session.id, e)
        raise BillingError(_friendly_message(e, "Payment could not be started. Please try again."))

    return {"stripe_session_id": session.id, "url": session.url}


def retrieve_checkout_session(stripe_session_id: str):
    """Fetch the remote session (status, payment_status, payment_intent). Raises BillingError."""
    stripe = get_client()
    try:
        return stripe.checkout.Session.retrieve(stripe_session_id)
    except stripe.StripeError as e:
        raise BillingError(_friendly_message(e, "Could not load payment session."), stripe_session_id)


def expire_checkout_session(stripe_session_id: str) -> bool:
    """
    Expire an open remote session so the customer can no longer pay it.
    Returns False when Stripe refuses (already complete or expired).
    """
    stripe = get_client()
    try:
        stripe.checkout.Session.expire(stripe_session_id)
        return True
    except stripe.StripeError as e:
        logger.warning("expire_checkout_session: could not expire %s: %s", stripe_session_id, e)
        return False
