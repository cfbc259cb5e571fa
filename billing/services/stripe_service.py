"""
Stripe SDK access for billing. Keys come from settings only and never leave the server.

payment_service builds Checkout sessions on top of get_client(); the webhook view verifies
incoming events with construct_webhook_event().
"""
import stripe
from django.conf import settings


def _setting(name: str) -> str:
    return (getattr(settings, name, None) or "").strip()


def is_configured() -> bool:
    """True when STRIPE_SECRET_KEY is set. Card and hybrid checkouts are refused otherwise."""
    return bool(_setting("STRIPE_SECRET_KEY"))


def webhook_configured() -> bool:
    return bool(_setting("STRIPE_WEBHOOK_SECRET"))


def get_client():
    """stripe module with api_key applied. Raises RuntimeError when no secret key is set."""
    if not is_configured():
        raise RuntimeError("STRIPE_SECRET_KEY is not set; card payments are unavailable.")
    stripe.api_key = _setting("STRIPE_SECRET_KEY")
    return stripe


def check_api_ok() -> bool:
    """Cheap authenticated call used by the payments status page. False on any Stripe error."""
    if not is_configured():
        return False
    try:
        get_client().Balance.retrieve()
    except stripe.StripeError:
        return False
    return True


def construct_webhook_event(payload: bytes, sig_header: str):
    """
    Parse a webhook body after checking its Stripe-Signature header against STRIPE_WEBHOOK_SECRET.
    Raises ValueError for a malformed body and stripe.SignatureVerificationError for a bad signature.
    """
    return stripe.Webhook.construct_event(payload, sig_header, _setting("STRIPE_WEBHOOK_SECRET"))
