"""
Checkout session reconciliation.

RECONCILIATION RULES (pending sessions older than CHECKOUT_SESSION_MAX_AGE):
1. Stripe says the session is paid: complete it (the webhook was lost)
2. Stripe could not be asked: leave it pending for the next sweep
3. Anything else: expire it at Stripe, then cancel locally and refund reserved points.
   If Stripe refuses to expire it, look again: paid means complete, expired means cancel,
   anything else (e.g. an async payment still in flight) stays pending
4. Stripe not configured: cancel locally and refund reserved points

Completed and canceled sessions are never touched, so the sweep is safe to run repeatedly.
"""
import logging

from django.utils import timezone

from billing import config
from billing.errors import PurchaseError
from billing.models import CheckoutSession
from billing.services import checkout_service, idempotency_service, payment_service
from billing.services.payment_service import BillingError
from billing.services.stripe_service import is_configured

logger = logging.getLogger(__name__)


def _load_remote(stripe_session_id):
    """Remote Stripe session, or None when Stripe could not be reached."""
    try:
        return payment_service.retrieve_checkout_session(stripe_session_id)
    except BillingError as e:
        logger.warning("[reconcile] could not load %s: %s", stripe_session_id, e.message)
        return None


def _is_paid(remote) -> bool:
    return getattr(remote, "payment_status", None) == "paid"


def _settled_remote(local):
    """
    Ask Stripe about local before we cancel it.

    Returns:
        (remote, proceed): proceed is False when the session must stay pending this sweep.
        remote is the paid Stripe session when the sweep should complete instead of cancel.
    """
    remote = _load_remote(local.stripe_session_id)
    if remote is None:
        return None, False
    if _is_paid(remote):
        return remote, True
    if payment_service.expire_checkout_session(local.stripe_session_id):
        return None, True
    # Stripe refused to expire it: it may have been paid after our lookup
    remote = _load_remote(local.stripe_session_id)
    if remote is None:
        return None, False
    if _is_paid(remote):
        return remote, True
    if getattr(remote, "status", None) == "expired":
        return None, True
    logger.info("[reconcile] %s is %s at Stripe, leaving pending", local.stripe_session_id,
                getattr(remote, "status", None))
    return None, False


def reconcile_stale_checkout_sessions(now=None, max_age=None):
    """
    Settle or cancel pending checkout sessions older than max_age.

    Returns:
        dict: {
            'sessions_checked': int,
            'sessions_completed': int,
            'sessions_canceled': int,
            'sessions_skipped': int,
            'points_refunded': int,
            'completion_failures': int,
            'compensation_failures': int
        }
    """
    now = now or timezone.now()
    max_age = max_age or config.CHECKOUT_SESSION_MAX_AGE
    cutoff = now - max_age

    stale = CheckoutSession.objects.filter(
        status=CheckoutSession.STATUS_PENDING,
        created_at__lt=cutoff,
    ).order_by("created_at")

    result = {
        "sessions_checked": 0,
        "sessions_completed": 0,
        "sessions_canceled": 0,
        "sessions_skipped": 0,
        "points_refunded": 0,
        "completion_failures": 0,
        "compensation_failures": 0,
    }
    logger.info("[reconcile] Starting sweep, cutoff=%s", cutoff)

    for local in stale:
        result["sessions_checked"] += 1
        if local.stripe_session_id and is_configured():
            remote, proceed = _settled_remote(local)
            if not proceed:
                result["sessions_skipped"] += 1
                continue
            if remote is not None:
                try:
                    checkout_service.complete_checkout_session(
                        local.id,
                        getattr(remote, "payment_intent", None) or "",
                        now=now,
                        amount_paid=getattr(remote, "amount_total", None),
                    )
                except Exception:
                    logger.exception("[reconcile] completing checkout %s failed", local.id)
                    result["completion_failures"] += 1
                    continue
                result["sessions_completed"] += 1
                continue

        try:
            canceled = checkout_service.cancel_checkout_session(local.id, reason="expired", now=now)
        except PurchaseError as e:
            # Already alerted and flagged for recovery; keep sweeping the rest
            logger.error("[reconcile] checkout %s: %s", local.id, e.code)
            result["compensation_failures"] += 1
            continue
        if canceled.status == CheckoutSession.STATUS_CANCELED:
            result["sessions_canceled"] += 1
            result["points_refunded"] += canceled.points_reserved

    logger.info("[reconcile] Done: %s", result)
    return result


def cleanup_expired_idempotency_keys(now=None):
    """Returns the number of deleted keys."""
    return idempotency_service.cleanup_expired(now=now)
