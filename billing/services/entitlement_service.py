"""
Entitlement recorder. A Purchase row is the only proof a user may read a paid post.
Callers must only call grant() once payment is settled (points debited in the same
transaction, or card payment confirmed by Stripe).
"""
import logging

from django.db import IntegrityError, transaction
from django.db.models import F

from billing import errors
from billing.errors import PurchaseError
from billing.models import Purchase
from content.models import Creator
from general.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


@transaction.atomic()
def grant(
    user,
    post,
    *,
    price: int,
    points_portion: int,
    card_portion: int,
    payment_method: str,
    purchase_type: str = "paid",
    stripe_payment_intent_id: str = "",
) -> Purchase:
    """
    Create the Purchase, add the price to the creator's total_support and schedule the
    creator notification for after commit. Raises PurchaseError(ALREADY_PURCHASED) on a second grant.
    """
    if Purchase.objects.filter(user=user, post=post).exists():
        raise PurchaseError(errors.ALREADY_PURCHASED)
    try:
        with transaction.atomic():
            purchase = Purchase.objects.create(
                user=user,
                post=post,
                price=price,
                points_portion=points_portion,
                card_portion=card_portion,
                payment_method=payment_method,
                purchase_type=purchase_type,
                stripe_payment_intent_id=stripe_payment_intent_id or "",
            )
    except IntegrityError:
        # Concurrent grant won the unique (user, post) race
        raise PurchaseError(errors.ALREADY_PURCHASED)
    Creator.objects.filter(pk=post.creator_id).update(total_support=F("total_support") + price)
    transaction.on_commit(lambda: notify_creator(purchase.id))
    logger.info(
        "grant: purchase=%s user=%s post=%s price=%s method=%s",
        purchase.id, user.pk, post.id, price, payment_method,
    )
    return purchase


def notify_creator(purchase_id: int) -> None:
    """Fire-and-forget: a failed notification never affects the purchase."""
    try:
        purchase = Purchase.objects.select_related("user", "post__creator__user").get(id=purchase_id)
        NotificationService.notify_purchase(purchase)
    except Exception as e:
        logger.warning("notify_creator: notification for purchase=%s failed: %s", purchase_id, e)
