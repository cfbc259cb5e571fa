"""
Checkout orchestrator. One entry point, execute_plan(), settles every payment plan:

- PointsPlan: debit + Purchase in one transaction.
- CardPlan: local pending CheckoutSession, then a Stripe Checkout redirect.
- HybridPlan: points are reserved (debited and committed) before the Stripe call; if the
  card leg fails or is abandoned the reservation is refunded (compensation).

Entitlement for card and hybrid is granted only by complete_checkout_session(), which the
webhook and the reconciliation sweep call. No row lock is held across a Stripe call.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional, Union

from django.db import transaction
from django.utils import timezone

from billing import config, errors
from billing.errors import PurchaseError
from billing.models import CheckoutSession, PointPackage, PointTransaction, Purchase
from billing.services import (
    audit_service,
    balance_service,
    entitlement_service,
    idempotency_service,
    payment_service,
    pricing_service,
)
from billing.services.payment_service import BillingError
from general.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PointsPlan:
    """Whole price from the point balance."""

    amount: int
    method = config.METHOD_POINTS

    @property
    def points_amount(self) -> int:
        return self.amount

    @property
    def card_amount(self) -> int:
        return 0


@dataclass(frozen=True)
class CardPlan:
    """Whole price by card through Stripe Checkout."""

    amount: int
    method = config.METHOD_CARD

    @property
    def points_amount(self) -> int:
        return 0

    @property
    def card_amount(self) -> int:
        return self.amount


@dataclass(frozen=True)
class HybridPlan:
    """Part points (reserved up front), remainder by card."""

    points_amount: int
    card_amount: int
    method = config.METHOD_HYBRID


PaymentPlan = Union[PointsPlan, CardPlan, HybridPlan]


def plan_total(plan: PaymentPlan) -> int:
    return plan.points_amount + plan.card_amount


def build_plan(method: str, price: int, points_to_use=None) -> PaymentPlan:
    """
    Turn a client's method choice into a plan. Hybrid with every point collapses to PointsPlan
    and hybrid with zero points collapses to CardPlan.
    """
    if method == config.METHOD_POINTS:
        return PointsPlan(price)
    if method == config.METHOD_CARD:
        return CardPlan(price)
    if method == config.METHOD_HYBRID:
        try:
            points = int(points_to_use)
        except (TypeError, ValueError):
            raise PurchaseError(errors.INVALID_REQUEST, "pointsToUse must be a whole number.")
        if points < 0 or points > price:
            raise PurchaseError(errors.INVALID_REQUEST, "pointsToUse must be between 0 and the price.")
        if points == price:
            return PointsPlan(price)
        if points == 0:
            return CardPlan(price)
        return HybridPlan(points_amount=points, card_amount=price - points)
    raise PurchaseError(errors.INVALID_REQUEST, "Unknown payment method.")


@dataclass
class CheckoutResult:
    """Either a completed purchase or a redirect to Stripe, never both."""

    purchase: Optional[Purchase] = None
    redirect_url: Optional[str] = None
    data: dict = field(default_factory=dict)
    replayed: bool = False


def _replayed(cached: dict) -> CheckoutResult:
    if "purchaseId" in cached:
        return CheckoutResult(
            purchase=Purchase.objects.filter(id=cached["purchaseId"]).first(),
            data=cached,
            replayed=True,
        )
    return CheckoutResult(redirect_url=cached.get("url"), data=cached, replayed=True)


def _validate(user, post, plan: PaymentPlan, purchase_type: str):
    """Checks shared by every plan, run before the first write."""
    options = pricing_service.resolve_purchase_options(user, post, purchase_type)
    if options.already_purchased:
        raise PurchaseError(errors.ALREADY_PURCHASED)
    if plan.method not in options.allowed_methods:
        if options.is_adult:
            raise PurchaseError(errors.ADULT_CONTENT_METHOD_FORBIDDEN)
        raise PurchaseError(errors.INVALID_REQUEST, "This payment method is not available.")
    if plan_total(plan) != options.price:
        raise PurchaseError(errors.INVALID_REQUEST, "Payment amount does not match the price.")
    if plan.card_amount and plan.card_amount < config.STRIPE_MIN_CHARGE_JPY:
        raise PurchaseError(
            errors.INVALID_REQUEST,
            f"The card part must be at least ¥{config.STRIPE_MIN_CHARGE_JPY}.",
        )
    return options


def execute_plan(
    user,
    post,
    plan: PaymentPlan,
    *,
    purchase_type: str = config.PURCHASE_TYPE_PAID,
    success_url: str = None,
    cancel_url: str = None,
    idempotency_key: str = None,
) -> CheckoutResult:
    """
    Run a payment plan for post. Raises PurchaseError with one of the codes in billing.errors.
    Replaying a completed idempotency key returns the first result without new writes.
    """
    if user is None or not user.is_authenticated:
        raise PurchaseError(errors.UNAUTHORIZED)
    key = idempotency_service.scoped_key(user, idempotency_key)
    operation = f"{plan.method}:{post.id}:{purchase_type}"
    if isinstance(plan, PointsPlan):
        return _settle_with_points(user, post, plan, purchase_type, key, operation)
    if not success_url or not cancel_url:
        raise PurchaseError(errors.INVALID_REQUEST, "successUrl and cancelUrl are required.")
    local, record, cached = _reserve(user, post, plan, purchase_type, key, operation)
    if cached is not None:
        return _replayed(cached)
    return _start_processor_leg(
        local,
        record,
        product_name=post.title,
        success_url=success_url,
        cancel_url=cancel_url,
        customer_email=user.email,
        metadata={"postId": post.id, "purchaseType": purchase_type},
    )


@transaction.atomic()
def _settle_with_points(user, post, plan: PointsPlan, purchase_type, key, operation) -> CheckoutResult:
    record = None
    if key:
        record, cached = idempotency_service.begin(key, operation)
        if cached is not None:
            return _replayed(cached)
    options = _validate(user, post, plan, purchase_type)
    audit_log = audit_service.start(
        audit_service.operation_type_for(plan.method, purchase_type),
        user=user,
        post=post,
        total_amount=options.price,
        points_amount=plan.amount,
        idempotency_key=key or "",
        status="processing",
    )
    tx = balance_service.debit(
        user,
        plan.amount,
        PointTransaction.TYPE_POST_PURCHASE,
        f"Purchase: {post.title}",
        reference_id=f"post:{post.id}",
        # Tied to the key record, not the client key: an expired client key may be reused
        idempotency_key=f"debit:{record.pk}" if record is not None else None,
    )
    purchase = entitlement_service.grant(
        user,
        post,
        price=options.price,
        points_portion=plan.amount,
        card_portion=0,
        payment_method=config.METHOD_POINTS,
        purchase_type=purchase_type,
    )
    audit_service.complete(audit_log)
    data = {
        "purchaseId": purchase.id,
        "postId": post.id,
        "price": purchase.price,
        "paymentMethod": purchase.payment_method,
        "pointsUsed": plan.amount,
        "cardAmount": 0,
        "balance": tx.balance_after,
    }
    if record is not None:
        idempotency_service.complete(record, data)
    return CheckoutResult(purchase=purchase, data=data)


@transaction.atomic()
def _reserve(user, post, plan, purchase_type, key, operation):
    """
    First saga step for card and hybrid: local pending session plus, for hybrid, the points debit.
    Commits before Stripe is called so no lock is held over the network.
    """
    record = None
    if key:
        record, cached = idempotency_service.begin(key, operation)
        if cached is not None:
            return None, record, cached
    options = _validate(user, post, plan, purchase_type)
    local = CheckoutSession.objects.create(
        user=user,
        kind=CheckoutSession.KIND_POST_HYBRID if plan.points_amount else CheckoutSession.KIND_POST,
        post=post,
        purchase_type=purchase_type,
        total_price=options.price,
        amount=plan.card_amount,
        points_reserved=plan.points_amount,
    )
    if plan.points_amount:
        balance_service.debit(
            user,
            plan.points_amount,
            PointTransaction.TYPE_POST_PURCHASE,
            f"Reserved for card checkout: {post.title}",
            reference_id=f"checkout:{local.id}",
            idempotency_key=f"reserve:{local.id}",
        )
    audit_service.start(
        audit_service.operation_type_for(plan.method, purchase_type),
        user=user,
        post=post,
        checkout_session=local,
        total_amount=options.price,
        points_amount=plan.points_amount,
        card_amount=plan.card_amount,
        idempotency_key=key or "",
    )
    logger.info(
        "reserve: checkout=%s user=%s post=%s points=%s card=%s",
        local.id, user.pk, post.id, plan.points_amount, plan.card_amount,
    )
    return local, record, None


def _start_processor_leg(local, record, *, product_name, success_url, cancel_url, customer_email, metadata):
    try:
        remote = payment_service.create_checkout_session(
            checkout_session=local,
            product_name=product_name,
            success_url=success_url,
            cancel_url=cancel_url,
            customer_email=customer_email,
            metadata=metadata,
            idempotency_key=f"checkout:{local.id}",
        )
    except BillingError as e:
        logger.error("processor leg failed: checkout=%s %s", local.id, e.message)
        cancel_checkout_session(local.id, reason="processor_error")
        if record is not None:
            idempotency_service.fail(record)
        raise PurchaseError(errors.PROCESSOR_ERROR, e.message)

    with transaction.atomic():
        CheckoutSession.objects.filter(pk=local.pk).update(
            stripe_session_id=remote["stripe_session_id"],
            checkout_url=remote["url"],
        )
        audit_log = audit_service.for_checkout_session(local)
        if audit_log is not None:
            audit_log.status = "processing"
            audit_log.stripe_session_id = remote["stripe_session_id"]
            audit_log.save(update_fields=["status", "stripe_session_id", "updated_at"])
        data = {
            "url": remote["url"],
            "sessionId": remote["stripe_session_id"],
            "checkoutSessionId": local.id,
            "pointsUsed": local.points_reserved,
            "stripeAmount": local.amount,
        }
        if record is not None:
            idempotency_service.complete(record, data)
    logger.info("processor leg started: checkout=%s stripe=%s", local.id, remote["stripe_session_id"])
    return CheckoutResult(redirect_url=remote["url"], data=data)


def create_point_checkout(user, package_id, *, success_url, cancel_url, idempotency_key=None) -> CheckoutResult:
    """Buy a point package by card. Points are credited when Stripe confirms payment."""
    if user is None or not user.is_authenticated:
        raise PurchaseError(errors.UNAUTHORIZED)
    if not success_url or not cancel_url:
        raise PurchaseError(errors.INVALID_REQUEST, "successUrl and cancelUrl are required.")
    key = idempotency_service.scoped_key(user, idempotency_key)
    with transaction.atomic():
        record = None
        if key:
            record, cached = idempotency_service.begin(key, f"point_purchase:{package_id}")
            if cached is not None:
                return _replayed(cached)
        try:
            package = PointPackage.objects.get(id=int(package_id), is_active=True)
        except (TypeError, ValueError, PointPackage.DoesNotExist):
            raise PurchaseError(errors.NOT_FOUND, "Point package not found.")
        local = CheckoutSession.objects.create(
            user=user,
            kind=CheckoutSession.KIND_POINTS,
            package=package,
            total_price=package.price_jpy,
            amount=package.price_jpy,
        )
        audit_service.start(
            "point_purchase",
            user=user,
            checkout_session=local,
            total_amount=package.price_jpy,
            card_amount=package.price_jpy,
            idempotency_key=key or "",
        )
    return _start_processor_leg(
        local,
        record,
        product_name=f"{package.name} ({package.points:,} points)",
        success_url=success_url,
        cancel_url=cancel_url,
        customer_email=user.email,
        metadata={"packageId": package.id, "points": package.points},
    )


def find_checkout_session(checkout_session_id=None, stripe_session_id=None) -> Optional[CheckoutSession]:
    """Webhook lookup: our own id first (metadata / client_reference_id), then the Stripe id."""
    if checkout_session_id:
        try:
            found = CheckoutSession.objects.filter(id=int(checkout_session_id)).first()
        except (TypeError, ValueError):
            found = None
        if found is not None:
            return found
    if stripe_session_id:
        return CheckoutSession.objects.filter(stripe_session_id=stripe_session_id).first()
    return None


@transaction.atomic()
def complete_checkout_session(
    checkout_session_id,
    stripe_payment_intent_id: str = "",
    now=None,
    amount_paid: Optional[int] = None,
) -> CheckoutSession:
    """
    Stripe confirmed the card leg. Grants the Purchase (or credits package points) exactly once;
    duplicate deliveries are no-ops. amount_paid is Stripe's amount_total; when it differs from the
    card leg the grant still happens but the audit row is flagged for recovery.
    """
    now = now or timezone.now()
    local = CheckoutSession.objects.select_for_update().select_related("user", "post", "package").get(
        id=checkout_session_id
    )
    if local.status == CheckoutSession.STATUS_COMPLETED:
        logger.info("complete: checkout=%s already completed, ignoring duplicate", local.id)
        return local
    if local.status == CheckoutSession.STATUS_CANCELED:
        _flag_paid_after_cancel(local, stripe_payment_intent_id)
        return local

    if local.kind == CheckoutSession.KIND_POINTS:
        package = local.package
        balance_service.credit(
            local.user,
            package.points,
            PointTransaction.TYPE_PURCHASE,
            f"Point purchase: {package.name}",
            reference_id=f"checkout:{local.id}",
            stripe_payment_intent_id=stripe_payment_intent_id,
            idempotency_key=f"package:{local.id}",
        )
        user, points = local.user, package.points
        transaction.on_commit(lambda: _notify_points_added(user, points))
    else:
        try:
            with transaction.atomic():
                entitlement_service.grant(
                    local.user,
                    local.post,
                    price=local.total_price,
                    points_portion=local.points_reserved,
                    card_portion=local.amount,
                    payment_method=config.METHOD_HYBRID if local.points_reserved else config.METHOD_CARD,
                    purchase_type=local.purchase_type or config.PURCHASE_TYPE_PAID,
                    stripe_payment_intent_id=stripe_payment_intent_id,
                )
        except PurchaseError as e:
            if e.code != errors.ALREADY_PURCHASED:
                raise
            _handle_duplicate_payment(local, stripe_payment_intent_id, now)
            return local

    local.status = CheckoutSession.STATUS_COMPLETED
    local.completed_at = now
    local.stripe_payment_intent_id = stripe_payment_intent_id or ""
    local.save(update_fields=["status", "completed_at", "stripe_payment_intent_id"])
    audit_log = audit_service.for_checkout_session(local)
    if audit_log is not None:
        audit_service.complete(audit_log, stripe_payment_intent_id=stripe_payment_intent_id or "")
    if amount_paid is not None and amount_paid != local.amount:
        _flag_amount_mismatch(local, audit_log, amount_paid, stripe_payment_intent_id)
    logger.info("complete: checkout=%s kind=%s user=%s", local.id, local.kind, local.user_id)
    return local


def _notify_points_added(user, points):
    try:
        NotificationService.notify_point_purchase(user, points)
    except Exception as e:
        logger.warning("complete: point purchase notification for user=%s failed: %s", user.pk, e)


def _flag_paid_after_cancel(local, stripe_payment_intent_id):
    """Card was charged after we refunded the reservation. Needs a human; never grant here."""
    if stripe_payment_intent_id and local.stripe_payment_intent_id == stripe_payment_intent_id:
        return
    local.stripe_payment_intent_id = stripe_payment_intent_id or ""
    local.save(update_fields=["stripe_payment_intent_id"])
    audit_log = audit_service.for_checkout_session(local)
    if audit_log is not None:
        audit_service.fail(
            audit_log,
            "PAID_AFTER_CANCEL",
            f"Stripe payment {stripe_payment_intent_id} arrived for canceled checkout {local.id}.",
            requires_recovery=True,
            status="cancelled",
        )
    audit_service.raise_alert(
        config.ALERT_PAID_AFTER_CANCEL,
        f"checkout={local.id} user={local.user_id} payment_intent={stripe_payment_intent_id}",
    )


def _flag_amount_mismatch(local, audit_log, amount_paid, stripe_payment_intent_id):
    """Stripe charged something other than the card leg. Access stays granted; staff settle the difference."""
    message = (
        f"Stripe amount_total {amount_paid} differs from card leg {local.amount} "
        f"(checkout {local.id}, payment_intent {stripe_payment_intent_id})."
    )
    logger.error("complete: amount mismatch checkout=%s expected=%s paid=%s", local.id, local.amount, amount_paid)
    if audit_log is not None:
        audit_log.requires_recovery = True
        audit_log.error_code = "AMOUNT_MISMATCH"
        audit_log.error_message = message
        audit_log.save(update_fields=["requires_recovery", "error_code", "error_message", "updated_at"])
    audit_service.raise_alert(config.ALERT_AMOUNT_MISMATCH, message)


def _handle_duplicate_payment(local, stripe_payment_intent_id, now):
    """Second paid checkout for an owned post: give back reserved points, flag the card charge for refund."""
    if local.points_reserved and local.compensated_at is None:
        balance_service.refund(
            local.user,
            local.points_reserved,
            f"Refund of reserved points (checkout {local.id} duplicate purchase)",
            reference_id=f"checkout:{local.id}",
            idempotency_key=f"compensation:{local.id}",
        )
        local.compensated_at = now
    local.status = CheckoutSession.STATUS_CANCELED
    local.canceled_at = now
    local.cancel_reason = "duplicate_purchase"
    local.stripe_payment_intent_id = stripe_payment_intent_id or ""
    local.save(update_fields=["status", "canceled_at", "cancel_reason", "stripe_payment_intent_id", "compensated_at"])
    audit_log = audit_service.for_checkout_session(local)
    if audit_log is not None:
        audit_service.fail(
            audit_log,
            "DUPLICATE_PAYMENT",
            f"Post {local.post_id} already owned; card payment {stripe_payment_intent_id} must be refunded.",
            requires_recovery=True,
        )
    audit_service.raise_alert(
        config.ALERT_DUPLICATE_PAYMENT,
        f"checkout={local.id} user={local.user_id} payment_intent={stripe_payment_intent_id}",
    )


def cancel_checkout_session(checkout_session_id, reason: str = "canceled", now=None) -> CheckoutSession:
    """
    The card leg will not be paid. Refunds reserved points once and marks the session canceled.
    Only pending sessions change. Raises PurchaseError(COMPENSATION_FAILED) if the refund fails.
    """
    try:
        return _cancel_and_compensate(checkout_session_id, reason, now)
    except CheckoutSession.DoesNotExist:
        raise PurchaseError(errors.NOT_FOUND, "Checkout session not found.")
    except Exception as e:
        logger.critical("compensation failed: checkout=%s reason=%s error=%r", checkout_session_id, reason, e)
        _record_compensation_failure(checkout_session_id, e)
        raise PurchaseError(errors.COMPENSATION_FAILED) from e


@transaction.atomic()
def _cancel_and_compensate(checkout_session_id, reason, now):
    now = now or timezone.now()
    local = CheckoutSession.objects.select_for_update().select_related("user").get(id=checkout_session_id)
    if local.status != CheckoutSession.STATUS_PENDING:
        return local
    if local.points_reserved and local.compensated_at is None:
        balance_service.refund(
            local.user,
            local.points_reserved,
            f"Refund of reserved points (checkout {local.id} {reason})",
            reference_id=f"checkout:{local.id}",
            idempotency_key=f"compensation:{local.id}",
        )
        local.compensated_at = now
    local.status = CheckoutSession.STATUS_CANCELED
    local.canceled_at = now
    local.cancel_reason = reason[:100]
    local.save(update_fields=["status", "canceled_at", "cancel_reason", "compensated_at"])
    audit_log = audit_service.for_checkout_session(local)
    if audit_log is not None:
        audit_service.fail(audit_log, "CANCELED", reason, status="cancelled")
    logger.info("cancel: checkout=%s reason=%s points_refunded=%s", local.id, reason, local.points_reserved)
    return local


def _record_compensation_failure(checkout_session_id, exc):
    try:
        with transaction.atomic():
            local = CheckoutSession.objects.filter(id=checkout_session_id).first()
            audit_log = audit_service.for_checkout_session(local) if local else None
            if audit_log is not None:
                audit_service.fail(
                    audit_log,
                    errors.COMPENSATION_FAILED,
                    f"Refund of {local.points_reserved} reserved points failed: {exc!r}",
                    requires_recovery=True,
                )
            audit_service.raise_alert(
                config.ALERT_COMPENSATION_FAILED,
                f"checkout={checkout_session_id} error={exc!r}",
            )
    except Exception:
        logger.exception("compensation failed: could not record failure for checkout=%s", checkout_session_id)
