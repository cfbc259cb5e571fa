"""
Billing views. JSON purchase/points API consumed by the web client, Stripe webhook, staff tools.
"""
import json
import logging
from functools import wraps

from django.contrib.admin.views.decorators import staff_member_required
from django.db.models import Count, Q, Sum
from django.http import HttpResponse, JsonResponse
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from billing import config, errors
from billing.errors import PurchaseError
from billing.models import OperatorAlert, PaymentAuditLog, PointPackage
from billing.services import admin_service, balance_service, checkout_service, pricing_service
from billing.services.stripe_service import (
    check_api_ok,
    construct_webhook_event,
    is_configured,
    webhook_configured,
)

logger = logging.getLogger(__name__)


def _error_response(e: PurchaseError):
    return JsonResponse({"success": False, "code": e.code, "error": e.message}, status=e.http_status)


def api_view(view):
    """Turn PurchaseError into a JSON error and require a signed-in user."""
    @wraps(view)
    def wrapper(request, *args, **kwargs):
        if not request.user.is_authenticated:
            return _error_response(PurchaseError(errors.UNAUTHORIZED))
        try:
            return view(request, *args, **kwargs)
        except PurchaseError as e:
            logger.info("%s: %s for user=%s", view.__name__, e.code, request.user.pk)
            return _error_response(e)
    return wrapper


def _json_body(request) -> dict:
    try:
        data = json.loads(request.body or b"{}")
    except (ValueError, UnicodeDecodeError):
        raise PurchaseError(errors.INVALID_REQUEST, "Invalid JSON")
    if not isinstance(data, dict):
        raise PurchaseError(errors.INVALID_REQUEST, "Invalid JSON")
    return data


def _idempotency_key(request, data: dict) -> str:
    return request.headers.get("Idempotency-Key") or data.get("idempotencyKey") or ""


def _purchase_type(value) -> str:
    # Clients send the camelCase name
    purchase_type = {"backNumber": config.PURCHASE_TYPE_BACK_NUMBER}.get(value, value) or config.PURCHASE_TYPE_PAID
    if purchase_type not in config.PURCHASE_TYPES:
        raise PurchaseError(errors.INVALID_REQUEST, "Unknown purchase type.")
    return purchase_type


def _int_param(value, name: str, default: int) -> int:
    if value in (None, ""):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise PurchaseError(errors.INVALID_REQUEST, f"{name} must be a number.")


def _checkout_response(result):
    payload = {"success": True, "replayed": result.replayed}
    payload.update(result.data)
    return JsonResponse(payload)


# --- Purchase -------------------------------------------------------------------------------


@require_GET
def purchase_options(request, post_id):
    """
    GET /api/billing/purchase-options/<post_id>/?purchaseType=paid|backNumber
    Anonymous callers get balance 0 and card-only methods.
    """
    try:
        post = pricing_service.get_post(post_id)
        options = pricing_service.resolve_purchase_options(
            request.user, post, _purchase_type(request.GET.get("purchaseType"))
        )
    except PurchaseError as e:
        return _error_response(e)
    data = options.to_dict()
    return JsonResponse({
        "postId": data["post_id"],
        "price": data["price"],
        "purchaseType": data["purchase_type"],
        "alreadyPurchased": data["already_purchased"],
        "userBalance": data["user_balance"],
        "isAdult": data["is_adult"],
        "allowedMethods": data["allowed_methods"],
    })


@require_POST
@api_view
def purchase_with_points(request):
    """POST {postId, purchaseType?, idempotencyKey?} -> purchase summary"""
    data = _json_body(request)
    post = pricing_service.get_post(data.get("postId"))
    purchase_type = _purchase_type(data.get("purchaseType"))
    price = pricing_service.resolve_price(post, purchase_type)
    result = checkout_service.execute_plan(
        request.user,
        post,
        checkout_service.build_plan(config.METHOD_POINTS, price),
        purchase_type=purchase_type,
        idempotency_key=_idempotency_key(request, data),
    )
    return _checkout_response(result)


@require_POST
@api_view
def create_stripe_checkout(request):
    """POST {postId, successUrl, cancelUrl, purchaseType?} -> {url, sessionId}"""
    data = _json_body(request)
    post = pricing_service.get_post(data.get("postId"))
    purchase_type = _purchase_type(data.get("purchaseType"))
    price = pricing_service.resolve_price(post, purchase_type)
    result = checkout_service.execute_plan(
        request.user,
        post,
        checkout_service.build_plan(config.METHOD_CARD, price),
        purchase_type=purchase_type,
        success_url=data.get("successUrl"),
        cancel_url=data.get("cancelUrl"),
        idempotency_key=_idempotency_key(request, data),
    )
    return _checkout_response(result)


@require_POST
@api_view
def create_hybrid_checkout(request):
    """
    POST {postId, pointsToUse, successUrl, cancelUrl, purchaseType?}
    Returns {url, sessionId, pointsUsed, stripeAmount}, or a purchase summary when pointsToUse covers the price.
    """
    data = _json_body(request)
    post = pricing_service.get_post(data.get("postId"))
    purchase_type = _purchase_type(data.get("purchaseType"))
    price = pricing_service.resolve_price(post, purchase_type)
    result = checkout_service.execute_plan(
        request.user,
        post,
        checkout_service.build_plan(config.METHOD_HYBRID, price, data.get("pointsToUse")),
        purchase_type=purchase_type,
        success_url=data.get("successUrl"),
        cancel_url=data.get("cancelUrl"),
        idempotency_key=_idempotency_key(request, data),
    )
    return _checkout_response(result)


# --- Points ---------------------------------------------------------------------------------


@require_GET
@api_view
def points_balance(request):
    balance = balance_service.get_balance(request.user)
    return JsonResponse({
        "balance": balance.balance,
        "totalPurchased": balance.total_purchased,
        "totalSpent": balance.total_spent,
    })


@require_GET
@api_view
def points_transactions(request):
    """GET ?limit=1..100 (default 20)&offset=0"""
    limit = _int_param(request.GET.get("limit"), "limit", config.TRANSACTIONS_DEFAULT_LIMIT)
    offset = _int_param(request.GET.get("offset"), "offset", 0)
    transactions = balance_service.list_transactions(request.user, limit=limit, offset=offset)
    return JsonResponse({
        "transactions": [
            {
                "id": tx.id,
                "type": tx.type,
                "amount": tx.amount,
                "balanceAfter": tx.balance_after,
                "description": tx.description,
                "createdAt": tx.created_at.isoformat(),
            }
            for tx in transactions
        ],
        "limit": limit,
        "offset": offset,
    })


@require_GET
def point_packages(request):
    packages = PointPackage.objects.filter(is_active=True).order_by("display_order", "id")
    return JsonResponse({
        "packages": [
            {"id": p.id, "name": p.name, "points": p.points, "priceJpy": p.price_jpy}
            for p in packages
        ],
    })


@require_POST
@api_view
def create_point_checkout(request):
    """POST {packageId, successUrl, cancelUrl} -> {url, sessionId}"""
    data = _json_body(request)
    result = checkout_service.create_point_checkout(
        request.user,
        data.get("packageId"),
        success_url=data.get("successUrl"),
        cancel_url=data.get("cancelUrl"),
        idempotency_key=_idempotency_key(request, data),
    )
    return _checkout_response(result)


# --- Stripe ---------------------------------------------------------------------------------


@staff_member_required
def payments_status(request):
    """
    GET /api/billing/payments-status/
    Staff-only. Stripe configuration, operator alert counters, recovery queue and today's audit stats.
    """
    today = timezone.localtime().replace(hour=0, minute=0, second=0, microsecond=0)
    today_stats = PaymentAuditLog.objects.filter(created_at__gte=today).aggregate(
        total=Count("id"),
        completed=Count("id", filter=Q(status="completed")),
        failed=Count("id", filter=Q(status="failed")),
        total_amount=Sum("total_amount"),
    )
    return JsonResponse({
        "stripe_configured": is_configured(),
        "webhook_configured": webhook_configured(),
        "api_ok": check_api_ok() if is_configured() else False,
        "alerts": {a.name: a.count for a in OperatorAlert.objects.all()},
        "recovery_queue": PaymentAuditLog.objects.filter(requires_recovery=True).count(),
        "today": {
            "total": today_stats["total"] or 0,
            "completed": today_stats["completed"] or 0,
            "failed": today_stats["failed"] or 0,
            "total_amount": today_stats["total_amount"] or 0,
        },
    })


@csrf_exempt
@require_http_methods(["POST"])
def stripe_webhook(request):
    """
    POST /api/billing/stripe-webhook/
    Stripe webhook endpoint. Verifies signature, then completes or cancels the local checkout session.
    Idempotent: completion and cancellation are no-ops once the session left 'pending'.
    """
    payload = request.body
    sig_header = request.META.get("HTTP_STRIPE_SIGNATURE", "")
    if not webhook_configured() or not sig_header:
        logger.warning("stripe_webhook: missing STRIPE_WEBHOOK_SECRET or Stripe-Signature header")
        return HttpResponse(status=400)

    try:
        event = construct_webhook_event(payload, sig_header)
    except ValueError as e:
        logger.warning("stripe_webhook: invalid payload %s", e)
        return HttpResponse(status=400)
    except Exception as e:
        logger.warning("stripe_webhook: signature verification failed %s", e)
        return HttpResponse(status=400)

    if event.type == "checkout.session.completed":
        _handle_checkout_session_completed(event.data.object)
    elif event.type == "checkout.session.async_payment_succeeded":
        _handle_checkout_session_completed(event.data.object)
    elif event.type in ("checkout.session.expired", "checkout.session.async_payment_failed"):
        _handle_checkout_session_canceled(event.data.object, reason=event.type.rsplit(".", 1)[-1])
    else:
        pass  # ignore other events

    return HttpResponse(status=200)


def _local_session_for(obj):
    metadata = getattr(obj, "metadata", None)
    local_id = getattr(metadata, "checkoutSessionId", None) if metadata else None
    local_id = local_id or getattr(obj, "client_reference_id", None)
    return checkout_service.find_checkout_session(local_id, getattr(obj, "id", None))


def _handle_checkout_session_completed(obj):
    """Grant entitlement or credit points once the card leg is paid."""
    stripe_session_id = getattr(obj, "id", None)
    if getattr(obj, "payment_status", None) != "paid":
        # Async methods (konbini, bank transfer) confirm later via async_payment_succeeded
        logger.info("stripe_webhook: session %s completed but not paid yet", stripe_session_id)
        return
    local = _local_session_for(obj)
    if local is None:
        logger.warning("stripe_webhook: no local checkout session for %s", stripe_session_id)
        return
    payment_intent_id = getattr(obj, "payment_intent", None) or ""
    checkout_service.complete_checkout_session(
        local.id, payment_intent_id, amount_paid=getattr(obj, "amount_total", None)
    )
    logger.info("stripe_webhook: checkout %s completed stripe=%s pi=%s", local.id, stripe_session_id, payment_intent_id)


def _handle_checkout_session_canceled(obj, reason):
    """Card leg will never be paid; refund reserved points."""
    local = _local_session_for(obj)
    if local is None:
        logger.warning("stripe_webhook: no local checkout session for %s", getattr(obj, "id", None))
        return
    try:
        checkout_service.cancel_checkout_session(local.id, reason=reason)
    except PurchaseError as e:
        # Alert already raised; acknowledge so Stripe stops retrying into the same failure
        logger.error("stripe_webhook: cancel of checkout %s failed: %s", local.id, e.code)
        return
    logger.info("stripe_webhook: checkout %s canceled (%s)", local.id, reason)


# --- Staff recovery -------------------------------------------------------------------------


@staff_member_required
@require_GET
def recovery_queue(request):
    limit = min(max(_safe_int(request.GET.get("limit"), 50), 1), 100)
    logs = PaymentAuditLog.objects.filter(requires_recovery=True).order_by("-created_at")[:limit]
    return JsonResponse({
        "logs": [
            {
                "id": log.id,
                "operationType": log.operation_type,
                "status": log.status,
                "userId": log.user_id,
                "postId": log.post_id,
                "totalAmount": log.total_amount,
                "pointsAmount": log.points_amount,
                "cardAmount": log.card_amount,
                "errorCode": log.error_code,
                "errorMessage": log.error_message,
                "recoveryAttempts": log.recovery_attempts,
                "createdAt": log.created_at.isoformat(),
            }
            for log in logs
        ],
    })


def _safe_int(value, default):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@staff_member_required
@require_POST
def admin_grant_points(request):
    """POST {userId, amount, reason, relatedAuditLogId?}"""
    from accounts.models import CustomUser
    try:
        data = _json_body(request)
        user = CustomUser.objects.filter(id=_safe_int(data.get("userId"), 0)).first()
        if user is None:
            raise PurchaseError(errors.NOT_FOUND, "User not found.")
        related = None
        if data.get("relatedAuditLogId"):
            related = PaymentAuditLog.objects.filter(id=_safe_int(data.get("relatedAuditLogId"), 0)).first()
            if related is None:
                raise PurchaseError(errors.NOT_FOUND, "Audit log not found.")
        tx = admin_service.grant_points(
            request.user, user, _safe_int(data.get("amount"), 0), data.get("reason"), related_audit_log=related
        )
    except PurchaseError as e:
        return _error_response(e)
    return JsonResponse({"success": True, "newBalance": tx.balance_after})


@staff_member_required
@require_POST
def admin_refund_points(request):
    """POST {auditLogId, amount, reason}"""
    try:
        data = _json_body(request)
        audit_log = PaymentAuditLog.objects.select_related("user").filter(
            id=_safe_int(data.get("auditLogId"), 0)
        ).first()
        if audit_log is None:
            raise PurchaseError(errors.NOT_FOUND, "Audit log not found.")
        tx = admin_service.refund_points(request.user, audit_log, _safe_int(data.get("amount"), 0), data.get("reason"))
    except PurchaseError as e:
        return _error_response(e)
    return JsonResponse({"success": True, "newBalance": tx.balance_after})
