"""
Payment audit trail and operator alerts.

Every purchase attempt gets a PaymentAuditLog row. Failures that leave money or points in an
inconsistent place are flagged requires_recovery and counted in OperatorAlert so staff see them.
"""
import logging

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from billing.models import OperatorAlert, PaymentAuditLog

logger = logging.getLogger(__name__)


def operation_type_for(method: str, purchase_type: str) -> str:
    """Map (payment method, purchase type) to the audit operation name."""
    prefix = "back_number" if purchase_type == "back_number" else "post_purchase"
    suffix = {"points": "points", "card": "stripe", "hybrid": "hybrid"}[method]
    return f"{prefix}_{suffix}"


def start(operation_type: str, *, user=None, post=None, checkout_session=None, total_amount=0,
          points_amount=0, card_amount=0, idempotency_key="", status="pending") -> PaymentAuditLog:
    return PaymentAuditLog.objects.create(
        operation_type=operation_type,
        status=status,
        user=user,
        post=post,
        checkout_session=checkout_session,
        total_amount=total_amount,
        points_amount=points_amount,
        card_amount=card_amount,
        idempotency_key=idempotency_key or "",
    )


def complete(audit_log: PaymentAuditLog, **fields) -> None:
    audit_log.status = "completed"
    for name, value in fields.items():
        setattr(audit_log, name, value)
    audit_log.save()


def fail(audit_log: PaymentAuditLog, error_code: str, error_message: str, requires_recovery: bool = False,
         status: str = "failed") -> None:
    audit_log.status = status
    audit_log.error_code = error_code[:50]
    audit_log.error_message = error_message
    if requires_recovery:
        audit_log.requires_recovery = True
    audit_log.save()
    if requires_recovery:
        logger.error("audit: log=%s flagged for recovery code=%s %s", audit_log.id, error_code, error_message)


def for_checkout_session(checkout_session):
    """Latest audit row attached to a checkout session, or None."""
    return checkout_session.audit_logs.order_by("-created_at", "-id").first()


def mark_recovered(audit_log: PaymentAuditLog, admin_user, note: str) -> None:
    audit_log.requires_recovery = False
    audit_log.admin_note = note
    audit_log.processed_by = admin_user
    audit_log.processed_at = timezone.now()
    audit_log.save(update_fields=["requires_recovery", "admin_note", "processed_by", "processed_at", "updated_at"])


def increment_recovery_attempts(audit_log: PaymentAuditLog) -> None:
    PaymentAuditLog.objects.filter(pk=audit_log.pk).update(recovery_attempts=F("recovery_attempts") + 1)


@transaction.atomic()
def raise_alert(name: str, message: str) -> None:
    """Increment the operator-visible counter and log at CRITICAL. Never raises for a known name."""
    alert, _ = OperatorAlert.objects.get_or_create(name=name)
    OperatorAlert.objects.filter(pk=alert.pk).update(
        count=F("count") + 1,
        last_message=message,
        last_raised_at=timezone.now(),
    )
    logger.critical("operator alert %s: %s", name, message)
