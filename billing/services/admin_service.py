"""
Staff recovery actions: manual point grants and refunds against audit log entries.
Every action goes through balance_service and leaves its own audit row.
"""
import logging

from django.db import transaction

from billing import errors
from billing.errors import PurchaseError
from billing.models import PaymentAuditLog, PointTransaction
from billing.services import audit_service, balance_service

logger = logging.getLogger(__name__)


def _require_reason(amount: int, reason: str) -> str:
    if amount is None or amount <= 0:
        raise PurchaseError(errors.INVALID_REQUEST, "Amount must be positive.")
    reason = (reason or "").strip()
    if not reason:
        raise PurchaseError(errors.INVALID_REQUEST, "A reason is required.")
    return reason


@transaction.atomic()
def grant_points(admin_user, user, amount: int, reason: str, related_audit_log: PaymentAuditLog = None):
    """Compensation grant. Marks related_audit_log recovered when given."""
    reason = _require_reason(amount, reason)
    audit_log = audit_service.start(
        "admin_point_grant",
        user=user,
        total_amount=amount,
        points_amount=amount,
        status="processing",
    )
    tx = balance_service.credit(
        user,
        amount,
        PointTransaction.TYPE_ADMIN_GRANT,
        f"Admin grant: {reason}",
        reference_id=f"audit:{related_audit_log.id}" if related_audit_log else f"audit:{audit_log.id}",
    )
    audit_service.complete(audit_log, admin_note=reason, processed_by=admin_user)
    if related_audit_log is not None and related_audit_log.requires_recovery:
        audit_service.increment_recovery_attempts(related_audit_log)
        audit_service.mark_recovered(related_audit_log, admin_user, reason)
    logger.info("admin grant: by=%s user=%s amount=%s", admin_user.pk, user.pk, amount)
    return tx


@transaction.atomic()
def refund_points(admin_user, audit_log: PaymentAuditLog, amount: int, reason: str):
    """Give points back to the user of audit_log and close it as refunded."""
    reason = _require_reason(amount, reason)
    if audit_log.user is None:
        raise PurchaseError(errors.INVALID_REQUEST, "Audit log has no user.")
    refund_log = audit_service.start(
        "admin_refund",
        user=audit_log.user,
        post=audit_log.post,
        total_amount=amount,
        points_amount=amount,
        status="processing",
    )
    tx = balance_service.refund(
        audit_log.user,
        amount,
        f"Admin refund: {reason}",
        reference_id=f"audit:{audit_log.id}",
    )
    audit_service.complete(refund_log, admin_note=reason, processed_by=admin_user)
    was_flagged = audit_log.requires_recovery
    audit_log.status = "refunded"
    audit_log.save(update_fields=["status", "updated_at"])
    if was_flagged:
        audit_service.increment_recovery_attempts(audit_log)
        audit_service.mark_recovered(audit_log, admin_user, reason)
    logger.info("admin refund: by=%s audit=%s amount=%s", admin_user.pk, audit_log.id, amount)
    return tx
