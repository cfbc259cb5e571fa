"""
Client idempotency keys. A completed key answers a replay with the stored result;
a key that is still pending rejects the replay; failed or expired keys can be reused.
"""
import logging

from django.db import IntegrityError, transaction
from django.utils import timezone

from billing import config, errors
from billing.errors import PurchaseError
from billing.models import IdempotencyKey

logger = logging.getLogger(__name__)


def scoped_key(user, client_key: str | None) -> str | None:
    """Keys are per user so two users can never collide. Empty means the client sent none."""
    key = (client_key or "").strip()
    if not key:
        return None
    if len(key) > config.IDEMPOTENCY_KEY_MAX_LENGTH:
        raise PurchaseError(errors.INVALID_REQUEST, "Idempotency key is too long.")
    return f"{user.pk}:{key}"


def begin(key: str, operation: str, now=None):
    """
    Claim a key for one operation. Must be called inside transaction.atomic().

    Returns:
        (record, cached_result): cached_result is the stored result for a completed replay, else None.

    Raises:
        PurchaseError(REQUEST_IN_PROGRESS): same key is still being processed.
        PurchaseError(INVALID_REQUEST): same key was used for a different operation.
    """
    now = now or timezone.now()
    record = IdempotencyKey.objects.select_for_update().filter(key=key).first()
    if record is not None:
        if record.expires_at <= now or record.status == "failed":
            record.delete()
        elif record.operation != operation:
            raise PurchaseError(errors.INVALID_REQUEST, "Idempotency key was already used for a different request.")
        elif record.status == "completed":
            logger.info("idempotency: replay of %s answered from cache", key)
            return record, record.result
        else:
            raise PurchaseError(errors.REQUEST_IN_PROGRESS)
    try:
        with transaction.atomic():
            record = IdempotencyKey.objects.create(
                key=key,
                operation=operation,
                expires_at=now + config.IDEMPOTENCY_KEY_TTL,
            )
    except IntegrityError:
        # Another request inserted the same key after our lookup
        raise PurchaseError(errors.REQUEST_IN_PROGRESS)
    return record, None


def complete(record: IdempotencyKey, result: dict) -> None:
    record.status = "completed"
    record.result = result
    record.save(update_fields=["status", "result", "updated_at"])


def fail(record: IdempotencyKey) -> None:
    """Release the key so the client may retry with it."""
    record.status = "failed"
    record.save(update_fields=["status", "updated_at"])


def cleanup_expired(now=None) -> int:
    now = now or timezone.now()
    deleted, _ = IdempotencyKey.objects.filter(expires_at__lte=now).delete()
    if deleted:
        logger.info("idempotency: deleted %s expired keys", deleted)
    return deleted
