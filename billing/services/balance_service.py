"""
Point balance store. All balance changes go through here and create a PointTransaction.
Never modify PointBalance.balance outside this module.

Per-user serialisation: the balance row is locked with select_for_update() and the
decrement is a conditional UPDATE (balance >= amount), so the check and the write are
one step even on backends that ignore row locks.
"""
import logging

from django.db import transaction
from django.db.models import F, Sum

from billing import config, errors
from billing.errors import PurchaseError
from billing.models import PointBalance, PointTransaction

logger = logging.getLogger(__name__)


class BalanceError(PurchaseError):
    """Raised when a balance operation fails (e.g. insufficient balance, bad amount)."""
    pass


def get_balance(user) -> PointBalance:
    """Return the user's balance row, creating an empty one for users that predate the signal."""
    balance, _ = PointBalance.objects.get_or_create(user=user)
    return balance


def _locked_balance(user) -> PointBalance:
    get_balance(user)
    return PointBalance.objects.select_for_update().get(user=user)


@transaction.atomic()
def debit(
    user,
    amount: int,
    tx_type: str,
    description: str,
    reference_id: str = "",
    idempotency_key: str = None,
) -> PointTransaction:
    """
    Take points from the balance. Creates PointTransaction (negative amount).
    Raises BalanceError(INSUFFICIENT_BALANCE) if amount exceeds the balance; nothing is written then.
    """
    if amount <= 0:
        raise BalanceError(errors.INVALID_REQUEST, "debit requires a positive amount.")
    balance = _locked_balance(user)
    if balance.balance < amount:
        raise BalanceError(errors.INSUFFICIENT_BALANCE)
    updated = PointBalance.objects.filter(pk=balance.pk, balance__gte=amount).update(
        balance=F("balance") - amount,
        total_spent=F("total_spent") + amount,
    )
    if not updated:
        # Row changed between our read and write (only possible without row locks)
        raise BalanceError(errors.INSUFFICIENT_BALANCE)
    balance.refresh_from_db(fields=["balance", "total_spent"])
    tx = PointTransaction.objects.create(
        user=user,
        amount=-amount,
        type=tx_type,
        balance_after=balance.balance,
        description=description[:255],
        reference_id=str(reference_id or "")[:64],
        idempotency_key=idempotency_key,
    )
    logger.info("debit: user=%s amount=%s type=%s balance_after=%s", user.pk, amount, tx_type, balance.balance)
    return tx


@transaction.atomic()
def credit(
    user,
    amount: int,
    tx_type: str,
    description: str,
    reference_id: str = "",
    stripe_payment_intent_id: str = "",
    idempotency_key: str = None,
) -> PointTransaction:
    """
    Add points to the balance. Creates PointTransaction (positive amount).
    Only type=purchase counts towards total_purchased; refunds and grants move the balance alone.
    """
    if amount <= 0:
        raise BalanceError(errors.INVALID_REQUEST, "credit requires a positive amount.")
    balance = _locked_balance(user)
    changes = {"balance": F("balance") + amount}
    if tx_type == PointTransaction.TYPE_PURCHASE:
        changes["total_purchased"] = F("total_purchased") + amount
    PointBalance.objects.filter(pk=balance.pk).update(**changes)
    balance.refresh_from_db(fields=["balance", "total_purchased"])
    tx = PointTransaction.objects.create(
        user=user,
        amount=amount,
        type=tx_type,
        balance_after=balance.balance,
        description=description[:255],
        reference_id=str(reference_id or "")[:64],
        stripe_payment_intent_id=stripe_payment_intent_id or "",
        idempotency_key=idempotency_key,
    )
    logger.info("credit: user=%s amount=%s type=%s balance_after=%s", user.pk, amount, tx_type, balance.balance)
    return tx


def refund(user, amount: int, description: str = "refund", reference_id: str = "", idempotency_key: str = None):
    """Same as credit with type=refund. Gives back points taken by an earlier debit."""
    return credit(
        user,
        amount,
        PointTransaction.TYPE_REFUND,
        description,
        reference_id=reference_id,
        idempotency_key=idempotency_key,
    )


def list_transactions(user, limit: int = config.TRANSACTIONS_DEFAULT_LIMIT, offset: int = 0):
    """Newest first. limit must be within 1..TRANSACTIONS_MAX_LIMIT."""
    if limit < 1 or limit > config.TRANSACTIONS_MAX_LIMIT:
        raise BalanceError(errors.INVALID_REQUEST, f"limit must be between 1 and {config.TRANSACTIONS_MAX_LIMIT}.")
    if offset < 0:
        raise BalanceError(errors.INVALID_REQUEST, "offset must not be negative.")
    return list(PointTransaction.objects.filter(user=user).order_by("-created_at", "-id")[offset:offset + limit])


def verify_integrity(user) -> dict:
    """
    Replay check: ledger sum and latest balance_after must both equal the stored balance.
    Used by tests, the scenario runner and operators.
    """
    balance = get_balance(user).balance
    ledger_sum = PointTransaction.objects.filter(user=user).aggregate(total=Sum("amount"))["total"] or 0
    last = PointTransaction.objects.filter(user=user).order_by("-created_at", "-id").first()
    last_balance_after = last.balance_after if last else 0
    return {
        "balance": balance,
        "ledger_sum": ledger_sum,
        "last_balance_after": last_balance_after,
        "ok": balance == ledger_sum == last_balance_after,
    }
