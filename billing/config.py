"""
Billing configuration: single source of truth for currency, windows and limits.

All monetary amounts are integer JPY. One point is worth one yen.
Safe to import from views, services, and management commands.
"""
from datetime import timedelta

# Stripe charges in JPY (zero-decimal currency: amount is sent as-is)
CURRENCY = "jpy"

# Pending card/hybrid checkouts older than this are treated as abandoned and compensated
CHECKOUT_SESSION_MAX_AGE = timedelta(hours=24)

# Client-supplied idempotency keys are remembered this long
IDEMPOTENCY_KEY_TTL = timedelta(hours=24)
IDEMPOTENCY_KEY_MAX_LENGTH = 128

# getTransactions paging
TRANSACTIONS_DEFAULT_LIMIT = 20
TRANSACTIONS_MAX_LIMIT = 100

# Stripe refuses JPY charges below this amount
STRIPE_MIN_CHARGE_JPY = 50

# Payment methods offered by the pricing resolver
METHOD_POINTS = "points"
METHOD_CARD = "card"
METHOD_HYBRID = "hybrid"
ALL_METHODS = (METHOD_POINTS, METHOD_CARD, METHOD_HYBRID)
# Adult content may only be paid with points (card network rules)
ADULT_METHODS = (METHOD_POINTS,)

# Purchase types: regular paid post, or single purchase of a membership post
PURCHASE_TYPE_PAID = "paid"
PURCHASE_TYPE_BACK_NUMBER = "back_number"
PURCHASE_TYPES = (PURCHASE_TYPE_PAID, PURCHASE_TYPE_BACK_NUMBER)

# Operator alert raised whenever reserved points could not be given back
ALERT_COMPENSATION_FAILED = "compensation_failed"
# Operator alert raised when a card payment lands on a checkout we already canceled
ALERT_PAID_AFTER_CANCEL = "paid_after_cancel"
# Operator alert raised when a second card payment arrives for a post the user already owns
ALERT_DUPLICATE_PAYMENT = "duplicate_payment"
# Operator alert raised when Stripe's amount_total differs from the card leg we asked for
ALERT_AMOUNT_MISMATCH = "amount_mismatch"
