"""
Payment housekeeping.

This package contains sweeps run from cron through `manage.py reconcile_payments`:
- checkout_sessions: settle or cancel abandoned Stripe checkouts
- checkout_sessions.cleanup_expired_idempotency_keys: drop idempotency keys past their TTL
"""
