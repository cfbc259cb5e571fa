"""
Django management command to settle abandoned checkouts and drop expired idempotency keys.

Usage:
    python manage.py reconcile_payments
    python manage.py reconcile_payments --max-age-hours 48
"""
from datetime import timedelta

from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from billing.cleanup.checkout_sessions import (
    cleanup_expired_idempotency_keys,
    reconcile_stale_checkout_sessions,
)


class Command(BaseCommand):
    help = 'Complete or cancel stale pending checkout sessions and remove expired idempotency keys'

    def add_arguments(self, parser):
        parser.add_argument(
            "--max-age-hours",
            type=int,
            default=None,
            help="Treat pending sessions older than this as abandoned (default: 24)",
        )

    def handle(self, *args, **options):
        max_age_hours = options.get("max_age_hours")
        if max_age_hours is not None and max_age_hours <= 0:
            raise CommandError("--max-age-hours must be positive")
        max_age = timedelta(hours=max_age_hours) if max_age_hours else None

        self.stdout.write(f'[{timezone.now()}] Starting payment reconciliation...')
        sessions_result = reconcile_stale_checkout_sessions(max_age=max_age)
        keys_deleted = cleanup_expired_idempotency_keys()

        summary = (
            f'[{timezone.now()}] Reconciliation completed: '
            f'{sessions_result["sessions_checked"]} sessions checked, '
            f'{sessions_result["sessions_completed"]} completed, '
            f'{sessions_result["sessions_canceled"]} canceled, '
            f'{sessions_result["sessions_skipped"]} left pending, '
            f'{sessions_result["points_refunded"]} points refunded, '
            f'{keys_deleted} idempotency keys deleted'
        )
        failures = sessions_result["compensation_failures"] + sessions_result["completion_failures"]
        if failures:
            self.stderr.write(self.style.ERROR(
                f'{summary}; {sessions_result["compensation_failures"]} compensation and '
                f'{sessions_result["completion_failures"]} completion failures need manual recovery'
            ))
            raise CommandError("failures during reconciliation")
        self.stdout.write(self.style.SUCCESS(summary))
