import threading
from datetime import timedelta
from io import StringIO
from types import SimpleNamespace
from unittest import skipUnless
from unittest.mock import patch

import stripe
from django.contrib.auth.models import AnonymousUser
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import DatabaseError, connection
from django.test import TestCase, TransactionTestCase, override_settings
from django.urls import reverse
from django.utils import timezone

from accounts.models import CustomUser
from billing import config, errors
from billing.cleanup.checkout_sessions import (
    cleanup_expired_idempotency_keys,
    reconcile_stale_checkout_sessions,
)
from billing.errors import PurchaseError
from billing.models import (
    CheckoutSession,
    IdempotencyKey,
    OperatorAlert,
    PaymentAuditLog,
    PointBalance,
    PointPackage,
    PointTransaction,
    Purchase,
)
from billing.services import admin_service, balance_service, payment_service, pricing_service
from billing.services.balance_service import BalanceError
from billing.services.checkout_service import (
    CardPlan,
    HybridPlan,
    PointsPlan,
    build_plan,
    cancel_checkout_session,
    complete_checkout_session,
    create_point_checkout,
    execute_plan,
)
from billing.services.payment_service import BillingError
from content.models import Creator, Post
from general.models import Notification

SUCCESS_URL = "https://fandry.test/purchase/success"
CANCEL_URL = "https://fandry.test/purchase/cancel"
CREATE_SESSION = "billing.services.payment_service.create_checkout_session"


def _stripe_session(session_id="cs_test_1"):
    return {"stripe_session_id": session_id, "url": f"https://checkout.stripe.test/{session_id}"}


class BillingTestMixin:
    def make_user(self, email="fan@example.com", points=0):
        user = CustomUser.objects.create_user(email=email, password="pw-12345678", display_name="Fan")
        if points:
            balance_service.credit(user, points, PointTransaction.TYPE_ADMIN_GRANT, "seed")
        return user

    def make_post(self, price=300, is_adult=False, creator_is_adult=False, type=Post.TYPE_PAID,
                  back_number_price=None, creator=None):
        if creator is None:
            owner = CustomUser.objects.create_user(
                email=f"creator{CustomUser.objects.count()}@example.com", password="pw-12345678"
            )
            creator = Creator.objects.create(
                user=owner,
                username=f"creator-{owner.id}",
                display_name="Creator",
                is_adult=creator_is_adult,
            )
        return Post.objects.create(
            creator=creator,
            title="Post",
            type=type,
            price=price if type == Post.TYPE_PAID else None,
            back_number_price=back_number_price,
            is_adult=is_adult,
        )

    def balance_of(self, user):
        return PointBalance.objects.get(user=user).balance

    def assertLedgerConsistent(self, user):
        report = balance_service.verify_integrity(user)
        self.assertTrue(report["ok"], report)


class BalanceServiceTests(BillingTestMixin, TestCase):
    def test_new_user_starts_with_empty_balance(self):
        user = self.make_user()
        balance = PointBalance.objects.get(user=user)
        self.assertEqual((balance.balance, balance.total_purchased, balance.total_spent), (0, 0, 0))

    def test_every_mutation_appends_one_row_with_matching_balance_after(self):
        user = self.make_user()
        balance_service.credit(user, 500, PointTransaction.TYPE_PURCHASE, "pack")
        balance_service.debit(user, 120, PointTransaction.TYPE_POST_PURCHASE, "post")
        balance_service.refund(user, 20, "partial refund")

        rows = list(PointTransaction.objects.filter(user=user).order_by("id"))
        self.assertEqual([r.amount for r in rows], [500, -120, 20])
        self.assertEqual([r.balance_after for r in rows], [500, 380, 400])
        self.assertEqual(self.balance_of(user), 400)
        self.assertLedgerConsistent(user)

    def test_debit_over_balance_raises_and_writes_nothing(self):
        user = self.make_user(points=50)
        with self.assertRaises(BalanceError) as ctx:
            balance_service.debit(user, 60, PointTransaction.TYPE_POST_PURCHASE, "too much")
        self.assertEqual(ctx.exception.code, errors.INSUFFICIENT_BALANCE)
        self.assertEqual(self.balance_of(user), 50)
        self.assertEqual(PointTransaction.objects.filter(user=user).count(), 1)

    def test_two_debits_of_60_against_100_one_succeeds(self):
        user = self.make_user(points=100)
        outcomes = []
        for _ in range(2):
            try:
                balance_service.debit(user, 60, PointTransaction.TYPE_POST_PURCHASE, "post")
                outcomes.append("ok")
            except BalanceError as e:
                outcomes.append(e.code)
        self.assertEqual(outcomes, ["ok", errors.INSUFFICIENT_BALANCE])
        self.assertEqual(self.balance_of(user), 40)
        self.assertLedgerConsistent(user)

    def test_conditional_update_rejects_stale_balance_read(self):
        user = self.make_user(points=100)
        stale = PointBalance.objects.get(user=user)
        balance_service.debit(user, 60, PointTransaction.TYPE_POST_PURCHASE, "first")

        with patch("billing.services.balance_service._locked_balance", return_value=stale):
            with self.assertRaises(BalanceError) as ctx:
                balance_service.debit(user, 60, PointTransaction.TYPE_POST_PURCHASE, "second")

        self.assertEqual(ctx.exception.code, errors.INSUFFICIENT_BALANCE)
        self.assertEqual(self.balance_of(user), 40)
        self.assertLedgerConsistent(user)

    def test_counters_only_move_for_their_transaction_types(self):
        user = self.make_user()
        balance_service.credit(user, 1000, PointTransaction.TYPE_PURCHASE, "pack")
        balance_service.credit(user, 100, PointTransaction.TYPE_ADMIN_GRANT, "grant")
        balance_service.debit(user, 300, PointTransaction.TYPE_POST_PURCHASE, "post")
        balance_service.refund(user, 300, "refund")

        balance = PointBalance.objects.get(user=user)
        self.assertEqual(balance.balance, 1100)
        self.assertEqual(balance.total_purchased, 1000)
        self.assertEqual(balance.total_spent, 300)

    def test_non_positive_amounts_are_rejected(self):
        user = self.make_user(points=10)
        for fn in (balance_service.debit, balance_service.credit):
            with self.assertRaises(BalanceError) as ctx:
                fn(user, 0, PointTransaction.TYPE_TIP, "zero")
            self.assertEqual(ctx.exception.code, errors.INVALID_REQUEST)

    def test_list_transactions_bounds_and_order(self):
        user = self.make_user(points=10)
        balance_service.debit(user, 3, PointTransaction.TYPE_TIP, "tip")
        latest = balance_service.list_transactions(user, limit=1)
        self.assertEqual([tx.amount for tx in latest], [-3])
        for bad_limit in (0, config.TRANSACTIONS_MAX_LIMIT + 1):
            with self.assertRaises(BalanceError):
                balance_service.list_transactions(user, limit=bad_limit)


@skipUnless(connection.vendor == "postgresql", "row locks need PostgreSQL; SQLite serialises writers")
class ConcurrentPurchaseTests(BillingTestMixin, TransactionTestCase):
    def test_concurrent_points_purchases_against_100_points(self):
        user = self.make_user(points=100)
        creator_post = self.make_post(price=60)
        second_post = self.make_post(price=60, creator=creator_post.creator)
        barrier = threading.Barrier(2)
        outcomes = []

        def buy(post):
            try:
                barrier.wait()
                execute_plan(user, post, PointsPlan(60))
                outcomes.append("ok")
            except PurchaseError as e:
                outcomes.append(e.code)
            finally:
                connection.close()

        threads = [threading.Thread(target=buy, args=(p,)) for p in (creator_post, second_post)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(sorted(outcomes), sorted(["ok", errors.INSUFFICIENT_BALANCE]))
        self.assertEqual(self.balance_of(user), 40)
        self.assertEqual(Purchase.objects.filter(user=user).count(), 1)
        self.assertLedgerConsistent(user)


class PricingServiceTests(BillingTestMixin, TestCase):
    def test_signed_in_user_gets_all_methods_for_regular_content(self):
        user = self.make_user(points=120)
        post = self.make_post(price=300)
        options = pricing_service.resolve_purchase_options(user, post)
        self.assertEqual(options.price, 300)
        self.assertEqual(options.user_balance, 120)
        self.assertFalse(options.is_adult)
        self.assertFalse(options.already_purchased)
        self.assertEqual(options.allowed_methods, ("points", "card", "hybrid"))

    def test_adult_content_is_points_only_regardless_of_balance(self):
        user = self.make_user(points=500)
        for post in (self.make_post(is_adult=True), self.make_post(creator_is_adult=True)):
            options = pricing_service.resolve_purchase_options(user, post)
            self.assertTrue(options.is_adult)
            self.assertEqual(options.allowed_methods, ("points",))

    def test_anonymous_caller_has_no_balance_and_no_points_methods(self):
        post = self.make_post()
        options = pricing_service.resolve_purchase_options(AnonymousUser(), post)
        self.assertEqual(options.user_balance, 0)
        self.assertEqual(options.allowed_methods, ("card",))
        adult = pricing_service.resolve_purchase_options(None, self.make_post(is_adult=True))
        self.assertEqual(adult.allowed_methods, ())

    def test_card_methods_need_a_chargeable_card_amount(self):
        user = self.make_user(points=500)
        expected = {
            30: ("points",),
            50: ("points", "card"),
            51: ("points", "card", "hybrid"),
        }
        for price, methods in expected.items():
            options = pricing_service.resolve_purchase_options(user, self.make_post(price=price))
            self.assertEqual(options.allowed_methods, methods, price)

        cheap = self.make_post(price=30)
        self.assertEqual(pricing_service.resolve_purchase_options(None, cheap).allowed_methods, ())
        with self.assertRaises(PurchaseError) as ctx:
            execute_plan(user, cheap, CardPlan(30), success_url=SUCCESS_URL, cancel_url=CANCEL_URL)
        self.assertEqual(ctx.exception.code, errors.INVALID_REQUEST)
        self.assertFalse(CheckoutSession.objects.exists())

    def test_free_and_membership_posts_are_not_sold_as_paid(self):
        for post in (self.make_post(type=Post.TYPE_FREE), self.make_post(type=Post.TYPE_MEMBERSHIP)):
            with self.assertRaises(PurchaseError) as ctx:
                pricing_service.resolve_purchase_options(None, post)
            self.assertEqual(ctx.exception.code, errors.INVALID_REQUEST)

    def test_back_number_uses_back_number_price(self):
        post = self.make_post(type=Post.TYPE_MEMBERSHIP, back_number_price=800)
        options = pricing_service.resolve_purchase_options(None, post, config.PURCHASE_TYPE_BACK_NUMBER)
        self.assertEqual(options.price, 800)
        no_back_number = self.make_post(type=Post.TYPE_MEMBERSHIP)
        with self.assertRaises(PurchaseError):
            pricing_service.resolve_purchase_options(None, no_back_number, config.PURCHASE_TYPE_BACK_NUMBER)

    def test_unknown_post_is_not_found(self):
        with self.assertRaises(PurchaseError) as ctx:
            pricing_service.get_post(999999)
        self.assertEqual(ctx.exception.code, errors.NOT_FOUND)


class BuildPlanTests(TestCase):
    def test_hybrid_collapses_at_the_edges(self):
        self.assertEqual(build_plan("hybrid", 300, 300), PointsPlan(300))
        self.assertEqual(build_plan("hybrid", 300, 0), CardPlan(300))
        self.assertEqual(build_plan("hybrid", 300, 100), HybridPlan(points_amount=100, card_amount=200))

    def test_hybrid_points_outside_price_range_are_rejected(self):
        for points in (-1, 301, "abc", None):
            with self.assertRaises(PurchaseError) as ctx:
                build_plan("hybrid", 300, points)
            self.assertEqual(ctx.exception.code, errors.INVALID_REQUEST)


class PointsCheckoutTests(BillingTestMixin, TestCase):
    def test_scenario_a_points_purchase(self):
        user = self.make_user(points=500)
        post = self.make_post(price=300)

        result = execute_plan(user, post, PointsPlan(300))

        self.assertIsNotNone(result.purchase)
        self.assertIsNone(result.redirect_url)
        self.assertEqual(self.balance_of(user), 200)
        self.assertEqual(Purchase.objects.filter(user=user, post=post).count(), 1)
        debits = PointTransaction.objects.filter(user=user, type=PointTransaction.TYPE_POST_PURCHASE)
        self.assertEqual(list(debits.values_list("amount", flat=True)), [-300])
        post.creator.refresh_from_db()
        self.assertEqual(post.creator.total_support, 300)
        self.assertEqual(PaymentAuditLog.objects.get(user=user).status, "completed")
        self.assertLedgerConsistent(user)

    def test_scenario_d_second_purchase_is_rejected_without_ledger_change(self):
        user = self.make_user(points=1000)
        post = self.make_post(price=300)
        execute_plan(user, post, PointsPlan(300))
        self.assertTrue(pricing_service.resolve_purchase_options(user, post).already_purchased)
        rows_before = PointTransaction.objects.filter(user=user).count()

        with self.assertRaises(PurchaseError) as ctx:
            execute_plan(user, post, PointsPlan(300))

        self.assertEqual(ctx.exception.code, errors.ALREADY_PURCHASED)
        self.assertEqual(PointTransaction.objects.filter(user=user).count(), rows_before)
        self.assertEqual(self.balance_of(user), 700)

    def test_insufficient_balance_leaves_no_purchase_or_audit_row(self):
        user = self.make_user(points=100)
        post = self.make_post(price=300)
        with self.assertRaises(PurchaseError) as ctx:
            execute_plan(user, post, PointsPlan(300))
        self.assertEqual(ctx.exception.code, errors.INSUFFICIENT_BALANCE)
        self.assertFalse(Purchase.objects.exists())
        self.assertFalse(PaymentAuditLog.objects.exists())
        self.assertEqual(self.balance_of(user), 100)

    def test_replay_with_same_idempotency_key_charges_once(self):
        user = self.make_user(points=500)
        post = self.make_post(price=300)

        first = execute_plan(user, post, PointsPlan(300), idempotency_key="req-1")
        second = execute_plan(user, post, PointsPlan(300), idempotency_key="req-1")

        self.assertTrue(second.replayed)
        self.assertEqual(first.data, second.data)
        self.assertEqual(Purchase.objects.filter(user=user).count(), 1)
        self.assertEqual(PointTransaction.objects.filter(user=user, amount__lt=0).count(), 1)
        self.assertEqual(self.balance_of(user), 200)

    def test_failed_attempt_does_not_burn_the_idempotency_key(self):
        user = self.make_user(points=100)
        post = self.make_post(price=300)
        with self.assertRaises(PurchaseError):
            execute_plan(user, post, PointsPlan(300), idempotency_key="req-2")
        self.assertFalse(IdempotencyKey.objects.exists())

        balance_service.credit(user, 200, PointTransaction.TYPE_PURCHASE, "top up")
        result = execute_plan(user, post, PointsPlan(300), idempotency_key="req-2")
        self.assertFalse(result.replayed)
        self.assertEqual(self.balance_of(user), 0)

    def test_expired_idempotency_key_can_be_reused_for_a_new_purchase(self):
        user = self.make_user(points=1000)
        first_post, second_post, third_post = (self.make_post(price=300) for _ in range(3))
        execute_plan(user, first_post, PointsPlan(300), idempotency_key="k1")

        IdempotencyKey.objects.update(expires_at=timezone.now() - timedelta(minutes=1))
        self.assertEqual(cleanup_expired_idempotency_keys(), 1)
        second = execute_plan(user, second_post, PointsPlan(300), idempotency_key="k1")
        self.assertFalse(second.replayed)

        # Expired but not yet swept
        IdempotencyKey.objects.update(expires_at=timezone.now() - timedelta(minutes=1))
        third = execute_plan(user, third_post, PointsPlan(300), idempotency_key="k1")
        self.assertFalse(third.replayed)

        self.assertEqual(Purchase.objects.filter(user=user).count(), 3)
        debit_keys = PointTransaction.objects.filter(user=user, amount__lt=0).values_list("idempotency_key", flat=True)
        self.assertEqual(len(set(debit_keys)), 3)
        self.assertEqual(self.balance_of(user), 100)
        self.assertLedgerConsistent(user)

    def test_creator_is_notified_after_commit(self):
        user = self.make_user(points=500)
        post = self.make_post(price=300)
        with self.captureOnCommitCallbacks(execute=True):
            execute_plan(user, post, PointsPlan(300))
        notification = Notification.objects.get(user=post.creator.user)
        self.assertEqual(notification.type, Notification.TYPE_PURCHASE)

    def test_notification_failure_keeps_the_purchase(self):
        user = self.make_user(points=500)
        post = self.make_post(price=300)
        with patch(
            "billing.services.entitlement_service.NotificationService.notify_purchase",
            side_effect=RuntimeError("mail down"),
        ):
            with self.captureOnCommitCallbacks(execute=True):
                execute_plan(user, post, PointsPlan(300))
        self.assertTrue(Purchase.objects.filter(user=user, post=post).exists())
        self.assertEqual(self.balance_of(user), 200)

    def test_anonymous_user_cannot_purchase(self):
        with self.assertRaises(PurchaseError) as ctx:
            execute_plan(AnonymousUser(), self.make_post(), PointsPlan(300))
        self.assertEqual(ctx.exception.code, errors.UNAUTHORIZED)


class CardCheckoutTests(BillingTestMixin, TestCase):
    @patch(CREATE_SESSION, return_value=_stripe_session())
    def test_card_checkout_redirects_without_touching_balance(self, create_session):
        user = self.make_user(points=50)
        post = self.make_post(price=300)

        result = execute_plan(user, post, CardPlan(300), success_url=SUCCESS_URL, cancel_url=CANCEL_URL)

        self.assertIsNone(result.purchase)
        self.assertEqual(result.redirect_url, "https://checkout.stripe.test/cs_test_1")
        local = CheckoutSession.objects.get(user=user)
        self.assertEqual((local.status, local.amount, local.points_reserved), ("pending", 300, 0))
        self.assertEqual(local.stripe_session_id, "cs_test_1")
        self.assertFalse(Purchase.objects.exists())
        self.assertEqual(self.balance_of(user), 50)
        self.assertEqual(create_session.call_args.kwargs["idempotency_key"], f"checkout:{local.id}")

    @patch(CREATE_SESSION)
    def test_scenario_c_adult_card_checkout_is_forbidden(self, create_session):
        user = self.make_user(points=500)
        post = self.make_post(price=300, is_adult=True)
        self.assertEqual(pricing_service.resolve_purchase_options(user, post).allowed_methods, ("points",))

        with self.assertRaises(PurchaseError) as ctx:
            execute_plan(user, post, CardPlan(300), success_url=SUCCESS_URL, cancel_url=CANCEL_URL)

        self.assertEqual(ctx.exception.code, errors.ADULT_CONTENT_METHOD_FORBIDDEN)
        create_session.assert_not_called()
        self.assertFalse(CheckoutSession.objects.exists())

    @patch(CREATE_SESSION, side_effect=BillingError("Card network unavailable."))
    def test_processor_error_cancels_local_session(self, create_session):
        user = self.make_user()
        post = self.make_post(price=300)
        with self.assertRaises(PurchaseError) as ctx:
            execute_plan(user, post, CardPlan(300), success_url=SUCCESS_URL, cancel_url=CANCEL_URL)
        self.assertEqual(ctx.exception.code, errors.PROCESSOR_ERROR)
        self.assertEqual(ctx.exception.message, "Card network unavailable.")
        self.assertEqual(CheckoutSession.objects.get(user=user).status, "canceled")

    @patch(CREATE_SESSION, return_value=_stripe_session())
    def test_confirmation_grants_exactly_once(self, create_session):
        user = self.make_user()
        post = self.make_post(price=300)
        result = execute_plan(user, post, CardPlan(300), success_url=SUCCESS_URL, cancel_url=CANCEL_URL)
        local_id = result.data["checkoutSessionId"]

        complete_checkout_session(local_id, "pi_1")
        complete_checkout_session(local_id, "pi_1")

        purchase = Purchase.objects.get(user=user, post=post)
        self.assertEqual((purchase.payment_method, purchase.card_portion, purchase.points_portion), ("card", 300, 0))
        self.assertEqual(purchase.stripe_payment_intent_id, "pi_1")
        self.assertEqual(CheckoutSession.objects.get(id=local_id).status, "completed")
        self.assertEqual(PointTransaction.objects.filter(user=user).count(), 0)

    @patch(CREATE_SESSION, return_value=_stripe_session())
    def test_replayed_card_checkout_returns_same_redirect(self, create_session):
        user = self.make_user()
        post = self.make_post(price=300)
        first = execute_plan(user, post, CardPlan(300), success_url=SUCCESS_URL, cancel_url=CANCEL_URL,
                             idempotency_key="tab-1")
        second = execute_plan(user, post, CardPlan(300), success_url=SUCCESS_URL, cancel_url=CANCEL_URL,
                              idempotency_key="tab-1")
        self.assertEqual(first.redirect_url, second.redirect_url)
        self.assertTrue(second.replayed)
        self.assertEqual(create_session.call_count, 1)
        self.assertEqual(CheckoutSession.objects.count(), 1)

    def test_pending_key_rejects_concurrent_replay(self):
        user = self.make_user()
        post = self.make_post(price=300)
        IdempotencyKey.objects.create(
            key=f"{user.pk}:tab-2",
            operation=f"card:{post.id}:paid",
            expires_at=timezone.now() + timedelta(hours=1),
        )
        with self.assertRaises(PurchaseError) as ctx:
            execute_plan(user, post, CardPlan(300), success_url=SUCCESS_URL, cancel_url=CANCEL_URL,
                         idempotency_key="tab-2")
        self.assertEqual(ctx.exception.code, errors.REQUEST_IN_PROGRESS)

    def test_missing_return_urls_are_rejected_before_any_write(self):
        user = self.make_user()
        with self.assertRaises(PurchaseError) as ctx:
            execute_plan(user, self.make_post(), CardPlan(300), success_url=SUCCESS_URL)
        self.assertEqual(ctx.exception.code, errors.INVALID_REQUEST)
        self.assertFalse(CheckoutSession.objects.exists())


class HybridCheckoutTests(BillingTestMixin, TestCase):
    def _start(self, user, post, points=100, card=200):
        with patch(CREATE_SESSION, return_value=_stripe_session(f"cs_hybrid_{post.id}")):
            return execute_plan(
                user,
                post,
                HybridPlan(points_amount=points, card_amount=card),
                success_url=SUCCESS_URL,
                cancel_url=CANCEL_URL,
            )

    def test_scenario_b_points_reserved_then_confirmed(self):
        user = self.make_user(points=100)
        post = self.make_post(price=300)

        result = self._start(user, post)

        self.assertEqual(self.balance_of(user), 0)
        self.assertEqual(result.data["stripeAmount"], 200)
        self.assertEqual(result.data["pointsUsed"], 100)
        local = CheckoutSession.objects.get(id=result.data["checkoutSessionId"])
        self.assertEqual((local.kind, local.amount, local.points_reserved), ("post_purchase_hybrid", 200, 100))
        self.assertFalse(Purchase.objects.exists())

        complete_checkout_session(local.id, "pi_hybrid")

        purchase = Purchase.objects.get(user=user, post=post)
        self.assertEqual((purchase.payment_method, purchase.points_portion, purchase.card_portion), ("hybrid", 100, 200))
        self.assertEqual(self.balance_of(user), 0)
        self.assertLedgerConsistent(user)

    def test_scenario_b_cancellation_refunds_reserved_points(self):
        user = self.make_user(points=100)
        post = self.make_post(price=300)
        result = self._start(user, post)

        cancel_checkout_session(result.data["checkoutSessionId"], reason="expired")
        cancel_checkout_session(result.data["checkoutSessionId"], reason="expired")

        self.assertEqual(self.balance_of(user), 100)
        refunds = PointTransaction.objects.filter(user=user, type=PointTransaction.TYPE_REFUND)
        self.assertEqual(list(refunds.values_list("amount", flat=True)), [100])
        self.assertFalse(Purchase.objects.exists())
        self.assertLedgerConsistent(user)

    def test_points_beyond_balance_fail_before_any_session(self):
        user = self.make_user(points=50)
        post = self.make_post(price=300)
        with self.assertRaises(PurchaseError) as ctx:
            self._start(user, post, points=100, card=200)
        self.assertEqual(ctx.exception.code, errors.INSUFFICIENT_BALANCE)
        self.assertFalse(CheckoutSession.objects.exists())
        self.assertEqual(self.balance_of(user), 50)

    def test_card_leg_below_stripe_minimum_is_rejected(self):
        user = self.make_user(points=300)
        post = self.make_post(price=300)
        with self.assertRaises(PurchaseError) as ctx:
            self._start(user, post, points=290, card=10)
        self.assertEqual(ctx.exception.code, errors.INVALID_REQUEST)
        self.assertEqual(self.balance_of(user), 300)

    @patch(CREATE_SESSION, side_effect=BillingError("Stripe timeout"))
    def test_processor_failure_compensates_the_reservation(self, create_session):
        user = self.make_user(points=100)
        post = self.make_post(price=300)
        with self.assertRaises(PurchaseError) as ctx:
            execute_plan(user, post, HybridPlan(100, 200), success_url=SUCCESS_URL, cancel_url=CANCEL_URL,
                         idempotency_key="hy-1")
        self.assertEqual(ctx.exception.code, errors.PROCESSOR_ERROR)
        self.assertEqual(self.balance_of(user), 100)
        self.assertEqual(IdempotencyKey.objects.get().status, "failed")
        self.assertEqual(CheckoutSession.objects.get().status, "canceled")
        self.assertLedgerConsistent(user)

    def test_failed_compensation_is_flagged_and_alerted(self):
        user = self.make_user(points=100)
        post = self.make_post(price=300)
        result = self._start(user, post)
        local_id = result.data["checkoutSessionId"]

        with patch("billing.services.balance_service.refund", side_effect=DatabaseError("db gone")):
            with self.assertRaises(PurchaseError) as ctx:
                cancel_checkout_session(local_id, reason="expired")

        self.assertEqual(ctx.exception.code, errors.COMPENSATION_FAILED)
        self.assertEqual(OperatorAlert.objects.get(name=config.ALERT_COMPENSATION_FAILED).count, 1)
        audit_log = PaymentAuditLog.objects.get(checkout_session_id=local_id)
        self.assertTrue(audit_log.requires_recovery)
        self.assertEqual(audit_log.error_code, errors.COMPENSATION_FAILED)
        self.assertEqual(CheckoutSession.objects.get(id=local_id).status, "pending")
        self.assertEqual(self.balance_of(user), 0)

    def test_payment_after_cancel_needs_recovery_not_entitlement(self):
        user = self.make_user(points=100)
        post = self.make_post(price=300)
        result = self._start(user, post)
        cancel_checkout_session(result.data["checkoutSessionId"], reason="expired")

        complete_checkout_session(result.data["checkoutSessionId"], "pi_late")
        complete_checkout_session(result.data["checkoutSessionId"], "pi_late")

        self.assertFalse(Purchase.objects.exists())
        self.assertEqual(OperatorAlert.objects.get(name=config.ALERT_PAID_AFTER_CANCEL).count, 1)
        self.assertTrue(PaymentAuditLog.objects.get(user=user).requires_recovery)

    def test_second_paid_checkout_for_owned_post_refunds_points_and_alerts(self):
        user = self.make_user(points=300)
        post = self.make_post(price=300)
        first = self._start(user, post)
        with patch(CREATE_SESSION, return_value=_stripe_session("cs_second")):
            second = execute_plan(user, post, HybridPlan(100, 200), success_url=SUCCESS_URL, cancel_url=CANCEL_URL)
        self.assertEqual(self.balance_of(user), 100)

        complete_checkout_session(first.data["checkoutSessionId"], "pi_a")
        complete_checkout_session(second.data["checkoutSessionId"], "pi_b")

        self.assertEqual(Purchase.objects.filter(user=user, post=post).count(), 1)
        self.assertEqual(self.balance_of(user), 200)
        self.assertEqual(CheckoutSession.objects.get(id=second.data["checkoutSessionId"]).cancel_reason,
                         "duplicate_purchase")
        self.assertEqual(OperatorAlert.objects.get(name=config.ALERT_DUPLICATE_PAYMENT).count, 1)
        self.assertLedgerConsistent(user)


class PointPackageCheckoutTests(BillingTestMixin, TestCase):
    @patch(CREATE_SESSION, return_value=_stripe_session("cs_pack"))
    def test_package_points_are_credited_on_confirmation(self, create_session):
        user = self.make_user()
        package = PointPackage.objects.create(name="Starter", points=1100, price_jpy=1000)

        result = create_point_checkout(user, package.id, success_url=SUCCESS_URL, cancel_url=CANCEL_URL)
        self.assertEqual(self.balance_of(user), 0)

        with self.captureOnCommitCallbacks(execute=True):
            complete_checkout_session(result.data["checkoutSessionId"], "pi_pack")
        complete_checkout_session(result.data["checkoutSessionId"], "pi_pack")

        balance = PointBalance.objects.get(user=user)
        self.assertEqual((balance.balance, balance.total_purchased), (1100, 1100))
        tx = PointTransaction.objects.get(user=user)
        self.assertEqual((tx.type, tx.stripe_payment_intent_id), ("purchase", "pi_pack"))
        self.assertTrue(Notification.objects.filter(user=user, type=Notification.TYPE_POINT_PURCHASE).exists())

    def test_inactive_package_is_not_found(self):
        user = self.make_user()
        package = PointPackage.objects.create(name="Old", points=100, price_jpy=100, is_active=False)
        with self.assertRaises(PurchaseError) as ctx:
            create_point_checkout(user, package.id, success_url=SUCCESS_URL, cancel_url=CANCEL_URL)
        self.assertEqual(ctx.exception.code, errors.NOT_FOUND)


class ReconciliationTests(BillingTestMixin, TestCase):
    def _stale_hybrid(self, user, post, hours_old=25):
        with patch(CREATE_SESSION, return_value=_stripe_session(f"cs_stale_{post.id}")):
            result = execute_plan(user, post, HybridPlan(100, 200), success_url=SUCCESS_URL, cancel_url=CANCEL_URL)
        CheckoutSession.objects.filter(id=result.data["checkoutSessionId"]).update(
            created_at=timezone.now() - timedelta(hours=hours_old)
        )
        return result.data["checkoutSessionId"]

    def test_stale_pending_session_is_canceled_and_refunded(self):
        user = self.make_user(points=200)
        stale_id = self._stale_hybrid(user, self.make_post(price=300))
        fresh_id = self._stale_hybrid(user, self.make_post(price=300), hours_old=1)
        self.assertEqual(self.balance_of(user), 0)

        result = reconcile_stale_checkout_sessions()
        again = reconcile_stale_checkout_sessions()

        self.assertEqual(result["sessions_canceled"], 1)
        self.assertEqual(result["points_refunded"], 100)
        self.assertEqual(again["sessions_checked"], 0)
        self.assertEqual(CheckoutSession.objects.get(id=stale_id).status, "canceled")
        self.assertEqual(CheckoutSession.objects.get(id=fresh_id).status, "pending")
        self.assertEqual(self.balance_of(user), 100)
        self.assertLedgerConsistent(user)

    @patch("billing.cleanup.checkout_sessions.is_configured", return_value=True)
    @patch("billing.services.payment_service.retrieve_checkout_session")
    def test_stale_session_paid_at_stripe_is_completed(self, retrieve, configured):
        user = self.make_user(points=100)
        post = self.make_post(price=300)
        stale_id = self._stale_hybrid(user, post)
        retrieve.return_value = SimpleNamespace(payment_status="paid", payment_intent="pi_lost_webhook")

        result = reconcile_stale_checkout_sessions()

        self.assertEqual(result["sessions_completed"], 1)
        self.assertEqual(CheckoutSession.objects.get(id=stale_id).status, "completed")
        self.assertEqual(Purchase.objects.get(user=user, post=post).stripe_payment_intent_id, "pi_lost_webhook")

    @patch("billing.cleanup.checkout_sessions.is_configured", return_value=True)
    @patch("billing.services.payment_service.expire_checkout_session")
    @patch("billing.services.payment_service.retrieve_checkout_session", side_effect=BillingError("Stripe timeout"))
    def test_stripe_outage_leaves_session_pending(self, retrieve, expire, configured):
        user = self.make_user(points=100)
        stale_id = self._stale_hybrid(user, self.make_post(price=300))

        result = reconcile_stale_checkout_sessions()

        self.assertEqual((result["sessions_skipped"], result["sessions_canceled"]), (1, 0))
        expire.assert_not_called()
        self.assertEqual(CheckoutSession.objects.get(id=stale_id).status, "pending")
        self.assertEqual(self.balance_of(user), 0)

    @patch("billing.cleanup.checkout_sessions.is_configured", return_value=True)
    @patch("billing.services.payment_service.expire_checkout_session", return_value=False)
    @patch("billing.services.payment_service.retrieve_checkout_session")
    def test_session_paid_while_expiring_is_completed(self, retrieve, expire, configured):
        user = self.make_user(points=100)
        post = self.make_post(price=300)
        stale_id = self._stale_hybrid(user, post)
        retrieve.side_effect = [
            SimpleNamespace(status="open", payment_status="unpaid"),
            SimpleNamespace(status="complete", payment_status="paid", payment_intent="pi_race", amount_total=200),
        ]

        result = reconcile_stale_checkout_sessions()

        self.assertEqual((result["sessions_completed"], result["sessions_canceled"]), (1, 0))
        self.assertEqual(CheckoutSession.objects.get(id=stale_id).status, "completed")
        self.assertEqual(Purchase.objects.get(user=user, post=post).stripe_payment_intent_id, "pi_race")
        self.assertEqual(self.balance_of(user), 0)
        self.assertFalse(PointTransaction.objects.filter(user=user, type=PointTransaction.TYPE_REFUND).exists())

    @patch("billing.cleanup.checkout_sessions.is_configured", return_value=True)
    @patch("billing.services.payment_service.expire_checkout_session", return_value=False)
    @patch("billing.services.payment_service.retrieve_checkout_session")
    def test_refused_expire_follows_the_session_state_at_stripe(self, retrieve, expire, configured):
        user = self.make_user(points=200)
        expired_id = self._stale_hybrid(user, self.make_post(price=300), hours_old=30)
        processing_id = self._stale_hybrid(user, self.make_post(price=300), hours_old=26)
        retrieve.side_effect = [
            SimpleNamespace(status="open", payment_status="unpaid"),
            SimpleNamespace(status="expired", payment_status="unpaid"),
            SimpleNamespace(status="open", payment_status="unpaid"),
            SimpleNamespace(status="complete", payment_status="unpaid"),
        ]

        result = reconcile_stale_checkout_sessions()

        self.assertEqual((result["sessions_canceled"], result["sessions_skipped"]), (1, 1))
        self.assertEqual(CheckoutSession.objects.get(id=expired_id).status, "canceled")
        self.assertEqual(CheckoutSession.objects.get(id=processing_id).status, "pending")
        self.assertEqual(self.balance_of(user), 100)
        self.assertLedgerConsistent(user)

    @patch("billing.cleanup.checkout_sessions.is_configured", return_value=True)
    @patch("billing.services.payment_service.retrieve_checkout_session")
    def test_one_failing_completion_does_not_stop_the_sweep(self, retrieve, configured):
        user = self.make_user(points=200)
        first_post, second_post = self.make_post(price=300), self.make_post(price=300)
        first_id = self._stale_hybrid(user, first_post, hours_old=30)
        second_id = self._stale_hybrid(user, second_post, hours_old=26)
        retrieve.return_value = SimpleNamespace(payment_status="paid", payment_intent="pi_sweep", amount_total=200)
        real_complete = complete_checkout_session

        def complete(checkout_session_id, *args, **kwargs):
            if checkout_session_id == first_id:
                raise DatabaseError("deadlock detected")
            return real_complete(checkout_session_id, *args, **kwargs)

        with patch("billing.services.checkout_service.complete_checkout_session", side_effect=complete):
            result = reconcile_stale_checkout_sessions()

        self.assertEqual((result["completion_failures"], result["sessions_completed"]), (1, 1))
        self.assertEqual(CheckoutSession.objects.get(id=first_id).status, "pending")
        self.assertEqual(CheckoutSession.objects.get(id=second_id).status, "completed")
        self.assertFalse(Purchase.objects.filter(post=first_post).exists())
        self.assertTrue(Purchase.objects.filter(post=second_post).exists())

    def test_expired_idempotency_keys_are_deleted(self):
        now = timezone.now()
        IdempotencyKey.objects.create(key="1:old", operation="x", expires_at=now - timedelta(minutes=1))
        IdempotencyKey.objects.create(key="1:new", operation="x", expires_at=now + timedelta(hours=1))
        self.assertEqual(cleanup_expired_idempotency_keys(now=now), 1)
        self.assertEqual(list(IdempotencyKey.objects.values_list("key", flat=True)), ["1:new"])


@override_settings(STRIPE_WEBHOOK_SECRET="whsec_test")
class StripeWebhookTests(BillingTestMixin, TestCase):
    def _event(self, event_type, local_id, payment_status="paid", stripe_id="cs_test_1", amount_total=200):
        obj = SimpleNamespace(
            id=stripe_id,
            payment_status=payment_status,
            payment_intent="pi_webhook",
            amount_total=amount_total,
            client_reference_id=str(local_id),
            metadata=SimpleNamespace(checkoutSessionId=str(local_id)),
        )
        return SimpleNamespace(type=event_type, data=SimpleNamespace(object=obj))

    def _post(self):
        return self.client.post(
            reverse("billing:stripe_webhook"),
            data=b"{}",
            content_type="application/json",
            HTTP_STRIPE_SIGNATURE="t=1,v1=sig",
        )

    def _pending_hybrid(self):
        user = self.make_user(points=100)
        post = self.make_post(price=300)
        with patch(CREATE_SESSION, return_value=_stripe_session()):
            result = execute_plan(user, post, HybridPlan(100, 200), success_url=SUCCESS_URL, cancel_url=CANCEL_URL)
        return user, post, result.data["checkoutSessionId"]

    def test_missing_signature_is_rejected(self):
        response = self.client.post(reverse("billing:stripe_webhook"), data=b"{}", content_type="application/json")
        self.assertEqual(response.status_code, 400)

    @patch("billing.views.construct_webhook_event", side_effect=ValueError("bad payload"))
    def test_invalid_signature_is_rejected(self, construct):
        self.assertEqual(self._post().status_code, 400)

    @patch("billing.views.construct_webhook_event")
    def test_completed_event_grants_purchase_once(self, construct):
        user, post, local_id = self._pending_hybrid()
        construct.return_value = self._event("checkout.session.completed", local_id)

        self.assertEqual(self._post().status_code, 200)
        self.assertEqual(self._post().status_code, 200)

        self.assertEqual(Purchase.objects.filter(user=user, post=post).count(), 1)
        self.assertFalse(PaymentAuditLog.objects.get(checkout_session_id=local_id).requires_recovery)
        self.assertFalse(OperatorAlert.objects.filter(name=config.ALERT_AMOUNT_MISMATCH).exists())

    @patch("billing.views.construct_webhook_event")
    def test_paid_amount_differing_from_card_leg_is_flagged(self, construct):
        user, post, local_id = self._pending_hybrid()
        construct.return_value = self._event("checkout.session.completed", local_id, amount_total=150)

        self.assertEqual(self._post().status_code, 200)
        self.assertEqual(self._post().status_code, 200)

        self.assertTrue(Purchase.objects.filter(user=user, post=post).exists())
        audit_log = PaymentAuditLog.objects.get(checkout_session_id=local_id)
        self.assertTrue(audit_log.requires_recovery)
        self.assertEqual(audit_log.error_code, "AMOUNT_MISMATCH")
        self.assertEqual(OperatorAlert.objects.get(name=config.ALERT_AMOUNT_MISMATCH).count, 1)

    @patch("billing.views.construct_webhook_event")
    def test_unpaid_completed_event_waits_for_async_payment(self, construct):
        user, post, local_id = self._pending_hybrid()
        construct.return_value = self._event("checkout.session.completed", local_id, payment_status="unpaid")
        self._post()
        self.assertFalse(Purchase.objects.exists())
        self.assertEqual(CheckoutSession.objects.get(id=local_id).status, "pending")

    @patch("billing.views.construct_webhook_event")
    def test_expired_event_refunds_reserved_points(self, construct):
        user, post, local_id = self._pending_hybrid()
        construct.return_value = self._event("checkout.session.expired", local_id, payment_status="unpaid")

        self.assertEqual(self._post().status_code, 200)

        self.assertEqual(self.balance_of(user), 100)
        self.assertEqual(CheckoutSession.objects.get(id=local_id).cancel_reason, "expired")

    @patch("billing.views.construct_webhook_event")
    def test_unknown_session_is_acknowledged(self, construct):
        construct.return_value = self._event("checkout.session.completed", 424242, stripe_id="cs_unknown")
        self.assertEqual(self._post().status_code, 200)


class PurchaseApiTests(BillingTestMixin, TestCase):
    def setUp(self):
        self.user = self.make_user(points=500)
        self.client.force_login(self.user)

    def test_get_balance(self):
        response = self.client.get(reverse("billing:points_balance"))
        self.assertEqual(response.json(), {"balance": 500, "totalPurchased": 0, "totalSpent": 0})

    def test_get_transactions_validates_limit(self):
        ok = self.client.get(reverse("billing:points_transactions"), {"limit": 1})
        self.assertEqual(len(ok.json()["transactions"]), 1)
        bad = self.client.get(reverse("billing:points_transactions"), {"limit": 101})
        self.assertEqual(bad.status_code, 400)
        self.assertEqual(bad.json()["code"], errors.INVALID_REQUEST)

    def test_purchase_options_for_anonymous_caller(self):
        post = self.make_post(price=300)
        self.client.logout()
        data = self.client.get(reverse("billing:purchase_options", args=[post.id])).json()
        self.assertEqual(data["userBalance"], 0)
        self.assertEqual(data["allowedMethods"], ["card"])

    def test_purchase_with_points_replays_on_idempotency_header(self):
        post = self.make_post(price=300)
        url = reverse("billing:purchase_with_points")
        first = self.client.post(url, {"postId": post.id}, content_type="application/json",
                                 HTTP_IDEMPOTENCY_KEY="k-1")
        second = self.client.post(url, {"postId": post.id}, content_type="application/json",
                                  HTTP_IDEMPOTENCY_KEY="k-1")
        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.json()["purchaseId"], first.json()["purchaseId"])
        self.assertTrue(second.json()["replayed"])
        self.assertEqual(self.balance_of(self.user), 200)

        third = self.client.post(url, {"postId": post.id}, content_type="application/json")
        self.assertEqual(third.status_code, 409)
        self.assertEqual(third.json()["code"], errors.ALREADY_PURCHASED)

    def test_expired_idempotency_header_starts_a_new_purchase(self):
        url = reverse("billing:purchase_with_points")
        first = self.client.post(url, {"postId": self.make_post(price=200).id}, content_type="application/json",
                                 HTTP_IDEMPOTENCY_KEY="k-daily")
        IdempotencyKey.objects.update(expires_at=timezone.now() - timedelta(minutes=1))
        cleanup_expired_idempotency_keys()

        second = self.client.post(url, {"postId": self.make_post(price=200).id}, content_type="application/json",
                                  HTTP_IDEMPOTENCY_KEY="k-daily")

        self.assertEqual(second.status_code, 200)
        self.assertFalse(second.json()["replayed"])
        self.assertNotEqual(second.json()["purchaseId"], first.json()["purchaseId"])
        self.assertEqual(self.balance_of(self.user), 100)

    def test_error_codes_map_to_http_statuses(self):
        adult = self.make_post(price=300, is_adult=True)
        response = self.client.post(
            reverse("billing:create_stripe_checkout"),
            {"postId": adult.id, "successUrl": SUCCESS_URL, "cancelUrl": CANCEL_URL},
            content_type="application/json",
        )
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], errors.ADULT_CONTENT_METHOD_FORBIDDEN)

        expensive = self.make_post(price=900)
        response = self.client.post(reverse("billing:purchase_with_points"), {"postId": expensive.id},
                                    content_type="application/json")
        self.assertEqual(response.status_code, 402)

    @patch(CREATE_SESSION, return_value=_stripe_session("cs_api"))
    def test_hybrid_checkout_returns_redirect(self, create_session):
        post = self.make_post(price=300)
        response = self.client.post(
            reverse("billing:create_hybrid_checkout"),
            {"postId": post.id, "pointsToUse": 100, "successUrl": SUCCESS_URL, "cancelUrl": CANCEL_URL},
            content_type="application/json",
        )
        data = response.json()
        self.assertEqual(data["url"], "https://checkout.stripe.test/cs_api")
        self.assertEqual((data["pointsUsed"], data["stripeAmount"]), (100, 200))
        self.assertNotIn("purchaseId", data)

    def test_mutations_require_sign_in(self):
        self.client.logout()
        response = self.client.post(reverse("billing:purchase_with_points"), {"postId": 1},
                                    content_type="application/json")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], errors.UNAUTHORIZED)


class AdminRecoveryTests(BillingTestMixin, TestCase):
    def setUp(self):
        self.admin = CustomUser.objects.create_superuser(email="ops@example.com", password="pw-12345678")

    def test_grant_points_closes_related_recovery_item(self):
        user = self.make_user()
        flagged = PaymentAuditLog.objects.create(operation_type="post_purchase_hybrid", user=user,
                                                 status="failed", requires_recovery=True)

        admin_service.grant_points(self.admin, user, 100, "compensation", related_audit_log=flagged)

        flagged.refresh_from_db()
        self.assertFalse(flagged.requires_recovery)
        self.assertEqual(flagged.recovery_attempts, 1)
        self.assertEqual(flagged.processed_by, self.admin)
        self.assertEqual(PointTransaction.objects.get(user=user).type, PointTransaction.TYPE_ADMIN_GRANT)
        self.assertLedgerConsistent(user)

    def test_refund_points_marks_log_refunded(self):
        user = self.make_user()
        audit_log = PaymentAuditLog.objects.create(operation_type="post_purchase_points", user=user, status="completed")
        self.client.force_login(self.admin)
        response = self.client.post(
            reverse("billing:admin_refund_points"),
            {"auditLogId": audit_log.id, "amount": 300, "reason": "content removed"},
            content_type="application/json",
        )
        self.assertEqual(response.json(), {"success": True, "newBalance": 300})
        audit_log.refresh_from_db()
        self.assertEqual(audit_log.status, "refunded")

    def test_grant_requires_reason(self):
        user = self.make_user()
        with self.assertRaises(PurchaseError):
            admin_service.grant_points(self.admin, user, 100, "  ")


class ManagementCommandTests(BillingTestMixin, TestCase):
    def test_reconcile_payments_cancels_stale_checkouts(self):
        user = self.make_user(points=100)
        with patch(CREATE_SESSION, return_value=_stripe_session("cs_cmd")):
            result = execute_plan(user, self.make_post(price=300), HybridPlan(100, 200),
                                  success_url=SUCCESS_URL, cancel_url=CANCEL_URL)
        CheckoutSession.objects.filter(id=result.data["checkoutSessionId"]).update(
            created_at=timezone.now() - timedelta(hours=3)
        )
        out = StringIO()

        call_command("reconcile_payments", "--max-age-hours", "2", stdout=out)

        self.assertIn("1 canceled", out.getvalue())
        self.assertEqual(self.balance_of(user), 100)

    def test_reconcile_payments_fails_loudly_on_compensation_failure(self):
        user = self.make_user(points=100)
        with patch(CREATE_SESSION, return_value=_stripe_session("cs_cmd_fail")):
            execute_plan(user, self.make_post(price=300), HybridPlan(100, 200),
                         success_url=SUCCESS_URL, cancel_url=CANCEL_URL)
        CheckoutSession.objects.update(created_at=timezone.now() - timedelta(days=2))

        with patch("billing.services.balance_service.refund", side_effect=DatabaseError("db gone")):
            with self.assertRaises(CommandError):
                call_command("reconcile_payments", stdout=StringIO(), stderr=StringIO())

        self.assertEqual(OperatorAlert.objects.get(name=config.ALERT_COMPENSATION_FAILED).count, 1)

    @patch("billing.cleanup.checkout_sessions.is_configured", return_value=True)
    @patch("billing.services.payment_service.retrieve_checkout_session",
           return_value=SimpleNamespace(payment_status="paid", payment_intent="pi_cmd"))
    @patch("billing.services.checkout_service.complete_checkout_session", side_effect=DatabaseError("db gone"))
    def test_reconcile_payments_fails_loudly_on_completion_failure(self, complete, retrieve, configured):
        user = self.make_user(points=100)
        with patch(CREATE_SESSION, return_value=_stripe_session("cs_cmd_paid")):
            execute_plan(user, self.make_post(price=300), HybridPlan(100, 200),
                         success_url=SUCCESS_URL, cancel_url=CANCEL_URL)
        CheckoutSession.objects.update(created_at=timezone.now() - timedelta(days=2))
        err = StringIO()

        with self.assertRaises(CommandError):
            call_command("reconcile_payments", stdout=StringIO(), stderr=err)

        self.assertIn("1 completion", err.getvalue())
        self.assertEqual(CheckoutSession.objects.get().status, "pending")

    @override_settings(ALLOW_TEST_SCENARIOS=True)
    def test_financial_scenarios_pass(self):
        out = StringIO()
        with patch("builtins.print"):
            call_command("run_financial_scenarios", stdout=out)
        self.assertIn("All requested scenarios passed.", out.getvalue())

    @override_settings(ALLOW_TEST_SCENARIOS=False)
    def test_financial_scenarios_are_guarded(self):
        with self.assertRaises(CommandError):
            call_command("run_financial_scenarios", "--scenario", "points_purchase", stdout=StringIO())


@patch("billing.services.payment_service.is_configured", return_value=True)
@patch("billing.services.payment_service.get_client")
class PaymentServiceTests(BillingTestMixin, TestCase):
    def setUp(self):
        user = self.make_user(points=100)
        self.local = CheckoutSession.objects.create(
            user=user,
            kind=CheckoutSession.KIND_POST_HYBRID,
            total_price=300,
            amount=200,
            points_reserved=100,
        )

    def test_session_charges_card_leg_in_jpy_and_carries_local_id(self, get_client, configured):
        client = get_client.return_value
        client.checkout.Session.create.return_value = SimpleNamespace(id="cs_x", url="https://checkout.stripe.test/cs_x")

        remote = payment_service.create_checkout_session(
            checkout_session=self.local,
            product_name="Sketchbook",
            success_url=SUCCESS_URL,
            cancel_url=CANCEL_URL,
            idempotency_key=f"checkout:{self.local.id}",
        )

        self.assertEqual(remote, {"stripe_session_id": "cs_x", "url": "https://checkout.stripe.test/cs_x"})
        kwargs = client.checkout.Session.create.call_args.kwargs
        self.assertEqual(kwargs["client_reference_id"], str(self.local.id))
        self.assertEqual(kwargs["line_items"][0]["price_data"]["currency"], "jpy")
        self.assertEqual(kwargs["line_items"][0]["price_data"]["unit_amount"], 200)
        self.assertEqual(kwargs["metadata"]["checkoutSessionId"], str(self.local.id))
        self.assertEqual(kwargs["metadata"]["pointsUsed"], "100")
        self.assertEqual(kwargs["idempotency_key"], f"checkout:{self.local.id}")

    def test_stripe_error_becomes_billing_error(self, get_client, configured):
        client = get_client.return_value
        client.StripeError = stripe.StripeError
        client.checkout.Session.create.side_effect = stripe.StripeError("api down")

        with self.assertRaises(BillingError) as ctx:
            payment_service.create_checkout_session(
                checkout_session=self.local, product_name="Sketchbook", success_url=SUCCESS_URL, cancel_url=CANCEL_URL
            )
        self.assertEqual(ctx.exception.message, "Payment could not be started. Please try again.")

    def test_expire_failure_is_reported_not_raised(self, get_client, configured):
        client = get_client.return_value
        client.StripeError = stripe.StripeError
        client.checkout.Session.expire.side_effect = stripe.StripeError("already complete")
        self.assertFalse(payment_service.expire_checkout_session("cs_done"))
