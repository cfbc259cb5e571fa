from unittest.mock import patch

from billing.models import CheckoutSession, Purchase
from billing.services import balance_service
from billing.services.checkout_service import HybridPlan, cancel_checkout_session, execute_plan
from testing.financial.base import (
    assert_ledger_consistent,
    cleanup_scenario_data,
    create_post,
    ensure_test_users,
    fund_fan,
)


def run():
    print("Running: scenario_hybrid_cancel")
    cleanup_scenario_data("scenario_hybrid_cancel")
    creator, fan = ensure_test_users()
    fund_fan(fan, 100)
    post = create_post(scenario_name="scenario_hybrid_cancel", creator=creator, price=300)

    # Stripe is stubbed: the scenario checks our ledger, not Stripe's
    with patch(
        "billing.services.payment_service.create_checkout_session",
        return_value={"stripe_session_id": f"cs_scenario_{post.id}", "url": "https://checkout.stripe.test/s"},
    ):
        result = execute_plan(
            fan,
            post,
            HybridPlan(points_amount=100, card_amount=200),
            success_url="https://fandry.test/ok",
            cancel_url="https://fandry.test/cancel",
        )

    if balance_service.get_balance(fan).balance != 0:
        raise Exception("Expected reserved points to be debited immediately.")
    local = CheckoutSession.objects.get(id=result.data["checkoutSessionId"])
    if local.amount != 200:
        raise Exception(f"Expected card leg of 200, got {local.amount}")

    cancel_checkout_session(local.id, reason="scenario_cancel")
    balance = balance_service.get_balance(fan).balance
    if balance != 100:
        raise Exception(f"Expected refund back to 100, got {balance}")
    if Purchase.objects.filter(user=fan, post=post).exists():
        raise Exception("Canceled checkout must not grant a purchase.")
    assert_ledger_consistent(fan)
    print("✓ Passed")
