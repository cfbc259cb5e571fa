from billing.models import PointTransaction, Purchase
from billing.services import balance_service
from billing.services.checkout_service import PointsPlan, execute_plan
from testing.financial.base import (
    assert_ledger_consistent,
    cleanup_scenario_data,
    create_post,
    ensure_test_users,
    fund_fan,
)


def run():
    print("Running: scenario_points_purchase")
    cleanup_scenario_data("scenario_points_purchase")
    creator, fan = ensure_test_users()
    fund_fan(fan, 500)
    post = create_post(scenario_name="scenario_points_purchase", creator=creator, price=300)

    execute_plan(fan, post, PointsPlan(300))

    balance = balance_service.get_balance(fan).balance
    if balance != 200:
        raise Exception(f"Expected balance 200, got {balance}")
    if Purchase.objects.filter(user=fan, post=post).count() != 1:
        raise Exception("Expected exactly one purchase.")
    debits = PointTransaction.objects.filter(user=fan, type=PointTransaction.TYPE_POST_PURCHASE)
    if list(debits.values_list("amount", flat=True)) != [-300]:
        raise Exception("Expected one -300 post_purchase transaction.")
    assert_ledger_consistent(fan)
    print("✓ Passed")
