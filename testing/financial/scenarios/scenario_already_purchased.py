from billing import errors
from billing.errors import PurchaseError
from billing.models import PointTransaction
from billing.services.checkout_service import PointsPlan, execute_plan
from billing.services.pricing_service import resolve_purchase_options
from testing.financial.base import (
    assert_ledger_consistent,
    cleanup_scenario_data,
    create_post,
    ensure_test_users,
    fund_fan,
)


def run():
    print("Running: scenario_already_purchased")
    cleanup_scenario_data("scenario_already_purchased")
    creator, fan = ensure_test_users()
    fund_fan(fan, 1000)
    post = create_post(scenario_name="scenario_already_purchased", creator=creator, price=300)

    execute_plan(fan, post, PointsPlan(300))
    if not resolve_purchase_options(fan, post).already_purchased:
        raise Exception("Expected already_purchased after a purchase.")

    ledger_rows = PointTransaction.objects.filter(user=fan).count()
    try:
        execute_plan(fan, post, PointsPlan(300))
    except PurchaseError as e:
        if e.code != errors.ALREADY_PURCHASED:
            raise Exception(f"Expected ALREADY_PURCHASED, got {e.code}")
    else:
        raise Exception("Second purchase must be rejected.")
    if PointTransaction.objects.filter(user=fan).count() != ledger_rows:
        raise Exception("Rejected purchase must not touch the ledger.")
    assert_ledger_consistent(fan)
    print("✓ Passed")
