from billing import config, errors
from billing.errors import PurchaseError
from billing.models import CheckoutSession
from billing.services.checkout_service import CardPlan, execute_plan
from billing.services.pricing_service import resolve_purchase_options
from testing.financial.base import cleanup_scenario_data, create_post, ensure_test_users, fund_fan


def run():
    print("Running: scenario_adult_card_forbidden")
    cleanup_scenario_data("scenario_adult_card_forbidden")
    creator, fan = ensure_test_users()
    fund_fan(fan, 500)
    post = create_post(scenario_name="scenario_adult_card_forbidden", creator=creator, price=300, is_adult=True)

    options = resolve_purchase_options(fan, post)
    if options.allowed_methods != (config.METHOD_POINTS,):
        raise Exception(f"Expected points only, got {options.allowed_methods}")
    try:
        execute_plan(fan, post, CardPlan(300), success_url="https://fandry.test/ok", cancel_url="https://fandry.test/x")
    except PurchaseError as e:
        if e.code != errors.ADULT_CONTENT_METHOD_FORBIDDEN:
            raise Exception(f"Expected ADULT_CONTENT_METHOD_FORBIDDEN, got {e.code}")
    else:
        raise Exception("Card checkout for adult content must be rejected.")
    if CheckoutSession.objects.filter(post=post).exists():
        raise Exception("Rejected checkout must not create a session.")
    print("✓ Passed")
