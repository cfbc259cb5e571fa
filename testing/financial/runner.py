from testing.financial.base import assert_scenarios_enabled
from testing.financial.scenarios import (
    scenario_adult_card_forbidden,
    scenario_already_purchased,
    scenario_hybrid_cancel,
    scenario_points_purchase,
)

AVAILABLE_SCENARIOS = {
    "points_purchase": scenario_points_purchase,
    "hybrid_cancel": scenario_hybrid_cancel,
    "adult_card_forbidden": scenario_adult_card_forbidden,
    "already_purchased": scenario_already_purchased,
}


def run_scenario(name):
    assert_scenarios_enabled()
    if name not in AVAILABLE_SCENARIOS:
        raise Exception(f"Unknown scenario '{name}'. Available: {', '.join(AVAILABLE_SCENARIOS.keys())}")
    AVAILABLE_SCENARIOS[name].run()


def run_all():
    assert_scenarios_enabled()
    for _, scenario in AVAILABLE_SCENARIOS.items():
        scenario.run()
