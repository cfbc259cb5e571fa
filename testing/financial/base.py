from django.conf import settings
from django.db import transaction

from accounts.models import CustomUser
from billing.models import CheckoutSession, PaymentAuditLog, PointBalance, PointTransaction, Purchase
from billing.services import balance_service
from content.models import Creator, Post

SCENARIO_TAG_PREFIX = "[financial_scenario]"


def assert_scenarios_enabled():
    if not settings.ALLOW_TEST_SCENARIOS:
        raise Exception("Test scenarios disabled in this environment.")


def ensure_test_users():
    creator_email = "test_creator@local.test"
    fan_email = "test_fan@local.test"

    creator_user, _ = CustomUser.objects.get_or_create(
        email=creator_email,
        defaults={"display_name": "Test Creator", "is_active": True},
    )
    fan_user, _ = CustomUser.objects.get_or_create(
        email=fan_email,
        defaults={"display_name": "Test Fan", "is_active": True},
    )
    creator, _ = Creator.objects.get_or_create(
        user=creator_user,
        defaults={"username": "test-creator", "display_name": "Test Creator"},
    )
    return creator, fan_user


@transaction.atomic()
def cleanup_scenario_data(scenario_name):
    """Remove everything a previous run of this scenario left, including the fan's ledger."""
    marker = f"{SCENARIO_TAG_PREFIX}:{scenario_name}"
    _, fan = ensure_test_users()
    posts = Post.objects.filter(title__startswith=marker)
    PaymentAuditLog.objects.filter(user=fan).delete()
    Purchase.objects.filter(post__in=posts).delete()
    CheckoutSession.objects.filter(post__in=posts).delete()
    posts.delete()
    PointTransaction.objects.filter(user=fan).delete()
    PointBalance.objects.filter(user=fan).update(balance=0, total_purchased=0, total_spent=0)


def fund_fan(fan, points):
    if points > 0:
        balance_service.credit(fan, points, PointTransaction.TYPE_ADMIN_GRANT, "financial scenario funding")


def create_post(*, scenario_name, creator, price, is_adult=False):
    return Post.objects.create(
        creator=creator,
        title=f"{SCENARIO_TAG_PREFIX}:{scenario_name}",
        type=Post.TYPE_PAID,
        price=price,
        is_adult=is_adult,
    )


def assert_ledger_consistent(user):
    report = balance_service.verify_integrity(user)
    if not report["ok"]:
        raise Exception(f"Ledger inconsistent: {report}")
