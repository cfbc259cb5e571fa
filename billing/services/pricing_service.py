"""
Pricing resolver: what a post costs this user, and how they may pay for it. Read-only.
"""
from dataclasses import asdict, dataclass

from billing import config, errors
from billing.errors import PurchaseError
from billing.models import PointBalance, Purchase
from content.models import Post


@dataclass(frozen=True)
class PurchaseOptions:
    post_id: int
    price: int
    purchase_type: str
    already_purchased: bool
    user_balance: int
    is_adult: bool
    allowed_methods: tuple

    def to_dict(self) -> dict:
        data = asdict(self)
        data["allowed_methods"] = list(self.allowed_methods)
        return data


def get_post(post_id) -> Post:
    try:
        return Post.objects.select_related("creator").get(id=int(post_id))
    except (TypeError, ValueError, Post.DoesNotExist):
        raise PurchaseError(errors.NOT_FOUND, "Post not found.")


def resolve_price(post: Post, purchase_type: str = config.PURCHASE_TYPE_PAID) -> int:
    """
    Paid posts sell at price. Membership posts sell individually only as back numbers.
    Raises PurchaseError(INVALID_REQUEST) when the post is not for sale this way.
    """
    if purchase_type == config.PURCHASE_TYPE_BACK_NUMBER:
        if post.type != Post.TYPE_MEMBERSHIP:
            raise PurchaseError(errors.INVALID_REQUEST, "This post cannot be bought as a back number.")
        if post.back_number_price is None:
            raise PurchaseError(errors.INVALID_REQUEST, "This post is not sold as a back number.")
        price = post.back_number_price
    elif purchase_type == config.PURCHASE_TYPE_PAID:
        if post.type != Post.TYPE_PAID:
            raise PurchaseError(errors.INVALID_REQUEST, "This post cannot be purchased.")
        price = post.price
    else:
        raise PurchaseError(errors.INVALID_REQUEST, "Unknown purchase type.")
    if not price:
        raise PurchaseError(errors.INVALID_REQUEST, "This post is free.")
    return price


def allowed_methods_for(is_adult: bool, authenticated: bool, price: int) -> tuple:
    methods = config.ADULT_METHODS if is_adult else config.ALL_METHODS
    if price < config.STRIPE_MIN_CHARGE_JPY:
        methods = tuple(m for m in methods if m != config.METHOD_CARD)
    if price - 1 < config.STRIPE_MIN_CHARGE_JPY:
        # Hybrid needs at least one point plus a chargeable card part
        methods = tuple(m for m in methods if m != config.METHOD_HYBRID)
    if not authenticated:
        # Points need a balance, so anonymous callers can only pay by card
        methods = tuple(m for m in methods if m == config.METHOD_CARD)
    return tuple(methods)


def resolve_purchase_options(user, post: Post, purchase_type: str = config.PURCHASE_TYPE_PAID) -> PurchaseOptions:
    """
    Price, eligibility and allowed payment methods of post for user (None or anonymous allowed).
    When already_purchased is True the remaining fields are advisory only.
    """
    price = resolve_price(post, purchase_type)
    is_adult = post.is_adult_content
    authenticated = bool(user is not None and user.is_authenticated)
    already_purchased = False
    user_balance = 0
    if authenticated:
        already_purchased = Purchase.objects.filter(user=user, post=post).exists()
        user_balance = (
            PointBalance.objects.filter(user=user).values_list("balance", flat=True).first() or 0
        )
    return PurchaseOptions(
        post_id=post.id,
        price=price,
        purchase_type=purchase_type,
        already_purchased=already_purchased,
        user_balance=user_balance,
        is_adult=is_adult,
        allowed_methods=allowed_methods_for(is_adult, authenticated, price),
    )
