"""
Coupon evaluation

Validity is recomputed on every call from the coupon record and the clock:
a coupon is valid when it is active, has started, has not expired and has
not hit its global usage limit. Eligibility rules (minimum order, per-user
limit, first-time buyers, product allow/deny lists) are checked on top.

Only apply_coupon changes anything, and it does so through the store's
conditional update so concurrent orders cannot overrun the usage limit.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional, Protocol

from pydantic import BaseModel

from errors import CouponIneligibleError, CouponInvalidError, CouponNotFoundError
from pricing import D, round2
from schemas import Coupon, CouponType, CouponUsage, FixedDiscount, FreeShipping, PercentageDiscount, normalize_code

logger = logging.getLogger(__name__)


class CouponLookup(Protocol):
    def find_active_by_code(self, code: str) -> Optional[Coupon]: ...

    def record_usage(self, coupon: Coupon, usage: CouponUsage) -> bool: ...

    def user_has_orders(self, user_id: str) -> bool: ...


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def is_expired(coupon: Coupon, now: Optional[datetime] = None) -> bool:
    return coupon.expiry_date < _now(now)


def has_started(coupon: Coupon, now: Optional[datetime] = None) -> bool:
    return coupon.start_date <= _now(now)


def is_usage_limit_reached(coupon: Coupon) -> bool:
    return coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit


def is_valid(coupon: Coupon, now: Optional[datetime] = None) -> bool:
    now = _now(now)
    return (
        coupon.is_active
        and has_started(coupon, now)
        and not is_expired(coupon, now)
        and not is_usage_limit_reached(coupon)
    )


def coupon_status(coupon: Coupon, now: Optional[datetime] = None) -> str:
    """Single word status for admin listings."""
    now = _now(now)
    if not coupon.is_active:
        return "inactive"
    if is_expired(coupon, now):
        return "expired"
    if not has_started(coupon, now):
        return "scheduled"
    if is_usage_limit_reached(coupon):
        return "exhausted"
    return "active"


def find_valid_coupon(code: str, store: CouponLookup, now: Optional[datetime] = None) -> Coupon:
    """Look up an active coupon by code and make sure it can be used now.

    Raises CouponNotFoundError when no active coupon has this code, otherwise
    CouponInvalidError with the first failing reason in the order expired,
    not started, usage limit reached.
    """
    now = _now(now)
    coupon = store.find_active_by_code(normalize_code(code))
    if coupon is None or not coupon.is_active:
        raise CouponNotFoundError()

    if not is_valid(coupon, now):
        if is_expired(coupon, now):
            raise CouponInvalidError("expired", "Coupon has expired")
        if not has_started(coupon, now):
            raise CouponInvalidError("not_started", "Coupon is not yet active")
        if is_usage_limit_reached(coupon):
            raise CouponInvalidError("usage_limit_reached", "Coupon usage limit has been reached")
        raise CouponInvalidError("not_valid", "Coupon is not valid")
    return coupon


def can_user_use(coupon: Coupon, user_id: Optional[str]) -> bool:
    if not user_id:
        return True
    uses = sum(1 for usage in coupon.used_by if usage.user == str(user_id))
    return uses < coupon.usage_limit_per_user


def calculate_discount(coupon: Coupon, order_amount: float, shipping_cost: float = 0) -> float:
    discount = coupon.discount
    if isinstance(discount, PercentageDiscount):
        amount = D(order_amount) * D(discount.value) / Decimal(100)
        if discount.max_discount is not None and amount > D(discount.max_discount):
            amount = D(discount.max_discount)
    elif isinstance(discount, FixedDiscount):
        amount = min(D(discount.value), D(order_amount))
    elif isinstance(discount, FreeShipping):
        amount = D(shipping_cost)
    else:
        raise TypeError(f"Unsupported discount {discount!r}")
    return round2(amount)


def check_eligibility(
    coupon: Coupon,
    order_amount: float,
    user_id: Optional[str] = None,
    product_ids: Optional[Iterable[str]] = None,
    has_prior_orders: bool = False,
) -> None:
    """Raise CouponIneligibleError if this order or user does not qualify.

    product_ids are the products in the cart; when omitted the product rules
    are not checked. has_prior_orders is whether the user already has a
    non-cancelled order.
    """
    if coupon.min_order_amount > 0 and order_amount < coupon.min_order_amount:
        raise CouponIneligibleError(
            "minimum_order",
            f"Minimum order amount of ${coupon.min_order_amount:g} required",
        )

    if user_id and not can_user_use(coupon, user_id):
        raise CouponIneligibleError(
            "per_user_limit",
            "You have already used this coupon the maximum number of times",
        )

    if coupon.first_time_user_only and user_id and has_prior_orders:
        raise CouponIneligibleError(
            "first_time_only",
            "This coupon is only valid for first-time customers",
        )

    if product_ids is None:
        return
    cart = {str(p) for p in product_ids}

    if coupon.applicable_products and not cart & set(coupon.applicable_products):
        raise CouponIneligibleError(
            "not_applicable",
            "This coupon is not applicable to items in your cart",
        )

    if coupon.excluded_products and cart & set(coupon.excluded_products):
        raise CouponIneligibleError(
            "excluded",
            "This coupon cannot be applied to some items in your cart",
        )


class CouponQuote(BaseModel):
    code: str
    type: CouponType
    value: float
    discount: float
    description: str = ""


def _evaluate(code, store, order_amount, shipping_cost, user_id, product_ids, now):
    coupon = find_valid_coupon(code, store, now)
    has_prior_orders = bool(coupon.first_time_user_only and user_id and store.user_has_orders(user_id))
    check_eligibility(coupon, order_amount, user_id, product_ids, has_prior_orders)
    quote = CouponQuote(
        code=coupon.code,
        type=coupon.type,
        value=coupon.value,
        discount=calculate_discount(coupon, order_amount, shipping_cost),
        description=coupon.description,
    )
    return coupon, quote


def validate_coupon(
    code: str,
    store: CouponLookup,
    order_amount: float,
    shipping_cost: float = 0,
    user_id: Optional[str] = None,
    product_ids: Optional[Iterable[str]] = None,
    now: Optional[datetime] = None,
) -> CouponQuote:
    """Check a code against an order and price the discount. Never records usage."""
    return _evaluate(code, store, order_amount, shipping_cost, user_id, product_ids, now)[1]


def apply_coupon(
    store: CouponLookup,
    coupon: Coupon,
    user_id: Optional[str] = None,
    order_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CouponUsage:
    """Record one use of the coupon for a placed order.

    Must run at most once per order; there is no idempotency key.
    """
    usage = CouponUsage(user=user_id, order_id=order_id, used_at=_now(now))
    if not store.record_usage(coupon, usage):
        logger.warning("Coupon %s could not be applied for order %s: usage limit reached", coupon.code, order_id)
        raise CouponInvalidError("usage_limit_reached", "Coupon usage limit has been reached")
    logger.info("Coupon %s applied for order %s", coupon.code, order_id)
    return usage


def redeem_coupon(
    code: str,
    store: CouponLookup,
    order_amount: float,
    shipping_cost: float = 0,
    user_id: Optional[str] = None,
    order_id: Optional[str] = None,
    product_ids: Optional[Iterable[str]] = None,
    now: Optional[datetime] = None,
) -> CouponQuote:
    """Validate a code for a placed order and record its use."""
    coupon, quote = _evaluate(code, store, order_amount, shipping_cost, user_id, product_ids, now)
    apply_coupon(store, coupon, user_id, order_id, now)
    return quote
