"""
Pricing and coupon errors

Every failure raised by the pricing engine or the coupon engine derives from
PricingError and carries enough detail (field, value or reason) for the
calling layer to build a precise message.
"""

from typing import Any, Optional


class PricingError(Exception):
    """Base class for all engine failures."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PricingError):
    """Missing or malformed input to the pricing engine."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field


class ConfigurationError(PricingError):
    """A referenced composition or option is absent or disabled in the configuration."""

    def __init__(self, field: str, value: Any, message: Optional[str] = None):
        super().__init__(message or f"{field} {value} not found or not enabled in pricing configuration")
        self.field = field
        self.value = value


class CouponInvalidError(PricingError):
    """The coupon itself cannot be used right now.

    reason is one of: not_found, inactive, expired, not_started,
    usage_limit_reached, not_valid.
    """

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


class CouponNotFoundError(CouponInvalidError):
    def __init__(self, message: str = "Invalid coupon code"):
        super().__init__("not_found", message)


class CouponIneligibleError(PricingError):
    """The coupon is valid but this order or user does not qualify.

    reason is one of: minimum_order, per_user_limit, first_time_only,
    not_applicable, excluded.
    """

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason
