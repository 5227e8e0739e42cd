"""
Database Schemas

Pydantic models for the pricing configuration, product specifications and
coupons. They are stored in MongoDB and exchanged over the API with the
camelCase field names the storefront has always used (compositionRates,
pricePerGram, usedBy, ...); Python code uses the snake_case attribute names.

Collections:
- PricingConfiguration -> "pricingconfig" (single document, _id "pricing-config")
- Coupon -> "coupon"
"""

import re
from datetime import datetime, timezone
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

Composition = Literal["10K", "12K", "14K", "18K", "22K", "24K", "925-silver", "platinum"]
Material = Literal["yellow-gold", "white-gold", "rose-gold", "silver", "platinum"]
DiamondType = Literal["natural", "lab-grown", "none"]
RingSize = Literal[
    "4", "4.5", "5", "5.5", "6", "6.5", "7", "7.5", "8",
    "8.5", "9", "9.5", "10", "10.5", "11", "11.5", "12",
]
CouponType = Literal["percentage", "fixed", "free_shipping"]


def utc(value: datetime) -> datetime:
    """Mongo hands back naive datetimes; they are always UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------- Pricing configuration ----------------------
class MaterialType(CamelModel):
    material: Material = Field(..., description="Metal color")
    label: Optional[str] = Field(None, description="Display label")
    price_multiplier: float = Field(1.0, description="Multiplier applied to the metal cost, e.g. 1.1 for +10%")


class CompositionRate(CamelModel):
    composition: Composition = Field(..., description="Metal purity tier")
    label: Optional[str] = Field(None, description="Display label")
    price_per_gram: float = Field(..., ge=0, description="Base price per gram")
    material_types: List[MaterialType] = Field(default_factory=list)
    enabled: bool = Field(True, description="Only enabled compositions can be priced")


class DiamondPricing(CamelModel):
    type: DiamondType = Field(..., description="Diamond type")
    label: Optional[str] = Field(None, description="Display label")
    price_per_carat: float = Field(0, ge=0, description="Price per carat, wins over fixed_price when a carat weight is known")
    fixed_price: float = Field(0, ge=0, description="Flat addition used when per-carat pricing does not apply")
    enabled: bool = True


class SizeAdjustment(CamelModel):
    size: RingSize
    percentage_adjustment: float = Field(0, ge=-100, description="Signed percentage, e.g. 10 for +10%, -5 for -5%")


class RingSizePricing(CamelModel):
    size_adjustments: List[SizeAdjustment] = Field(default_factory=list)


class AdditionalCosts(CamelModel):
    labor_cost: float = Field(0, ge=0, description="Flat labor cost added to every product")
    labor_cost_per_gram: float = Field(0, ge=0, description="Labor cost multiplied by product weight")
    profit_margin_percentage: float = Field(0, ge=0, le=100, description="Profit margin (0-100)")
    minimum_price: float = Field(0, ge=0, description="Price floor for any product")


class Tax(CamelModel):
    enabled: bool = False
    percentage: float = Field(0, ge=0, le=100, description="Tax percentage (0-100)")
    included_in_price: bool = Field(False, description="Whether tax is folded into the calculated price")


class Currency(CamelModel):
    code: str = "USD"
    symbol: str = "$"


class PricingConfiguration(CamelModel):
    """
    Pricing configuration schema
    Collection name: "pricingconfig" (exactly one document)
    """
    composition_rates: List[CompositionRate] = Field(default_factory=list)
    diamond_pricing: List[DiamondPricing] = Field(default_factory=list)
    ring_size_pricing: RingSizePricing = Field(default_factory=RingSizePricing)
    additional_costs: AdditionalCosts = Field(default_factory=AdditionalCosts)
    tax: Tax = Field(default_factory=Tax)
    currency: Currency = Field(default_factory=Currency)
    last_updated_by: Optional[str] = None

    @field_validator("composition_rates")
    @classmethod
    def unique_compositions(cls, rates: List[CompositionRate]) -> List[CompositionRate]:
        seen = set()
        for rate in rates:
            if rate.composition in seen:
                raise ValueError(f"Duplicate composition {rate.composition}")
            seen.add(rate.composition)
        return rates


# ---------------------- Products ----------------------
class ProductSpecification(CamelModel):
    """Specification of one concrete item: the product's weight plus the customer's selections."""
    weight: Optional[float] = Field(None, description="Weight in grams")
    composition: Optional[str] = None
    material: Optional[str] = None
    diamond_type: Optional[str] = None
    diamond_carat: float = Field(0, ge=0)
    ring_size: Optional[str] = None


class AvailableOptions(CamelModel):
    compositions: List[str] = Field(default_factory=list)
    materials: List[str] = Field(default_factory=list)
    diamond_types: List[str] = Field(default_factory=lambda: ["none"])
    ring_sizes: List[str] = Field(default_factory=lambda: ["7"])
    diamond_carat: float = Field(0, ge=0, description="Total diamond carat weight")


# ---------------------- Coupons ----------------------
class PercentageDiscount(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["percentage"] = "percentage"
    value: float
    max_discount: Optional[float] = None


class FixedDiscount(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["fixed"] = "fixed"
    value: float


class FreeShipping(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["free_shipping"] = "free_shipping"


Discount = Union[PercentageDiscount, FixedDiscount, FreeShipping]


class CouponUsage(CamelModel):
    user: Optional[str] = None
    used_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    order_id: Optional[str] = None

    @field_validator("user", "order_id", mode="before")
    @classmethod
    def stringify_ids(cls, v):
        return None if v is None else str(v)

    @field_validator("used_at")
    @classmethod
    def aware(cls, v: datetime) -> datetime:
        return utc(v)


class Coupon(CamelModel):
    """
    Coupons collection schema
    Collection name: "coupon"
    """
    code: str = Field(..., min_length=3, max_length=20, description="Unique coupon code, case-insensitive")
    description: str = Field("", description="Shown to the customer")
    type: CouponType = Field(..., description="Type of discount")
    value: float = Field(..., ge=0, description="Percent (0-100) or fixed amount; ignored for free shipping")
    min_order_amount: float = Field(0, ge=0, description="Minimum order amount to be eligible")
    max_discount: Optional[float] = Field(None, ge=0, description="Cap for percentage discounts")
    start_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expiry_date: datetime
    usage_limit: Optional[int] = Field(None, ge=1, description="Maximum total redemptions allowed")
    usage_limit_per_user: int = Field(1, ge=1)
    used_count: int = Field(0, ge=0)
    used_by: List[CouponUsage] = Field(default_factory=list)
    is_active: bool = True
    applicable_products: List[str] = Field(default_factory=list)
    applicable_categories: List[str] = Field(default_factory=list)
    excluded_products: List[str] = Field(default_factory=list)
    first_time_user_only: bool = False

    @field_validator("code", mode="before")
    @classmethod
    def clean_code(cls, v):
        return normalize_code(v) if isinstance(v, str) else v

    @field_validator("applicable_products", "applicable_categories", "excluded_products", mode="before")
    @classmethod
    def stringify_ids(cls, v):
        return [str(item) for item in v or []]

    @field_validator("start_date", "expiry_date")
    @classmethod
    def aware(cls, v: datetime) -> datetime:
        return utc(v)

    @property
    def discount(self) -> Discount:
        if self.type == "percentage":
            return PercentageDiscount(value=self.value, max_discount=self.max_discount)
        if self.type == "fixed":
            return FixedDiscount(value=self.value)
        return FreeShipping()


def normalize_code(code: str) -> str:
    return re.sub(r"\s+", "", code).upper()
