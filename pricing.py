"""
Jewelry pricing

A product's price is computed from its weight and the customer's selections
against the current PricingConfiguration. Stages run in a fixed order, each
on the running total of the previous one:

    metal (weight x rate x material multiplier)
    + diamond (per carat, else fixed)
    + labor (flat + per gram)
    + ring size percentage of everything above
    x (1 + profit margin)
    max(., minimum price)
    x (1 + tax) when tax is included in the price
    round half-up to cents

All arithmetic is Decimal; results leave the module as floats.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from itertools import product as cartesian
from typing import Dict, Optional

from pydantic import BaseModel

from errors import ConfigurationError, PricingError, ValidationError
from schemas import AvailableOptions, PricingConfiguration, ProductSpecification

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal(100)
RING_SIZES = ["4", "4.5", "5", "5.5", "6", "6.5", "7", "7.5", "8", "8.5", "9", "9.5", "10", "10.5", "11", "11.5", "12"]


def D(value) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal(0)


def round2(value) -> float:
    return float(D(value).quantize(CENT, rounding=ROUND_HALF_UP))


class PriceBreakdown(BaseModel):
    metal_cost: float
    diamond_cost: float
    labor_cost: float
    ring_size_adjustment: float
    subtotal: float
    profit_amount: float
    minimum_price_applied: bool
    tax_amount: float
    price: float


def price_breakdown(spec: ProductSpecification, config: PricingConfiguration) -> PriceBreakdown:
    """Price one item and report what each stage contributed.

    Raises ValidationError for a missing/non-positive weight or a missing
    composition, and ConfigurationError when the composition is unknown or
    disabled.
    """
    if spec.weight is None or spec.weight <= 0:
        raise ValidationError("weight", "Product weight is required and must be greater than 0")
    if not spec.composition:
        raise ValidationError("composition", "Product composition is required")

    rate = next(
        (c for c in config.composition_rates if c.composition == spec.composition and c.enabled),
        None,
    )
    if rate is None:
        raise ConfigurationError("composition", spec.composition, f"Composition {spec.composition} not found or not enabled in pricing configuration")

    weight = D(spec.weight)
    costs = config.additional_costs

    metal = weight * D(rate.price_per_gram)
    if spec.material:
        material = next((m for m in rate.material_types if m.material == spec.material), None)
        if material is not None:
            metal *= D(material.price_multiplier)

    diamond = Decimal(0)
    if spec.diamond_type and spec.diamond_type != "none":
        entry = next(
            (d for d in config.diamond_pricing if d.type == spec.diamond_type and d.enabled),
            None,
        )
        if entry is not None:
            carat = D(spec.diamond_carat)
            if entry.price_per_carat > 0 and carat > 0:
                diamond = D(entry.price_per_carat) * carat
            elif entry.fixed_price > 0:
                diamond = D(entry.fixed_price)

    labor = Decimal(0)
    if costs.labor_cost > 0:
        labor += D(costs.labor_cost)
    if costs.labor_cost_per_gram > 0:
        labor += weight * D(costs.labor_cost_per_gram)

    total = metal + diamond + labor

    # applied to metal + diamond + labor
    size_adjustment = Decimal(0)
    if spec.ring_size:
        size = next((s for s in config.ring_size_pricing.size_adjustments if s.size == spec.ring_size), None)
        if size is not None and size.percentage_adjustment:
            size_adjustment = total * D(size.percentage_adjustment) / HUNDRED
            total += size_adjustment

    subtotal = total

    profit = Decimal(0)
    if costs.profit_margin_percentage > 0:
        total *= 1 + D(costs.profit_margin_percentage) / HUNDRED
        profit = total - subtotal

    floored = False
    if costs.minimum_price > 0 and total < D(costs.minimum_price):
        total = D(costs.minimum_price)
        floored = True

    tax = Decimal(0)
    if config.tax.enabled and config.tax.included_in_price and config.tax.percentage > 0:
        before_tax = total
        total *= 1 + D(config.tax.percentage) / HUNDRED
        tax = total - before_tax

    return PriceBreakdown(
        metal_cost=round2(metal),
        diamond_cost=round2(diamond),
        labor_cost=round2(labor),
        ring_size_adjustment=round2(size_adjustment),
        subtotal=round2(subtotal),
        profit_amount=round2(profit),
        minimum_price_applied=floored,
        tax_amount=round2(tax),
        price=round2(total),
    )


def calculate_product_price(spec: ProductSpecification, config: PricingConfiguration) -> float:
    return price_breakdown(spec, config).price


def calculate_price_range(
    weight: Optional[float],
    options: AvailableOptions,
    config: PricingConfiguration,
) -> Dict[str, float]:
    """Min and max price over every composition x material x diamond type.

    The first available ring size is held constant. Combinations that cannot
    be priced are skipped; if none can be priced the range is 0..0.
    """
    ring_size = options.ring_sizes[0] if options.ring_sizes else None
    prices = []
    for composition, material, diamond_type in cartesian(options.compositions, options.materials, options.diamond_types):
        spec = ProductSpecification(
            weight=weight,
            composition=composition,
            material=material,
            diamond_type=diamond_type,
            diamond_carat=options.diamond_carat,
            ring_size=ring_size,
        )
        try:
            prices.append(calculate_product_price(spec, config))
        except PricingError as e:
            logger.warning("Skipping price combination %s/%s/%s: %s", composition, material, diamond_type, e)

    if not prices:
        return {"min": 0.0, "max": 0.0}
    return {"min": min(prices), "max": max(prices)}


def display_price(weight: Optional[float], options: AvailableOptions, config: PricingConfiguration) -> float:
    """Cheapest price the product can be bought at."""
    return calculate_price_range(weight, options, config)["min"]


def default_pricing_config() -> PricingConfiguration:
    """Rates used when no configuration has been stored yet."""
    gold = [
        {"material": "yellow-gold", "label": "Yellow Gold", "priceMultiplier": 1.0},
        {"material": "white-gold", "label": "White Gold", "priceMultiplier": 1.1},
        {"material": "rose-gold", "label": "Rose Gold", "priceMultiplier": 1.05},
    ]
    return PricingConfiguration.model_validate({
        "compositionRates": [
            {"composition": "10K", "label": "10 Karat Gold", "pricePerGram": 25, "materialTypes": gold},
            {"composition": "14K", "label": "14 Karat Gold", "pricePerGram": 35, "materialTypes": gold},
            {"composition": "18K", "label": "18 Karat Gold", "pricePerGram": 45, "materialTypes": gold},
            {
                "composition": "925-silver",
                "label": "925 Sterling Silver",
                "pricePerGram": 2,
                "materialTypes": [{"material": "silver", "label": "Silver", "priceMultiplier": 1.0}],
            },
            {
                "composition": "platinum",
                "label": "Platinum",
                "pricePerGram": 60,
                "materialTypes": [{"material": "platinum", "label": "Platinum", "priceMultiplier": 1.0}],
            },
        ],
        "diamondPricing": [
            {"type": "natural", "label": "Natural Diamond", "fixedPrice": 500},
            {"type": "lab-grown", "label": "Lab-Grown Diamond", "fixedPrice": 300},
            {"type": "none", "label": "No Diamond", "fixedPrice": 0},
        ],
        "ringSizePricing": {
            "sizeAdjustments": [{"size": size, "percentageAdjustment": 0} for size in RING_SIZES],
        },
        "additionalCosts": {
            "laborCost": 50,
            "laborCostPerGram": 5,
            "profitMarginPercentage": 30,
            "minimumPrice": 100,
        },
        "tax": {"enabled": False, "percentage": 0, "includedInPrice": False},
        "currency": {"code": "USD", "symbol": "$"},
    })
