import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pydantic
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import Field

from coupons import coupon_status, redeem_coupon, validate_coupon
from database import CouponStore, PricingConfigStore, db
from errors import CouponIneligibleError, CouponInvalidError, CouponNotFoundError, PricingError
from pricing import calculate_price_range, price_breakdown, round2
from schemas import AvailableOptions, CamelModel, Coupon, CouponType, ProductSpecification

logger = logging.getLogger(__name__)

app = FastAPI(title="Jewelry Pricing API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

pricing_store = PricingConfigStore(db) if db is not None else None
coupon_store = CouponStore(db) if db is not None else None


def get_pricing_store() -> PricingConfigStore:
    if pricing_store is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return pricing_store


def get_coupon_store() -> CouponStore:
    if coupon_store is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return coupon_store


@app.exception_handler(PricingError)
async def pricing_error_handler(request: Request, exc: PricingError):
    status_code = 404 if isinstance(exc, CouponNotFoundError) else 400
    content = {"detail": exc.message}
    for attr in ("field", "reason"):
        if hasattr(exc, attr):
            content[attr] = getattr(exc, attr)
    return JSONResponse(status_code=status_code, content=content)


@app.get("/")
def read_root():
    return {"message": "Jewelry Pricing Backend Running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "connection_status": "Not Connected",
        "collections": []
    }

    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            try:
                response["collections"] = db.list_collection_names()[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"

    return response

# ---------------------- Pricing configuration API ----------------------
SECTIONS = {
    "compositions": "compositionRates",
    "diamonds": "diamondPricing",
    "ring-sizes": "ringSizePricing",
    "additional-costs": "additionalCosts",
    "tax": "tax",
}


def _update_config(store: PricingConfigStore, updates: Dict[str, Any], user_id: Optional[str]):
    try:
        return store.update(updates, user_id)
    except pydantic.ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors(include_url=False, include_context=False, include_input=False))


@app.get("/api/pricing-config")
def get_pricing_config(store: PricingConfigStore = Depends(get_pricing_store)):
    return store.get_config().model_dump(by_alias=True)


@app.put("/api/pricing-config")
def update_pricing_config(
    updates: Dict[str, Any],
    store: PricingConfigStore = Depends(get_pricing_store),
    x_user_id: Optional[str] = Header(None),
):
    config = _update_config(store, updates, x_user_id)
    return config.model_dump(by_alias=True)


@app.put("/api/pricing-config/{section}")
def update_pricing_section(
    section: str,
    payload: Dict[str, Any],
    store: PricingConfigStore = Depends(get_pricing_store),
    x_user_id: Optional[str] = Header(None),
):
    key = SECTIONS.get(section)
    if key is None:
        raise HTTPException(status_code=404, detail=f"Unknown pricing section {section}")
    if key not in payload:
        raise HTTPException(status_code=400, detail=f"{key} is required")

    config = _update_config(store, {key: payload[key]}, x_user_id)
    return config.model_dump(by_alias=True)[key]


@app.post("/api/pricing-config/calculate")
def calculate_price(spec: ProductSpecification, store: PricingConfigStore = Depends(get_pricing_store)):
    breakdown = price_breakdown(spec, store.get_config())
    return {
        "price": breakdown.price,
        "breakdown": breakdown.model_dump(),
        "specifications": spec.model_dump(by_alias=True),
    }


@app.post("/api/pricing-config/reset")
def reset_pricing_config(
    store: PricingConfigStore = Depends(get_pricing_store),
    x_user_id: Optional[str] = Header(None),
):
    return store.reset(x_user_id).model_dump(by_alias=True)


class PriceRangeRequest(CamelModel):
    weight: Optional[float] = None
    available_options: AvailableOptions = Field(default_factory=AvailableOptions)


@app.post("/api/products/price-range")
def product_price_range(payload: PriceRangeRequest, store: PricingConfigStore = Depends(get_pricing_store)):
    price_range = calculate_price_range(payload.weight, payload.available_options, store.get_config())
    return {**price_range, "displayPrice": price_range["min"]}

# ---------------------- Coupon API ----------------------
class CreateCouponRequest(CamelModel):
    code: str = Field(..., min_length=3, max_length=20, description="Unique code")
    description: str = ""
    type: CouponType
    value: float = Field(..., ge=0)
    min_order_amount: float = Field(0, ge=0)
    max_discount: Optional[float] = Field(None, ge=0)
    start_date: Optional[datetime] = None
    expiry_date: datetime
    usage_limit: Optional[int] = Field(None, ge=1)
    usage_limit_per_user: int = Field(1, ge=1)
    applicable_products: List[str] = Field(default_factory=list)
    applicable_categories: List[str] = Field(default_factory=list)
    excluded_products: List[str] = Field(default_factory=list)
    first_time_user_only: bool = False
    is_active: bool = True


@app.post("/api/coupons", status_code=201)
def create_coupon(payload: CreateCouponRequest, store: CouponStore = Depends(get_coupon_store)):
    data = payload.model_dump(exclude_none=True)
    data.setdefault("start_date", datetime.now(timezone.utc))
    data["max_discount"] = payload.max_discount
    data["usage_limit"] = payload.usage_limit
    try:
        coupon = Coupon(**data)
    except pydantic.ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors(include_url=False, include_context=False, include_input=False))

    if coupon.expiry_date <= coupon.start_date:
        raise HTTPException(status_code=400, detail="Expiry date must be after start date")

    if coupon.type == "percentage" and coupon.value > 100:
        raise HTTPException(status_code=400, detail="Percentage discount cannot exceed 100%")

    if store.find_by_code(coupon.code):
        raise HTTPException(status_code=400, detail="Coupon code already exists")

    coupon_id = store.create(coupon)
    logger.info("Coupon %s created", coupon.code)
    return {"id": coupon_id, **coupon.model_dump(by_alias=True)}


@app.get("/api/coupons")
def list_coupons(store: CouponStore = Depends(get_coupon_store)):
    items = []
    for entry in store.list_all():
        c = entry["coupon"]
        items.append({
            "id": entry["id"],
            "code": c.code,
            "status": coupon_status(c),
            "type": c.type,
            "value": c.value,
            "uses": c.used_count,
            "usageLimit": c.usage_limit,
            "expiryDate": c.expiry_date,
        })
    return items


class ValidateCouponRequest(CamelModel):
    code: str
    order_amount: float = Field(..., ge=0)
    shipping_cost: float = Field(0, ge=0)
    user_id: Optional[str] = None
    product_ids: Optional[List[str]] = None


class ValidateCouponResponse(CamelModel):
    valid: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    code: Optional[str] = None
    type: Optional[str] = None
    value: Optional[float] = None
    discount: float = 0
    description: Optional[str] = None


@app.post("/api/coupons/validate", response_model=ValidateCouponResponse)
def validate_coupon_code(payload: ValidateCouponRequest, store: CouponStore = Depends(get_coupon_store)):
    try:
        quote = validate_coupon(
            payload.code,
            store,
            payload.order_amount,
            payload.shipping_cost,
            user_id=payload.user_id,
            product_ids=payload.product_ids,
        )
    except (CouponInvalidError, CouponIneligibleError) as e:
        return ValidateCouponResponse(valid=False, reason=e.reason, message=e.message)

    return ValidateCouponResponse(valid=True, message="Coupon is valid", **quote.model_dump())


class ApplyCouponRequest(ValidateCouponRequest):
    order_id: Optional[str] = None


class ApplyCouponResponse(CamelModel):
    valid: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    code: Optional[str] = None
    discount_amount: float = 0
    final_amount: float = 0


@app.post("/api/coupons/apply", response_model=ApplyCouponResponse)
def apply_coupon_code(payload: ApplyCouponRequest, store: CouponStore = Depends(get_coupon_store)):
    try:
        quote = redeem_coupon(
            payload.code,
            store,
            payload.order_amount,
            payload.shipping_cost,
            user_id=payload.user_id,
            order_id=payload.order_id,
            product_ids=payload.product_ids,
        )
    except (CouponInvalidError, CouponIneligibleError) as e:
        return ApplyCouponResponse(valid=False, reason=e.reason, message=e.message)

    final_amount = round2(payload.order_amount + payload.shipping_cost - quote.discount)
    return ApplyCouponResponse(valid=True, code=quote.code, discount_amount=quote.discount, final_amount=final_amount)


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
