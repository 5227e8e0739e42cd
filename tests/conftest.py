from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

import main
from database import PricingConfigStore
from pricing import default_pricing_config
from schemas import Coupon

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeCollection:
    """Just enough of a pymongo collection for the pricing config store."""

    def __init__(self):
        self.docs = {}
        self.writes = 0

    def find_one(self, query):
        doc = self.docs.get(query["_id"])
        return dict(doc) if doc else None

    def replace_one(self, query, doc, upsert=False):
        self.writes += 1
        self.docs[query["_id"]] = {"_id": query["_id"], **doc}

    def delete_one(self, query):
        self.docs.pop(query["_id"], None)


class FakeCouponStore:
    def __init__(self):
        self.coupons = {}
        self.users_with_orders = set()

    def add(self, **fields) -> Coupon:
        coupon = Coupon(**fields)
        self.coupons[coupon.code] = coupon
        return coupon

    def find_by_code(self, code):
        return self.coupons.get(code.upper())

    def find_active_by_code(self, code):
        coupon = self.coupons.get(code)
        return coupon if coupon and coupon.is_active else None

    def create(self, coupon):
        self.coupons[coupon.code] = coupon
        return f"id-{coupon.code}"

    def list_all(self):
        return [{"id": f"id-{code}", "coupon": c} for code, c in self.coupons.items()]

    def record_usage(self, coupon, usage):
        stored = self.coupons[coupon.code]
        if stored.usage_limit is not None and stored.used_count >= stored.usage_limit:
            return False
        self.coupons[coupon.code] = stored.model_copy(update={
            "used_count": stored.used_count + 1,
            "used_by": stored.used_by + [usage],
        })
        return True

    def user_has_orders(self, user_id):
        return user_id in self.users_with_orders


def coupon_fields(**overrides):
    fields = {
        "code": "SAVE10",
        "description": "10% off",
        "type": "percentage",
        "value": 10,
        "start_date": NOW - timedelta(days=1),
        "expiry_date": NOW + timedelta(days=30),
    }
    fields.update(overrides)
    return fields


@pytest.fixture
def config():
    return default_pricing_config()


@pytest.fixture
def coupon_store():
    return FakeCouponStore()


@pytest.fixture
def pricing_store():
    return PricingConfigStore({"pricingconfig": FakeCollection()})


@pytest.fixture
def client(pricing_store, coupon_store):
    main.app.dependency_overrides[main.get_pricing_store] = lambda: pricing_store
    main.app.dependency_overrides[main.get_coupon_store] = lambda: coupon_store
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
