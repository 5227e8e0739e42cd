"""Store tests against an in-memory collection that understands the queries the stores send."""

import copy
import threading
from itertools import count
from types import SimpleNamespace

import pytest

from conftest import NOW, FakeCollection, coupon_fields
from coupons import apply_coupon
from database import CONFIG_ID, CouponStore, PricingConfigStore
from errors import CouponInvalidError
from pricing import default_pricing_config
from schemas import Coupon, CouponUsage


def resolve(doc, operand):
    if isinstance(operand, str) and operand.startswith("$"):
        return doc.get(operand[1:])
    return operand


def matches(doc, query):
    for key, cond in query.items():
        if key == "$or":
            if not any(matches(doc, q) for q in cond):
                return False
        elif key == "$expr":
            op, (left, right) = next(iter(cond.items()))
            assert op == "$lt"
            if not resolve(doc, left) < resolve(doc, right):
                return False
        elif isinstance(cond, dict) and "$ne" in cond:
            if doc.get(key) == cond["$ne"]:
                return False
        elif doc.get(key) != cond:
            return False
    return True


class Cursor(list):
    def sort(self, key, direction):
        return Cursor(sorted(self, key=lambda d: d[key], reverse=direction < 0))


class MongoCollection:
    """The handful of pymongo collection calls the coupon store makes."""

    def __init__(self, docs=()):
        self.ids = count(1)
        self.docs = []
        self.updates = []
        for doc in docs:
            self.insert_one(doc)

    def insert_one(self, doc):
        doc = {"_id": next(self.ids), **copy.deepcopy(doc)}
        self.docs.append(doc)
        return SimpleNamespace(inserted_id=doc["_id"])

    def find_one(self, query):
        return next((copy.deepcopy(d) for d in self.docs if matches(d, query)), None)

    def find(self, query):
        return Cursor(copy.deepcopy(d) for d in self.docs if matches(d, query))

    def count_documents(self, query, limit=0):
        n = sum(1 for d in self.docs if matches(d, query))
        return min(n, limit) if limit else n

    def find_one_and_update(self, query, update, return_document=None):
        self.updates.append((query, update))
        doc = next((d for d in self.docs if matches(d, query)), None)
        if doc is None:
            return None
        for field, amount in update.get("$inc", {}).items():
            doc[field] = doc.get(field, 0) + amount
        for field, value in update.get("$push", {}).items():
            doc.setdefault(field, []).append(copy.deepcopy(value))
        doc.update(update.get("$set", {}))
        return copy.deepcopy(doc)


@pytest.fixture
def store():
    return CouponStore({"coupon": MongoCollection(), "order": MongoCollection()})


def stored(store, code="SAVE10"):
    return store.coupons.find_one({"code": code})


def use(user="u1", order="o1"):
    return CouponUsage(user=user, order_id=order, used_at=NOW)


class TestCouponLookup:

    def test_find_active_normalizes_code(self, store):
        store.create(Coupon(**coupon_fields()))
        assert store.find_active_by_code(" save 10 ").code == "SAVE10"

    def test_find_active_skips_inactive(self, store):
        store.create(Coupon(**coupon_fields(is_active=False)))
        assert store.find_active_by_code("SAVE10") is None
        assert store.find_by_code("save10").is_active is False

    def test_create_stamps_and_lists(self, store):
        inserted_id = store.create(Coupon(**coupon_fields()))
        doc = stored(store)
        assert doc["created_at"] == doc["updated_at"]
        assert doc["usageLimitPerUser"] == 1
        [entry] = store.list_all()
        assert entry["id"] == inserted_id
        assert entry["coupon"].code == "SAVE10"


class TestRecordUsage:

    def test_unlimited_coupon(self, store):
        coupon = Coupon(**coupon_fields())
        store.create(coupon)
        assert store.record_usage(coupon, use("u1", "o1"))
        assert store.record_usage(coupon, use("u2", "o2"))
        doc = stored(store)
        assert doc["usedCount"] == 2
        assert [u["orderId"] for u in doc["usedBy"]] == ["o1", "o2"]

    def test_refused_once_limit_reached(self, store):
        coupon = Coupon(**coupon_fields(usage_limit=2, used_count=1))
        store.create(coupon)
        assert store.record_usage(coupon, use())
        assert not store.record_usage(coupon, use("u2", "o2"))
        doc = stored(store)
        assert doc["usedCount"] == 2
        assert len(doc["usedBy"]) == 1

    def test_refused_for_inactive_coupon(self, store):
        coupon = Coupon(**coupon_fields(is_active=False))
        store.create(coupon)
        assert not store.record_usage(coupon, use())
        assert stored(store)["usedCount"] == 0

    def test_update_is_conditional_on_usage_limit(self, store):
        coupon = Coupon(**coupon_fields(usage_limit=5))
        store.create(coupon)
        store.record_usage(coupon, use())
        query, update = store.coupons.updates[-1]
        assert query == {
            "code": "SAVE10",
            "isActive": True,
            "$or": [
                {"usageLimit": None},
                {"$expr": {"$lt": ["$usedCount", "$usageLimit"]}},
            ],
        }
        assert update["$inc"] == {"usedCount": 1}
        assert update["$push"]["usedBy"] == {"user": "u1", "usedAt": NOW, "orderId": "o1"}
        assert "updated_at" in update["$set"]

    def test_stale_snapshots_cannot_oversubscribe(self, store):
        store.create(Coupon(**coupon_fields(usage_limit=1)))
        first = store.find_active_by_code("SAVE10")
        second = store.find_active_by_code("SAVE10")
        apply_coupon(store, first, "u1", "o1", now=NOW)
        with pytest.raises(CouponInvalidError) as exc:
            apply_coupon(store, second, "u2", "o2", now=NOW)
        assert exc.value.reason == "usage_limit_reached"
        assert stored(store)["usedCount"] == 1


class TestOrderHistory:

    def test_cancelled_orders_do_not_count(self):
        orders = MongoCollection([
            {"user": "u1", "orderStatus": "cancelled"},
            {"user": "u2", "orderStatus": "delivered"},
            {"user": "u2", "orderStatus": "pending"},
        ])
        store = CouponStore({"coupon": MongoCollection(), "order": orders})
        assert not store.user_has_orders("u1")
        assert store.user_has_orders("u2")
        assert not store.user_has_orders("u3")


class SlowFirstRead(FakeCollection):
    """Blocks the first find_one until released."""

    def __init__(self):
        super().__init__()
        self.reading = threading.Event()
        self.release = threading.Event()

    def find_one(self, query):
        doc = super().find_one(query)
        if not self.reading.is_set():
            self.reading.set()
            self.release.wait(5)
        return doc


class TestPricingConfigCache:

    def test_slow_load_does_not_overwrite_update(self):
        collection = SlowFirstRead()
        collection.docs[CONFIG_ID] = {"_id": CONFIG_ID, **default_pricing_config().model_dump(by_alias=True)}
        store = PricingConfigStore({"pricingconfig": collection})

        loader = threading.Thread(target=store.get_config)
        loader.start()
        assert collection.reading.wait(5)

        tax = {"enabled": True, "percentage": 8, "includedInPrice": True}
        updater = threading.Thread(target=store.update, args=({"tax": tax},))
        updater.start()
        updater.join(0.2)
        assert updater.is_alive()

        collection.release.set()
        loader.join(5)
        updater.join(5)
        assert store.get_config().tax.percentage == 8
        assert collection.docs[CONFIG_ID]["tax"]["percentage"] == 8
