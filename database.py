"""
Database access

MongoDB connection configured from the environment (DATABASE_URL,
DATABASE_NAME) plus the two stores the pricing core needs: the single
pricing configuration document and the coupon collection.
"""

import logging
import os
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo import MongoClient, ReturnDocument

from pricing import default_pricing_config
from schemas import Coupon, CouponUsage, PricingConfiguration, normalize_code

logger = logging.getLogger(__name__)

CONFIG_ID = "pricing-config"

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")

db = None
if database_url and database_name:
    client = MongoClient(database_url, tz_aware=True)
    db = client[database_name]


class PricingConfigStore:
    """Loads and saves the single pricing configuration document.

    The loaded configuration is cached on the store and dropped whenever it is
    updated or reset through the store. Loading, updating and resetting hold
    the same lock so a slow load cannot cache a copy older than an update.
    """

    def __init__(self, database):
        self.collection = database["pricingconfig"]
        self._cached: Optional[PricingConfiguration] = None
        self._lock = threading.RLock()

    def get_config(self) -> PricingConfiguration:
        with self._lock:
            if self._cached is None:
                doc = self.collection.find_one({"_id": CONFIG_ID})
                if doc is None:
                    self._cached = self._save(default_pricing_config())
                    logger.info("Created default pricing configuration")
                else:
                    self._cached = PricingConfiguration.model_validate(doc)
            return self._cached

    def update(self, updates: Dict[str, Any], user_id: Optional[str] = None) -> PricingConfiguration:
        """Replace top-level sections (camelCase keys) and store the result."""
        with self._lock:
            merged = self.get_config().model_dump(by_alias=True)
            merged.update(updates)
            merged["lastUpdatedBy"] = user_id
            config = PricingConfiguration.model_validate(merged)
            self.invalidate()
            self._cached = self._save(config)
        logger.info("Pricing configuration updated (%s) by %s", ", ".join(sorted(updates)), user_id)
        return config

    def reset(self, user_id: Optional[str] = None) -> PricingConfiguration:
        with self._lock:
            self.collection.delete_one({"_id": CONFIG_ID})
            self.invalidate()
            config = default_pricing_config()
            config.last_updated_by = user_id
            self._cached = self._save(config)
        logger.info("Pricing configuration reset to defaults by %s", user_id)
        return config

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None

    def _save(self, config: PricingConfiguration) -> PricingConfiguration:
        doc = config.model_dump(by_alias=True)
        doc["updated_at"] = datetime.now(timezone.utc)
        self.collection.replace_one({"_id": CONFIG_ID}, doc, upsert=True)
        return config


class CouponStore:
    def __init__(self, database):
        self.coupons = database["coupon"]
        self.orders = database["order"]

    def find_by_code(self, code: str) -> Optional[Coupon]:
        doc = self.coupons.find_one({"code": normalize_code(code)})
        return Coupon.model_validate(doc) if doc else None

    def find_active_by_code(self, code: str) -> Optional[Coupon]:
        doc = self.coupons.find_one({"code": normalize_code(code), "isActive": True})
        return Coupon.model_validate(doc) if doc else None

    def create(self, coupon: Coupon) -> str:
        doc = coupon.model_dump(by_alias=True)
        now = datetime.now(timezone.utc)
        doc["created_at"] = now
        doc["updated_at"] = now
        return str(self.coupons.insert_one(doc).inserted_id)

    def list_all(self) -> List[Dict[str, Any]]:
        return [
            {"id": str(doc.pop("_id")), "coupon": Coupon.model_validate(doc)}
            for doc in self.coupons.find({}).sort("created_at", -1)
        ]

    def record_usage(self, coupon: Coupon, usage: CouponUsage) -> bool:
        """Increment usedCount and append to usedBy only while under the usage limit."""
        doc = self.coupons.find_one_and_update(
            {
                "code": coupon.code,
                "isActive": True,
                "$or": [
                    {"usageLimit": None},
                    {"$expr": {"$lt": ["$usedCount", "$usageLimit"]}},
                ],
            },
            {
                "$inc": {"usedCount": 1},
                "$push": {"usedBy": usage.model_dump(by_alias=True)},
                "$set": {"updated_at": datetime.now(timezone.utc)},
            },
            return_document=ReturnDocument.AFTER,
        )
        return doc is not None

    def user_has_orders(self, user_id: str) -> bool:
        """Whether the user has any order that was not cancelled."""
        return self.orders.count_documents({"user": user_id, "orderStatus": {"$ne": "cancelled"}}, limit=1) > 0
