"""
Stock adjustments for tracked products.

Reservations are single conditional updates: the decrement only lands when
enough stock is left, so two buyers can never take the same unit. A
StockLedger remembers what it reserved so a failed checkout can give it all
back.
"""
import logging
from typing import List, Tuple

from bson import ObjectId
from pymongo import ReturnDocument

from database import db, now

logger = logging.getLogger(__name__)


class InsufficientStock(Exception):
    def __init__(self, product_id: str):
        super().__init__(f"Insufficient stock for product {product_id}")
        self.product_id = product_id


def reserve(product: dict, quantity: int) -> bool:
    """Atomically take `quantity` units. Returns False if the stock was not there."""
    query = {"_id": product["_id"], "track_quantity": True}
    if not product.get("allow_backorder"):
        query["quantity"] = {"$gte": quantity}
    updated = db["product"].find_one_and_update(
        query,
        {"$inc": {"quantity": -quantity}, "$set": {"updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    return updated is not None


def release(product_id: str, quantity: int) -> bool:
    """Give units back to a tracked product. Missing products are skipped."""
    result = db["product"].update_one(
        {"_id": ObjectId(product_id), "track_quantity": True},
        {"$inc": {"quantity": quantity}, "$set": {"updated_at": now()}},
    )
    return result.matched_count > 0


class StockLedger:
    """Reservations made during one checkout, undone together on failure."""

    def __init__(self):
        self.entries: List[Tuple[str, int]] = []

    def reserve(self, product: dict, quantity: int):
        if not product.get("track_quantity", True):
            return
        if not reserve(product, quantity):
            raise InsufficientStock(str(product["_id"]))
        self.entries.append((str(product["_id"]), quantity))

    def rollback(self):
        if self.entries:
            logger.warning("Releasing %d stock reservation(s) after a failed checkout", len(self.entries))
        for product_id, quantity in reversed(self.entries):
            release(product_id, quantity)
        self.entries = []


def restore_items(items: List[dict]):
    """Put the stock of every tracked order item back."""
    for item in items:
        if not release(item["product_id"], item["quantity"]):
            logger.info("Skipped stock restore for missing or untracked product %s", item["product_id"])
